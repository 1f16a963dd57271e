"""Remote container pages mirroring the local folder hierarchy.

Every distinct category path (``guide/advanced``) maps to a chain of
container pages (``Guide`` -> ``Advanced``) under the sync root.  The
reconciler walks segment by segment, reuses existing pages found by title
under the current parent, and creates missing ones with a placeholder body.

Results are memoised per run, both per full prefix and per
``(parent_id, title)``.  Two local segments that format to the same title
under the same parent share one container page; the first one resolved
wins.
"""

from __future__ import annotations

import html
import logging
import re
import threading
from collections.abc import Iterable

from confluence_docsync.core.interfaces import ContentBackend
from confluence_docsync.errors import RemoteReadFailure
from confluence_docsync.sync.models import ContainerPage

logger = logging.getLogger(__name__)

_WORD_START_RE = re.compile(r"\b\w")


def format_category_title(segment: str) -> str:
    """Turn a folder name into a page title.

    ``getting-started`` -> ``Getting Started``.  Only the first letter of
    each word is touched, so ``api-v2-REST`` keeps its inner casing.
    """
    text = segment.replace("-", " ").replace("_", " ").strip()
    return _WORD_START_RE.sub(lambda m: m.group(0).upper(), text)


def placeholder_body(title: str, category_path: str) -> str:
    """Storage-format body for a newly created container page."""
    return (
        f"<p>This page contains documentation for "
        f"<strong>{html.escape(title)}</strong>.</p>"
        f"<p><em>Category path: {html.escape(category_path)}</em></p>"
    )


def category_prefixes(category: str) -> list[str]:
    """``a/b/c`` -> ``["a", "a/b", "a/b/c"]``."""
    segments = [s for s in category.strip("/").split("/") if s]
    return ["/".join(segments[: i + 1]) for i in range(len(segments))]


class HierarchyReconciler:
    """Resolve (and create) container pages for category paths.

    Args:
        backend: Remote content backend.
        root_parent_id: Page id under which top-level containers live, or
            ``None`` for the space root.
        dry_run: When ``True``, missing containers are reported as absent
            instead of being created.
    """

    def __init__(
        self,
        backend: ContentBackend,
        root_parent_id: str | None = None,
        dry_run: bool = False,
    ) -> None:
        self._backend = backend
        self._root_parent_id = root_parent_id
        self._dry_run = dry_run
        self._lock = threading.Lock()
        self._by_prefix: dict[str, ContainerPage] = {}
        self._by_title: dict[tuple[str | None, str], ContainerPage] = {}

    @property
    def containers(self) -> list[ContainerPage]:
        """Container pages resolved so far, in resolution order.

        A page shared by colliding prefixes is listed once.
        """
        with self._lock:
            unique: dict[str, ContainerPage] = {}
            for container in self._by_prefix.values():
                unique.setdefault(container.remote_page_id, container)
            return list(unique.values())

    def is_container(self, page_id: str) -> bool:
        """True if *page_id* is a container page resolved in this run."""
        with self._lock:
            return any(
                c.remote_page_id == page_id for c in self._by_prefix.values()
            )

    @property
    def created(self) -> list[ContainerPage]:
        """Container pages created in this run."""
        return [c for c in self.containers if c.created]

    def resolve(self, category: str) -> str | None:
        """Return the parent page id for documents in *category*.

        An empty category resolves to the sync root.  In dry-run mode a
        missing container yields ``None`` for it and every deeper prefix.
        """
        parent_id = self._root_parent_id
        for prefix in category_prefixes(category):
            container = self._resolve_prefix(prefix, parent_id)
            if container is None:
                return None
            parent_id = container.remote_page_id
        return parent_id

    def resolve_all(
        self, categories: Iterable[str]
    ) -> dict[str, str | None]:
        """Resolve every distinct category, shallowest first."""
        distinct = sorted(
            {c.strip("/") for c in categories if c},
            key=lambda c: (c.count("/"), c),
        )
        return {category: self.resolve(category) for category in distinct}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_prefix(
        self, prefix: str, parent_id: str | None
    ) -> ContainerPage | None:
        # Held across the remote calls: two workers must not both create
        # the same container.
        with self._lock:
            cached = self._by_prefix.get(prefix)
            if cached is not None:
                return cached

            title = format_category_title(prefix.rsplit("/", 1)[-1])
            key = (parent_id, title)
            shared = self._by_title.get(key)
            if shared is not None:
                logger.warning(
                    "Category '%s' collides with an existing container "
                    "titled '%s'; reusing page %s",
                    prefix,
                    title,
                    shared.remote_page_id,
                )
                self._by_prefix[prefix] = shared
                return shared

            page_id = self._find_existing(title, parent_id)
            created = False
            if page_id is None:
                if self._dry_run:
                    logger.info(
                        "Would create container page '%s' for %s",
                        title,
                        prefix,
                    )
                    return None
                page = self._backend.create_page(
                    title, placeholder_body(title, prefix), parent_id
                )
                page_id = page.id
                created = True
                logger.info(
                    "Created container page '%s' (%s) for %s",
                    title,
                    page_id,
                    prefix,
                )

            container = ContainerPage(
                category_prefix=prefix,
                remote_page_id=page_id,
                title=title,
                created=created,
            )
            self._by_prefix[prefix] = container
            self._by_title[key] = container
            return container

    def _find_existing(
        self, title: str, parent_id: str | None
    ) -> str | None:
        """Look up a page titled *title* under *parent_id*.

        Lookup failures count as "absent".
        """
        try:
            if parent_id is None:
                page = self._backend.find_page_by_title(title)
                return page.id if page else None
            for child in self._backend.get_children(parent_id):
                if child.title == title:
                    return child.id
            return None
        except RemoteReadFailure as exc:
            logger.warning(
                "Lookup of container '%s' under %s failed: %s",
                title,
                parent_id or "space root",
                exc,
            )
            return None
