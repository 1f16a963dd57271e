"""Internal link resolution.

``ReferenceIndex`` answers "which remote page does this Markdown link point
to?" for the forward transform, and the inverse question ("which local file
is this page URL?") for the reverse transform.  It is built per run from the
ledger records plus the container pages the hierarchy pass resolved.
"""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Iterable, Mapping
from urllib.parse import quote_plus

from confluence_docsync.converters.common import is_external
from confluence_docsync.sync.models import (
    ContainerPage,
    ReferenceTarget,
    SyncRecord,
)

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = (".md", ".mdx")

_ORDER_PREFIX_RE = re.compile(r"^\d+[-_.]?")
_PAGE_URL_RE = re.compile(r"/wiki/spaces/[^/]+/pages/(\d+)(?:/[^#?]*)?")
_PAGE_ID_QUERY_RE = re.compile(r"[?&]pageId=(\d+)")


def _split_anchor(token: str) -> tuple[str, str | None]:
    if "#" in token:
        path, anchor = token.split("#", 1)
        return path, anchor
    return token, None


def _normalize_stem(path: str) -> str:
    stem = posixpath.splitext(posixpath.basename(path))[0]
    return _ORDER_PREFIX_RE.sub("", stem.lower())


def _shared_dir_depth(a: str, b: str) -> int:
    """Number of trailing directory segments *a* and *b* have in common."""
    parts_a = posixpath.dirname(a).split("/")
    parts_b = posixpath.dirname(b).split("/")
    depth = 0
    for seg_a, seg_b in zip(reversed(parts_a), reversed(parts_b)):
        if seg_a != seg_b:
            break
        depth += 1
    return depth


class ReferenceIndex:
    """Map local document identities to remote pages.

    Args:
        base_url: Confluence site URL (no trailing slash).
        space_key: Target space key.
        records: Ledger records keyed by path.
        containers: Container pages resolved in this run.
        docs_roots: Known documentation-root directory names, used to
            interpret site-absolute links like ``/docs/guide``.
    """

    def __init__(
        self,
        base_url: str,
        space_key: str,
        records: Mapping[str, SyncRecord] | None = None,
        containers: Iterable[ContainerPage] = (),
        docs_roots: Iterable[str] = ("docs",),
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.space_key = space_key
        self.docs_roots = tuple(r.strip("/") for r in docs_roots if r)
        self._records: dict[str, SyncRecord] = dict(records or {})
        self._containers: dict[str, ContainerPage] = {
            c.category_prefix: c for c in containers
        }
        self._by_page_id: dict[str, str] = {
            r.remote_page_id: path for path, r in self._records.items()
        }
        self._by_slug: dict[str, str] = {}
        for path, record in self._records.items():
            if record.slug:
                self._by_slug.setdefault(record.slug.strip("/"), path)

    # ------------------------------------------------------------------
    # Forward lookups
    # ------------------------------------------------------------------

    def page_url(
        self, page_id: str, title: str, anchor: str | None = None
    ) -> str:
        """Build the canonical page URL.

        The shape ``{base}/wiki/spaces/{space}/pages/{id}/{title}`` is
        required by Confluence; shorter forms render as broken links.
        """
        url = (
            f"{self.base_url}/wiki/spaces/{self.space_key}"
            f"/pages/{page_id}/{quote_plus(title)}"
        )
        if anchor is not None:
            url += f"#{anchor}"
        return url

    def resolve(
        self, link_token: str, source_path: str
    ) -> ReferenceTarget | None:
        """Resolve *link_token* found in the document at *source_path*.

        Args:
            link_token: Link target as written (``./x.md``, ``../x.md#a``,
                ``/docs/x``, ...).  Reference-style links are expected to be
                dereferenced already.
            source_path: Repo-relative POSIX path of the linking document.

        Returns:
            A ``ReferenceTarget`` or ``None`` when the token is external,
            anchor-only, or unknown.
        """
        token = link_token.strip()
        if not token or token.startswith("#") or is_external(token):
            return None

        raw_path, anchor = _split_anchor(token)
        if not raw_path:
            return None

        bases = self._candidate_bases(raw_path, source_path)

        for base in bases:
            path = self._lookup_record_path(base)
            if path is not None:
                return self._target_for_record(self._records[path], anchor)

        for base in bases:
            slug_path = self._by_slug.get(base.strip("/"))
            if slug_path is not None:
                return self._target_for_record(
                    self._records[slug_path], anchor
                )

        for base in bases:
            container = self._lookup_container(base)
            if container is not None:
                return ReferenceTarget(
                    page_id=container.remote_page_id,
                    title=container.title,
                    anchor=anchor,
                    url=self.page_url(
                        container.remote_page_id, container.title, anchor
                    ),
                )

        fuzzy = self._fuzzy_match(bases[0] if bases else raw_path)
        if fuzzy is not None:
            logger.debug(
                "Fuzzy-resolved link %s in %s to %s",
                link_token,
                source_path,
                fuzzy,
            )
            return self._target_for_record(self._records[fuzzy], anchor)

        return None

    # ------------------------------------------------------------------
    # Reverse lookups
    # ------------------------------------------------------------------

    def path_for_page_id(self, page_id: str) -> str | None:
        """Return the local path synced to *page_id*, if any."""
        return self._by_page_id.get(str(page_id))

    def path_for_title(self, title: str) -> str | None:
        """Return the local path whose synced page has *title*, if any."""
        for path in sorted(self._records):
            if self._records[path].title == title:
                return path
        return None

    def path_for_url(self, url: str) -> tuple[str, str | None] | None:
        """Map a Confluence page URL back to ``(local_path, anchor)``."""
        if not url.startswith(self.base_url):
            return None
        match = _PAGE_URL_RE.search(url) or _PAGE_ID_QUERY_RE.search(url)
        if match is None:
            return None
        path = self.path_for_page_id(match.group(1))
        if path is None:
            return None
        _, anchor = _split_anchor(url)
        return path, anchor

    @staticmethod
    def relative_link(target_path: str, from_path: str) -> str:
        """Relative POSIX link from the document *from_path* to *target_path*."""
        start = posixpath.dirname(from_path) or "."
        rel = posixpath.relpath(target_path, start)
        if not rel.startswith("."):
            rel = f"./{rel}"
        return rel

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _candidate_bases(self, raw_path: str, source_path: str) -> list[str]:
        """Canonical repo-relative paths the token could denote."""
        if raw_path.startswith("/"):
            stripped = raw_path.strip("/")
            bases = [stripped]
            for root in self.docs_roots:
                prefix = f"{root}/"
                if stripped.startswith(prefix):
                    bases.append(stripped[len(prefix):])
                else:
                    bases.append(f"{prefix}{stripped}")
        else:
            source_dir = posixpath.dirname(source_path)
            joined = posixpath.normpath(posixpath.join(source_dir, raw_path))
            bases = [joined.lstrip("/")]

        unique: list[str] = []
        for base in bases:
            base = base.rstrip("/")
            if base and base != "." and base not in unique:
                unique.append(base)
        return unique

    def _lookup_record_path(self, base: str) -> str | None:
        candidates = [base]
        if not base.endswith(MARKDOWN_SUFFIXES):
            candidates += [
                f"{base}.md",
                f"{base}.mdx",
                f"{base}/index.md",
                f"{base}/README.md",
            ]
        for candidate in candidates:
            if candidate in self._records:
                return candidate
        return None

    def _lookup_container(self, base: str) -> ContainerPage | None:
        prefix = base
        for root in self.docs_roots:
            if prefix.startswith(f"{root}/"):
                prefix = prefix[len(root) + 1 :]
                break
        return self._containers.get(prefix)

    def _fuzzy_match(self, base: str) -> str | None:
        """Match by filename stem, ignoring case and numeric ordering prefixes."""
        ext = posixpath.splitext(base)[1].lower()
        if ext and ext not in MARKDOWN_SUFFIXES:
            return None
        wanted = _normalize_stem(base)
        if not wanted:
            return None
        matches = [
            path
            for path in self._records
            if _normalize_stem(path) == wanted
        ]
        if not matches:
            return None
        matches.sort(key=lambda p: (-_shared_dir_depth(p, base), p))
        return matches[0]

    def _target_for_record(
        self, record: SyncRecord, anchor: str | None
    ) -> ReferenceTarget:
        title = record.title or _normalize_stem(record.path)
        return ReferenceTarget(
            page_id=record.remote_page_id,
            title=title,
            anchor=anchor,
            url=self.page_url(record.remote_page_id, title, anchor),
        )
