"""Core sync engine that orchestrates a push or pull run.

The ``SyncEngine`` ties together the state store, hierarchy reconciler,
reference index, transformers, and media processor.  A push run:

1. Resolves the root page and pre-creates container pages for every
   category (parents before children).
2. Builds the reference index from the ledger and the containers.
3. Transforms and writes each changed document in a bounded worker pool,
   uploading diagrams and images once the page exists.
4. Re-renders pages whose links pointed at documents first created in
   this run.
5. Cleans up orphaned ledger entries whose remote page is gone.
6. Saves the ledger (also on failure, so finished documents stick).

A pull run fetches each known page, and rewrites the local file when the
remote version moved past the one last synced.

Error handling is per document: a single failure does not abort the run.
Only ``StateCorruption`` and other run-level errors propagate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from confluence_docsync.converters.markdown_to_storage import (
    TransformContext,
    markdown_to_storage,
)
from confluence_docsync.converters.storage_to_markdown import (
    ReverseContext,
    storage_to_markdown,
)
from confluence_docsync.core.async_utils import (
    gather_limited,
    run_limited,
    run_sync,
)
from confluence_docsync.core.interfaces import (
    ContentBackend,
    DiagramRenderer,
    MediaUploader,
)
from confluence_docsync.errors import RemoteReadFailure, StateCorruption
from confluence_docsync.file_handler import join_frontmatter, write_file
from confluence_docsync.sync.hierarchy import HierarchyReconciler
from confluence_docsync.sync.media import MediaProcessor
from confluence_docsync.sync.models import (
    Document,
    RemotePage,
    SyncAction,
    SyncMode,
    SyncReport,
    SyncResult,
)
from confluence_docsync.sync.references import ReferenceIndex
from confluence_docsync.sync.state import SyncStateStore

logger = logging.getLogger(__name__)


@dataclass
class _PushedPage:
    """What the deferred link pass needs to re-render one page."""

    document: Document
    context: TransformContext
    content: str
    page_id: str
    version: int
    parent_id: str | None
    unresolved_links: int


class SyncEngine:
    """Run push or pull passes for a set of documents.

    Args:
        backend: Remote content backend.
        project_root: Directory the document paths are relative to.
        base_url: Confluence site URL, used to build page links.
        space_key: Target space key.
        state_store: Ledger; reloaded from disk at the start of each run.
        uploader: Attachment uploader.  Defaults to *backend* when it
            can upload attachments.
        renderer: Diagram renderer; ``None`` leaves diagrams as code.
        root_page_title: Page under which the tree is mirrored.
        max_workers: Documents processed in parallel.
        diagram_languages: Fence languages treated as diagrams.
        docs_roots: Documentation root folders, for site-absolute links.
    """

    def __init__(
        self,
        backend: ContentBackend,
        project_root: Path,
        base_url: str,
        space_key: str,
        state_store: SyncStateStore,
        uploader: MediaUploader | None = None,
        renderer: DiagramRenderer | None = None,
        root_page_title: str | None = None,
        max_workers: int = 4,
        diagram_languages: tuple[str, ...] = ("mermaid",),
        docs_roots: tuple[str, ...] = ("docs",),
    ) -> None:
        self.backend = backend
        self.project_root = Path(project_root)
        self.base_url = base_url
        self.space_key = space_key
        self.state_store = state_store
        self.root_page_title = root_page_title
        self.max_workers = max(1, max_workers)
        self.diagram_languages = diagram_languages
        self.docs_roots = docs_roots

        if uploader is None and isinstance(backend, MediaUploader):
            uploader = backend
        self.media = (
            MediaProcessor(uploader, renderer, self.project_root)
            if uploader is not None
            else None
        )

    # ------------------------------------------------------------------
    # Main entry points
    # ------------------------------------------------------------------

    def sync_documents(
        self,
        documents: Iterable[Document],
        mode: SyncMode | str = SyncMode.PUSH,
        dry_run: bool = False,
    ) -> SyncReport:
        """Execute a sync run.

        Args:
            documents: Documents from a full scan.
            mode: ``push`` (local to remote) or ``pull`` (remote to local).
            dry_run: If ``True``, compute actions but change nothing.

        Returns:
            A ``SyncReport``; ``report.stats()`` gives the
            processed/created/updated/skipped/failed counts.

        Raises:
            StateCorruption: If the ledger cannot be read.
        """
        return asyncio.run(
            self.sync_documents_async(documents, mode, dry_run)
        )

    async def sync_documents_async(
        self,
        documents: Iterable[Document],
        mode: SyncMode | str = SyncMode.PUSH,
        dry_run: bool = False,
    ) -> SyncReport:
        """Async variant of ``sync_documents`` for callers with a loop."""
        mode = SyncMode(mode)
        documents = list(documents)
        started_at = datetime.now(timezone.utc).isoformat()
        self.state_store.load()

        logger.info(
            "Starting %s of %d document(s)%s",
            mode.value,
            len(documents),
            " (dry run)" if dry_run else "",
        )

        semaphore = asyncio.Semaphore(self.max_workers)
        if mode == SyncMode.PUSH:
            report = await self._push(
                documents, dry_run, semaphore, started_at
            )
        else:
            report = await self._pull(
                documents, dry_run, semaphore, started_at
            )
        logger.info("Sync finished: %s", report.stats())
        return report

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def _push(
        self,
        documents: list[Document],
        dry_run: bool,
        semaphore: asyncio.Semaphore,
        started_at: str,
    ) -> SyncReport:
        results: list[SyncResult] = []
        orphans_removed: list[str] = []
        root_id = await run_sync(self._resolve_root)
        hierarchy = HierarchyReconciler(self.backend, root_id, dry_run)
        try:
            await run_sync(
                hierarchy.resolve_all, [d.category for d in documents]
            )
        except Exception as exc:
            # Retried per document; those documents fail individually.
            logger.error("Hierarchy pre-pass failed: %s", exc)

        try:
            index = self._build_index(hierarchy)
            outcomes = await gather_limited(
                [
                    run_limited(
                        semaphore,
                        self._push_document,
                        doc,
                        hierarchy,
                        index,
                        dry_run,
                    )
                    for doc in documents
                ]
            )
            results = [result for result, _ in outcomes]
            pushed = [page for _, page in outcomes if page is not None]

            if not dry_run:
                results = await self._relink(
                    pushed, results, hierarchy, semaphore
                )
                orphans_removed = await run_sync(
                    self._cleanup_orphans, {d.path for d in documents}
                )
        finally:
            if not dry_run:
                self.state_store.save()

        return SyncReport(
            mode=SyncMode.PUSH,
            dry_run=dry_run,
            results=results,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
            orphans_removed=orphans_removed,
            containers=hierarchy.containers,
        )

    def _resolve_root(self) -> str | None:
        if not self.root_page_title:
            return None
        try:
            page = self.backend.find_page_by_title(self.root_page_title)
        except RemoteReadFailure as exc:
            logger.warning(
                "Root page lookup for '%s' failed: %s",
                self.root_page_title,
                exc,
            )
            return None
        if page is None:
            logger.warning(
                "Root page '%s' not found; pages go to the space root",
                self.root_page_title,
            )
            return None
        logger.info("Parent page found: %s (%s)", page.title, page.id)
        return page.id

    def _build_index(self, hierarchy: HierarchyReconciler) -> ReferenceIndex:
        return ReferenceIndex(
            self.base_url,
            self.space_key,
            records=self.state_store.records(),
            containers=hierarchy.containers,
            docs_roots=self.docs_roots,
        )

    def _push_document(
        self,
        doc: Document,
        hierarchy: HierarchyReconciler,
        index: ReferenceIndex,
        dry_run: bool,
    ) -> tuple[SyncResult, _PushedPage | None]:
        """Push one document.  Never raises except for ``StateCorruption``."""
        try:
            return self._push_one(doc, hierarchy, index, dry_run)
        except StateCorruption:
            raise
        except Exception as exc:
            logger.error(
                "Error pushing %s: %s",
                doc.path,
                exc,
                extra={"doc_path": doc.path},
            )
            return (
                SyncResult(
                    path=doc.path,
                    title=doc.title,
                    action=SyncAction.SKIP,
                    success=False,
                    error=str(exc),
                ),
                None,
            )

    def _push_one(
        self,
        doc: Document,
        hierarchy: HierarchyReconciler,
        index: ReferenceIndex,
        dry_run: bool,
    ) -> tuple[SyncResult, _PushedPage | None]:
        record = self.state_store.get(doc.path)
        if not self.state_store.needs_push(doc.path, doc.content_fingerprint):
            logger.debug("Skipping %s (no changes)", doc.path)
            return (
                SyncResult(
                    path=doc.path,
                    title=doc.title,
                    action=SyncAction.SKIP,
                    success=True,
                    page_id=record.remote_page_id if record else None,
                ),
                None,
            )

        parent_id = hierarchy.resolve(doc.category)
        context = TransformContext(
            source_path=doc.path,
            reference_index=index,
            diagram_languages=self.diagram_languages,
        )
        transformed = markdown_to_storage(doc.raw_content, context)
        warnings = list(transformed.warnings)

        existing = self._find_existing(doc)
        move_to = parent_id
        if existing is not None and (
            existing.id == parent_id or hierarchy.is_container(existing.id)
        ):
            # A page cannot become its own ancestor; update it where it is.
            move_to = existing.parent_id
            if existing.id != parent_id:
                warnings.append(
                    f"Title '{doc.title}' matches container page "
                    f"{existing.id}; updated it in place"
                )
        action = (
            SyncAction.UPDATE_REMOTE
            if existing is not None
            else SyncAction.CREATE_REMOTE
        )

        if dry_run:
            logger.info(
                "Would %s %s (parent %s)",
                "update" if existing else "create",
                doc.path,
                parent_id or "root",
            )
            return (
                SyncResult(
                    path=doc.path,
                    title=doc.title,
                    action=action,
                    success=True,
                    page_id=existing.id if existing else None,
                    warnings=warnings,
                ),
                None,
            )

        content = transformed.content
        if existing is None:
            page = self.backend.create_page(doc.title, content, parent_id)
        else:
            page = self.backend.update_page(
                existing.id,
                doc.title,
                content,
                existing.version + 1,
                move_to,
            )

        if transformed.extracted_media:
            if self.media is None:
                warnings.append("No attachment uploader; media not uploaded")
            else:
                outcome = self.media.process(
                    page.id, doc, transformed.extracted_media
                )
                warnings.extend(outcome.warnings)
                if outcome.diagram_attachments:
                    context = replace(
                        context,
                        diagram_attachments=outcome.diagram_attachments,
                    )
                    embedded = markdown_to_storage(doc.raw_content, context)
                    if embedded.content != content:
                        content = embedded.content
                        page = self.backend.update_page(
                            page.id,
                            doc.title,
                            content,
                            page.version + 1,
                            move_to,
                        )

        self.state_store.record_push(
            doc.path,
            page.id,
            page.version,
            move_to,
            doc.category,
            doc.content_fingerprint,
            title=doc.title,
            slug=doc.slug,
        )
        logger.info(
            "%s %s -> page %s (v%d)",
            "Updated" if existing else "Created",
            doc.path,
            page.id,
            page.version,
        )
        return (
            SyncResult(
                path=doc.path,
                title=doc.title,
                action=action,
                success=True,
                page_id=page.id,
                warnings=warnings,
            ),
            _PushedPage(
                document=doc,
                context=context,
                content=content,
                page_id=page.id,
                version=page.version,
                parent_id=move_to,
                unresolved_links=transformed.stats.links_unresolved,
            ),
        )

    def _find_existing(self, doc: Document) -> RemotePage | None:
        """Locate the remote page for *doc*: ledger id first, then title.

        Read failures count as "absent".
        """
        record = self.state_store.get(doc.path)
        if record is not None:
            try:
                return self.backend.get_page(
                    record.remote_page_id, ("version",)
                )
            except RemoteReadFailure as exc:
                logger.warning(
                    "Recorded page %s for %s unreadable: %s",
                    record.remote_page_id,
                    doc.path,
                    exc,
                )
        try:
            return self.backend.find_page_by_title(doc.title)
        except RemoteReadFailure as exc:
            logger.warning("Title lookup for %s failed: %s", doc.path, exc)
            return None

    async def _relink(
        self,
        pushed: list[_PushedPage],
        results: list[SyncResult],
        hierarchy: HierarchyReconciler,
        semaphore: asyncio.Semaphore,
    ) -> list[SyncResult]:
        """Re-render pages whose links could not be resolved on first pass.

        Links to documents created later in the same run only resolve once
        those pages have ids.
        """
        created = any(r.action == SyncAction.CREATE_REMOTE for r in results)
        candidates = [p for p in pushed if p.unresolved_links]
        if not created or not candidates:
            return results

        index = self._build_index(hierarchy)
        failures = await gather_limited(
            [
                run_limited(semaphore, self._relink_page, p, index)
                for p in candidates
            ]
        )
        failed = {path: error for path, error in failures if error}
        if not failed:
            return results
        return [
            r.model_copy(update={"success": False, "error": failed[r.path]})
            if r.path in failed
            else r
            for r in results
        ]

    def _relink_page(
        self, pushed: _PushedPage, index: ReferenceIndex
    ) -> tuple[str, str | None]:
        doc = pushed.document
        context = replace(pushed.context, reference_index=index)
        transformed = markdown_to_storage(doc.raw_content, context)
        if transformed.content == pushed.content:
            return doc.path, None
        try:
            page = self.backend.update_page(
                pushed.page_id,
                doc.title,
                transformed.content,
                pushed.version + 1,
                pushed.parent_id,
            )
        except Exception as exc:
            logger.error(
                "Error relinking %s: %s",
                doc.path,
                exc,
                extra={"doc_path": doc.path},
            )
            # Keep the page id but force a re-push on the next run.
            self.state_store.record_push(
                doc.path,
                pushed.page_id,
                pushed.version,
                pushed.parent_id,
                doc.category,
                "",
            )
            return doc.path, str(exc)
        self.state_store.record_push(
            doc.path,
            page.id,
            page.version,
            pushed.parent_id,
            doc.category,
            doc.content_fingerprint,
        )
        logger.debug("Relinked %s (v%d)", doc.path, page.version)
        return doc.path, None

    def _cleanup_orphans(self, current_paths: set[str]) -> list[str]:
        """Drop ledger entries whose document and remote page are both gone.

        Orphans whose page still exists (or cannot be checked) are kept.
        """
        removed: list[str] = []
        for path in sorted(self.state_store.find_orphans(current_paths)):
            record = self.state_store.get(path)
            if record is None:
                continue
            try:
                self.backend.get_page(record.remote_page_id, ("version",))
            except RemoteReadFailure as exc:
                if exc.not_found:
                    self.state_store.remove(path)
                    removed.append(path)
                    logger.info(
                        "Removed orphaned record %s (page %s is gone)",
                        path,
                        record.remote_page_id,
                    )
                else:
                    logger.warning(
                        "Keeping orphaned record %s: %s", path, exc
                    )
                continue
            logger.info(
                "Keeping orphaned record %s: page %s still exists",
                path,
                record.remote_page_id,
            )
        return removed

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def _pull(
        self,
        documents: list[Document],
        dry_run: bool,
        semaphore: asyncio.Semaphore,
        started_at: str,
    ) -> SyncReport:
        index = ReferenceIndex(
            self.base_url,
            self.space_key,
            records=self.state_store.records(),
            docs_roots=self.docs_roots,
        )
        try:
            results = await gather_limited(
                [
                    run_limited(
                        semaphore, self._pull_document, doc, index, dry_run
                    )
                    for doc in documents
                ]
            )
        finally:
            if not dry_run:
                self.state_store.save()

        return SyncReport(
            mode=SyncMode.PULL,
            dry_run=dry_run,
            results=results,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )

    def _pull_document(
        self, doc: Document, index: ReferenceIndex, dry_run: bool
    ) -> SyncResult:
        """Pull one document.  Never raises except for ``StateCorruption``."""
        try:
            return self._pull_one(doc, index, dry_run)
        except StateCorruption:
            raise
        except Exception as exc:
            logger.error(
                "Error pulling %s: %s",
                doc.path,
                exc,
                extra={"doc_path": doc.path},
            )
            return SyncResult(
                path=doc.path,
                title=doc.title,
                action=SyncAction.SKIP,
                success=False,
                error=str(exc),
            )

    def _pull_one(
        self, doc: Document, index: ReferenceIndex, dry_run: bool
    ) -> SyncResult:
        record = self.state_store.get(doc.path)

        def skip(reason: str) -> SyncResult:
            logger.debug("Skipping %s (%s)", doc.path, reason)
            return SyncResult(
                path=doc.path,
                title=doc.title,
                action=SyncAction.SKIP,
                success=True,
                page_id=record.remote_page_id if record else None,
            )

        if record is None:
            return skip("never pushed")

        try:
            page = self.backend.get_page(
                record.remote_page_id, ("body", "version", "attachments")
            )
        except RemoteReadFailure as exc:
            logger.warning(
                "Page %s for %s unreadable: %s",
                record.remote_page_id,
                doc.path,
                exc,
            )
            return skip("remote unreadable")

        if not self.state_store.needs_pull(doc.path, page.version):
            return skip("remote unchanged")

        if self.state_store.needs_push(doc.path, doc.content_fingerprint):
            logger.warning(
                "%s has local changes that the remote version overwrites",
                doc.path,
            )

        target = self.project_root / doc.path
        context = ReverseContext(
            target_path=None if dry_run else target,
            source_path=doc.path,
            attachments=list(page.attachments),
            downloader=None if dry_run else self.backend.download_attachment,
            reference_index=index,
        )
        converted = storage_to_markdown(page.storage_content, context)
        new_text = join_frontmatter(doc.frontmatter_raw, converted.content)

        if dry_run:
            logger.info("Would update %s from v%d", doc.path, page.version)
        else:
            write_file(target, new_text)
            self.state_store.record_pull(
                doc.path,
                page.version,
                SyncStateStore.content_fingerprint(new_text),
            )
            logger.info("Updated %s from page v%d", doc.path, page.version)

        return SyncResult(
            path=doc.path,
            title=doc.title,
            action=SyncAction.UPDATE_LOCAL,
            success=True,
            page_id=page.id,
            warnings=converted.warnings,
        )
