"""Pydantic models for the incremental sync engine.

Defines the core data contracts used across all sync modules:

- ``Document``: A local Markdown document as produced by the scanner.
- ``SyncRecord``: Persisted per-path ledger entry.
- ``ContainerPage``: Run-scoped remote "folder" page.
- ``ReferenceTarget``: A resolved internal link.
- ``RemotePage`` / ``AttachmentRef``: Remote backend payloads.
- ``SyncAction``: Enum of possible per-document operations.
- ``SyncResult``: Outcome of syncing one document.
- ``SyncReport``: Aggregate results for a full sync run.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncMode(str, Enum):
    """Direction of a sync run."""

    PUSH = "push"
    PULL = "pull"


class SyncAction(str, Enum):
    """Possible sync operations for one document."""

    SKIP = "skip"
    CREATE_REMOTE = "create_remote"
    UPDATE_REMOTE = "update_remote"
    UPDATE_LOCAL = "update_local"


class Document(BaseModel):
    """A local content unit, immutable for one sync pass.

    Attributes:
        path: POSIX path relative to the project root
            (e.g. ``docs/guide/intro.md``).
        title: Page title (frontmatter ``title``, first H1, or file stem).
        frontmatter: Parsed frontmatter mapping, in file order.
        frontmatter_raw: The verbatim frontmatter block including its
            ``---`` fences, or ``""`` when the file has none.
        raw_content: Markdown body without the frontmatter block.
        category: Slash-delimited folder path under the docs root.
        content_fingerprint: Normalised SHA-256 of the whole file.
        has_embedded_media: True if the body references images or diagrams.
        slug: Optional frontmatter ``slug``.
        last_modified: File mtime at scan time.
    """

    path: str
    title: str
    frontmatter: dict[str, Any] = Field(default_factory=dict)
    frontmatter_raw: str = ""
    raw_content: str = ""
    category: str = ""
    content_fingerprint: str = ""
    has_embedded_media: bool = False
    slug: str | None = None
    last_modified: float | None = None

    model_config = {"frozen": True}


class SyncRecord(BaseModel):
    """Persisted sync state for one document path.

    Attributes:
        path: Key; at most one record per path.
        remote_page_id: Confluence page id.
        title: Remote page title at last sync.
        category: Category path at last sync.
        remote_version: Remote version at last sync; never decreases.
        remote_parent_id: Parent page id at last sync.
        last_synced_fingerprint: Local fingerprint at last sync.
        last_synced_at: ISO 8601 timestamp of last successful sync.
        slug: Optional slug used for link resolution.
    """

    path: str
    remote_page_id: str
    title: str = ""
    category: str = ""
    remote_version: int = Field(default=1, ge=1)
    remote_parent_id: str | None = None
    last_synced_fingerprint: str | None = None
    last_synced_at: str | None = None
    slug: str | None = None

    model_config = {"frozen": True}


class ContainerPage(BaseModel):
    """A remote page mirroring one local category-path prefix."""

    category_prefix: str
    remote_page_id: str
    title: str
    created: bool = False

    model_config = {"frozen": True}


class ReferenceTarget(BaseModel):
    """Resolved internal link."""

    page_id: str
    title: str
    anchor: str | None = None
    url: str

    model_config = {"frozen": True}


class AttachmentRef(BaseModel):
    """Attachment metadata as reported by the remote backend.

    Attributes:
        id: Attachment content id.
        title: Attachment filename.
        version_when: Timestamp of the attachment's current version.
        download_url: Absolute download URL, if known.
        media_type: MIME type, if known.
    """

    id: str = ""
    title: str
    version_when: datetime | None = None
    download_url: str | None = None
    media_type: str | None = None

    model_config = {"frozen": True}


class RemotePage(BaseModel):
    """A remote page as returned by the content backend."""

    id: str
    title: str
    version: int = 1
    storage_content: str = ""
    parent_id: str | None = None
    attachments: list[AttachmentRef] = Field(default_factory=list)

    model_config = {"frozen": True}


class SyncResult(BaseModel):
    """Result of syncing one document.

    Attributes:
        path: Document path.
        title: Document or page title.
        action: Sync action that was performed (or would be, in dry-run).
        success: Whether the sync operation succeeded.
        page_id: Remote page id, when known.
        error: Error message if the operation failed.
        warnings: Non-fatal transform or media warnings.
    """

    path: str
    title: str = ""
    action: SyncAction
    success: bool
    page_id: str | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for a full sync run.

    Attributes:
        mode: ``push`` or ``pull``.
        dry_run: Whether this was a dry-run (no changes applied).
        results: List of individual sync results.
        started_at: ISO 8601 timestamp when sync started.
        completed_at: ISO 8601 timestamp when sync completed.
        orphans_removed: Paths dropped from the ledger by orphan cleanup.
        containers: Container pages resolved during the run.
    """

    mode: SyncMode
    dry_run: bool = False
    results: list[SyncResult] = Field(default_factory=list)
    started_at: str
    completed_at: str | None = None
    orphans_removed: list[str] = Field(default_factory=list)
    containers: list[ContainerPage] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def created(self) -> list[SyncResult]:
        """Successful results where action is CREATE_REMOTE."""
        return [
            r
            for r in self.results
            if r.success and r.action == SyncAction.CREATE_REMOTE
        ]

    @property
    def updated(self) -> list[SyncResult]:
        """Successful results where action updated either side."""
        return [
            r
            for r in self.results
            if r.success
            and r.action
            in (SyncAction.UPDATE_REMOTE, SyncAction.UPDATE_LOCAL)
        ]

    @property
    def skipped(self) -> list[SyncResult]:
        """Successful results where action is SKIP."""
        return [
            r
            for r in self.results
            if r.success and r.action == SyncAction.SKIP
        ]

    @property
    def failed(self) -> list[SyncResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    @property
    def processed(self) -> list[SyncResult]:
        """Results whose action was carried out: created plus updated."""
        return self.created + self.updated

    def stats(self) -> dict[str, int]:
        """Return the ``processed/created/updated/skipped/failed`` counts."""
        return {
            "processed": len(self.processed),
            "created": len(self.created),
            "updated": len(self.updated),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }

    def summary(self) -> str:
        """Format a human-readable summary of the sync run.

        Returns:
            Multi-line summary string with counts by action.
        """
        counts = self.stats()
        lines = [
            f"Sync report ({self.mode.value})"
            + (" (dry run)" if self.dry_run else ""),
            f"  Processed: {counts['processed']}",
            f"  Created:   {counts['created']}",
            f"  Updated:   {counts['updated']}",
            f"  Skipped:   {counts['skipped']}",
            f"  Failed:    {counts['failed']}",
            f"  Total:     {len(self.results)}",
        ]
        return "\n".join(lines)
