"""Incremental Markdown to Confluence sync engine.

Keeps a tree of Markdown documents and pages in a Confluence space in step,
one direction per run.

Architecture
------------
Change detection is **ledger-based**: every pushed document has a
``SyncRecord`` holding the fingerprint of the file and the remote version
at the time of the last sync.  A push re-sends only documents whose
fingerprint changed; a pull rewrites only files whose page version moved
past the recorded one.

Modules:

- ``engine``     -- ``SyncEngine``: orchestrates a push or pull run.
- ``state``      -- ``SyncStateStore``: the persisted JSON ledger.
- ``hierarchy``  -- ``HierarchyReconciler``: container pages for folders.
- ``references`` -- ``ReferenceIndex``: internal link resolution.
- ``media``      -- ``MediaProcessor``: diagram rendering and uploads.
- ``migration``  -- one-shot import of a legacy ledger.
- ``models``     -- ``Document``, ``SyncRecord``, ``SyncResult``,
  ``SyncReport`` and friends.
- ``reporter``   -- human-readable and JSON report formatting.

Usage example
-------------
::

    from pathlib import Path
    from confluence_docsync.core import ConfluenceClient
    from confluence_docsync.scanner import DocumentScanner
    from confluence_docsync.sync import (
        SyncEngine, SyncStateStore, format_sync_report,
    )

    root = Path(".")
    engine = SyncEngine(
        backend=ConfluenceClient(config),
        project_root=root,
        base_url=config.base_url,
        space_key=config.space_key,
        state_store=SyncStateStore(root / ".docsync"),
    )
    documents = DocumentScanner(root).scan()

    preview = engine.sync_documents(documents, "push", dry_run=True)
    print(format_sync_report(preview))

    report = engine.sync_documents(documents, "push")
    print(report.stats())
"""

from .models import (
    ContainerPage,
    Document,
    ReferenceTarget,
    SyncAction,
    SyncMode,
    SyncRecord,
    SyncReport,
    SyncResult,
)
from .state import SyncStateStore
from .references import ReferenceIndex
from .hierarchy import HierarchyReconciler
from .engine import SyncEngine
from .migration import migrate_legacy_state
from .reporter import format_sync_report, report_to_json

__all__ = [
    "ContainerPage",
    "Document",
    "HierarchyReconciler",
    "ReferenceIndex",
    "ReferenceTarget",
    "SyncAction",
    "SyncEngine",
    "SyncMode",
    "SyncRecord",
    "SyncReport",
    "SyncResult",
    "SyncStateStore",
    "format_sync_report",
    "migrate_legacy_state",
    "report_to_json",
]
