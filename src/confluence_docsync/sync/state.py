"""Sync state persistence layer.

Manages the JSON ledger that maps local document paths to remote page
identities in the ``.docsync/`` directory.  The ledger drives change
detection (``needs_push`` / ``needs_pull``) and orphan cleanup.

Key design choices:

* **Atomic writes** -- ``save()`` writes to a temp file then calls
  ``os.replace()`` so a crash never leaves a half-written ledger.
* **Content hashing** -- ``content_fingerprint()`` normalises content (BOM,
  line-endings, trailing whitespace) before SHA-256 so fingerprints are
  stable across platforms.
* **Fail loudly** -- an unreadable or invalid ledger raises
  ``StateCorruption`` instead of silently starting empty, which would force
  a full re-push.
* **Thread-safe mutation** -- workers update records concurrently, so every
  mutator holds a lock.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from confluence_docsync.errors import StateCorruption
from confluence_docsync.sync.models import SyncRecord

logger = logging.getLogger(__name__)

STATE_FILENAME = "sync-state.json"
STATE_FORMAT_VERSION = 1


class SyncStateStore:
    """Load, save, query, and mutate the sync ledger.

    Args:
        state_dir: Directory holding the ledger (typically ``.docsync/``).
        filename: Ledger filename inside *state_dir*.
    """

    def __init__(
        self, state_dir: Path, filename: str = STATE_FILENAME
    ) -> None:
        self._state_dir = Path(state_dir)
        self._filename = filename
        self._lock = threading.Lock()
        self._records: dict[str, SyncRecord] = {}
        self._last_sync: str | None = None

    @property
    def path(self) -> Path:
        return self._state_dir / self._filename

    @property
    def last_sync(self) -> str | None:
        return self._last_sync

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load the ledger from disk.

        A missing file yields an empty ledger (first run).

        Raises:
            StateCorruption: If the file exists but cannot be parsed or
                does not match the expected schema.
        """
        path = self.path
        if not path.exists():
            logger.debug("No sync state at %s, starting empty", path)
            with self._lock:
                self._records = {}
                self._last_sync = None
            return

        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateCorruption(
                f"Cannot read sync state {path}: {exc}"
            ) from exc

        if not isinstance(data, dict) or not isinstance(
            data.get("pages", {}), dict
        ):
            raise StateCorruption(
                f"Sync state {path} has an unexpected layout"
            )

        records: dict[str, SyncRecord] = {}
        for key, raw in data.get("pages", {}).items():
            if not isinstance(raw, dict):
                raise StateCorruption(
                    f"Sync state {path}: entry {key!r} is not an object"
                )
            try:
                records[key] = SyncRecord(**{"path": key, **raw})
            except ValidationError as exc:
                raise StateCorruption(
                    f"Sync state {path}: invalid entry {key!r}: {exc}"
                ) from exc

        with self._lock:
            self._records = records
            self._last_sync = data.get("last_sync")
        logger.debug("Loaded %d sync records from %s", len(records), path)

    def save(self) -> None:
        """Persist the ledger to disk atomically.

        Writes to a temporary file in the same directory then atomically
        replaces the target.  Creates the state directory if needed and
        stamps ``last_sync`` with the current UTC time.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._last_sync = datetime.now(timezone.utc).isoformat()
            payload = {
                "version": STATE_FORMAT_VERSION,
                "last_sync": self._last_sync,
                "pages": {
                    path: record.model_dump(exclude={"path"})
                    for path, record in sorted(self._records.items())
                },
            }

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, path: str) -> SyncRecord | None:
        """Return the record for *path*, or ``None`` if absent."""
        with self._lock:
            return self._records.get(path)

    def records(self) -> dict[str, SyncRecord]:
        """Return a snapshot of all records keyed by path."""
        with self._lock:
            return dict(self._records)

    def needs_push(self, path: str, fingerprint: str) -> bool:
        """True if *path* has never been pushed or its content changed."""
        record = self.get(path)
        if record is None:
            return True
        return record.last_synced_fingerprint != fingerprint

    def needs_pull(self, path: str, remote_version: int) -> bool:
        """True if the remote page moved past the version last synced."""
        record = self.get(path)
        if record is None:
            return True
        return remote_version > record.remote_version

    def find_orphans(self, current_paths: set[str]) -> set[str]:
        """Return ledger paths that are absent from *current_paths*."""
        with self._lock:
            return set(self._records) - set(current_paths)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record_push(
        self,
        path: str,
        remote_page_id: str,
        remote_version: int,
        parent_id: str | None,
        category: str,
        fingerprint: str,
        title: str | None = None,
        slug: str | None = None,
    ) -> SyncRecord:
        """Upsert the record for *path* after a successful push.

        ``remote_version`` never decreases: the stored value is the max of
        the previous and the new one.
        """
        with self._lock:
            previous = self._records.get(path)
            version = remote_version
            if previous is not None:
                version = max(previous.remote_version, remote_version)
            record = SyncRecord(
                path=path,
                remote_page_id=remote_page_id,
                title=title
                if title is not None
                else (previous.title if previous else ""),
                category=category,
                remote_version=max(version, 1),
                remote_parent_id=parent_id,
                last_synced_fingerprint=fingerprint,
                last_synced_at=datetime.now(timezone.utc).isoformat(),
                slug=slug
                if slug is not None
                else (previous.slug if previous else None),
            )
            self._records[path] = record
            return record

    def record_pull(
        self, path: str, remote_version: int, fingerprint: str
    ) -> SyncRecord:
        """Update the record for *path* after a successful pull.

        Raises:
            KeyError: If *path* has no record (pull only targets known
                pages).
        """
        with self._lock:
            previous = self._records[path]
            record = previous.model_copy(
                update={
                    "remote_version": max(
                        previous.remote_version, remote_version
                    ),
                    "last_synced_fingerprint": fingerprint,
                    "last_synced_at": datetime.now(
                        timezone.utc
                    ).isoformat(),
                }
            )
            self._records[path] = record
            return record

    def remove(self, path: str) -> None:
        """Remove *path* from the ledger.  No-op if not present."""
        with self._lock:
            self._records.pop(path, None)

    # ------------------------------------------------------------------
    # Content hashing
    # ------------------------------------------------------------------

    @staticmethod
    def content_fingerprint(content: str) -> str:
        """Compute a normalised SHA-256 hex digest of *content*.

        Normalisation steps (applied in order):

        1. Strip BOM (``\\ufeff``).
        2. Replace ``\\r\\n`` with ``\\n``.
        3. Right-strip each line.
        4. Strip trailing empty lines.

        The result is encoded as UTF-8 before hashing.
        """
        text = content.lstrip("\ufeff")
        text = text.replace("\r\n", "\n")
        lines = [line.rstrip() for line in text.split("\n")]
        while lines and lines[-1] == "":
            lines.pop()
        normalised = "\n".join(lines)
        return hashlib.sha256(normalised.encode("utf-8")).hexdigest()
