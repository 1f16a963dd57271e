"""One-shot migration of the sync ledger from its legacy location.

Older installs kept the ledger at ``.docusaurus/sync-state.json`` with
camelCase entries (``confluenceId``, ``version``, ``parentId`` ...).  This
module rewrites it into the current ``.docsync/sync-state.json`` layout and
keeps a ``.bak`` copy of the legacy file.  It runs once at startup, before
``SyncStateStore`` loads, and is a no-op afterwards.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from confluence_docsync.errors import StateCorruption
from confluence_docsync.sync.state import (
    STATE_FILENAME,
    STATE_FORMAT_VERSION,
)

logger = logging.getLogger(__name__)

# Legacy key -> current key
_LEGACY_FIELD_MAP: dict[str, str] = {
    "confluenceId": "remote_page_id",
    "title": "title",
    "category": "category",
    "slug": "slug",
    "version": "remote_version",
    "parentId": "remote_parent_id",
    "lastModified": "last_synced_at",
}


def _convert_entry(entry: dict) -> dict | None:
    """Map one legacy entry onto the current record fields.

    Entries without a page id cannot be used for anything and are dropped.
    The legacy ledger tracked timestamps rather than fingerprints, so
    migrated records carry no fingerprint and are re-pushed once.
    """
    if "remote_page_id" in entry:
        return dict(entry)
    if not entry.get("confluenceId"):
        return None
    converted: dict = {}
    for legacy_key, key in _LEGACY_FIELD_MAP.items():
        value = entry.get(legacy_key)
        if value is not None:
            converted[key] = value
    converted["remote_page_id"] = str(converted["remote_page_id"])
    converted["remote_version"] = max(
        int(converted.get("remote_version") or 1), 1
    )
    return converted


def migrate_legacy_state(
    project_root: Path,
    legacy_dir: str = ".docusaurus",
    state_dir: str = ".docsync",
    filename: str = STATE_FILENAME,
) -> bool:
    """Move a legacy ledger into the current state directory.

    Args:
        project_root: Project root holding both directories.
        legacy_dir: Legacy state directory name.
        state_dir: Current state directory name.
        filename: Ledger filename (same in both locations).

    Returns:
        ``True`` if a migration happened, ``False`` if there was nothing
        to migrate or the new ledger already exists.

    Raises:
        StateCorruption: If the legacy ledger cannot be parsed.
    """
    legacy_path = Path(project_root) / legacy_dir / filename
    target_dir = Path(project_root) / state_dir
    target_path = target_dir / filename

    if target_path.exists() or not legacy_path.exists():
        return False

    try:
        data = json.loads(legacy_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StateCorruption(
            f"Cannot read legacy sync state {legacy_path}: {exc}"
        ) from exc

    pages = data.get("pages", {}) if isinstance(data, dict) else None
    if not isinstance(pages, dict):
        raise StateCorruption(
            f"Legacy sync state {legacy_path} has an unexpected layout"
        )

    migrated: dict[str, dict] = {}
    for path, entry in pages.items():
        if not isinstance(entry, dict):
            continue
        converted = _convert_entry(entry)
        if converted is None:
            logger.warning(
                "Dropping legacy state entry without page id: %s", path
            )
            continue
        migrated[path] = converted

    payload = {
        "version": STATE_FORMAT_VERSION,
        "last_sync": data.get("lastSync"),
        "pages": migrated,
    }

    target_dir.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(target_dir), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        os.replace(tmp_path, target_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise

    backup = legacy_path.with_name(legacy_path.name + ".bak")
    os.replace(legacy_path, backup)
    logger.info(
        "Migrated %d sync records from %s to %s (backup: %s)",
        len(migrated),
        legacy_path,
        target_path,
        backup,
    )
    return True
