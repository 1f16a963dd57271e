"""Tests for sync reporter formatting functions.

Covers:
- format_sync_report with various result combinations
- report_to_json structure and counts
- Empty report (all skipped) produces concise output
"""

from __future__ import annotations

import json

from confluence_docsync.sync.models import (
    ContainerPage,
    SyncAction,
    SyncMode,
    SyncReport,
    SyncResult,
)
from confluence_docsync.sync.reporter import (
    format_sync_report,
    report_to_json,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_report(
    results: list[SyncResult] | None = None,
    dry_run: bool = False,
    mode: SyncMode = SyncMode.PUSH,
    **extra,
) -> SyncReport:
    return SyncReport(
        mode=mode,
        dry_run=dry_run,
        results=results or [],
        started_at="2026-02-07T10:00:00Z",
        completed_at="2026-02-07T10:01:00Z",
        **extra,
    )


def _result(
    action: SyncAction,
    path: str = "docs/intro.md",
    success: bool = True,
    page_id: str | None = "101",
    error: str | None = None,
    warnings: list[str] | None = None,
) -> SyncResult:
    return SyncResult(
        path=path,
        title="Intro",
        action=action,
        success=success,
        page_id=page_id,
        error=error,
        warnings=warnings or [],
    )


# ---------------------------------------------------------------------------
# SyncReport counts
# ---------------------------------------------------------------------------


class TestStats:
    def test_processed_is_created_plus_updated(self):
        report = _make_report(
            [
                _result(SyncAction.CREATE_REMOTE, "docs/a.md"),
                _result(SyncAction.UPDATE_REMOTE, "docs/b.md"),
                _result(SyncAction.SKIP, "docs/c.md"),
                _result(
                    SyncAction.UPDATE_REMOTE,
                    "docs/d.md",
                    success=False,
                    error="boom",
                ),
            ]
        )
        assert report.stats() == {
            "processed": 2,
            "created": 1,
            "updated": 1,
            "skipped": 1,
            "failed": 1,
        }

    def test_pull_updates_count_as_updated(self):
        report = _make_report(
            [_result(SyncAction.UPDATE_LOCAL)], mode=SyncMode.PULL
        )
        assert report.stats()["updated"] == 1
        assert report.stats()["processed"] == 1

    def test_summary(self):
        report = _make_report([_result(SyncAction.SKIP)], dry_run=True)
        text = report.summary()
        assert "(dry run)" in text
        assert "Skipped:   1" in text
        assert "Total:     1" in text


# ---------------------------------------------------------------------------
# format_sync_report
# ---------------------------------------------------------------------------


class TestFormatSyncReport:
    def test_header(self):
        text = format_sync_report(_make_report(mode=SyncMode.PULL))
        assert text.startswith("Sync report (pull)")
        assert "DRY RUN" not in text
        assert "Completed: 2026-02-07T10:01:00Z" in text

    def test_dry_run_indicator(self):
        assert "DRY RUN" in format_sync_report(_make_report(dry_run=True))

    def test_counts_line(self):
        report = _make_report(
            [
                _result(SyncAction.CREATE_REMOTE, "docs/a.md"),
                _result(SyncAction.SKIP, "docs/b.md"),
            ]
        )
        text = format_sync_report(report)
        assert (
            "Processed: 1, Created: 1, Updated: 0, Skipped: 1, Failed: 0"
            in text
        )

    def test_sections(self):
        report = _make_report(
            [
                _result(SyncAction.CREATE_REMOTE, "docs/new.md"),
                _result(SyncAction.UPDATE_REMOTE, "docs/changed.md", page_id="7"),
                _result(
                    SyncAction.CREATE_REMOTE,
                    "docs/bad.md",
                    success=False,
                    page_id=None,
                    error="400 Bad Request",
                ),
            ]
        )
        text = format_sync_report(report)
        assert "Created:\n  docs/new.md -> page 101" in text
        assert "Updated:\n  docs/changed.md -> page 7" in text
        assert "Failed:\n  docs/bad.md: 400 Bad Request" in text

    def test_warnings_listed(self):
        report = _make_report(
            [
                _result(
                    SyncAction.UPDATE_REMOTE,
                    warnings=["Unresolved link: ./missing.md"],
                )
            ]
        )
        assert "docs/intro.md: Unresolved link: ./missing.md" in (
            format_sync_report(report)
        )

    def test_containers_and_orphans(self):
        report = _make_report(
            containers=[
                ContainerPage(
                    category_prefix="guide",
                    remote_page_id="5",
                    title="Guide",
                    created=True,
                ),
                ContainerPage(
                    category_prefix="api", remote_page_id="6", title="Api"
                ),
            ],
            orphans_removed=["docs/old.md"],
        )
        text = format_sync_report(report)
        assert "Container pages created:\n  guide -> Guide" in text
        assert "api -> Api" not in text
        assert "Orphaned records removed:\n  docs/old.md" in text

    def test_all_skipped_is_concise(self):
        report = _make_report(
            [_result(SyncAction.SKIP, f"docs/{i}.md") for i in range(3)]
        )
        text = format_sync_report(report)
        assert "Skipped: 3 documents (unchanged)" in text
        assert "Created:\n" not in text
        assert "Failed:\n" not in text
        assert not text.endswith("\n")


# ---------------------------------------------------------------------------
# report_to_json
# ---------------------------------------------------------------------------


class TestReportToJson:
    def test_structure(self):
        report = _make_report(
            [
                _result(SyncAction.CREATE_REMOTE, warnings=["w"]),
                _result(
                    SyncAction.UPDATE_REMOTE,
                    "docs/b.md",
                    success=False,
                    page_id=None,
                    error="409",
                ),
            ],
            orphans_removed=["docs/gone.md"],
        )

        data = report_to_json(report)

        assert data["mode"] == "push"
        assert data["dry_run"] is False
        assert data["counts"]["created"] == 1
        assert data["counts"]["failed"] == 1
        assert data["orphans_removed"] == ["docs/gone.md"]
        first, second = data["results"]
        assert first == {
            "path": "docs/intro.md",
            "title": "Intro",
            "action": "create_remote",
            "success": True,
            "page_id": "101",
            "warnings": ["w"],
        }
        assert "page_id" not in second
        assert second["error"] == "409"

    def test_serialisable(self):
        report = _make_report(
            [_result(SyncAction.SKIP)],
            containers=[
                ContainerPage(
                    category_prefix="a",
                    remote_page_id="1",
                    title="A",
                    created=True,
                )
            ],
        )
        data = json.loads(json.dumps(report_to_json(report)))
        assert data["containers"] == [
            {
                "category_prefix": "a",
                "remote_page_id": "1",
                "title": "A",
                "created": True,
            }
        ]
