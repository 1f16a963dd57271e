"""Sync report formatting functions.

- ``format_sync_report`` -- human-readable post-sync summary.
- ``report_to_json`` -- structured dict for machine consumers.

Both always carry the processed/created/updated/skipped/failed counts,
including for partially failed runs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SyncReport, SyncResult


def _section(title: str, results: list[SyncResult]) -> list[str]:
    if not results:
        return []
    lines = [f"{title}:"]
    for r in results:
        target = f" -> page {r.page_id}" if r.page_id else ""
        lines.append(f"  {r.path}{target}")
    lines.append("")
    return lines


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one result.
    Skipped documents are summarised by count only.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    counts = report.stats()
    lines: list[str] = []

    header = f"Sync report ({report.mode.value})"
    if report.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(
        f"Processed: {counts['processed']}, "
        f"Created: {counts['created']}, "
        f"Updated: {counts['updated']}, "
        f"Skipped: {counts['skipped']}, "
        f"Failed: {counts['failed']}"
    )
    lines.append("")

    lines.extend(_section("Created", report.created))
    lines.extend(_section("Updated", report.updated))

    if report.failed:
        lines.append("Failed:")
        for r in report.failed:
            lines.append(f"  {r.path}: {r.error}")
        lines.append("")

    warned = [r for r in report.results if r.warnings]
    if warned:
        lines.append("Warnings:")
        for r in warned:
            for warning in r.warnings:
                lines.append(f"  {r.path}: {warning}")
        lines.append("")

    created_containers = [c for c in report.containers if c.created]
    if created_containers:
        lines.append("Container pages created:")
        for c in created_containers:
            lines.append(f"  {c.category_prefix} -> {c.title}")
        lines.append("")

    if report.orphans_removed:
        lines.append("Orphaned records removed:")
        for path in report.orphans_removed:
            lines.append(f"  {path}")
        lines.append("")

    if counts["skipped"]:
        lines.append(f"Skipped: {counts['skipped']} documents (unchanged)")
        lines.append("")

    return "\n".join(lines).rstrip()


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with mode, timing, counts, and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "path": r.path,
            "title": r.title,
            "action": r.action.value,
            "success": r.success,
        }
        if r.page_id:
            entry["page_id"] = r.page_id
        if r.error:
            entry["error"] = r.error
        if r.warnings:
            entry["warnings"] = list(r.warnings)
        results_list.append(entry)

    return {
        "mode": report.mode.value,
        "dry_run": report.dry_run,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": report.stats(),
        "orphans_removed": list(report.orphans_removed),
        "containers": [
            c.model_dump() for c in report.containers if c.created
        ],
        "results": results_list,
    }
