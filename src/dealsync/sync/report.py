"""Human-readable execution reports.

One report per file per invocation, stored next to the sync state so an
operator can tell at a glance whether a long file is converging.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from src.dealsync.sync.schemas import FileOutcome, FileReport, InvocationResult

REPORT_TIMEZONE = ZoneInfo("Europe/Madrid")

_HEADLINES = {
    FileOutcome.COMPLETED: "Completed",
    FileOutcome.PARTIAL: "Partially processed",
    FileOutcome.INSUFFICIENT_TIME: "Deferred, not enough time left",
    FileOutcome.FAILED: "Failed",
}


def _percent(part: int, whole: int) -> str:
    if whole <= 0:
        return "0.0%"
    return f"{part / whole * 100:.1f}%"


def render_file_report(report: FileReport, now: datetime | None = None) -> str:
    """Render one file's report.

    Counters are for this invocation; progress lines are cumulative.
    """
    now = (now or datetime.now(REPORT_TIMEZONE)).astimezone(REPORT_TIMEZONE)
    attempted = report.succeeded + report.failed

    lines = [
        f"{_HEADLINES[report.outcome]}: {report.source_key}",
        "",
        f"Records in file: {report.total_records}",
        f"Uploaded: {report.succeeded}",
        f"Failed on upload: {report.failed}",
        f"Without a matching contact: {report.unroutable}",
        f"Rejected (no contact key): {report.rejected}",
        f"Success rate: {_percent(report.succeeded, attempted)}",
    ]

    if report.outcome != FileOutcome.COMPLETED and report.total_records:
        lines.extend(
            [
                "",
                f"Progress: {report.processed_records}/{report.total_records} records "
                f"({_percent(report.processed_records, report.total_records)})",
                f"Chunks: {report.chunks_done}/{report.chunks_total}",
            ]
        )

    if report.message:
        lines.extend(["", report.message])

    lines.extend(["", f"Run at: {now:%d/%m/%Y %H:%M:%S %Z}", ""])
    return "\n".join(lines)


def summary_line(result: InvocationResult) -> str:
    """One-line status for logs and the HTTP response body."""
    status = result.status.value
    counts = (
        f"succeeded={result.succeeded} failed={result.failed} "
        f"unroutable={result.unroutable}"
    )
    parts = [status]
    if result.source_key:
        parts.append(result.source_key)
    if result.chunks_total:
        parts.append(f"chunks {result.chunks_done}/{result.chunks_total}")
    parts.append(counts)
    parts.append(f"{result.elapsed_ms}ms")
    if result.message:
        parts.append(result.message)
    return " | ".join(parts)
