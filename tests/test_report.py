"""Tests for execution report rendering."""

from __future__ import annotations

from datetime import datetime, timezone

from src.dealsync.sync.report import render_file_report, summary_line
from src.dealsync.sync.schemas import FileOutcome, FileReport, InvocationResult, InvocationStatus

NOW = datetime(2024, 7, 1, 10, 0, tzinfo=timezone.utc)


class TestRenderFileReport:
    def test_completed_report(self):
        report = FileReport(
            source_key="delta_negocio_1.csv",
            outcome=FileOutcome.COMPLETED,
            total_records=50,
            processed_records=50,
            chunks_done=1,
            chunks_total=1,
            succeeded=40,
            unroutable=10,
        )

        text = render_file_report(report, now=NOW)

        assert text.startswith("Completed: delta_negocio_1.csv")
        assert "Uploaded: 40" in text
        assert "Without a matching contact: 10" in text
        assert "Success rate: 100.0%" in text
        assert "Progress:" not in text
        # Summer time in Madrid is UTC+2.
        assert "Run at: 01/07/2024 12:00:00 CEST" in text

    def test_partial_report_shows_progress(self):
        report = FileReport(
            source_key="delta_negocio_2.csv",
            outcome=FileOutcome.PARTIAL,
            total_records=12_000,
            processed_records=5_000,
            chunks_done=2,
            chunks_total=5,
            succeeded=4_900,
            failed=100,
        )

        text = render_file_report(report, now=NOW)

        assert text.startswith("Partially processed: delta_negocio_2.csv")
        assert "Progress: 5000/12000 records (41.7%)" in text
        assert "Chunks: 2/5" in text
        assert "Success rate: 98.0%" in text

    def test_failed_report_includes_message(self):
        report = FileReport(
            source_key="delta_negocio_3.csv",
            outcome=FileOutcome.FAILED,
            message="ObjectStoreError: get failed",
        )

        text = render_file_report(report, now=NOW)

        assert text.startswith("Failed: delta_negocio_3.csv")
        assert "ObjectStoreError: get failed" in text
        assert "Success rate: 0.0%" in text


class TestSummaryLine:
    def test_partial_summary(self):
        result = InvocationResult(
            status=InvocationStatus.PARTIAL,
            source_key="delta_negocio_2.csv",
            chunks_done=2,
            chunks_total=5,
            elapsed_ms=91_000,
            message="5000/12000 records processed",
            files=[
                FileReport(
                    source_key="delta_negocio_2.csv",
                    outcome=FileOutcome.PARTIAL,
                    succeeded=4_990,
                    unroutable=10,
                )
            ],
        )

        assert summary_line(result) == (
            "partial | delta_negocio_2.csv | chunks 2/5 | "
            "succeeded=4990 failed=0 unroutable=10 | 91000ms | 5000/12000 records processed"
        )

    def test_no_new_work_summary(self):
        result = InvocationResult(status=InvocationStatus.NO_NEW_WORK, message="no new files")

        assert summary_line(result) == (
            "no_new_work | succeeded=0 failed=0 unroutable=0 | 0ms | no new files"
        )
