"""Invocation orchestrator: one stateless pass of the sync pipeline.

Each call of run():
1. Verifies both buckets are reachable (CONNECTIVITY_ERROR otherwise)
2. Takes the optional lease (LEASE_HELD if another invocation owns it)
3. Loads processed history and folds completed checkpoints into it
4. Builds the work queue (NO_NEW_WORK if empty)
5. Processes items in order while the budget allows; a failing file is
   reported and skipped, a partial file ends the pass
6. Saves per-file reports, records metrics, releases the lease

History is written as soon as a file completes, before its checkpoint is
archived, so an invocation killed in between never uploads the file again.
"""

from __future__ import annotations

import time
import uuid

import structlog

from src.dealsync.config import SyncConfig
from src.dealsync.core.errors import ConnectivityError, ObjectStoreError, SyncError
from src.dealsync.core.monitoring import record_outcomes, sync_partial_files
from src.dealsync.storage.checkpoints import CheckpointStore
from src.dealsync.storage.object_store import ObjectStore
from src.dealsync.sync.budget import Clock, ExecutionBudget
from src.dealsync.sync.engine import FileSynchronizer
from src.dealsync.sync.report import render_file_report, summary_line
from src.dealsync.sync.scheduler import build_queue, discover_source_keys
from src.dealsync.sync.schemas import (
    CheckpointStatus,
    FileOutcome,
    FileReport,
    InvocationResult,
    InvocationStatus,
    WorkItem,
)

logger = structlog.get_logger(__name__)


class SyncOrchestrator:
    """Runs one invocation against the source bucket, state bucket, and CRM.

    Args:
        source: ObjectStore holding the CSV drops.
        checkpoints: CheckpointStore over the state bucket.
        synchronizer: FileSynchronizer that processes one work item.
        config: Engine configuration.
        clock: Monotonic clock in seconds; injectable for tests.
        owner: Lease owner id; a random one is generated when omitted.
    """

    def __init__(
        self,
        source: ObjectStore,
        checkpoints: CheckpointStore,
        synchronizer: FileSynchronizer,
        config: SyncConfig,
        clock: Clock = time.monotonic,
        owner: str | None = None,
    ) -> None:
        self._source = source
        self._checkpoints = checkpoints
        self._synchronizer = synchronizer
        self._config = config
        self._clock = clock
        self._owner = owner or f"sync-{uuid.uuid4().hex[:12]}"

    async def run(self) -> InvocationResult:
        """Execute one invocation and return its status summary."""
        budget = ExecutionBudget.from_config(self._config, self._clock)

        try:
            await self._check_connectivity()
        except ConnectivityError as exc:
            logger.error("orchestrator.connectivity_error", error=str(exc))
            return self._finish(
                InvocationResult(status=InvocationStatus.CONNECTIVITY_ERROR, message=str(exc)),
                budget,
            )

        if self._config.lease_enabled:
            acquired = await self._checkpoints.acquire_lease(
                self._owner, self._config.effective_lease_ttl_ms
            )
            if not acquired:
                return self._finish(
                    InvocationResult(
                        status=InvocationStatus.LEASE_HELD,
                        message="another invocation holds the sync lease",
                    ),
                    budget,
                )

        try:
            result = await self._process(budget)
        finally:
            if self._config.lease_enabled:
                await self._checkpoints.release_lease(self._owner)

        return self._finish(result, budget)

    async def _check_connectivity(self) -> None:
        source_ok = await self._source.ping()
        state_ok = await self._checkpoints.ping()
        if not (source_ok and state_ok):
            failed = [
                name
                for name, ok in (("source", source_ok), ("state", state_ok))
                if not ok
            ]
            raise ConnectivityError(f"unreachable bucket(s): {', '.join(failed)}")

    async def _process(self, budget: ExecutionBudget) -> InvocationResult:
        try:
            history = await self._checkpoints.load_history()
            partials = await self._reconcile(history)
            discovered = await discover_source_keys(
                self._source, self._config.source_prefix, self._config.source_suffix
            )
        except ObjectStoreError as exc:
            logger.error("orchestrator.state_unavailable", error=str(exc))
            return InvocationResult(status=InvocationStatus.CONNECTIVITY_ERROR, message=str(exc))
        except SyncError as exc:
            logger.error("orchestrator.state_unreadable", error=str(exc))
            return InvocationResult(status=InvocationStatus.PROCESSING_ERROR, message=str(exc))

        queue = build_queue(discovered, history, partials)
        if not queue:
            logger.info("orchestrator.no_new_work", history=len(history))
            return InvocationResult(status=InvocationStatus.NO_NEW_WORK, message="no new files")

        reports: list[FileReport] = []
        for position, item in enumerate(queue):
            if budget.should_stop():
                logger.warning(
                    "orchestrator.budget_exhausted",
                    remaining_items=len(queue) - position,
                    remaining_ms=round(budget.remaining_ms()),
                )
                break

            report = await self._sync_one(item, budget, history)
            reports.append(report)
            await self._save_report(report)

            if report.outcome in (FileOutcome.PARTIAL, FileOutcome.INSUFFICIENT_TIME):
                break

        await self._update_partial_gauge()
        return self._summarize(reports, deferred=len(queue) - len(reports))

    async def _reconcile(self, history: list[str]) -> list[WorkItem]:
        """Move completed or already-processed checkpoints into history.

        Returns work items for the checkpoints that are still in progress.
        """
        items: list[WorkItem] = []
        for checkpoint in await self._checkpoints.list_progress():
            key = checkpoint.source_key
            if checkpoint.status == CheckpointStatus.COMPLETED or key in history:
                if key not in history:
                    history.append(key)
                    await self._checkpoints.save_history(history)
                    logger.info("orchestrator.reconciled_completed", source_key=key)
                await self._checkpoints.archive_progress(key)
                continue
            items.append(checkpoint.to_work_item())
        return items

    async def _sync_one(
        self,
        item: WorkItem,
        budget: ExecutionBudget,
        history: list[str],
    ) -> FileReport:
        key = item.source_key
        try:
            report, has_checkpoint = await self._synchronizer.sync_file(item, budget)
        except Exception as exc:
            logger.exception("orchestrator.file_failed", source_key=key, error=str(exc))
            return FileReport(
                source_key=key,
                outcome=FileOutcome.FAILED,
                message=f"{type(exc).__name__}: {exc}",
            )

        if report.outcome == FileOutcome.COMPLETED:
            history.append(key)
            try:
                await self._checkpoints.save_history(history)
                if has_checkpoint:
                    await self._checkpoints.archive_progress(key)
            except SyncError as exc:
                # Uploads are done; a completed checkpoint, if any, is folded
                # into history by the next invocation's reconcile step.
                logger.error("orchestrator.completion_not_recorded", source_key=key, error=str(exc))
                return report.model_copy(
                    update={
                        "outcome": FileOutcome.FAILED,
                        "message": f"uploaded but not recorded: {type(exc).__name__}: {exc}",
                    }
                )
            logger.info(
                "orchestrator.file_completed",
                source_key=key,
                succeeded=report.succeeded,
                failed=report.failed,
                unroutable=report.unroutable,
                elapsed_ms=report.elapsed_ms,
            )
        return report

    async def _save_report(self, report: FileReport) -> None:
        try:
            await self._checkpoints.save_report(report.source_key, render_file_report(report))
        except ObjectStoreError as exc:
            logger.error("orchestrator.report_not_saved", source_key=report.source_key, error=str(exc))

    async def _update_partial_gauge(self) -> None:
        try:
            partials = await self._checkpoints.list_progress()
        except SyncError as exc:
            logger.warning("orchestrator.partial_count_failed", error=str(exc))
            return
        sync_partial_files.set(
            sum(1 for cp in partials if cp.status == CheckpointStatus.PROCESSING)
        )

    @staticmethod
    def _summarize(reports: list[FileReport], deferred: int) -> InvocationResult:
        """Pick the invocation status from the per-file reports.

        Precedence: partial, then processing error, then completed. Nothing
        done at all because of the budget is an insufficient-time retry.
        """
        partial = next((r for r in reports if r.outcome == FileOutcome.PARTIAL), None)
        failed = [r for r in reports if r.outcome == FileOutcome.FAILED]
        completed = [r for r in reports if r.outcome == FileOutcome.COMPLETED]
        notes = f"{deferred} file(s) left for the next invocation" if deferred else None

        if partial is not None:
            return InvocationResult(
                status=InvocationStatus.PARTIAL,
                source_key=partial.source_key,
                chunks_done=partial.chunks_done,
                chunks_total=partial.chunks_total,
                message=(
                    f"{partial.processed_records}/{partial.total_records} records processed"
                ),
                files=reports,
            )
        if failed:
            first = failed[0]
            return InvocationResult(
                status=InvocationStatus.PROCESSING_ERROR,
                source_key=first.source_key,
                message=first.message,
                files=reports,
            )
        if completed:
            last = completed[-1]
            return InvocationResult(
                status=InvocationStatus.COMPLETED,
                source_key=last.source_key,
                chunks_done=last.chunks_done,
                chunks_total=last.chunks_total,
                message=f"{len(completed)} file(s) completed" + (f"; {notes}" if notes else ""),
                files=reports,
            )
        return InvocationResult(
            status=InvocationStatus.INSUFFICIENT_TIME_RETRY,
            source_key=reports[0].source_key if reports else None,
            message=notes or "not enough time to start",
            files=reports,
        )

    @staticmethod
    def _finish(result: InvocationResult, budget: ExecutionBudget) -> InvocationResult:
        result = result.model_copy(update={"elapsed_ms": round(budget.elapsed_ms())})
        record_outcomes(
            succeeded=result.succeeded,
            failed=result.failed,
            unroutable=result.unroutable,
            rejected=sum(f.rejected for f in result.files),
        )
        logger.info(
            "orchestrator.invocation_finished",
            status=result.status.value,
            summary=summary_line(result),
        )
        return result
