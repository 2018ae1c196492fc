"""Per-file synchronization: fetch, resolve, upload in chunks, checkpoint.

State machine for one file within one invocation:

    NEW --(total > large_file_threshold)--> CHUNKING --> CHUNKING | PARTIAL | COMPLETED
    NEW --(small file)--> DIRECT_UPLOAD --> COMPLETED | PARTIAL | FAILED

A small file is treated as a single chunk. PARTIAL is not terminal: the
file comes back as a resuming work item, is re-read and re-resolved, and
only records [processedRecords, total) are uploaded.

Progress accounting is in record indexes. Every record below
processedRecords is counted exactly once as succeeded, failed, or
unroutable, so the counters always sum to processedRecords.

Write order at a chunk boundary is marker first, checkpoint second; on
resume the more advanced of the two wins.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from src.dealsync.config import SyncConfig
from src.dealsync.storage.checkpoints import CheckpointStore
from src.dealsync.storage.object_store import ObjectStore
from src.dealsync.sync.budget import ExecutionBudget
from src.dealsync.sync.resolver import ContactResolver
from src.dealsync.sync.schemas import (
    CheckpointStatus,
    ContactResolution,
    DeadLetter,
    FileOutcome,
    FileReport,
    ParsedFile,
    ProgressCheckpoint,
    Record,
    UploadResult,
    WorkItem,
    WorkItemKind,
)
from src.dealsync.sync.source import fetch_deals
from src.dealsync.sync.uploader import BatchUploader

logger = structlog.get_logger(__name__)


def chunk_layout(total: int, config: SyncConfig) -> tuple[int, int]:
    """Return (chunk_size, total_chunks) for a file of ``total`` valid records."""
    if total <= config.large_file_threshold:
        return max(total, 1), 1
    size = config.chunk_size
    return size, -(-total // size)


def completed_chunks(processed: int, total: int, chunk_size: int, total_chunks: int) -> int:
    """Number of chunks fully behind ``processed``; a finished file has them all."""
    if total and processed >= total:
        return total_chunks
    return processed // chunk_size


def advance_progress(
    base: ProgressCheckpoint,
    span_start: int,
    span_end: int,
    routable: Sequence[Record],
    upload: UploadResult,
    span_done: bool,
) -> ProgressCheckpoint:
    """Fold an upload over records[span_start:span_end] into ``base``.

    If the span finished, progress moves to span_end and every record in the
    span that was not routable is counted unroutable. If the upload stopped
    early, progress moves just past the last submitted record.
    """
    if span_done:
        until = span_end
    elif upload.attempted:
        until = routable[upload.attempted - 1].source_index + 1
    else:
        until = span_start

    unroutable = (until - span_start) - upload.attempted
    return base.model_copy(
        update={
            "processed_records": until,
            "last_completed_chunk": completed_chunks(
                until, base.total_records, base.chunk_size, base.total_chunks
            ),
            "succeeded": base.succeeded + upload.succeeded,
            "failed": base.failed + upload.failed,
            "unroutable": base.unroutable + unroutable,
        }
    )


@dataclass
class _Window:
    """Records planned for this invocation and their contact resolution."""

    records: list[Record]
    resolution: ContactResolution


@dataclass
class _FileRun:
    """Mutable state of one file while it is being processed."""

    progress: ProgressCheckpoint
    initial: ProgressCheckpoint
    has_checkpoint: bool
    dirty: bool = False
    unflushed: list[DeadLetter] = field(default_factory=list)

    def report(self, outcome: FileOutcome, elapsed_ms: float, message: str | None = None) -> FileReport:
        p, i = self.progress, self.initial
        return FileReport(
            source_key=p.source_key,
            outcome=outcome,
            total_records=p.total_records,
            processed_records=p.processed_records,
            chunks_done=p.last_completed_chunk,
            chunks_total=p.total_chunks,
            succeeded=p.succeeded - i.succeeded,
            failed=p.failed - i.failed,
            unroutable=p.unroutable - i.unroutable,
            rejected=p.rejected - i.rejected,
            elapsed_ms=round(elapsed_ms),
            message=message,
        )


class FileSynchronizer:
    """Drives one work item through resolution and chunked upload.

    Args:
        source: ObjectStore holding the CSV drops.
        checkpoints: CheckpointStore for progress, markers, and dead letters.
        resolver: ContactResolver for contact key lookup.
        uploader: BatchUploader for deal creation.
        config: Engine configuration.
    """

    def __init__(
        self,
        source: ObjectStore,
        checkpoints: CheckpointStore,
        resolver: ContactResolver,
        uploader: BatchUploader,
        config: SyncConfig,
    ) -> None:
        self._source = source
        self._checkpoints = checkpoints
        self._resolver = resolver
        self._uploader = uploader
        self._config = config

    async def sync_file(self, item: WorkItem, budget: ExecutionBudget) -> tuple[FileReport, bool]:
        """Process one work item as far as the budget allows.

        Returns:
            (report, has_checkpoint). ``has_checkpoint`` tells the caller a
            live checkpoint exists and must be archived if the file completed.

        Raises:
            SyncError: Source or state store failures; the caller reports
                them as a processing error for this file.
        """
        started_ms = budget.elapsed_ms()
        key = item.source_key
        log = logger.bind(source_key=key, kind=item.kind.value)

        parsed = await fetch_deals(self._source, key, self._config.csv_delimiter)
        total = len(parsed.records)

        if total == 0:
            log.warning("engine.empty_file", rejected=parsed.rejected, rows=parsed.total_rows)
            empty = ProgressCheckpoint(source_key=key, total_records=0, rejected=parsed.rejected)
            run = _FileRun(
                progress=empty,
                initial=empty.model_copy(update={"rejected": 0}),
                has_checkpoint=item.kind == WorkItemKind.RESUMING,
            )
            report = run.report(FileOutcome.COMPLETED, budget.elapsed_ms() - started_ms, "empty file")
            return report, run.has_checkpoint

        run = await self._start(item, parsed)
        progress = run.progress

        if progress.processed_records >= total:
            log.info("engine.already_done", processed=progress.processed_records, total=total)
            await self._finish_completed(run)
            return run.report(FileOutcome.COMPLETED, budget.elapsed_ms() - started_ms), run.has_checkpoint

        if budget.should_stop():
            log.warning("engine.no_time_to_start", remaining_ms=round(budget.remaining_ms()))
            return run.report(FileOutcome.INSUFFICIENT_TIME, budget.elapsed_ms() - started_ms), run.has_checkpoint

        window = await self._plan_window(parsed.records, progress.processed_records, budget, log)
        if not window.records:
            log.warning("engine.window_empty", remaining_ms=round(budget.remaining_ms()))
            return run.report(FileOutcome.INSUFFICIENT_TIME, budget.elapsed_ms() - started_ms), run.has_checkpoint

        stopped = await self._upload_window(run, parsed.records, window, budget)

        if run.progress.processed_records >= total:
            await self._finish_completed(run)
            report = run.report(FileOutcome.COMPLETED, budget.elapsed_ms() - started_ms)
            log.info(
                "engine.file_completed",
                total=total,
                succeeded=run.progress.succeeded,
                failed=run.progress.failed,
                unroutable=run.progress.unroutable,
            )
            return report, run.has_checkpoint

        if run.dirty or run.unflushed:
            await self._flush(run)

        made_progress = run.progress.processed_records > run.initial.processed_records
        outcome = FileOutcome.PARTIAL if made_progress else FileOutcome.INSUFFICIENT_TIME
        log.info(
            "engine.file_partial",
            processed=run.progress.processed_records,
            total=total,
            chunks_done=run.progress.last_completed_chunk,
            chunks_total=run.progress.total_chunks,
            budget_stop=stopped,
        )
        return run.report(outcome, budget.elapsed_ms() - started_ms), run.has_checkpoint

    # ── Setup ──────────────────────────────────────────────────────────

    async def _start(self, item: WorkItem, parsed: ParsedFile) -> _FileRun:
        """Build the starting progress, reconciling checkpoint and chunk markers."""
        key = item.source_key
        total = len(parsed.records)
        chunk_size, total_chunks = chunk_layout(total, self._config)

        fresh = ProgressCheckpoint(
            source_key=key,
            total_records=total,
            total_chunks=total_chunks,
            chunk_size=chunk_size,
            rejected=parsed.rejected,
        )
        if item.kind != WorkItemKind.RESUMING:
            return _FileRun(
                progress=fresh,
                initial=fresh.model_copy(update={"rejected": 0}),
                has_checkpoint=False,
            )

        best = await self._checkpoints.get_progress(key)
        marker = await self._checkpoints.latest_chunk_marker(key)
        if marker is not None and (best is None or marker.processed_records > best.processed_records):
            logger.warning(
                "engine.resume_from_marker",
                source_key=key,
                marker_processed=marker.processed_records,
                checkpoint_processed=best.processed_records if best else None,
            )
            best = marker

        if best is None:
            logger.warning("engine.resume_without_checkpoint", source_key=key)
            return _FileRun(
                progress=fresh,
                initial=fresh.model_copy(update={"rejected": 0}),
                has_checkpoint=False,
            )

        if best.total_records != total:
            # Offsets index valid records; a rewritten source file invalidates them.
            logger.error(
                "engine.source_changed",
                source_key=key,
                checkpoint_total=best.total_records,
                current_total=total,
            )

        processed = min(best.processed_records, total)
        progress = best.model_copy(
            update={
                "total_records": total,
                "total_chunks": total_chunks,
                "chunk_size": chunk_size,
                "processed_records": processed,
                "last_completed_chunk": completed_chunks(processed, total, chunk_size, total_chunks),
            }
        )
        logger.info(
            "engine.resuming",
            source_key=key,
            offset=processed,
            total=total,
            chunk=progress.last_completed_chunk,
            chunks_total=total_chunks,
        )
        return _FileRun(progress=progress, initial=progress, has_checkpoint=True)

    async def _plan_window(
        self,
        records: Sequence[Record],
        offset: int,
        budget: ExecutionBudget,
        log,
    ) -> _Window:
        """Pick the records to attempt this invocation and resolve their contacts."""
        pending = records[offset:]
        affordable = budget.affordable_records(len(pending))
        if affordable < len(pending):
            log.info("engine.prefix_planned", pending=len(pending), affordable=affordable)
        candidates = pending[:affordable]
        if not candidates:
            return _Window(records=[], resolution=ContactResolution())

        resolution = await self._resolver.resolve([r.contact_key for r in candidates], budget)

        if not resolution.complete:
            cut = 0
            while cut < len(candidates) and candidates[cut].contact_key in resolution.attempted:
                cut += 1
            log.warning(
                "engine.window_trimmed_to_resolved",
                planned=len(candidates),
                kept=cut,
            )
            candidates = candidates[:cut]

        affordable = budget.affordable_records(len(candidates))
        if affordable < len(candidates):
            log.info("engine.prefix_replanned", planned=len(candidates), affordable=affordable)
            candidates = candidates[:affordable]

        return _Window(records=list(candidates), resolution=resolution)

    # ── Upload ─────────────────────────────────────────────────────────

    async def _upload_window(
        self,
        run: _FileRun,
        records: Sequence[Record],
        window: _Window,
        budget: ExecutionBudget,
    ) -> bool:
        """Upload the window chunk by chunk. Returns True if the budget stopped it."""
        window_end = window.records[-1].source_index + 1
        chunked = run.progress.total_chunks > 1

        while run.progress.processed_records < window_end:
            if budget.should_stop():
                logger.warning(
                    "engine.budget_stop_between_chunks",
                    source_key=run.progress.source_key,
                    processed=run.progress.processed_records,
                    chunk=run.progress.last_completed_chunk,
                )
                return True

            chunk_size = run.progress.chunk_size
            span_start = run.progress.processed_records
            chunk_end = min((span_start // chunk_size + 1) * chunk_size, run.progress.total_records)
            span_end = min(chunk_end, window_end)

            routable = [
                record.with_target(target)
                for record in records[span_start:span_end]
                if (target := window.resolution.target_for(record.contact_key))
            ]
            base = run.progress
            seen_failures = 0

            async def persist(upload: UploadResult) -> None:
                nonlocal seen_failures
                run.progress = advance_progress(base, span_start, span_end, routable, upload, span_done=False)
                run.unflushed.extend(upload.failures[seen_failures:])
                seen_failures = len(upload.failures)
                await self._flush(run)

            upload = await self._uploader.upload(
                routable,
                budget,
                source_key=run.progress.source_key,
                checkpoint=persist,
            )

            run.progress = advance_progress(
                base, span_start, span_end, routable, upload, span_done=not upload.stopped
            )
            run.unflushed.extend(upload.failures[seen_failures:])
            if upload.stopped:
                return True
            run.dirty = True

            if chunked and span_end == chunk_end:
                await self._checkpoints.mark_chunk_complete(
                    run.progress, run.progress.last_completed_chunk
                )
                await self._flush(run)
                logger.info(
                    "engine.chunk_completed",
                    source_key=run.progress.source_key,
                    chunk=run.progress.last_completed_chunk,
                    chunks_total=run.progress.total_chunks,
                    processed=run.progress.processed_records,
                )

        return False

    # ── Persistence ────────────────────────────────────────────────────

    async def _flush(self, run: _FileRun) -> None:
        """Persist dead letters and the current checkpoint."""
        if run.unflushed:
            await self._checkpoints.append_dead_letters(run.progress.source_key, run.unflushed)
            run.unflushed = []
        await self._checkpoints.put_progress(run.progress)
        run.has_checkpoint = True
        run.dirty = False

    async def _finish_completed(self, run: _FileRun) -> None:
        """Record completion in the checkpoint if one exists.

        Files that completed without ever checkpointing need no write; the
        caller adds them to history.
        """
        if run.unflushed:
            await self._checkpoints.append_dead_letters(run.progress.source_key, run.unflushed)
            run.unflushed = []
        if run.has_checkpoint:
            run.progress = run.progress.model_copy(update={"status": CheckpointStatus.COMPLETED})
            await self._checkpoints.put_progress(run.progress)
        run.dirty = False


