"""Batch upload pipeline: routable records -> HubSpot deals.

Records are submitted in fixed-size batches, strictly in order. Per batch:
- error status, transport error, or timeout: the whole batch is failed and
  recorded as a dead letter; it is not retried in this invocation
- success: the created count comes from the response; any shortfall is
  failed and dead-lettered as a partial batch

Between batches the pipeline pauses (rate limit) and then consults the
budget. When the budget says stop, it persists a checkpoint through the
caller's callback and returns with ``stopped=True``. Every
``checkpoint_every`` batches it also persists an intermediate checkpoint so
an abrupt kill loses at most that many batches of progress.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import httpx
import structlog

from src.dealsync.core.errors import CRMRequestError
from src.dealsync.core.monitoring import record_batch
from src.dealsync.crm.adapter import CRMClient
from src.dealsync.crm.field_mapping import to_deal_input
from src.dealsync.sync.budget import ExecutionBudget
from src.dealsync.sync.schemas import BudgetPhase, DeadLetter, Record, UploadResult

logger = structlog.get_logger(__name__)

CheckpointCallback = Callable[[UploadResult], Awaitable[None]]


class BatchUploader:
    """Submits records to the CRM in budget-gated batches.

    Args:
        crm: CRM client providing batch_create_deals.
        batch_size: Records per create request.
        batch_pause_seconds: Pause between batches; counted against the budget.
        checkpoint_every: Persist an intermediate checkpoint every N batches.
    """

    def __init__(
        self,
        crm: CRMClient,
        batch_size: int = 100,
        batch_pause_seconds: float = 0.5,
        checkpoint_every: int = 5,
    ) -> None:
        self._crm = crm
        self._batch_size = batch_size
        self._batch_pause = batch_pause_seconds
        self._checkpoint_every = checkpoint_every

    async def upload(
        self,
        records: Sequence[Record],
        budget: ExecutionBudget,
        source_key: str = "",
        checkpoint: CheckpointCallback | None = None,
    ) -> UploadResult:
        """Upload ``records`` in order until done or the budget says stop.

        Args:
            records: Records with resolved_target_id set, ascending source_index.
            budget: Invocation budget, checked before every batch.
            source_key: File the records belong to (for logs and dead letters).
            checkpoint: Awaited with the running result on periodic and
                stop checkpoints.

        Returns:
            UploadResult; ``attempted`` counts the leading records that were
            submitted, so records[attempted:] were not touched.

        Raises:
            ValueError: If any record is unroutable.
        """
        unroutable = [r.source_index for r in records if not r.routable]
        if unroutable:
            msg = f"{len(unroutable)} unroutable record(s) passed to upload, first index {unroutable[0]}"
            raise ValueError(msg)

        result = UploadResult()
        batches = [
            records[i:i + self._batch_size]
            for i in range(0, len(records), self._batch_size)
        ]

        for number, batch in enumerate(batches, start=1):
            if number > 1 and self._batch_pause:
                await asyncio.sleep(self._batch_pause)
            if budget.should_stop(BudgetPhase.UPLOAD):
                result.stopped = True
                logger.warning(
                    "uploader.budget_stop",
                    source_key=source_key,
                    batches_sent=result.batches_sent,
                    batches_total=len(batches),
                    remaining_ms=round(budget.remaining_ms()),
                )
                break

            await self._send(batch, result, source_key)

            if (
                checkpoint is not None
                and number % self._checkpoint_every == 0
                and number < len(batches)
            ):
                await checkpoint(result)

        if result.stopped and checkpoint is not None:
            await checkpoint(result)

        logger.info(
            "uploader.complete",
            source_key=source_key,
            succeeded=result.succeeded,
            failed=result.failed,
            attempted=result.attempted,
            stopped=result.stopped,
        )
        return result

    async def _send(self, batch: Sequence[Record], result: UploadResult, source_key: str) -> None:
        """Submit one batch and fold its outcome into ``result``."""
        inputs = [to_deal_input(record) for record in batch]
        created = 0
        error: str | None = None
        try:
            created = await self._crm.batch_create_deals(inputs)
        except CRMRequestError as exc:
            error = str(exc)
        except httpx.HTTPError as exc:
            error = f"{type(exc).__name__}: {exc}"

        created = max(0, min(created, len(batch)))
        shortfall = len(batch) - created

        result.batches_sent += 1
        result.attempted += len(batch)
        result.succeeded += created
        result.failed += shortfall
        record_batch("deals_create", ok=error is None)

        if error is None and shortfall:
            error = f"HubSpot created {created} of {len(batch)} deals"

        if error is not None:
            logger.error(
                "uploader.batch_failed",
                source_key=source_key,
                first_index=batch[0].source_index,
                last_index=batch[-1].source_index,
                size=len(batch),
                created=created,
                error=error,
            )
            result.failures.append(
                DeadLetter(
                    source_key=source_key,
                    first_index=batch[0].source_index,
                    last_index=batch[-1].source_index,
                    size=len(batch),
                    created=created,
                    contact_keys=[record.contact_key for record in batch],
                    error=error,
                )
            )
        else:
            logger.debug(
                "uploader.batch_ok",
                source_key=source_key,
                first_index=batch[0].source_index,
                last_index=batch[-1].source_index,
            )
