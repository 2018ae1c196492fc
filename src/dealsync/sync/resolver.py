"""Contact resolution: external contact keys -> HubSpot contact ids.

Keys are looked up in batches (HubSpot caps batch/read at 100 inputs),
issued in waves of at most ``max_concurrency`` concurrent requests with a
short pause between waves to stay under the rate limit.

Failure handling:
- A failing batch (error status, transport error, timeout) resolves nothing
  and is logged; resolution carries on with the next batch.
- Before each wave the resolution sub-budget is checked. Once it is spent
  resolution stops and returns what it has. Keys never attempted are simply
  absent from ``resolved``; ``attempted`` tells the caller which were tried.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import httpx
import structlog

from src.dealsync.core.errors import CRMRequestError
from src.dealsync.core.monitoring import record_batch
from src.dealsync.crm.adapter import CRMClient
from src.dealsync.sync.budget import ExecutionBudget
from src.dealsync.sync.schemas import BudgetPhase, ContactResolution

logger = structlog.get_logger(__name__)


def unique_keys_in_order(keys: Sequence[str]) -> list[str]:
    """De-duplicate keys, keeping first-appearance order."""
    return list(dict.fromkeys(keys))


class ContactResolver:
    """Batched, concurrency-bounded contact lookup.

    Args:
        crm: CRM client providing batch_read_contacts.
        batch_size: Keys per lookup request.
        max_concurrency: Lookup requests in flight at once.
        wave_pause_seconds: Pause between waves of concurrent requests.
    """

    def __init__(
        self,
        crm: CRMClient,
        batch_size: int = 100,
        max_concurrency: int = 3,
        wave_pause_seconds: float = 0.25,
    ) -> None:
        self._crm = crm
        self._batch_size = batch_size
        self._max_concurrency = max_concurrency
        self._wave_pause = wave_pause_seconds

    async def resolve(
        self,
        keys: Sequence[str],
        budget: ExecutionBudget,
    ) -> ContactResolution:
        """Resolve ``keys`` within the resolution sub-budget.

        Args:
            keys: Contact keys in the order their records appear. Duplicates
                are looked up once.
            budget: Invocation budget; resolution starts its phase here.

        Returns:
            ContactResolution whose ``resolved`` mapping is a subset of keys.
        """
        ordered = unique_keys_in_order(keys)
        resolution = ContactResolution(requested=len(ordered))
        if not ordered:
            return resolution

        batches = [
            ordered[i:i + self._batch_size]
            for i in range(0, len(ordered), self._batch_size)
        ]
        budget.begin_phase(BudgetPhase.RESOLUTION)
        try:
            await self._run_waves(batches, resolution, budget)
        finally:
            budget.end_phase(BudgetPhase.RESOLUTION)

        logger.info(
            "resolver.complete",
            requested=len(ordered),
            attempted=len(resolution.attempted),
            resolved=len(resolution.resolved),
        )
        return resolution

    async def _run_waves(
        self,
        batches: list[list[str]],
        resolution: ContactResolution,
        budget: ExecutionBudget,
    ) -> None:
        for wave_start in range(0, len(batches), self._max_concurrency):
            if wave_start and self._wave_pause:
                await asyncio.sleep(self._wave_pause)
            if budget.should_stop(BudgetPhase.RESOLUTION):
                logger.warning(
                    "resolver.budget_exhausted",
                    attempted=len(resolution.attempted),
                    requested=resolution.requested,
                    phase_elapsed_ms=round(budget.phase_elapsed_ms(BudgetPhase.RESOLUTION)),
                )
                return

            wave = batches[wave_start:wave_start + self._max_concurrency]
            results = await asyncio.gather(*(self._lookup(batch) for batch in wave))
            for batch, found in zip(wave, results):
                resolution.attempted.update(batch)
                requested = set(batch)
                resolution.resolved.update(
                    {key: target for key, target in found.items() if key in requested}
                )

    async def _lookup(self, batch: list[str]) -> dict[str, str]:
        """One lookup request; failures degrade to an empty result."""
        try:
            found = await self._crm.batch_read_contacts(batch)
        except CRMRequestError as exc:
            logger.error(
                "resolver.batch_failed",
                size=len(batch),
                status_code=exc.status_code,
                error=str(exc),
            )
            record_batch("contacts_read", ok=False)
            return {}
        except httpx.HTTPError as exc:
            logger.error(
                "resolver.batch_transport_error",
                size=len(batch),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            record_batch("contacts_read", ok=False)
            return {}
        record_batch("contacts_read", ok=True)
        return found
