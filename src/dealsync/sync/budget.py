"""Execution budget controller.

Tracks elapsed wall-clock time against the invocation deadline and answers
one question at every loop boundary: may new work start? The controller is
advisory. It never interrupts an in-flight call; callers check it between
awaited operations.

Rules:
- The last ``safety_margin_ms`` of the budget is reserved for final
  checkpoint writes: should_stop() is true inside it regardless of phase.
- Contact resolution gets at most min(fraction x total, cap) summed over
  every file of the invocation, so it can never starve the upload phase.
- Before a large upload, affordable_records() decides between the whole
  remaining set and a time-affordable prefix.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable

from src.dealsync.config import SyncConfig
from src.dealsync.sync.schemas import BudgetPhase

Clock = Callable[[], float]


class ExecutionBudget:
    """Deadline bookkeeping for one invocation.

    Args:
        total_ms: Wall-clock budget for the whole invocation.
        safety_margin_ms: Tail reserved for checkpoint writes.
        resolution_fraction: Share of total_ms contact resolution may use.
        resolution_cap_ms: Absolute ceiling on the resolution sub-budget.
        per_record_cost_ms: Estimated upload cost of one record.
        safety_factor: Multiplier (< 1) applied to affordable prefixes.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        total_ms: int,
        safety_margin_ms: int,
        resolution_fraction: float = 0.6,
        resolution_cap_ms: int = 90_000,
        per_record_cost_ms: float = 10.0,
        safety_factor: float = 0.85,
        clock: Clock = time.monotonic,
    ) -> None:
        if not 0 < safety_factor < 1:
            raise ValueError("safety_factor must be in (0, 1)")
        self._total_ms = total_ms
        self._margin_ms = safety_margin_ms
        self._resolution_fraction = resolution_fraction
        self._resolution_cap_ms = resolution_cap_ms
        self._per_record_cost_ms = per_record_cost_ms
        self._safety_factor = safety_factor
        self._clock = clock
        self._started = clock()
        self._phase_started: dict[BudgetPhase, float] = {}
        self._phase_spent_ms: dict[BudgetPhase, float] = {}

    @classmethod
    def from_config(cls, config: SyncConfig, clock: Clock = time.monotonic) -> ExecutionBudget:
        return cls(
            total_ms=config.total_budget_ms,
            safety_margin_ms=config.safety_margin_ms,
            resolution_fraction=config.resolution_budget_fraction,
            resolution_cap_ms=config.resolution_budget_cap_ms,
            per_record_cost_ms=config.per_record_cost_ms,
            safety_factor=config.affordability_safety_factor,
            clock=clock,
        )

    @property
    def total_ms(self) -> int:
        return self._total_ms

    @property
    def safety_margin_ms(self) -> int:
        return self._margin_ms

    def elapsed_ms(self) -> float:
        return (self._clock() - self._started) * 1000.0

    def remaining_ms(self) -> float:
        return max(0.0, self._total_ms - self.elapsed_ms())

    def usable_ms(self) -> float:
        """Time left before the safety margin starts."""
        return max(0.0, self.remaining_ms() - self._margin_ms)

    def resolution_budget_ms(self) -> float:
        return min(self._resolution_fraction * self._total_ms, self._resolution_cap_ms)

    def begin_phase(self, phase: BudgetPhase) -> None:
        """Mark the start of a phase; sub-budgets are measured from here."""
        self._phase_started[phase] = self._clock()

    def end_phase(self, phase: BudgetPhase) -> None:
        """Close a phase, adding its time to the invocation total for that phase."""
        started = self._phase_started.pop(phase, None)
        if started is not None:
            spent = self._phase_spent_ms.get(phase, 0.0)
            self._phase_spent_ms[phase] = spent + (self._clock() - started) * 1000.0

    def phase_elapsed_ms(self, phase: BudgetPhase) -> float:
        """Time spent in ``phase`` across the invocation, including an open phase."""
        elapsed = self._phase_spent_ms.get(phase, 0.0)
        started = self._phase_started.get(phase)
        if started is not None:
            elapsed += (self._clock() - started) * 1000.0
        return elapsed

    def should_stop(
        self,
        phase: BudgetPhase = BudgetPhase.UPLOAD,
        estimate_ms: float = 0.0,
    ) -> bool:
        """Return True if no new unit of work should start.

        Args:
            phase: Phase asking. Resolution also honours its own sub-budget.
            estimate_ms: Expected cost of the next unit; if it does not fit
                before the margin, stop now rather than overrun.
        """
        remaining = self.remaining_ms()
        if remaining < self._margin_ms:
            return True
        if estimate_ms and remaining - self._margin_ms < estimate_ms:
            return True
        if phase == BudgetPhase.RESOLUTION:
            return self.phase_elapsed_ms(phase) >= self.resolution_budget_ms()
        return False

    def affordable_records(self, requested: int) -> int:
        """How many of ``requested`` records fit in the time left.

        Returns ``requested`` when the whole set fits; otherwise the
        safety-factored prefix floor(usable / per_record_cost x factor).
        """
        if requested <= 0:
            return 0
        usable = self.usable_ms()
        if requested * self._per_record_cost_ms <= usable:
            return requested
        affordable = math.floor(usable / self._per_record_cost_ms * self._safety_factor)
        return max(0, min(requested, affordable))
