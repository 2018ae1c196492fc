"""Deadline-aware, resumable deal synchronization engine.

Provides:
- SyncOrchestrator: One invocation of the pipeline
- FileSynchronizer: Chunked, checkpointed processing of one file
- ExecutionBudget: Deadline and sub-budget bookkeeping
- build_orchestrator: Wire the engine from application Settings
"""

from __future__ import annotations


def __getattr__(name: str):
    if name == "SyncOrchestrator":
        from src.dealsync.sync.orchestrator import SyncOrchestrator
        return SyncOrchestrator
    if name == "FileSynchronizer":
        from src.dealsync.sync.engine import FileSynchronizer
        return FileSynchronizer
    if name == "ExecutionBudget":
        from src.dealsync.sync.budget import ExecutionBudget
        return ExecutionBudget
    if name == "build_orchestrator":
        from src.dealsync.sync.factory import build_orchestrator
        return build_orchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ExecutionBudget",
    "FileSynchronizer",
    "SyncOrchestrator",
    "build_orchestrator",
]
