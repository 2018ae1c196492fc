#!/usr/bin/env python3
"""CLI script to run one sync invocation or inspect sync state.

Usage:
    uv run python scripts/run_sync.py
    uv run python scripts/run_sync.py --budget-seconds 60
    uv run python scripts/run_sync.py --check
    uv run python scripts/run_sync.py --show-progress
    uv run python scripts/run_sync.py --dead-letters delta_negocio_20240501.csv

Reads bucket and HubSpot credentials from environment or .env file.
Exits non-zero on connectivity and processing errors.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.dealsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(budget_seconds: float | None, as_json: bool) -> int:
    """Run one invocation and print its report."""
    from src.dealsync.config import SyncConfig, get_settings
    from src.dealsync.core.logging import configure_structlog
    from src.dealsync.sync.factory import build_orchestrator
    from src.dealsync.sync.report import summary_line
    from src.dealsync.sync.schemas import InvocationStatus

    configure_structlog()
    settings = get_settings()
    config = settings.to_sync_config()
    if budget_seconds is not None:
        config = SyncConfig.model_validate(
            {**config.model_dump(), "total_budget_ms": int(budget_seconds * 1000)}
        )

    result = await build_orchestrator(settings, config=config).run()

    if as_json:
        print(result.model_dump_json(indent=2))
    else:
        print(summary_line(result))
        for report in result.files:
            print(
                f"  {report.source_key}: {report.outcome.value} "
                f"{report.processed_records}/{report.total_records} records, "
                f"chunks {report.chunks_done}/{report.chunks_total}, "
                f"ok={report.succeeded} failed={report.failed} "
                f"unroutable={report.unroutable} rejected={report.rejected}"
            )

    failed = {InvocationStatus.CONNECTIVITY_ERROR, InvocationStatus.PROCESSING_ERROR}
    return 1 if result.status in failed else 0


async def check() -> int:
    """Ping both buckets and HubSpot without running a sync."""
    from src.dealsync.config import get_settings
    from src.dealsync.crm import HubSpotClient
    from src.dealsync.storage import S3ObjectStore

    settings = get_settings()
    source = S3ObjectStore(
        bucket=settings.AWS1_BUCKET,
        region=settings.AWS1_REGION,
        access_key_id=settings.AWS1_ACCESS_KEY_ID,
        secret_access_key=settings.AWS1_SECRET_ACCESS_KEY,
    )
    hubspot = HubSpotClient(
        api_key=settings.HUBSPOT_API_KEY,
        base_url=settings.HUBSPOT_BASE_URL,
        contact_id_property=settings.HUBSPOT_CONTACT_ID_PROPERTY,
    )
    checks = {
        "source bucket": await source.ping(),
        "state bucket": await _state_store(settings).ping(),
        "hubspot": await hubspot.ping(),
    }
    for name, ok in checks.items():
        print(f"  {name}: {'ok' if ok else 'FAILED'}")
    return 0 if all(checks.values()) else 1


def _state_store(settings):
    from src.dealsync.storage import S3ObjectStore

    return S3ObjectStore(
        bucket=settings.AWS2_BUCKET,
        region=settings.AWS2_REGION,
        access_key_id=settings.AWS2_ACCESS_KEY_ID,
        secret_access_key=settings.AWS2_SECRET_ACCESS_KEY,
    )


async def show_progress() -> int:
    """Print every live checkpoint."""
    from src.dealsync.config import get_settings
    from src.dealsync.storage import CheckpointStore

    settings = get_settings()
    state = _state_store(settings)
    checkpoints = CheckpointStore(state, processed_key=settings.PROCESSED_KEY)

    history = await checkpoints.load_history()
    partials = await checkpoints.list_progress()
    print(f"Processed files: {len(history)}")
    if not partials:
        print("No files in progress.")
        return 0
    for cp in partials:
        print(
            f"  {cp.source_key}: {cp.status.value} "
            f"{cp.processed_records}/{cp.total_records} records, "
            f"chunk {cp.last_completed_chunk}/{cp.total_chunks}, "
            f"updated {cp.last_updated.isoformat()}"
        )
    return 0


async def show_dead_letters(source_key: str) -> int:
    """Print the failed upload batches recorded for one file."""
    from src.dealsync.config import get_settings
    from src.dealsync.storage import CheckpointStore

    settings = get_settings()
    state = _state_store(settings)
    entries = await CheckpointStore(state, processed_key=settings.PROCESSED_KEY).load_dead_letters(source_key)
    if not entries:
        print(f"No dead letters for {source_key}.")
        return 0
    for entry in entries:
        print(
            f"  records {entry.first_index}-{entry.last_index} "
            f"({entry.size}, created {entry.created}) at {entry.recorded_at.isoformat()}: "
            f"{entry.error}"
        )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one deal sync invocation")
    parser.add_argument(
        "--budget-seconds",
        type=float,
        default=None,
        help="Override the invocation time budget (default: SYNC_TOTAL_BUDGET_MS)",
    )
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check bucket and HubSpot connectivity instead of running",
    )
    parser.add_argument(
        "--show-progress",
        action="store_true",
        help="List live checkpoints instead of running",
    )
    parser.add_argument(
        "--dead-letters",
        metavar="SOURCE_KEY",
        default=None,
        help="List failed upload batches for a file instead of running",
    )
    args = parser.parse_args()

    if args.check:
        code = asyncio.run(check())
    elif args.show_progress:
        code = asyncio.run(show_progress())
    elif args.dead_letters:
        code = asyncio.run(show_dead_letters(args.dead_letters))
    else:
        code = asyncio.run(run(args.budget_seconds, args.json))
    sys.exit(code)


if __name__ == "__main__":
    main()
