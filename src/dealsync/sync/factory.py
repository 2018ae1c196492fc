"""Wire a SyncOrchestrator from application Settings."""

from __future__ import annotations

import time

from src.dealsync.config import Settings, SyncConfig
from src.dealsync.crm.hubspot import HubSpotClient
from src.dealsync.storage.checkpoints import CheckpointStore
from src.dealsync.storage.object_store import S3ObjectStore
from src.dealsync.sync.budget import Clock
from src.dealsync.sync.engine import FileSynchronizer
from src.dealsync.sync.orchestrator import SyncOrchestrator
from src.dealsync.sync.resolver import ContactResolver
from src.dealsync.sync.uploader import BatchUploader


def build_orchestrator(
    settings: Settings,
    config: SyncConfig | None = None,
    clock: Clock = time.monotonic,
) -> SyncOrchestrator:
    """Build the production object graph: two S3 buckets and HubSpot.

    Args:
        settings: Application settings (credentials, buckets, overrides).
        config: Engine configuration; defaults to settings.to_sync_config().
        clock: Monotonic clock used by the invocation budget.
    """
    config = config or settings.to_sync_config()

    source = S3ObjectStore(
        bucket=settings.AWS1_BUCKET,
        region=settings.AWS1_REGION,
        access_key_id=settings.AWS1_ACCESS_KEY_ID,
        secret_access_key=settings.AWS1_SECRET_ACCESS_KEY,
        timeout_seconds=config.request_timeout_seconds,
    )
    state = S3ObjectStore(
        bucket=settings.AWS2_BUCKET,
        region=settings.AWS2_REGION,
        access_key_id=settings.AWS2_ACCESS_KEY_ID,
        secret_access_key=settings.AWS2_SECRET_ACCESS_KEY,
        timeout_seconds=config.request_timeout_seconds,
    )
    checkpoints = CheckpointStore(state, processed_key=settings.PROCESSED_KEY)

    crm = HubSpotClient(
        api_key=settings.HUBSPOT_API_KEY,
        base_url=settings.HUBSPOT_BASE_URL,
        timeout_seconds=config.request_timeout_seconds,
        contact_id_property=settings.HUBSPOT_CONTACT_ID_PROPERTY,
    )
    resolver = ContactResolver(
        crm,
        batch_size=config.contact_batch_size,
        max_concurrency=config.max_concurrent_lookups,
        wave_pause_seconds=config.lookup_wave_pause_ms / 1000,
    )
    uploader = BatchUploader(
        crm,
        batch_size=config.upload_batch_size,
        batch_pause_seconds=config.upload_batch_pause_ms / 1000,
        checkpoint_every=config.checkpoint_every_batches,
    )
    synchronizer = FileSynchronizer(source, checkpoints, resolver, uploader, config)

    return SyncOrchestrator(source, checkpoints, synchronizer, config, clock=clock)
