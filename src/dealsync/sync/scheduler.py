"""Work item discovery and ordering.

The scheduler only reads. It lists the source bucket, merges what it finds
with the live partial checkpoints, and orders the result: every resuming
item first, then every new item, each group sorted by source key. Source
keys embed their drop date, so lexicographic order is also chronological.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from src.dealsync.storage.object_store import ObjectStore
from src.dealsync.sync.schemas import WorkItem, WorkItemKind

logger = structlog.get_logger(__name__)


async def discover_source_keys(
    source: ObjectStore,
    prefix: str,
    suffix: str = ".csv",
) -> set[str]:
    """List source files matching ``prefix*suffix``."""
    keys = {key for key in await source.list(prefix) if key.endswith(suffix)}
    logger.info("scheduler.discovered", prefix=prefix, count=len(keys))
    return keys


def build_queue(
    discovered_keys: Iterable[str],
    history: Iterable[str],
    live_partials: Iterable[WorkItem],
) -> list[WorkItem]:
    """Build the ordered work queue for one invocation.

    Args:
        discovered_keys: Source keys found in the bucket.
        history: Source keys already fully synchronized.
        live_partials: Resuming items derived from live checkpoints.

    Returns:
        Resuming items sorted by key, then new items sorted by key. Keys in
        history never appear, and each key appears at most once.
    """
    processed = set(history)

    resuming: dict[str, WorkItem] = {}
    for item in live_partials:
        if item.source_key in processed:
            logger.debug("scheduler.skip_processed_partial", source_key=item.source_key)
            continue
        if item.kind != WorkItemKind.RESUMING:
            item = item.model_copy(update={"kind": WorkItemKind.RESUMING})
        existing = resuming.get(item.source_key)
        if existing is None or item.resume_offset > existing.resume_offset:
            resuming[item.source_key] = item

    new_keys = {
        key for key in discovered_keys if key not in processed and key not in resuming
    }

    queue = [resuming[key] for key in sorted(resuming)]
    queue.extend(WorkItem(source_key=key) for key in sorted(new_keys))

    logger.info(
        "scheduler.queue_built",
        resuming=len(resuming),
        new=len(new_keys),
        excluded=len(processed),
    )
    return queue
