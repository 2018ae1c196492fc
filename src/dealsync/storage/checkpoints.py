"""Checkpoint store: durable sync state on top of an ObjectStore.

Key layout in the state bucket:

    <processed_key>                     processed history (JSON list)
    checkpoints/<source_key>.json       live ProgressCheckpoint
    archive/checkpoints/<source_key>.json  checkpoint of a completed file
    chunks/<source_key>/<n>.json        chunk completion marker (progress snapshot)
    dead_letters/<source_key>.json      failed upload batches
    reports/<source_key>.txt            last execution report for the file
    locks/sync.lease                    best-effort invocation lease

The store is last-writer-wins with no locking; the engine assumes one
invocation at a time.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import ValidationError

from src.dealsync.core.errors import CheckpointError
from src.dealsync.storage.object_store import ObjectStore
from src.dealsync.sync.schemas import DeadLetter, Lease, ProgressCheckpoint

logger = structlog.get_logger(__name__)

CHECKPOINT_PREFIX = "checkpoints/"
ARCHIVE_PREFIX = "archive/checkpoints/"
CHUNK_PREFIX = "chunks/"
DEAD_LETTER_PREFIX = "dead_letters/"
REPORT_PREFIX = "reports/"
LEASE_KEY = "locks/sync.lease"


class CheckpointStore:
    """Reads and writes history, checkpoints, markers, reports, and the lease.

    Args:
        store: ObjectStore for the state bucket.
        processed_key: Key of the processed-history document.
    """

    def __init__(self, store: ObjectStore, processed_key: str = "processed_files.json") -> None:
        self._store = store
        self._processed_key = processed_key

    async def ping(self) -> bool:
        return await self._store.ping()

    # ── Processed history ──────────────────────────────────────────────

    async def load_history(self) -> list[str]:
        """Return the processed source keys, oldest first. Missing document is empty."""
        raw = await self._store.get(self._processed_key)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CheckpointError(f"processed history is not valid JSON: {exc}") from exc
        if not isinstance(data, list) or not all(isinstance(k, str) for k in data):
            raise CheckpointError("processed history must be a JSON list of strings")
        return data

    async def save_history(self, keys: Iterable[str]) -> None:
        """Persist the processed history, de-duplicated in insertion order."""
        ordered = list(dict.fromkeys(keys))
        await self._store.put(self._processed_key, json.dumps(ordered, indent=2).encode())
        logger.info("checkpoints.history_saved", count=len(ordered))

    # ── Progress checkpoints ───────────────────────────────────────────

    def _checkpoint_key(self, source_key: str) -> str:
        return f"{CHECKPOINT_PREFIX}{source_key}.json"

    async def get_progress(self, source_key: str) -> ProgressCheckpoint | None:
        raw = await self._store.get(self._checkpoint_key(source_key))
        if raw is None:
            return None
        return self._decode_checkpoint(raw, source_key)

    async def put_progress(self, checkpoint: ProgressCheckpoint) -> None:
        checkpoint = checkpoint.model_copy(
            update={"last_updated": datetime.now(timezone.utc)}
        )
        await self._store.put(
            self._checkpoint_key(checkpoint.source_key),
            checkpoint.model_dump_json(by_alias=True, indent=2).encode(),
        )
        logger.debug(
            "checkpoints.progress_saved",
            source_key=checkpoint.source_key,
            processed=checkpoint.processed_records,
            total=checkpoint.total_records,
            status=checkpoint.status.value,
        )

    async def list_progress(self) -> list[ProgressCheckpoint]:
        """Return the live progress of every partially processed file.

        A file's progress is its checkpoint or, when a chunk marker is
        further along (the invocation died between the two writes), the
        marker snapshot. Archived checkpoints are excluded.
        """
        progress: dict[str, ProgressCheckpoint] = {}
        for key in await self._store.list(CHECKPOINT_PREFIX):
            if not key.endswith(".json"):
                continue
            raw = await self._store.get(key)
            if raw is None:
                continue
            source_key = key[len(CHECKPOINT_PREFIX):-len(".json")]
            progress[source_key] = self._decode_checkpoint(raw, source_key)

        marker_keys: dict[str, str] = {}
        for key in await self._store.list(CHUNK_PREFIX):
            source_key = key[len(CHUNK_PREFIX):].rsplit("/", 1)[0]
            marker_keys[source_key] = max(key, marker_keys.get(source_key, ""))

        for source_key, marker_key in marker_keys.items():
            raw = await self._store.get(marker_key)
            if raw is None:
                continue
            marker = self._decode_checkpoint(raw, source_key)
            current = progress.get(source_key)
            if current is None or marker.processed_records > current.processed_records:
                progress[source_key] = marker

        return [progress[key] for key in sorted(progress)]

    async def archive_progress(self, source_key: str) -> None:
        """Move a checkpoint under the archive prefix and drop its chunk markers."""
        key = self._checkpoint_key(source_key)
        raw = await self._store.get(key)
        if raw is not None:
            await self._store.put(f"{ARCHIVE_PREFIX}{source_key}.json", raw)
            await self._store.delete(key)
        await self.clear_chunk_markers(source_key)
        logger.info("checkpoints.archived", source_key=source_key, had_checkpoint=raw is not None)

    @staticmethod
    def _decode_checkpoint(raw: bytes, source_key: str) -> ProgressCheckpoint:
        try:
            return ProgressCheckpoint.model_validate_json(raw)
        except ValidationError as exc:
            raise CheckpointError(f"invalid checkpoint for '{source_key}': {exc}") from exc

    # ── Chunk markers ──────────────────────────────────────────────────

    def _chunk_prefix(self, source_key: str) -> str:
        return f"{CHUNK_PREFIX}{source_key}/"

    async def mark_chunk_complete(self, snapshot: ProgressCheckpoint, chunk_number: int) -> None:
        """Record that chunk ``chunk_number`` (1-based) finished, with a progress snapshot."""
        key = f"{self._chunk_prefix(snapshot.source_key)}{chunk_number:06d}.json"
        await self._store.put(key, snapshot.model_dump_json(by_alias=True).encode())

    async def latest_chunk_marker(self, source_key: str) -> ProgressCheckpoint | None:
        """Return the snapshot stored with the highest completed chunk, if any."""
        keys = sorted(await self._store.list(self._chunk_prefix(source_key)))
        if not keys:
            return None
        raw = await self._store.get(keys[-1])
        if raw is None:
            return None
        return self._decode_checkpoint(raw, source_key)

    async def clear_chunk_markers(self, source_key: str) -> None:
        for key in await self._store.list(self._chunk_prefix(source_key)):
            await self._store.delete(key)

    # ── Dead letters and reports ───────────────────────────────────────

    async def append_dead_letters(self, source_key: str, entries: list[DeadLetter]) -> None:
        if not entries:
            return
        key = f"{DEAD_LETTER_PREFIX}{source_key}.json"
        raw = await self._store.get(key)
        existing = json.loads(raw) if raw else []
        existing.extend(entry.model_dump(mode="json") for entry in entries)
        await self._store.put(key, json.dumps(existing, indent=2).encode())
        logger.warning(
            "checkpoints.dead_letters_appended",
            source_key=source_key,
            added=len(entries),
            total=len(existing),
        )

    async def load_dead_letters(self, source_key: str) -> list[DeadLetter]:
        raw = await self._store.get(f"{DEAD_LETTER_PREFIX}{source_key}.json")
        if raw is None:
            return []
        return [DeadLetter.model_validate(item) for item in json.loads(raw)]

    async def save_report(self, source_key: str, text: str) -> None:
        await self._store.put(
            f"{REPORT_PREFIX}{source_key}.txt",
            text.encode(),
            content_type="text/plain; charset=utf-8",
        )

    # ── Lease ──────────────────────────────────────────────────────────

    async def acquire_lease(self, owner: str, ttl_ms: int) -> bool:
        """Take the invocation lease unless another owner holds an unexpired one.

        Best effort: S3 offers no compare-and-swap, so two invocations
        starting in the same instant can both succeed.
        """
        raw = await self._store.get(LEASE_KEY)
        if raw is not None:
            try:
                current = Lease.model_validate_json(raw)
            except ValidationError:
                logger.warning("checkpoints.lease_unreadable", key=LEASE_KEY)
            else:
                if current.owner != owner and not current.expired():
                    logger.warning(
                        "checkpoints.lease_held",
                        owner=current.owner,
                        expires_at=current.expires_at.isoformat(),
                    )
                    return False

        now = datetime.now(timezone.utc)
        lease = Lease(owner=owner, acquired_at=now, expires_at=now + timedelta(milliseconds=ttl_ms))
        await self._store.put(LEASE_KEY, lease.model_dump_json().encode())
        logger.info("checkpoints.lease_acquired", owner=owner, ttl_ms=ttl_ms)
        return True

    async def release_lease(self, owner: str) -> None:
        raw = await self._store.get(LEASE_KEY)
        if raw is None:
            return
        try:
            current = Lease.model_validate_json(raw)
        except ValidationError:
            current = None
        if current is None or current.owner == owner:
            await self._store.delete(LEASE_KEY)
            logger.info("checkpoints.lease_released", owner=owner)
