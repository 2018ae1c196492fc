"""Unit tests for CheckpointStore on top of an in-memory bucket."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeObjectStore
from src.dealsync.core.errors import CheckpointError
from src.dealsync.storage.checkpoints import LEASE_KEY, CheckpointStore
from src.dealsync.sync.schemas import CheckpointStatus, DeadLetter, Lease, ProgressCheckpoint


def _checkpoint(key: str = "a.csv", processed: int = 2500, **overrides) -> ProgressCheckpoint:
    values = {
        "source_key": key,
        "total_records": 12_000,
        "processed_records": processed,
        "last_completed_chunk": processed // 2500,
        "total_chunks": 5,
        "chunk_size": 2500,
        "succeeded": processed,
    }
    values.update(overrides)
    return ProgressCheckpoint(**values)


# ── Processed History ─────────────────────────────────────────────────────


class TestHistory:
    async def test_missing_history_is_empty(self, checkpoints):
        assert await checkpoints.load_history() == []

    async def test_round_trip_dedupes_in_order(self, checkpoints, state_store):
        await checkpoints.save_history(["b.csv", "a.csv", "b.csv"])

        assert await checkpoints.load_history() == ["b.csv", "a.csv"]
        raw = state_store.objects["processed_files.json"].decode()
        assert raw == json.dumps(["b.csv", "a.csv"], indent=2)

    async def test_custom_processed_key(self, state_store):
        store = CheckpointStore(state_store, processed_key="state/history.json")
        await store.save_history(["a.csv"])
        assert "state/history.json" in state_store.objects

    async def test_invalid_json_raises(self):
        store = CheckpointStore(FakeObjectStore({"processed_files.json": b"{not json"}))
        with pytest.raises(CheckpointError, match="not valid JSON"):
            await store.load_history()

    async def test_wrong_shape_raises(self):
        store = CheckpointStore(FakeObjectStore({"processed_files.json": b'{"a": 1}'}))
        with pytest.raises(CheckpointError, match="list of strings"):
            await store.load_history()


# ── Progress Checkpoints ──────────────────────────────────────────────────


class TestProgress:
    async def test_put_writes_camel_case(self, checkpoints, state_store):
        await checkpoints.put_progress(_checkpoint())

        data = json.loads(state_store.objects["checkpoints/a.csv.json"])
        assert data["sourceKey"] == "a.csv"
        assert data["processedRecords"] == 2500
        assert data["lastCompletedChunk"] == 1
        assert data["totalChunks"] == 5
        assert data["status"] == "processing"
        assert "lastUpdated" in data

    async def test_get_round_trip(self, checkpoints):
        await checkpoints.put_progress(_checkpoint(processed=5000))

        loaded = await checkpoints.get_progress("a.csv")

        assert loaded is not None
        assert loaded.processed_records == 5000
        assert loaded.last_completed_chunk == 2

    async def test_get_missing_is_none(self, checkpoints):
        assert await checkpoints.get_progress("nope.csv") is None

    async def test_corrupt_checkpoint_raises(self):
        store = CheckpointStore(FakeObjectStore({"checkpoints/a.csv.json": b'{"sourceKey": "a.csv"}'}))
        with pytest.raises(CheckpointError, match="a.csv"):
            await store.get_progress("a.csv")

    async def test_list_progress_excludes_archive(self, checkpoints):
        await checkpoints.put_progress(_checkpoint("a.csv"))
        await checkpoints.put_progress(_checkpoint("b.csv"))
        await checkpoints.archive_progress("a.csv")

        listed = await checkpoints.list_progress()

        assert [cp.source_key for cp in listed] == ["b.csv"]

    async def test_list_progress_prefers_more_advanced_marker(self, checkpoints):
        await checkpoints.put_progress(_checkpoint("a.csv", processed=2500))
        await checkpoints.mark_chunk_complete(_checkpoint("a.csv", processed=5000), 2)

        listed = await checkpoints.list_progress()

        assert len(listed) == 1
        assert listed[0].processed_records == 5000

    async def test_list_progress_includes_marker_without_checkpoint(self, checkpoints):
        await checkpoints.mark_chunk_complete(_checkpoint("b.csv", processed=2500), 1)

        listed = await checkpoints.list_progress()

        assert [(cp.source_key, cp.processed_records) for cp in listed] == [("b.csv", 2500)]

    async def test_archive_moves_checkpoint_and_clears_markers(self, checkpoints, state_store):
        await checkpoints.put_progress(_checkpoint())
        await checkpoints.mark_chunk_complete(_checkpoint(), 1)

        await checkpoints.archive_progress("a.csv")

        assert "checkpoints/a.csv.json" not in state_store.objects
        assert "archive/checkpoints/a.csv.json" in state_store.objects
        assert await checkpoints.latest_chunk_marker("a.csv") is None

    async def test_completed_requires_full_progress(self):
        with pytest.raises(ValueError, match="completed"):
            _checkpoint(processed=5000, status=CheckpointStatus.COMPLETED)

    async def test_processed_cannot_exceed_total(self):
        with pytest.raises(ValueError, match="exceeds"):
            _checkpoint(processed=13_000)


# ── Chunk Markers ─────────────────────────────────────────────────────────


class TestChunkMarkers:
    async def test_latest_marker_is_highest_chunk(self, checkpoints, state_store):
        await checkpoints.mark_chunk_complete(_checkpoint(processed=2500), 1)
        await checkpoints.mark_chunk_complete(_checkpoint(processed=5000), 2)

        latest = await checkpoints.latest_chunk_marker("a.csv")

        assert latest is not None
        assert latest.processed_records == 5000
        assert "chunks/a.csv/000002.json" in state_store.objects

    async def test_no_markers(self, checkpoints):
        assert await checkpoints.latest_chunk_marker("a.csv") is None


# ── Dead Letters and Reports ──────────────────────────────────────────────


class TestDeadLetters:
    async def test_append_accumulates(self, checkpoints):
        letter = DeadLetter(source_key="a.csv", first_index=0, last_index=99, size=100, error="boom")
        await checkpoints.append_dead_letters("a.csv", [letter])
        await checkpoints.append_dead_letters("a.csv", [letter.model_copy(update={"first_index": 100})])

        loaded = await checkpoints.load_dead_letters("a.csv")

        assert [entry.first_index for entry in loaded] == [0, 100]

    async def test_empty_append_writes_nothing(self, checkpoints, state_store):
        await checkpoints.append_dead_letters("a.csv", [])
        assert state_store.writes == []

    async def test_save_report(self, checkpoints, state_store):
        await checkpoints.save_report("a.csv", "done")
        assert state_store.objects["reports/a.csv.txt"] == b"done"


# ── Lease ─────────────────────────────────────────────────────────────────


class TestLease:
    async def test_acquire_free_lease(self, checkpoints, state_store):
        assert await checkpoints.acquire_lease("one", ttl_ms=60_000) is True
        assert Lease.model_validate_json(state_store.objects[LEASE_KEY]).owner == "one"

    async def test_held_lease_blocks_other_owner(self, checkpoints):
        await checkpoints.acquire_lease("one", ttl_ms=60_000)
        assert await checkpoints.acquire_lease("two", ttl_ms=60_000) is False

    async def test_expired_lease_can_be_taken(self, state_store, checkpoints):
        past = datetime.now(timezone.utc) - timedelta(minutes=10)
        stale = Lease(owner="one", acquired_at=past, expires_at=past + timedelta(minutes=5))
        state_store.objects[LEASE_KEY] = stale.model_dump_json().encode()

        assert await checkpoints.acquire_lease("two", ttl_ms=60_000) is True

    async def test_release_only_own_lease(self, checkpoints, state_store):
        await checkpoints.acquire_lease("one", ttl_ms=60_000)

        await checkpoints.release_lease("two")
        assert LEASE_KEY in state_store.objects

        await checkpoints.release_lease("one")
        assert LEASE_KEY not in state_store.objects
