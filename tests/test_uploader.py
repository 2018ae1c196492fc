"""Unit tests for BatchUploader: batching, failure accounting, budget stops."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from fakes import FakeCRM
from src.dealsync.crm.hubspot import HubSpotClient
from src.dealsync.sync.budget import ExecutionBudget
from src.dealsync.sync.schemas import Record, UploadResult
from src.dealsync.sync.uploader import BatchUploader


def _records(count: int, start: int = 0) -> list[Record]:
    return [
        Record(
            source_index=i,
            contact_key=f"C{i}",
            fields={"dealname": f"Deal {i}"},
            resolved_target_id=f"hs-C{i}",
        )
        for i in range(start, start + count)
    ]


def _budget(clock) -> ExecutionBudget:
    return ExecutionBudget(total_ms=100_000, safety_margin_ms=10_000, clock=clock)


class TestUpload:
    async def test_uploads_all_batches_in_order(self, clock):
        crm = FakeCRM()
        uploader = BatchUploader(crm, batch_size=10, batch_pause_seconds=0)

        result = await uploader.upload(_records(25), _budget(clock))

        assert [len(call) for call in crm.create_calls] == [10, 10, 5]
        assert crm.created_deal_names == [f"Deal {i}" for i in range(25)]
        assert result.succeeded == 25
        assert result.failed == 0
        assert result.attempted == 25
        assert result.batches_sent == 3
        assert result.stopped is False

    async def test_payload_carries_contact_association(self, clock):
        crm = FakeCRM()
        await BatchUploader(crm, batch_size=10, batch_pause_seconds=0).upload(_records(1), _budget(clock))

        deal = crm.create_calls[0][0]
        assert deal["associations"][0]["to"] == {"id": "hs-C0"}
        assert deal["associations"][0]["types"] == [
            {"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": 3}
        ]

    async def test_rejects_unroutable_records(self, clock):
        records = _records(2) + [Record(source_index=2, contact_key="C2")]
        with pytest.raises(ValueError, match="unroutable"):
            await BatchUploader(FakeCRM()).upload(records, _budget(clock))

    async def test_failed_batch_counts_whole_batch_and_continues(self, clock):
        crm = FakeCRM(fail_batches={2})
        uploader = BatchUploader(crm, batch_size=10, batch_pause_seconds=0)

        result = await uploader.upload(_records(30), _budget(clock))

        assert result.succeeded == 20
        assert result.failed == 10
        assert result.attempted == 30
        assert len(result.failures) == 1
        letter = result.failures[0]
        assert (letter.first_index, letter.last_index, letter.size) == (10, 19, 10)
        assert letter.contact_keys[0] == "C10"
        assert "500" in letter.error

    async def test_transport_error_counts_as_failed_batch(self, clock):
        crm = AsyncMock()
        crm.batch_create_deals.side_effect = [httpx.ConnectTimeout("timeout"), 10]
        uploader = BatchUploader(crm, batch_size=10, batch_pause_seconds=0)

        result = await uploader.upload(_records(20), _budget(clock))

        assert result.failed == 10
        assert result.succeeded == 10
        assert "ConnectTimeout" in result.failures[0].error

    async def test_non_json_success_body_is_a_failed_batch(self, clock):
        request = httpx.Request("POST", "https://api.hubapi.test")
        created = httpx.Response(201, json={"results": [{"id": str(i)} for i in range(10)]}, request=request)
        gateway = httpx.Response(200, text="<html>gateway</html>", request=request)
        uploader = BatchUploader(
            HubSpotClient(api_key="k", base_url="https://api.hubapi.test"),
            batch_size=10,
            batch_pause_seconds=0,
        )

        with patch(
            "httpx.AsyncClient.post", new_callable=AsyncMock, side_effect=[created, gateway, created]
        ):
            result = await uploader.upload(_records(30), _budget(clock))

        assert (result.succeeded, result.failed, result.attempted) == (20, 10, 30)
        assert result.stopped is False
        letter = result.failures[0]
        assert (letter.first_index, letter.last_index) == (10, 19)
        assert "invalid JSON body" in letter.error

    async def test_shortfall_counts_as_failed(self, clock):
        crm = FakeCRM(short_batches={1: 7})
        uploader = BatchUploader(crm, batch_size=10, batch_pause_seconds=0)

        result = await uploader.upload(_records(10), _budget(clock))

        assert result.succeeded == 7
        assert result.failed == 3
        assert result.failures[0].created == 7

    async def test_stops_when_budget_exhausted(self, clock):
        # 40s per batch: after batch 2 only 20s remain, inside the 30s margin.
        crm = FakeCRM(clock=clock, create_cost_seconds=40)
        budget = ExecutionBudget(total_ms=100_000, safety_margin_ms=30_000, clock=clock)
        checkpoints: list[UploadResult] = []

        async def checkpoint(result: UploadResult) -> None:
            checkpoints.append(result.model_copy())

        uploader = BatchUploader(crm, batch_size=10, batch_pause_seconds=0)
        result = await uploader.upload(_records(50), budget, checkpoint=checkpoint)

        assert result.stopped is True
        assert result.batches_sent == 2
        assert result.attempted == 20
        assert len(checkpoints) == 1
        assert checkpoints[0].attempted == 20

    async def test_no_batch_starts_inside_margin(self, clock):
        crm = FakeCRM()
        budget = _budget(clock)
        clock.advance(95)

        result = await BatchUploader(crm, batch_size=10).upload(_records(10), budget)

        assert crm.create_calls == []
        assert result.stopped is True
        assert result.attempted == 0

    async def test_periodic_checkpoints(self, clock):
        crm = FakeCRM()
        seen: list[int] = []

        async def checkpoint(result: UploadResult) -> None:
            seen.append(result.batches_sent)

        uploader = BatchUploader(crm, batch_size=1, batch_pause_seconds=0, checkpoint_every=2)
        await uploader.upload(_records(5), _budget(clock), checkpoint=checkpoint)

        # After batches 2 and 4; never after the last batch.
        assert seen == [2, 4]
