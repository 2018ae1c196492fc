"""Unit tests for ContactResolver: batching, waves, failures, sub-budget."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx

from fakes import FakeCRM
from src.dealsync.core.errors import CRMRequestError
from src.dealsync.crm.hubspot import HubSpotClient
from src.dealsync.sync.budget import ExecutionBudget
from src.dealsync.sync.resolver import ContactResolver, unique_keys_in_order


def _budget(clock, total_ms: int = 100_000) -> ExecutionBudget:
    return ExecutionBudget(total_ms=total_ms, safety_margin_ms=10_000, clock=clock)


class TestUniqueKeys:
    def test_keeps_first_appearance_order(self):
        assert unique_keys_in_order(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


class TestResolve:
    async def test_resolves_all_keys_in_batches(self, clock):
        crm = FakeCRM()
        resolver = ContactResolver(crm, batch_size=10, max_concurrency=3, wave_pause_seconds=0)
        keys = [f"C{i}" for i in range(25)]

        result = await resolver.resolve(keys, _budget(clock))

        assert [len(call) for call in crm.read_calls] == [10, 10, 5]
        assert result.resolved == {key: f"hs-{key}" for key in keys}
        assert result.attempted == set(keys)
        assert result.complete is True

    async def test_duplicate_keys_looked_up_once(self, clock):
        crm = FakeCRM()
        resolver = ContactResolver(crm, batch_size=10, wave_pause_seconds=0)

        result = await resolver.resolve(["A", "B", "A", "A"], _budget(clock))

        assert crm.read_calls == [["A", "B"]]
        assert result.requested == 2

    async def test_unknown_keys_are_absent(self, clock):
        crm = FakeCRM(unknown={"C1"})
        resolver = ContactResolver(crm, batch_size=10, wave_pause_seconds=0)

        result = await resolver.resolve(["C0", "C1", "C2"], _budget(clock))

        assert set(result.resolved) == {"C0", "C2"}
        assert result.target_for("C1") is None
        assert "C1" in result.attempted

    async def test_failed_batch_degrades_to_empty(self, clock):
        crm = AsyncMock()
        crm.batch_read_contacts.side_effect = [
            {"A": "1"},
            CRMRequestError(429, ["rate limited"]),
            httpx.ReadTimeout("timed out"),
        ]
        resolver = ContactResolver(crm, batch_size=1, max_concurrency=1, wave_pause_seconds=0)

        result = await resolver.resolve(["A", "B", "C"], _budget(clock))

        assert result.resolved == {"A": "1"}
        assert result.attempted == {"A", "B", "C"}

    async def test_non_json_success_body_degrades_only_its_batch(self, clock):
        async def fake_post(url, json=None, **kwargs):
            request = httpx.Request("POST", url)
            ids = [item["id"] for item in json["inputs"]]
            if "A" in ids:
                return httpx.Response(200, text="<html>gateway</html>", request=request)
            results = [{"id": f"hs-{key}", "properties": {"contact_id": key}} for key in ids]
            return httpx.Response(200, json={"results": results}, request=request)

        resolver = ContactResolver(
            HubSpotClient(api_key="k", base_url="https://api.hubapi.test"),
            batch_size=2,
            wave_pause_seconds=0,
        )
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, side_effect=fake_post):
            result = await resolver.resolve(["A", "B", "C"], _budget(clock))

        assert result.resolved == {"C": "hs-C"}
        assert result.attempted == {"A", "B", "C"}
        assert result.complete is True

    async def test_result_is_subset_of_requested(self, clock):
        crm = AsyncMock()
        crm.batch_read_contacts.return_value = {"A": "1", "STRAY": "99"}
        resolver = ContactResolver(crm, batch_size=10, wave_pause_seconds=0)

        result = await resolver.resolve(["A"], _budget(clock))

        assert result.resolved == {"A": "1"}

    async def test_empty_keys_make_no_calls(self, clock):
        crm = FakeCRM()
        result = await ContactResolver(crm).resolve([], _budget(clock))
        assert crm.read_calls == []
        assert result.complete is True

    async def test_stops_when_resolution_budget_spent(self, clock):
        # Each wave costs 20s; the resolution sub-budget is 60s.
        crm = FakeCRM(clock=clock, lookup_cost_seconds=20)
        resolver = ContactResolver(crm, batch_size=1, max_concurrency=1, wave_pause_seconds=0)
        keys = [f"C{i}" for i in range(10)]

        result = await resolver.resolve(keys, _budget(clock))

        assert len(crm.read_calls) == 3
        assert result.attempted == {"C0", "C1", "C2"}
        assert result.complete is False

    async def test_resolution_sub_budget_is_shared_across_files(self, clock):
        crm = FakeCRM(clock=clock, lookup_cost_seconds=20)
        resolver = ContactResolver(crm, batch_size=1, max_concurrency=1, wave_pause_seconds=0)
        budget = _budget(clock)

        await resolver.resolve(["A0", "A1"], budget)
        clock.advance(5)  # upload time does not count against resolution
        second = await resolver.resolve([f"B{i}" for i in range(10)], budget)

        # 40s already spent on the first file leaves room for one 20s wave.
        assert second.attempted == {"B0"}
        assert len(crm.read_calls) == 3

    async def test_stops_inside_safety_margin(self, clock):
        crm = FakeCRM()
        resolver = ContactResolver(crm, batch_size=10, wave_pause_seconds=0)
        budget = _budget(clock)
        clock.advance(95)

        result = await resolver.resolve(["A", "B"], budget)

        assert crm.read_calls == []
        assert result.resolved == {}
        assert result.complete is False
