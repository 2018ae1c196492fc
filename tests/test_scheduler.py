"""Unit tests for work item discovery and queue ordering."""

from __future__ import annotations

from fakes import FakeObjectStore
from src.dealsync.sync.scheduler import build_queue, discover_source_keys
from src.dealsync.sync.schemas import WorkItem, WorkItemKind


def _resuming(key: str, offset: int = 100) -> WorkItem:
    return WorkItem(source_key=key, kind=WorkItemKind.RESUMING, resume_offset=offset)


class TestBuildQueue:
    def test_new_items_sorted_lexicographically(self):
        queue = build_queue(
            ["delta_negocio_20240503.csv", "delta_negocio_20240501.csv", "delta_negocio_20240502.csv"],
            history=[],
            live_partials=[],
        )
        assert [item.source_key for item in queue] == [
            "delta_negocio_20240501.csv",
            "delta_negocio_20240502.csv",
            "delta_negocio_20240503.csv",
        ]
        assert all(item.kind == WorkItemKind.NEW for item in queue)
        assert all(item.resume_offset == 0 for item in queue)

    def test_history_is_excluded(self):
        queue = build_queue(
            ["a.csv", "b.csv", "c.csv"],
            history=["a.csv", "c.csv"],
            live_partials=[],
        )
        assert [item.source_key for item in queue] == ["b.csv"]

    def test_resuming_items_come_first(self):
        queue = build_queue(
            ["a.csv", "z.csv"],
            history=[],
            live_partials=[_resuming("m.csv")],
        )
        assert [(item.source_key, item.kind) for item in queue] == [
            ("m.csv", WorkItemKind.RESUMING),
            ("a.csv", WorkItemKind.NEW),
            ("z.csv", WorkItemKind.NEW),
        ]

    def test_partial_and_discovered_yields_single_resuming_item(self):
        queue = build_queue(
            ["a.csv", "b.csv"],
            history=[],
            live_partials=[_resuming("b.csv", offset=2500)],
        )
        assert [item.source_key for item in queue] == ["b.csv", "a.csv"]
        assert queue[0].kind == WorkItemKind.RESUMING
        assert queue[0].resume_offset == 2500

    def test_partial_in_history_is_excluded(self):
        queue = build_queue([], history=["b.csv"], live_partials=[_resuming("b.csv")])
        assert queue == []

    def test_duplicate_partials_keep_furthest_offset(self):
        queue = build_queue(
            [],
            history=[],
            live_partials=[_resuming("b.csv", 2500), _resuming("b.csv", 5000)],
        )
        assert len(queue) == 1
        assert queue[0].resume_offset == 5000

    def test_empty_inputs_give_empty_queue(self):
        assert build_queue([], [], []) == []


class TestDiscoverSourceKeys:
    async def test_filters_prefix_and_suffix(self):
        store = FakeObjectStore(
            {
                "delta_negocio_1.csv": b"",
                "delta_negocio_2.txt": b"",
                "other_1.csv": b"",
                "delta_negocio_3.csv": b"",
            }
        )
        keys = await discover_source_keys(store, "delta_negocio_", ".csv")
        assert keys == {"delta_negocio_1.csv", "delta_negocio_3.csv"}
