from __future__ import annotations

import asyncio

import pytest

from conductor.catalog import UNKNOWN_SOURCE, build_catalog_entries, parse_task_data, persist_entries
from conductor.errors import CatalogPersistError
from conductor.models import CatalogEntry, TaskResult


class RecordingStore:
    def __init__(self, fail_on: str | None = None) -> None:
        self.entries: list[CatalogEntry] = []
        self.fail_on = fail_on

    async def create(self, entry: CatalogEntry) -> None:
        if entry.source == self.fail_on:
            raise OSError("disk full")
        self.entries.append(entry)


def test_json_format_output_is_parsed() -> None:
    task = TaskResult.from_payload({"cmd": "lshw -json", "catalog": True, "format": "json", "stdout": '{"cpu": 2}'})
    assert parse_task_data(task) == {"cpu": 2}


def test_raw_format_output_is_kept() -> None:
    task = TaskResult(catalog=True, format="raw", data='{"cpu": 2}')
    assert parse_task_data(task) == '{"cpu": 2}'


def test_entries_keep_order_and_skip_errors() -> None:
    tasks = [
        TaskResult(catalog=True, source="dmidecode", data="a"),
        TaskResult(catalog=True, source="broken", error={"code": 1}),
        TaskResult(catalog=False, source="ignored", data="b"),
        TaskResult(catalog=True, data="c"),
    ]

    assert build_catalog_entries("node-1", tasks) == [
        CatalogEntry(node="node-1", source="dmidecode", data="a"),
        CatalogEntry(node="node-1", source=UNKNOWN_SOURCE, data="c"),
    ]


def test_invalid_json_output_is_skipped() -> None:
    tasks = [
        TaskResult(cmd="lshw", catalog=True, format="json", source="lshw", data="{not json"),
        TaskResult(catalog=True, format="json", source="ipmi", data='["ok"]'),
    ]

    assert build_catalog_entries("node-1", tasks) == [CatalogEntry(node="node-1", source="ipmi", data=["ok"])]


def test_persist_entries_counts_writes() -> None:
    store = RecordingStore()
    entries = [CatalogEntry("node-1", "a", 1), CatalogEntry("node-1", "b", 2)]

    assert asyncio.run(persist_entries(store, entries)) == 2
    assert store.entries == entries


def test_persist_entries_wraps_store_failure() -> None:
    store = RecordingStore(fail_on="b")
    entries = [CatalogEntry("node-1", "a", 1), CatalogEntry("node-1", "b", 2), CatalogEntry("node-1", "c", 3)]

    with pytest.raises(CatalogPersistError, match="disk full") as excinfo:
        asyncio.run(persist_entries(store, entries))

    assert excinfo.value.node_id == "node-1"
    assert [entry.source for entry in store.entries] == ["a"]
