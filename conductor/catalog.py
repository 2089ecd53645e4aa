"""명령 결과 중 저장 대상만 골라 카탈로그 항목으로 만든다."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any, Protocol

from .errors import CatalogPersistError
from .models import CatalogEntry, TaskResult

LOGGER = logging.getLogger(__name__)

UNKNOWN_SOURCE = "unknown"


class CatalogStore(Protocol):
    async def create(self, entry: CatalogEntry) -> Any: ...


class TaskDataError(ValueError):
    """저장 형식에 맞게 출력을 해석하지 못함."""


def parse_task_data(task: TaskResult) -> Any:
    """format 이 json 이면 출력을 JSON 으로 해석하고, 아니면 그대로 둔다."""
    if task.format != "json" or not isinstance(task.data, (str, bytes)):
        return task.data
    try:
        return json.loads(task.data)
    except json.JSONDecodeError as exc:
        raise TaskDataError(f"output of {task.cmd!r} is not valid JSON: {exc}") from exc


def build_catalog_entries(node_id: str, tasks: Iterable[TaskResult]) -> list[CatalogEntry]:
    """catalog=true 이고 오류가 없는 결과만 순서대로 항목으로 만든다."""
    entries: list[CatalogEntry] = []
    for task in tasks:
        if not task.catalog or task.error is not None:
            continue
        try:
            data = parse_task_data(task)
        except TaskDataError as exc:
            LOGGER.warning("Skipping catalog entry for node %s: %s", node_id, exc)
            continue
        entries.append(CatalogEntry(node=node_id, source=task.source or UNKNOWN_SOURCE, data=data))
    return entries


async def persist_entries(store: CatalogStore, entries: Iterable[CatalogEntry]) -> int:
    count = 0
    for entry in entries:
        try:
            await store.create(entry)
        except CatalogPersistError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CatalogPersistError(
                f"failed to store catalog {entry.source} for node {entry.node}: {exc}",
                node_id=entry.node,
            ) from exc
        count += 1
    return count
