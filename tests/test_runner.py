from __future__ import annotations

import asyncio
from typing import Any

from conductor.hub import CommandHub
from conductor.models import CatalogEntry, JobKind, JobStatus
from conductor.runner import JobRunner
from conductor.storage import init_storage


class MemoryCatalogStore:
    def __init__(self) -> None:
        self.entries: list[CatalogEntry] = []

    async def create(self, entry: CatalogEntry) -> None:
        self.entries.append(entry)


def _unused_diag_factory(*_: Any, **__: Any) -> Any:
    raise AssertionError("diag agent should not be contacted")


def test_stop_marks_unfinished_jobs_failed(tmp_path) -> None:
    storage = init_storage(tmp_path / "rackjobs.db")
    hub = CommandHub()
    runner = JobRunner(storage, hub, MemoryCatalogStore(), _unused_diag_factory)

    async def scenario() -> str:
        record = runner.submit(JobKind.COMMANDS, {"commands": [{"command": "uptime"}]}, {"target": "node-1"})
        await asyncio.sleep(0)
        await runner.stop()
        return record.job_id

    try:
        job_id = asyncio.run(scenario())
        stored = storage.get_job(job_id)
    finally:
        storage.close()

    assert stored.status == JobStatus.FAILED
    assert stored.error_message == "job cancelled during shutdown"
    assert stored.finished_at is not None
    assert not hub.has_subscribers("node-1")


def test_finished_jobs_keep_their_outcome_after_stop(tmp_path) -> None:
    storage = init_storage(tmp_path / "rackjobs.db")
    hub = CommandHub()
    runner = JobRunner(storage, hub, MemoryCatalogStore(), _unused_diag_factory)

    async def scenario() -> str:
        record = runner.submit(JobKind.COMMANDS, {"commands": [{"command": "uptime"}]}, {"target": "node-1"})
        await asyncio.sleep(0)
        published = hub.handle_pull("node-1")
        await hub.handle_response("node-1", published["jobId"], {"tasks": [{"cmd": "uptime"}]})
        await asyncio.sleep(0)
        await runner.stop()
        return record.job_id

    try:
        stored = storage.get_job(asyncio.run(scenario()))
    finally:
        storage.close()

    assert stored.status == JobStatus.SUCCEEDED
    assert stored.error_message is None
