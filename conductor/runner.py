"""요청 하나당 작업 하나를 만들어 백그라운드에서 실행한다."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from datetime import datetime
from typing import Any, Mapping

from .catalog import CatalogStore
from .errors import JobError
from .hub import CommandHub
from .jobs import BaseJob, CommandJob, FirmwareUpdateJob
from .jobs.firmware import DISCOVERY_RETRY_COUNT, DISCOVERY_RETRY_DELAY_MS, DiagFactory
from .models import JobKind, JobRecord, JobStatus
from .storage import Storage

LOGGER = logging.getLogger(__name__)


class JobRunner:
    """작업을 생성·실행하고 상태 변화를 저장소에 남긴다."""

    def __init__(
        self,
        storage: Storage,
        hub: CommandHub,
        catalog_store: CatalogStore,
        diag_factory: DiagFactory,
        *,
        retry_count: int = DISCOVERY_RETRY_COUNT,
        retry_delay_ms: int = DISCOVERY_RETRY_DELAY_MS,
    ) -> None:
        self._storage = storage
        self._hub = hub
        self._catalog_store = catalog_store
        self._diag_factory = diag_factory
        self._retry_count = retry_count
        self._retry_delay_ms = retry_delay_ms
        self._tasks: dict[str, asyncio.Task] = {}
        self._jobs: dict[str, BaseJob] = {}

    @property
    def active_job_ids(self) -> list[str]:
        return list(self._tasks)

    def build_job(
        self,
        kind: JobKind,
        options: Mapping[str, Any],
        context: Mapping[str, Any],
        job_id: str,
    ) -> BaseJob:
        if kind == JobKind.FIRMWARE_UPDATE:
            return FirmwareUpdateJob(
                options,
                context,
                job_id,
                diag_factory=self._diag_factory,
                retry_count=self._retry_count,
                retry_delay_ms=self._retry_delay_ms,
            )
        if kind == JobKind.COMMANDS:
            return CommandJob(options, context, job_id, hub=self._hub, catalog_store=self._catalog_store)
        raise ValueError(f"unsupported job kind: {kind}")

    def submit(self, kind: JobKind, options: Mapping[str, Any], context: Mapping[str, Any]) -> JobRecord:
        """작업을 검증·생성하고 실행을 시작한다. 잘못된 입력이면 ValidationError."""
        job_id = str(uuid.uuid4())
        job = self.build_job(kind, options, context, job_id)
        record = JobRecord(
            job_id=job_id,
            kind=kind,
            node_id=str(job.node_id),
            created_at=datetime.utcnow(),
            status=JobStatus.RUNNING,
            options=dict(job.options),
            context=dict(job.context),
        )
        self._storage.upsert_job(record)
        job.add_done_callback(self._on_job_done)

        task = asyncio.create_task(job.run(), name=f"job-{job_id}")
        self._tasks[job_id] = task
        self._jobs[job_id] = job
        task.add_done_callback(lambda _: self._forget(job_id))
        LOGGER.info("Submitted %s job %s for node %s", kind.value, job_id, record.node_id)
        return record

    def _on_job_done(self, job: BaseJob) -> None:
        outcome = job.outcome
        assert outcome is not None
        error_message = str(outcome.error) if outcome.error is not None else None
        self._storage.update_job_status(job.job_id, outcome.status, error_message=error_message)

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._jobs.pop(job_id, None)

    async def stop(self) -> None:
        """실행 중인 작업을 취소하고 실패로 기록한다."""
        if not self._tasks:
            return
        LOGGER.info("Cancelling %d running job(s)", len(self._tasks))
        running = [(self._jobs[job_id], task) for job_id, task in self._tasks.items()]
        for _, task in running:
            task.cancel()
        for job, task in running:
            with suppress(asyncio.CancelledError):
                await task
            if not job.is_completed:
                job.complete(JobError("job cancelled during shutdown", node_id=job.node_id))
