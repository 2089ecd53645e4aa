"""모든 작업이 따르는 생명주기 계약."""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

from ..models import JobOutcome, JobStatus

LOGGER = logging.getLogger(__name__)

DoneCallback = Callable[["BaseJob"], None]
Unsubscribe = Callable[[], None]


class BaseJob(abc.ABC):
    """작업 베이스.

    ``(options, context, job_id)`` 로 생성하고 ``run()`` 으로 실행한다.
    종료는 ``complete(error)`` 한 번으로만 알린다. 이후 호출은 무시되며,
    완료 시점에 등록된 구독을 모두 해제해 더 이상 작업이 진행되지 않게 한다.
    """

    def __init__(self, options: Mapping[str, Any] | None, context: Mapping[str, Any] | None, job_id: str) -> None:
        self.options: dict[str, Any] = dict(options or {})
        self.context: dict[str, Any] = dict(context or {})
        self.job_id = job_id
        self.node_id: str | None = self.context.get("target")
        self._outcome: JobOutcome | None = None
        self._started = False
        self._finished = asyncio.Event()
        self._done_callbacks: list[DoneCallback] = []
        self._subscriptions: list[Unsubscribe] = []

    @property
    def outcome(self) -> JobOutcome | None:
        return self._outcome

    @property
    def is_completed(self) -> bool:
        return self._outcome is not None

    async def run(self) -> JobOutcome:
        """작업을 시작하고 완료될 때까지 기다린다."""
        if self._started:
            raise RuntimeError(f"job {self.job_id} already started")
        self._started = True
        LOGGER.info("Running %s %s on node %s", type(self).__name__, self.job_id, self.node_id)
        try:
            await self._run()
        except Exception as exc:  # noqa: BLE001
            self.complete(exc)
        return await self.wait()

    async def wait(self) -> JobOutcome:
        await self._finished.wait()
        assert self._outcome is not None
        return self._outcome

    @abc.abstractmethod
    async def _run(self) -> None:
        """실제 작업. 성공/실패 시 ``complete`` 를 호출해야 한다."""

    def complete(self, error: BaseException | None = None) -> bool:
        """작업을 종료한다. 처음 호출만 반영되고 True 를 돌려준다."""
        if self._outcome is not None:
            LOGGER.warning("Job %s already completed, ignoring completion (error=%s)", self.job_id, error)
            return False

        status = JobStatus.SUCCEEDED if error is None else JobStatus.FAILED
        self._outcome = JobOutcome(status=status, error=error)
        self._dispose_subscriptions()

        if error is None:
            LOGGER.info("Job %s succeeded on node %s", self.job_id, self.node_id)
        else:
            LOGGER.error("Job %s failed on node %s: %s", self.job_id, self.node_id, error)

        self._finished.set()
        callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            self._invoke_callback(callback)
        return True

    def add_done_callback(self, callback: DoneCallback) -> None:
        if self._outcome is not None:
            self._invoke_callback(callback)
            return
        self._done_callbacks.append(callback)

    def _track_subscription(self, unsubscribe: Unsubscribe) -> None:
        if self._outcome is not None:
            unsubscribe()
            return
        self._subscriptions.append(unsubscribe)

    def _dispose_subscriptions(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for unsubscribe in subscriptions:
            unsubscribe()

    def _invoke_callback(self, callback: DoneCallback) -> None:
        try:
            callback(self)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Done callback for job %s raised", self.job_id)
