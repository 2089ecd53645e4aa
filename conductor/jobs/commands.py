"""노드에 명령 묶음을 한 번 보내고 결과를 받아 카탈로그에 남기는 작업."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from ..catalog import CatalogStore, build_catalog_entries, persist_entries
from ..errors import CommandValidationError, ValidationError
from ..hub import CommandHub
from ..models import CommandSpec, TaskResult
from .base import BaseJob

LOGGER = logging.getLogger(__name__)

FAILURE_MESSAGE = "Encountered a failure running commands on node"


class CommandState(str, Enum):
    AWAITING_PUBLISH = "awaiting_publish"
    AWAITING_RESPONSE = "awaiting_response"
    RESPONDED = "responded"
    CATALOGING = "cataloging"
    DONE = "done"


class DispatchLatch:
    """명령 묶음 발행 여부를 기록하는 게이트.

    ``acquire()`` 는 확인과 설정을 한 번에 수행한다. 이벤트 루프 안에서는
    await 없이 끝나므로 원자적이고, 다른 스레드에서 호출되어도 잠금으로
    보호된다.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._set = False

    @property
    def is_set(self) -> bool:
        return self._set

    def acquire(self) -> bool:
        """처음 호출에서만 True."""
        with self._lock:
            if self._set:
                return False
            self._set = True
            return True


class CommandJob(BaseJob):
    """pull 요청에 명령 묶음으로 답하고, 응답을 검증한 뒤 카탈로그에 기록한다."""

    def __init__(
        self,
        options: Mapping[str, Any] | None,
        context: Mapping[str, Any] | None,
        job_id: str,
        *,
        hub: CommandHub,
        catalog_store: CatalogStore,
    ) -> None:
        super().__init__(options, context, job_id)
        if not self.node_id:
            raise ValidationError("context.target is required")

        try:
            self.command_specs = [CommandSpec.from_dict(raw) for raw in self.options.get("commands") or []]
        except (AttributeError, TypeError, ValueError) as exc:
            raise ValidationError(f"invalid commands: {exc}", node_id=self.node_id) from exc

        run_only_once = self.options.get("runOnlyOnce", self.options.get("run_only_once"))
        self.options["runOnlyOnce"] = True if run_only_once is None else bool(run_only_once)
        self.commands = self.build_commands(self.command_specs)
        self.latch = DispatchLatch()
        self.state = CommandState.AWAITING_PUBLISH
        self._hub = hub
        self._catalog_store = catalog_store

    @property
    def run_only_once(self) -> bool:
        return self.options["runOnlyOnce"]

    @property
    def has_sent_commands(self) -> bool:
        return self.latch.is_set

    @staticmethod
    def build_commands(commands: Iterable[CommandSpec | Mapping[str, Any]]) -> list[dict[str, Any]]:
        """명령 목록을 노드 러너가 읽는 형태로 바꾼다. 순서는 유지된다."""
        specs = [cmd if isinstance(cmd, CommandSpec) else CommandSpec.from_dict(cmd) for cmd in commands]
        return [spec.to_wire() for spec in specs]

    async def _run(self) -> None:
        assert self.node_id is not None
        self._track_subscription(self._hub.subscribe_requests(self.node_id, self.job_id, self.handle_request))
        self._track_subscription(self._hub.subscribe_responses(self.node_id, self.job_id, self._on_response))

    def handle_request(self) -> dict[str, Any] | None:
        if not self.latch.acquire() and self.run_only_once:
            LOGGER.debug("Ignoring command request from node %s: job %s already sent commands", self.node_id, self.job_id)
            return None
        LOGGER.info("Sending %d command(s) to node %s (job %s)", len(self.commands), self.node_id, self.job_id)
        self.state = CommandState.AWAITING_RESPONSE
        return {"identifier": self.node_id, "jobId": self.job_id, "tasks": self.commands}

    async def _on_response(self, data: dict[str, Any]) -> None:
        if self.is_completed:
            return
        self.state = CommandState.RESPONDED
        try:
            await self.handle_response(data)
        except Exception as exc:  # noqa: BLE001
            self.complete(exc)
        else:
            self.complete()

    async def handle_response(self, data: Mapping[str, Any]) -> None:
        raw_tasks = data.get("tasks") if isinstance(data, Mapping) else None
        if not isinstance(raw_tasks, list):
            raise CommandValidationError(
                f"{FAILURE_MESSAGE} {self.node_id}: malformed response",
                failures=[{"response": data}],
                node_id=self.node_id,
            )

        failures: list[dict[str, Any]] = []
        to_catalog: list[TaskResult] = []
        for raw in raw_tasks:
            if not isinstance(raw, Mapping):
                failures.append({"cmd": None, "error": {"message": f"malformed task result: {raw!r}"}})
                continue
            task = TaskResult.from_payload(raw)
            if task.error is not None:
                if task.is_accepted():
                    LOGGER.debug(
                        "Command %r on node %s exited with accepted code %s",
                        task.cmd,
                        self.node_id,
                        task.error_code,
                    )
                else:
                    failures.append({"cmd": task.cmd, "error": task.error})
            if task.catalog:
                to_catalog.append(task)

        if failures:
            LOGGER.error("Commands failed on node %s: %s", self.node_id, failures)
            summary = ", ".join(f"{item['cmd']!r} (code {item['error'].get('code')})" for item in failures)
            raise CommandValidationError(
                f"{FAILURE_MESSAGE} {self.node_id}: {summary}",
                failures=failures,
                node_id=self.node_id,
            )

        if to_catalog:
            self.state = CommandState.CATALOGING
            await self.catalog_user_tasks(to_catalog)
        self.state = CommandState.DONE

    async def catalog_user_tasks(self, tasks: Iterable[TaskResult]) -> int:
        assert self.node_id is not None
        entries = build_catalog_entries(self.node_id, tasks)
        stored = await persist_entries(self._catalog_store, entries)
        LOGGER.info("Stored %d catalog entr(ies) for node %s", stored, self.node_id)
        return stored
