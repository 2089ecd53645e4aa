"""노드의 명령 요청(pull)과 응답을 작업 구독자에게 연결하는 허브."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

LOGGER = logging.getLogger(__name__)

RequestHandler = Callable[[], "dict[str, Any] | None"]
ResponseHandler = Callable[[dict[str, Any]], Awaitable[None]]


class CommandHub:
    """노드별 구독 레지스트리.

    pull 이 들어오면 해당 노드의 요청 구독자를 등록 순서대로 호출하고,
    처음으로 payload 를 돌려준 작업을 응답 대기 목록에 올린다. 응답을
    기다리는 작업은 다음 pull 에서 건너뛴다. 응답은 노드가 돌려준
    ``jobId`` 로 해당 작업의 응답 구독자에게만 전달된다.
    """

    def __init__(self) -> None:
        self._request_handlers: dict[str, dict[str, RequestHandler]] = {}
        self._response_handlers: dict[str, dict[str, ResponseHandler]] = {}
        self._in_flight: dict[str, set[str]] = {}

    def subscribe_requests(self, node_id: str, job_id: str, handler: RequestHandler) -> Callable[[], None]:
        self._request_handlers.setdefault(node_id, {})[job_id] = handler

        def _unsubscribe() -> None:
            self._discard(self._request_handlers, node_id, job_id)

        return _unsubscribe

    def subscribe_responses(self, node_id: str, job_id: str, handler: ResponseHandler) -> Callable[[], None]:
        self._response_handlers.setdefault(node_id, {})[job_id] = handler

        def _unsubscribe() -> None:
            self._discard(self._response_handlers, node_id, job_id)
            self._settle(node_id, job_id)

        return _unsubscribe

    def has_subscribers(self, node_id: str) -> bool:
        return bool(self._request_handlers.get(node_id) or self._response_handlers.get(node_id))

    def is_in_flight(self, node_id: str, job_id: str) -> bool:
        return job_id in self._in_flight.get(node_id, ())

    def handle_pull(self, node_id: str) -> dict[str, Any] | None:
        """노드의 pull 요청에 보낼 명령 묶음을 찾는다. 없으면 None."""
        in_flight = self._in_flight.get(node_id, set())
        for job_id, handler in list(self._request_handlers.get(node_id, {}).items()):
            if job_id in in_flight:
                continue
            payload = handler()
            if payload is not None:
                self._in_flight.setdefault(node_id, set()).add(job_id)
                LOGGER.debug("Node %s pulled commands of job %s", node_id, job_id)
                return payload
        return None

    async def handle_response(self, node_id: str, job_id: str | None, payload: dict[str, Any]) -> bool:
        """응답을 명령을 보낸 바로 그 작업에 전달한다."""
        if not job_id or not self.is_in_flight(node_id, job_id):
            LOGGER.warning("No job %s is waiting for a command response from node %s", job_id, node_id)
            return False
        self._settle(node_id, job_id)
        handler = self._response_handlers.get(node_id, {}).get(job_id)
        if handler is None:
            LOGGER.warning("Job %s stopped listening for responses from node %s", job_id, node_id)
            return False
        await handler(payload)
        return True

    def _settle(self, node_id: str, job_id: str) -> None:
        in_flight = self._in_flight.get(node_id)
        if in_flight is None:
            return
        in_flight.discard(job_id)
        if not in_flight:
            self._in_flight.pop(node_id, None)

    @staticmethod
    def _discard(registry: dict[str, dict[str, Any]], node_id: str, job_id: str) -> None:
        handlers = registry.get(node_id)
        if handlers is None:
            return
        handlers.pop(job_id, None)
        if not handlers:
            registry.pop(node_id, None)
