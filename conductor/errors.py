"""작업 실행 중 발생하는 도메인 예외."""

from __future__ import annotations

from typing import Any


class JobError(RuntimeError):
    """모든 작업 실패의 공통 베이스."""

    def __init__(self, message: str, *, node_id: str | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.payload = payload


class ValidationError(JobError):
    """잘못된 입력(IP, 모드 코드, 옵션)."""


class DiscoveryExhaustedError(JobError):
    """재시도 횟수 안에 에이전트를 찾지 못함."""


class TransportError(JobError):
    """에이전트 호출 실패."""


class UpdateProtocolError(JobError):
    """펌웨어 업데이트 응답이 기대한 형태가 아님.

    원인이 무엇이든 제어 흐름상 하나의 예외로 취급한다. 진단을 위해
    ``reason`` 에 세부 분류를 남기고 원래 예외는 ``__cause__`` 로 연결한다.
    """

    MALFORMED_BODY = "malformed_body"
    SHORT_RESULT = "short_result"
    MISSING_FIELD = "missing_field"
    UNEXPECTED_VALUE = "unexpected_value"

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        node_id: str | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message, node_id=node_id, payload=payload)
        self.reason = reason


class ResetError(JobError):
    """업데이트 이후 리셋 실패."""


class CommandValidationError(JobError):
    """허용되지 않은 응답 코드를 반환한 명령이 있음."""

    def __init__(
        self,
        message: str,
        *,
        failures: list[dict[str, Any]],
        node_id: str | None = None,
    ) -> None:
        super().__init__(message, node_id=node_id, payload=failures)
        self.failures = failures


class CatalogPersistError(JobError):
    """카탈로그 저장소 기록 실패."""
