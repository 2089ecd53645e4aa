"""진단 에이전트를 통한 BMC/SPI 펌웨어 업데이트 작업."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any, Protocol

from ..errors import ResetError, TransportError, UpdateProtocolError, ValidationError
from ..models import FirmwareType, FirmwareUpdateRequest
from ..modes import translate_bmc_mode, translate_spi_mode, validate_bmc_mode, validate_spi_mode
from .base import BaseJob

LOGGER = logging.getLogger(__name__)

DISCOVERY_RETRY_COUNT = 6
DISCOVERY_RETRY_DELAY_MS = 5000
UPLOAD_API_PATH = "/api/upload/file"
DIAG_IMAGE_PATH = "/uploads"
SPI_RESET_PROMPT = "Issue warm reset NOW!"


class DiagAgent(Protocol):
    """펌웨어 작업이 사용하는 에이전트 클라이언트 표면."""

    async def retry_sync_discovery(self, delay_ms: int, retries: int) -> Any: ...

    async def get_all_devices(self) -> Any: ...

    async def upload_image_file(self, image_url: str, image_name: str, upload_path: str) -> Any: ...

    async def update_firmware(self, kind: str, image_name: str, image_mode: str, image_path: str) -> Any: ...

    async def bmc_reset(self, reset_flag: bool) -> Any: ...

    async def warm_reset(self, reset_flag: bool) -> Any: ...

    async def close(self) -> None: ...


DiagFactory = Callable[..., DiagAgent]


class FirmwareUpdateState(str, Enum):
    """업데이트 진행 단계. 앞으로만 진행한다."""

    INIT = "init"
    DISCOVERING = "discovering"
    ENUMERATING = "enumerating"
    UPLOADING = "uploading"
    DISPATCHING = "dispatching"
    VALIDATING = "validating"
    RESETTING = "resetting"
    DONE = "done"


def extract_spi_reset_flag(body: Any) -> Any:
    """SPI 업데이트 응답에서 리셋 안내 문구를 꺼낸다.

    응답의 ``result`` 배열 끝에서 두 번째 항목에 담긴
    ``atomic_test_data.secure_firmware_update`` 값을 돌려준다.
    형태가 다르면 ``UpdateProtocolError`` 를 던진다.
    """
    if not isinstance(body, Mapping):
        raise UpdateProtocolError("update response is not an object", reason=UpdateProtocolError.MALFORMED_BODY)
    result = body.get("result")
    if not isinstance(result, list):
        raise UpdateProtocolError("update response has no result list", reason=UpdateProtocolError.MALFORMED_BODY)
    if len(result) < 2:
        raise UpdateProtocolError(
            f"update response result has {len(result)} entries",
            reason=UpdateProtocolError.SHORT_RESULT,
        )
    try:
        return result[-2]["atomic_test_data"]["secure_firmware_update"]
    except (KeyError, TypeError) as exc:
        raise UpdateProtocolError(
            f"update response is missing secure_firmware_update: {exc!r}",
            reason=UpdateProtocolError.MISSING_FIELD,
        ) from exc


class FirmwareUpdateJob(BaseJob):
    """discovery → 장치 조회 → 이미지 업로드 → 업데이트 → (리셋) 순서로 진행한다."""

    def __init__(
        self,
        options: Mapping[str, Any] | None,
        context: Mapping[str, Any] | None,
        job_id: str,
        *,
        diag_factory: DiagFactory,
        retry_count: int = DISCOVERY_RETRY_COUNT,
        retry_delay_ms: int = DISCOVERY_RETRY_DELAY_MS,
    ) -> None:
        super().__init__(options, context, job_id)
        if not self.node_id:
            raise ValidationError("context.target is required")
        try:
            self.request = FirmwareUpdateRequest.from_options(self.options)
        except ValueError as exc:
            raise ValidationError(str(exc), node_id=self.node_id) from exc
        self.node_ip = self._validate_node_ip(self.context.get("nodeIp"))
        self.state = FirmwareUpdateState.INIT
        self.retry_count = retry_count
        self.retry_delay_ms = retry_delay_ms
        self._diag_factory = diag_factory
        self._updaters: dict[FirmwareType, Callable[[DiagAgent], Awaitable[None]]] = {
            FirmwareType.BMC: self._update_bmc,
            FirmwareType.SPI: self._update_spi,
        }

    def _validate_node_ip(self, value: Any) -> str:
        try:
            return str(ipaddress.IPv4Address(str(value)))
        except ValueError as exc:
            raise ValidationError(f"invalid node IPv4 address: {value!r}", node_id=self.node_id) from exc

    def _advance(self, state: FirmwareUpdateState) -> None:
        LOGGER.debug("Job %s: %s -> %s", self.job_id, self.state.value, state.value)
        self.state = state

    async def _run(self) -> None:
        diag = self._diag_factory(self.node_ip, self.node_id)
        try:
            self._advance(FirmwareUpdateState.DISCOVERING)
            await diag.retry_sync_discovery(self.retry_delay_ms, self.retry_count)

            self._advance(FirmwareUpdateState.ENUMERATING)
            await diag.get_all_devices()

            self._advance(FirmwareUpdateState.UPLOADING)
            await diag.upload_image_file(self.request.image_url, self.request.image_name, UPLOAD_API_PATH)

            self._advance(FirmwareUpdateState.DISPATCHING)
            await self._updaters[self.request.firmware_type](diag)

            self._advance(FirmwareUpdateState.DONE)
        except Exception as exc:  # noqa: BLE001
            self.complete(exc)
        else:
            self.complete()
        finally:
            await diag.close()

    async def _update_bmc(self, diag: DiagAgent) -> None:
        mode = validate_bmc_mode(translate_bmc_mode(self.request.image_mode), node_id=self.node_id)
        await diag.update_firmware(FirmwareType.BMC.value, self.request.image_name, mode, DIAG_IMAGE_PATH)
        if not self.request.skip_reset:
            await self._reset(diag.bmc_reset, "bmc")

    async def _update_spi(self, diag: DiagAgent) -> None:
        mode = validate_spi_mode(translate_spi_mode(self.request.image_mode), node_id=self.node_id)
        body = await diag.update_firmware(FirmwareType.SPI.value, self.request.image_name, mode, DIAG_IMAGE_PATH)

        self._advance(FirmwareUpdateState.VALIDATING)
        self._validate_spi_response(body)

        if not self.request.skip_reset:
            await self._reset(diag.warm_reset, "warm")

    def _validate_spi_response(self, body: Any) -> None:
        # 리셋 안내 문구가 SPI ROM 업데이트 성공의 유일한 신호다.
        try:
            reset_flag = extract_spi_reset_flag(body)
            if reset_flag != SPI_RESET_PROMPT:
                raise UpdateProtocolError(
                    f"unexpected secure_firmware_update value: {reset_flag!r}",
                    reason=UpdateProtocolError.UNEXPECTED_VALUE,
                )
        except UpdateProtocolError as exc:
            LOGGER.error(
                "Failed to get reset flags from diag (node=%s, reason=%s, error=%s, body=%s)",
                self.node_id,
                exc.reason,
                exc,
                body,
            )
            raise UpdateProtocolError(
                "Failed to get reset flags from diag",
                reason=exc.reason,
                node_id=self.node_id,
                payload=body,
            ) from exc

    async def _reset(self, reset: Callable[[bool], Awaitable[Any]], label: str) -> None:
        self._advance(FirmwareUpdateState.RESETTING)
        try:
            await reset(False)
        except TransportError as exc:
            raise ResetError(f"{label} reset failed: {exc}", node_id=self.node_id) from exc
