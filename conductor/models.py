"""Rackjobs 마스터 도메인 모델."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class JobStatus(str, Enum):
    """작업 상태."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobKind(str, Enum):
    """지원하는 작업 종류."""

    FIRMWARE_UPDATE = "firmware-update"
    COMMANDS = "commands"


class FirmwareType(str, Enum):
    """펌웨어 업데이트 대상."""

    BMC = "bmc"
    SPI = "spi"

    @classmethod
    def parse(cls, value: Any) -> FirmwareType:
        if isinstance(value, FirmwareType):
            return value
        text = str(value or "").strip().lower()
        alias = _FIRMWARE_TYPE_ALIASES.get(text)
        if alias is None:
            raise ValueError(f"unsupported firmware type: {value!r}")
        return alias


_FIRMWARE_TYPE_ALIASES = {
    "bmc": FirmwareType.BMC,
    "spi": FirmwareType.SPI,
    "spirom": FirmwareType.SPI,
    "bios": FirmwareType.SPI,
}


def _pick(options: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in options and options[key] is not None:
            return options[key]
    return default


@dataclass(frozen=True, slots=True)
class FirmwareUpdateRequest:
    """펌웨어 업데이트 작업 옵션. 작업 시작 이후 변경되지 않는다."""

    image_url: str
    image_name: str
    image_mode: str | int
    firmware_type: FirmwareType
    skip_reset: bool = False

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> FirmwareUpdateRequest:
        image_url = _pick(options, "imageUrl", "image_url")
        image_name = _pick(options, "imageName", "image_name")
        image_mode = _pick(options, "imageMode", "image_mode")
        if not image_url or not image_name:
            raise ValueError("imageUrl and imageName are required")
        if image_mode is None or isinstance(image_mode, bool) or not isinstance(image_mode, (str, int)):
            raise ValueError("imageMode must be a string or an integer")
        skip_reset = _pick(options, "skipReset", "skip_reset", default=False)
        if not isinstance(skip_reset, bool):
            raise ValueError(f"skipReset must be a boolean, got {skip_reset!r}")
        return cls(
            image_url=str(image_url),
            image_name=str(image_name),
            image_mode=image_mode,
            firmware_type=FirmwareType.parse(_pick(options, "firmwareType", "firmware_type")),
            skip_reset=skip_reset,
        )


@dataclass(frozen=True, slots=True)
class CatalogSpec:
    """명령 결과를 카탈로그에 남길 때의 형식과 출처."""

    format: str | None = None
    source: str | None = None


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """노드에서 실행할 명령 하나."""

    command: str
    catalog: CatalogSpec | bool | None = None
    accepted_response_codes: tuple[int, ...] | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> CommandSpec:
        command = raw.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValueError("command must be a non-empty string")

        catalog_raw = raw.get("catalog")
        catalog: CatalogSpec | bool | None
        if isinstance(catalog_raw, Mapping):
            catalog = CatalogSpec(format=catalog_raw.get("format"), source=catalog_raw.get("source"))
        elif catalog_raw is None:
            catalog = None
        else:
            catalog = bool(catalog_raw)

        codes_raw = _pick(raw, "acceptedResponseCodes", "accepted_response_codes")
        codes = tuple(int(code) for code in codes_raw) if codes_raw is not None else None
        return cls(command=command, catalog=catalog, accepted_response_codes=codes)

    def to_wire(self) -> dict[str, Any]:
        """노드 러너가 소비하는 형태로 변환한다."""
        out: dict[str, Any] = {"cmd": self.command}
        if isinstance(self.catalog, CatalogSpec):
            if self.catalog.format is not None:
                out["format"] = self.catalog.format
            if self.catalog.source is not None:
                out["source"] = self.catalog.source
            out["catalog"] = True
        elif self.catalog:
            out["catalog"] = True
        if self.accepted_response_codes is not None:
            out["acceptedResponseCodes"] = list(self.accepted_response_codes)
        return out


@dataclass(slots=True)
class TaskResult:
    """노드가 보고한 명령 하나의 실행 결과."""

    cmd: str | None = None
    error: dict[str, Any] | None = None
    catalog: bool = False
    source: str | None = None
    format: str | None = None
    data: Any = None
    accepted_response_codes: tuple[int, ...] = ()

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> TaskResult:
        error = raw.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)} if error else None
        codes = raw.get("acceptedResponseCodes") or ()
        data = raw.get("data") if "data" in raw else raw.get("stdout")
        return cls(
            cmd=raw.get("cmd"),
            error=error,
            catalog=bool(raw.get("catalog", False)),
            source=raw.get("source"),
            format=raw.get("format"),
            data=data,
            accepted_response_codes=tuple(codes),
        )

    @property
    def error_code(self) -> Any:
        return self.error.get("code") if self.error is not None else None

    def is_accepted(self) -> bool:
        """오류가 없거나, 오류 코드가 허용 목록에 있으면 True."""
        if self.error is None:
            return True
        return self.error_code in self.accepted_response_codes


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """카탈로그 저장소에 기록되는 항목."""

    node: str
    source: str
    data: Any


@dataclass(slots=True)
class JobOutcome:
    """작업의 최종 결과."""

    status: JobStatus
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED


@dataclass(slots=True)
class JobRecord:
    """저장소에 남기는 작업 기록."""

    job_id: str
    kind: JobKind
    node_id: str
    created_at: datetime
    status: JobStatus = JobStatus.PENDING
    options: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    finished_at: datetime | None = None


@dataclass(slots=True)
class NodeMetadata:
    """노드 정보."""

    node_id: str
    display_name: str | None
    last_seen: datetime
    status: str = "online"
