from __future__ import annotations

import asyncio
from typing import Any

import pytest

from conductor.errors import (
    DiscoveryExhaustedError,
    ResetError,
    TransportError,
    UpdateProtocolError,
    ValidationError,
)
from conductor.jobs.firmware import (
    DIAG_IMAGE_PATH,
    SPI_RESET_PROMPT,
    UPLOAD_API_PATH,
    FirmwareUpdateJob,
    FirmwareUpdateState,
    extract_spi_reset_flag,
)
from conductor.models import FirmwareType, JobStatus

NODE_ID = "node-1"
NODE_IP = "10.1.1.3"


def _spi_body(flag: Any = SPI_RESET_PROMPT) -> dict[str, Any]:
    return {
        "result": [
            {"atomic_test_data": {"step": "erase"}},
            {"atomic_test_data": {"secure_firmware_update": flag}},
            {"atomic_test_data": {"status": "done"}},
        ]
    }


class FakeDiag:
    def __init__(self, *, update_body: Any = None, fail: dict[str, Exception] | None = None) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.update_body = update_body
        self.fail = fail or {}
        self.closed = False

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    async def retry_sync_discovery(self, delay_ms: int, retries: int) -> None:
        await self._record("retry_sync_discovery", delay_ms, retries)

    async def get_all_devices(self) -> list[dict[str, str]]:
        await self._record("get_all_devices")
        return [{"name": "bmc"}, {"name": "spi"}]

    async def upload_image_file(self, image_url: str, image_name: str, upload_path: str) -> None:
        await self._record("upload_image_file", image_url, image_name, upload_path)

    async def update_firmware(self, kind: str, image_name: str, image_mode: str, image_path: str) -> Any:
        await self._record("update_firmware", kind, image_name, image_mode, image_path)
        return self.update_body

    async def bmc_reset(self, reset_flag: bool) -> None:
        await self._record("bmc_reset", reset_flag)

    async def warm_reset(self, reset_flag: bool) -> None:
        await self._record("warm_reset", reset_flag)

    async def close(self) -> None:
        self.closed = True

    @property
    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


def _options(**overrides: Any) -> dict[str, Any]:
    options = {
        "imageUrl": "http://images.local/spi.bin",
        "imageName": "spi.bin",
        "imageMode": "bios",
        "firmwareType": "spi",
    }
    options.update(overrides)
    return options


def _make_job(diag: FakeDiag, **overrides: Any) -> FirmwareUpdateJob:
    factory_calls: list[tuple[str, str | None]] = []

    def _factory(host: str, node_id: str | None) -> FakeDiag:
        factory_calls.append((host, node_id))
        return diag

    job = FirmwareUpdateJob(_options(**overrides), {"target": NODE_ID, "nodeIp": NODE_IP}, "job-1", diag_factory=_factory)
    job.factory_calls = factory_calls  # type: ignore[attr-defined]
    return job


def test_spi_update_runs_full_sequence_and_warm_resets() -> None:
    diag = FakeDiag(update_body=_spi_body())
    job = _make_job(diag)

    outcome = asyncio.run(job.run())

    assert outcome.status == JobStatus.SUCCEEDED
    assert job.factory_calls == [(NODE_IP, NODE_ID)]  # type: ignore[attr-defined]
    assert diag.calls == [
        ("retry_sync_discovery", 5000, 6),
        ("get_all_devices",),
        ("upload_image_file", "http://images.local/spi.bin", "spi.bin", UPLOAD_API_PATH),
        ("update_firmware", "spi", "spi.bin", "1", DIAG_IMAGE_PATH),
        ("warm_reset", False),
    ]
    assert job.state == FirmwareUpdateState.DONE
    assert diag.closed


def test_bmc_update_resets_bmc() -> None:
    diag = FakeDiag()
    job = _make_job(diag, firmwareType="bmc", imageMode="bmcapp")

    outcome = asyncio.run(job.run())

    assert outcome.succeeded
    assert ("update_firmware", "bmc", "spi.bin", "0x140", DIAG_IMAGE_PATH) in diag.calls
    assert diag.calls[-1] == ("bmc_reset", False)


def test_skip_reset_skips_reset_call() -> None:
    diag = FakeDiag(update_body=_spi_body())
    job = _make_job(diag, skipReset=True)

    assert asyncio.run(job.run()).succeeded
    assert "warm_reset" not in diag.names
    assert "bmc_reset" not in diag.names


def test_bios_alias_with_integer_mode_and_short_response_fails() -> None:
    diag = FakeDiag(update_body={"result": [{"atomic_test_data": {}}]})
    job = _make_job(diag, firmwareType="bios", imageMode=3)

    outcome = asyncio.run(job.run())

    assert outcome.status == JobStatus.FAILED
    assert isinstance(outcome.error, UpdateProtocolError)
    assert outcome.error.reason == UpdateProtocolError.SHORT_RESULT
    assert outcome.error.node_id == NODE_ID
    assert ("update_firmware", "spi", "spi.bin", "3", DIAG_IMAGE_PATH) in diag.calls
    assert "warm_reset" not in diag.names


@pytest.mark.parametrize(
    ("body", "reason"),
    [
        (_spi_body("Update failed"), UpdateProtocolError.UNEXPECTED_VALUE),
        ({"result": [{}, {"atomic_test_data": {}}, {}]}, UpdateProtocolError.MISSING_FIELD),
        ({"result": [{}, "oops", {}]}, UpdateProtocolError.MISSING_FIELD),
        ({"error": "agent busy"}, UpdateProtocolError.MALFORMED_BODY),
        ("not json", UpdateProtocolError.MALFORMED_BODY),
        (None, UpdateProtocolError.MALFORMED_BODY),
    ],
)
def test_spi_response_shapes_never_succeed(body: Any, reason: str) -> None:
    diag = FakeDiag(update_body=body)
    job = _make_job(diag)

    outcome = asyncio.run(job.run())

    assert isinstance(outcome.error, UpdateProtocolError)
    assert outcome.error.reason == reason
    assert outcome.error.payload == body
    assert str(outcome.error) == "Failed to get reset flags from diag"
    assert "warm_reset" not in diag.names


def test_extract_spi_reset_flag_reads_second_to_last_entry() -> None:
    assert extract_spi_reset_flag(_spi_body()) == SPI_RESET_PROMPT


def test_invalid_mode_fails_before_update() -> None:
    diag = FakeDiag()
    job = _make_job(diag, firmwareType="bmc", imageMode="0x999")

    outcome = asyncio.run(job.run())

    assert isinstance(outcome.error, ValidationError)
    assert "update_firmware" not in diag.names
    assert job.state == FirmwareUpdateState.DISPATCHING


def test_discovery_exhaustion_fails_job_without_enumerating() -> None:
    diag = FakeDiag(fail={"retry_sync_discovery": DiscoveryExhaustedError("timed out", node_id=NODE_ID)})
    job = _make_job(diag)

    outcome = asyncio.run(job.run())

    assert isinstance(outcome.error, DiscoveryExhaustedError)
    assert diag.names == ["retry_sync_discovery"]
    assert diag.closed


def test_upload_failure_is_terminal() -> None:
    diag = FakeDiag(fail={"upload_image_file": TransportError("boom")})
    job = _make_job(diag)

    outcome = asyncio.run(job.run())

    assert isinstance(outcome.error, TransportError)
    assert "update_firmware" not in diag.names


def test_reset_failure_becomes_reset_error() -> None:
    diag = FakeDiag(update_body=_spi_body(), fail={"warm_reset": TransportError("connection reset")})
    job = _make_job(diag)

    outcome = asyncio.run(job.run())

    assert isinstance(outcome.error, ResetError)
    assert isinstance(outcome.error.__cause__, TransportError)


@pytest.mark.parametrize("node_ip", ["10.1.1", "300.1.1.1", "fe80::1", None, "host.local"])
def test_malformed_node_ip_is_rejected_at_construction(node_ip: Any) -> None:
    with pytest.raises(ValidationError, match="IPv4"):
        FirmwareUpdateJob(_options(), {"target": NODE_ID, "nodeIp": node_ip}, "job-1", diag_factory=FakeDiag)


def test_missing_target_is_rejected_at_construction() -> None:
    with pytest.raises(ValidationError, match="context.target"):
        FirmwareUpdateJob(_options(), {"nodeIp": NODE_IP}, "job-1", diag_factory=FakeDiag)


@pytest.mark.parametrize("skip_reset", ["false", "true", 0, 1])
def test_non_boolean_skip_reset_is_rejected(skip_reset: Any) -> None:
    with pytest.raises(ValidationError, match="skipReset"):
        FirmwareUpdateJob(
            _options(skipReset=skip_reset), {"target": NODE_ID, "nodeIp": NODE_IP}, "job-1", diag_factory=FakeDiag
        )


def test_missing_options_are_rejected() -> None:
    with pytest.raises(ValidationError):
        FirmwareUpdateJob({"firmwareType": "spi"}, {"target": NODE_ID, "nodeIp": NODE_IP}, "job-1", diag_factory=FakeDiag)
    with pytest.raises(ValidationError, match="firmware type"):
        FirmwareUpdateJob(_options(firmwareType="nic"), {"target": NODE_ID, "nodeIp": NODE_IP}, "job-1", diag_factory=FakeDiag)


def test_request_defaults() -> None:
    job = _make_job(FakeDiag())
    assert job.request.firmware_type == FirmwareType.SPI
    assert job.request.skip_reset is False
    assert job.node_ip == NODE_IP
