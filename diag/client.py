"""노드에서 동작하는 진단 에이전트 HTTP API 클라이언트."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from conductor.errors import DiscoveryExhaustedError, TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_TIMEOUT = 60.0

_SYNC_DISCOVERY_PATH = "/api/system/tests/discovery/sync"
_DEVICES_PATH = "/api/devices"
_WARM_RESET_PATH = "/api/system/warm_reset"
_BMC_RESET_PATH = "/api/devices/bmc/reset"
_FIRMWARE_KINDS = frozenset({"bmc", "spi"})

Sleep = Callable[[float], Awaitable[Any]]


class DiagClient:
    """진단 에이전트 호출을 감싼다.

    모든 호출 실패(연결 오류, 타임아웃, 4xx/5xx)는 ``TransportError`` 로 바뀐다.
    세션을 넘기지 않으면 첫 호출 때 만들고 ``close()`` 에서 닫는다.
    """

    def __init__(
        self,
        host: str,
        node_id: str | None = None,
        *,
        port: int = DEFAULT_PORT,
        scheme: str = "http",
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._host = host
        self._node_id = node_id
        self._base_url = f"{scheme}://{host}:{port}"
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> DiagClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # Discovery -----------------------------------------------------------

    async def sync_discovery(self) -> Any:
        return await self._request("GET", _SYNC_DISCOVERY_PATH)

    async def retry_sync_discovery(self, delay_ms: int, retries: int) -> Any:
        """``retries`` 번까지 동기 discovery 를 시도한다. 시도 사이 간격은 고정."""
        if retries < 1:
            raise ValueError("retries must be >= 1")

        last_error: TransportError | None = None
        for attempt in range(1, retries + 1):
            try:
                result = await self.sync_discovery()
            except TransportError as exc:
                last_error = exc
                LOGGER.debug("[%s] discovery 시도 %d/%d 실패: %s", self._host, attempt, retries, exc)
            else:
                LOGGER.info("[%s] discovery 성공 (시도 %d/%d)", self._host, attempt, retries)
                return result
            if attempt < retries:
                await self._sleep(delay_ms / 1000)

        raise DiscoveryExhaustedError(
            f"diag discovery on {self._host} timed out after {retries} attempts",
            node_id=self._node_id,
        ) from last_error

    # Devices -------------------------------------------------------------

    async def get_all_devices(self) -> Any:
        return await self._request("GET", _DEVICES_PATH)

    async def upload_image_file(self, image_url: str, image_name: str, upload_path: str) -> Any:
        """이미지를 내려받아 에이전트의 업로드 경로로 올린다."""
        session = self._ensure_session()
        try:
            async with session.get(image_url) as resp:
                if resp.status >= 400:
                    raise TransportError(
                        f"failed to download image {image_url}: HTTP {resp.status}",
                        node_id=self._node_id,
                    )
                content = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"failed to download image {image_url}: {exc}", node_id=self._node_id) from exc

        LOGGER.info("[%s] 이미지 업로드: %s (%d bytes)", self._host, image_name, len(content))
        form = aiohttp.FormData()
        form.add_field("file", content, filename=image_name, content_type="application/octet-stream")
        return await self._request("POST", upload_path, data=form)

    async def update_firmware(self, kind: str, image_name: str, image_mode: str, image_path: str) -> Any:
        if kind not in _FIRMWARE_KINDS:
            raise ValueError(f"unsupported firmware kind: {kind!r}")
        payload = {
            "image_name": image_name,
            "image_mode": image_mode,
            "image_path": image_path,
        }
        return await self._request("POST", f"{_DEVICES_PATH}/{kind}/update_firmware", json=payload)

    async def bmc_reset(self, reset_flag: bool) -> Any:
        return await self._request("POST", _BMC_RESET_PATH, json={"reset_flag": reset_flag})

    async def warm_reset(self, reset_flag: bool) -> Any:
        return await self._request("POST", _WARM_RESET_PATH, json={"reset_flag": reset_flag})

    # Internals -----------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        session = self._ensure_session()
        url = f"{self._base_url}{path}"
        try:
            async with session.request(method, url, **kwargs) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise TransportError(
                        f"diag {method} {path} failed: HTTP {resp.status}",
                        node_id=self._node_id,
                        payload=text,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"diag {method} {path} failed: {exc}", node_id=self._node_id) from exc

        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
