"""Rackjobs 마스터 서버: 노드 WebSocket 채널과 REST API."""

from __future__ import annotations

import argparse
import asyncio
import functools
import json
import logging
import os
import signal
import sys
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Sequence

from aiohttp import web
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from diag import DiagClient

from .api import ApiHandler
from .hub import CommandHub
from .jobs.firmware import DISCOVERY_RETRY_COUNT, DISCOVERY_RETRY_DELAY_MS
from .models import NodeMetadata
from .runner import JobRunner
from .storage import SqliteCatalogStore, Storage, init_storage

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ConductorSettings:
    """마스터 실행 설정."""

    host: str = "0.0.0.0"
    port: int = 8765
    http_host: str | None = None
    http_port: int = 8080
    db_path: str = "var/rackjobs.db"
    diag_port: int = 8080
    diag_scheme: str = "http"
    diag_timeout: float = 60.0
    discovery_retries: int = DISCOVERY_RETRY_COUNT
    discovery_delay_ms: int = DISCOVERY_RETRY_DELAY_MS


@dataclass
class NodeConnection:
    """마스터에 연결된 노드."""

    connection: ServerConnection
    node_id: str | None = None


class ConductorServer:
    """노드의 명령 pull/응답을 허브로 중계하고 REST API 를 제공한다."""

    def __init__(self, settings: ConductorSettings, storage: Storage, hub: CommandHub, runner: JobRunner) -> None:
        self._settings = settings
        self._storage = storage
        self._hub = hub
        self._runner = runner
        self._connections: Dict[ServerConnection, NodeConnection] = {}
        self._server: Server | None = None
        self._web_app = web.Application()
        self._web_app.add_routes(ApiHandler(storage, runner).routes())
        self._web_runner: web.AppRunner | None = None
        self._web_site: web.TCPSite | None = None

    async def start(self) -> None:
        """WebSocket 서버와 HTTP API 를 시작한다."""
        LOGGER.info("Starting conductor on %s:%s", self._settings.host, self._settings.port)
        self._server = await serve(self._handler, self._settings.host, self._settings.port)
        await self._start_http()

    async def stop(self) -> None:
        """서버를 안전하게 종료한다."""
        LOGGER.info("Stopping conductor")
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        await self._cleanup_connections()
        await self._stop_http()
        await self._runner.stop()

    async def _cleanup_connections(self) -> None:
        if not self._connections:
            return
        LOGGER.info("Closing %d node connection(s)", len(self._connections))
        await asyncio.gather(
            *(node.connection.close(code=1001, reason="Server shutdown") for node in self._connections.values()),
            return_exceptions=True,
        )
        self._connections.clear()

    async def _start_http(self) -> None:
        if self._web_runner is not None:
            return
        http_host = self._settings.http_host or self._settings.host
        self._web_runner = web.AppRunner(self._web_app)
        await self._web_runner.setup()
        self._web_site = web.TCPSite(self._web_runner, http_host, self._settings.http_port)
        await self._web_site.start()
        LOGGER.info("HTTP API available on http://%s:%s", http_host, self._settings.http_port)

    async def _stop_http(self) -> None:
        if self._web_site is not None:
            await self._web_site.stop()
            self._web_site = None
        if self._web_runner is not None:
            await self._web_runner.cleanup()
            self._web_runner = None

    async def _handler(self, connection: ServerConnection) -> None:
        node = NodeConnection(connection=connection)
        self._connections[connection] = node
        try:
            async for raw_message in connection:
                LOGGER.debug("Received message from %s: %s", node.node_id, raw_message)
                reply = await self.process_message(node, raw_message)
                if reply is not None:
                    await connection.send(json.dumps(reply))
        except ConnectionClosed as exc:
            LOGGER.info("Node %s disconnected (%s)", node.node_id, exc.code)
        finally:
            self._connections.pop(connection, None)
            if node.node_id:
                self._update_node_record(node.node_id, status="offline")

    async def process_message(self, node: NodeConnection, raw_message: str | bytes) -> dict[str, Any] | None:
        """노드 메시지 하나를 처리하고 돌려보낼 응답을 반환한다."""
        try:
            payload = json.loads(raw_message)
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring non-JSON message from %s", node.node_id)
            return None
        if not isinstance(payload, dict):
            return None

        message_type = payload.get("type")
        if message_type == "node.hello":
            return self._handle_hello(node, payload)

        node_id = node.node_id or payload.get("node_id")
        if not node_id:
            LOGGER.warning("Message %s received before node.hello", message_type)
            return {"type": "error", "message": "node.hello required"}

        if message_type == "commands.pull":
            tasks = self._hub.handle_pull(node_id)
            if tasks is None:
                return {"type": "commands.none"}
            return {"type": "commands.tasks", **tasks}
        if message_type == "commands.response":
            await self._hub.handle_response(node_id, payload.get("jobId"), {"tasks": payload.get("tasks")})
            return {"type": "commands.ack"}

        LOGGER.warning("Unknown message type '%s' from %s", message_type, node_id)
        return None

    def _handle_hello(self, node: NodeConnection, payload: dict[str, Any]) -> dict[str, Any]:
        node_id = str(payload.get("node_id") or "").strip()
        if not node_id:
            return {"type": "error", "message": "node_id is required"}
        node.node_id = node_id
        self._update_node_record(node_id, status="online", display_name=payload.get("display_name"))
        LOGGER.info("Node %s connected", node_id)
        return {"type": "welcome", "node_id": node_id, "message": "Connected to rackjobs conductor"}

    def _update_node_record(self, node_id: str, *, status: str, display_name: str | None = None) -> None:
        self._storage.upsert_node(
            NodeMetadata(
                node_id=node_id,
                display_name=display_name,
                last_seen=datetime.utcnow(),
                status=status,
            )
        )


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(asctime)s] %(levelname)s: %(message)s")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rackjobs conductor")
    parser.add_argument("--host", default=os.getenv("RACKJOBS_HOST", "0.0.0.0"), help="바인딩할 호스트 주소")
    parser.add_argument("--port", type=int, default=int(os.getenv("RACKJOBS_PORT", "8765")), help="노드 WebSocket 포트")
    parser.add_argument("--verbose", action="store_true", help="디버그 로그 활성화")
    parser.add_argument("--http-host", default=os.getenv("RACKJOBS_HTTP_HOST"), help="REST API 바인딩 호스트 (기본: --host와 동일)")
    parser.add_argument("--http-port", type=int, default=int(os.getenv("RACKJOBS_HTTP_PORT", "8080")), help="REST API 포트")
    parser.add_argument("--db-path", default=os.getenv("RACKJOBS_DB_PATH", "var/rackjobs.db"), help="작업/카탈로그를 저장할 SQLite 경로")
    parser.add_argument("--diag-port", type=int, default=int(os.getenv("RACKJOBS_DIAG_PORT", "8080")), help="진단 에이전트 포트")
    parser.add_argument("--diag-scheme", default=os.getenv("RACKJOBS_DIAG_SCHEME", "http"), help="진단 에이전트 스킴")
    parser.add_argument("--diag-timeout", type=float, default=float(os.getenv("RACKJOBS_DIAG_TIMEOUT", "60")), help="진단 에이전트 요청 타임아웃(초)")
    parser.add_argument(
        "--discovery-retries",
        type=int,
        default=int(os.getenv("RACKJOBS_DISCOVERY_RETRIES", str(DISCOVERY_RETRY_COUNT))),
        help="discovery 최대 시도 횟수",
    )
    parser.add_argument(
        "--discovery-delay-ms",
        type=int,
        default=int(os.getenv("RACKJOBS_DISCOVERY_DELAY_MS", str(DISCOVERY_RETRY_DELAY_MS))),
        help="discovery 시도 간격(ms)",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> ConductorSettings:
    return ConductorSettings(
        host=args.host,
        port=args.port,
        http_host=args.http_host,
        http_port=args.http_port,
        db_path=args.db_path,
        diag_port=args.diag_port,
        diag_scheme=args.diag_scheme,
        diag_timeout=args.diag_timeout,
        discovery_retries=args.discovery_retries,
        discovery_delay_ms=args.discovery_delay_ms,
    )


def build_runner(settings: ConductorSettings, storage: Storage, hub: CommandHub) -> JobRunner:
    diag_factory = functools.partial(
        DiagClient,
        port=settings.diag_port,
        scheme=settings.diag_scheme,
        timeout=settings.diag_timeout,
    )
    return JobRunner(
        storage,
        hub,
        SqliteCatalogStore(storage),
        diag_factory,
        retry_count=settings.discovery_retries,
        retry_delay_ms=settings.discovery_delay_ms,
    )


async def _run_server(settings: ConductorSettings) -> None:
    storage = init_storage(settings.db_path)
    hub = CommandHub()
    server = ConductorServer(settings, storage, hub, build_runner(settings, storage, hub))
    await server.start()

    stop_event = asyncio.Event()

    def _handle_signal(*_: signal.Signals) -> None:
        LOGGER.info("Received shutdown signal")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, _handle_signal)

    try:
        await stop_event.wait()
    finally:
        await server.stop()
        storage.close()


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    try:
        asyncio.run(_run_server(load_settings(args)))
    except KeyboardInterrupt:
        LOGGER.info("Keyboard interrupt received")


if __name__ == "__main__":
    main(sys.argv[1:])
