"""Rackjobs 마스터에서 명령 묶음을 받아 실행하는 노드 러너."""

from __future__ import annotations

import argparse
import asyncio
import asyncio.subprocess
import contextlib
import json
import logging
import os
import socket
import sys
from dataclasses import dataclass
from typing import Any, Sequence

import websockets

LOGGER = logging.getLogger(__name__)

_ECHOED_KEYS = ("cmd", "format", "source", "catalog", "acceptedResponseCodes")
_TIMEOUT_CODE = 124
_NOT_RUNNABLE_CODE = 127


@dataclass
class NodeContext:
    node_id: str
    display_name: str | None
    poll_interval: float
    task_timeout: float | None = None
    registered: bool = False
    busy: bool = False


async def _receiver(websocket, context: NodeContext) -> None:
    async for message in websocket:
        try:
            payload = json.loads(message)
        except json.JSONDecodeError:
            LOGGER.warning("수신한 메시지를 JSON으로 파싱할 수 없습니다: %s", message)
            continue

        msg_type = payload.get("type")
        if msg_type == "welcome":
            context.registered = True
            LOGGER.info("[master] %s (node_id=%s)", payload.get("message"), payload.get("node_id"))
        elif msg_type == "commands.tasks":
            await _handle_tasks(websocket, context, payload)
        elif msg_type in {"commands.none", "commands.ack"}:
            continue
        elif msg_type == "error":
            LOGGER.warning("[master] 오류: %s", payload.get("message"))
        else:
            LOGGER.debug("알 수 없는 메시지: %s", payload)


async def _send_node_hello(websocket, context: NodeContext) -> None:
    message = {
        "type": "node.hello",
        "node_id": context.node_id,
        "display_name": context.display_name,
    }
    await websocket.send(json.dumps(message))


async def _poller(websocket, context: NodeContext) -> None:
    while True:
        if context.registered and not context.busy:
            await websocket.send(json.dumps({"type": "commands.pull", "node_id": context.node_id}))
        await asyncio.sleep(context.poll_interval)


async def _handle_tasks(websocket, context: NodeContext, payload: dict[str, Any]) -> None:
    tasks = payload.get("tasks")
    if not isinstance(tasks, list):
        LOGGER.warning("commands.tasks payload에 tasks 목록이 없습니다: %s", payload)
        return

    LOGGER.info("명령 %d개를 수신했습니다.", len(tasks))
    context.busy = True
    try:
        results = await execute_tasks(tasks, timeout=context.task_timeout)
        await websocket.send(
            json.dumps(
                {
                    "type": "commands.response",
                    "node_id": context.node_id,
                    "identifier": payload.get("identifier", context.node_id),
                    "jobId": payload.get("jobId"),
                    "tasks": results,
                }
            )
        )
    finally:
        context.busy = False


async def execute_tasks(tasks: Sequence[dict[str, Any]], *, timeout: float | None = None) -> list[dict[str, Any]]:
    """명령을 순서대로 실행하고 결과 목록을 돌려준다."""
    results = []
    for task in tasks:
        results.append(await run_task(task, timeout=timeout))
    return results


async def run_task(task: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
    """명령 하나를 셸로 실행한다. 0 이 아닌 종료 코드는 ``error`` 로 보고한다."""
    result: dict[str, Any] = {key: task[key] for key in _ECHOED_KEYS if key in task}
    cmd = str(task.get("cmd", ""))
    LOGGER.info("명령 실행: %s", cmd)
    try:
        process = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        result["error"] = {"code": _NOT_RUNNABLE_CODE, "message": str(exc)}
        return result

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        with contextlib.suppress(ProcessLookupError):
            await process.wait()
        result["error"] = {"code": _TIMEOUT_CODE, "message": f"timed out after {timeout}s"}
        return result

    stdout_text = stdout.decode(errors="replace")
    stderr_text = stderr.decode(errors="replace")
    result["stdout"] = stdout_text
    result["stderr"] = stderr_text
    result["exitCode"] = process.returncode
    if process.returncode != 0:
        result["error"] = {
            "code": process.returncode,
            "message": stderr_text.strip() or f"exit code {process.returncode}",
        }
    LOGGER.info("명령 종료 코드: %s", process.returncode)
    return result


async def _run_client(host: str, port: int, context: NodeContext) -> None:
    uri = f"ws://{host}:{port}"
    LOGGER.info("Connecting to %s", uri)
    async with websockets.connect(uri) as websocket:
        await _send_node_hello(websocket, context)
        receiver = asyncio.create_task(_receiver(websocket, context))
        poller = asyncio.create_task(_poller(websocket, context))
        done, pending = await asyncio.wait({receiver, poller}, return_when=asyncio.FIRST_COMPLETED)

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for task in done:
            exc = task.exception()
            if exc:
                raise exc


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rackjobs 노드 러너")
    parser.add_argument("--host", default=os.getenv("RACKJOBS_MASTER_HOST", "127.0.0.1"), help="마스터 호스트")
    parser.add_argument("--port", type=int, default=int(os.getenv("RACKJOBS_MASTER_PORT", "8765")), help="마스터 포트")
    parser.add_argument("--verbose", action="store_true", help="디버그 로그 출력")
    parser.add_argument("--node-id", default=os.getenv("RACKJOBS_NODE_ID", socket.gethostname()), help="노드 식별자")
    parser.add_argument("--display-name", default=None, help="노드 표시 이름")
    parser.add_argument("--poll-interval", type=float, default=5.0, help="명령 요청 주기(초)")
    parser.add_argument("--task-timeout", type=float, default=None, help="명령 하나당 타임아웃(초)")
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(asctime)s] %(levelname)s: %(message)s")


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    context = NodeContext(
        node_id=args.node_id,
        display_name=args.display_name,
        poll_interval=max(args.poll_interval, 0.5),
        task_timeout=args.task_timeout,
    )
    try:
        asyncio.run(_run_client(args.host, args.port, context))
    except KeyboardInterrupt:
        LOGGER.info("노드 러너 종료")


if __name__ == "__main__":
    main(sys.argv[1:])
