"""REST API 라우트."""

from __future__ import annotations

from typing import Any

from aiohttp import web

from .errors import ValidationError
from .models import JobKind, JobRecord, JobStatus
from .runner import JobRunner
from .storage import Storage


class ApiHandler:
    def __init__(self, storage: Storage, runner: JobRunner) -> None:
        self._storage = storage
        self._runner = runner

    def routes(self) -> tuple[web.RouteDef, ...]:
        return (
            web.get("/api/status", self.status),
            web.get("/api/jobs", self.list_jobs),
            web.get("/api/jobs/{job_id}", self.get_job),
            web.post("/api/jobs/firmware", self.create_firmware_job),
            web.post("/api/jobs/commands", self.create_command_job),
            web.get("/api/nodes", self.list_nodes),
            web.get("/api/catalogs", self.list_catalogs),
        )

    async def status(self, _: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "active_jobs": self._runner.active_job_ids})

    async def list_jobs(self, request: web.Request) -> web.Response:
        status_param = request.query.get("status")
        try:
            status = JobStatus(status_param) if status_param else None
        except ValueError as exc:
            raise web.HTTPBadRequest(text="invalid status") from exc
        jobs = self._storage.list_jobs(limit=100, status=status)
        return web.json_response({"jobs": [self._job_to_dict(job) for job in jobs]})

    async def get_job(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        job = self._storage.get_job(job_id)
        if job is None:
            raise web.HTTPNotFound(text="job not found")
        return web.json_response({"job": self._job_to_dict(job)})

    async def create_firmware_job(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        context = {
            "target": self._required(data, "node_id"),
            "nodeIp": self._required(data, "node_ip"),
        }
        return self._submit(JobKind.FIRMWARE_UPDATE, data.get("options") or {}, context)

    async def create_command_job(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        context = {"target": self._required(data, "node_id")}
        return self._submit(JobKind.COMMANDS, data.get("options") or {}, context)

    async def list_nodes(self, _: web.Request) -> web.Response:
        nodes = self._storage.list_nodes()
        payload = [
            {
                "node_id": node.node_id,
                "display_name": node.display_name,
                "status": node.status,
                "last_seen": node.last_seen.isoformat(),
            }
            for node in nodes
        ]
        return web.json_response({"nodes": payload})

    async def list_catalogs(self, request: web.Request) -> web.Response:
        limit = min(int(request.query.get("limit", 100)), 1000)
        catalogs = self._storage.list_catalogs(
            request.query.get("node_id"),
            source=request.query.get("source"),
            limit=limit,
        )
        return web.json_response({"catalogs": catalogs})

    def _submit(self, kind: JobKind, options: Any, context: dict[str, Any]) -> web.Response:
        if not isinstance(options, dict):
            raise web.HTTPBadRequest(text="options must be an object")
        try:
            record = self._runner.submit(kind, options, context)
        except ValidationError as exc:
            raise web.HTTPBadRequest(text=str(exc)) from exc
        return web.json_response({"job": self._job_to_dict(record)}, status=201)

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        try:
            data = await request.json()
        except Exception:  # noqa: BLE001
            raise web.HTTPBadRequest(text="invalid json") from None
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(text="JSON object expected")
        return data

    def _required(self, data: dict[str, Any], key: str) -> str:
        value = str(data.get(key) or "").strip()
        if not value:
            raise web.HTTPBadRequest(text=f"{key} is required")
        return value

    def _job_to_dict(self, job: JobRecord) -> dict[str, Any]:
        return {
            "job_id": job.job_id,
            "kind": job.kind.value,
            "node_id": job.node_id,
            "status": job.status.value,
            "options": job.options,
            "context": job.context,
            "error_message": job.error_message,
            "created_at": job.created_at.isoformat(),
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        }
