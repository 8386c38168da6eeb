from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

from fastmcp import FastMCP
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response, StreamingResponse

from talkscribe.db.jobs import JobStateError
from talkscribe.services.thumbnail import THUMBNAIL_FILENAME
from talkscribe.timeline import job_urls
from talkscribe.types import Job
from talkscribe.worker import InputPathError, QueueSubscriber

if TYPE_CHECKING:
    from talkscribe.main import AppRuntime

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def sse_event(payload: Any, event: str | None = None) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    lines = data.splitlines() or [""]
    prefix = f"event: {event}\n" if event else ""
    return prefix + "".join(f"data: {line}\n" for line in lines) + "\n"


def terminal_event(job: Job) -> str:
    if job.status == "error":
        return sse_event({"jobId": job.job_id, "message": job.error}, event="error")
    return sse_event(
        {"jobId": job.job_id, "exitCode": job.exit_code, "stdout": job.stdout, "stderr": job.stderr},
        event="done",
    )


def stream_job_events(runtime: AppRuntime, job_id: str, subscriber: QueueSubscriber) -> Iterator[str]:
    """SSE body for one subscriber; closing it never stops the pipeline."""
    try:
        for kind, payload in subscriber.events():
            if kind == "output":
                yield sse_event(payload["text"].rstrip("\n"))
            elif kind == "ping":
                job = _load_job(runtime, job_id)
                if job is not None and job.is_terminal and not runtime.manager.is_active(job_id):
                    yield terminal_event(job)
                    return
                yield ": keep-alive\n\n"
            else:
                yield sse_event(payload, event=kind)
    finally:
        subscriber.close()
        runtime.manager.unsubscribe(job_id, subscriber)
        logger.info("Live subscriber detached from job %s", job_id)


def _load_job(runtime: AppRuntime, job_id: str) -> Job | None:
    try:
        return runtime.store.get(job_id)
    except JobStateError:
        return None


def _job_or_error(runtime: AppRuntime, job_id: str) -> Job | JSONResponse:
    try:
        job = runtime.store.get(job_id)
    except JobStateError as exc:
        logger.warning("Invalid job state for %s: %s", job_id, exc)
        return JSONResponse({"error": "invalid_job_state", "job_id": job_id}, status_code=500)
    if job is None:
        return JSONResponse({"error": "job_not_found", "job_id": job_id}, status_code=404)
    return job


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def register_routes(mcp: FastMCP, runtime: AppRuntime) -> None:
    settings = runtime.settings

    @mcp.custom_route(settings.health_path, methods=["GET"])
    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "active_jobs": runtime.manager.active_ids(),
                "jobs_dir": str(settings.jobs_dir),
                "mcp_path": settings.mcp_path,
            }
        )

    @mcp.custom_route("/jobs", methods=["POST"])
    async def create_job(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid_json"}, status_code=400)
        if not isinstance(body, dict) or not body.get("media_path") or not body.get("presentation_path"):
            return JSONResponse(
                {"error": "media_path and presentation_path are required"}, status_code=400
            )

        stream = request.query_params.get("stream") == "true"
        subscriber = QueueSubscriber() if stream else None
        try:
            job = await run_in_threadpool(
                runtime.manager.submit,
                media_path=Path(str(body["media_path"])),
                presentation_path=Path(str(body["presentation_path"])),
                job_id=body.get("job_id") or None,
                subscriber=subscriber,
            )
        except InputPathError as exc:
            return JSONResponse({"error": "input_outside_root", "message": str(exc)}, status_code=400)
        except FileNotFoundError as exc:
            return JSONResponse({"error": "file_not_found", "message": str(exc)}, status_code=400)
        except ValueError as exc:
            return JSONResponse({"error": "invalid_job_id", "message": str(exc)}, status_code=400)
        except JobStateError as exc:
            return JSONResponse({"error": "job_exists", "message": str(exc)}, status_code=409)

        if subscriber is not None:
            return StreamingResponse(
                stream_job_events(runtime, job.job_id, subscriber),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )
        payload = job.to_dict()
        payload["urls"] = job_urls(job.job_id, _base_url(request))
        return JSONResponse(payload, status_code=202)

    @mcp.custom_route("/jobs/{job_id}", methods=["GET"])
    async def get_job(request: Request) -> Response:
        job_id = request.path_params["job_id"]
        job = _job_or_error(runtime, job_id)
        if isinstance(job, JSONResponse):
            return job
        payload = job.to_dict()
        payload["urls"] = job_urls(job_id, _base_url(request))
        payload["active"] = runtime.manager.is_active(job_id)
        return JSONResponse(payload)

    @mcp.custom_route("/jobs/{job_id}/events", methods=["GET"])
    async def job_events(request: Request) -> Response:
        job_id = request.path_params["job_id"]
        job = _job_or_error(runtime, job_id)
        if isinstance(job, JSONResponse):
            return job

        subscriber = QueueSubscriber()
        if not runtime.manager.subscribe(job_id, subscriber):
            # Nothing left to follow; replay the final outcome once.
            refreshed = _load_job(runtime, job_id) or job
            if not refreshed.is_terminal:
                return JSONResponse({"error": "job_not_active", "job_id": job_id}, status_code=409)
            return Response(terminal_event(refreshed), media_type="text/event-stream")
        return StreamingResponse(
            stream_job_events(runtime, job_id, subscriber),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @mcp.custom_route("/jobs/{job_id}/detailed", methods=["GET"])
    async def job_detailed(request: Request) -> JSONResponse:
        job_id = request.path_params["job_id"]
        try:
            timeline = await run_in_threadpool(runtime.timeline.reconstruct, job_id, _base_url(request))
        except JobStateError:
            return JSONResponse({"error": "invalid_job_state", "job_id": job_id}, status_code=500)
        if timeline is None:
            return JSONResponse({"error": "job_not_found", "job_id": job_id}, status_code=404)
        return JSONResponse(timeline)

    def _file_route(field: str):
        async def serve(request: Request) -> Response:
            job_id = request.path_params["job_id"]
            job = _job_or_error(runtime, job_id)
            if isinstance(job, JSONResponse):
                return job
            job_dir = runtime.store.job_dir(job_id).resolve()
            if field == "thumbnail":
                path = job_dir / THUMBNAIL_FILENAME
            else:
                path = Path(getattr(job, field)).resolve()
            # Only files staged inside the job directory are ever served.
            if not path.is_relative_to(job_dir) or not path.is_file():
                return JSONResponse({"error": f"{field}_not_found", "job_id": job_id}, status_code=404)
            if field == "presentation" and path.suffix.lower() != ".pdf":
                return FileResponse(path, filename=path.name)
            return FileResponse(path, content_disposition_type="inline", filename=path.name)

        return serve

    mcp.custom_route("/jobs/{job_id}/file", methods=["GET"])(_file_route("media"))
    mcp.custom_route("/jobs/{job_id}/presentation", methods=["GET"])(_file_route("presentation"))
    mcp.custom_route("/jobs/{job_id}/thumbnail", methods=["GET"])(_file_route("thumbnail"))
