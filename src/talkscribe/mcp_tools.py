from __future__ import annotations

from pathlib import Path
from typing import Any

from fastmcp import FastMCP
from mcp.types import ToolAnnotations

from talkscribe.db.jobs import JobStateError, JobStore
from talkscribe.timeline import TimelineReconstructor
from talkscribe.worker import InputPathError, JobManager


class ToolRegistry:
    def __init__(self, manager: JobManager, store: JobStore, timeline: TimelineReconstructor) -> None:
        self.manager = manager
        self.store = store
        self.timeline = timeline

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=False))
        def submit_job(media_path: str, presentation_path: str, job_id: str | None = None) -> dict[str, Any]:
            """Start processing a recording and its slide deck.

            Args:
                media_path: Path to the .mp4 or .mp3 recording, inside the upload directory
                presentation_path: Path to the slide deck, inside the upload directory
                job_id: Optional caller-chosen job id

            Returns:
                The job record; poll job_status with its jobId.
            """
            try:
                job = self.manager.submit(
                    media_path=Path(media_path),
                    presentation_path=Path(presentation_path),
                    job_id=job_id,
                )
            except InputPathError as exc:
                return {"error": "input_outside_root", "message": str(exc)}
            except FileNotFoundError as exc:
                return {"error": "file_not_found", "message": str(exc)}
            except ValueError as exc:
                return {"error": "invalid_job_id", "message": str(exc)}
            except JobStateError as exc:
                return {"error": "job_exists", "message": str(exc)}
            return job.to_dict()

        @mcp.tool(annotations=_ro)
        def job_status(job_id: str) -> dict[str, Any]:
            try:
                job = self.store.get(job_id)
            except JobStateError as exc:
                return {"error": "invalid_job_state", "job_id": job_id, "message": str(exc)}
            if job is None:
                return {"error": "job_not_found", "job_id": job_id}
            payload = job.to_dict()
            payload["active"] = self.manager.is_active(job_id)
            return payload

        @mcp.tool(annotations=_ro)
        def job_timeline(job_id: str, offset: int = 0, limit: int | None = None) -> dict[str, Any]:
            """Read the merged transcript timeline of a job.

            Args:
                job_id: The job ID returned from submit_job
                offset: Number of segments to skip (default: 0)
                limit: Max segments to return. None returns all remaining.
            """
            try:
                timeline = self.timeline.reconstruct(job_id)
            except JobStateError as exc:
                return {"error": "invalid_job_state", "job_id": job_id, "message": str(exc)}
            if timeline is None:
                return {"error": "job_not_found", "job_id": job_id}

            segments = timeline["segments"]
            page = segments[offset:] if limit is None else segments[offset : offset + limit]
            return {
                **timeline,
                "segments": page,
                "total_segments": len(segments),
                "offset": offset,
                "segments_returned": len(page),
            }
