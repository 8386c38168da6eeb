from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

JobStatus = Literal["queued", "running", "done", "failed", "error"]
OutputStream = Literal["stdout", "stderr"]

TERMINAL_STATUSES = ("done", "failed", "error")


@dataclass(slots=True)
class Job:
    """Persisted state of one submission, stored as camelCase JSON."""

    job_id: str
    media: str
    presentation: str
    status: JobStatus = "queued"
    created_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    progress: int = 0
    progress_message: str | None = None
    total_chunks: int | None = None
    transcribed_chunk_names: list[str] = field(default_factory=list)
    exit_code: int | None = None
    stdout: str | None = None
    stderr: str | None = None
    error: str | None = None
    thumbnail_exists: bool = False
    thumbnail_created_at: str | None = None
    thumbnail_error: str | None = None

    @property
    def transcribed_chunks(self) -> int:
        return len(self.transcribed_chunk_names)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "media": self.media,
            "presentation": self.presentation,
            "status": self.status,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "progress": self.progress,
            "progressMessage": self.progress_message,
            "totalChunks": self.total_chunks,
            "transcribedChunks": self.transcribed_chunks,
            "transcribedChunkNames": list(self.transcribed_chunk_names),
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "error": self.error,
            "thumbnailExists": self.thumbnail_exists,
            "thumbnailCreatedAt": self.thumbnail_created_at,
            "thumbnailError": self.thumbnail_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        job_id = data.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            raise ValueError("jobId is missing")
        names = data.get("transcribedChunkNames") or []
        if not isinstance(names, list):
            raise ValueError("transcribedChunkNames must be a list")
        status = data.get("status") or "queued"
        if status not in ("queued", "running", *TERMINAL_STATUSES):
            raise ValueError(f"unknown status {status!r}")
        total = data.get("totalChunks")
        exit_code = data.get("exitCode")
        return cls(
            job_id=job_id,
            media=str(data.get("media") or ""),
            presentation=str(data.get("presentation") or ""),
            status=status,
            created_at=data.get("createdAt"),
            started_at=data.get("startedAt"),
            finished_at=data.get("finishedAt"),
            progress=int(data.get("progress") or 0),
            progress_message=data.get("progressMessage"),
            total_chunks=int(total) if total is not None else None,
            transcribed_chunk_names=list(dict.fromkeys(str(name) for name in names)),
            exit_code=int(exit_code) if exit_code is not None else None,
            stdout=data.get("stdout"),
            stderr=data.get("stderr"),
            error=data.get("error"),
            thumbnail_exists=bool(data.get("thumbnailExists", False)),
            thumbnail_created_at=data.get("thumbnailCreatedAt"),
            thumbnail_error=data.get("thumbnailError"),
        )


@dataclass(slots=True)
class TranscriptSegment:
    start: float
    end: float
    text: str
    speaker: str | None = None


@dataclass(slots=True)
class TranscriptResult:
    text: str
    segments: list[TranscriptSegment]
    language: str | None = None


@dataclass(slots=True)
class TimelineSegment:
    start_sec: float
    end_sec: float
    text: str

    def dedupe_key(self) -> tuple[int, int, str]:
        return (round(self.start_sec * 1000), round(self.end_sec * 1000), self.text[:200])
