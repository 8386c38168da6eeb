from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from threading import Thread

from talkscribe.db.jobs import JobStateError, JobStore, utc_now
from talkscribe.types import Job

logger = logging.getLogger(__name__)

THUMBNAIL_FILENAME = "thumbnail.jpg"


class ThumbnailGenerator:
    """One-shot preview frame extraction, run beside the pipeline.

    The outcome is written into the job record through the store; failures
    stay confined to the thumbnail fields and never reach the job status.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        ffmpeg_bin: str = "ffmpeg",
        offset: str = "00:00:01",
        width: int = 320,
    ) -> None:
        self.store = store
        self.ffmpeg_bin = ffmpeg_bin
        self.offset = offset
        self.width = width

    def thumbnail_path(self, job_id: str) -> Path:
        return self.store.job_dir(job_id) / THUMBNAIL_FILENAME

    def start(self, job_id: str, media_path: Path) -> Thread:
        thread = Thread(
            target=self.run,
            args=(job_id, media_path),
            name=f"thumbnail-{job_id}",
            daemon=True,
        )
        thread.start()
        return thread

    def build_command(self, media_path: Path, thumb_path: Path) -> list[str]:
        return [
            self.ffmpeg_bin,
            "-y",
            "-ss",
            self.offset,
            "-i",
            str(media_path),
            "-frames:v",
            "1",
            "-q:v",
            "2",
            "-vf",
            f"scale={self.width}:-1",
            str(thumb_path),
        ]

    def run(self, job_id: str, media_path: Path) -> None:
        thumb_path = self.thumbnail_path(job_id)
        cmd = self.build_command(media_path, thumb_path)
        try:
            completed = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as exc:
            logger.warning("Thumbnail extraction for job %s could not start: %s", job_id, exc)
            self._record(job_id, error=str(exc))
            return

        if completed.returncode == 0 and thumb_path.exists():
            logger.info("Thumbnail ready for job %s", job_id)
            self._record(job_id, error=None)
        else:
            logger.warning("Thumbnail extraction for job %s exited with %s", job_id, completed.returncode)
            self._record(job_id, error=f"ffmpeg exit {completed.returncode}")

    def _record(self, job_id: str, *, error: str | None) -> None:
        def mutate(job: Job) -> None:
            if error is None:
                job.thumbnail_exists = True
                job.thumbnail_created_at = utc_now()
                job.thumbnail_error = None
            else:
                job.thumbnail_exists = False
                job.thumbnail_error = error

        try:
            self.store.update(job_id, mutate)
        except JobStateError:
            logger.exception("Could not record thumbnail result for job %s", job_id)
