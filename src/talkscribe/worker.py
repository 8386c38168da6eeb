from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from queue import Empty, Queue
from threading import Event, Lock, Thread
from typing import IO, Any, Callable, Iterator, Protocol

from talkscribe.db.jobs import JobStateError, JobStore, new_job_id, utc_now
from talkscribe.progress import ProgressState, advance
from talkscribe.services.thumbnail import ThumbnailGenerator
from talkscribe.types import Job, OutputStream

logger = logging.getLogger(__name__)


class InputPathError(ValueError):
    """Raised when a submitted input lies outside the configured input root."""


def stage_input(source: Path, target: Path) -> None:
    """Place ``source`` at ``target``, hard-linking when the filesystem allows it."""
    target.unlink(missing_ok=True)
    try:
        os.link(source, target)
    except OSError:
        shutil.copy2(source, target)


class OutputSubscriber(Protocol):
    def on_output(self, stream: OutputStream, text: str) -> None: ...

    def on_done(self, payload: dict[str, Any]) -> None: ...

    def on_error(self, payload: dict[str, Any]) -> None: ...


class QueueSubscriber:
    """Buffers pipeline events for a single live consumer (an SSE response)."""

    def __init__(self) -> None:
        self._queue: Queue[tuple[str, Any]] = Queue()
        self._closed = Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def on_output(self, stream: OutputStream, text: str) -> None:
        if not self.closed:
            self._queue.put(("output", {"stream": stream, "text": text}))

    def on_done(self, payload: dict[str, Any]) -> None:
        if not self.closed:
            self._queue.put(("done", payload))

    def on_error(self, payload: dict[str, Any]) -> None:
        if not self.closed:
            self._queue.put(("error", payload))

    def events(self, poll_seconds: float = 1.0) -> Iterator[tuple[str, Any]]:
        """Yield events until a terminal one; ``("ping", None)`` while idle."""
        while not self.closed:
            try:
                kind, payload = self._queue.get(timeout=poll_seconds)
            except Empty:
                yield "ping", None
                continue
            yield kind, payload
            if kind in ("done", "error"):
                return


class JobController:
    """Runs the pipeline process of one job and mirrors its output into the store."""

    def __init__(
        self,
        *,
        job_id: str,
        store: JobStore,
        pipeline_command: list[str],
        on_finished: Callable[[str], None] | None = None,
    ) -> None:
        self.job_id = job_id
        self.store = store
        self.pipeline_command = pipeline_command
        self.on_finished = on_finished
        self.job_dir = store.job_dir(job_id)
        self.chunks_dir = self.job_dir / "chunks"
        self.transcripts_dir = self.job_dir / "transcripts"

        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._state = ProgressState()
        self._subscribers: list[OutputSubscriber] = []
        self._subscribers_lock = Lock()
        self._process: subprocess.Popen[str] | None = None
        self._monitor: Thread | None = None
        self._finished = Event()

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    def add_subscriber(self, subscriber: OutputSubscriber) -> None:
        with self._subscribers_lock:
            self._subscribers.append(subscriber)

    def remove_subscriber(self, subscriber: OutputSubscriber) -> None:
        with self._subscribers_lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def build_command(self, job: Job) -> list[str]:
        return [
            *self.pipeline_command,
            job.media,
            job.presentation,
            "--job-id",
            job.job_id,
            "--chunks-dir",
            str(self.chunks_dir),
            "--transcripts-dir",
            str(self.transcripts_dir),
        ]

    def start(self) -> None:
        job = self.store.get(self.job_id)
        if job is None:
            raise JobStateError(f"Job {self.job_id} not found")
        self._state = ProgressState.from_job(job)

        cmd = self.build_command(job)
        env = dict(os.environ)
        env["PYTHONUNBUFFERED"] = "1"
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
            )
        except OSError as exc:
            self.fail(exc)
            return

        logger.info("Job %s pipeline started (pid %s)", self.job_id, self._process.pid)
        self._persist(self._mark_running)
        self._monitor = Thread(
            target=self._run_monitor,
            args=(self._process,),
            name=f"job-{self.job_id}",
            daemon=True,
        )
        self._monitor.start()

    def wait(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)

    def on_output_chunk(self, stream: OutputStream, text: str) -> None:
        if stream == "stdout":
            self._stdout.append(text)
            previous = self._state
            self._state = advance(previous, text, self.chunks_dir)
            if self._state != previous:
                self._persist(self._state.apply_to)
        else:
            self._stderr.append(text)
        self._publish(lambda subscriber: subscriber.on_output(stream, text))

    def on_exit(self, code: int) -> None:
        stdout = "".join(self._stdout)
        stderr = "".join(self._stderr)

        def finalize(job: Job) -> None:
            job.finished_at = utc_now()
            job.exit_code = code
            job.stdout = stdout
            job.stderr = stderr
            if code == 0:
                job.status = "done"
                job.progress = 100
                job.progress_message = "finished"
            else:
                job.status = "failed"
                job.progress_message = "failed"

        self._persist(finalize)
        if code == 0:
            logger.info("Job %s finished", self.job_id)
        else:
            logger.warning("Job %s failed with exit code %s", self.job_id, code)

        payload = {"jobId": self.job_id, "exitCode": code, "stdout": stdout, "stderr": stderr}
        self._publish(lambda subscriber: subscriber.on_done(payload))
        self._release()

    def fail(self, exc: OSError) -> None:
        """Mark the job as errored when its pipeline never got to run."""
        message = str(exc).strip() or exc.__class__.__name__
        logger.error("Job %s could not start: %s", self.job_id, message)

        def mark_error(job: Job) -> None:
            job.status = "error"
            job.finished_at = utc_now()
            job.error = message

        self._persist(mark_error)
        payload = {"jobId": self.job_id, "message": message}
        self._publish(lambda subscriber: subscriber.on_error(payload))
        self._release()

    @staticmethod
    def _mark_running(job: Job) -> None:
        job.status = "running"
        job.started_at = utc_now()
        job.progress_message = "started"

    def _run_monitor(self, process: subprocess.Popen[str]) -> None:
        try:
            readers = [
                Thread(target=self._drain, args=("stdout", process.stdout), daemon=True),
                Thread(target=self._drain, args=("stderr", process.stderr), daemon=True),
            ]
            for reader in readers:
                reader.start()
            for reader in readers:
                reader.join()
            code = process.wait()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Job %s monitor crashed", self.job_id)
            code = process.poll()
            if code is None:
                code = -1
        self.on_exit(code)

    def _drain(self, stream: OutputStream, pipe: IO[str] | None) -> None:
        if pipe is None:
            return
        with pipe:
            for text in pipe:
                try:
                    self.on_output_chunk(stream, text)
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Job %s failed to handle %s output", self.job_id, stream)

    def _persist(self, mutate: Callable[[Job], None]) -> None:
        try:
            self.store.update(self.job_id, mutate)
        except JobStateError:
            logger.exception("Could not persist state of job %s", self.job_id)

    def _publish(self, deliver: Callable[[OutputSubscriber], None]) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                deliver(subscriber)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Subscriber of job %s raised; detaching it", self.job_id)
                self.remove_subscriber(subscriber)

    def _release(self) -> None:
        if self.on_finished is not None:
            self.on_finished(self.job_id)
        self._finished.set()


class JobManager:
    """Registry of running jobs; starts the pipeline and thumbnail task per submission.

    Inputs are hard-linked (or copied) into the job directory before the
    pipeline starts, so every file a job serves lives under that directory.
    With ``input_root`` set, only files below it are accepted.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        pipeline_command: list[str],
        thumbnails: ThumbnailGenerator | None = None,
        input_root: Path | None = None,
    ) -> None:
        self.store = store
        self.pipeline_command = pipeline_command
        self.thumbnails = thumbnails
        self.input_root = input_root.resolve() if input_root is not None else None
        self._active: dict[str, JobController] = {}
        self._lock = Lock()

    def resolve_input(self, path: Path, label: str) -> Path:
        resolved = path.resolve()
        if self.input_root is not None and not resolved.is_relative_to(self.input_root):
            raise InputPathError(f"{label} file must be inside {self.input_root}: {path}")
        if not resolved.is_file():
            raise FileNotFoundError(f"{label} file not found: {path}")
        return resolved

    def submit(
        self,
        *,
        media_path: Path,
        presentation_path: Path,
        job_id: str | None = None,
        subscriber: OutputSubscriber | None = None,
    ) -> Job:
        media_source = self.resolve_input(media_path, "Media")
        presentation_source = self.resolve_input(presentation_path, "Presentation")

        job_id = job_id or new_job_id()
        job_dir = self.store.job_dir(job_id)
        staged_media = job_dir / f"media{media_source.suffix.lower()}"
        staged_presentation = job_dir / f"presentation{presentation_source.suffix.lower()}"
        job = self.store.create(media=str(staged_media), presentation=str(staged_presentation), job_id=job_id)

        controller = JobController(
            job_id=job.job_id,
            store=self.store,
            pipeline_command=self.pipeline_command,
            on_finished=self._release,
        )
        if subscriber is not None:
            controller.add_subscriber(subscriber)
        with self._lock:
            self._active[job.job_id] = controller

        try:
            stage_input(media_source, staged_media)
            stage_input(presentation_source, staged_presentation)
        except OSError as exc:
            controller.fail(exc)
            return self.store.get(job.job_id) or job

        if self.thumbnails is not None:
            self.thumbnails.start(job.job_id, staged_media)
        controller.start()

        return self.store.get(job.job_id) or job

    def subscribe(self, job_id: str, subscriber: OutputSubscriber) -> bool:
        with self._lock:
            controller = self._active.get(job_id)
        if controller is None or controller.is_finished:
            return False
        controller.add_subscriber(subscriber)
        return True

    def unsubscribe(self, job_id: str, subscriber: OutputSubscriber) -> None:
        with self._lock:
            controller = self._active.get(job_id)
        if controller is not None:
            controller.remove_subscriber(subscriber)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def active_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            controller = self._active.get(job_id)
        if controller is None:
            return True
        return controller.wait(timeout)

    def shutdown(self, timeout_seconds: float = 10.0) -> None:
        with self._lock:
            controllers = list(self._active.values())
        for controller in controllers:
            if not controller.wait(timeout_seconds):
                logger.warning("Job %s still running at shutdown", controller.job_id)

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._active.pop(job_id, None)
