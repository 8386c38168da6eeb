from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest
from conftest import FAKE_PIPELINE, wait_for

from talkscribe.db.jobs import JobStore
from talkscribe.services.thumbnail import ThumbnailGenerator
from talkscribe.worker import InputPathError, JobController, JobManager, QueueSubscriber

FAILING_PIPELINE = """
import sys

print("Split completed successfully", flush=True)
print("boom", file=sys.stderr, flush=True)
sys.exit(3)
"""

FAKE_FFMPEG = """
import sys
from pathlib import Path

Path(sys.argv[-1]).write_bytes(b"jpeg")
"""


class RecordingSubscriber:
    def __init__(self, store: JobStore, job_id: str) -> None:
        self.store = store
        self.job_id = job_id
        self.outputs: list[tuple[str, str]] = []
        self.progress_seen: list[int] = []
        self.done: list[dict[str, Any]] = []
        self.errors: list[dict[str, Any]] = []

    def on_output(self, stream: str, text: str) -> None:
        self.outputs.append((stream, text))
        if stream == "stdout":
            self.progress_seen.append(self.store.get(self.job_id).progress)

    def on_done(self, payload: dict[str, Any]) -> None:
        self.done.append(payload)

    def on_error(self, payload: dict[str, Any]) -> None:
        self.errors.append(payload)


def _inputs(tmp_path: Path) -> tuple[Path, Path]:
    media = tmp_path / "talk.mp3"
    presentation = tmp_path / "slides.pdf"
    media.write_bytes(b"audio")
    presentation.write_bytes(b"pdf")
    return media, presentation


def test_controller_tracks_progress_until_done(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs")
    script = tmp_path / "pipeline.py"
    script.write_text(FAKE_PIPELINE)
    job = store.create(media="/tmp/talk.mp3", presentation="/tmp/slides.pdf")
    subscriber = RecordingSubscriber(store, job.job_id)

    controller = JobController(job_id=job.job_id, store=store, pipeline_command=[sys.executable, str(script)])
    controller.add_subscriber(subscriber)
    controller.start()
    assert controller.wait(timeout=30)

    final = store.get(job.job_id)
    assert final.status == "done"
    assert final.exit_code == 0
    assert final.progress == 100
    assert final.total_chunks == 4
    assert final.transcribed_chunk_names == [
        "chunk_002.mp3",
        "chunk_000.mp3",
        "chunk_001.mp3",
        "chunk_003.mp3",
    ]
    assert final.started_at is not None and final.finished_at is not None
    assert "Transcription completed for chunk_003.mp3" in final.stdout
    assert final.stderr == "evaluator warning\n"

    assert subscriber.progress_seen == sorted(subscriber.progress_seen)
    assert 92 in subscriber.progress_seen
    assert ("stderr", "evaluator warning\n") in subscriber.outputs
    assert subscriber.done == [
        {"jobId": job.job_id, "exitCode": 0, "stdout": final.stdout, "stderr": final.stderr}
    ]
    assert subscriber.errors == []


def test_nonzero_exit_marks_job_failed(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs")
    script = tmp_path / "pipeline.py"
    script.write_text(FAILING_PIPELINE)
    job = store.create(media="/tmp/talk.mp3", presentation="/tmp/slides.pdf")

    controller = JobController(job_id=job.job_id, store=store, pipeline_command=[sys.executable, str(script)])
    controller.start()
    assert controller.wait(timeout=30)

    final = store.get(job.job_id)
    assert final.status == "failed"
    assert final.exit_code == 3
    assert final.progress == 10
    assert final.stderr == "boom\n"


def test_spawn_failure_is_reported_as_error(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs")
    media, presentation = _inputs(tmp_path)
    manager = JobManager(store=store, pipeline_command=[str(tmp_path / "no-such-pipeline")])
    subscriber = QueueSubscriber()

    job = manager.submit(media_path=media, presentation_path=presentation, subscriber=subscriber)

    assert job.status == "error"
    assert job.error
    assert not manager.is_active(job.job_id)
    events = list(subscriber.events(poll_seconds=0.1))
    assert events == [("error", {"jobId": job.job_id, "message": job.error})]


def test_manager_runs_pipeline_and_thumbnail(tmp_path: Path, script_factory) -> None:
    store = JobStore(tmp_path / "jobs")
    media, presentation = _inputs(tmp_path)
    script = tmp_path / "pipeline.py"
    script.write_text(FAKE_PIPELINE)
    ffmpeg = script_factory("ffmpeg", FAKE_FFMPEG)
    thumbnails = ThumbnailGenerator(store, ffmpeg_bin=str(ffmpeg))
    manager = JobManager(
        store=store,
        pipeline_command=[sys.executable, str(script)],
        thumbnails=thumbnails,
    )

    job = manager.submit(media_path=media, presentation_path=presentation, job_id="talk-1")
    assert manager.wait("talk-1", timeout=30)

    assert wait_for(lambda: store.get("talk-1").thumbnail_exists)
    final = store.get("talk-1")
    assert job.media == str(store.job_dir("talk-1") / "media.mp3")
    assert Path(job.media).read_bytes() == b"audio"
    assert Path(job.presentation).read_bytes() == b"pdf"
    assert final.status == "done"
    assert final.thumbnail_error is None
    assert thumbnails.thumbnail_path("talk-1").read_bytes() == b"jpeg"
    assert manager.active_ids() == []
    assert manager.subscribe("talk-1", QueueSubscriber()) is False


def test_missing_inputs_are_rejected(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs")
    manager = JobManager(store=store, pipeline_command=[sys.executable, "-c", "pass"])
    presentation = tmp_path / "slides.pdf"
    presentation.write_bytes(b"pdf")

    with pytest.raises(FileNotFoundError, match="missing.mp4"):
        manager.submit(media_path=tmp_path / "missing.mp4", presentation_path=presentation)
    assert store.list_ids() == []


def test_inputs_outside_root_are_rejected(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs")
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    manager = JobManager(store=store, pipeline_command=[sys.executable, "-c", "pass"], input_root=uploads)
    _, presentation = _inputs(tmp_path)
    inside_media = uploads / "talk.mp3"
    inside_media.write_bytes(b"audio")

    with pytest.raises(InputPathError, match="Media"):
        manager.submit(media_path=uploads / ".." / "talk.mp3", presentation_path=presentation)
    with pytest.raises(InputPathError, match="Presentation"):
        manager.submit(media_path=inside_media, presentation_path=presentation)
    assert store.list_ids() == []


def test_staging_failure_marks_job_error(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs")
    media, presentation = _inputs(tmp_path)
    manager = JobManager(store=store, pipeline_command=[sys.executable, "-c", "pass"])
    # A directory where the staged media belongs cannot be replaced.
    (store.job_dir("blocked") / "media.mp3").mkdir(parents=True)

    job = manager.submit(media_path=media, presentation_path=presentation, job_id="blocked")

    assert job.status == "error"
    assert job.error
    assert not manager.is_active("blocked")
