from __future__ import annotations

import dataclasses
import sys
from pathlib import Path
from typing import Iterator

import pytest
from conftest import FAKE_PIPELINE, DummyMCP
from starlette.applications import Starlette
from starlette.testclient import TestClient

from talkscribe.config import Settings
from talkscribe.main import AppRuntime
from talkscribe.routes import register_routes, sse_event


@pytest.fixture
def runtime(tmp_path: Path, settings: Settings) -> Iterator[AppRuntime]:
    script = tmp_path / "pipeline.py"
    script.write_text(FAKE_PIPELINE)
    app_runtime = AppRuntime(dataclasses.replace(settings, pipeline_command=[sys.executable, str(script)]))
    yield app_runtime
    app_runtime.close()


@pytest.fixture
def client(runtime: AppRuntime) -> TestClient:
    mcp = DummyMCP()
    register_routes(mcp, runtime)  # type: ignore[arg-type]
    return TestClient(Starlette(routes=mcp.routes))


@pytest.fixture
def inputs(runtime: AppRuntime) -> dict[str, str]:
    media = runtime.settings.input_dir / "talk.mp3"
    presentation = runtime.settings.input_dir / "slides.pdf"
    media.write_bytes(b"audio-bytes")
    presentation.write_bytes(b"%PDF-1.4")
    return {"media_path": str(media), "presentation_path": str(presentation)}


def test_sse_event_framing() -> None:
    assert sse_event("one\ntwo") == "data: one\ndata: two\n\n"
    assert sse_event({"a": 1}, event="done") == 'event: done\ndata: {"a": 1}\n\n'


def test_health(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_create_job_validates_body(client: TestClient, runtime: AppRuntime) -> None:
    assert client.post("/jobs", json={"media_path": "x"}).status_code == 400
    assert client.post("/jobs", content=b"not json").status_code == 400

    uploads = runtime.settings.input_dir
    response = client.post(
        "/jobs",
        json={"media_path": str(uploads / "none.mp3"), "presentation_path": str(uploads / "none.pdf")},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "file_not_found"


def test_create_job_rejects_paths_outside_upload_dir(
    client: TestClient, runtime: AppRuntime, inputs: dict[str, str], tmp_path: Path
) -> None:
    secret = tmp_path / "secret.txt"
    secret.write_text("top secret")
    link = runtime.settings.input_dir / "innocent.mp3"
    link.symlink_to(secret)

    escapes = ["/etc/passwd", str(secret), str(link), str(runtime.settings.input_dir / ".." / "jobs")]
    for media_path in escapes:
        response = client.post("/jobs", json={**inputs, "media_path": media_path, "job_id": "steal"})
        assert response.status_code == 400
        assert response.json()["error"] == "input_outside_root"

    response = client.post("/jobs", json={**inputs, "presentation_path": str(secret), "job_id": "steal"})
    assert response.json()["error"] == "input_outside_root"
    assert runtime.store.get("steal") is None
    assert client.get("/jobs/steal/file").status_code == 404


def test_file_routes_only_serve_the_job_directory(client: TestClient, runtime: AppRuntime, tmp_path: Path) -> None:
    secret = tmp_path / "secret.txt"
    secret.write_text("top secret")
    runtime.store.create(media=str(secret), presentation="/etc/passwd", job_id="planted")

    media = client.get("/jobs/planted/file")
    assert media.status_code == 404
    assert media.json()["error"] == "media_not_found"
    assert client.get("/jobs/planted/presentation").status_code == 404


def test_create_job_runs_in_background(client: TestClient, runtime: AppRuntime, inputs: dict[str, str]) -> None:
    response = client.post("/jobs", json={**inputs, "job_id": "bg-1"})

    assert response.status_code == 202
    body = response.json()
    assert body["jobId"] == "bg-1"
    assert body["urls"]["file"].endswith("/jobs/bg-1/file")
    assert runtime.manager.wait("bg-1", timeout=30)

    job = client.get("/jobs/bg-1").json()
    assert job["status"] == "done"
    assert job["progress"] == 100
    assert job["active"] is False
    assert job["thumbnailExists"] is False

    duplicate = client.post("/jobs", json={**inputs, "job_id": "bg-1"})
    assert duplicate.status_code == 409


def test_create_job_streams_output(client: TestClient, inputs: dict[str, str]) -> None:
    response = client.post("/jobs?stream=true", json={**inputs, "job_id": "live-1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    text = response.text
    assert "data: Split completed successfully: 4 chunks of 120s\n\n" in text
    assert "data: evaluator warning\n\n" in text
    assert "event: done\n" in text
    assert '"exitCode": 0' in text


def test_events_replay_outcome_of_finished_job(
    client: TestClient, runtime: AppRuntime, inputs: dict[str, str]
) -> None:
    client.post("/jobs", json={**inputs, "job_id": "ev-1"})
    assert runtime.manager.wait("ev-1", timeout=30)

    response = client.get("/jobs/ev-1/events")

    assert response.status_code == 200
    assert response.text.startswith("event: done\n")


def test_detailed_timeline_and_files(client: TestClient, runtime: AppRuntime, inputs: dict[str, str]) -> None:
    client.post("/jobs", json={**inputs, "job_id": "tl-1"})
    assert runtime.manager.wait("tl-1", timeout=30)

    timeline = client.get("/jobs/tl-1/detailed").json()
    assert timeline["jobId"] == "tl-1"
    assert [segment["text"] for segment in timeline["segments"]] == ["cue 2", "cue 0", "cue 1", "cue 3"]
    assert timeline["segments"][0]["start"] == "00:00:00"
    assert timeline["urls"]["presentation"].endswith("/jobs/tl-1/presentation")

    for path in inputs.values():
        Path(path).unlink()

    media = client.get("/jobs/tl-1/file")
    assert media.status_code == 200
    assert media.content == b"audio-bytes"
    assert client.get("/jobs/tl-1/presentation").content == b"%PDF-1.4"
    assert client.get("/jobs/tl-1/thumbnail").status_code == 404


def test_unknown_and_corrupt_jobs(client: TestClient, runtime: AppRuntime) -> None:
    assert client.get("/jobs/missing").status_code == 404
    assert client.get("/jobs/missing/detailed").status_code == 404
    assert client.get("/jobs/missing/events").status_code == 404

    runtime.store.create(media="m", presentation="p", job_id="broken")
    runtime.store.metadata_path("broken").write_text("{")
    assert client.get("/jobs/broken").status_code == 500
    assert client.get("/jobs/broken/detailed").status_code == 500


def test_events_for_queued_job_without_process(client: TestClient, runtime: AppRuntime) -> None:
    runtime.store.create(media="m", presentation="p", job_id="orphan")
    response = client.get("/jobs/orphan/events")
    assert response.status_code == 409
    assert response.json()["error"] == "job_not_active"
