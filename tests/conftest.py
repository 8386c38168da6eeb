from __future__ import annotations

import os
import stat
import sys
import time
from pathlib import Path
from typing import Any, Callable

import pytest
from starlette.routing import Route

from talkscribe.config import Settings, default_pipeline_command

FAKE_PIPELINE = """
import sys
from pathlib import Path

args = sys.argv[1:]
chunks = Path(args[args.index("--chunks-dir") + 1])
chunks.mkdir(parents=True, exist_ok=True)
for index in range(4):
    (chunks / f"chunk_{index:03d}.mp3").write_bytes(b"x")
print("1. Splitting media into chunks...", flush=True)
print("Split completed successfully: 4 chunks of 120s", flush=True)
for index in (2, 0, 2, 1, 3):
    print(f"[00:00.000 --> 00:01.000] cue {index}", flush=True)
    print(f"Transcription completed for chunk_{index:03d}.mp3", flush=True)
print("3. Evaluating transcripts and presentation...", flush=True)
print("evaluator warning", file=sys.stderr, flush=True)
"""


def write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body.lstrip()}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def script_factory(tmp_path: Path) -> Callable[[str, str], Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def factory(name: str, body: str) -> Path:
        return write_script(bin_dir / name, body)

    return factory


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    data_dir = tmp_path / "data"
    return Settings(
        host="127.0.0.1",
        port=0,
        mcp_path="/mcp",
        health_path="/healthz",
        data_dir=data_dir,
        jobs_dir=data_dir / "jobs",
        input_dir=data_dir / "uploads",
        legacy_scope_dir=None,
        pipeline_command=default_pipeline_command(),
        ffmpeg_bin=os.devnull + "-missing-ffmpeg",
        ffprobe_bin=os.devnull + "-missing-ffprobe",
        thumbnail_offset="00:00:01",
        thumbnail_width=320,
        probe_timeout_seconds=5.0,
        segment_seconds=120,
        assemblyai_api_key=None,
        assemblyai_language=None,
        evaluate_command=None,
    )


class DummyMCP:
    """Collects tools and custom routes the way FastMCP registers them."""

    def __init__(self) -> None:
        self.tools: dict[str, Callable[..., Any]] = {}
        self.routes: list[Route] = []

    def tool(self, *_: Any, **__: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.tools[fn.__name__] = fn
            return fn

        return decorator

    def custom_route(self, path: str, methods: list[str]) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.routes.append(Route(path, fn, methods=methods))
            return fn

        return decorator
