from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    data_dir: Path
    jobs_dir: Path
    input_dir: Path
    legacy_scope_dir: Path | None
    pipeline_command: list[str]
    ffmpeg_bin: str
    ffprobe_bin: str
    thumbnail_offset: str
    thumbnail_width: int
    probe_timeout_seconds: float
    segment_seconds: int
    assemblyai_api_key: str | None
    assemblyai_language: str | None
    evaluate_command: list[str] | None


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return float(raw)


def _as_command(name: str) -> list[str] | None:
    raw = os.getenv(name, "").strip()
    return shlex.split(raw) if raw else None


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def default_pipeline_command() -> list[str]:
    return [sys.executable, "-m", "talkscribe.pipeline"]


def load_settings() -> Settings:
    load_dotenv()
    data_dir = Path(os.getenv("DATA_DIR", "./data")).resolve()
    jobs_dir = Path(os.getenv("JOBS_DIR", str(data_dir / "jobs"))).resolve()
    input_dir = Path(os.getenv("INPUT_DIR", str(data_dir / "uploads"))).resolve()

    legacy_raw = os.getenv("LEGACY_SCOPE_DIR", "").strip()
    legacy_scope_dir = Path(legacy_raw).resolve() if legacy_raw else None

    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        data_dir=data_dir,
        jobs_dir=jobs_dir,
        input_dir=input_dir,
        legacy_scope_dir=legacy_scope_dir,
        pipeline_command=_as_command("PIPELINE_COMMAND") or default_pipeline_command(),
        ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
        ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
        thumbnail_offset=os.getenv("THUMBNAIL_OFFSET", "00:00:01"),
        thumbnail_width=_as_int("THUMBNAIL_WIDTH", 320),
        probe_timeout_seconds=_as_float("PROBE_TIMEOUT_SECONDS", 30.0),
        segment_seconds=_as_int("SEGMENT_SECONDS", 120),
        assemblyai_api_key=os.getenv("ASSEMBLYAI_API_KEY", "").strip() or None,
        assemblyai_language=os.getenv("ASSEMBLYAI_LANGUAGE", "").strip() or None,
        evaluate_command=_as_command("EVALUATE_COMMAND"),
    )
