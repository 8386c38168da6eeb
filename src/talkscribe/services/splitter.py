from __future__ import annotations

import subprocess
from pathlib import Path

from talkscribe.progress import CHUNK_FILE_RE
from talkscribe.timeline import natural_key

SUPPORTED_SUFFIXES = (".mp3", ".mp4")


def list_chunks(chunks_dir: Path) -> list[Path]:
    if not chunks_dir.is_dir():
        return []
    chunks = [entry for entry in chunks_dir.iterdir() if entry.is_file() and CHUNK_FILE_RE.match(entry.name)]
    return sorted(chunks, key=lambda entry: natural_key(entry.name))


class MediaSplitter:
    """Cuts media into fixed-length ``chunk_NNN.<ext>`` segments with ffmpeg."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", segment_seconds: int = 120) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.segment_seconds = segment_seconds

    def build_command(self, input_path: Path, output_dir: Path) -> list[str]:
        suffix = input_path.suffix.lower()
        return [
            self.ffmpeg_bin,
            "-i",
            str(input_path),
            "-c",
            "copy",
            "-map",
            "0",
            "-segment_time",
            str(self.segment_seconds),
            "-f",
            "segment",
            "-reset_timestamps",
            "1",
            str(output_dir / f"chunk_%03d{suffix}"),
        ]

    def split(self, input_path: Path, output_dir: Path) -> list[Path]:
        if not input_path.exists():
            raise RuntimeError(f"Input file not found: {input_path}")
        if input_path.suffix.lower() not in SUPPORTED_SUFFIXES:
            raise RuntimeError(f"Unsupported media format {input_path.suffix!r}; use .mp4 or .mp3")

        output_dir.mkdir(parents=True, exist_ok=True)
        completed = subprocess.run(
            self.build_command(input_path, output_dir),
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0:
            stderr = completed.stderr.strip() or "ffmpeg failed"
            raise RuntimeError(stderr[-2000:])

        chunks = list_chunks(output_dir)
        if not chunks:
            raise RuntimeError("ffmpeg produced no chunks")
        return chunks
