"""Rebuild one absolute-time transcript from per-chunk subtitle files.

Every chunk is transcribed on its own, so each subtitle file starts at
zero. Files are read in chunk order and shifted by the running sum of the
chunk durations before them. When a chunk's duration cannot be probed the
offset advances to the furthest segment end seen in that file instead.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Protocol

from talkscribe.db.jobs import JobStore
from talkscribe.timecodes import format_display, parse_timestamp
from talkscribe.types import TimelineSegment

logger = logging.getLogger(__name__)

SUBTITLE_SUFFIXES = (".srt", ".vtt", ".txt")
CHUNK_MEDIA_SUFFIXES = (".mp4", ".mp3", ".m4a")

_CHUNK_INDEX_RE = re.compile(r"chunk[_-]?(\d+)", re.IGNORECASE)
_BLOCK_SPLIT_RE = re.compile(r"\r?\n[ \t]*\r?\n")
_TRAILING_NUMBER_RE = re.compile(r"\s*\d+\s*$")
_NATURAL_RE = re.compile(r"(\d+)")

_BRACKETED_RE = re.compile(
    r"\[(\d{2}:\d{2}\.\d{3}|\d{2}:\d{2}:\d{2}\.\d{3})\s*-->\s*"
    r"(\d{2}:\d{2}\.\d{3}|\d{2}:\d{2}:\d{2}\.\d{3})\]\s*([^\n\[]+)"
)
_INLINE_RE = re.compile(r"(\d{2}:\d{2}\.\d{3})\s*-->\s*(\d{2}:\d{2}\.\d{3})\s*([^\n]+)")


class Prober(Protocol):
    def probe(self, media_path: Path) -> float | None: ...


def natural_key(name: str) -> list[Any]:
    return [int(part) if part.isdigit() else part.lower() for part in _NATURAL_RE.split(name)]


def parse_block(block: str, offset: float = 0.0) -> TimelineSegment | None:
    lines = [line.strip() for line in block.splitlines()]
    lines = [line for line in lines if line]
    separator_index = next((i for i, line in enumerate(lines) if "-->" in line), None)
    if separator_index is None:
        return None

    raw_start, _, raw_end = lines[separator_index].partition("-->")
    end_fields = raw_end.split()
    start = parse_timestamp(raw_start)
    end = parse_timestamp(end_fields[0]) if end_fields else None
    if start is None or end is None:
        return None

    text = " ".join(lines[separator_index + 1 :]).strip()
    text = _TRAILING_NUMBER_RE.sub("", text).strip()
    return TimelineSegment(start_sec=start + offset, end_sec=end + offset, text=text)


def parse_subtitle_text(content: str, offset: float = 0.0) -> list[TimelineSegment]:
    segments: list[TimelineSegment] = []
    for block in _BLOCK_SPLIT_RE.split(content.strip()):
        segment = parse_block(block, offset)
        if segment is not None:
            segments.append(segment)
    return segments


def parse_captured_output(stdout: str) -> list[TimelineSegment]:
    """Recover cues printed as ``[mm:ss.mmm --> mm:ss.mmm] text`` by the pipeline."""
    matches = list(_BRACKETED_RE.finditer(stdout))
    if not matches:
        matches = list(_INLINE_RE.finditer(stdout))

    segments: list[TimelineSegment] = []
    for match in matches:
        start = parse_timestamp(match.group(1))
        end = parse_timestamp(match.group(2))
        segments.append(
            TimelineSegment(
                start_sec=start if start is not None else 0.0,
                end_sec=end if end is not None else 0.0,
                text=match.group(3).strip(),
            )
        )
    return segments


def dedupe_segments(segments: list[TimelineSegment]) -> list[TimelineSegment]:
    seen: set[tuple[int, int, str]] = set()
    unique: list[TimelineSegment] = []
    for segment in segments:
        key = segment.dedupe_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(segment)
    return unique


def render_segment(segment: TimelineSegment) -> dict[str, Any]:
    return {
        "start": format_display(segment.start_sec),
        "end": format_display(segment.end_sec),
        "text": segment.text,
        "startSec": segment.start_sec,
        "endSec": segment.end_sec,
    }


def list_subtitle_files(transcripts_dir: Path) -> list[Path]:
    files = [
        entry
        for entry in transcripts_dir.iterdir()
        if entry.is_file() and entry.suffix.lower() in SUBTITLE_SUFFIXES
    ]
    return sorted(files, key=lambda entry: natural_key(entry.name))


def find_chunk_media(chunks_dir: Path | None, subtitle_name: str) -> Path | None:
    if chunks_dir is None or not chunks_dir.is_dir():
        return None
    match = _CHUNK_INDEX_RE.search(subtitle_name)
    if match is None:
        return None
    stem = f"chunk_{int(match.group(1)):03d}"
    for suffix in CHUNK_MEDIA_SUFFIXES:
        candidate = chunks_dir / f"{stem}{suffix}"
        if candidate.exists():
            return candidate
    return None


def merge_subtitle_files(
    files: list[Path],
    *,
    chunks_dir: Path | None,
    prober: Prober,
) -> list[TimelineSegment]:
    segments: list[TimelineSegment] = []
    cumulative = 0.0
    for path in files:
        offset = cumulative
        media = find_chunk_media(chunks_dir, path.name)
        duration = prober.probe(media) if media is not None else None

        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Skipping unreadable transcript %s: %s", path, exc)
            content = ""

        file_segments = parse_subtitle_text(content, offset)
        segments.extend(file_segments)

        if duration is not None:
            cumulative += duration
        elif file_segments:
            cumulative = max(cumulative, max(segment.end_sec for segment in file_segments))
    return segments


class TimelineReconstructor:
    def __init__(
        self,
        *,
        store: JobStore,
        prober: Prober,
        legacy_scope_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.prober = prober
        self.legacy_scope_dir = legacy_scope_dir

    def _scoped_dir(self, job_id: str, name: str) -> Path | None:
        local = self.store.job_dir(job_id) / name
        if local.is_dir():
            return local
        if self.legacy_scope_dir is not None:
            shared = self.legacy_scope_dir / name
            if shared.is_dir():
                return shared
        return None

    def segments_for(self, job_id: str, captured_stdout: str | None = None) -> list[TimelineSegment]:
        transcripts_dir = self._scoped_dir(job_id, "transcripts")
        if transcripts_dir is not None:
            segments = merge_subtitle_files(
                list_subtitle_files(transcripts_dir),
                chunks_dir=self._scoped_dir(job_id, "chunks"),
                prober=self.prober,
            )
        elif captured_stdout:
            segments = parse_captured_output(captured_stdout)
        else:
            segments = []

        segments = dedupe_segments(segments)
        segments.sort(key=lambda segment: segment.start_sec)
        return segments

    def reconstruct(self, job_id: str, base_url: str | None = None) -> dict[str, Any] | None:
        """Timeline payload for a job, or ``None`` when the job does not exist."""
        job = self.store.get(job_id)
        if job is None:
            return None

        segments = self.segments_for(job_id, job.stdout)
        logger.info("Reconstructed %d segments for job %s", len(segments), job_id)
        return {
            "jobId": job.job_id,
            "urls": job_urls(job.job_id, base_url),
            "segments": [render_segment(segment) for segment in segments],
        }


def job_urls(job_id: str, base_url: str | None = None) -> dict[str, str]:
    base = (base_url or "").rstrip("/")
    return {
        "file": f"{base}/jobs/{job_id}/file",
        "presentation": f"{base}/jobs/{job_id}/presentation",
        "thumbnail": f"{base}/jobs/{job_id}/thumbnail",
    }
