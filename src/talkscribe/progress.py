"""Progress inference from pipeline output.

The pipeline reports its milestones as prose on stdout. Every phrase this
module understands lives in ``MILESTONES``; bump ``MILESTONES_VERSION``
whenever an entry is added or its wording changes. A marker only counts at
the start of a line, so transcript cues echoed as ``[start --> end] text``
never trigger one. ``advance`` is the only entry point and never lowers
``progress``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

from talkscribe.types import Job

MILESTONES_VERSION = 3

SPLIT_PROGRESS = 10
TRANSCRIBE_BASE = 2
TRANSCRIBE_SPAN = 88
TRANSCRIBE_CAP = 90
EVALUATE_PROGRESS = 92

CHUNK_FILE_RE = re.compile(r"^chunk_\d+\.(?:mp4|mp3|m4a)$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ProgressState:
    progress: int = 0
    message: str | None = None
    total_chunks: int | None = None
    transcribed_chunk_names: tuple[str, ...] = ()

    @property
    def transcribed_chunks(self) -> int:
        return len(self.transcribed_chunk_names)

    @classmethod
    def from_job(cls, job: Job) -> ProgressState:
        return cls(
            progress=job.progress,
            message=job.progress_message,
            total_chunks=job.total_chunks,
            transcribed_chunk_names=tuple(job.transcribed_chunk_names),
        )

    def apply_to(self, job: Job) -> None:
        job.progress = self.progress
        job.progress_message = self.message
        job.total_chunks = self.total_chunks
        job.transcribed_chunk_names = list(self.transcribed_chunk_names)


MilestoneRule = Callable[[ProgressState, list[re.Match[str]], Path | None], ProgressState]


@dataclass(frozen=True, slots=True)
class Milestone:
    name: str
    pattern: re.Pattern[str]
    rule: MilestoneRule


def count_chunk_files(chunks_dir: Path) -> int:
    return sum(1 for entry in chunks_dir.iterdir() if entry.is_file() and CHUNK_FILE_RE.match(entry.name))


def transcription_progress(transcribed: int, total: int | None) -> int:
    if total:
        # Half-up rounding: 18.5 is 19, not 18.
        value = math.floor(TRANSCRIBE_BASE + TRANSCRIBE_SPAN * (transcribed / total) + 0.5)
        return min(value, TRANSCRIBE_CAP)
    return min(transcribed * 10 + 10, TRANSCRIBE_CAP)


def _on_split(state: ProgressState, _: list[re.Match[str]], chunks_dir: Path | None) -> ProgressState:
    total = state.total_chunks
    if total is None and chunks_dir is not None and chunks_dir.is_dir():
        counted = count_chunk_files(chunks_dir)
        total = counted or None
    return replace(
        state,
        total_chunks=total,
        progress=max(state.progress, SPLIT_PROGRESS),
        message="split completed",
    )


def _on_chunk_transcribed(
    state: ProgressState, matches: list[re.Match[str]], _: Path | None
) -> ProgressState:
    names = list(state.transcribed_chunk_names)
    for match in matches:
        name = match.group(1)
        if name not in names:
            names.append(name)

    transcribed = len(names)
    progress = max(state.progress, transcription_progress(transcribed, state.total_chunks))
    total_label = state.total_chunks if state.total_chunks else "?"
    return replace(
        state,
        transcribed_chunk_names=tuple(names),
        progress=progress,
        message=f"transcribed {transcribed}/{total_label} chunks",
    )


def _on_evaluating(state: ProgressState, _: list[re.Match[str]], __: Path | None) -> ProgressState:
    return replace(state, progress=max(state.progress, EVALUATE_PROGRESS), message="evaluating")


MILESTONES: tuple[Milestone, ...] = (
    Milestone(
        name="split",
        pattern=re.compile(
            r"^[ \t]*(?:Archivo dividido exitosamente|Split completed successfully)",
            re.IGNORECASE | re.MULTILINE,
        ),
        rule=_on_split,
    ),
    Milestone(
        name="chunk_transcribed",
        pattern=re.compile(
            r"^[ \t]*(?:Transcripci[oó]n completada para|Transcription completed for)[ \t]+"
            r"(chunk_\d+\.(?:mp4|mp3|m4a))",
            re.IGNORECASE | re.MULTILINE,
        ),
        rule=_on_chunk_transcribed,
    ),
    Milestone(
        name="evaluating",
        pattern=re.compile(
            r"^[ \t]*(?:Evaluando transcripciones|3\. Evaluando|3\. Evaluating|Evaluating transcripts)",
            re.IGNORECASE | re.MULTILINE,
        ),
        rule=_on_evaluating,
    ),
)


def advance(state: ProgressState, text: str, chunks_dir: Path | None = None) -> ProgressState:
    for milestone in MILESTONES:
        matches = list(milestone.pattern.finditer(text))
        if matches:
            state = milestone.rule(state, matches, chunks_dir)
    return state
