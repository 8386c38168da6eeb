"""Stage runner spawned once per job: split, transcribe, evaluate.

Milestones go to stdout as plain lines because the job controller infers
progress from them (see ``talkscribe.progress``). Diagnostics go to stderr
through logging.
"""

from __future__ import annotations

import argparse
import logging
import subprocess
import sys
from pathlib import Path
from typing import Callable, Protocol

from talkscribe.config import load_settings
from talkscribe.services.splitter import MediaSplitter
from talkscribe.services.transcriber import AssemblyAITranscriber, to_srt
from talkscribe.timecodes import format_precise
from talkscribe.types import TranscriptResult

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    def transcribe(self, audio_path: Path) -> TranscriptResult: ...


def _emit(line: str) -> None:
    print(line, flush=True)


class StagePipeline:
    def __init__(
        self,
        *,
        splitter: MediaSplitter,
        transcriber: Transcriber | None,
        evaluate_command: list[str] | None = None,
        emit: Callable[[str], None] = _emit,
    ) -> None:
        self.splitter = splitter
        self.transcriber = transcriber
        self.evaluate_command = evaluate_command
        self.emit = emit

    def run(
        self,
        *,
        media_path: Path,
        presentation_path: Path,
        chunks_dir: Path,
        transcripts_dir: Path,
        job_id: str | None = None,
    ) -> None:
        chunks_dir.mkdir(parents=True, exist_ok=True)
        transcripts_dir.mkdir(parents=True, exist_ok=True)

        self.emit(f"1. Splitting media into chunks... (output -> {chunks_dir})")
        chunks = self.splitter.split(media_path, chunks_dir)
        self.emit(f"Split completed successfully: {len(chunks)} chunks of {self.splitter.segment_seconds}s")

        self.emit("2. Transcribing chunks...")
        transcriber = self.transcriber
        if transcriber is None:
            raise RuntimeError("ASSEMBLYAI_API_KEY is required to transcribe chunks")
        for chunk in chunks:
            self._transcribe_chunk(transcriber, chunk, transcripts_dir)

        self.emit("3. Evaluating transcripts and presentation...")
        self._evaluate(transcripts_dir, presentation_path, job_id)
        self.emit("Pipeline completed.")

    def _transcribe_chunk(self, transcriber: Transcriber, chunk: Path, transcripts_dir: Path) -> None:
        logger.info("Transcribing %s", chunk.name)
        result = transcriber.transcribe(chunk)
        srt_path = transcripts_dir / f"{chunk.stem}.srt"
        srt_path.write_text(to_srt(result), encoding="utf-8")
        for segment in result.segments:
            self.emit(f"[{format_precise(segment.start)} --> {format_precise(segment.end)}] {segment.text}")
        self.emit(f"Transcription completed for {chunk.name}")

    def _evaluate(self, transcripts_dir: Path, presentation_path: Path, job_id: str | None) -> None:
        if not self.evaluate_command:
            logger.info("No evaluation command configured; skipping evaluation")
            return
        cmd = [*self.evaluate_command, str(transcripts_dir), str(presentation_path)]
        if job_id:
            cmd.append(job_id)
        completed = subprocess.run(cmd, check=False)
        if completed.returncode != 0:
            raise RuntimeError(f"Evaluation command exited with {completed.returncode}")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="talkscribe-pipeline")
    parser.add_argument("media", type=Path)
    parser.add_argument("presentation", type=Path)
    parser.add_argument("--job-id", default=None)
    parser.add_argument("--chunks-dir", type=Path, default=None)
    parser.add_argument("--transcripts-dir", type=Path, default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = _parse_args(argv)
    settings = load_settings()

    scope = settings.legacy_scope_dir or Path.cwd()
    chunks_dir = args.chunks_dir or scope / "chunks"
    transcripts_dir = args.transcripts_dir or scope / "transcripts"

    transcriber = None
    if settings.assemblyai_api_key:
        transcriber = AssemblyAITranscriber(
            settings.assemblyai_api_key,
            language_code=settings.assemblyai_language,
        )
    pipeline = StagePipeline(
        splitter=MediaSplitter(settings.ffmpeg_bin, settings.segment_seconds),
        transcriber=transcriber,
        evaluate_command=settings.evaluate_command,
    )
    try:
        pipeline.run(
            media_path=args.media,
            presentation_path=args.presentation,
            chunks_dir=chunks_dir,
            transcripts_dir=transcripts_dir,
            job_id=args.job_id,
        )
    except RuntimeError as exc:
        logger.error("Pipeline failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
