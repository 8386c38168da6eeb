from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

import httpx

from talkscribe.timecodes import format_srt
from talkscribe.types import TranscriptResult, TranscriptSegment

logger = logging.getLogger(__name__)

ASSEMBLYAI_BASE_URL = "https://api.assemblyai.com/v2"


def to_srt(result: TranscriptResult) -> str:
    blocks: list[str] = []
    for index, segment in enumerate(result.segments, start=1):
        blocks.append(
            f"{index}\n{format_srt(segment.start)} --> {format_srt(segment.end)}\n{segment.text.strip()}\n"
        )
    return "\n".join(blocks)


class AssemblyAITranscriber:
    """Upload one chunk, start a transcript and poll it until AssemblyAI finishes."""

    def __init__(
        self,
        api_key: str,
        *,
        language_code: str | None = None,
        poll_interval_seconds: float = 3.0,
        timeout_seconds: float = 600.0,
        max_wait_seconds: float = 3600.0,
        base_url: str = ASSEMBLYAI_BASE_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.language_code = language_code
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.max_wait_seconds = max_wait_seconds
        self.base_url = base_url
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers={"authorization": self.api_key},
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    def transcribe(self, audio_path: Path) -> TranscriptResult:
        if not audio_path.exists():
            raise RuntimeError(f"Audio file not found: {audio_path}")

        with self._client() as client:
            audio_url = self._upload(client, audio_path)
            transcript_id = self._create_transcript(client, audio_url)
            payload = self._wait_for_transcript(client, transcript_id)

        text = str(payload.get("text") or "").strip()
        segments = self._segments_from_utterances(payload.get("utterances"))
        if not segments and text:
            # No speaker turns; keep the chunk as one cue spanning the audio.
            duration = payload.get("audio_duration")
            end = float(duration) if isinstance(duration, (int, float)) else 0.0
            segments = [TranscriptSegment(start=0.0, end=end, text=text)]
        if not text:
            text = "\n".join(segment.text for segment in segments).strip()

        language = payload.get("language_code") or self.language_code
        return TranscriptResult(
            text=text,
            segments=segments,
            language=str(language) if language else None,
        )

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict[str, Any]:
        if response.status_code >= 400:
            raise RuntimeError(f"AssemblyAI {action} failed ({response.status_code}): {response.text[:400]}")
        payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError(f"AssemblyAI {action} returned an unexpected body")
        return payload

    def _upload(self, client: httpx.Client, audio_path: Path) -> str:
        with audio_path.open("rb") as audio_stream:
            payload = self._check(client.post("/upload", content=audio_stream), "upload")
        upload_url = payload.get("upload_url")
        if not upload_url:
            raise RuntimeError("AssemblyAI upload response missing upload_url")
        return str(upload_url)

    def _create_transcript(self, client: httpx.Client, audio_url: str) -> str:
        body: dict[str, Any] = {
            "audio_url": audio_url,
            "speaker_labels": True,
            "punctuate": True,
            "format_text": True,
        }
        if self.language_code:
            body["language_code"] = self.language_code
        payload = self._check(client.post("/transcript", json=body), "transcript create")
        transcript_id = payload.get("id")
        if not transcript_id:
            raise RuntimeError("AssemblyAI transcript response missing id")
        return str(transcript_id)

    def _wait_for_transcript(self, client: httpx.Client, transcript_id: str) -> dict[str, Any]:
        started = time.monotonic()
        while True:
            payload = self._check(client.get(f"/transcript/{transcript_id}"), "transcript poll")
            status = str(payload.get("status") or "").lower()
            if status == "completed":
                return payload
            if status == "error":
                raise RuntimeError(str(payload.get("error") or "AssemblyAI reported error status"))
            if time.monotonic() - started >= self.max_wait_seconds:
                raise RuntimeError(f"AssemblyAI transcript {transcript_id} timed out")

            logger.debug("Transcript %s is %s", transcript_id, status or "pending")
            time.sleep(self.poll_interval_seconds)

    def _segments_from_utterances(self, utterances: object) -> list[TranscriptSegment]:
        if not isinstance(utterances, list):
            return []

        segments: list[TranscriptSegment] = []
        for item in utterances:
            if not isinstance(item, dict):
                continue
            text = str(item.get("text") or "").strip()
            if not text:
                continue
            speaker = item.get("speaker")
            segments.append(
                TranscriptSegment(
                    start=_ms_to_seconds(item.get("start")),
                    end=_ms_to_seconds(item.get("end")),
                    text=text,
                    speaker=str(speaker) if speaker is not None else None,
                )
            )
        return segments


def _ms_to_seconds(value: object) -> float:
    try:
        return float(str(value)) / 1000.0 if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
