from __future__ import annotations

import logging
import math
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class DurationProber:
    """Media duration lookup through ffprobe; any failure yields ``None``."""

    def __init__(self, ffprobe_bin: str = "ffprobe", timeout_seconds: float = 30.0) -> None:
        self.ffprobe_bin = ffprobe_bin
        self.timeout_seconds = timeout_seconds

    def probe(self, media_path: Path) -> float | None:
        if not media_path.exists():
            return None

        cmd = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(media_path),
        ]
        try:
            completed = subprocess.run(
                cmd, capture_output=True, text=True, check=False, timeout=self.timeout_seconds
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Duration probe failed for %s: %s", media_path, exc)
            return None

        if completed.returncode != 0:
            logger.warning(
                "ffprobe exited with %s for %s: %s",
                completed.returncode,
                media_path,
                completed.stderr.strip()[:400],
            )
            return None
        return _parse_duration(completed.stdout)


def _parse_duration(stdout: str) -> float | None:
    try:
        value = float(stdout.strip().splitlines()[0])
    except (IndexError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value
