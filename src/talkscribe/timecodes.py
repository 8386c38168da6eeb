"""Subtitle timestamp parsing and rendering.

Accepted input forms are ``mm:ss.fff`` and ``hh:mm:ss.fff``; the decimal
separator may be a dot or a comma (SRT uses commas, VTT uses dots).
"""

from __future__ import annotations

import math
import re

_TIMESTAMP_RE = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:[.,]\d+)?)$")


def parse_timestamp(value: str | None) -> float | None:
    if not value:
        return None
    match = _TIMESTAMP_RE.match(value.strip())
    if match is None:
        return None
    hours = int(match.group(1)) if match.group(1) is not None else 0
    minutes = int(match.group(2))
    seconds = float(match.group(3).replace(",", "."))
    return hours * 3600 + minutes * 60 + seconds


def format_precise(seconds: float | None) -> str | None:
    """Render ``mm:ss.mmm``, or ``hh:mm:ss.mmm`` past the first hour."""
    if seconds is None or math.isnan(seconds):
        return None
    total_ms = round(max(seconds, 0.0) * 1000)
    whole, millis = divmod(total_ms, 1000)
    hours, rem = divmod(whole, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"
    return f"{minutes:02d}:{secs:02d}.{millis:03d}"


def format_display(seconds: float | None) -> str | None:
    """Render ``hh:mm:ss`` with the fractional part dropped."""
    if seconds is None or math.isnan(seconds):
        return None
    whole = int(max(math.floor(seconds), 0))
    hours, rem = divmod(whole, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_srt(seconds: float) -> str:
    total_ms = round(max(seconds, 0.0) * 1000)
    whole, millis = divmod(total_ms, 1000)
    hours, rem = divmod(whole, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"
