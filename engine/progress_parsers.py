"""Line parsers that turn external tool output into percent values.

Each parser is stateless apart from its configuration, so the pipeline can be
exercised with canned output lines.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Optional

_YTDLP_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)%")
_YTDLP_MERGE_MARKERS = ("[Merger]", "Merging formats into")
_CLOCK_RE = re.compile(r"^(-)?(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")


@dataclass(frozen=True)
class DownloadLine:
    percent: Optional[float] = None
    merging: bool = False


class YtdlpProgressParser:
    """Parse ``yt-dlp --newline`` output lines."""

    def parse(self, line: str) -> DownloadLine:
        if not line:
            return DownloadLine()
        if any(marker in line for marker in _YTDLP_MERGE_MARKERS):
            return DownloadLine(merging=True)
        if "[download]" not in line:
            return DownloadLine()
        match = _YTDLP_PERCENT_RE.search(line)
        if not match:
            return DownloadLine()
        try:
            return DownloadLine(percent=float(match.group(1)))
        except ValueError:
            return DownloadLine()


def parse_clock(value: str) -> Optional[float]:
    """Return seconds for an ``HH:MM:SS.ffffff`` clock string."""
    match = _CLOCK_RE.match((value or "").strip())
    if not match:
        return None
    if match.group(1):
        return 0.0
    hours, minutes, seconds = match.group(2), match.group(3), match.group(4)
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FfmpegProgressParser:
    """Parse ``ffmpeg -progress pipe:1`` key/value lines against a known duration.

    ``out_time_ms`` is reported in microseconds by ffmpeg, the same unit as
    ``out_time_us``.
    """

    def __init__(self, total_duration: float) -> None:
        self.total_duration = float(total_duration or 0.0)

    def processed_microseconds(self, line: str) -> Optional[float]:
        key, sep, value = (line or "").strip().partition("=")
        if not sep:
            return None
        value = value.strip()
        if key in ("out_time_us", "out_time_ms"):
            try:
                return float(int(value))
            except ValueError:
                return None
        if key == "out_time":
            seconds = parse_clock(value)
            return None if seconds is None else seconds * 1_000_000
        return None

    def parse(self, line: str) -> Optional[float]:
        # ``progress=end`` precedes the exit code; callers finish at 100 only on success.
        processed = self.processed_microseconds(line)
        if processed is None:
            return None
        if not math.isfinite(self.total_duration) or self.total_duration <= 0:
            return None
        percent = processed / (self.total_duration * 1_000_000) * 100
        return max(0.0, min(100.0, percent))
