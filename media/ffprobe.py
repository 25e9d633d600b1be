"""Wrapper utilities for retrieving media duration using ffprobe."""

from __future__ import annotations

import logging
import re
import subprocess

from engine.errors import ProbeFailed

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def parse_duration_output(text: str | None) -> float:
    """Return the first numeric token of ``text`` as seconds, or ``0.0``."""
    match = _NUMBER_RE.search(text or "")
    if not match:
        return 0.0
    return float(match.group(0))


def get_media_duration(file_path: str, *, ffprobe_bin: str = "ffprobe") -> float:
    """Return the container duration of ``file_path`` in seconds.

    ``ffprobe`` is asked only for ``format.duration``. Output that carries no
    number (``N/A``, an error message, nothing) yields ``0.0``; callers decide
    whether that is fatal.

    Raises:
        ProbeFailed: If the ``ffprobe`` executable cannot be started.
    """
    command = [
        ffprobe_bin,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(file_path),
    ]

    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ProbeFailed("ffprobe is not installed or not available in PATH") from exc

    if completed.returncode != 0:
        stderr_text = (completed.stderr or "").strip()
        logger.warning("ffprobe exited with %s for %s: %s", completed.returncode, file_path, stderr_text)
    return parse_duration_output(completed.stdout)


class DurationProber:
    def __init__(self, ffprobe_bin: str = "ffprobe") -> None:
        self.ffprobe_bin = ffprobe_bin

    def probe(self, path) -> float:
        return get_media_duration(str(path), ffprobe_bin=self.ffprobe_bin)
