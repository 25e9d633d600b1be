"""Lossless fixed-length splitting with ffmpeg's segment muxer."""

from __future__ import annotations

import logging
import math
import os
import re
from typing import Optional

from engine.errors import NoPartsProduced, SegmentationFailed
from engine.process import run_streaming
from engine.progress import PercentReporter
from engine.progress_parsers import FfmpegProgressParser

logger = logging.getLogger(__name__)

PART_NUMBER_PATTERN = "%02d"
_FILENAME_UNSAFE_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')
_DIGITS_RE = re.compile(r"(\d+)")


def sanitize_prefix(prefix: str, default: str = "Clip", maxlen: int = 120) -> str:
    cleaned = _FILENAME_UNSAFE_RE.sub(" ", prefix or "")
    cleaned = " ".join(cleaned.split()).strip(" .")
    return cleaned[:maxlen] or default


def build_part_template(directory, prefix: str, ext: str) -> str:
    """Return the ffmpeg output pattern for ``"<prefix> - Part NN.<ext>"`` files."""
    safe_prefix = sanitize_prefix(prefix).replace("%", "%%")
    return os.path.join(str(directory), f"{safe_prefix} - Part {PART_NUMBER_PATTERN}.{ext}")


def _template_regex(template_name: str) -> re.Pattern:
    # The part slot is the last unescaped pattern; the prefix may hold an escaped one.
    head, _, tail = template_name.rpartition(PART_NUMBER_PATTERN)
    return re.compile(
        re.escape(head.replace("%%", "%")) + r"(\d{2,})" + re.escape(tail.replace("%%", "%")) + r"\Z"
    )


def natural_sort_key(name: str):
    return [int(chunk) if chunk.isdigit() else chunk.lower() for chunk in _DIGITS_RE.split(name)]


def list_parts(output_template: str) -> list[str]:
    """List produced part names matching ``output_template``, in part order."""
    directory, template_name = os.path.split(output_template)
    pattern = _template_regex(template_name)
    try:
        names = os.listdir(directory or ".")
    except FileNotFoundError:
        return []
    parts = [
        name
        for name in names
        if pattern.match(name) and os.path.isfile(os.path.join(directory, name))
    ]
    return sorted(parts, key=natural_sort_key)


def expected_part_count(total_duration: float, split_seconds: int) -> int:
    if total_duration <= 0 or split_seconds <= 0:
        return 0
    return math.ceil(total_duration / split_seconds)


class SegmentationEngine:
    def __init__(self, ffmpeg_bin: str = "ffmpeg") -> None:
        self.ffmpeg_bin = ffmpeg_bin

    def build_command(self, source_path, output_template: str, split_seconds: int) -> list[str]:
        return [
            self.ffmpeg_bin,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(source_path),
            "-map",
            "0",
            "-c",
            "copy",
            "-f",
            "segment",
            "-segment_time",
            str(split_seconds),
            "-reset_timestamps",
            "1",
            "-segment_start_number",
            "1",
            "-progress",
            "pipe:1",
            "-nostats",
            output_template,
        ]

    def segment(
        self,
        source_path,
        output_template: str,
        split_seconds: int,
        total_duration: float,
        *,
        reporter: Optional[PercentReporter] = None,
    ) -> list[str]:
        """Split ``source_path`` into ``split_seconds`` parts without re-encoding.

        Progress is published through ``reporter`` in at least 0.5 % steps and
        always ends on exactly 100 when ffmpeg succeeds.

        Raises:
            SegmentationFailed: ffmpeg is missing or exits non-zero.
            NoPartsProduced: ffmpeg exits cleanly but wrote nothing.
        """
        parser = FfmpegProgressParser(total_duration)
        command = self.build_command(source_path, output_template, split_seconds)
        logger.info(
            "Splitting %s every %ss (duration=%.2fs)",
            source_path,
            split_seconds,
            total_duration,
        )

        def _on_line(line: str) -> None:
            percent = parser.parse(line)
            if percent is not None and reporter is not None:
                reporter.update(percent)

        try:
            result = run_streaming(command, on_line=_on_line)
        except FileNotFoundError as exc:
            raise SegmentationFailed(127, "ffmpeg is not installed or not available in PATH") from exc

        if result.returncode != 0:
            logger.error("ffmpeg segment failed code=%s output=%s", result.returncode, result.output_tail)
            raise SegmentationFailed(result.returncode)

        parts = list_parts(output_template)
        if not parts:
            raise NoPartsProduced(f"ffmpeg wrote no parts for {source_path}")
        if reporter is not None:
            reporter.finish()
        logger.info("Split produced %d parts", len(parts))
        return parts
