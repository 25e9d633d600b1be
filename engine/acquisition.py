"""Source acquisition: yt-dlp first, mirror lookup plus ffmpeg remux second."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config.settings import CONTAINER_EXT, MIN_SOURCE_BYTES, YTDLP_FORMAT
from engine.errors import AcquisitionFailed, NoVideoId, PrimaryDownloadFailed
from engine.logging_utils import log_event
from engine.mirrors import MirrorResolver, ResolvedStreams
from engine.process import run_streaming
from engine.progress import (
    PROGRESS_DOWNLOAD,
    STAGE_DOWNLOADING,
    STAGE_MERGING,
    PercentReporter,
    ProgressBus,
)
from engine.progress_parsers import FfmpegProgressParser, YtdlpProgressParser

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_PRIMARY = "primary"
STATE_FALLBACK = "fallback"
STATE_DONE = "done"
STATE_FAILED = "failed"

MERGE_PERCENT = 99.0

_VIDEO_ID_RE = re.compile(r"(?:[?&]v=|youtu\.be/|/shorts/|/embed/|/live/)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])")


def extract_video_id(url: str | None) -> str | None:
    """Return the 11-character video id of a watch, short-link, shorts or embed URL."""
    if not url:
        return None
    match = _VIDEO_ID_RE.search(url)
    return match.group(1) if match else None


@dataclass
class AcquisitionResult:
    state: str
    method: str | None = None
    mirror: str | None = None
    primary_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == STATE_DONE


class AcquisitionCoordinator:
    """Produce one consolidated media file at a destination path.

    The native downloader is tried once; on failure the video id is looked up
    on the mirrors and the returned stream(s) are remuxed with stream copy.
    A fallback failure is final. Partial files are left for reclaim.
    """

    def __init__(
        self,
        *,
        resolver: Optional[MirrorResolver] = None,
        ytdlp_bin: str = "yt-dlp",
        ffmpeg_bin: str = "ffmpeg",
        ytdlp_format: str = YTDLP_FORMAT,
        container_ext: str = CONTAINER_EXT,
        min_source_bytes: int = MIN_SOURCE_BYTES,
        enable_fallback: bool = True,
    ) -> None:
        self.resolver = resolver or MirrorResolver()
        self.ytdlp_bin = ytdlp_bin
        self.ffmpeg_bin = ffmpeg_bin
        self.ytdlp_format = ytdlp_format
        self.container_ext = container_ext
        self.min_source_bytes = min_source_bytes
        self.enable_fallback = enable_fallback

    # ------------------------------------------------------------------
    # Primary: yt-dlp
    # ------------------------------------------------------------------

    def build_primary_command(self, source_ref: str, destination) -> list[str]:
        return [
            self.ytdlp_bin,
            "--newline",
            "--no-playlist",
            "--no-color",
            "--force-overwrites",
            "-f",
            self.ytdlp_format,
            "--merge-output-format",
            self.container_ext,
            "-o",
            str(destination),
            source_ref,
        ]

    def _check_destination(self, destination: Path) -> None:
        try:
            size = destination.stat().st_size
        except FileNotFoundError:
            raise PrimaryDownloadFailed(f"no output file at {destination}") from None
        if size < self.min_source_bytes:
            raise PrimaryDownloadFailed(f"output file too small ({size} bytes)")

    def download_primary(
        self,
        source_ref: str,
        destination: Path,
        *,
        bus: Optional[ProgressBus] = None,
        job_id: str = "",
        reporter: Optional[PercentReporter] = None,
    ) -> None:
        parser = YtdlpProgressParser()
        merging_announced = False

        def _on_line(line: str) -> None:
            nonlocal merging_announced
            parsed = parser.parse(line)
            if parsed.merging:
                if reporter is not None:
                    reporter.update(MERGE_PERCENT)
                if bus is not None and not merging_announced:
                    bus.stage(job_id, STAGE_MERGING, "Merging audio and video…")
                merging_announced = True
            elif parsed.percent is not None and reporter is not None:
                reporter.update(parsed.percent)

        command = self.build_primary_command(source_ref, destination)
        try:
            result = run_streaming(command, on_line=_on_line)
        except FileNotFoundError as exc:
            raise PrimaryDownloadFailed(f"{self.ytdlp_bin} is not installed or not available in PATH") from exc
        if result.returncode != 0:
            raise PrimaryDownloadFailed(
                f"{self.ytdlp_bin} exited with code {result.returncode}: {result.output_tail[-500:]}"
            )
        self._check_destination(destination)

    # ------------------------------------------------------------------
    # Fallback: mirrors + ffmpeg stream copy
    # ------------------------------------------------------------------

    def build_remux_command(self, streams: ResolvedStreams, destination) -> list[str]:
        command = [self.ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-y", "-i", streams.video_url]
        if streams.audio_url:
            command += ["-i", streams.audio_url, "-map", "0:v:0", "-map", "1:a:0"]
        else:
            command += ["-map", "0"]
        command += ["-c", "copy"]
        if self.container_ext in ("mp4", "m4v", "mov"):
            command += ["-movflags", "+faststart"]
        command += ["-progress", "pipe:1", "-nostats", str(destination)]
        return command

    def remux(
        self,
        streams: ResolvedStreams,
        destination: Path,
        *,
        reporter: Optional[PercentReporter] = None,
    ) -> None:
        parser = FfmpegProgressParser(streams.duration or 0.0)

        def _on_line(line: str) -> None:
            percent = parser.parse(line)
            if percent is not None and reporter is not None:
                reporter.update(percent)

        command = self.build_remux_command(streams, destination)
        try:
            result = run_streaming(command, on_line=_on_line)
        except FileNotFoundError as exc:
            raise AcquisitionFailed("ffmpeg is not installed or not available in PATH") from exc
        if result.returncode != 0:
            raise AcquisitionFailed(f"ffmpeg remux exited with code {result.returncode}: {result.output_tail[-500:]}")
        if not destination.exists() or destination.stat().st_size <= 0:
            raise AcquisitionFailed(f"ffmpeg remux wrote no output at {destination}")

    def download_fallback(
        self,
        source_ref: str,
        destination: Path,
        *,
        reporter: Optional[PercentReporter] = None,
    ) -> ResolvedStreams:
        video_id = extract_video_id(source_ref)
        if not video_id:
            raise NoVideoId(f"no video id in {source_ref!r}")
        streams = self.resolver.resolve_streams(video_id)
        self.remux(streams, destination, reporter=reporter)
        return streams

    # ------------------------------------------------------------------

    def acquire(
        self,
        source_ref: str,
        destination,
        *,
        bus: Optional[ProgressBus] = None,
        job_id: str = "",
    ) -> AcquisitionResult:
        """Acquire ``source_ref`` into ``destination``.

        Raises:
            AcquisitionFailed: The primary attempt failed and the fallback was
                disabled or failed too (``NoVideoId`` and
                ``AllMirrorsExhausted`` are subclasses).
        """
        destination = Path(destination)
        result = AcquisitionResult(state=STATE_PRIMARY)
        reporter = PercentReporter(bus, job_id, PROGRESS_DOWNLOAD)
        log_event(logging.INFO, "acquire_primary_start", logger=logger, job_id=job_id, source=source_ref)
        try:
            self.download_primary(source_ref, destination, bus=bus, job_id=job_id, reporter=reporter)
        except PrimaryDownloadFailed as exc:
            result.primary_error = exc.detail
            log_event(
                logging.WARNING,
                "acquire_primary_failed",
                logger=logger,
                job_id=job_id,
                source=source_ref,
                error=exc.detail,
            )
        else:
            reporter.finish()
            result.state = STATE_DONE
            result.method = "primary"
            return result

        if not self.enable_fallback:
            result.state = STATE_FAILED
            raise AcquisitionFailed(result.primary_error)

        result.state = STATE_FALLBACK
        if bus is not None:
            bus.stage(job_id, STAGE_DOWNLOADING, "Primary download failed, trying mirrors…")
        reporter.reset()
        try:
            streams = self.download_fallback(source_ref, destination, reporter=reporter)
        except AcquisitionFailed as exc:
            result.state = STATE_FAILED
            log_event(
                logging.ERROR,
                "acquire_fallback_failed",
                logger=logger,
                job_id=job_id,
                source=source_ref,
                error=exc.detail,
            )
            raise
        reporter.finish()
        result.state = STATE_DONE
        result.method = "fallback"
        result.mirror = streams.mirror
        log_event(
            logging.INFO,
            "acquire_fallback_done",
            logger=logger,
            job_id=job_id,
            mirror=streams.mirror,
            size_bytes=os.path.getsize(destination),
        )
        return result
