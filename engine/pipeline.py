"""One job, start to finish: download, probe, split."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from config.settings import PipelineSettings
from engine.acquisition import AcquisitionCoordinator
from engine.errors import InvalidJobRequest, PipelineError, ProbeFailed
from engine.job_store import (
    JOB_STATUS_DONE,
    JOB_STATUS_DOWNLOADING,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROBING,
    JOB_STATUS_SEGMENTING,
    Job,
    JobStore,
)
from engine.logging_utils import log_event
from engine.mirrors import MirrorResolver
from engine.progress import (
    PROGRESS_PROCESS,
    STAGE_DONE,
    STAGE_DOWNLOADED,
    STAGE_DOWNLOADING,
    STAGE_ERROR,
    STAGE_PROCESSING,
    STAGE_START,
    PercentReporter,
    ProgressBus,
)
from media.ffprobe import DurationProber
from media.segment import SegmentationEngine, expected_part_count, sanitize_prefix

logger = logging.getLogger(__name__)

PROCESS_MIN_STEP = 0.5


@dataclass(frozen=True)
class JobRequest:
    url: str
    prefix: str
    split_seconds: int


@dataclass
class JobResult:
    success: bool
    job_id: str | None = None
    parts: list[str] = field(default_factory=list)
    error: str | None = None
    detail: str | None = None

    def to_payload(self) -> dict:
        if self.success:
            return {"success": True, "jobId": self.job_id, "parts": list(self.parts)}
        payload = {"success": False, "error": self.error}
        if self.job_id:
            payload["jobId"] = self.job_id
        if self.detail and self.detail != self.error:
            payload["detail"] = self.detail
        return payload


class Pipeline:
    """Run jobs through acquisition, duration probe and segmentation in order.

    Stages never overlap within a job. Independent jobs may run concurrently
    in separate threads; they share only the progress bus and the jobs root.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        job_store: JobStore,
        bus: Optional[ProgressBus] = None,
        acquirer: Optional[AcquisitionCoordinator] = None,
        prober: Optional[DurationProber] = None,
        segmenter: Optional[SegmentationEngine] = None,
    ) -> None:
        self.settings = settings
        self.job_store = job_store
        self.bus = bus or ProgressBus()
        self.acquirer = acquirer or AcquisitionCoordinator(
            resolver=MirrorResolver(
                settings.mirrors,
                timeout_sec=settings.mirror_timeout_sec,
                target_quality=settings.target_quality,
            ),
            ytdlp_bin=settings.ytdlp_bin,
            ffmpeg_bin=settings.ffmpeg_bin,
            ytdlp_format=settings.ytdlp_format,
            container_ext=settings.container_ext,
            min_source_bytes=settings.min_source_bytes,
            enable_fallback=settings.enable_mirror_fallback,
        )
        self.prober = prober or DurationProber(settings.ffprobe_bin)
        self.segmenter = segmenter or SegmentationEngine(settings.ffmpeg_bin)

    def validate(self, url, prefix=None, split_seconds=None) -> JobRequest:
        url = (url or "").strip() if isinstance(url, str) else ""
        if not url:
            raise InvalidJobRequest("url is required")
        if split_seconds is None:
            raise InvalidJobRequest("split_seconds is required")
        if isinstance(split_seconds, int) and not isinstance(split_seconds, bool):
            split_value = split_seconds
        elif isinstance(split_seconds, str) and split_seconds.strip().isdigit():
            split_value = int(split_seconds.strip())
        else:
            raise InvalidJobRequest("split_seconds must be an integer")
        floor = self.settings.min_split_seconds
        if split_value < floor:
            raise InvalidJobRequest(f"split_seconds must be at least {floor}")
        prefix_value = sanitize_prefix(prefix or "", default=self.settings.default_prefix)
        return JobRequest(url=url, prefix=prefix_value, split_seconds=split_value)

    def submit(self, url, prefix=None, split_seconds=None) -> JobResult:
        """Validate, allocate a job directory and run the job to completion.

        Raises:
            InvalidJobRequest: Before any directory or subprocess is created.
        """
        request = self.validate(url, prefix, split_seconds)
        job = self.job_store.create(request.split_seconds, request.prefix)
        return self.run(job, request.url)

    def run(self, job: Job, url: str) -> JobResult:
        bus = self.bus
        try:
            bus.stage(job.id, STAGE_START, "Starting job…")
            job.set_status(JOB_STATUS_DOWNLOADING)
            bus.stage(job.id, STAGE_DOWNLOADING, "Downloading source…")
            acquisition = self.acquirer.acquire(url, job.source_path, bus=bus, job_id=job.id)
            bus.stage(job.id, STAGE_DOWNLOADED, "Download complete")
            if self.settings.enable_disk_usage_diagnostics:
                log_event(logging.INFO, "disk_usage", logger=logger, job_id=job.id, **self.job_store.disk_usage())

            job.set_status(JOB_STATUS_PROBING)
            duration = self.prober.probe(job.source_path)
            if not math.isfinite(duration) or duration <= 0:
                raise ProbeFailed(f"unusable duration {duration!r} for {job.source_path.name}")
            job.duration = duration

            job.set_status(JOB_STATUS_SEGMENTING)
            bus.stage(job.id, STAGE_PROCESSING, f"Splitting into {job.split_seconds}s parts…")
            reporter = PercentReporter(bus, job.id, PROGRESS_PROCESS, min_step=PROCESS_MIN_STEP)
            self.segmenter.segment(
                job.source_path,
                job.part_template,
                job.split_seconds,
                duration,
                reporter=reporter,
            )
            outputs = self.job_store.list_outputs(job)
            if self.settings.verify_part_count:
                self._verify_part_count(job, duration, outputs)
        except PipelineError as exc:
            return self._fail(job, exc)
        except Exception as exc:
            logger.exception("Job crashed id=%s", job.id)
            return self._fail(job, PipelineError(str(exc) or type(exc).__name__))

        job.outputs = outputs
        job.set_status(JOB_STATUS_DONE)
        bus.stage(job.id, STAGE_DONE, f"Completed: {len(outputs)} parts")
        log_event(
            logging.INFO,
            "job_done",
            logger=logger,
            job_id=job.id,
            method=acquisition.method,
            mirror=acquisition.mirror,
            duration=duration,
            parts=len(outputs),
        )
        return JobResult(success=True, job_id=job.id, parts=list(outputs))

    def _verify_part_count(self, job: Job, duration: float, outputs: list[str]) -> None:
        expected = expected_part_count(duration, job.split_seconds)
        # Cuts land on keyframes, so one part more or less is normal.
        if abs(len(outputs) - expected) > 1:
            logger.warning(
                "Part count mismatch job_id=%s expected=%d actual=%d",
                job.id,
                expected,
                len(outputs),
            )

    def _fail(self, job: Job, exc: PipelineError) -> JobResult:
        job.set_status(JOB_STATUS_FAILED, error=exc.detail)
        log_event(
            logging.ERROR,
            "job_failed",
            logger=logger,
            job_id=job.id,
            error_type=type(exc).__name__,
            error=exc.detail,
        )
        message = exc.public_message
        if exc.detail and exc.detail != message:
            message = f"{message}: {exc.detail}"
        self.bus.stage(job.id, STAGE_ERROR, message)
        return JobResult(success=False, job_id=job.id, error=exc.public_message, detail=exc.detail)
