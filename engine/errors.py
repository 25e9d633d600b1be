"""Error types raised by the acquisition and segmentation pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every pipeline failure reported to a caller."""

    public_message = "Job failed"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class InvalidJobRequest(PipelineError):
    public_message = "Invalid job request"


# Recovered inside the mirror resolver; never surfaced to callers.
class TransportError(PipelineError):
    public_message = "Mirror request failed"


class InvalidMirrorResponse(PipelineError):
    public_message = "Mirror returned an invalid response"


class PrimaryDownloadFailed(PipelineError):
    public_message = "Primary download failed"


class AcquisitionFailed(PipelineError):
    public_message = "Download failed"


class AllMirrorsExhausted(AcquisitionFailed):
    pass


class NoVideoId(AcquisitionFailed):
    pass


class ProbeFailed(PipelineError):
    public_message = "Could not read video duration"


class SegmentationFailed(PipelineError):
    public_message = "Splitting failed"

    def __init__(self, exit_code: int, detail: str | None = None) -> None:
        super().__init__(detail or f"ffmpeg exited with code {exit_code}")
        self.exit_code = exit_code


class NoPartsProduced(PipelineError):
    public_message = "Splitting produced no parts"
