from .errors import (
    AcquisitionFailed,
    AllMirrorsExhausted,
    InvalidJobRequest,
    NoPartsProduced,
    NoVideoId,
    PipelineError,
    ProbeFailed,
    SegmentationFailed,
)
from .job_store import Job, JobStore
from .progress import ProgressBus

__all__ = [
    "AcquisitionFailed",
    "AllMirrorsExhausted",
    "InvalidJobRequest",
    "Job",
    "JobStore",
    "NoPartsProduced",
    "NoVideoId",
    "PipelineError",
    "ProbeFailed",
    "ProgressBus",
    "SegmentationFailed",
]
