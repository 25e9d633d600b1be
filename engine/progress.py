"""Progress events and the in-process fan-out bus that carries them."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Union

logger = logging.getLogger(__name__)

STAGE_START = "start"
STAGE_DOWNLOADING = "downloading"
STAGE_MERGING = "merging"
STAGE_DOWNLOADED = "downloaded"
STAGE_PROCESSING = "processing"
STAGE_DONE = "done"
STAGE_ERROR = "error"
STAGES = (
    STAGE_START,
    STAGE_DOWNLOADING,
    STAGE_MERGING,
    STAGE_DOWNLOADED,
    STAGE_PROCESSING,
    STAGE_DONE,
    STAGE_ERROR,
)

PROGRESS_DOWNLOAD = "download"
PROGRESS_PROCESS = "process"
PROGRESS_TYPES = (PROGRESS_DOWNLOAD, PROGRESS_PROCESS)


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


@dataclass(frozen=True)
class StageEvent:
    job_id: str
    stage: str
    message: str

    channel = "stage"

    def to_payload(self) -> dict:
        return {"jobId": self.job_id, "stage": self.stage, "message": self.message}


@dataclass(frozen=True)
class PercentEvent:
    job_id: str
    type: str
    percent: float

    channel = "progress"

    def to_payload(self) -> dict:
        return {"jobId": self.job_id, "type": self.type, "percent": round(self.percent, 2)}


ProgressEvent = Union[StageEvent, PercentEvent]
Observer = Callable[[ProgressEvent], None]


class ProgressEventStream:
    """Asynchronous iterator over events delivered to one subscriber."""

    _SENTINEL = object()

    def __init__(self, bus: "ProgressBus", loop: asyncio.AbstractEventLoop, job_id: Optional[str] = None):
        self._loop = loop
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self._unsubscribe = bus.register_observer(self._on_event, job_id=job_id)

    def _on_event(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # Event loop already closed; the subscriber is gone.
            self.close()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is self._SENTINEL:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def aclose(self) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, self._SENTINEL)
        except RuntimeError:
            pass


class ProgressBus:
    """Best-effort, at-most-once broadcast of progress events.

    Events published before an observer registers are not replayed. Observers
    may filter on a job id; ``job_id=None`` receives every job's events.
    Publishing is safe from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._observers: tuple[tuple[Observer, Optional[str]], ...] = ()

    def register_observer(self, callback: Observer, *, job_id: Optional[str] = None) -> Callable[[], None]:
        entry = (callback, job_id)
        with self._lock:
            self._observers = self._observers + (entry,)

        def _unregister() -> None:
            with self._lock:
                observers = list(self._observers)
                try:
                    observers.remove(entry)
                except ValueError:
                    return
                self._observers = tuple(observers)

        return _unregister

    def subscribe(
        self,
        *,
        job_id: Optional[str] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> ProgressEventStream:
        if loop is None:
            loop = asyncio.get_running_loop()
        return ProgressEventStream(self, loop, job_id=job_id)

    @property
    def subscriber_count(self) -> int:
        return len(self._observers)

    def publish(self, event: ProgressEvent) -> None:
        observers = self._observers
        for callback, job_filter in observers:
            if job_filter is not None and job_filter != event.job_id:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("progress_observer_failed job_id=%s", event.job_id)

    def stage(self, job_id: str, stage: str, message: str) -> None:
        if stage not in STAGES:
            raise ValueError(f"unknown stage: {stage}")
        self.publish(StageEvent(job_id=job_id, stage=stage, message=message))

    def progress(self, job_id: str, kind: str, percent: float) -> None:
        if kind not in PROGRESS_TYPES:
            raise ValueError(f"unknown progress type: {kind}")
        self.publish(PercentEvent(job_id=job_id, type=kind, percent=clamp_percent(percent)))


class PercentReporter:
    """Publish one stage's percent counter as a clamped, non-decreasing series.

    A value is published only when it advances by at least ``min_step`` over
    the last published value, or when it first reaches 100.
    """

    def __init__(self, bus: Optional[ProgressBus], job_id: str, kind: str, *, min_step: float = 0.0) -> None:
        self._bus = bus
        self._job_id = job_id
        self._kind = kind
        self._min_step = min_step
        self.last = 0.0
        self.published: list[float] = []

    def update(self, percent: float) -> bool:
        value = clamp_percent(percent)
        reached_end = value >= 100.0 and self.last < 100.0
        advanced = value - self.last
        if not reached_end and (advanced <= 0 or advanced < self._min_step):
            return False
        self.last = value
        self.published.append(value)
        if self._bus is not None:
            self._bus.progress(self._job_id, self._kind, value)
        return True

    def finish(self) -> None:
        self.update(100.0)

    def reset(self) -> None:
        self.last = 0.0
        self.published = []
