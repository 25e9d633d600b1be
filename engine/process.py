"""Subprocess helpers shared by the download, probe and split stages."""

from __future__ import annotations

import logging
import subprocess
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_LINES = 25


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    output_tail: str


def terminate_subprocess(proc: subprocess.Popen, *, grace_sec: float = 3.0) -> None:
    """Best-effort terminate a subprocess quickly and safely."""
    if proc is None:
        return
    try:
        if proc.poll() is not None:
            return
    except OSError:
        return
    try:
        proc.terminate()
    except OSError:
        pass
    deadline = time.monotonic() + grace_sec
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return
        time.sleep(0.05)
    try:
        proc.kill()
    except OSError:
        pass
    proc.wait()


def run_streaming(
    argv: Sequence[str],
    *,
    on_line: Optional[Callable[[str], None]] = None,
) -> ProcessResult:
    """Run ``argv`` and feed each combined stdout/stderr line to ``on_line``.

    Raises ``FileNotFoundError`` when the executable is missing. A failing
    ``on_line`` callback is logged and does not stop the process; any other
    exception while reading terminates the child before propagating.
    """
    tail: deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
    proc = subprocess.Popen(
        list(argv),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
        errors="replace",
    )
    try:
        assert proc.stdout is not None
        for raw_line in proc.stdout:
            line = raw_line.rstrip("\r\n")
            if not line:
                continue
            tail.append(line)
            if on_line is None:
                continue
            try:
                on_line(line)
            except Exception:
                logger.exception("process_line_callback_failed argv0=%s", argv[0])
        returncode = proc.wait()
    except BaseException:
        terminate_subprocess(proc)
        raise
    finally:
        if proc.stdout is not None:
            proc.stdout.close()
    return ProcessResult(returncode=returncode, output_tail="\n".join(tail))
