from __future__ import annotations

import json
import math
from pathlib import Path
from types import SimpleNamespace

import pytest
import requests

from config.settings import PipelineSettings
from engine import acquisition as acquisition_module
from engine.errors import InvalidJobRequest
from engine.job_store import JOB_STATUS_DONE, JOB_STATUS_FAILED, JobStore
from engine.mirrors import MirrorResolver
from engine.pipeline import Pipeline
from engine.process import ProcessResult
from engine.progress import PercentEvent, StageEvent
from media import segment as segment_module

MIRRORS = ("https://m1", "https://m2", "https://m3")


class _FakeTools:
    """Scripted yt-dlp / ffmpeg / ffprobe behaviour for one pipeline run."""

    def __init__(self, *, duration=200.0, ytdlp_ok=True, split_parts=None):
        self.duration = duration
        self.ytdlp_ok = ytdlp_ok
        self.split_parts = split_parts
        self.calls = []

    def run_streaming(self, argv, *, on_line=None):
        argv = list(argv)
        self.calls.append(argv)
        if argv[0] == "yt-dlp":
            if not self.ytdlp_ok:
                on_line("ERROR: [youtube] ABCDEFGHIJK: Sign in to confirm your age")
                return ProcessResult(returncode=1, output_tail="ERROR")
            for line in ("[download]  25.0%", "[download]  75.0%", "[download] 100%"):
                on_line(line)
            Path(argv[argv.index("-o") + 1]).write_bytes(b"v" * 4096)
            return ProcessResult(returncode=0, output_tail="")
        if "segment" in argv:
            template = argv[-1]
            count = self.split_parts
            if count is None:
                split = int(argv[argv.index("-segment_time") + 1])
                count = math.ceil(self.duration / split)
            for number in range(1, count + 1):
                Path(template % number).write_bytes(b"p")
            total_us = int(self.duration * 1_000_000)
            for step in range(0, 11):
                on_line(f"out_time_us={total_us * step // 10}")
            on_line("progress=end")
            return ProcessResult(returncode=0, output_tail="")
        # stream-copy remux from mirror URLs
        Path(argv[-1]).write_bytes(b"r" * 4096)
        on_line("progress=end")
        return ProcessResult(returncode=0, output_tail="")

    def ffprobe(self, command, **kwargs):
        self.calls.append(list(command))
        return SimpleNamespace(returncode=0, stdout=f"{self.duration}\n", stderr="")


class _MirrorSession:
    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        outcome = self.outcomes[url.split("/streams/")[0]]
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(status_code=outcome[0], text=outcome[1])


def _build(tmp_path, monkeypatch, bus, tools, session=None, **settings_overrides):
    monkeypatch.setattr(acquisition_module, "run_streaming", tools.run_streaming)
    monkeypatch.setattr(segment_module, "run_streaming", tools.run_streaming)
    monkeypatch.setattr("media.ffprobe.subprocess.run", tools.ffprobe)
    settings = PipelineSettings(mirrors=MIRRORS, **settings_overrides)
    store = JobStore(tmp_path / "jobs")
    pipeline = Pipeline(settings, job_store=store, bus=bus)
    pipeline.acquirer.resolver = MirrorResolver(MIRRORS, session=session or _MirrorSession({}))
    return pipeline, store


def _stages(events):
    return [e.stage for e in events if isinstance(e, StageEvent)]


def _percents(events, kind):
    return [e.percent for e in events if isinstance(e, PercentEvent) and e.type == kind]


def test_healthy_primary_download_produces_numbered_parts(tmp_path, monkeypatch, bus_events) -> None:
    bus, events = bus_events
    tools = _FakeTools(duration=200.0)
    pipeline, store = _build(tmp_path, monkeypatch, bus, tools)

    result = pipeline.submit("https://www.youtube.com/watch?v=ABCDEFGHIJK", "Clip", 65)

    assert result.success is True
    assert result.parts == [
        "Clip - Part 01.mp4",
        "Clip - Part 02.mp4",
        "Clip - Part 03.mp4",
        "Clip - Part 04.mp4",
    ]
    assert result.to_payload() == {"success": True, "jobId": result.job_id, "parts": result.parts}
    assert _stages(events) == ["start", "downloading", "downloaded", "processing", "done"]
    assert _percents(events, "download")[-1] == 100.0
    process = _percents(events, "process")
    assert process[-1] == 100.0
    assert process == sorted(process)
    assert all(e.job_id == result.job_id for e in events)
    job = store.get(result.job_id)
    assert job.status == JOB_STATUS_DONE
    assert job.outputs == result.parts
    assert job.duration == pytest.approx(200.0)


def test_mirror_fallback_after_primary_failure(tmp_path, monkeypatch, bus_events) -> None:
    bus, events = bus_events
    tools = _FakeTools(duration=130.0, ytdlp_ok=False)
    session = _MirrorSession(
        {
            "https://m1": (200, "<!DOCTYPE html><html>Just a moment...</html>"),
            "https://m2": (200, "<html><body>502 Bad Gateway</body></html>"),
            "https://m3": (200, json.dumps({"videoStreams": [{"quality": "480p", "url": "https://cdn/480"}]})),
        }
    )
    pipeline, _ = _build(tmp_path, monkeypatch, bus, tools, session=session)

    result = pipeline.submit("https://www.youtube.com/watch?v=ABCDEFGHIJK", "Clip", 65)

    assert result.success is True
    assert result.parts == ["Clip - Part 01.mp4", "Clip - Part 02.mp4"]
    assert len(session.calls) == 3
    remux = next(argv for argv in tools.calls if argv[0] == "ffmpeg" and "segment" not in argv)
    assert "https://cdn/480" in remux
    assert _stages(events)[-1] == "done"


def test_everything_failing_reports_download_failed(tmp_path, monkeypatch, bus_events) -> None:
    bus, events = bus_events
    tools = _FakeTools(ytdlp_ok=False)
    session = _MirrorSession(
        {
            "https://m1": requests.ConnectionError("refused"),
            "https://m2": (200, "{not json"),
            "https://m3": (200, json.dumps({"videoStreams": []})),
        }
    )
    pipeline, store = _build(tmp_path, monkeypatch, bus, tools, session=session)

    result = pipeline.submit("https://www.youtube.com/watch?v=ABCDEFGHIJK", "Clip", 65)

    assert result.success is False
    assert result.error == "Download failed"
    assert result.parts == []
    payload = result.to_payload()
    assert payload["success"] is False and payload["error"] == "Download failed"
    job = store.get(result.job_id)
    assert job.status == JOB_STATUS_FAILED
    assert job.directory.is_dir()
    assert store.list_outputs(job) == []
    assert _stages(events)[-1] == "error"
    assert _stages(events).count("error") == 1
    assert not any(argv[0] == "ffprobe" for argv in tools.calls)


@pytest.mark.parametrize("split", [59, 0, -65, "abc", 65.5, None, True])
def test_invalid_split_rejected_before_any_work(tmp_path, monkeypatch, bus_events, split) -> None:
    bus, events = bus_events
    tools = _FakeTools()
    pipeline, store = _build(tmp_path, monkeypatch, bus, tools)

    with pytest.raises(InvalidJobRequest):
        pipeline.submit("https://www.youtube.com/watch?v=ABCDEFGHIJK", "Clip", split)

    assert tools.calls == []
    assert list(store.root.iterdir()) == []
    assert events == []


def test_missing_url_is_rejected(tmp_path, monkeypatch, bus_events) -> None:
    bus, _ = bus_events
    pipeline, _ = _build(tmp_path, monkeypatch, bus, _FakeTools())

    with pytest.raises(InvalidJobRequest, match="url is required"):
        pipeline.submit("   ", "Clip", 65)


def test_zero_duration_aborts_with_probe_failure(tmp_path, monkeypatch, bus_events) -> None:
    bus, events = bus_events
    tools = _FakeTools(duration=0.0)
    pipeline, store = _build(tmp_path, monkeypatch, bus, tools)

    result = pipeline.submit("https://youtu.be/ABCDEFGHIJK", "Clip", 60)

    assert result.success is False
    assert result.error == "Could not read video duration"
    assert not any("segment" in argv for argv in tools.calls)
    assert store.get(result.job_id).status == JOB_STATUS_FAILED
    assert _stages(events)[-1] == "error"


def test_no_parts_is_never_a_success(tmp_path, monkeypatch, bus_events) -> None:
    bus, events = bus_events
    tools = _FakeTools(split_parts=0)
    pipeline, _ = _build(tmp_path, monkeypatch, bus, tools)

    result = pipeline.submit("https://youtu.be/ABCDEFGHIJK", "Clip", 60)

    assert result.success is False
    assert result.error == "Splitting produced no parts"
    assert _stages(events)[-1] == "error"


def test_prefix_defaults_and_is_sanitized(tmp_path, monkeypatch, bus_events) -> None:
    bus, _ = bus_events
    pipeline, _ = _build(tmp_path, monkeypatch, bus, _FakeTools(duration=61.0), default_prefix="Short")

    unnamed = pipeline.submit("https://youtu.be/ABCDEFGHIJK", None, "60")
    slashed = pipeline.submit("https://youtu.be/ABCDEFGHIJK", "a/b", 60)

    assert unnamed.parts == ["Short - Part 01.mp4", "Short - Part 02.mp4"]
    assert slashed.parts[0] == "a b - Part 01.mp4"


def test_part_count_verification_only_warns(tmp_path, monkeypatch, bus_events, caplog) -> None:
    bus, _ = bus_events
    tools = _FakeTools(duration=600.0, split_parts=2)
    pipeline, _ = _build(tmp_path, monkeypatch, bus, tools, verify_part_count=True)

    result = pipeline.submit("https://youtu.be/ABCDEFGHIJK", "Clip", 60)

    assert result.success is True
    assert "Part count mismatch" in caplog.text
