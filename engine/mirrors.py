"""Direct stream URL lookup across redundant Piped API mirrors."""

from __future__ import annotations

import json
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import requests

from config.settings import DEFAULT_MIRRORS, MIRROR_TIMEOUT_SECONDS, TARGET_QUALITY
from engine.errors import AllMirrorsExhausted, InvalidMirrorResponse, TransportError
from engine.logging_utils import log_event

logger = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0"


@dataclass(frozen=True)
class StreamCandidate:
    quality: str | None
    url: str | None
    mime_type: str | None = None
    video_only: bool | None = None
    bitrate: int | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "StreamCandidate | None":
        if not isinstance(raw, dict):
            return None
        bitrate = raw.get("bitrate")
        return cls(
            quality=raw.get("quality"),
            url=raw.get("url"),
            mime_type=raw.get("mimeType"),
            video_only=raw.get("videoOnly"),
            bitrate=bitrate if isinstance(bitrate, int) else None,
        )


@dataclass(frozen=True)
class ResolvedStreams:
    mirror: str
    video_url: str
    audio_url: str | None = None
    duration: float | None = None
    quality: str | None = None

    @property
    def urls(self) -> list[str]:
        return [url for url in (self.video_url, self.audio_url) if url]


def select_stream(candidates: Sequence[StreamCandidate], target_quality: str = TARGET_QUALITY) -> StreamCandidate | None:
    """Pick the ``target_quality`` candidate wherever it sits, else the first one.

    Candidates without a URL are never returned.
    """
    usable = [c for c in candidates if c is not None and c.url]
    for candidate in usable:
        if candidate.quality == target_quality:
            return candidate
    return usable[0] if usable else None


def _looks_like_markup(text: str) -> bool:
    head = text.lstrip()[:64].lower()
    return head.startswith("<!doctype") or "<html" in text.lower()


def parse_manifest(text: str) -> dict:
    """Parse a mirror body into a manifest dict or raise :class:`InvalidMirrorResponse`."""
    if not text or not text.strip():
        raise InvalidMirrorResponse("empty body")
    if _looks_like_markup(text):
        raise InvalidMirrorResponse("returned HTML instead of JSON")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidMirrorResponse(f"JSON parse error: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise InvalidMirrorResponse("manifest is not a JSON object")
    return payload


class MirrorResolver:
    """Walk the mirror list in order and return the first usable stream.

    Each mirror gets exactly one request per call. Transport failures and
    invalid bodies are logged and skipped; nothing is remembered between calls.
    """

    def __init__(
        self,
        mirrors: Sequence[str] = DEFAULT_MIRRORS,
        *,
        timeout_sec: float = MIRROR_TIMEOUT_SECONDS,
        target_quality: str = TARGET_QUALITY,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.mirrors = tuple(str(base).rstrip("/") for base in mirrors)
        self.timeout_sec = timeout_sec
        self.target_quality = target_quality
        self._session = session

    def _http(self):
        return self._session or requests

    def _fetch(self, base: str, video_id: str) -> str:
        url = f"{base}/streams/{urllib.parse.quote(video_id, safe='')}"
        try:
            response = self._http().get(
                url,
                headers={"User-Agent": _USER_AGENT},
                timeout=self.timeout_sec,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise TransportError(f"HTTP {response.status_code}")
        return response.text

    def _streams_from_manifest(self, base: str, manifest: dict) -> ResolvedStreams:
        raw_videos = manifest.get("videoStreams")
        if not isinstance(raw_videos, list) or not raw_videos:
            raise InvalidMirrorResponse("no video streams")
        video = select_stream(
            [StreamCandidate.from_payload(raw) for raw in raw_videos],
            self.target_quality,
        )
        if video is None:
            raise InvalidMirrorResponse("no stream URL found")

        audio_url = None
        raw_audio = manifest.get("audioStreams")
        if isinstance(raw_audio, list):
            audio = select_stream(
                [StreamCandidate.from_payload(raw) for raw in raw_audio],
                target_quality="",
            )
            audio_url = audio.url if audio else None

        duration = manifest.get("duration")
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
            duration = None
        return ResolvedStreams(
            mirror=base,
            video_url=str(video.url),
            audio_url=audio_url,
            duration=float(duration) if duration is not None else None,
            quality=video.quality,
        )

    def resolve_streams(self, video_id: str) -> ResolvedStreams:
        if not video_id:
            raise ValueError("video_id is required")
        logger.info("Resolving stream via mirrors video_id=%s mirrors=%d", video_id, len(self.mirrors))
        failures = []
        for base in self.mirrors:
            try:
                text = self._fetch(base, video_id)
                streams = self._streams_from_manifest(base, parse_manifest(text))
            except (TransportError, InvalidMirrorResponse) as exc:
                failures.append(f"{base}: {exc.detail}")
                log_event(
                    logging.WARNING,
                    "mirror_skipped",
                    logger=logger,
                    mirror=base,
                    video_id=video_id,
                    reason=type(exc).__name__,
                    detail=exc.detail,
                )
                continue
            log_event(
                logging.INFO,
                "mirror_resolved",
                logger=logger,
                mirror=base,
                video_id=video_id,
                quality=streams.quality,
                has_audio=bool(streams.audio_url),
            )
            return streams
        raise AllMirrorsExhausted(
            f"All {len(self.mirrors)} mirrors failed for {video_id}: " + "; ".join(failures)
        )

    def resolve(self, video_id: str) -> str:
        return self.resolve_streams(video_id).video_url
