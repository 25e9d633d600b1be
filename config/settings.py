"""Application settings constants and config-file loading."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)

# Equivalent Piped API endpoints, tried in this order for every resolution.
DEFAULT_MIRRORS = (
    "https://pipedapi.kavin.rocks",
    "https://piped.mha.fi",
    "https://piped.video",
    "https://pipedapi.tokhmi.xyz",
    "https://pipedapi.adminforge.de",
    "https://pipedapi.syncpundit.io",
)

MIRROR_TIMEOUT_SECONDS = 15.0
TARGET_QUALITY = "720p"

MIN_SPLIT_SECONDS = 60
DEFAULT_SPLIT_SECONDS = 65
DEFAULT_PREFIX = "Clip"
CONTAINER_EXT = "mp4"

# A primary download smaller than this is treated as a failed download.
MIN_SOURCE_BYTES = 1024

RETENTION_HOURS = 6
RECLAIM_INTERVAL_MINUTES = 30

ENABLE_MIRROR_FALLBACK = True
ENABLE_DISK_USAGE_DIAGNOSTICS = False
VERIFY_PART_COUNT = False

YTDLP_FORMAT = "bv*[ext=mp4]+ba[ext=m4a]/b[ext=mp4]/bv*+ba/b"


@dataclass(frozen=True)
class PipelineSettings:
    mirrors: tuple[str, ...] = DEFAULT_MIRRORS
    mirror_timeout_sec: float = MIRROR_TIMEOUT_SECONDS
    target_quality: str = TARGET_QUALITY
    min_split_seconds: int = MIN_SPLIT_SECONDS
    default_prefix: str = DEFAULT_PREFIX
    container_ext: str = CONTAINER_EXT
    min_source_bytes: int = MIN_SOURCE_BYTES
    retention_hours: float = RETENTION_HOURS
    reclaim_interval_minutes: int = RECLAIM_INTERVAL_MINUTES
    enable_mirror_fallback: bool = ENABLE_MIRROR_FALLBACK
    enable_disk_usage_diagnostics: bool = ENABLE_DISK_USAGE_DIAGNOSTICS
    verify_part_count: bool = VERIFY_PART_COUNT
    ytdlp_format: str = YTDLP_FORMAT
    ytdlp_bin: str = "yt-dlp"
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    extra: dict = field(default_factory=dict, compare=False, repr=False)


_BOOL_KEYS = ("enable_mirror_fallback", "enable_disk_usage_diagnostics", "verify_part_count")
_POSITIVE_NUMBER_KEYS = (
    "mirror_timeout_sec",
    "min_split_seconds",
    "retention_hours",
    "reclaim_interval_minutes",
)
_STRING_KEYS = (
    "target_quality",
    "default_prefix",
    "container_ext",
    "ytdlp_format",
    "ytdlp_bin",
    "ffmpeg_bin",
    "ffprobe_bin",
)


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    mirrors = config.get("mirrors")
    if mirrors is not None:
        if not isinstance(mirrors, list) or not mirrors:
            errors.append("mirrors must be a non-empty list")
        else:
            for idx, base in enumerate(mirrors):
                if not isinstance(base, str) or not base.startswith(("http://", "https://")):
                    errors.append(f"mirrors[{idx}] must be an http(s) URL")

    for key in _BOOL_KEYS:
        value = config.get(key)
        if value is not None and not isinstance(value, bool):
            errors.append(f"{key} must be true or false")

    for key in _POSITIVE_NUMBER_KEYS:
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            errors.append(f"{key} must be a positive number")

    min_source_bytes = config.get("min_source_bytes")
    if min_source_bytes is not None and (
        isinstance(min_source_bytes, bool) or not isinstance(min_source_bytes, int) or min_source_bytes < 0
    ):
        errors.append("min_source_bytes must be a non-negative integer")

    for key in _STRING_KEYS:
        value = config.get(key)
        if value is not None and (not isinstance(value, str) or not value.strip()):
            errors.append(f"{key} must be a non-empty string")

    return errors


def build_settings(config=None, *, base=None):
    """Return :class:`PipelineSettings` with ``config`` values applied over defaults.

    Unknown keys are kept in ``extra``. The caller is expected to have run
    :func:`validate_config` first; invalid values are not re-checked here.
    """
    settings = base or PipelineSettings()
    if not config:
        return settings
    overrides = {}
    known = set(PipelineSettings.__dataclass_fields__) - {"extra"}
    for key, value in config.items():
        if key not in known or value is None:
            continue
        if key == "mirrors":
            value = tuple(str(base_url).rstrip("/") for base_url in value)
        elif key == "container_ext":
            value = str(value).lstrip(".").lower()
        elif key == "min_split_seconds":
            value = int(value)
        overrides[key] = value
    extra = {k: v for k, v in config.items() if k not in known}
    return replace(settings, extra=extra, **overrides)


def load_settings(path):
    """Load settings from a JSON file, falling back to defaults on any problem."""
    if not path:
        return PipelineSettings()
    try:
        config = load_config(path)
    except FileNotFoundError:
        logger.info("No config file at %s; using defaults", path)
        return PipelineSettings()
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to read config %s: %s; using defaults", path, exc)
        return PipelineSettings()
    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error("Invalid config %s: %s", path, error)
        logger.error("Config %s rejected; using defaults", path)
        return PipelineSettings()
    return build_settings(config)
