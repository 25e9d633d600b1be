import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_FILENAME = "config.json"

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    base = Path("/data") if _is_container_runtime() else PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": Path("/config") if _is_container_runtime() else base / "config",
        "jobs": base / "jobs",
        "logs": Path("/logs") if _is_container_runtime() else base / "logs",
    }


def _env_path(name, default):
    value = os.environ.get(name)
    return Path(value or default).resolve()


_DEFAULTS = _default_root_paths()

DATA_DIR = _env_path("VIDEOSPLITTER_DATA_DIR", _DEFAULTS["data"])
CONFIG_DIR = _env_path("VIDEOSPLITTER_CONFIG_DIR", _DEFAULTS["config"])
JOBS_DIR = _env_path("VIDEOSPLITTER_JOBS_DIR", _DEFAULTS["jobs"])
LOG_DIR = _env_path("VIDEOSPLITTER_LOG_DIR", _DEFAULTS["logs"])


@dataclass(frozen=True)
class ServicePaths:
    data_dir: Path
    config_dir: Path
    jobs_dir: Path
    log_dir: Path
    config_path: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def is_within(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_within(path, base_dir):
    """Resolve ``path`` against ``base_dir``; raise ``ValueError`` if it escapes."""
    if not path:
        return Path(base_dir)
    if os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(base_dir, path))
    if not is_within(resolved, base_dir):
        raise ValueError(f"Path must be within base directory: {base_dir}")
    return Path(resolved)


def resolve_config_path(path):
    if not path:
        return str(CONFIG_DIR / CONFIG_FILENAME)
    try:
        return str(resolve_within(path, CONFIG_DIR))
    except ValueError:
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}") from None


def build_service_paths(config_override=None):
    """Create the service directories and return them with the config file path.

    Raises:
        ValueError: ``config_override`` points outside ``CONFIG_DIR``.
    """
    config_path = resolve_config_path(config_override)
    for directory in (DATA_DIR, CONFIG_DIR, JOBS_DIR, LOG_DIR):
        ensure_dir(directory)
    return ServicePaths(
        data_dir=DATA_DIR,
        config_dir=CONFIG_DIR,
        jobs_dir=JOBS_DIR,
        log_dir=LOG_DIR,
        config_path=config_path,
    )
