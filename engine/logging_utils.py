import json
import logging
import os


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def log_event(level, message, *, logger=None, **fields):
    payload = {"message": message, **fields}
    target = logger or logging.getLogger()
    try:
        target.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        target.log(level, f"log_event_serialization_failed: {exc} message={message}")


def setup_logging(log_dir, *, filename="videosplitter.log", level=logging.INFO):
    """Attach a file handler for ``log_dir`` to the root logger once."""
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, filename)
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return log_path
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(level)
    root.addHandler(file_handler)
    return log_path
