import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.progress import ProgressBus  # noqa: E402


@pytest.fixture
def bus_events():
    """A progress bus plus the list every published event lands in."""
    bus = ProgressBus()
    events = []
    bus.register_observer(events.append)
    return bus, events
