"""Time source shared by the control plane components.

Every component takes a ``clock`` returning epoch seconds so tests can
drive windows and intervals deterministically.
"""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]

system_clock: Clock = time.time


def to_datetime(timestamp: float) -> datetime:
    """Convert epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, timezone.utc)
