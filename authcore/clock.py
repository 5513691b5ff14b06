from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# Services take a clock instead of reading the wall time directly
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
