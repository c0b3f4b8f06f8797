import time
from datetime import datetime, timezone


class SystemClock:
    """Wall and monotonic time. Services take a clock so tests can drive TTLs precisely."""

    def monotonic(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)
