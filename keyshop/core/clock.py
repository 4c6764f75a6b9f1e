"""
Clock source

Reservation code never reads the system clock directly; it takes a Clock so
tests and replays can pin time.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class FrozenClock:
    """Clock that returns a fixed instant until advanced."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta) -> datetime:
        self.current = self.current + delta
        return self.current
