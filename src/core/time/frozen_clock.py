from datetime import datetime, timedelta
from src.core.time.clock import Clock


class FrozenClock(Clock):
    """
    Test clock. Only moves when told to.
    """
    def __init__(self, start_time: datetime):
        if start_time.tzinfo is None:
            raise ValueError("FrozenClock requires timezone-aware datetime")
        self._current_time = start_time

    def now(self) -> datetime:
        return self._current_time

    def advance(self, delta: timedelta) -> None:
        self._current_time += delta

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            raise ValueError("FrozenClock requires timezone-aware datetime")
        self._current_time = moment
