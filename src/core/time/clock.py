from abc import ABC, abstractmethod
from datetime import datetime


class Clock(ABC):
    """
    Abstract source of "now" for feed operations.
    Every timestamp written by the engine comes from here, always UTC-aware.
    """
    @abstractmethod
    def now(self) -> datetime:
        pass
