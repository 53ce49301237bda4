from abc import ABC, abstractmethod
from typing import List

from src.feed.domain.feed_signal import FeedSignal


class SignalProducer(ABC):
    """
    Computes the current candidate items of one category for a tenant.
    Implementations live outside the engine (payments, diary, agenda, labs).
    Must be side-effect free regarding feed task state.
    """
    category: str = "unknown"

    @abstractmethod
    def fetch(self, tenant_id: str) -> List[FeedSignal]:
        pass
