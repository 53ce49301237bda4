import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from src.core.logging.structured_feed_logger import StructuredFeedLogger
from src.feed.domain.feed_signal import FeedSignal
from src.feed.interfaces.signal_producer import SignalProducer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalCollection:
    signals: List[FeedSignal] = field(default_factory=list)
    failed_categories: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_categories


class SignalCollector:
    """
    Fetch cycle over all registered producers.
    A producer that fails contributes nothing; the others still count.
    """

    def __init__(
        self,
        producers: Iterable[SignalProducer],
        structured_logger: Optional[StructuredFeedLogger] = None,
    ):
        self.producers = list(producers)
        self.structured_logger = structured_logger

    def collect(self, tenant_id: str) -> SignalCollection:
        signals: List[FeedSignal] = []
        failed: List[str] = []

        for producer in self.producers:
            try:
                batch = producer.fetch(tenant_id)
            except Exception as e:
                failed.append(producer.category)
                logger.warning(f"Signal producer '{producer.category}' failed for tenant {tenant_id}: {e}")
                if self.structured_logger:
                    self.structured_logger.emit(
                        "feed_signal.fetch_failed",
                        tenant_id=tenant_id,
                        category=producer.category,
                        error=str(e),
                    )
                continue
            signals.extend(batch or [])

        return SignalCollection(signals=signals, failed_categories=failed)
