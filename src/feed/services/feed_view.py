from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from src.feed.domain.feed_signal import SourceType
from src.feed.domain.feed_task import FeedTask, TaskStatus

DEFAULT_HIGH_PRIORITY_THRESHOLD = 4
DEFAULT_SLA_ATTENTION_HOURS = 24.0
DEFAULT_SLA_CRITICAL_HOURS = 48.0

# Tie-break after score: lower comes first.
CATEGORY_DISPLAY_ORDER: Dict[str, int] = {
    SourceType.PENDING_DATA.value: 1,
    SourceType.LAB_HIGH_RISK.value: 1,
    SourceType.APPOINTMENT_UPCOMING.value: 2,
    SourceType.LOW_ADHERENCE.value: 4,
    SourceType.RECENT_ACTIVITY.value: 5,
}
_UNKNOWN_DISPLAY_ORDER = 5

SLA_TRACKED_TYPES = (SourceType.PENDING_DATA.value, SourceType.LOW_ADHERENCE.value)


class FeedFilter(str, Enum):
    ALL = "all"
    HIGH = "high"
    PENDING = "pending"
    ADHERENCE = "adherence"
    LAB_RISK = "lab_risk"


class SlaStatus(str, Enum):
    WITHIN = "within"
    ATTENTION = "attention"
    CRITICAL = "critical"


@dataclass(frozen=True)
class BacklogStats:
    open_count: int
    snoozed_count: int
    critical_count: int
    attention_count: int
    high_risk_lab_count: int


class FeedView:
    """
    Read model over persisted tasks: what the practitioner sees, in which
    order, and how far behind the backlog is.
    """

    def __init__(
        self,
        high_priority_threshold: int = DEFAULT_HIGH_PRIORITY_THRESHOLD,
        sla_attention_hours: float = DEFAULT_SLA_ATTENTION_HOURS,
        sla_critical_hours: float = DEFAULT_SLA_CRITICAL_HOURS,
    ):
        self.high_priority_threshold = high_priority_threshold
        self.sla_attention_hours = sla_attention_hours
        self.sla_critical_hours = sla_critical_hours

    def visible(self, tasks: Iterable[FeedTask], now: datetime) -> List[FeedTask]:
        shown = [t for t in tasks if self.is_visible(t, now)]
        return sorted(shown, key=self._rank_key)

    @staticmethod
    def is_visible(task: FeedTask, now: datetime) -> bool:
        if task.status == TaskStatus.RESOLVED:
            return False
        if task.status == TaskStatus.SNOOZED:
            return task.snooze_until is not None and task.snooze_until <= now
        return True

    def apply_filter(self, tasks: Iterable[FeedTask], feed_filter: FeedFilter) -> List[FeedTask]:
        feed_filter = FeedFilter(feed_filter)
        if feed_filter == FeedFilter.HIGH:
            return [t for t in tasks if t.priority_score >= self.high_priority_threshold]
        if feed_filter == FeedFilter.PENDING:
            return [t for t in tasks if t.source_type == SourceType.PENDING_DATA.value]
        if feed_filter == FeedFilter.ADHERENCE:
            return [t for t in tasks if t.source_type == SourceType.LOW_ADHERENCE.value]
        if feed_filter == FeedFilter.LAB_RISK:
            return [t for t in tasks if t.source_type == SourceType.LAB_HIGH_RISK.value]
        return list(tasks)

    def filter_counts(self, tasks: Iterable[FeedTask]) -> Dict[str, int]:
        tasks = list(tasks)
        return {f.value: len(self.apply_filter(tasks, f)) for f in FeedFilter}

    def sla_status(self, task: FeedTask, now: datetime) -> Optional[SlaStatus]:
        if task.status != TaskStatus.OPEN or task.source_type not in SLA_TRACKED_TYPES:
            return None
        return self._age_bucket(task, now)

    def backlog_stats(self, tasks: Iterable[FeedTask], now: datetime) -> BacklogStats:
        open_tasks = []
        snoozed_count = 0
        for task in tasks:
            if task.status == TaskStatus.OPEN:
                open_tasks.append(task)
            elif task.status == TaskStatus.SNOOZED and task.snooze_until and task.snooze_until > now:
                snoozed_count += 1

        buckets = [self._age_bucket(t, now) for t in open_tasks]
        return BacklogStats(
            open_count=len(open_tasks),
            snoozed_count=snoozed_count,
            critical_count=sum(1 for b in buckets if b == SlaStatus.CRITICAL),
            attention_count=sum(1 for b in buckets if b == SlaStatus.ATTENTION),
            high_risk_lab_count=sum(1 for t in open_tasks if t.source_type == SourceType.LAB_HIGH_RISK.value),
        )

    def _age_bucket(self, task: FeedTask, now: datetime) -> SlaStatus:
        age_hours = max(0.0, (now - task.first_seen_at).total_seconds() / 3600.0)
        if age_hours >= self.sla_critical_hours:
            return SlaStatus.CRITICAL
        if age_hours >= self.sla_attention_hours:
            return SlaStatus.ATTENTION
        return SlaStatus.WITHIN

    @staticmethod
    def _rank_key(task: FeedTask):
        return (
            -task.priority_score,
            CATEGORY_DISPLAY_ORDER.get(task.source_type, _UNKNOWN_DISPLAY_ORDER),
            -task.last_seen_at.timestamp(),
            task.source_type,
            task.source_id,
        )
