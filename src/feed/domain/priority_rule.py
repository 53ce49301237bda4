from dataclasses import dataclass, field
from typing import Any, Dict

from src.feed.domain.feed_signal import FeedSignal

GLOBAL_SCOPE = "global"


@dataclass(frozen=True)
class PriorityRule:
    rule_key: str
    weight: int
    scope: str = GLOBAL_SCOPE  # "global" or a tenant id
    config: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    @property
    def is_global(self) -> bool:
        return self.scope == GLOBAL_SCOPE


@dataclass(frozen=True)
class PriorityAssessment:
    priority_score: int
    priority_reason: str


@dataclass(frozen=True)
class ScoredSignal:
    signal: FeedSignal
    assessment: PriorityAssessment
