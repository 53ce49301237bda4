from typing import Dict, Iterable, List, Optional, Tuple

from src.feed.domain.feed_signal import (
    AppointmentAttributes,
    FeedSignal,
    LabRiskAttributes,
    LowAdherenceAttributes,
    PendingDataAttributes,
    ActivityAttributes,
    SourceType,
)
from src.feed.domain.priority_rule import PriorityAssessment, PriorityRule, ScoredSignal

BASE_WEIGHTS: Dict[str, int] = {
    SourceType.PENDING_DATA.value: 5,
    SourceType.LOW_ADHERENCE.value: 4,
    SourceType.APPOINTMENT_UPCOMING.value: 3,
    SourceType.LAB_HIGH_RISK.value: 5,
    SourceType.RECENT_ACTIVITY.value: 1,
}
GENERIC_WEIGHT = 1
GENERIC_REASON = "General activity"
MAX_ADJUSTMENT = 2

DEFAULT_DAYS_INACTIVE_THRESHOLD = 2
DEFAULT_URGENT_HOURS = 2.0
DEFAULT_SOON_HOURS = 12.0


class PriorityRuleResolver:
    """
    Deterministic scorer for feed signals.
    score = rule weight (tenant override > global > category base)
            + bounded adjustment from the signal attributes.
    Pure function of (signal, rules); safe to call any number of times.
    """

    def score(self, signal: FeedSignal, rules: Iterable[PriorityRule]) -> PriorityAssessment:
        rule = self.resolve_rule(signal.source_type, signal.tenant_id, rules)
        config = dict(rule.config) if rule else {}

        if signal.source_type in BASE_WEIGHTS:
            weight = rule.weight if rule else BASE_WEIGHTS[signal.source_type]
            adjustment, reason = self._adjust(signal, config)
        else:
            weight = rule.weight if rule else GENERIC_WEIGHT
            adjustment, reason = 0, GENERIC_REASON

        adjustment = max(0, min(MAX_ADJUSTMENT, adjustment))
        return PriorityAssessment(priority_score=int(weight) + adjustment, priority_reason=reason)

    def annotate(self, signals: Iterable[FeedSignal], rules: Iterable[PriorityRule]) -> List[ScoredSignal]:
        rules = list(rules)
        return [ScoredSignal(signal, self.score(signal, rules)) for signal in signals]

    @staticmethod
    def resolve_rule(rule_key: str, tenant_id: str, rules: Iterable[PriorityRule]) -> Optional[PriorityRule]:
        """
        Tenant-scoped rule wins over the global one with the same key.
        Inactive rules are invisible.
        """
        global_rule = None
        for rule in rules:
            if not rule.is_active or rule.rule_key != rule_key:
                continue
            if rule.scope == tenant_id:
                return rule
            if rule.is_global:
                global_rule = rule
        return global_rule

    def _adjust(self, signal: FeedSignal, config: Dict) -> Tuple[int, str]:
        attrs = signal.attributes

        if isinstance(attrs, LowAdherenceAttributes):
            threshold = _number(config.get("days_inactive_threshold"), DEFAULT_DAYS_INACTIVE_THRESHOLD)
            if attrs.days_inactive is None:
                return 2, "Low adherence: no diary entries yet"
            excess = attrs.days_inactive - threshold
            plural = "s" if attrs.days_inactive != 1 else ""
            reason = f"Low adherence: {attrs.days_inactive} day{plural} without diary entries"
            if excess >= 3:
                return 2, reason
            if excess >= 1:
                return 1, reason
            return 0, reason

        if isinstance(attrs, AppointmentAttributes):
            urgent = _number(config.get("urgent_hours"), DEFAULT_URGENT_HOURS)
            soon = _number(config.get("soon_hours"), DEFAULT_SOON_HOURS)
            if attrs.hours_until < 0:
                return 0, "Appointment time has passed"
            if attrs.hours_until <= urgent:
                return 2, f"Appointment within {_fmt_hours(urgent)} hours"
            if attrs.hours_until <= soon:
                return 1, f"Appointment within {_fmt_hours(soon)} hours"
            return 0, "Upcoming appointment"

        if isinstance(attrs, LabRiskAttributes):
            if attrs.risk_reason:
                return 0, f"High-risk lab result: {attrs.risk_reason}"
            return 0, f"High-risk lab result ({attrs.marker_key or 'marker'})"

        if isinstance(attrs, PendingDataAttributes):
            return 0, f"Pending registration data: {attrs.pending_type}"

        if isinstance(attrs, ActivityAttributes):
            return 0, f"Recent activity: {attrs.activity_type}"

        # Known category carrying loose attributes
        return 0, _CATEGORY_REASONS.get(signal.source_type, GENERIC_REASON)


_CATEGORY_REASONS = {
    SourceType.PENDING_DATA.value: "Pending registration data",
    SourceType.LOW_ADHERENCE.value: "Low adherence",
    SourceType.APPOINTMENT_UPCOMING.value: "Upcoming appointment",
    SourceType.LAB_HIGH_RISK.value: "High-risk lab result",
    SourceType.RECENT_ACTIVITY.value: "Recent activity",
}


def _number(value, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _fmt_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else f"{hours:g}"
