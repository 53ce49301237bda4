import pytest
from src.feed.domain.feed_signal import (
    ActivityAttributes,
    AppointmentAttributes,
    FeedSignal,
    GenericAttributes,
    LabRiskAttributes,
    LowAdherenceAttributes,
    PendingDataAttributes,
)
from src.feed.domain.priority_rule import PriorityRule
from src.feed.services.priority_rule_resolver import PriorityRuleResolver


def low_adherence(days, tenant="T1"):
    return FeedSignal(
        source_type="low_adherence",
        source_id="low-adherence-P1",
        tenant_id=tenant,
        subject_id="P1",
        title="Low adherence",
        attributes=LowAdherenceAttributes(days_inactive=days),
    )


def appointment(hours):
    return FeedSignal(
        source_type="appointment_upcoming",
        source_id="appt-1",
        tenant_id="T1",
        title="Upcoming appointment",
        attributes=AppointmentAttributes(hours_until=hours),
    )


@pytest.fixture
def resolver():
    return PriorityRuleResolver()


def test_low_adherence_scenario(resolver):
    rules = [PriorityRule(rule_key="low_adherence", weight=4, config={"days_inactive_threshold": 2})]

    result = resolver.score(low_adherence(6), rules)

    assert result.priority_score == 6
    assert "6 days without diary entries" in result.priority_reason


@pytest.mark.parametrize("days,expected", [(2, 4), (3, 5), (4, 5), (5, 6), (30, 6), (None, 6)])
def test_low_adherence_adjustment_is_bounded(resolver, days, expected):
    rules = [PriorityRule(rule_key="low_adherence", weight=4, config={"days_inactive_threshold": 2})]
    assert resolver.score(low_adherence(days), rules).priority_score == expected


@pytest.mark.parametrize("hours,expected", [(1.5, 5), (2, 5), (6, 4), (12, 4), (30, 3), (-1, 3)])
def test_appointment_proximity(resolver, hours, expected):
    assert resolver.score(appointment(hours), []).priority_score == expected


def test_base_weights_without_rules(resolver):
    pending = FeedSignal("pending_data", "p1", "T1", "Anamnesis", PendingDataAttributes("anamnesis"))
    lab = FeedSignal("lab_high_risk", "P1-ldl", "T1", "LDL", LabRiskAttributes("ldl", "LDL above 190"))
    activity = FeedSignal("recent_activity", "a1", "T1", "Meal logged", ActivityAttributes("meal"))

    assert resolver.score(pending, []).priority_score == 5
    assert resolver.score(lab, []).priority_score == 5
    assert resolver.score(lab, []).priority_reason == "High-risk lab result: LDL above 190"
    assert resolver.score(activity, []).priority_score == 1


def test_unknown_category_uses_generic_weight(resolver):
    signal = FeedSignal("birthday", "birthday-P1", "T1", "Birthday today", GenericAttributes({"days": 0}))

    result = resolver.score(signal, [])

    assert result.priority_score == 1
    assert result.priority_reason == "General activity"


def test_tenant_rule_overrides_global(resolver):
    rules = [
        PriorityRule(rule_key="appointment_upcoming", weight=3, scope="global"),
        PriorityRule(rule_key="appointment_upcoming", weight=7, scope="T1"),
        PriorityRule(rule_key="appointment_upcoming", weight=9, scope="T2"),
    ]

    assert resolver.score(appointment(48), rules).priority_score == 7


def test_inactive_tenant_rule_does_not_mask_global(resolver):
    rules = [
        PriorityRule(rule_key="low_adherence", weight=2, scope="global", config={"days_inactive_threshold": 10}),
        PriorityRule(rule_key="low_adherence", weight=9, scope="T1", is_active=False),
    ]

    result = resolver.score(low_adherence(3), rules)

    assert result.priority_score == 2


def test_scoring_is_deterministic(resolver):
    rules = [PriorityRule(rule_key="low_adherence", weight=4, config={"days_inactive_threshold": 2})]
    signal = low_adherence(4)

    assert resolver.score(signal, rules) == resolver.score(signal, rules)
    annotated = resolver.annotate([signal, signal], rules)
    assert annotated[0].assessment == annotated[1].assessment
