import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from src.core.time.frozen_clock import FrozenClock
from src.feed.domain.feed_signal import FeedSignal, LowAdherenceAttributes, PendingDataAttributes
from src.feed.domain.feed_task import TaskIdentity, TaskStatus
from src.feed.domain.priority_rule import PriorityRule
from src.feed.services.feed_task_service import FeedTaskService
from src.feed.store.in_memory_priority_rule_store import InMemoryPriorityRuleStore
from src.feed.store.in_memory_task_state_store import InMemoryTaskStateStore


START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
RULES = [PriorityRule(rule_key="low_adherence", weight=4, config={"days_inactive_threshold": 2})]


# --- Helpers ---

def adherence_signal(days=6, tenant="T1", patient="P1"):
    return FeedSignal(
        source_type="low_adherence",
        source_id=f"low-adherence-{patient}",
        tenant_id=tenant,
        subject_id=patient,
        title="Low adherence",
        description=f"No entries for {days} days",
        attributes=LowAdherenceAttributes(days_inactive=days),
    )


def pending_signal(patient="P1", kind="anamnesis"):
    return FeedSignal(
        source_type="pending_data",
        source_id=f"pending-{patient}-{kind}",
        tenant_id="T1",
        subject_id=patient,
        title=f"{kind} missing",
        attributes=PendingDataAttributes(kind),
    )


def without_last_seen(task):
    return replace(task, last_seen_at=START)


# --- Mocks ---

class ResolveFirstStore(InMemoryTaskStateStore):
    """Lets a manual resolve win the race right before each sync write."""

    def __init__(self, clock):
        super().__init__(clock)
        self.racing = False

    def upsert_with(self, identity, decide):
        if self.racing:
            self.racing = False
            super().upsert_with(identity, lambda _current: ({"status": TaskStatus.RESOLVED}, "resolved"))
        return super().upsert_with(identity, decide)


# --- Fixtures ---

@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def service(clock):
    return FeedTaskService.in_memory(clock=clock, rules=RULES)


# --- Tests ---

def test_scenario_new_low_adherence_task(service):
    tasks = service.sync_from_signals("T1", [adherence_signal(6)], [])

    assert len(tasks) == 1
    task = tasks[0]
    assert task.priority_score == 6
    assert "6 days without diary entries" in task.priority_reason
    assert task.status == TaskStatus.OPEN
    assert task.first_seen_at == START
    assert task.last_seen_at == START
    assert task.subject_id == "P1"


def test_sync_is_idempotent(service, clock):
    signals = [adherence_signal(6), pending_signal()]
    first = service.sync_from_signals("T1", signals)
    clock.advance(timedelta(minutes=5))
    second = service.sync_from_signals("T1", signals, service.get_task_states("T1"))

    assert [without_last_seen(t) for t in first] == [without_last_seen(t) for t in second]
    assert all(t.last_seen_at == clock.now() for t in second)
    assert len(service.get_task_states("T1")) == 2


def test_expired_snooze_reopens(service, clock):
    service.sync_from_signals("T1", [adherence_signal()])
    service.snooze("T1", "low_adherence", "low-adherence-P1", START + timedelta(seconds=1))

    clock.advance(timedelta(seconds=2))
    task = service.sync_from_signals("T1", [adherence_signal()])[0]

    assert task.status == TaskStatus.OPEN
    assert task.snooze_until is None
    assert task.audit_history[0].action == "snooze_expired"


def test_active_snooze_is_kept_but_rescored(service, clock):
    service.sync_from_signals("T1", [adherence_signal(3)])
    until = START + timedelta(hours=2)
    service.snooze("T1", "low_adherence", "low-adherence-P1", until)

    clock.advance(timedelta(minutes=30))
    task = service.sync_from_signals("T1", [adherence_signal(6)])[0]

    assert task.status == TaskStatus.SNOOZED
    assert task.snooze_until == until
    assert task.priority_score == 6
    assert task.last_seen_at == clock.now()


def test_resolved_task_keeps_score(service, clock):
    service.sync_from_signals("T1", [adherence_signal(3)])
    resolved = service.resolve("T1", "low_adherence", "low-adherence-P1")

    clock.advance(timedelta(seconds=1))
    task = service.sync_from_signals("T1", [adherence_signal(30)])[0]

    assert task.status == TaskStatus.RESOLVED
    assert task.priority_score == resolved.priority_score == 5
    assert task.priority_reason == resolved.priority_reason
    assert task.description == "No entries for 30 days"
    assert task.last_seen_at == clock.now()
    assert task.resolved_at == START


def test_open_task_is_rescored_in_place(service, clock):
    first = service.sync_from_signals("T1", [adherence_signal(3)])[0]
    clock.advance(timedelta(hours=1))
    second = service.sync_from_signals("T1", [adherence_signal(6)])[0]

    assert second.id == first.id
    assert second.priority_score == 6
    assert second.first_seen_at == START


def test_missing_signals_are_not_auto_resolved(service, clock):
    service.sync_from_signals("T1", [adherence_signal(), pending_signal()])
    clock.advance(timedelta(hours=1))

    touched = service.sync_from_signals("T1", [pending_signal()])
    stale = service.store.get(TaskIdentity("T1", "low_adherence", "low-adherence-P1"))

    assert len(touched) == 1
    assert stale.status == TaskStatus.OPEN
    assert stale.last_seen_at == START


def test_duplicate_signals_in_snapshot_collapse(service):
    tasks = service.sync_from_signals("T1", [adherence_signal(3), adherence_signal(6)])

    assert len(tasks) == 1
    assert tasks[0].priority_score == 6
    assert len(service.get_task_states("T1")) == 1


def test_foreign_tenant_signals_are_skipped(service):
    tasks = service.sync_from_signals("T1", [adherence_signal(tenant="T2")])

    assert tasks == []
    assert service.get_task_states("T2") == []


def test_existing_states_not_listed_are_looked_up(service, clock):
    service.sync_from_signals("T1", [adherence_signal()])
    service.resolve("T1", "low_adherence", "low-adherence-P1")

    # Caller passes an empty snapshot of states; the store still knows better.
    task = service.sync_from_signals("T1", [adherence_signal(30)], [])[0]

    assert task.status == TaskStatus.RESOLVED
    assert task.priority_score == 6


def test_stale_snoozed_states_do_not_reopen_resolved_task(service, clock):
    service.sync_from_signals("T1", [adherence_signal()])
    service.snooze("T1", "low_adherence", "low-adherence-P1", START + timedelta(seconds=1))
    states = service.get_task_states("T1")
    service.resolve("T1", "low_adherence", "low-adherence-P1")

    clock.advance(timedelta(seconds=2))
    task = service.sync_from_signals("T1", [adherence_signal()], states)[0]

    assert task.status == TaskStatus.RESOLVED
    assert task.audit_history[0].action == "resolved"
    assert task.resolved_at is not None


def test_stale_open_states_do_not_rescore_resolved_task(service, clock):
    service.sync_from_signals("T1", [adherence_signal(3)])
    states = service.get_task_states("T1")
    service.resolve("T1", "low_adherence", "low-adherence-P1")

    clock.advance(timedelta(seconds=1))
    task = service.sync_from_signals("T1", [adherence_signal(30)], states)[0]

    assert task.status == TaskStatus.RESOLVED
    assert task.priority_score == 5


def test_resolve_landing_mid_sync_is_kept(clock):
    store = ResolveFirstStore(clock)
    service = FeedTaskService(store, InMemoryPriorityRuleStore(RULES), clock=clock)
    service.sync_from_signals("T1", [adherence_signal(3)])
    service.snooze("T1", "low_adherence", "low-adherence-P1", START + timedelta(seconds=1))

    clock.advance(timedelta(seconds=2))
    store.racing = True
    task = service.sync_from_signals("T1", [adherence_signal(30)])[0]

    assert task.status == TaskStatus.RESOLVED
    assert task.priority_score == 5
    assert [e.action for e in task.audit_history[:2]] == ["resolved", "snoozed"]
