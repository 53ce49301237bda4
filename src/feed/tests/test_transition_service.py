import pytest
from datetime import datetime, timedelta, timezone
from src.core.logging.structured_feed_logger import RecordingFeedLogger
from src.core.time.frozen_clock import FrozenClock
from src.feed.domain.exceptions import FeedTaskStoreError, FeedTaskValidationError
from src.feed.domain.feed_task import TaskDraft, TaskIdentity, TaskStatus, TransitionRequest
from src.feed.services.transition_service import TransitionService
from src.feed.store.in_memory_task_state_store import InMemoryTaskStateStore


START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
IDENTITY = TaskIdentity("T1", "low_adherence", "low-adherence-P1")


# --- Mocks ---

class FailingStore(InMemoryTaskStateStore):
    """Fails every write for the given source ids."""

    def __init__(self, clock, failing_ids):
        super().__init__(clock)
        self.failing_ids = set(failing_ids)

    def upsert_with(self, identity, decide):
        if identity.source_id in self.failing_ids:
            raise FeedTaskStoreError(f"write failed for {identity.key}")
        return super().upsert_with(identity, decide)


class ResolveFirstStore(InMemoryTaskStateStore):
    """Lets a concurrent resolve land right before the next write."""

    racing = False

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
def store(clock):
    store = InMemoryTaskStateStore(clock)
    store.upsert(IDENTITY, {"title": "Low adherence", "priority_score": 6, "priority_reason": "Low adherence"})
    return store


@pytest.fixture
def recorder():
    return RecordingFeedLogger()


@pytest.fixture
def service(store, clock, recorder):
    return TransitionService(store, clock, recorder)


# --- Tests ---

def test_resolve_then_reopen(service, clock):
    resolved = service.resolve(IDENTITY)
    assert resolved.status == TaskStatus.RESOLVED
    assert resolved.resolved_at == START

    clock.advance(timedelta(minutes=1))
    reopened = service.reopen(IDENTITY)

    assert reopened.status == TaskStatus.OPEN
    assert reopened.resolved_at is None
    assert reopened.audit_history[0].action == "reopened"
    assert reopened.audit_history[1].action == "resolved"
    assert reopened.metadata["lastAction"] == "reopened"
    assert reopened.metadata["lastActionAt"] == clock.now().isoformat()


def test_snooze_sets_until(service):
    until = START + timedelta(hours=2)

    task = service.snooze(IDENTITY, until)

    assert task.status == TaskStatus.SNOOZED
    assert task.snooze_until == until
    assert task.audit_history[0].action == "snoozed"


def test_resolve_clears_snooze(service):
    service.snooze(IDENTITY, START + timedelta(hours=2))

    task = service.resolve(IDENTITY)

    assert task.snooze_until is None


@pytest.mark.parametrize(
    "until",
    [
        None,
        START - timedelta(minutes=1),
        START,
        datetime(2024, 1, 1, 14, 0, 0),
    ],
)
def test_invalid_snooze_leaves_task_unchanged(service, store, until):
    before = store.get(IDENTITY)

    with pytest.raises(FeedTaskValidationError):
        service.snooze(IDENTITY, until)

    assert store.get(IDENTITY) == before


def test_snoozing_resolved_task_is_rejected(service, store):
    resolved = service.resolve(IDENTITY)

    with pytest.raises(FeedTaskValidationError):
        service.snooze(IDENTITY, START + timedelta(hours=1))

    assert store.get(IDENTITY) == resolved


def test_audit_history_keeps_ten_newest(service, clock):
    expected = []
    for i in range(15):
        clock.advance(timedelta(minutes=1))
        if i % 2 == 0:
            service.resolve(IDENTITY)
            expected.append(("resolved", clock.now()))
        else:
            service.reopen(IDENTITY)
            expected.append(("reopened", clock.now()))

    history = service.store.get(IDENTITY).audit_history

    assert len(history) == 10
    assert [(e.action, e.at) for e in history] == list(reversed(expected))[:10]


def test_transition_creates_task_from_draft(service, store):
    identity = TaskIdentity("T1", "pending_data", "pending-P2-anamnesis")
    draft = TaskDraft(
        title="Anamnesis missing",
        subject_id="P2",
        priority_score=5,
        priority_reason="Pending registration data: anamnesis",
        metadata={"cta_route": "/patients/P2/anamnesis"},
    )

    task = service.resolve(identity, draft)

    assert task.status == TaskStatus.RESOLVED
    assert task.title == "Anamnesis missing"
    assert task.subject_id == "P2"
    assert task.priority_score == 5
    assert task.metadata["cta_route"] == "/patients/P2/anamnesis"
    assert store.count() == 2


def test_draft_does_not_override_existing_display_fields(service):
    task = service.resolve(IDENTITY, TaskDraft(title="Something else", priority_score=1, metadata={"note": "x"}))

    assert task.title == "Low adherence"
    assert task.priority_score == 6
    assert task.metadata["note"] == "x"


def test_transition_without_draft_on_unknown_identity_uses_defaults(service):
    identity = TaskIdentity("T1", "recent_activity", "activity-1")

    task = service.snooze(identity, START + timedelta(hours=1))

    assert task.status == TaskStatus.SNOOZED
    assert task.priority_score == 0


def test_batch_resolve_isolates_failures(clock, recorder):
    store = FailingStore(clock, failing_ids={"b"})
    service = TransitionService(store, clock, recorder)
    items = [
        TaskIdentity("T1", "pending_data", "a"),
        TaskIdentity("T1", "pending_data", "b"),
        TransitionRequest(TaskIdentity("T1", "pending_data", "c"), TaskDraft(title="c")),
    ]

    result = service.resolve_batch(items)

    assert len(result.succeeded) == 2
    assert result.failed_count == 1
    assert [t.source_id for t in result.succeeded] == ["a", "c"]
    assert all(t.audit_history[0].action == "resolved_batch" for t in result.succeeded)
    assert store.get(TaskIdentity("T1", "pending_data", "b")) is None

    batch_events = recorder.of_type("feed_task.batch")
    assert batch_events[-1]["succeeded"] == 2
    assert batch_events[-1]["failed"] == 1


def test_batch_snooze_validates_before_writing(service, store):
    before = store.get(IDENTITY)

    with pytest.raises(FeedTaskValidationError):
        service.snooze_batch([IDENTITY], START - timedelta(hours=1))

    assert store.get(IDENTITY) == before


def test_batch_snooze_skips_resolved(service):
    other = TaskIdentity("T1", "pending_data", "pending-P1-anamnesis")
    service.resolve(other)

    result = service.snooze_batch([IDENTITY, other], START + timedelta(hours=1))

    assert result.failed_count == 1
    assert result.succeeded[0].audit_history[0].action == "snoozed_batch"


def test_transition_emits_event(service, recorder):
    service.resolve(IDENTITY)

    event = recorder.of_type("feed_task.transition")[-1]
    assert event["action"] == "resolved"
    assert event["status"] == "resolved"
    assert event["source_id"] == IDENTITY.source_id
    assert "latency_ms" in event


def test_snooze_rejects_resolve_that_landed_first(clock):
    store = ResolveFirstStore(clock)
    store.upsert(IDENTITY, {"title": "Low adherence"})
    service = TransitionService(store, clock)
    store.racing = True

    with pytest.raises(FeedTaskValidationError):
        service.snooze(IDENTITY, START + timedelta(hours=1))

    task = store.get(IDENTITY)
    assert task.status == TaskStatus.RESOLVED
    assert task.snooze_until is None
    assert [e.action for e in task.audit_history] == ["resolved"]
