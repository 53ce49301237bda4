import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from src.core.time.clock import Clock
from src.feed.domain.feed_task import AuditAction, FeedTask, TaskIdentity, TaskStatus
from src.feed.domain.priority_rule import ScoredSignal
from src.feed.interfaces.task_state_store import TaskStateStore

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Merges a fresh, scored signal snapshot into persisted task state.

    Only identities present in the snapshot are touched. Status never
    changes here except snoozed -> open once snooze_until has passed.
    Re-running on the same snapshot only moves last_seen_at.
    """

    def __init__(self, store: TaskStateStore, clock: Clock):
        self.store = store
        self.clock = clock

    def reconcile(
        self,
        tenant_id: str,
        scored_signals: Iterable[ScoredSignal],
        existing_states: Optional[Iterable[FeedTask]] = None,
    ) -> List[FeedTask]:
        """
        existing_states is only a hint from the caller. Every decision is
        taken inside the store's atomic upsert against the current record,
        so a transition that lands after the hint was read is never undone.
        """
        now = self.clock.now()
        hints = self._index(tenant_id, existing_states)

        snapshot: Dict[TaskIdentity, ScoredSignal] = {}
        for scored in scored_signals:
            signal = scored.signal
            if signal.tenant_id != tenant_id:
                logger.warning(
                    f"Skipping signal {signal.source_type}:{signal.source_id} "
                    f"of tenant {signal.tenant_id} during sync of {tenant_id}"
                )
                continue
            snapshot[TaskIdentity(tenant_id, signal.source_type, signal.source_id)] = scored

        results: List[FeedTask] = []
        for identity, scored in snapshot.items():
            decide = self._decider(scored, now, hints.get(identity.key))
            results.append(self.store.upsert_with(identity, decide))
        return results

    @staticmethod
    def decide(
        existing: Optional[FeedTask],
        scored: ScoredSignal,
        now: datetime,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """
        Next fields for one identity. Returns (fields, audit_action).
        """
        signal = scored.signal
        fields: Dict[str, Any] = {
            "title": signal.title,
            "description": signal.description,
            "last_seen_at": now,
        }
        if signal.subject_id is not None:
            fields["subject_id"] = signal.subject_id

        score_fields = {
            "priority_score": scored.assessment.priority_score,
            "priority_reason": scored.assessment.priority_reason,
        }

        if existing is None:
            # Status is left to the store default so a concurrent manual
            # transition that created the row first is not overwritten.
            fields.update(score_fields)
            return fields, None

        if existing.status == TaskStatus.RESOLVED:
            # Closed items keep their rank.
            return fields, None

        fields.update(score_fields)
        if existing.is_snooze_expired(now):
            fields["status"] = TaskStatus.OPEN
            fields["snooze_until"] = None
            return fields, AuditAction.SNOOZE_EXPIRED.value
        return fields, None

    def _decider(self, scored: ScoredSignal, now: datetime, hint: Optional[FeedTask]):
        def decide(current: Optional[FeedTask]) -> Tuple[Dict[str, Any], Optional[str]]:
            if hint is not None and (current is None or current.status != hint.status):
                logger.debug(
                    f"Stale state for {hint.identity.key}: caller saw {hint.status.value}, "
                    f"store has {current.status.value if current else 'nothing'}"
                )
            return self.decide(current, scored, now)
        return decide

    @staticmethod
    def _index(tenant_id: str, existing_states: Optional[Iterable[FeedTask]]) -> Dict[str, FeedTask]:
        return {task.identity.key: task for task in existing_states or [] if task.tenant_id == tenant_id}
