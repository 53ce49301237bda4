from typing import List

from src.feed.domain.feed_task import AuditAction, AuditEntry, TaskIdentity
from src.feed.interfaces.task_state_store import TaskStateStore

DEFAULT_AUDIT_LIMIT = 10

AUDIT_ACTION_LABELS = {
    AuditAction.RESOLVED.value: "Resolved",
    AuditAction.SNOOZED.value: "Snoozed",
    AuditAction.REOPENED.value: "Reopened",
    AuditAction.RESOLVED_BATCH.value: "Resolved in batch",
    AuditAction.SNOOZED_BATCH.value: "Snoozed in batch",
    AuditAction.SNOOZE_EXPIRED.value: "Snooze expired",
}


class AuditReader:
    """
    Read side of the bounded per-task transition history.
    """

    def __init__(self, store: TaskStateStore):
        self.store = store

    def get_audit_trail(self, identity: TaskIdentity, limit: int = DEFAULT_AUDIT_LIMIT) -> List[AuditEntry]:
        return self.store.get_audit(identity, limit)


def label_for_action(action: str) -> str:
    return AUDIT_ACTION_LABELS.get(action, "Updated")
