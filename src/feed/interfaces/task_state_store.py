from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.feed.domain.feed_task import AuditEntry, FeedTask, TaskIdentity

# Given the locked current record (None if absent), returns (fields, audit_action).
Decision = Callable[[Optional[FeedTask]], Tuple[Dict[str, Any], Optional[str]]]


class TaskStateStore(ABC):
    """
    Durable keyed storage for FeedTask records.
    Implementations must keep one record per identity and run the
    read-decide-merge-write of upsert_with atomically.
    """
    @abstractmethod
    def get(self, identity: TaskIdentity) -> Optional[FeedTask]:
        pass

    @abstractmethod
    def upsert_with(self, identity: TaskIdentity, decide: Decision) -> FeedTask:
        """
        decide runs inside the atomic section against the current record.
        It must not touch the store. Exceptions it raises abort the write.
        """
        pass

    @abstractmethod
    def list_by_tenant(self, tenant_id: str) -> List[FeedTask]:
        pass

    def upsert(
        self,
        identity: TaskIdentity,
        fields: Dict[str, Any],
        audit_action: Optional[str] = None,
    ) -> FeedTask:
        return self.upsert_with(identity, lambda _current: (fields, audit_action))

    def get_audit(self, identity: TaskIdentity, limit: int) -> List[AuditEntry]:
        if limit <= 0:
            return []
        task = self.get(identity)
        if task is None:
            return []
        return task.audit_history[:limit]
