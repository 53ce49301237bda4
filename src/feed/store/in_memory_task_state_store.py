from threading import Lock
from typing import Dict, List, Optional, Tuple

from src.core.time.clock import Clock
from src.core.time.system_clock import SystemClock
from src.feed.domain.feed_task import FeedTask, TaskIdentity
from src.feed.interfaces.task_state_store import Decision, TaskStateStore
from src.feed.store.task_merge import DEFAULT_AUDIT_HISTORY_LIMIT, merge_task


class InMemoryTaskStateStore(TaskStateStore):
    """
    Process-local task store. The lock makes each upsert one atomic
    read-merge-write, so concurrent writers never create twin records.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        history_limit: int = DEFAULT_AUDIT_HISTORY_LIMIT,
    ):
        self.clock = clock or SystemClock()
        self.history_limit = history_limit
        self._tasks: Dict[Tuple[str, str, str], FeedTask] = {}
        self._lock = Lock()

    def get(self, identity: TaskIdentity) -> Optional[FeedTask]:
        with self._lock:
            return self._tasks.get(self._key(identity))

    def upsert_with(self, identity: TaskIdentity, decide: Decision) -> FeedTask:
        key = self._key(identity)
        with self._lock:
            existing = self._tasks.get(key)
            fields, audit_action = decide(existing)
            merged = merge_task(
                existing,
                identity,
                fields,
                audit_action,
                self.clock.now(),
                history_limit=self.history_limit,
            )
            self._tasks[key] = merged
            return merged

    def list_by_tenant(self, tenant_id: str) -> List[FeedTask]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.tenant_id == tenant_id]
        return sorted(tasks, key=lambda t: (t.created_at, t.source_type, t.source_id))

    def count(self) -> int:
        with self._lock:
            return len(self._tasks)

    @staticmethod
    def _key(identity: TaskIdentity) -> Tuple[str, str, str]:
        return (identity.tenant_id, identity.source_type, identity.source_id)
