import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from src.core.logging.structured_feed_logger import StructuredFeedLogger
from src.core.time.clock import Clock
from src.feed.domain.exceptions import FeedTaskValidationError
from src.feed.domain.feed_task import (
    AuditAction,
    BatchResult,
    FeedTask,
    TaskDraft,
    TaskIdentity,
    TaskStatus,
    TransitionRequest,
)
from src.feed.interfaces.task_state_store import TaskStateStore

logger = logging.getLogger(__name__)

BatchItem = Union[TaskIdentity, TransitionRequest]


class TransitionService:
    """
    Explicit state changes on feed tasks: resolve, snooze, reopen.
    Each one is a single upsert carrying an audit action.
    Batches run item by item; a failed item never rolls back the others.
    """

    def __init__(
        self,
        store: TaskStateStore,
        clock: Clock,
        structured_logger: Optional[StructuredFeedLogger] = None,
    ):
        self.store = store
        self.clock = clock
        self.structured_logger = structured_logger

    def resolve(
        self,
        identity: TaskIdentity,
        draft: Optional[TaskDraft] = None,
        action: str = AuditAction.RESOLVED.value,
    ) -> FeedTask:
        return self._apply(identity, {"status": TaskStatus.RESOLVED, "snooze_until": None}, action, draft)

    def snooze(
        self,
        identity: TaskIdentity,
        until: Optional[datetime],
        draft: Optional[TaskDraft] = None,
        action: str = AuditAction.SNOOZED.value,
    ) -> FeedTask:
        self.validate_snooze_until(until)
        return self._apply(
            identity,
            {"status": TaskStatus.SNOOZED, "snooze_until": until},
            action,
            draft,
            guard=self._reject_resolved,
        )

    def reopen(self, identity: TaskIdentity, draft: Optional[TaskDraft] = None) -> FeedTask:
        return self._apply(
            identity,
            {"status": TaskStatus.OPEN, "snooze_until": None},
            AuditAction.REOPENED.value,
            draft,
        )

    def resolve_batch(self, items: Iterable[BatchItem]) -> BatchResult:
        return self._run_batch(
            "resolve",
            items,
            lambda req: self.resolve(req.identity, req.draft, action=AuditAction.RESOLVED_BATCH.value),
        )

    def snooze_batch(self, items: Iterable[BatchItem], until: Optional[datetime]) -> BatchResult:
        # Validated once: a bad date fails the whole request before any write.
        self.validate_snooze_until(until)
        return self._run_batch(
            "snooze",
            items,
            lambda req: self.snooze(req.identity, until, req.draft, action=AuditAction.SNOOZED_BATCH.value),
        )

    def validate_snooze_until(self, until: Optional[datetime]) -> None:
        if until is None:
            raise FeedTaskValidationError("snooze requires an 'until' timestamp")
        if not isinstance(until, datetime) or until.tzinfo is None:
            raise FeedTaskValidationError("snooze 'until' must be a timezone-aware datetime")
        if until <= self.clock.now():
            raise FeedTaskValidationError(f"snooze 'until' must be in the future, got {until.isoformat()}")

    def _apply(
        self,
        identity: TaskIdentity,
        fields: Dict[str, Any],
        action: str,
        draft: Optional[TaskDraft],
        guard: Optional[Callable[[TaskIdentity, Optional[FeedTask]], None]] = None,
    ) -> FeedTask:
        started = time.monotonic()

        def decide(current: Optional[FeedTask]):
            if guard is not None:
                guard(identity, current)
            next_fields = dict(fields)
            if draft is not None:
                next_fields.update(self._draft_fields(current, draft))
            return next_fields, action

        task = self.store.upsert_with(identity, decide)

        if self.structured_logger:
            self.structured_logger.emit(
                "feed_task.transition",
                tenant_id=identity.tenant_id,
                source_type=identity.source_type,
                source_id=identity.source_id,
                action=action,
                status=task.status.value,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        return task

    @staticmethod
    def _reject_resolved(identity: TaskIdentity, current: Optional[FeedTask]) -> None:
        if current is not None and current.status == TaskStatus.RESOLVED:
            raise FeedTaskValidationError(f"{identity.key} is resolved; reopen it before snoozing")

    @staticmethod
    def _draft_fields(current: Optional[FeedTask], draft: TaskDraft) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if draft.metadata:
            fields["metadata"] = dict(draft.metadata)
        if current is not None:
            # Existing tasks keep the display data reconciliation gave them.
            return fields
        fields["title"] = draft.title
        if draft.subject_id is not None:
            fields["subject_id"] = draft.subject_id
        if draft.description is not None:
            fields["description"] = draft.description
        if draft.priority_score is not None:
            fields["priority_score"] = draft.priority_score
        if draft.priority_reason is not None:
            fields["priority_reason"] = draft.priority_reason
        return fields

    def _run_batch(
        self,
        operation: str,
        items: Iterable[BatchItem],
        apply: Callable[[TransitionRequest], FeedTask],
    ) -> BatchResult:
        started = time.monotonic()
        succeeded: List[FeedTask] = []
        failed_count = 0

        for item in items:
            request = item if isinstance(item, TransitionRequest) else TransitionRequest(identity=item)
            try:
                succeeded.append(apply(request))
            except Exception as e:
                failed_count += 1
                logger.warning(f"Batch {operation} failed for {request.identity.key}: {e}")

        if self.structured_logger:
            self.structured_logger.emit(
                "feed_task.batch",
                operation=operation,
                succeeded=len(succeeded),
                failed=failed_count,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        return BatchResult(succeeded=succeeded, failed_count=failed_count)
