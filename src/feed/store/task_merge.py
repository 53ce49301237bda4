from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from src.feed.domain.feed_task import (
    AUDIT_HISTORY_KEY,
    LAST_ACTION_AT_KEY,
    LAST_ACTION_KEY,
    AuditEntry,
    FeedTask,
    TaskIdentity,
    TaskStatus,
)

DEFAULT_AUDIT_HISTORY_LIMIT = 10
DEFAULT_TITLE = "Feed item"

UPSERT_FIELDS = frozenset({
    "subject_id",
    "title",
    "description",
    "priority_score",
    "priority_reason",
    "status",
    "snooze_until",
    "metadata",
    "last_seen_at",
})


def merge_task(
    existing: Optional[FeedTask],
    identity: TaskIdentity,
    fields: Dict[str, Any],
    audit_action: Optional[str],
    now: datetime,
    history_limit: int = DEFAULT_AUDIT_HISTORY_LIMIT,
    new_id: Optional[UUID] = None,
) -> FeedTask:
    """
    Computes the next version of a task record. Pure: stores call it inside
    their own atomic section and persist the result.

    - metadata keys overwrite, auditHistory is only ever prepended to
    - audit_action prepends one entry and truncates to history_limit
    - snooze_until survives only while snoozed
    - resolved_at is stamped on entering resolved and cleared on leaving it
    """
    unknown = set(fields) - UPSERT_FIELDS
    if unknown:
        raise ValueError(f"Unsupported task fields: {sorted(unknown)}")

    if existing is None:
        current = FeedTask(
            id=new_id or uuid4(),
            identity=identity,
            title=DEFAULT_TITLE,
            status=TaskStatus.OPEN,
            priority_score=0,
            priority_reason="",
            first_seen_at=now,
            last_seen_at=now,
            created_at=now,
            updated_at=now,
            metadata={AUDIT_HISTORY_KEY: []},
        )
    else:
        current = existing

    status = TaskStatus(fields.get("status", current.status))
    snooze_until = fields.get("snooze_until", current.snooze_until)
    if status != TaskStatus.SNOOZED:
        snooze_until = None
    elif snooze_until is None:
        raise ValueError("A snoozed task needs snooze_until")

    if status == TaskStatus.RESOLVED:
        was_resolved = existing is not None and existing.status == TaskStatus.RESOLVED
        resolved_at = current.resolved_at if was_resolved and current.resolved_at else now
    else:
        resolved_at = None

    metadata = _merge_metadata(current.metadata, fields.get("metadata") or {}, history_limit)
    if audit_action:
        entry = AuditEntry(
            action=str(audit_action),
            at=now,
            tenant_id=identity.tenant_id,
            subject_id=fields.get("subject_id", current.subject_id),
            source_type=identity.source_type,
            source_id=identity.source_id,
            status=status,
            snooze_until=snooze_until,
        )
        history = [entry.to_dict()] + metadata[AUDIT_HISTORY_KEY]
        metadata[AUDIT_HISTORY_KEY] = history[:history_limit]
        metadata[LAST_ACTION_KEY] = str(audit_action)
        metadata[LAST_ACTION_AT_KEY] = now.isoformat()

    merged = replace(
        current,
        subject_id=fields.get("subject_id", current.subject_id),
        title=fields.get("title") or current.title,
        description=fields.get("description", current.description),
        priority_score=int(fields.get("priority_score", current.priority_score)),
        priority_reason=str(fields.get("priority_reason", current.priority_reason)),
        status=status,
        snooze_until=snooze_until,
        resolved_at=resolved_at,
        last_seen_at=fields.get("last_seen_at", current.last_seen_at),
        metadata=metadata,
    )

    if existing is not None and _same_content(existing, merged):
        # Only last_seen_at moved: updated_at tracks content changes.
        return merged
    return replace(merged, updated_at=now)


def _merge_metadata(
    current: Dict[str, Any],
    incoming: Dict[str, Any],
    history_limit: int,
) -> Dict[str, Any]:
    merged = dict(current)
    history: List[Dict[str, Any]] = list(current.get(AUDIT_HISTORY_KEY) or [])
    for key, value in incoming.items():
        if key == AUDIT_HISTORY_KEY:
            history = list(value or []) + history
            continue
        merged[key] = value
    merged[AUDIT_HISTORY_KEY] = history[:history_limit]
    return merged


def _same_content(a: FeedTask, b: FeedTask) -> bool:
    return replace(a, last_seen_at=b.last_seen_at, updated_at=b.updated_at) == b
