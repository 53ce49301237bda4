from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

AUDIT_HISTORY_KEY = "auditHistory"
LAST_ACTION_KEY = "lastAction"
LAST_ACTION_AT_KEY = "lastActionAt"


class TaskStatus(str, Enum):
    OPEN = "open"
    SNOOZED = "snoozed"
    RESOLVED = "resolved"


class AuditAction(str, Enum):
    RESOLVED = "resolved"
    SNOOZED = "snoozed"
    REOPENED = "reopened"
    RESOLVED_BATCH = "resolved_batch"
    SNOOZED_BATCH = "snoozed_batch"
    SNOOZE_EXPIRED = "snooze_expired"


@dataclass(frozen=True)
class TaskIdentity:
    tenant_id: str
    source_type: str
    source_id: str

    def __post_init__(self):
        if not self.tenant_id or not self.source_type or not self.source_id:
            raise ValueError("TaskIdentity requires tenant_id, source_type and source_id")
        object.__setattr__(self, "source_type", str(getattr(self.source_type, "value", self.source_type)))

    @property
    def key(self) -> str:
        return f"{self.source_type}:{self.source_id}"


@dataclass(frozen=True)
class AuditEntry:
    action: str
    at: datetime
    tenant_id: str
    source_type: str
    source_id: str
    status: TaskStatus
    subject_id: Optional[str] = None
    snooze_until: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "at": self.at.isoformat(),
            "tenantId": self.tenant_id,
            "subjectId": self.subject_id,
            "sourceType": self.source_type,
            "sourceId": self.source_id,
            "status": self.status.value,
            "snoozeUntil": self.snooze_until.isoformat() if self.snooze_until else None,
        }

    @staticmethod
    def from_dict(payload: Dict[str, Any]) -> "AuditEntry":
        return AuditEntry(
            action=str(payload["action"]),
            at=_parse_datetime(payload["at"]),
            tenant_id=str(payload.get("tenantId", "")),
            subject_id=payload.get("subjectId"),
            source_type=str(payload.get("sourceType", "")),
            source_id=str(payload.get("sourceId", "")),
            status=TaskStatus(payload.get("status", TaskStatus.OPEN.value)),
            snooze_until=_parse_datetime(payload.get("snoozeUntil")),
        )


@dataclass(frozen=True)
class FeedTask:
    """
    System of record for one (tenant_id, source_type, source_id) identity.
    """
    id: UUID
    identity: TaskIdentity
    title: str
    status: TaskStatus
    priority_score: int
    priority_reason: str
    first_seen_at: datetime
    last_seen_at: datetime
    created_at: datetime
    updated_at: datetime
    subject_id: Optional[str] = None
    description: Optional[str] = None
    snooze_until: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def tenant_id(self) -> str:
        return self.identity.tenant_id

    @property
    def source_type(self) -> str:
        return self.identity.source_type

    @property
    def source_id(self) -> str:
        return self.identity.source_id

    @property
    def audit_history(self) -> List[AuditEntry]:
        return [AuditEntry.from_dict(raw) for raw in self.metadata.get(AUDIT_HISTORY_KEY, [])]

    def is_snooze_expired(self, now: datetime) -> bool:
        if self.status != TaskStatus.SNOOZED:
            return False
        return self.snooze_until is None or now >= self.snooze_until


@dataclass(frozen=True)
class TaskDraft:
    """
    Display data a caller may attach to a transition, so that a task acted
    on before its first reconciliation is created with a proper title.
    """
    title: str = "Feed item"
    subject_id: Optional[str] = None
    description: Optional[str] = None
    priority_score: Optional[int] = None
    priority_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchResult:
    succeeded: List[FeedTask] = field(default_factory=list)
    failed_count: int = 0


@dataclass(frozen=True)
class TransitionRequest:
    identity: TaskIdentity
    draft: Optional[TaskDraft] = None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
