from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


class SourceType(str, Enum):
    PENDING_DATA = "pending_data"
    LOW_ADHERENCE = "low_adherence"
    APPOINTMENT_UPCOMING = "appointment_upcoming"
    LAB_HIGH_RISK = "lab_high_risk"
    RECENT_ACTIVITY = "recent_activity"


@dataclass(frozen=True)
class PendingDataAttributes:
    pending_type: str
    route: Optional[str] = None


@dataclass(frozen=True)
class LowAdherenceAttributes:
    days_inactive: Optional[int]  # None: patient never logged a meal


@dataclass(frozen=True)
class AppointmentAttributes:
    hours_until: float
    starts_at: Optional[datetime] = None


@dataclass(frozen=True)
class LabRiskAttributes:
    marker_key: str
    risk_reason: Optional[str] = None


@dataclass(frozen=True)
class ActivityAttributes:
    activity_type: str


@dataclass(frozen=True)
class GenericAttributes:
    values: Dict[str, Any] = field(default_factory=dict)


SignalAttributes = Union[
    PendingDataAttributes,
    LowAdherenceAttributes,
    AppointmentAttributes,
    LabRiskAttributes,
    ActivityAttributes,
    GenericAttributes,
]

_ATTRIBUTES_BY_SOURCE = {
    SourceType.PENDING_DATA.value: PendingDataAttributes,
    SourceType.LOW_ADHERENCE.value: LowAdherenceAttributes,
    SourceType.APPOINTMENT_UPCOMING.value: AppointmentAttributes,
    SourceType.LAB_HIGH_RISK.value: LabRiskAttributes,
    SourceType.RECENT_ACTIVITY.value: ActivityAttributes,
}


@dataclass(frozen=True)
class FeedSignal:
    """
    Freshly computed candidate item, produced on every evaluation cycle.
    Never persisted as-is; reconciliation turns it into a FeedTask.
    """
    source_type: str
    source_id: str
    tenant_id: str
    title: str
    attributes: SignalAttributes = field(default_factory=GenericAttributes)
    subject_id: Optional[str] = None
    description: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.tenant_id or not self.source_type or not self.source_id:
            raise ValueError("FeedSignal requires tenant_id, source_type and source_id")
        # Normalize enum members to their wire value.
        object.__setattr__(self, "source_type", str(getattr(self.source_type, "value", self.source_type)))
        expected = _ATTRIBUTES_BY_SOURCE.get(self.source_type)
        if expected is not None and not isinstance(self.attributes, (expected, GenericAttributes)):
            raise TypeError(
                f"{self.source_type} signal expects {expected.__name__}, "
                f"got {type(self.attributes).__name__}"
            )


def attributes_from_payload(source_type: str, payload: Dict[str, Any]) -> SignalAttributes:
    """
    Builds the attribute variant for a source type from a loose producer dict.
    Unknown source types keep the raw values.
    """
    payload = dict(payload or {})
    if source_type == SourceType.PENDING_DATA.value:
        return PendingDataAttributes(
            pending_type=str(payload.get("pending_type", "unknown")),
            route=payload.get("route"),
        )
    if source_type == SourceType.LOW_ADHERENCE.value:
        raw = payload.get("days_inactive")
        return LowAdherenceAttributes(days_inactive=int(raw) if raw is not None else None)
    if source_type == SourceType.APPOINTMENT_UPCOMING.value:
        return AppointmentAttributes(
            hours_until=float(payload.get("hours_until", 0.0)),
            starts_at=payload.get("starts_at"),
        )
    if source_type == SourceType.LAB_HIGH_RISK.value:
        return LabRiskAttributes(
            marker_key=str(payload.get("marker_key", "")),
            risk_reason=payload.get("risk_reason"),
        )
    if source_type == SourceType.RECENT_ACTIVITY.value:
        return ActivityAttributes(activity_type=str(payload.get("activity_type", "activity")))
    return GenericAttributes(values=payload)
