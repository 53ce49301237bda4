import sys
import os
import logging
from datetime import timedelta

# Ensure the repo root is importable when run as a script
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from src.core.logging.structured_feed_logger import RecordingFeedLogger
from src.core.time.system_clock import SystemClock
from src.feed.domain.feed_signal import (
    AppointmentAttributes,
    FeedSignal,
    LabRiskAttributes,
    LowAdherenceAttributes,
    PendingDataAttributes,
)
from src.feed.domain.priority_rule import PriorityRule
from src.feed.services.audit_reader import label_for_action
from src.feed.services.feed_task_service import FeedTaskService
from src.feed.services.feed_view import FeedFilter

TENANT = "dev-practice"


def sample_signals():
    return [
        FeedSignal(
            "pending_data", "pending-P1-anamnesis", TENANT, "Anamnesis missing",
            PendingDataAttributes("anamnesis", route="/patients/P1/anamnesis"), subject_id="P1",
        ),
        FeedSignal(
            "low_adherence", "low-adherence-P2", TENANT, "Low adherence",
            LowAdherenceAttributes(6), subject_id="P2", description="No diary entries for 6 days",
        ),
        FeedSignal(
            "appointment_upcoming", "appt-42", TENANT, "Consultation with P3",
            AppointmentAttributes(1.5), subject_id="P3",
        ),
        FeedSignal(
            "lab_high_risk", "P4-ldl", TENANT, "LDL above range",
            LabRiskAttributes("ldl", "LDL 212 mg/dL"), subject_id="P4",
        ),
    ]


def print_feed(service, title):
    print(f"--- {title} ---")
    for task in service.visible_feed(TENANT, FeedFilter.ALL):
        print(f"[{task.priority_score}] {task.source_type:<22} {task.title} ({task.priority_reason})")


def main():
    logging.basicConfig(level=logging.INFO)
    print("Initializing DEV feed environment...")

    # 1. Infrastructure
    clock = SystemClock()
    recorder = RecordingFeedLogger()
    rules = [PriorityRule(rule_key="low_adherence", weight=4, config={"days_inactive_threshold": 2})]

    # 2. Service
    service = FeedTaskService.in_memory(clock=clock, rules=rules, structured_logger=recorder)

    # 3. Sync twice; the second pass only refreshes last_seen_at
    service.sync_from_signals(TENANT, sample_signals())
    service.sync_from_signals(TENANT, sample_signals())
    print_feed(service, "After sync")

    # 4. Practitioner actions
    service.resolve(TENANT, "pending_data", "pending-P1-anamnesis")
    service.snooze(TENANT, "lab_high_risk", "P4-ldl", clock.now() + timedelta(minutes=30))
    print_feed(service, "After resolve + snooze")

    service.reopen(TENANT, "pending_data", "pending-P1-anamnesis")
    for entry in service.get_audit_trail(TENANT, "pending_data", "pending-P1-anamnesis"):
        print(f"Audit: {label_for_action(entry.action)} at {entry.at.isoformat()}")

    stats = service.backlog_stats(TENANT)
    print(f"Backlog: open={stats.open_count} snoozed={stats.snoozed_count} labs={stats.high_risk_lab_count}")
    print(f"Events emitted: {len(recorder.events)}")
    print("Dev run complete.")


if __name__ == "__main__":
    main()
