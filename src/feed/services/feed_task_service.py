import logging
import time
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from src.config.settings import settings
from src.core.logging.structured_feed_logger import StructuredFeedLogger
from src.core.time.clock import Clock
from src.core.time.system_clock import SystemClock
from src.feed.domain.exceptions import FeedTaskStoreError, FeedTaskValidationError
from src.feed.domain.feed_signal import FeedSignal
from src.feed.domain.feed_task import AuditEntry, BatchResult, FeedTask, TaskDraft, TaskIdentity
from src.feed.domain.priority_rule import PriorityRule
from src.feed.interfaces.priority_rule_source import PriorityRuleSource
from src.feed.interfaces.signal_producer import SignalProducer
from src.feed.interfaces.task_state_store import TaskStateStore
from src.feed.services.audit_reader import DEFAULT_AUDIT_LIMIT, AuditReader
from src.feed.services.feed_view import BacklogStats, FeedFilter, FeedView
from src.feed.services.priority_rule_resolver import PriorityRuleResolver
from src.feed.services.reconciliation_engine import ReconciliationEngine
from src.feed.services.signal_collector import SignalCollector
from src.feed.services.transition_service import BatchItem, TransitionService
from src.feed.store.in_memory_priority_rule_store import InMemoryPriorityRuleStore
from src.feed.store.in_memory_task_state_store import InMemoryTaskStateStore
from src.feed.store.postgres_priority_rule_store import PostgresPriorityRuleStore
from src.feed.store.postgres_task_state_store import PostgresTaskStateStore

logger = logging.getLogger(__name__)


class FeedTaskService:
    """
    Entry point for calling applications.
    Wires resolver, reconciliation, transitions and audit reads over one
    task store. Synchronous; safe to call from concurrent sessions as long
    as the store's upsert is atomic.
    """

    def __init__(
        self,
        store: TaskStateStore,
        rule_source: PriorityRuleSource,
        clock: Optional[Clock] = None,
        producers: Optional[Iterable[SignalProducer]] = None,
        view: Optional[FeedView] = None,
        structured_logger: Optional[StructuredFeedLogger] = None,
    ):
        self.store = store
        self.rule_source = rule_source
        self.clock = clock or SystemClock()
        self.structured_logger = structured_logger
        self.resolver = PriorityRuleResolver()
        self.engine = ReconciliationEngine(store, self.clock)
        self.transitions = TransitionService(store, self.clock, structured_logger)
        self.audit_reader = AuditReader(store)
        self.collector = SignalCollector(producers or [], structured_logger)
        self.view = view or FeedView(
            high_priority_threshold=settings.FEED_HIGH_PRIORITY_THRESHOLD,
            sla_attention_hours=settings.FEED_SLA_ATTENTION_HOURS,
            sla_critical_hours=settings.FEED_SLA_CRITICAL_HOURS,
        )

    @classmethod
    def in_memory(
        cls,
        clock: Optional[Clock] = None,
        rules: Optional[Iterable[PriorityRule]] = None,
        **kwargs,
    ) -> "FeedTaskService":
        clock = clock or SystemClock()
        store = InMemoryTaskStateStore(clock, history_limit=settings.FEED_AUDIT_HISTORY_LIMIT)
        return cls(store, InMemoryPriorityRuleStore(rules), clock=clock, **kwargs)

    @classmethod
    def from_dsn(cls, dsn: Optional[str] = None, clock: Optional[Clock] = None, **kwargs) -> "FeedTaskService":
        dsn = dsn or settings.DATABASE_URL
        clock = clock or SystemClock()
        store = PostgresTaskStateStore.from_dsn(dsn, clock=clock, history_limit=settings.FEED_AUDIT_HISTORY_LIMIT)
        return cls(store, PostgresPriorityRuleStore(store.engine), clock=clock, **kwargs)

    # --- Reads ---

    def get_task_states(self, tenant_id: str) -> List[FeedTask]:
        return self.store.list_by_tenant(tenant_id)

    def get_audit_trail(
        self,
        tenant_id: str,
        source_type: str,
        source_id: str,
        limit: int = DEFAULT_AUDIT_LIMIT,
    ) -> List[AuditEntry]:
        return self.audit_reader.get_audit_trail(self._identity(tenant_id, source_type, source_id), limit)

    def visible_feed(self, tenant_id: str, feed_filter: FeedFilter = FeedFilter.ALL) -> List[FeedTask]:
        visible = self.view.visible(self.store.list_by_tenant(tenant_id), self.clock.now())
        return self.view.apply_filter(visible, feed_filter)

    def backlog_stats(self, tenant_id: str) -> BacklogStats:
        return self.view.backlog_stats(self.store.list_by_tenant(tenant_id), self.clock.now())

    # --- Reconciliation ---

    def sync_from_signals(
        self,
        tenant_id: str,
        signals: Iterable[FeedSignal],
        existing_states: Optional[Iterable[FeedTask]] = None,
    ) -> List[FeedTask]:
        started = time.monotonic()
        signals = list(signals)
        scored = self.resolver.annotate(signals, self._rules(tenant_id))
        tasks = self.engine.reconcile(tenant_id, scored, existing_states)

        if self.structured_logger:
            self.structured_logger.emit(
                "feed_task.sync",
                tenant_id=tenant_id,
                signals=len(signals),
                tasks=len(tasks),
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        return tasks

    def refresh(self, tenant_id: str) -> List[FeedTask]:
        """
        Collect from every producer, then sync. Failed producers are logged
        and skipped; their existing tasks stay as they are.
        """
        collection = self.collector.collect(tenant_id)
        if not collection.complete:
            logger.warning(
                f"Feed refresh for {tenant_id} ran without categories: {', '.join(collection.failed_categories)}"
            )
        return self.sync_from_signals(tenant_id, collection.signals)

    # --- Transitions ---

    def resolve(
        self,
        tenant_id: str,
        source_type: str,
        source_id: str,
        draft: Optional[TaskDraft] = None,
    ) -> FeedTask:
        return self.transitions.resolve(self._identity(tenant_id, source_type, source_id), draft)

    def snooze(
        self,
        tenant_id: str,
        source_type: str,
        source_id: str,
        until: Optional[datetime],
        draft: Optional[TaskDraft] = None,
    ) -> FeedTask:
        return self.transitions.snooze(self._identity(tenant_id, source_type, source_id), until, draft)

    def reopen(
        self,
        tenant_id: str,
        source_type: str,
        source_id: str,
        draft: Optional[TaskDraft] = None,
    ) -> FeedTask:
        return self.transitions.reopen(self._identity(tenant_id, source_type, source_id), draft)

    def resolve_batch(self, items: Iterable[BatchItem]) -> BatchResult:
        return self.transitions.resolve_batch(items)

    def snooze_batch(self, items: Iterable[BatchItem], until: Optional[datetime]) -> BatchResult:
        return self.transitions.snooze_batch(items, until)

    def default_snooze_until(self, minutes: Optional[int] = None) -> datetime:
        minutes = settings.FEED_DEFAULT_SNOOZE_MINUTES if minutes is None else minutes
        return self.clock.now() + timedelta(minutes=minutes)

    # --- Helpers ---

    def _rules(self, tenant_id: str) -> List[PriorityRule]:
        try:
            return self.rule_source.rules_for_tenant(tenant_id)
        except FeedTaskStoreError as e:
            # Base weights still rank the feed sensibly.
            logger.warning(f"Priority rules unavailable for {tenant_id}, using base weights: {e}")
            return []

    @staticmethod
    def _identity(tenant_id: str, source_type: str, source_id: str) -> TaskIdentity:
        try:
            return TaskIdentity(tenant_id, source_type, source_id)
        except ValueError as e:
            raise FeedTaskValidationError(str(e)) from e
