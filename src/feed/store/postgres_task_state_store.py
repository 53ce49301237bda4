import json
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from src.core.time.clock import Clock
from src.core.time.system_clock import SystemClock
from src.feed.domain.exceptions import FeedTaskStoreError
from src.feed.domain.feed_task import FeedTask, TaskIdentity, TaskStatus
from src.feed.interfaces.task_state_store import Decision, TaskStateStore
from src.feed.store.task_merge import DEFAULT_AUDIT_HISTORY_LIMIT, merge_task

_COLUMNS = """
    id, tenant_id, subject_id, source_type, source_id, title, description,
    priority_score, priority_reason, status, snooze_until, metadata,
    first_seen_at, last_seen_at, resolved_at, created_at, updated_at
"""


class PostgresTaskStateStore(TaskStateStore):
    """
    feed_tasks table with a unique constraint over the identity tuple.
    upsert locks the row (or races the insert through ON CONFLICT) inside
    a single transaction, so the merge never works on a stale read.
    """

    def __init__(
        self,
        engine: Engine,
        clock: Optional[Clock] = None,
        history_limit: int = DEFAULT_AUDIT_HISTORY_LIMIT,
    ):
        self.engine = engine
        self.clock = clock or SystemClock()
        self.history_limit = history_limit
        self.ensure_schema()

    @classmethod
    def from_dsn(
        cls,
        dsn: str,
        clock: Optional[Clock] = None,
        history_limit: int = DEFAULT_AUDIT_HISTORY_LIMIT,
    ) -> "PostgresTaskStateStore":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine, clock=clock, history_limit=history_limit)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS feed_tasks (
                        id UUID PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        subject_id TEXT NULL,
                        source_type TEXT NOT NULL,
                        source_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT NULL,
                        priority_score INTEGER NOT NULL DEFAULT 0,
                        priority_reason TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL DEFAULT 'open',
                        snooze_until TIMESTAMPTZ NULL,
                        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                        first_seen_at TIMESTAMPTZ NOT NULL,
                        last_seen_at TIMESTAMPTZ NOT NULL,
                        resolved_at TIMESTAMPTZ NULL,
                        created_at TIMESTAMPTZ NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL,
                        CONSTRAINT uq_feed_tasks_identity UNIQUE (tenant_id, source_type, source_id),
                        CONSTRAINT ck_feed_tasks_status CHECK (status IN ('open', 'snoozed', 'resolved'))
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE INDEX IF NOT EXISTS ix_feed_tasks_tenant_status
                    ON feed_tasks (tenant_id, status)
                    """
                )
            )

    def get(self, identity: TaskIdentity) -> Optional[FeedTask]:
        try:
            with self.engine.begin() as conn:
                return self._select(conn, identity, for_update=False)
        except SQLAlchemyError as e:
            raise FeedTaskStoreError(f"Failed to read feed task {identity.key}: {e}") from e

    def upsert_with(self, identity: TaskIdentity, decide: Decision) -> FeedTask:
        now = self.clock.now()
        try:
            with self.engine.begin() as conn:
                existing = self._select(conn, identity, for_update=True)
                if existing is None:
                    fields, audit_action = decide(None)
                    created = merge_task(
                        None, identity, fields, audit_action, now, history_limit=self.history_limit
                    )
                    if self._insert(conn, created):
                        return created
                    # Lost the insert race: decide again against the committed row.
                    existing = self._select(conn, identity, for_update=True)
                fields, audit_action = decide(existing)
                merged = merge_task(
                    existing, identity, fields, audit_action, now, history_limit=self.history_limit
                )
                self._update(conn, merged)
                return merged
        except SQLAlchemyError as e:
            raise FeedTaskStoreError(f"Failed to upsert feed task {identity.key}: {e}") from e

    def list_by_tenant(self, tenant_id: str) -> List[FeedTask]:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    text(
                        f"""
                        SELECT {_COLUMNS}
                        FROM feed_tasks
                        WHERE tenant_id=:tenant_id
                        ORDER BY created_at ASC, source_type ASC, source_id ASC
                        """
                    ),
                    {"tenant_id": tenant_id},
                ).fetchall()
        except SQLAlchemyError as e:
            raise FeedTaskStoreError(f"Failed to list feed tasks for {tenant_id}: {e}") from e
        return [self._to_task(row) for row in rows]

    def _select(self, conn: Connection, identity: TaskIdentity, for_update: bool) -> Optional[FeedTask]:
        lock = "FOR UPDATE" if for_update else ""
        row = conn.execute(
            text(
                f"""
                SELECT {_COLUMNS}
                FROM feed_tasks
                WHERE tenant_id=:tenant_id AND source_type=:source_type AND source_id=:source_id
                LIMIT 1
                {lock}
                """
            ),
            self._identity_params(identity),
        ).first()
        return self._to_task(row) if row else None

    def _insert(self, conn: Connection, task: FeedTask) -> bool:
        row = conn.execute(
            text(
                """
                INSERT INTO feed_tasks (
                    id, tenant_id, subject_id, source_type, source_id, title, description,
                    priority_score, priority_reason, status, snooze_until, metadata,
                    first_seen_at, last_seen_at, resolved_at, created_at, updated_at
                ) VALUES (
                    :id, :tenant_id, :subject_id, :source_type, :source_id, :title, :description,
                    :priority_score, :priority_reason, :status, :snooze_until, CAST(:metadata AS JSONB),
                    :first_seen_at, :last_seen_at, :resolved_at, :created_at, :updated_at
                )
                ON CONFLICT (tenant_id, source_type, source_id) DO NOTHING
                RETURNING id
                """
            ),
            self._row_params(task),
        ).first()
        return row is not None

    def _update(self, conn: Connection, task: FeedTask) -> None:
        conn.execute(
            text(
                """
                UPDATE feed_tasks
                SET subject_id=:subject_id,
                    title=:title,
                    description=:description,
                    priority_score=:priority_score,
                    priority_reason=:priority_reason,
                    status=:status,
                    snooze_until=:snooze_until,
                    metadata=CAST(:metadata AS JSONB),
                    last_seen_at=:last_seen_at,
                    resolved_at=:resolved_at,
                    updated_at=:updated_at
                WHERE tenant_id=:tenant_id AND source_type=:source_type AND source_id=:source_id
                """
            ),
            self._row_params(task),
        )

    @staticmethod
    def _identity_params(identity: TaskIdentity) -> Dict[str, Any]:
        return {
            "tenant_id": identity.tenant_id,
            "source_type": identity.source_type,
            "source_id": identity.source_id,
        }

    def _row_params(self, task: FeedTask) -> Dict[str, Any]:
        params = self._identity_params(task.identity)
        params.update(
            {
                "id": str(task.id),
                "subject_id": task.subject_id,
                "title": task.title,
                "description": task.description,
                "priority_score": task.priority_score,
                "priority_reason": task.priority_reason,
                "status": task.status.value,
                "snooze_until": task.snooze_until,
                "metadata": json.dumps(task.metadata, default=str),
                "first_seen_at": task.first_seen_at,
                "last_seen_at": task.last_seen_at,
                "resolved_at": task.resolved_at,
                "created_at": task.created_at,
                "updated_at": task.updated_at,
            }
        )
        return params

    @staticmethod
    def _to_task(row) -> FeedTask:
        metadata = row.metadata
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return FeedTask(
            id=row.id if isinstance(row.id, UUID) else UUID(str(row.id)),
            identity=TaskIdentity(row.tenant_id, row.source_type, row.source_id),
            subject_id=row.subject_id,
            title=row.title,
            description=row.description,
            priority_score=int(row.priority_score),
            priority_reason=row.priority_reason or "",
            status=TaskStatus(row.status),
            snooze_until=row.snooze_until,
            metadata=dict(metadata or {}),
            first_seen_at=row.first_seen_at,
            last_seen_at=row.last_seen_at,
            resolved_at=row.resolved_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
