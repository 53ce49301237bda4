import json
from typing import List

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.feed.domain.exceptions import FeedTaskStoreError
from src.feed.domain.priority_rule import GLOBAL_SCOPE, PriorityRule
from src.feed.interfaces.priority_rule_source import PriorityRuleSource


class PostgresPriorityRuleStore(PriorityRuleSource):
    """
    feed_priority_rules table: global defaults and tenant overrides.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresPriorityRuleStore":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS feed_priority_rules (
                        scope TEXT NOT NULL,
                        rule_key TEXT NOT NULL,
                        weight INTEGER NOT NULL,
                        config JSONB NOT NULL DEFAULT '{}'::jsonb,
                        is_active BOOLEAN NOT NULL DEFAULT TRUE,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        PRIMARY KEY (scope, rule_key)
                    )
                    """
                )
            )

    def save(self, rule: PriorityRule) -> None:
        try:
            self._save(rule)
        except SQLAlchemyError as e:
            raise FeedTaskStoreError(f"Failed to save priority rule {rule.scope}/{rule.rule_key}: {e}") from e

    def _save(self, rule: PriorityRule) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO feed_priority_rules (scope, rule_key, weight, config, is_active)
                    VALUES (:scope, :rule_key, :weight, CAST(:config AS JSONB), :is_active)
                    ON CONFLICT (scope, rule_key)
                    DO UPDATE SET
                      weight=EXCLUDED.weight,
                      config=EXCLUDED.config,
                      is_active=EXCLUDED.is_active,
                      updated_at=now()
                    """
                ),
                {
                    "scope": rule.scope,
                    "rule_key": rule.rule_key,
                    "weight": rule.weight,
                    "config": json.dumps(rule.config or {}),
                    "is_active": rule.is_active,
                },
            )

    def rules_for_tenant(self, tenant_id: str) -> List[PriorityRule]:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    text(
                        """
                        SELECT scope, rule_key, weight, config, is_active
                        FROM feed_priority_rules
                        WHERE scope IN (:global_scope, :tenant_id)
                        ORDER BY scope ASC, rule_key ASC
                        """
                    ),
                    {"global_scope": GLOBAL_SCOPE, "tenant_id": tenant_id},
                ).fetchall()
        except SQLAlchemyError as e:
            raise FeedTaskStoreError(f"Failed to load priority rules for {tenant_id}: {e}") from e
        return [
            PriorityRule(
                scope=row.scope,
                rule_key=row.rule_key,
                weight=int(row.weight),
                config=dict(row.config or {}),
                is_active=bool(row.is_active),
            )
            for row in rows
        ]
