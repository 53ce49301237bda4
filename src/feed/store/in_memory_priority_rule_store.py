from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from src.feed.domain.priority_rule import GLOBAL_SCOPE, PriorityRule
from src.feed.interfaces.priority_rule_source import PriorityRuleSource


class InMemoryPriorityRuleStore(PriorityRuleSource):
    """
    Rules keyed by (scope, rule_key). Saving a rule for an existing key
    replaces it.
    """

    def __init__(self, rules: Optional[Iterable[PriorityRule]] = None):
        self._rules: Dict[Tuple[str, str], PriorityRule] = {}
        self._lock = Lock()
        for rule in rules or []:
            self.save(rule)

    def save(self, rule: PriorityRule) -> None:
        with self._lock:
            self._rules[(rule.scope, rule.rule_key)] = rule

    def rules_for_tenant(self, tenant_id: str) -> List[PriorityRule]:
        with self._lock:
            return [
                rule for (scope, _), rule in sorted(self._rules.items())
                if scope in (GLOBAL_SCOPE, tenant_id)
            ]
