from abc import ABC, abstractmethod
from typing import List

from src.feed.domain.priority_rule import PriorityRule


class PriorityRuleSource(ABC):
    """
    Loads the priority rules visible to a tenant: global defaults plus the
    tenant's own overrides. Layering is left to the resolver.
    """
    @abstractmethod
    def rules_for_tenant(self, tenant_id: str) -> List[PriorityRule]:
        pass
