from pydantic import ConfigDict

from .base import DocumentModel


class SubOrganization(DocumentModel):
    """
    A budget-holding unit.

    Instances are frozen: callers get a read-only view.  budget_spent is
    derived and only ever rewritten by the budget reconciler through the
    database layer.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    budget_allocated: float = 0.0
    budget_spent: float = 0.0

    @property
    def budget_remaining(self) -> float:
        return self.budget_allocated - self.budget_spent

    @property
    def percent_used(self) -> float:
        if self.budget_allocated <= 0:
            return 0.0
        return self.budget_spent / self.budget_allocated * 100
