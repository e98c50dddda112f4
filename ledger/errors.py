"""
Exceptions raised by the ledger core.

  AllocationValidationError  allocation set rejected before any write
  NotFoundError              unknown transaction / PO / sub-organization id
  ReconciliationFailure      a budget recompute pass could not complete
  InvalidTransitionError     PO status change not allowed by the workflow
  PurchaseOrderLockedError   PO content edit outside draft / declined
"""
from typing import Optional

from models.result import AllocationIssue


class LedgerError(Exception):
    """Base class for all ledger errors."""


class AllocationValidationError(LedgerError):
    def __init__(self, issues: list[AllocationIssue]):
        self.issues = issues
        super().__init__("; ".join(i.description for i in issues) or "Invalid allocation")

    @property
    def kinds(self) -> set[str]:
        return {i.kind for i in self.issues}


class NotFoundError(LedgerError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ReconciliationFailure(LedgerError):
    def __init__(self, message: str, written: Optional[list[str]] = None):
        self.written = written or []
        super().__init__(message)


class InvalidTransitionError(LedgerError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move purchase order from {current!r} to {target!r}")


class PurchaseOrderLockedError(LedgerError):
    def __init__(self, po_id: str, status: str):
        self.po_id = po_id
        self.status = status
        super().__init__(
            f"Purchase order {po_id} is {status!r}; content can only be edited "
            f"while draft or declined"
        )
