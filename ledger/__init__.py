from .errors import (
    LedgerError, AllocationValidationError, NotFoundError, ReconciliationFailure,
    InvalidTransitionError, PurchaseOrderLockedError,
)
from .database import Database
from .reconciliation import BudgetReconciler
from .sub_org_matcher import SubOrgMatcher
from .importer import TransactionImporter
from .service import BudgetTracker

__all__ = [
    "LedgerError", "AllocationValidationError", "NotFoundError", "ReconciliationFailure",
    "InvalidTransitionError", "PurchaseOrderLockedError",
    "Database", "BudgetReconciler", "SubOrgMatcher", "TransactionImporter",
    "BudgetTracker",
]
