from .base import DocumentModel
from .sub_organization import SubOrganization
from .transaction import Transaction, TransactionAllocation, POLink, Attribution
from .purchase_order import PurchaseOrder, LineItem, POOrganization, POStatus
from .result import (
    AllocationIssue, ValidationResult, BudgetChange, ReconciliationReport,
    MutationOutcome, ImportSummary,
)

__all__ = [
    "DocumentModel",
    "SubOrganization",
    "Transaction", "TransactionAllocation", "POLink", "Attribution",
    "PurchaseOrder", "LineItem", "POOrganization", "POStatus",
    "AllocationIssue", "ValidationResult", "BudgetChange", "ReconciliationReport",
    "MutationOutcome", "ImportSummary",
]
