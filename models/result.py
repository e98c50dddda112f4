from pydantic import BaseModel, Field
from typing import Optional, List, Literal


IssueKind = Literal[
    "OverAllocated",      # sum of shares exceeds the parent total
    "DuplicateTarget",    # same sub-organization / PO appears twice
    "Unbalanced",         # full allocation required but sum != total
    "MissingTarget",      # a share has no sub-organization / PO
    "OverBudget",         # PO share exceeds the remaining budget, no justification
]


class AllocationIssue(BaseModel):
    """A single problem found in an allocation set."""
    kind: IssueKind
    description: str                        # Human-readable, names amounts/targets
    target_id: Optional[str] = None         # Offending sub-org / PO id, if any
    allocated: Optional[float] = None       # Sum of shares
    expected: Optional[float] = None        # Parent total


class ValidationResult(BaseModel):
    """Outcome of validating an allocation set against its total."""
    issues: List[AllocationIssue] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    @property
    def kinds(self) -> set[str]:
        return {i.kind for i in self.issues}


class BudgetChange(BaseModel):
    """One budget_spent rewrite performed by a reconciliation pass."""
    sub_org_id: str
    sub_org_name: str
    previous_spent: float
    new_spent: float


class ReconciliationReport(BaseModel):
    """Summary of a full reconciliation pass."""
    transactions_scanned: int = 0
    sub_orgs_checked: int = 0
    changes: List[BudgetChange] = Field(default_factory=list)
    unknown_sub_org_ids: List[str] = Field(default_factory=list)
    spent_by_sub_org: dict[str, float] = Field(default_factory=dict)


class MutationOutcome(BaseModel):
    """
    Result of a transaction mutation.

    The mutation itself has always committed when this is returned.
    reconciliation_error is set when the follow-up reconciliation failed and
    budget figures are stale until the next successful pass.
    """
    entity_id: str
    action: str
    reconciliation: Optional[ReconciliationReport] = None
    reconciliation_error: Optional[str] = None


class ImportSummary(BaseModel):
    """Counts from a bank-statement import."""
    processed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    created_ids: List[str] = Field(default_factory=list)
    reconciliation_error: Optional[str] = None
