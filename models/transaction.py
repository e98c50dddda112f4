from pydantic import Field
from typing import Optional, List, Literal

from .base import DocumentModel


class TransactionAllocation(DocumentModel):
    """Part of a transaction's debit attributed to one sub-organization."""
    id: str = ""
    sub_org_id: str = ""
    sub_org_name: str = ""
    amount: float = 0.0
    percentage: float = 0.0          # amount / transaction.debit_amount * 100


class POLink(DocumentModel):
    """Part of a transaction's debit linked to one purchase order."""
    id: str = ""
    po_id: str = ""
    po_name: str = ""
    amount: float = 0.0
    percentage: float = 0.0          # relative to the transaction debit, not the PO total


class Transaction(DocumentModel):
    """
    A bank-statement transaction.

    Two generations of fields coexist in stored documents:
      sub_org_id / sub_org_name     legacy single-target attribution
      allocations                   current split attribution
      linked_po_id / linked_po_name legacy single PO link
      po_links                      current multi-PO links
    Use ledger.allocation.normalize_attribution and ledger.linking.resolve_links
    instead of reading these fields directly.
    """
    id: str = ""
    post_date: Optional[str] = None         # YYYY-MM-DD
    description: str
    debit_amount: float = Field(gt=0)
    status: str = "posted"

    sub_org_id: Optional[str] = None
    sub_org_name: Optional[str] = None
    allocations: Optional[List[TransactionAllocation]] = None

    linked_po_id: Optional[str] = Field(default=None, alias="linkedPOId")
    linked_po_name: Optional[str] = Field(default=None, alias="linkedPOName")
    po_links: Optional[List[POLink]] = None

    notes: Optional[str] = None
    receipt_url: Optional[str] = None
    receipt_file_name: Optional[str] = None

    created_at: Optional[str] = None        # ISO 8601
    updated_at: Optional[str] = None


AttributionKind = Literal["unallocated", "single", "split"]


class Attribution(DocumentModel):
    """
    Normalised view of where a transaction's money goes.

      unallocated  no sub-organization
      single       one share; either the legacy scalar field or a one-entry list
      split        two or more shares
    """
    kind: AttributionKind
    shares: List[TransactionAllocation] = Field(default_factory=list)

    @property
    def allocated_total(self) -> float:
        return sum(s.amount for s in self.shares)
