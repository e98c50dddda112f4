"""
Pydantic models for dashboard API requests.

Request bodies accept the camelCase field names used by the stored
documents as well as the snake_case attribute names.
"""
from typing import Literal, Optional

from models.base import DocumentModel
from models.purchase_order import LineItem, POOrganization, POStatus
from models.transaction import POLink, TransactionAllocation


class BudgetUpdate(DocumentModel):
    budget_allocated: float


class TransactionUpdate(DocumentModel):
    # fields left out of the body are untouched; an explicit null clears
    description: Optional[str] = None
    post_date: Optional[str] = None
    debit_amount: Optional[float] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    receipt_url: Optional[str] = None
    receipt_file_name: Optional[str] = None


class AllocationsUpdate(DocumentModel):
    allocations: list[TransactionAllocation]
    mode: Literal["equal", "manual"] = "manual"
    require_full: bool = False


class POLinksUpdate(DocumentModel):
    po_links: list[POLink]
    require_full: Optional[bool] = None   # None → config default


class PurchaseOrderCreate(DocumentModel):
    name: str
    creator_id: str
    creator_name: str
    line_items: list[LineItem] = []
    organizations: Optional[list[POOrganization]] = None
    sub_org_id: Optional[str] = None
    mode: Literal["equal", "manual"] = "manual"
    special_request: Optional[str] = None
    over_budget_justification: Optional[str] = None
    submit: bool = False


class PurchaseOrderUpdate(DocumentModel):
    name: Optional[str] = None
    line_items: Optional[list[LineItem]] = None
    organizations: Optional[list[POOrganization]] = None
    mode: Literal["equal", "manual"] = "manual"
    special_request: Optional[str] = None
    over_budget_justification: Optional[str] = None


class StatusTransition(DocumentModel):
    status: POStatus
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    comments: Optional[str] = None
