from pydantic import Field
from typing import Optional, List, Literal

from .base import DocumentModel


POStatus = Literal[
    "draft",
    "pending_approval",
    "approved",
    "declined",
    "pending_purchase",
    "purchased",
]


class LineItem(DocumentModel):
    """A single line item on a Purchase Order."""
    id: Optional[str] = None
    vendor: str = ""
    item_name: str = ""
    sku: Optional[str] = None
    quantity: float = 1
    unit_price: float = 0.0
    total_price: float = 0.0
    link: Optional[str] = None
    notes: Optional[str] = None


class POOrganization(DocumentModel):
    """Share of the PO's own total charged to one sub-organization."""
    id: str = ""
    sub_org_id: str = ""
    sub_org_name: str = ""
    allocated_amount: float = 0.0
    percentage: float = 0.0


class PurchaseOrder(DocumentModel):
    """
    A Purchase Order moving through the approval workflow.

    Organizations come either from the legacy sub_org_id / sub_org_name pair
    or from the organizations list; see ledger.po_workflow.resolve_organizations.
    """
    id: str = ""
    name: str = ""
    creator_id: str = ""
    creator_name: str = ""
    status: POStatus = "draft"

    sub_org_id: Optional[str] = None
    sub_org_name: Optional[str] = None
    organizations: Optional[List[POOrganization]] = None

    line_items: List[LineItem] = Field(default_factory=list)
    total_amount: float = 0.0

    special_request: Optional[str] = None
    over_budget_justification: Optional[str] = None
    admin_comments: Optional[str] = None
    purchaser_comments: Optional[str] = None

    # Approval / purchase tracking
    approved_by_id: Optional[str] = None
    approved_by_name: Optional[str] = None
    approved_at: Optional[str] = None
    purchased_by_id: Optional[str] = None
    purchased_by_name: Optional[str] = None
    purchased_at: Optional[str] = None
    receipt_url: Optional[str] = None

    created_at: Optional[str] = None
    updated_at: Optional[str] = None
