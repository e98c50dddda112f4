"""
Purchase Order approval workflow.

  draft ──► pending_approval ──► approved ──► pending_purchase ──► purchased
    ▲               │
    └── declined ◄──┘

Only draft and declined POs may have their content (line items,
organizations, name, requests) edited; every other state is a snapshot
waiting for a reviewer or purchaser.  Resubmitting a declined PO (back to
draft) clears the admin comments.

POs never feed the sub-organization budget_spent figures; only bank
transactions do.
"""
import logging
from datetime import datetime, timezone
from typing import Mapping, Optional, Sequence

from models.purchase_order import LineItem, POOrganization, POStatus, PurchaseOrder
from models.result import AllocationIssue, ValidationResult
from models.sub_organization import SubOrganization
from .allocation import (
    ALLOCATION_TOLERANCE,
    AllocationMode,
    ensure_valid,
    rebalance,
    validate_allocation_set,
)
from .errors import InvalidTransitionError, PurchaseOrderLockedError

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "draft":            frozenset({"pending_approval"}),
    "pending_approval": frozenset({"approved", "declined"}),
    "approved":         frozenset({"pending_purchase"}),
    "declined":         frozenset({"draft"}),
    "pending_purchase": frozenset({"purchased"}),
    "purchased":        frozenset(),
}
EDITABLE_STATUSES = frozenset({"draft", "declined"})
TERMINAL_STATUSES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_editable(po: PurchaseOrder) -> bool:
    return po.status in EDITABLE_STATUSES


def assert_editable(po: PurchaseOrder) -> None:
    if not is_editable(po):
        raise PurchaseOrderLockedError(po.id, po.status)


def sort_line_items_by_vendor(items: Sequence[LineItem]) -> list[LineItem]:
    """
    Order line items by vendor, case-insensitively.  Items without a vendor
    go last; ties keep their original order (sorted() is stable).
    """
    return sorted(
        items,
        key=lambda li: (not li.vendor.strip(), li.vendor.strip().lower()),
    )


def resolve_organizations(po: PurchaseOrder) -> list[POOrganization]:
    """The PO's organization shares, synthesising one from the legacy scalar pair."""
    if po.organizations is not None:
        return list(po.organizations)
    if po.sub_org_id:
        return [POOrganization(
            id=f"migrated-{po.sub_org_id}",
            sub_org_id=po.sub_org_id,
            sub_org_name=po.sub_org_name or "",
            allocated_amount=po.total_amount,
            percentage=100.0,
        )]
    return []


def validate_organizations(
    po: PurchaseOrder,
    require_full: bool = True,
    tolerance: float = ALLOCATION_TOLERANCE,
) -> ValidationResult:
    """
    Check the PO's organization shares against its total_amount.

    With require_full the shares must sum to the total within *tolerance*
    and at least one organization must be present.
    """
    organizations = resolve_organizations(po)
    result = validate_allocation_set(
        organizations, po.total_amount,
        require_full=require_full, tolerance=tolerance, total_label="PO total",
    )
    if require_full and not organizations:
        result.issues.append(AllocationIssue(
            kind="MissingTarget",
            description="Purchase order has no sub-organization assigned",
        ))
    return result


def validate_budget(
    po: PurchaseOrder,
    sub_orgs: Mapping[str, SubOrganization],
) -> ValidationResult:
    """
    Check each organization share against that sub-organization's remaining
    budget.  Shares that exceed it need an over_budget_justification.
    """
    result = ValidationResult()
    if (po.over_budget_justification or "").strip():
        return result

    for share in resolve_organizations(po):
        org = sub_orgs.get(share.sub_org_id)
        if org is None:
            continue
        if round(share.allocated_amount, 2) > round(org.budget_remaining, 2):
            result.issues.append(AllocationIssue(
                kind="OverBudget",
                description=(
                    f"{org.name} share ${share.allocated_amount:,.2f} exceeds its remaining "
                    f"budget ${org.budget_remaining:,.2f}; an over-budget justification is required"
                ),
                target_id=org.id,
                allocated=share.allocated_amount,
                expected=org.budget_remaining,
            ))
    return result


def recompute_totals(po: PurchaseOrder, mode: AllocationMode = "manual") -> PurchaseOrder:
    """
    Recompute each line's total_price (quantity x unit_price), the PO
    total_amount, and the derived field of the organization shares.
    """
    line_items = [
        li.model_copy(update={"total_price": li.quantity * li.unit_price})
        for li in po.line_items
    ]
    total = sum(li.total_price for li in line_items)
    update: dict = {"line_items": line_items, "total_amount": total}
    if po.organizations is not None:
        update["organizations"] = rebalance(po.organizations, total, mode)
    return po.model_copy(update=update)


def edit_content(
    po: PurchaseOrder,
    *,
    name: Optional[str] = None,
    line_items: Optional[Sequence[LineItem]] = None,
    organizations: Optional[Sequence[POOrganization]] = None,
    mode: AllocationMode = "manual",
    special_request: Optional[str] = None,
    over_budget_justification: Optional[str] = None,
    tolerance: float = ALLOCATION_TOLERANCE,
) -> PurchaseOrder:
    """
    Apply a content edit to a draft or declined PO and return the new PO.

    Organizations replace the previous list wholesale and retire the legacy
    scalar pair.  Over-allocation and duplicate organizations are rejected
    here; balancing against the total is only enforced on submission.
    """
    assert_editable(po)

    update: dict = {}
    if name is not None:
        update["name"] = name
    if line_items is not None:
        update["line_items"] = list(line_items)
    if special_request is not None:
        update["special_request"] = special_request
    if over_budget_justification is not None:
        update["over_budget_justification"] = over_budget_justification
    if organizations is not None:
        update["organizations"] = list(organizations)
        update["sub_org_id"] = None
        update["sub_org_name"] = None

    edited = recompute_totals(po.model_copy(update=update), mode)
    ensure_valid(validate_organizations(edited, require_full=False, tolerance=tolerance))
    return edited


def transition(
    po: PurchaseOrder,
    target: POStatus,
    *,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    comments: Optional[str] = None,
    sub_orgs: Optional[Mapping[str, SubOrganization]] = None,
    tolerance: float = ALLOCATION_TOLERANCE,
) -> PurchaseOrder:
    """
    Move *po* to *target* and return the updated PO.

    Raises InvalidTransitionError for moves the workflow does not allow, and
    AllocationValidationError when submitting a PO whose organizations do
    not balance its total, or whose shares exceed the remaining budgets in
    *sub_orgs* without an over-budget justification.
    """
    if not can_transition(po.status, target):
        raise InvalidTransitionError(po.status, target)

    now = datetime.now(timezone.utc).isoformat()
    update: dict = {"status": target}

    if target == "pending_approval":
        ensure_valid(validate_organizations(po, require_full=True, tolerance=tolerance))
        if sub_orgs is not None:
            ensure_valid(validate_budget(po, sub_orgs))
        update["line_items"] = sort_line_items_by_vendor(po.line_items)
    elif target == "approved":
        update["approved_at"] = now
        update["approved_by_id"] = actor_id
        update["approved_by_name"] = actor_name
    elif target == "purchased":
        update["purchased_at"] = now
        update["purchased_by_id"] = actor_id
        update["purchased_by_name"] = actor_name

    if target == "draft":
        # resubmission
        update["admin_comments"] = None
    elif comments:
        if target in ("approved", "declined"):
            update["admin_comments"] = comments
        else:
            update["purchaser_comments"] = comments

    logger.info("PO %s: %s -> %s", po.id, po.status, target)
    return po.model_copy(update=update)
