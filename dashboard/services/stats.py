"""
Dashboard figures computed from the ledger.
"""
from typing import Sequence

from ledger.allocation import normalize_attribution
from ledger.linking import po_display_name
from models.purchase_order import PurchaseOrder
from models.sub_organization import SubOrganization
from models.transaction import Transaction

RECENT_PO_COUNT = 5

BUDGET_EXCEEDED_PERCENT = 100.0
BUDGET_CRITICAL_PERCENT = 90.0
BUDGET_WARNING_PERCENT = 75.0

_ACTIVITY_VERBS = {
    "pending_approval": "submitted",
    "approved":         "approved",
    "declined":         "declined",
    "purchased":        "purchased",
}


def activity_text(po: PurchaseOrder) -> str:
    """One-line activity label, e.g. 'PO #A1B2C3 approved'."""
    return f"{po_display_name(po.id)} {_ACTIVITY_VERBS.get(po.status, 'updated')}"


def po_stats(purchase_orders: Sequence[PurchaseOrder]) -> dict:
    """
    PO counts and the total spent on purchased POs, plus the most recently
    updated POs as activity entries.
    """
    recent = sorted(
        purchase_orders,
        key=lambda po: po.updated_at or po.created_at or "",
        reverse=True,
    )[:RECENT_PO_COUNT]

    return {
        "totalPOs":    len(purchase_orders),
        "pendingPOs":  sum(1 for po in purchase_orders if po.status == "pending_approval"),
        "approvedPOs": sum(1 for po in purchase_orders if po.status == "approved"),
        "totalSpent":  sum(po.total_amount for po in purchase_orders if po.status == "purchased"),
        "recentActivity": [
            {
                "id":     po.id,
                "action": activity_text(po),
                "user":   po.creator_name,
                "time":   po.updated_at or po.created_at,
            }
            for po in recent
        ],
    }


def budget_summary(sub_orgs: Sequence[SubOrganization]) -> list[dict]:
    """Per sub-organization budget figures in catalog order."""
    return [
        {
            "id":              org.id,
            "name":            org.name,
            "budgetAllocated": org.budget_allocated,
            "budgetSpent":     org.budget_spent,
            "budgetRemaining": org.budget_remaining,
            "percentUsed":     round(org.percent_used, 1),
        }
        for org in sub_orgs
    ]


def budget_alerts(sub_orgs: Sequence[SubOrganization]) -> list[dict]:
    """
    Threshold alerts on reconciled spending, at most one per sub-organization:

      > 100% used   Budget Exceeded  (high)
      >  90% used   Budget Critical  (high)
      >  75% used   Budget Warning   (medium)
    """
    alerts = []
    for org in sub_orgs:
        used = org.percent_used
        if used > BUDGET_EXCEEDED_PERCENT:
            alert = {
                "id":       f"budget-over-{org.id}",
                "title":    "Budget Exceeded",
                "message":  f"{org.name} is over budget by ${-org.budget_remaining:,.2f}",
                "priority": "high",
            }
        elif used > BUDGET_CRITICAL_PERCENT:
            alert = {
                "id":       f"budget-critical-{org.id}",
                "title":    "Budget Critical",
                "message":  f"{org.name} has used {used:.0f}% of budget",
                "priority": "high",
            }
        elif used > BUDGET_WARNING_PERCENT:
            alert = {
                "id":       f"budget-warning-{org.id}",
                "title":    "Budget Warning",
                "message":  f"{org.name} has used {used:.0f}% of budget",
                "priority": "medium",
            }
        else:
            continue
        alert["subOrgId"] = org.id
        alerts.append(alert)
    return alerts


def unallocated_total(transactions: Sequence[Transaction]) -> float:
    """Debit not attributed to any sub-organization (whole or remainder of a split)."""
    return sum(
        txn.debit_amount - normalize_attribution(txn).allocated_total
        for txn in transactions
    )


def dashboard_stats(
    purchase_orders: Sequence[PurchaseOrder],
    sub_orgs: Sequence[SubOrganization],
    transactions: Sequence[Transaction],
) -> dict:
    """Everything the dashboard home page shows, in one payload."""
    stats = po_stats(purchase_orders)
    stats["budgets"] = budget_summary(sub_orgs)
    stats["budgetAlerts"] = budget_alerts(sub_orgs)
    stats["totalBudgetAllocated"] = sum(org.budget_allocated for org in sub_orgs)
    stats["totalBudgetSpent"] = sum(org.budget_spent for org in sub_orgs)
    stats["unallocatedTotal"] = unallocated_total(transactions)
    stats["transactionCount"] = len(transactions)
    return stats
