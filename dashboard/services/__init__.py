"""
Dashboard business logic services.
"""
from .stats import (
    activity_text,
    budget_alerts,
    budget_summary,
    dashboard_stats,
    po_stats,
    unallocated_total,
)

__all__ = [
    "activity_text",
    "budget_alerts",
    "budget_summary",
    "dashboard_stats",
    "po_stats",
    "unallocated_total",
]
