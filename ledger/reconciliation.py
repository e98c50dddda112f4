"""
Budget reconciliation.

Every sub-organization's budget_spent must equal the money attributed to it
across all transactions.  Rather than applying deltas, each pass recomputes
the figures from the complete transaction set:

  1. load every transaction and every sub-organization
  2. sum each transaction's attribution shares by sub_org_id
     (legacy scalar sub_org_id -> the full debit; allocations -> each amount)
  3. rewrite budget_spent where it differs from the stored value by more
     than the tolerance

A pass is idempotent and corrects any earlier drift.  Writes are
independent per sub-organization and are not rolled back if a later one
fails; the next successful pass converges the figures again.
"""
import logging
from collections import defaultdict
from typing import Iterable

from models.result import BudgetChange, ReconciliationReport
from models.sub_organization import SubOrganization
from models.transaction import Transaction
from .allocation import normalize_attribution
from .database import Database
from .errors import ReconciliationFailure

logger = logging.getLogger(__name__)

RECONCILE_TOLERANCE = 0.01   # skip writes that would change budget_spent by <= $0.01


def compute_spent(transactions: Iterable[Transaction]) -> dict[str, float]:
    """Map sub_org_id -> total amount attributed to it."""
    spent: dict[str, float] = defaultdict(float)
    for txn in transactions:
        for share in normalize_attribution(txn).shares:
            if share.sub_org_id:
                spent[share.sub_org_id] += share.amount
    return dict(spent)


class BudgetReconciler:
    """
    The only writer of SubOrganization.budget_spent.

    Usage:
        report = BudgetReconciler(db).reconcile()
    """

    def __init__(self, db: Database, tolerance: float = RECONCILE_TOLERANCE):
        self.db = db
        self.tolerance = tolerance

    def reconcile(self) -> ReconciliationReport:
        """
        Run one full pass.  Raises ReconciliationFailure if the pass cannot
        complete; sub-organizations written before the failure keep their
        new values.
        """
        try:
            transactions = [Transaction.model_validate(d) for d in self.db.list_transactions()]
            sub_orgs = [SubOrganization.model_validate(d) for d in self.db.list_sub_organizations()]
        except Exception as exc:
            logger.error("Reconciliation could not load ledger data: %s", exc)
            raise ReconciliationFailure(f"Could not load ledger data: {exc}") from exc

        spent = compute_spent(transactions)
        report = ReconciliationReport(
            transactions_scanned=len(transactions),
            sub_orgs_checked=len(sub_orgs),
            spent_by_sub_org=spent,
        )

        known = {org.id for org in sub_orgs}
        report.unknown_sub_org_ids = sorted(set(spent) - known)
        for sub_org_id in report.unknown_sub_org_ids:
            logger.warning(
                "Transactions attribute $%.2f to unknown sub-organization %s",
                spent[sub_org_id], sub_org_id,
            )

        written: list[str] = []
        for org in sub_orgs:
            new_spent = spent.get(org.id, 0.0)
            if abs(new_spent - org.budget_spent) <= self.tolerance:
                continue
            try:
                self.db.update_sub_org_budget(org.id, org.budget_allocated, new_spent)
            except Exception as exc:
                logger.error(
                    "Reconciliation failed writing %s after %d update(s): %s",
                    org.name, len(written), exc,
                )
                raise ReconciliationFailure(
                    f"Failed to update budget spent for {org.name}: {exc}",
                    written=written,
                ) from exc

            written.append(org.id)
            report.changes.append(BudgetChange(
                sub_org_id=org.id,
                sub_org_name=org.name,
                previous_spent=org.budget_spent,
                new_spent=new_spent,
            ))
            logger.info(
                "Budget spent for %s: %.2f -> %.2f", org.name, org.budget_spent, new_spent,
            )

        if not report.changes:
            logger.debug(
                "Reconciliation: %d sub-organizations already consistent", len(sub_orgs),
            )
        return report
