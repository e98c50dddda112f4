"""
Ledger orchestrator.

BudgetTracker ties the allocation model, PO linking, the PO workflow and
budget reconciliation to the database.  Every transaction mutation follows
the same path:

  1. load the current document (NotFoundError if absent)
  2. normalise and validate the new allocation / link set
     (AllocationValidationError before anything is written)
  3. commit the mutation
  4. recompute every sub-organization's budget_spent from all transactions

Steps 3 and 4 run according to config.reconcile_mode:

  two_phase  separate commits; a reconciliation failure is logged and
             returned on the MutationOutcome, the mutation stays committed
  atomic     one SQLite transaction; a reconciliation failure rolls the
             mutation back and raises ReconciliationFailure

Purchase orders do not feed budget_spent, so PO operations never reconcile.
"""
import logging
from typing import Callable, Iterable, Optional, Sequence

from config import Config
from models.purchase_order import LineItem, POOrganization, POStatus, PurchaseOrder
from models.result import ImportSummary, MutationOutcome, ReconciliationReport
from models.sub_organization import SubOrganization
from models.transaction import POLink, Transaction, TransactionAllocation
from .allocation import (
    AllocationMode,
    allocations_update,
    ensure_valid,
    follow_total,
    new_share_id,
    normalize_attribution,
    prepare_allocations,
    single_allocation,
    validate_allocation_set,
)
from .database import Database
from .errors import NotFoundError, ReconciliationFailure
from .importer import TransactionImporter
from .linking import links_update, po_display_name, prepare_links, with_resolved_links
from .po_workflow import edit_content, transition
from .reconciliation import BudgetReconciler
from .sub_org_matcher import SubOrgMatcher

logger = logging.getLogger(__name__)

# Transaction fields that update_transaction() may change directly.
# Allocations and PO links have their own operations.
EDITABLE_TRANSACTION_FIELDS = frozenset({
    "description", "post_date", "debit_amount", "status",
    "notes", "receipt_url", "receipt_file_name",
})


class BudgetTracker:
    """
    Entry point for every ledger operation.

    Usage:
        tracker = BudgetTracker(Config())
        tracker.seed_sub_organizations()
        outcome = tracker.create_transaction({"description": "...", "debitAmount": 42.5})
    """

    def __init__(self, config: Optional[Config] = None, db: Optional[Database] = None):
        self.config = config or Config()
        if db is None:
            self.config.ensure_output_dir()
            db = Database(self.config.db_path)
        self.db = db
        self.reconciler = BudgetReconciler(self.db, tolerance=self.config.reconcile_tolerance)

    # ------------------------------------------------------------------
    # Reconciliation plumbing
    # ------------------------------------------------------------------

    def reconcile(self) -> ReconciliationReport:
        """Run a full budget reconciliation pass (raises ReconciliationFailure)."""
        return self.reconciler.reconcile()

    def _mutate(self, entity_id: str, action: str, write: Callable[[], None]) -> MutationOutcome:
        outcome = MutationOutcome(entity_id=entity_id, action=action)

        if self.config.reconcile_mode == "atomic":
            with self.db.atomic():
                write()
                outcome.reconciliation = self.reconciler.reconcile()
            return outcome

        write()
        try:
            outcome.reconciliation = self.reconciler.reconcile()
        except ReconciliationFailure as exc:
            logger.error(
                "Budget reconciliation after %s of %s failed; figures stale until next pass: %s",
                action, entity_id, exc,
            )
            outcome.reconciliation_error = str(exc)
        return outcome

    # ------------------------------------------------------------------
    # Sub-organizations
    # ------------------------------------------------------------------

    def seed_sub_organizations(self, catalog: Optional[Sequence[dict]] = None) -> int:
        """
        Create the sub-organization catalog if the database has none yet.
        Returns the number of sub-organizations created.
        """
        if self.db.list_sub_organizations():
            logger.debug("Sub-organizations already present; seeding skipped")
            return 0

        entries = list(catalog) if catalog is not None else self.config.load_sub_org_catalog()
        for entry in entries:
            self.db.create_sub_organization(
                name=entry["name"],
                budget_allocated=float(entry.get("budgetAllocated", 0)),
                sub_org_id=entry.get("id"),
            )
        logger.info("Seeded %d sub-organizations", len(entries))
        return len(entries)

    def list_sub_organizations(self) -> list[SubOrganization]:
        return [SubOrganization.model_validate(d) for d in self.db.list_sub_organizations()]

    def get_sub_organization(self, sub_org_id: str) -> SubOrganization:
        doc = self.db.get_sub_organization(sub_org_id)
        if doc is None:
            raise NotFoundError("SubOrganization", sub_org_id)
        return SubOrganization.model_validate(doc)

    def set_budget_allocated(
        self, sub_org_id: str, amount: float, actor: str = "system",
    ) -> SubOrganization:
        """Change a sub-organization's allocated budget (never its spent figure)."""
        if amount < 0:
            raise ValueError(f"Allocated budget cannot be negative: {amount:.2f}")
        current = self.get_sub_organization(sub_org_id)
        self.db.update_sub_org_budget(sub_org_id, amount)
        self.db.log_audit(
            "sub_organization", sub_org_id, "budget_set", actor=actor,
            detail={"previous": current.budget_allocated, "new": amount},
        )
        logger.info("Budget allocated for %s: %.2f -> %.2f", current.name,
                    current.budget_allocated, amount)
        return self.get_sub_organization(sub_org_id)

    def _sub_org_index(self) -> dict[str, SubOrganization]:
        return {org.id: org for org in self.list_sub_organizations()}

    def _named_allocations(
        self, allocations: Iterable[TransactionAllocation],
    ) -> list[TransactionAllocation]:
        """Fill ids and denormalised names; unknown sub-organizations raise NotFoundError."""
        index = self._sub_org_index()
        named = []
        for share in allocations:
            update: dict = {}
            if not share.id:
                update["id"] = new_share_id()
            if share.sub_org_id:
                org = index.get(share.sub_org_id)
                if org is None:
                    raise NotFoundError("SubOrganization", share.sub_org_id)
                update["sub_org_name"] = org.name
            named.append(share.model_copy(update=update))
        return named

    # ------------------------------------------------------------------
    # Transactions: reads
    # ------------------------------------------------------------------

    def _load_transaction(self, txn_id: str) -> Transaction:
        doc = self.db.get_transaction(txn_id)
        if doc is None:
            raise NotFoundError("Transaction", txn_id)
        return Transaction.model_validate(doc)

    def get_transaction(self, txn_id: str) -> Transaction:
        """Fetch one transaction with legacy PO links presented as po_links."""
        return with_resolved_links(self._load_transaction(txn_id))

    def list_transactions(self, sub_org_id: Optional[str] = None) -> list[Transaction]:
        """
        All transactions (newest first), legacy PO links resolved.  With
        *sub_org_id*, only those attributing money to that sub-organization.
        """
        transactions = [
            with_resolved_links(Transaction.model_validate(d))
            for d in self.db.list_transactions()
        ]
        if sub_org_id is None:
            return transactions
        return [
            t for t in transactions
            if any(s.sub_org_id == sub_org_id for s in normalize_attribution(t).shares)
        ]

    # ------------------------------------------------------------------
    # Transactions: mutations
    # ------------------------------------------------------------------

    def create_transaction(self, data: dict, actor: str = "system") -> MutationOutcome:
        """
        Record a new transaction.

        *data* uses either document (camelCase) or attribute (snake_case)
        names.  A scalar sub_org_id is stored in the canonical form: a
        one-entry allocations list at 100%.
        """
        txn = Transaction.model_validate({k: v for k, v in data.items() if k != "id"})

        if txn.allocations is not None:
            shares = prepare_allocations(
                txn, self._named_allocations(txn.allocations),
                tolerance=self.config.allocation_tolerance,
            )
            txn = txn.model_copy(update={"allocations": shares, "sub_org_id": None, "sub_org_name": None})
        elif txn.sub_org_id:
            org = self.get_sub_organization(txn.sub_org_id)
            txn = txn.model_copy(update={
                "allocations": [single_allocation(org, txn.debit_amount)],
                "sub_org_id": None,
                "sub_org_name": None,
            })

        if txn.po_links is not None:
            links = prepare_links(
                txn, self._named_links(txn.po_links),
                tolerance=self.config.allocation_tolerance,
            )
            txn = txn.model_copy(update={"po_links": links, "linked_po_id": None, "linked_po_name": None})

        created: dict = {}

        def write() -> None:
            created["id"] = self.db.create_transaction(txn.to_document())
            self.db.log_audit(
                "transaction", created["id"], "created", actor=actor,
                detail={"debitAmount": txn.debit_amount, "description": txn.description},
            )

        # the id is only known after the insert
        outcome = self._mutate("", "created", write)
        outcome.entity_id = created.get("id", "")
        return outcome

    def update_transaction(self, txn_id: str, actor: str = "system", **changes) -> MutationOutcome:
        """
        Change plain transaction fields (see EDITABLE_TRANSACTION_FIELDS).
        Passing None clears an optional field.

        A new debit_amount re-derives every allocation and link percentage and
        is rejected if existing shares would then exceed it.
        """
        unknown = set(changes) - EDITABLE_TRANSACTION_FIELDS
        if unknown:
            raise ValueError(
                f"Cannot update {sorted(unknown)} directly; allowed: "
                f"{sorted(EDITABLE_TRANSACTION_FIELDS)}"
            )
        if "description" in changes and not (changes["description"] or "").strip():
            raise ValueError("Description cannot be empty")

        current = self._load_transaction(txn_id)
        updated = current.model_copy(update=changes)

        if updated.debit_amount != current.debit_amount:
            if updated.debit_amount is None or updated.debit_amount <= 0:
                raise ValueError(f"Debit amount must be greater than zero: {updated.debit_amount}")
            updated = self._rescale(updated, current.debit_amount)

        partial = updated.changes_from(current)
        if not partial:
            return MutationOutcome(entity_id=txn_id, action="unchanged")

        def write() -> None:
            self.db.update_transaction(txn_id, partial)
            self.db.log_audit(
                "transaction", txn_id, "updated", actor=actor, detail={"fields": sorted(partial)},
            )

        return self._mutate(txn_id, "updated", write)

    def _rescale(self, txn: Transaction, previous_total: float) -> Transaction:
        """
        Carry shares over to a changed debit and re-check the sums.  A single
        share holding the whole debit follows it; other sets keep their amounts.
        """
        total = txn.debit_amount
        tolerance = self.config.allocation_tolerance
        update: dict = {}
        if txn.allocations:
            update["allocations"] = follow_total(txn.allocations, previous_total, total, tolerance)
            ensure_valid(validate_allocation_set(
                update["allocations"], total, tolerance=self.config.allocation_tolerance,
            ))
        if txn.po_links:
            update["po_links"] = follow_total(txn.po_links, previous_total, total, tolerance)
            ensure_valid(validate_allocation_set(
                update["po_links"], total, tolerance=self.config.allocation_tolerance,
            ))
        return txn.model_copy(update=update)

    def allocate_transaction(
        self,
        txn_id: str,
        allocations: Sequence[TransactionAllocation],
        mode: AllocationMode = "manual",
        require_full: bool = False,
        actor: str = "system",
    ) -> MutationOutcome:
        """
        Replace the transaction's allocation list.

        mode="equal" spreads the debit evenly over the given sub-organizations;
        mode="manual" keeps the given amounts and derives percentages.
        An empty list marks the transaction as explicitly unallocated.
        """
        txn = self._load_transaction(txn_id)
        shares = prepare_allocations(
            txn, self._named_allocations(allocations),
            mode=mode, require_full=require_full, tolerance=self.config.allocation_tolerance,
        )

        def write() -> None:
            self.db.update_transaction(txn_id, allocations_update(shares))
            self.db.log_audit(
                "transaction", txn_id, "allocated", actor=actor,
                detail={"mode": mode, "allocations": {s.sub_org_id: s.amount for s in shares}},
            )

        return self._mutate(txn_id, "allocated", write)

    def assign_sub_organization(
        self, txn_id: str, sub_org_id: Optional[str], actor: str = "system",
    ) -> MutationOutcome:
        """Attribute the whole debit to one sub-organization, or none when None."""
        txn = self._load_transaction(txn_id)
        if sub_org_id is None:
            return self.allocate_transaction(txn_id, [], actor=actor)
        org = self.get_sub_organization(sub_org_id)
        return self.allocate_transaction(
            txn_id, [single_allocation(org, txn.debit_amount)], actor=actor,
        )

    def _named_links(self, links: Iterable[POLink]) -> list[POLink]:
        """Fill ids and PO names; links to an unknown PO raise NotFoundError."""
        named = []
        for link in links:
            update: dict = {}
            if not link.id:
                update["id"] = new_share_id()
            if link.po_id:
                po = self._require_purchase_order(link.po_id)
                update["po_name"] = po.name or po_display_name(po.id)
            named.append(link.model_copy(update=update))
        return named

    def link_purchase_orders(
        self,
        txn_id: str,
        links: Sequence[POLink],
        require_full: Optional[bool] = None,
        actor: str = "system",
    ) -> MutationOutcome:
        """
        Replace the transaction's PO links.  Blank rows are dropped; a
        non-empty result retires the legacy linkedPOId / linkedPOName pair.
        """
        if require_full is None:
            require_full = self.config.require_full_link_allocation
        txn = self._load_transaction(txn_id)
        cleaned = prepare_links(
            txn, self._named_links(links),
            require_full=require_full, tolerance=self.config.allocation_tolerance,
        )

        def write() -> None:
            self.db.update_transaction(txn_id, links_update(cleaned))
            self.db.log_audit(
                "transaction", txn_id, "linked", actor=actor,
                detail={"poLinks": {link.po_id: link.amount for link in cleaned}},
            )

        return self._mutate(txn_id, "linked", write)

    def delete_transaction(self, txn_id: str, actor: str = "system") -> MutationOutcome:
        txn = self._load_transaction(txn_id)

        def write() -> None:
            self.db.delete_transaction(txn_id)
            self.db.log_audit(
                "transaction", txn_id, "deleted", actor=actor,
                detail={"debitAmount": txn.debit_amount, "description": txn.description},
            )

        return self._mutate(txn_id, "deleted", write)

    def import_transactions(self, rows: Iterable[dict], actor: str = "system") -> ImportSummary:
        """Import bank-export rows, then reconcile once for the whole batch."""
        importer = TransactionImporter(
            self.db,
            SubOrgMatcher(self.list_sub_organizations(), threshold=self.config.sub_org_fuzzy_threshold),
        )

        if self.config.reconcile_mode == "atomic":
            with self.db.atomic():
                summary = importer.import_rows(rows)
                self.reconciler.reconcile()
        else:
            summary = importer.import_rows(rows)
            try:
                self.reconciler.reconcile()
            except ReconciliationFailure as exc:
                logger.error("Budget reconciliation after import failed: %s", exc)
                summary.reconciliation_error = str(exc)

        for txn_id in summary.created_ids:
            self.db.log_audit("transaction", txn_id, "imported", actor=actor)
        return summary

    # ------------------------------------------------------------------
    # Purchase orders
    # ------------------------------------------------------------------

    def get_purchase_order(self, po_id: str) -> Optional[PurchaseOrder]:
        doc = self.db.get_po_by_id(po_id)
        return PurchaseOrder.model_validate(doc) if doc else None

    def _require_purchase_order(self, po_id: str) -> PurchaseOrder:
        po = self.get_purchase_order(po_id)
        if po is None:
            raise NotFoundError("PurchaseOrder", po_id)
        return po

    def list_purchase_orders(
        self, status: Optional[str] = None, creator_id: Optional[str] = None,
    ) -> list[PurchaseOrder]:
        return [
            PurchaseOrder.model_validate(d)
            for d in self.db.list_purchase_orders(status=status, creator_id=creator_id)
        ]

    def _named_organizations(
        self, organizations: Iterable[POOrganization],
    ) -> list[POOrganization]:
        index = self._sub_org_index()
        named = []
        for share in organizations:
            update: dict = {}
            if not share.id:
                update["id"] = new_share_id()
            if share.sub_org_id:
                org = index.get(share.sub_org_id)
                if org is None:
                    raise NotFoundError("SubOrganization", share.sub_org_id)
                update["sub_org_name"] = org.name
            named.append(share.model_copy(update=update))
        return named

    def create_purchase_order(
        self,
        *,
        name: str,
        creator_id: str,
        creator_name: str,
        line_items: Sequence[LineItem],
        organizations: Optional[Sequence[POOrganization]] = None,
        sub_org_id: Optional[str] = None,
        mode: AllocationMode = "manual",
        special_request: Optional[str] = None,
        over_budget_justification: Optional[str] = None,
        submit: bool = False,
    ) -> PurchaseOrder:
        """
        Create a draft PO.  A scalar sub_org_id becomes a single organization
        share holding 100% of the total.  With submit=True the PO moves
        straight to pending_approval.
        """
        if organizations is None and sub_org_id:
            organizations = [POOrganization(sub_org_id=sub_org_id, percentage=100.0)]
            mode = "equal"

        po = edit_content(
            PurchaseOrder(
                name=name, creator_id=creator_id, creator_name=creator_name, status="draft",
            ),
            line_items=line_items,
            organizations=self._named_organizations(organizations or []),
            mode=mode,
            special_request=special_request,
            over_budget_justification=over_budget_justification,
            tolerance=self.config.allocation_tolerance,
        )
        po_id = self.db.create_purchase_order(po.to_document())
        self.db.log_audit(
            "purchase_order", po_id, "created", actor=creator_id or "system",
            detail={"totalAmount": po.total_amount},
        )
        logger.info("Created PO %s (%s) total=%.2f", po_id, name, po.total_amount)

        if submit:
            return self.transition_purchase_order(po_id, "pending_approval", actor_id=creator_id,
                                                  actor_name=creator_name)
        return self._require_purchase_order(po_id)

    def update_purchase_order(
        self,
        po_id: str,
        *,
        name: Optional[str] = None,
        line_items: Optional[Sequence[LineItem]] = None,
        organizations: Optional[Sequence[POOrganization]] = None,
        mode: AllocationMode = "manual",
        special_request: Optional[str] = None,
        over_budget_justification: Optional[str] = None,
        actor: str = "system",
    ) -> PurchaseOrder:
        """Edit a draft / declined PO (PurchaseOrderLockedError otherwise)."""
        current = self._require_purchase_order(po_id)
        edited = edit_content(
            current,
            name=name,
            line_items=line_items,
            organizations=(
                self._named_organizations(organizations) if organizations is not None else None
            ),
            mode=mode,
            special_request=special_request,
            over_budget_justification=over_budget_justification,
            tolerance=self.config.allocation_tolerance,
        )
        partial = edited.changes_from(current)
        if partial:
            self.db.update_purchase_order(po_id, partial)
            self.db.log_audit(
                "purchase_order", po_id, "updated", actor=actor, detail={"fields": sorted(partial)},
            )
        return self._require_purchase_order(po_id)

    def transition_purchase_order(
        self,
        po_id: str,
        target: POStatus,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> PurchaseOrder:
        current = self._require_purchase_order(po_id)
        moved = transition(
            current, target,
            actor_id=actor_id, actor_name=actor_name, comments=comments,
            sub_orgs=self._sub_org_index() if target == "pending_approval" else None,
            tolerance=self.config.allocation_tolerance,
        )
        self.db.update_purchase_order(po_id, moved.changes_from(current))
        self.db.log_audit(
            "purchase_order", po_id, "status_changed", actor=actor_id or "system",
            detail={"from": current.status, "to": target},
        )
        return self._require_purchase_order(po_id)

    def delete_purchase_order(self, po_id: str, actor: str = "system") -> None:
        """Delete a PO.  Budget figures are unaffected."""
        if not self.db.delete_purchase_order(po_id):
            raise NotFoundError("PurchaseOrder", po_id)
        self.db.log_audit("purchase_order", po_id, "deleted", actor=actor)
        logger.info("Deleted PO %s", po_id)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_log(self, entity_type: str, entity_id: str) -> list[dict]:
        return self.db.get_audit_log(entity_type, entity_id)

    def recent_audit_log(self, limit: int = 200, offset: int = 0) -> list[dict]:
        """Audit entries across all entities, newest first."""
        return self.db.get_recent_audit_log(limit=limit, offset=offset)
