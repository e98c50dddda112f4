"""
Integration tests for BudgetTracker: mutations, reconciliation and the PO workflow.
"""
import pytest

from ledger.database import Database
from ledger.errors import (
    AllocationValidationError,
    NotFoundError,
    PurchaseOrderLockedError,
    ReconciliationFailure,
)
from ledger.reconciliation import compute_spent
from ledger.service import BudgetTracker
from models.purchase_order import LineItem, POOrganization
from models.transaction import POLink, TransactionAllocation


def _spent(tracker: BudgetTracker) -> dict[str, float]:
    return {org.id: org.budget_spent for org in tracker.list_sub_organizations()}


def _shares(*sub_org_ids: str, amount: float = 0.0) -> list[TransactionAllocation]:
    return [TransactionAllocation(sub_org_id=s, amount=amount) for s in sub_org_ids]


def _new_txn(tracker: BudgetTracker, amount: float, description: str = "AMAZON", **extra) -> str:
    return tracker.create_transaction({"description": description, "debitAmount": amount, **extra}).entity_id


@pytest.fixture
def other_tracker(test_config, temp_dir, sample_catalog) -> BudgetTracker:
    """A second tracker over its own database with the same catalog."""
    t = BudgetTracker(test_config, db=Database(temp_dir / "other.db"))
    t.seed_sub_organizations(sample_catalog)
    return t


@pytest.mark.integration
class TestSubOrganizations:

    def test_seed_only_once(self, tracker, sample_catalog):
        assert len(tracker.list_sub_organizations()) == len(sample_catalog)
        assert tracker.seed_sub_organizations() == 0

    def test_default_catalog(self, test_config, test_db):
        created = BudgetTracker(test_config, db=test_db).seed_sub_organizations()
        assert created == 12
        assert test_db.list_sub_organizations()[0]["name"] == "Outreach"

    def test_set_budget_allocated(self, tracker):
        _new_txn(tracker, 100.0, subOrgId="outreach")

        org = tracker.set_budget_allocated("outreach", 9500.0, actor="treasurer")

        assert org.budget_allocated == 9500.0
        assert org.budget_spent == 100.0
        assert tracker.audit_log("sub_organization", "outreach")[-1]["action"] == "budget_set"

    def test_negative_budget_rejected(self, tracker):
        with pytest.raises(ValueError, match="cannot be negative"):
            tracker.set_budget_allocated("outreach", -1.0)

    def test_unknown_sub_org(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.get_sub_organization("nope")


@pytest.mark.integration
class TestTransactions:

    def test_create_with_sub_org_is_canonical_single_allocation(self, tracker):
        txn_id = _new_txn(tracker, 250.0, subOrgId="marketing")

        doc = tracker.db.get_transaction(txn_id)
        assert "subOrgId" not in doc
        assert doc["allocations"][0]["subOrgId"] == "marketing"
        assert doc["allocations"][0]["subOrgName"] == "Marketing"
        assert doc["allocations"][0]["percentage"] == 100.0
        assert _spent(tracker)["marketing"] == 250.0

    def test_create_unallocated(self, tracker):
        outcome = tracker.create_transaction({"description": "x", "debitAmount": 10.0})
        assert outcome.action == "created"
        assert outcome.reconciliation is not None
        assert set(_spent(tracker).values()) == {0.0}

    def test_create_with_unknown_sub_org(self, tracker):
        with pytest.raises(NotFoundError):
            _new_txn(tracker, 10.0, subOrgId="nope")
        assert tracker.list_transactions() == []

    def test_equal_split_three_ways(self, tracker):
        txn_id = _new_txn(tracker, 300.0)

        tracker.allocate_transaction(txn_id, _shares("outreach", "marketing", "ops"), mode="equal")

        shares = tracker.get_transaction(txn_id).allocations
        assert [s.amount for s in shares] == [100.0, 100.0, 100.0]
        assert all(s.percentage == pytest.approx(33.33, abs=0.01) for s in shares)
        assert all(s.id for s in shares)
        spent = _spent(tracker)
        assert (spent["outreach"], spent["marketing"], spent["ops"]) == (100.0, 100.0, 100.0)

    def test_rejected_allocation_writes_nothing(self, tracker):
        txn_id = _new_txn(tracker, 100.0, subOrgId="outreach")
        before = tracker.db.get_transaction(txn_id)

        with pytest.raises(AllocationValidationError) as exc_info:
            tracker.allocate_transaction(txn_id, [
                TransactionAllocation(sub_org_id="outreach", amount=80.0),
                TransactionAllocation(sub_org_id="marketing", amount=30.0),
            ])

        assert "exceeds transaction amount $100.00" in str(exc_info.value)
        assert tracker.db.get_transaction(txn_id) == before
        assert _spent(tracker)["outreach"] == 100.0

    def test_allocate_to_unknown_sub_org(self, tracker):
        txn_id = _new_txn(tracker, 100.0)
        with pytest.raises(NotFoundError, match="nope"):
            tracker.allocate_transaction(txn_id, _shares("nope", amount=10.0))

    def test_allocate_unknown_transaction(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.allocate_transaction("missing", _shares("outreach", amount=1.0))

    def test_legacy_record_moves_to_allocations(self, tracker):
        txn_id = tracker.db.create_transaction({
            "description": "old", "debitAmount": 60.0, "subOrgId": "ops", "subOrgName": "Operations",
        })
        tracker.reconcile()
        assert _spent(tracker)["ops"] == 60.0

        tracker.allocate_transaction(txn_id, [
            TransactionAllocation(sub_org_id="ops", amount=20.0),
            TransactionAllocation(sub_org_id="outreach", amount=40.0),
        ])

        doc = tracker.db.get_transaction(txn_id)
        assert "subOrgId" not in doc
        spent = _spent(tracker)
        assert (spent["ops"], spent["outreach"]) == (20.0, 40.0)

    def test_assign_and_clear_sub_org(self, tracker):
        txn_id = _new_txn(tracker, 75.0)

        tracker.assign_sub_organization(txn_id, "ftc1002")
        assert _spent(tracker)["ftc1002"] == 75.0

        tracker.assign_sub_organization(txn_id, None)
        assert tracker.db.get_transaction(txn_id)["allocations"] == []
        assert _spent(tracker)["ftc1002"] == 0.0

    def test_filter_by_sub_org(self, tracker):
        a = _new_txn(tracker, 10.0, "A", subOrgId="outreach")
        _new_txn(tracker, 10.0, "B", subOrgId="marketing")
        assert [t.id for t in tracker.list_transactions(sub_org_id="outreach")] == [a]

    def test_debit_change_rescales_percentages(self, tracker):
        txn_id = _new_txn(tracker, 300.0)
        tracker.allocate_transaction(txn_id, [TransactionAllocation(sub_org_id="ops", amount=100.0)])

        tracker.update_transaction(txn_id, debit_amount=200.0)

        share = tracker.get_transaction(txn_id).allocations[0]
        assert (share.amount, share.percentage) == (100.0, 50.0)

    def test_debit_below_allocations_rejected(self, tracker):
        txn_id = _new_txn(tracker, 300.0)
        tracker.allocate_transaction(txn_id, _shares("ops", "outreach"), mode="equal")

        with pytest.raises(AllocationValidationError):
            tracker.update_transaction(txn_id, debit_amount=200.0)
        assert tracker.get_transaction(txn_id).debit_amount == 300.0

    @pytest.mark.parametrize("new_debit", [150.0, 50.0])
    def test_single_full_share_follows_debit_like_legacy_scalar(self, tracker, new_debit):
        legacy_id = tracker.db.create_transaction({
            "description": "old", "debitAmount": 100.0, "subOrgId": "ops", "subOrgName": "Operations",
        })
        canonical_id = _new_txn(tracker, 100.0, subOrgId="outreach")

        tracker.update_transaction(legacy_id, debit_amount=new_debit)
        tracker.update_transaction(canonical_id, debit_amount=new_debit)

        spent = _spent(tracker)
        assert spent["ops"] == new_debit
        assert spent["outreach"] == spent["ops"]
        share = tracker.get_transaction(canonical_id).allocations[0]
        assert (share.amount, share.percentage) == (new_debit, 100.0)

    def test_single_full_link_follows_debit(self, tracker):
        po = tracker.create_purchase_order(
            name="Parts", creator_id="u1", creator_name="Ann",
            line_items=[LineItem(vendor="Acme", item_name="Motor", quantity=1, unit_price=100.0)],
            sub_org_id="ops",
        )
        txn_id = _new_txn(tracker, 40.0)
        tracker.link_purchase_orders(txn_id, [POLink(po_id=po.id, amount=40.0)])

        tracker.update_transaction(txn_id, debit_amount=25.0)

        link = tracker.get_transaction(txn_id).po_links[0]
        assert (link.amount, link.percentage) == (25.0, 100.0)

    @pytest.mark.parametrize("changes", [
        {"debit_amount": 0},
        {"description": "  "},
        {"allocations": []},
    ])
    def test_invalid_updates(self, tracker, changes):
        txn_id = _new_txn(tracker, 10.0)
        with pytest.raises(ValueError):
            tracker.update_transaction(txn_id, **changes)

    def test_update_notes_and_clear(self, tracker):
        txn_id = _new_txn(tracker, 10.0, notes="first")

        tracker.update_transaction(txn_id, notes=None, receipt_url="https://example.com/r.pdf")

        doc = tracker.db.get_transaction(txn_id)
        assert "notes" not in doc
        assert doc["receiptUrl"] == "https://example.com/r.pdf"
        assert tracker.update_transaction(txn_id, receipt_url="https://example.com/r.pdf").action == "unchanged"

    def test_delete_removes_spent(self, tracker):
        txn_id = _new_txn(tracker, 40.0, subOrgId="outreach")
        tracker.delete_transaction(txn_id)

        assert _spent(tracker)["outreach"] == 0.0
        with pytest.raises(NotFoundError):
            tracker.get_transaction(txn_id)
        assert [e["action"] for e in tracker.audit_log("transaction", txn_id)] == ["created", "deleted"]


@pytest.mark.integration
class TestConvergence:
    """budget_spent always equals the attributed sum after a mutation."""

    def test_spent_matches_attribution_after_any_sequence(self, tracker):
        t1 = _new_txn(tracker, 120.0, "A", subOrgId="outreach")
        t2 = _new_txn(tracker, 80.0, "B")
        tracker.allocate_transaction(t2, _shares("outreach", "marketing"), mode="equal")
        t3 = _new_txn(tracker, 33.33, "C", subOrgId="ops")
        tracker.update_transaction(t1, debit_amount=150.0)
        tracker.assign_sub_organization(t1, "ftc1002")
        tracker.delete_transaction(t3)

        expected = compute_spent(tracker.list_transactions())
        for sub_org_id, spent in _spent(tracker).items():
            assert spent == pytest.approx(expected.get(sub_org_id, 0.0), abs=0.01)
        assert _spent(tracker)["ftc1002"] == 150.0
        assert _spent(tracker)["outreach"] == 40.0

    def test_final_state_is_order_independent(self, tracker, other_tracker):
        a = _new_txn(tracker, 90.0, "A", subOrgId="outreach")
        b = _new_txn(tracker, 60.0, "B", subOrgId="marketing")
        tracker.allocate_transaction(a, _shares("outreach", "ops"), mode="equal")
        tracker.delete_transaction(b)

        b2 = _new_txn(other_tracker, 60.0, "B", subOrgId="marketing")
        other_tracker.delete_transaction(b2)
        a2 = _new_txn(other_tracker, 90.0, "A")
        other_tracker.allocate_transaction(a2, _shares("ops", "outreach"), mode="equal")

        assert _spent(tracker) == _spent(other_tracker)

    def test_reconcile_corrects_drift(self, tracker):
        _new_txn(tracker, 50.0, subOrgId="outreach")
        tracker.db.update_sub_org_budget("outreach", 8000, 999.0)

        report = tracker.reconcile()

        assert report.changes[0].previous_spent == 999.0
        assert _spent(tracker)["outreach"] == 50.0


@pytest.mark.integration
class TestReconciliationFailure:

    def test_two_phase_keeps_mutation_and_reports(self, tracker, monkeypatch):
        def failing(*args, **kwargs):
            raise RuntimeError("disk full")

        original = tracker.db.update_sub_org_budget
        monkeypatch.setattr(tracker.db, "update_sub_org_budget", failing)

        outcome = tracker.create_transaction({"description": "x", "debitAmount": 25.0,
                                              "subOrgId": "outreach"})

        assert "disk full" in outcome.reconciliation_error
        assert outcome.reconciliation is None
        assert tracker.get_transaction(outcome.entity_id).debit_amount == 25.0
        assert _spent(tracker)["outreach"] == 0.0

        monkeypatch.setattr(tracker.db, "update_sub_org_budget", original)
        tracker.reconcile()
        assert _spent(tracker)["outreach"] == 25.0

    def test_failure_lists_written_sub_orgs(self, tracker, monkeypatch):
        txn_id = _new_txn(tracker, 20.0)
        original = tracker.db.update_sub_org_budget

        def fail_on_marketing(sub_org_id, *args, **kwargs):
            if sub_org_id == "marketing":
                raise RuntimeError("locked")
            return original(sub_org_id, *args, **kwargs)

        monkeypatch.setattr(tracker.db, "update_sub_org_budget", fail_on_marketing)
        outcome = tracker.allocate_transaction(txn_id, _shares("outreach", "marketing"), mode="equal")

        assert "Marketing" in outcome.reconciliation_error
        assert _spent(tracker)["outreach"] == 10.0

        tracker.db.update_sub_org_budget("outreach", 8000, 0.0)
        with pytest.raises(ReconciliationFailure) as exc_info:
            tracker.reconcile()
        assert exc_info.value.written == ["outreach"]

    def test_atomic_mode_rolls_back(self, tracker, monkeypatch):
        tracker.config.reconcile_mode = "atomic"

        def failing(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(tracker.db, "update_sub_org_budget", failing)

        with pytest.raises(ReconciliationFailure):
            tracker.create_transaction({"description": "x", "debitAmount": 25.0,
                                        "subOrgId": "outreach"})
        assert tracker.list_transactions() == []

    def test_atomic_mode_success(self, tracker):
        tracker.config.reconcile_mode = "atomic"
        outcome = tracker.create_transaction({"description": "x", "debitAmount": 25.0,
                                              "subOrgId": "outreach"})
        assert outcome.reconciliation.changes[0].new_spent == 25.0
        assert _spent(tracker)["outreach"] == 25.0


@pytest.mark.integration
class TestPOLinks:

    @pytest.fixture
    def po_id(self, tracker) -> str:
        return tracker.create_purchase_order(
            name="Robot parts", creator_id="u1", creator_name="Ann",
            line_items=[LineItem(vendor="Acme", item_name="Motor", quantity=1, unit_price=100.0)],
            sub_org_id="ftc1002",
        ).id

    def test_link_fills_po_name(self, tracker, po_id):
        txn_id = _new_txn(tracker, 42.5)

        tracker.link_purchase_orders(txn_id, [POLink(po_id=po_id, amount=42.5)])

        link = tracker.get_transaction(txn_id).po_links[0]
        assert (link.po_name, link.percentage) == ("Robot parts", 100.0)
        assert link.id

    def test_legacy_link_migrates_on_write(self, tracker, po_id):
        txn_id = tracker.db.create_transaction({
            "description": "old", "debitAmount": 42.5, "linkedPOId": "abc123",
        })
        assert tracker.get_transaction(txn_id).po_links[0].id == "migrated-abc123"

        tracker.link_purchase_orders(txn_id, [POLink(po_id=po_id, amount=20.0), POLink()])

        doc = tracker.db.get_transaction(txn_id)
        assert "linkedPOId" not in doc
        assert [link["poId"] for link in doc["poLinks"]] == [po_id]

    def test_duplicate_po_rejected(self, tracker, po_id):
        txn_id = _new_txn(tracker, 42.5)
        with pytest.raises(AllocationValidationError) as exc_info:
            tracker.link_purchase_orders(txn_id, [
                POLink(po_id=po_id, amount=10.0), POLink(po_id=po_id, amount=5.0),
            ])
        assert exc_info.value.kinds == {"DuplicateTarget"}

    def test_unknown_po(self, tracker):
        txn_id = _new_txn(tracker, 42.5)
        with pytest.raises(NotFoundError):
            tracker.link_purchase_orders(txn_id, [POLink(po_id="nope", amount=10.0)])

    def test_unknown_po_with_name_rejected(self, tracker):
        txn_id = _new_txn(tracker, 42.5)
        with pytest.raises(NotFoundError, match="nope"):
            tracker.link_purchase_orders(txn_id, [POLink(po_id="nope", po_name="Ghost", amount=10.0)])
        assert tracker.get_transaction(txn_id).po_links is None

    def test_supplied_po_name_replaced_by_stored_name(self, tracker, po_id):
        txn_id = _new_txn(tracker, 42.5)
        tracker.link_purchase_orders(txn_id, [POLink(po_id=po_id, po_name="Stale", amount=10.0)])
        assert tracker.get_transaction(txn_id).po_links[0].po_name == "Robot parts"

    def test_full_link_required_by_config(self, tracker, po_id):
        tracker.config.require_full_link_allocation = True
        txn_id = _new_txn(tracker, 42.5)
        with pytest.raises(AllocationValidationError) as exc_info:
            tracker.link_purchase_orders(txn_id, [POLink(po_id=po_id, amount=10.0)])
        assert "Unbalanced" in exc_info.value.kinds

    def test_links_do_not_change_spent(self, tracker, po_id):
        txn_id = _new_txn(tracker, 42.5)
        tracker.link_purchase_orders(txn_id, [POLink(po_id=po_id, amount=42.5)])
        assert set(_spent(tracker).values()) == {0.0}

    def test_po_delete_keeps_links(self, tracker, po_id):
        txn_id = _new_txn(tracker, 42.5)
        tracker.link_purchase_orders(txn_id, [POLink(po_id=po_id, amount=42.5)])

        tracker.delete_purchase_order(po_id)

        assert tracker.get_transaction(txn_id).po_links[0].po_id == po_id


@pytest.mark.integration
class TestPurchaseOrders:

    @pytest.fixture
    def draft(self, tracker):
        return tracker.create_purchase_order(
            name="Field elements", creator_id="u1", creator_name="Ann",
            line_items=[
                LineItem(vendor="zeta supply", item_name="Tape", quantity=2, unit_price=50.0),
                LineItem(vendor="Acme", item_name="Wood", quantity=4, unit_price=100.0),
            ],
            organizations=[
                POOrganization(sub_org_id="outreach", allocated_amount=200.0),
                POOrganization(sub_org_id="marketing", allocated_amount=300.0),
            ],
        )

    def test_create(self, draft):
        assert draft.status == "draft"
        assert draft.total_amount == 500.0
        assert [o.sub_org_name for o in draft.organizations] == ["Outreach", "Marketing"]
        assert [o.percentage for o in draft.organizations] == [40.0, 60.0]

    def test_legacy_sub_org_becomes_single_organization(self, tracker):
        po = tracker.create_purchase_order(
            name="One", creator_id="u1", creator_name="Ann",
            line_items=[LineItem(vendor="A", unit_price=80.0)], sub_org_id="ops",
        )
        assert [(o.sub_org_id, o.allocated_amount) for o in po.organizations] == [("ops", 80.0)]
        assert po.sub_org_id is None

    def test_full_workflow(self, tracker, draft):
        submitted = tracker.transition_purchase_order(draft.id, "pending_approval", actor_id="u1")
        assert [li.vendor for li in submitted.line_items] == ["Acme", "zeta supply"]

        approved = tracker.transition_purchase_order(draft.id, "approved", actor_id="adm",
                                                     actor_name="Bea")
        tracker.transition_purchase_order(draft.id, "pending_purchase")
        purchased = tracker.transition_purchase_order(draft.id, "purchased", actor_id="p1",
                                                      actor_name="Cal")

        assert approved.approved_by_name == "Bea"
        assert purchased.status == "purchased"
        assert purchased.purchased_by_id == "p1"
        assert set(_spent(tracker).values()) == {0.0}
        actions = [e["action"] for e in tracker.audit_log("purchase_order", draft.id)]
        assert actions == ["created"] + ["status_changed"] * 4

    def test_unbalanced_edit_blocks_submission(self, tracker, draft):
        edited = tracker.update_purchase_order(draft.id, organizations=[
            POOrganization(sub_org_id="outreach", allocated_amount=250.0),
            POOrganization(sub_org_id="marketing", allocated_amount=200.0),
        ])
        assert edited.organizations[0].allocated_amount == 250.0

        with pytest.raises(AllocationValidationError) as exc_info:
            tracker.transition_purchase_order(draft.id, "pending_approval")
        assert "Unbalanced" in exc_info.value.kinds
        assert tracker.get_purchase_order(draft.id).status == "draft"

    def test_over_budget_submission_needs_justification(self, tracker, draft):
        _new_txn(tracker, 7900.0, subOrgId="outreach")

        with pytest.raises(AllocationValidationError) as exc_info:
            tracker.transition_purchase_order(draft.id, "pending_approval")
        assert exc_info.value.kinds == {"OverBudget"}
        assert "$100.00" in str(exc_info.value)
        assert tracker.get_purchase_order(draft.id).status == "draft"

        tracker.update_purchase_order(draft.id, over_budget_justification="Regional deadline")
        submitted = tracker.transition_purchase_order(draft.id, "pending_approval")
        assert submitted.status == "pending_approval"

    def test_submitted_po_is_locked(self, tracker, draft):
        tracker.transition_purchase_order(draft.id, "pending_approval")
        with pytest.raises(PurchaseOrderLockedError):
            tracker.update_purchase_order(draft.id, name="Renamed")

    def test_decline_and_resubmit(self, tracker, draft):
        tracker.transition_purchase_order(draft.id, "pending_approval")
        declined = tracker.transition_purchase_order(draft.id, "declined", comments="Too much")
        assert declined.admin_comments == "Too much"

        edited = tracker.update_purchase_order(draft.id, name="Cheaper elements")
        assert edited.name == "Cheaper elements"

        redraft = tracker.transition_purchase_order(draft.id, "draft")
        assert redraft.admin_comments is None

    def test_create_and_submit(self, tracker):
        po = tracker.create_purchase_order(
            name="Now", creator_id="u1", creator_name="Ann",
            line_items=[LineItem(vendor="A", unit_price=10.0)], sub_org_id="ops", submit=True,
        )
        assert po.status == "pending_approval"

    def test_list_and_delete(self, tracker, draft):
        assert [p.id for p in tracker.list_purchase_orders(creator_id="u1")] == [draft.id]
        tracker.delete_purchase_order(draft.id)
        assert tracker.get_purchase_order(draft.id) is None
        with pytest.raises(NotFoundError):
            tracker.delete_purchase_order(draft.id)


@pytest.mark.integration
class TestImport:

    def test_import_reconciles_once(self, tracker, sample_bank_rows):
        summary = tracker.import_transactions(sample_bank_rows)

        assert (summary.processed, summary.skipped) == (2, 3)
        assert summary.reconciliation_error is None
        assert _spent(tracker)["outreach"] == 120.5
        for txn_id in summary.created_ids:
            assert tracker.audit_log("transaction", txn_id)[0]["action"] == "imported"
