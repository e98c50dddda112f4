"""
Budget Ledger Dashboard: FastAPI backend.

JSON API over BudgetTracker.  Documents are returned in their stored
camelCase shape.

All ledger state lives in a single SQLite database (output/ledger.db, or
DB_PATH).  Transaction mutations trigger a full budget reconciliation; when
that fails in two_phase mode the mutation still succeeds and the response
carries a reconciliationError string.

Endpoints
---------
  GET    /api/health                               → liveness probe
  GET    /api/stats                                → PO counts, budget summary, unallocated total
  POST   /api/reconcile                            → run a full reconciliation pass
  GET    /api/sub-organizations                    → catalog with budget figures
  PUT    /api/sub-organizations/{id}/budget        → set budgetAllocated
  GET    /api/transactions                         → list (supports ?subOrgId=)
  POST   /api/transactions                         → create
  GET    /api/transactions/{id}                    → one transaction, legacy links resolved
  PATCH  /api/transactions/{id}                    → edit plain fields
  DELETE /api/transactions/{id}                    → delete
  PUT    /api/transactions/{id}/allocations        → replace sub-organization split
  PUT    /api/transactions/{id}/po-links           → replace PO links
  GET    /api/purchase-orders                      → list (supports ?status= and ?creatorId=)
  POST   /api/purchase-orders                      → create (optionally submit)
  GET    /api/purchase-orders/{id}                 → one PO
  PATCH  /api/purchase-orders/{id}                 → edit draft / declined content
  POST   /api/purchase-orders/{id}/transition      → workflow status change
  DELETE /api/purchase-orders/{id}                 → delete
  GET    /api/audit                                → recent audit entries (supports ?limit= and ?offset=)
  GET    /api/audit/{entity_type}/{entity_id}      → audit trail for one entity
"""
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from config import Config
from dashboard.models import (
    AllocationsUpdate,
    BudgetUpdate,
    POLinksUpdate,
    PurchaseOrderCreate,
    PurchaseOrderUpdate,
    StatusTransition,
    TransactionUpdate,
)
from dashboard.services import dashboard_stats
from ledger import (
    AllocationValidationError,
    BudgetTracker,
    InvalidTransitionError,
    NotFoundError,
    PurchaseOrderLockedError,
    ReconciliationFailure,
)
from models.result import MutationOutcome
from models.transaction import Transaction

logger = logging.getLogger(__name__)

ACTOR = "dashboard"

# ---------------------------------------------------------------------------
# Tracker (lazy, opened on first request; seeds the sub-organization
# catalog the first time it sees an empty database)
# ---------------------------------------------------------------------------
_tracker: Optional[BudgetTracker] = None


def get_tracker() -> BudgetTracker:
    global _tracker
    if _tracker is None:
        _tracker = BudgetTracker(Config())
        _tracker.seed_sub_organizations()
    return _tracker


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="Budget Ledger Dashboard", docs_url=None, redoc_url=None)


@app.exception_handler(AllocationValidationError)
def _allocation_error(request: Request, exc: AllocationValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "issues": [i.model_dump() for i in exc.issues]},
    )


@app.exception_handler(NotFoundError)
def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
@app.exception_handler(PurchaseOrderLockedError)
def _conflict(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ReconciliationFailure)
def _reconciliation_failed(request: Request, exc: ReconciliationFailure):
    logger.error("Request %s rolled back: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc), "written": exc.written})


@app.exception_handler(ValueError)
def _bad_request(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _transaction_response(outcome: MutationOutcome) -> dict:
    tracker = get_tracker()
    return {
        "transaction":         tracker.get_transaction(outcome.entity_id).to_document(),
        "reconciliationError": outcome.reconciliation_error,
    }


# ── Routes ───────────────────────────────────────────────────────────────────

@app.get("/api/health")
def health():
    config = get_tracker().config
    return {
        "status":         "ok",
        "db_path":        str(config.db_path),
        "db_exists":      config.db_path.exists(),
        "reconcile_mode": config.reconcile_mode,
    }


@app.get("/api/stats")
def stats():
    tracker = get_tracker()
    return dashboard_stats(
        tracker.list_purchase_orders(),
        tracker.list_sub_organizations(),
        tracker.list_transactions(),
    )


@app.post("/api/reconcile")
def reconcile():
    report = get_tracker().reconcile()
    return report.model_dump()


# ── Sub-organizations ────────────────────────────────────────────────────────

@app.get("/api/sub-organizations")
def list_sub_organizations():
    return [org.to_document() for org in get_tracker().list_sub_organizations()]


@app.put("/api/sub-organizations/{sub_org_id}/budget")
def set_budget(sub_org_id: str, body: BudgetUpdate):
    org = get_tracker().set_budget_allocated(sub_org_id, body.budget_allocated, actor=ACTOR)
    return org.to_document()


# ── Transactions ─────────────────────────────────────────────────────────────

@app.get("/api/transactions")
def list_transactions(sub_org_id: Optional[str] = Query(default=None, alias="subOrgId")):
    return [t.to_document() for t in get_tracker().list_transactions(sub_org_id=sub_org_id)]


@app.post("/api/transactions", status_code=201)
def create_transaction(body: Transaction):
    outcome = get_tracker().create_transaction(body.to_document(), actor=ACTOR)
    return _transaction_response(outcome)


@app.get("/api/transactions/{txn_id}")
def get_transaction(txn_id: str):
    return get_tracker().get_transaction(txn_id).to_document()


@app.patch("/api/transactions/{txn_id}")
def update_transaction(txn_id: str, body: TransactionUpdate):
    changes = body.model_dump(exclude_unset=True)
    outcome = get_tracker().update_transaction(txn_id, actor=ACTOR, **changes)
    return _transaction_response(outcome)


@app.delete("/api/transactions/{txn_id}")
def delete_transaction(txn_id: str):
    outcome = get_tracker().delete_transaction(txn_id, actor=ACTOR)
    return {"id": txn_id, "deleted": True, "reconciliationError": outcome.reconciliation_error}


@app.put("/api/transactions/{txn_id}/allocations")
def allocate_transaction(txn_id: str, body: AllocationsUpdate):
    outcome = get_tracker().allocate_transaction(
        txn_id, body.allocations, mode=body.mode, require_full=body.require_full, actor=ACTOR,
    )
    return _transaction_response(outcome)


@app.put("/api/transactions/{txn_id}/po-links")
def link_purchase_orders(txn_id: str, body: POLinksUpdate):
    outcome = get_tracker().link_purchase_orders(
        txn_id, body.po_links, require_full=body.require_full, actor=ACTOR,
    )
    return _transaction_response(outcome)


# ── Purchase orders ──────────────────────────────────────────────────────────

@app.get("/api/purchase-orders")
def list_purchase_orders(
    status: Optional[str] = Query(default=None),
    creator_id: Optional[str] = Query(default=None, alias="creatorId"),
):
    return [
        po.to_document()
        for po in get_tracker().list_purchase_orders(status=status or None, creator_id=creator_id)
    ]


@app.post("/api/purchase-orders", status_code=201)
def create_purchase_order(body: PurchaseOrderCreate):
    po = get_tracker().create_purchase_order(
        name=body.name,
        creator_id=body.creator_id,
        creator_name=body.creator_name,
        line_items=body.line_items,
        organizations=body.organizations,
        sub_org_id=body.sub_org_id,
        mode=body.mode,
        special_request=body.special_request,
        over_budget_justification=body.over_budget_justification,
        submit=body.submit,
    )
    return po.to_document()


@app.get("/api/purchase-orders/{po_id}")
def get_purchase_order(po_id: str):
    po = get_tracker().get_purchase_order(po_id)
    if po is None:
        raise HTTPException(status_code=404, detail=f"Purchase order not found: {po_id}")
    return po.to_document()


@app.patch("/api/purchase-orders/{po_id}")
def update_purchase_order(po_id: str, body: PurchaseOrderUpdate):
    po = get_tracker().update_purchase_order(
        po_id,
        name=body.name,
        line_items=body.line_items,
        organizations=body.organizations,
        mode=body.mode,
        special_request=body.special_request,
        over_budget_justification=body.over_budget_justification,
        actor=ACTOR,
    )
    return po.to_document()


@app.post("/api/purchase-orders/{po_id}/transition")
def transition_purchase_order(po_id: str, body: StatusTransition):
    po = get_tracker().transition_purchase_order(
        po_id, body.status,
        actor_id=body.actor_id, actor_name=body.actor_name, comments=body.comments,
    )
    return po.to_document()


@app.delete("/api/purchase-orders/{po_id}")
def delete_purchase_order(po_id: str):
    get_tracker().delete_purchase_order(po_id, actor=ACTOR)
    return {"id": po_id, "deleted": True}


# ── Audit ────────────────────────────────────────────────────────────────────

@app.get("/api/audit")
def recent_audit_log(
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    return get_tracker().recent_audit_log(limit=limit, offset=offset)


@app.get("/api/audit/{entity_type}/{entity_id}")
def audit_log(entity_type: str, entity_id: str):
    return get_tracker().audit_log(entity_type, entity_id)
