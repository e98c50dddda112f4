"""
API tests for the dashboard JSON endpoints.
"""
import pytest
from fastapi.testclient import TestClient

import dashboard.app as dashboard_app


@pytest.fixture
def client(tracker, monkeypatch) -> TestClient:
    monkeypatch.setattr(dashboard_app, "_tracker", tracker)
    return TestClient(dashboard_app.app)


def _create_txn(client: TestClient, amount: float = 300.0, **extra) -> dict:
    resp = client.post("/api/transactions",
                       json={"description": "AMAZON", "debitAmount": amount, **extra})
    assert resp.status_code == 201
    return resp.json()["transaction"]


def _create_po(client: TestClient, **extra) -> dict:
    body = {
        "name": "Robot parts",
        "creatorId": "u1",
        "creatorName": "Ann",
        "lineItems": [{"vendor": "Acme", "itemName": "Motor", "quantity": 2, "unitPrice": 250}],
        "organizations": [
            {"subOrgId": "outreach", "allocatedAmount": 200},
            {"subOrgId": "marketing", "allocatedAmount": 300},
        ],
    }
    body.update(extra)
    resp = client.post("/api/purchase-orders", json=body)
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.api
class TestDashboardAPI:

    def test_health(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["reconcile_mode"] == "two_phase"

    def test_sub_organizations(self, client):
        orgs = client.get("/api/sub-organizations").json()
        assert orgs[0] == {"id": "outreach", "name": "Outreach",
                           "budgetAllocated": 8000.0, "budgetSpent": 0.0}

    def test_set_budget(self, client):
        resp = client.put("/api/sub-organizations/ops/budget", json={"budgetAllocated": 9500})
        assert resp.status_code == 200
        assert resp.json()["budgetAllocated"] == 9500.0

    def test_set_budget_negative(self, client):
        resp = client.put("/api/sub-organizations/ops/budget", json={"budgetAllocated": -1})
        assert resp.status_code == 400

    def test_set_budget_unknown(self, client):
        resp = client.put("/api/sub-organizations/nope/budget", json={"budgetAllocated": 1})
        assert resp.status_code == 404

    def test_create_transaction_rejects_zero_debit(self, client):
        resp = client.post("/api/transactions", json={"description": "x", "debitAmount": 0})
        assert resp.status_code == 422

    def test_equal_split(self, client):
        txn = _create_txn(client)

        resp = client.put(f"/api/transactions/{txn['id']}/allocations", json={
            "allocations": [{"subOrgId": "outreach"}, {"subOrgId": "marketing"}, {"subOrgId": "ops"}],
            "mode": "equal",
        })

        assert resp.status_code == 200
        body = resp.json()
        assert body["reconciliationError"] is None
        assert [a["amount"] for a in body["transaction"]["allocations"]] == [100.0, 100.0, 100.0]
        spent = {o["id"]: o["budgetSpent"] for o in client.get("/api/sub-organizations").json()}
        assert spent["outreach"] == 100.0

    def test_over_allocation_returns_issues(self, client):
        txn = _create_txn(client, 100.0)

        resp = client.put(f"/api/transactions/{txn['id']}/allocations", json={
            "allocations": [
                {"subOrgId": "outreach", "amount": 80},
                {"subOrgId": "marketing", "amount": 30},
            ],
        })

        assert resp.status_code == 422
        body = resp.json()
        assert body["issues"][0]["kind"] == "OverAllocated"
        assert "$110.00" in body["detail"]

    def test_transaction_not_found(self, client):
        assert client.get("/api/transactions/nope").status_code == 404
        assert client.delete("/api/transactions/nope").status_code == 404

    def test_patch_transaction(self, client):
        txn = _create_txn(client, 50.0, subOrgId="ops")

        resp = client.patch(f"/api/transactions/{txn['id']}", json={"debitAmount": 80, "notes": "receipt lost"})

        assert resp.status_code == 200
        updated = resp.json()["transaction"]
        assert updated["debitAmount"] == 80.0
        assert updated["notes"] == "receipt lost"
        assert (updated["allocations"][0]["amount"], updated["allocations"][0]["percentage"]) == (80.0, 100.0)

    def test_list_and_filter_transactions(self, client):
        _create_txn(client, 10.0, subOrgId="ops")
        _create_txn(client, 20.0)

        assert len(client.get("/api/transactions").json()) == 2
        only_ops = client.get("/api/transactions", params={"subOrgId": "ops"}).json()
        assert [t["debitAmount"] for t in only_ops] == [10.0]

    def test_delete_transaction(self, client):
        txn = _create_txn(client, 10.0, subOrgId="ops")

        resp = client.delete(f"/api/transactions/{txn['id']}")

        assert resp.json() == {"id": txn["id"], "deleted": True, "reconciliationError": None}
        assert client.get("/api/transactions").json() == []

    def test_po_links(self, client):
        po = _create_po(client)
        txn = _create_txn(client, 42.5)

        resp = client.put(f"/api/transactions/{txn['id']}/po-links", json={
            "poLinks": [{"poId": po["id"], "amount": 42.5}, {"poId": "", "amount": 0}],
        })

        assert resp.status_code == 200
        links = resp.json()["transaction"]["poLinks"]
        assert [(link["poName"], link["percentage"]) for link in links] == [("Robot parts", 100.0)]

    def test_duplicate_po_links(self, client):
        po = _create_po(client)
        txn = _create_txn(client, 42.5)

        resp = client.put(f"/api/transactions/{txn['id']}/po-links", json={
            "poLinks": [{"poId": po["id"], "amount": 10}, {"poId": po["id"], "amount": 5}],
        })

        assert resp.status_code == 422
        assert resp.json()["issues"][0]["kind"] == "DuplicateTarget"

    def test_po_workflow(self, client):
        po = _create_po(client)
        assert po["totalAmount"] == 500.0

        resp = client.post(f"/api/purchase-orders/{po['id']}/transition",
                           json={"status": "pending_approval"})
        assert resp.json()["status"] == "pending_approval"

        locked = client.patch(f"/api/purchase-orders/{po['id']}", json={"name": "Renamed"})
        assert locked.status_code == 409

        invalid = client.post(f"/api/purchase-orders/{po['id']}/transition",
                              json={"status": "purchased"})
        assert invalid.status_code == 409

        approved = client.post(f"/api/purchase-orders/{po['id']}/transition", json={
            "status": "approved", "actorId": "adm", "actorName": "Bea", "comments": "ok",
        }).json()
        assert approved["approvedByName"] == "Bea"
        assert approved["adminComments"] == "ok"

    def test_unbalanced_submission(self, client):
        po = _create_po(client, organizations=[{"subOrgId": "outreach", "allocatedAmount": 250}])

        resp = client.post(f"/api/purchase-orders/{po['id']}/transition",
                           json={"status": "pending_approval"})

        assert resp.status_code == 422
        assert "Unbalanced" in {i["kind"] for i in resp.json()["issues"]}

    def test_unknown_status_rejected(self, client):
        po = _create_po(client)
        resp = client.post(f"/api/purchase-orders/{po['id']}/transition", json={"status": "shipped"})
        assert resp.status_code == 422

    def test_list_get_delete_po(self, client):
        po = _create_po(client)

        assert [p["id"] for p in client.get("/api/purchase-orders", params={"status": "draft"}).json()] == [po["id"]]
        assert client.get("/api/purchase-orders", params={"creatorId": "u2"}).json() == []
        assert client.get(f"/api/purchase-orders/{po['id']}").json()["name"] == "Robot parts"

        assert client.delete(f"/api/purchase-orders/{po['id']}").json()["deleted"] is True
        assert client.get(f"/api/purchase-orders/{po['id']}").status_code == 404

    def test_stats(self, client):
        _create_po(client)
        txn = _create_txn(client, 100.0)
        client.put(f"/api/transactions/{txn['id']}/allocations",
                   json={"allocations": [{"subOrgId": "ops", "amount": 60}]})

        stats = client.get("/api/stats").json()

        assert stats["totalPOs"] == 1
        assert stats["pendingPOs"] == 0
        assert stats["recentActivity"][0]["action"].endswith("updated")
        assert stats["unallocatedTotal"] == pytest.approx(40.0)
        ops = next(b for b in stats["budgets"] if b["id"] == "ops")
        assert ops["budgetSpent"] == 60.0
        assert ops["budgetRemaining"] == 8940.0

    def test_reconcile(self, client):
        data = client.post("/api/reconcile").json()
        assert data["sub_orgs_checked"] == 4
        assert data["changes"] == []

    def test_audit_trail(self, client):
        txn = _create_txn(client, 10.0)
        entries = client.get(f"/api/audit/transaction/{txn['id']}").json()
        assert [(e["action"], e["actor"]) for e in entries] == [("created", "dashboard")]

    def test_recent_audit_log(self, client):
        first = _create_txn(client, 10.0)
        second = _create_txn(client, 20.0)

        entries = client.get("/api/audit", params={"limit": 1}).json()
        assert [e["entity_id"] for e in entries] == [second["id"]]
        older = client.get("/api/audit", params={"limit": 1, "offset": 1}).json()
        assert [e["entity_id"] for e in older] == [first["id"]]

    def test_stats_budget_alerts(self, client):
        txn = _create_txn(client, 7000.0)
        client.put(f"/api/transactions/{txn['id']}/allocations",
                   json={"allocations": [{"subOrgId": "outreach", "amount": 7000}]})

        alerts = client.get("/api/stats").json()["budgetAlerts"]

        assert [(a["subOrgId"], a["title"]) for a in alerts] == [("outreach", "Budget Warning")]
