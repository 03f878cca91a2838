"""HTTP surface tests: envelopes, status codes and the decision flow end to end."""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from workflow_engine.database import Base, get_db, get_session_factory
from workflow_engine.errors import StoreUnavailableError
from workflow_engine.main import app
from workflow_engine.services.store import WorkItemStore
from workflow_engine.timeutil import utcnow

ACTOR = {"X-Forwarded-Preferred-Username": "pricing.manager"}


@pytest.fixture
def client():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    engine.dispose()


def create(client, **overrides):
    body = {
        "kind": "compliance",
        "category": "Price Change",
        "title": "Coffee Beans 1kg",
        "description": "25.00 -> 28.00",
        "severity": "medium",
        "requestedBy": "John D.",
    }
    body.update(overrides)
    response = client.post("/api/workitems", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def decide(client, work_item_id, action, headers=ACTOR, **extra):
    return client.post(f"/api/workitems/{work_item_id}/decision", json={"action": action, **extra}, headers=headers)


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "service": "workflow-engine"}


class TestWorkItemEndpoints:

    def test_create_returns_camel_case_envelope(self, client):
        data = create(client, approverChain=["CFO", "Head of Merch"], linkedEntities={"productId": "p-1"})

        assert data["status"] == "Pending"
        assert data["currentStep"] == 0
        assert data["currentApprover"] == "CFO"
        assert data["approverChain"] == ["CFO", "Head of Merch"]
        assert data["linkedEntities"] == {"productId": "p-1"}
        assert data["slaBreached"] is False
        assert data["version"] == 1

    def test_create_rejects_off_scale_severity(self, client):
        response = client.post("/api/workitems", json={
            "kind": "merch_alert", "category": "Stock", "title": "Milk", "severity": "high", "requestedBy": "bot",
        })
        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "severity"

    def test_get_one_and_unknown(self, client):
        item = create(client)

        assert client.get(f"/api/workitems/{item['id']}").json()["data"]["title"] == "Coffee Beans 1kg"
        missing = client.get("/api/workitems/nope")
        assert missing.status_code == 404
        assert missing.json()["detail"]["code"] == "NOT_FOUND"

    def test_list_defaults_to_active_ranked(self, client):
        low = create(client, title="Low", severity="low")
        high = create(client, title="High", severity="high")
        done = create(client, title="Done")
        decide(client, done["id"], "Approve")

        body = client.get("/api/workitems").json()

        assert body["success"] is True
        assert [item["id"] for item in body["data"]] == [high["id"], low["id"]]
        assert body["meta"] == {"total": 2, "page": 1, "limit": 20, "pages": 1}

        everything = client.get("/api/workitems", params={"status": "all"}).json()
        assert everything["meta"]["total"] == 3

    def test_list_filters_and_paging(self, client):
        for n in range(3):
            create(client, title=f"SKU {n}")
        create(client, kind="merch_alert", category="Stock", title="Low stock", severity="critical")

        alerts = client.get("/api/workitems", params={"kind": "merch_alert"}).json()
        assert [item["title"] for item in alerts["data"]] == ["Low stock"]

        paged = client.get("/api/workitems", params={"kind": "compliance", "sort": "title", "limit": 2, "page": 2}).json()
        assert [item["title"] for item in paged["data"]] == ["SKU 2"]
        assert paged["meta"]["pages"] == 2

        search = client.get("/api/workitems", params={"search": "sku 1"}).json()
        assert [item["title"] for item in search["data"]] == ["SKU 1"]

    def test_date_only_upper_bound_includes_today(self, client):
        create(client)
        today = utcnow().date()

        assert client.get("/api/workitems", params={"dateTo": today.isoformat()}).json()["meta"]["total"] == 1
        yesterday = (today - timedelta(days=1)).isoformat()
        assert client.get("/api/workitems", params={"dateTo": yesterday}).json()["meta"]["total"] == 0

    def test_snoozed_status_filter(self, client):
        snoozed = create(client, kind="merch_alert", category="Stock", title="Low stock: Milk", severity="warning")
        create(client, kind="merch_alert", category="Stock", title="Low stock: Eggs", severity="warning")
        decide(client, snoozed["id"], "Snooze", snoozeMinutes=60)

        listed = client.get("/api/workitems", params={"status": "snoozed"}).json()

        assert [item["id"] for item in listed["data"]] == [snoozed["id"]]

    def test_status_default_is_documented(self, client):
        parameters = client.get("/openapi.json").json()["paths"]["/api/workitems"]["get"]["parameters"]
        status = next(parameter for parameter in parameters if parameter["name"] == "status")

        assert status["schema"]["default"] == "active"
        assert "all" in status["description"]

    def test_bad_sort_is_422(self, client):
        response = client.get("/api/workitems", params={"sort": "password"})
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_FAILED"

    def test_summary(self, client):
        create(client, slaDeadline=(utcnow() - timedelta(hours=1)).isoformat())
        approved = create(client)
        rejected = create(client)
        decide(client, approved["id"], "Approve")
        decide(client, rejected["id"], "Reject", reason="Margin too low")

        data = client.get("/api/workitems/summary").json()["data"]

        assert data == {"pendingCount": 1, "approvedTodayCount": 1, "rejectedTodayCount": 1, "breachedCount": 1}

    def test_breached_flag_in_listing(self, client):
        item = create(client, slaDeadline=(utcnow() - timedelta(minutes=5)).isoformat())
        listed = client.get("/api/workitems").json()["data"]
        assert [(i["id"], i["slaBreached"]) for i in listed] == [(item["id"], True)]


class TestDecisionEndpoint:

    def test_approver_chain_flow(self, client):
        item = create(client, approverChain=["A", "B"])

        first = decide(client, item["id"], "Approve", headers={"X-Forwarded-Preferred-Username": "A"})
        assert first.status_code == 200
        assert first.json()["data"]["status"] == "Pending"
        assert first.json()["data"]["currentApprover"] == "B"

        second = decide(client, item["id"], "Approve", headers={"X-Forwarded-Preferred-Username": "B"})
        assert second.json()["data"]["status"] == "Approved"
        assert second.json()["data"]["currentApprover"] is None

        history = client.get(f"/api/workitems/{item['id']}/history").json()["data"]
        assert [(e["action"], e["actor"]) for e in history] == [("Created", "John D."), ("Approved", "A"), ("Approved", "B")]

    def test_reject_without_reason_is_422(self, client):
        item = create(client)

        response = decide(client, item["id"], "Reject", reason="  ")

        assert response.status_code == 422
        assert response.json()["detail"] == {
            "code": "VALIDATION_FAILED",
            "message": "A rejection reason is required",
            "field": "reason",
        }
        assert client.get(f"/api/workitems/{item['id']}").json()["data"]["status"] == "Pending"

    def test_decision_on_terminal_item_is_409(self, client):
        item = create(client)
        decide(client, item["id"], "Reject", reason="Margin too low")

        response = decide(client, item["id"], "Approve")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "ALREADY_TERMINAL"

    def test_unknown_item_is_404(self, client):
        response = decide(client, "nope", "Approve")
        assert response.status_code == 404

    def test_actor_header_is_required(self, client):
        item = create(client)
        response = decide(client, item["id"], "Approve", headers={})
        assert response.status_code == 422

    def test_snooze_alert(self, client):
        item = create(client, kind="merch_alert", category="Stock", severity="warning")

        response = decide(client, item["id"], "Snooze", snoozeMinutes=90)

        data = response.json()["data"]
        assert data["status"] == "Pending"
        assert data["snoozedUntil"] is not None

    def test_recon_resolution(self, client):
        item = create(client, kind="recon_exception", category="gateway_mismatch", severity="high")
        decide(client, item["id"], "Investigate")

        response = decide(client, item["id"], "Resolve", resolutionType="retry_match", note="Matched on retry")

        data = response.json()["data"]
        assert data["status"] == "Resolved"
        assert data["resolutionType"] == "retry_match"
        assert data["decisionNote"] == "Matched on retry"


class TestBulkEndpoint:

    def test_bulk_reports_each_id(self, client):
        items = [create(client, title=f"SKU {n}") for n in range(3)]
        decide(client, items[1]["id"], "Reject", reason="Duplicate")
        ids = [item["id"] for item in items] + ["nope"]

        response = client.post("/api/workitems/bulk-decision", json={"ids": ids, "action": "Approve"}, headers=ACTOR)

        assert response.status_code == 200
        body = response.json()
        assert [r["id"] for r in body["data"]] == ids
        assert [r["outcome"] for r in body["data"]] == ["Success", "Error", "Success", "Error"]
        assert body["data"][0]["status"] == "Approved"
        assert body["data"][1]["error"]["code"] == "ALREADY_TERMINAL"
        assert body["data"][3]["error"]["code"] == "NOT_FOUND"
        assert body["meta"] == {"total": 4, "succeeded": 2, "failed": 2, "outcome": "partial"}

        bulk_entries = client.get("/api/audit", params={"eventType": "BulkApproved"}).json()
        assert bulk_entries["meta"]["total"] == 2

    def test_empty_id_list_is_rejected(self, client):
        response = client.post("/api/workitems/bulk-decision", json={"ids": [], "action": "Approve"}, headers=ACTOR)
        assert response.status_code == 422

    def test_expire_breached(self, client):
        overdue = create(client, slaDeadline=(utcnow() - timedelta(hours=1)).isoformat())
        create(client, slaDeadline=(utcnow() + timedelta(hours=1)).isoformat())

        response = client.post("/api/workitems/expire-breached", headers={"X-Forwarded-Preferred-Username": "scheduler"})

        assert response.json()["data"] == [overdue["id"]]
        assert client.get(f"/api/workitems/{overdue['id']}").json()["data"]["status"] == "Expired"


class TestAuditEndpoints:

    def test_search_and_filter(self, client):
        item = create(client)
        decide(client, item["id"], "Reject", reason="Margin too low")

        by_entity = client.get("/api/audit", params={"entity": item["id"]}).json()
        assert [e["action"] for e in by_entity["data"]] == ["Rejected", "Created"]
        assert by_entity["meta"]["total"] == 2

        by_user = client.get("/api/audit", params={"user": "pricing.manager"}).json()
        assert [e["resultSummary"] for e in by_user["data"]] == ["Rejected: Margin too low"]

        by_text = client.get("/api/audit", params={"search": "margin"}).json()
        assert by_text["meta"]["total"] == 1

    def test_date_only_upper_bound_includes_today(self, client):
        create(client)
        today = utcnow().date().isoformat()

        assert client.get("/api/audit", params={"dateTo": today}).json()["meta"]["total"] == 1

    def test_record_violation(self, client):
        response = client.post(
            "/api/audit/checks",
            json={"action": "Violation", "summary": "Price below cost", "entityLabel": "Price Change: Milk"},
            headers={"X-Forwarded-Preferred-Username": "policy-bot"},
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["result"] == "Fail"
        assert data["actor"] == "policy-bot"

        failures = client.get("/api/audit", params={"result": "Fail"}).json()
        assert failures["meta"]["total"] == 1

    def test_transition_actions_cannot_be_posted(self, client):
        response = client.post(
            "/api/audit/checks", json={"action": "Approved", "summary": "by hand"}, headers=ACTOR,
        )
        assert response.status_code == 422


def test_store_failure_maps_to_503(client, monkeypatch):
    def broken(self, *args, **kwargs):
        raise StoreUnavailableError("Store unavailable: OperationalError")

    monkeypatch.setattr(WorkItemStore, "summary", broken)

    response = client.get("/api/workitems/summary")

    assert response.status_code == 503
    assert response.json() == {
        "success": False,
        "error": {"code": "STORE_UNAVAILABLE", "message": "Store unavailable: OperationalError"},
    }
