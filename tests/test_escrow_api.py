"""
Escrow API route tests through the FastAPI test client
"""

import pytest
from fastapi.testclient import TestClient

from routes.escrow_api import create_app

from conftest import ADMIN, BRAND, CREATOR, transient_error


def _headers(actor):
    headers = {"X-Account-Id": actor.account_id}
    if actor.is_admin:
        headers["X-Admin"] = "true"
    return headers


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


@pytest.fixture
def funded_deal(client):
    created = client.post("/api/escrow/deals", headers=_headers(BRAND), json={
        "creator_id": CREATOR.account_id,
        "title": "Unboxing video",
        "milestones": [{"title": "Draft", "amount": 40_000}, {"title": "Final", "amount": 60_000}],
    })
    assert created.status_code == 201
    deal_id = created.json()["deal_id"]
    client.post(f"/api/escrow/deals/{deal_id}/accept", headers=_headers(CREATOR),
                json={"destination_account": "acct_creator_1"})
    funded = client.post(f"/api/escrow/deals/{deal_id}/fund", headers=_headers(BRAND))
    assert funded.status_code == 200
    return funded.json()


class TestEscrowApi:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_missing_identity_is_unauthorized(self, client):
        assert client.get("/api/escrow/deals").status_code == 401

    def test_full_happy_path(self, client, funded_deal):
        milestone_id = funded_deal["milestones"][0]["milestone_id"]

        submitted = client.post(f"/api/escrow/milestones/{milestone_id}/submit", headers=_headers(CREATOR),
                                json={"description": "Draft cut", "external_url": "https://cdn.example.com/d.mp4"})
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "submitted"

        approved = client.post(f"/api/escrow/milestones/{milestone_id}/approve", headers=_headers(BRAND),
                               json={"feedback": "Looks good"})
        assert approved.status_code == 200
        body = approved.json()
        assert body["milestone"]["status"] == "released"
        assert body["payout"]["status"] == "completed"

        payouts = client.get("/api/escrow/payouts", headers=_headers(CREATOR)).json()["payouts"]
        assert [p["payout_id"] for p in payouts] == [body["payout"]["payout_id"]]

    def test_validation_error_is_400(self, client, funded_deal):
        milestone_id = funded_deal["milestones"][0]["milestone_id"]
        response = client.post(f"/api/escrow/milestones/{milestone_id}/submit", headers=_headers(CREATOR),
                               json={"description": "No payload"})
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_authorization_error_is_403(self, client, funded_deal):
        response = client.get(f"/api/escrow/deals/{funded_deal['deal_id']}", headers={"X-Account-Id": "intruder"})
        assert response.status_code == 403

    def test_unknown_deal_is_404(self, client):
        assert client.get("/api/escrow/deals/DL-NOPE", headers=_headers(BRAND)).status_code == 404

    def test_invalid_transition_is_409(self, client, funded_deal):
        milestone_id = funded_deal["milestones"][0]["milestone_id"]
        response = client.post(f"/api/escrow/milestones/{milestone_id}/approve", headers=_headers(BRAND), json={})
        assert response.status_code == 409
        assert response.json()["current"] == "pending"

    def test_limit_exceeded_is_402(self, client):
        payload = {"creator_id": CREATOR.account_id, "title": "Post",
                   "milestones": [{"title": "Post", "amount": 1_000}]}
        for _ in range(3):
            assert client.post("/api/escrow/deals", headers=_headers(BRAND), json=payload).status_code == 201

        response = client.post("/api/escrow/deals", headers=_headers(BRAND), json=payload)
        assert response.status_code == 402
        assert response.json()["upgrade_tier"] == "starter"

    def test_transient_payment_failure_is_503(self, client, funded_deal, payment):
        milestone_id = funded_deal["milestones"][0]["milestone_id"]
        client.post(f"/api/escrow/milestones/{milestone_id}/submit", headers=_headers(CREATOR),
                    json={"description": "Draft", "text_body": "caption copy"})
        payment.release_failures.extend([transient_error()] * 3)

        response = client.post(f"/api/escrow/milestones/{milestone_id}/approve", headers=_headers(BRAND), json={})
        assert response.status_code == 503
        assert response.json()["retryable"] is True

        retried = client.post(f"/api/escrow/milestones/{milestone_id}/retry-release", headers=_headers(BRAND))
        assert retried.status_code == 200
        assert retried.json()["milestone"]["status"] == "released"

    def test_dispute_flow(self, client, funded_deal):
        milestone_id = funded_deal["milestones"][0]["milestone_id"]
        client.post(f"/api/escrow/milestones/{milestone_id}/submit", headers=_headers(CREATOR),
                    json={"description": "Draft", "text_body": "caption copy"})

        raised = client.post(f"/api/escrow/milestones/{milestone_id}/disputes", headers=_headers(CREATOR),
                             json={"reason": "No response from brand", "evidence": ["email-1"]})
        assert raised.status_code == 201
        dispute_id = raised.json()["dispute_id"]

        forbidden = client.post(f"/api/escrow/disputes/{dispute_id}/resolve", headers=_headers(BRAND),
                                json={"outcome": "refund"})
        assert forbidden.status_code == 403

        resolved = client.post(f"/api/escrow/disputes/{dispute_id}/resolve", headers=_headers(ADMIN),
                               json={"outcome": "partial_release", "amount": 20_000})
        assert resolved.status_code == 200
        assert resolved.json()["released_amount"] == 20_000
        assert resolved.json()["refunded_amount"] == 20_000

        stats = client.get("/api/escrow/disputes/stats", headers=_headers(ADMIN)).json()
        assert stats["resolved"] == 1

    def test_usage_and_plan(self, client):
        plan_url = f"/api/escrow/accounts/{BRAND.account_id}/plan"
        upgraded = client.put(plan_url, headers=_headers(ADMIN), json={"tier": "professional"})
        assert upgraded.json()["plan_tier"] == "professional"
        assert client.get("/api/escrow/usage", headers=_headers(BRAND)).json()["plan_tier"] == "professional"
        assert client.put(plan_url, headers=_headers(ADMIN), json={"tier": "platinum"}).status_code == 400

    def test_account_cannot_change_its_own_plan(self, client):
        plan_url = f"/api/escrow/accounts/{BRAND.account_id}/plan"
        response = client.put(plan_url, headers=_headers(BRAND), json={"tier": "enterprise"})
        assert response.status_code == 403
        assert client.get("/api/escrow/usage", headers=_headers(BRAND)).json()["plan_tier"] == "free"
