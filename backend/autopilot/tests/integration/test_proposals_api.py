"""
Integration tests for proposal submission and executed-action history.

Endpoints:
- POST /api/proposals
- GET  /api/autonomous-actions
- GET  /health
"""

import pytest


def seo_body(**overrides):
    body = {
        "actionType": "optimize_seo",
        "creditCost": 5,
        "payload": {"productId": "prod_1", "metaDescription": "Soft organic cotton tee"},
        "reasoning": "Meta description is empty",
        "estimatedImpact": {"organicClicks": "+8%"},
    }
    body.update(overrides)
    return body


class TestSubmitProposal:

    def test_autonomous_execution(self, client, agent_headers, admin_headers, fake_executor):
        response = client.post("/api/proposals", headers=agent_headers, json=seo_body())

        assert response.status_code == 201
        body = response.json()
        assert body["verdict"] == "allow_autonomous"
        assert body["rule"] == "within_limits"
        assert body["executedActionId"] is not None
        assert fake_executor.call_count == 1
        assert fake_executor.requests[0].payload["productId"] == "prod_1"

        approval = client.get(f"/api/pending-approvals/{body['approvalId']}", headers=admin_headers).json()
        assert approval["status"] == "approved"
        assert approval["reviewedBy"] == "system"
        assert approval["estimatedImpact"] == {"organicClicks": "+8%"}

    def test_over_limit_is_queued(self, client, agent_headers, admin_headers, fake_executor):
        client.put("/api/automation/settings", headers=admin_headers, json={"autonomousCreditLimit": 3})

        response = client.post("/api/proposals", headers=agent_headers, json=seo_body(creditCost=4))

        assert response.status_code == 201
        assert response.json()["verdict"] == "require_approval"
        assert response.json()["rule"] == "credit_cap"
        assert fake_executor.call_count == 0

    def test_duplicate_send_folded(self, client, agent_headers, admin_headers):
        client.put("/api/automation/settings", headers=admin_headers, json={"globalAutopilotEnabled": False})
        body = {
            "actionType": "send_cart_recovery",
            "creditCost": 1,
            "payload": {"cartId": "cart_9", "customerEmail": "sam@example.com"},
            "reasoning": "Abandoned cart",
        }

        first = client.post("/api/proposals", headers=agent_headers, json=body).json()
        second = client.post("/api/proposals", headers=agent_headers, json=body).json()

        assert second["deduplicated"] is True
        assert second["approvalId"] == first["approvalId"]

    @pytest.mark.parametrize("overrides", [
        {"actionType": "refund_order"},
        {"creditCost": -3},
        {"creditCost": "five"},
        {"payload": "not-an-object"},
        {"reasoning": ""},
        {"catalogSize": -10},
        {"cooldownSeconds": "1 day"},
    ])
    def test_malformed_is_400(self, client, agent_headers, admin_headers, overrides):
        response = client.post("/api/proposals", headers=agent_headers, json=seo_body(**overrides))

        assert response.status_code == 400
        assert client.get("/api/pending-approvals", headers=admin_headers).json()["total"] == 0

    def test_send_without_recipient_is_400(self, client, agent_headers, admin_headers, fake_executor):
        response = client.post(
            "/api/proposals",
            headers=agent_headers,
            json={
                "actionType": "send_campaign",
                "creditCost": 1,
                "payload": {"campaignId": "spring_sale", "channel": "sms"},
                "reasoning": "Spring sale launch",
            },
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Send payload is missing the recipient phone number"
        assert fake_executor.call_count == 0
        assert client.get("/api/pending-approvals", headers=admin_headers).json()["total"] == 0

    def test_rule_cooldown_queues_repeat_change(self, client, agent_headers, fake_executor):
        first = client.post("/api/proposals", headers=agent_headers, json=seo_body(ruleId="seo-meta-empty")).json()
        second = client.post("/api/proposals", headers=agent_headers, json=seo_body(ruleId="seo-meta-empty")).json()

        assert first["verdict"] == "allow_autonomous"
        assert second["verdict"] == "require_approval"
        assert second["rule"] == "cooldown"
        assert fake_executor.call_count == 1

    def test_catalog_limit_queues_new_product(self, client, agent_headers):
        client.post("/api/proposals", headers=agent_headers, json=seo_body(catalogSize=10))

        response = client.post(
            "/api/proposals",
            headers=agent_headers,
            json=seo_body(catalogSize=10, payload={"productId": "prod_2", "metaDescription": "Linen shirt"}),
        )

        assert response.json()["rule"] == "catalog_limit"
        assert "1/1 products, 5% limit" in response.json()["reason"]

    def test_merchant_cannot_submit(self, client, admin_headers):
        assert client.post("/api/proposals", headers=admin_headers, json=seo_body()).status_code == 403


class TestExecutedActions:

    def test_history_lists_executions(self, client, agent_headers, admin_headers):
        client.post("/api/proposals", headers=agent_headers, json=seo_body())

        client.put("/api/automation/settings", headers=admin_headers, json={"globalAutopilotEnabled": False})
        queued = client.post(
            "/api/proposals",
            headers=agent_headers,
            json=seo_body(actionType="adjust_price", payload={"productId": "prod_2", "newPrice": "15.00"}),
        ).json()
        client.post(f"/api/pending-approvals/{queued['approvalId']}/approve", headers=admin_headers)

        everything = client.get("/api/autonomous-actions", headers=admin_headers).json()
        autonomous = client.get("/api/autonomous-actions?autonomousOnly=true", headers=admin_headers).json()
        prices = client.get("/api/autonomous-actions?actionType=adjust_price", headers=admin_headers).json()

        assert everything["total"] == 2
        assert autonomous["total"] == 1
        assert autonomous["actions"][0]["actionType"] == "optimize_seo"
        assert autonomous["actions"][0]["autonomous"] is True
        assert prices["total"] == 1
        assert prices["actions"][0]["approvalId"] == queued["approvalId"]
        assert prices["actions"][0]["autonomous"] is False

    def test_invalid_action_type(self, client, admin_headers):
        assert client.get("/api/autonomous-actions?actionType=nope", headers=admin_headers).status_code == 400


def test_health_is_public(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
