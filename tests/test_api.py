from datetime import timedelta

import pytest

from payrouter.domain.protocols import StorageConflictError, StorageConnectionError
from tests.conftest import BASE_TIME


def provider_payload(name="stripe", **overrides):
    data = {
        "providerName": name,
        "priority": 50,
        "supportedCurrencies": ["USD", "EUR"],
        "supportedCountries": ["US"],
        "healthStatus": "healthy",
    }
    data.update(overrides)
    return data


def webhook_payload(**overrides):
    data = {
        "configId": "stripe",
        "webhookType": "payment_intent",
        "eventType": "payment_intent.succeeded",
        "url": "https://merchant.example.com/hooks",
        "secret": "whsec",
        "maxRetries": 3,
    }
    data.update(overrides)
    return data


class TestRoutingEndpoints:
    def test_route_selects_rule_target(self, client):
        # Arrange
        client.put("/providers/stripe", json=provider_payload("stripe", priority=10))
        client.put("/providers/adyen", json=provider_payload("adyen", priority=90))
        client.post("/rules", json={
            "name": "big-tickets",
            "targetProviderId": "stripe",
            "priority": 100,
            "conditions": [{"field": "amount", "operator": ">=", "value": 500}],
        })

        # Act
        big = client.post("/route", json={"amount": "750.00", "currency": "USD", "country": "US"})
        small = client.post("/route", json={"amount": "20.00", "currency": "USD", "country": "US"})

        # Assert
        assert big.status_code == 200
        assert big.json()["outcome"] == "selected"
        assert big.json()["provider"]["id"] == "stripe"
        assert big.json()["reason"] == "rule"
        assert small.json()["provider"]["id"] == "adyen"
        assert small.json()["reason"] == "priority_fallback"

    def test_route_without_providers(self, client):
        response = client.post("/route", json={"amount": "10", "currency": "USD", "country": "US"})

        assert response.status_code == 200
        assert response.json()["outcome"] == "no_provider"

    def test_invalid_context_is_rejected(self, client):
        response = client.post("/route", json={"currency": "USD"})

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"


class TestProviderEndpoints:
    def test_put_list_and_health(self, client):
        created = client.put("/providers/stripe", json=provider_payload())
        marked = client.post("/providers/stripe/health/unhealthy")
        listed = client.get("/providers")

        assert created.status_code == 200
        assert set(created.json()["supportedCurrencies"]) == {"USD", "EUR"}
        assert marked.json()["healthStatus"] == "unhealthy"
        assert [p["id"] for p in listed.json()] == ["stripe"]

    def test_duplicate_name_conflicts(self, client):
        client.put("/providers/stripe", json=provider_payload("stripe"))

        response = client.put("/providers/stripe-2", json=provider_payload("STRIPE"))

        assert response.status_code == 409

    def test_unknown_provider(self, client):
        assert client.post("/providers/missing/health/healthy").status_code == 404
        assert client.delete("/providers/missing").status_code == 404


class TestRuleEndpoints:
    def test_unknown_condition_field_is_rejected(self, client):
        response = client.post("/rules", json={
            "name": "bad",
            "targetProviderId": "stripe",
            "conditions": [{"field": "merchant_category", "operator": "eq", "value": "5411"}],
        })

        assert response.status_code == 400

    def test_rule_lifecycle(self, client):
        created = client.post("/rules", json={"name": "r1", "targetProviderId": "stripe"})
        rule_id = created.json()["id"]

        patched = client.patch(f"/rules/{rule_id}", params={"updatedBy": "ops"}, json={"priority": 7})
        fetched = client.get(f"/rules/{rule_id}")
        deleted = client.delete(f"/rules/{rule_id}")
        missing = client.get(f"/rules/{rule_id}")

        assert created.status_code == 201
        assert patched.json()["priority"] == 7
        assert patched.json()["updatedBy"] == "ops"
        assert fetched.json()["priority"] == 7
        assert deleted.status_code == 204
        assert missing.status_code == 404

    def test_empty_patch_is_a_bad_request(self, client):
        rule_id = client.post("/rules", json={"name": "r1", "targetProviderId": "stripe"}).json()["id"]

        response = client.patch(f"/rules/{rule_id}", json={})

        assert response.status_code == 400

    def test_list_and_match(self, client):
        client.post("/rules", json={"name": "active", "targetProviderId": "stripe"})
        client.post("/rules", json={"name": "inactive", "targetProviderId": "stripe", "isActive": False})

        active = client.get("/rules", params={"isActive": "true"})
        matched = client.post("/rules/match", json={"amount": "5", "currency": "USD", "country": "US"})

        assert [r["name"] for r in active.json()] == ["active"]
        assert [r["name"] for r in matched.json()] == ["active"]

    def test_rule_stats(self, client):
        client.post("/rules", json={"name": "r1", "targetProviderId": "stripe"})
        client.post("/analytics/events", json={
            "configId": "stripe",
            "transactionId": "t1",
            "providerName": "stripe",
            "amount": "12.50",
            "status": "success",
        })

        stats = client.get("/rules/stats").json()

        assert stats[0]["transactionCount"] == 1
        assert stats[0]["successRate"] == 100.0


class TestWebhookEndpoints:
    def test_secret_is_never_returned(self, client):
        created = client.post("/webhooks", json=webhook_payload())
        listed = client.get("/webhooks")

        assert created.status_code == 201
        assert "secret" not in created.json()
        assert created.json()["hasSecret"] is True
        assert all("secret" not in w for w in listed.json())

    def test_trigger_and_reset(self, client):
        webhook_id = client.post("/webhooks", json=webhook_payload(maxRetries=1)).json()["id"]

        failed = client.post(f"/webhooks/{webhook_id}/trigger", json={"success": False, "failureReason": "timeout"})
        reset = client.post(f"/webhooks/{webhook_id}/reset")

        assert failed.json()["state"] == "exhausted"
        assert failed.json()["failureReason"] == "timeout"
        assert reset.json()["retryCount"] == 0

    def test_due_and_stats(self, client, clock):
        webhook_id = client.post("/webhooks", json=webhook_payload()).json()["id"]
        client.post(f"/webhooks/{webhook_id}/trigger", json={"success": False, "failureReason": "timeout"})
        clock.advance(minutes=10)

        due = client.get("/webhooks/due").json()
        stats = client.get("/webhooks/stats").json()

        assert [w["id"] for w in due] == [webhook_id]
        assert stats["failedWebhooks"] == 1

    def test_unknown_webhook(self, client):
        response = client.post("/webhooks/missing/trigger", json={"success": True})

        assert response.status_code == 404


class TestAnalyticsEndpoints:
    def test_record_and_query(self, client):
        for i in range(4):
            client.post("/analytics/events", json={
                "transactionId": f"t{i}",
                "providerName": "stripe",
                "amount": "10",
                "status": "success" if i else "failed",
                "responseTimeMs": 100 * (i + 1),
                "errorCode": None if i else "card_declined",
            })

        events = client.get("/analytics/events", params={"providerName": "stripe"}).json()
        rate = client.get("/analytics/success-rate").json()
        errors = client.get("/analytics/errors").json()
        performance = client.get("/analytics/performance").json()
        volume = client.get("/analytics/volume", params={"period": "hour"}).json()

        assert len(events) == 4
        assert rate[0]["successRate"] == 75.0
        assert errors[0]["errorCode"] == "card_declined"
        assert performance[0]["maxResponseTime"] == 400
        assert volume[0]["transactionCount"] == 4

    def test_cleanup(self, client):
        client.post("/analytics/events", json={
            "transactionId": "old",
            "providerName": "stripe",
            "amount": "10",
            "status": "success",
            "createdAt": (BASE_TIME - timedelta(days=40)).isoformat(),
        })

        response = client.delete("/analytics/events", params={"daysToKeep": 30})

        assert response.json() == {"deleted": 1, "daysToKeep": 30}

    def test_negative_retention_is_rejected(self, client):
        assert client.delete("/analytics/events", params={"daysToKeep": -1}).status_code == 400


class TestStorageFailures:
    def test_storage_outage_is_service_unavailable(self, client, provider_store):
        async def broken():
            raise StorageConnectionError("redis down")

        provider_store.list_providers = broken

        response = client.get("/providers")

        assert response.status_code == 503

    def test_storage_conflict(self, client, webhook_store):
        async def conflicting(*args):
            raise StorageConflictError("watched key changed")

        webhook_store.reset_retries = conflicting

        response = client.post("/webhooks/any/reset")

        assert response.status_code == 409
