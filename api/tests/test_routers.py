"""HTTP tests for the entitlement, seat, usage and health routers.

Requests go through the full FastAPI app (middleware and exception
handlers included) with the session and cache dependencies overridden.
"""

from __future__ import annotations

import pytest
from entitlement_core.metering import UsageEventInput

WORKSPACE_ID = "ws-test"
BASE = f"/api/v1/workspaces/{WORKSPACE_ID}/customers/cus_1"


class TestEntitlementRoutes:
    @pytest.mark.asyncio
    async def test_list_entitlements(self, client, seed_customer, grant):
        await seed_customer()
        await grant("sso", "true", "boolean")
        await grant("projects", "", "unlimited")

        response = await client.get(f"{BASE}/entitlements")

        assert response.status_code == 200
        body = response.json()
        assert body["customer_id"] == "cus_1"
        assert body["active_subscription_ids"] == ["sub_1"]
        by_key = {e["feature_key"]: e for e in body["entitlements"]}
        assert by_key["sso"]["value"] is True
        # Infinity is not valid JSON; unlimited values render as null.
        assert by_key["projects"] == {
            "feature_key": "projects",
            "has_access": True,
            "value": None,
            "value_type": "unlimited",
        }

    @pytest.mark.asyncio
    async def test_unknown_customer_is_404(self, client):
        response = await client.get(f"/api/v1/workspaces/{WORKSPACE_ID}/customers/nobody/entitlements")
        assert response.status_code == 404
        assert response.json() == {"detail": "Customer nobody not found"}

    @pytest.mark.asyncio
    async def test_check_single(self, client, seed_customer, grant):
        await seed_customer()
        await grant("api_calls", "1000", "number")

        response = await client.get(f"{BASE}/entitlements/check/api_calls")

        assert response.status_code == 200
        assert response.json()["value"] == 1000

    @pytest.mark.asyncio
    async def test_check_multiple(self, client, seed_customer, grant):
        await seed_customer()
        await grant("sso", "true", "boolean")

        response = await client.post(f"{BASE}/entitlements/check", json={"feature_keys": ["audit", "sso"]})

        assert response.status_code == 200
        assert [(c["feature_key"], c["has_access"]) for c in response.json()] == [("audit", False), ("sso", True)]

    @pytest.mark.asyncio
    async def test_check_multiple_requires_a_key(self, client):
        response = await client.post(f"{BASE}/entitlements/check", json={"feature_keys": []})
        assert response.status_code == 422


class TestSeatRoutes:
    @pytest.mark.asyncio
    async def test_assign_until_full(self, client, seed_customer, grant):
        await seed_customer()
        await grant("seats", "1", "number")

        created = await client.post(f"{BASE}/seats/seats", json={"user_id": "u1", "user_email": "u1@example.com"})
        rejected = await client.post(f"{BASE}/seats/seats", json={"user_id": "u2"})

        assert created.status_code == 201
        assert created.json()["user_email"] == "u1@example.com"
        assert rejected.status_code == 400
        assert rejected.json() == {"detail": "No available seats for seats. 1/1 seats used."}

    @pytest.mark.asyncio
    async def test_usage_and_unassign(self, client, seed_customer, grant):
        await seed_customer()
        await grant("seats", "3", "number")
        await client.post(f"{BASE}/seats/seats", json={"user_id": "u1"})

        usage = await client.get(f"{BASE}/seats/seats")
        deleted = await client.delete(f"{BASE}/seats/seats/u1")
        missing = await client.delete(f"{BASE}/seats/seats/u1")

        assert usage.json()["used_seats"] == 1
        assert usage.json()["available_seats"] == 2
        assert deleted.status_code == 204
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_list_all_seat_usage(self, client, seed_customer, grant):
        await seed_customer()
        await grant("seats", "3", "number")
        await grant("viewers", "", "unlimited")

        response = await client.get(f"{BASE}/seats")

        by_key = {s["feature_key"]: s for s in response.json()}
        assert by_key["viewers"]["is_unlimited"] is True
        assert by_key["viewers"]["total_seats"] is None

    @pytest.mark.asyncio
    async def test_bulk(self, client, seed_customer, grant):
        await seed_customer()
        await grant("seats", "2", "number")
        await client.post(f"{BASE}/seats/seats", json={"user_id": "u1"})

        response = await client.post(
            f"{BASE}/seats/seats/bulk",
            json={"unassign": ["u1", "ghost"], "assign": [{"user_id": "u2"}, {"user_id": "u3"}, {"user_id": "u4"}]},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["unassigned"] == 1
        assert [a["user_id"] for a in body["assigned"]] == ["u2", "u3"]
        assert sorted(e["user_id"] for e in body["errors"]) == ["ghost", "u4"]

    @pytest.mark.asyncio
    async def test_transfer(self, client, seed_customer, grant):
        await seed_customer()
        await grant("seats", "1", "number")
        await client.post(f"{BASE}/seats/seats", json={"user_id": "u1"})

        moved = await client.post(f"{BASE}/seats/seats/transfer", json={"from_user_id": "u1", "to_user_id": "u2"})
        missing = await client.post(f"{BASE}/seats/seats/transfer", json={"from_user_id": "u1", "to_user_id": "u3"})

        assert moved.status_code == 200
        assert moved.json()["user_id"] == "u2"
        assert missing.status_code == 404


class TestUsageRoutes:
    @pytest.mark.asyncio
    async def test_record_then_deny(self, client, seed_customer, grant):
        await seed_customer()
        await grant("api_calls", "10", "number")

        first = await client.post(f"{BASE}/usage/api_calls", json={"quantity": 8})
        second = await client.post(f"{BASE}/usage/api_calls", json={"quantity": 3})

        assert first.status_code == 201
        assert first.json()["allowed"] is True
        assert first.json()["current_usage"] == 0
        assert second.status_code == 403
        assert second.json() == {"detail": "Limit exceeded for api_calls: 8/10 used"}

        usage = await client.get(f"{BASE}/usage/api_calls")
        assert usage.json()["total_quantity"] == 8
        assert usage.json()["event_count"] == 1

    @pytest.mark.asyncio
    async def test_idempotent_recording(self, client, seed_customer, grant):
        await seed_customer()
        await grant("api_calls", "10", "number")

        for _ in range(2):
            await client.post(f"{BASE}/usage/api_calls", json={"quantity": 2, "idempotency_key": "req-1"})

        usage = await client.get(f"{BASE}/usage/api_calls")
        assert usage.json()["total_quantity"] == 2

    @pytest.mark.asyncio
    async def test_unlimited_feature_renders_null_limits(self, client, seed_customer, grant):
        await seed_customer()
        await grant("api_calls", "", "unlimited")

        response = await client.post(f"{BASE}/usage/api_calls", json={"quantity": 5})

        assert response.status_code == 201
        assert response.json()["limit"] is None
        assert response.json()["remaining"] is None

    @pytest.mark.asyncio
    async def test_usage_summary(self, client, seed_customer, grant, ledger):
        await seed_customer()
        await grant("api_calls", "1000", "number")
        await ledger.ingest_event(
            WORKSPACE_ID, UsageEventInput(customer_id="cus_1", metric_key="api_calls", quantity=250)
        )

        response = await client.get(f"{BASE}/usage")

        body = response.json()
        assert response.status_code == 200
        assert body["features"] == [
            {"feature_key": "api_calls", "current_usage": 250, "limit": 1000, "remaining": 750, "percent_used": 25}
        ]


class TestInfrastructureRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/v1/health")
        body = response.json()
        assert response.status_code == 200
        assert body["db"] == "ok"
        assert "hit_rate" in body["cache"]

    @pytest.mark.asyncio
    async def test_ready(self, client):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_metrics_exposes_engine_counters(self, client, seed_customer, grant):
        await seed_customer()
        await grant("sso", "true", "boolean")
        await client.get(f"{BASE}/entitlements/check/sso")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "entitlement_cache_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client):
        response = await client.get("/api/v1/health", headers={"X-Correlation-ID": "abc-123"})
        assert response.headers["X-Correlation-ID"] == "abc-123"
