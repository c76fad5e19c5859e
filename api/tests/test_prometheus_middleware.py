"""Tests for api/api/middleware/prometheus.py

Covers:
- Path normalisation (workspace, customer, feature and user segments)
- Engine counters registered under their exported names
- Skipped paths (metrics, docs, favicon)
- Request counters recorded through the app
"""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from api.middleware.prometheus import _SKIP_PATHS, _normalise_path

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------


class TestPathNormalisation:
    """Verify _normalise_path collapses path parameters."""

    def test_entitlement_listing(self) -> None:
        assert (
            _normalise_path("/api/v1/workspaces/ws_1/customers/cus_8f2a/entitlements")
            == "/api/v1/workspaces/{id}/customers/{id}/entitlements"
        )

    def test_feature_check(self) -> None:
        assert (
            _normalise_path("/api/v1/workspaces/ws_1/customers/cus_1/entitlements/check/sso")
            == "/api/v1/workspaces/{id}/customers/{id}/entitlements/check/{id}"
        )

    def test_usage_feature(self) -> None:
        assert (
            _normalise_path("/api/v1/workspaces/ws_1/customers/cus_1/usage/api_calls")
            == "/api/v1/workspaces/{id}/customers/{id}/usage/{id}"
        )

    def test_seat_feature(self) -> None:
        assert (
            _normalise_path("/api/v1/workspaces/ws_1/customers/cus_1/seats/editors")
            == "/api/v1/workspaces/{id}/customers/{id}/seats/{id}"
        )

    def test_seat_user_collapsed(self) -> None:
        """The user id after a seat feature key is an identifier too."""
        assert (
            _normalise_path("/api/v1/workspaces/ws_1/customers/cus_1/seats/editors/user-42")
            == "/api/v1/workspaces/{id}/customers/{id}/seats/{id}/{id}"
        )

    @pytest.mark.parametrize("action", ["bulk", "transfer"])
    def test_seat_actions_kept(self, action: str) -> None:
        assert (
            _normalise_path(f"/api/v1/workspaces/ws_1/customers/cus_1/seats/editors/{action}")
            == f"/api/v1/workspaces/{{id}}/customers/{{id}}/seats/{{id}}/{action}"
        )

    def test_uuid_collapsed(self) -> None:
        assert _normalise_path("/probe/550e8400-e29b-41d4-a716-446655440000") == "/probe/{id}"

    def test_numeric_segment_collapsed(self) -> None:
        assert _normalise_path("/probe/12345") == "/probe/{id}"

    def test_static_paths_unchanged(self) -> None:
        assert _normalise_path("/api/v1/health") == "/api/v1/health"
        assert _normalise_path("/ready") == "/ready"
        assert _normalise_path("/") == "/"


# ---------------------------------------------------------------------------
# Metric registration
# ---------------------------------------------------------------------------


class TestMetricsRegistered:
    """The exported metric families exist in the default registry."""

    @pytest.mark.parametrize(
        "name",
        [
            "entitlements_http_requests",
            "entitlements_http_request_duration_seconds",
            "entitlement_enforcement_decisions",
            "entitlement_cache_requests",
            "entitlement_seat_operations",
        ],
    )
    def test_family_registered(self, name: str) -> None:
        names = {metric.name for metric in REGISTRY.collect()}
        assert name in names


class TestSkipPaths:
    def test_skip_paths(self) -> None:
        for path in ("/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"):
            assert path in _SKIP_PATHS


# ---------------------------------------------------------------------------
# Request recording
# ---------------------------------------------------------------------------


class TestRequestRecording:
    """Requests through the app increment the labelled counter."""

    @pytest.mark.asyncio
    async def test_request_counted_with_normalised_path(self, client) -> None:
        labels = {"method": "GET", "path": "/api/v1/health", "status_code": "200"}
        before = REGISTRY.get_sample_value("entitlements_http_requests_total", labels) or 0.0

        await client.get("/api/v1/health")

        after = REGISTRY.get_sample_value("entitlements_http_requests_total", labels)
        assert after == before + 1

    @pytest.mark.asyncio
    async def test_metrics_scrape_not_counted(self, client) -> None:
        labels = {"method": "GET", "path": "/metrics", "status_code": "200"}

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "# TYPE entitlements_http_requests_total counter" in response.text
        assert REGISTRY.get_sample_value("entitlements_http_requests_total", labels) is None
