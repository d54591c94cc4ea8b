"""Tests for appbase_api/middleware/prometheus.py

Covers:
- Path normalisation (app segments, UUIDs, hex IDs, numeric segments)
- Counter increments for HTTP requests
- Skipped paths
- The /metrics scrape endpoint
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from prometheus_client import REGISTRY

from appbase_api.middleware.prometheus import _normalise_path

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------


class TestPathNormalisation:
    """Verify _normalise_path collapses path parameters."""

    def test_app_segment_collapsed(self) -> None:
        """Per-app paths share one label value."""
        assert _normalise_path("/api/v1/apps/my-app/me") == "/api/v1/apps/{app_id}/me"

    def test_auth_app_segment_collapsed(self) -> None:
        assert _normalise_path("/api/v1/auth/shop_01/login") == "/api/v1/auth/{app_id}/login"

    def test_uuid_collapsed(self) -> None:
        path = "/api/v1/things/550e8400-e29b-41d4-a716-446655440000"
        assert _normalise_path(path) == "/api/v1/things/{id}"

    def test_long_hex_collapsed(self) -> None:
        """Hex subject ids are replaced with {id}."""
        assert _normalise_path("/api/v1/things/" + "a" * 32) == "/api/v1/things/{id}"

    def test_numeric_segment_collapsed(self) -> None:
        assert _normalise_path("/api/v1/things/42") == "/api/v1/things/{id}"

    def test_static_paths_unchanged(self) -> None:
        assert _normalise_path("/api/v1/stripe/webhook") == "/api/v1/stripe/webhook"
        assert _normalise_path("/api/v1/health") == "/api/v1/health"
        assert _normalise_path("/") == "/"

    def test_short_hex_not_collapsed(self) -> None:
        assert _normalise_path("/api/v1/things/abc123") == "/api/v1/things/abc123"


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _request_count(path: str, status_code: str) -> float:
    value = REGISTRY.get_sample_value(
        "appbase_http_requests_total",
        {"method": "GET", "path": path, "status_code": status_code},
    )
    return value or 0.0


class TestPrometheusMiddleware:
    @pytest.mark.asyncio
    async def test_request_counted_with_normalised_path(self, client: AsyncClient) -> None:
        before = _request_count("/api/v1/apps/{app_id}/me", "401")
        await client.get("/api/v1/apps/some-app/me")
        assert _request_count("/api/v1/apps/{app_id}/me", "401") == before + 1

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        await client.get("/api/v1/health")
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "appbase_http_requests_total" in resp.text
        assert resp.headers["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_metrics_path_not_recorded(self, client: AsyncClient) -> None:
        await client.get("/metrics")
        assert REGISTRY.get_sample_value(
            "appbase_http_requests_total", {"method": "GET", "path": "/metrics", "status_code": "200"}
        ) is None
