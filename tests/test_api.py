"""
Tests for the HTTP API (session auth, bulk and history routes).
"""

import httpx
import pytest

from bulk_manager import dependencies
from bulk_manager.auth import SessionManager, hash_password
from bulk_manager.config import settings
from bulk_manager.main import app
from bulk_manager.routes import auth as auth_routes

PASSWORD = "correct horse"
V1 = "gid://shopify/ProductVariant/1"
P1 = "gid://shopify/Product/1"


@pytest.fixture
async def api(service, monkeypatch):
    monkeypatch.setattr(dependencies, "_service", service)
    monkeypatch.setattr(dependencies, "_session_manager", SessionManager("test-secret"))
    monkeypatch.setattr(settings, "admin_password_hash", hash_password(PASSWORD))
    auth_routes.failed_attempts.clear()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def logged_in(api):
    response = await api.post("/login", data={"password": PASSWORD})
    assert response.status_code == 200
    return api


def price_rule_body(items=None):
    return {
        "items": items if items is not None else [
            {"variant_id": V1, "product_id": P1, "product_title": "T-Shirt", "price": "10.00"},
        ],
        "rule": {"type": "percentage", "value": "10", "apply_to": "price"},
        "direction": "increase",
    }


class TestAuth:

    @pytest.mark.asyncio
    async def test_health_needs_no_session(self, api):
        response = await api.get("/health")
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_api_requires_session(self, api):
        response = await api.get("/api/history")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_password(self, api):
        response = await api.post("/login", data={"password": "wrong"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_login_and_logout(self, logged_in):
        assert (await logged_in.get("/session")).json() == {"authenticated": True}

        await logged_in.post("/logout")

        assert (await logged_in.get("/api/history")).status_code == 401


class TestBulkRoutes:

    @pytest.mark.asyncio
    async def test_price_rule(self, logged_in, store_client):
        store_client.add_variant(V1, product_id=P1, price="10.00")

        response = await logged_in.post("/api/bulk/price-rule", json=price_rule_body())

        assert response.status_code == 200
        body = response.json()
        assert body["successful"] == 1
        assert body["results"][0]["new_values"] == {"price": "11.00"}
        assert store_client.variants[V1]["price"] == "11.00"

    @pytest.mark.asyncio
    async def test_validation_error_is_400(self, logged_in, store_client):
        response = await logged_in.post("/api/bulk/price-rule", json=price_rule_body(items=[]))

        assert response.status_code == 400
        assert response.json()["detail"] == "No items selected"
        assert store_client.calls == []

    @pytest.mark.asyncio
    async def test_retry_unknown_batch(self, logged_in):
        response = await logged_in.post("/api/bulk/batch_missing/retry")
        assert response.status_code == 400


class TestHistoryRoutes:

    @pytest.mark.asyncio
    async def test_batch_history_and_rollback(self, logged_in, store_client):
        store_client.add_variant(V1, product_id=P1, price="10.00")
        batch = (await logged_in.post("/api/bulk/price-rule", json=price_rule_body())).json()

        entries = (await logged_in.get(f"/api/history/batches/{batch['batch_id']}")).json()
        assert len(entries) == 2
        aggregate = next(e for e in entries if e["operation_data"]["action"] == "bulk_operation")

        response = await logged_in.post(f"/api/history/{aggregate['id']}/rollback")

        assert response.json()["success"] is True
        assert store_client.variants[V1]["price"] == "10.00"

        trail = (await logged_in.get(f"/api/history/batches/{batch['batch_id']}/trail")).json()
        assert len(trail) == 4

    @pytest.mark.asyncio
    async def test_filters_and_stats(self, logged_in, store_client):
        store_client.add_variant(V1, product_id=P1, price="10.00")
        await logged_in.post("/api/bulk/price-rule", json=price_rule_body())

        pricing = (await logged_in.get("/api/history", params={"category": "pricing"})).json()
        assert len(pricing) == 2
        images = (await logged_in.get("/api/history", params={"category": "images"})).json()
        assert images == []

        stats = (await logged_in.get("/api/history/stats")).json()
        assert stats["total"] == 2
        assert stats["bulk_operations_count"] == 1

    @pytest.mark.asyncio
    async def test_missing_entry(self, logged_in):
        response = await logged_in.get("/api/history/hist_missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_export_import_clear(self, logged_in, store_client):
        store_client.add_variant(V1, product_id=P1, price="10.00")
        await logged_in.post("/api/bulk/price-rule", json=price_rule_body())

        exported = await logged_in.get("/api/history/export")
        assert exported.headers["content-type"].startswith("application/json")

        cleared = await logged_in.delete("/api/history")
        assert cleared.json() == {"deleted": 2}

        imported = await logged_in.post(
            "/api/history/import",
            content=exported.content,
            headers={"Content-Type": "application/json"},
        )
        assert imported.json() == {"success": True}
        assert len((await logged_in.get("/api/history")).json()) == 2

        bad = await logged_in.post("/api/history/import", content=b"{not json")
        assert bad.status_code == 400


class TestRevertRoutes:

    @pytest.mark.asyncio
    async def test_process_with_nothing_due(self, logged_in):
        response = await logged_in.post("/api/reverts/process")
        assert response.status_code == 200
        assert response.json() == []


class TestPriceHistoryRoutes:

    @pytest.mark.asyncio
    async def test_variant_price_history(self, logged_in, store_client):
        store_client.add_variant(V1, product_id=P1, price="50.00")
        await logged_in.post("/api/bulk/discount", json={
            "items": [{"variant_id": V1, "product_id": P1}],
            "percentage": "10",
        })

        response = await logged_in.get("/api/history/variants/1/prices")

        assert response.status_code == 200
        body = response.json()
        assert len(body) == 1
        assert body[0]["price"] == "50.00"
        assert body[0]["discount_percentage"] == "10"

    @pytest.mark.asyncio
    async def test_unknown_variant_is_404(self, logged_in):
        response = await logged_in.get("/api/history/variants/999/prices")
        assert response.status_code == 404
