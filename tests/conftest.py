"""
Shared fixtures: a temporary SQLite database and an in-memory store.
"""

import asyncio
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from bulk_manager.db import HistoryStore, SQLiteDatabase
from bulk_manager.processor import BatchOrchestrator, BulkService, Item, format_price
from bulk_manager.shopify import RemoteCallError


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class FakeStoreClient:
    """In-memory stand-in for ShopifyClient's item-level calls."""

    def __init__(self):
        self.variants: Dict[str, Dict[str, Any]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.metafields: List[Dict[str, Any]] = []
        self.media: Dict[str, List[str]] = {}
        self.fail_ids = set()
        self.calls: List[tuple] = []
        # Store prices the way Shopify echoes them ("10" -> "10.00")
        self.normalise_prices = False

    def add_variant(
        self,
        variant_id: str,
        product_id: str = "gid://shopify/Product/1",
        price: str = "10.00",
        compare_at_price: Optional[str] = None,
        title: str = "Default Title",
        product_title: str = "T-Shirt",
        sku: Optional[str] = None,
    ) -> Item:
        self.variants[variant_id] = {
            "id": variant_id,
            "title": title,
            "sku": sku,
            "price": price,
            "compare_at_price": compare_at_price,
            "product_id": product_id,
            "product_title": product_title,
        }
        return Item(
            item_id=variant_id,
            parent_id=product_id,
            current_values={"price": price, "compare_at_price": compare_at_price},
            title=product_title,
            variant_title=title,
            sku=sku,
        )

    def _check(self, item_id: str) -> None:
        if item_id in self.fail_ids:
            raise RemoteCallError(f"Invalid input for {item_id}")

    async def get_variant(self, variant_id: str) -> Dict[str, Any]:
        self.calls.append(("get_variant", variant_id))
        await asyncio.sleep(0)
        if variant_id not in self.variants:
            raise RemoteCallError(f"Variant not found: {variant_id}")
        return dict(self.variants[variant_id])

    async def update_variant(self, product_id: str, variant_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("update_variant", variant_id, dict(fields)))
        await asyncio.sleep(0)
        self._check(variant_id)
        variant = self.variants[variant_id]
        for key in ("price", "compare_at_price"):
            if key in fields:
                value = fields[key]
                if self.normalise_prices and value is not None:
                    value = format_price(value)
                variant[key] = value
        return {"price": variant["price"], "compare_at_price": variant["compare_at_price"]}

    async def update_product(self, product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("update_product", product_id, dict(fields)))
        await asyncio.sleep(0)
        self._check(product_id)
        product = self.products.setdefault(product_id, {"id": product_id})
        product.update(fields)
        return dict(product)

    async def set_variant_metafield(self, variant_id: str, namespace: str, key: str, value: Dict[str, Any]) -> None:
        self.calls.append(("set_variant_metafield", variant_id, key))
        self.metafields.append({"owner": variant_id, "namespace": namespace, "key": key, "value": value})

    async def get_variant_metafields(self, variant_id: str, namespace: str) -> List[Dict[str, Any]]:
        self.calls.append(("get_variant_metafields", variant_id))
        await asyncio.sleep(0)
        if variant_id not in self.variants:
            raise RemoteCallError(f"Variant not found: {variant_id}")
        return [
            {"namespace": m["namespace"], "key": m["key"], "value": json.dumps(m["value"])}
            for m in self.metafields
            if m["owner"] == variant_id and m["namespace"] == namespace
        ]

    async def create_product_media(self, product_id: str, sources: List[str], alt: Optional[str] = None) -> List[Dict[str, Any]]:
        self.calls.append(("create_product_media", product_id, list(sources)))
        await asyncio.sleep(0)
        self._check(product_id)
        self.media.setdefault(product_id, []).extend(sources)
        return [
            {"id": f"gid://shopify/MediaImage/{i}", "alt": alt or ""}
            for i, _ in enumerate(sources, start=1)
        ]

    def mutation_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] not in ("get_variant", "get_variant_metafields")]


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def store_client():
    return FakeStoreClient()


@pytest.fixture
async def db(tmp_path):
    database = SQLiteDatabase(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def history(db):
    return HistoryStore(db, max_entries=5000)


@pytest.fixture
def orchestrator(fake_sleep):
    return BatchOrchestrator(group_size=2, window_delay_ms=1100, sleep=fake_sleep)


@pytest.fixture
def service(store_client, db, history, orchestrator):
    return BulkService(store_client, db, history, orchestrator)


@pytest.fixture
def three_variants(store_client):
    """Three variants priced 10, 20 and 30."""
    return [
        store_client.add_variant(f"gid://shopify/ProductVariant/{i}",
                                 product_id=f"gid://shopify/Product/{i}",
                                 price=str(Decimal(10 * i).quantize(Decimal("0.01"))),
                                 product_title=f"Product {i}",
                                 sku=f"SKU-{i}")
        for i in (1, 2, 3)
    ]
