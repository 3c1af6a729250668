"""
Tests for the Shopify GraphQL client against a mock transport.
"""

import json

import httpx
import pytest

from bulk_manager.shopify import (
    RemoteCallError, ShopifyAuthError, ShopifyClient, ShopifyClientError,
)

VARIANT_ID = "gid://shopify/ProductVariant/1"
PRODUCT_ID = "gid://shopify/Product/1"


def make_client(handler):
    return ShopifyClient(
        "https://mystore.myshopify.com/",
        "shpat_test",
        transport=httpx.MockTransport(handler),
    )


def graphql(data=None, errors=None, status_code=200, headers=None):
    body = {"data": data}
    if errors:
        body["errors"] = errors
    return httpx.Response(status_code, json=body, headers=headers)


class TestTransport:

    def test_domain_is_normalised(self):
        client = make_client(lambda request: graphql({}))
        assert client.shop_domain == "mystore.myshopify.com"
        assert client.graphql_url == "https://mystore.myshopify.com/admin/api/2025-01/graphql.json"

    @pytest.mark.asyncio
    async def test_sends_token_and_variables(self):
        seen = {}

        def handler(request):
            seen["token"] = request.headers["X-Shopify-Access-Token"]
            seen["body"] = json.loads(request.content)
            return graphql({"productVariant": None})

        async with make_client(handler) as client:
            with pytest.raises(RemoteCallError):
                await client.get_variant(VARIANT_ID)

        assert seen["token"] == "shpat_test"
        assert seen["body"]["variables"] == {"id": VARIANT_ID}

    @pytest.mark.asyncio
    async def test_auth_error(self):
        async with make_client(lambda request: httpx.Response(401)) as client:
            with pytest.raises(ShopifyAuthError):
                await client.execute("{ shop { name } }")

    @pytest.mark.asyncio
    async def test_graphql_errors(self):
        handler = lambda request: graphql(errors=[{"message": "Field 'foo' doesn't exist"}])
        async with make_client(handler) as client:
            with pytest.raises(ShopifyClientError) as exc_info:
                await client.execute("{ foo }")
        assert not isinstance(exc_info.value, RemoteCallError)
        assert "foo" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_error(self):
        async with make_client(lambda request: httpx.Response(500)) as client:
            with pytest.raises(ShopifyClientError):
                await client.execute("{ shop { name } }")

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, monkeypatch):
        monkeypatch.setattr(ShopifyClient, "BASE_RETRY_DELAY", 0.001)
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(429, headers={"Retry-After": "0.001"})
            return graphql({"shop": {"name": "My Store"}})

        async with make_client(handler) as client:
            data = await client.execute("{ shop { name } }")

        assert data == {"shop": {"name": "My Store"}}
        assert len(attempts) == 2


class TestItemOperations:

    @pytest.mark.asyncio
    async def test_get_variant(self):
        handler = lambda request: graphql({"productVariant": {
            "id": VARIANT_ID,
            "title": "Large",
            "sku": "TS-L",
            "price": "19.99",
            "compareAtPrice": None,
            "product": {"id": PRODUCT_ID, "title": "T-Shirt"},
        }})

        async with make_client(handler) as client:
            variant = await client.get_variant(VARIANT_ID)

        assert variant == {
            "id": VARIANT_ID,
            "title": "Large",
            "sku": "TS-L",
            "price": "19.99",
            "compare_at_price": None,
            "product_id": PRODUCT_ID,
            "product_title": "T-Shirt",
        }

    @pytest.mark.asyncio
    async def test_update_variant(self):
        seen = {}

        def handler(request):
            seen["variables"] = json.loads(request.content)["variables"]
            return graphql({"productVariantsBulkUpdate": {
                "productVariants": [{"id": VARIANT_ID, "price": "21.99", "compareAtPrice": None}],
                "userErrors": [],
            }})

        async with make_client(handler) as client:
            updated = await client.update_variant(
                PRODUCT_ID, VARIANT_ID, {"price": "21.99", "compare_at_price": None}
            )

        assert updated == {"price": "21.99", "compare_at_price": None}
        assert seen["variables"] == {
            "productId": PRODUCT_ID,
            "variants": [{"id": VARIANT_ID, "price": "21.99", "compareAtPrice": None}],
        }

    @pytest.mark.asyncio
    async def test_update_variant_user_errors(self):
        handler = lambda request: graphql({"productVariantsBulkUpdate": {
            "productVariants": [],
            "userErrors": [{"field": ["price"], "message": "Price must be greater than 0"}],
        }})

        async with make_client(handler) as client:
            with pytest.raises(RemoteCallError) as exc_info:
                await client.update_variant(PRODUCT_ID, VARIANT_ID, {"price": "0"})

        assert "greater than 0" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_update_product_maps_fields(self):
        seen = {}

        def handler(request):
            seen["variables"] = json.loads(request.content)["variables"]
            return graphql({"productUpdate": {
                "product": {"id": PRODUCT_ID, "title": "Old"},
                "userErrors": [],
            }})

        async with make_client(handler) as client:
            product = await client.update_product(PRODUCT_ID, {"title": "Old", "unknown": "x"})

        assert product["title"] == "Old"
        assert seen["variables"] == {"product": {"id": PRODUCT_ID, "title": "Old"}}

    @pytest.mark.asyncio
    async def test_set_variant_metafield(self):
        seen = {}

        def handler(request):
            seen["variables"] = json.loads(request.content)["variables"]
            return graphql({"metafieldsSet": {"metafields": [{"id": "gid://shopify/Metafield/1"}], "userErrors": []}})

        async with make_client(handler) as client:
            await client.set_variant_metafield(VARIANT_ID, "discount_history", "price_history_1", {"price": "10.00"})

        metafield = seen["variables"]["metafields"][0]
        assert metafield["ownerId"] == VARIANT_ID
        assert metafield["type"] == "json"
        assert json.loads(metafield["value"]) == {"price": "10.00"}

    @pytest.mark.asyncio
    async def test_create_product_media_errors(self):
        handler = lambda request: graphql({"productCreateMedia": {
            "media": [],
            "mediaUserErrors": [{"field": ["media"], "message": "Invalid image URL"}],
        }})

        async with make_client(handler) as client:
            with pytest.raises(RemoteCallError):
                await client.create_product_media(PRODUCT_ID, ["ftp://nope"])

    @pytest.mark.asyncio
    async def test_get_variant_metafields(self):
        seen = {}

        def handler(request):
            seen["variables"] = json.loads(request.content)["variables"]
            return graphql({"productVariant": {
                "id": VARIANT_ID,
                "metafields": {"edges": [
                    {"node": {"namespace": "discount_history", "key": "price_history_1", "value": "{}"}},
                ]},
            }})

        async with make_client(handler) as client:
            metafields = await client.get_variant_metafields(VARIANT_ID, "discount_history")

        assert seen["variables"] == {"id": VARIANT_ID, "namespace": "discount_history"}
        assert metafields == [
            {"namespace": "discount_history", "key": "price_history_1", "value": "{}"},
        ]

    @pytest.mark.asyncio
    async def test_get_variant_metafields_unknown_variant(self):
        handler = lambda request: graphql({"productVariant": None})

        async with make_client(handler) as client:
            with pytest.raises(RemoteCallError):
                await client.get_variant_metafields(VARIANT_ID, "discount_history")
