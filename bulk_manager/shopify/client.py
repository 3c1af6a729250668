"""
Shopify GraphQL Admin API client.

Besides the raw `execute` transport, the client exposes the item-level
calls the bulk operations need: read a variant, update variant prices,
update a product, record a variant metafield and attach product media.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from bulk_manager.shopify.mutations import (
    METAFIELDS_SET,
    PRODUCT_CREATE_MEDIA,
    PRODUCT_UPDATE,
    PRODUCT_VARIANTS_BULK_UPDATE,
)
from bulk_manager.shopify.queries import PRODUCT_VARIANT_QUERY, VARIANT_METAFIELDS_QUERY

logger = logging.getLogger(__name__)


class ShopifyClientError(Exception):
    """Base exception for Shopify client errors."""
    pass


class ShopifyAuthError(ShopifyClientError):
    """Authentication error."""
    pass


class ShopifyRateLimitError(ShopifyClientError):
    """Rate limit exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RemoteCallError(ShopifyClientError):
    """The store rejected an item-level mutation or returned an unusable response."""
    pass


# Snake case item fields -> Shopify input fields
VARIANT_FIELD_MAP = {
    "price": "price",
    "compare_at_price": "compareAtPrice",
}

PRODUCT_FIELD_MAP = {
    "title": "title",
    "description_html": "descriptionHtml",
    "handle": "handle",
    "product_type": "productType",
    "vendor": "vendor",
    "status": "status",
    "tags": "tags",
}


def _user_errors(result: Dict[str, Any], key: str = "userErrors") -> List[str]:
    errors = result.get(key) or []
    return [e.get("message", str(e)) for e in errors]


class ShopifyClient:
    """
    Async HTTP client for Shopify GraphQL Admin API.

    Handles authentication, rate limiting, and retries.
    """

    API_VERSION = "2025-01"
    MAX_RETRIES = 5
    BASE_RETRY_DELAY = 1.0  # seconds

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Shopify client.

        Args:
            shop_domain: Store domain (e.g., "mystore.myshopify.com")
            access_token: Admin API access token
            api_version: Admin API version, defaults to API_VERSION
            transport: Optional httpx transport (tests use MockTransport)
        """
        # Clean domain
        domain = shop_domain
        if domain.startswith("https://"):
            domain = domain[8:]
        elif domain.startswith("http://"):
            domain = domain[7:]
        domain = domain.rstrip("/")

        self.shop_domain = domain
        self.access_token = access_token
        self.api_version = api_version or self.API_VERSION
        self.graphql_url = (
            f"https://{domain}/admin/api/{self.api_version}/graphql.json"
        )

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(60.0, connect=10.0),
                headers={
                    "Content-Type": "application/json",
                    "X-Shopify-Access-Token": self.access_token,
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Execute a GraphQL query/mutation with retry logic.

        Args:
            query: GraphQL query or mutation string
            variables: Optional variables for the query

        Returns:
            The 'data' portion of the GraphQL response

        Raises:
            ShopifyAuthError: If authentication fails
            ShopifyRateLimitError: If rate limit exceeded after retries
            ShopifyClientError: For other errors
        """
        client = await self._get_client()
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        last_error: Optional[Exception] = None

        for attempt in range(self.MAX_RETRIES):
            try:
                response = await client.post(self.graphql_url, json=payload)

                if response.status_code == 401:
                    raise ShopifyAuthError(
                        f"Authentication failed for {self.shop_domain}"
                    )

                if response.status_code == 429:
                    retry_after = float(
                        response.headers.get("Retry-After", self.BASE_RETRY_DELAY)
                    )
                    raise ShopifyRateLimitError(
                        "Rate limit exceeded", retry_after=retry_after
                    )

                response.raise_for_status()

                result = response.json()

                # Check for GraphQL errors
                if "errors" in result and result["errors"]:
                    errors = result["errors"]
                    error_messages = [e.get("message", str(e)) for e in errors]

                    if any("throttl" in msg.lower() for msg in error_messages):
                        raise ShopifyRateLimitError(
                            f"GraphQL throttled: {error_messages}"
                        )

                    raise ShopifyClientError(
                        f"GraphQL errors: {error_messages}"
                    )

                # Log rate limit status if available
                if "extensions" in result and "cost" in result["extensions"]:
                    cost = result["extensions"]["cost"]
                    throttle = cost.get("throttleStatus", {})
                    available = throttle.get("currentlyAvailable", 0)
                    if available < 100:
                        logger.warning(
                            f"Low rate limit points: {available} available"
                        )

                return result.get("data") or {}

            except (ShopifyAuthError, RemoteCallError):
                raise

            except ShopifyRateLimitError as e:
                last_error = e
                delay = e.retry_after or (
                    self.BASE_RETRY_DELAY * (2 ** attempt)
                )
                logger.warning(
                    f"Rate limited, waiting {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.MAX_RETRIES})"
                )
                await asyncio.sleep(delay)

            except httpx.HTTPStatusError as e:
                raise ShopifyClientError(
                    f"HTTP {e.response.status_code} from {self.shop_domain}"
                ) from e

            except httpx.RequestError as e:
                last_error = ShopifyClientError(f"Request error: {e}")
                delay = self.BASE_RETRY_DELAY * (2 ** attempt)
                logger.warning(
                    f"Request error, retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

            except ShopifyClientError:
                raise

            except Exception as e:
                last_error = ShopifyClientError(f"Unexpected error: {e}")
                logger.error(f"Unexpected error: {e}")
                raise last_error from e

        # All retries exhausted
        raise last_error or ShopifyClientError("Max retries exceeded")

    # ===== Item-level operations =====

    async def get_variant(self, variant_id: str) -> Dict[str, Any]:
        """
        Fetch current price data of a variant.

        Returns:
            Dict with id, title, sku, price, compare_at_price,
            product_id and product_title

        Raises:
            RemoteCallError: If the variant does not exist
        """
        data = await self.execute(PRODUCT_VARIANT_QUERY, variables={"id": variant_id})
        variant = data.get("productVariant")
        if not variant:
            raise RemoteCallError(f"Variant not found: {variant_id}")

        product = variant.get("product") or {}
        return {
            "id": variant["id"],
            "title": variant.get("title"),
            "sku": variant.get("sku"),
            "price": variant.get("price"),
            "compare_at_price": variant.get("compareAtPrice"),
            "product_id": product.get("id"),
            "product_title": product.get("title"),
        }

    async def get_variant_metafields(
        self,
        variant_id: str,
        namespace: str,
    ) -> List[Dict[str, Any]]:
        """
        Fetch a variant's metafields in one namespace.

        Returns:
            List of dicts with namespace, key and the raw string value

        Raises:
            RemoteCallError: If the variant does not exist
        """
        data = await self.execute(
            VARIANT_METAFIELDS_QUERY,
            variables={"id": variant_id, "namespace": namespace},
        )
        variant = data.get("productVariant")
        if not variant:
            raise RemoteCallError(f"Variant not found: {variant_id}")

        edges = (variant.get("metafields") or {}).get("edges") or []
        return [edge["node"] for edge in edges if edge.get("node")]

    async def update_variant(
        self,
        product_id: str,
        variant_id: str,
        fields: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Update price fields of one variant.

        Args:
            product_id: Parent product GID
            variant_id: Variant GID
            fields: Snake case fields ("price", "compare_at_price");
                    a None compare_at_price clears it

        Returns:
            Updated values as {"price": ..., "compare_at_price": ...}

        Raises:
            RemoteCallError: If Shopify reports user errors
        """
        variant_input: Dict[str, Any] = {"id": variant_id}
        for key, value in fields.items():
            if key in VARIANT_FIELD_MAP:
                variant_input[VARIANT_FIELD_MAP[key]] = value

        data = await self.execute(
            PRODUCT_VARIANTS_BULK_UPDATE,
            variables={
                "productId": product_id,
                "variants": [variant_input],
            },
        )

        result = data.get("productVariantsBulkUpdate") or {}
        error_msgs = _user_errors(result)
        if error_msgs:
            raise RemoteCallError("; ".join(error_msgs))

        variants = result.get("productVariants") or []
        updated = next((v for v in variants if v.get("id") == variant_id), None)
        if updated is None:
            raise RemoteCallError(f"No variant returned for {variant_id}")

        logger.debug(f"Updated variant {variant_id}: {variant_input}")

        return {
            "price": updated.get("price"),
            "compare_at_price": updated.get("compareAtPrice"),
        }

    async def update_product(
        self,
        product_id: str,
        fields: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Update product level fields.

        Raises:
            RemoteCallError: If Shopify reports user errors
        """
        product_input: Dict[str, Any] = {"id": product_id}
        for key, value in fields.items():
            if key in PRODUCT_FIELD_MAP:
                product_input[PRODUCT_FIELD_MAP[key]] = value

        data = await self.execute(PRODUCT_UPDATE, variables={"product": product_input})

        result = data.get("productUpdate") or {}
        error_msgs = _user_errors(result)
        if error_msgs:
            raise RemoteCallError("; ".join(error_msgs))

        return result.get("product") or {}

    async def set_variant_metafield(
        self,
        variant_id: str,
        namespace: str,
        key: str,
        value: Dict[str, Any],
    ) -> None:
        """
        Store a JSON metafield on a variant.

        Raises:
            RemoteCallError: If Shopify reports user errors
        """
        data = await self.execute(
            METAFIELDS_SET,
            variables={
                "metafields": [{
                    "ownerId": variant_id,
                    "namespace": namespace,
                    "key": key,
                    "type": "json",
                    "value": json.dumps(value),
                }]
            },
        )

        result = data.get("metafieldsSet") or {}
        error_msgs = _user_errors(result)
        if error_msgs:
            raise RemoteCallError("; ".join(error_msgs))

    async def create_product_media(
        self,
        product_id: str,
        sources: List[str],
        alt: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Attach images to a product.

        Args:
            product_id: Product GID
            sources: Public or staged upload URLs
            alt: Optional alt text for all images

        Returns:
            List of created media dicts

        Raises:
            RemoteCallError: If Shopify reports media errors
        """
        media = [
            {"originalSource": source, "mediaContentType": "IMAGE", "alt": alt or ""}
            for source in sources
        ]

        data = await self.execute(
            PRODUCT_CREATE_MEDIA,
            variables={"productId": product_id, "media": media},
        )

        result = data.get("productCreateMedia") or {}
        error_msgs = _user_errors(result, key="mediaUserErrors")
        if error_msgs:
            raise RemoteCallError("; ".join(error_msgs))

        created = result.get("media") or []
        if not created:
            raise RemoteCallError(f"No media returned for {product_id}")

        return created

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
