"""
Item operations run by the batch orchestrator.

Each factory binds a ShopifyClient (and operation parameters) and returns
an async callable taking one Item and returning the ItemChange it made.
Failures are raised; the orchestrator records them per item.
"""

import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..db import PriceHistoryPoint
from ..errors import ValidationError
from ..shopify import RemoteCallError, ShopifyClient
from .batch import Item, ItemChange, ItemOperation
from .rules import compute_discount, format_price

logger = logging.getLogger(__name__)

PRICE_FIELDS = ("price", "compare_at_price")
DISCOUNT_HISTORY_NAMESPACE = "discount_history"
PRICE_HISTORY_KEY_PREFIXES = ("price_history_", "rollback_")


def _price_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: values[key] for key in PRICE_FIELDS if key in values}


def price_update_operation(client: ShopifyClient) -> ItemOperation:
    """Set the variant price fields listed in item.target_values."""

    async def update_prices(item: Item) -> ItemChange:
        fields = _price_fields(item.target_values)
        if not fields:
            raise ValidationError(f"No price fields to update for {item.item_id}")

        updated = await client.update_variant(item.parent_id, item.item_id, fields)

        return ItemChange(
            old_values={key: item.current_values.get(key) for key in fields},
            new_values={key: updated.get(key) for key in fields},
        )

    return update_prices


def discount_operation(
    client: ShopifyClient,
    percentage: Decimal,
    expiry: Optional[datetime] = None,
) -> ItemOperation:
    """
    Apply a percentage discount to a variant.

    Reads the live prices, stores them in a `discount_history` metafield on
    the variant, then sets the discounted price and compare-at price.
    """

    async def apply_discount(item: Item) -> ItemChange:
        variant = await client.get_variant(item.item_id)
        price = variant["price"]
        compare_at = variant["compare_at_price"]

        # Titles are only known after the fetch
        item.parent_id = item.parent_id or variant["product_id"]
        item.title = item.title or variant["product_title"]
        item.variant_title = item.variant_title or variant["title"]
        item.sku = item.sku or variant["sku"]
        item.current_values = {"price": price, "compare_at_price": compare_at}

        new_price, new_compare_at = compute_discount(price, compare_at, percentage)
        if Decimal(new_price) >= Decimal(new_compare_at):
            raise ValidationError("New price would be equal or greater than compare-at price")

        now = datetime.now(timezone.utc)
        await client.set_variant_metafield(
            item.item_id,
            DISCOUNT_HISTORY_NAMESPACE,
            f"price_history_{int(time.time() * 1000)}",
            {
                "price": price,
                "compare_at_price": compare_at,
                "date": now.isoformat(),
                "action": f"Applied {percentage}% discount",
                "discount_percentage": str(percentage),
                "expiry_date": expiry.isoformat() if expiry else None,
            },
        )

        updated = await client.update_variant(
            item.parent_id,
            item.item_id,
            {"price": new_price, "compare_at_price": new_compare_at},
        )

        return ItemChange(
            old_values={"price": price, "compare_at_price": compare_at},
            new_values=_price_fields(updated),
        )

    return apply_discount


def image_upload_operation(client: ShopifyClient) -> ItemOperation:
    """Attach the images in item.target_values["image_urls"] to a product."""

    async def upload_images(item: Item) -> ItemChange:
        sources = item.target_values.get("image_urls") or []
        if not sources:
            raise ValidationError(f"No images to upload for {item.item_id}")

        product_id = item.parent_id or item.item_id
        media = await client.create_product_media(
            product_id, sources, alt=item.target_values.get("alt")
        )

        logger.debug(f"Attached {len(media)} images to {product_id}")

        return ItemChange(
            old_values={},
            new_values={
                "image_urls": list(sources),
                "media_ids": [m.get("id") for m in media if m.get("id")],
            },
        )

    return upload_images


# ===== Restore operations (rollback) =====

def restore_variant_operation(
    client: ShopifyClient,
    discount: bool = False,
) -> ItemOperation:
    """
    Restore variant price fields from item.target_values.

    For discounts, an item without a recorded old price is restored by
    moving the current compare-at price back to the price and clearing the
    compare-at price, and the revert is noted in the variant's
    `discount_history` metafields.
    """

    async def restore_prices(item: Item) -> ItemChange:
        fields = _price_fields(item.target_values)

        if "price" not in fields and discount:
            variant = await client.get_variant(item.item_id)
            if not variant["compare_at_price"]:
                raise RemoteCallError(
                    f"No recorded price and no compare-at price to restore for {item.item_id}"
                )
            fields = {
                "price": format_price(variant["compare_at_price"]),
                "compare_at_price": None,
            }
            item.current_values = {
                "price": variant["price"],
                "compare_at_price": variant["compare_at_price"],
            }
            item.parent_id = item.parent_id or variant["product_id"]

        if not fields:
            raise RemoteCallError(f"Nothing recorded to restore for {item.item_id}")

        updated = await client.update_variant(item.parent_id, item.item_id, fields)

        if discount:
            await client.set_variant_metafield(
                item.item_id,
                DISCOUNT_HISTORY_NAMESPACE,
                f"rollback_{int(time.time() * 1000)}",
                {
                    "action": "Rollback to previous price",
                    "date": datetime.now(timezone.utc).isoformat(),
                    "reverted_to_price": fields.get("price"),
                    "reverted_to_compare_at_price": fields.get("compare_at_price"),
                },
            )

        return ItemChange(
            old_values={key: item.current_values.get(key) for key in fields},
            new_values={key: updated.get(key) for key in fields},
        )

    return restore_prices


def restore_product_operation(client: ShopifyClient) -> ItemOperation:
    """Restore product level fields from item.target_values."""

    async def restore_product(item: Item) -> ItemChange:
        if not item.target_values:
            raise RemoteCallError(f"Nothing recorded to restore for {item.item_id}")

        product = await client.update_product(item.item_id, item.target_values)

        return ItemChange(
            old_values=dict(item.current_values),
            new_values={
                key: product.get(key, value) for key, value in item.target_values.items()
            },
        )

    return restore_product


# ===== Price history =====

def parse_price_history(metafields: List[Dict[str, Any]]) -> List[PriceHistoryPoint]:
    """
    Build a price timeline from `discount_history` metafields, newest first.

    Reads the records written when discounts are applied and rolled back.
    Unreadable records are skipped.
    """
    points = []
    for metafield in metafields:
        key = metafield.get("key") or ""
        if metafield.get("namespace") != DISCOUNT_HISTORY_NAMESPACE:
            continue
        if not key.startswith(PRICE_HISTORY_KEY_PREFIXES):
            continue

        try:
            data = json.loads(metafield.get("value") or "")
        except ValueError:
            logger.warning(f"Skipping unreadable price history record {key}")
            continue
        if not isinstance(data, dict):
            continue

        percentage = data.get("discount_percentage")
        price = data.get("price") or data.get("reverted_to_price") or "0.00"
        compare_at = data.get("compare_at_price") or data.get("reverted_to_compare_at_price")
        try:
            point = PriceHistoryPoint(
                key=key,
                date=data.get("date") or data.get("scheduled_at") or datetime.now(timezone.utc),
                price=str(price),
                compare_at_price=str(compare_at) if compare_at else None,
                discount_percentage=str(percentage) if percentage else None,
                action=data.get("action") or f"Applied {percentage or 0}% discount",
            )
        except PydanticValidationError as e:
            logger.warning(f"Skipping invalid price history record {key}: {e}")
            continue

        if point.date.tzinfo is None:
            point.date = point.date.replace(tzinfo=timezone.utc)
        points.append(point)

    points.sort(key=lambda point: point.date, reverse=True)
    return points
