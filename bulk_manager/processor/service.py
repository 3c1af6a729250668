"""
Bulk operation service.

Combines the price rules, the batch orchestrator, the history store and
the rollback engine into the operations exposed to the API and scripts.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple

import aiosqlite

from ..db import (
    Category, EntryAction, EntryStatus, HistoryEntry, HistoryFilter,
    HistoryStatistics, HistoryStore, OperationType, PriceHistoryPoint,
    RevertStatus, ScheduledRevert, SQLiteDatabase, generate_batch_id,
)
from ..errors import StorageError, ValidationError
from ..shopify import ShopifyClient
from .batch import (
    BatchOrchestrator, BatchResult, Item, ItemOperation, ProgressCallback,
)
from .operations import (
    DISCOUNT_HISTORY_NAMESPACE, discount_operation, image_upload_operation,
    parse_price_history, price_update_operation,
)
from .rollback import RollbackEngine, RollbackResult
from .rules import (
    Direction, PriceRule, compute_target_values, validate_discount,
    validate_rule, values_differ,
)

logger = logging.getLogger(__name__)

# Kinds of batch parameters stored on aggregate entries
KIND_PRICE_RULE = "price_rule"
KIND_DISCOUNT = "discount"
KIND_IMAGES = "images"

VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"


def item_from_child(entry: HistoryEntry) -> Item:
    """Rebuild the submitted item from a child entry (for retries)."""
    return Item(
        item_id=entry.variant_id or entry.product_id,
        parent_id=entry.product_id if entry.variant_id else None,
        current_values=dict(entry.operation_data.old_values or {}),
        target_values=dict(entry.operation_data.new_values or {}),
        title=entry.product_title,
        variant_title=entry.variant_title,
        sku=entry.sku,
        reference=entry.id,
    )


class BulkService:
    """Entry point for bulk operations, history and rollbacks."""

    def __init__(
        self,
        client: ShopifyClient,
        db: SQLiteDatabase,
        history: HistoryStore,
        orchestrator: BatchOrchestrator,
    ):
        self.client = client
        self.db = db
        self.history = history
        self.orchestrator = orchestrator
        self.rollback_engine = RollbackEngine(history, client, orchestrator)

    def on_batch_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        return self.orchestrator.on_batch_progress(callback)

    # ===== Bulk operations =====

    async def _run_and_record(
        self,
        items: Sequence[Item],
        op: ItemOperation,
        operation_type: OperationType,
        category: Category,
        description: str,
        parameters: dict,
        rollback: bool = True,
        origin_batch_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Tuple[BatchResult, Optional[HistoryEntry]]:
        """
        Run a batch and record it in history.

        A history failure does not hide the remote changes: it is logged
        and returned on the result as `history_error`.

        Returns:
            Tuple of (result, aggregate entry or None if recording failed)
        """
        batch_id = generate_batch_id()

        result = await self.orchestrator.run_batch(
            items, op,
            label=description,
            cancel_event=cancel_event,
            batch_id=batch_id,
        )

        try:
            _, entries = await self.history.create_bulk_operation(
                operation_type,
                category,
                description,
                [r.to_affected_item() for r in result.item_results],
                rollback_payload={"batch_id": batch_id} if rollback else None,
                parameters=parameters,
                origin_batch_id=origin_batch_id,
                duration=result.duration,
                batch_id=batch_id,
            )
        except StorageError as e:
            logger.error(f"Batch {batch_id} ran but could not be recorded: {e}")
            result.history_error = str(e)
            return result, None

        return result, entries[0]

    async def apply_rule(
        self,
        items: Sequence[Item],
        rule: PriceRule,
        direction: Direction = Direction.INCREASE,
        origin_batch_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """
        Apply a price rule to variants.

        Items must carry their current "price" (and "compare_at_price" when
        present). Items the rule would not change are skipped.

        Raises:
            ValidationError: Invalid rule, empty selection or nothing to change
        """
        validate_rule(rule)
        if not items:
            raise ValidationError("No items selected")

        prepared = []
        for item in items:
            price = item.current_values.get("price")
            if price is None:
                raise ValidationError(f"Item {item.item_id} has no current price")

            compare_at = item.current_values.get("compare_at_price")
            target = compute_target_values(price, compare_at, rule, direction)
            changed = {
                key: value for key, value in target.items()
                if values_differ(item.current_values.get(key), value)
            }
            if changed:
                prepared.append(dataclasses.replace(item, target_values=changed))

        if not prepared:
            raise ValidationError("No prices would change with this rule")

        if len(prepared) < len(items):
            logger.info(f"Skipping {len(items) - len(prepared)} unchanged items")

        result, _ = await self._run_and_record(
            prepared,
            price_update_operation(self.client),
            OperationType.BULK_PRICE_UPDATE,
            Category.PRICING,
            f"Bulk price update: {rule.describe(direction)}",
            parameters={
                "kind": KIND_PRICE_RULE,
                "rule": rule.model_dump(mode="json"),
                "direction": direction.value,
            },
            origin_batch_id=origin_batch_id,
            cancel_event=cancel_event,
        )
        return result

    async def apply_discount(
        self,
        items: Sequence[Item],
        percentage: Decimal,
        expiry: Optional[datetime] = None,
        origin_batch_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """
        Apply a percentage discount to variants.

        With an expiry, a revert is scheduled for the batch.

        Raises:
            ValidationError: Percentage outside (0, 100), past expiry or empty selection
        """
        percentage = Decimal(percentage)
        validate_discount(percentage, expiry)
        if not items:
            raise ValidationError("No items selected")

        if expiry is not None and expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)

        result, aggregate = await self._run_and_record(
            [dataclasses.replace(item) for item in items],
            discount_operation(self.client, percentage, expiry),
            OperationType.BULK_DISCOUNT,
            Category.PRICING,
            f"Bulk discount: {percentage}% off",
            parameters={
                "kind": KIND_DISCOUNT,
                "percentage": str(percentage),
                "expiry": expiry.isoformat() if expiry else None,
            },
            origin_batch_id=origin_batch_id,
            cancel_event=cancel_event,
        )

        if expiry is not None and aggregate is not None and result.successful > 0:
            try:
                await self.db.create_scheduled_revert(ScheduledRevert(
                    batch_id=result.batch_id,
                    entry_id=aggregate.id,
                    expires_at=expiry,
                ))
            except aiosqlite.Error as e:
                logger.error(f"Could not schedule revert of {result.batch_id}: {e}")
                result.history_error = f"Failed to schedule revert: {e}"
            else:
                logger.info(f"Scheduled revert of {result.batch_id} at {expiry.isoformat()}")

        return result

    async def upload_images(
        self,
        items: Sequence[Item],
        origin_batch_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """
        Attach images to products.

        Each item is a product with target_values["image_urls"].
        Uploads are recorded but cannot be rolled back.

        Raises:
            ValidationError: Empty selection or an item without images
        """
        if not items:
            raise ValidationError("No items selected")

        for item in items:
            if not item.target_values.get("image_urls"):
                raise ValidationError(f"No images given for {item.item_id}")

        image_count = sum(len(item.target_values["image_urls"]) for item in items)

        result, _ = await self._run_and_record(
            items,
            image_upload_operation(self.client),
            OperationType.IMAGE_UPLOAD,
            Category.IMAGES,
            f"Image upload: {image_count} images",
            parameters={"kind": KIND_IMAGES},
            rollback=False,
            origin_batch_id=origin_batch_id,
            cancel_event=cancel_event,
        )
        return result

    async def retry_failed(
        self,
        batch_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """
        Re-run the failed items of a batch as a new batch.

        The new batch records the original as its origin.

        Raises:
            ValidationError: Unknown batch or nothing to retry
        """
        aggregate = next(
            (
                entry for entry in await self.history.get_batch_history(batch_id)
                if entry.operation_data.action == EntryAction.BULK_OPERATION.value
            ),
            None,
        )
        if aggregate is None:
            raise ValidationError(f"Batch not found: {batch_id}")

        children = await self.history.get_bulk_operation_items(batch_id)
        items = [
            item_from_child(child) for child in children
            if child.status == EntryStatus.ERROR
        ]
        if not items:
            raise ValidationError(f"Batch {batch_id} has no failed items to retry")

        parameters = aggregate.metadata.parameters or {}
        kind = parameters.get("kind")

        logger.info(f"Retrying {len(items)} failed items of {batch_id}")

        if kind == KIND_PRICE_RULE:
            return await self.apply_rule(
                items,
                PriceRule(**parameters["rule"]),
                Direction(parameters["direction"]),
                origin_batch_id=batch_id,
                cancel_event=cancel_event,
            )

        if kind == KIND_DISCOUNT:
            expiry = parameters.get("expiry")
            return await self.apply_discount(
                items,
                Decimal(parameters["percentage"]),
                datetime.fromisoformat(expiry) if expiry else None,
                origin_batch_id=batch_id,
                cancel_event=cancel_event,
            )

        if kind == KIND_IMAGES:
            return await self.upload_images(
                items, origin_batch_id=batch_id, cancel_event=cancel_event
            )

        raise ValidationError(f"Batch {batch_id} cannot be retried")

    # ===== Rollback =====

    async def rollback(self, entry_id: str) -> RollbackResult:
        return await self.rollback_engine.rollback(entry_id)

    async def process_scheduled_reverts(
        self,
        now: Optional[datetime] = None,
    ) -> List[Tuple[ScheduledRevert, RollbackResult]]:
        """
        Roll back every discount batch whose expiry has passed.

        Returns:
            List of (revert, rollback result) for each processed revert
        """
        if now is None:
            now = datetime.now(timezone.utc)

        due = await self.db.get_due_reverts(now)
        if not due:
            logger.info("No scheduled reverts due")
            return []

        logger.info(f"Processing {len(due)} scheduled reverts")

        outcomes = []
        for revert in due:
            result = await self.rollback(revert.entry_id)
            if result.success:
                await self.db.update_revert(revert.id, RevertStatus.DONE)
            else:
                error = "; ".join(result.errors) or result.message
                await self.db.update_revert(revert.id, RevertStatus.FAILED, error)
                logger.error(f"Scheduled revert of {revert.batch_id} failed: {error}")
            outcomes.append((revert, result))

        return outcomes

    async def get_scheduled_reverts(self, batch_id: Optional[str] = None) -> List[ScheduledRevert]:
        return await self.db.get_scheduled_reverts(batch_id)

    # ===== History =====

    async def query_history(self, history_filter: Optional[HistoryFilter] = None) -> List[HistoryEntry]:
        return await self.history.query(history_filter)

    async def get_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        return await self.history.get_entry(entry_id)

    async def batch_history(self, batch_id: str) -> List[HistoryEntry]:
        return await self.history.get_batch_history(batch_id)

    async def statistics(self) -> HistoryStatistics:
        return await self.history.statistics()

    async def audit_trail(self, batch_id: str) -> List[HistoryEntry]:
        return await self.history.get_audit_trail(batch_id)

    async def export_history(self) -> str:
        return await self.history.export_history()

    async def import_history(self, json_data: str) -> bool:
        return await self.history.import_history(json_data)

    async def clear_history(self) -> int:
        return await self.history.clear_history()

    async def price_history(self, variant_id: str) -> List[PriceHistoryPoint]:
        """
        Price timeline of a variant from its discount_history metafields.

        Accepts a variant GID or its numeric id.

        Raises:
            RemoteCallError: If the variant does not exist
        """
        if not variant_id.startswith("gid://"):
            variant_id = f"{VARIANT_GID_PREFIX}{variant_id}"

        metafields = await self.client.get_variant_metafields(
            variant_id, DISCOUNT_HISTORY_NAMESPACE
        )
        return parse_price_history(metafields)
