"""
Rollback of history entries.

A rollback applies the inverse mutation recorded in an entry's rollback
data and appends new "rollback" entries. Original entries are never
modified.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..db import (
    ApiCallRollback, BatchOperationRollback, BulkOperationSummary,
    EntryAction, EntryMetadata, EntryStatus, FileRestoreRollback,
    HistoryEntry, HistoryStore, OperationData, OperationType,
)
from ..errors import BulkManagerError, RollbackIneligibleError, StorageError
from ..shopify import ShopifyClient, ShopifyClientError
from .batch import BatchOrchestrator, Item, ItemChange, ItemOperation
from .operations import restore_product_operation, restore_variant_operation

logger = logging.getLogger(__name__)

# Keys of a rollback payload that identify the item rather than a field
PAYLOAD_ID_KEYS = ("id", "product_id")


@dataclass
class RollbackResult:
    """Outcome of a rollback request."""
    success: bool
    message: str
    affected_entry_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    retryable: bool = False


def item_from_entry(entry: HistoryEntry) -> Item:
    """Build the restore item for an entry from its rollback payload."""
    payload = {}
    if entry.rollback_data is not None and not isinstance(entry.rollback_data, FileRestoreRollback):
        payload = entry.rollback_data.rollback_payload or {}

    if entry.variant_id or entry.operation_type != OperationType.PRODUCT_UPDATE:
        item_id = payload.get("id") or entry.variant_id or entry.product_id
        parent_id = payload.get("product_id") or entry.product_id
    else:
        item_id = payload.get("id") or entry.product_id
        parent_id = None

    return Item(
        item_id=item_id,
        parent_id=parent_id,
        current_values=dict(entry.operation_data.new_values or {}),
        target_values={k: v for k, v in payload.items() if k not in PAYLOAD_ID_KEYS},
        title=entry.product_title,
        variant_title=entry.variant_title,
        sku=entry.sku,
        reference=entry.id,
    )


class RollbackEngine:
    """Reverses single entries and whole batches."""

    def __init__(
        self,
        history: HistoryStore,
        client: ShopifyClient,
        orchestrator: BatchOrchestrator,
    ):
        self.history = history
        self.client = client
        self.orchestrator = orchestrator

    def restore_operation(self, operation_type: OperationType) -> ItemOperation:
        """
        Inverse operation for an operation type.

        Raises:
            RollbackIneligibleError: If the type has no inverse
        """
        if operation_type == OperationType.PRODUCT_UPDATE:
            return restore_product_operation(self.client)
        if operation_type == OperationType.BULK_PRICE_UPDATE:
            return restore_variant_operation(self.client)
        if operation_type == OperationType.BULK_DISCOUNT:
            return restore_variant_operation(self.client, discount=True)
        raise RollbackIneligibleError(
            f"Rollback not supported for operation type: {operation_type.value}"
        )

    async def rollback(self, entry_id: str) -> RollbackResult:
        """
        Roll back a history entry.

        Returns:
            RollbackResult; ineligible entries give a non-retryable failure
        """
        try:
            entry = await self.history.get_entry(entry_id)
            if entry is None:
                raise RollbackIneligibleError(f"History entry not found: {entry_id}")

            if isinstance(entry.rollback_data, FileRestoreRollback):
                raise RollbackIneligibleError("File restore rollback not implemented")

            if not entry.can_rollback:
                raise RollbackIneligibleError("This operation cannot be rolled back")

            if isinstance(entry.rollback_data, BatchOperationRollback):
                return await self._rollback_batch(entry)

            return await self._rollback_single(entry)

        except RollbackIneligibleError as e:
            logger.warning(f"Rollback of {entry_id} refused: {e}")
            return RollbackResult(
                success=False,
                message=str(e),
                errors=[str(e)],
                retryable=False,
            )

        except StorageError as e:
            logger.error(f"Rollback of {entry_id} failed reading history: {e}")
            return RollbackResult(
                success=False,
                message=str(e),
                errors=[str(e)],
                retryable=True,
            )

    def _rollback_entry(
        self,
        entry: HistoryEntry,
        change: ItemChange,
        batch_id: Optional[str] = None,
    ) -> HistoryEntry:
        """
        New entry recording the reversal of `entry`.

        Values are the source entry's, swapped, for the fields the restore
        touched. Fields the source did not record fall back to the change.
        """
        source_old = entry.operation_data.old_values or {}
        source_new = entry.operation_data.new_values or {}
        old_values = {
            key: source_new.get(key, change.old_values.get(key))
            for key in change.new_values
        }
        new_values = {
            key: source_old.get(key, value)
            for key, value in change.new_values.items()
        }

        return HistoryEntry(
            operation_type=entry.operation_type,
            category=entry.category,
            product_id=entry.product_id,
            product_title=entry.product_title,
            variant_id=entry.variant_id,
            variant_title=entry.variant_title,
            sku=entry.sku,
            description=f"Rollback: {entry.description}",
            status=EntryStatus.SUCCESS,
            operation_data=OperationData(
                action=EntryAction.ROLLBACK.value,
                old_values=old_values,
                new_values=new_values,
                affected_count=1,
            ),
            rollback_data=ApiCallRollback(can_rollback=False),
            metadata=EntryMetadata(
                affected_products=[entry.product_id] if entry.product_id else [],
                affected_variants=[entry.variant_id] if entry.variant_id else [],
                origin_entry_id=entry.id,
                origin_batch_id=batch_id or entry.batch_key,
            ),
        )

    async def _rollback_single(self, entry: HistoryEntry) -> RollbackResult:
        op = self.restore_operation(entry.operation_type)
        item = item_from_entry(entry)

        try:
            change = await op(item)
        except (ShopifyClientError, BulkManagerError) as e:
            logger.error(f"Rollback of {entry.id} failed: {e}")
            return RollbackResult(
                success=False,
                message=f"Rollback failed: {e}",
                errors=[str(e)],
                retryable=True,
            )

        rollback_entry = self._rollback_entry(entry, change)
        logger.info(f"Rolled back {entry.id} ({entry.description})")

        try:
            await self.history.append(rollback_entry)
        except StorageError as e:
            return RollbackResult(
                success=True,
                message="Rolled back, but the rollback could not be recorded",
                errors=[str(e)],
            )

        return RollbackResult(
            success=True,
            message="Operation rolled back successfully",
            affected_entry_ids=[rollback_entry.id],
        )

    async def _rollback_batch(self, aggregate: HistoryEntry) -> RollbackResult:
        batch_id = aggregate.operation_data.batch_id
        op = self.restore_operation(aggregate.operation_type)

        children = await self.history.get_bulk_operation_items(batch_id)
        eligible = [
            child for child in children
            if child.can_rollback and child.status == EntryStatus.SUCCESS
        ]
        if not eligible:
            raise RollbackIneligibleError(f"No items to roll back in batch {batch_id}")

        by_id = {child.id: child for child in eligible}
        items = [item_from_entry(child) for child in eligible]

        result = await self.orchestrator.run_batch(
            items, op, label=f"Rollback {batch_id}"
        )

        entries = [
            self._rollback_entry(
                by_id[r.item.reference],
                ItemChange(old_values=r.old_values or {}, new_values=r.new_values or {}),
                batch_id=batch_id,
            )
            for r in result.item_results if r.success
        ]
        errors = [
            f"{r.item.display_name}: {r.error}"
            for r in result.item_results if not r.success
        ]

        if entries:
            entries.append(HistoryEntry(
                operation_type=aggregate.operation_type,
                category=aggregate.category,
                description=f"Rollback: {aggregate.description}",
                status=EntryStatus.SUCCESS if result.failed == 0 else EntryStatus.WARNING,
                operation_data=OperationData(
                    action=EntryAction.ROLLBACK.value,
                    affected_count=result.successful,
                ),
                rollback_data=ApiCallRollback(can_rollback=False),
                metadata=EntryMetadata(
                    duration=result.duration,
                    bulk_operation_summary=BulkOperationSummary(
                        total_items=result.total,
                        successful_items=result.successful,
                        failed_items=result.failed,
                        operation_type=aggregate.operation_type,
                    ),
                    affected_products=aggregate.metadata.affected_products,
                    affected_variants=aggregate.metadata.affected_variants,
                    error_details="; ".join(errors) or None,
                    origin_entry_id=aggregate.id,
                    origin_batch_id=batch_id,
                ),
            ))

            try:
                await self.history.append_many(entries)
            except StorageError as e:
                errors.append(str(e))

        message = f"Rolled back {result.successful} of {result.total} items"
        logger.info(f"{message} in batch {batch_id}")

        return RollbackResult(
            success=result.failed == 0,
            message=message,
            affected_entry_ids=[e.id for e in entries],
            errors=errors,
            retryable=result.failed > 0,
        )
