"""
Append-only operation history.

HistoryStore wraps the SQLite tables with the history semantics: bulk
operations are written as one aggregate entry plus one child entry per
item, entries are never updated, and the log is trimmed to a maximum size.

Writes within one process are serialised with an asyncio lock. Several
processes writing to the same database file are not coordinated beyond
SQLite's own locking, so concurrent writers may interleave their trims.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import aiosqlite
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from ..errors import StorageError
from .models import (
    ApiCallRollback, BatchOperationRollback, BulkOperationSummary, Category,
    EntryAction, EntryMetadata, EntryStatus, FileRestoreRollback, HistoryEntry,
    HistoryFilter, HistoryStatistics, OperationData, OperationType,
    generate_batch_id,
)
from .sqlite import SQLiteDatabase

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 5000

HistoryListener = Callable[[List[HistoryEntry]], None]

_entries_adapter = TypeAdapter(List[HistoryEntry])


@dataclass
class AffectedItem:
    """One item's outcome as recorded in a bulk operation."""
    product_id: Optional[str]
    old_values: Optional[dict]
    new_values: Optional[dict]
    product_title: Optional[str] = None
    variant_id: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    success: bool = True
    error: Optional[str] = None
    image_urls: List[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        title = self.product_title or self.variant_id or self.product_id or "Item"
        if self.variant_title:
            return f"{title} - {self.variant_title}"
        return title


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


class HistoryStore:
    """Persisted, capacity-bounded log of history entries."""

    def __init__(self, db: SQLiteDatabase, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.db = db
        self.max_entries = max_entries
        self._lock = asyncio.Lock()
        self._listeners: List[HistoryListener] = []

    # ===== Subscriptions =====

    def on_history_appended(self, callback: HistoryListener) -> Callable[[], None]:
        """
        Register a callback invoked with the entries of every successful write.

        Returns:
            Function that removes the subscription
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, entries: List[HistoryEntry]) -> None:
        for listener in list(self._listeners):
            try:
                listener(entries)
            except Exception:
                logger.exception("History listener failed")

    # ===== Writes =====

    async def append(self, entry: HistoryEntry) -> str:
        """Append a single entry. Returns its id."""
        await self._write([entry])
        return entry.id

    async def append_many(self, entries: Sequence[HistoryEntry]) -> List[str]:
        """Append several entries in one transaction."""
        await self._write(list(entries))
        return [entry.id for entry in entries]

    async def _write(self, entries: List[HistoryEntry]) -> None:
        if not entries:
            return

        protected = _unique(entry.batch_key for entry in entries)

        async with self._lock:
            try:
                await self.db.insert_history_entries(entries)
                evicted = await self.db.trim_history(self.max_entries, protected)
            except aiosqlite.Error as e:
                logger.error(f"Failed to save {len(entries)} history entries: {e}")
                raise StorageError(f"Failed to save history: {e}") from e

        if evicted:
            logger.info(f"Evicted {evicted} old history entries (max {self.max_entries})")

        self._notify(entries)

    async def create_bulk_operation(
        self,
        operation_type: OperationType,
        category: Category,
        description: str,
        items: Sequence[AffectedItem],
        rollback_payload: Optional[dict] = None,
        parameters: Optional[dict] = None,
        origin_batch_id: Optional[str] = None,
        duration: Optional[float] = None,
        batch_id: Optional[str] = None,
    ) -> Tuple[str, List[HistoryEntry]]:
        """
        Record a bulk operation.

        Creates one aggregate entry (action "bulk_operation") and one child
        entry per item (action "individual_item_in_bulk"). Children carry
        batch_id and parent_batch_id, both set to the new batch id, plus a
        ready-to-use rollback payload built from their old values.

        Args:
            operation_type: Type of the bulk operation
            category: History category
            description: Human readable description
            items: Per-item outcomes (successful and failed)
            rollback_payload: Payload for rolling back the whole batch;
                              None makes the aggregate non rollback-able
            parameters: Rule/discount settings the batch ran with
            origin_batch_id: Batch this one retries, if any
            duration: Wall clock duration of the batch in seconds
            batch_id: Id to record the batch under, generated if omitted

        Returns:
            Tuple of (batch_id, entries) with the aggregate entry first
        """
        batch_id = batch_id or generate_batch_id()
        total = len(items)
        successful = sum(1 for item in items if item.success)
        failed = total - successful

        if failed == 0:
            status = EntryStatus.SUCCESS
        elif successful == 0:
            status = EntryStatus.ERROR
        else:
            status = EntryStatus.WARNING

        aggregate_rollback = None
        if rollback_payload is not None and successful > 0:
            aggregate_rollback = BatchOperationRollback(rollback_payload=rollback_payload)

        aggregate = HistoryEntry(
            operation_type=operation_type,
            category=category,
            description=f"{description} ({total} items)",
            status=status,
            operation_data=OperationData(
                action=EntryAction.BULK_OPERATION.value,
                affected_count=total,
                batch_id=batch_id,
            ),
            rollback_data=aggregate_rollback,
            metadata=EntryMetadata(
                duration=duration,
                bulk_operation_summary=BulkOperationSummary(
                    total_items=total,
                    successful_items=successful,
                    failed_items=failed,
                    operation_type=operation_type,
                ),
                affected_products=_unique(item.product_id for item in items),
                affected_variants=_unique(item.variant_id for item in items),
                parameters=parameters,
                origin_batch_id=origin_batch_id,
            ),
        )

        entries = [aggregate]

        for item in items:
            if operation_type == OperationType.IMAGE_UPLOAD:
                rollback = FileRestoreRollback()
            elif item.success:
                rollback = ApiCallRollback(
                    rollback_payload={
                        "id": item.variant_id or item.product_id,
                        "product_id": item.product_id,
                        **(item.old_values or {}),
                    }
                )
            else:
                rollback = ApiCallRollback(can_rollback=False)

            entries.append(HistoryEntry(
                operation_type=operation_type,
                category=category,
                product_id=item.product_id,
                product_title=item.product_title,
                variant_id=item.variant_id,
                variant_title=item.variant_title,
                sku=item.sku,
                description=f"{description}: {item.display_name}",
                status=EntryStatus.SUCCESS if item.success else EntryStatus.ERROR,
                operation_data=OperationData(
                    action=EntryAction.INDIVIDUAL_ITEM_IN_BULK.value,
                    old_values=item.old_values,
                    new_values=item.new_values,
                    batch_id=batch_id,
                    parent_batch_id=batch_id,
                ),
                rollback_data=rollback,
                metadata=EntryMetadata(
                    error_details=item.error,
                    image_urls=item.image_urls,
                    origin_batch_id=origin_batch_id,
                ),
            ))

        await self._write(entries)

        logger.info(
            f"Recorded {operation_type.value} batch {batch_id}: "
            f"{successful} succeeded, {failed} failed"
        )

        return batch_id, entries

    # ===== Reads =====

    async def get_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        try:
            return await self.db.get_history_entry(entry_id)
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to read history: {e}") from e

    async def query(self, history_filter: Optional[HistoryFilter] = None) -> List[HistoryEntry]:
        """Entries matching all given filter fields, newest first."""
        try:
            return await self.db.query_history(history_filter or HistoryFilter())
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to read history: {e}") from e

    async def get_all_entries(self) -> List[HistoryEntry]:
        return await self.db.get_all_history()

    async def get_batch_history(self, batch_id: str) -> List[HistoryEntry]:
        """Aggregate entry plus all children of a batch."""
        return await self.query(HistoryFilter(batch_id=batch_id))

    async def get_bulk_operation_items(self, batch_id: str) -> List[HistoryEntry]:
        """Children of a batch, in the order they were recorded."""
        try:
            return await self.db.get_bulk_operation_items(batch_id)
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to read history: {e}") from e

    async def get_bulk_operations(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        return await self.db.get_bulk_operations(limit)

    async def get_product_history(self, product_id: str) -> List[HistoryEntry]:
        return await self.query(HistoryFilter(product_id=product_id))

    async def get_audit_trail(self, batch_id: str) -> List[HistoryEntry]:
        """
        Full lineage of a batch in chronological order.

        Includes the batch itself, rollbacks of the batch or its items,
        and retry batches derived from it (transitively).
        """
        seen = {batch_id}
        frontier = {batch_id}
        entries = {}

        while frontier:
            related = await self.db.get_history_related_to_batches(frontier)
            frontier = set()
            for entry in related:
                entries[entry.id] = entry
                key = entry.batch_key
                if key and key not in seen:
                    seen.add(key)
                    frontier.add(key)

        return sorted(entries.values(), key=lambda e: e.timestamp)

    async def statistics(self, now: Optional[datetime] = None) -> HistoryStatistics:
        """Counts derived from the current log. Not cached."""
        if now is None:
            now = datetime.now(timezone.utc)

        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        this_week = today - timedelta(days=7)
        this_month = today.replace(day=1)

        stats = await self.db.history_statistics(today, this_week, this_month)
        return HistoryStatistics(**stats)

    # ===== Import / export =====

    async def export_history(self) -> str:
        """Serialize all entries (newest first) as a JSON array."""
        entries = await self.get_all_entries()
        return json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2)

    async def import_history(self, json_data: str) -> bool:
        """
        Replace the log with a previously exported snapshot.

        Returns:
            True on success, False if the data is not a valid entry list
        """
        try:
            entries = _entries_adapter.validate_json(json_data)
        except (PydanticValidationError, ValueError) as e:
            logger.error(f"Failed to import history: {e}")
            return False

        ids = [entry.id for entry in entries]
        if len(set(ids)) != len(ids):
            logger.error("Failed to import history: duplicate entry ids")
            return False

        entries = entries[:self.max_entries]

        async with self._lock:
            try:
                await self.db.replace_history(entries)
            except aiosqlite.Error as e:
                logger.error(f"Failed to import history: {e}")
                return False

        logger.info(f"Imported {len(entries)} history entries")
        return True

    async def clear_history(self) -> int:
        async with self._lock:
            try:
                deleted = await self.db.clear_history()
            except aiosqlite.Error as e:
                logger.error(f"Failed to clear history: {e}")
                raise StorageError(f"Failed to clear history: {e}") from e
        logger.info(f"Cleared {deleted} history entries")
        return deleted
