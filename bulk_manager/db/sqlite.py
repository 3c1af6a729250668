"""
SQLite database implementation.
Simple and direct - no abstraction layers.

History entries are stored as a JSON payload next to the columns the
filters need, ordered newest first by an autoincrement sequence.
"""

import json
import os
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import aiosqlite

from .models import (
    Category, EntryAction, EntryStatus, HistoryEntry, HistoryFilter,
    RevertStatus, ScheduledRevert,
)


def _iso(value: datetime) -> str:
    """ISO timestamp in UTC; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


INSERT_HISTORY_SQL = """
    INSERT INTO history_entries (id, timestamp, operation_type, category, status,
                                 action, batch_id, parent_batch_id, origin_batch_id,
                                 origin_entry_id, product_id, product_title, sku,
                                 description, affected_products, payload)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteDatabase:
    """SQLite database for history and scheduled reverts."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def initialize(self) -> None:
        """Create database tables."""
        conn = await self._get_connection()

        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS history_entries (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                timestamp TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                category TEXT NOT NULL,
                status TEXT NOT NULL,
                action TEXT NOT NULL,
                batch_id TEXT,
                parent_batch_id TEXT,
                origin_batch_id TEXT,
                origin_entry_id TEXT,
                product_id TEXT,
                product_title TEXT,
                sku TEXT,
                description TEXT NOT NULL,
                affected_products TEXT NOT NULL DEFAULT '[]',
                payload TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scheduled_reverts (
                id TEXT PRIMARY KEY,
                batch_id TEXT NOT NULL,
                entry_id TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                processed_at TEXT,
                error_message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_history_timestamp ON history_entries(timestamp DESC);
            CREATE INDEX IF NOT EXISTS idx_history_batch_id ON history_entries(batch_id);
            CREATE INDEX IF NOT EXISTS idx_history_parent_batch_id ON history_entries(parent_batch_id);
            CREATE INDEX IF NOT EXISTS idx_history_origin_batch_id ON history_entries(origin_batch_id);
            CREATE INDEX IF NOT EXISTS idx_history_product_id ON history_entries(product_id);
            CREATE INDEX IF NOT EXISTS idx_reverts_due ON scheduled_reverts(status, expires_at);
        """)
        await conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ===== Helper Methods =====

    def _row_to_entry(self, row: aiosqlite.Row) -> HistoryEntry:
        """Convert a database row to a HistoryEntry model."""
        return HistoryEntry.model_validate_json(row["payload"])

    def _entry_to_params(self, entry: HistoryEntry) -> tuple:
        return (
            entry.id,
            _iso(entry.timestamp),
            entry.operation_type.value,
            entry.category.value,
            entry.status.value,
            entry.operation_data.action,
            entry.operation_data.batch_id,
            entry.operation_data.parent_batch_id,
            entry.metadata.origin_batch_id,
            entry.metadata.origin_entry_id,
            entry.product_id,
            entry.product_title,
            entry.sku,
            entry.description,
            json.dumps(entry.metadata.affected_products),
            entry.model_dump_json(),
        )

    def _row_to_revert(self, row: aiosqlite.Row) -> ScheduledRevert:
        return ScheduledRevert(
            id=row["id"],
            batch_id=row["batch_id"],
            entry_id=row["entry_id"],
            expires_at=_parse(row["expires_at"]),
            status=RevertStatus(row["status"]),
            created_at=_parse(row["created_at"]),
            processed_at=_parse(row["processed_at"]),
            error_message=row["error_message"],
        )

    # ===== History Operations =====

    async def insert_history_entries(self, entries: Sequence[HistoryEntry]) -> None:
        """Insert entries in a single transaction, oldest first."""
        if not entries:
            return

        conn = await self._get_connection()
        try:
            await conn.executemany(
                INSERT_HISTORY_SQL,
                [self._entry_to_params(entry) for entry in entries]
            )
            await conn.commit()
        except aiosqlite.Error:
            await conn.rollback()
            raise

    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT payload FROM history_entries WHERE id = ?", (entry_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_entry(row) if row else None

    async def query_history(self, history_filter: HistoryFilter) -> List[HistoryEntry]:
        conn = await self._get_connection()

        query = "SELECT payload FROM history_entries WHERE 1=1"
        params: list = []

        if history_filter.category:
            query += " AND category = ?"
            params.append(history_filter.category.value)

        if history_filter.operation_type:
            query += " AND operation_type = ?"
            params.append(history_filter.operation_type.value)

        if history_filter.status:
            query += " AND status = ?"
            params.append(history_filter.status.value)

        if history_filter.product_id:
            query += (
                " AND (product_id = ? OR EXISTS ("
                "SELECT 1 FROM json_each(history_entries.affected_products) "
                "WHERE json_each.value = ?))"
            )
            params.extend([history_filter.product_id, history_filter.product_id])

        if history_filter.batch_id:
            query += " AND (batch_id = ? OR parent_batch_id = ?)"
            params.extend([history_filter.batch_id, history_filter.batch_id])

        if history_filter.search_term:
            term = f"%{history_filter.search_term.lower()}%"
            query += (
                " AND (LOWER(description) LIKE ?"
                " OR LOWER(COALESCE(product_title, '')) LIKE ?"
                " OR LOWER(COALESCE(sku, '')) LIKE ?)"
            )
            params.extend([term, term, term])

        if history_filter.start:
            query += " AND timestamp >= ?"
            params.append(_iso(history_filter.start))

        if history_filter.end:
            query += " AND timestamp <= ?"
            params.append(_iso(history_filter.end))

        query += " ORDER BY seq DESC"

        if history_filter.limit:
            query += " LIMIT ?"
            params.append(history_filter.limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_bulk_operation_items(self, batch_id: str) -> List[HistoryEntry]:
        """Child entries of a batch (not the aggregate)."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT payload FROM history_entries WHERE parent_batch_id = ? ORDER BY seq ASC",
            (batch_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_bulk_operations(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Aggregate entries only."""
        conn = await self._get_connection()
        query = "SELECT payload FROM history_entries WHERE action = ? ORDER BY seq DESC"
        params: list = [EntryAction.BULK_OPERATION.value]
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_history_related_to_batches(self, batch_ids: Iterable[str]) -> List[HistoryEntry]:
        """Entries belonging to, or derived from, any of the given batches."""
        ids = list(batch_ids)
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"""
            SELECT payload FROM history_entries
            WHERE batch_id IN ({placeholders})
               OR parent_batch_id IN ({placeholders})
               OR origin_batch_id IN ({placeholders})
            ORDER BY seq ASC
            """,
            ids * 3
        )
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_all_history(self) -> List[HistoryEntry]:
        return await self.query_history(HistoryFilter())

    async def count_history(self) -> int:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT COUNT(*) AS total FROM history_entries")
        row = await cursor.fetchone()
        return row["total"]

    async def trim_history(
        self,
        max_entries: int,
        protected_batch_ids: Iterable[str] = ()
    ) -> int:
        """
        Evict the oldest entries beyond max_entries.

        Eviction is batch-atomic: when an evicted entry belongs to a batch,
        the rest of that batch is evicted with it. Batches listed in
        protected_batch_ids are never evicted.

        Returns:
            Number of deleted entries
        """
        total = await self.count_history()
        overflow = total - max_entries
        if overflow <= 0:
            return 0

        protected = set(protected_batch_ids)
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT seq, COALESCE(parent_batch_id, batch_id) AS batch_key
            FROM history_entries ORDER BY seq ASC LIMIT ?
            """,
            (overflow,)
        )
        rows = await cursor.fetchall()

        loose_seqs = [(row["seq"],) for row in rows if row["batch_key"] is None]
        batch_keys = {
            row["batch_key"] for row in rows
            if row["batch_key"] is not None and row["batch_key"] not in protected
        }

        deleted = 0
        try:
            if loose_seqs:
                cursor = await conn.executemany(
                    "DELETE FROM history_entries WHERE seq = ?", loose_seqs
                )
                deleted += cursor.rowcount

            for batch_key in batch_keys:
                cursor = await conn.execute(
                    "DELETE FROM history_entries WHERE batch_id = ? OR parent_batch_id = ?",
                    (batch_key, batch_key)
                )
                deleted += cursor.rowcount

            await conn.commit()
        except aiosqlite.Error:
            await conn.rollback()
            raise
        return deleted

    async def replace_history(self, entries: Sequence[HistoryEntry]) -> None:
        """Replace all history with the given entries (newest first)."""
        conn = await self._get_connection()
        try:
            await conn.execute("DELETE FROM history_entries")
            await conn.executemany(
                INSERT_HISTORY_SQL,
                [self._entry_to_params(entry) for entry in reversed(entries)]
            )
            await conn.commit()
        except aiosqlite.Error:
            await conn.rollback()
            raise

    async def clear_history(self) -> int:
        conn = await self._get_connection()
        try:
            cursor = await conn.execute("DELETE FROM history_entries")
            await conn.commit()
        except aiosqlite.Error:
            await conn.rollback()
            raise
        return cursor.rowcount

    async def history_statistics(
        self,
        today: datetime,
        this_week: datetime,
        this_month: datetime
    ) -> Dict[str, object]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END) AS today,
                SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END) AS this_week,
                SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END) AS this_month,
                SUM(CASE WHEN action = ? THEN 1 ELSE 0 END) AS bulk_operations
            FROM history_entries
            """,
            (_iso(today), _iso(this_week), _iso(this_month), EntryAction.BULK_OPERATION.value)
        )
        totals = await cursor.fetchone()

        by_category = {category.value: 0 for category in Category}
        cursor = await conn.execute(
            "SELECT category, COUNT(*) AS total FROM history_entries GROUP BY category"
        )
        for row in await cursor.fetchall():
            by_category[row["category"]] = row["total"]

        by_status = {status.value: 0 for status in EntryStatus}
        cursor = await conn.execute(
            "SELECT status, COUNT(*) AS total FROM history_entries GROUP BY status"
        )
        for row in await cursor.fetchall():
            by_status[row["status"]] = row["total"]

        return {
            "total": totals["total"] or 0,
            "today": totals["today"] or 0,
            "this_week": totals["this_week"] or 0,
            "this_month": totals["this_month"] or 0,
            "by_category": by_category,
            "by_status": by_status,
            "bulk_operations_count": totals["bulk_operations"] or 0,
        }

    # ===== Scheduled Revert Operations =====

    async def create_scheduled_revert(self, revert: ScheduledRevert) -> ScheduledRevert:
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO scheduled_reverts (id, batch_id, entry_id, expires_at, status,
                                           created_at, processed_at, error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                revert.id,
                revert.batch_id,
                revert.entry_id,
                _iso(revert.expires_at),
                revert.status.value,
                _iso(revert.created_at),
                None,
                None
            )
        )
        await conn.commit()
        return revert

    async def get_due_reverts(self, now: datetime) -> List[ScheduledRevert]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM scheduled_reverts
            WHERE status = ? AND expires_at <= ?
            ORDER BY expires_at ASC
            """,
            (RevertStatus.PENDING.value, _iso(now))
        )
        rows = await cursor.fetchall()
        return [self._row_to_revert(row) for row in rows]

    async def get_scheduled_reverts(self, batch_id: Optional[str] = None) -> List[ScheduledRevert]:
        conn = await self._get_connection()
        if batch_id:
            cursor = await conn.execute(
                "SELECT * FROM scheduled_reverts WHERE batch_id = ? ORDER BY expires_at ASC",
                (batch_id,)
            )
        else:
            cursor = await conn.execute("SELECT * FROM scheduled_reverts ORDER BY expires_at ASC")
        rows = await cursor.fetchall()
        return [self._row_to_revert(row) for row in rows]

    async def update_revert(
        self,
        revert_id: str,
        status: RevertStatus,
        error_message: Optional[str] = None
    ) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "UPDATE scheduled_reverts SET status = ?, processed_at = ?, error_message = ? WHERE id = ?",
            (status.value, _iso(datetime.now(timezone.utc)), error_message, revert_id)
        )
        await conn.commit()
