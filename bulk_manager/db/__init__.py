"""
Database package - SQLite only.
"""

from .models import (
    OperationType, Category, EntryStatus, EntryAction, RevertStatus,
    OperationData, ApiCallRollback, BatchOperationRollback, FileRestoreRollback,
    BulkOperationSummary, EntryMetadata, HistoryEntry, HistoryFilter,
    HistoryStatistics, PriceHistoryPoint, ScheduledRevert, generate_uuid,
    generate_batch_id,
)
from .sqlite import SQLiteDatabase
from .history import HistoryStore, AffectedItem

__all__ = [
    "SQLiteDatabase",
    "HistoryStore",
    "AffectedItem",
    "OperationType",
    "Category",
    "EntryStatus",
    "EntryAction",
    "RevertStatus",
    "OperationData",
    "ApiCallRollback",
    "BatchOperationRollback",
    "FileRestoreRollback",
    "BulkOperationSummary",
    "EntryMetadata",
    "HistoryEntry",
    "HistoryFilter",
    "HistoryStatistics",
    "PriceHistoryPoint",
    "ScheduledRevert",
    "generate_uuid",
    "generate_batch_id",
]
