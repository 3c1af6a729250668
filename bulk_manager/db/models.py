"""
Pydantic models for history entities.
"""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class OperationType(str, Enum):
    """What kind of change an entry records."""
    PRODUCT_CREATE = "product_create"
    PRODUCT_UPDATE = "product_update"
    PRODUCT_DELETE = "product_delete"
    BULK_UPLOAD = "bulk_upload"
    BULK_PRICE_UPDATE = "bulk_price_update"
    BULK_DISCOUNT = "bulk_discount"
    IMAGE_UPLOAD = "image_upload"
    COLLECTION_UPDATE = "collection_update"


class Category(str, Enum):
    """Grouping used by history filters and statistics."""
    PRODUCT = "product"
    PRICING = "pricing"
    IMAGES = "images"
    BULK = "bulk"
    COLLECTIONS = "collections"


class EntryStatus(str, Enum):
    """Outcome of a history entry."""
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    PENDING = "pending"


class EntryAction(str, Enum):
    BULK_OPERATION = "bulk_operation"
    INDIVIDUAL_ITEM_IN_BULK = "individual_item_in_bulk"
    ROLLBACK = "rollback"


class RevertStatus(str, Enum):
    """Status of a scheduled discount revert."""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def generate_entry_id() -> str:
    """Generate a history entry id, e.g. hist_1718000000000_3f9a1c2b7."""
    return f"hist_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def generate_batch_id() -> str:
    """Generate a batch id, e.g. batch_1718000000000_3f9a1c2b7."""
    return f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class OperationData(BaseModel):
    """What was done: action plus the values before and after."""
    action: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    affected_count: Optional[int] = None
    batch_id: Optional[str] = None
    parent_batch_id: Optional[str] = None


class ApiCallRollback(BaseModel):
    """Single inverse mutation built from rollback_payload (old values)."""
    rollback_type: Literal["api_call"] = "api_call"
    can_rollback: bool = True
    rollback_payload: Optional[Dict[str, Any]] = None


class BatchOperationRollback(BaseModel):
    """Rollback every child entry of the batch."""
    rollback_type: Literal["batch_operation"] = "batch_operation"
    can_rollback: bool = True
    rollback_payload: Optional[Dict[str, Any]] = None


class FileRestoreRollback(BaseModel):
    """Restoring deleted/replaced media. Not supported."""
    rollback_type: Literal["file_restore"] = "file_restore"
    can_rollback: bool = False


RollbackData = Annotated[
    Union[ApiCallRollback, BatchOperationRollback, FileRestoreRollback],
    Field(discriminator="rollback_type"),
]


class BulkOperationSummary(BaseModel):
    total_items: int
    successful_items: int
    failed_items: int
    operation_type: OperationType


class EntryMetadata(BaseModel):
    duration: Optional[float] = None  # seconds
    error_details: Optional[str] = None
    affected_products: List[str] = Field(default_factory=list)
    affected_variants: List[str] = Field(default_factory=list)
    image_urls: List[str] = Field(default_factory=list)
    bulk_operation_summary: Optional[BulkOperationSummary] = None

    # Rule / discount settings a batch was run with (used for retries)
    parameters: Optional[Dict[str, Any]] = None

    # Lineage: the batch/entry this entry was derived from (retry or rollback)
    origin_batch_id: Optional[str] = None
    origin_entry_id: Optional[str] = None


class HistoryEntry(BaseModel):
    """An append-only audit record."""
    id: str = Field(default_factory=generate_entry_id)
    timestamp: datetime = Field(default_factory=utcnow)
    operation_type: OperationType
    category: Category
    description: str
    status: EntryStatus = EntryStatus.SUCCESS

    product_id: Optional[str] = None
    product_title: Optional[str] = None
    variant_id: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None

    operation_data: OperationData
    rollback_data: Optional[RollbackData] = None
    metadata: EntryMetadata = Field(default_factory=EntryMetadata)

    @property
    def can_rollback(self) -> bool:
        return self.rollback_data is not None and self.rollback_data.can_rollback

    @property
    def batch_key(self) -> Optional[str]:
        """Batch this entry belongs to, if any."""
        return self.operation_data.parent_batch_id or self.operation_data.batch_id


class HistoryFilter(BaseModel):
    """Conjunctive filter for history queries."""
    category: Optional[Category] = None
    operation_type: Optional[OperationType] = None
    status: Optional[EntryStatus] = None
    product_id: Optional[str] = None
    batch_id: Optional[str] = None
    search_term: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None


class HistoryStatistics(BaseModel):
    total: int
    today: int
    this_week: int
    this_month: int
    by_category: Dict[str, int]
    by_status: Dict[str, int]
    bulk_operations_count: int


class ScheduledRevert(BaseModel):
    """A discount batch to roll back once it expires."""
    id: str = Field(default_factory=generate_uuid)
    batch_id: str
    entry_id: str  # aggregate entry of the discount batch
    expires_at: datetime
    status: RevertStatus = RevertStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class PriceHistoryPoint(BaseModel):
    """A price change read back from a variant's discount_history metafields."""
    key: str
    date: datetime
    price: str
    compare_at_price: Optional[str] = None
    discount_percentage: Optional[str] = None
    action: str
