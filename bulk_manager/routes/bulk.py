"""
Bulk operation API routes.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import get_service, require_auth
from ..processor import BatchResult, Direction, Item, PriceRule

router = APIRouter(prefix="/api/bulk", dependencies=[Depends(require_auth)])


class VariantSelection(BaseModel):
    """A selected variant with the prices the caller last saw."""
    variant_id: str
    product_id: Optional[str] = None
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[str] = None
    compare_at_price: Optional[str] = None

    def to_item(self) -> Item:
        current = {}
        if self.price is not None:
            current["price"] = self.price
            current["compare_at_price"] = self.compare_at_price
        return Item(
            item_id=self.variant_id,
            parent_id=self.product_id,
            current_values=current,
            title=self.product_title,
            variant_title=self.variant_title,
            sku=self.sku,
        )


class ImageSelection(BaseModel):
    product_id: str
    product_title: Optional[str] = None
    image_urls: List[str] = Field(min_length=1)
    alt: Optional[str] = None

    def to_item(self) -> Item:
        target: Dict[str, Any] = {"image_urls": self.image_urls}
        if self.alt:
            target["alt"] = self.alt
        return Item(item_id=self.product_id, title=self.product_title, target_values=target)


class PriceRuleRequest(BaseModel):
    items: List[VariantSelection]
    rule: PriceRule
    direction: Direction = Direction.INCREASE


class DiscountRequest(BaseModel):
    items: List[VariantSelection]
    percentage: Decimal
    expiry: Optional[datetime] = None


class ImageUploadRequest(BaseModel):
    items: List[ImageSelection]


class ItemResultResponse(BaseModel):
    item_id: str
    parent_id: Optional[str] = None
    title: Optional[str] = None
    variant_title: Optional[str] = None
    success: bool
    error: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None


class BatchResultResponse(BaseModel):
    batch_id: str
    total: int
    successful: int
    failed: int
    cancelled: bool
    duration: float
    history_error: Optional[str] = None
    results: List[ItemResultResponse]

    @classmethod
    def from_result(cls, result: BatchResult) -> "BatchResultResponse":
        return cls(
            batch_id=result.batch_id,
            total=result.total,
            successful=result.successful,
            failed=result.failed,
            cancelled=result.cancelled,
            duration=result.duration,
            history_error=result.history_error,
            results=[
                ItemResultResponse(
                    item_id=r.item.item_id,
                    parent_id=r.item.parent_id,
                    title=r.item.title,
                    variant_title=r.item.variant_title,
                    success=r.success,
                    error=r.error,
                    old_values=r.old_values,
                    new_values=r.new_values,
                )
                for r in result.item_results
            ],
        )


@router.post("/price-rule", response_model=BatchResultResponse)
async def apply_price_rule(body: PriceRuleRequest):
    """Apply a price rule to the selected variants."""
    service = get_service()
    result = await service.apply_rule(
        [selection.to_item() for selection in body.items],
        body.rule,
        body.direction,
    )
    return BatchResultResponse.from_result(result)


@router.post("/discount", response_model=BatchResultResponse)
async def apply_discount(body: DiscountRequest):
    """Discount the selected variants, optionally until an expiry date."""
    service = get_service()
    result = await service.apply_discount(
        [selection.to_item() for selection in body.items],
        body.percentage,
        body.expiry,
    )
    return BatchResultResponse.from_result(result)


@router.post("/images", response_model=BatchResultResponse)
async def upload_images(body: ImageUploadRequest):
    """Attach images to products."""
    service = get_service()
    result = await service.upload_images([selection.to_item() for selection in body.items])
    return BatchResultResponse.from_result(result)


@router.post("/{batch_id}/retry", response_model=BatchResultResponse)
async def retry_batch(batch_id: str):
    """Retry the failed items of a batch as a new batch."""
    service = get_service()
    result = await service.retry_failed(batch_id)
    return BatchResultResponse.from_result(result)
