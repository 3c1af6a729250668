"""
Rate-limited batch execution.

Items are split into groups of `group_size`. Each group is dispatched
concurrently and joined completely before the next one starts, with a
fixed delay between groups. This keeps the request rate under the store's
API limit (~2 requests per second with the defaults).
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..db import AffectedItem, generate_batch_id
from ..errors import BulkManagerError, ValidationError
from ..shopify import ShopifyClientError

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Cancelled before dispatch"


@dataclass
class Item:
    """A single unit of work in a batch (usually a product variant)."""
    item_id: str
    parent_id: Optional[str] = None
    current_values: Dict[str, Any] = field(default_factory=dict)
    target_values: Dict[str, Any] = field(default_factory=dict)
    title: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    # History entry this item was derived from (rollback / retry)
    reference: Optional[str] = None

    @property
    def display_name(self) -> str:
        title = self.title or self.item_id
        if self.variant_title:
            return f"{title} - {self.variant_title}"
        return title


@dataclass
class ItemChange:
    """Values before and after an item operation."""
    old_values: Dict[str, Any]
    new_values: Dict[str, Any]


@dataclass
class ItemResult:
    """Outcome of one item."""
    item: Item
    success: bool
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_affected_item(self) -> AffectedItem:
        """Convert to the shape recorded in history."""
        item = self.item
        image_urls = []
        if self.new_values:
            image_urls = list(self.new_values.get("image_urls") or [])

        return AffectedItem(
            product_id=item.parent_id or item.item_id,
            product_title=item.title,
            variant_id=item.item_id if item.parent_id else None,
            variant_title=item.variant_title,
            sku=item.sku,
            old_values=self.old_values if self.success else item.current_values,
            new_values=self.new_values if self.success else item.target_values,
            success=self.success,
            error=self.error,
            image_urls=image_urls,
        )


@dataclass
class BatchProgress:
    """Progress event. Status events carry a message and no current item."""
    total: int
    completed: int = 0
    successful: int = 0
    failed: int = 0
    current: Optional[str] = None
    message: Optional[str] = None


@dataclass
class BatchResult:
    """Aggregated outcome of a batch."""
    batch_id: str
    total: int
    successful: int
    failed: int
    item_results: List[ItemResult]
    cancelled: bool = False
    duration: float = 0.0
    history_error: Optional[str] = None

    @property
    def failed_items(self) -> List[Item]:
        """Items that failed, ready to be submitted again."""
        return [r.item for r in self.item_results if not r.success]

    @property
    def success(self) -> bool:
        return self.failed == 0


ItemOperation = Callable[[Item], Awaitable[ItemChange]]
ProgressCallback = Callable[[BatchProgress], None]
SleepFunc = Callable[[float], Awaitable[Any]]


class BatchOrchestrator:
    """Runs an item operation over many items under a rate window."""

    def __init__(
        self,
        group_size: int = 2,
        window_delay_ms: int = 1100,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.group_size = group_size
        self.window_delay_ms = window_delay_ms
        self._sleep = sleep
        self._listeners: List[ProgressCallback] = []

    def on_batch_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """
        Subscribe to progress events of every batch run by this orchestrator.

        Returns:
            Function that removes the subscription
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: BatchProgress) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed")

    async def _run_item(self, item: Item, op: ItemOperation, label: str) -> ItemResult:
        try:
            change = await op(item)
        except (ShopifyClientError, BulkManagerError) as e:
            logger.warning(f"{label}: failed to update {item.item_id}: {e}")
            return ItemResult(item=item, success=False, error=str(e))
        except Exception as e:
            logger.exception(f"{label}: unexpected error updating {item.item_id}")
            return ItemResult(item=item, success=False, error=f"Unexpected error: {e}")

        return ItemResult(
            item=item,
            success=True,
            old_values=change.old_values,
            new_values=change.new_values,
        )

    async def run_batch(
        self,
        items: Sequence[Item],
        op: ItemOperation,
        label: str = "Batch",
        group_size: Optional[int] = None,
        window_delay_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Run `op` for every item in rate-limited groups.

        Item failures are captured in the result and never raised. When
        `cancel_event` is set, no further groups are started; items not yet
        dispatched are reported as failed so they can be retried.

        Args:
            items: Items to process
            op: Async operation applied to each item
            label: Name used in log messages
            group_size: Items dispatched concurrently, defaults to the orchestrator's
            window_delay_ms: Delay between groups, defaults to the orchestrator's
            cancel_event: Optional cooperative cancellation flag
            batch_id: Id for the batch, generated if omitted

        Returns:
            BatchResult with one ItemResult per item
        """
        if group_size is None:
            group_size = self.group_size
        if group_size < 1:
            raise ValidationError(f"Group size must be at least 1, got {group_size}")

        if window_delay_ms is None:
            window_delay_ms = self.window_delay_ms

        batch_id = batch_id or generate_batch_id()
        items = list(items)
        groups = [items[i:i + group_size] for i in range(0, len(items), group_size)]

        logger.info(f"{label}: {len(items)} items in {len(groups)} groups (batch {batch_id})")

        started = time.monotonic()
        progress = BatchProgress(total=len(items))
        results: List[ItemResult] = []
        cancelled = False

        def is_cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        for index, group in enumerate(groups):
            # A cancel during the window still stops the next group
            if index > 0 and window_delay_ms > 0 and not is_cancelled():
                await self._sleep(window_delay_ms / 1000)

            if is_cancelled():
                cancelled = True
                for pending in groups[index:]:
                    for item in pending:
                        results.append(ItemResult(item=item, success=False, error=CANCELLED_ERROR))
                        progress.completed += 1
                        progress.failed += 1
                logger.info(f"{label}: cancelled, {len(items) - index * group_size} items not dispatched")
                self._emit(dataclasses.replace(
                    progress, current=None, message=f"Cancelled after {index}/{len(groups)} batches"
                ))
                break

            self._emit(dataclasses.replace(
                progress,
                current=None,
                message=f"Processing batch {index + 1}/{len(groups)} ({len(group)} items)...",
            ))

            group_results = await asyncio.gather(
                *(self._run_item(item, op, label) for item in group)
            )

            for result in group_results:
                results.append(result)
                progress.completed += 1
                if result.success:
                    progress.successful += 1
                else:
                    progress.failed += 1
                progress.current = result.item.display_name
                self._emit(dataclasses.replace(progress, message=None))

            if progress.completed % 100 == 0 or progress.completed == len(items):
                logger.info(
                    f"{label}: progress {progress.completed}/{len(items)} "
                    f"({int(progress.completed / len(items) * 100)}%)"
                )

        successful = sum(1 for r in results if r.success)
        failed = len(results) - successful

        logger.info(f"{label} complete: {successful} succeeded, {failed} failed")

        return BatchResult(
            batch_id=batch_id,
            total=len(items),
            successful=successful,
            failed=failed,
            item_results=results,
            cancelled=cancelled,
            duration=time.monotonic() - started,
        )
