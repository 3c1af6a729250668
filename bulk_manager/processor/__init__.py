"""
Processor package for bulk operations.
"""

from .rules import (
    PriceRule,
    RuleType,
    ApplyTo,
    RoundingRule,
    Direction,
    compute_new_value,
    compute_target_values,
    compute_discount,
    format_price,
    MIN_PRICE,
)
from .batch import (
    BatchOrchestrator,
    BatchProgress,
    BatchResult,
    Item,
    ItemChange,
    ItemResult,
)
from .rollback import RollbackEngine, RollbackResult
from .service import BulkService

__all__ = [
    "PriceRule",
    "RuleType",
    "ApplyTo",
    "RoundingRule",
    "Direction",
    "compute_new_value",
    "compute_target_values",
    "compute_discount",
    "format_price",
    "MIN_PRICE",
    "BatchOrchestrator",
    "BatchProgress",
    "BatchResult",
    "Item",
    "ItemChange",
    "ItemResult",
    "RollbackEngine",
    "RollbackResult",
    "BulkService",
]
