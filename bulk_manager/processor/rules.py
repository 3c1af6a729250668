"""
Business rules for calculating new variant prices.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..errors import ValidationError


# Rule constants
MIN_PRICE = Decimal("0.01")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


class RuleType(str, Enum):
    """How the rule value is applied to the current price."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    ABSOLUTE = "absolute"


class ApplyTo(str, Enum):
    """Which price field(s) a rule changes."""
    PRICE = "price"
    COMPARE_AT_PRICE = "compare_at_price"
    BOTH = "both"


class RoundingRule(str, Enum):
    """Price ending applied after the rule."""
    NONE = "none"
    NEAREST_99 = "nearest_99"
    NEAREST_00 = "nearest_00"
    NEAREST_95 = "nearest_95"


class Direction(str, Enum):
    """Whether a percentage/fixed rule raises or lowers the price."""
    INCREASE = "increase"
    DECREASE = "decrease"


class PriceRule(BaseModel):
    """A bulk price rule. Pure value object."""
    model_config = ConfigDict(frozen=True)

    type: RuleType = RuleType.PERCENTAGE
    value: Decimal
    apply_to: ApplyTo = ApplyTo.PRICE
    rounding_rule: RoundingRule = RoundingRule.NONE

    @property
    def applies_to_price(self) -> bool:
        return self.apply_to in (ApplyTo.PRICE, ApplyTo.BOTH)

    @property
    def applies_to_compare_at(self) -> bool:
        return self.apply_to in (ApplyTo.COMPARE_AT_PRICE, ApplyTo.BOTH)

    def describe(self, direction: Direction) -> str:
        """Short human readable summary, e.g. 'Increase percentage 20%'."""
        suffix = "%" if self.type == RuleType.PERCENTAGE else ""
        return f"{direction.value.capitalize()} {self.type.value} {self.value}{suffix}"


def validate_rule(rule: PriceRule) -> None:
    """
    Reject rules that cannot produce a sensible price.

    Raises:
        ValidationError: If the rule value is not positive
    """
    if not rule.value.is_finite() or rule.value <= 0:
        raise ValidationError(f"Rule value must be positive, got {rule.value}")


def validate_discount(
    percentage: Decimal,
    expiry: Optional[datetime] = None,
    current_time: Optional[datetime] = None,
) -> None:
    """
    Validate discount parameters.

    Raises:
        ValidationError: If percentage is outside (0, 100) or expiry is not in the future
    """
    if percentage <= 0 or percentage >= HUNDRED:
        raise ValidationError("Discount percentage must be between 1 and 99")

    if expiry is not None:
        if current_time is None:
            current_time = datetime.now(timezone.utc)
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        if expiry <= current_time:
            raise ValidationError("Expiry date must be in the future")


def apply_rounding(value: Decimal, rounding_rule: RoundingRule) -> Decimal:
    """Apply a price ending to an already clamped value."""
    if rounding_rule == RoundingRule.NEAREST_99:
        return value.to_integral_value(rounding=ROUND_FLOOR) + Decimal("0.99")
    if rounding_rule == RoundingRule.NEAREST_95:
        return value.to_integral_value(rounding=ROUND_FLOOR) + Decimal("0.95")
    if rounding_rule == RoundingRule.NEAREST_00:
        return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return value


def compute_new_value(
    current_value: str,
    rule: PriceRule,
    direction: Direction = Direction.INCREASE,
) -> str:
    """
    Calculate the new price for a single price field.

    Rules:
    1. percentage: current × (1 ± value/100)
    2. fixed: current ± value
    3. absolute: value, regardless of direction

    The result is clamped to a minimum of 0.01 (no maximum, Shopify
    enforces its own), then rounded per the rule's rounding_rule.

    Args:
        current_value: Current price as string (e.g., "29.99")
        rule: The price rule to apply
        direction: Increase or decrease (ignored for absolute rules)

    Returns:
        New price as string with two decimal places
    """
    price = Decimal(current_value)
    value = rule.value

    if rule.type == RuleType.PERCENTAGE:
        factor = value / HUNDRED
        if direction == Direction.INCREASE:
            new_price = price * (1 + factor)
        else:
            new_price = price * (1 - factor)
    elif rule.type == RuleType.FIXED:
        if direction == Direction.INCREASE:
            new_price = price + value
        else:
            new_price = price - value
    else:
        new_price = value

    if new_price < MIN_PRICE:
        new_price = MIN_PRICE

    new_price = apply_rounding(new_price, rule.rounding_rule)

    return str(new_price.quantize(CENT, rounding=ROUND_HALF_UP))


def compute_target_values(
    current_price: str,
    current_compare_at: Optional[str],
    rule: PriceRule,
    direction: Direction,
) -> dict:
    """
    Compute target price fields for a variant.

    Price and compare-at price are evaluated independently. The compare-at
    price is only recalculated when the variant has one.
    """
    target = {
        "price": current_price,
        "compare_at_price": current_compare_at,
    }

    if rule.applies_to_price:
        target["price"] = compute_new_value(current_price, rule, direction)

    if rule.applies_to_compare_at and current_compare_at:
        target["compare_at_price"] = compute_new_value(current_compare_at, rule, direction)

    return target


def compute_discount(
    price: str,
    compare_at_price: Optional[str],
    percentage: Decimal,
) -> Tuple[str, str]:
    """
    Calculate discounted price and compare-at price.

    Rules:
    1. Variant already discounted (compare_at > price): discount the
       compare_at price, keep compare_at
    2. Otherwise: current price becomes compare_at, discount the current price

    Args:
        price: Current price as string
        compare_at_price: Current compare-at price or None
        percentage: Discount percentage (0-100 exclusive)

    Returns:
        Tuple of (new_price, new_compare_at_price) as strings
    """
    current = Decimal(price)
    compare_at = Decimal(compare_at_price) if compare_at_price else None

    if compare_at is not None and compare_at > current:
        base = compare_at
    else:
        base = current

    discounted = base * (1 - Decimal(percentage) / HUNDRED)

    return (
        str(discounted.quantize(CENT, rounding=ROUND_HALF_UP)),
        str(base.quantize(CENT, rounding=ROUND_HALF_UP)),
    )


def values_differ(current: Optional[str], new: Optional[str]) -> bool:
    """
    Determine if a price field needs to be updated.

    Args:
        current: Current value
        new: Calculated new value

    Returns:
        True if update is needed, False otherwise
    """
    return format_price(current) != format_price(new)


def format_price(value: Optional[str]) -> Optional[str]:
    """
    Format a price string to standard format (2 decimal places).

    Args:
        value: Price as string

    Returns:
        Formatted price, the raw value if it is not a number, or None
    """
    if value is None:
        return None

    try:
        decimal_value = Decimal(value)
        return str(decimal_value.quantize(CENT, rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError, TypeError):
        return value
