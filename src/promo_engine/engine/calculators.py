"""
Discount Calculators - one pure function per promotion rule type.

Every calculator works in integer minor units, accumulates exact Decimal
values and rounds once, at the end, with the shared round_half_up helper.
"""
from decimal import Decimal
from typing import Iterable, Optional

from .errors import TierConfigurationError
from .models import (
    AffectedItem,
    BOGORule,
    BundleRule,
    CalculationResult,
    Discount,
    LineItem,
    PriceTier,
    QuantityTier,
    VolumeTier,
)
from .money import percent_of, round_half_up, to_decimal


# ---------------------------------------------------------------------------
# Percentage / fixed
# ---------------------------------------------------------------------------

def calculate_discount_amount(base: int, discount: Discount) -> int:
    """
    Amount of a percentage or fixed discount against a base amount.

    The base is limited to base_cap when present. The amount is clamped to
    [0, base] and then to max_amount when present.
    """
    base = max(0, int(base))
    if discount.base_cap is not None:
        base = min(base, discount.base_cap)
    if discount.type == 'percentage':
        amount = percent_of(base, discount.value)
    else:
        amount = to_decimal(discount.value)

    amount = min(max(amount, Decimal(0)), Decimal(base))
    if discount.max_amount is not None:
        amount = min(amount, Decimal(discount.max_amount))
    return round_half_up(amount)


# ---------------------------------------------------------------------------
# BOGO
# ---------------------------------------------------------------------------

def is_bogo_eligible(item: LineItem, rule: BOGORule) -> bool:
    """No product/category restriction means every item qualifies."""
    if rule.applicable_product_ids is None and rule.applicable_category_ids is None:
        return True
    if rule.applicable_product_ids and item.product_id in rule.applicable_product_ids:
        return True
    if rule.applicable_category_ids and item.category_id in rule.applicable_category_ids:
        return True
    return False


def calculate_bogo(items: Iterable[LineItem], rule: BOGORule) -> CalculationResult:
    """
    Buy X get Y discount.

    Only complete sets count: a line with fewer units than buy+get gets
    nothing. max_applications caps the sets per line item.
    """
    set_size = rule.buy_quantity + rule.get_quantity
    total = Decimal(0)
    affected = []

    for item in items:
        if not is_bogo_eligible(item, rule):
            continue

        sets = item.quantity // set_size
        if rule.max_applications is not None:
            sets = min(sets, rule.max_applications)

        discounted_quantity = sets * rule.get_quantity
        if discounted_quantity == 0:
            continue

        item_discount = percent_of(item.unit_price * discounted_quantity, rule.discount_percent)
        total += item_discount
        affected.append(AffectedItem(
            product_id=item.product_id,
            discounted_quantity=discounted_quantity,
            amount=round_half_up(item_discount),
        ))

    return CalculationResult(discount_amount=round_half_up(total), affected_items=affected)


# ---------------------------------------------------------------------------
# Tiered pricing
# ---------------------------------------------------------------------------

def validate_tiers(tiers: Iterable[PriceTier]) -> list[PriceTier]:
    """
    Sort tiers and check they form one contiguous range starting at 1.

    Only the last tier may be open-ended. Returns the sorted tiers.
    """
    ordered = sorted(tiers, key=lambda t: t.min_quantity)
    if not ordered:
        raise TierConfigurationError("At least one price tier is required")
    if ordered[0].min_quantity != 1:
        raise TierConfigurationError(
            f"Price tiers must start at quantity 1, first tier starts at {ordered[0].min_quantity}"
        )

    for prev, tier in zip(ordered, ordered[1:]):
        if prev.max_quantity is None:
            raise TierConfigurationError("Only the last price tier may be open-ended")
        if tier.min_quantity <= prev.max_quantity:
            raise TierConfigurationError(
                f"Price tiers overlap at quantity {tier.min_quantity}"
            )
        if tier.min_quantity != prev.max_quantity + 1:
            raise TierConfigurationError(
                f"Price tiers leave a gap between {prev.max_quantity} and {tier.min_quantity}"
            )
    return ordered


def calculate_tiered_price(quantity: int, tiers: Iterable[PriceTier]) -> int:
    """
    Total price (not a discount) for a quantity under tiered pricing.

    Units are consumed from the lowest tier upward: with tiers 1-10 @ 100 and
    11+ @ 80, 15 units cost 10*100 + 5*80.
    """
    if quantity <= 0:
        return 0

    total = Decimal(0)
    remaining = quantity

    for tier in validate_tiers(tiers):
        if remaining == 0:
            break
        if tier.max_quantity is None:
            tier_quantity = remaining
        else:
            tier_quantity = min(remaining, tier.max_quantity - tier.min_quantity + 1)
        total += tier_quantity * to_decimal(tier.price_per_unit)
        remaining -= tier_quantity

    if remaining:
        raise TierConfigurationError(f"Price tiers do not cover quantity {quantity}")

    return round_half_up(total)


def get_tier_for_quantity(quantity: int, tiers: Iterable[PriceTier]) -> Optional[PriceTier]:
    """The tier whose range contains the quantity, if any."""
    for tier in sorted(tiers, key=lambda t: t.min_quantity):
        if tier.contains(quantity):
            return tier
    return None


def calculate_tiered_savings(items: Iterable[LineItem], tiers: Iterable[PriceTier]) -> CalculationResult:
    """Per-line difference between list price and tiered price."""
    tiers = validate_tiers(tiers)
    total = 0
    affected = []

    for item in items:
        tiered_price = calculate_tiered_price(item.quantity, tiers)
        saving = max(0, item.extended_price - tiered_price)
        if saving == 0:
            continue
        total += saving
        affected.append(AffectedItem(
            product_id=item.product_id,
            discounted_quantity=item.quantity,
            amount=saving,
        ))

    return CalculationResult(discount_amount=total, affected_items=affected)


# ---------------------------------------------------------------------------
# Quantity / volume
# ---------------------------------------------------------------------------

def calculate_quantity_discount(quantity: int, unit_price: int, tiers: Iterable[QuantityTier]) -> int:
    """Percentage off the line subtotal from the first tier containing quantity."""
    for tier in tiers:
        if tier.contains(quantity):
            return round_half_up(percent_of(unit_price * quantity, tier.discount_percent))
    return 0


def calculate_volume_discount(order_total: int, tiers: Iterable[VolumeTier]) -> int:
    """Percentage off the order total from the first tier containing it."""
    for tier in tiers:
        if tier.contains(order_total):
            return round_half_up(percent_of(order_total, tier.discount_percent))
    return 0


def next_volume_tier(current_amount: int, tiers: Iterable[VolumeTier]) -> tuple[Optional[VolumeTier], int]:
    """
    Next volume threshold above the current amount.

    Returns (tier, amount_to_next); (None, 0) when already in the top tier.
    """
    for tier in sorted(tiers, key=lambda t: t.min_amount):
        if tier.min_amount > current_amount:
            return tier, tier.min_amount - current_amount
    return None, 0


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------

def calculate_bundle(items: Iterable[LineItem], rule: BundleRule) -> CalculationResult:
    """
    Discount for complete bundles of the required products.

    The bundle count is the minimum over components of available // required.
    A fixed bundle discount never exceeds the value of one bundle.
    """
    available: dict[str, int] = {}
    prices: dict[str, int] = {}
    for item in items:
        available[item.product_id] = available.get(item.product_id, 0) + item.quantity
        prices.setdefault(item.product_id, item.unit_price)

    bundles = min(available.get(c.product_id, 0) // c.quantity for c in rule.components)
    if rule.max_applications is not None:
        bundles = min(bundles, rule.max_applications)
    if bundles <= 0:
        return CalculationResult(discount_amount=0)

    bundle_value = sum(prices[c.product_id] * c.quantity for c in rule.components)
    if rule.discount_type == 'percentage':
        per_bundle = percent_of(bundle_value, rule.discount_value)
    else:
        per_bundle = min(to_decimal(rule.discount_value), Decimal(bundle_value))

    affected = [
        AffectedItem(product_id=c.product_id, discounted_quantity=c.quantity * bundles)
        for c in rule.components
    ]
    return CalculationResult(discount_amount=round_half_up(per_bundle * bundles), affected_items=affected)
