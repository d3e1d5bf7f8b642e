"""
Promotion Engine - Evaluates promotions for a cart with traceability.

Pipeline per promotion:
- Active flag and date window
- Condition tree against the cart/user context
- Product scope and exclusion filtering
- Discount calculation for the promotion's kind
Then the Stacking Resolver picks the final combination, and applied flash
sales are reserved through the allocator before the order is confirmed.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional

from ..config.settings import get_settings, Settings
from ..flash_sales.allocator import FlashSaleAllocator, Reservation
from ..rules.catalog import load_flash_sales, load_price_tiers, load_promotions
from .calculators import (
    calculate_bogo,
    calculate_bundle,
    calculate_discount_amount,
    calculate_quantity_discount,
    calculate_tiered_savings,
    calculate_volume_discount,
)
from .conditions import ConditionEvaluator
from .errors import ConfigurationError
from .exclusions import ExclusionFilter
from .models import Discount, LineItem, Promotion, QuoteRequest, QuoteResult
from .stacking import StackingResolver

logger = logging.getLogger(__name__)


class PromotionEngine:
    """
    Core promotion engine that turns a cart snapshot into a discounted total.

    Resolution order:
    1. Skip inactive promotions and those outside their date window
    2. Evaluate the promotion's conditions against the cart context
    3. Narrow line items to the promotion's products, drop exclusions
    4. Compute the discount with the calculator for the promotion's kind
    5. Resolve stacking across all promotions with a positive discount
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        promotions: Optional[Iterable[Promotion]] = None,
        allocator: Optional[FlashSaleAllocator] = None,
        resolver: Optional[StackingResolver] = None
    ):
        """Initialize engine with promotions, flash sales and the stacking resolver."""
        self.settings = settings or get_settings()
        self.load_errors: list[str] = []

        if promotions is None:
            promotions = self._load_promotions()
        self.promotions = list(promotions)

        self.allocator = allocator or self._load_allocator()
        self.resolver = resolver or StackingResolver(self.settings.max_exclusive_candidates)
        self.evaluator = ConditionEvaluator()
        self.exclusion_filter = ExclusionFilter()

    def _load_promotions(self) -> list[Promotion]:
        """Load compiled promotions if they have been built."""
        path = self.settings.compiled_promotions
        if not path.exists():
            logger.warning("Compiled promotions not found at %s; no promotions loaded", path)
            return []

        tier_sets = None
        if self.settings.price_tiers_csv.exists():
            tier_sets = load_price_tiers(self.settings.price_tiers_csv)

        promotions, errors = load_promotions(path, tier_sets)
        self.load_errors = errors
        return promotions

    def _load_allocator(self) -> FlashSaleAllocator:
        sales = []
        if self.settings.flash_sales_csv.exists():
            sales = load_flash_sales(self.settings.flash_sales_csv)
        return FlashSaleAllocator(sales, lock_timeout=self.settings.allocation_timeout)

    def reload_promotions(self):
        """Reload promotion definitions from disk; flash-sale counters are kept."""
        self.promotions = self._load_promotions()

    @staticmethod
    def build_context(request: QuoteRequest) -> dict:
        """
        Context the condition trees are evaluated against.

        Request attributes sit at the top level; cart aggregates under 'cart'
        and user attributes under 'user'.
        """
        items = request.items
        context = dict(request.attributes or {})
        context['cart'] = {
            'subtotal': request.subtotal,
            'item_count': sum(item.quantity for item in items),
            'line_count': len(items),
            'product_ids': tuple(sorted({item.product_id for item in items})),
            'category_ids': tuple(sorted({item.category_id for item in items})),
            'brand_ids': tuple(sorted({item.brand_id for item in items if item.brand_id})),
            'tags': tuple(sorted({tag for item in items for tag in item.tags})),
        }
        context['user'] = dict(request.user or {})
        return context

    def quote(self, request: QuoteRequest) -> QuoteResult:
        """
        Evaluate every promotion for the cart and resolve the final price.

        Args:
            request: QuoteRequest with line items and condition context

        Returns:
            QuoteResult with applied discounts, trace and warnings
        """
        now = request.now or datetime.now()
        request_date = request.request_date or now.strftime('%Y-%m-%d')
        context = self.build_context(request)

        result = QuoteResult(original_amount=request.subtotal)
        result.add_trace("Cart", f"{len(request.items)} lines", str(request.subtotal))

        candidates: list[Discount] = []
        flash_quantities: dict[str, tuple[str, int]] = {}

        for promotion in sorted(self.promotions, key=lambda p: (-p.priority, p.promotion_id)):
            if not promotion.active:
                result.skip(promotion.promotion_id, "inactive")
                continue
            if not promotion.is_in_window(request_date):
                result.skip(promotion.promotion_id, f"outside date window on {request_date}")
                continue

            if promotion.conditions is not None and not self.evaluator.evaluate(promotion.conditions, context):
                failed = self.evaluator.explain(promotion.conditions, context)
                result.skip(promotion.promotion_id, "conditions not met: " + "; ".join(failed))
                continue

            try:
                discount, flash = self._calculate(promotion, request.items, now, result)
            except ConfigurationError as e:
                # Fail closed: a malformed promotion never applies
                logger.warning("Promotion %s misconfigured: %s", promotion.promotion_id, e)
                result.add_warning(f"Promotion {promotion.promotion_id} misconfigured: {e}")
                result.skip(promotion.promotion_id, "misconfigured")
                continue

            # Amount on its own; the resolver recomputes it against the running total
            amount = calculate_discount_amount(result.original_amount, discount) if discount else 0
            if amount <= 0:
                if promotion.promotion_id not in result.skipped:
                    result.skip(promotion.promotion_id, "no discount for this cart")
                continue

            result.add_trace("Candidate", f"{promotion.name} ({promotion.promotion_id})", str(amount))
            candidates.append(discount)
            if flash:
                flash_quantities[promotion.promotion_id] = flash

        stacking = self.resolver.resolve(result.original_amount, candidates)
        result.total_discount = stacking.total_discount
        result.final_amount = stacking.final_amount
        result.applied = stacking.applied_discounts
        result.strategy = stacking.strategy

        applied_ids = set()
        for applied in stacking.applied_discounts:
            applied_ids.add(applied.discount_id)
            result.add_trace("Applied", applied.discount_id, str(applied.amount))
            if applied.discount_id in flash_quantities and applied.amount > 0:
                sale_id, quantity = flash_quantities[applied.discount_id]
                result.flash_sale_quantities[sale_id] = result.flash_sale_quantities.get(sale_id, 0) + quantity

        for discount in candidates:
            if discount.discount_id not in applied_ids:
                result.skip(discount.discount_id, "not in best stacking combination")

        if result.final_amount < 0 or result.total_discount > result.original_amount:
            logger.error(
                "Quote invariant violated: original=%d discount=%d final=%d",
                result.original_amount, result.total_discount, result.final_amount
            )
            result.total_discount = min(max(result.total_discount, 0), result.original_amount)
            result.final_amount = result.original_amount - result.total_discount

        result.add_trace("Total", f"Strategy {result.strategy}", str(result.final_amount))
        return result

    def _scope(self, promotion: Promotion, items: list[LineItem], result: QuoteResult) -> list[LineItem]:
        """Line items the promotion may discount."""
        if promotion.product_ids is not None:
            items = [item for item in items if item.product_id in promotion.product_ids]

        excluded: dict[str, str] = {}
        eligible = self.exclusion_filter.filter_eligible(items, promotion.exclusions, excluded)
        for product_id, reason in excluded.items():
            result.add_trace("Excluded", f"{promotion.promotion_id}: product {product_id}", reason)
        return eligible

    def _calculate(
        self,
        promotion: Promotion,
        items: list[LineItem],
        now: datetime,
        result: QuoteResult
    ) -> tuple[Optional[Discount], Optional[tuple[str, int]]]:
        """
        Stacking candidate for one promotion.

        Returns (discount, flash) where discount is None when no line item is
        eligible and flash is (sale_id, quantity) for flash sale promotions.
        """
        kind = promotion.kind

        if kind == 'flash_sale':
            return self._calculate_flash_sale(promotion, items, now, result)

        eligible = self._scope(promotion, items, result)
        if not eligible:
            result.skip(promotion.promotion_id, "no eligible line items")
            return None, None

        base = sum(item.extended_price for item in eligible)

        # Percentage and fixed apply to the running amount inside the resolver
        if kind in ('percentage', 'fixed'):
            return promotion.as_discount(base), None

        if kind == 'bogo':
            amount = calculate_bogo(eligible, promotion.bogo).discount_amount
        elif kind == 'tiered':
            amount = calculate_tiered_savings(eligible, promotion.tiers).discount_amount
        elif kind == 'bundle':
            amount = calculate_bundle(eligible, promotion.bundle).discount_amount
        elif kind == 'quantity':
            amount = sum(
                calculate_quantity_discount(item.quantity, item.unit_price, promotion.quantity_tiers)
                for item in eligible
            )
        elif kind == 'volume':
            amount = calculate_volume_discount(base, promotion.volume_tiers)
        else:
            raise ConfigurationError(f"Unsupported promotion kind '{kind}'")

        return promotion.as_discount(base, 'fixed', amount), None

    def _calculate_flash_sale(
        self,
        promotion: Promotion,
        items: list[LineItem],
        now: datetime,
        result: QuoteResult
    ) -> tuple[Optional[Discount], Optional[tuple[str, int]]]:
        sale_id = promotion.flash_sale_id
        try:
            sale = self.allocator.get(sale_id)
        except KeyError:
            raise ConfigurationError(f"Unknown flash sale '{sale_id}'")

        if not self.allocator.is_active(sale_id, now):
            result.skip(promotion.promotion_id, f"flash sale {sale_id} is {self.allocator.state(sale_id, now).value}")
            return None, None

        in_sale = [item for item in items if item.product_id in sale.product_ids]
        eligible = self._scope(promotion, in_sale, result)
        if not eligible:
            result.skip(promotion.promotion_id, "no eligible line items")
            return None, None

        quantity = sum(item.quantity for item in eligible)
        remaining = self.allocator.get_remaining(sale_id)
        if remaining is not None and remaining < quantity:
            result.add_warning(f"Flash sale {sale_id} shows {remaining} units left; reservation may fail")

        base = sum(item.extended_price for item in eligible)
        return promotion.as_discount(base, 'percentage', sale.discount_percent), (sale_id, quantity)

    def reserve_flash_sales(
        self,
        result: QuoteResult,
        order_id: str,
        now: Optional[datetime] = None
    ) -> Optional[list[Reservation]]:
        """
        Reserve every flash sale the quote consumes, all or nothing.

        Returns the reservations, or None if any sale could not be allocated
        (reservations already made for the order are cancelled).
        """
        reservations: list[Reservation] = []
        for sale_id, quantity in sorted(result.flash_sale_quantities.items()):
            reservation = self.allocator.reserve(sale_id, quantity, order_id, now=now)
            if reservation is None:
                logger.warning("Order %s: flash sale %s could not reserve %d units", order_id, sale_id, quantity)
                self.cancel_order(reservations, now=now)
                return None
            reservations.append(reservation)
        return reservations

    def confirm_order(self, reservations: Iterable[Reservation]) -> bool:
        """Mark reservations as backed by a completed order."""
        return all([self.allocator.confirm(r.reservation_id) for r in reservations])

    def cancel_order(self, reservations: Iterable[Reservation], now: Optional[datetime] = None) -> bool:
        """
        Release unconfirmed reservations on cancellation or payment timeout.

        Returns False if any could not be released yet; those stay pending for
        release_expired_reservations.
        """
        return all([self.allocator.cancel(r.reservation_id, now=now) for r in reservations])

    def release_expired_reservations(self, now: Optional[datetime] = None) -> list[Reservation]:
        """Reconciliation hook: release reservations unconfirmed past the grace period."""
        released = self.allocator.release_expired(self.settings.reservation_grace_seconds, now=now)
        if released:
            logger.info("Released %d expired flash sale reservations", len(released))
        return released
