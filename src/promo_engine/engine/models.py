"""
Data models for the promotion engine.

Uses dataclasses for structured, type-safe data representation.
Definitions (conditions, exclusions, discounts, tiers) are frozen and
validated on construction so malformed promotions are rejected at load time.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from .errors import RuleTreeError, PromotionDefinitionError, TierConfigurationError


VALID_OPERATORS = {'=', '!=', '>', '<', '>=', '<=', 'in', 'not_in', 'contains'}
VALID_GROUP_OPERATORS = {'AND', 'OR'}

# Check order matters: it decides which reason is reported first
EXCLUSION_TYPES = ('product', 'category', 'brand', 'tag')

VALID_DISCOUNT_TYPES = {'percentage', 'fixed'}

VALID_PROMOTION_KINDS = {
    'percentage',
    'fixed',
    'bogo',
    'tiered',
    'bundle',
    'quantity',
    'volume',
    'flash_sale',
}

SCALAR_TYPES = (str, int, float, bool)


def to_naive_local(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _whole_number(value, name: str, product_id: str) -> int:
    if isinstance(value, bool) or int(value) != value:
        raise ValueError(f"{name} must be a whole number for product {product_id}")
    return int(value)


Scalar = Union[str, int, float, bool]
ConditionValue = Union[Scalar, tuple]


def _id_set(values) -> frozenset:
    """Normalize a collection of ids to a frozenset of strings."""
    if values is None:
        return frozenset()
    if isinstance(values, (str, int)):
        values = [values]
    return frozenset(str(v).strip() for v in values)


def _optional_id_set(values) -> Optional[frozenset]:
    if values is None:
        return None
    return _id_set(values)


def _condition_value(value) -> ConditionValue:
    """Restrict a condition value to a scalar or a tuple of scalars."""
    if isinstance(value, SCALAR_TYPES):
        return value
    if isinstance(value, (list, tuple)):
        items = tuple(value)
    elif isinstance(value, (set, frozenset)):
        items = tuple(sorted(value, key=repr))
    else:
        raise RuleTreeError(f"Unsupported condition value type: {type(value).__name__}")
    for item in items:
        if not isinstance(item, SCALAR_TYPES):
            raise RuleTreeError(f"List values must be scalars, got {type(item).__name__}")
    return items


@dataclass(frozen=True)
class LineItem:
    """A single cart line as handed over by the order pipeline."""
    product_id: str
    category_id: str
    quantity: int
    unit_price: int  # minor units
    brand_id: Optional[str] = None
    tags: frozenset = frozenset()

    def __post_init__(self):
        object.__setattr__(self, 'product_id', str(self.product_id).strip())
        object.__setattr__(self, 'category_id', str(self.category_id).strip())
        if self.brand_id is not None:
            object.__setattr__(self, 'brand_id', str(self.brand_id).strip())
        object.__setattr__(self, 'tags', _id_set(self.tags))
        object.__setattr__(self, 'quantity', _whole_number(self.quantity, 'quantity', self.product_id))
        object.__setattr__(self, 'unit_price', _whole_number(self.unit_price, 'unit_price', self.product_id))
        if self.quantity < 1:
            raise ValueError(f"quantity must be positive for product {self.product_id}")
        if self.unit_price < 0:
            raise ValueError(f"unit_price must not be negative for product {self.product_id}")

    @property
    def extended_price(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Condition:
    """Leaf of a rule tree: field <operator> value."""
    field: str
    operator: str
    value: ConditionValue

    def __post_init__(self):
        if not self.field or not isinstance(self.field, str):
            raise RuleTreeError("Condition field must be a non-empty dotted path")
        if self.operator not in VALID_OPERATORS:
            raise RuleTreeError(
                f"Invalid operator '{self.operator}', must be one of: {sorted(VALID_OPERATORS)}"
            )
        value = _condition_value(self.value)
        if self.operator in ('in', 'not_in') and not isinstance(value, tuple):
            raise RuleTreeError(f"Operator '{self.operator}' requires a list value")
        object.__setattr__(self, 'value', value)


@dataclass(frozen=True)
class RuleGroup:
    """AND/OR node of a rule tree. Children are Conditions or RuleGroups."""
    operator: str
    children: tuple = ()

    def __post_init__(self):
        operator = str(self.operator).upper()
        if operator not in VALID_GROUP_OPERATORS:
            raise RuleTreeError(f"Invalid group operator '{self.operator}', must be AND or OR")
        children = tuple(self.children)
        for child in children:
            if not isinstance(child, (Condition, RuleGroup)):
                raise RuleTreeError(
                    f"Rule group children must be Condition or RuleGroup, got {type(child).__name__}"
                )
        object.__setattr__(self, 'operator', operator)
        object.__setattr__(self, 'children', children)


@dataclass(frozen=True)
class ExclusionRule:
    """Removes products/categories/brands/tags from a promotion's scope."""
    type: str
    ids: frozenset
    reason: Optional[str] = None

    def __post_init__(self):
        if self.type not in EXCLUSION_TYPES:
            raise PromotionDefinitionError(
                f"Invalid exclusion type '{self.type}', must be one of: {EXCLUSION_TYPES}"
            )
        object.__setattr__(self, 'ids', _id_set(self.ids))


@dataclass(frozen=True)
class Discount:
    """A candidate discount handed to the stacking resolver."""
    discount_id: str
    type: str
    value: Union[int, float]
    priority: int = 0  # higher applies first
    stackable: bool = True
    max_amount: Optional[int] = None
    # Largest amount the discount may be taken from, e.g. the eligible line items
    base_cap: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'discount_id', str(self.discount_id))
        if self.type not in VALID_DISCOUNT_TYPES:
            raise PromotionDefinitionError(f"Invalid discount type '{self.type}'")
        if self.value < 0:
            raise PromotionDefinitionError(f"Discount {self.discount_id} value must not be negative")
        if self.type == 'percentage' and self.value > 100:
            raise PromotionDefinitionError(f"Discount {self.discount_id} percentage exceeds 100")
        if self.max_amount is not None and self.max_amount < 0:
            raise PromotionDefinitionError(f"Discount {self.discount_id} max_amount must not be negative")
        if self.base_cap is not None and self.base_cap < 0:
            raise PromotionDefinitionError(f"Discount {self.discount_id} base_cap must not be negative")


@dataclass(frozen=True)
class BOGORule:
    """Buy X get Y at Z% off."""
    buy_quantity: int
    get_quantity: int
    discount_percent: Union[int, float] = 100
    applicable_product_ids: Optional[frozenset] = None
    applicable_category_ids: Optional[frozenset] = None
    max_applications: Optional[int] = None

    def __post_init__(self):
        if self.buy_quantity < 1 or self.get_quantity < 1:
            raise PromotionDefinitionError("BOGO buy_quantity and get_quantity must be at least 1")
        if not 0 <= self.discount_percent <= 100:
            raise PromotionDefinitionError("BOGO discount_percent must be between 0 and 100")
        if self.max_applications is not None and self.max_applications < 1:
            raise PromotionDefinitionError("BOGO max_applications must be at least 1")
        object.__setattr__(self, 'applicable_product_ids', _optional_id_set(self.applicable_product_ids))
        object.__setattr__(self, 'applicable_category_ids', _optional_id_set(self.applicable_category_ids))

    @classmethod
    def free(cls, product_ids=None) -> 'BOGORule':
        """Buy one get one free."""
        return cls(buy_quantity=1, get_quantity=1, discount_percent=100, applicable_product_ids=product_ids)

    @classmethod
    def half_off(cls, product_ids=None) -> 'BOGORule':
        """Buy one get one 50% off."""
        return cls(buy_quantity=1, get_quantity=1, discount_percent=50, applicable_product_ids=product_ids)


@dataclass(frozen=True)
class PriceTier:
    """Per-unit price for the quantity range [min_quantity, max_quantity]."""
    min_quantity: int
    max_quantity: Optional[int]  # None = open-ended
    price_per_unit: int

    def __post_init__(self):
        if self.min_quantity < 1:
            raise TierConfigurationError("Tier min_quantity must be at least 1")
        if self.max_quantity is not None and self.max_quantity < self.min_quantity:
            raise TierConfigurationError(
                f"Tier max_quantity {self.max_quantity} is below min_quantity {self.min_quantity}"
            )
        if self.price_per_unit < 0:
            raise TierConfigurationError("Tier price_per_unit must not be negative")

    def contains(self, quantity: int) -> bool:
        return quantity >= self.min_quantity and (self.max_quantity is None or quantity <= self.max_quantity)


@dataclass(frozen=True)
class QuantityTier:
    """Percentage off a line subtotal for a quantity range."""
    min_quantity: int
    max_quantity: Optional[int]
    discount_percent: Union[int, float]

    def contains(self, quantity: int) -> bool:
        return quantity >= self.min_quantity and (self.max_quantity is None or quantity <= self.max_quantity)


@dataclass(frozen=True)
class VolumeTier:
    """Percentage off the order total for an amount range (minor units)."""
    min_amount: int
    max_amount: Optional[int]
    discount_percent: Union[int, float]

    def contains(self, amount: int) -> bool:
        return amount >= self.min_amount and (self.max_amount is None or amount <= self.max_amount)


@dataclass(frozen=True)
class BundleComponent:
    product_id: str
    quantity: int

    def __post_init__(self):
        object.__setattr__(self, 'product_id', str(self.product_id).strip())
        if self.quantity < 1:
            raise PromotionDefinitionError("Bundle component quantity must be at least 1")


@dataclass(frozen=True)
class BundleRule:
    """Discount for buying a specific combination of products."""
    components: tuple
    discount_type: str
    discount_value: Union[int, float]
    max_applications: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'components', tuple(self.components))
        if not self.components:
            raise PromotionDefinitionError("Bundle requires at least one component")
        if self.discount_type not in VALID_DISCOUNT_TYPES:
            raise PromotionDefinitionError(f"Invalid bundle discount type '{self.discount_type}'")
        if self.discount_value < 0:
            raise PromotionDefinitionError("Bundle discount_value must not be negative")


@dataclass
class FlashSale:
    """
    A time-boxed sale with an optional hard cap on units sold.

    sold_quantity is the only field mutated during the sale, and only by
    the FlashSaleAllocator.
    """
    sale_id: str
    product_ids: frozenset
    discount_percent: Union[int, float]
    start_time: datetime
    end_time: datetime
    max_quantity: Optional[int] = None  # None = unlimited
    sold_quantity: int = 0
    is_active: bool = True
    name: str = ""

    def __post_init__(self):
        self.sale_id = str(self.sale_id)
        self.product_ids = _id_set(self.product_ids)
        self.start_time = to_naive_local(self.start_time)
        self.end_time = to_naive_local(self.end_time)
        if self.end_time < self.start_time:
            raise PromotionDefinitionError(f"Flash sale {self.sale_id} ends before it starts")
        if self.max_quantity is not None and self.max_quantity < 0:
            raise PromotionDefinitionError(f"Flash sale {self.sale_id} max_quantity must not be negative")
        if not 0 <= self.discount_percent <= 100:
            raise PromotionDefinitionError(f"Flash sale {self.sale_id} discount_percent must be 0-100")


@dataclass(frozen=True)
class Promotion:
    """A promotion definition as read from the catalog."""
    promotion_id: str
    name: str
    kind: str
    priority: int = 0
    stackable: bool = True
    value: Union[int, float] = 0
    max_amount: Optional[int] = None
    conditions: Optional[RuleGroup] = None  # None = always eligible
    exclusions: tuple = ()
    bogo: Optional[BOGORule] = None
    tiers: tuple = ()
    bundle: Optional[BundleRule] = None
    quantity_tiers: tuple = ()
    volume_tiers: tuple = ()
    flash_sale_id: Optional[str] = None
    product_ids: Optional[frozenset] = None  # None = every product
    active: bool = True
    start_date: Optional[str] = None  # YYYY-MM-DD, inclusive
    end_date: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'promotion_id', str(self.promotion_id))
        object.__setattr__(self, 'exclusions', tuple(self.exclusions))
        object.__setattr__(self, 'tiers', tuple(self.tiers))
        object.__setattr__(self, 'quantity_tiers', tuple(self.quantity_tiers))
        object.__setattr__(self, 'volume_tiers', tuple(self.volume_tiers))
        object.__setattr__(self, 'product_ids', _optional_id_set(self.product_ids))

        if self.kind not in VALID_PROMOTION_KINDS:
            raise PromotionDefinitionError(
                f"Promotion {self.promotion_id}: invalid kind '{self.kind}'"
            )
        if self.kind == 'bogo' and self.bogo is None:
            raise PromotionDefinitionError(f"Promotion {self.promotion_id}: bogo kind requires a BOGO rule")
        if self.kind == 'tiered' and not self.tiers:
            raise PromotionDefinitionError(f"Promotion {self.promotion_id}: tiered kind requires price tiers")
        if self.kind == 'bundle' and self.bundle is None:
            raise PromotionDefinitionError(f"Promotion {self.promotion_id}: bundle kind requires a bundle rule")
        if self.kind == 'quantity' and not self.quantity_tiers:
            raise PromotionDefinitionError(f"Promotion {self.promotion_id}: quantity kind requires quantity tiers")
        if self.kind == 'volume' and not self.volume_tiers:
            raise PromotionDefinitionError(f"Promotion {self.promotion_id}: volume kind requires volume tiers")
        if self.kind == 'flash_sale' and not self.flash_sale_id:
            raise PromotionDefinitionError(f"Promotion {self.promotion_id}: flash_sale kind requires flash_sale_id")
        if self.kind in ('percentage', 'fixed'):
            # Same value ranges as a Discount of that type
            Discount(discount_id=self.promotion_id, type=self.kind, value=self.value)
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise PromotionDefinitionError(f"Promotion {self.promotion_id}: start_date after end_date")

    def as_discount(
        self,
        eligible_base: int,
        discount_type: Optional[str] = None,
        value: Union[int, float, None] = None
    ) -> Discount:
        """
        Discount handed to the stacking resolver.

        Percentage and fixed promotions keep their own type and value so they
        apply to the running amount; other kinds pass the type and value their
        calculator produced. eligible_base caps what the discount may be taken
        from, so excluded line items never contribute.
        """
        return Discount(
            discount_id=self.promotion_id,
            type=discount_type or self.kind,
            value=self.value if value is None else value,
            priority=self.priority,
            stackable=self.stackable,
            max_amount=self.max_amount,
            base_cap=eligible_base,
        )

    def is_in_window(self, request_date: str) -> bool:
        if self.start_date and request_date < self.start_date:
            return False
        if self.end_date and request_date > self.end_date:
            return False
        return True


@dataclass
class ExclusionResult:
    """Outcome of checking one line item against exclusion rules."""
    excluded: bool
    reason: Optional[str] = None
    rule_type: Optional[str] = None


@dataclass
class AffectedItem:
    product_id: str
    discounted_quantity: int
    amount: int = 0


@dataclass
class CalculationResult:
    """Output of a discount calculator."""
    discount_amount: int
    affected_items: list[AffectedItem] = field(default_factory=list)


@dataclass
class AppliedDiscount:
    discount_id: str
    amount: int


@dataclass
class StackingResult:
    """Chosen discount combination and the resulting price."""
    original_amount: int
    total_discount: int
    final_amount: int
    applied_discounts: list[AppliedDiscount] = field(default_factory=list)
    strategy: str = "greedy"

    @property
    def applied_ids(self) -> list[str]:
        return [a.discount_id for a in self.applied_discounts]


@dataclass
class TraceStep:
    """A single step in the promotion evaluation trace."""
    step: str
    description: str
    value: Optional[str] = None


@dataclass
class QuoteRequest:
    """A cart snapshot plus the context used by promotion conditions."""
    items: list[LineItem]
    user: Optional[dict] = None
    attributes: Optional[dict] = None  # extra context keys, e.g. {"channel": "web"}
    request_date: Optional[str] = None  # ISO date string
    now: Optional[datetime] = None

    @property
    def subtotal(self) -> int:
        return sum(item.extended_price for item in self.items)


@dataclass
class QuoteResult:
    """Complete result of evaluating promotions for a cart."""
    original_amount: int
    total_discount: int = 0
    final_amount: int = 0
    applied: list[AppliedDiscount] = field(default_factory=list)
    strategy: str = "greedy"

    # Sale id -> units the order consumes from that flash sale
    flash_sale_quantities: dict[str, int] = field(default_factory=dict)

    # Promotion id -> reason it did not contribute
    skipped: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)

    def add_trace(self, step: str, description: str, value: str = None):
        """Add a step to the result-level trace."""
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def add_warning(self, warning: str):
        """Add a result-level warning."""
        if warning not in self.warnings:
            self.warnings.append(warning)

    def skip(self, promotion_id: str, reason: str):
        self.skipped[promotion_id] = reason
        self.add_trace("Skipped", f"Promotion {promotion_id}", reason)

    def get_trace_text(self) -> str:
        """Get human-readable result trace as formatted text."""
        lines = []
        for t in self.trace:
            if t.value:
                lines.append(f"• {t.step}: {t.description} = {t.value}")
            else:
                lines.append(f"• {t.step}: {t.description}")
        return "\n".join(lines)
