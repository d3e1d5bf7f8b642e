"""
Exclusion Filter - Removes ineligible line items from a promotion's scope.

Checks run in a fixed order (product, category, brand, tag) so the reported
reason is stable across runs. The first matching rule wins.
"""
from typing import Iterable, Optional

from .models import EXCLUSION_TYPES, ExclusionRule, ExclusionResult, LineItem


def _line_item_keys(item: LineItem, exclusion_type: str) -> frozenset:
    """Ids of a line item that an exclusion of the given type is matched against."""
    if exclusion_type == 'product':
        return frozenset((item.product_id,))
    if exclusion_type == 'category':
        return frozenset((item.category_id,))
    if exclusion_type == 'brand':
        return frozenset((item.brand_id,)) if item.brand_id else frozenset()
    return item.tags


class ExclusionFilter:
    """Applies a promotion's exclusion rules to cart line items."""

    def is_excluded(self, item: LineItem, exclusions: Iterable[ExclusionRule]) -> ExclusionResult:
        """
        Check whether a line item is excluded.

        A line item is excluded if it matches any rule of any type.
        """
        exclusions = list(exclusions)
        for exclusion_type in EXCLUSION_TYPES:
            keys = _line_item_keys(item, exclusion_type)
            if not keys:
                continue
            for rule in exclusions:
                if rule.type == exclusion_type and keys & rule.ids:
                    return ExclusionResult(
                        excluded=True,
                        reason=rule.reason or f"{exclusion_type} excluded",
                        rule_type=exclusion_type,
                    )
        return ExclusionResult(excluded=False)

    def filter_eligible(
        self,
        items: Iterable[LineItem],
        exclusions: Iterable[ExclusionRule],
        excluded_out: Optional[dict] = None
    ) -> list[LineItem]:
        """
        Return the line items not excluded, in their original order.

        If excluded_out is given, it is filled with product_id -> reason for
        every item that was removed.
        """
        exclusions = list(exclusions)
        if not exclusions:
            return list(items)

        eligible = []
        for item in items:
            result = self.is_excluded(item, exclusions)
            if result.excluded:
                if excluded_out is not None:
                    excluded_out[item.product_id] = result.reason
                continue
            eligible.append(item)
        return eligible
