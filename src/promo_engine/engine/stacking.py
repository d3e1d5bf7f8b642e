"""
Stacking Resolver - Chooses which discounts apply together and in what order.

At most one non-stackable discount may be part of the final combination.
Rather than enumerating every subset, the resolver evaluates one candidate
per non-stackable discount (that discount plus every stackable one) and keeps
the best. Above max_exclusive_candidates it falls back to priority-greedy.
"""
import logging
from typing import Iterable, Optional

from .calculators import calculate_discount_amount
from .models import AppliedDiscount, Discount, StackingResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_EXCLUSIVE_CANDIDATES = 12


class StackingResolver:
    """
    Resolves the best legal discount combination for an order amount.

    Strategies reported on the result:
    - greedy: zero or one non-stackable discount, everything applies
    - search: one candidate per non-stackable discount, best total wins
    - greedy_fallback: too many non-stackable candidates, first by priority wins
    """

    def __init__(self, max_exclusive_candidates: int = DEFAULT_MAX_EXCLUSIVE_CANDIDATES):
        self.max_exclusive_candidates = max_exclusive_candidates

    @staticmethod
    def order(discounts: Iterable[Discount]) -> list[Discount]:
        """Priority descending, ties by discount id ascending."""
        return sorted(discounts, key=lambda d: (-d.priority, d.discount_id))

    @staticmethod
    def can_stack(discounts: Iterable[Discount]) -> bool:
        """A combination is legal with at most one non-stackable discount."""
        return sum(1 for d in discounts if not d.stackable) <= 1

    def calculate(self, original_amount: int, discounts: Iterable[Discount]) -> StackingResult:
        """
        Apply a legal combination in priority order to the running amount.

        Each discount is computed against what is left after the previous
        ones, capped by its max_amount and never below zero.
        """
        original_amount = max(0, int(original_amount))
        remaining = original_amount
        applied = []

        for discount in self.order(discounts):
            amount = calculate_discount_amount(remaining, discount)
            remaining -= amount
            applied.append(AppliedDiscount(discount_id=discount.discount_id, amount=amount))

        return self._finish(original_amount, remaining, applied, strategy="greedy")

    def resolve(self, original_amount: int, discounts: Iterable[Discount]) -> StackingResult:
        """Pick the combination with the greatest total discount."""
        discounts = self.order(discounts)
        stackable = [d for d in discounts if d.stackable]
        exclusive = [d for d in discounts if not d.stackable]

        if len(exclusive) <= 1:
            return self.calculate(original_amount, discounts)

        if len(exclusive) > self.max_exclusive_candidates:
            logger.info(
                "Stacking fallback to priority-greedy: %d non-stackable candidates (limit %d)",
                len(exclusive), self.max_exclusive_candidates
            )
            return self._greedy_first_exclusive(original_amount, discounts)

        best: Optional[StackingResult] = None
        for candidate in exclusive:
            result = self.calculate(original_amount, stackable + [candidate])
            # Strictly greater keeps the earlier (higher priority, lower id) candidate on ties
            if best is None or result.total_discount > best.total_discount:
                best = result

        best.strategy = "search"
        return best

    def _greedy_first_exclusive(self, original_amount: int, discounts: list[Discount]) -> StackingResult:
        """Priority order; once a non-stackable discount applies, skip the others."""
        chosen = []
        exclusive_taken = False
        for discount in discounts:
            if not discount.stackable:
                if exclusive_taken:
                    continue
                exclusive_taken = True
            chosen.append(discount)

        result = self.calculate(original_amount, chosen)
        result.strategy = "greedy_fallback"
        return result

    def _finish(self, original_amount: int, remaining: int, applied: list[AppliedDiscount], strategy: str) -> StackingResult:
        total_discount = sum(a.amount for a in applied)

        if remaining < 0 or total_discount > original_amount or total_discount != original_amount - remaining:
            logger.error(
                "Stacking invariant violated: original=%d discount=%d final=%d; clamping",
                original_amount, total_discount, remaining
            )
            total_discount = min(max(total_discount, 0), original_amount)

        return StackingResult(
            original_amount=original_amount,
            total_discount=total_discount,
            final_amount=original_amount - total_discount,
            applied_discounts=applied,
            strategy=strategy,
        )
