"""Engine subpackage - condition evaluation, discounts and stacking."""
from .promotion_engine import PromotionEngine
from .models import LineItem, Promotion, QuoteRequest, QuoteResult

__all__ = ['PromotionEngine', 'LineItem', 'Promotion', 'QuoteRequest', 'QuoteResult']
