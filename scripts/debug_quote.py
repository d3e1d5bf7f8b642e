import logging
import sys
from datetime import datetime
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from promo_engine.config.settings import get_settings
from promo_engine.engine import PromotionEngine, LineItem, QuoteRequest


def debug():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    engine = PromotionEngine(settings)
    
    print(f"Loaded {len(engine.promotions)} promotions")
    for error in engine.load_errors:
        print(f"  skipped: {error}")
    print(f"Flash sales: {', '.join(engine.allocator.sale_ids()) or 'none'}")
    
    print("\n--- Sample cart on Black Friday ---")
    req = QuoteRequest(
        items=[
            LineItem(product_id="P-SOCK-BLK", category_id="SOCKS", quantity=5, unit_price=899),
            LineItem(product_id="P-CABLE-USB-C", category_id="CABLES", quantity=15, unit_price=100),
            LineItem(product_id="P-HEAD-01", category_id="AUDIO", quantity=1, unit_price=12999, brand_id="B-PREMIUM"),
            LineItem(product_id="P-GIFT-50", category_id="GIFT-CARDS", quantity=1, unit_price=5000),
        ],
        user={"order_count": 0, "tier": "GOLD"},
        now=datetime(2026, 11, 27, 12, 0),
    )
    result = engine.quote(req)
    
    print(result.get_trace_text())
    print(f"\nOriginal: {result.original_amount}  Discount: {result.total_discount}  Final: {result.final_amount}")
    print(f"Flash sale units: {result.flash_sale_quantities}")
    
    reservations = engine.reserve_flash_sales(result, order_id="DEBUG-1", now=req.now)
    print(f"Reservations: {reservations}")
    if reservations:
        engine.cancel_order(reservations, now=req.now)
        print("Reservations released")


if __name__ == "__main__":
    debug()
