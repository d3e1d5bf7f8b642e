#!/usr/bin/env python
"""
Build pipeline - compiles promotions and runs the test suite.

Usage:
    python scripts/build_all.py
"""
import logging
import subprocess
import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from promo_engine.config.settings import get_settings
from promo_engine.rules.catalog import load_flash_sales
from promo_engine.rules.compile_promotions import compile_promotions


def main():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    print("=" * 60)
    print("PROMOTION ENGINE BUILD PIPELINE")
    print("=" * 60)
    print()
    
    print("[1/2] Compiling promotions...")
    success, promotions, errors = compile_promotions(
        settings.promotions_csv,
        settings.compiled_promotions,
        settings.price_tiers_csv,
    )
    
    if not success:
        print("\n❌ BUILD FAILED")
        for error in errors:
            print(f"  ERROR: {error}")
        sys.exit(1)
    
    print()
    print("[2/2] Running tests...")
    
    test_result = subprocess.run(
        [sys.executable, '-m', 'pytest', 'tests', '-v', '--tb=short'],
        cwd=Path(__file__).parent.parent
    )
    
    if test_result.returncode != 0:
        print("\n❌ TESTS FAILED")
        sys.exit(1)
    
    sales = load_flash_sales(settings.flash_sales_csv) if settings.flash_sales_csv.exists() else []
    
    print()
    print("=" * 60)
    print("✅ BUILD COMPLETE")
    print("=" * 60)
    print()
    print("Summary:")
    print(f"  Promotions: {len(promotions)} ({sum(1 for p in promotions if p.active)} active)")
    print(f"  Flash sales: {len(sales)}")
    print()
    print("By kind:")
    by_kind = {}
    for p in promotions:
        by_kind[p.kind] = by_kind.get(p.kind, 0) + 1
    for kind, count in sorted(by_kind.items()):
        print(f"  {kind}: {count}")


if __name__ == "__main__":
    main()
