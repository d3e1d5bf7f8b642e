"""
Promotion Engine Package

Promotion and discount rules engine for the order pipeline.
Evaluates promotion conditions, applies exclusions, computes discounts,
resolves stacking and allocates limited flash-sale stock.
"""

__version__ = "1.0.0"

# Load the engine subpackage first so the engine <-> rules/flash_sales
# import cycle resolves regardless of which submodule is imported first.
from . import engine  # noqa: E402,F401
