"""Domain models and types for the net worth engine.

This package contains in-memory (Pydantic) models describing assets and the
market data observations used to value them. They are independent from
persistence so that valuation logic and testing can evolve without storage
coupling.
"""

__all__ = [
    "asset",
    "clock",
    "market_data",
]
