"""Price oracle."""

from creditsync.pricing.oracle import PriceOracle

__all__ = ["PriceOracle"]
