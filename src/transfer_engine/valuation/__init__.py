"""Player market valuation."""

from .engine import ValuationEngine

__all__ = ["ValuationEngine"]
