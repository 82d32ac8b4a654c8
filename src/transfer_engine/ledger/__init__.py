"""Club budget accounting for transfer fees."""

from .budget import (
    BudgetLedger,
    RetainSellOnPolicy,
    SellOnAllocationPolicy,
    SellOnDeduction,
    Settlement,
)

__all__ = [
    "BudgetLedger",
    "RetainSellOnPolicy",
    "SellOnAllocationPolicy",
    "SellOnDeduction",
    "Settlement",
]
