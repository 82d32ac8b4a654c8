"""Contract and transfer lifecycle managers (transaction-scoped)."""

from .contracts import ContractLifecycleManager
from .transfers import TransferLifecycleManager
from .windows import TransferWindowCalendar

__all__ = [
    "ContractLifecycleManager",
    "TransferLifecycleManager",
    "TransferWindowCalendar",
]
