"""Transfer window calendar."""

from __future__ import annotations

from datetime import date

from transfer_engine.core.config import TransferRulesConfig
from transfer_engine.core.enums import TransferWindow


class TransferWindowCalendar:
    """Maps dates to transfer windows by month."""

    def __init__(self, rules: TransferRulesConfig | None = None) -> None:
        rules = rules or TransferRulesConfig()
        self._summer = frozenset(rules.summer_months)
        self._winter = frozenset(rules.winter_months)

    def window_for(self, on: date) -> TransferWindow:
        if on.month in self._summer:
            return TransferWindow.SUMMER
        if on.month in self._winter:
            return TransferWindow.WINTER
        return TransferWindow.OUTSIDE

    def is_open(self, on: date) -> bool:
        return self.window_for(on) != TransferWindow.OUTSIDE
