"""Player valuation.

value = base * age_factor * contract_factor * performance_factor * history_factor

rounded to the nearest ``rounding_unit`` (half up).  ``base`` is the
player's current market value, or ``default_base_value`` when that is 0.

Each factor is a plain function of the config so it can be tested alone;
``ValuationEngine`` combines them and adds the two revaluation rules used
after a completed transfer and after a contract renewal.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from transfer_engine.core.config import ValuationConfig
from transfer_engine.core.dates import months_between, years_between
from transfer_engine.core.enums import TransferStatus
from transfer_engine.core.models import Contract, Player, Transfer


def _dec(x: float) -> Decimal:
    return Decimal(str(x))


def round_to_unit(value: Decimal, unit: Decimal) -> Decimal:
    """Round *value* to the nearest multiple of *unit*, halves away from zero."""
    return (value / unit).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * unit


# ---------------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------------

def age_factor(age: int, cfg: ValuationConfig) -> float:
    """Youth premium below the peak band, decline (floored) above it."""
    if age < cfg.youth_age_limit:
        return cfg.youth_base + (cfg.youth_age_limit - age) * cfg.youth_step
    if age <= cfg.peak_age_limit:
        return 1.0 + (cfg.peak_age_limit - age) * cfg.peak_step
    return max(cfg.age_factor_floor, 1.0 - (age - cfg.peak_age_limit) * cfg.decline_step)


def contract_factor(
    contract: Contract | None,
    as_of: date,
    cfg: ValuationConfig,
) -> float:
    if contract is None:
        return cfg.no_contract_factor
    remaining = months_between(as_of, contract.end_date)
    for max_months, factor in cfg.contract_steps:
        if remaining <= max_months:
            return factor
    return 1.0


def performance_factor(player: Player, cfg: ValuationConfig) -> float:
    """Attackers by international goals, everyone else by caps."""
    if player.position in cfg.attacking_positions:
        return 1.0 + player.international_goals * cfg.goal_weight
    return 1.0 + player.international_caps * cfg.cap_weight


def history_factor(recent_transfers: Sequence[Transfer], cfg: ValuationConfig) -> float:
    recent = list(recent_transfers)[: cfg.history_lookback]
    if any(t.status == TransferStatus.COMPLETED for t in recent):
        return cfg.history_boost
    return 1.0


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ValuationEngine:
    """Computes and revises player market values.  Stateless apart from config."""

    def __init__(self, config: ValuationConfig | None = None) -> None:
        self._cfg = config or ValuationConfig()

    @property
    def config(self) -> ValuationConfig:
        return self._cfg

    def base_value(self, market_value: Decimal) -> Decimal:
        return market_value if market_value > 0 else self._cfg.default_base_value

    def compute_value(
        self,
        player: Player,
        active_contract: Contract | None,
        recent_transfers: Sequence[Transfer],
        as_of: date,
    ) -> Decimal:
        """Market value of *player* on *as_of*.

        *recent_transfers* should be newest first; only the first
        ``history_lookback`` entries are considered.
        """
        cfg = self._cfg
        combined = (
            _dec(age_factor(player.age_on(as_of), cfg))
            * _dec(contract_factor(active_contract, as_of, cfg))
            * _dec(performance_factor(player, cfg))
            * _dec(history_factor(recent_transfers, cfg))
        )
        value = self.base_value(player.market_value) * combined
        return round_to_unit(value, cfg.rounding_unit)

    def revalue_after_fee(self, fee: Decimal, age: int) -> Decimal:
        """Post-transfer value: ``fee_ratio`` of the fee, age adjusted."""
        cfg = self._cfg
        multiplier = 1.0
        if age < cfg.fee_young_age:
            multiplier = cfg.fee_young_multiplier
        elif age > cfg.fee_veteran_age:
            multiplier = cfg.fee_veteran_multiplier
        value = fee * _dec(cfg.fee_ratio) * _dec(multiplier)
        return round_to_unit(value, cfg.rounding_unit)

    def renewal_factor(self, duration_years: float, age: int) -> float:
        cfg = self._cfg
        factor = 1.0 + cfg.renewal_base_increase + duration_years * cfg.renewal_per_year
        if age < cfg.renewal_young_age:
            factor += cfg.renewal_young_bonus
        elif age > cfg.renewal_veteran_age:
            factor -= cfg.renewal_veteran_penalty
        return factor

    def revalue_after_renewal(
        self,
        old_value: Decimal,
        duration_years: float,
        salary: Decimal,
        age: int,
    ) -> Decimal:
        """Value after signing a renewal of *duration_years*.

        *salary* is accepted for callers that have it; it does not move the
        figure.  The result is rounded to whole currency units.
        """
        factor = _dec(self.renewal_factor(duration_years, age))
        return round_to_unit(self.base_value(old_value) * factor, Decimal("1"))

    def renewal_years(self, start: date, end: date) -> float:
        return years_between(start, end)
