"""Test the lifecycle state tables and the transfer window calendar."""

from datetime import date

import pytest

from transfer_engine.core.config import TransferRulesConfig
from transfer_engine.core.enums import ContractStatus, EntityType, TransferStatus, TransferWindow
from transfer_engine.core.errors import InvalidStateTransition
from transfer_engine.lifecycle.states import (
    CONTRACT_TERMINAL_STATES,
    TRANSFER_TERMINAL_STATES,
    can_transition,
    ensure_transition,
)
from transfer_engine.lifecycle.windows import TransferWindowCalendar


class TestContractStates:
    @pytest.mark.parametrize("target", [ContractStatus.TERMINATED, ContractStatus.EXPIRED])
    def test_active_can_end(self, target):
        assert can_transition(EntityType.CONTRACT, ContractStatus.ACTIVE, target)

    @pytest.mark.parametrize("current", sorted(CONTRACT_TERMINAL_STATES))
    def test_terminal_states_are_final(self, current):
        for target in ContractStatus:
            assert not can_transition(EntityType.CONTRACT, current, target)


class TestTransferStates:
    @pytest.mark.parametrize("target", sorted(TRANSFER_TERMINAL_STATES))
    def test_pending_can_finish(self, target):
        assert can_transition(EntityType.TRANSFER, TransferStatus.PENDING, target)

    def test_ensure_raises_with_context(self):
        with pytest.raises(InvalidStateTransition) as exc_info:
            ensure_transition(
                EntityType.TRANSFER, "t1", TransferStatus.COMPLETED, TransferStatus.CANCELLED,
            )
        err = exc_info.value
        assert (err.entity_id, err.current, err.target) == ("t1", "Completed", "Cancelled")


class TestTransferWindowCalendar:
    @pytest.mark.parametrize(
        "on, expected",
        [
            (date(2024, 6, 1), TransferWindow.SUMMER),
            (date(2024, 8, 31), TransferWindow.SUMMER),
            (date(2025, 1, 15), TransferWindow.WINTER),
            (date(2024, 9, 1), TransferWindow.OUTSIDE),
            (date(2024, 12, 31), TransferWindow.OUTSIDE),
        ],
    )
    def test_default_windows(self, on, expected):
        assert TransferWindowCalendar().window_for(on) == expected

    def test_configured_windows(self):
        calendar = TransferWindowCalendar(
            TransferRulesConfig(summer_months=[7], winter_months=[1, 2])
        )
        assert calendar.window_for(date(2025, 2, 1)) == TransferWindow.WINTER
        assert not calendar.is_open(date(2024, 6, 15))
