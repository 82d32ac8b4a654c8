"""Test operation scoping and structured log setup."""

import json
import logging
from contextlib import contextmanager

from transfer_engine.observability.logger import (
    get_logger,
    get_operation_id,
    operation_scope,
    setup_logging,
)


@contextmanager
def _root_logging_restored():
    # setup_logging replaces the root handlers
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    try:
        yield
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)


class TestOperationScope:
    def test_binds_and_resets(self):
        assert get_operation_id() == ""
        with operation_scope("create_contract") as oid:
            assert get_operation_id() == oid
            assert oid
        assert get_operation_id() == ""

    def test_explicit_id_and_nesting(self):
        with operation_scope("outer", operation_id="op-1"):
            with operation_scope("inner", operation_id="op-2"):
                assert get_operation_id() == "op-2"
            assert get_operation_id() == "op-1"


class TestSetupLogging:
    def test_json_lines_carry_operation(self, capsys):
        with _root_logging_restored():
            setup_logging(level="INFO", format="json")
            with operation_scope("initiate_transfer", operation_id="op-42"):
                logging.getLogger("transfer_engine.test").info("reserved %s", "7000000")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["event"] == "reserved 7000000"
        assert entry["operation_id"] == "op-42"
        assert entry["operation"] == "initiate_transfer"
        assert entry["level"] == "info"

    def test_level_filters(self, capsys):
        with _root_logging_restored():
            setup_logging(level="WARNING", format="console")
            logging.getLogger("transfer_engine.test").info("hidden")
        assert "hidden" not in capsys.readouterr().err

    def test_get_logger(self):
        assert get_logger("transfer_engine.test") is not None
