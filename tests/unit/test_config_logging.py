"""
tests/unit/test_config_logging.py

Process settings (pydantic-settings) and the logging helpers.
"""
from __future__ import annotations

import asyncio
import json
import logging

import pytest
from pydantic import ValidationError

from burnbot.utils.config import Settings
from burnbot.utils.logging import (
    _BuybackFilter,
    _CycleFilter,
    _JsonFormatter,
    current_cycle,
    cycle_context,
    get_logger,
)


def _settings(**kw) -> Settings:
    # Ignore any .env in the working directory
    return Settings(_env_file=None, **kw)


class TestSettings:

    def test_defaults(self, monkeypatch):
        for var in ("REDIS_URL", "MAX_PRICE_IMPACT_PCT", "CALENDAR_CRON", "LOG_LEVEL"):
            monkeypatch.delenv(var, raising=False)
        s = _settings()
        assert s.max_price_impact_pct == 5.0
        assert s.swap_max_attempts == 3
        assert s.fast_interval_seconds == 10.0
        assert s.calendar_cron == "0 * * * *"
        assert s.manual_spacing_seconds == 30

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("FAST_INTERVAL_SECONDS", "5")
        monkeypatch.setenv("SKIM_ENABLED", "false")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        s = _settings()
        assert s.fast_interval_seconds == 5.0
        assert s.skim_enabled is False
        assert s.log_level == "DEBUG"

    @pytest.mark.parametrize("kwargs", [
        {"max_price_impact_pct": 0},
        {"max_price_impact_pct": 150},
        {"swap_max_attempts": 0},
        {"fast_interval_seconds": -1},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValidationError):
            _settings(**kwargs)

    def test_operator_wallet_list(self):
        s = _settings(operator_wallets=" KeyA, ,KeyB ")
        assert s.operator_wallet_list == ["KeyA", "KeyB"]
        assert _settings(operator_wallets="").operator_wallet_list == []

    def test_lease_setting_must_be_positive(self):
        assert _settings().cycle_lease_seconds == 900.0
        with pytest.raises(ValidationError):
            _settings(cycle_lease_seconds=0)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("burnbot.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogging:

    def test_buyback_filter(self):
        f = _BuybackFilter()
        assert f.filter(_record(buyback_event=True)) is True
        assert f.filter(_record()) is False

    def test_json_formatter_merges_extra(self):
        line = _JsonFormatter().format(_record("cycle done", outcome="executed", lamports=42))
        payload = json.loads(line)
        assert payload["message"] == "cycle done"
        assert payload["level"] == "INFO"
        assert payload["outcome"] == "executed"
        assert payload["lamports"] == 42

    def test_get_logger_namespacing(self):
        assert get_logger("scheduler").name == "burnbot.scheduler"
        assert get_logger("burnbot.store.db").name == "burnbot.store.db"

    def test_cycle_id_stamped_inside_context(self):
        f = _CycleFilter()
        outside = _record()
        f.filter(outside)
        assert outside.cycle == "-"

        with cycle_context("abc123") as cid:
            assert cid == "abc123"
            inside = _record()
            f.filter(inside)
        assert inside.cycle == "abc123"
        assert current_cycle() == "-"

        payload = json.loads(_JsonFormatter().format(inside))
        assert payload["cycle"] == "abc123"

    def test_cycle_id_reaches_worker_threads(self):
        async def read_from_thread():
            with cycle_context() as cid:
                return cid, await asyncio.to_thread(current_cycle)

        cid, seen = asyncio.run(read_from_thread())
        assert len(cid) == 8
        assert seen == cid
