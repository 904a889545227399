"""
tests/unit/test_executor.py

BuybackExecutor cycle semantics: single-flight, eligibility, dry-run,
skim fallback, partial success after a failed burn, cancellation.

All collaborators are in-memory fakes (see conftest.py).
"""
from __future__ import annotations

import asyncio
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import MINT, SOL, FakeBackend, FakeDestroyer, FakeLedger
from burnbot.errors import BurnFailure, EmptyFill, LedgerError, PriceImpactExceeded
from burnbot.execution.backends.base import BONDING_CURVE
from burnbot.execution.executor import (
    BURN_FAILED,
    BUSY,
    CONFIG_MISSING,
    EXECUTED,
    FAILED,
    SIMULATED,
    SKIPPED,
    BuybackExecutor,
    CycleState,
)
from burnbot.store.config_store import ConfigStore
from burnbot.store.db import Database
from burnbot.store.event_store import EventStore

TREASURY_SPENDABLE = SOL // 100 - 890_880       # 9_109_120
MAX_SPEND = 300_000_000                          # 0.3 SOL


def _run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

class TestEligibility:

    def test_missing_config(self, db, event_store, ledger):
        executor = BuybackExecutor(ConfigStore(db), event_store, ledger)
        result = _run(executor.execute())
        assert result.outcome == CONFIG_MISSING
        assert event_store.recent() == []

    def test_inactive_is_skipped(self, executor, config_store, event_store):
        result = _run(executor.execute())
        assert result.outcome == SKIPPED
        assert "not active" in result.message
        assert event_store.recent() == []

    def test_cooldown_blocks_automatic_run(self, executor, live_config, config_store, event_store, backend):
        config_store.mark_run(datetime.now(timezone.utc) - timedelta(seconds=100))
        result = _run(executor.execute())
        assert result.outcome == SKIPPED
        assert backend.requests == []
        assert event_store.recent() == []

    def test_cooldown_must_be_exceeded(self, executor, live_config):
        now = datetime.now(timezone.utc)
        config = replace(live_config, last_run_at=now - timedelta(seconds=3600))
        assert not executor.check_eligibility(config, now=now).eligible
        later = now + timedelta(seconds=1)
        assert executor.check_eligibility(config, now=later).eligible

    def test_manual_run_ignores_interval(self, executor, live_config, config_store):
        config_store.mark_run(datetime.now(timezone.utc) - timedelta(seconds=100))
        result = _run(executor.execute(ignore_cooldown=True, min_manual_spacing_seconds=30))
        assert result.outcome == EXECUTED

    def test_manual_spacing_still_applies(self, executor, live_config, config_store, backend):
        config_store.mark_run(datetime.now(timezone.utc) - timedelta(seconds=10))
        result = _run(executor.execute(ignore_cooldown=True, min_manual_spacing_seconds=30))
        assert result.outcome == SKIPPED
        assert "too soon" in result.message
        assert backend.requests == []

    def test_manual_run_without_spacing_waits_for_interval(self, executor, live_config, config_store, backend):
        config_store.mark_run(datetime.now(timezone.utc) - timedelta(seconds=1))
        result = _run(executor.execute(ignore_cooldown=True))
        assert result.outcome == SKIPPED
        assert backend.requests == []

    def test_manual_spacing_defaults_to_interval(self, executor, live_config):
        now = datetime.now(timezone.utc)
        config = replace(live_config, last_run_at=now - timedelta(seconds=100))
        assert not executor.check_eligibility(config, ignore_cooldown=True, now=now).eligible
        config = replace(live_config, last_run_at=now - timedelta(seconds=3601))
        assert executor.check_eligibility(config, ignore_cooldown=True, now=now).eligible

    def test_zero_available_is_noop(self, executor, live_config, config_store, event_store, ledger):
        ledger.vault = 400_000_000     # 0.4 SOL, below reserve
        ledger.treasury = 0
        result = _run(executor.execute())
        assert result.outcome == SKIPPED
        assert event_store.recent() == []
        assert config_store.get().last_run_at is None

    def test_ledger_error_is_not_ready(self, executor, live_config, config_store, event_store, ledger):
        ledger.balance_error = LedgerError("rpc down")
        result = _run(executor.execute())
        assert result.outcome == SKIPPED
        assert result.error == "rpc down"
        assert event_store.recent() == []
        assert config_store.get().last_run_at is None


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------

class TestSingleFlight:

    def test_concurrent_call_is_busy(self, executor, live_config, backend):
        async def both():
            return await asyncio.gather(
                executor.execute(ignore_cooldown=True),
                executor.execute(ignore_cooldown=True),
            )

        first, second = _run(both())
        assert first.outcome == EXECUTED
        assert second.outcome == BUSY
        assert len(backend.requests) == 1

    def test_other_process_holding_cycle_is_busy(self, tmp_path):
        """A manual run from a second process waits out the daemon's cycle."""
        path = tmp_path / "burnbot.db"
        ledger = FakeLedger(vault=2 * SOL, treasury=SOL // 100)
        daemon_db, cli_db = Database(path), Database(path)
        try:
            daemon_configs = ConfigStore(daemon_db)
            daemon_configs.ensure_default()
            daemon_configs.update({
                "token_mint": MINT, "max_spend_per_interval": 0.3, "is_active": True, "dry_run": False,
            })
            daemon_backend, cli_backend = FakeBackend(ledger), FakeBackend(ledger)
            daemon_backend.release = threading.Event()
            daemon = BuybackExecutor(
                daemon_configs, EventStore(daemon_db), ledger,
                destroyer=FakeDestroyer(ledger), backends={BONDING_CURVE: daemon_backend},
            )
            manual = BuybackExecutor(
                ConfigStore(cli_db), EventStore(cli_db), ledger,
                destroyer=FakeDestroyer(ledger), backends={BONDING_CURVE: cli_backend},
            )

            async def scenario():
                task = asyncio.create_task(daemon.execute())
                while not daemon_backend.entered.is_set():
                    await asyncio.sleep(0.01)
                busy_before = manual.busy
                second = await manual.execute(ignore_cooldown=True, min_manual_spacing_seconds=30)
                daemon_backend.release.set()
                return busy_before, second, await task

            try:
                busy_before, second, first = _run(scenario())
            finally:
                daemon_backend.release.set()

            assert busy_before is True
            assert second.outcome == BUSY
            assert first.outcome == EXECUTED
            assert len(daemon_backend.requests) == 1
            assert cli_backend.requests == []
            assert len(EventStore(cli_db).recent()) == 1
            assert manual.busy is False
        finally:
            daemon_db.close()
            cli_db.close()

    def test_lock_released_after_cycle(self, executor, live_config):
        async def twice():
            await executor.execute()
            return executor.busy, executor.state

        busy, state = _run(twice())
        assert busy is False
        assert state == CycleState.IDLE


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class TestDryRun:

    def test_simulated_event(self, executor, config_store, event_store, ledger, backend, destroyer):
        config_store.update({"token_mint": MINT, "max_spend_per_interval": 0.3, "is_active": True})
        result = _run(executor.execute())

        assert result.outcome == SIMULATED
        assert result.purchase_tx == "dry-run"
        assert result.spend_lamports == MAX_SPEND
        assert backend.requests == []
        assert destroyer.calls == []
        assert ledger.skim_calls == []

        events = event_store.recent()
        assert len(events) == 1
        assert events[0].simulated is True
        assert events[0].status == "success"
        assert events[0].purchase_tx is None
        assert config_store.get().last_run_at is not None


# ---------------------------------------------------------------------------
# Live cycles
# ---------------------------------------------------------------------------

class TestLiveCycle:

    def test_worked_example(self, executor, live_config, config_store, event_store, ledger, backend, destroyer):
        result = _run(executor.execute())

        assert result.outcome == EXECUTED
        assert result.spend_lamports == MAX_SPEND
        # Shortfall above the treasury's spendable balance is skimmed from the vault
        assert ledger.skim_calls == [(MAX_SPEND - TREASURY_SPENDABLE, 500_000_000)]
        assert backend.requests[0].spend_lamports == MAX_SPEND
        assert backend.requests[0].target_mint == MINT
        assert destroyer.calls == [(MINT, 1_000)]

        events = event_store.recent()
        assert len(events) == 1
        assert events[0].status == "success"
        assert events[0].burn_tx == "burn-sig-1"
        assert events[0].units_acquired == 1_000
        assert config_store.get().last_run_at is not None

    def test_no_skim_when_treasury_covers_spend(self, executor, config_store, ledger):
        config_store.update({
            "token_mint": MINT, "max_spend_per_interval": 0.005, "is_active": True, "dry_run": False,
        })
        result = _run(executor.execute())
        assert result.outcome == EXECUTED
        assert ledger.skim_calls == []

    def test_skim_unavailable_falls_back_to_treasury(self, executor, live_config, ledger, backend):
        ledger.skim_ok = False
        result = _run(executor.execute())
        assert result.outcome == EXECUTED
        assert backend.requests[0].spend_lamports == TREASURY_SPENDABLE

    def test_skim_unavailable_with_empty_treasury_fails(
        self, executor, live_config, config_store, event_store, ledger, backend
    ):
        ledger.skim_ok = False
        ledger.treasury = 0
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert "treasury" in result.error.lower()
        assert backend.requests == []
        assert event_store.recent()[0].status == "failed"
        assert config_store.get().last_run_at is not None

    def test_backend_error_records_failure(self, executor, live_config, config_store, event_store, backend):
        backend.error = PriceImpactExceeded(7.5, 5.0)
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert "Price impact" in result.error
        assert len(backend.requests) == 1
        events = event_store.recent()
        assert len(events) == 1
        assert events[0].status == "failed"
        assert events[0].purchase_tx is None
        assert config_store.get().last_run_at is not None

    def test_missing_authority_fails_without_buying(self, executor, live_config, ledger, backend, event_store):
        ledger.has_authority = False
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert backend.requests == []
        assert event_store.recent()[0].error_message == "Authority keypair not configured"

    def test_no_tokens_received(self, executor, live_config, event_store, backend, destroyer):
        backend.units = 0
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert result.error == "No tokens received"
        assert destroyer.calls == []
        assert event_store.recent()[0].purchase_tx == "buy-sig-1"

    def test_empty_fill_keeps_purchase_and_spend(self, executor, live_config, event_store, backend, destroyer):
        backend.error = EmptyFill("landed-sig", {"outAmount": "0"})
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert result.error == "No tokens received"
        assert result.purchase_tx == "landed-sig"
        assert destroyer.calls == []
        event = event_store.recent()[0]
        assert event.status == "failed"
        assert event.purchase_tx == "landed-sig"
        assert event.sol_spent == MAX_SPEND
        assert event_store.get_by_purchase("landed-sig") is not None

    def test_unmeasured_fill_takes_units_from_balance(self, executor, live_config, event_store, backend, destroyer):
        backend.measured = False
        result = _run(executor.execute())
        assert result.outcome == EXECUTED
        assert result.units_acquired == 1_000
        assert destroyer.calls == [(MINT, 1_000)]
        assert event_store.recent()[0].units_acquired == 1_000

    def test_unmeasured_fill_with_unreadable_balance_keeps_purchase(
        self, executor, live_config, event_store, ledger, backend, destroyer
    ):
        backend.measured = False
        ledger.token_error = LedgerError("rpc 429")
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert destroyer.calls == []
        event = event_store.recent()[0]
        assert event.purchase_tx == "buy-sig-1"
        assert event.sol_spent == MAX_SPEND
        assert "unreadable" in event.error_message

    def test_unreadable_balance_burns_measured_fill(self, executor, live_config, ledger, destroyer):
        ledger.token_error = LedgerError("rpc 429")
        result = _run(executor.execute())
        assert result.outcome == EXECUTED
        assert destroyer.calls == [(MINT, 1_000)]

    def test_unexpected_backend_error_is_recorded(self, executor, live_config, config_store, event_store, backend):
        backend.error = RuntimeError("socket closed")
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert "Unexpected purchase error" in result.error
        assert "outcome unknown" in result.error
        events = event_store.recent()
        assert len(events) == 1
        assert events[0].status == "failed"
        assert config_store.get().last_run_at is not None
        assert executor.busy is False

    def test_backend_construction_error_is_recorded(self, config_store, event_store, ledger, live_config):
        executor = BuybackExecutor(config_store, event_store, ledger, destroyer=FakeDestroyer(ledger))
        executor._backend_for = MagicMock(side_effect=KeyError("no keypair"))
        result = _run(executor.execute())
        assert result.outcome == FAILED
        assert len(event_store.recent()) == 1

    def test_unexpected_burn_error_is_partial_success(self, executor, live_config, event_store, destroyer):
        destroyer.error = RuntimeError("blockhash expired")
        result = _run(executor.execute())
        assert result.outcome == BURN_FAILED
        assert result.purchase_tx == "buy-sig-1"
        events = event_store.recent()
        assert len(events) == 1
        assert events[0].status == "success"
        assert "Unexpected burn error" in events[0].burn_error

    def test_burns_live_balance_including_leftovers(self, executor, live_config, ledger, destroyer):
        ledger.token_balance = 250
        _run(executor.execute())
        assert destroyer.calls == [(MINT, 1_250)]

    def test_burn_failure_is_single_partial_success(
        self, executor, live_config, config_store, event_store, destroyer
    ):
        destroyer.error = BurnFailure("token account frozen")
        result = _run(executor.execute())

        assert result.outcome == BURN_FAILED
        assert result.success is True
        assert result.purchase_tx == "buy-sig-1"
        assert result.burn_tx is None

        events = event_store.recent()
        assert len(events) == 1
        assert events[0].status == "success"
        assert events[0].burn_tx is None
        assert "frozen" in events[0].burn_error
        assert event_store.statistics().pending_burns == 1
        assert config_store.get().last_run_at is not None

    def test_status_board_receives_result(self, config_store, event_store, ledger, backend, destroyer, live_config):
        board = MagicMock()
        executor = BuybackExecutor(
            config_store, event_store, ledger,
            destroyer=destroyer, backends={BONDING_CURVE: backend}, status_board=board,
        )
        _run(executor.execute())
        board.publish_result.assert_called_once()
        published, funds = board.publish_result.call_args[0]
        assert published["outcome"] == EXECUTED
        assert funds["vault_balance"] == 2.0


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:

    @staticmethod
    async def _cancel_when(task: asyncio.Task, entered: threading.Event) -> None:
        while not entered.is_set():
            await asyncio.sleep(0.01)
        task.cancel()

    def test_cancel_during_purchase(self, executor, live_config, event_store, backend):
        backend.release = threading.Event()

        async def scenario():
            task = asyncio.create_task(executor.execute())
            await self._cancel_when(task, backend.entered)
            with pytest.raises(asyncio.CancelledError):
                await task
            backend.release.set()

        try:
            _run(scenario())
        finally:
            backend.release.set()

        events = event_store.recent()
        assert len(events) == 1
        assert events[0].status == "failed"
        assert "cancelled" in events[0].error_message
        assert "outcome unknown" in events[0].error_message
        assert events[0].purchase_tx is None
        assert executor.busy is False

    def test_cancel_during_burn_keeps_purchase(self, executor, live_config, event_store, destroyer):
        destroyer.release = threading.Event()

        async def scenario():
            task = asyncio.create_task(executor.execute())
            await self._cancel_when(task, destroyer.entered)
            with pytest.raises(asyncio.CancelledError):
                await task
            destroyer.release.set()

        try:
            _run(scenario())
        finally:
            destroyer.release.set()

        events = event_store.recent()
        assert len(events) == 1
        assert events[0].status == "success"
        assert events[0].purchase_tx == "buy-sig-1"
        assert events[0].burn_tx is None
        assert events[0].burn_error is not None


def test_backend_built_on_demand(db, event_store, ledger):
    configs = ConfigStore(db)
    configs.ensure_default()
    executor = BuybackExecutor(configs, EventStore(db), ledger)
    backend = executor._backend_for(BONDING_CURVE)
    assert backend.mode == BONDING_CURVE
    assert executor._backend_for(BONDING_CURVE) is backend

