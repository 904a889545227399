"""
burnbot/execution/executor.py

Runs one buyback cycle end to end.

    Idle → Eligible → Spending → Purchasing → Burning → Recorded
                 ↘          ↘            ↘          ↘
                           Recorded(failed)

Single-flight: one asyncio.Lock per executor, plus a CycleLease row in the
shared SQLite file so the daemon and a manual run from another process
exclude each other too. A call that finds either held returns
outcome="busy" immediately; calls are never queued.

Eligibility is checked against one BuybackConfig snapshot:
    - config exists and is_active
    - seconds since last_run_at exceed interval_seconds (automatic) or
      the manual spacing (manual runs with ignore_cooldown=True; the
      interval itself when no spacing is given)
    - total available funds > 0

Skips (ineligible, no funds, ledger unreachable) write no event and do
not advance last_run_at. Every cycle that reaches Spending ends with
exactly one event and a last_run_at advance, success or not.

Blocking work (RPC, HTTP, SQLite) runs through asyncio.to_thread.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from solders.pubkey import Pubkey

from burnbot.errors import (
    BurnFailure,
    BuybackError,
    ConfigMissing,
    EmptyFill,
    LedgerError,
    NotEligible,
    SkimUnavailable,
)
from burnbot.execution.backends import ExecutionBackend, PurchaseFill, PurchaseRequest, build_backend
from burnbot.execution.destroyer import AssetDestroyer
from burnbot.ledger.funds import FundLedger, SpendableFunds, spend_amount
from burnbot.store.config_store import BuybackConfig, ConfigStore
from burnbot.store.cycle_lease import CycleLease
from burnbot.store.event_store import STATUS_FAILED, STATUS_SUCCESS, BuybackEvent, EventStore
from burnbot.utils.config import LAMPORTS_PER_SOL
from burnbot.utils.logging import cycle_context, get_logger, log_buyback

log = get_logger(__name__)

# Outcomes
EXECUTED = "executed"
SIMULATED = "simulated"
SKIPPED = "skipped"
BUSY = "busy"
FAILED = "failed"
CONFIG_MISSING = "config_missing"
BURN_FAILED = "burn_failed"


class CycleState(str, Enum):
    IDLE = "idle"
    ELIGIBLE = "eligible"
    SPENDING = "spending"
    PURCHASING = "purchasing"
    BURNING = "burning"
    RECORDED = "recorded"


@dataclass
class BuybackResult:
    """Outcome of one execute() call."""

    outcome: str
    message: str = ""
    spend_lamports: int = 0
    units_acquired: int = 0
    purchase_tx: Optional[str] = None
    burn_tx: Optional[str] = None
    error: Optional[str] = None
    execution_mode: Optional[str] = None
    event_id: Optional[int] = None
    recorded_at: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in (EXECUTED, SIMULATED, BURN_FAILED)

    @property
    def sol_spent(self) -> float:
        return self.spend_lamports / LAMPORTS_PER_SOL

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        data["sol_spent"] = self.sol_spent
        return data


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str
    seconds_until_eligible: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _Progress:
    """What a live cycle has completed so far. Used to record on cancellation."""

    config: BuybackConfig
    spend: int
    fill: Optional[PurchaseFill] = None
    burn_tx: Optional[str] = None
    burn_error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuybackExecutor:
    """
    Orchestrates eligibility, spend sizing, purchase, burn and recording.

    Args:
        config_store:  BuybackConfig singleton
        event_store:   append-only event log
        ledger:        SolanaLedger (balances, skim, authority)
        fund_ledger:   reserve calculator; defaults to FundLedger(ledger)
        destroyer:     AssetDestroyer; defaults to AssetDestroyer(ledger)
        backends:      optional mode → ExecutionBackend map; missing modes
                       are built on first use with build_backend()
        status_board:  optional StatusBoard to publish outcomes to
        clock:         returns the current UTC time (tests inject a fixed clock)
        lease:         cross-process CycleLease; defaults to one on the config database
    """

    def __init__(
        self,
        config_store: ConfigStore,
        event_store: EventStore,
        ledger,
        fund_ledger: Optional[FundLedger] = None,
        destroyer: Optional[AssetDestroyer] = None,
        backends: Optional[dict[str, ExecutionBackend]] = None,
        status_board=None,
        clock: Optional[Callable[[], datetime]] = None,
        lease: Optional[CycleLease] = None,
    ) -> None:
        self._configs = config_store
        self._events = event_store
        self._ledger = ledger
        self._funds = fund_ledger or FundLedger(ledger)
        self._destroyer = destroyer or AssetDestroyer(ledger)
        self._backends: dict[str, ExecutionBackend] = dict(backends or {})
        self._board = status_board
        self._clock = clock or _utcnow
        self._lock = asyncio.Lock()
        self._lease = lease or CycleLease(config_store.db)
        self._state = CycleState.IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def busy(self) -> bool:
        """True while a cycle runs here or in another process sharing the database."""
        return self._lock.locked() or self._lease.held_elsewhere

    def check_eligibility(
        self,
        config: BuybackConfig,
        ignore_cooldown: bool = False,
        min_manual_spacing_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Eligibility:
        """
        Active flag and cooldown only. Funds are checked separately since
        they need a ledger round-trip.
        """
        if not config.is_active:
            return Eligibility(False, "Buyback is not active")

        elapsed = config.seconds_since_last_run(now or self._clock())
        if elapsed is None:
            return Eligibility(True, "No previous run")

        if ignore_cooldown:
            spacing = min_manual_spacing_seconds
            if spacing is None:
                spacing = config.interval_seconds
            if elapsed <= spacing:
                wait = spacing - elapsed
                return Eligibility(
                    False, f"Manual run too soon, wait {wait:.0f}s", seconds_until_eligible=wait
                )
            return Eligibility(True, "Manual run")

        if elapsed <= config.interval_seconds:
            wait = config.interval_seconds - elapsed
            return Eligibility(False, f"Cooldown active, {wait:.0f}s remaining", seconds_until_eligible=wait)
        return Eligibility(True, "Cooldown elapsed")

    async def execute(
        self,
        ignore_cooldown: bool = False,
        min_manual_spacing_seconds: Optional[float] = None,
    ) -> BuybackResult:
        """
        Run one cycle if eligible.

        Never raises for expected failures; the outcome says what happened.
        asyncio.CancelledError is re-raised after recording whatever the
        cycle completed.
        """
        if self._lock.locked():
            log.info("Buyback already in progress, skipping")
            return BuybackResult(BUSY, "Buyback already in progress")

        async with self._lock:
            if not await asyncio.to_thread(self._lease.acquire):
                log.info("Buyback running in another process, skipping")
                return BuybackResult(BUSY, "Buyback already in progress in another process")
            try:
                with cycle_context():
                    return await self._run_cycle(ignore_cooldown, min_manual_spacing_seconds)
            finally:
                self._state = CycleState.IDLE
                self._lease.release()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(
        self, ignore_cooldown: bool, min_manual_spacing_seconds: Optional[float]
    ) -> BuybackResult:
        try:
            config = await asyncio.to_thread(self._configs.get)
        except ConfigMissing as exc:
            log.error(f"Buyback config missing: {exc}")
            return BuybackResult(CONFIG_MISSING, str(exc), error=str(exc))

        try:
            funds = await self._eligible_funds(config, ignore_cooldown, min_manual_spacing_seconds)
        except NotEligible as exc:
            log.debug(f"Buyback not eligible: {exc}")
            cause = exc.__cause__
            return BuybackResult(SKIPPED, str(exc), error=str(cause) if cause else None,
                                 execution_mode=config.execution_mode)

        self._state = CycleState.ELIGIBLE
        spend = spend_amount(funds, config.max_spend_lamports)
        log.info(
            f"Buyback eligible: available={funds.total_available / LAMPORTS_PER_SOL:.6f} SOL "
            f"spend={spend / LAMPORTS_PER_SOL:.6f} SOL mode={config.execution_mode} "
            f"dry_run={config.dry_run}"
        )

        if config.dry_run:
            return await self._simulate(config, funds, spend)
        return await self._execute_live(config, funds, spend)

    async def _eligible_funds(
        self, config: BuybackConfig, ignore_cooldown: bool, min_manual_spacing_seconds: Optional[float]
    ) -> SpendableFunds:
        """Funds snapshot for an eligible cycle. Raises NotEligible otherwise."""
        eligibility = self.check_eligibility(config, ignore_cooldown, min_manual_spacing_seconds)
        if not eligibility.eligible:
            raise NotEligible(eligibility.reason)
        try:
            funds = await asyncio.to_thread(self._funds.compute_spendable)
        except LedgerError as exc:
            log.warning(f"Balance query failed, cycle not ready: {exc}")
            raise NotEligible("Ledger unavailable") from exc
        if funds.total_available <= 0:
            raise NotEligible("No funds available for buyback")
        return funds

    async def _simulate(self, config: BuybackConfig, funds: SpendableFunds, spend: int) -> BuybackResult:
        log.info(
            f"[DRY RUN] Would spend {spend / LAMPORTS_PER_SOL:.6f} SOL on {config.target_mint} "
            f"via {config.execution_mode}"
        )
        event = BuybackEvent(
            status=STATUS_SUCCESS,
            token_mint=config.target_mint,
            sol_spent=spend,
            execution_mode=config.execution_mode,
            simulated=True,
        )
        result = BuybackResult(
            SIMULATED,
            f"Dry run: would spend {spend / LAMPORTS_PER_SOL:.6f} SOL",
            spend_lamports=spend,
            purchase_tx="dry-run",
            execution_mode=config.execution_mode,
        )
        return await asyncio.to_thread(self._record, event, result, funds)

    async def _execute_live(self, config: BuybackConfig, funds: SpendableFunds, spend: int) -> BuybackResult:
        progress = _Progress(config=config, spend=spend)
        try:
            return await self._live_steps(progress, funds)
        except asyncio.CancelledError:
            self._record_cancelled(progress, funds)
            raise

    async def _live_steps(self, progress: _Progress, funds: SpendableFunds) -> BuybackResult:
        config = progress.config
        mint = config.target_mint

        if not self._ledger.has_authority:
            return await self._fail(progress, funds, "Authority keypair not configured")
        try:
            mint_key = Pubkey.from_string(mint)
        except ValueError:
            return await self._fail(progress, funds, f"Invalid target mint: {mint!r}")

        # Spending
        self._state = CycleState.SPENDING
        if progress.spend > funds.treasury_spendable:
            shortfall = progress.spend - funds.treasury_spendable
            try:
                await asyncio.to_thread(
                    self._ledger.skim_excess_to_treasury, shortfall, self._funds.vault_reserve
                )
            except SkimUnavailable as exc:
                progress.spend = min(funds.treasury_spendable, config.max_spend_lamports)
                log.warning(
                    f"Skim unavailable ({exc}), spending treasury only: "
                    f"{progress.spend / LAMPORTS_PER_SOL:.6f} SOL"
                )
                if progress.spend <= 0:
                    return await self._fail(progress, funds, "No spendable treasury funds")

        # Purchasing
        self._state = CycleState.PURCHASING
        try:
            request = PurchaseRequest(progress.spend, mint, config.slippage_bps)
        except ValueError as exc:
            return await self._fail(progress, funds, f"Invalid purchase request: {exc}")
        try:
            backend = self._backend_for(config.execution_mode)
            progress.fill = await asyncio.to_thread(backend.buy, request)
        except EmptyFill as exc:
            log.error(f"Purchase {exc.purchase_tx} landed with no tokens")
            progress.fill = PurchaseFill(exc.purchase_tx, 0, quote=exc.quote)
            return await self._fail(progress, funds, "No tokens received")
        except BuybackError as exc:
            log.error(f"Purchase failed via {config.execution_mode}: {exc}")
            return await self._fail(progress, funds, str(exc))
        except Exception as exc:  # noqa: BLE001
            log.error(f"Unexpected purchase error via {config.execution_mode}: {exc!r}", exc_info=True)
            return await self._fail(
                progress, funds, f"Unexpected purchase error, on-chain outcome unknown: {exc!r}"
            )

        fill = progress.fill
        try:
            balance = await asyncio.to_thread(self._ledger.get_token_balance, mint_key)
        except LedgerError as exc:
            if not fill.measured:
                return await self._fail(
                    progress, funds, f"Purchase landed but token balance is unreadable: {exc}"
                )
            log.warning(f"Post-purchase balance read failed, using fill amount: {exc}")
            balance = fill.units_acquired
        if not fill.measured:
            fill.units_acquired = balance
        if balance <= 0:
            return await self._fail(progress, funds, "No tokens received")

        # Burning
        self._state = CycleState.BURNING
        try:
            progress.burn_tx = await asyncio.to_thread(self._destroyer.burn, mint, balance)
        except BurnFailure as exc:
            progress.burn_error = str(exc)
            log.error(f"Burn failed after purchase {fill.purchase_tx}: {exc}")
        except Exception as exc:  # noqa: BLE001
            progress.burn_error = f"Unexpected burn error: {exc!r}"
            log.error(f"Burn failed after purchase {fill.purchase_tx}: {exc!r}", exc_info=True)

        event = self._success_event(progress)
        outcome = BURN_FAILED if progress.burn_tx is None else EXECUTED
        message = (
            f"Bought {fill.units_acquired} units, burn failed: {progress.burn_error}"
            if outcome == BURN_FAILED
            else f"Bought and burned {fill.units_acquired} units"
        )
        result = BuybackResult(
            outcome,
            message,
            spend_lamports=progress.spend,
            units_acquired=fill.units_acquired,
            purchase_tx=fill.purchase_tx,
            burn_tx=progress.burn_tx,
            error=progress.burn_error,
            execution_mode=config.execution_mode,
        )
        return await asyncio.to_thread(self._record, event, result, funds)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _success_event(self, progress: _Progress) -> BuybackEvent:
        fill = progress.fill
        return BuybackEvent(
            status=STATUS_SUCCESS,
            token_mint=progress.config.target_mint,
            sol_spent=progress.spend,
            units_acquired=fill.units_acquired,
            purchase_tx=fill.purchase_tx,
            burn_tx=progress.burn_tx,
            burn_error=progress.burn_error,
            execution_mode=progress.config.execution_mode,
            quote_payload=fill.quote,
            swap_payload=fill.swap,
        )

    async def _fail(self, progress: _Progress, funds: SpendableFunds, error: str) -> BuybackResult:
        config = progress.config
        fill = progress.fill
        event = BuybackEvent(
            status=STATUS_FAILED,
            token_mint=config.target_mint,
            sol_spent=progress.spend if fill else 0,
            purchase_tx=fill.purchase_tx if fill else None,
            error_message=error,
            execution_mode=config.execution_mode,
            quote_payload=fill.quote if fill else None,
        )
        result = BuybackResult(
            FAILED,
            f"Buyback failed: {error}",
            spend_lamports=progress.spend if fill else 0,
            purchase_tx=fill.purchase_tx if fill else None,
            error=error,
            execution_mode=config.execution_mode,
        )
        return await asyncio.to_thread(self._record, event, result, funds)

    def _record_cancelled(self, progress: _Progress, funds: SpendableFunds) -> None:
        """Runs inline in the cancelled task."""
        if progress.fill is not None:
            if progress.burn_tx is None and progress.burn_error is None:
                progress.burn_error = "Cycle cancelled before burn completed"
            event = self._success_event(progress)
            result = BuybackResult(
                BURN_FAILED if progress.burn_tx is None else EXECUTED,
                "Cycle cancelled after purchase",
                spend_lamports=progress.spend,
                units_acquired=progress.fill.units_acquired,
                purchase_tx=progress.fill.purchase_tx,
                burn_tx=progress.burn_tx,
                error=progress.burn_error,
                execution_mode=progress.config.execution_mode,
            )
        elif self._state in (CycleState.SPENDING, CycleState.PURCHASING):
            # The worker thread keeps going; its transaction may still land
            error = (
                f"Cycle cancelled during {self._state.value}, on-chain outcome unknown: "
                "reconcile the authority's recent transactions"
            )
            event = BuybackEvent(
                status=STATUS_FAILED,
                token_mint=progress.config.target_mint,
                error_message=error,
                execution_mode=progress.config.execution_mode,
            )
            result = BuybackResult(FAILED, error, error=error,
                                   execution_mode=progress.config.execution_mode)
        else:
            return
        log.warning(f"Buyback cycle cancelled in state {self._state.value}, recording progress")
        self._record(event, result, funds)

    def _record(self, event: BuybackEvent, result: BuybackResult, funds: SpendableFunds) -> BuybackResult:
        """Write the event, advance last_run_at, publish status. Blocking."""
        stored = self._events.record(event)
        now = self._clock()
        self._configs.mark_run(now)
        self._state = CycleState.RECORDED

        result.event_id = stored.id
        result.recorded_at = now.isoformat()
        if self._board is not None:
            self._board.publish_result(result.to_dict(), funds.as_dict())
        log_buyback(
            outcome=result.outcome,
            mode=event.execution_mode,
            mint=event.token_mint,
            lamports=result.spend_lamports,
            units=result.units_acquired,
            purchase_tx=result.purchase_tx,
            burn_tx=result.burn_tx,
            error=result.error,
        )
        return result

    def _backend_for(self, mode: str) -> ExecutionBackend:
        backend = self._backends.get(mode)
        if backend is None:
            backend = build_backend(mode, self._ledger)
            self._backends[mode] = backend
        return backend

    def __repr__(self) -> str:
        return f"BuybackExecutor(state={self._state.value}, busy={self.busy})"
