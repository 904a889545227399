"""
tests/unit/conftest.py

Shared fakes and fixtures. Nothing here touches the network, Redis or a
real Solana node.
"""
from __future__ import annotations

import threading
from typing import Optional

import pytest
from solders.pubkey import Pubkey

from burnbot.errors import SkimUnavailable
from burnbot.execution.backends.base import (
    BONDING_CURVE,
    ExecutionBackend,
    PurchaseFill,
    PurchaseRequest,
)
from burnbot.execution.executor import BuybackExecutor
from burnbot.store.config_store import ConfigStore
from burnbot.store.db import Database
from burnbot.store.event_store import EventStore

SOL = 1_000_000_000
MINT = str(Pubkey.new_unique())


class FakeLedger:
    """In-memory stand-in for SolanaLedger."""

    def __init__(
        self,
        vault: int = 0,
        treasury: int = 0,
        token_balance: int = 0,
        has_authority: bool = True,
        skim_ok: bool = True,
    ) -> None:
        self.vault = vault
        self.treasury = treasury
        self.token_balance = token_balance
        self.has_authority = has_authority
        self.skim_ok = skim_ok
        self.balance_error: Optional[Exception] = None
        self.token_error: Optional[Exception] = None
        self.skim_calls: list[tuple[int, int]] = []
        self.authority_pubkey = Pubkey.new_unique()

    def vault_balance(self) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.vault

    def treasury_balance(self) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.treasury

    def get_token_balance(self, mint, owner=None) -> int:
        if self.token_error is not None:
            raise self.token_error
        return self.token_balance

    def skim_excess_to_treasury(self, amount: int, min_vault_reserve: int) -> str:
        self.skim_calls.append((amount, min_vault_reserve))
        if not self.skim_ok:
            raise SkimUnavailable("instruction not deployed")
        self.vault -= amount
        self.treasury += amount
        return "skim-sig"


class FakeBackend(ExecutionBackend):
    """Credits the ledger with *units* per buy, or raises *error*.

    With measured=False the fill reports 0 units, as a backend does when it
    cannot read the balance after confirmation.
    """

    mode = BONDING_CURVE

    def __init__(self, ledger: FakeLedger, units: int = 1_000, error: Optional[Exception] = None) -> None:
        self.ledger = ledger
        self.units = units
        self.error = error
        self.requests: list[PurchaseRequest] = []
        self.entered = threading.Event()
        self.release: Optional[threading.Event] = None
        self.measured = True

    def buy(self, request: PurchaseRequest) -> PurchaseFill:
        self.requests.append(request)
        self.entered.set()
        if self.release is not None:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        self.ledger.token_balance += self.units
        return PurchaseFill(
            purchase_tx=f"buy-sig-{len(self.requests)}",
            units_acquired=self.units if self.measured else 0,
            quote={"amount_sol": request.spend_sol},
            measured=self.measured,
        )


class FakeDestroyer:
    def __init__(self, ledger: FakeLedger, error: Optional[Exception] = None) -> None:
        self.ledger = ledger
        self.error = error
        self.calls: list[tuple[str, int]] = []
        self.entered = threading.Event()
        self.release: Optional[threading.Event] = None

    def burn(self, mint: str, amount: int, owner=None) -> str:
        self.calls.append((mint, amount))
        self.entered.set()
        if self.release is not None:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        self.ledger.token_balance -= amount
        return f"burn-sig-{len(self.calls)}"


@pytest.fixture
def db() -> Database:
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def config_store(db) -> ConfigStore:
    store = ConfigStore(db)
    store.ensure_default()
    return store


@pytest.fixture
def event_store(db) -> EventStore:
    return EventStore(db)


@pytest.fixture
def ledger() -> FakeLedger:
    # Worked example: 2.0 SOL vault, 0.01 SOL treasury
    return FakeLedger(vault=2 * SOL, treasury=SOL // 100)


@pytest.fixture
def backend(ledger) -> FakeBackend:
    return FakeBackend(ledger)


@pytest.fixture
def destroyer(ledger) -> FakeDestroyer:
    return FakeDestroyer(ledger)


@pytest.fixture
def executor(config_store, event_store, ledger, backend, destroyer) -> BuybackExecutor:
    return BuybackExecutor(
        config_store,
        event_store,
        ledger,
        destroyer=destroyer,
        backends={BONDING_CURVE: backend},
    )


@pytest.fixture
def live_config(config_store):
    """Active, live, bonding-curve config with a 0.3 SOL cap."""
    return config_store.update({
        "token_mint": MINT,
        "max_spend_per_interval": 0.3,
        "is_active": True,
        "dry_run": False,
    })

