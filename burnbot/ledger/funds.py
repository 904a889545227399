"""
burnbot/ledger/funds.py

Read-only reserve calculator over the two custodial accounts.

    vault_excess       = max(0, vault_balance    - vault_reserve)
    treasury_spendable = max(0, treasury_balance - treasury_rent_min)
    total_available    = vault_excess + treasury_spendable

Spending never exceeds total_available, so neither account can drop
below its reserve. All amounts are lamports.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from burnbot.utils.config import (
    LAMPORTS_PER_SOL,
    TREASURY_RENT_MIN_LAMPORTS,
    VAULT_RESERVE_LAMPORTS,
)
from burnbot.utils.logging import get_logger

log = get_logger(__name__)


class BalanceSource(Protocol):
    def vault_balance(self) -> int: ...
    def treasury_balance(self) -> int: ...


@dataclass(frozen=True)
class SpendableFunds:
    """Snapshot of custodial balances and what can safely be spent from them."""

    vault_balance: int
    treasury_balance: int
    vault_excess: int
    treasury_spendable: int

    @property
    def total_available(self) -> int:
        return self.vault_excess + self.treasury_spendable

    def as_dict(self) -> dict:
        return {
            "vault_balance": self.vault_balance / LAMPORTS_PER_SOL,
            "treasury_balance": self.treasury_balance / LAMPORTS_PER_SOL,
            "vault_excess": self.vault_excess / LAMPORTS_PER_SOL,
            "treasury_spendable": self.treasury_spendable / LAMPORTS_PER_SOL,
            "total_available": self.total_available / LAMPORTS_PER_SOL,
        }


class FundLedger:
    """
    Computes the safe spendable amount from live vault and treasury balances.

    Args:
        source:            anything exposing vault_balance() / treasury_balance()
        vault_reserve:     lamports the vault must always keep
        treasury_rent_min: lamports the treasury must always keep
    """

    def __init__(
        self,
        source: BalanceSource,
        vault_reserve: int = VAULT_RESERVE_LAMPORTS,
        treasury_rent_min: int = TREASURY_RENT_MIN_LAMPORTS,
    ) -> None:
        self._source = source
        self.vault_reserve = vault_reserve
        self.treasury_rent_min = treasury_rent_min

    def compute_spendable(self) -> SpendableFunds:
        """
        Read both balances and derive the spendable amounts.

        Raises:
            LedgerError: if either balance query fails.
        """
        vault = self._source.vault_balance()
        treasury = self._source.treasury_balance()
        funds = SpendableFunds(
            vault_balance=vault,
            treasury_balance=treasury,
            vault_excess=max(0, vault - self.vault_reserve),
            treasury_spendable=max(0, treasury - self.treasury_rent_min),
        )
        log.debug(
            "Funds: vault=%d treasury=%d excess=%d spendable=%d total=%d",
            vault, treasury, funds.vault_excess, funds.treasury_spendable, funds.total_available,
        )
        return funds


def spend_amount(funds: SpendableFunds, max_spend: int) -> int:
    """Lamports to spend this cycle: the available total, capped per interval."""
    return max(0, min(funds.total_available, max_spend))


def sol_to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))
