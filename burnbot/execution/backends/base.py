"""
burnbot/execution/backends/base.py

Execution backend interface.

Every backend converts a SOL amount into units of the target asset:

    backend.buy(PurchaseRequest) → PurchaseFill

and fails with one of QuoteError, PriceImpactExceeded, SubmissionError or
ConfirmationTimeout (see burnbot.errors). The executor picks the backend
from BuybackConfig.execution_mode via build_backend().
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from burnbot.utils.config import (  # noqa: F401
    AGGREGATOR,
    BONDING_CURVE,
    EXECUTION_MODES,
    LAMPORTS_PER_SOL,
)


@dataclass(frozen=True)
class PurchaseRequest:
    """
    Attributes:
        spend_lamports: SOL to spend, in lamports (> 0)
        target_mint:    base58 mint of the asset to buy
        slippage_bps:   slippage tolerance in basis points
    """

    spend_lamports: int
    target_mint: str
    slippage_bps: int

    def __post_init__(self) -> None:
        if self.spend_lamports <= 0:
            raise ValueError(f"spend_lamports must be positive, got {self.spend_lamports}")
        if not self.target_mint:
            raise ValueError("target_mint must not be empty")
        if not 0 < self.slippage_bps <= 10_000:
            raise ValueError(f"slippage_bps must be in (0, 10000], got {self.slippage_bps}")

    @property
    def spend_sol(self) -> float:
        return self.spend_lamports / LAMPORTS_PER_SOL


@dataclass
class PurchaseFill:
    """Result of a confirmed purchase."""

    purchase_tx: str
    units_acquired: int
    quote: Optional[dict[str, Any]] = None
    swap: Optional[dict[str, Any]] = field(default=None, repr=False)
    # False when the post-purchase balance read failed; the executor then
    # takes units_acquired from its own balance read
    measured: bool = True


class ExecutionBackend(ABC):
    """Abstract purchase backend. One concrete class per execution mode."""

    mode: str  # set by each subclass

    @abstractmethod
    def buy(self, request: PurchaseRequest) -> PurchaseFill:
        """
        Spend request.spend_lamports on request.target_mint.

        Blocking. Returns only after the purchase transaction is confirmed.
        Once confirmed, the signature is never lost: a zero fill raises
        EmptyFill carrying it, and an unreadable balance returns a fill
        with an estimated or unmeasured units_acquired.
        """
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(mode={self.mode!r})"
