"""
burnbot/errors.py

Error taxonomy for buyback cycles.

    NotEligible      : cooldown / inactive / no funds. A normal skip.
    ConfigMissing    : no BuybackConfig row. Fatal for that cycle only.
    LedgerError      : balance query or RPC failure. Cycle is not ready.
    SkimUnavailable  : optional vault → treasury skim not possible.
    ExecutionError   : raised by execution backends:
        QuoteError, PriceImpactExceeded, SubmissionError (EmptyFill,
        SlippageExceeded, InsufficientFunds), ConfirmationTimeout
    BurnFailure      : purchase succeeded, destroy step did not.
"""
from __future__ import annotations

from typing import Any, Optional


class BuybackError(Exception):
    """Base class for every buyback failure."""


class NotEligible(BuybackError):
    """
    The cycle may not run right now. Not an error condition: the executor
    raises it from its eligibility gate and turns it into a skipped result.
    """


class ConfigMissing(BuybackError):
    """No BuybackConfig exists."""


class LedgerError(BuybackError):
    """Balance query or other RPC read against the ledger failed."""


class SkimUnavailable(BuybackError):
    """The skim-excess-to-treasury instruction is disabled or rejected."""


class ExecutionError(BuybackError):
    """Base class for backend failures. Retried only where `retryable` is True."""

    retryable = False


class QuoteError(ExecutionError):
    """The quoting / trade-construction API failed or returned garbage."""


class PriceImpactExceeded(ExecutionError):
    """Quoted price impact is above the configured ceiling."""

    def __init__(self, impact_pct: float, ceiling_pct: float) -> None:
        super().__init__(f"Price impact too high: {impact_pct:.2f}% (max {ceiling_pct:.2f}%)")
        self.impact_pct = impact_pct
        self.ceiling_pct = ceiling_pct


class SubmissionError(ExecutionError):
    """Transaction could not be submitted or landed with an error."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class SlippageExceeded(SubmissionError):
    def __init__(self, message: str = "Slippage tolerance exceeded") -> None:
        super().__init__(message, retryable=False)


class InsufficientFunds(SubmissionError):
    def __init__(self, message: str = "Insufficient SOL for transaction") -> None:
        super().__init__(message, retryable=False)


class EmptyFill(SubmissionError):
    """The purchase transaction confirmed but no units arrived. SOL was spent."""

    def __init__(self, purchase_tx: str, quote: Optional[dict[str, Any]] = None) -> None:
        super().__init__(f"Purchase {purchase_tx} confirmed but no tokens were received", retryable=False)
        self.purchase_tx = purchase_tx
        self.quote = quote


class ConfirmationTimeout(ExecutionError):
    """Transaction was sent but not confirmed within the timeout."""

    retryable = True

    def __init__(self, signature: str, timeout: float) -> None:
        super().__init__(f"Transaction {signature} not confirmed within {timeout:.0f}s")
        self.signature = signature
        self.timeout = timeout


class BurnFailure(BuybackError):
    """Destroying the purchased asset failed. Requires operator follow-up."""


class AuthError(BuybackError):
    """Operator identity could not be verified."""
