"""
burnbot/execution/backends/aggregator.py

Jupiter aggregator backend. The ONLY module that calls the Jupiter REST API.

Flow for one buy:
    1. GET  /quote  (SOL → target, amount, slippage)
    2. reject if price impact > ceiling (5% by default)
    3. per attempt (max 3, backoff 2s, 4s):
         POST /swap bound to the quote → sign → send → confirm
       slippage / insufficient-funds failures abort without retrying
    4. acquired units = token balance after − token balance before
       (the quoted outAmount when the second read fails)
"""
from __future__ import annotations

import base64
import time
from typing import Any, Optional

import requests
from solders.pubkey import Pubkey

from burnbot.errors import (
    ConfirmationTimeout,
    EmptyFill,
    ExecutionError,
    InsufficientFunds,
    LedgerError,
    PriceImpactExceeded,
    QuoteError,
    SlippageExceeded,
    SubmissionError,
)
from burnbot.execution.backends.base import (
    AGGREGATOR,
    ExecutionBackend,
    PurchaseFill,
    PurchaseRequest,
)
from burnbot.utils.config import SOL_MINT, settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)

# Jupiter program error 6001 (0x1771) is SlippageToleranceExceeded
_SLIPPAGE_MARKERS = ("slippage", "0x1771", "(6001)")
_INSUFFICIENT_MARKERS = ("insufficient",)


def classify_submission_error(exc: ExecutionError) -> ExecutionError:
    """Map a raw submission failure onto the non-retryable types where it applies."""
    if isinstance(exc, (SlippageExceeded, InsufficientFunds)):
        return exc
    text = str(exc).lower()
    if any(m in text for m in _SLIPPAGE_MARKERS):
        return SlippageExceeded(f"Slippage tolerance exceeded: {exc}")
    if any(m in text for m in _INSUFFICIENT_MARKERS):
        return InsufficientFunds(f"Insufficient funds: {exc}")
    return exc


class JupiterClient:
    """
    Thin, stateless wrapper around the Jupiter quote and swap endpoints.

    Args:
        base_url: API root, e.g. https://lite-api.jup.ag/swap/v1
        session:  optional requests.Session (tests inject a mock)
    """

    def __init__(self, base_url: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
        self._base = (base_url or settings.jupiter_api_url).rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "burnbot/1.0"})

    def get_quote(self, output_mint: str, amount: int, slippage_bps: int) -> dict[str, Any]:
        """
        Quote a SOL → *output_mint* swap for *amount* lamports.

        Raises:
            QuoteError: on HTTP failure, an error payload, or an empty route.
        """
        params = {
            "inputMint": SOL_MINT,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
        }
        try:
            resp = self._session.get(f"{self._base}/quote", params=params, timeout=15)
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise QuoteError(f"Failed to get Jupiter quote: {exc}") from exc
        if not isinstance(data, dict) or data.get("error"):
            raise QuoteError(f"Jupiter quote error: {data.get('error') if isinstance(data, dict) else data}")
        if int(data.get("outAmount", 0) or 0) <= 0:
            raise QuoteError("Jupiter quote has no output amount")
        return data

    def get_swap_transaction(self, quote: dict[str, Any], user_public_key: str) -> tuple[bytes, dict]:
        """
        Request the serialized swap transaction bound to *quote*.

        Returns:
            (transaction bytes, raw response payload)
        """
        payload = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        try:
            resp = self._session.post(f"{self._base}/swap", json=payload, timeout=15)
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise SubmissionError(f"Failed to get Jupiter swap transaction: {exc}") from exc
        swap_tx = data.get("swapTransaction") if isinstance(data, dict) else None
        if not swap_tx:
            raise SubmissionError(f"Jupiter swap response missing transaction: {data}")
        return base64.b64decode(swap_tx), data


class AggregatorBackend(ExecutionBackend):
    """
    Swaps SOL for the target mint through Jupiter.

    Args:
        ledger:           SolanaLedger used for balances, signing and submission
        client:           JupiterClient
        max_impact_pct:   price impact ceiling in percent
        max_attempts:     swap attempts before giving up
        backoff_seconds:  first backoff delay; doubles after each failed attempt
    """

    mode = AGGREGATOR

    def __init__(
        self,
        ledger,
        client: Optional[JupiterClient] = None,
        max_impact_pct: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        self._ledger = ledger
        self._client = client or JupiterClient()
        self._max_impact_pct = max_impact_pct or settings.max_price_impact_pct
        self._max_attempts = max_attempts or settings.swap_max_attempts
        self._backoff = settings.swap_backoff_seconds if backoff_seconds is None else backoff_seconds

    def buy(self, request: PurchaseRequest) -> PurchaseFill:
        quote = self._client.get_quote(
            request.target_mint, request.spend_lamports, request.slippage_bps
        )
        impact_pct = float(quote.get("priceImpactPct", 0) or 0) * 100
        log.info(
            "Jupiter quote: in=%s lamports out=%s units impact=%.4f%%",
            quote.get("inAmount"), quote.get("outAmount"), impact_pct,
        )
        if impact_pct > self._max_impact_pct:
            raise PriceImpactExceeded(impact_pct, self._max_impact_pct)

        mint = Pubkey.from_string(request.target_mint)
        before = self._ledger.get_token_balance(mint)
        signature, swap = self._swap_with_retry(quote)

        try:
            acquired = self._ledger.get_token_balance(mint) - before
        except LedgerError as exc:
            acquired = int(quote.get("outAmount", 0) or 0)
            log.warning(
                "Balance read after swap %s failed (%s), using quoted outAmount %d",
                signature, exc, acquired,
            )
        if acquired <= 0:
            raise EmptyFill(signature, quote)
        log.info("Jupiter swap filled: %d units via %s", acquired, signature)
        return PurchaseFill(purchase_tx=signature, units_acquired=acquired, quote=quote, swap=swap)

    def _swap_with_retry(self, quote: dict[str, Any]) -> tuple[str, dict]:
        last_error: Optional[ExecutionError] = None
        user = str(self._ledger.authority_pubkey)

        for attempt in range(1, self._max_attempts + 1):
            try:
                log.info("Jupiter swap attempt %d/%d", attempt, self._max_attempts)
                raw, swap = self._client.get_swap_transaction(quote, user)
                tx = self._ledger.sign_versioned(raw)
                signature = self._ledger.send_transaction(tx, skip_preflight=False, max_retries=2)
                self._ledger.confirm_transaction(signature)
                log.info("Swap transaction confirmed: %s", signature)
                return signature, swap
            except (SubmissionError, ConfirmationTimeout) as exc:
                error = classify_submission_error(exc)
                if not error.retryable:
                    log.error("Swap attempt %d failed, not retrying: %s", attempt, error)
                    raise error from exc
                last_error = error
                log.warning("Swap attempt %d failed: %s", attempt, error)

            if attempt < self._max_attempts:
                wait = self._backoff * 2 ** (attempt - 1)
                log.info("Waiting %.0fs before retry", wait)
                time.sleep(wait)

        if isinstance(last_error, ConfirmationTimeout):
            raise last_error
        raise SubmissionError(
            f"Failed to execute swap after {self._max_attempts} attempts: {last_error}",
            retryable=False,
        )
