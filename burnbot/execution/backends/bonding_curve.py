"""
burnbot/execution/backends/bonding_curve.py

Bonding-curve backend using the PumpPortal local-transaction API.
PumpPortal builds an unsigned buy transaction; we sign and send it ourselves.

Endpoint: POST https://pumpportal.fun/api/trade-local

No built-in retry: a failed buy ends the cycle and the fast loop's next
tick is the retry.
"""
from __future__ import annotations

import base64
import time
from typing import Optional

import requests
from solders.pubkey import Pubkey

from burnbot.errors import EmptyFill, LedgerError, QuoteError
from burnbot.execution.backends.base import (
    BONDING_CURVE,
    ExecutionBackend,
    PurchaseFill,
    PurchaseRequest,
)
from burnbot.utils.config import settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)


class PumpPortalClient:
    """
    Requests unsigned buy transactions from PumpPortal.

    Args:
        api_url: trade-local endpoint
        pool:    pool type, 'pump' for the bonding curve itself
        session: optional requests.Session (tests inject a mock)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        pool: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._url = api_url or settings.pumpportal_api_url
        self._pool = pool or settings.pumpportal_pool
        self._session = session or requests.Session()

    @property
    def pool(self) -> str:
        return self._pool

    def build_buy_transaction(
        self,
        public_key: str,
        mint: str,
        amount_sol: float,
        slippage_pct: float,
        priority_fee_sol: float,
    ) -> bytes:
        """
        Return the serialized unsigned buy transaction.

        The API answers with raw transaction bytes; a JSON body carrying a
        base64 'transaction' field is accepted as well.

        Raises:
            QuoteError: on HTTP failure or an unusable response.
        """
        payload = {
            "publicKey": public_key,
            "action": "buy",
            "mint": mint,
            "amount": amount_sol,
            "denominatedInSol": "true",
            "slippage": slippage_pct,
            "priorityFee": priority_fee_sol,
            "pool": self._pool,
        }
        log.info(
            "Requesting PumpPortal buy: mint=%s amount=%.9f SOL slippage=%.2f%%",
            mint, amount_sol, slippage_pct,
        )
        try:
            resp = self._session.post(self._url, json=payload, timeout=10)
        except requests.exceptions.RequestException as exc:
            raise QuoteError(f"PumpPortal request failed: {exc}") from exc

        if resp.status_code != 200:
            raise QuoteError(f"PumpPortal API error ({resp.status_code}): {resp.text}")

        if "application/json" in resp.headers.get("Content-Type", ""):
            try:
                data = resp.json()
            except ValueError as exc:
                raise QuoteError(f"PumpPortal returned invalid JSON: {exc}") from exc
            if not data.get("transaction"):
                raise QuoteError(f"PumpPortal returned no transaction: {data.get('error', data)}")
            return base64.b64decode(data["transaction"])

        if not resp.content:
            raise QuoteError("PumpPortal returned an empty body")
        return resp.content


class BondingCurveBackend(ExecutionBackend):
    """
    Buys the target mint directly on its bonding curve.

    Args:
        ledger:           SolanaLedger used for balances, signing and submission
        client:           PumpPortalClient
        priority_fee_sol: priority fee passed to PumpPortal
        settle_delay:     seconds to wait after confirmation before reading balances
    """

    mode = BONDING_CURVE

    def __init__(
        self,
        ledger,
        client: Optional[PumpPortalClient] = None,
        priority_fee_sol: Optional[float] = None,
        settle_delay: Optional[float] = None,
    ) -> None:
        self._ledger = ledger
        self._client = client or PumpPortalClient()
        self._priority_fee = settings.priority_fee_sol if priority_fee_sol is None else priority_fee_sol
        self._settle_delay = settings.settle_delay_seconds if settle_delay is None else settle_delay

    def buy(self, request: PurchaseRequest) -> PurchaseFill:
        mint = Pubkey.from_string(request.target_mint)
        before = self._ledger.get_token_balance(mint)

        raw = self._client.build_buy_transaction(
            public_key=str(self._ledger.authority_pubkey),
            mint=request.target_mint,
            amount_sol=request.spend_sol,
            slippage_pct=request.slippage_bps / 100,
            priority_fee_sol=self._priority_fee,
        )
        tx = self._ledger.sign_versioned(raw)
        signature = self._ledger.send_transaction(tx, skip_preflight=False, max_retries=3)
        self._ledger.confirm_transaction(signature)
        log.info("Bonding-curve buy confirmed: %s", signature)

        if self._settle_delay > 0:
            time.sleep(self._settle_delay)

        quote = {
            "pool": self._client.pool,
            "amount_sol": request.spend_sol,
            "slippage_pct": request.slippage_bps / 100,
        }
        try:
            acquired = self._ledger.get_token_balance(mint) - before
        except LedgerError as exc:
            # PumpPortal returns no quote to estimate from
            log.warning("Balance read after buy %s failed (%s), fill unmeasured", signature, exc)
            return PurchaseFill(purchase_tx=signature, units_acquired=0, quote=quote, measured=False)

        # Near migration a confirmed buy can fill for zero
        if acquired <= 0:
            raise EmptyFill(signature, quote)
        log.info("Bonding-curve buy filled: %d units", acquired)
        return PurchaseFill(purchase_tx=signature, units_acquired=acquired, quote=quote)
