"""
burnbot/execution/destroyer.py

Permanently destroys purchased units with an SPL burn instruction on the
owner's associated token account. Works for both SPL Token and Token-2022
mints; the program is resolved from the mint account owner.
"""
from __future__ import annotations

from typing import Optional

from solders.pubkey import Pubkey
from spl.token.instructions import BurnParams, burn

from burnbot.errors import BurnFailure, ExecutionError, LedgerError
from burnbot.utils.logging import get_logger

log = get_logger(__name__)


class AssetDestroyer:
    """
    Burns target-asset units held by the authority.

    Args:
        ledger: SolanaLedger used for balance reads and submission
    """

    def __init__(self, ledger) -> None:
        self._ledger = ledger

    def burn(self, mint: str, amount: int, owner: Optional[Pubkey] = None) -> str:
        """
        Burn *amount* base units of *mint* from *owner*'s token account.

        The live balance is re-read first so a stale amount never reaches
        the chain.

        Returns:
            Burn transaction signature.

        Raises:
            BurnFailure: amount <= 0, balance below amount, or the burn
                         transaction was rejected or never confirmed.
        """
        if amount <= 0:
            raise BurnFailure(f"Nothing to burn (amount={amount})")

        try:
            mint_key = Pubkey.from_string(mint)
            owner = owner or self._ledger.authority_pubkey
            balance = self._ledger.get_token_balance(mint_key, owner)
            if balance < amount:
                raise BurnFailure(f"Insufficient balance to burn: have {balance}, need {amount}")

            token_program = self._ledger.token_program_for(mint_key)
            account = self._ledger.associated_token_address(owner, mint_key, token_program)
            ix = burn(
                BurnParams(
                    program_id=token_program,
                    account=account,
                    mint=mint_key,
                    owner=owner,
                    amount=amount,
                )
            )
            log.info("Burning %d units of %s from %s", amount, mint, account)
            signature = self._ledger.send_instructions([ix])
        except (LedgerError, ExecutionError, ValueError) as exc:
            raise BurnFailure(f"Burn of {amount} units of {mint} failed: {exc}") from exc

        log.info("Burn confirmed: %s", signature)
        return signature
