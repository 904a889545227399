"""
burnbot/ledger/rpc.py

Solana RPC wrapper. The ONLY module in the system that talks to the RPC node.
Handles: custodial balances (vault / treasury PDAs), SPL token balances,
transaction submission and confirmation, and the optional skim instruction.

Account layout (must match the on-chain program seeds):
    casino   PDA: ["casino"]
    vault    PDA: ["vault",    casino]
    treasury PDA: ["treasury", casino]

All methods are blocking. The executor calls them through asyncio.to_thread.
"""
from __future__ import annotations

import hashlib
import json
import struct
import time
from typing import Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed, Finalized
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction, VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)

from burnbot.errors import (
    ConfirmationTimeout,
    LedgerError,
    SkimUnavailable,
    SubmissionError,
)
from burnbot.utils.config import settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)

CASINO_SEED = b"casino"
VAULT_SEED = b"vault"
TREASURY_SEED = b"treasury"

# Anchor instruction discriminator: sha256("global:<name>")[:8]
_SKIM_DISCRIMINATOR = hashlib.sha256(b"global:skim_excess_to_treasury").digest()[:8]

_CONFIRM_POLL_SECONDS = 0.5
_RPC_ERRORS = (RPCException, SolanaRpcException)


def load_keypair(raw: str) -> Optional[Keypair]:
    """Parse a secret key given as a JSON byte array or a base58 string."""
    raw = (raw or "").strip()
    if not raw:
        return None
    if raw.startswith("["):
        return Keypair.from_bytes(bytes(json.loads(raw)))
    return Keypair.from_base58_string(raw)


class SolanaLedger:
    """
    Balance queries and transaction plumbing against a Solana RPC node.

    Args:
        client:     solana-py Client (defaults to one built from settings.rpc_url)
        program_id: casino program id (defaults to settings.casino_program_id)
        authority:  signing keypair; None means read-only / dry-run only
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        program_id: Optional[str] = None,
        authority: Optional[Keypair] = None,
        skim_enabled: Optional[bool] = None,
        confirm_timeout: Optional[float] = None,
    ) -> None:
        self._client = client or Client(settings.rpc_url, commitment=Confirmed)
        self._program_id = Pubkey.from_string(program_id or settings.casino_program_id)
        if authority is None:
            try:
                authority = load_keypair(settings.authority_private_key)
            except (ValueError, TypeError) as exc:
                log.error("Failed to parse AUTHORITY_PRIVATE_KEY: %s", exc)
                authority = None
        self._authority = authority
        self._skim_enabled = settings.skim_enabled if skim_enabled is None else skim_enabled
        self._confirm_timeout = confirm_timeout or settings.confirm_timeout_seconds

        self.casino_address, _ = Pubkey.find_program_address([CASINO_SEED], self._program_id)
        self.vault_address, _ = Pubkey.find_program_address(
            [VAULT_SEED, bytes(self.casino_address)], self._program_id
        )
        self.treasury_address, _ = Pubkey.find_program_address(
            [TREASURY_SEED, bytes(self.casino_address)], self._program_id
        )

        if self._authority is None:
            log.warning("No authority keypair configured, live buybacks are disabled")
        else:
            log.info("Ledger initialised with authority %s", self._authority.pubkey())

    # ------------------------------------------------------------------
    # Authority
    # ------------------------------------------------------------------

    @property
    def has_authority(self) -> bool:
        return self._authority is not None

    @property
    def authority(self) -> Keypair:
        if self._authority is None:
            raise LedgerError("Authority keypair not available, cannot sign transactions")
        return self._authority

    @property
    def authority_pubkey(self) -> Pubkey:
        return self.authority.pubkey()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, address: Pubkey) -> int:
        """Lamport balance of *address*."""
        try:
            return int(self._client.get_balance(address, commitment=Confirmed).value)
        except _RPC_ERRORS as exc:
            raise LedgerError(f"Balance query failed for {address}: {exc}") from exc

    def vault_balance(self) -> int:
        return self.get_balance(self.vault_address)

    def treasury_balance(self) -> int:
        return self.get_balance(self.treasury_address)

    def token_program_for(self, mint: Pubkey) -> Pubkey:
        """SPL Token or Token-2022, depending on which program owns the mint."""
        try:
            info = self._client.get_account_info(mint, commitment=Confirmed).value
        except _RPC_ERRORS as exc:
            raise LedgerError(f"Mint lookup failed for {mint}: {exc}") from exc
        if info is None:
            raise LedgerError(f"Mint account {mint} does not exist")
        if info.owner == TOKEN_2022_PROGRAM_ID:
            return TOKEN_2022_PROGRAM_ID
        return TOKEN_PROGRAM_ID

    @staticmethod
    def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
        ata, _ = Pubkey.find_program_address(
            [bytes(owner), bytes(token_program), bytes(mint)],
            ASSOCIATED_TOKEN_PROGRAM_ID,
        )
        return ata

    def get_token_balance(self, mint: Pubkey, owner: Optional[Pubkey] = None) -> int:
        """
        Base-unit balance of *mint* held in *owner*'s associated token account.

        A missing token account reads as 0. RPC failures raise LedgerError.
        """
        owner = owner or self.authority_pubkey
        token_program = self.token_program_for(mint)
        ata = self.associated_token_address(owner, mint, token_program)
        try:
            if self._client.get_account_info(ata, commitment=Confirmed).value is None:
                return 0
            resp = self._client.get_token_account_balance(ata, commitment=Confirmed)
            return int(resp.value.amount)
        except _RPC_ERRORS as exc:
            raise LedgerError(f"Token balance query failed for {ata}: {exc}") from exc

    def latest_blockhash(self):
        try:
            return self._client.get_latest_blockhash(commitment=Finalized).value.blockhash
        except _RPC_ERRORS as exc:
            raise LedgerError(f"Blockhash query failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def sign_versioned(self, raw: bytes) -> VersionedTransaction:
        """Deserialize an unsigned versioned transaction and sign it with the authority."""
        try:
            unsigned = VersionedTransaction.from_bytes(raw)
        except ValueError as exc:
            raise SubmissionError(f"Could not deserialize transaction: {exc}", retryable=False) from exc
        return VersionedTransaction(unsigned.message, [self.authority])

    def send_transaction(
        self,
        tx: Transaction | VersionedTransaction,
        skip_preflight: bool = False,
        max_retries: Optional[int] = None,
    ) -> str:
        """Submit a signed transaction. Returns the signature string."""
        opts = TxOpts(
            skip_preflight=skip_preflight,
            preflight_commitment=Confirmed,
            max_retries=max_retries,
        )
        try:
            resp = self._client.send_raw_transaction(bytes(tx), opts=opts)
        except _RPC_ERRORS as exc:
            raise SubmissionError(f"Transaction submission failed: {exc}") from exc
        signature = str(resp.value)
        log.info("Transaction sent: %s", signature)
        return signature

    def confirm_transaction(self, signature: str, timeout: Optional[float] = None) -> None:
        """
        Poll signature status until confirmed.

        Raises:
            SubmissionError:     transaction landed with an error
            ConfirmationTimeout: not confirmed within *timeout* seconds
        """
        timeout = timeout or self._confirm_timeout
        sig = Signature.from_string(signature)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                statuses = self._client.get_signature_statuses(
                    [sig], search_transaction_history=True
                ).value
            except _RPC_ERRORS as exc:
                log.warning("Signature status check failed for %s: %s", signature[:12], exc)
                statuses = []
            status = statuses[0] if statuses else None
            if status is not None:
                if status.err is not None:
                    raise SubmissionError(
                        f"Transaction {signature} failed: {status.err}", retryable=False
                    )
                if status.confirmation_status in (
                    TransactionConfirmationStatus.Confirmed,
                    TransactionConfirmationStatus.Finalized,
                ):
                    log.debug("Transaction confirmed: %s", signature[:12])
                    return
            time.sleep(_CONFIRM_POLL_SECONDS)
        raise ConfirmationTimeout(signature, timeout)

    def send_instructions(self, instructions: list[Instruction]) -> str:
        """Build, sign, send and confirm a legacy transaction from *instructions*."""
        payer = self.authority
        tx = Transaction.new_signed_with_payer(
            instructions, payer.pubkey(), [payer], self.latest_blockhash()
        )
        signature = self.send_transaction(tx)
        self.confirm_transaction(signature)
        return signature

    def skim_excess_to_treasury(self, amount: int, min_vault_reserve: int) -> str:
        """
        Move *amount* lamports from the vault to the treasury.

        Best-effort: deployments without the instruction reject it, which
        surfaces as SkimUnavailable so the caller can fall back to
        treasury-only spending.
        """
        if not self._skim_enabled:
            raise SkimUnavailable("Skim disabled by configuration")
        if amount <= 0:
            raise SkimUnavailable("Nothing to skim")
        ix = Instruction(
            program_id=self._program_id,
            data=_SKIM_DISCRIMINATOR + struct.pack("<QQ", amount, min_vault_reserve),
            accounts=[
                AccountMeta(self.casino_address, is_signer=False, is_writable=True),
                AccountMeta(self.vault_address, is_signer=False, is_writable=True),
                AccountMeta(self.treasury_address, is_signer=False, is_writable=True),
                AccountMeta(self.authority_pubkey, is_signer=True, is_writable=False),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        try:
            signature = self.send_instructions([ix])
        except (SubmissionError, ConfirmationTimeout, LedgerError) as exc:
            raise SkimUnavailable(f"Skim instruction failed: {exc}") from exc
        log.info("Skimmed %d lamports from vault to treasury: %s", amount, signature)
        return signature

    def __repr__(self) -> str:
        return f"SolanaLedger(program={self._program_id}, authority={'yes' if self.has_authority else 'no'})"
