"""burnbot ledger layer: custodial balances and RPC plumbing."""

from burnbot.ledger.funds import FundLedger, SpendableFunds, sol_to_lamports, spend_amount
from burnbot.ledger.rpc import SolanaLedger, load_keypair

__all__ = [
    "FundLedger",
    "SpendableFunds",
    "SolanaLedger",
    "load_keypair",
    "sol_to_lamports",
    "spend_amount",
]
