"""
burnbot/service/auth.py

Operator signature check.

An operator signs the string

    "{METHOD}:{path}:{timestamp_ms}"

with their ed25519 wallet key and sends the base58 signature, base58
public key and the millisecond timestamp. The timestamp must be within
auth_max_skew_seconds of now, and when OPERATOR_WALLETS is set the key
must be on it.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Sequence

from solders.pubkey import Pubkey
from solders.signature import Signature

from burnbot.errors import AuthError
from burnbot.utils.config import settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class OperatorAuth:
    """Credentials attached to one operator request."""

    signature: str
    public_key: str
    timestamp_ms: int
    method: str
    path: str

    @property
    def message(self) -> str:
        return f"{self.method.upper()}:{self.path}:{self.timestamp_ms}"


@dataclass(frozen=True)
class OperatorIdentity:
    public_key: str
    local: bool = False


LOCAL_OPERATOR = OperatorIdentity(public_key="local", local=True)


def sign_request(keypair, method: str, path: str, timestamp_ms: Optional[int] = None) -> OperatorAuth:
    """Build signed credentials for *method* / *path* with a solders Keypair."""
    ts = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
    message = f"{method.upper()}:{path}:{ts}"
    signature = keypair.sign_message(message.encode("utf-8"))
    return OperatorAuth(
        signature=str(signature),
        public_key=str(keypair.pubkey()),
        timestamp_ms=ts,
        method=method,
        path=path,
    )


def verify_operator(
    auth: Optional[OperatorAuth],
    allowed_wallets: Optional[Sequence[str]] = None,
    require_auth: Optional[bool] = None,
    max_skew_seconds: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> OperatorIdentity:
    """
    Verify *auth* and return the operator identity.

    With require_auth False and no credentials, the caller is treated as
    the local operator. Credentials that are supplied are always checked.

    Raises:
        AuthError: missing, expired, malformed, invalid or unlisted credentials.
    """
    require = settings.require_operator_auth if require_auth is None else require_auth
    if auth is None:
        if not require:
            return LOCAL_OPERATOR
        raise AuthError("Missing operator credentials (signature, public key, timestamp)")

    skew = settings.auth_max_skew_seconds if max_skew_seconds is None else max_skew_seconds
    now = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now - int(auth.timestamp_ms)) > skew * 1000:
        raise AuthError("Request timestamp expired or invalid")

    try:
        pubkey = Pubkey.from_string(auth.public_key)
        signature = Signature.from_string(auth.signature)
    except (TypeError, ValueError) as exc:
        raise AuthError("Invalid signature or public key format") from exc

    if not signature.verify(pubkey, auth.message.encode("utf-8")):
        raise AuthError("Invalid signature")

    allowed = settings.operator_wallet_list if allowed_wallets is None else list(allowed_wallets)
    if allowed and auth.public_key not in allowed:
        log.warning(f"Unauthorized operator attempt from {auth.public_key}")
        raise AuthError("Wallet is not authorized as operator")

    log.info(f"Authenticated operator {auth.public_key[:8]}...")
    return OperatorIdentity(public_key=auth.public_key)
