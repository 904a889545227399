"""
burnbot/service/operator.py

Operator facade over the buyback core. Every method returns a structured
payload and never raises:

    {"success": True,  "data": ...}          or
    {"success": True,  "message": "..."}     or
    {"success": False, "error": "..."}

Mutating operations (update_config, run_now, pause, resume) require
operator credentials bound to their method and path; reads are open.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence

from burnbot.errors import AuthError, BuybackError, ConfigMissing, LedgerError
from burnbot.execution.executor import BuybackExecutor
from burnbot.ledger.funds import FundLedger
from burnbot.service.auth import OperatorAuth, OperatorIdentity, verify_operator
from burnbot.store.config_store import ConfigStore
from burnbot.store.event_store import EventStore
from burnbot.utils.config import settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)

# (method, path) each mutating operation must be signed for
ROUTES = {
    "update_config": ("PATCH", "/buyback/config"),
    "run_now": ("POST", "/buyback/run"),
    "pause": ("POST", "/buyback/pause"),
    "resume": ("POST", "/buyback/resume"),
}


def _ok(data: Any = None, message: Optional[str] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    if message is not None:
        payload["message"] = message
    return payload


def _err(error: str) -> dict[str, Any]:
    return {"success": False, "error": error}


class OperatorService:
    """
    Args:
        executor:        BuybackExecutor used for manual runs and eligibility
        config_store:    BuybackConfig singleton
        event_store:     event log
        fund_ledger:     optional, adds a live funds snapshot to status()
        require_auth:    overrides settings.require_operator_auth
        allowed_wallets: overrides settings.operator_wallet_list
        manual_spacing:  overrides settings.manual_spacing_seconds
    """

    def __init__(
        self,
        executor: BuybackExecutor,
        config_store: ConfigStore,
        event_store: EventStore,
        fund_ledger: Optional[FundLedger] = None,
        require_auth: Optional[bool] = None,
        allowed_wallets: Optional[Sequence[str]] = None,
        manual_spacing: Optional[int] = None,
    ) -> None:
        self._executor = executor
        self._configs = config_store
        self._events = event_store
        self._funds = fund_ledger
        self._require_auth = require_auth
        self._allowed = allowed_wallets
        self._manual_spacing = settings.manual_spacing_seconds if manual_spacing is None else manual_spacing

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _authorize(self, operation: str, auth: Optional[OperatorAuth]) -> OperatorIdentity:
        method, path = ROUTES[operation]
        if auth is not None and (auth.method.upper(), auth.path) != (method, path):
            raise AuthError(f"Credentials were signed for {auth.method.upper()} {auth.path}, not {method} {path}")
        return verify_operator(auth, allowed_wallets=self._allowed, require_auth=self._require_auth)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_config(self) -> dict[str, Any]:
        try:
            return _ok(self._configs.get().to_dict())
        except ConfigMissing:
            return _err("Buyback config not found")

    def events(self, limit: int = 50) -> dict[str, Any]:
        try:
            limit = int(limit) if limit else 50
        except (TypeError, ValueError):
            limit = 50
        rows = [e.to_dict() for e in self._events.recent(limit)]
        payload = _ok(rows)
        payload["count"] = len(rows)
        return payload

    def stats(self) -> dict[str, Any]:
        data = self._events.statistics().to_dict()
        try:
            last = self._configs.get().last_run_at
            data["last_run_at"] = last.isoformat() if last else None
        except ConfigMissing:
            data["last_run_at"] = None
        return _ok(data)

    def status(self) -> dict[str, Any]:
        """Eligibility, config and statistics in one payload."""
        try:
            config = self._configs.get()
        except ConfigMissing:
            return _err("Buyback config not found")

        eligibility = self._executor.check_eligibility(config)
        data: dict[str, Any] = {
            "can_run": eligibility.eligible,
            "reason": eligibility.reason,
            "seconds_until_eligible": eligibility.seconds_until_eligible,
            "busy": self._executor.busy,
            "state": self._executor.state.value,
            "config": config.to_dict(),
            "stats": self._events.statistics().to_dict(),
        }
        if self._funds is not None:
            try:
                data["funds"] = self._funds.compute_spendable().as_dict()
            except LedgerError as exc:
                log.warning(f"Funds unavailable for status: {exc}")
                data["funds"] = None
        return _ok(data)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_config(self, updates: dict[str, Any], auth: Optional[OperatorAuth] = None) -> dict[str, Any]:
        try:
            who = self._authorize("update_config", auth)
        except AuthError as exc:
            return _err(str(exc))
        if not isinstance(updates, dict):
            return _err("Updates must be a mapping of field names to values")
        try:
            config = self._configs.update(updates)
        except ValueError as exc:
            return _err(str(exc))
        except ConfigMissing:
            return _err("Buyback config not found")
        log.info(f"Buyback config updated by {who.public_key}: {sorted(updates)}")
        return _ok(config.to_dict())

    async def run_now(self, auth: Optional[OperatorAuth] = None) -> dict[str, Any]:
        """Manual trigger: skips the interval cooldown but keeps the manual spacing."""
        try:
            who = self._authorize("run_now", auth)
        except AuthError as exc:
            return _err(str(exc))
        log.info(f"Manual buyback triggered by {who.public_key}")
        try:
            result = await self._executor.execute(
                ignore_cooldown=True,
                min_manual_spacing_seconds=self._manual_spacing,
            )
        except BuybackError as exc:
            log.error(f"Manual buyback failed: {exc}")
            return _err(str(exc))
        return {"success": result.success, "data": result.to_dict()}

    def pause(self, auth: Optional[OperatorAuth] = None) -> dict[str, Any]:
        return self._set_active(False, "pause", auth)

    def resume(self, auth: Optional[OperatorAuth] = None) -> dict[str, Any]:
        return self._set_active(True, "resume", auth)

    def _set_active(self, active: bool, operation: str, auth: Optional[OperatorAuth]) -> dict[str, Any]:
        try:
            who = self._authorize(operation, auth)
        except AuthError as exc:
            return _err(str(exc))
        try:
            self._configs.set_active(active)
        except ValueError as exc:
            return _err(str(exc))
        except ConfigMissing:
            return _err("Buyback config not found")
        word = "resumed" if active else "paused"
        log.info(f"Buyback {word} by {who.public_key}")
        return _ok(message=f"Buyback {word}")
