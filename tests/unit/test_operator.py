"""
tests/unit/test_operator.py

Operator signature verification and the OperatorService facade.
"""
from __future__ import annotations

import asyncio
import time

import pytest
from solders.keypair import Keypair

from conftest import MINT
from burnbot.errors import AuthError
from burnbot.execution.executor import EXECUTED, SKIPPED
from burnbot.ledger.funds import FundLedger
from burnbot.service.auth import LOCAL_OPERATOR, OperatorAuth, sign_request, verify_operator
from burnbot.service.operator import ROUTES, OperatorService
from burnbot.store.config_store import ConfigStore
from burnbot.store.db import Database


@pytest.fixture
def operator_key() -> Keypair:
    return Keypair()


# ---------------------------------------------------------------------------
# verify_operator
# ---------------------------------------------------------------------------

class TestVerifyOperator:

    def test_valid_signature(self, operator_key):
        auth = sign_request(operator_key, "POST", "/buyback/run")
        who = verify_operator(auth, allowed_wallets=[str(operator_key.pubkey())], require_auth=True)
        assert who.public_key == str(operator_key.pubkey())
        assert who.local is False

    def test_message_format(self, operator_key):
        auth = sign_request(operator_key, "patch", "/buyback/config", timestamp_ms=1_700_000_000_000)
        assert auth.message == "PATCH:/buyback/config:1700000000000"

    def test_tampered_path_rejected(self, operator_key):
        auth = sign_request(operator_key, "POST", "/buyback/run")
        forged = OperatorAuth(auth.signature, auth.public_key, auth.timestamp_ms, "POST", "/buyback/pause")
        with pytest.raises(AuthError, match="Invalid signature"):
            verify_operator(forged, allowed_wallets=[], require_auth=True)

    def test_expired_timestamp(self, operator_key):
        old = int(time.time() * 1000) - 10 * 60 * 1000
        auth = sign_request(operator_key, "POST", "/buyback/run", timestamp_ms=old)
        with pytest.raises(AuthError, match="expired"):
            verify_operator(auth, allowed_wallets=[], require_auth=True, max_skew_seconds=300)

    def test_unlisted_wallet(self, operator_key):
        auth = sign_request(operator_key, "POST", "/buyback/run")
        with pytest.raises(AuthError, match="not authorized"):
            verify_operator(auth, allowed_wallets=[str(Keypair().pubkey())], require_auth=True)

    def test_empty_allow_list_accepts_any_valid_signer(self, operator_key):
        auth = sign_request(operator_key, "POST", "/buyback/run")
        assert verify_operator(auth, allowed_wallets=[], require_auth=True).public_key == auth.public_key

    def test_malformed_credentials(self):
        auth = OperatorAuth("not-a-signature", "not-a-key", int(time.time() * 1000), "POST", "/buyback/run")
        with pytest.raises(AuthError, match="format"):
            verify_operator(auth, allowed_wallets=[], require_auth=True)

    def test_missing_credentials(self):
        assert verify_operator(None, require_auth=False) is LOCAL_OPERATOR
        with pytest.raises(AuthError, match="Missing"):
            verify_operator(None, require_auth=True)


# ---------------------------------------------------------------------------
# OperatorService
# ---------------------------------------------------------------------------

@pytest.fixture
def service(executor, config_store, event_store, operator_key) -> OperatorService:
    return OperatorService(
        executor,
        config_store,
        event_store,
        require_auth=True,
        allowed_wallets=[str(operator_key.pubkey())],
        manual_spacing=0,
    )


def _signed(key: Keypair, operation: str) -> OperatorAuth:
    method, path = ROUTES[operation]
    return sign_request(key, method, path)


class TestOperatorService:

    def test_reads_are_open(self, service):
        config = service.get_config()
        assert config["success"] is True
        assert config["data"]["execution_mode"] == "bonding-curve"

        events = service.events()
        assert events == {"success": True, "data": [], "count": 0}

        stats = service.stats()
        assert stats["data"]["total_events"] == 0
        assert stats["data"]["last_run_at"] is None

    def test_update_requires_credentials(self, service):
        result = service.update_config({"slippage_bps": 300})
        assert result["success"] is False
        assert "Missing" in result["error"]

    def test_update_config(self, service, operator_key, config_store):
        result = service.update_config({"slippage_bps": 300}, auth=_signed(operator_key, "update_config"))
        assert result["success"] is True
        assert result["data"]["slippage_bps"] == 300
        assert config_store.get().slippage_bps == 300

    def test_update_rejects_unknown_fields(self, service, operator_key):
        result = service.update_config({"vault_reserve": 1}, auth=_signed(operator_key, "update_config"))
        assert result == {"success": False, "error": "Invalid fields: vault_reserve"}

    def test_credentials_bound_to_route(self, service, operator_key):
        result = service.update_config({"slippage_bps": 300}, auth=_signed(operator_key, "pause"))
        assert result["success"] is False
        assert "signed for POST /buyback/pause" in result["error"]

    def test_pause_and_resume(self, service, operator_key, config_store):
        config_store.update({"token_mint": MINT, "is_active": True})

        paused = service.pause(auth=_signed(operator_key, "pause"))
        assert paused == {"success": True, "message": "Buyback paused"}
        assert config_store.get().is_active is False

        resumed = service.resume(auth=_signed(operator_key, "resume"))
        assert resumed["success"] is True
        assert config_store.get().is_active is True

    def test_resume_without_mint_fails(self, service, operator_key):
        result = service.resume(auth=_signed(operator_key, "resume"))
        assert result["success"] is False
        assert "mint" in result["error"]

    def test_run_now(self, service, operator_key, live_config, event_store):
        result = asyncio.run(service.run_now(auth=_signed(operator_key, "run_now")))
        assert result["success"] is True
        assert result["data"]["outcome"] == EXECUTED
        assert len(event_store.recent()) == 1
        assert service.events()["count"] == 1

    def test_run_now_inactive_is_unsuccessful(self, service, operator_key):
        result = asyncio.run(service.run_now(auth=_signed(operator_key, "run_now")))
        assert result["success"] is False
        assert result["data"]["outcome"] == SKIPPED

    def test_status(self, executor, config_store, event_store, ledger, live_config):
        service = OperatorService(
            executor, config_store, event_store, fund_ledger=FundLedger(ledger), require_auth=False,
        )
        status = service.status()
        assert status["success"] is True
        data = status["data"]
        assert data["can_run"] is True
        assert data["busy"] is False
        assert data["state"] == "idle"
        assert data["funds"]["total_available"] == pytest.approx(1.50910912)

    def test_status_without_config(self, executor, event_store):
        empty = Database(":memory:")
        try:
            service = OperatorService(executor, ConfigStore(empty), event_store, require_auth=False)
            assert service.status() == {"success": False, "error": "Buyback config not found"}
            assert service.get_config()["success"] is False
        finally:
            empty.close()
