"""
burnbot.store.status_board
--------------------------
Redis-backed status board.

The executor publishes the outcome of every cycle here so dashboards and
other processes can watch the bot without touching SQLite. Redis is
optional: when it is unreachable the board runs in no-op mode and every
write returns False.

Keys (namespaced under 'burnbot:'):
    buyback.last_result   last BuybackResult as a dict
    buyback.last_run_at   ISO timestamp of the last recorded cycle
    buyback.funds         last SpendableFunds snapshot (SOL)
"""

from __future__ import annotations

import json
from typing import Any, Optional

import redis

from burnbot.utils.config import settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)

_NS = "burnbot:"


def _key(name: str) -> str:
    return f"{_NS}{name}"


class StatusBoard:
    """
    Usage:
        board = StatusBoard().connect()
        board.update("buyback.last_result", result.to_dict())
        board.get("buyback.last_result")
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self._url = url or settings.redis_url
        self._client: Optional[redis.Redis] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def connect(self) -> "StatusBoard":
        """Open the Redis connection. Safe to call multiple times."""
        if self._client is not None:
            return self
        self._client = redis.Redis.from_url(
            self._url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        try:
            self._client.ping()
            log.info(f"StatusBoard connected to Redis at {self._url}")
        except redis.RedisError as exc:
            log.warning(f"Redis not available: {exc}. Running in no-op mode.")
            self._client = None
        return self

    def disconnect(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            log.info("StatusBoard disconnected from Redis")

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        try:
            self._client.ping()
            return True
        except redis.RedisError:
            return False

    # ------------------------------------------------------------------
    # Core interface
    # ------------------------------------------------------------------

    def update(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Write *value* (JSON-serialised) under *key*.

        Returns:
            True on success, False if Redis is unavailable.
        """
        if self._client is None:
            log.debug(f"StatusBoard.update({key!r}) skipped, no Redis connection")
            return False
        try:
            serialised = json.dumps(value, default=str)
            if ttl is not None:
                self._client.setex(_key(key), ttl, serialised)
            else:
                self._client.set(_key(key), serialised)
            return True
        except (redis.RedisError, TypeError) as exc:
            log.error(f"StatusBoard.update({key!r}) failed: {exc}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        if self._client is None:
            return default
        try:
            raw = self._client.get(_key(key))
            if raw is None:
                return default
            return json.loads(raw)
        except (redis.RedisError, json.JSONDecodeError) as exc:
            log.error(f"StatusBoard.get({key!r}) failed: {exc}")
            return default

    def publish_result(self, result: dict[str, Any], funds: Optional[dict[str, Any]] = None) -> bool:
        """Publish a cycle outcome (and the funds snapshot it ran against)."""
        ok = self.update("buyback.last_result", result)
        if result.get("recorded_at"):
            self.update("buyback.last_run_at", result["recorded_at"])
        if funds is not None:
            self.update("buyback.funds", funds)
        return ok

    def __repr__(self) -> str:
        state = "connected" if self._client is not None else "no-op"
        return f"StatusBoard(url={self._url!r}, {state})"
