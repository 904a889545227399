"""
burnbot/store/config_store.py

The BuybackConfig singleton. The ONLY module that reads or writes the
buyback_config row.

Reads return a frozen snapshot, so one cycle always works against a
consistent view even if an operator edits the config mid-cycle.

Mutations:
    update(updates)    operator edits, allow-listed and validated
    set_active(flag)   pause / resume
    mark_run(when)     executor advances last_run_at
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from burnbot.errors import ConfigMissing
from burnbot.ledger.funds import sol_to_lamports
from burnbot.store.db import Database
from burnbot.utils.config import BONDING_CURVE, EXECUTION_MODES
from burnbot.utils.logging import get_logger

log = get_logger(__name__)

UPDATABLE_FIELDS = (
    "token_mint",
    "curve_mint",
    "max_spend_per_interval",
    "interval_seconds",
    "slippage_bps",
    "is_active",
    "dry_run",
    "execution_mode",
)

_BOOL_FIELDS = ("is_active", "dry_run")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


@dataclass(frozen=True)
class BuybackConfig:
    """Immutable snapshot of the buyback_config row."""

    token_mint: str = ""
    curve_mint: Optional[str] = None
    execution_mode: str = BONDING_CURVE
    max_spend_per_interval: float = 0.1       # SOL
    interval_seconds: int = 3600
    slippage_bps: int = 500
    is_active: bool = False
    dry_run: bool = True
    last_run_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def target_mint(self) -> str:
        """Mint bought in the configured mode. Bonding-curve falls back to token_mint."""
        if self.execution_mode == BONDING_CURVE:
            return self.curve_mint or self.token_mint
        return self.token_mint

    @property
    def max_spend_lamports(self) -> int:
        return sol_to_lamports(self.max_spend_per_interval)

    def seconds_since_last_run(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.last_run_at is None:
            return None
        return ((now or _now()) - self.last_run_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("last_run_at", "updated_at"):
            data[key] = data[key].isoformat() if data[key] else None
        data["target_mint"] = self.target_mint
        return data


def validate_updates(updates: dict[str, Any]) -> dict[str, Any]:
    """
    Check field names against the allow-list and coerce values.

    Returns:
        Normalised copy of *updates*.

    Raises:
        ValueError: unknown fields (named in the message) or bad values.
    """
    unknown = sorted(k for k in updates if k not in UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Invalid fields: {', '.join(unknown)}")

    clean: dict[str, Any] = {}
    for key, value in updates.items():
        try:
            if key in _BOOL_FIELDS:
                clean[key] = _to_bool(value)
            elif key == "max_spend_per_interval":
                clean[key] = float(value)
                if clean[key] <= 0:
                    raise ValueError("must be positive")
            elif key == "interval_seconds":
                clean[key] = int(value)
                if clean[key] <= 0:
                    raise ValueError("must be positive")
            elif key == "slippage_bps":
                clean[key] = int(value)
                if not 0 < clean[key] <= 10_000:
                    raise ValueError("must be between 1 and 10000")
            elif key == "execution_mode":
                if value not in EXECUTION_MODES:
                    raise ValueError(f"must be one of {', '.join(EXECUTION_MODES)}")
                clean[key] = value
            elif key == "curve_mint":
                clean[key] = (str(value).strip() or None) if value is not None else None
            else:
                clean[key] = str(value).strip()
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for {key}: {exc}") from exc
    return clean


class ConfigStore:
    """
    SQLite-backed BuybackConfig singleton.

    Args:
        db: shared Database handle
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @property
    def db(self) -> Database:
        return self._db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self) -> BuybackConfig:
        """
        Current config snapshot.

        Raises:
            ConfigMissing: no config row exists yet.
        """
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM buyback_config WHERE id = 1").fetchone()
        if row is None:
            raise ConfigMissing("Buyback config not found")
        return BuybackConfig(
            token_mint=row["token_mint"],
            curve_mint=row["curve_mint"],
            execution_mode=row["execution_mode"],
            max_spend_per_interval=float(row["max_spend_per_interval"]),
            interval_seconds=int(row["interval_seconds"]),
            slippage_bps=int(row["slippage_bps"]),
            is_active=bool(row["is_active"]),
            dry_run=bool(row["dry_run"]),
            last_run_at=_parse_ts(row["last_run_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def ensure_default(self, token_mint: str = "") -> BuybackConfig:
        """Create the config row with conservative defaults if it does not exist."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO buyback_config (id, token_mint, updated_at) VALUES (1, ?, ?)",
                (token_mint, _now().isoformat()),
            )
            if cur.rowcount:
                log.info("Created default buyback config (inactive, dry-run)")
        return self.get()

    def update(self, updates: dict[str, Any]) -> BuybackConfig:
        """
        Apply allow-listed operator edits.

        Raises:
            ValueError:    unknown field or invalid value
            ConfigMissing: no config row exists
        """
        clean = validate_updates(updates)
        current = self.get()
        if not clean:
            return current

        merged = BuybackConfig(**{**asdict(current), **clean})
        if merged.is_active and not merged.target_mint:
            raise ValueError(f"A target mint is required to activate {merged.execution_mode} mode")

        assignments = ", ".join(f"{k} = ?" for k in clean)
        values = [int(v) if k in _BOOL_FIELDS else v for k, v in clean.items()]
        with self._db.transaction() as conn:
            conn.execute(
                f"UPDATE buyback_config SET {assignments}, updated_at = ? WHERE id = 1",
                (*values, _now().isoformat()),
            )
        log.info(f"Buyback config updated: {clean}")
        return self.get()

    def set_active(self, active: bool) -> BuybackConfig:
        return self.update({"is_active": active})

    def mark_run(self, when: Optional[datetime] = None) -> None:
        """Advance last_run_at (defaults to now)."""
        ts = (when or _now()).isoformat()
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE buyback_config SET last_run_at = ?, updated_at = ? WHERE id = 1",
                (ts, ts),
            )
        if not cur.rowcount:
            raise ConfigMissing("Buyback config not found")
        log.debug(f"last_run_at advanced to {ts}")
