"""
burnbot/store/event_store.py

Append-only log of buyback cycles.

A purchase signature can be recorded at most once: inserting an event
whose purchase_tx already exists is a no-op that returns the stored
record, so a retried write never double-counts in statistics.

Statistics and the pandas export only read; nothing here ever updates or
deletes a row.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import pandas as pd

from burnbot.store.db import Database
from burnbot.utils.config import LAMPORTS_PER_SOL
from burnbot.utils.logging import get_logger

log = get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

_COLUMNS = (
    "timestamp", "sol_spent", "units_acquired", "token_mint", "purchase_tx",
    "burn_tx", "status", "error_message", "burn_error", "execution_mode",
    "simulated", "quote_payload", "swap_payload",
)


@dataclass
class BuybackEvent:
    """
    One recorded cycle.

    sol_spent is stored in lamports; use .sol for the SOL amount.
    """

    status: str
    token_mint: str = ""
    sol_spent: int = 0
    units_acquired: int = 0
    purchase_tx: Optional[str] = None
    burn_tx: Optional[str] = None
    error_message: Optional[str] = None
    burn_error: Optional[str] = None
    execution_mode: str = ""
    simulated: bool = False
    quote_payload: Optional[dict[str, Any]] = field(default=None, repr=False)
    swap_payload: Optional[dict[str, Any]] = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.status not in (STATUS_SUCCESS, STATUS_FAILED):
            raise ValueError(f"status must be 'success' or 'failed', got {self.status!r}")
        if self.sol_spent < 0 or self.units_acquired < 0:
            raise ValueError("sol_spent and units_acquired must be non-negative")

    @property
    def sol(self) -> float:
        return self.sol_spent / LAMPORTS_PER_SOL

    @property
    def burned(self) -> bool:
        return self.burn_tx is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["sol"] = self.sol
        return data


@dataclass(frozen=True)
class BuybackStats:
    total_events: int
    successful: int
    failed: int
    simulated: int
    total_sol_spent: float
    total_units_acquired: int
    total_units_burned: int
    pending_burns: int
    last_event_at: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _row_to_event(row) -> BuybackEvent:
    ts = datetime.fromisoformat(row["timestamp"])
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return BuybackEvent(
        id=row["id"],
        timestamp=ts,
        sol_spent=int(row["sol_spent"]),
        units_acquired=int(row["units_acquired"]),
        token_mint=row["token_mint"],
        purchase_tx=row["purchase_tx"],
        burn_tx=row["burn_tx"],
        status=row["status"],
        error_message=row["error_message"],
        burn_error=row["burn_error"],
        execution_mode=row["execution_mode"],
        simulated=bool(row["simulated"]),
        quote_payload=json.loads(row["quote_payload"]) if row["quote_payload"] else None,
        swap_payload=json.loads(row["swap_payload"]) if row["swap_payload"] else None,
    )


class EventStore:
    """
    SQLite-backed BuybackEvent log.

    Args:
        db: shared Database handle
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def record(self, event: BuybackEvent) -> BuybackEvent:
        """
        Persist *event*. Returns the stored record with its id.

        Idempotent on purchase_tx: a duplicate reference returns the
        existing row unchanged.
        """
        values = (
            event.timestamp.isoformat(),
            event.sol_spent,
            event.units_acquired,
            event.token_mint,
            event.purchase_tx,
            event.burn_tx,
            event.status,
            event.error_message,
            event.burn_error,
            event.execution_mode,
            int(event.simulated),
            json.dumps(event.quote_payload, default=str) if event.quote_payload is not None else None,
            json.dumps(event.swap_payload, default=str) if event.swap_payload is not None else None,
        )
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._db.transaction() as conn:
            cur = conn.execute(
                f"INSERT OR IGNORE INTO buyback_events ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
            if cur.rowcount == 0 and event.purchase_tx is not None:
                row = conn.execute(
                    "SELECT * FROM buyback_events WHERE purchase_tx = ?", (event.purchase_tx,)
                ).fetchone()
                log.warning(f"Duplicate purchase {event.purchase_tx} ignored (event #{row['id']})")
                return _row_to_event(row)
            row = conn.execute(
                "SELECT * FROM buyback_events WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        stored = _row_to_event(row)
        log.debug(f"Recorded buyback event #{stored.id}: {stored.status}")
        return stored

    def recent(self, limit: int = 50) -> list[BuybackEvent]:
        """Newest events first."""
        limit = max(1, int(limit))
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM buyback_events ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_by_purchase(self, purchase_tx: str) -> Optional[BuybackEvent]:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM buyback_events WHERE purchase_tx = ?", (purchase_tx,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def statistics(self) -> BuybackStats:
        """Aggregate counts and totals. Simulated cycles never count as spend."""
        with self._db.transaction() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*)                                                     AS total,
                    COALESCE(SUM(status = 'success'), 0)                         AS ok,
                    COALESCE(SUM(status = 'failed'), 0)                          AS failed,
                    COALESCE(SUM(simulated), 0)                                  AS simulated,
                    COALESCE(SUM(CASE WHEN status = 'success' AND simulated = 0
                                      THEN sol_spent END), 0)                    AS spent,
                    COALESCE(SUM(CASE WHEN status = 'success' AND simulated = 0
                                      THEN units_acquired END), 0)               AS acquired,
                    COALESCE(SUM(CASE WHEN burn_tx IS NOT NULL
                                      THEN units_acquired END), 0)               AS burned,
                    COALESCE(SUM(status = 'success' AND simulated = 0
                                 AND purchase_tx IS NOT NULL AND burn_tx IS NULL), 0) AS pending,
                    MAX(timestamp)                                               AS last_at
                FROM buyback_events
                """
            ).fetchone()
        return BuybackStats(
            total_events=int(row["total"]),
            successful=int(row["ok"]),
            failed=int(row["failed"]),
            simulated=int(row["simulated"]),
            total_sol_spent=int(row["spent"]) / LAMPORTS_PER_SOL,
            total_units_acquired=int(row["acquired"]),
            total_units_burned=int(row["burned"]),
            pending_burns=int(row["pending"]),
            last_event_at=row["last_at"],
        )

    def to_frame(self, limit: Optional[int] = None) -> pd.DataFrame:
        """
        Events as a DataFrame indexed by UTC timestamp, oldest first.
        Audit payload columns are dropped.
        """
        events = self.recent(limit) if limit else self._all()
        columns = ["id", *[c for c in _COLUMNS if c not in ("quote_payload", "swap_payload")]]
        if not events:
            return pd.DataFrame(columns=columns).set_index("timestamp")
        df = pd.DataFrame([{c: getattr(e, c) for c in columns} for e in events])
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        df["sol"] = df["sol_spent"] / LAMPORTS_PER_SOL
        return df.set_index("timestamp").sort_index()

    def _all(self) -> list[BuybackEvent]:
        with self._db.transaction() as conn:
            rows = conn.execute("SELECT * FROM buyback_events ORDER BY timestamp, id").fetchall()
        return [_row_to_event(r) for r in rows]
