"""
burnbot/store/db.py

SQLite storage shared by ConfigStore and EventStore.

One connection per Database, guarded by a re-entrant lock: the executor
reads and writes from worker threads (asyncio.to_thread) while the CLI and
operator service read from the main thread.

Tables:
    buyback_config  single row, id = 1
    buyback_events  append-only, purchase_tx UNIQUE (NULLs allowed)
    buyback_lease   single row, cross-process cycle lease (see cycle_lease.py)
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from burnbot.utils.config import settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS buyback_config (
    id                     INTEGER PRIMARY KEY CHECK (id = 1),
    token_mint             TEXT    NOT NULL DEFAULT '',
    curve_mint             TEXT,
    execution_mode         TEXT    NOT NULL DEFAULT 'bonding-curve',
    max_spend_per_interval REAL    NOT NULL DEFAULT 0.1,
    interval_seconds       INTEGER NOT NULL DEFAULT 3600,
    slippage_bps           INTEGER NOT NULL DEFAULT 500,
    is_active              INTEGER NOT NULL DEFAULT 0,
    dry_run                INTEGER NOT NULL DEFAULT 1,
    last_run_at            TEXT,
    updated_at             TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS buyback_events (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp      TEXT    NOT NULL,
    sol_spent      INTEGER NOT NULL DEFAULT 0,
    units_acquired INTEGER NOT NULL DEFAULT 0,
    token_mint     TEXT    NOT NULL DEFAULT '',
    purchase_tx    TEXT UNIQUE,
    burn_tx        TEXT,
    status         TEXT    NOT NULL,
    error_message  TEXT,
    burn_error     TEXT,
    execution_mode TEXT    NOT NULL DEFAULT '',
    simulated      INTEGER NOT NULL DEFAULT 0,
    quote_payload  TEXT,
    swap_payload   TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_timestamp ON buyback_events(timestamp);
CREATE INDEX IF NOT EXISTS idx_events_status ON buyback_events(status);

CREATE TABLE IF NOT EXISTS buyback_lease (
    id         INTEGER PRIMARY KEY CHECK (id = 1),
    holder     TEXT,
    expires_at REAL    NOT NULL DEFAULT 0
);
"""


class Database:
    """
    Thread-safe SQLite handle.

    Args:
        path: database file, or ":memory:" for tests.
              Defaults to settings.database_path.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = str(path or settings.database_path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            self._conn.commit()
        log.info(f"Database ready at {self.path} (schema v{SCHEMA_VERSION})")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialised access; commits on success, rolls back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __repr__(self) -> str:
        return f"Database(path={self.path!r})"
