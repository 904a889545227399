"""
burnbot/store/cycle_lease.py

Cross-process single-flight for buyback cycles.

The executor's asyncio.Lock only covers one process. The daemon and a
`burnbot buyback run` from another shell share the SQLite file, so the
cycle also takes a lease row in that file:

    acquire() → True when the row is free, expired, or already ours
    release() → frees the row if we still hold it

The claim is a single UPDATE under SQLite's write lock, so two processes
can never both see it succeed. A holder that dies without releasing
blocks others until expires_at (settings.cycle_lease_seconds).
"""
from __future__ import annotations

import os
import socket
import time
import uuid
from typing import Callable, Optional

from burnbot.store.db import Database
from burnbot.utils.config import settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class CycleLease:
    """
    Args:
        db:     shared Database
        ttl:    lease lifetime in seconds
        holder: identity written to the row (unique per instance by default)
        clock:  wall-clock seconds; tests inject a fake
    """

    def __init__(
        self,
        db: Database,
        ttl: Optional[float] = None,
        holder: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._db = db
        self.ttl = ttl or settings.cycle_lease_seconds
        self.holder = holder or _holder_id()
        self._clock = clock or time.time

    def acquire(self) -> bool:
        now = self._clock()
        with self._db.transaction() as conn:
            conn.execute("INSERT OR IGNORE INTO buyback_lease (id, holder, expires_at) VALUES (1, NULL, 0)")
            cur = conn.execute(
                """
                UPDATE buyback_lease SET holder = ?, expires_at = ?
                WHERE id = 1 AND (holder IS NULL OR holder = ? OR expires_at < ?)
                """,
                (self.holder, now + self.ttl, self.holder, now),
            )
            acquired = cur.rowcount == 1
        if not acquired:
            log.debug(f"Cycle lease held by {self.current_holder()}")
        return acquired

    def release(self) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE buyback_lease SET holder = NULL, expires_at = 0 WHERE id = 1 AND holder = ?",
                (self.holder,),
            )

    def current_holder(self) -> Optional[str]:
        """Holder of an unexpired lease, or None."""
        with self._db.transaction() as conn:
            row = conn.execute("SELECT holder, expires_at FROM buyback_lease WHERE id = 1").fetchone()
        if row is None or row["holder"] is None or row["expires_at"] < self._clock():
            return None
        return row["holder"]

    @property
    def held_elsewhere(self) -> bool:
        holder = self.current_holder()
        return holder is not None and holder != self.holder

    def __repr__(self) -> str:
        return f"CycleLease(holder={self.holder!r}, ttl={self.ttl:.0f}s)"
