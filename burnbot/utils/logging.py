"""
burnbot.utils.logging
---------------------
Logging for the bot and the CLI, built on stdlib logging.

Handlers on the "burnbot" logger:

  console       rich.logging.RichHandler, level from settings.log_level
  app.log       every record, JSON lines, rotating
  buybacks.log  one JSON line per finished cycle (records from log_buyback)

Each record carries a ``cycle`` field. Inside ``cycle_context()`` it is the
id of the running buyback cycle, so every line a cycle produces (including
lines logged from worker threads) can be grouped; elsewhere it is "-".

Usage:
    from burnbot.utils.logging import get_logger, log_buyback

    log = get_logger(__name__)
    log.info("Spend computed: %d lamports", spend)
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from rich.logging import RichHandler

from burnbot.utils.config import LAMPORTS_PER_SOL, settings

_configured = False

_cycle_id: contextvars.ContextVar[str] = contextvars.ContextVar("burnbot_cycle", default="-")

# Chatty third-party loggers
_QUIET = ("urllib3", "httpx", "httpcore", "apscheduler", "solana")

# LogRecord attributes that are not user-supplied extras
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "taskName",
}


@contextmanager
def cycle_context(cycle_id: str | None = None) -> Iterator[str]:
    """Tag every record logged inside the block with *cycle_id*."""
    cid = cycle_id or uuid.uuid4().hex[:8]
    token = _cycle_id.set(cid)
    try:
        yield cid
    finally:
        _cycle_id.reset(token)


def current_cycle() -> str:
    return _cycle_id.get()


class _CycleFilter(logging.Filter):
    """Stamp the current cycle id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "cycle"):
            record.cycle = _cycle_id.get()
        return True


class _BuybackFilter(logging.Filter):
    """Pass only records that carry buyback_event=True."""

    def filter(self, record: logging.LogRecord) -> bool:
        return bool(getattr(record, "buyback_event", False))


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, UTC timestamps, extras merged in."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload = {
            "time": ts.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "cycle": getattr(record, "cycle", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        for key, val in record.__dict__.items():
            if key not in _STANDARD_ATTRS and key not in payload:
                payload[key] = val
        return json.dumps(payload, default=str)


def setup_logging(log_dir: Path | None = None, level: str | None = None) -> None:
    """Attach handlers to the "burnbot" logger. Idempotent."""
    global _configured
    if _configured:
        return

    _log_dir = log_dir or settings.log_dir
    _level = level or settings.log_level
    _log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("burnbot")
    root.setLevel(logging.DEBUG)
    cycle_filter = _CycleFilter()

    console = RichHandler(rich_tracebacks=True, show_path=False, log_time_format="%H:%M:%S")
    console.setLevel(getattr(logging, _level, logging.INFO))
    console.addFilter(cycle_filter)
    root.addHandler(console)

    app_log = logging.handlers.RotatingFileHandler(
        _log_dir / "app.log", maxBytes=20 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    app_log.setLevel(logging.DEBUG)
    app_log.setFormatter(_JsonFormatter())
    app_log.addFilter(cycle_filter)
    root.addHandler(app_log)

    # Cycle outcomes are the audit trail, so keep more of them
    outcomes = logging.handlers.RotatingFileHandler(
        _log_dir / "buybacks.log", maxBytes=5 * 1024 * 1024, backupCount=20, encoding="utf-8"
    )
    outcomes.setLevel(logging.INFO)
    outcomes.setFormatter(_JsonFormatter())
    outcomes.addFilter(cycle_filter)
    outcomes.addFilter(_BuybackFilter())
    root.addHandler(outcomes)

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    root.debug("Logging initialised", extra={"log_dir": str(_log_dir), "level": _level})


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under burnbot.*name*."""
    setup_logging()
    if name == "burnbot" or name.startswith("burnbot."):
        return logging.getLogger(name)
    return logging.getLogger(f"burnbot.{name}")


def log_buyback(
    *,
    outcome: str,
    mode: str,
    mint: str,
    lamports: int,
    units: int = 0,
    purchase_tx: str | None = None,
    **kwargs,
) -> None:
    """Write one finished cycle to buybacks.log (and app.log / console)."""
    setup_logging()
    logging.getLogger("burnbot.buybacks").info(
        "%s via %s: %.6f SOL -> %d units of %s (tx %s)",
        outcome, mode, lamports / LAMPORTS_PER_SOL, units, mint, purchase_tx or "-",
        extra={
            "buyback_event": True,
            "outcome": outcome,
            "mode": mode,
            "mint": mint,
            "lamports": lamports,
            "units": units,
            "purchase_tx": purchase_tx,
            **kwargs,
        },
    )
