"""burnbot persistence: SQLite config, event log and cycle lease, Redis status board."""

from burnbot.store.config_store import UPDATABLE_FIELDS, BuybackConfig, ConfigStore
from burnbot.store.cycle_lease import CycleLease
from burnbot.store.db import Database
from burnbot.store.event_store import BuybackEvent, BuybackStats, EventStore
from burnbot.store.status_board import StatusBoard

__all__ = [
    "Database",
    "BuybackConfig",
    "ConfigStore",
    "CycleLease",
    "UPDATABLE_FIELDS",
    "BuybackEvent",
    "BuybackStats",
    "EventStore",
    "StatusBoard",
]
