"""
burnbot/scheduler.py

Drives BuybackExecutor on a timer. One loop per process, chosen by the
configured execution mode:

    bonding-curve → fast loop, every fast_interval_seconds (10s)
    aggregator    → calendar loop, cron expression (hourly at :00)

The executor enforces the real cooldown; the loops only decide how often
to ask. Every invocation is guarded so no exception ends the loop.

Usage:
    handle = start_scheduler(executor, config_store)
    ...
    await stop_scheduler(handle, grace_seconds=30)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from burnbot.execution.executor import (
    BUSY,
    CONFIG_MISSING,
    FAILED,
    SKIPPED,
    BuybackExecutor,
)
from burnbot.store.config_store import ConfigStore
from burnbot.utils.config import AGGREGATOR, BONDING_CURVE, EXECUTION_MODES, settings
from burnbot.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class SchedulerHandle:
    """Running scheduler loop. Returned by start_scheduler()."""

    mode: str
    stop_event: asyncio.Event
    task: Optional[asyncio.Task] = None
    in_cycle: bool = False
    cycles: int = 0

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def __repr__(self) -> str:
        return f"SchedulerHandle(mode={self.mode!r}, running={self.running}, cycles={self.cycles})"


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------

def start_scheduler(
    executor: BuybackExecutor,
    config_store: ConfigStore,
    mode: Optional[str] = None,
    fast_interval: Optional[float] = None,
    cron: Optional[str] = None,
) -> SchedulerHandle:
    """
    Start the loop for *mode* (defaults to the stored execution_mode).
    Must be called from inside a running event loop.

    Raises:
        ConfigMissing: mode not given and no config exists
        ValueError:    unknown mode or invalid cron expression
    """
    mode = mode or config_store.get().execution_mode
    if mode not in EXECUTION_MODES:
        raise ValueError(f"Unknown execution mode {mode!r}")

    handle = SchedulerHandle(mode=mode, stop_event=asyncio.Event())
    if mode == BONDING_CURVE:
        interval = fast_interval or settings.fast_interval_seconds
        coro = _fast_loop(handle, executor, interval)
        log.info(f"Scheduler started: fast loop every {interval:.0f}s ({mode})")
    else:
        expr = cron or settings.calendar_cron
        trigger = CronTrigger.from_crontab(expr, timezone="UTC")
        coro = _calendar_loop(handle, executor, trigger)
        log.info(f"Scheduler started: cron '{expr}' UTC ({AGGREGATOR})")

    handle.task = asyncio.create_task(coro, name=f"burnbot-scheduler-{mode}")
    return handle


async def stop_scheduler(handle: SchedulerHandle, grace_seconds: Optional[float] = None) -> None:
    """
    Stop firing new cycles, give an in-flight cycle up to *grace_seconds*
    to finish, then cancel it.
    """
    grace = settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
    handle.stop_event.set()
    task = handle.task
    if task is None or task.done():
        log.info("Scheduler stopped")
        return

    if handle.in_cycle:
        log.info(f"Waiting up to {grace:.0f}s for in-flight buyback cycle")
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=grace)
    except asyncio.TimeoutError:
        log.warning("Grace period elapsed, cancelling in-flight cycle")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    log.info(f"Scheduler stopped after {handle.cycles} cycles")


# ------------------------------------------------------------------
# Loops
# ------------------------------------------------------------------

async def _wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to *timeout*. True if the stop event fired."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, timeout))
        return True
    except asyncio.TimeoutError:
        return False


async def _guarded_cycle(handle: SchedulerHandle, executor: BuybackExecutor) -> None:
    handle.in_cycle = True
    handle.cycles += 1
    try:
        result = await executor.execute()
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        log.error(f"Scheduled buyback raised: {exc}", exc_info=True)
        return
    finally:
        handle.in_cycle = False

    if result.outcome in (SKIPPED, BUSY):
        log.debug(f"Scheduled buyback skipped: {result.message}")
    elif result.outcome in (FAILED, CONFIG_MISSING):
        log.warning(f"Scheduled buyback {result.outcome}: {result.error or result.message}")
    else:
        log.info(f"Scheduled buyback {result.outcome}: {result.message}")


async def _fast_loop(handle: SchedulerHandle, executor: BuybackExecutor, interval: float) -> None:
    while not handle.stop_event.is_set():
        await _guarded_cycle(handle, executor)
        if await _wait_or_stop(handle.stop_event, interval):
            break


async def _calendar_loop(handle: SchedulerHandle, executor: BuybackExecutor, trigger: CronTrigger) -> None:
    while not handle.stop_event.is_set():
        now = datetime.now(timezone.utc)
        next_fire = trigger.get_next_fire_time(None, now)
        if next_fire is None:
            log.error("Cron trigger has no future fire time, calendar loop exiting")
            return
        delay = (next_fire - now).total_seconds()
        log.debug(f"Next scheduled buyback at {next_fire.isoformat()} ({delay:.0f}s)")
        if await _wait_or_stop(handle.stop_event, delay):
            break
        await _guarded_cycle(handle, executor)
