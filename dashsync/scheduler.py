from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable

from dashsync.models import (
    ALL_SOURCES,
    SOURCE_CALENDAR,
    TRIGGER_AUTO,
    TRIGGER_DATE_BOUNDARY,
    ImminentEvent,
    SyncConfig,
    utc_date,
    utc_now,
)
from dashsync.notifier import EventNotifier
from dashsync.orchestrator import SyncOrchestrator
from dashsync.state_store import StateStore
from dashsync.sync_queue import EnqueueResult


logger = logging.getLogger(__name__)

LAST_TICK_DATE_KEY = "scheduler.last_tick_date"


def next_tick_at(now: datetime, interval_minutes: int = 10) -> datetime:
    """Next wall-clock boundary of ``interval_minutes`` counted from the top of the hour.

    Always strictly after ``now``, so a tick that fires exactly on a boundary
    arms the following one.
    """
    step = timedelta(minutes=interval_minutes)
    top_of_hour = now.replace(minute=0, second=0, microsecond=0)
    elapsed = now - top_of_hour
    return top_of_hour + (elapsed // step + 1) * step


def seconds_until_next_tick(now: datetime, interval_minutes: int = 10) -> float:
    return (next_tick_at(now, interval_minutes) - now).total_seconds()


class SyncScheduler:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        notifier: EventNotifier,
        *,
        config: SyncConfig | None = None,
        state_store: StateStore | None = None,
        notified_event_ids: set[str] | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.config = config or SyncConfig()
        self.state_store = state_store
        self.notified_event_ids = notified_event_ids if notified_event_ids is not None else set()
        self.clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.last_tick_date: date | None = None
        orchestrator.add_connection_listener(self.refresh)

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.last_tick_date is None:
            self.last_tick_date = self._load_last_tick_date() or utc_date(self.clock())
        self.refresh()

    async def stop(self) -> None:
        self._running = False
        await self._disarm()

    def refresh(self) -> None:
        """Arm the timer when any source is connected; otherwise stay idle."""
        if not self._running:
            return
        wanted = self.config.auto_sync_enabled and bool(self.orchestrator.connected_sources())
        if wanted and not self.armed:
            self._task = asyncio.get_running_loop().create_task(self._loop())
        elif not wanted and self.armed:
            self._task.cancel()
            self._task = None
            self.orchestrator.next_auto_sync_at = None

    async def _disarm(self) -> None:
        task = self._task
        self._task = None
        self.orchestrator.next_auto_sync_at = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            now = self.clock()
            target = next_tick_at(now, self.config.interval_minutes)
            self.orchestrator.next_auto_sync_at = target
            await self._sleep((target - now).total_seconds())
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")

    async def tick(self) -> EnqueueResult:
        now = self.clock()
        today = utc_date(now)
        previous = self.last_tick_date

        if previous is not None and previous != today:
            logger.info("UTC date changed %s -> %s, syncing all sources", previous, today)
            result = self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_DATE_BOUNDARY)
            # The old date stays until the boundary sync is queued, so the next tick elevates again.
            if result.accepted:
                self._record_tick_date(today)
            else:
                logger.warning("Date boundary sync not queued (%s), retrying next tick", result.status)
        else:
            self._record_tick_date(today)
            result = self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)

        try:
            await self.poll_imminent()
        except Exception as exc:
            logger.warning("Imminent event poll failed: %s", exc)
            self._audit("imminent_poll_failed", {"error": f"{type(exc).__name__}: {exc}"})
        return result

    async def poll_imminent(self) -> ImminentEvent | None:
        if not self.orchestrator.is_connected(SOURCE_CALENDAR):
            return None
        event = await self.orchestrator.services.query_imminent(self.config.imminent_threshold_minutes)
        if event is None or not event.event_id:
            return None
        if event.event_id in self.notified_event_ids:
            return None
        self.notified_event_ids.add(event.event_id)
        logger.info("Imminent event %s in %d min", event.event_id, event.minutes_until)
        self.notifier.imminent_event(event)
        self._audit("imminent_event_announced", event.to_dict())
        return event

    def _load_last_tick_date(self) -> date | None:
        if self.state_store is None:
            return None
        try:
            value = self.state_store.get_meta(LAST_TICK_DATE_KEY)
            return date.fromisoformat(value) if value else None
        except Exception:
            logger.warning("Ignoring unreadable last tick date", exc_info=True)
            return None

    def _record_tick_date(self, value: date) -> None:
        self.last_tick_date = value
        if self.state_store is None:
            return
        try:
            self.state_store.set_meta(LAST_TICK_DATE_KEY, value.isoformat())
        except Exception:
            logger.exception("Could not persist last tick date")

    def _audit(self, action: str, details: dict) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.record_audit_event(source=SOURCE_CALENDAR, action=action, details=details)
        except Exception:
            logger.exception("Could not record audit event %s", action)
