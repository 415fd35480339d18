from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from dashsync.models import AppConfig, utc_now
from dashsync.notifier import EventNotifier
from dashsync.orchestrator import Services, SyncOrchestrator
from dashsync.scheduler import SyncScheduler
from dashsync.service_client import AsyncServiceClient, ServiceClient
from dashsync.state_store import StateStore


logger = logging.getLogger(__name__)


class SyncSession:
    """Everything that must outlive a single view of the dashboard.

    The syncing set and the notified-event ids live here rather than in any
    request handler, so navigating around the UI never loses them.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        state_store: StateStore | None = None,
        services: Services | None = None,
        notifier: EventNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.syncing: set[str] = set()
        self.notified_event_ids: set[str] = set()
        self.notifier = notifier or EventNotifier(config.notifications)
        self.services = services or AsyncServiceClient(ServiceClient(config.services))
        self.state_store = state_store
        self.orchestrator = SyncOrchestrator(
            self.services,
            self.notifier,
            config=config.sync,
            state_store=state_store,
            syncing=self.syncing,
            clock=clock,
        )
        self.scheduler = SyncScheduler(
            self.orchestrator,
            self.notifier,
            config=config.sync,
            state_store=state_store,
            notified_event_ids=self.notified_event_ids,
            clock=clock,
        )
        self.started = False

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        try:
            await self.orchestrator.refresh_connections()
        except Exception as exc:
            # Stay idle until a connect notification or a manual refresh succeeds.
            logger.warning("Initial connection fetch failed: %s", exc)
        self.scheduler.start()

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        await self.scheduler.stop()
        await self.orchestrator.stop()
        close = getattr(self.services, "close", None)
        if callable(close):
            close()
