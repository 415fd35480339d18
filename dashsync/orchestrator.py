from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Protocol

from dashsync.display import display_strings, last_all_sync
from dashsync.models import (
    ALL_SOURCES,
    SOURCE_CALENDAR,
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    TRIGGER_CONNECT,
    TRIGGER_DATE_BOUNDARY,
    TRIGGER_DISCONNECT,
    TRIGGER_MANUAL,
    ImminentEvent,
    InvokeResult,
    SourceState,
    SyncConfig,
    SyncOutcome,
    SyncRequest,
    normalize_source,
    serialize_datetime,
    utc_now,
)
from dashsync.notifier import (
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_SUCCESS,
    LEVEL_WARNING,
    PHASE_COMPLETE,
    PHASE_ERROR,
    PHASE_START,
    EventNotifier,
)
from dashsync.state_store import StateStore
from dashsync.sync_queue import DUPLICATE, NO_ELIGIBLE_SOURCES, QUEUE_FULL, EnqueueResult, RequestQueue


logger = logging.getLogger(__name__)

ALWAYS_REGENERATE = {TRIGGER_DATE_BOUNDARY, TRIGGER_CONNECT}


class Services(Protocol):
    async def fetch_connections(self) -> dict[str, SourceState]: ...

    async def trigger_sync(self, source: str, trigger: str) -> InvokeResult: ...

    async def query_imminent(self, threshold_minutes: int) -> ImminentEvent | None: ...

    async def regenerate_summary(self) -> Any: ...

    async def reanalyze_calendar(self) -> Any: ...


def needs_regeneration(request: SyncRequest, any_data_changed: bool, any_time_changed: bool) -> bool:
    if request.trigger in ALWAYS_REGENERATE:
        return True
    if request.trigger == TRIGGER_MANUAL and request.force:
        return True
    return any_data_changed or any_time_changed


class SyncOrchestrator:
    """Serial drain of sync requests with parallel per-source fan-out.

    Only this object writes per-source state and the syncing set. The
    scheduler and the web layer read ``states`` and call ``enqueue``.
    """

    def __init__(
        self,
        services: Services,
        notifier: EventNotifier,
        *,
        config: SyncConfig | None = None,
        state_store: StateStore | None = None,
        syncing: set[str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or SyncConfig()
        self.services = services
        self.notifier = notifier
        self.state_store = state_store
        self.clock = clock
        self.syncing = syncing if syncing is not None else set()
        self.states: dict[str, SourceState] = {source: SourceState() for source in ALL_SOURCES}
        self.queue = RequestQueue(
            max_length=self.config.max_queue_length,
            dedup_window=timedelta(seconds=self.config.dedup_window_seconds),
            clock=clock,
        )
        self.is_processing = False
        self.last_all_sync_mark: datetime | None = None
        self.next_auto_sync_at: datetime | None = None
        self.outcomes: list[SyncOutcome] = []
        self._drain_task: asyncio.Task[None] | None = None
        self._connection_listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def connected_sources(self) -> list[str]:
        return [source for source in ALL_SOURCES if self.states[source].connected]

    def is_connected(self, source: str) -> bool:
        return self.states[source].connected

    def add_connection_listener(self, callback: Callable[[], None]) -> None:
        self._connection_listeners.append(callback)

    def snapshot(self) -> dict[str, Any]:
        now = self.clock()
        return {
            "sources": {source: self.states[source].to_dict() for source in ALL_SOURCES},
            "syncing": sorted(self.syncing),
            "queue_length": len(self.queue),
            "is_processing": self.is_processing,
            "last_all_sync": serialize_datetime(last_all_sync(self.states, self.last_all_sync_mark)),
            "next_auto_sync_at": serialize_datetime(self.next_auto_sync_at),
            "display": display_strings(self.states, now, self.last_all_sync_mark),
        }

    # ------------------------------------------------------------------
    # Queue entry points
    # ------------------------------------------------------------------

    def enqueue(self, sources: Iterable[str], trigger: str, *, force: bool = False) -> EnqueueResult:
        result = self.queue.offer(
            sources,
            trigger,
            connected=self.connected_sources(),
            force=force,
        )
        if result.status == NO_ELIGIBLE_SOURCES:
            logger.info("Sync request (%s) skipped: no connected sources", trigger)
            if trigger == TRIGGER_MANUAL:
                self.notifier.user_signal(LEVEL_WARNING, "No connected sources to sync")
        elif result.status == QUEUE_FULL:
            logger.warning("Sync request (%s) rejected: queue full (%d)", trigger, len(self.queue))
            if trigger == TRIGGER_MANUAL:
                self.notifier.user_signal(LEVEL_WARNING, "Sync queue is full, try again shortly")
        elif result.status == DUPLICATE:
            logger.debug("Sync request (%s) dropped as duplicate", trigger)
        else:
            logger.info("Queued sync %s for %s (%s)", result.request.id, ",".join(result.request.dedup_key), trigger)
            self._signal_drain()
        return result

    def sync_all(self, *, force: bool = False) -> EnqueueResult:
        return self.enqueue(ALL_SOURCES, TRIGGER_MANUAL, force=force)

    def sync_source(self, source: str, *, force: bool = False) -> EnqueueResult:
        return self.enqueue([normalize_source(source)], TRIGGER_MANUAL, force=force)

    def sync_calendar(self, *, force: bool = False) -> EnqueueResult:
        return self.enqueue([SOURCE_CALENDAR], TRIGGER_MANUAL, force=force)

    def _signal_drain(self) -> None:
        if self.is_processing:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.get_running_loop().create_task(self.drain())

    async def wait_idle(self) -> None:
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def stop(self) -> None:
        # Pending requests are dropped; the one in flight runs to completion.
        self.queue.clear()
        await self.wait_idle()

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        if self.is_processing:
            return
        self.is_processing = True
        try:
            while True:
                request = self.queue.pop()
                if request is None:
                    break
                try:
                    await self.process(request)
                except Exception:
                    # process() reports its own failures; this only guards the loop itself.
                    logger.exception("Sync request %s escaped error handling", request.id)
        finally:
            self.is_processing = False

    async def process(self, request: SyncRequest) -> SyncOutcome:
        sources = list(request.dedup_key)
        started_at = self.clock()
        run_id = self._start_run(request)
        outcome = SyncOutcome(
            request_id=request.id,
            sources=sources,
            trigger=request.trigger,
            status="error",
            message="",
            run_at=started_at,
        )
        try:
            for source in sources:
                self.syncing.add(source)
                self.states[source].is_syncing = True
            self.notifier.connections_updated(sources=sources, trigger=request.trigger, phase=PHASE_START)

            results = await asyncio.gather(*(self._invoke(source, request.trigger) for source in sources))
            outcome.results = list(results)
            outcome.data_changed = any(result.data_changed for result in results)
            outcome.time_changed = any(result.time_changed for result in results)
            outcome.calendar_time_changed = any(
                result.time_changed for result in results if result.source == SOURCE_CALENDAR
            )

            # The syncing flags must be down before the re-read so reconciled state is "not syncing".
            self._clear_syncing(sources)
            await self.reconcile(invoke_errors={result.source: result.error for result in results})

            succeeded = {result.source for result in results if result.ok}
            connected = set(self.connected_sources())
            if succeeded and connected and connected <= succeeded:
                self.last_all_sync_mark = self.clock()

            if needs_regeneration(request, outcome.data_changed, outcome.time_changed):
                outcome.regenerated = await self._regenerate(results, outcome.calendar_time_changed)

            outcome.status = "success"
            outcome.message = self._summarize(results, outcome)
            self.notifier.connections_updated(
                sources=sources,
                trigger=request.trigger,
                phase=PHASE_COMPLETE,
                data_changed=outcome.data_changed,
                regenerated=outcome.regenerated,
            )
            if request.trigger == TRIGGER_MANUAL:
                self._signal_manual_result(results, outcome)
        except Exception as exc:
            self._clear_syncing(sources)
            reason = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync request %s failed", request.id)
            outcome.status = "error"
            outcome.message = reason
            self.notifier.connections_updated(
                sources=sources,
                trigger=request.trigger,
                phase=PHASE_ERROR,
                data_changed=outcome.data_changed,
                error=reason,
            )
            if request.trigger == TRIGGER_MANUAL:
                self.notifier.user_signal(LEVEL_ERROR, f"Sync failed: {exc}")
        finally:
            outcome.duration_ms = int((self.clock() - started_at).total_seconds() * 1000)
            self._finish_run(run_id, outcome)
            self.outcomes.append(outcome)
            del self.outcomes[:-50]
        return outcome

    async def _invoke(self, source: str, trigger: str) -> InvokeResult:
        try:
            return await self.services.trigger_sync(source, trigger)
        except Exception as exc:
            logger.warning("Sync of %s failed: %s", source, exc)
            return InvokeResult(source=source, ok=False, error=f"{type(exc).__name__}: {exc}")

    def _clear_syncing(self, sources: Iterable[str]) -> None:
        for source in sources:
            self.syncing.discard(source)
            self.states[source].is_syncing = False

    async def _regenerate(self, results: list[InvokeResult], calendar_time_changed: bool) -> bool:
        others_changed = any(
            result.data_changed or result.time_changed
            for result in results
            if result.source != SOURCE_CALENDAR
        )
        try:
            if self.is_connected(SOURCE_CALENDAR) and not calendar_time_changed and others_changed:
                # Conflict data must match the summary that is about to be rebuilt.
                await self.services.reanalyze_calendar()
            await self.services.regenerate_summary()
        except Exception as exc:
            logger.warning("Regeneration after sync failed: %s", exc)
            self._audit(SOURCE_CALENDAR, "regeneration_failed", {"error": f"{type(exc).__name__}: {exc}"})
            return False
        return True

    def _summarize(self, results: list[InvokeResult], outcome: SyncOutcome) -> str:
        failed = sorted(result.source for result in results if not result.ok)
        items = sum(result.items_synced for result in results)
        parts = [f"{items} item(s) synced"]
        if failed:
            parts.append(f"failed: {', '.join(failed)}")
        if outcome.regenerated:
            parts.append("regenerated")
        return "; ".join(parts)

    def _signal_manual_result(self, results: list[InvokeResult], outcome: SyncOutcome) -> None:
        failed = sorted(result.source for result in results if not result.ok)
        if failed:
            self.notifier.user_signal(LEVEL_WARNING, f"Sync finished with errors: {', '.join(failed)}")
        elif outcome.data_changed or outcome.time_changed:
            self.notifier.user_signal(LEVEL_SUCCESS, "Sync complete")
        else:
            self.notifier.user_signal(LEVEL_INFO, "Already up to date")

    # ------------------------------------------------------------------
    # Connection state
    # ------------------------------------------------------------------

    async def reconcile(self, invoke_errors: dict[str, str | None] | None = None) -> None:
        fresh = await self.services.fetch_connections()
        invoke_errors = invoke_errors or {}
        for source in ALL_SOURCES:
            incoming = fresh.get(source, SourceState())
            state = self.states[source]
            state.connection_status = incoming.connection_status
            state.last_synced_at = incoming.last_synced_at
            state.error = incoming.error or invoke_errors.get(source)
            state.is_syncing = source in self.syncing
        self._connections_changed()

    async def refresh_connections(self) -> None:
        await self.reconcile()

    async def on_source_connected(self, source: str) -> EnqueueResult:
        source = normalize_source(source)
        self.states[source].connection_status = STATUS_CONNECTED
        self.states[source].error = None
        try:
            await self.reconcile()
        except Exception as exc:
            logger.warning("Could not confirm %s connection: %s", source, exc)
            self._connections_changed()
        return self.enqueue([source], TRIGGER_CONNECT)

    async def on_source_disconnected(self, source: str) -> bool:
        source = normalize_source(source)
        state = self.states[source]
        state.connection_status = STATUS_DISCONNECTED
        state.last_synced_at = None
        state.error = None
        state.is_syncing = source in self.syncing
        # A full-sync mark that included this source no longer describes the connected set.
        self.last_all_sync_mark = None
        try:
            await self.reconcile()
        except Exception as exc:
            logger.warning("Could not refresh connections after %s disconnect: %s", source, exc)
            self._connections_changed()

        regenerated = True
        try:
            await self.services.regenerate_summary()
        except Exception as exc:
            regenerated = False
            logger.warning("Summary regeneration after %s disconnect failed: %s", source, exc)
            self.notifier.user_signal(LEVEL_INFO, "Briefing will be regenerated shortly")

        self.notifier.connections_updated(
            sources=[source],
            trigger=TRIGGER_DISCONNECT,
            phase=PHASE_COMPLETE,
            data_changed=True,
            regenerated=regenerated,
        )
        return regenerated

    def _connections_changed(self) -> None:
        for callback in list(self._connection_listeners):
            try:
                callback()
            except Exception:
                logger.exception("Connection listener failed")

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _start_run(self, request: SyncRequest) -> int | None:
        if self.state_store is None:
            return None
        try:
            return self.state_store.start_sync_run(
                request_id=request.id,
                trigger=request.trigger,
                sources=request.sources,
            )
        except Exception:
            logger.exception("Could not record start of sync %s", request.id)
            return None

    def _finish_run(self, run_id: int | None, outcome: SyncOutcome) -> None:
        if self.state_store is None or run_id is None:
            return
        try:
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=outcome.status,
                message=outcome.message,
                duration_ms=outcome.duration_ms,
                data_changed=outcome.data_changed,
                regenerated=outcome.regenerated,
            )
            for result in outcome.results:
                if result.error:
                    self.state_store.record_audit_event(
                        source=result.source,
                        action="source_sync_failed",
                        details={"trigger": outcome.trigger, "error": result.error},
                        run_id=run_id,
                    )
        except Exception:
            logger.exception("Could not record result of sync %s", outcome.request_id)

    def _audit(self, source: str, action: str, details: dict[str, Any]) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.record_audit_event(source=source, action=action, details=details)
        except Exception:
            logger.exception("Could not record audit event %s", action)

