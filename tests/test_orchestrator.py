import unittest
from datetime import datetime, timezone

from dashsync.models import (
    ALL_SOURCES,
    SOURCE_CALENDAR,
    SOURCE_FILES,
    SOURCE_MAIL,
    STATUS_DISCONNECTED,
    TRIGGER_AUTO,
    TRIGGER_DATE_BOUNDARY,
    TRIGGER_MANUAL,
    InvokeResult,
    SyncConfig,
)
from dashsync.notifier import ConnectionsUpdated, EventNotifier, UserSignal
from dashsync.orchestrator import SyncOrchestrator
from dashsync.service_client import ServiceError
from dashsync.sync_queue import DUPLICATE, ENQUEUED, NO_ELIGIBLE_SOURCES, QUEUE_FULL
from tests.fake_services import FakeClock, FakeServices


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.services = FakeServices()
        self.notifier = EventNotifier()
        self.notices: list = []
        self.notifier.subscribe(self.notices.append)
        self.orchestrator = SyncOrchestrator(
            self.services,
            self.notifier,
            config=SyncConfig(),
            clock=self.clock,
        )
        await self.orchestrator.reconcile()
        self.services.calls.clear()

    def phases(self) -> list[tuple[str, str]]:
        return [(n.trigger, n.phase) for n in self.notices if isinstance(n, ConnectionsUpdated)]

    def signals(self) -> list[tuple[str, str]]:
        return [(n.level, n.message) for n in self.notices if isinstance(n, UserSignal)]


class EnqueueTests(OrchestratorTestCase):
    async def test_duplicate_request_within_window_is_dropped(self) -> None:
        first = self.orchestrator.enqueue([SOURCE_CALENDAR], TRIGGER_AUTO)
        second = self.orchestrator.enqueue([SOURCE_CALENDAR], TRIGGER_AUTO)

        self.assertEqual(first.status, ENQUEUED)
        self.assertEqual(second.status, DUPLICATE)
        self.assertEqual(len(self.orchestrator.queue), 1)
        await self.orchestrator.wait_idle()
        self.assertEqual(self.services.synced(), [(SOURCE_CALENDAR, TRIGGER_AUTO)])

    async def test_fourth_request_rejected_when_queue_full(self) -> None:
        for source in ALL_SOURCES:
            self.assertEqual(self.orchestrator.enqueue([source], TRIGGER_MANUAL).status, ENQUEUED)
        before = self.orchestrator.queue.pending()

        result = self.orchestrator.enqueue([SOURCE_MAIL, SOURCE_FILES], TRIGGER_MANUAL)

        self.assertEqual(result.status, QUEUE_FULL)
        self.assertEqual(self.orchestrator.queue.pending(), before)
        self.assertIn(("warning", "Sync queue is full, try again shortly"), self.signals())
        await self.orchestrator.wait_idle()

    async def test_disconnected_sources_are_filtered(self) -> None:
        self.orchestrator.states[SOURCE_MAIL].connection_status = STATUS_DISCONNECTED
        result = self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)

        self.assertEqual(result.request.sources, frozenset({SOURCE_CALENDAR, SOURCE_FILES}))
        await self.orchestrator.wait_idle()

    async def test_no_eligible_sources_warns_only_for_manual(self) -> None:
        for state in self.orchestrator.states.values():
            state.connection_status = STATUS_DISCONNECTED

        auto = self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)
        self.assertEqual(auto.status, NO_ELIGIBLE_SOURCES)
        self.assertEqual(self.signals(), [])

        manual = self.orchestrator.sync_all()
        self.assertEqual(manual.status, NO_ELIGIBLE_SOURCES)
        self.assertEqual(self.signals(), [("warning", "No connected sources to sync")])
        self.assertEqual(len(self.orchestrator.queue), 0)


class ProcessTests(OrchestratorTestCase):
    async def test_auto_without_changes_does_not_regenerate(self) -> None:
        self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)
        await self.orchestrator.wait_idle()

        self.assertNotIn("regenerate_summary", self.services.names())
        self.assertEqual(self.phases(), [(TRIGGER_AUTO, "start"), (TRIGGER_AUTO, "complete")])
        complete = [n for n in self.notices if isinstance(n, ConnectionsUpdated)][-1]
        self.assertFalse(complete.data_changed)
        self.assertFalse(complete.regenerated)

    async def test_manual_without_changes_reports_up_to_date(self) -> None:
        self.orchestrator.sync_all()
        await self.orchestrator.wait_idle()

        self.assertNotIn("regenerate_summary", self.services.names())
        self.assertEqual(self.signals(), [("info", "Already up to date")])

    async def test_forced_manual_regenerates(self) -> None:
        self.orchestrator.sync_all(force=True)
        await self.orchestrator.wait_idle()

        self.assertIn("regenerate_summary", self.services.names())
        self.assertTrue(self.orchestrator.outcomes[-1].regenerated)

    async def test_date_boundary_always_regenerates(self) -> None:
        self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_DATE_BOUNDARY)
        await self.orchestrator.wait_idle()

        self.assertEqual(self.services.names().count("regenerate_summary"), 1)

    async def test_other_source_change_reanalyzes_calendar_first(self) -> None:
        self.services.results[SOURCE_MAIL] = InvokeResult(source=SOURCE_MAIL, ok=True, data_changed=True, items_synced=4)
        self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)
        await self.orchestrator.wait_idle()

        names = self.services.names()
        self.assertLess(names.index("reanalyze_calendar"), names.index("regenerate_summary"))
        self.assertTrue(self.orchestrator.outcomes[-1].data_changed)
        self.assertEqual(self.orchestrator.outcomes[-1].message, "4 item(s) synced; regenerated")

    async def test_calendar_time_change_skips_extra_reanalysis(self) -> None:
        self.services.results[SOURCE_CALENDAR] = InvokeResult(source=SOURCE_CALENDAR, ok=True, time_changed=True)
        self.services.results[SOURCE_MAIL] = InvokeResult(source=SOURCE_MAIL, ok=True, data_changed=True)
        self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)
        await self.orchestrator.wait_idle()

        outcome = self.orchestrator.outcomes[-1]
        self.assertTrue(outcome.calendar_time_changed)
        self.assertNotIn("reanalyze_calendar", self.services.names())
        self.assertIn("regenerate_summary", self.services.names())

    async def test_failing_source_does_not_cancel_siblings(self) -> None:
        self.services.sync_errors[SOURCE_MAIL] = ServiceError("ConnectionError: boom")
        self.services.results[SOURCE_FILES] = InvokeResult(source=SOURCE_FILES, ok=True, data_changed=True)
        self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)
        await self.orchestrator.wait_idle()

        outcome = self.orchestrator.outcomes[-1]
        self.assertEqual(outcome.status, "success")
        self.assertEqual(sorted(source for source, _ in self.services.synced()), sorted(ALL_SOURCES))
        self.assertIn("boom", self.orchestrator.states[SOURCE_MAIL].error)
        self.assertIsNone(self.orchestrator.states[SOURCE_FILES].error)
        self.assertIn("regenerate_summary", self.services.names())

    async def test_syncing_flags_cleared_before_reconciliation(self) -> None:
        self.services.syncing_watch = self.orchestrator.syncing
        self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)
        await self.orchestrator.wait_idle()

        self.assertEqual(self.services.syncing_seen_at_fetch, [set()])
        self.assertFalse(any(state.is_syncing for state in self.orchestrator.states.values()))

    async def test_reconciliation_picks_up_store_state(self) -> None:
        synced_at = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        for source in ALL_SOURCES:
            self.services.last_synced[source] = synced_at
        self.orchestrator.enqueue(ALL_SOURCES, TRIGGER_AUTO)
        await self.orchestrator.wait_idle()

        self.assertEqual(self.orchestrator.states[SOURCE_CALENDAR].last_synced_at, synced_at)
        self.assertEqual(self.orchestrator.last_all_sync_mark, self.clock.now)

    async def test_failed_request_does_not_block_next(self) -> None:
        self.services.fetch_error = ServiceError("store unavailable")
        self.services.fetch_failures_left = 1
        self.orchestrator.enqueue([SOURCE_CALENDAR], TRIGGER_MANUAL)
        self.orchestrator.enqueue([SOURCE_FILES], TRIGGER_MANUAL)
        await self.orchestrator.wait_idle()

        statuses = [outcome.status for outcome in self.orchestrator.outcomes]
        self.assertEqual(statuses, ["error", "success"])
        self.assertEqual(
            self.phases(),
            [
                (TRIGGER_MANUAL, "start"),
                (TRIGGER_MANUAL, "error"),
                (TRIGGER_MANUAL, "start"),
                (TRIGGER_MANUAL, "complete"),
            ],
        )
        self.assertEqual(self.signals()[0], ("error", "Sync failed: store unavailable"))
        self.assertEqual(self.orchestrator.syncing, set())
        self.assertFalse(self.orchestrator.is_processing)

    async def test_requests_are_processed_in_fifo_order(self) -> None:
        self.services.sync_delays[SOURCE_CALENDAR] = 0.02
        self.orchestrator.enqueue([SOURCE_CALENDAR], TRIGGER_AUTO)
        self.orchestrator.enqueue([SOURCE_MAIL], TRIGGER_AUTO)
        await self.orchestrator.wait_idle()

        relevant = [
            (name, args) for name, args in self.services.calls if name in {"trigger_sync", "fetch_connections"}
        ]
        self.assertEqual(
            relevant,
            [
                ("trigger_sync", (SOURCE_CALENDAR, TRIGGER_AUTO)),
                ("fetch_connections", None),
                ("trigger_sync", (SOURCE_MAIL, TRIGGER_AUTO)),
                ("fetch_connections", None),
            ],
        )


class ConnectionEventTests(OrchestratorTestCase):
    async def test_connect_enqueues_connect_sync_and_regenerates(self) -> None:
        self.services.statuses[SOURCE_FILES] = STATUS_DISCONNECTED
        await self.orchestrator.reconcile()
        self.services.statuses[SOURCE_FILES] = "connected"

        result = await self.orchestrator.on_source_connected(SOURCE_FILES)
        await self.orchestrator.wait_idle()

        self.assertEqual(result.status, ENQUEUED)
        self.assertEqual(self.services.synced(), [(SOURCE_FILES, "connect")])
        self.assertIn("regenerate_summary", self.services.names())

    async def test_disconnect_clears_state_and_regenerates(self) -> None:
        self.orchestrator.states[SOURCE_MAIL].last_synced_at = self.clock.now
        self.orchestrator.last_all_sync_mark = self.clock.now
        self.services.statuses[SOURCE_MAIL] = STATUS_DISCONNECTED

        regenerated = await self.orchestrator.on_source_disconnected(SOURCE_MAIL)

        self.assertTrue(regenerated)
        self.assertIsNone(self.orchestrator.states[SOURCE_MAIL].last_synced_at)
        self.assertIsNone(self.orchestrator.last_all_sync_mark)
        self.assertEqual(self.phases(), [("disconnect", "complete")])

    async def test_disconnect_regeneration_failure_is_only_signalled(self) -> None:
        self.services.regenerate_error = ServiceError("rate limited")
        regenerated = await self.orchestrator.on_source_disconnected(SOURCE_CALENDAR)

        self.assertFalse(regenerated)
        self.assertEqual(self.signals(), [("info", "Briefing will be regenerated shortly")])

    async def test_unknown_source_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.orchestrator.sync_source("photos")

    async def test_snapshot_reports_display_strings(self) -> None:
        snapshot = self.orchestrator.snapshot()
        self.assertEqual(snapshot["queue_length"], 0)
        self.assertEqual(snapshot["display"]["calendar"], "Never synced")
        self.assertIsNone(snapshot["last_all_sync"])


if __name__ == "__main__":
    unittest.main()
