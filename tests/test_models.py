import unittest
from datetime import datetime, timezone

from dashsync.models import (
    AppConfig,
    CalendarEvent,
    ImminentEvent,
    ServicesConfig,
    SyncConfig,
    normalize_source,
    parse_iso_datetime,
)


class ModelsTests(unittest.TestCase):
    def test_sync_config_interval_must_divide_the_hour(self) -> None:
        self.assertEqual(SyncConfig.from_dict({"interval_minutes": 15}).interval_minutes, 15)
        self.assertEqual(SyncConfig.from_dict({"interval_minutes": 7}).interval_minutes, 10)
        self.assertEqual(SyncConfig.from_dict({"interval_minutes": 0}).interval_minutes, 10)

    def test_sync_config_bounds(self) -> None:
        cfg = SyncConfig.from_dict(
            {"max_queue_length": 0, "dedup_window_seconds": -1, "imminent_threshold_minutes": 5000}
        )
        self.assertEqual(cfg.max_queue_length, 1)
        self.assertEqual(cfg.dedup_window_seconds, 0.0)
        self.assertEqual(cfg.imminent_threshold_minutes, 1440)

    def test_services_sync_paths_normalized(self) -> None:
        cfg = ServicesConfig.from_dict(
            {"base_url": " http://hub.local ", "sync_paths": {"MAIL": "custom/mail", "unknown": "/x", "files": ""}}
        )
        self.assertEqual(cfg.base_url, "http://hub.local")
        self.assertEqual(cfg.sync_paths["mail"], "/custom/mail")
        self.assertEqual(cfg.sync_paths["files"], "/api/integrations/drive/sync")
        self.assertNotIn("unknown", cfg.sync_paths)

    def test_app_config_round_trip_through_dict(self) -> None:
        cfg = AppConfig.from_dict({"notifications": {"os_notifications": True, "app_name": " "}})
        self.assertTrue(cfg.notifications.os_notifications)
        self.assertEqual(cfg.notifications.app_name, "dashsync")
        self.assertEqual(AppConfig.from_dict(cfg.to_dict()), cfg)

    def test_normalize_source(self) -> None:
        self.assertEqual(normalize_source(" Calendar "), "calendar")
        with self.assertRaises(ValueError):
            normalize_source("gmail")

    def test_parse_iso_datetime_assumes_utc(self) -> None:
        self.assertEqual(parse_iso_datetime("2026-03-02T09:00:00Z"), datetime(2026, 3, 2, 9, tzinfo=timezone.utc))
        self.assertEqual(parse_iso_datetime("2026-03-02T09:00:00"), datetime(2026, 3, 2, 9, tzinfo=timezone.utc))
        self.assertIsNone(parse_iso_datetime(" "))
        with self.assertRaises(ValueError):
            parse_iso_datetime(5)

    def test_calendar_event_from_dict(self) -> None:
        event = CalendarEvent.from_dict(
            {
                "event_id": "e1",
                "title": "Sync",
                "start_time": "2026-03-02T09:00:00Z",
                "end_time": "2026-03-02T09:30:00+00:00",
                "attendees": [{"email": "a"}, {"email": "b"}],
                "status": "CANCELLED",
            }
        )
        self.assertEqual(event.id, "e1")
        self.assertEqual(event.attendee_count, 2)
        self.assertEqual(event.status, "cancelled")
        self.assertEqual(event.to_dict()["end_time"], "2026-03-02T09:30:00+00:00")

    def test_imminent_event_computes_minutes_when_missing(self) -> None:
        now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        event = ImminentEvent.from_dict({"id": "e2", "title": "Call", "start_time": "2026-03-02T09:24:00Z"}, now=now)
        self.assertEqual(event.event_id, "e2")
        self.assertEqual(event.minutes_until, 24)


if __name__ == "__main__":
    unittest.main()
