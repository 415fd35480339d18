from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from dashsync.models import CalendarEvent, utc_date


URGENT_WINDOW = timedelta(hours=24)
REANALYSIS_WINDOW_START = timedelta(minutes=20)
REANALYSIS_WINDOW_END = timedelta(minutes=30)


@dataclass
class ChangeDetection:
    data_changed: bool
    time_changed: bool
    reason: str


def detect_time_change(
    *,
    now: datetime,
    last_synced_at: datetime | None,
    events: Iterable[CalendarEvent],
    inserted: int = 0,
    updated: int = 0,
    deleted: int = 0,
) -> ChangeDetection:
    """Decide whether calendar-derived analysis must be recomputed.

    Checks run in order and the first hit wins: UTC day rollover since the
    last sync, an event that ended since the last sync, an event that newly
    entered the 24-hour window, and an event starting 20-30 minutes from now.
    The re-analysis window is exclusive at its start so a ten-minute cadence
    hits each event exactly once.
    """
    now = now.astimezone(timezone.utc)
    data_changed = inserted > 0 or updated > 0 or deleted > 0
    active = [
        event
        for event in events
        if event.start_time is not None and event.end_time is not None and event.status != "cancelled"
    ]

    if last_synced_at is not None:
        last = last_synced_at.astimezone(timezone.utc)
        if utc_date(now) > utc_date(last):
            return ChangeDetection(data_changed, True, "Date boundary crossed - new calendar day in UTC")

        ended = sum(1 for event in active if last < event.end_time <= now)
        if ended:
            return ChangeDetection(data_changed, True, f"{ended} event(s) have ended since last sync")

        was_threshold = last + URGENT_WINDOW
        now_threshold = now + URGENT_WINDOW
        urgent = sum(1 for event in active if was_threshold < event.start_time <= now_threshold)
        if urgent:
            return ChangeDetection(
                data_changed, True, f"{urgent} event(s) newly entered 24-hour urgent window"
            )

    window_start = now + REANALYSIS_WINDOW_START
    window_end = now + REANALYSIS_WINDOW_END
    imminent = sum(1 for event in active if window_start < event.start_time <= window_end)
    if imminent:
        return ChangeDetection(
            data_changed, True, f"{imminent} event(s) starting in 20-30 minutes - pre-event regeneration"
        )

    if data_changed:
        reason = f"{inserted} inserted, {updated} updated, {deleted} deleted"
    else:
        reason = "No changes detected"
    return ChangeDetection(data_changed, False, reason)
