from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from dashsync.models import CalendarEvent, ConflictRecord


KIND_HARD_OVERLAP = "hard_overlap"
KIND_BACK_TO_BACK = "back_to_back"
KIND_INSUFFICIENT_BUFFER = "insufficient_buffer"
KIND_TRAVEL_CONFLICT = "travel_conflict"

SEVERITY_CRITICAL = "critical"
SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"
SEVERITY_LOW = "low"

SCAN_HORIZON = timedelta(hours=1)
CRITICAL_OVERLAP = timedelta(minutes=30)
BUFFER_MIN = timedelta(minutes=15)
TRAVEL_MIN = timedelta(minutes=30)

ONLINE_MARKERS = ("http", "zoom", "meet.google", "teams")
# "meet" alone is enough to rule out a physical address.
NON_PHYSICAL_MARKERS = ("http", "zoom", "meet", "teams")


@dataclass
class _Slot:
    event: CalendarEvent
    start: datetime
    end: datetime
    is_online: bool
    is_physical: bool


def classify_location(location: str | None) -> str:
    """Return ``online``, ``physical`` or ``""`` for an event location."""
    text = str(location or "").strip()
    if not text:
        return ""
    lowered = text.lower()
    if any(marker in lowered for marker in ONLINE_MARKERS):
        return "online"
    if any(marker in lowered for marker in NON_PHYSICAL_MARKERS):
        return ""
    return "physical"


def _minutes(delta: timedelta) -> int:
    return round(delta.total_seconds() / 60)


def _prepare(events: Iterable[CalendarEvent]) -> list[_Slot]:
    slots: list[_Slot] = []
    for event in events:
        if str(event.status or "").lower() == "cancelled":
            continue
        if event.start_time is None or event.end_time is None:
            continue
        start = event.start_time.astimezone(timezone.utc)
        end = event.end_time.astimezone(timezone.utc)
        if end <= start:
            continue
        kind = classify_location(event.location)
        slots.append(
            _Slot(
                event=event,
                start=start,
                end=end,
                is_online=kind == "online",
                is_physical=kind == "physical",
            )
        )
    # Ties on start are broken by end and id so input order never changes the output.
    slots.sort(key=lambda slot: (slot.start, slot.end, slot.event.id))
    return slots


def _classify_pair(a: _Slot, b: _Slot) -> ConflictRecord | None:
    title_a = a.event.title
    title_b = b.event.title
    if b.start < a.end:
        overlap = min(a.end, b.end) - b.start
        return ConflictRecord(
            anchor_event_id=a.event.id,
            related_event_ids=[b.event.id],
            kind=KIND_HARD_OVERLAP,
            severity=SEVERITY_CRITICAL if overlap > CRITICAL_OVERLAP else SEVERITY_HIGH,
            explanation=f'"{title_a}" overlaps with "{title_b}" by {_minutes(overlap)} minutes',
        )
    gap = b.start - a.end
    if gap == timedelta(0):
        return ConflictRecord(
            anchor_event_id=a.event.id,
            related_event_ids=[b.event.id],
            kind=KIND_BACK_TO_BACK,
            severity=SEVERITY_MEDIUM,
            explanation=f'"{title_a}" ends exactly when "{title_b}" starts - no recovery time',
        )
    if gap < BUFFER_MIN:
        return ConflictRecord(
            anchor_event_id=a.event.id,
            related_event_ids=[b.event.id],
            kind=KIND_INSUFFICIENT_BUFFER,
            severity=SEVERITY_LOW,
            explanation=(
                f'Only {_minutes(gap)}min between "{title_a}" and "{title_b}" - recommend 15min buffer'
            ),
        )
    if a.is_physical and b.is_physical and gap < TRAVEL_MIN and a.event.location != b.event.location:
        return ConflictRecord(
            anchor_event_id=a.event.id,
            related_event_ids=[b.event.id],
            kind=KIND_TRAVEL_CONFLICT,
            severity=SEVERITY_HIGH,
            explanation=(
                f'Only {_minutes(gap)}min to travel from "{a.event.location}" to "{b.event.location}"'
            ),
        )
    return None


def detect_conflicts(
    events: Iterable[CalendarEvent],
) -> tuple[dict[str, list[str]], list[ConflictRecord]]:
    """Classify scheduling problems between nearby events.

    Returns ``(conflict_map, records)``. ``conflict_map`` only holds hard
    overlaps, recorded against both events, and drives ``has_conflict``
    flags. ``records`` lists every classified pair in sweep order.
    """
    slots = _prepare(events)
    conflict_map: dict[str, list[str]] = {}
    records: list[ConflictRecord] = []

    for index, a in enumerate(slots):
        horizon = a.end + SCAN_HORIZON
        for b in slots[index + 1 :]:
            if b.start > horizon:
                break
            record = _classify_pair(a, b)
            if record is None:
                continue
            records.append(record)
            if record.kind == KIND_HARD_OVERLAP:
                conflict_map.setdefault(a.event.id, []).append(b.event.id)
                conflict_map.setdefault(b.event.id, []).append(a.event.id)

    return conflict_map, records


def hard_overlap_event_count(records: Iterable[ConflictRecord]) -> int:
    involved: set[str] = set()
    for record in records:
        if record.kind != KIND_HARD_OVERLAP:
            continue
        involved.add(record.anchor_event_id)
        involved.update(record.related_event_ids)
    return len(involved)


def meeting_stats(events: Iterable[CalendarEvent]) -> dict[str, Any]:
    # Weekdays are UTC indices (0 = Monday) so the result never depends on locale.
    active = [
        event
        for event in events
        if str(event.status or "").lower() != "cancelled"
        and event.start_time is not None
        and event.end_time is not None
    ]
    minutes_by_weekday: dict[int, float] = {}
    total_minutes = 0.0
    long_count = early_count = late_count = one_on_one_count = large_count = 0
    for event in active:
        start = event.start_time.astimezone(timezone.utc)
        end = event.end_time.astimezone(timezone.utc)
        duration = (end - start).total_seconds() / 60
        total_minutes += duration
        weekday = start.weekday()
        minutes_by_weekday[weekday] = minutes_by_weekday.get(weekday, 0.0) + duration
        if duration > 60:
            long_count += 1
        if start.hour < 9:
            early_count += 1
        if end.hour > 18:
            late_count += 1
        if event.attendee_count in (1, 2):
            one_on_one_count += 1
        if event.attendee_count > 5:
            large_count += 1

    heaviest_weekday: int | None = None
    if minutes_by_weekday:
        heaviest_weekday = min(minutes_by_weekday, key=lambda day: (-minutes_by_weekday[day], day))

    return {
        "total_events": len(active),
        "total_hours": round(total_minutes / 60, 1),
        "avg_meeting_minutes": round(total_minutes / max(len(active), 1)),
        "minutes_by_weekday": dict(sorted(minutes_by_weekday.items())),
        "long_meetings_count": long_count,
        "early_meetings_count": early_count,
        "late_meetings_count": late_count,
        "one_on_ones_count": one_on_one_count,
        "large_group_meetings_count": large_count,
        "heaviest_weekday": heaviest_weekday,
    }
