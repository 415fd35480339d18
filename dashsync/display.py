from __future__ import annotations

from datetime import datetime, timezone
from typing import Mapping

from dashsync.models import ALL_SOURCES, STATUS_DISCONNECTED, STATUS_ERROR, SourceState


def format_time_ago(value: datetime | None, now: datetime) -> str:
    if value is None:
        return "Never synced"
    minutes = int((now - value).total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return value.astimezone(timezone.utc).date().isoformat()


def source_display(state: SourceState, now: datetime) -> str:
    if state.connection_status == STATUS_DISCONNECTED:
        return "Not connected"
    if state.connection_status == STATUS_ERROR:
        return "Error"
    return format_time_ago(state.last_synced_at, now)


def last_all_sync(states: Mapping[str, SourceState], explicit_mark: datetime | None = None) -> datetime | None:
    """When every currently connected source was last synced together.

    That is the oldest sync time among connected sources, unless a full sync
    recorded a newer mark since.
    """
    connected = [state for state in states.values() if state.connected]
    if not connected or any(state.last_synced_at is None for state in connected):
        return None
    oldest = min(state.last_synced_at for state in connected)
    if explicit_mark is not None and explicit_mark > oldest:
        return explicit_mark
    return oldest


def display_strings(
    states: Mapping[str, SourceState],
    now: datetime,
    explicit_mark: datetime | None = None,
) -> dict[str, str]:
    strings = {"global": format_time_ago(last_all_sync(states, explicit_mark), now)}
    for source in ALL_SOURCES:
        strings[source] = source_display(states.get(source, SourceState()), now)
    return strings
