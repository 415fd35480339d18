from __future__ import annotations

import logging
import shutil
import subprocess  # nosec B404
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Union

from dashsync.models import ImminentEvent, NotificationsConfig, utc_now, serialize_datetime


logger = logging.getLogger(__name__)

PHASE_START = "start"
PHASE_COMPLETE = "complete"
PHASE_ERROR = "error"

LEVEL_SUCCESS = "success"
LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"


@dataclass
class ConnectionsUpdated:
    sources: list[str]
    trigger: str
    phase: str
    data_changed: bool = False
    regenerated: bool = False
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    kind = "connections_updated"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "sources": list(self.sources),
            "trigger": self.trigger,
            "phase": self.phase,
            "data_changed": self.data_changed,
            "regenerated": self.regenerated,
            "error": self.error,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class ImminentEventNotice:
    event: ImminentEvent
    created_at: datetime = field(default_factory=utc_now)

    kind = "imminent_event"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "event": self.event.to_dict(),
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class UserSignal:
    level: str
    message: str
    created_at: datetime = field(default_factory=utc_now)

    kind = "user_signal"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "level": self.level,
            "message": self.message,
            "created_at": serialize_datetime(self.created_at),
        }


Notice = Union[ConnectionsUpdated, ImminentEventNotice, UserSignal]
Listener = Callable[[Notice], None]


def send_os_notification(title: str, body: str, app_name: str = "dashsync") -> bool:
    binary = shutil.which("notify-send")
    if binary is None:
        return False
    result = subprocess.run(  # nosec B603
        [binary, "--app-name", app_name, title, body],
        capture_output=True,
        text=True,
        timeout=5,
        check=False,
    )
    return result.returncode == 0


class EventNotifier:
    """Publish/subscribe hub for sync state changes.

    ``publish`` never raises: a broken listener or a failed desktop
    notification is logged and dropped so the sync pipeline keeps going.
    """

    def __init__(
        self,
        config: NotificationsConfig | None = None,
        os_notify: Callable[[str, str, str], bool] = send_os_notification,
    ) -> None:
        self.config = config or NotificationsConfig()
        self._os_notify = os_notify
        self._listeners: list[Listener] = []
        self.history: list[Notice] = []
        self.history_limit = 200

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, notice: Notice) -> None:
        self.history.append(notice)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Notification listener failed for %s", notice.kind)

    def connections_updated(
        self,
        *,
        sources: list[str],
        trigger: str,
        phase: str,
        data_changed: bool = False,
        regenerated: bool = False,
        error: str | None = None,
    ) -> None:
        self.publish(
            ConnectionsUpdated(
                sources=sorted(sources),
                trigger=trigger,
                phase=phase,
                data_changed=data_changed,
                regenerated=regenerated,
                error=error,
            )
        )

    def user_signal(self, level: str, message: str) -> None:
        self.publish(UserSignal(level=level, message=message))

    def imminent_event(self, event: ImminentEvent) -> None:
        self.publish(ImminentEventNotice(event=event))
        if not self.config.os_notifications:
            return
        body = f"Starts in {event.minutes_until} min"
        if event.location:
            body = f"{body} at {event.location}"
        try:
            self._os_notify(event.title or "Upcoming event", body, self.config.app_name)
        except Exception:
            logger.warning("Desktop notification failed for event %s", event.event_id, exc_info=True)
