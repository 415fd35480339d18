from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from dashsync.models import SyncRequest, utc_now


ENQUEUED = "enqueued"
NO_ELIGIBLE_SOURCES = "no_eligible_sources"
QUEUE_FULL = "queue_full"
DUPLICATE = "duplicate"


@dataclass
class EnqueueResult:
    status: str
    request: SyncRequest | None = None

    @property
    def accepted(self) -> bool:
        return self.status == ENQUEUED


def _new_request_id(now: datetime) -> str:
    return f"{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"


class RequestQueue:
    """Bounded FIFO of pending sync requests.

    Requests are identified for deduplication by their sorted source set, not
    by id. The request being processed has already been popped, so it neither
    counts toward capacity nor suppresses a later identical request.
    """

    def __init__(
        self,
        *,
        max_length: int = 3,
        dedup_window: timedelta = timedelta(seconds=2),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_length = max(1, int(max_length))
        self.dedup_window = dedup_window
        self._clock = clock
        self._items: deque[SyncRequest] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def pending(self) -> list[SyncRequest]:
        return list(self._items)

    def offer(
        self,
        sources: Iterable[str],
        trigger: str,
        *,
        connected: Iterable[str],
        force: bool = False,
    ) -> EnqueueResult:
        eligible = frozenset(sources) & frozenset(connected)
        if not eligible:
            return EnqueueResult(NO_ELIGIBLE_SOURCES)
        if len(self._items) >= self.max_length:
            return EnqueueResult(QUEUE_FULL)

        now = self._clock()
        key = tuple(sorted(eligible))
        for queued in self._items:
            if queued.dedup_key == key and now - queued.enqueued_at < self.dedup_window:
                return EnqueueResult(DUPLICATE)

        request = SyncRequest(
            id=_new_request_id(now),
            sources=eligible,
            trigger=trigger,
            enqueued_at=now,
            force=force,
        )
        self._items.append(request)
        return EnqueueResult(ENQUEUED, request)

    def pop(self) -> SyncRequest | None:
        if not self._items:
            return None
        return self._items.popleft()

    def clear(self) -> None:
        self._items.clear()
