from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable


JOB_COMPLETED = "completed"
JOB_RUNNING = "running"
JOB_FAILED = "failed"

WAIT_COMPLETED = "completed"
WAIT_STILL_RUNNING = "still_running"
WAIT_FAILED = "failed"


@dataclass
class WaitResult:
    state: str
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.state == WAIT_COMPLETED


async def wait_for_completion(
    check_status: Callable[[], Awaitable[tuple[str, str | None]]],
    *,
    timeout: float = 120.0,
    interval: float = 0.5,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> WaitResult:
    """Poll ``check_status`` until a background job finishes or ``timeout`` elapses.

    ``check_status`` returns ``(status, error)`` where status is one of
    ``completed``, ``running`` or ``failed``. A timeout is not a failure: the
    job keeps running in the background and the caller gets ``still_running``.
    """
    deadline = clock() + max(0.0, timeout)
    while True:
        status, error = await check_status()
        if status == JOB_COMPLETED:
            return WaitResult(state=WAIT_COMPLETED)
        if status == JOB_FAILED:
            return WaitResult(state=WAIT_FAILED, error=error or "job failed")
        if clock() >= deadline:
            return WaitResult(state=WAIT_STILL_RUNNING, error="still processing in background")
        await sleep(interval)
