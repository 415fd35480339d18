from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

import requests

from dashsync.models import (
    ALL_SOURCES,
    CONNECTION_STATUSES,
    STATUS_DISCONNECTED,
    ImminentEvent,
    InvokeResult,
    ServicesConfig,
    SourceState,
    parse_iso_datetime,
)
from dashsync.polling import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RUNNING,
    WAIT_COMPLETED,
    WAIT_FAILED,
    wait_for_completion,
)


logger = logging.getLogger(__name__)


# Provider names used by the hosted collaborators map onto our source keys.
SOURCE_ALIASES = {
    "gmail": "mail",
    "mail": "mail",
    "calendar": "calendar",
    "drive": "files",
    "files": "files",
}

CONNECTIONS_PATH = "/api/connections"
IMMINENT_PATH = "/api/calendar/imminent"
BRIEFING_PATH = "/api/ai/briefing/generate"
REANALYZE_PATH = "/api/calendar/recalculate-conflicts"
SYNC_JOB_PATH = "/api/sync/jobs/{job_id}"

JOB_STATUSES = {
    "complete": JOB_COMPLETED,
    "completed": JOB_COMPLETED,
    "error": JOB_FAILED,
    "failed": JOB_FAILED,
}


class ServiceError(RuntimeError):
    """A collaborator call failed at the transport or HTTP level."""


def _error_text(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


def parse_connections(payload: Any) -> dict[str, SourceState]:
    states = {source: SourceState() for source in ALL_SOURCES}
    connections = payload.get("connections") if isinstance(payload, dict) else None
    if not isinstance(connections, dict):
        raise ServiceError("Connection status response has no connections object.")
    for key, raw in connections.items():
        source = SOURCE_ALIASES.get(str(key).strip().lower())
        if source is None or not isinstance(raw, dict):
            continue
        status = str(raw.get("status", "") or "").strip().lower()
        if status not in CONNECTION_STATUSES:
            status = STATUS_DISCONNECTED
        try:
            last_synced_at = parse_iso_datetime(raw.get("lastSyncAt", raw.get("last_synced_at")))
        except ValueError:
            last_synced_at = None
        error = raw.get("error")
        states[source] = SourceState(
            connection_status=status,
            last_synced_at=last_synced_at,
            error=str(error) if error else None,
        )
    return states


def parse_invoke_result(source: str, payload: Any) -> InvokeResult:
    body = payload if isinstance(payload, dict) else {}
    error = body.get("error")
    return InvokeResult(
        source=source,
        ok=not error,
        data_changed=bool(body.get("dataChanged", body.get("data_changed", False))),
        # Only the calendar reports a recompute signal; other providers omit it.
        time_changed=bool(body.get("timeChanged", body.get("time_changed", False))),
        items_synced=int(body.get("itemsSynced", body.get("items_synced", 0)) or 0),
        error=str(error) if error else None,
        job_id=str(body["jobId"]) if body.get("queued") and body.get("jobId") else None,
    )


def parse_job_result(source: str, payload: Any) -> InvokeResult:
    """Turn a finished background sync job into an invoke result."""
    body = payload if isinstance(payload, dict) else {}
    inserted = int(body.get("itemsInserted", body.get("items_inserted", 0)) or 0)
    updated = int(body.get("itemsUpdated", body.get("items_updated", 0)) or 0)
    deleted = int(body.get("itemsDeleted", body.get("items_deleted", 0)) or 0)
    return InvokeResult(
        source=source,
        ok=True,
        data_changed=inserted + updated + deleted > 0,
        time_changed=bool(body.get("timeChanged", body.get("time_changed", False))),
        items_synced=inserted + updated,
    )


def job_check_status(payload: Any) -> tuple[str, str | None]:
    body = payload if isinstance(payload, dict) else {}
    status = JOB_STATUSES.get(str(body.get("status", "")).strip().lower(), JOB_RUNNING)
    error = body.get("error") or body.get("errorMessage")
    return status, str(error) if error else None


class ServiceClient:
    """Blocking HTTP client for the dashboard's hosted collaborators."""

    def __init__(self, config: ServicesConfig) -> None:
        self.config = config
        self._session = requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.base_url)

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        return headers

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.is_configured():
            raise ServiceError("services.base_url is not configured.")
        try:
            response = self._session.request(
                method,
                self._url(path),
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
                **kwargs,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ServiceError(_error_text(exc)) from exc
        try:
            return response.json()
        except ValueError:
            return {}

    def fetch_connections(self) -> dict[str, SourceState]:
        return parse_connections(self._request("GET", CONNECTIONS_PATH))

    def trigger_sync(self, source: str, trigger: str) -> InvokeResult:
        path = self.config.sync_paths[source]
        try:
            payload = self._request("POST", path, json={"trigger": trigger})
        except ServiceError as exc:
            return InvokeResult(source=source, ok=False, error=str(exc))
        return parse_invoke_result(source, payload)

    def fetch_sync_job(self, job_id: str) -> dict[str, Any]:
        return self._request("GET", SYNC_JOB_PATH.format(job_id=job_id))

    def query_imminent(self, threshold_minutes: int, now: datetime | None = None) -> ImminentEvent | None:
        payload = self._request("GET", IMMINENT_PATH, params={"threshold": int(threshold_minutes)})
        if not isinstance(payload, dict) or not payload.get("found") or not payload.get("event"):
            return None
        return ImminentEvent.from_dict(payload["event"], now=now)

    def regenerate_summary(self) -> dict[str, Any]:
        return self._request("POST", BRIEFING_PATH)

    def reanalyze_calendar(self) -> dict[str, Any]:
        return self._request("POST", REANALYZE_PATH)

    def close(self) -> None:
        self._session.close()


class AsyncServiceClient:
    """Runs the blocking client off the event loop so the loop never waits on I/O."""

    def __init__(self, client: ServiceClient, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.client = client
        self._sleep = sleep

    async def fetch_connections(self) -> dict[str, SourceState]:
        return await asyncio.to_thread(self.client.fetch_connections)

    async def trigger_sync(self, source: str, trigger: str) -> InvokeResult:
        result = await asyncio.to_thread(self.client.trigger_sync, source, trigger)
        if result.ok and result.job_id:
            return await self._await_job(result)
        return result

    async def _await_job(self, queued: InvokeResult) -> InvokeResult:
        latest: dict[str, Any] = {}

        async def check_status() -> tuple[str, str | None]:
            payload = await asyncio.to_thread(self.client.fetch_sync_job, queued.job_id)
            latest.clear()
            if isinstance(payload, dict):
                latest.update(payload)
            return job_check_status(payload)

        config = self.client.config
        waited = await wait_for_completion(
            check_status,
            timeout=config.job_timeout_seconds,
            interval=config.job_poll_interval_seconds,
            sleep=self._sleep,
        )
        if waited.state == WAIT_COMPLETED:
            result = parse_job_result(queued.source, latest)
            result.job_id = queued.job_id
            return result
        if waited.state == WAIT_FAILED:
            return InvokeResult(source=queued.source, ok=False, error=waited.error, job_id=queued.job_id)
        logger.warning("Sync job %s for %s is still running in the background", queued.job_id, queued.source)
        return InvokeResult(source=queued.source, ok=True, job_id=queued.job_id)

    async def query_imminent(self, threshold_minutes: int) -> ImminentEvent | None:
        return await asyncio.to_thread(self.client.query_imminent, threshold_minutes)

    async def regenerate_summary(self) -> dict[str, Any]:
        return await asyncio.to_thread(self.client.regenerate_summary)

    async def reanalyze_calendar(self) -> dict[str, Any]:
        return await asyncio.to_thread(self.client.reanalyze_calendar)

    def close(self) -> None:
        self.client.close()
