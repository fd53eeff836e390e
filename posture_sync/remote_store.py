# Remote Summary Store Client - Authenticated Upsert over HTTP
import asyncio
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional, Tuple

import requests
from pydantic import ValidationError

from posture_sync import config
from posture_sync import logger
from posture_sync.errors import AuthRequired, TransientSyncError, ValidationRejected
from posture_sync.models import DailyAggregate, Principal
from posture_sync.schemas import SummaryUpsertRequest

RETRYABLE_STATUS = {408, 425, 429}
AUTH_STATUS = {401, 403}


def build_upsert_payload(aggregate: DailyAggregate) -> SummaryUpsertRequest:
    """
    Validate an aggregate against the wire contract before it leaves the device

    Args:
        aggregate: Cumulative daily aggregate

    Returns:
        Validated request model

    Raises:
        ValidationRejected: if the aggregate would be refused by the server
    """
    try:
        aggregate.check_invariants()
    except ValueError as e:
        raise ValidationRejected(f"local aggregate inconsistent for {aggregate.date_iso}: {e}")

    try:
        return SummaryUpsertRequest(
            date_iso=aggregate.date_iso,
            sum_weighted=aggregate.sum_weighted,
            weight_seconds=aggregate.weight_seconds,
            count=aggregate.count,
            bad_seconds=min(aggregate.bad_seconds, aggregate.weight_seconds)
        )
    except ValidationError as e:
        raise ValidationRejected(f"local payload invalid for {aggregate.date_iso}: {e.errors()[0]['msg']}")


def classify_response(status_code: int, detail: str = "") -> None:
    """
    Raise the taxonomy error matching a non-2xx HTTP status

    Args:
        status_code: HTTP status code
        detail: Response text for the error message
    """
    if 200 <= status_code < 300:
        return
    if status_code in AUTH_STATUS:
        raise AuthRequired(f"authentication required ({status_code})", status_code)
    if status_code in RETRYABLE_STATUS or status_code >= 500:
        raise TransientSyncError(f"server unavailable ({status_code}): {detail[:200]}", status_code)
    raise ValidationRejected(f"summary rejected ({status_code}): {detail[:200]}", status_code)


class RemoteSummaryStore(ABC):
    """Remote side of the sync: upsert-by-(principal, date) with replace semantics."""

    @abstractmethod
    async def upsert(self, principal: Principal, payload: SummaryUpsertRequest,
                     timeout: Optional[float] = None) -> Dict[str, Any]: ...

    def invalidate(self, user_id: str, date_iso: str) -> None:
        """Drop any cached view of the summary for this date"""

    def close(self) -> None:
        """Release transport resources"""


class HttpSummaryStore(RemoteSummaryStore):
    """
    requests-based client for the summary server.

    Blocking HTTP runs on a private worker thread so the event loop keeps
    folding samples while an upload is in flight, and asyncio.run never
    waits on a stuck request when the loop shuts down.
    """

    def __init__(self, base_url: str = None, timeout: float = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or config.REMOTE_API_URL).rstrip("/")
        self.timeout = config.REMOTE_TIMEOUT_SECONDS if timeout is None else float(timeout)
        self.session = session or requests.Session()
        self._cache: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="remote-upsert")

    def _headers(self, principal: Principal) -> Dict[str, str]:
        if principal is None or not principal.token:
            raise AuthRequired("no authenticated principal")
        return {"Authorization": f"Bearer {principal.token}"}

    def _request(self, method: str, path: str, principal: Principal, body: Optional[dict] = None,
                 timeout: Optional[float] = None):
        headers = self._headers(principal)
        timeout = self.timeout if timeout is None else min(self.timeout, timeout)
        try:
            return self.session.request(
                method,
                f"{self.base_url}{path}",
                json=body,
                headers=headers,
                timeout=timeout
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientSyncError(f"network unavailable: {e}")
        except requests.RequestException as e:
            raise TransientSyncError(f"request failed: {e}")

    def upsert_sync(self, principal: Principal, payload: SummaryUpsertRequest,
                    timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        PUT the full cumulative summary for one date

        Args:
            timeout: Optional cap on the client timeout for this request

        Returns:
            Stored record as returned by the server
        """
        response = self._request("PUT", "/summaries", principal, payload.to_wire(), timeout)
        classify_response(response.status_code, response.text)

        try:
            return response.json()
        except ValueError:
            return {}

    async def upsert(self, principal: Principal, payload: SummaryUpsertRequest,
                     timeout: Optional[float] = None) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.upsert_sync, principal, payload, timeout)

    def get_summary(self, principal: Principal, date_iso: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a stored summary, served from cache until the next upsert of that date

        Returns:
            Summary dict or None if the server has no record
        """
        key = (principal.user_id, date_iso)
        if key in self._cache:
            return self._cache[key]

        response = self._request("GET", f"/summaries/{date_iso}", principal)
        if response.status_code == 404:
            return None
        classify_response(response.status_code, response.text)

        summary = response.json()
        self._cache[key] = summary
        return summary

    def invalidate(self, user_id: str, date_iso: str) -> None:
        if self._cache.pop((user_id, date_iso), None) is not None:
            logger.log_debug("SYNC", "Cached Summary Invalidated", {"date": date_iso})

    def close(self) -> None:
        # An in-flight request finishes on its own, bounded by its timeout
        self._executor.shutdown(wait=False)
        self.session.close()
