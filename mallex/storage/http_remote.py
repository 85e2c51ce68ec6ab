"""HTTP remote store client.

Talks to the suggestions backend over JSON/HTTP with httpx and maps every
failure onto a classified RemoteStoreError so the retry controller can
tell transient faults from terminal ones.

Endpoints:
    PUT    /suggestions/{id}
    DELETE /suggestions/{id}
    GET    /suggestions[?status=...]   -> {"suggestions": [...]}
    GET    /tasks/{id}
    PUT    /tasks/{id}
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from mallex.core.validation import validate_backend_url
from mallex.errors import RemoteStoreError, StorageCorrupt, remote_error
from mallex.protocols import ChangeCallback, Unsubscribe
from mallex.types import Suggestion, SuggestionChange, SuggestionStatus, Task

from .serializers import (
    record_to_suggestion,
    record_to_task,
    suggestion_to_record,
    task_to_record,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 5.0


def classify_http_status(status_code: int) -> str:
    """Map HTTP status codes to remote error codes."""
    if status_code == 400 or status_code == 422:
        return "invalid-argument"
    if status_code == 401:
        return "unauthenticated"
    if status_code == 403:
        return "permission-denied"
    if status_code == 404:
        return "not-found"
    if status_code == 409:
        return "aborted"
    if status_code == 429:
        return "resource-exhausted"
    if status_code == 503:
        return "unavailable"
    if status_code == 504:
        return "deadline-exceeded"
    if status_code >= 500:
        return "internal"
    return "unknown"


class HttpRemoteStore:
    """RemoteSuggestionStore and TaskSink over HTTP.

    Args:
        backend_url: Base URL of the suggestions backend (https, or http
            for localhost only).
        auth_token: Bearer token sent with every request.
        timeout: Per-request timeout in seconds.
        poll_interval: Seconds between snapshots for ``on_change``.
        client: Pre-built ``httpx.AsyncClient`` (its base URL is ignored;
            full URLs are always sent). Owned by the caller.
    """

    def __init__(
        self,
        backend_url: str,
        auth_token: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        validated = validate_backend_url(backend_url)
        if not validated:
            raise ValueError(f"Invalid backend URL: {backend_url!r}")
        self.backend_url = validated.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._client = client
        self._owns_client = client is None
        self._pollers: Set[asyncio.Task] = set()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        """Stop pollers and close the HTTP client if this store created it."""
        for task in list(self._pollers):
            task.cancel()
        self._pollers.clear()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpRemoteStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Send a request and return the decoded JSON body.

        Returns None for an empty body, or for 404 when ``allow_not_found``.
        """
        url = f"{self.backend_url}{path}"
        try:
            response = await self._get_client().request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise remote_error("deadline-exceeded", f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise remote_error("unavailable", f"Cannot reach {self.backend_url}: {e}") from e
        except httpx.DecodingError as e:
            raise RemoteStoreError("data-loss", f"{method} {path} returned an undecodable body: {e}") from e
        except httpx.HTTPError as e:
            raise RemoteStoreError("unknown", f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code >= 400:
            code = classify_http_status(response.status_code)
            raise remote_error(
                code, f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}"
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteStoreError("data-loss", f"{method} {path} returned invalid JSON") from e

    # === Suggestions ===

    async def upsert_suggestion(self, suggestion: Suggestion) -> None:
        await self._request(
            "PUT", f"/suggestions/{suggestion.id}", json=suggestion_to_record(suggestion)
        )

    async def delete_suggestion(self, suggestion_id: str) -> None:
        await self._request("DELETE", f"/suggestions/{suggestion_id}", allow_not_found=True)

    async def list_suggestions(
        self, status: Optional[SuggestionStatus] = None
    ) -> List[Suggestion]:
        params = {"status": SuggestionStatus(status).value} if status is not None else None
        body = await self._request("GET", "/suggestions", params=params) or {}
        records = body.get("suggestions", []) if isinstance(body, dict) else None
        if not isinstance(records, list):
            raise RemoteStoreError("data-loss", "GET /suggestions returned no suggestion list")
        suggestions = []
        for record in records:
            try:
                suggestions.append(record_to_suggestion(record))
            except StorageCorrupt as e:
                logger.warning(f"Skipping malformed remote suggestion: {e}")
        suggestions.sort(key=lambda s: s.created_at, reverse=True)
        return suggestions

    def on_change(
        self, status: Optional[SuggestionStatus], callback: ChangeCallback
    ) -> Unsubscribe:
        """Poll snapshots and report differences as change notifications.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        status = SuggestionStatus(status) if status is not None else None
        task = loop.create_task(self._poll(status, callback))
        self._pollers.add(task)

        def unsubscribe() -> None:
            task.cancel()
            self._pollers.discard(task)

        return unsubscribe

    async def _poll(self, status: Optional[SuggestionStatus], callback: ChangeCallback) -> None:
        known: Dict[str, Suggestion] = {}
        while True:
            try:
                snapshot = await self.list_suggestions(status)
            except RemoteStoreError as e:
                logger.warning(f"Change poll failed: {e}")
            else:
                current = {s.id: s for s in snapshot}
                changes = [SuggestionChange("upsert", s) for s in snapshot if known.get(s.id) != s]
                # With a status filter a vanished record may only have changed
                # status, so deletions are reported for unfiltered polls only.
                if status is None:
                    changes.extend(
                        SuggestionChange("delete", s)
                        for sid, s in known.items()
                        if sid not in current
                    )
                known = current
                for change in changes:
                    try:
                        callback(change)
                    except Exception as e:
                        logger.error(f"Change subscriber failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    # === Tasks ===

    async def get_task(self, task_id: str) -> Optional[Task]:
        body = await self._request("GET", f"/tasks/{task_id}", allow_not_found=True)
        try:
            return record_to_task(body)
        except StorageCorrupt as e:
            raise RemoteStoreError("data-loss", f"GET /tasks/{task_id} returned {e}") from e

    async def save_task(self, task: Task) -> None:
        await self._request("PUT", f"/tasks/{task.id}", json=task_to_record(task))
