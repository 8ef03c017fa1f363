"""REST persistence collaborator for calendarseries over httpx.

Talks to an events API exposing ``GET/POST /events`` and
``PUT/DELETE /events/{id}``. Every response body is wrapped as
``{"success": bool, "data": ..., "error": ...}``.
"""

import json
import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from .series_config import Config
from .series_datetime_utils import DateLike, date_key
from .series_exceptions import EventNotFoundError, PersistenceError
from .series_logging import NO_COMMIT_ID, get_commit_id
from .series_models import EventRow, RecurrenceRule

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
)

DEFAULT_TIMEOUT = httpx.Timeout(
    connect=5.0,
    read=15.0,
    write=10.0,
    pool=15.0,
)

DEFAULT_HEADERS: dict[str, str] = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "User-Agent": "calendarseries/1.0",
}


def _to_wire(value: Any) -> Any:
    if isinstance(value, RecurrenceRule):
        return value.to_wire()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def encode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """JSON-ready copy of an event field dict."""
    return {key: _to_wire(value) for key, value in fields.items()}


class HttpEventStore:
    """EventStore backed by the REST events API.

    The store owns its ``httpx.AsyncClient`` unless one is passed in, in which
    case closing the client is left to the caller.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[httpx.Timeout] = None,
        limits: Optional[httpx.Limits] = None,
    ):
        """Initialize the store.

        Args:
            base_url: API root, e.g. "https://example.test/api"
            client: Shared client to use instead of creating one
            headers: Extra headers (auth etc.) added to every request
            timeout: Custom timeout configuration
            limits: Custom connection limits
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        merged_headers = {**DEFAULT_HEADERS, **(dict(headers) if headers else {})}
        if client is None:
            client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=merged_headers,
                timeout=timeout or DEFAULT_TIMEOUT,
                limits=limits or DEFAULT_LIMITS,
            )
            self._extra_headers: dict[str, str] = {}
        else:
            self._extra_headers = merged_headers
        self._client = client

    @classmethod
    def from_config(cls, config: Config, headers: Optional[Mapping[str, str]] = None) -> "HttpEventStore":
        """Create a store for ``config.api_base_url`` using its request timeout.

        Raises:
            ValueError: If no API base URL is configured
        """
        if not config.api_base_url:
            raise ValueError("api_base_url is not configured")
        timeout = httpx.Timeout(
            connect=DEFAULT_TIMEOUT.connect,
            read=config.request_timeout_seconds,
            write=DEFAULT_TIMEOUT.write,
            pool=DEFAULT_TIMEOUT.pool,
        )
        return cls(config.api_base_url, headers=headers, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpEventStore":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        # Absolute URL so a caller-supplied client does not need a base_url
        return f"{self.base_url}{path}"

    def _headers(self) -> dict[str, str]:
        headers = dict(self._extra_headers)
        commit_id = get_commit_id()
        if commit_id != NO_COMMIT_ID:
            headers["X-Commit-ID"] = commit_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        event_id: Optional[int] = None,
        **kwargs: Any,
    ) -> Any:
        """Send one request and unwrap the response envelope.

        Raises:
            EventNotFoundError: 404 for a request addressed to ``event_id``
            PersistenceError: Transport failures and any other error response
        """
        try:
            response = await self._client.request(
                method, self._url(path), headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out: %s", method, path, e)
            raise PersistenceError(f"{method} {path} timed out", retryable=True) from e
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise PersistenceError(f"{method} {path} failed: {e}", retryable=True) from e

        if response.status_code == 404 and event_id is not None:
            raise EventNotFoundError(event_id)
        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning("%s %s returned %d: %s", method, path, response.status_code, message)
            raise PersistenceError(
                f"{method} {path} returned {response.status_code}: {message}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise PersistenceError(
                f"{method} {path} returned invalid JSON", status_code=response.status_code, retryable=False
            ) from e

        if isinstance(body, dict) and "success" in body:
            if not body.get("success"):
                raise PersistenceError(
                    f"{method} {path} was rejected: {body.get('error') or 'unknown error'}",
                    status_code=response.status_code,
                    retryable=False,
                )
            return body.get("data")
        return body

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except json.JSONDecodeError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or body)
        return str(body)

    @staticmethod
    def _row(data: Any) -> EventRow:
        try:
            return EventRow.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Invalid event payload: {e}", retryable=False) from e

    async def create(self, fields: Mapping[str, Any]) -> EventRow:
        data = await self._request("POST", "/events", json=encode_fields(fields))
        row = self._row(data)
        logger.debug("Created event %s via API", row.id)
        return row

    async def update(self, event_id: int, fields: Mapping[str, Any]) -> EventRow:
        data = await self._request(
            "PUT", f"/events/{event_id}", event_id=event_id, json=encode_fields(fields)
        )
        return self._row(data)

    async def delete(self, event_id: int) -> None:
        await self._request("DELETE", f"/events/{event_id}", event_id=event_id)

    async def list_by_owner_and_range(
        self, owner_id: Optional[int], range_start: DateLike, range_end: DateLike
    ) -> list[EventRow]:
        params: dict[str, Any] = {"start": date_key(range_start), "end": date_key(range_end)}
        if owner_id is not None:
            params["owner_id"] = owner_id
        data = await self._request("GET", "/events", params=params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise PersistenceError("Event listing did not return a list", retryable=False)

        rows: list[EventRow] = []
        for item in data:
            try:
                rows.append(EventRow.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping malformed event from API: %s", e)
        return rows
