"""
Time Tracking REST client
Bearer-token calls against the time entry API, with network failures kept
apart from errors the server reports.
"""
import logging
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = "Unable to reach the server. Check your connection and try again."


class NetworkError(Exception):
    """The request never got an answer from the server."""


class ApiError(Exception):
    """The server answered with ``success: false`` or an error status."""

    def __init__(self, status: int, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.code = code


class TimeTrackingClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "TimeTrackingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, json: Any = None, params: Optional[dict] = None) -> dict:
        try:
            response = await self._client.request(method, path, json=json, params=params, headers=self._headers())
        except httpx.TransportError as exc:
            logger.warning("Request failed", extra={"method": method, "path": path, "error": str(exc)})
            raise NetworkError(NETWORK_ERROR_MESSAGE) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error or body.get("success") is False:
            message = body.get("error") or f"HTTP error! status: {response.status_code}"
            raise ApiError(response.status_code, message, body.get("code"))
        return body

    async def list_entries(self, limit: int = 100) -> list[dict]:
        body = await self._request("GET", "/api/time-entries", params={"limit": limit})
        return body.get("data", [])

    async def active_entries(self) -> list[dict]:
        body = await self._request("GET", "/api/time-entries/active")
        return body.get("data", [])

    async def create_entry(self, entry: dict) -> dict:
        body = await self._request("POST", "/api/time-entries", json=entry)
        return body["data"]

    async def update_entry(self, entry_id: str, fields: dict) -> dict:
        body = await self._request("PUT", f"/api/time-entries/{entry_id}", json=fields)
        return body["data"]

    async def stop_entry(
        self,
        entry_id: str,
        *,
        total_seconds: Optional[int] = None,
        comment: Optional[str] = None,
        end_location: Optional[list] = None,
    ) -> dict:
        overrides = {
            "total_seconds": total_seconds,
            "comment": comment,
            "end_location": end_location,
        }
        payload = {k: v for k, v in overrides.items() if v is not None}
        body = await self._request("PUT", f"/api/time-entries/{entry_id}/stop", json=payload or None)
        return body["data"]

    async def delete_entry(self, entry_id: str) -> dict:
        body = await self._request("DELETE", f"/api/time-entries/{entry_id}")
        return body["data"]


class ErrorReporter:
    """Turns client errors into user notices.

    A dropped connection tends to fail every pending call at once, so the
    network notice is shown once per session; server errors always show.
    """

    def __init__(self, notify: Optional[Callable[[str], Any]] = None):
        self._notify = notify or (lambda message: logger.error(message))
        self._network_error_shown = False

    def reset(self) -> None:
        self._network_error_shown = False

    def report(self, exc: Exception) -> Optional[str]:
        if isinstance(exc, NetworkError):
            if self._network_error_shown:
                return None
            self._network_error_shown = True
            message = str(exc)
        elif isinstance(exc, ApiError):
            message = exc.message
        else:
            message = str(exc) or "Unexpected error"

        self._notify(message)
        return message
