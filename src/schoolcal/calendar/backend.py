"""Client for the school REST backend.

Every endpoint takes the session ``authCode`` as a query parameter and answers
with a ``{"success": bool, "data" | "message": ...}`` envelope.  Anything other
than a 2xx response carrying ``success: true`` is a :class:`SourceFetchError`.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from schoolcal.calendar.errors import SourceFetchError, redact_credential_values

logger = logging.getLogger(__name__)


def _safe_backend_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if isinstance(message, str) and message.strip():
            return redact_credential_values(" ".join(message.split()))[:200]

    raw_text = response.text.strip()
    if raw_text:
        return redact_credential_values(" ".join(raw_text.split()))[:200]
    return f"HTTP {response.status_code} without an error payload"


class SchoolApiClient:
    """Thin async wrapper over the backend's envelope protocol."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def base_url(self) -> str:
        return self._base_url

    def build_url(self, path: str) -> str:
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{normalized_path}"

    async def get(
        self,
        path: str,
        *,
        source: str,
        auth_code: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """GET *path* and return the envelope's ``data`` payload.

        ``source`` labels the raised :class:`SourceFetchError` so the
        aggregation layer can attribute the failure.
        """
        payload = await self.get_payload(path, source=source, auth_code=auth_code, params=params)
        return payload.get("data")

    async def get_payload(
        self,
        path: str,
        *,
        source: str,
        auth_code: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """GET *path* and return the whole ``success: true`` response object.

        The branch calendar and personal event feeds put their results next
        to ``success`` instead of under ``data``.
        """
        query: dict[str, Any] = {}
        if auth_code is not None:
            query["authCode"] = auth_code
        if params:
            query.update({key: value for key, value in params.items() if value is not None})

        try:
            response = await self._http_client.get(
                self.build_url(path),
                params=query,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise SourceFetchError(
                redact_credential_values(f"request failed: {exc}"),
                source=source,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise SourceFetchError(
                _safe_backend_message(response),
                source=source,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceFetchError(
                "backend returned invalid JSON",
                source=source,
                status_code=response.status_code,
            ) from exc

        if not isinstance(payload, dict):
            raise SourceFetchError(
                "backend returned an unexpected payload shape",
                source=source,
                status_code=response.status_code,
            )

        if payload.get("success") is not True:
            message = payload.get("message")
            raise SourceFetchError(
                redact_credential_values(message)
                if isinstance(message, str) and message.strip()
                else "success=false",
                source=source,
                status_code=response.status_code,
            )

        return payload

    async def shutdown(self) -> None:
        """Close the HTTP client when this instance created it."""
        if self._owns_http_client:
            await self._http_client.aclose()
