"""Google Calendar backends for school calendars.

Two backends share one request contract:

- :class:`GoogleCalendarService` signs in with an OAuth refresh token and
  reads the school's calendars with a bearer token.
- :class:`ReadOnlyGoogleCalendarService` reads the public branch calendars
  with the school's API key and needs no user sign-in.

Both return raw Google event payloads tagged with ``calendarType`` (the
calendar kind) and ``branchId``; normalization happens in the event source.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from schoolcal.calendar.errors import (
    CalendarConfigError,
    GoogleCalendarRequestError,
    NotAuthenticatedError,
    SourceFetchError,
    redact_credential_values,
)
from schoolcal.calendar.models import (
    BranchInfo,
    GoogleAccount,
    GoogleConfig,
    SchoolConfig,
    UserContext,
    UserType,
)
from schoolcal.calendar.security import CalendarSecurityService

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
GOOGLE_MAX_RESULTS_CAP = 250
PRIMARY_CALENDAR_ID = "primary"
DEFAULT_BRANCH_ID = "default"
DEFAULT_BRANCH_NAME = "Default Branch"

# Calendar kinds that belong to one branch rather than the whole school.
BRANCH_SCOPED_KINDS = frozenset({"academic", "events"})


class GoogleBackendMode(StrEnum):
    """How the backend authenticates; fixed at construction."""

    interactive = "interactive"
    read_only = "read_only"


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(redact_credential_values(raw_text).split())[:200]
    return "Request failed without an error payload"


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise NotAuthenticatedError(
                redact_credential_values(f"Google OAuth token refresh request failed: {exc}")
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise NotAuthenticatedError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise NotAuthenticatedError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise NotAuthenticatedError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


class GoogleCalendarBackend(abc.ABC):
    """Shared request plumbing for both Google backends."""

    mode: GoogleBackendMode

    def __init__(
        self,
        school_config: SchoolConfig,
        user: UserContext,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._school_config = school_config
        self._user = user
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def google_config(self) -> GoogleConfig:
        assert self._school_config.google_config is not None
        return self._school_config.google_config

    @abc.abstractmethod
    def calendars(self) -> dict[str, str]:
        """Return calendar kind -> Google calendar id for this user."""
        ...

    @abc.abstractmethod
    async def _send(
        self,
        url: str,
        params: dict[str, Any],
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        """Issue one authenticated GET."""
        ...

    def _branch_for_kind(self, kind: str) -> str | None:
        return None

    async def _request_with_retry(self, url: str, params: dict[str, Any]) -> httpx.Response:
        response = await self._send(url, params, force_refresh=False)

        if response.status_code == 401 and self.mode is GoogleBackendMode.interactive:
            response = await self._send(url, params, force_refresh=True)

        # Rate-limit retry: honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Google Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._send(url, params, force_refresh=False)
            retry += 1

        return response

    async def _list_calendar_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime,
        time_max: datetime,
        max_results: int,
    ) -> list[dict[str, Any]]:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events"
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
            "maxResults": min(max_results, GOOGLE_MAX_RESULTS_CAP),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        response = await self._request_with_retry(url, params)

        if response.status_code < 200 or response.status_code >= 300:
            raise GoogleCalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceFetchError(
                "Google Calendar API returned invalid JSON for a successful response",
                source="google",
                status_code=response.status_code,
            ) from exc

        items = payload.get("items", []) if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise SourceFetchError(
                "Google Calendar events response missing items array",
                source="google",
                status_code=response.status_code,
            )
        return [item for item in items if isinstance(item, dict)]

    async def get_calendar_events(
        self,
        time_min: datetime,
        time_max: datetime,
        max_results: int = 100,
    ) -> list[dict[str, Any]]:
        """Fetch raw events from every calendar visible to the user.

        A calendar that fails is logged and skipped; when every calendar
        fails the last error is raised.
        """
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        seen_ids: set[str] = set()
        targets: list[tuple[str, str]] = []
        for kind, calendar_id in self.calendars().items():
            if calendar_id in seen_ids:
                continue
            seen_ids.add(calendar_id)
            targets.append((kind, calendar_id))

        events: list[dict[str, Any]] = []
        failures: list[SourceFetchError] = []
        for kind, calendar_id in targets:
            try:
                items = await self._list_calendar_events(
                    calendar_id,
                    time_min=time_min,
                    time_max=time_max,
                    max_results=max_results,
                )
            except SourceFetchError as exc:
                logger.warning("Skipping Google %s calendar: %s", kind, exc)
                failures.append(exc)
                continue

            branch_id = self._branch_for_kind(kind)
            for item in items:
                events.append({**item, "calendarType": kind, "branchId": branch_id})

        if failures and len(failures) == len(targets):
            raise failures[-1]

        logger.debug("Fetched %d Google events from %d calendars", len(events), len(targets))
        return events

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class GoogleCalendarService(GoogleCalendarBackend):
    """Interactive backend: the user signs in with their school Google account."""

    mode = GoogleBackendMode.interactive

    def __init__(
        self,
        school_config: SchoolConfig,
        user: UserContext,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        google_config = school_config.google_config
        if google_config is None or not google_config.client_id:
            raise CalendarConfigError(
                f"School {school_config.school_id!r} has no Google OAuth client configured"
            )
        super().__init__(school_config, user, http_client, timeout=timeout)
        self._oauth: _GoogleOAuthClient | None = None
        self._account: GoogleAccount | None = None

    @property
    def is_signed_in(self) -> bool:
        return self._oauth is not None and self._account is not None

    @property
    def account(self) -> GoogleAccount | None:
        return self._account

    def calendars(self) -> dict[str, str]:
        calendar_ids = {
            kind: calendar_id
            for kind, calendar_id in self.google_config.calendar_ids.items()
            if calendar_id
        }
        return calendar_ids or {"main": PRIMARY_CALENDAR_ID}

    async def sign_in(self, credentials: GoogleOAuthCredentials) -> GoogleAccount:
        """Exchange *credentials* for an access token and verify the account domain.

        Raises
        ------
        NotAuthenticatedError
            If the token exchange fails or the account is outside the school domain.
        """
        if credentials.client_id != self.google_config.client_id:
            raise NotAuthenticatedError("OAuth client does not belong to this school")

        oauth = _GoogleOAuthClient(credentials, self._http_client)
        access_token = await oauth.get_access_token()
        account = await self._fetch_account(access_token)

        if not CalendarSecurityService.validate_google_calendar_domain(
            account.email, self._school_config
        ):
            await self.sign_out()
            raise NotAuthenticatedError(
                f"Please sign in with your {self._school_config.domain} account"
            )

        self._oauth = oauth
        self._account = account
        logger.info("Signed in to Google Calendar for user %s", self._user.user_id)
        return account

    async def _fetch_account(self, access_token: str) -> GoogleAccount:
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise NotAuthenticatedError(
                redact_credential_values(f"Google userinfo request failed: {exc}")
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise NotAuthenticatedError(
                f"Google userinfo request failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise NotAuthenticatedError("Google userinfo endpoint returned invalid JSON") from exc

        email = payload.get("email") if isinstance(payload, dict) else None
        if not isinstance(email, str) or not email.strip():
            raise NotAuthenticatedError("Google userinfo response is missing an email")
        name = payload.get("name")
        return GoogleAccount(email=email.strip(), name=name if isinstance(name, str) else None)

    async def sign_out(self) -> None:
        if self._account is not None:
            logger.info("Signed out of Google Calendar for user %s", self._user.user_id)
        self._oauth = None
        self._account = None

    async def get_calendar_events(
        self,
        time_min: datetime,
        time_max: datetime,
        max_results: int = 100,
    ) -> list[dict[str, Any]]:
        if not self.is_signed_in:
            raise NotAuthenticatedError("Google Calendar sign-in is required")
        return await super().get_calendar_events(time_min, time_max, max_results)

    async def _send(
        self,
        url: str,
        params: dict[str, Any],
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        if self._oauth is None:
            raise NotAuthenticatedError("Google Calendar sign-in is required")
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise SourceFetchError(
                redact_credential_values(f"Google Calendar request failed: {exc}"),
                source="google",
            ) from exc


class ReadOnlyGoogleCalendarService(GoogleCalendarBackend):
    """API-key backend bound to the calendars of the user's branch."""

    mode = GoogleBackendMode.read_only

    def __init__(
        self,
        school_config: SchoolConfig,
        user: UserContext,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        google_config = school_config.google_config
        if google_config is None or not google_config.api_key:
            raise CalendarConfigError(
                f"School {school_config.school_id!r} has no Google API key configured"
            )
        super().__init__(school_config, user, http_client, timeout=timeout)
        self._api_key = google_config.api_key

    @property
    def branch_id(self) -> str:
        return self._user.branch_id or DEFAULT_BRANCH_ID

    def _has_branch_mapping(self) -> bool:
        return self.branch_id in self.google_config.branch_calendars

    def get_branch_calendars(self) -> dict[str, str]:
        """Return calendar kind -> calendar id visible to the user's branch."""
        calendar_ids = self.google_config.calendar_ids
        main = calendar_ids.get("main")
        resolved: dict[str, str | None] = {
            "main": main,
            "holidays": calendar_ids.get("holidays") or main,
        }

        branch_calendars = self.google_config.branch_calendars.get(self.branch_id)
        if branch_calendars is not None:
            resolved["academic"] = branch_calendars.academic
            resolved["events"] = branch_calendars.events
        else:
            resolved["academic"] = calendar_ids.get("academic")
            resolved["events"] = calendar_ids.get("events")

        resolved["sports"] = calendar_ids.get("sports")

        if self._user.user_type in {UserType.teacher, UserType.staff}:
            resolved["staff"] = calendar_ids.get("staff") or main

        return {kind: calendar_id for kind, calendar_id in resolved.items() if calendar_id}

    def calendars(self) -> dict[str, str]:
        return self.get_branch_calendars()

    def get_branch_info(self) -> BranchInfo:
        return BranchInfo(
            branch_id=self.branch_id,
            branch_name=self._user.branch_name or DEFAULT_BRANCH_NAME,
            user_type=self._user.user_type,
            calendars_access=list(self.get_branch_calendars()),
        )

    def _branch_for_kind(self, kind: str) -> str | None:
        if kind in BRANCH_SCOPED_KINDS and self._has_branch_mapping():
            return self._user.branch_id
        return None

    async def _send(
        self,
        url: str,
        params: dict[str, Any],
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        try:
            return await self._http_client.get(
                url,
                params={**params, "key": self._api_key},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise SourceFetchError(
                redact_credential_values(f"Google Calendar request failed: {exc}"),
                source="google",
            ) from exc
