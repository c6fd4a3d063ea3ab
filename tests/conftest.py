"""Shared fixtures for the schoolcal test suite.

HTTP collaborators (school backend and Google) are served by
:class:`MockRouter`, an ``httpx.MockTransport`` handler that routes by URL
path and records every request so tests can assert on call counts.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from schoolcal.calendar.models import SchoolConfig, UserContext
from schoolcal.config import CalendarSettings

API_BASE_URL = "https://school.test/api"
GOOGLE_EVENTS_PATH = "/calendar/v3/calendars/{calendar_id}/events"

Handler = Callable[[httpx.Request], httpx.Response]


def backend_ok(data: Any) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "data": data})


def google_items(items: list[dict[str, Any]]) -> httpx.Response:
    return httpx.Response(200, json={"items": items})


class MockRouter:
    """Path-routed MockTransport handler that records requests."""

    def __init__(self) -> None:
        self._routes: dict[str, Handler] = {}
        self.requests: list[httpx.Request] = []

    def route(self, path: str, handler: Handler) -> None:
        self._routes[path] = handler

    def route_json(self, path: str, payload: Any, status_code: int = 200) -> None:
        self._routes[path] = lambda request: httpx.Response(status_code, json=payload)

    def backend(self, endpoint: str, data: Any) -> None:
        """Serve ``data`` in the backend envelope at ``{API_BASE_URL}{endpoint}``."""
        self._routes[f"/api{endpoint}"] = lambda request: backend_ok(data)

    def google_calendar(self, calendar_id: str, items: list[dict[str, Any]]) -> None:
        self._routes[GOOGLE_EVENTS_PATH.format(calendar_id=calendar_id)] = (
            lambda request: google_items(items)
        )

    def calls_to(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self._routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"success": False, "message": "not found"})
        return handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class FakeClock:
    """Mutable clock for TTL and "now"-dependent behaviour."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def router() -> MockRouter:
    return MockRouter()


@pytest.fixture
async def http_client(router: MockRouter):
    client = router.client()
    yield client
    await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 10, 9, 0, tzinfo=UTC))


@pytest.fixture
def settings() -> CalendarSettings:
    return CalendarSettings(api_base_url=API_BASE_URL)


def make_school_config(**overrides: Any) -> SchoolConfig:
    data: dict[str, Any] = {
        "school_id": "bfi",
        "name": "BFI International School",
        "domain": "bfi.edu.mn",
        "has_google_workspace": True,
        "features": {"google_calendar": True},
        "google_config": {
            "api_key": "test-api-key",
            "client_id": "bfi-client-id",
            "calendar_ids": {
                "main": "main-cal",
                "holidays": "holidays-cal",
                "academic": "academic-cal",
                "events": "events-cal",
                "sports": "sports-cal",
                "staff": "staff-cal",
            },
            "branch_calendars": {
                "secondary": {"academic": "secondary-academic", "events": "secondary-events"},
            },
        },
        "username_prefixes": ["bfi_"],
        "branch_name_keywords": ["BFI"],
        "branch_codes": ["BFI01"],
    }
    data.update(overrides)
    return SchoolConfig.model_validate(data)


@pytest.fixture
def school_config() -> SchoolConfig:
    return make_school_config()


@pytest.fixture
def school_without_google() -> SchoolConfig:
    return make_school_config(
        has_google_workspace=False,
        features={"google_calendar": False},
        google_config=None,
    )


@pytest.fixture
def teacher() -> UserContext:
    return UserContext(
        user_id="t1",
        user_type="teacher",
        auth_code="auth-t1",
        branch_id="secondary",
        branch_name="Secondary School",
        email="teacher@bfi.edu.mn",
    )


@pytest.fixture
def parent() -> UserContext:
    return UserContext(
        user_id="p1",
        user_type="parent",
        auth_code="auth-p1",
        branch_id="primary",
        branch_name="Primary School",
    )


@pytest.fixture
def student() -> UserContext:
    return UserContext(
        user_id="s1",
        user_type="student",
        auth_code="auth-s1",
        branch_id="secondary",
    )
