"""Tests for the unified calendar aggregation service."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from schoolcal.calendar.errors import (
    CalendarConfigError,
    CalendarNotInitializedError,
    ConfigNotFoundError,
    InvalidArgumentError,
    NotAuthenticatedError,
    RateLimitExceededError,
)
from schoolcal.calendar.google import GoogleBackendMode, GoogleOAuthCredentials
from schoolcal.calendar.models import CalendarType, EventQuery, UserContext
from schoolcal.calendar.service import CalendarService, ServiceState
from schoolcal.config import CalendarSettings, RateLimitConfig
from tests.conftest import (
    API_BASE_URL,
    GOOGLE_EVENTS_PATH,
    FakeClock,
    MockRouter,
    backend_ok,
    make_school_config,
)

pytestmark = pytest.mark.unit

HOMEWORK_PATH = "/api/mobile-api/homework"
TEACHER_TIMETABLE_PATH = "/api/mobile-api/timetable/teacher"

ESSAY = {"id": 1, "title": "Essay", "deadline": "2025-01-12"}
SECONDARY_EXAM = {
    "id": 2,
    "title": "Secondary exam",
    "date": "2025-01-21",
    "branch_id": "secondary",
}


def _google_item(event_id: str, start: str, end: str, **extra) -> dict:
    return {"id": event_id, "start": {"dateTime": start}, "end": {"dateTime": end}, **extra}


def _empty_backend(router: MockRouter) -> None:
    router.backend("/mobile-api/timetable/teacher", [])
    router.backend("/mobile-api/timetable/student", {})
    router.backend("/mobile-api/homework", [])
    router.backend("/mobile-api/notifications", [])


def _gated_homework(router: MockRouter, gate: asyncio.Event, data: list) -> None:
    """Serve homework only once *gate* is set."""

    async def _handler(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return backend_ok(data)

    router.route(HOMEWORK_PATH, _handler)


async def _wait_for_request(router: MockRouter, path: str) -> None:
    for _ in range(1000):
        if router.calls_to(path):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"no request reached {path}")


@pytest.fixture
def service(settings: CalendarSettings, http_client: httpx.AsyncClient, clock: FakeClock):
    return CalendarService(settings, http_client=http_client, clock=clock)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_initialize_selects_read_only_backend(
        self, service: CalendarService, school_config, teacher
    ):
        assert service.state is ServiceState.uninitialized

        returned = await service.initialize(school_config, teacher)

        assert returned is service
        assert service.state is ServiceState.ready
        assert service.google_backend_mode is GoogleBackendMode.read_only
        assert service.enabled_sources == (
            CalendarType.google,
            CalendarType.timetable,
            CalendarType.homework,
            CalendarType.school_event,
            CalendarType.notification,
        )
        assert service.is_google_calendar_available()

    async def test_missing_config_raises(self, service: CalendarService, teacher):
        with pytest.raises(ConfigNotFoundError):
            await service.initialize(None, teacher)
        assert service.state is ServiceState.uninitialized

    async def test_reads_before_initialize_raise(self, service: CalendarService):
        with pytest.raises(CalendarNotInitializedError):
            await service.get_all_events()
        with pytest.raises(CalendarNotInitializedError):
            await service.get_monthly_events(2025, 1)

    async def test_write_mode_school_uses_interactive_backend(self, service, teacher):
        config = make_school_config(
            features={"google_calendar": True, "google_calendar_read_only": False}
        )
        await service.initialize(config, teacher)
        assert service.google_backend_mode is GoogleBackendMode.interactive

    async def test_missing_api_key_falls_back_to_interactive(self, service, teacher):
        config = make_school_config(
            google_config={"client_id": "bfi-client-id", "calendar_ids": {"main": "main-cal"}}
        )
        await service.initialize(config, teacher)
        assert service.google_backend_mode is GoogleBackendMode.interactive

    async def test_no_google_credentials_disables_google(self, service, teacher):
        config = make_school_config(google_config={"calendar_ids": {"main": "main-cal"}})
        await service.initialize(config, teacher)
        assert service.google_backend_mode is None
        assert CalendarType.google not in service.enabled_sources

    async def test_feature_switches_drop_sources(self, service, teacher):
        config = make_school_config(
            features={"google_calendar": False, "notifications": False, "school_events": False}
        )
        await service.initialize(config, teacher)
        assert service.enabled_sources == (CalendarType.timetable, CalendarType.homework)

    async def test_shutdown_keeps_injected_client_open(
        self, service: CalendarService, school_config, teacher, http_client
    ):
        await service.initialize(school_config, teacher)
        await service.shutdown()
        assert service.state is ServiceState.uninitialized
        assert not http_client.is_closed


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class TestGetAllEvents:
    async def test_merges_sorts_and_dedupes(
        self, service: CalendarService, router: MockRouter, school_config, teacher
    ):
        _empty_backend(router)
        router.google_calendar(
            "main-cal",
            [_google_item("g1", "2025-01-15T10:00:00Z", "2025-01-15T11:00:00Z", summary="Trip")],
        )
        router.backend(
            "/mobile-api/timetable/teacher",
            [{"date": "2025-01-11", "time": "08:00-09:00", "subject": "Math"}],
        )
        router.backend(
            "/mobile-api/homework",
            [
                {"id": 1, "title": "Essay", "deadline": "2025-01-12"},
                {"id": 1, "title": "Essay (copy)", "deadline": "2025-01-12"},
            ],
        )
        router.backend(
            "/mobile-api/notifications",
            [
                {
                    "id": 7,
                    "title": "Closed",
                    "priority": "high",
                    "created_at": "2025-01-13T08:00:00Z",
                }
            ],
        )
        await service.initialize(school_config, teacher)

        events = await service.get_all_events()

        assert [event.id for event in events] == [
            "timetable_2025-01-11_0",
            "homework_1",
            "notification_7",
            "google_g1",
        ]
        assert events[1].title == "Essay"
        assert len({event.id for event in events}) == len(events)
        assert all(event.start_time <= event.end_time for event in events)
        assert all(
            events[i].start_time <= events[i + 1].start_time for i in range(len(events) - 1)
        )
        report = service.last_source_report
        assert report.failed == frozenset()
        assert report.missing == frozenset()

    async def test_branch_isolation(
        self, service: CalendarService, router: MockRouter, school_without_google, parent
    ):
        _empty_backend(router)
        router.backend(
            "/mobile-api/school-events",
            [
                {"id": 1, "title": "Primary concert", "date": "2025-01-20", "branch_id": "primary"},
                SECONDARY_EXAM,
                {"id": 3, "title": "Whole school", "date": "2025-01-22"},
            ],
        )
        await service.initialize(school_without_google, parent)

        events = await service.get_all_events()

        assert [event.id for event in events] == ["school_1", "school_3"]

    async def test_event_text_is_sanitized(
        self, service: CalendarService, router: MockRouter, school_without_google, parent
    ):
        _empty_backend(router)
        router.backend(
            "/mobile-api/school-events",
            [
                {
                    "id": 1,
                    "title": "<script>alert(1)</script>Sports day",
                    "description": '<b onclick="x()">Bring water</b>',
                    "date": "2025-01-20",
                }
            ],
        )
        await service.initialize(school_without_google, parent)

        [event] = await service.get_all_events()

        assert event.title == "Sports day"
        assert event.description == "<b>Bring water</b>"

    async def test_source_flags_limit_fetches(
        self, service: CalendarService, router: MockRouter, school_config, teacher
    ):
        _empty_backend(router)
        await service.initialize(school_config, teacher)

        await service.get_all_events(
            EventQuery(include_google=False, include_homework=False, include_school_events=False)
        )

        assert router.calls_to(HOMEWORK_PATH) == 0
        assert not any(request.url.host == "www.googleapis.com" for request in router.requests)
        assert service.last_source_report.requested == frozenset(
            {CalendarType.timetable, CalendarType.notification}
        )

    async def test_end_before_start_rejected(self, service, school_config, teacher):
        await service.initialize(school_config, teacher)
        with pytest.raises(InvalidArgumentError):
            await service.get_all_events(
                EventQuery(
                    start_date=datetime(2025, 2, 1, tzinfo=UTC),
                    end_date=datetime(2025, 1, 1, tzinfo=UTC),
                )
            )

    async def test_state_returns_to_ready(
        self, service: CalendarService, router: MockRouter, school_without_google, parent
    ):
        _empty_backend(router)
        await service.initialize(school_without_google, parent)
        await service.get_all_events()
        assert service.state is ServiceState.ready

    async def test_access_is_audited(
        self,
        service: CalendarService,
        router: MockRouter,
        school_without_google,
        parent,
        caplog,
    ):
        _empty_backend(router)
        router.backend(
            "/mobile-api/school-events",
            [
                {"id": 1, "title": "Primary concert", "date": "2025-01-20", "branch_id": "primary"},
                SECONDARY_EXAM,
            ],
        )
        await service.initialize(school_without_google, parent)

        with caplog.at_level(logging.INFO, logger="schoolcal.calendar.service"):
            await service.get_all_events()

        [record] = [
            record
            for record in caplog.records
            if getattr(record, "audit_event", None) == "calendar_events_accessed"
        ]
        assert record.school_id == "bfi"
        assert record.total_events == 2
        assert record.visible_events == 1
        assert record.range_start == "2025-01-10T09:00:00+00:00"

    async def test_branch_feed_and_personal_events(
        self, service: CalendarService, router: MockRouter, teacher
    ):
        _empty_backend(router)
        router.route_json(
            "/api/calendar/data",
            {
                "success": True,
                "total_branches": 1,
                "branches": [
                    {
                        "branch_id": "secondary",
                        "branch_name": "Secondary School",
                        "calendar_data": {
                            "local_global_events": [
                                {
                                    "id": 4,
                                    "title": "Open day",
                                    "start_date": "2025-01-18",
                                    "end_date": "2025-01-18",
                                    "is_all_day": True,
                                }
                            ],
                            "academic_calendar_events": [
                                {
                                    "id": 9,
                                    "title": "Term starts",
                                    "start_date": "2025-01-13",
                                    "start_time": "08:00",
                                    "end_date": "2025-01-13",
                                    "end_time": "09:00",
                                }
                            ],
                        },
                    }
                ],
            },
        )
        router.route_json(
            "/api/calendar/personal",
            {
                "success": True,
                "personal_events": [
                    {"id": 12, "category": "exam", "title": "Physics", "start_date": "2025-01-20"}
                ],
            },
        )
        config = make_school_config(
            has_google_workspace=False,
            google_config=None,
            features={"google_calendar": False, "branch_calendar": True, "personal_events": True},
        )
        await service.initialize(config, teacher)

        events = await service.get_all_events()

        assert CalendarType.branch_calendar in service.enabled_sources
        assert CalendarType.personal in service.enabled_sources
        assert [event.id for event in events] == ["academic_9", "local_global_4", "personal_12"]
        assert events[2].title == "📝 Physics"
        assert service.last_source_report.included >= {
            CalendarType.branch_calendar,
            CalendarType.personal,
        }

    async def test_settings_timezone_applies_when_user_has_none(
        self, http_client, clock, router: MockRouter, school_without_google, teacher
    ):
        settings = CalendarSettings(api_base_url=API_BASE_URL, timezone="Asia/Ulaanbaatar")
        service = CalendarService(settings, http_client=http_client, clock=clock)
        _empty_backend(router)
        router.backend("/mobile-api/homework", [ESSAY])
        await service.initialize(school_without_google, teacher)

        [event] = await service.get_all_events()

        assert service.user.timezone == "Asia/Ulaanbaatar"
        assert str(event.start_time.tzinfo) == "Asia/Ulaanbaatar"
        assert event.start_time.date().isoformat() == "2025-01-12"


# ---------------------------------------------------------------------------
# Failure tolerance
# ---------------------------------------------------------------------------


class TestFailureTolerance:
    async def test_google_failure_returns_other_sources(
        self, service: CalendarService, router: MockRouter, school_config, teacher
    ):
        _empty_backend(router)
        router.backend("/mobile-api/homework", [ESSAY])
        # No Google calendar is routed, so every calendar answers 404.
        await service.initialize(school_config, teacher)
        assert service.is_google_calendar_available()

        events = await service.get_all_events()

        assert [event.id for event in events] == ["homework_1"]
        assert not service.is_google_calendar_available()
        assert service.last_source_report.failed == frozenset({CalendarType.google})
        assert service.last_source_report.missing == frozenset({CalendarType.google})

    async def test_google_recovers_after_successful_fetch(
        self, service: CalendarService, router: MockRouter, school_config, teacher
    ):
        _empty_backend(router)
        await service.initialize(school_config, teacher)
        await service.get_all_events()
        assert not service.is_google_calendar_available()

        router.google_calendar("main-cal", [])
        await service.get_all_events(EventQuery(force_refresh=True))

        assert service.is_google_calendar_available()

    async def test_backend_failure_is_contained(
        self, service: CalendarService, router: MockRouter, school_without_google, teacher
    ):
        _empty_backend(router)
        router.route_json(TEACHER_TIMETABLE_PATH, {"message": "down"}, 500)
        router.backend("/mobile-api/homework", [ESSAY])
        await service.initialize(school_without_google, teacher)

        events = await service.get_all_events()

        assert [event.id for event in events] == ["homework_1"]
        assert service.last_source_report.failed == frozenset({CalendarType.timetable})

    async def test_unreachable_backend_returns_empty(
        self, service: CalendarService, school_without_google, teacher
    ):
        # Nothing is routed: every endpoint answers 404, which only school
        # events treat as "no events".
        await service.initialize(school_without_google, teacher)
        assert await service.get_all_events() == []
        report = service.last_source_report
        assert report.included == frozenset({CalendarType.school_event})
        assert report.failed == frozenset(
            {CalendarType.timetable, CalendarType.homework, CalendarType.notification}
        )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class TestCaching:
    async def test_repeat_query_served_from_cache(
        self,
        service: CalendarService,
        router: MockRouter,
        school_without_google,
        teacher,
        clock: FakeClock,
    ):
        _empty_backend(router)
        await service.initialize(school_without_google, teacher)

        first = await service.get_all_events()
        clock.advance(seconds=1)
        second = await service.get_all_events()

        assert first == second
        assert router.calls_to(HOMEWORK_PATH) == 1
        stats = service.get_cache_stats()
        assert stats.hits == 1
        assert stats.entries == 1

    async def test_force_refresh_bypasses_cache(
        self, service: CalendarService, router: MockRouter, school_without_google, teacher
    ):
        _empty_backend(router)
        await service.initialize(school_without_google, teacher)

        await service.get_all_events()
        await service.get_all_events(EventQuery(force_refresh=True))

        assert router.calls_to(HOMEWORK_PATH) == 2

    async def test_entries_expire_after_ttl(
        self,
        service: CalendarService,
        router: MockRouter,
        school_without_google,
        teacher,
        clock: FakeClock,
    ):
        _empty_backend(router)
        await service.initialize(school_without_google, teacher)
        query = EventQuery(
            start_date=datetime(2025, 1, 1, tzinfo=UTC),
            end_date=datetime(2025, 2, 1, tzinfo=UTC),
        )

        await service.get_all_events(query)
        clock.advance(seconds=299)
        await service.get_all_events(query)
        assert router.calls_to(HOMEWORK_PATH) == 1

        clock.advance(seconds=1)
        await service.get_all_events(query)
        assert router.calls_to(HOMEWORK_PATH) == 2

    async def test_clear_cache(
        self, service: CalendarService, router: MockRouter, school_without_google, teacher
    ):
        _empty_backend(router)
        await service.initialize(school_without_google, teacher)
        await service.get_all_events()

        service.clear_cache()
        await service.get_all_events()

        assert router.calls_to(HOMEWORK_PATH) == 2


# ---------------------------------------------------------------------------
# Overlapping reads
# ---------------------------------------------------------------------------


class TestConcurrency:
    async def test_overlapping_default_queries(
        self, service: CalendarService, router: MockRouter, school_without_google, teacher
    ):
        _empty_backend(router)
        router.backend("/mobile-api/homework", [ESSAY])
        await service.initialize(school_without_google, teacher)

        first, second = await asyncio.gather(service.get_all_events(), service.get_all_events())

        assert [event.id for event in first] == ["homework_1"]
        assert first == second
        assert service.state is ServiceState.ready
        assert service.get_cache_stats().entries == 1

        fetches = router.calls_to(HOMEWORK_PATH)
        await service.get_all_events()
        assert router.calls_to(HOMEWORK_PATH) == fetches

    async def test_cancelled_read_leaves_other_readers_unaffected(
        self, service: CalendarService, router: MockRouter, school_without_google, teacher
    ):
        _empty_backend(router)
        gate = asyncio.Event()
        _gated_homework(router, gate, [ESSAY])
        router.backend("/mobile-api/school-events", [SECONDARY_EXAM])
        await service.initialize(school_without_google, teacher)

        blocked = asyncio.create_task(service.get_all_events())
        await _wait_for_request(router, HOMEWORK_PATH)

        without_homework = await service.get_all_events(EventQuery(include_homework=False))
        assert service.state is ServiceState.refreshing
        blocked.cancel()
        with pytest.raises(asyncio.CancelledError):
            await blocked

        assert [event.id for event in without_homework] == ["school_2"]
        assert service.state is ServiceState.ready
        assert service.get_cache_stats().entries == 1

        gate.set()
        events = await service.get_all_events()
        assert [event.id for event in events] == ["homework_1", "school_2"]

    async def test_default_window_follows_the_clock_after_expiry(
        self,
        service: CalendarService,
        router: MockRouter,
        school_without_google,
        teacher,
        clock: FakeClock,
    ):
        _empty_backend(router)
        router.backend("/mobile-api/homework", [ESSAY])
        await service.initialize(school_without_google, teacher)

        assert [event.id for event in await service.get_all_events()] == ["homework_1"]
        clock.advance(days=3)

        # The cached entry has expired and the essay is now in the past.
        assert await service.get_all_events() == []
        assert router.calls_to(HOMEWORK_PATH) == 2


# ---------------------------------------------------------------------------
# Convenience windows
# ---------------------------------------------------------------------------


class TestWindows:
    async def test_monthly_events_for_teacher(
        self, service: CalendarService, router: MockRouter, school_without_google, teacher
    ):
        _empty_backend(router)
        router.backend(
            "/mobile-api/homework",
            [
                {"id": 1, "title": "Essay", "deadline": "2025-01-15"},
                {"id": 2, "title": "Next month", "deadline": "2025-02-03"},
            ],
        )
        router.backend(
            "/mobile-api/timetable/teacher",
            [{"date": "2025-01-16", "time": "10:00-11:00", "subject": "Math"}],
        )
        await service.initialize(school_without_google, teacher)

        events = await service.get_monthly_events(2025, 1)

        assert [event.id for event in events] == ["homework_1", "timetable_2025-01-16_0"]
        assert events[0].calendar_type is CalendarType.homework
        assert events[1].calendar_type is CalendarType.timetable

    async def test_monthly_window_uses_user_timezone(
        self, service: CalendarService, router: MockRouter, school_without_google
    ):
        _empty_backend(router)
        user = UserContext(
            user_id="t1",
            user_type="teacher",
            branch_id="secondary",
            timezone="Asia/Ulaanbaatar",
        )
        # 2025-01-31T20:00Z is already February 1st in Ulaanbaatar (UTC+8).
        router.backend(
            "/mobile-api/school-events",
            [{"id": 1, "title": "Late", "start_date": "2025-01-31T20:00:00Z"}],
        )
        await service.initialize(school_without_google, user)

        assert await service.get_monthly_events(2025, 1) == []
        service.clear_cache()
        february = await service.get_monthly_events(2025, 2)
        assert [event.id for event in february] == ["school_1"]

    async def test_upcoming_events_exclude_past(
        self,
        service: CalendarService,
        router: MockRouter,
        school_without_google,
        teacher,
        clock: FakeClock,
    ):
        clock.now = datetime(2025, 3, 1, 10, 0, 30, tzinfo=UTC)
        _empty_backend(router)
        router.backend(
            "/mobile-api/homework",
            [
                {"id": 1, "title": "Due today", "deadline": "2025-03-01"},
                {"id": 2, "title": "Next week", "deadline": "2025-03-05"},
                {"id": 3, "title": "Too late", "deadline": "2025-03-20"},
            ],
        )
        router.backend(
            "/mobile-api/timetable/teacher",
            [{"date": "2025-03-01", "time": "10:00-11:00", "subject": "Started already"}],
        )
        await service.initialize(school_without_google, teacher)

        events = await service.get_upcoming_events(14)

        assert [event.id for event in events] == ["homework_2"]
        assert all(event.start_time >= clock.now for event in events)
        assert all(event.start_time <= clock.now + timedelta(days=14) for event in events)

    @pytest.mark.parametrize("month", [0, 13, True])
    async def test_invalid_month(self, service, school_without_google, teacher, month):
        await service.initialize(school_without_google, teacher)
        with pytest.raises(InvalidArgumentError):
            await service.get_monthly_events(2025, month)

    @pytest.mark.parametrize("days", [-1, True, 1.5])
    async def test_invalid_days(self, service, school_without_google, teacher, days):
        await service.initialize(school_without_google, teacher)
        with pytest.raises(InvalidArgumentError):
            await service.get_upcoming_events(days)


# ---------------------------------------------------------------------------
# Parents and schools without Google Workspace
# ---------------------------------------------------------------------------


class TestWithoutGoogle:
    async def test_parent_without_workspace(
        self, service: CalendarService, router: MockRouter, school_without_google, parent
    ):
        _empty_backend(router)
        router.backend("/mobile-api/homework", [ESSAY])
        await service.initialize(school_without_google, parent)

        events = await service.get_all_events()

        assert service.google_backend_mode is None
        assert not service.is_google_calendar_available()
        assert [event.id for event in events] == ["homework_1"]
        assert not any(request.url.host == "www.googleapis.com" for request in router.requests)

    async def test_parent_with_google_disabled_for_parents(
        self, service: CalendarService, parent
    ):
        config = make_school_config(
            features={"google_calendar": True, "parent_google_calendar": False}
        )
        await service.initialize(config, parent)
        assert service.google_backend_mode is None


# ---------------------------------------------------------------------------
# Google sign-in
# ---------------------------------------------------------------------------


WRITE_MODE_FEATURES = {"google_calendar": True, "google_calendar_read_only": False}


def _credentials(client_id: str = "bfi-client-id") -> GoogleOAuthCredentials:
    return GoogleOAuthCredentials(
        client_id=client_id, client_secret="secret", refresh_token="refresh"
    )


class TestGoogleSignIn:
    async def test_sign_in_clears_cache(
        self, service: CalendarService, router: MockRouter, teacher
    ):
        _empty_backend(router)
        router.route_json("/token", {"access_token": "access-1", "expires_in": 3600})
        router.route_json("/oauth2/v3/userinfo", {"email": "teacher@bfi.edu.mn"})
        router.google_calendar("main-cal", [])
        await service.initialize(make_school_config(features=WRITE_MODE_FEATURES), teacher)
        await service.get_all_events()
        assert not service.is_google_calendar_available()

        account = await service.sign_in_to_google(_credentials())

        assert account.email == "teacher@bfi.edu.mn"
        assert service.is_google_calendar_available()
        assert service.get_cache_stats().entries == 0
        await service.get_all_events()
        assert router.calls_to(GOOGLE_EVENTS_PATH.format(calendar_id="main-cal")) == 1

        await service.sign_out_from_google()
        await service.get_all_events()
        assert not service.is_google_calendar_available()

    async def test_read_started_before_sign_in_does_not_write_back(
        self, service: CalendarService, router: MockRouter, teacher
    ):
        _empty_backend(router)
        gate = asyncio.Event()
        _gated_homework(router, gate, [ESSAY])
        router.route_json("/token", {"access_token": "access-1", "expires_in": 3600})
        router.route_json("/oauth2/v3/userinfo", {"email": "teacher@bfi.edu.mn"})
        router.google_calendar(
            "main-cal", [_google_item("g1", "2025-01-15T10:00:00Z", "2025-01-15T11:00:00Z")]
        )
        await service.initialize(make_school_config(features=WRITE_MODE_FEATURES), teacher)

        pending = asyncio.create_task(service.get_all_events())
        await _wait_for_request(router, HOMEWORK_PATH)
        await service.sign_in_to_google(_credentials())
        gate.set()
        signed_out_view = await pending

        assert [event.id for event in signed_out_view] == ["homework_1"]
        assert service.is_google_calendar_available()
        assert service.get_cache_stats().entries == 0

        events = await service.get_all_events()
        assert [event.id for event in events] == ["homework_1", "google_g1"]

    async def test_rate_limited(self, http_client, clock, teacher):
        settings = CalendarSettings(
            api_base_url=API_BASE_URL, rate_limit=RateLimitConfig(max_attempts=2)
        )
        service = CalendarService(settings, http_client=http_client, clock=clock)
        await service.initialize(make_school_config(features=WRITE_MODE_FEATURES), teacher)

        for _ in range(2):
            with pytest.raises(NotAuthenticatedError):
                await service.sign_in_to_google(_credentials(client_id="wrong"))
        with pytest.raises(RateLimitExceededError):
            await service.sign_in_to_google(_credentials())

    async def test_read_only_school_has_no_interactive_sign_in(
        self, service: CalendarService, school_config, teacher
    ):
        await service.initialize(school_config, teacher)
        with pytest.raises(CalendarConfigError):
            await service.sign_in_to_google(_credentials())

    async def test_user_without_google_access(self, service: CalendarService, parent):
        config = make_school_config(
            features={**WRITE_MODE_FEATURES, "parent_google_calendar": False}
        )
        await service.initialize(config, parent)
        with pytest.raises(NotAuthenticatedError):
            await service.sign_in_to_google(_credentials())


# ---------------------------------------------------------------------------
# Branch switching
# ---------------------------------------------------------------------------


class TestSwitchBranch:
    async def test_switch_to_linked_branch(
        self, service: CalendarService, router: MockRouter, school_without_google
    ):
        _empty_backend(router)
        router.backend(
            "/mobile-api/school-events",
            [
                {"id": 1, "title": "Primary concert", "date": "2025-01-20", "branch_id": "primary"},
                SECONDARY_EXAM,
            ],
        )
        user = UserContext(
            user_id="p2", user_type="parent", branch_id="primary", branch_ids=["secondary"]
        )
        await service.initialize(school_without_google, user)
        await service.get_all_events()

        switched = await service.switch_branch("secondary")

        assert switched.branch_id == "secondary"
        assert switched.accessible_branches == frozenset({"primary", "secondary"})
        assert service.user == switched
        assert service.get_cache_stats().entries == 0
        events = await service.get_all_events()
        assert {event.id for event in events} == {"school_1", "school_2"}

    async def test_inaccessible_branch_rejected(self, service, school_without_google, parent):
        await service.initialize(school_without_google, parent)
        with pytest.raises(InvalidArgumentError):
            await service.switch_branch("secondary")
        assert service.user == parent.model_copy(update={"timezone": "UTC"})
