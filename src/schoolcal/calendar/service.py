"""Unified calendar aggregation service.

``CalendarService`` is bound to one school configuration and one user
context at :meth:`CalendarService.initialize`.  Each read fans out to the
enabled event sources concurrently, tolerates individual source failures,
and returns a merged, deduplicated, permission-filtered and chronologically
sorted event list.  Results are cached per request shape for a short TTL.

Only ``ConfigNotFoundError`` (from ``initialize``) and argument errors reach
callers of the read operations; source failures are logged and surfaced
through :attr:`CalendarService.last_source_report`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum

import httpx
from opentelemetry import trace

from schoolcal.calendar.backend import SchoolApiClient
from schoolcal.calendar.cache import EventCache, make_cache_key
from schoolcal.calendar.errors import (
    CalendarConfigError,
    CalendarNotInitializedError,
    ConfigNotFoundError,
    InvalidArgumentError,
    NotAuthenticatedError,
    build_source_error,
)
from schoolcal.calendar.google import (
    GoogleBackendMode,
    GoogleCalendarBackend,
    GoogleCalendarService,
    GoogleOAuthCredentials,
    ReadOnlyGoogleCalendarService,
)
from schoolcal.calendar.models import (
    SOURCE_ORDER,
    CacheStats,
    CalendarEvent,
    CalendarType,
    EventQuery,
    GoogleAccount,
    SchoolConfig,
    SourceReport,
    TimeRange,
    UserContext,
)
from schoolcal.calendar.security import CalendarSecurityService, SignInRateLimiter
from schoolcal.calendar.sources import (
    BranchCalendarSource,
    EventSource,
    GoogleEventSource,
    HomeworkSource,
    NotificationSource,
    PersonalEventsSource,
    SchoolEventsSource,
    TimetableSource,
)
from schoolcal.config import CalendarSettings
from schoolcal.core.logging import set_session_context
from schoolcal.core.metrics import CalendarMetrics

logger = logging.getLogger(__name__)

_TRACER_NAME = "schoolcal"


class ServiceState(StrEnum):
    uninitialized = "uninitialized"
    initializing = "initializing"
    ready = "ready"
    refreshing = "refreshing"


class CalendarService:
    """Aggregates every calendar source visible to one signed-in user."""

    def __init__(
        self,
        settings: CalendarSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
        rate_limit_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or CalendarSettings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self._settings.request_timeout_s
        )
        self._api_client = SchoolApiClient(self._settings.api_base_url, self._http_client)
        self._rate_limiter = SignInRateLimiter(
            self._settings.rate_limit.max_attempts,
            self._settings.rate_limit.window_seconds,
            clock=rate_limit_clock,
        )
        self._metrics = CalendarMetrics()
        self._cache = self._new_cache()

        self._state = ServiceState.uninitialized
        self._inflight = 0
        # Bumped whenever the cache or session changes; fetches that started
        # under an older generation do not write back.
        self._generation = 0
        self._config: SchoolConfig | None = None
        self._user: UserContext | None = None
        self._google_backend: GoogleCalendarBackend | None = None
        self._google_degraded = False
        self._sources: dict[CalendarType, EventSource] = {}
        self._last_report = SourceReport()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def user(self) -> UserContext | None:
        return self._user

    @property
    def school_config(self) -> SchoolConfig | None:
        return self._config

    @property
    def google_backend_mode(self) -> GoogleBackendMode | None:
        return self._google_backend.mode if self._google_backend is not None else None

    @property
    def enabled_sources(self) -> tuple[CalendarType, ...]:
        return tuple(kind for kind in SOURCE_ORDER if kind in self._sources)

    @property
    def last_source_report(self) -> SourceReport:
        return self._last_report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _new_cache(self) -> EventCache:
        return EventCache(
            ttl_seconds=self._settings.cache.ttl_seconds,
            max_entries=self._settings.cache.max_entries,
            clock=self._clock,
            metrics=self._metrics,
        )

    async def initialize(
        self,
        config: SchoolConfig | None,
        user: UserContext,
    ) -> CalendarService:
        """Bind the service to *config* and *user* and select the event sources.

        Re-initializing drops the previous Google backend and cache.  A user
        without a timezone gets the deployment default from the settings.

        Raises
        ------
        ConfigNotFoundError
            If *config* is ``None``.
        """
        if config is None:
            raise ConfigNotFoundError("School configuration not found")

        if self._state is not ServiceState.uninitialized:
            await self._release_google_backend()

        if user.timezone is None:
            user = user.model_copy(update={"timezone": self._settings.timezone})

        self._generation += 1
        self._state = ServiceState.initializing
        self._config = config
        self._user = user
        self._metrics = CalendarMetrics(config.school_id)
        self._cache = self._new_cache()
        self._bind_log_context()

        self._google_backend = self._select_google_backend()
        self._google_degraded = False
        self._sources = self._build_sources()
        self._last_report = SourceReport()
        self._state = ServiceState.ready

        logger.info(
            "Calendar service ready for %s (google=%s, sources=%s)",
            config.name,
            self.google_backend_mode.value if self.google_backend_mode else "none",
            ",".join(kind.value for kind in self.enabled_sources),
        )
        return self

    async def shutdown(self) -> None:
        """Release the Google backend and any HTTP client this service created."""
        await self._release_google_backend()
        await self._api_client.shutdown()
        if self._owns_http_client:
            await self._http_client.aclose()
        self._sources = {}
        self._state = ServiceState.uninitialized

    async def _release_google_backend(self) -> None:
        backend = self._google_backend
        self._google_backend = None
        if backend is None:
            return
        if isinstance(backend, GoogleCalendarService):
            await backend.sign_out()
        await backend.shutdown()

    def _bind_log_context(self) -> None:
        set_session_context(
            school_id=self._config.school_id if self._config else None,
            user_id=self._user.user_id if self._user else None,
            branch_id=self._user.branch_id if self._user else None,
        )

    def _select_google_backend(self) -> GoogleCalendarBackend | None:
        config, user = self._config, self._user
        assert config is not None and user is not None

        if not CalendarSecurityService.can_access_google_calendar(user, config):
            logger.info("Google Calendar not available for %s users", user.user_type.value)
            return None

        google_config = config.google_config
        if google_config is None:
            logger.info("School %s has no Google configuration", config.school_id)
            return None

        has_calendar_mapping = bool(google_config.calendar_ids or google_config.branch_calendars)
        if config.features.google_calendar_read_only is not False and has_calendar_mapping:
            try:
                return ReadOnlyGoogleCalendarService(config, user, self._http_client)
            except CalendarConfigError as exc:
                logger.warning("Read-only Google Calendar unavailable, trying interactive: %s", exc)

        try:
            return GoogleCalendarService(config, user, self._http_client)
        except CalendarConfigError as exc:
            logger.warning("Interactive Google Calendar unavailable: %s", exc)
            return None

    def _build_sources(self) -> dict[CalendarType, EventSource]:
        config, user = self._config, self._user
        assert config is not None and user is not None
        features = config.features
        endpoints = self._settings.endpoints

        sources: dict[CalendarType, EventSource] = {}
        if self._google_backend is not None:
            sources[CalendarType.google] = GoogleEventSource(
                self._google_backend,
                user,
                max_results=self._settings.google_max_results,
            )
        if features.timetable:
            sources[CalendarType.timetable] = TimetableSource(self._api_client, user, endpoints)
        if features.homework:
            sources[CalendarType.homework] = HomeworkSource(self._api_client, user, endpoints)
        if features.school_events:
            sources[CalendarType.school_event] = SchoolEventsSource(
                self._api_client, user, endpoints, school_id=config.school_id
            )
        if features.notifications:
            sources[CalendarType.notification] = NotificationSource(
                self._api_client, user, endpoints
            )
        if features.branch_calendar:
            sources[CalendarType.branch_calendar] = BranchCalendarSource(
                self._api_client, user, endpoints
            )
        if features.personal_events:
            sources[CalendarType.personal] = PersonalEventsSource(
                self._api_client, user, endpoints
            )
        return sources

    def _require_ready(self) -> tuple[SchoolConfig, UserContext]:
        if (
            self._state in (ServiceState.uninitialized, ServiceState.initializing)
            or self._config is None
            or self._user is None
        ):
            raise CalendarNotInitializedError("Calendar service has not been initialized")
        return self._config, self._user

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _resolve_range(self, query: EventQuery, user: UserContext) -> TimeRange:
        zone = user.zone
        now = self._clock()
        start = query.start_date or now
        end = query.end_date or start + timedelta(days=self._settings.default_window_days)
        if start.tzinfo is None:
            start = start.replace(tzinfo=zone)
        if end.tzinfo is None:
            end = end.replace(tzinfo=zone)
        if end < start:
            raise InvalidArgumentError(
                f"end_date {end.isoformat()} is before start_date {start.isoformat()}"
            )
        return TimeRange(start=start, end=end)

    async def get_all_events(self, query: EventQuery | None = None) -> list[CalendarEvent]:
        """Return every visible event in the query window.

        Raises
        ------
        CalendarNotInitializedError
            If :meth:`initialize` has not completed.
        InvalidArgumentError
            If the window ends before it starts.
        """
        config, user = self._require_ready()
        self._bind_log_context()
        query = query or EventQuery()
        time_range = self._resolve_range(query, user)
        source_flags = query.source_flags()

        cache_key = make_cache_key(
            user_id=user.user_id,
            branch_id=user.branch_id,
            source_flags=source_flags,
            start=time_range.start if query.start_date is not None else None,
            end=time_range.end if query.end_date is not None else None,
        )
        if not query.force_refresh:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Serving %d events from cache", len(cached))
                return list(cached)

        generation = self._generation
        self._inflight += 1
        self._state = ServiceState.refreshing
        try:
            events = await self._aggregate(config, user, time_range, source_flags, generation)
        finally:
            self._inflight -= 1
            if self._inflight == 0 and self._state is ServiceState.refreshing:
                self._state = ServiceState.ready

        if generation == self._generation:
            await self._cache.set(cache_key, events)
        else:
            logger.debug("Session changed during fetch; not caching %d events", len(events))
        return list(events)

    async def _aggregate(
        self,
        config: SchoolConfig,
        user: UserContext,
        time_range: TimeRange,
        source_flags: dict[CalendarType, bool],
        generation: int,
    ) -> list[CalendarEvent]:
        kinds = [
            kind for kind in SOURCE_ORDER if source_flags.get(kind) and kind in self._sources
        ]
        requested = frozenset(kinds)

        results = await asyncio.gather(
            *(self._fetch_source(kind, time_range) for kind in kinds),
            return_exceptions=True,
        )

        merged: list[CalendarEvent] = []
        included: set[CalendarType] = set()
        failed: set[CalendarType] = set()
        for kind, result in zip(kinds, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failed.add(kind)
                self._metrics.record_source_failure(kind.value)
                error = build_source_error(result, source=kind.value)
                logger.warning(
                    "Calendar source %s failed; continuing without it: %s",
                    kind.value,
                    error["error"],
                    extra={"error_type": error["error_type"], "status_code": error["status_code"]},
                )
                continue

            included.add(kind)
            merged.extend(result)

        seen_ids: set[str] = set()
        unique: list[CalendarEvent] = []
        for event in merged:
            if event.id in seen_ids:
                continue
            seen_ids.add(event.id)
            unique.append(event)

        in_range = [event for event in unique if time_range.overlaps(event)]
        visible = CalendarSecurityService.filter_events_for_user(in_range, user, config)
        sanitized = [CalendarSecurityService.sanitize_event(event) for event in visible]
        sanitized.sort(key=CalendarEvent.sort_key)

        logger.info(
            "calendar_events_accessed: %d of %d events visible to %s %s",
            len(sanitized),
            len(in_range),
            user.user_type.value,
            user.user_id,
            extra={
                "audit_event": "calendar_events_accessed",
                "school_id": config.school_id,
                "total_events": len(in_range),
                "visible_events": len(sanitized),
                "range_start": time_range.start.isoformat(),
                "range_end": time_range.end.isoformat(),
            },
        )

        report = SourceReport(
            requested=requested,
            included=frozenset(included),
            failed=frozenset(failed),
        )
        if report.missing:
            logger.info(
                "Aggregated %d events; missing sources: %s",
                len(sanitized),
                ",".join(sorted(kind.value for kind in report.missing)),
            )
        if generation == self._generation:
            self._last_report = report
            if CalendarType.google in included:
                self._google_degraded = False
            elif CalendarType.google in failed:
                self._google_degraded = True
        return sanitized

    async def _fetch_source(self, kind: CalendarType, time_range: TimeRange) -> list[CalendarEvent]:
        tracer = trace.get_tracer(_TRACER_NAME)
        started = time.monotonic()
        with tracer.start_as_current_span("schoolcal.source.fetch") as span:
            span.set_attribute("calendar.source", kind.value)
            try:
                events = await self._sources[kind].fetch_events(time_range)
            finally:
                self._metrics.record_fetch_duration(
                    kind.value, (time.monotonic() - started) * 1000.0
                )
            span.set_attribute("calendar.event_count", len(events))
        return events

    async def get_upcoming_events(self, days: int = 30) -> list[CalendarEvent]:
        """Return events starting from now through the next *days* days.

        The window start is truncated to the minute so repeated calls reuse
        the cache; events that started before the exact current instant are
        still excluded.
        """
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            raise InvalidArgumentError(f"days must be a non-negative integer, got {days!r}")
        self._require_ready()

        now = self._clock()
        window_start = now.replace(second=0, microsecond=0)
        events = await self.get_all_events(
            EventQuery(start_date=window_start, end_date=window_start + timedelta(days=days))
        )
        return [event for event in events if event.start_time >= now]

    async def get_monthly_events(self, year: int, month: int) -> list[CalendarEvent]:
        """Return events in the calendar month, in the user's timezone.

        Raises
        ------
        InvalidArgumentError
            If *month* is outside 1-12 or *year* is out of range.
        """
        if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
            raise InvalidArgumentError(f"month must be between 1 and 12, got {month!r}")
        if isinstance(year, bool) or not isinstance(year, int) or not 1 <= year <= 9998:
            raise InvalidArgumentError(f"year out of range: {year!r}")
        _, user = self._require_ready()

        zone = user.zone
        next_year, next_month = (year + 1, 1) if month == 12 else (year, month + 1)
        start = datetime(year, month, 1, tzinfo=zone)
        end = datetime(next_year, next_month, 1, tzinfo=zone)
        return await self.get_all_events(EventQuery(start_date=start, end_date=end))

    # ------------------------------------------------------------------
    # Cache and availability
    # ------------------------------------------------------------------

    def get_cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def clear_cache(self) -> None:
        self._generation += 1
        self._cache.clear()
        logger.debug("Calendar cache cleared")

    def is_google_calendar_available(self) -> bool:
        return self._google_backend is not None and not self._google_degraded

    # ------------------------------------------------------------------
    # Google sign-in and branch switching
    # ------------------------------------------------------------------

    def _interactive_backend(self) -> GoogleCalendarService:
        backend = self._google_backend
        if not isinstance(backend, GoogleCalendarService):
            raise CalendarConfigError("Interactive Google sign-in is not enabled for this school")
        return backend

    async def sign_in_to_google(self, credentials: GoogleOAuthCredentials) -> GoogleAccount:
        """Sign the user in to the interactive Google backend.

        Raises
        ------
        NotAuthenticatedError
            If the user may not use Google Calendar or the account is rejected.
        RateLimitExceededError
            If the user exhausted the sign-in attempt budget.
        CalendarConfigError
            If the school does not use the interactive backend.
        """
        config, user = self._require_ready()
        self._bind_log_context()
        if not CalendarSecurityService.can_access_google_calendar(user, config):
            raise NotAuthenticatedError("Google Calendar access is not permitted for this user")
        backend = self._interactive_backend()
        self._rate_limiter.check(user.user_id)

        account = await backend.sign_in(credentials)
        self._google_degraded = False
        self.clear_cache()
        return account

    async def sign_out_from_google(self) -> None:
        self._require_ready()
        backend = self._interactive_backend()
        await backend.sign_out()
        self.clear_cache()

    async def switch_branch(self, branch_id: str) -> UserContext:
        """Re-bind the service to another of the user's branches.

        Raises
        ------
        InvalidArgumentError
            If the user has no access to *branch_id*.
        """
        config, user = self._require_ready()
        branch_id = str(branch_id).strip()
        if not branch_id or not CalendarSecurityService.can_access_branch(user, branch_id):
            raise InvalidArgumentError(f"Branch {branch_id!r} is not accessible to this user")

        switched = user.model_copy(
            update={"branch_id": branch_id, "branch_ids": user.accessible_branches}
        )
        await self.initialize(config, switched)
        logger.info("Switched calendar branch to %s", branch_id)
        return switched
