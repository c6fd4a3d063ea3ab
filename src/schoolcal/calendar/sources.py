"""Event source adapters.

Each adapter fetches one origin's raw payload and normalizes it into
:class:`CalendarEvent` instances.  Adapters are selected once when the
calendar service initializes and are addressed only through the
:class:`EventSource` interface.

Normalization rules shared by every adapter:

- date-only values become local midnight in the user's timezone;
- naive datetimes are interpreted in the user's timezone;
- items that cannot be parsed are skipped with a warning, never fatal;
- colors come from a per-type palette keyed by sub-type.
"""

from __future__ import annotations

import abc
import logging
import re
from collections.abc import Iterator
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any

from pydantic import ValidationError

from schoolcal.calendar.backend import SchoolApiClient
from schoolcal.calendar.errors import SourceFetchError
from schoolcal.calendar.google import GoogleCalendarBackend
from schoolcal.calendar.models import (
    CalendarEvent,
    CalendarType,
    Priority,
    TimeRange,
    UserContext,
    UserType,
    resolve_zone,
)
from schoolcal.config import EndpointConfig

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#8E8E93"
EVENT_COLORS: dict[CalendarType, dict[str, str]] = {
    CalendarType.google: {
        "main": "#4285F4",
        "academic": "#34A853",
        "sports": "#EA4335",
        "events": "#FBBC04",
        "holidays": "#9C27B0",
        "staff": "#FF5722",
        "general": "#4285F4",
    },
    CalendarType.timetable: {"class": "#007AFF"},
    CalendarType.homework: {"assignment": "#FF9500", "reminder": "#FF6B35"},
    CalendarType.school_event: {
        "holiday": "#FF3B30",
        "announcement": "#5856D6",
        "general": "#8E8E93",
    },
    CalendarType.notification: {
        "emergency": "#FF3B30",
        "important": "#FF9500",
        "bps": "#FF6B6B",
        "health": "#4ECDC4",
        "general": "#95A5A6",
    },
    CalendarType.branch_calendar: {
        "google": "#4285F4",
        "local_global": "#2196F3",
        "academic": "#34A853",
    },
    CalendarType.personal: {
        "homework": "#007AFF",
        "exam": "#FF9500",
        "birthday": "#34C759",
        "general": "#8E8E93",
    },
}
# High-priority personal events switch to a more urgent color.
URGENT_PERSONAL_COLORS: dict[str, str] = {"exam": "#FF9500"}
URGENT_PERSONAL_DEFAULT = "#FF3B30"

# Period number -> start time used when a timetable slot has no clock time.
PERIOD_START_TIMES: dict[int, time] = {
    1: time(8, 0),
    2: time(9, 15),
    3: time(10, 30),
    4: time(11, 45),
    5: time(13, 30),
    6: time(14, 45),
    7: time(16, 0),
}
DEFAULT_CLASS_DURATION = timedelta(hours=1)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_PERIOD_NUMBER_RE = re.compile(r"(\d+)")
_CLOCK_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def event_color(calendar_type: CalendarType, sub_type: str | None) -> str:
    palette = EVENT_COLORS.get(calendar_type, {})
    if sub_type and sub_type in palette:
        return palette[sub_type]
    return palette.get("general", DEFAULT_COLOR)


def _text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _coerce_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _coerce_priority(value: Any) -> Priority:
    if isinstance(value, str):
        try:
            return Priority(value.strip().lower())
        except ValueError:
            pass
    return Priority.medium


def local_midnight(day: date, zone: tzinfo) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=zone)


def parse_boundary(value: Any, zone: tzinfo) -> tuple[datetime, bool]:
    """Parse a backend date or datetime into an aware datetime.

    Returns ``(value, date_only)``.  Raises ``ValueError`` for anything else.
    """
    if isinstance(value, datetime):
        return (value if value.tzinfo is not None else value.replace(tzinfo=zone)), False
    if isinstance(value, date):
        return local_midnight(value, zone), True
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"expected a date or datetime, got {value!r}")

    normalized = value.strip()
    if len(normalized) == 10:
        return local_midnight(date.fromisoformat(normalized), zone), True
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized.replace(" ", "T", 1))
    return (parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=zone)), False


def parse_time_slot(slot: str) -> tuple[time, time | None]:
    """Parse ``"08:00-09:00"``, ``"08:00"`` or ``"Period 3"`` into start/end times."""
    if ":" in slot:
        parts = slot.split("-", 1)
        start = _parse_clock(parts[0])
        end = _parse_clock(parts[1]) if len(parts) > 1 and parts[1].strip() else None
        return start, end

    match = _PERIOD_NUMBER_RE.search(slot)
    period = int(match.group(1)) if match else 1
    return PERIOD_START_TIMES.get(period, PERIOD_START_TIMES[1]), None


def _parse_clock(value: str) -> time:
    match = _CLOCK_TIME_RE.match(value)
    if match is None:
        raise ValueError(f"invalid clock time: {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


def _iter_local_dates(time_range: TimeRange, zone: tzinfo) -> Iterator[date]:
    current = time_range.start.astimezone(zone).date()
    last = time_range.end.astimezone(zone).date()
    while current <= last:
        yield current
        current += timedelta(days=1)


class EventSource(abc.ABC):
    """One origin of calendar events."""

    kind: CalendarType

    def __init__(self, user: UserContext) -> None:
        self._user = user
        self._zone = resolve_zone(user.timezone)

    @abc.abstractmethod
    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        """Return normalized events overlapping *time_range*.

        Raises
        ------
        SourceFetchError
            If the origin cannot be reached or answers with an error.
        """
        ...

    def _build(self, **fields: Any) -> CalendarEvent | None:
        sub_type = fields.get("sub_type")
        fields.setdefault("color", event_color(self.kind, sub_type))
        fields.setdefault("calendar_type", self.kind)
        try:
            return CalendarEvent(**fields)
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed %s event %s: %d validation error(s)",
                self.kind.value,
                fields.get("id"),
                exc.error_count(),
            )
            return None

    @staticmethod
    def _in_range(events: list[CalendarEvent], time_range: TimeRange) -> list[CalendarEvent]:
        return [event for event in events if time_range.overlaps(event)]


class GoogleEventSource(EventSource):
    """Normalizes raw payloads from either Google backend."""

    kind = CalendarType.google

    def __init__(
        self,
        backend: GoogleCalendarBackend,
        user: UserContext,
        *,
        max_results: int = 100,
    ) -> None:
        super().__init__(user)
        self._backend = backend
        self._max_results = max_results

    @property
    def backend(self) -> GoogleCalendarBackend:
        return self._backend

    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        raw_events = await self._backend.get_calendar_events(
            time_range.start, time_range.end, self._max_results
        )
        events: list[CalendarEvent] = []
        for raw in raw_events:
            event = self.normalize(raw)
            if event is not None:
                events.append(event)
        return self._in_range(events, time_range)

    def _parse_google_boundary(self, payload: Any) -> tuple[datetime, bool]:
        if not isinstance(payload, dict):
            raise ValueError("Google event is missing start/end")
        date_time = payload.get("dateTime")
        if isinstance(date_time, str) and date_time.strip():
            return parse_boundary(date_time, self._zone)[0], False

        date_value = payload.get("date")
        if isinstance(date_value, str) and date_value.strip():
            zone = self._zone
            timezone_raw = payload.get("timeZone")
            if isinstance(timezone_raw, str) and timezone_raw.strip():
                zone = resolve_zone(timezone_raw.strip())
            return local_midnight(date.fromisoformat(date_value.strip()), zone), True

        raise ValueError("Google event is missing start/end dateTime or date values")

    def normalize(self, raw: dict[str, Any]) -> CalendarEvent | None:
        if raw.get("status") == "cancelled":
            return None
        google_id = _coerce_id(raw.get("id"))
        if google_id is None:
            logger.warning("Skipping Google event without an id")
            return None

        try:
            start, all_day = self._parse_google_boundary(raw.get("start"))
            end, _ = self._parse_google_boundary(raw.get("end") or raw.get("start"))
        except ValueError as exc:
            logger.warning("Skipping Google event %s: %s", google_id, exc)
            return None

        sub_type = _text(raw.get("calendarType")) or "general"
        creator = raw.get("creator") if isinstance(raw.get("creator"), dict) else {}
        return self._build(
            id=f"google_{google_id}",
            title=_text(raw.get("summary")) or "(untitled)",
            start_time=start,
            end_time=max(start, end),
            all_day=all_day,
            branch_id=raw.get("branchId"),
            location=_text(raw.get("location")) or "",
            description=_text(raw.get("description")) or "",
            source="Google Calendar",
            sub_type=sub_type,
            creator_email=_text(creator.get("email")),
        )


class _BackendEventSource(EventSource):
    """Source backed by one REST endpoint of the school backend."""

    def __init__(
        self,
        client: SchoolApiClient,
        user: UserContext,
        endpoints: EndpointConfig,
    ) -> None:
        super().__init__(user)
        self._client = client
        self._endpoints = endpoints

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._client.get(
            path,
            source=self.kind.value,
            auth_code=self._user.auth_code,
            params=params,
        )

    async def _get_payload(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self._client.get_payload(
            path,
            source=self.kind.value,
            auth_code=self._user.auth_code,
            params=params,
        )

    def _date_params(self, time_range: TimeRange) -> dict[str, str]:
        return {
            "start_date": time_range.start.astimezone(self._zone).date().isoformat(),
            "end_date": time_range.end.astimezone(self._zone).date().isoformat(),
        }

    @staticmethod
    def _as_items(data: Any) -> list[dict[str, Any]]:
        if isinstance(data, dict):
            for key in ("items", "results"):
                if isinstance(data.get(key), list):
                    data = data[key]
                    break
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]


class TimetableSource(_BackendEventSource):
    """Expands the weekly timetable into one event per class occurrence."""

    kind = CalendarType.timetable

    @property
    def path(self) -> str:
        if self._user.is_staff:
            return self._endpoints.teacher_timetable
        return self._endpoints.student_timetable

    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        data = await self._get(self.path)
        entries = list(self._timetable_entries(data))

        events: list[CalendarEvent] = []
        for day in _iter_local_dates(time_range, self._zone):
            day_entries = [
                (entry, branch_id) for entry, branch_id in entries if self._occurs_on(entry, day)
            ]
            for index, (entry, branch_id) in enumerate(day_entries):
                event = self._entry_to_event(entry, branch_id, day, index)
                if event is not None:
                    events.append(event)
        return self._in_range(events, time_range)

    @staticmethod
    def _timetable_entries(data: Any) -> Iterator[tuple[dict[str, Any], str | None]]:
        if isinstance(data, list):
            for entry in data:
                if isinstance(entry, dict):
                    yield entry, _coerce_id(entry.get("branch_id"))
            return
        if not isinstance(data, dict):
            return

        branches = data.get("branches")
        if isinstance(branches, list):
            for branch in branches:
                if not isinstance(branch, dict) or not isinstance(branch.get("timetable"), list):
                    continue
                branch_id = _coerce_id(branch.get("branch_id"))
                for entry in branch["timetable"]:
                    if isinstance(entry, dict):
                        yield entry, _coerce_id(entry.get("branch_id")) or branch_id
            return

        # Student payloads are keyed by weekday name.
        for day_name in WEEKDAY_NAMES:
            day_entries = data.get(day_name)
            if not isinstance(day_entries, list):
                continue
            for entry in day_entries:
                if isinstance(entry, dict):
                    yield {**entry, "day": day_name}, _coerce_id(entry.get("branch_id"))

    @staticmethod
    def _occurs_on(entry: dict[str, Any], day: date) -> bool:
        specific_date = entry.get("date")
        if isinstance(specific_date, str) and specific_date.strip():
            return specific_date.strip()[:10] == day.isoformat()
        day_name = entry.get("day")
        weekday_name = WEEKDAY_NAMES[day.weekday()]
        if isinstance(day_name, str) and day_name.strip().capitalize() == weekday_name:
            return True
        week_day = entry.get("week_day")
        if isinstance(week_day, int) and not isinstance(week_day, bool):
            return week_day == day.isoweekday()
        if isinstance(week_day, str) and week_day.strip().isdigit():
            return int(week_day) == day.isoweekday()
        return False

    def _entry_to_event(
        self,
        entry: dict[str, Any],
        branch_id: str | None,
        day: date,
        index: int,
    ) -> CalendarEvent | None:
        slot = _text(entry.get("time")) or f"Period {entry.get('period') or index + 1}"
        try:
            start_clock, end_clock = parse_time_slot(slot)
        except ValueError as exc:
            logger.warning("Skipping timetable entry on %s: %s", day.isoformat(), exc)
            return None

        start = datetime.combine(day, start_clock, tzinfo=self._zone)
        end = (
            datetime.combine(day, end_clock, tzinfo=self._zone)
            if end_clock is not None
            else start + DEFAULT_CLASS_DURATION
        )

        user_info = entry.get("user") if isinstance(entry.get("user"), dict) else {}
        teacher = _text(entry.get("teacher"), user_info.get("name")) or "TBA"
        room = _text(entry.get("room")) or ""
        is_teacher = self._user.user_type is UserType.teacher

        return self._build(
            id=f"timetable_{day.isoformat()}_{index}",
            title=_text(entry.get("subject"), entry.get("subject_name")) or "Class",
            start_time=start,
            end_time=end,
            branch_id=branch_id or self._user.branch_id,
            location=room,
            description=f"Teacher: {teacher}\nRoom: {room or 'TBA'}",
            teacher_id=self._user.user_id if is_teacher else entry.get("teacher_id"),
            student_id=self._user.user_id if self._user.user_type is UserType.student else None,
            source="Timetable",
            sub_type="class",
        )


class HomeworkSource(_BackendEventSource):
    """Homework due dates, plus a reminder the day before important work."""

    kind = CalendarType.homework

    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        data = await self._get(self._endpoints.homework)
        events: list[CalendarEvent] = []
        for homework in self._as_items(data):
            events.extend(self._homework_to_events(homework))
        return self._in_range(events, time_range)

    @staticmethod
    def _body(homework: dict[str, Any]) -> str:
        return _text(homework.get("description"), homework.get("assignment_description")) or ""

    @classmethod
    def format_description(cls, homework: dict[str, Any]) -> str:
        description = cls._body(homework)
        subject = _text(homework.get("subject"), homework.get("subject_name"))
        if subject:
            description = f"Subject: {subject}\n\n{description}"
        teacher = _text(homework.get("teacher"), homework.get("teacher_name"))
        if teacher:
            description += f"\n\nTeacher: {teacher}"
        status = _text(homework.get("status"))
        if status:
            description += f"\nStatus: {status}"
        if homework.get("homework_file") or homework.get("attachments"):
            description += "\n\nHas attachments"
        return description.strip()

    def _homework_to_events(self, homework: dict[str, Any]) -> list[CalendarEvent]:
        homework_id = _coerce_id(homework.get("id"))
        if homework_id is None:
            logger.warning("Skipping homework without an id")
            return []
        try:
            due_value = homework.get("deadline") or homework.get("due_date")
            due, _ = parse_boundary(due_value, self._zone)
        except ValueError as exc:
            logger.warning("Skipping homework %s: %s", homework_id, exc)
            return []

        due_day = local_midnight(due.astimezone(self._zone).date(), self._zone)
        title = _text(homework.get("title"), homework.get("assignment_title")) or "Homework"
        priority = _coerce_priority(homework.get("priority"))
        common = {
            "branch_id": homework.get("branch_id"),
            "student_id": homework.get("student_id"),
            "teacher_id": homework.get("teacher_id"),
            "class_id": homework.get("class_id"),
            "created_by": homework.get("created_by"),
            "all_day": True,
        }

        events: list[CalendarEvent] = []
        due_event = self._build(
            id=f"homework_{homework_id}",
            title=title,
            start_time=due_day,
            end_time=due_day,
            description=self.format_description(homework),
            priority=priority,
            source="Homework",
            sub_type="assignment",
            **common,
        )
        if due_event is not None:
            events.append(due_event)

        if priority is Priority.high or homework.get("is_important") is True:
            reminder_day = local_midnight(due_day.date() - timedelta(days=1), self._zone)
            reminder = self._build(
                id=f"homework_reminder_{homework_id}",
                title=f"Reminder: {title}",
                start_time=reminder_day,
                end_time=reminder_day,
                description=f"Due tomorrow: {self._body(homework)}".strip(),
                priority=priority,
                source="Homework Reminder",
                sub_type="reminder",
                **common,
            )
            if reminder is not None:
                events.append(reminder)
        return events


class SchoolEventsSource(_BackendEventSource):
    """School-wide or branch events (holidays, announcements)."""

    kind = CalendarType.school_event

    def __init__(
        self,
        client: SchoolApiClient,
        user: UserContext,
        endpoints: EndpointConfig,
        *,
        school_id: str,
    ) -> None:
        super().__init__(client, user, endpoints)
        self._school_id = school_id

    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        params = {
            "schoolId": self._school_id,
            "startDate": time_range.start.astimezone(self._zone).date().isoformat(),
            "endDate": time_range.end.astimezone(self._zone).date().isoformat(),
        }
        try:
            data = await self._get(self._endpoints.school_events, params)
        except SourceFetchError as exc:
            # Backends without the endpoint answer 404; that is "no events".
            if exc.status_code == 404:
                logger.debug("School events endpoint not available for %s", self._school_id)
                return []
            raise

        events: list[CalendarEvent] = []
        for item in self._as_items(data):
            event = self._item_to_event(item)
            if event is not None:
                events.append(event)
        return self._in_range(events, time_range)

    def _item_to_event(self, item: dict[str, Any]) -> CalendarEvent | None:
        event_id = _coerce_id(item.get("id"))
        if event_id is None:
            logger.warning("Skipping school event without an id")
            return None
        try:
            start, start_date_only = parse_boundary(
                item.get("start_date") or item.get("date"), self._zone
            )
            end, _ = parse_boundary(
                item.get("end_date") or item.get("start_date") or item.get("date"), self._zone
            )
        except ValueError as exc:
            logger.warning("Skipping school event %s: %s", event_id, exc)
            return None

        sub_type = _text(item.get("type")) or "general"
        return self._build(
            id=f"school_{event_id}",
            title=_text(item.get("title"), item.get("name")) or "School event",
            start_time=start,
            end_time=max(start, end),
            all_day=bool(item.get("is_all_day")) or start_date_only,
            branch_id=item.get("branch_id"),
            location=_text(item.get("location")) or "",
            description=_text(item.get("description")) or "",
            source="School Events",
            sub_type=sub_type,
            created_by=item.get("created_by"),
        )


class NotificationSource(_BackendEventSource):
    """Only important notifications are placed on the calendar."""

    kind = CalendarType.notification

    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        data = await self._get(self._endpoints.notifications)
        events: list[CalendarEvent] = []
        for notification in self._as_items(data):
            if not self.is_calendar_worthy(notification):
                continue
            event = self._notification_to_event(notification)
            if event is not None:
                events.append(event)
        return self._in_range(events, time_range)

    @staticmethod
    def is_calendar_worthy(notification: dict[str, Any]) -> bool:
        return (
            notification.get("priority") == "high"
            or notification.get("type") == "emergency"
            or notification.get("is_important") is True
        )

    @staticmethod
    def format_description(notification: dict[str, Any]) -> str:
        description = _text(notification.get("message"), notification.get("body")) or ""
        category = _text(notification.get("category"))
        if category:
            description = f"Category: {category}\n\n{description}"
        sender = _text(notification.get("sender"), notification.get("from"))
        if sender:
            description += f"\n\nFrom: {sender}"
        if notification.get("priority") == "high":
            description = f"HIGH PRIORITY\n\n{description}"
        return description.strip()

    def _notification_to_event(self, notification: dict[str, Any]) -> CalendarEvent | None:
        notification_id = _coerce_id(notification.get("id"))
        if notification_id is None:
            logger.warning("Skipping notification without an id")
            return None
        try:
            created, _ = parse_boundary(
                notification.get("created_at") or notification.get("date"), self._zone
            )
        except ValueError as exc:
            logger.warning("Skipping notification %s: %s", notification_id, exc)
            return None

        day = local_midnight(created.astimezone(self._zone).date(), self._zone)
        sub_type = _text(notification.get("type")) or "general"
        return self._build(
            id=f"notification_{notification_id}",
            title=_text(notification.get("title"), notification.get("message")) or "Notification",
            start_time=day,
            end_time=day,
            all_day=True,
            branch_id=notification.get("branch_id"),
            description=self.format_description(notification),
            priority=_coerce_priority(notification.get("priority")),
            source="Notifications",
            sub_type=sub_type,
            recipient_id=notification.get("recipient_id"),
            recipient_type=_text(notification.get("recipient_type")),
            is_public=notification.get("is_public") is True,
        )


# (payload key, id prefix and sub-type, source label, fallback title)
BRANCH_FEEDS: tuple[tuple[str, str, str, str], ...] = (
    ("google_calendar_events", "google", "Google Calendar", "Untitled Event"),
    ("local_global_events", "local_global", "School Events", "School Event"),
    ("academic_calendar_events", "academic", "Academic Calendar", "Academic Event"),
)

# Personal event category -> (title marker, source label)
PERSONAL_CATEGORIES: dict[str, tuple[str, str]] = {
    "homework": ("📚", "Homework"),
    "exam": ("📝", "Exams"),
    "birthday": ("🎂", "Birthdays"),
}


def _parse_day(value: Any) -> date:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"expected a YYYY-MM-DD date, got {value!r}")
    return date.fromisoformat(value.strip()[:10])


def _parse_time_of_day(value: Any, default: time) -> time:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if not isinstance(value, str):
        raise ValueError(f"invalid time of day: {value!r}")
    return time.fromisoformat(value.strip())


class BranchCalendarSource(_BackendEventSource):
    """The backend's per-branch bundle of Google, school-wide and academic events.

    Each branch carries three lists under ``calendar_data``; every item is
    tagged with the branch it was listed under.  All-day items span local
    midnights, timed items default to the whole day when a clock time is
    missing.
    """

    kind = CalendarType.branch_calendar

    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        payload = await self._get_payload(
            self._endpoints.calendar_data, self._date_params(time_range)
        )
        branches = payload.get("branches")
        if branches is None and isinstance(payload.get("data"), dict):
            branches = payload["data"].get("branches")
        if not isinstance(branches, list):
            logger.debug("Branch calendar feed returned no branches")
            return []

        events: list[CalendarEvent] = []
        for branch in branches:
            if not isinstance(branch, dict) or not isinstance(branch.get("calendar_data"), dict):
                continue
            branch_id = _coerce_id(branch.get("branch_id"))
            calendar_data = branch["calendar_data"]
            for key, prefix, label, fallback_title in BRANCH_FEEDS:
                items = calendar_data.get(key)
                if not isinstance(items, list):
                    continue
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    event = self._item_to_event(item, branch_id, prefix, label, fallback_title)
                    if event is not None:
                        events.append(event)
        return self._in_range(events, time_range)

    def _item_to_event(
        self,
        item: dict[str, Any],
        branch_id: str | None,
        prefix: str,
        label: str,
        fallback_title: str,
    ) -> CalendarEvent | None:
        item_id = _coerce_id(item.get("id"))
        if item_id is None:
            logger.warning("Skipping %s feed event without an id", prefix)
            return None

        all_day = item.get("is_all_day") is True
        try:
            start_day = _parse_day(item.get("start_date"))
            end_day = _parse_day(item.get("end_date") or item.get("start_date"))
            if all_day:
                start = local_midnight(start_day, self._zone)
                end = local_midnight(end_day, self._zone)
            else:
                start_clock = _parse_time_of_day(item.get("start_time"), time(0, 0))
                end_clock = _parse_time_of_day(item.get("end_time"), time(23, 59, 59))
                start = datetime.combine(start_day, start_clock, tzinfo=self._zone)
                end = datetime.combine(end_day, end_clock, tzinfo=self._zone)
        except ValueError as exc:
            logger.warning("Skipping %s feed event %s: %s", prefix, item_id, exc)
            return None

        return self._build(
            id=f"{prefix}_{item_id}",
            title=_text(item.get("title")) or fallback_title,
            start_time=start,
            end_time=max(start, end),
            all_day=all_day,
            branch_id=branch_id,
            location=_text(item.get("location")) or "",
            description=_text(item.get("description")) or "",
            source=label,
            sub_type=prefix,
            created_by=item.get("created_by"),
        )


class PersonalEventsSource(_BackendEventSource):
    """Homework, exams and birthdays the backend compiles for the signed-in user."""

    kind = CalendarType.personal

    async def fetch_events(self, time_range: TimeRange) -> list[CalendarEvent]:
        payload = await self._get_payload(
            self._endpoints.personal_events, self._date_params(time_range)
        )
        items = payload.get("personal_events")
        if items is None:
            items = payload.get("data")

        events: list[CalendarEvent] = []
        for item in self._as_items(items):
            event = self._item_to_event(item)
            if event is not None:
                events.append(event)
        return self._in_range(events, time_range)

    @staticmethod
    def personal_color(category: str | None, priority: Priority) -> str:
        if priority is Priority.high:
            return URGENT_PERSONAL_COLORS.get(category or "", URGENT_PERSONAL_DEFAULT)
        return event_color(CalendarType.personal, category)

    def _item_to_event(self, item: dict[str, Any]) -> CalendarEvent | None:
        raw_id = _coerce_id(item.get("id"))
        if raw_id is None:
            logger.warning("Skipping personal event without an id")
            return None
        # Bare numeric ids would collide with other feeds' numbering.
        event_id = f"personal_{raw_id}" if raw_id.isdigit() else raw_id

        start_clock_raw = item.get("start_time")
        all_day = not (isinstance(start_clock_raw, str) and start_clock_raw.strip())
        try:
            start_day = _parse_day(item.get("start_date"))
            end_day = _parse_day(item.get("end_date") or item.get("start_date"))
            start = datetime.combine(
                start_day, _parse_time_of_day(start_clock_raw, time(0, 0)), tzinfo=self._zone
            )
            if all_day:
                end = local_midnight(end_day, self._zone)
            else:
                end_clock = _parse_time_of_day(item.get("end_time"), time(23, 59, 59))
                end = datetime.combine(end_day, end_clock, tzinfo=self._zone)
        except ValueError as exc:
            logger.warning("Skipping personal event %s: %s", raw_id, exc)
            return None

        category = _text(item.get("category")) or "personal"
        marker, label = PERSONAL_CATEGORIES.get(category, (None, "Personal"))
        title = _text(item.get("title")) or "Personal event"
        priority = _coerce_priority(item.get("priority"))
        return self._build(
            id=event_id,
            title=f"{marker} {title}" if marker else title,
            start_time=start,
            end_time=max(start, end),
            all_day=all_day,
            branch_id=item.get("branch_id"),
            student_id=item.get("student_id"),
            location=_text(item.get("location")) or "",
            description=_text(item.get("description")) or "",
            priority=priority,
            source=label,
            sub_type=_text(item.get("source")) or category,
            color=self.personal_color(category, priority),
        )
