"""Data model shared by the calendar sources, cache and aggregation service."""

from __future__ import annotations

from datetime import datetime, tzinfo
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CalendarType(StrEnum):
    """Origin family of a normalized event."""

    google = "google"
    timetable = "timetable"
    homework = "homework"
    school_event = "schoolEvent"
    notification = "notification"
    branch_calendar = "branchCalendar"
    personal = "personal"


# Fixed fetch/merge order; the first source wins when two produce the same id.
SOURCE_ORDER: tuple[CalendarType, ...] = (
    CalendarType.google,
    CalendarType.branch_calendar,
    CalendarType.timetable,
    CalendarType.homework,
    CalendarType.personal,
    CalendarType.school_event,
    CalendarType.notification,
)


class Priority(StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


class UserType(StrEnum):
    """Portal role of the signed-in user."""

    student = "student"
    parent = "parent"
    teacher = "teacher"
    staff = "staff"
    admin = "admin"
    head_of_section = "head_of_section"
    head_of_school = "head_of_school"


STAFF_TIER: frozenset[UserType] = frozenset(
    {
        UserType.teacher,
        UserType.staff,
        UserType.admin,
        UserType.head_of_section,
        UserType.head_of_school,
    }
)
CROSS_BRANCH_ROLES: frozenset[UserType] = frozenset({UserType.admin, UserType.head_of_school})


def _coerce_optional_id(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return value


def resolve_zone(name: str | None) -> tzinfo:
    """Return the IANA zone for *name*, or raise ``ValueError`` for unknown names."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"timezone must be a valid IANA timezone: {name}") from exc


class CalendarEvent(BaseModel):
    """Canonical event shape produced by every source adapter."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    title: str
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    calendar_type: CalendarType
    branch_id: str | None = None
    location: str = ""
    description: str = ""
    student_id: str | None = None
    teacher_id: str | None = None
    class_id: str | None = None
    recipient_id: str | None = None
    recipient_type: str | None = None
    is_public: bool = False
    created_by: str | None = None
    creator_email: str | None = None
    priority: Priority = Priority.medium
    source: str
    sub_type: str | None = None
    color: str | None = None
    read_only: bool = True

    @field_validator(
        "branch_id",
        "student_id",
        "teacher_id",
        "class_id",
        "recipient_id",
        "created_by",
        mode="before",
    )
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _coerce_optional_id(value)

    @model_validator(mode="after")
    def _validate_boundaries(self) -> CalendarEvent:
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise ValueError(f"event '{self.id}' boundaries must be timezone-aware")
        if self.start_time > self.end_time:
            raise ValueError(f"event '{self.id}' ends before it starts")
        return self

    def sort_key(self) -> tuple[datetime, str, str, str]:
        return (self.start_time, self.calendar_type.value, self.title, self.id)


class BranchCalendarIds(BaseModel):
    """Per-branch Google calendar identifiers."""

    model_config = ConfigDict(extra="ignore")

    academic: str | None = None
    events: str | None = None


class GoogleConfig(BaseModel):
    """Google Workspace credentials and calendar mapping for one school."""

    model_config = ConfigDict(extra="ignore")

    api_key: str | None = None
    client_id: str | None = None
    calendar_ids: dict[str, str] = Field(default_factory=dict)
    branch_calendars: dict[str, BranchCalendarIds] = Field(default_factory=dict)

    @field_validator("branch_calendars", mode="before")
    @classmethod
    def _stringify_branch_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(key): item for key, item in value.items()}
        return value


class SchoolFeatures(BaseModel):
    """Feature switches enabled for a school."""

    model_config = ConfigDict(extra="ignore")

    google_calendar: bool = False
    google_calendar_read_only: bool | None = True
    student_google_calendar: bool = True
    parent_google_calendar: bool = True
    timetable: bool = True
    homework: bool = True
    school_events: bool = True
    notifications: bool = True
    # Opt-in backend feeds: the per-branch calendar bundle and personal events.
    branch_calendar: bool = False
    personal_events: bool = False


class SchoolConfig(BaseModel):
    """Tenant configuration resolved once at login."""

    model_config = ConfigDict(extra="ignore")

    school_id: str = Field(min_length=1)
    name: str
    domain: str | None = None
    has_google_workspace: bool = False
    features: SchoolFeatures = Field(default_factory=SchoolFeatures)
    google_config: GoogleConfig | None = None
    username_prefixes: list[str] = Field(default_factory=list)
    branch_name_keywords: list[str] = Field(default_factory=list)
    branch_codes: list[str] = Field(default_factory=list)

    @field_validator("branch_codes", mode="before")
    @classmethod
    def _stringify_branch_codes(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item).strip().lower() for item in value]
        return value


class UserContext(BaseModel):
    """Identity of the session owner, threaded explicitly through every call."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    user_type: UserType
    auth_code: str | None = None
    branch_id: str | None = None
    branch_ids: frozenset[str] = frozenset()
    branch_name: str | None = None
    email: str | None = None
    class_id: str | None = None
    # ``None`` defers to the deployment default applied by CalendarService.
    timezone: str | None = None
    permissions: frozenset[str] = frozenset()

    @field_validator("user_id", "branch_id", "class_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _coerce_optional_id(value)

    @field_validator("branch_ids", mode="before")
    @classmethod
    def _normalize_branch_ids(cls, value: Any) -> Any:
        if isinstance(value, list | tuple | set | frozenset):
            return frozenset(str(item) for item in value if item is not None)
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        if value is not None:
            resolve_zone(value)
        return value

    @property
    def zone(self) -> tzinfo:
        return resolve_zone(self.timezone)

    @property
    def accessible_branches(self) -> frozenset[str]:
        if self.branch_id is None:
            return self.branch_ids
        return self.branch_ids | {self.branch_id}

    @property
    def is_staff(self) -> bool:
        return self.user_type in STAFF_TIER


class TimeRange(BaseModel):
    """Half-open ``[start, end)`` window handed to source adapters."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def overlaps(self, event: CalendarEvent) -> bool:
        # Zero-length events sitting exactly on ``start`` still count; events
        # whose exclusive end touches ``start`` do not.
        if event.start_time >= self.end:
            return False
        return event.end_time > self.start or event.start_time >= self.start


class EventQuery(BaseModel):
    """Options for ``CalendarService.get_all_events``."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    include_google: bool = True
    include_timetable: bool = True
    include_homework: bool = True
    include_school_events: bool = True
    include_notifications: bool = True
    include_branch_calendar: bool = True
    include_personal: bool = True
    force_refresh: bool = False

    def source_flags(self) -> dict[CalendarType, bool]:
        return {
            CalendarType.google: self.include_google,
            CalendarType.timetable: self.include_timetable,
            CalendarType.homework: self.include_homework,
            CalendarType.school_event: self.include_school_events,
            CalendarType.notification: self.include_notifications,
            CalendarType.branch_calendar: self.include_branch_calendar,
            CalendarType.personal: self.include_personal,
        }


class CacheStats(BaseModel):
    """Diagnostic snapshot of the event cache; not authoritative."""

    entries: int
    hits: int
    misses: int
    hit_rate: float
    oldest_entry: datetime | None = None
    ttl_seconds: float


class SourceReport(BaseModel):
    """Which sources were requested, merged and failed in the last aggregation."""

    requested: frozenset[CalendarType] = frozenset()
    included: frozenset[CalendarType] = frozenset()
    failed: frozenset[CalendarType] = frozenset()

    @property
    def missing(self) -> frozenset[CalendarType]:
        return self.requested - self.included


class GoogleAccount(BaseModel):
    email: str
    name: str | None = None


class BranchInfo(BaseModel):
    branch_id: str
    branch_name: str
    user_type: UserType
    calendars_access: list[str] = Field(default_factory=list)
