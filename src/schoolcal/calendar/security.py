"""Role and branch checks applied to aggregated calendar events.

All predicates are pure functions of the user context and school config; the
sign-in rate limiter is the only stateful piece and keeps its state in
process memory.
"""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from collections.abc import Callable, Iterable

from schoolcal.calendar.errors import RateLimitExceededError
from schoolcal.calendar.models import (
    CROSS_BRANCH_ROLES,
    STAFF_TIER,
    CalendarEvent,
    CalendarType,
    SchoolConfig,
    UserContext,
    UserType,
)

logger = logging.getLogger(__name__)

EVENT_WRITE_PERMISSIONS = frozenset({"can_manage_events", "can_create_homework"})

_SCRIPT_BLOCK_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"""\s*on\w+\s*=\s*["'][^"']*["']""", re.IGNORECASE)
_JAVASCRIPT_URI_RE = re.compile(r"\s*javascript\s*:", re.IGNORECASE)
_STYLE_ATTR_RE = re.compile(r"""\s*style\s*=\s*["'][^"']*["']""", re.IGNORECASE)


def _google_enabled(config: SchoolConfig | None) -> bool:
    return config is not None and config.has_google_workspace and config.features.google_calendar


class CalendarSecurityService:
    """Stateless permission predicates for calendar access."""

    @staticmethod
    def can_access_google_calendar(user: UserContext, config: SchoolConfig | None) -> bool:
        if not _google_enabled(config):
            return False
        if user.user_type in STAFF_TIER:
            return True
        if user.user_type is UserType.student:
            return config.features.student_google_calendar
        if user.user_type is UserType.parent:
            return config.features.parent_google_calendar
        return False

    @staticmethod
    def can_create_calendar_events(user: UserContext, config: SchoolConfig | None) -> bool:
        """Staff-tier users may write when the school runs Google in write mode.

        Teachers and staff additionally need an event-writing permission;
        admins and heads only need the school to allow writes.
        """
        if user.user_type not in STAFF_TIER:
            return False
        if not _google_enabled(config) or config.features.google_calendar_read_only is not False:
            return False
        if user.user_type in {UserType.teacher, UserType.staff}:
            return bool(user.permissions & EVENT_WRITE_PERMISSIONS)
        return True

    @staticmethod
    def can_access_branch(user: UserContext, branch_id: str | None) -> bool:
        if branch_id is None:
            return True
        if user.user_type in CROSS_BRANCH_ROLES:
            return True
        return branch_id in user.accessible_branches

    @classmethod
    def can_view_event(
        cls,
        user: UserContext,
        event: CalendarEvent,
        config: SchoolConfig | None,
    ) -> bool:
        """Branch isolation first, then the per-type audience rules.

        Unassigned events (no student, teacher or recipient) are visible to
        everyone who can see the branch.
        """
        if not cls.can_access_branch(user, event.branch_id):
            return False
        if event.calendar_type is CalendarType.google:
            return cls.can_access_google_calendar(user, config)
        if event.calendar_type is CalendarType.homework:
            if user.user_type is not UserType.student or event.student_id is None:
                return True
            if event.student_id == user.user_id:
                return True
            return event.class_id is not None and event.class_id == user.class_id
        if event.calendar_type is CalendarType.timetable:
            if user.user_type is UserType.teacher and event.teacher_id is not None:
                return event.teacher_id == user.user_id
            if user.user_type is UserType.student and event.student_id is not None:
                return event.student_id == user.user_id
            return True
        if event.calendar_type is CalendarType.notification:
            if event.is_public or (event.recipient_id is None and event.recipient_type is None):
                return True
            return (
                event.recipient_id == user.user_id
                or event.recipient_type == user.user_type.value
            )
        return True

    @classmethod
    def can_edit_event(
        cls,
        user: UserContext,
        event: CalendarEvent,
        config: SchoolConfig | None,
    ) -> bool:
        """Admins edit anything; otherwise only the event's author may.

        Timetable slots and backend feeds are admin-only.  Google events also
        need the school to run Google Calendar in write mode.
        """
        if user.user_type is UserType.admin:
            return True
        if not cls.can_access_branch(user, event.branch_id):
            return False
        if event.calendar_type is CalendarType.google:
            return (
                cls.can_create_calendar_events(user, config)
                and user.email is not None
                and event.creator_email is not None
                and event.creator_email.lower() == user.email.lower()
            )
        if event.calendar_type is CalendarType.homework:
            return user.user_type is UserType.teacher and user.user_id in (
                event.teacher_id,
                event.created_by,
            )
        if event.calendar_type is CalendarType.school_event:
            return event.created_by == user.user_id
        return False

    @classmethod
    def can_delete_event(
        cls,
        user: UserContext,
        event: CalendarEvent,
        config: SchoolConfig | None,
    ) -> bool:
        return cls.can_edit_event(user, event, config)

    @classmethod
    def filter_events_for_user(
        cls,
        events: Iterable[CalendarEvent],
        user: UserContext,
        config: SchoolConfig | None,
    ) -> list[CalendarEvent]:
        visible: list[CalendarEvent] = []
        hidden = 0
        for event in events:
            if cls.can_view_event(user, event, config):
                visible.append(event)
            else:
                hidden += 1
        if hidden:
            logger.debug("Filtered %d events not visible to user %s", hidden, user.user_id)
        return visible

    @staticmethod
    def sanitize_html(text: str | None) -> str:
        """Strip script blocks, inline handlers, ``javascript:`` and style attributes."""
        if not isinstance(text, str):
            return ""
        text = _SCRIPT_BLOCK_RE.sub("", text)
        text = _EVENT_HANDLER_RE.sub("", text)
        text = _JAVASCRIPT_URI_RE.sub("", text)
        return _STYLE_ATTR_RE.sub("", text)

    @classmethod
    def sanitize_event(cls, event: CalendarEvent) -> CalendarEvent:
        title = cls.sanitize_html(event.title)
        description = cls.sanitize_html(event.description)
        if title == event.title and description == event.description:
            return event
        return event.model_copy(update={"title": title, "description": description})

    @staticmethod
    def validate_google_calendar_domain(email: str | None, config: SchoolConfig | None) -> bool:
        if not email or config is None or not config.domain:
            return False
        return email.strip().lower().endswith(f"@{config.domain.lower()}")


class SignInRateLimiter:
    """Sliding-window limiter for interactive Google sign-in attempts."""

    def __init__(
        self,
        max_attempts: int = 10,
        window_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._clock = clock
        self._attempts: dict[str, deque[float]] = {}

    def _prune(self, user_id: str, now: float) -> deque[float]:
        attempts = self._attempts.setdefault(user_id, deque())
        while attempts and now - attempts[0] >= self._window_seconds:
            attempts.popleft()
        return attempts

    def check(self, user_id: str) -> None:
        """Record one attempt for *user_id*.

        Raises
        ------
        RateLimitExceededError
            If the user already used every attempt in the current window.
        """
        now = self._clock()
        attempts = self._prune(user_id, now)
        if len(attempts) >= self._max_attempts:
            logger.warning("Sign-in rate limit exceeded for user %s", user_id)
            raise RateLimitExceededError(
                f"Too many sign-in attempts; retry in {self.retry_after(user_id):.0f}s"
            )
        attempts.append(now)

    def remaining(self, user_id: str) -> int:
        attempts = self._prune(user_id, self._clock())
        return max(self._max_attempts - len(attempts), 0)

    def retry_after(self, user_id: str) -> float:
        """Seconds until the oldest attempt leaves the window (0 if not limited)."""
        now = self._clock()
        attempts = self._prune(user_id, now)
        if len(attempts) < self._max_attempts:
            return 0.0
        return max(self._window_seconds - (now - attempts[0]), 0.0)

    def reset(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._attempts.clear()
        else:
            self._attempts.pop(user_id, None)
