"""Session-scoped key-value store for the signed-in user.

The store holds what the login flow persisted (``authCode``, ``userType``,
``branchId`` …) and the resolved school configuration.  The calendar core
only reads the user context through :func:`load_user_context`; it never
writes session data itself.
"""

from __future__ import annotations

import abc
import copy
import logging
from typing import Any

from pydantic import ValidationError

from schoolcal.calendar.models import UserContext

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "session::user"
SESSION_SCHOOL_CONFIG_KEY = "session::school_config"


class SessionStore(abc.ABC):
    """Async key-value store scoped to one signed-in session."""

    @abc.abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value for *key*, or ``None`` if absent."""
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-compatible *value* under *key*."""
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key*; missing keys are ignored."""
        ...

    @abc.abstractmethod
    async def clear(self) -> None:
        """Drop every key (logout)."""
        ...


class InMemorySessionStore(SessionStore):
    """Process-local session store; values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()


def _normalize_session_user(raw: dict[str, Any]) -> dict[str, Any]:
    """Map the login payload's mixed camelCase / snake_case keys onto UserContext fields."""
    branch = raw.get("branch") if isinstance(raw.get("branch"), dict) else {}

    def _first(*keys: str, source: dict[str, Any] = raw) -> Any:
        for key in keys:
            if source.get(key) is not None:
                return source[key]
        return None

    permissions = raw.get("permissions") or {}
    if isinstance(permissions, dict):
        permissions = [name for name, granted in permissions.items() if granted]

    return {
        "user_id": _first("user_id", "userId", "id"),
        "user_type": _first("user_type", "userType"),
        "auth_code": _first("auth_code", "authCode"),
        "branch_id": _first("branch_id", "branchId") or _first("branch_id", source=branch),
        "branch_ids": _first("branch_ids", "branchIds") or [],
        "branch_name": _first("branch_name", "branchName") or _first("branch_name", source=branch),
        "email": _first("email"),
        "class_id": _first("class_id", "classId"),
        "timezone": _first("timezone"),
        "permissions": permissions,
    }


async def load_user_context(store: SessionStore) -> UserContext | None:
    """Build the UserContext persisted by the login flow, or ``None`` when signed out."""
    raw = await store.get(SESSION_USER_KEY)
    if not isinstance(raw, dict):
        return None
    try:
        return UserContext.model_validate(_normalize_session_user(raw))
    except ValidationError as exc:
        logger.warning("Ignoring malformed session user payload: %s", exc.error_count())
        return None
