"""School (tenant) configuration resolution.

Resolves which school a logging-in user belongs to and which calendar
features and Google credentials that school enables.  Resolution never falls
back to another school's configuration: no match is a ConfigNotFoundError.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from schoolcal.calendar.backend import SchoolApiClient
from schoolcal.calendar.errors import ConfigNotFoundError, SourceFetchError
from schoolcal.calendar.models import SchoolConfig, UserType
from schoolcal.config import DEFAULT_SCHOOL_CONFIG_PATH, CalendarSettings
from schoolcal.core.session import SESSION_SCHOOL_CONFIG_KEY, SessionStore

logger = logging.getLogger(__name__)

# Remote school configs are reused for a day before being fetched again.
REMOTE_CONFIG_TTL = timedelta(hours=24)
DEMO_USERNAME_PREFIX = "demo_"


class SchoolConfigService:
    """Resolve and persist the active school configuration."""

    def __init__(
        self,
        schools: Mapping[str, SchoolConfig],
        session_store: SessionStore,
        api_client: SchoolApiClient | None = None,
        *,
        config_path: str = DEFAULT_SCHOOL_CONFIG_PATH,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._schools = dict(schools)
        self._session_store = session_store
        self._api_client = api_client
        self._config_path = config_path
        self._clock = clock or (lambda: datetime.now(UTC))
        self._remote_cache: dict[str, tuple[SchoolConfig, datetime]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: CalendarSettings,
        session_store: SessionStore,
        api_client: SchoolApiClient | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> SchoolConfigService:
        """Build a service over the settings' school registry and config endpoint."""
        return cls(
            settings.schools,
            session_store,
            api_client,
            config_path=settings.endpoints.school_config,
            clock=clock,
        )

    async def detect_school_from_login(
        self,
        username: str,
        user_type: UserType | str,
        auth_data: Mapping[str, Any] | None = None,
    ) -> SchoolConfig:
        """Resolve the school for a logging-in user.

        Resolution order: demo accounts, explicit ``school_id`` in the auth
        response, the first branch's name then code, the username's e-mail
        domain, and finally any configured username prefix.

        Raises
        ------
        ConfigNotFoundError
            If no known school matches.
        """
        normalized_username = username.strip().lower()
        if not normalized_username:
            raise ConfigNotFoundError("Cannot detect a school for an empty username")
        user_type = UserType(user_type)

        if normalized_username.startswith(DEMO_USERNAME_PREFIX):
            school = self._match_username_prefix(normalized_username)
            if school is not None:
                logger.info("Detected demo school %s", school.school_id)
                return school

        if auth_data:
            school_id = auth_data.get("school_id") or auth_data.get("schoolId")
            if isinstance(school_id, str) and school_id.strip():
                return await self.get_school_config(school_id.strip())

            school = self._detect_from_auth_branches(auth_data)
            if school is not None:
                logger.info("Detected school %s from auth response branches", school.school_id)
                return school

        if "@" in normalized_username:
            domain = normalized_username.rsplit("@", 1)[1]
            school = self._match_domain(domain)
            if school is not None:
                logger.info("Detected school %s from e-mail domain", school.school_id)
                return school

        school = self._match_username_prefix(normalized_username)
        if school is not None:
            logger.info("Detected school %s from username prefix", school.school_id)
            return school

        logger.warning("No school matched login for a %s user", user_type.value)
        raise ConfigNotFoundError(f"No school configuration matches user {username!r}")

    def _match_username_prefix(self, username: str) -> SchoolConfig | None:
        for school in self._schools.values():
            for prefix in school.username_prefixes:
                if prefix and username.startswith(prefix.lower()):
                    return school
        return None

    def _match_domain(self, domain: str) -> SchoolConfig | None:
        for school in self._schools.values():
            if school.domain and school.domain.lower() == domain:
                return school
        return None

    def _detect_from_auth_branches(self, auth_data: Mapping[str, Any]) -> SchoolConfig | None:
        branches = auth_data.get("branches")
        if not isinstance(branches, list) or not branches:
            return None
        first_branch = branches[0]
        if not isinstance(first_branch, dict):
            return None

        branch_name = first_branch.get("branch_name")
        if isinstance(branch_name, str) and branch_name.strip():
            lowered = branch_name.lower()
            for school in self._schools.values():
                if any(keyword.lower() in lowered for keyword in school.branch_name_keywords):
                    return school

        branch_code = first_branch.get("branch_code")
        if branch_code is not None and not isinstance(branch_code, bool):
            normalized_code = str(branch_code).strip().lower()
            for school in self._schools.values():
                if normalized_code and normalized_code in school.branch_codes:
                    return school
        return None

    async def get_school_config(self, school_id: str) -> SchoolConfig:
        """Return a school's configuration from the registry or the backend.

        Raises
        ------
        ConfigNotFoundError
            If neither the registry nor the backend knows *school_id*.
        """
        school = self._schools.get(school_id)
        if school is not None:
            return school

        cached = self._remote_cache.get(school_id)
        if cached is not None:
            config, fetched_at = cached
            if self._clock() - fetched_at < REMOTE_CONFIG_TTL:
                return config
            del self._remote_cache[school_id]

        if self._api_client is None:
            raise ConfigNotFoundError(f"Unknown school: {school_id!r}")

        try:
            data = await self._api_client.get(
                self._config_path.format(school_id=school_id),
                source="school_config",
            )
            config = SchoolConfig.model_validate(data)
        except (SourceFetchError, ValidationError) as exc:
            logger.warning("Remote config lookup for %s failed: %s", school_id, exc)
            raise ConfigNotFoundError(f"Unknown school: {school_id!r}") from exc

        if config.school_id != school_id:
            raise ConfigNotFoundError(
                f"Backend returned config for {config.school_id!r} when asked for {school_id!r}"
            )

        self._remote_cache[school_id] = (config, self._clock())
        return config

    async def save_current_school_config(self, config: SchoolConfig) -> None:
        """Persist *config* as the active school for this session."""
        await self._session_store.set(SESSION_SCHOOL_CONFIG_KEY, config.model_dump(mode="json"))
        logger.info("Saved current school config for %s", config.school_id)

    async def get_current_school_config(self) -> SchoolConfig | None:
        raw = await self._session_store.get(SESSION_SCHOOL_CONFIG_KEY)
        if raw is None:
            return None
        try:
            return SchoolConfig.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed persisted school config")
            await self._session_store.delete(SESSION_SCHOOL_CONFIG_KEY)
            return None

    async def clear_current_school_config(self) -> None:
        await self._session_store.delete(SESSION_SCHOOL_CONFIG_KEY)
