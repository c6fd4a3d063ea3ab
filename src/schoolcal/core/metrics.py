"""OpenTelemetry metrics instruments for the calendar aggregation core.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.  When no provider is installed the
API falls back to a no-op MeterProvider and all recordings are silent.

Instruments
-----------
  schoolcal.cache.lookups_total       Counter  (label: result=hit|miss|stale)
      Event cache lookups by outcome.

  schoolcal.source.failures_total     Counter  (label: source)
      Source adapter fetches that failed and contributed no events.

  schoolcal.source.fetch_duration_ms  Histogram (label: source)
      Wall-clock duration of a single source fetch in milliseconds.
"""

from __future__ import annotations

import logging

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "schoolcal"


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op if unset)."""
    return metrics.get_meter(_METER_NAME)


def _cache_lookups_total() -> metrics.Counter:
    """Counter: cache lookups (label: result=hit|miss|stale)."""
    return get_meter().create_counter(
        name="schoolcal.cache.lookups_total",
        description="Event cache lookups by outcome",
        unit="lookups",
    )


def _source_failures_total() -> metrics.Counter:
    """Counter: failed source fetches (label: source)."""
    return get_meter().create_counter(
        name="schoolcal.source.failures_total",
        description="Source adapter fetches that failed and contributed no events",
        unit="failures",
    )


def _source_fetch_duration_ms() -> metrics.Histogram:
    """Histogram: per-source fetch duration in milliseconds."""
    return get_meter().create_histogram(
        name="schoolcal.source.fetch_duration_ms",
        description="Duration of a single source adapter fetch in milliseconds",
        unit="ms",
    )


class CalendarMetrics:
    """Convenience wrapper that caches instruments per school.

    Safe to construct before a MeterProvider is installed; instruments are
    resolved on first use.
    """

    def __init__(self, school_id: str | None = None) -> None:
        self._attrs = {"school": school_id or "unknown"}
        self.__cache_lookups: metrics.Counter | None = None
        self.__source_failures: metrics.Counter | None = None
        self.__fetch_duration: metrics.Histogram | None = None

    @property
    def _cache_lookups(self) -> metrics.Counter:
        if self.__cache_lookups is None:
            self.__cache_lookups = _cache_lookups_total()
        return self.__cache_lookups

    @property
    def _source_failures(self) -> metrics.Counter:
        if self.__source_failures is None:
            self.__source_failures = _source_failures_total()
        return self.__source_failures

    @property
    def _fetch_duration(self) -> metrics.Histogram:
        if self.__fetch_duration is None:
            self.__fetch_duration = _source_fetch_duration_ms()
        return self.__fetch_duration

    def record_cache_lookup(self, result: str) -> None:
        self._cache_lookups.add(1, {**self._attrs, "result": result})

    def record_source_failure(self, source: str) -> None:
        self._source_failures.add(1, {**self._attrs, "source": source})

    def record_fetch_duration(self, source: str, duration_ms: float) -> None:
        self._fetch_duration.record(duration_ms, {**self._attrs, "source": source})
