"""Fluent builder for ``NvdCveApi``.

Collects the query filters and client options in one place and checks
the constraints the NVD enforces server-side (date ranges of at most 120
days, page size of at most 2000) before a request is ever sent.

Example::

    api = (
        NvdCveApiBuilder()
        .with_api_key(os.environ.get("NVD_API_KEY"))
        .with_last_modified_filter(start, end)
        .with_no_rejected()
        .build()
    )
"""

import datetime as dt
from enum import Enum

from .api import MAX_RESULTS_PER_PAGE, NvdCveApi

MAX_DATE_RANGE = dt.timedelta(days=120)

CVSS_V3_SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


class Filter(str, Enum):
    """Query parameters understood by the CVE API 2.0."""

    CPE_NAME = "cpeName"
    CVE_ID = "cveId"
    CVSS_V3_SEVERITY = "cvssV3Severity"
    CWE_ID = "cweId"
    HAS_KEV = "hasKev"
    IS_VULNERABLE = "isVulnerable"
    KEYWORD_EXACT_MATCH = "keywordExactMatch"
    KEYWORD_SEARCH = "keywordSearch"
    LAST_MOD_START_DATE = "lastModStartDate"
    LAST_MOD_END_DATE = "lastModEndDate"
    NO_REJECTED = "noRejected"
    PUB_START_DATE = "pubStartDate"
    PUB_END_DATE = "pubEndDate"
    SOURCE_IDENTIFIER = "sourceIdentifier"


def to_utc(value: dt.datetime | int | float) -> dt.datetime:
    """Coerce a datetime or epoch seconds to an aware UTC datetime."""
    if isinstance(value, (int, float)):
        return dt.datetime.fromtimestamp(value, tz=dt.timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def format_nvd_datetime(value: dt.datetime | int | float) -> str:
    """Format a timestamp the way the NVD expects it (ISO-8601, ms, offset)."""
    return to_utc(value).isoformat(timespec="milliseconds")


class NvdCveApiBuilder:
    """Builder for ``NvdCveApi`` instances."""

    def __init__(self):
        self._api_key: str | None = None
        self._endpoint: str | None = None
        self._delay_ms: int | None = None
        self._results_per_page: int | None = None
        self._max_retries: int | None = None
        self._filters: list[tuple[str, str | None]] = []

    def with_api_key(self, api_key: str | None) -> "NvdCveApiBuilder":
        self._api_key = api_key or None
        return self

    def with_endpoint(self, endpoint: str | None) -> "NvdCveApiBuilder":
        self._endpoint = endpoint
        return self

    def with_delay(self, delay_ms: int) -> "NvdCveApiBuilder":
        """Minimum milliseconds between requests.

        The NVD recommends about six seconds between requests without an
        API key.
        """
        if delay_ms < 0:
            raise ValueError("delay must not be negative")
        self._delay_ms = delay_ms
        return self

    def with_results_per_page(self, results_per_page: int) -> "NvdCveApiBuilder":
        if not 1 <= results_per_page <= MAX_RESULTS_PER_PAGE:
            raise ValueError(f"results per page must be between 1 and {MAX_RESULTS_PER_PAGE}")
        self._results_per_page = results_per_page
        return self

    def with_max_retries(self, max_retries: int) -> "NvdCveApiBuilder":
        if max_retries < 1:
            raise ValueError("max retries must be at least 1")
        self._max_retries = max_retries
        return self

    def with_filter(self, name: Filter | str, value: str | None = None) -> "NvdCveApiBuilder":
        """Add a raw query filter; ``value=None`` sends a bare flag."""
        key = name.value if isinstance(name, Filter) else str(name)
        self._filters.append((key, value))
        return self

    def _with_date_range(
        self,
        start_filter: Filter,
        end_filter: Filter,
        start: dt.datetime | int | float,
        end: dt.datetime | int | float | None,
    ) -> "NvdCveApiBuilder":
        start_utc = to_utc(start)
        end_utc = to_utc(end) if end is not None else dt.datetime.now(dt.timezone.utc)
        if end_utc < start_utc:
            raise ValueError(f"{start_filter.value} must not be after {end_filter.value}")
        if end_utc - start_utc > MAX_DATE_RANGE:
            raise ValueError(f"The NVD allows at most {MAX_DATE_RANGE.days} days between start and end dates")
        self.with_filter(start_filter, format_nvd_datetime(start_utc))
        self.with_filter(end_filter, format_nvd_datetime(end_utc))
        return self

    def with_last_modified_filter(
        self,
        start: dt.datetime | int | float,
        end: dt.datetime | int | float | None = None,
    ) -> "NvdCveApiBuilder":
        """Only return CVEs modified between ``start`` and ``end``.

        Args:
            start: Start of the range; a datetime or UTC epoch seconds such
                as ``NvdCveApi.last_modified`` from a previous run.
            end: End of the range; defaults to now.

        Raises:
            ValueError: If the range is inverted or longer than 120 days.
        """
        return self._with_date_range(Filter.LAST_MOD_START_DATE, Filter.LAST_MOD_END_DATE, start, end)

    def with_published_date_filter(
        self,
        start: dt.datetime | int | float,
        end: dt.datetime | int | float | None = None,
    ) -> "NvdCveApiBuilder":
        return self._with_date_range(Filter.PUB_START_DATE, Filter.PUB_END_DATE, start, end)

    def with_no_rejected(self) -> "NvdCveApiBuilder":
        return self.with_filter(Filter.NO_REJECTED)

    def with_has_kev(self) -> "NvdCveApiBuilder":
        return self.with_filter(Filter.HAS_KEV)

    def with_keyword_search(self, keywords: str, exact_match: bool = False) -> "NvdCveApiBuilder":
        self.with_filter(Filter.KEYWORD_SEARCH, keywords)
        if exact_match:
            self.with_filter(Filter.KEYWORD_EXACT_MATCH)
        return self

    def with_cve_id(self, cve_id: str) -> "NvdCveApiBuilder":
        return self.with_filter(Filter.CVE_ID, cve_id.strip().upper())

    def with_cpe_name(self, cpe_name: str) -> "NvdCveApiBuilder":
        return self.with_filter(Filter.CPE_NAME, cpe_name)

    def with_cvss_v3_severity(self, severity: str) -> "NvdCveApiBuilder":
        sev = severity.strip().upper()
        if sev not in CVSS_V3_SEVERITIES:
            raise ValueError(f"Unknown CVSS v3 severity {severity!r}; expected one of {', '.join(CVSS_V3_SEVERITIES)}")
        return self.with_filter(Filter.CVSS_V3_SEVERITY, sev)

    def build(self) -> NvdCveApi:
        """Create the configured ``NvdCveApi``."""
        kwargs = {}
        if self._results_per_page is not None:
            kwargs["results_per_page"] = self._results_per_page
        return NvdCveApi(
            api_key=self._api_key,
            endpoint=self._endpoint,
            filters=list(self._filters),
            delay_ms=self._delay_ms,
            max_retries=self._max_retries,
            **kwargs,
        )
