"""Pydantic models for the NVD CVE API 2.0 response envelope.

Only the fields nvdsync reads are declared; everything else in a CVE
record is preserved as extra data so it round-trips to the output file.
"""

import datetime as dt
import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ErrorKind, NvdApiError


class CveItem(BaseModel):
    """A single CVE record (``vulnerabilities[].cve``)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    source_identifier: str | None = Field(default=None, alias="sourceIdentifier")
    published: str | None = None
    last_modified: str | None = Field(default=None, alias="lastModified")
    vuln_status: str | None = Field(default=None, alias="vulnStatus")
    descriptions: list[dict[str, Any]] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)

    def description(self) -> str:
        """Return the English description, or the first one with a value."""
        for d in self.descriptions:
            if (d.get("lang") or "").lower().startswith("en") and d.get("value"):
                return str(d["value"])
        for d in self.descriptions:
            if d.get("value"):
                return str(d["value"])
        return ""

    def cvss_v3_severity(self) -> str | None:
        """Return the primary CVSS v3.x base severity, if any.

        Tries v3.1 then v3.0, preferring the ``Primary`` metric entry.
        """
        for key in ("cvssMetricV31", "cvssMetricV30"):
            entries = self.metrics.get(key) or []
            if not entries:
                continue
            chosen = next((m for m in entries if m.get("type") == "Primary"), entries[0])
            sev = (chosen.get("cvssData") or {}).get("baseSeverity")
            if sev:
                return str(sev).upper()
        return None


class DefCveItem(BaseModel):
    """Wrapper object around each CVE in the ``vulnerabilities`` array."""

    cve: CveItem


class CveApiResponse(BaseModel):
    """Top-level body of a successful ``/cves/2.0`` response."""

    model_config = ConfigDict(populate_by_name=True)

    results_per_page: int = Field(default=0, alias="resultsPerPage")
    start_index: int = Field(default=0, alias="startIndex")
    total_results: int = Field(alias="totalResults")
    format: str | None = None
    version: str | None = None
    timestamp: dt.datetime
    vulnerabilities: list[DefCveItem] = Field(default_factory=list)


@dataclass(frozen=True)
class PageResult:
    """One decoded page.

    Attributes:
        items: CVE wrappers in the order the API returned them.
        total_results: Total matches reported by the API for the query.
        last_modified: UTC epoch seconds of the response timestamp.
    """

    items: list[DefCveItem]
    total_results: int
    last_modified: int


def to_epoch_seconds(value: dt.datetime) -> int:
    """Convert a datetime to UTC epoch seconds; naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return int(value.timestamp())


def decode_page(body: str | bytes) -> PageResult:
    """Parse a response body into a ``PageResult``.

    Args:
        body: Raw JSON text of a 200 response.

    Returns:
        The decoded page.

    Raises:
        NvdApiError: ``DECODE`` if the body is not valid JSON or does not
            match the CVE API envelope.
    """
    try:
        raw = json.loads(body)
        parsed = CveApiResponse.model_validate(raw)
    except (TypeError, ValueError, ValidationError) as e:
        raise NvdApiError(ErrorKind.DECODE, f"Could not decode CVE API response: {e}") from e

    return PageResult(
        items=list(parsed.vulnerabilities),
        total_results=parsed.total_results,
        last_modified=to_epoch_seconds(parsed.timestamp),
    )
