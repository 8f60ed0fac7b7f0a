"""Aggregated result of a fetch run.

Collects every CVE yielded by the pages into a set keyed by CVE id and
serializes the run as::

    {"success": true, "reason": null, "lastModifiedDate": "...",
     "count": 1234, "cves": [...]}

``None`` fields are omitted from the written file.
"""

import datetime as dt
import gzip
import json
from pathlib import Path
from typing import Any, Iterable

from .models import CveItem, DefCveItem


class CveOutput:
    """Deduplicating collector for CVE records.

    A CVE id that has already been collected is ignored on later pages, so
    replaying a page after ``reset_last_call`` is harmless.

    Attributes:
        success: Whether the run fetched everything it was asked to.
        reason: Failure reason when ``success`` is false.
        last_modified_date: UTC timestamp reported by the API.
    """

    def __init__(self):
        self._cves: dict[str, CveItem] = {}
        self.success: bool = False
        self.reason: str | None = None
        self.last_modified_date: dt.datetime | None = None

    @property
    def count(self) -> int:
        return len(self._cves)

    @property
    def cves(self) -> list[CveItem]:
        return list(self._cves.values())

    def __contains__(self, cve_id: str) -> bool:
        return cve_id in self._cves

    def add_all(self, items: Iterable[DefCveItem] | None) -> None:
        """Fold a page of CVE wrappers into the set.

        Args:
            items: Page returned by ``NvdCveApi.next_page()``; ``None`` is
                accepted and ignored.
        """
        if items is None:
            return
        for item in items:
            self._cves.setdefault(item.cve.id, item.cve)

    def set_last_modified(self, epoch_seconds: int) -> None:
        self.last_modified_date = dt.datetime.fromtimestamp(epoch_seconds, tz=dt.timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "reason": self.reason,
            "lastModifiedDate": (
                self.last_modified_date.replace(tzinfo=None).isoformat() if self.last_modified_date else None
            ),
            "count": self.count,
            "cves": [c.model_dump(mode="json", by_alias=True, exclude_none=True) for c in self._cves.values()],
        }
        return {k: v for k, v in data.items() if v is not None}

    def write(self, path: Path, pretty: bool = False) -> None:
        """Write the output atomically (write-then-rename).

        A path ending in ``.gz`` is gzip-compressed.

        Args:
            path: Destination file.
            pretty: Indent the JSON.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(self.to_dict(), indent=2 if pretty else None)
        tmp = path.with_suffix(path.suffix + ".tmp")
        if path.suffix == ".gz":
            with gzip.open(tmp, "wt", encoding="utf-8") as f:
                f.write(text)
        else:
            with tmp.open("w", encoding="utf-8") as f:
                f.write(text)
        tmp.replace(path)
