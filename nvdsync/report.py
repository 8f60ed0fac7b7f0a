"""Markdown run summary using Jinja2 templates.

The template lives at ``nvdsync/templates/summary.md.j2``.
"""

import datetime as dt
from collections import Counter
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .output import CveOutput

_TEMPLATES_DIR = Path(__file__).parent / "templates"

SEVERITY_ORDER = ("CRITICAL", "HIGH", "MEDIUM", "LOW", "NONE")
UNSCORED = "UNSCORED"


def _now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def _short(text: str, limit: int = 120) -> str:
    text = " ".join(text.split()).replace("|", "\\|")
    return text if len(text) <= limit else text[: limit - 1] + "…"


def severity_counts(output: CveOutput) -> list[tuple[str, int]]:
    """Count collected CVEs per CVSS v3 severity, highest first.

    CVEs without a v3 score are counted as ``UNSCORED``.
    """
    counts = Counter(c.cvss_v3_severity() or UNSCORED for c in output.cves)
    ordered = [(sev, counts.pop(sev)) for sev in SEVERITY_ORDER if sev in counts]
    ordered.extend(sorted(counts.items()))
    return ordered


def _recent(output: CveOutput, limit: int) -> list[dict[str, Any]]:
    cves = sorted(output.cves, key=lambda c: c.last_modified or "", reverse=True)[:limit]
    return [
        {
            "id": c.id,
            "last_modified": c.last_modified,
            "severity": c.cvss_v3_severity(),
            "description": _short(c.description()),
        }
        for c in cves
    ]


def write_markdown_report(path: Path, output: CveOutput, recent_limit: int = 25) -> None:
    """Write a GitHub-renderable Markdown summary of a fetch run.

    Args:
        path: Output path for the markdown report.
        output: Collected results of the run.
        recent_limit: How many recently modified CVEs to list.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    env = Environment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        autoescape=select_autoescape(default_for_string=False, default=False),
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    template = env.get_template("summary.md.j2")

    last_modified = output.last_modified_date.replace(microsecond=0).isoformat() if output.last_modified_date else None
    rendered = template.render(
        generated_at=_now_utc_iso(),
        success=output.success,
        reason=output.reason,
        last_modified=last_modified,
        total=output.count,
        severity_counts=severity_counts(output),
        recent=_recent(output, recent_limit),
    )

    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(rendered)
    tmp.replace(path)
