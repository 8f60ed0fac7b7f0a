"""Command-line entry point: ``nvdsync``.

Fetches CVEs from the NVD CVE API 2.0 into a single JSON document::

    nvdsync --no-rejected --last-mod-start 2024-06-01T00:00:00 \\
            --last-mod-end 2024-06-30T00:00:00 --output cves.json.gz

With ``--since-last-run state.json`` the NVD timestamp of a successful run
is saved and the next run only asks for CVEs modified since then.
"""

import argparse
import datetime as dt
import json
import logging
import sys
import time
from pathlib import Path
from typing import Callable, Sequence

import yaml
from pydantic import ValidationError

from .api import NvdCveApi
from .builder import CVSS_V3_SEVERITIES, MAX_DATE_RANGE, NvdCveApiBuilder, to_utc
from .config import FetchSettings, find_settings, load_settings
from .errors import NvdApiError
from .output import CveOutput
from .report import write_markdown_report

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _err(msg: str) -> None:
    print(msg, file=sys.stderr)


def _parse_datetime(value: str) -> dt.datetime:
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 date/time: {value!r}")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="nvdsync", description="Fetch CVE records from the NVD CVE API 2.0.")
    p.add_argument("--config", type=Path, help="Settings file (default: ./nvdsync.yaml if present)")
    p.add_argument("--api-key", help="NVD API key (default: $NVD_API_KEY)")
    p.add_argument("--endpoint", help="CVE API endpoint URL")
    p.add_argument("--delay", type=int, metavar="MS", help="Minimum milliseconds between requests")
    p.add_argument("--page-size", type=int, metavar="N", help="Results per page (1-2000)")

    f = p.add_argument_group("filters")
    f.add_argument("--last-mod-start", type=_parse_datetime, metavar="DATETIME")
    f.add_argument("--last-mod-end", type=_parse_datetime, metavar="DATETIME")
    f.add_argument("--pub-start", type=_parse_datetime, metavar="DATETIME")
    f.add_argument("--pub-end", type=_parse_datetime, metavar="DATETIME")
    f.add_argument("--cve-id")
    f.add_argument("--cpe-name")
    f.add_argument("--keyword")
    f.add_argument("--keyword-exact", action="store_true", help="Match --keyword as an exact phrase")
    f.add_argument("--severity", type=str.upper, choices=CVSS_V3_SEVERITIES, help="CVSS v3 severity")
    f.add_argument("--no-rejected", action="store_true", help="Exclude rejected CVEs")
    f.add_argument("--has-kev", action="store_true", help="Only CVEs in the CISA KEV catalog")

    o = p.add_argument_group("output")
    o.add_argument("--output", type=Path, help="Write JSON here (.gz compresses); default stdout")
    o.add_argument("--pretty", action="store_true", help="Indent the JSON output")
    o.add_argument("--report", type=Path, help="Also write a Markdown summary")
    o.add_argument(
        "--since-last-run",
        type=Path,
        metavar="STATE",
        help="Read/write the last NVD timestamp here and fetch only what changed since",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p.parse_args(argv)


def _load_settings(config: Path | None) -> FetchSettings:
    path = config or find_settings()
    if path is None:
        return FetchSettings()
    return load_settings(path)


def _read_last_run(path: Path) -> int | None:
    """Return the saved last-modified epoch, or ``None`` if there is none."""
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            value = json.load(f).get("last_modified")
        return int(value) if value else None
    except (OSError, ValueError, TypeError, AttributeError) as e:
        _err(f"Warning: Could not read {path} ({e}), doing a full fetch")
        return None


def _write_last_run(path: Path, epoch_seconds: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump({"last_modified": epoch_seconds}, f, indent=2)
    tmp.replace(path)


def build_api(args: argparse.Namespace, settings: FetchSettings, since: int | None = None) -> NvdCveApi:
    """Assemble an ``NvdCveApi`` from settings with command-line overrides.

    Raises:
        ValueError: If a filter is invalid (e.g. a date range over 120 days).
    """
    builder = (
        NvdCveApiBuilder()
        .with_api_key(args.api_key or settings.api_key)
        .with_endpoint(args.endpoint or settings.endpoint)
        .with_results_per_page(args.page_size or settings.results_per_page)
        .with_max_retries(settings.max_retries)
    )
    delay = args.delay if args.delay is not None else settings.delay_ms
    if delay is not None:
        builder.with_delay(delay)

    for name, value in settings.filters.items():
        builder.with_filter(name, value)

    if args.last_mod_start:
        builder.with_last_modified_filter(args.last_mod_start, args.last_mod_end)
    elif since:
        now = dt.datetime.now(dt.timezone.utc)
        if now - to_utc(since) > MAX_DATE_RANGE:
            _err(f"Warning: Last run is more than {MAX_DATE_RANGE.days} days old, doing a full fetch")
        else:
            builder.with_last_modified_filter(since, now)
    if args.pub_start:
        builder.with_published_date_filter(args.pub_start, args.pub_end)
    if args.cve_id:
        builder.with_cve_id(args.cve_id)
    if args.cpe_name:
        builder.with_cpe_name(args.cpe_name)
    if args.keyword:
        builder.with_keyword_search(args.keyword, exact_match=args.keyword_exact)
    if args.severity:
        builder.with_cvss_v3_severity(args.severity)
    if args.no_rejected:
        builder.with_no_rejected()
    if args.has_kev:
        builder.with_has_kev()
    return builder.build()


def fetch_all(
    api: NvdCveApi,
    output: CveOutput | None = None,
    retry_attempts: int = 5,
    retry_wait_seconds: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> CveOutput:
    """Drain ``api`` into ``output``, re-requesting stalled pages.

    When the API answers a page with a non-200 status the loop waits
    ``retry_wait_seconds * attempt`` and calls ``reset_last_call()``; after
    ``retry_attempts`` consecutive failures it stops and marks the output
    unsuccessful.  ``NvdApiError`` propagates.

    Args:
        api: Configured engine.
        output: Collector to fill; a new one is created if omitted.
        retry_attempts: Consecutive failures tolerated per page.
        retry_wait_seconds: Base wait between re-requests.
        sleep: Sleep function (injected by tests).

    Returns:
        The filled ``CveOutput``.
    """
    if output is None:
        output = CveOutput()
    attempt = 0
    while api.has_more():
        items = api.next_page()
        if items is None:
            code = api.last_status_code
            attempt += 1
            if attempt > retry_attempts:
                output.success = False
                output.reason = f"NVD returned HTTP {code}"
                _err(f"  ❌ Giving up after {retry_attempts} retries (HTTP {code})")
                return output
            wait = retry_wait_seconds * attempt
            _err(f"  ⚠️ HTTP {code}; retrying in {wait:.0f}s ({attempt}/{retry_attempts})")
            sleep(wait)
            api.reset_last_call()
            continue

        attempt = 0
        output.add_all(items)
        output.set_last_modified(api.last_modified)
        _err(f"  Fetched {output.count}/{max(api.total_results, 0)} CVEs")

    output.success = True
    return output


def main(argv: Sequence[str] | None = None) -> int:
    """Run the ``nvdsync`` command.

    Returns:
        Process exit code: 0 on success, 1 if the fetch failed, 2 on
        invalid options or settings.
    """
    args = _parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=LOG_FORMAT)

    try:
        settings = _load_settings(args.config)
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as e:
        _err(f"Error: invalid settings: {e}")
        return 2

    since = _read_last_run(args.since_last_run) if args.since_last_run else None
    try:
        api = build_api(args, settings, since=since)
    except ValueError as e:
        _err(f"Error: {e}")
        return 2

    output = CveOutput()
    with api:
        try:
            fetch_all(
                api,
                output,
                retry_attempts=settings.retry_attempts,
                retry_wait_seconds=settings.retry_wait_seconds,
            )
        except NvdApiError as e:
            logger.debug("Fetch failed", exc_info=True)
            output.success = False
            output.reason = str(e)
            _err(f"  ❌ {e}")

    if args.output:
        output.write(args.output, pretty=args.pretty)
        _err(f"Wrote {output.count} CVEs to {args.output}")
    else:
        json.dump(output.to_dict(), sys.stdout, indent=2 if args.pretty else None)
        sys.stdout.write("\n")

    if args.report:
        write_markdown_report(args.report, output)

    if output.success and args.since_last_run and output.last_modified_date:
        _write_last_run(args.since_last_run, int(output.last_modified_date.timestamp()))

    return 0 if output.success else 1


if __name__ == "__main__":
    sys.exit(main())
