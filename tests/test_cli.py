"""Unit tests for nvdsync.cli — fetch loop and command entry point."""

import argparse
import datetime as dt
import json
import os
from concurrent.futures import Future
from pathlib import Path
from unittest.mock import patch

import pytest
import requests

from conftest import TIMESTAMP, FakeTransport
from nvdsync.api import NvdCveApi
from nvdsync.cli import _parse_args, _parse_datetime, _read_last_run, _write_last_run, build_api, fetch_all, main
from nvdsync.config import FetchSettings

EXPECTED_EPOCH = int(dt.datetime.fromisoformat(TIMESTAMP).replace(tzinfo=dt.timezone.utc).timestamp())


class BrokenTransport(FakeTransport):
    def submit(self, request):
        self.requests.append(request)
        f: Future = Future()
        f.set_exception(requests.ConnectionError("connection reset"))
        return f


# ── _parse_datetime ──────────────────────────────────────────────────────────


class TestParseDatetime:
    def test_zulu(self):
        assert _parse_datetime("2024-06-01T00:00:00Z") == dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc)

    def test_date_only(self):
        assert _parse_datetime("2024-06-01") == dt.datetime(2024, 6, 1)

    def test_invalid(self):
        with pytest.raises(argparse.ArgumentTypeError):
            _parse_datetime("yesterday")


# ── last-run state ───────────────────────────────────────────────────────────


class TestLastRun:
    def test_missing(self, tmp_path: Path):
        assert _read_last_run(tmp_path / "state.json") is None

    def test_roundtrip(self, tmp_path: Path):
        path = tmp_path / "state" / "last.json"
        _write_last_run(path, 1718454645)
        assert _read_last_run(path) == 1718454645

    def test_corrupt(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert _read_last_run(path) is None

    @pytest.mark.parametrize("content", ['{"last_modified": "abc"}', '{"last_modified": [1]}', "[]"])
    def test_bad_value(self, tmp_path: Path, content: str, capsys):
        path = tmp_path / "state.json"
        path.write_text(content)
        assert _read_last_run(path) is None
        assert "doing a full fetch" in capsys.readouterr().err

    def test_unreadable(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.mkdir()
        assert _read_last_run(path) is None


# ── build_api ────────────────────────────────────────────────────────────────


class TestBuildApi:
    @patch.dict(os.environ, {}, clear=True)
    def test_flags_override_settings(self):
        settings = FetchSettings(delay_ms=9000, results_per_page=1000, filters={"noRejected": None})
        args = _parse_args(["--delay", "100", "--severity", "critical", "--cve-id", "cve-2024-1"])
        api = build_api(args, settings)
        try:
            assert api._transport.delay_ms == 100
            assert api.results_per_page == 1000
            assert api.filters == (
                ("noRejected", None),
                ("cveId", "CVE-2024-1"),
                ("cvssV3Severity", "CRITICAL"),
            )
        finally:
            api.close()

    @patch.dict(os.environ, {}, clear=True)
    def test_since_last_run(self):
        since = int((dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=2)).timestamp())
        api = build_api(_parse_args([]), FetchSettings(), since=since)
        try:
            assert [name for name, _ in api.filters] == ["lastModStartDate", "lastModEndDate"]
        finally:
            api.close()

    @patch.dict(os.environ, {}, clear=True)
    def test_stale_last_run_falls_back_to_full_fetch(self, capsys):
        since = int((dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=200)).timestamp())
        api = build_api(_parse_args([]), FetchSettings(), since=since)
        try:
            assert api.filters == ()
        finally:
            api.close()
        assert "more than 120 days old" in capsys.readouterr().err

    @patch.dict(os.environ, {}, clear=True)
    def test_explicit_range_beats_since(self):
        args = _parse_args(["--last-mod-start", "2024-01-01", "--last-mod-end", "2024-01-31"])
        api = build_api(args, FetchSettings(), since=12345)
        try:
            assert api.filters[0] == ("lastModStartDate", "2024-01-01T00:00:00.000+00:00")
        finally:
            api.close()


# ── fetch_all ────────────────────────────────────────────────────────────────


class TestFetchAll:
    def test_complete_run(self, make_api):
        api, _ = make_api(transport=FakeTransport(total=4500))
        out = fetch_all(api)
        assert out.success is True
        assert out.count == 4500
        assert int(out.last_modified_date.timestamp()) == EXPECTED_EPOCH

    def test_retries_stalled_page(self, make_api):
        api, transport = make_api(transport=FakeTransport(total=10000, fail={3: 429}))
        waits: list[float] = []
        out = fetch_all(api, retry_attempts=3, retry_wait_seconds=10, sleep=waits.append)
        assert out.success is True
        assert out.count == 10000
        assert waits == [10]
        assert [r.start_index for r in transport.requests].count(4000) == 2

    def test_gives_up(self, make_api):
        fail = {n: 503 for n in range(2, 10)}
        api, _ = make_api(transport=FakeTransport(total=10000, fail=fail))
        waits: list[float] = []
        out = fetch_all(api, retry_attempts=2, retry_wait_seconds=5, sleep=waits.append)
        assert out.success is False
        assert out.reason == "NVD returned HTTP 503"
        assert out.count == 2000
        assert waits == [5, 10]

    def test_backoff_resets_after_success(self, make_api):
        api, _ = make_api(transport=FakeTransport(total=10000, fail={2: 429, 5: 429}))
        waits: list[float] = []
        out = fetch_all(api, retry_attempts=1, retry_wait_seconds=1, sleep=waits.append)
        assert out.success is True
        assert waits == [1, 1]

    def test_fatal_error_propagates(self, make_api):
        from nvdsync.errors import NvdApiError

        api, _ = make_api(transport=BrokenTransport())
        with pytest.raises(NvdApiError):
            fetch_all(api)


# ── main ─────────────────────────────────────────────────────────────────────


@pytest.fixture
def isolated(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with patch.dict(os.environ, {}, clear=True):
        yield tmp_path


class TestMain:
    def test_writes_output_and_state(self, isolated: Path):
        api = NvdCveApi(transport=FakeTransport(total=3000))
        out_path = isolated / "cves.json"
        state = isolated / "last.json"
        report = isolated / "summary.md"
        with patch("nvdsync.cli.build_api", return_value=api):
            code = main(["--output", str(out_path), "--since-last-run", str(state), "--report", str(report)])
        assert code == 0
        data = json.loads(out_path.read_text())
        assert data["success"] is True
        assert data["count"] == 3000
        assert json.loads(state.read_text()) == {"last_modified": EXPECTED_EPOCH}
        assert "CVEs fetched | 3000" in report.read_text()
        assert api.closed is True

    def test_stdout(self, isolated: Path, capsys):
        api = NvdCveApi(transport=FakeTransport(total=5))
        with patch("nvdsync.cli.build_api", return_value=api):
            code = main([])
        assert code == 0
        assert json.loads(capsys.readouterr().out)["count"] == 5

    def test_fatal_error(self, isolated: Path):
        api = NvdCveApi(transport=BrokenTransport())
        out_path = isolated / "cves.json"
        state = isolated / "last.json"
        with patch("nvdsync.cli.build_api", return_value=api):
            code = main(["--output", str(out_path), "--since-last-run", str(state)])
        assert code == 1
        data = json.loads(out_path.read_text())
        assert data["success"] is False
        assert "connection reset" in data["reason"]
        assert not state.exists()

    def test_since_last_run_passed_to_builder(self, isolated: Path):
        state = isolated / "last.json"
        _write_last_run(state, 1718454645)
        api = NvdCveApi(transport=FakeTransport(total=1))
        with patch("nvdsync.cli.build_api", return_value=api) as mock_build:
            main(["--since-last-run", str(state), "--output", str(isolated / "o.json")])
        assert mock_build.call_args.kwargs["since"] == 1718454645

    def test_range_too_long(self, isolated: Path):
        code = main(["--last-mod-start", "2024-01-01", "--last-mod-end", "2024-12-31"])
        assert code == 2

    def test_invalid_settings(self, isolated: Path):
        (isolated / "nvdsync.yaml").write_text("results_per_page: 99999\n")
        assert main([]) == 2
