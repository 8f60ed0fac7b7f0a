"""Shared fixtures: an in-memory transport that serves a fake NVD dataset."""

import json
from concurrent.futures import Future

import pytest

from nvdsync.api import NvdCveApi
from nvdsync.transport import FetchRequest, HttpResponse, Transport

TIMESTAMP = "2024-06-15T12:30:45.123"


def page_body(total: int, start: int, count: int, timestamp: str = TIMESTAMP) -> str:
    """Build a CVE API 2.0 response body with ``count`` synthetic CVEs."""
    return json.dumps(
        {
            "resultsPerPage": count,
            "startIndex": start,
            "totalResults": total,
            "format": "NVD_CVE",
            "version": "2.0",
            "timestamp": timestamp,
            "vulnerabilities": [{"cve": {"id": f"CVE-2024-{start + i:05d}"}} for i in range(count)],
        }
    )


class FakeTransport(Transport):
    """Transport that answers synchronously from a synthetic dataset.

    Args:
        total: ``totalResults`` the fake API reports.
        fail: Dispatch number (1-based) -> HTTP status to answer with.
        hold_after: Futures for dispatches after this number are left
            unresolved.
    """

    def __init__(self, total: int = 10000, fail: dict[int, int] | None = None, hold_after: int | None = None):
        self.total = total
        self.fail = fail or {}
        self.hold_after = hold_after
        self.requests: list[FetchRequest] = []
        self.futures: list[Future] = []
        self.delay_ms: int | None = None
        self.closed = False

    @property
    def dispatched(self) -> int:
        return len(self.requests)

    def submit(self, request: FetchRequest) -> Future:
        self.requests.append(request)
        future: Future = Future()
        self.futures.append(future)
        n = len(self.requests)
        if self.hold_after is not None and n > self.hold_after:
            return future
        status = self.fail.get(n)
        if status is not None:
            future.set_result(HttpResponse(status, '{"message": "slow down"}', "application/json"))
        else:
            count = max(0, min(request.results_per_page, self.total - request.start_index))
            body = page_body(self.total, request.start_index, count)
            future.set_result(HttpResponse(200, body, "application/json"))
        return future

    def configure_delay(self, delay_ms: int) -> None:
        self.delay_ms = delay_ms

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_api():
    """Factory for ``NvdCveApi`` instances backed by a ``FakeTransport``."""
    apis: list[NvdCveApi] = []

    def _make(transport: Transport | None = None, **kwargs) -> tuple[NvdCveApi, Transport]:
        transport = transport or FakeTransport()
        api = NvdCveApi(transport=transport, **kwargs)
        apis.append(api)
        return api, transport

    yield _make
    for api in apis:
        api.close()
