"""Rate-limited HTTP transport for the NVD API.

The NVD enforces a rolling request quota (5 requests per 30 seconds
without an API key, 50 with one) and answers with 403/429/503 when it is
exceeded.  ``RateLimitedClient`` dispatches requests one at a time on a
background worker, spacing them by a minimum delay and keeping them
under the quota, and quietly retries throttling responses with
exponential backoff.  Callers get a ``concurrent.futures.Future`` back
immediately and block on it when they need the response.
"""

import collections
import datetime as dt
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from . import __version__
from .errors import ErrorKind, NvdApiError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "apiKey"
DEFAULT_HTTP_TIMEOUT = (10, 120)  # (connect, read)
THROTTLE_STATUS_CODES = frozenset({429, 503})

DEFAULT_WINDOW_MS = 32500
DEFAULT_MAX_RETRIES = 10
DEFAULT_BACKOFF_MS = 1000


@dataclass(frozen=True)
class FetchRequest:
    """Immutable description of one page request.

    Attributes:
        endpoint: Base URL of the CVE API.
        api_key: Optional NVD API key, sent as the ``apiKey`` header.
        filters: Ordered ``(name, value)`` query filters.  A ``None`` value
            is sent as a bare flag (``noRejected``).
        results_per_page: Page size.
        start_index: Zero-based offset of the first record.
    """

    endpoint: str
    api_key: str | None
    filters: tuple[tuple[str, str | None], ...]
    results_per_page: int
    start_index: int

    @property
    def url(self) -> str:
        """Full request URL with filters, ``resultsPerPage`` and ``startIndex``.

        Raises:
            NvdApiError: ``INVALID_ENDPOINT`` if the endpoint is not an
                absolute http(s) URL.
        """
        try:
            parts = urlsplit(self.endpoint)
        except ValueError as e:
            raise NvdApiError(ErrorKind.INVALID_ENDPOINT, f"Invalid endpoint {self.endpoint!r}: {e}") from e
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise NvdApiError(ErrorKind.INVALID_ENDPOINT, f"Invalid endpoint {self.endpoint!r}")

        query = [parts.query] if parts.query else []
        for name, value in self.filters:
            query.append(quote(name, safe="") if value is None else urlencode([(name, value)]))
        query.append(urlencode([("resultsPerPage", self.results_per_page), ("startIndex", self.start_index)]))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(query), ""))

    @property
    def headers(self) -> dict[str, str]:
        if self.api_key:
            return {API_KEY_HEADER: self.api_key}
        return {}


@dataclass(frozen=True)
class HttpResponse:
    """Status, body and content type of a completed request."""

    status_code: int
    body: str
    content_type: str | None = None


class Transport(ABC):
    """Interface the fetch engine needs from an HTTP transport."""

    @abstractmethod
    def submit(self, request: FetchRequest) -> "Future[HttpResponse]":
        """Queue a request and return a future for its response.

        Must not block on the network.
        """
        ...

    @abstractmethod
    def configure_delay(self, delay_ms: int) -> None:
        """Set the minimum delay between two dispatched requests."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release connections and cancel queued work."""
        ...


def requests_session() -> requests.Session:
    """Create a ``requests`` session with the nvdsync headers.

    Returns:
        Configured ``requests.Session``.
    """
    s = requests.Session()
    s.headers.update(
        {
            "User-Agent": f"nvdsync/{__version__}",
            "Accept": "application/json",
        }
    )
    return s


def _is_throttled(response: HttpResponse) -> bool:
    return response.status_code in THROTTLE_STATUS_CODES


def _last_outcome(retry_state) -> HttpResponse:
    # Out of attempts: hand back the last response, or re-raise the last error.
    return retry_state.outcome.result()


class RateLimitedClient(Transport):
    """Serializing, rate-limited ``requests`` transport.

    Args:
        delay_ms: Minimum milliseconds between two dispatches.
        requests_per_window: Maximum dispatches within ``window_ms``.
        window_ms: Length of the rolling quota window.
        max_retries: Attempts per request for throttling responses and
            connection errors (including the first attempt).
        backoff_ms: Base of the exponential backoff between attempts.
        session: Optional pre-built session (tests inject a mock).
        clock: Monotonic clock in seconds.
        sleep: Sleep function in seconds.
    """

    def __init__(
        self,
        delay_ms: int,
        requests_per_window: int = 5,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_ms: int = DEFAULT_BACKOFF_MS,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._delay_ms = max(delay_ms, 0)
        self._window_s = window_ms / 1000.0
        self._requests_per_window = requests_per_window
        self._max_retries = max_retries
        self._backoff_s = max(backoff_ms, 0) / 1000.0
        self._session = session or requests_session()
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._last_dispatch: float | None = None
        self._dispatches: collections.deque[float] = collections.deque()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nvdsync-http")
        self._closed = False

    @property
    def delay_ms(self) -> int:
        return self._delay_ms

    def configure_delay(self, delay_ms: int) -> None:
        with self._lock:
            self._delay_ms = max(delay_ms, 0)

    def submit(self, request: FetchRequest) -> "Future[HttpResponse]":
        if self._closed:
            raise NvdApiError(ErrorKind.CLOSED, "Transport has been closed")
        return self._executor.submit(self._send, request)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._session.close()

    # ─── Worker side ─────────────────────────────────────────────────────────

    def _throttle(self) -> None:
        """Block until both the delay and the rolling quota allow a dispatch."""
        while True:
            with self._lock:
                now = self._clock()
                wait = 0.0
                if self._last_dispatch is not None:
                    wait = self._last_dispatch + self._delay_ms / 1000.0 - now
                while self._dispatches and now - self._dispatches[0] >= self._window_s:
                    self._dispatches.popleft()
                if len(self._dispatches) >= self._requests_per_window:
                    wait = max(wait, self._dispatches[0] + self._window_s - now)
                if wait <= 0:
                    self._last_dispatch = now
                    self._dispatches.append(now)
                    return
            # Sleep outside the lock.
            logger.debug("Rate limit: waiting %.2fs before next request", wait)
            self._sleep(wait)

    def _attempt(self, request: FetchRequest) -> HttpResponse:
        self._throttle()
        url = request.url
        logger.debug("Requested at %s; URI: %s", dt.datetime.now().strftime("%H:%M:%S"), url)
        r = self._session.get(url, headers=request.headers, timeout=DEFAULT_HTTP_TIMEOUT)
        return HttpResponse(
            status_code=r.status_code,
            body=r.text,
            content_type=r.headers.get("Content-Type"),
        )

    def _send(self, request: FetchRequest) -> HttpResponse:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._backoff_s, max=self._window_s),
            retry=(
                retry_if_result(_is_throttled)
                | retry_if_exception_type((requests.ConnectionError, requests.Timeout))
            ),
            retry_error_callback=_last_outcome,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            sleep=self._sleep,
        )
        return retrying(self._attempt, request)
