"""Paginated client for the NVD CVE API 2.0.

Use ``NvdCveApiBuilder`` to configure filters, then pull pages until the
engine reports nothing more::

    with NvdCveApiBuilder().with_no_rejected().build() as api:
        while api.has_more():
            items = api.next_page()
            if items is None:
                # HTTP failure: back off, then api.reset_last_call()
                break
            output.add_all(items)

Only one request is in flight at a time.  As soon as a page arrives the
request for the following page is dispatched, so the transport waits out
the rate limit while the caller processes the current page.
"""

import logging
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass
from typing import Sequence

from .errors import ErrorKind, NvdApiError
from .models import DefCveItem, decode_page
from .transport import DEFAULT_WINDOW_MS, FetchRequest, HttpResponse, RateLimitedClient, Transport

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://services.nvd.nist.gov/rest/json/cves/2.0"
DEFAULT_RESULTS_PER_PAGE = 2000
MAX_RESULTS_PER_PAGE = 2000

# Minimum spacing between requests, in milliseconds.
DEFAULT_DELAY_MS = 6500
DEFAULT_DELAY_WITH_KEY_MS = 600

# Requests allowed per rolling window (see transport.DEFAULT_WINDOW_MS).
REQUESTS_PER_WINDOW = 5
REQUESTS_PER_WINDOW_WITH_KEY = 50

HTTP_OK = 200


@dataclass
class IteratorState:
    """Mutable paging state owned by a single ``NvdCveApi``.

    Attributes:
        results_per_page: Fixed page size.
        index: Start index of the next page to dispatch.  Advanced by one
            page whenever a request goes out, so while a request is in
            flight it already points past that request's page.  Moved back
            one page when that request fails fatally.
        total_results: Total reported by the API; ``-1`` until a page arrives.
        last_status_code: Status of the last completed request.
        last_modified: UTC epoch seconds from the last decoded page.
        pending: The in-flight request, if any.
        closed: Set by ``close()``.
    """

    results_per_page: int
    index: int = 0
    total_results: int = -1
    last_status_code: int = HTTP_OK
    last_modified: int = 0
    pending: "Future[HttpResponse] | None" = None
    closed: bool = False


class NvdCveApi:
    """Resumable, prefetching page iterator over the NVD CVE API.

    Args:
        api_key: NVD API key; ``None`` uses the anonymous (slower) limits.
        endpoint: CVE API URL; defaults to the public NVD endpoint.
        filters: Ordered ``(name, value)`` query filters, fixed for the
            lifetime of the instance.
        results_per_page: Page size (1-2000).
        delay_ms: Minimum delay between requests.  Defaults to 6500 ms
            without a key and 600 ms with one.
        transport: Optional transport; by default a ``RateLimitedClient``
            sized for the key / no-key quota is created.
        max_retries: Attempts the default transport makes on throttling
            responses before giving the status back to the engine.
    """

    def __init__(
        self,
        api_key: str | None = None,
        endpoint: str | None = None,
        filters: Sequence[tuple[str, str | None]] = (),
        results_per_page: int = DEFAULT_RESULTS_PER_PAGE,
        delay_ms: int | None = None,
        transport: Transport | None = None,
        max_retries: int | None = None,
    ):
        if not 1 <= results_per_page <= MAX_RESULTS_PER_PAGE:
            raise ValueError(f"results_per_page must be between 1 and {MAX_RESULTS_PER_PAGE}")
        self.api_key = api_key or None
        self.endpoint = endpoint or DEFAULT_ENDPOINT
        self.filters: tuple[tuple[str, str | None], ...] = tuple(filters)
        self._state = IteratorState(results_per_page=results_per_page)

        if delay_ms is None:
            delay_ms = DEFAULT_DELAY_MS if self.api_key is None else DEFAULT_DELAY_WITH_KEY_MS
        if transport is None:
            quota = REQUESTS_PER_WINDOW if self.api_key is None else REQUESTS_PER_WINDOW_WITH_KEY
            kwargs = {} if max_retries is None else {"max_retries": max_retries}
            transport = RateLimitedClient(delay_ms, quota, DEFAULT_WINDOW_MS, **kwargs)
        else:
            transport.configure_delay(delay_ms)
        self._transport: Transport | None = transport

    # ─── Queries ─────────────────────────────────────────────────────────────

    @property
    def results_per_page(self) -> int:
        return self._state.results_per_page

    @property
    def last_status_code(self) -> int:
        """HTTP status of the last completed request (200 until a failure)."""
        return self._state.last_status_code

    @property
    def total_results(self) -> int:
        """Total matching records, or ``-1`` before the first page."""
        return self._state.total_results

    @property
    def last_modified(self) -> int:
        """UTC epoch seconds of the last page's timestamp (0 before any page).

        Feed this into ``with_last_modified_filter`` on a later run to
        fetch only what changed since.
        """
        return self._state.last_modified

    def get_last_modified(self) -> int:
        return self.last_modified

    @property
    def closed(self) -> bool:
        return self._state.closed

    def has_more(self) -> bool:
        """Whether ``next_page()`` may still produce a page.

        False once the last request failed with a non-200 status, or once
        every result has been fetched.
        """
        self._ensure_open()
        state = self._state
        if state.last_status_code != HTTP_OK:
            return False
        if state.total_results < 0 or state.pending is not None:
            return True
        return state.index < state.total_results

    # ─── Paging ──────────────────────────────────────────────────────────────

    def _request(self) -> FetchRequest:
        return FetchRequest(
            endpoint=self.endpoint,
            api_key=self.api_key,
            filters=self.filters,
            results_per_page=self._state.results_per_page,
            start_index=self._state.index,
        )

    def _call_api(self) -> None:
        """Dispatch the request for the page at the current index."""
        state = self._state
        if state.pending is not None:
            raise RuntimeError("A request is already in flight")
        request = self._request()
        # A bad endpoint fails here, in the caller's thread.
        url = request.url
        logger.debug("Dispatching request: %s", url)
        state.pending = self._transport.submit(request)
        state.index += state.results_per_page

    def _await_pending(self) -> HttpResponse:
        state = self._state
        future = state.pending
        try:
            return future.result()
        except CancelledError as e:
            raise NvdApiError(ErrorKind.CANCELLED, "Request was cancelled") from e
        except NvdApiError:
            raise
        except Exception as e:
            raise NvdApiError(ErrorKind.TRANSPORT, f"Request to {self.endpoint} failed: {e}") from e
        finally:
            state.pending = None

    def next_page(self) -> list[DefCveItem] | None:
        """Return the next page of CVEs.

        Blocks until the in-flight request completes.  On success the
        request for the following page is dispatched before returning.

        Returns:
            The page's items, or ``None`` when the API answered with a
            non-200 status (see ``last_status_code`` and
            ``reset_last_call``) or nothing remains to fetch.

        Raises:
            NvdApiError: On transport, cancellation or decode failures, or
                if the engine is closed.
        """
        self._ensure_open()
        if not self.has_more():
            return None

        state = self._state
        if state.pending is None:
            self._call_api()
        try:
            response = self._await_pending()

            if response.status_code != HTTP_OK:
                state.last_status_code = response.status_code
                logger.debug("Status Code: %s", response.status_code)
                logger.debug("Response: %s", response.body)
                return None

            logger.debug("Content-Type received: %s", response.content_type)
            page = decode_page(response.body)
        except NvdApiError:
            # The failed page is requested again on the next call.
            self._rewind()
            raise

        state.total_results = page.total_results
        state.last_modified = page.last_modified
        if state.index < state.total_results:
            self._call_api()
        return page.items

    def _rewind(self) -> None:
        state = self._state
        state.index = max(state.index - state.results_per_page, 0)

    def reset_last_call(self) -> None:
        """Clear a failed status and rewind one page so it is requested again.

        Does nothing while the last call succeeded and its prefetch is
        still in flight.
        """
        self._ensure_open()
        state = self._state
        if state.last_status_code == HTTP_OK and state.pending is not None:
            logger.debug("reset_last_call ignored: request in flight")
            return
        state.last_status_code = HTTP_OK
        self._rewind()

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self._state.closed:
            raise NvdApiError(ErrorKind.CLOSED, "NvdCveApi has been closed")

    def close(self) -> None:
        """Cancel any in-flight request and release the transport."""
        state = self._state
        if state.closed:
            return
        state.closed = True
        if state.pending is not None:
            state.pending.cancel()
            state.pending = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def __enter__(self) -> "NvdCveApi":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
