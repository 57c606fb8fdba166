"""Meta Graph API Client.

WHAT:
    httpx-based client for the Meta Graph / Marketing API providing paginated
    reads, composite batch requests and form POSTs (OAuth), with retry,
    exponential backoff and optional hourly pacing.

WHY:
    - Centralized Graph API interaction (single place for retry policy)
    - Batch endpoint (up to 50 sub-requests per call) keeps creative
      resolution within rate limits
    - Typed errors let callers react differently: auth errors mark the
      connection, not-found errors skip one entity, transient errors retry

RETRY POLICY:
    - Transient (rate limit codes 4/17/32/613/80000-80014, HTTP 429, HTTP 5xx,
      codes 1/2, network errors): retried up to `max_retries` times with
      delay = min(base * 2**attempt, ceiling)
    - Everything else fails immediately

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/results (paging envelope)
    - https://developers.facebook.com/docs/graph-api/batch-requests
    - https://developers.facebook.com/docs/graph-api/guides/error-handling
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50

AUTH_ERROR_CODES = {102, 190}
PERMISSION_ERROR_CODES = {10}
NOT_FOUND_ERROR_CODES = {803}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613}
SERVER_ERROR_CODES = {1, 2}


# =============================================================================
# ERRORS
# =============================================================================

class MetaGraphError(Exception):
    """Base exception for Graph API failures."""

    transient = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        http_status: Optional[int] = None,
        fbtrace_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.http_status = http_status
        self.fbtrace_id = fbtrace_id

    def __str__(self) -> str:
        parts = [self.message]
        if self.code is not None:
            parts.append(f"code={self.code}")
        if self.subcode is not None:
            parts.append(f"subcode={self.subcode}")
        if self.http_status is not None:
            parts.append(f"http={self.http_status}")
        return " ".join(parts)


class MetaAuthError(MetaGraphError):
    """Token expired, revoked or otherwise invalid (code 190 / HTTP 401)."""

    @property
    def requires_reconnect(self) -> bool:
        # 190 covers password change (460), expiry past 90 days (463) and invalidation (467)
        return self.code == 190 or self.http_status == 401


class MetaPermissionError(MetaGraphError):
    """Token is valid but lacks a permission (code 10, 200-299 / HTTP 403)."""


class MetaNotFoundError(MetaGraphError):
    """Object does not exist or is not visible (code 803, 100/33 / HTTP 404)."""


class MetaValidationError(MetaGraphError):
    """Malformed request (HTTP 400 and unclassified codes)."""


class MetaPaginationError(MetaGraphError):
    """Pagination exceeded the configured page cap."""


class MetaTransientError(MetaGraphError):
    """Failure that may succeed on retry."""

    transient = True


class MetaRateLimitError(MetaTransientError):
    """Rate limit / throttling (codes 4, 17, 32, 613, 80000-80014 / HTTP 429)."""


class MetaServerError(MetaTransientError):
    """Meta-side failure (codes 1, 2 / HTTP 5xx)."""


class MetaNetworkError(MetaTransientError):
    """Transport failure (connect/read timeout, connection reset)."""


def error_from_response(http_status: Optional[int], error: Optional[Dict[str, Any]]) -> MetaGraphError:
    """Map a Graph error envelope (and HTTP status) onto a typed exception.

    Graph error codes win over HTTP status because Meta returns most errors
    as HTTP 400 regardless of their nature.
    """
    error = error or {}
    message = error.get("message") or (f"HTTP {http_status}" if http_status else "Unknown Graph API error")
    code = _as_int(error.get("code"))
    subcode = _as_int(error.get("error_subcode"))
    kwargs = dict(code=code, subcode=subcode, http_status=http_status, fbtrace_id=error.get("fbtrace_id"))

    if code is not None:
        if code in AUTH_ERROR_CODES:
            return MetaAuthError(message, **kwargs)
        if code in RATE_LIMIT_ERROR_CODES or 80000 <= code <= 80014:
            return MetaRateLimitError(message, **kwargs)
        if code in PERMISSION_ERROR_CODES or 200 <= code <= 299:
            return MetaPermissionError(message, **kwargs)
        if code in NOT_FOUND_ERROR_CODES or (code == 100 and subcode == 33):
            return MetaNotFoundError(message, **kwargs)
        if code in SERVER_ERROR_CODES:
            return MetaServerError(message, **kwargs)

    if http_status == 401:
        return MetaAuthError(message, **kwargs)
    if http_status == 403:
        return MetaPermissionError(message, **kwargs)
    if http_status == 404:
        return MetaNotFoundError(message, **kwargs)
    if http_status == 429:
        return MetaRateLimitError(message, **kwargs)
    if http_status is not None and http_status >= 500:
        return MetaServerError(message, **kwargs)
    return MetaValidationError(message, **kwargs)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# =============================================================================
# RATE LIMITING
# =============================================================================

class SlidingWindowRateLimiter:
    """Pace calls to at most `calls_per_hour` within any rolling hour.

    Tracks call timestamps in a deque and sleeps until the oldest call leaves
    the window when the budget is used up. One limiter per client instance,
    so budgets never leak across tenants.
    """

    WINDOW_SECONDS = 3600

    def __init__(
        self,
        calls_per_hour: int,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if calls_per_hour <= 0:
            raise ValueError("calls_per_hour must be positive")
        self.calls_per_hour = calls_per_hour
        self._calls: deque = deque(maxlen=calls_per_hour)
        self._clock = clock
        self._sleep = sleep

    def acquire(self) -> None:
        now = self._clock()
        while self._calls and self._calls[0] < now - self.WINDOW_SECONDS:
            self._calls.popleft()

        if len(self._calls) >= self.calls_per_hour:
            sleep_time = self.WINDOW_SECONDS - (now - self._calls[0]) + 1
            logger.warning(
                "[META_GRAPH] Hourly budget reached (%d calls/hour). Sleeping for %.1fs",
                self.calls_per_hour, sleep_time,
            )
            self._sleep(sleep_time)
            now = self._clock()

        self._calls.append(now)


# =============================================================================
# BATCH TYPES
# =============================================================================

@dataclass
class BatchResponse:
    """Outcome of one sub-request inside a batch call.

    Exactly one of `body` / `error` is meaningful: a failed sub-request never
    affects its siblings.
    """

    index: int
    request: Dict[str, Any]
    status_code: Optional[int] = None
    body: Optional[Dict[str, Any]] = None
    error: Optional[MetaGraphError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _RequestStats:
    calls: int = 0
    retries: int = 0
    slept_seconds: float = 0.0
    delays: List[float] = field(default_factory=list)


# =============================================================================
# CLIENT
# =============================================================================

class MetaGraphClient:
    """Client for the Meta Graph API.

    Usage:
        ```python
        with MetaGraphClient(access_token="TOKEN") as client:
            rows = client.fetch_all("act_123/insights", params={"level": "campaign"})
            responses = client.fetch_batch([{"method": "GET", "relative_url": "123?fields=id"}])
        ```
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        *,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_ceiling: Optional[float] = None,
        max_pages: Optional[int] = None,
        batch_size: Optional[int] = None,
        calls_per_hour: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        from adsync.deps import get_settings

        settings = get_settings()
        self.access_token = access_token
        self.api_version = api_version or settings.META_GRAPH_API_VERSION
        self.max_retries = settings.META_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = settings.META_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_ceiling = settings.META_BACKOFF_CEILING_SECONDS if backoff_ceiling is None else backoff_ceiling
        self.max_pages = max_pages or settings.META_MAX_PAGES
        self.batch_size = min(batch_size or settings.META_BATCH_SIZE, MAX_BATCH_SIZE)
        self._sleep = sleep
        self.stats = _RequestStats()

        per_hour = calls_per_hour if calls_per_hour is not None else settings.META_CALLS_PER_HOUR
        self._limiter = SlidingWindowRateLimiter(per_hour, sleep=sleep) if per_hour else None

        root = (base_url or settings.META_GRAPH_BASE_URL).rstrip("/")
        self._http = httpx.Client(
            base_url=f"{root}/{self.api_version}/",
            timeout=timeout or settings.META_REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    # -- lifecycle --------------------------------------------------------

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "MetaGraphClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- core request loop -------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt + 1` (attempt is 0-based)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_ceiling)

    def _request(
        self,
        method: str,
        path_or_url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        authenticate: bool = True,
    ) -> Any:
        params = dict(params or {})
        data = dict(data) if data is not None else None
        is_absolute = path_or_url.startswith("http://") or path_or_url.startswith("https://")

        # Paging URLs returned by Meta already carry the token.
        if authenticate and self.access_token and not is_absolute:
            if data is not None:
                data.setdefault("access_token", self.access_token)
            else:
                params.setdefault("access_token", self.access_token)

        for attempt in range(self.max_retries + 1):
            if self._limiter is not None:
                self._limiter.acquire()
            self.stats.calls += 1

            try:
                response = self._http.request(method, path_or_url, params=params or None, data=data)
            except httpx.TransportError as exc:
                error: MetaGraphError = MetaNetworkError(f"{type(exc).__name__}: {exc}")
            else:
                payload, error = self._parse_response(response)
                if error is None:
                    return payload

            if not error.transient or attempt >= self.max_retries:
                if error.transient:
                    logger.error(
                        "[META_GRAPH] %s %s failed after %d attempts: %s",
                        method, _redact(path_or_url), attempt + 1, error,
                    )
                raise error

            delay = self.backoff_delay(attempt)
            self.stats.retries += 1
            self.stats.slept_seconds += delay
            self.stats.delays.append(delay)
            logger.warning(
                "[META_GRAPH] %s on %s %s (attempt %d/%d), retrying in %.1fs",
                type(error).__name__, method, _redact(path_or_url),
                attempt + 1, self.max_retries + 1, delay,
            )
            self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _parse_response(response: httpx.Response) -> Tuple[Any, Optional[MetaGraphError]]:
        try:
            payload = response.json()
        except ValueError:
            if response.is_success:
                return None, MetaValidationError("Non-JSON response from Graph API", http_status=response.status_code)
            return None, error_from_response(response.status_code, None)

        if isinstance(payload, dict) and "error" in payload:
            return None, error_from_response(response.status_code, payload.get("error"))
        if not response.is_success:
            return None, error_from_response(response.status_code, None)
        return payload, None

    # -- public API ------------------------------------------------------------

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET a single node or edge and return the decoded JSON body."""
        return self._request("GET", path, params=params)

    def post_form(self, path: str, data: Dict[str, Any], *, authenticate: bool = False) -> Dict[str, Any]:
        """Form-encoded POST (OAuth endpoints). Unauthenticated by default."""
        return self._request("POST", path, data=data, authenticate=authenticate)

    def fetch_page(
        self, path_or_url: str, params: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of an edge.

        Returns:
            (rows, next_page_url) where next_page_url is None on the last page.
        """
        payload = self._request("GET", path_or_url, params=params) or {}
        rows = payload.get("data") or []
        next_url = (payload.get("paging") or {}).get("next")
        return rows, next_url

    def fetch_all(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Follow pagination until Meta reports no further page.

        Raises:
            MetaPaginationError: More than `max_pages` pages were returned.
        """
        cap = max_pages or self.max_pages
        rows, next_url = self.fetch_page(path, params)
        results = list(rows)
        pages = 1

        while next_url:
            if pages >= cap:
                logger.error("[META_GRAPH] Pagination cap (%d pages) hit for %s", cap, _redact(path))
                raise MetaPaginationError(f"Pagination exceeded {cap} pages for {path}")
            rows, next_url = self.fetch_page(next_url)
            results.extend(rows)
            pages += 1

        logger.debug("[META_GRAPH] %s: %d rows over %d pages", _redact(path), len(results), pages)
        return results

    def fetch_batch(self, requests: Sequence[Dict[str, Any]]) -> List[BatchResponse]:
        """Issue up to `batch_size` sub-requests as one batch call.

        Each sub-request is `{"method": "GET", "relative_url": "..."}`. Sub-request
        failures are reported on their BatchResponse; only a failure of the batch
        call itself raises.

        Raises:
            ValueError: More sub-requests than the batch cap.
        """
        if not requests:
            return []
        if len(requests) > self.batch_size:
            raise ValueError(f"Batch of {len(requests)} exceeds cap of {self.batch_size}")

        payload = self._request(
            "POST",
            "",
            data={"batch": json.dumps(list(requests)), "include_headers": "false"},
        )
        if not isinstance(payload, list):
            raise MetaValidationError("Unexpected batch response shape")

        results: List[BatchResponse] = []
        for index, request in enumerate(requests):
            item = payload[index] if index < len(payload) else None
            results.append(_parse_batch_item(index, request, item))
        return results


def _parse_batch_item(index: int, request: Dict[str, Any], item: Optional[Dict[str, Any]]) -> BatchResponse:
    # Meta returns null for sub-requests it did not complete in time.
    if item is None:
        return BatchResponse(index=index, request=request, error=MetaServerError("Batch request failed"))

    status_code = _as_int(item.get("code"))
    raw_body = item.get("body")
    try:
        body = json.loads(raw_body) if isinstance(raw_body, str) else raw_body
    except ValueError:
        body = None

    if isinstance(body, dict) and "error" in body:
        return BatchResponse(index, request, status_code, error=error_from_response(status_code, body["error"]))
    if status_code is None or status_code >= 400 or not isinstance(body, dict):
        message = f"HTTP {status_code}" if status_code else "Batch request failed"
        return BatchResponse(index, request, status_code, error=error_from_response(status_code, {"message": message}))
    return BatchResponse(index, request, status_code, body=body)


def _redact(path_or_url: str) -> str:
    """Strip the query string so tokens never reach logs."""
    return path_or_url.split("?", 1)[0]
