"""
JudgeSync - CourtListener API Client

Every outbound request goes through, in order:
1. the circuit breaker gate
2. a rate limiter token
3. an httpx timeout
4. tenacity retries with exponential backoff and jitter (429 and 5xx only)

Failures surface as typed errors from ``judgesync.core.error_taxonomy``
(RateLimitExceeded, CircuitOpen, UpstreamTimeout, UpstreamError) so the queue
worker can decide between requeue and abandon.

Usage:
    with CourtListenerClient(base_url, api_key, rate_limiter=limiter,
                             circuit_breaker=breaker) as client:
        person = client.get_person("1234")
        for opinion in client.iter_opinions("1234", max_items=250):
            ...
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from judgesync import __version__
from judgesync.clients.circuit_breaker import CircuitBreaker
from judgesync.clients.rate_limiter import RateLimiter
from judgesync.config import DEFAULT_COURTLISTENER_URL
from judgesync.core.error_taxonomy import (
    CircuitOpen,
    MalformedPayloadError,
    RateLimitExceeded,
    RetryableUpstreamError,
    TransientUpstreamError,
    UpstreamTimeout,
    upstream_error_for,
)

logger = logging.getLogger(__name__)

UPSTREAM_NAME = "courtlistener"


def _is_retryable(exc: BaseException) -> bool:
    """429/5xx responses, timeouts and transport errors. Never local gate rejections."""
    if isinstance(exc, (RetryableUpstreamError, UpstreamTimeout)):
        return True
    return isinstance(exc, TransientUpstreamError) and not isinstance(
        exc, (CircuitOpen, RateLimitExceeded)
    )


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by CourtListener
        return None


class CourtListenerClient:
    """Synchronous CourtListener REST client guarded by a breaker and a rate limiter."""

    def __init__(
        self,
        base_url: str = DEFAULT_COURTLISTENER_URL,
        api_key: Optional[str] = None,
        *,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_wait_seconds: float = 30.0,
        rate_limit_max_wait: Optional[float] = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        headers = {
            "Accept": "application/json",
            "User-Agent": f"judgesync/{__version__}",
        }
        if api_key:
            headers["Authorization"] = f"Token {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.max_retries = max_retries
        self.retry_max_wait_seconds = retry_max_wait_seconds
        self.rate_limit_max_wait = rate_limit_max_wait
        self._sleep = sleep
        self._backoff = wait_exponential_jitter(
            initial=retry_base_seconds,
            max=retry_max_wait_seconds,
            jitter=retry_base_seconds,
        )
        self.request_count = 0
        self._count_lock = threading.Lock()

    def __enter__(self) -> "CourtListenerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # -------------------------------------------------------------------------
    # Request pipeline
    # -------------------------------------------------------------------------

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            return min(float(retry_after), self.retry_max_wait_seconds)
        return self._backoff(retry_state)

    def _send_once(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        allow_404: bool,
    ) -> Any:
        self.circuit_breaker.before_call()
        try:
            self.rate_limiter.acquire(UPSTREAM_NAME, max_wait=self.rate_limit_max_wait)
            with self._count_lock:
                self.request_count += 1
            response = self._client.request(method, url, params=params)
        except httpx.TimeoutException as exc:
            self.circuit_breaker.record_failure()
            raise UpstreamTimeout(f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            # Transport failures, undecodable bodies, redirect loops.
            self.circuit_breaker.record_failure()
            raise TransientUpstreamError(f"{method} {url} failed: {exc}") from exc
        except BaseException:
            # Admitted but no outcome (rate limit, interrupt): free the trial slot.
            self.circuit_breaker.release()
            raise

        status = response.status_code
        # Any non-5xx answer proves the upstream is reachable.
        if status >= 500:
            self.circuit_breaker.record_failure()
        else:
            self.circuit_breaker.record_success()

        if status == 404 and allow_404:
            return None
        if response.is_error:
            raise upstream_error_for(
                status,
                f"{method} {response.url.path} returned HTTP {status}",
                retry_after=_parse_retry_after(response),
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedPayloadError(
                f"{method} {response.url.path} returned non-JSON body"
            ) from exc

    def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        """
        Perform one logical request with retries.

        Args:
            method: HTTP method
            url: Path relative to the base URL, or an absolute ``next`` URL
            params: Query parameters (``format=json`` is added)
            allow_404: Return None instead of raising on HTTP 404

        Raises:
            CircuitOpen, RateLimitExceeded, UpstreamTimeout, UpstreamError,
            MalformedPayloadError
        """
        query = dict(params or {})
        if "format=" not in url:
            query.setdefault("format", "json")

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._send_once, method, url, query or None, allow_404)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, allow_404: bool = False) -> Any:
        return self.request("GET", path, params=params, allow_404=allow_404)

    def iter_results(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        max_items: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Follow ``next`` links and yield result objects, stopping after ``max_items``."""
        if max_items is not None and max_items <= 0:
            return
        url: Optional[str] = path
        query = params
        yielded = 0
        while url:
            page = self.get(url, params=query)
            if not isinstance(page, dict) or not isinstance(page.get("results"), list):
                raise MalformedPayloadError(f"GET {url} did not return a paginated result set")
            for item in page["results"]:
                yield item
                yielded += 1
                if max_items is not None and yielded >= max_items:
                    return
            url = page.get("next")
            query = None

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    def get_court(self, court_id: str) -> Optional[Dict[str, Any]]:
        return self.get(f"courts/{court_id}/", allow_404=True)

    def iter_courts(
        self,
        jurisdiction: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Courts in use. ``jurisdiction`` is CourtListener's court-level code (F, FD, S, ...)."""
        params: Dict[str, Any] = {"in_use": "true"}
        if jurisdiction:
            params["jurisdiction"] = jurisdiction
        return self.iter_results("courts/", params, max_items=max_items)

    def get_person(self, person_id: str) -> Optional[Dict[str, Any]]:
        return self.get(f"people/{person_id}/", allow_404=True)

    def iter_people(
        self,
        court_id: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        params: Dict[str, Any] = {"is_alias_of__isnull": "true"}
        if court_id:
            params["positions__court"] = court_id
        return self.iter_results("people/", params, max_items=max_items)

    def get_positions(self, person_id: str) -> List[Dict[str, Any]]:
        return list(self.iter_results("positions/", {"person": person_id}))

    def iter_opinions(
        self,
        author_id: str,
        since: Optional[date] = None,
        max_items: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        params: Dict[str, Any] = {"author": author_id, "ordering": "-date_created"}
        if since:
            params["cluster__date_filed__gte"] = since.isoformat()
        return self.iter_results("opinions/", params, max_items=max_items)

    def iter_dockets(
        self,
        judge_id: str,
        since: Optional[date] = None,
        max_items: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        params: Dict[str, Any] = {"assigned_to_id": judge_id, "ordering": "-date_filed"}
        if since:
            params["date_filed__gte"] = since.isoformat()
        return self.iter_results("dockets/", params, max_items=max_items)

    def status(self) -> Dict[str, Any]:
        return {
            "requests": self.request_count,
            "rate_limit": self.rate_limiter.status(UPSTREAM_NAME),
            "circuit_breaker": self.circuit_breaker.snapshot(),
        }
