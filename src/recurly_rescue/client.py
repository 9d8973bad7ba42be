"""Resilient Recurly v3 HTTP client.

Wraps an ``httpx.Client`` with Basic authentication, rate-limit header
tracking, pacing when the remaining budget runs low, bounded waits on
HTTP 429, and tenacity-driven exponential backoff for 5xx responses and
transient transport failures. Carries no business semantics.
"""

from __future__ import annotations

import base64
import dataclasses
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from recurly_rescue.exceptions import (
    ApiError,
    CredentialError,
    NetworkError,
    RateLimitExceededError,
    RequestError,
    RequestTimeoutError,
    ServerError,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://v3.recurly.com"
ACCEPT_HEADER = "application/vnd.recurly.v2021-02-25+json"

MAX_RATE_LIMIT_RETRIES = 5
PACING_DELAY_SECONDS = 1.0
MIN_RATE_LIMIT_WAIT_SECONDS = 1.0
DEFAULT_RATE_LIMIT_WAIT_SECONDS = 5.0

_RETRYABLE_ERRORS = (ServerError, NetworkError, RequestTimeoutError)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Retry and pacing policy, fixed for the lifetime of a client."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt.")
    backoff_base: int = Field(default=2, ge=1, description="Exponent base, in seconds.")
    backoff_max_seconds: int = Field(default=30, ge=1)
    rate_limit_threshold: int = Field(
        default=10,
        ge=0,
        description="Pace requests when fewer calls than this remain.",
    )
    request_timeout_ms: int = Field(default=30_000, gt=0)

    def backoff_delay(self, attempt: int) -> float:
        """Return the delay in seconds before retrying after ``attempt``.

        ``attempt`` is zero-based: the wait after the first failure is
        ``backoff_base ** 0``. Never exceeds ``backoff_max_seconds``.
        """
        return float(min(self.backoff_base**attempt, self.backoff_max_seconds))


@dataclass(slots=True)
class RateLimitSnapshot:
    """Last-seen rate-limit headers for one client instance."""

    remaining: int | None = None
    reset: int | None = None

    @property
    def reset_at(self) -> datetime | None:
        if self.reset is None:
            return None
        return datetime.fromtimestamp(self.reset, tz=UTC)

    def update(self, headers: httpx.Headers) -> None:
        remaining = _parse_int(headers.get("x-ratelimit-remaining"))
        if remaining is not None:
            self.remaining = remaining
        reset = _parse_int(headers.get("x-ratelimit-reset"))
        if reset is not None:
            self.reset = reset


@dataclass(slots=True)
class ApiResponse:
    """Successful API response."""

    data: Any
    headers: dict[str, str] = field(default_factory=dict)
    status_code: int = 200


@dataclass(slots=True)
class _CallBudget:
    rate_limit_hits: int = 0


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RecurlyClient:
    """Sequential, single-owner client for the Recurly v3 REST API.

    Attributes:
        policy: The immutable retry policy.
        base_url: API root every request path is appended to.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        site_id: str | None = None,
        policy: RetryPolicy | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Recurly private API key.
            base_url: API root URL.
            site_id: Optional site identifier sent as ``X-Recurly-Site``.
            policy: Retry policy; defaults to :class:`RetryPolicy`.
            client: Optional pre-built ``httpx.Client`` (not closed by us).
            sleep: Sleep function used for pacing, waits, and backoff.
            clock: Returns the current epoch time in seconds.

        Raises:
            CredentialError: If ``api_key`` is missing or blank.
        """
        if api_key is None:
            raise CredentialError("API key is required")
        if not isinstance(api_key, str) or not api_key.strip():
            raise CredentialError("API key must be a non-empty string")

        self.policy = policy or RetryPolicy()
        self.base_url = base_url.rstrip("/")
        self._site_id = site_id
        token = base64.b64encode(f"{api_key}:".encode()).decode("ascii")
        self._authorization = f"Basic {token}"
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=self.policy.request_timeout_ms / 1000
        )
        self._sleep = sleep
        self._clock = clock
        self._rate_limit = RateLimitSnapshot()

    def __repr__(self) -> str:
        return f"RecurlyClient(base_url={self.base_url!r}, site_id={self._site_id!r})"

    def __enter__(self) -> RecurlyClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @property
    def site_id(self) -> str | None:
        return self._site_id

    @property
    def rate_limit(self) -> RateLimitSnapshot:
        """A copy of the most recent rate-limit snapshot."""
        return dataclasses.replace(self._rate_limit)

    # -- Public API ---------------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResponse:
        """Send a request, retrying transient failures per the policy.

        Args:
            method: HTTP method.
            path: Path below the API root, e.g. ``/accounts``.
            body: Optional JSON-serializable request body.
            params: Optional query parameters.

        Returns:
            The parsed successful response.

        Raises:
            RequestError: For non-retryable 4xx responses.
            ServerError: For 5xx responses after retries are exhausted.
            NetworkError: For transport failures after retries are exhausted.
            RequestTimeoutError: For timeouts after retries are exhausted.
            RateLimitExceededError: After more than five 429 responses.
        """
        url = f"{self.base_url}{path}"
        budget = _CallBudget()
        retrying = Retrying(
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=self._backoff_wait,
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self._send, method, url, body, params, budget)

    def get(self, path: str, params: dict[str, Any] | None = None) -> ApiResponse:
        return self.request("GET", path, params=params)

    def post(self, path: str, body: Any = None) -> ApiResponse:
        return self.request("POST", path, body=body)

    def put(self, path: str, body: Any = None) -> ApiResponse:
        return self.request("PUT", path, body=body)

    def delete(self, path: str) -> ApiResponse:
        return self.request("DELETE", path)

    # -- Internals ----------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": self._authorization,
            "Accept": ACCEPT_HEADER,
            "Content-Type": "application/json",
        }
        if self._site_id:
            headers["X-Recurly-Site"] = self._site_id
        return headers

    def _send(
        self,
        method: str,
        url: str,
        body: Any,
        params: dict[str, Any] | None,
        budget: _CallBudget,
    ) -> ApiResponse:
        """One retry attempt; HTTP 429 is absorbed here without using a slot."""
        while True:
            self._pace()
            response = self._transmit(method, url, body, params)
            self._rate_limit.update(response.headers)

            if response.status_code != 429:
                return self._classify(response)

            budget.rate_limit_hits += 1
            if budget.rate_limit_hits > MAX_RATE_LIMIT_RETRIES:
                raise RateLimitExceededError(
                    f"Rate limit exceeded: max retries ({MAX_RATE_LIMIT_RETRIES}) "
                    "reached. Try again later.",
                    status_code=429,
                )
            wait = self.rate_limit_wait()
            logger.warning(
                "rate_limited",
                wait_seconds=wait,
                hit=budget.rate_limit_hits,
                max_hits=MAX_RATE_LIMIT_RETRIES,
            )
            self._sleep(wait)

    def _pace(self) -> None:
        remaining = self._rate_limit.remaining
        if remaining is not None and remaining < self.policy.rate_limit_threshold:
            logger.debug("rate_limit_pacing", remaining=remaining)
            self._sleep(PACING_DELAY_SECONDS)

    def _transmit(
        self,
        method: str,
        url: str,
        body: Any,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return self._client.request(
                method,
                url,
                json=body,
                params=params,
                headers=self._headers(),
                timeout=self.policy.request_timeout_ms / 1000,
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError("Request timeout") from exc
        except (httpx.NetworkError, httpx.RemoteProtocolError) as exc:
            raise NetworkError(f"Network error: {exc}") from exc

    def rate_limit_wait(self) -> float:
        """Seconds to wait after a 429, based on the last reset header."""
        reset = self._rate_limit.reset
        if reset is None:
            return DEFAULT_RATE_LIMIT_WAIT_SECONDS
        return max(reset - self._clock(), MIN_RATE_LIMIT_WAIT_SECONDS)

    def _classify(self, response: httpx.Response) -> ApiResponse:
        status = response.status_code
        data = _parse_body(response)

        if 200 <= status < 300:
            return ApiResponse(
                data=data,
                headers=dict(response.headers),
                status_code=status,
            )
        if 400 <= status < 500:
            raise RequestError(_client_error_message(status, data), status, data)
        if status >= 500:
            raise ServerError(f"Server error {status}: {_dump(data)}", status_code=status)
        raise ApiError(f"Unexpected response status {status}", status_code=status)

    def _backoff_wait(self, retry_state: RetryCallState) -> float:
        return self.policy.backoff_delay(retry_state.attempt_number - 1)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "request_retry",
            attempt=retry_state.attempt_number,
            max_retries=self.policy.max_retries,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
            error_type=type(exc).__name__,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _dump(data: Any) -> str:
    return json.dumps(data, default=str)


def _client_error_message(status: int, data: Any) -> str:
    if status == 401:
        return "Invalid API key. Check your .env file."
    if status == 403:
        return "API key lacks required permissions."
    if status == 404:
        server_message = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            server_message = data["error"].get("message")
        return server_message or "Resource not found."
    return f"Recurly API error {status}: {_dump(data)}"
