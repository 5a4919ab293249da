"""
Rate-Limited Transport

Outbound HTTP plumbing shared by every provider call:
- Sliding-window request limiter (rejects locally, reports the wait)
- Retry with backoff on provider 429 responses
- One forced token refresh on 401
- Defensive body parsing (empty bodies, HTML error pages, concatenated JSON)
"""

import asyncio
import json
import logging
import time
from collections import deque
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .exceptions import (
    AuthenticationError, ParseError, PermissionDeniedError, ProviderError, RateLimitError
)

logger = logging.getLogger(__name__)

USER_AGENT = "finsync/1.0"


class SlidingWindowRateLimiter:
    """
    Client-side limiter over a trailing time window.

    Tracks the timestamps of requests issued in the last ``window_seconds``
    and refuses to issue more than ``max_requests`` of them. A refusal raises
    RateLimitError carrying the seconds until the oldest request leaves the
    window, without touching the network.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps = deque()
        self._blocked_until = 0.0

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def acquire(self) -> None:
        """
        Record one request or raise if the window is full.

        Raises:
            RateLimitError: With ``retry_after`` >= 0 seconds
        """
        now = self._clock()
        self._evict(now)

        if now < self._blocked_until:
            wait = self._blocked_until - now
            raise RateLimitError(
                f"Rate limited by provider. Wait {wait:.1f}s before retrying.",
                retry_after=wait
            )

        if len(self._timestamps) >= self.max_requests:
            wait = max(0.0, self.window_seconds - (now - self._timestamps[0]))
            logger.warning(
                f"Rate limit reached ({self.max_requests}/{self.window_seconds:.0f}s), "
                f"next slot in {wait:.1f}s"
            )
            raise RateLimitError(
                f"Rate limit exceeded. Maximum {self.max_requests} requests per "
                f"{self.window_seconds:.0f} seconds.",
                retry_after=wait
            )

        self._timestamps.append(now)

    def block_for(self, seconds: float) -> None:
        """Refuse every request for ``seconds`` (provider-imposed cool-down)."""
        self._blocked_until = max(self._blocked_until, self._clock() + seconds)

    @property
    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._timestamps)


def parse_response_body(text: Optional[str], endpoint: str) -> Any:
    """
    Parse a provider response body.

    Args:
        text: Raw response text
        endpoint: Endpoint path, used in messages only

    Returns:
        Parsed JSON value; ``{}`` for an empty body. When two JSON documents
        are concatenated back to back, only the first is returned.

    Raises:
        ParseError: HTML error page or unparsable JSON

    Example:
        >>> parse_response_body('{"a":1}{"b":2}', '/items')
        {'a': 1}
    """
    cleaned = (text or "").strip()
    if not cleaned:
        logger.debug(f"Empty response body for {endpoint}, treating as empty object")
        return {}

    lowered = cleaned.lower()
    if "<html" in lowered or "<!doctype" in lowered:
        logger.error(f"HTML response detected for {endpoint}")
        raise ParseError(
            f"Provider returned HTML instead of JSON for {endpoint}; this usually indicates a server error"
        )

    decoder = json.JSONDecoder(parse_float=Decimal)
    try:
        data, end = decoder.raw_decode(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON for {endpoint}: {e}. Body starts with: {cleaned[:200]}")
        raise ParseError(f"Invalid JSON response from {endpoint}: {e}") from e

    trailing = cleaned[end:].lstrip()
    if trailing:
        if trailing[0] in "{[":
            logger.warning(f"Concatenated JSON payload from {endpoint}; keeping the first document")
        else:
            raise ParseError(f"Invalid JSON response from {endpoint}: unexpected trailing data")

    return data


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "Unknown error")
    return "Unknown error"


def _error_code(body: Any) -> Optional[str]:
    if isinstance(body, dict) and body.get("code") is not None:
        return str(body["code"])
    return None


class RateLimitedTransport:
    """
    Authenticated request pipeline for provider data endpoints.

    Each call obtains the API key from the token manager, passes the local
    limiter, and sends the request with the ``X-API-KEY`` header. Provider
    429s are retried up to ``max_retries`` times, sleeping for ``Retry-After``
    or 1s, 2s, 4s. A 401 invalidates both cached tokens and is retried exactly
    once. A 403 is never retried.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_manager,
        limiter: SlidingWindowRateLimiter,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.http_client = http_client
        self.tokens = token_manager
        self.limiter = limiter
        self.max_retries = max_retries
        self._sleep = sleep
        self.request_count = 0

    async def send(
        self,
        method: str,
        endpoint: str,
        api_key: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Issue one rate-limited HTTP request without any retry logic.

        Raises:
            RateLimitError: Local window is full
            ProviderError: Network-level failure
        """
        self.limiter.acquire()
        self.request_count += 1

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if api_key:
            headers["X-API-KEY"] = api_key

        logger.debug(f"Provider request #{self.request_count}: {method} {endpoint}")
        try:
            return await self.http_client.request(
                method,
                endpoint,
                params={k: v for k, v in (params or {}).items() if v is not None},
                json=json_body,
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Request to {endpoint} failed: {e}")
            raise ProviderError(f"Request to {endpoint} failed: {e}") from e

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                logger.warning(f"Ignoring non-numeric Retry-After header: {retry_after}")
        return float(2 ** attempt)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Send an authenticated request and return the parsed body.

        Args:
            method: HTTP method
            endpoint: Path relative to the provider base URL
            params: Query parameters (None values are dropped)
            json_body: Optional JSON body

        Returns:
            Parsed response body

        Raises:
            AuthenticationError: Second consecutive 401
            RateLimitError: Local limit hit, or 429 retries exhausted
            PermissionDeniedError: 403
            ParseError: Body could not be parsed
            ProviderError: Any other non-success status
        """
        rate_limit_retries = 0
        auth_retried = False

        while True:
            api_key = await self.tokens.get_api_key()
            response = await self.send(method, endpoint, api_key, params, json_body)
            status = response.status_code

            if status == 429:
                delay = self._retry_delay(response, rate_limit_retries)
                if rate_limit_retries < self.max_retries:
                    rate_limit_retries += 1
                    logger.warning(
                        f"Rate limited by provider on {endpoint}, retry {rate_limit_retries}/"
                        f"{self.max_retries} in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                    continue
                self.limiter.block_for(delay)
                raise RateLimitError(
                    f"Rate limit exceeded on {endpoint} and maximum retries reached",
                    retry_after=delay,
                    status_code=429
                )

            if status == 401:
                if not auth_retried:
                    logger.info(f"Received 401 from {endpoint}, refreshing tokens and retrying once")
                    self.tokens.invalidate()
                    auth_retried = True
                    continue
                raise AuthenticationError(
                    f"Provider rejected credentials for {endpoint} after token refresh",
                    status_code=401
                )

            if status == 403:
                raise PermissionDeniedError(endpoint)

            body = parse_response_body(response.text, endpoint)

            if not response.is_success:
                logger.error(f"Provider error for {endpoint}: {status} {body}")
                raise ProviderError(
                    f"Provider API error: {_error_message(body)}",
                    status_code=status,
                    code=_error_code(body)
                )

            return body
