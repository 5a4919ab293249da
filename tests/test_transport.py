"""Tests for the sliding-window limiter, body parsing and the request pipeline."""

import asyncio
from decimal import Decimal

import httpx
import pytest

from finsync.app.open_finance.exceptions import (
    AuthenticationError, ParseError, PermissionDeniedError, ProviderError, RateLimitError
)
from finsync.app.open_finance.transport import SlidingWindowRateLimiter, parse_response_body

from tests.fakes import build_provider, fixed_clock, limiter_with


def scripted(responses):
    """Handler answering /auth normally and /items with ``responses`` in order."""
    calls = {"auth": 0, "items": 0, "api_keys": []}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth":
            calls["auth"] += 1
            return httpx.Response(200, json={"apiKey": f"key-{calls['auth']}"})
        calls["api_keys"].append(request.headers.get("X-API-KEY"))
        response = responses[min(calls["items"], len(responses) - 1)]
        calls["items"] += 1
        return response()

    return handler, calls


def ok_items():
    return httpx.Response(200, json={"results": [{"id": "item-1"}]})


class TestSlidingWindowRateLimiter:

    def test_sixty_first_request_in_window_is_rejected(self):
        clock = fixed_clock()
        limiter = SlidingWindowRateLimiter(max_requests=60, window_seconds=60.0, clock=lambda: clock[0])

        for _ in range(60):
            limiter.acquire()
            clock[0] += 0.5

        with pytest.raises(RateLimitError) as exc_info:
            limiter.acquire()

        assert exc_info.value.retry_after >= 0
        assert exc_info.value.retry_after == pytest.approx(30.0)
        assert limiter.in_window == 60

    def test_slot_frees_once_oldest_request_leaves_window(self):
        clock = fixed_clock()
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60.0, clock=lambda: clock[0])
        limiter.acquire()
        limiter.acquire()

        clock[0] += 60.0
        limiter.acquire()

        assert limiter.in_window == 1

    def test_block_for_rejects_until_cooldown_ends(self):
        clock = fixed_clock()
        limiter = SlidingWindowRateLimiter(clock=lambda: clock[0])
        limiter.block_for(5.0)

        with pytest.raises(RateLimitError) as exc_info:
            limiter.acquire()
        assert exc_info.value.retry_after == pytest.approx(5.0)

        clock[0] += 5.0
        limiter.acquire()


class TestParseResponseBody:

    def test_empty_body_is_empty_object(self):
        assert parse_response_body("", "/items") == {}
        assert parse_response_body(None, "/items") == {}
        assert parse_response_body("   ", "/items") == {}

    def test_concatenated_objects_keep_first(self):
        assert parse_response_body('{"a":1}{"b":2}', "/items") == {"a": 1}

    def test_html_error_page_is_parse_error(self):
        with pytest.raises(ParseError):
            parse_response_body("<!DOCTYPE html><html><body>502</body></html>", "/items")

    def test_invalid_json_is_parse_error(self):
        with pytest.raises(ParseError):
            parse_response_body("{not json", "/items")

    def test_trailing_garbage_is_parse_error(self):
        with pytest.raises(ParseError):
            parse_response_body('{"a":1} trailing', "/items")

    def test_floats_parse_as_decimal(self):
        body = parse_response_body('{"amount": -45.90}', "/transactions")
        assert body["amount"] == Decimal("-45.90")


class TestRateLimitedTransport:

    def test_429_honors_retry_after_then_succeeds(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        handler, calls = scripted([
            lambda: httpx.Response(429, headers={"Retry-After": "2"}),
            ok_items,
        ])
        provider = build_provider(handler, sleep=record_sleep)

        items = asyncio.run(provider.list_items())

        assert [item.id for item in items] == ["item-1"]
        assert sleeps == [2.0]
        assert calls["items"] == 2

    def test_429_exhausts_three_retries_with_exponential_backoff(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        handler, calls = scripted([lambda: httpx.Response(429)])
        provider = build_provider(handler, sleep=record_sleep)

        with pytest.raises(RateLimitError) as exc_info:
            asyncio.run(provider.list_items())

        assert sleeps == [1.0, 2.0, 4.0]
        assert calls["items"] == 4
        assert exc_info.value.status_code == 429

    def test_401_refreshes_token_and_retries_once(self):
        handler, calls = scripted([lambda: httpx.Response(401, json={"message": "expired"}), ok_items])
        provider = build_provider(handler)

        items = asyncio.run(provider.list_items())

        assert len(items) == 1
        assert calls["auth"] == 2
        assert calls["api_keys"] == ["key-1", "key-2"]

    def test_second_401_is_authentication_error(self):
        handler, calls = scripted([lambda: httpx.Response(401, json={"message": "nope"})])
        provider = build_provider(handler)

        with pytest.raises(AuthenticationError):
            asyncio.run(provider.list_items())

        assert calls["items"] == 2

    def test_403_is_permission_denied_without_retry(self):
        handler, calls = scripted([lambda: httpx.Response(403, json={"message": "forbidden"})])
        provider = build_provider(handler)

        with pytest.raises(PermissionDeniedError):
            asyncio.run(provider.list_items())

        assert calls["items"] == 1

    def test_server_error_is_provider_error_with_code(self):
        handler, _ = scripted([lambda: httpx.Response(500, json={"message": "boom", "code": 1001})])
        provider = build_provider(handler)

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(provider.list_items())

        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "1001"
        assert "boom" in str(exc_info.value)

    def test_html_body_is_parse_error(self):
        handler, _ = scripted([lambda: httpx.Response(200, text="<html><body>Bad Gateway</body></html>")])
        provider = build_provider(handler)

        with pytest.raises(ParseError):
            asyncio.run(provider.list_items())

    def test_local_limit_rejects_without_network_call(self):
        clock = fixed_clock()
        handler, calls = scripted([ok_items])
        # /auth plus two data requests fill a window of three
        provider = build_provider(handler, limiter=limiter_with(3, clock))

        async def three_calls():
            await provider.list_items()
            await provider.list_items()
            await provider.list_items()

        with pytest.raises(RateLimitError) as exc_info:
            asyncio.run(three_calls())

        assert calls["items"] == 2
        assert exc_info.value.retry_after >= 0

    def test_invalid_payload_is_parse_error(self):
        handler, _ = scripted([lambda: httpx.Response(200, json={"results": [{"type": "BANK"}]})])
        provider = build_provider(handler)

        with pytest.raises(ParseError):
            asyncio.run(provider.list_accounts("item-1"))
