"""Tests for the Pluggy gateway: paging, single-resource reads and token diagnostics."""

import asyncio

import pytest

from finsync.app.open_finance.exceptions import ProviderError
from finsync.app.open_finance.providers import pluggy as pluggy_module

from tests.fakes import (
    build_provider, checking_account, fixed_clock, limiter_with, seed_scenario, transaction_payload
)


def run(coro):
    return asyncio.run(coro)


def numbered_transactions(count, account_id="A1"):
    return [
        transaction_payload(f"T{n}", account_id, -float(n), f"Compra {n}")
        for n in range(1, count + 1)
    ]


class TestTransactionPaging:

    def test_pages_are_concatenated_in_order(self, fake_api, provider):
        fake_api.page_size = 2
        fake_api.transactions["A1"] = numbered_transactions(5)

        transactions = run(provider.list_all_transactions("A1"))

        assert [t.id for t in transactions] == ["T1", "T2", "T3", "T4", "T5"]
        assert [params["page"] for params in fake_api.data_requests("/transactions")] == ["1", "2", "3"]

    def test_last_page_reports_no_next_page(self, fake_api, provider):
        fake_api.page_size = 2
        fake_api.transactions["A1"] = numbered_transactions(5)

        page = run(provider.list_transactions("A1", page=3))

        assert [t.id for t in page.transactions] == ["T5"]
        assert page.total_pages == 3
        assert page.total == 5
        assert page.has_next_page is False

    def test_paging_stops_at_the_page_limit(self, fake_api, mocker):
        fake_api.page_size = 1
        fake_api.transactions["A1"] = numbered_transactions(pluggy_module.MAX_PAGES + 50)
        provider = build_provider(fake_api.handler, limiter=limiter_with(1000, fixed_clock()))
        warning = mocker.spy(pluggy_module.logger, "warning")

        transactions = run(provider.list_all_transactions("A1"))

        assert len(transactions) == 100
        assert transactions[-1].id == "T100"
        assert len(fake_api.data_requests("/transactions")) == 100
        warning.assert_called_once()
        assert "after 100 pages" in warning.call_args.args[0]

    def test_empty_page_ends_paging(self, fake_api, provider):
        fake_api.transactions["A1"] = []

        assert run(provider.list_all_transactions("A1")) == []
        assert len(fake_api.data_requests("/transactions")) == 1


class TestSingleResources:

    def test_get_account(self, fake_api, provider):
        seed_scenario(fake_api)

        account = run(provider.get_account("A2"))

        assert account.id == "A2"
        assert account.credit_data.credit_limit == 2000

    def test_missing_account_is_provider_error(self, fake_api, provider):
        fake_api.accounts["item-1"] = [checking_account("A1", 10.0)]

        with pytest.raises(ProviderError) as exc_info:
            run(provider.get_account("A9"))
        assert exc_info.value.status_code == 404


class TestTokenDiagnostics:

    def test_auth_status_reflects_cached_tokens(self, fake_api, provider):
        assert provider.auth_status()["has_api_key"] is False

        run(provider.list_items())

        status = provider.auth_status()
        assert status["has_api_key"] is True
        assert status["has_connect_token"] is False
        assert status["api_key_expires_at"] is not None

    def test_clear_tokens_forces_reauthentication(self, fake_api, provider):
        run(provider.list_items())
        provider.clear_tokens()

        assert provider.auth_status()["has_api_key"] is False

        run(provider.list_items())
        assert fake_api.auth_calls == 2

    def test_health_check_reports_unreachable_provider(self, fake_api, provider):
        fake_api.unreachable.add("/auth")

        health = run(provider.health_check())

        assert health["status"] == "unhealthy"
        assert health["auth_status"] == "unreachable"
