"""
Pluggy Open Finance provider

Provider Gateway over the Pluggy REST API:
- Items (bank logins), accounts, paged transactions
- Credit card bills and their line items
- Investments
- Connect tokens for the Pluggy Connect widget

Authentication: client id/secret exchanged for an API key (X-API-KEY header).
Rate limit: 60 requests per rolling minute, enforced client-side.
"""

import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from finsync.config import get_settings
from ..exceptions import AuthenticationError, ParseError, ProviderError
from ..tokens import TokenManager
from ..transport import RateLimitedTransport, SlidingWindowRateLimiter
from .base import BaseAggregationProvider
from .payloads import (
    Account, ConnectTokenOptions, CreditCardBill, CreditCardBillTransaction,
    Investment, Item, Transaction
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MAX_PAGES = 100
DEFAULT_PAGE_SIZE = 500


@dataclass
class TransactionPage:
    transactions: List[Transaction]
    page: int
    total_pages: int
    total: int
    has_next_page: bool


def _results(data: Any) -> Any:
    if isinstance(data, dict):
        return data.get("results") or []
    return data


def _validate_one(model: Type[M], data: Any, endpoint: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error(f"Invalid {model.__name__} payload from {endpoint}: {e}")
        raise ParseError(f"Invalid {model.__name__} payload from {endpoint}: {e}") from e


def _validate_list(model: Type[M], data: Any, endpoint: str) -> List[M]:
    try:
        return TypeAdapter(List[model]).validate_python(_results(data))
    except ValidationError as e:
        logger.error(f"Invalid {model.__name__} list from {endpoint}: {e}")
        raise ParseError(f"Invalid {model.__name__} list from {endpoint}: {e}") from e


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


class PluggyProvider(BaseAggregationProvider):
    """
    Pluggy API client.

    One instance holds one user's credentials and token cache; build a new
    instance per user. Use as an async context manager (or call ``aclose``)
    to release the HTTP client.
    """

    name = "pluggy"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        sleep=None,
        clock=time.time
    ):
        """
        Build the gateway and its token/transport stack.

        Args:
            client_id: Pluggy client id (UUID)
            client_secret: Pluggy client secret
            base_url: API base URL (default from settings)
            http_client: Pre-built client, e.g. one using httpx.MockTransport
            limiter: Request limiter (default 60/min from settings)
            sleep: Coroutine used to wait between 429 retries
            clock: Wall-clock source for token expiry

        Raises:
            InvalidCredentialsError: Malformed client id or empty secret
        """
        settings = get_settings()
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.provider_timeout_seconds
        )
        self.limiter = limiter or SlidingWindowRateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds
        )
        self.tokens = TokenManager(
            client_id,
            client_secret,
            self.http_client,
            limiter=self.limiter,
            api_key_ttl=settings.api_key_ttl_seconds,
            connect_token_ttl=settings.connect_token_ttl_seconds,
            refresh_buffer=settings.token_refresh_buffer_seconds,
            clock=clock
        )

        transport_kwargs: Dict[str, Any] = {"max_retries": settings.max_rate_limit_retries}
        if sleep is not None:
            transport_kwargs["sleep"] = sleep
        self.transport = RateLimitedTransport(self.http_client, self.tokens, self.limiter, **transport_kwargs)

    async def __aenter__(self) -> "PluggyProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.transport.request("GET", endpoint, params=params)

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def list_items(self) -> List[Item]:
        data = await self._get("/items")
        items = _validate_list(Item, data, "/items")
        logger.info(f"Fetched {len(items)} items")
        return items

    async def get_item(self, item_id: str) -> Item:
        endpoint = f"/items/{item_id}"
        return _validate_one(Item, await self._get(endpoint), endpoint)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def list_accounts(self, item_id: str) -> List[Account]:
        data = await self._get("/accounts", params={"itemId": item_id})
        return _validate_list(Account, data, "/accounts")

    async def get_account(self, account_id: str) -> Account:
        endpoint = f"/accounts/{account_id}"
        return _validate_one(Account, await self._get(endpoint), endpoint)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def list_transactions(
        self,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE
    ) -> TransactionPage:
        """
        Fetch one page of an account's transactions.

        Args:
            account_id: Pluggy account id
            from_date: Inclusive start date
            to_date: Inclusive end date
            page: 1-based page number
            page_size: Page size (Pluggy maximum is 500)

        Returns:
            TransactionPage
        """
        data = await self._get("/transactions", params={
            "accountId": account_id,
            "from": _iso(from_date),
            "to": _iso(to_date),
            "page": page,
            "pageSize": page_size,
        })
        transactions = _validate_list(Transaction, data, "/transactions")

        meta = data if isinstance(data, dict) else {}
        total_pages = int(meta.get("totalPages") or 1)
        current = int(meta.get("page") or page)
        has_next = bool(meta.get("hasNextPage")) or current < total_pages

        return TransactionPage(
            transactions=transactions,
            page=current,
            total_pages=total_pages,
            total=int(meta.get("total") or meta.get("totalCount") or len(transactions)),
            has_next_page=has_next
        )

    async def list_all_transactions(
        self,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[Transaction]:
        all_transactions: List[Transaction] = []
        page = 1

        while page <= MAX_PAGES:
            result = await self.list_transactions(account_id, from_date, to_date, page=page)
            all_transactions.extend(result.transactions)

            if not result.has_next_page or not result.transactions:
                break
            page += 1
        else:
            logger.warning(f"Stopped paging transactions for account {account_id} after {MAX_PAGES} pages")

        return all_transactions

    # ------------------------------------------------------------------
    # Credit cards
    # ------------------------------------------------------------------

    async def list_credit_card_bills(
        self,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[CreditCardBill]:
        data = await self._get("/credit_card_bills", params={
            "accountId": account_id,
            "from": _iso(from_date),
            "to": _iso(to_date),
        })
        return _validate_list(CreditCardBill, data, "/credit_card_bills")

    async def list_credit_card_bill_transactions(self, bill_id: str) -> List[CreditCardBillTransaction]:
        endpoint = f"/credit_card_bills/{bill_id}/transactions"
        return _validate_list(CreditCardBillTransaction, await self._get(endpoint), endpoint)

    # ------------------------------------------------------------------
    # Investments
    # ------------------------------------------------------------------

    async def list_investments(self, account_id: str) -> List[Investment]:
        data = await self._get("/investments", params={"accountId": account_id})
        return _validate_list(Investment, data, "/investments")

    # ------------------------------------------------------------------
    # Tokens and diagnostics
    # ------------------------------------------------------------------

    async def create_connect_token(self, options: Optional[ConnectTokenOptions] = None) -> str:
        return await self.tokens.get_connect_token(options)

    async def health_check(self) -> Dict[str, Any]:
        """
        Check that credentials authenticate and the API answers.

        Returns:
            {'status': 'healthy'|'unhealthy', 'latency_ms': int,
             'auth_status': 'authenticated'|'authentication_failed'|'unreachable'}
        """
        started = time.monotonic()
        auth_status = "unknown"
        try:
            await self.tokens.get_api_key()
            auth_status = "authenticated"
            await self._get("/items", params={"pageSize": 1})
            status = "healthy"
        except ProviderError as e:
            logger.warning(f"Provider health check failed: {e}")
            if isinstance(e, AuthenticationError):
                auth_status = "authentication_failed"
            elif auth_status != "authenticated":
                auth_status = "unreachable"
            status = "unhealthy"

        return {
            "status": status,
            "latency_ms": int((time.monotonic() - started) * 1000),
            "auth_status": auth_status,
        }

    def auth_status(self) -> Dict[str, Any]:
        return self.tokens.status()

    def clear_tokens(self) -> None:
        logger.info("Clearing cached provider tokens")
        self.tokens.invalidate()
