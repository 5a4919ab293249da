"""
Abstract base class for aggregation providers

Defines the read operations the entity syncers rely on, plus the fan-out
helpers that walk every account of one item.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Generic, List, Optional, TypeVar

from ..exceptions import AuthenticationError, PermissionDeniedError, ProviderError
from .payloads import (
    Account, ConnectTokenOptions, CreditCardBill, CreditCardBillTransaction,
    Investment, Item, Loan, Transaction
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FanOutResult(Generic[T]):
    """
    Records gathered across the accounts of one item.

    ``failed`` maps account id to error text; ``denied`` lists accounts whose
    scope returned 403. Neither stops the walk.
    """
    records: List[T] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    denied: List[str] = field(default_factory=list)

    @property
    def errors(self) -> List[str]:
        return [f"Account {account_id}: {message}" for account_id, message in self.failed.items()]


def is_credit_card_account(account: Account) -> bool:
    return "credit" in account.type.lower() or "credit" in (account.subtype or "").lower()


def is_investment_account(account: Account) -> bool:
    return (
        "investment" in account.type.lower()
        or "investment" in (account.subtype or "").lower()
        or account.investment_data is not None
    )


def is_loan_account(account: Account) -> bool:
    subtype = (account.subtype or "").lower()
    return (
        "loan" in account.type.lower()
        or "loan" in subtype
        or "financing" in subtype
        or account.loan_data is not None
    )


class BaseAggregationProvider(ABC):
    """
    Abstract base class for aggregation providers.

    Concrete providers implement the per-resource primitives; the fan-out
    helpers below are shared.
    """

    name = "base"

    @abstractmethod
    async def list_items(self) -> List[Item]:
        pass

    @abstractmethod
    async def get_item(self, item_id: str) -> Item:
        pass

    @abstractmethod
    async def list_accounts(self, item_id: str) -> List[Account]:
        """
        List every account under one item, in provider order.

        Args:
            item_id: Provider item id

        Returns:
            Validated accounts
        """
        pass

    @abstractmethod
    async def list_all_transactions(
        self,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[Transaction]:
        """
        All transactions of one account in the date range, across pages.

        Args:
            account_id: Provider account id
            from_date: Inclusive start date (None for provider default)
            to_date: Inclusive end date (None for today)

        Returns:
            Transactions in pagination order
        """
        pass

    @abstractmethod
    async def list_credit_card_bills(
        self,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[CreditCardBill]:
        """
        Statement periods of one credit card account.

        Raises:
            PermissionDeniedError: The bills scope is not granted for this account
        """
        pass

    @abstractmethod
    async def list_credit_card_bill_transactions(self, bill_id: str) -> List[CreditCardBillTransaction]:
        pass

    @abstractmethod
    async def list_investments(self, account_id: str) -> List[Investment]:
        """
        Holdings of one investment account.

        Raises:
            PermissionDeniedError: The investments scope is not granted
        """
        pass

    @abstractmethod
    async def create_connect_token(self, options: Optional[ConnectTokenOptions] = None) -> str:
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        pass

    async def aclose(self) -> None:
        """Release transport resources. Providers without any keep the default."""

    async def list_loans(self, item_id: str) -> List[Loan]:
        """Loans are exposed as loan-type accounts; build one Loan per such account."""
        accounts = await self.list_accounts(item_id)
        return [Loan.from_account(account) for account in accounts if is_loan_account(account)]

    async def get_all_item_transactions(
        self,
        item_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        accounts: Optional[List[Account]] = None
    ) -> FanOutResult[Transaction]:
        """
        Transactions for every account of an item.

        A failing account is recorded in ``failed`` and the walk continues
        with the next one. Authentication failures abort the walk.

        Args:
            item_id: Provider item id
            from_date: Inclusive start date
            to_date: Inclusive end date
            accounts: Pre-fetched account listing, to avoid a second call

        Returns:
            FanOutResult with transactions in account-listing order
        """
        if accounts is None:
            accounts = await self.list_accounts(item_id)

        result: FanOutResult[Transaction] = FanOutResult()
        logger.info(f"Fetching transactions for {len(accounts)} accounts of item {item_id}")

        for account in accounts:
            try:
                transactions = await self.list_all_transactions(account.id, from_date, to_date)
                logger.info(f"Found {len(transactions)} transactions for account {account.id}")
                result.records.extend(transactions)
            except AuthenticationError:
                raise
            except PermissionDeniedError as e:
                logger.warning(f"Transactions not permitted for account {account.id}: {e}")
                result.denied.append(account.id)
            except ProviderError as e:
                logger.error(f"Failed to fetch transactions for account {account.id}: {e}")
                result.failed[account.id] = str(e)

        return result

    async def get_all_credit_card_bills(
        self,
        item_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        accounts: Optional[List[Account]] = None
    ) -> FanOutResult[CreditCardBill]:
        """Bills for every credit card account of an item; 403 counts as zero bills."""
        if accounts is None:
            accounts = await self.list_accounts(item_id)

        result: FanOutResult[CreditCardBill] = FanOutResult()
        for account in filter(is_credit_card_account, accounts):
            try:
                bills = await self.list_credit_card_bills(account.id, from_date, to_date)
            except AuthenticationError:
                raise
            except PermissionDeniedError:
                logger.warning(
                    f"Credit card bills access denied for account {account.id} ({account.display_name}); "
                    f"treating as zero bills"
                )
                result.denied.append(account.id)
                continue
            except ProviderError as e:
                logger.error(f"Failed to fetch bills for account {account.id}: {e}")
                result.failed[account.id] = str(e)
                continue

            for bill in bills:
                bill.account_id = bill.account_id or account.id
            result.records.extend(bills)

        return result

    async def get_all_investments(
        self,
        item_id: str,
        accounts: Optional[List[Account]] = None
    ) -> FanOutResult[Investment]:
        """Holdings for every investment account of an item; 403 counts as zero holdings."""
        if accounts is None:
            accounts = await self.list_accounts(item_id)

        result: FanOutResult[Investment] = FanOutResult()
        for account in filter(is_investment_account, accounts):
            try:
                investments = await self.list_investments(account.id)
            except AuthenticationError:
                raise
            except PermissionDeniedError:
                logger.warning(
                    f"Investments access denied for account {account.id} ({account.display_name}); "
                    f"treating as zero holdings"
                )
                result.denied.append(account.id)
                continue
            except ProviderError as e:
                logger.error(f"Failed to fetch investments for account {account.id}: {e}")
                result.failed[account.id] = str(e)
                continue

            for investment in investments:
                investment.account_id = investment.account_id or account.id
            result.records.extend(investments)

        return result
