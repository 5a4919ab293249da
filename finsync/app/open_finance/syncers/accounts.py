"""
Account syncer

Upserts one local Account per (user, provider account id) and keeps the
denormalized CreditCard row of credit card accounts in lockstep.
"""

import logging
from typing import List, Optional

from finsync.app.models import Account, AccountType, CreditCard
from ..deduplication import IdentityResolver, differs
from ..mappers import map_account_type
from ..providers import payloads
from .base import BaseSyncer, SyncResult

logger = logging.getLogger(__name__)


class AccountSyncer(BaseSyncer):

    entity = "Account"

    async def sync(self, item_id: str, accounts: Optional[List[payloads.Account]] = None) -> SyncResult:
        """
        Reconcile every provider account of an item.

        Args:
            item_id: Provider item id
            accounts: Pre-fetched listing (fetched when omitted)

        Returns:
            SyncResult
        """
        if accounts is None:
            accounts = await self.provider.list_accounts(item_id)

        result = SyncResult()
        for provider_account in accounts:
            try:
                outcome = self.upsert(item_id, provider_account)
                self.db.commit()
            except Exception as e:
                self._record_failure(result, provider_account.id, e)
                continue

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1

        logger.info(
            f"Accounts for item {item_id}: {result.created} created, {result.updated} updated, "
            f"{result.skipped} unchanged, {len(result.errors)} errors"
        )
        return result

    def upsert(self, item_id: str, provider_account: payloads.Account) -> str:
        account_type = map_account_type(provider_account)
        credit = provider_account.credit_data
        loan = provider_account.loan_data
        investment = provider_account.investment_data

        local = IdentityResolver.find_account(self.db, self.user_id, provider_account.id)

        if local is None:
            local = Account(
                user_id=self.user_id,
                provider_account_id=provider_account.id,
                provider_item_id=item_id,
                name=provider_account.display_name,
                account_type=account_type,
                subtype=provider_account.subtype,
                balance=provider_account.balance,
                currency=provider_account.currency_code,
                status=provider_account.status or "ACTIVE",
                sync_enabled=True,
                credit_limit=credit.credit_limit if credit else None,
                available_credit_limit=credit.available_credit_limit if credit else None,
                due_date=credit.balance_due_date if credit else None,
                principal_amount=loan.principal_amount if loan else None,
                portfolio_value=investment.portfolio_value if investment else None,
            )
            self.db.add(local)
            self.db.flush()
            if account_type == AccountType.CREDIT_CARD:
                self._sync_credit_card(local, provider_account)
            logger.info(f"Created account {provider_account.id} ({account_type.value}) for item {item_id}")
            return "created"

        changed = (
            differs(local.balance, provider_account.balance)
            or local.status != (provider_account.status or "ACTIVE")
            or local.name != provider_account.display_name
            or (credit is not None and differs(local.credit_limit, credit.credit_limit))
        )

        if changed:
            local.balance = provider_account.balance
            local.status = provider_account.status or "ACTIVE"
            local.name = provider_account.display_name
            local.provider_item_id = item_id
            if credit:
                local.credit_limit = credit.credit_limit
                local.available_credit_limit = credit.available_credit_limit
                local.due_date = credit.balance_due_date or local.due_date
            if investment and investment.portfolio_value is not None:
                local.portfolio_value = investment.portfolio_value

        card_changed = False
        if account_type == AccountType.CREDIT_CARD:
            card_changed = self._sync_credit_card(local, provider_account)

        return "updated" if changed or card_changed else "unchanged"

    def _sync_credit_card(self, account: Account, provider_account: payloads.Account) -> bool:
        """Create or refresh the CreditCard row linked to ``account``. Returns True on a write."""
        credit = provider_account.credit_data
        credit_limit = (credit.credit_limit if credit else None) or 0
        current_balance = abs(provider_account.balance or 0)
        due_day = credit.balance_due_date.day if credit and credit.balance_due_date else 1

        card = self.db.query(CreditCard).filter(
            CreditCard.user_id == self.user_id,
            CreditCard.linked_account_id == account.id
        ).first()

        if card is None:
            self.db.add(CreditCard(
                user_id=self.user_id,
                linked_account_id=account.id,
                name=provider_account.name or provider_account.marketing_name or "Cartão de Crédito",
                credit_limit=credit_limit,
                current_balance=current_balance,
                due_day=due_day,
            ))
            logger.info(f"Created credit card for account {provider_account.id}")
            return True

        if differs(card.current_balance, current_balance) or differs(card.credit_limit, credit_limit) or card.due_day != due_day:
            card.current_balance = current_balance
            card.credit_limit = credit_limit
            card.due_day = due_day
            return True
        return False
