"""
Investment syncer

Holdings are matched by stored provider investment id, then by the natural
key (user, product name, purchase date). Only the current value is mutated
once a holding is matched.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from finsync.app.models import Investment
from ..deduplication import IdentityResolver, differs
from ..mappers import map_investment_type
from ..providers import payloads
from .base import BaseSyncer, SyncResult

logger = logging.getLogger(__name__)


class InvestmentSyncer(BaseSyncer):

    entity = "Investment"

    async def sync(self, item_id: str, accounts: Optional[List[payloads.Account]] = None) -> SyncResult:
        fetched = await self.provider.get_all_investments(item_id, accounts=accounts)

        result = SyncResult(permission_denied=len(fetched.denied), errors=list(fetched.errors))
        for investment in fetched.records:
            try:
                outcome = self.upsert(investment)
                self.db.commit()
            except Exception as e:
                self._record_failure(result, investment.id, e)
                continue

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1

        logger.info(
            f"Investments for item {item_id}: {result.created} created, {result.updated} updated, "
            f"{result.permission_denied} denied"
        )
        return result

    def _find(self, investment: payloads.Investment, purchase_date: date) -> Optional[Investment]:
        local = self.db.query(Investment).filter(
            Investment.user_id == self.user_id,
            Investment.provider_investment_id == investment.id
        ).first()
        if local:
            return local
        return IdentityResolver.find_investment(self.db, self.user_id, investment.product_name, purchase_date)

    def upsert(self, investment: payloads.Investment) -> str:
        purchase_date = investment.created_at or date.today()
        current_value = investment.net_amount if investment.net_amount is not None else investment.gross_amount
        local = self._find(investment, purchase_date)

        if local is None:
            account = (
                IdentityResolver.find_account(self.db, self.user_id, investment.account_id)
                if investment.account_id else None
            )
            self.db.add(Investment(
                user_id=self.user_id,
                account_id=account.id if account else None,
                provider_investment_id=investment.id,
                name=investment.product_name,
                investment_type=map_investment_type(investment.type or investment.instrument_type, investment.instrument_type),
                amount=investment.gross_amount or investment.net_amount or Decimal("0"),
                purchase_date=purchase_date,
                current_value=current_value,
                is_synced_from_bank=True,
            ))
            logger.info(f"Created investment {investment.product_name}")
            return "created"

        changed = False
        if current_value is not None and differs(local.current_value, current_value):
            local.current_value = current_value
            changed = True
        if not local.provider_investment_id:
            local.provider_investment_id = investment.id
            changed = True
        return "updated" if changed else "unchanged"
