"""
Loan syncer

Loans arrive as loan-type accounts. Each is matched by provider loan id, else
by (name, principal, start date), and rewritten only when the remaining
balance or installment drifts by more than 0.01 or the rate by more than 0.001.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from finsync.app.models import Loan
from ..deduplication import MONEY_EPSILON, RATE_EPSILON, IdentityResolver, differs
from ..mappers import map_loan_type
from ..providers import payloads
from ..providers.base import is_loan_account
from .base import BaseSyncer, SyncResult

logger = logging.getLogger(__name__)


class LoanSyncer(BaseSyncer):

    entity = "Loan"

    async def sync(self, item_id: str, accounts: Optional[List[payloads.Account]] = None) -> SyncResult:
        if accounts is None:
            loans = await self.provider.list_loans(item_id)
        else:
            loans = [payloads.Loan.from_account(a) for a in accounts if is_loan_account(a)]

        result = SyncResult()
        for loan in loans:
            try:
                outcome = self.upsert(loan)
                self.db.commit()
            except Exception as e:
                self._record_failure(result, loan.id, e)
                continue

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1

        logger.info(f"Loans for item {item_id}: {result.created} created, {result.updated} updated")
        return result

    def upsert(self, loan: payloads.Loan) -> str:
        """
        Create or update the local loan for a provider loan.

        Returns:
            'created', 'updated' or 'unchanged'
        """
        name = loan.product_name or loan.product_type or f"Empréstimo {loan.contract_number or loan.id}"
        principal = loan.principal_amount or loan.outstanding_balance or Decimal("0")
        start_date = loan.contract_date or date.today()
        interest_rate = loan.interest_rate or Decimal("0")
        monthly_payment = loan.installment_amount or Decimal("0")
        remaining_balance = loan.outstanding_balance if loan.outstanding_balance is not None else principal

        local = IdentityResolver.find_loan(self.db, self.user_id, loan.id, name, principal, start_date)

        if local is None:
            self.db.add(Loan(
                user_id=self.user_id,
                name=name,
                loan_type=map_loan_type(loan.product_type, loan.product_sub_type),
                principal_amount=principal,
                interest_rate=interest_rate,
                start_date=start_date,
                end_date=loan.maturity_date or start_date,
                monthly_payment=monthly_payment,
                remaining_balance=remaining_balance,
                total_installments=loan.total_installments,
                remaining_installments=loan.remaining_installments,
                installment_frequency=loan.installment_frequency,
                next_due_date=loan.next_installment_due_date,
                provider_loan_id=loan.id,
                provider_account_id=loan.account_id,
                contract_number=loan.contract_number,
                status=loan.status or "ACTIVE",
                guarantee_type=loan.guarantee_type,
                cet_rate=loan.cet,
                is_synced_from_bank=True,
            ))
            logger.info(f"Created loan {name}")
            return "created"

        needs_update = (
            differs(local.remaining_balance, remaining_balance, MONEY_EPSILON)
            or differs(local.monthly_payment, monthly_payment, MONEY_EPSILON)
            or differs(local.interest_rate, interest_rate, RATE_EPSILON)
        )

        if needs_update:
            local.remaining_balance = remaining_balance
            local.monthly_payment = monthly_payment
            local.interest_rate = interest_rate
            local.status = loan.status or "ACTIVE"
            local.remaining_installments = loan.remaining_installments
            local.next_due_date = loan.next_installment_due_date
            local.cet_rate = loan.cet

        linked = not local.provider_loan_id or not local.provider_account_id
        if linked:
            local.provider_loan_id = local.provider_loan_id or loan.id
            local.provider_account_id = local.provider_account_id or loan.account_id
            local.is_synced_from_bank = True

        return "updated" if needs_update or linked else "unchanged"
