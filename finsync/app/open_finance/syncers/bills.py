"""
Credit card bill syncer

Upserts statement periods by provider bill id, then their line items by
(bill, provider transaction id). Bills and bill line items are granted per
account by the provider; a 403 is logged and counted, not treated as failure.
"""

import logging
from datetime import date
from typing import List, Optional

from finsync.app.models import CreditCardBill, CreditCardTransaction
from ..deduplication import IdentityResolver, differs
from ..exceptions import AuthenticationError, PermissionDeniedError, ProviderError
from ..mappers import DEFAULT_CATEGORY
from ..providers import payloads
from .base import BaseSyncer, SyncResult

logger = logging.getLogger(__name__)


def _is_paid(bill: payloads.CreditCardBill) -> bool:
    if (bill.status or "").upper() == "PAID":
        return True
    return bill.paid_amount is not None and bill.amount > 0 and bill.paid_amount >= bill.amount


class BillSyncer(BaseSyncer):
    """
    Counts in the returned result are bills. Line item counts are kept on
    ``line_items``; their denials and errors also surface on the bill result.
    """

    entity = "Bill"

    def __init__(self, db, provider, user_id: int):
        super().__init__(db, provider, user_id)
        self.line_items = SyncResult()

    async def sync(
        self,
        item_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        accounts: Optional[List[payloads.Account]] = None
    ) -> SyncResult:
        fetched = await self.provider.get_all_credit_card_bills(item_id, from_date, to_date, accounts=accounts)

        self.line_items = SyncResult()
        result = SyncResult(permission_denied=len(fetched.denied), errors=list(fetched.errors))
        for bill in fetched.records:
            try:
                local_bill, outcome = self.upsert_bill(bill)
                self.db.commit()
            except Exception as e:
                self._record_failure(result, bill.id, e)
                continue

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1

            lines = await self.sync_bill_transactions(local_bill, bill.id)
            self.line_items.merge(lines)
            result.permission_denied += lines.permission_denied
            result.errors.extend(lines.errors)

        logger.info(
            f"Bills for item {item_id}: {result.created} created, {result.updated} updated, "
            f"{result.permission_denied} denied, {len(result.errors)} errors; line items: "
            f"{self.line_items.created} created, {self.line_items.updated} updated"
        )
        return result

    def upsert_bill(self, bill: payloads.CreditCardBill):
        local = self.db.query(CreditCardBill).filter(
            CreditCardBill.user_id == self.user_id,
            CreditCardBill.provider_bill_id == bill.id
        ).first()

        paid_amount = bill.paid_amount or 0
        is_paid = _is_paid(bill)

        if local is None:
            account = IdentityResolver.find_account(self.db, self.user_id, bill.account_id) if bill.account_id else None
            local = CreditCardBill(
                user_id=self.user_id,
                account_id=account.id if account else None,
                provider_bill_id=bill.id,
                closing_date=bill.closing_date,
                due_date=bill.due_date,
                total_amount=bill.amount,
                minimum_payment=bill.minimum_payment,
                paid_amount=paid_amount,
                is_paid=is_paid,
                status=bill.status,
            )
            self.db.add(local)
            self.db.flush()
            return local, "created"

        if (
            differs(local.total_amount, bill.amount)
            or differs(local.paid_amount, paid_amount)
            or differs(local.minimum_payment, bill.minimum_payment)
            or local.is_paid != is_paid
            or local.status != bill.status
        ):
            local.total_amount = bill.amount
            local.paid_amount = paid_amount
            local.minimum_payment = bill.minimum_payment
            local.is_paid = is_paid
            local.status = bill.status
            local.due_date = bill.due_date
            return local, "updated"

        return local, "unchanged"

    async def sync_bill_transactions(self, local_bill: CreditCardBill, provider_bill_id: str) -> SyncResult:
        result = SyncResult()
        try:
            lines = await self.provider.list_credit_card_bill_transactions(provider_bill_id)
        except AuthenticationError:
            raise
        except PermissionDeniedError:
            logger.warning(f"Bill transactions access denied for bill {provider_bill_id}; treating as empty")
            result.permission_denied += 1
            return result
        except ProviderError as e:
            result.errors.append(f"Bill {provider_bill_id} transactions: {e}")
            return result

        for line in lines:
            try:
                outcome = self._upsert_line(local_bill, line)
                self.db.commit()
            except Exception as e:
                self._record_failure(result, f"{provider_bill_id}/{line.id}", e)
                continue

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1

        return result

    def _upsert_line(self, local_bill: CreditCardBill, line: payloads.CreditCardBillTransaction) -> str:
        local = self.db.query(CreditCardTransaction).filter(
            CreditCardTransaction.bill_id == local_bill.id,
            CreditCardTransaction.provider_transaction_id == line.id
        ).first()

        merchant_name = line.merchant.name if line.merchant else None
        category = line.category or (line.merchant.category if line.merchant else None) or DEFAULT_CATEGORY

        if local is None:
            self.db.add(CreditCardTransaction(
                bill_id=local_bill.id,
                user_id=self.user_id,
                provider_transaction_id=line.id,
                description=(line.description or "Compra no cartão").strip(),
                amount=line.amount,
                date=line.date,
                category=category,
                merchant_name=merchant_name,
                installment_number=line.installment_number,
                total_installments=line.total_installments,
            ))
            return "created"

        if differs(local.amount, line.amount) or local.installment_number != line.installment_number:
            local.amount = line.amount
            local.installment_number = line.installment_number
            local.total_installments = line.total_installments
            return "updated"
        return "unchanged"
