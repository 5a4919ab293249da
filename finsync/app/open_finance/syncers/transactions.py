"""
Transaction syncer

Imports provider transactions keyed by content hash. Pull syncs and webhook
deliveries run through the same path, so a transaction is created once by
whichever channel sees it first.
"""

import logging
from datetime import date, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from finsync.app.models import Transaction, TransactionStatus
from ..deduplication import IdentityResolver, TransactionDeduplicator
from ..mappers import map_category, map_transaction_type
from ..providers import payloads
from .base import BaseSyncer, SyncResult

logger = logging.getLogger(__name__)

MAX_HISTORY_DAYS = 730


class TransactionSyncer(BaseSyncer):

    entity = "Transaction"

    @staticmethod
    def skip_reason(transaction: payloads.Transaction, today: Optional[date] = None) -> Optional[str]:
        """
        Reason a provider transaction should not be imported, or None.

        Pending, far-future, very old, and description-less records are skipped.
        """
        today = today or date.today()
        if transaction.pending:
            return "pending"
        if transaction.date > today + timedelta(days=1):
            return "dated in the future"
        if transaction.date < today - timedelta(days=MAX_HISTORY_DAYS):
            return "older than two years"
        description = transaction.description or transaction.description_raw or ""
        if len(description.strip()) < 3:
            return "missing description"
        return None

    async def sync(
        self,
        item_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        accounts: Optional[List[payloads.Account]] = None
    ) -> SyncResult:
        """
        Fetch and import the transactions of every account of an item.

        Args:
            item_id: Provider item id
            from_date: Inclusive start date
            to_date: Inclusive end date
            accounts: Pre-fetched account listing

        Returns:
            SyncResult; per-account fetch failures are in ``errors``
        """
        fetched = await self.provider.get_all_item_transactions(item_id, from_date, to_date, accounts=accounts)

        result = self.import_transactions(fetched.records)
        result.errors[:0] = fetched.errors
        result.permission_denied += len(fetched.denied)

        logger.info(
            f"Transactions for item {item_id}: {len(fetched.records)} fetched, {result.created} created, "
            f"{result.updated} updated, {result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    def import_transactions(self, transactions: Iterable[payloads.Transaction]) -> SyncResult:
        result = SyncResult()
        today = date.today()

        for transaction in transactions:
            reason = self.skip_reason(transaction, today)
            if reason:
                logger.debug(f"Skipping transaction {transaction.id}: {reason}")
                result.skipped += 1
                continue

            try:
                outcome = self.upsert(transaction)
                self.db.commit()
            except IntegrityError:
                # Another ingestion path inserted the same hash first
                self.db.rollback()
                logger.info(f"Transaction {transaction.id} already imported concurrently")
                result.skipped += 1
                continue
            except Exception as e:
                self._record_failure(result, transaction.id, e)
                continue

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1

        return result

    def upsert(self, transaction: payloads.Transaction) -> str:
        content_hash = TransactionDeduplicator.generate_hash(
            transaction.account_id,
            transaction.amount,
            transaction.date,
            transaction.description
        )
        existing = TransactionDeduplicator.find_existing(self.db, self.user_id, content_hash, transaction.id)

        if existing:
            if not existing.provider_transaction_id:
                existing.provider_transaction_id = transaction.id
                return "updated"
            return "unchanged"

        account = IdentityResolver.find_account(self.db, self.user_id, transaction.account_id)
        merchant = transaction.merchant
        payment = transaction.payment_data

        self.db.add(Transaction(
            user_id=self.user_id,
            account_id=account.id if account else None,
            amount=transaction.amount,
            description=(transaction.description or transaction.description_raw or "Transação bancária").strip(),
            category=map_category(transaction),
            transaction_type=map_transaction_type(transaction),
            date=transaction.date,
            status=TransactionStatus.POSTED,
            merchant_name=merchant.name if merchant else None,
            payment_method=payment.payment_method if payment else None,
            balance_after=transaction.balance,
            provider_transaction_id=transaction.id,
            content_hash=content_hash,
            is_synced_from_bank=True,
        ))
        self.db.flush()
        return "created"

    def mark_updated(self, provider_transaction_ids: List[str]) -> int:
        """Flag local rows as provider-updated. The content hash is left untouched."""
        count = self.db.query(Transaction).filter(
            Transaction.user_id == self.user_id,
            Transaction.provider_transaction_id.in_(provider_transaction_ids)
        ).update({Transaction.status: TransactionStatus.UPDATED}, synchronize_session=False)
        self.db.commit()
        return count

    def delete_by_provider_ids(self, provider_transaction_ids: List[str]) -> int:
        count = self.db.query(Transaction).filter(
            Transaction.user_id == self.user_id,
            Transaction.provider_transaction_id.in_(provider_transaction_ids)
        ).delete(synchronize_session=False)
        self.db.commit()
        return count
