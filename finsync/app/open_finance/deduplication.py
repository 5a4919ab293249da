"""
Identity resolution for synced entities

Decides whether a provider record is new or an update of a local row:
1. Provider-assigned id, when the local schema stores one and it is populated
2. Natural key otherwise:
   - transactions: content hash of (account, amount, date, description)
   - investments: (user, product name, purchase date)
   - loans: (user, name, principal, start date)

Natural keys for investments and loans are best-effort. Two distinct holdings
or contracts that share every key field resolve to the same local row.
"""

import hashlib
import re
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from finsync.app.models import Account, Investment, Loan, Transaction

MONEY_EPSILON = Decimal("0.01")
RATE_EPSILON = Decimal("0.001")


def _decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def differs(current, incoming, epsilon: Decimal = MONEY_EPSILON) -> bool:
    """True when two amounts differ by more than ``epsilon``."""
    return abs(_decimal(current) - _decimal(incoming)) > epsilon


class TransactionDeduplicator:
    """
    Content-hash identity for transactions.

    Both ingestion paths (pull sync and webhooks) hash the same fields the
    same way, so whichever path sees a transaction first creates it and the
    other finds it.
    """

    @staticmethod
    def normalize_description(description: Optional[str]) -> str:
        return re.sub(r"\s+", " ", (description or "").strip().lower())[:200]

    @staticmethod
    def generate_hash(
        account_id: str,
        amount: Decimal,
        transaction_date: date,
        description: Optional[str]
    ) -> str:
        """
        Generate the deduplication hash of a transaction.

        Uses MD5 for speed (not security). Inputs are normalized so the
        same transaction always hashes the same.

        Args:
            account_id: Provider account id
            amount: Signed amount
            transaction_date: Posting date
            description: Raw description

        Returns:
            32-character hex MD5 hash

        Example:
            >>> TransactionDeduplicator.generate_hash(
            ...     "acc-1", Decimal("-45.90"), date(2024, 1, 15), "Padaria  Central"
            ... ) == TransactionDeduplicator.generate_hash(
            ...     "acc-1", Decimal("-45.9"), date(2024, 1, 15), "padaria central"
            ... )
            True
        """
        amount_str = f"{_decimal(amount):.2f}"
        desc_normalized = TransactionDeduplicator.normalize_description(description)
        hash_input = f"{account_id}|{amount_str}|{transaction_date.isoformat()}|{desc_normalized}"
        return hashlib.md5(hash_input.encode()).hexdigest()

    @staticmethod
    def find_existing(
        db: Session,
        user_id: int,
        content_hash: str,
        provider_transaction_id: Optional[str] = None
    ) -> Optional[Transaction]:
        """
        Find the local transaction a provider record corresponds to.

        Args:
            db: Database session
            user_id: Owning user
            content_hash: Hash from generate_hash
            provider_transaction_id: Provider id, if known

        Returns:
            Matching Transaction or None
        """
        conditions = [Transaction.content_hash == content_hash]
        if provider_transaction_id:
            conditions.append(Transaction.provider_transaction_id == provider_transaction_id)

        return db.query(Transaction).filter(
            Transaction.user_id == user_id,
            or_(*conditions)
        ).first()


class IdentityResolver:
    """Lookups for entities matched by provider id or natural key."""

    @staticmethod
    def find_account(db: Session, user_id: int, provider_account_id: str) -> Optional[Account]:
        return db.query(Account).filter(
            Account.user_id == user_id,
            Account.provider_account_id == provider_account_id
        ).first()

    @staticmethod
    def find_investment(db: Session, user_id: int, name: str, purchase_date: date) -> Optional[Investment]:
        return db.query(Investment).filter(
            Investment.user_id == user_id,
            Investment.name == name,
            Investment.purchase_date == purchase_date
        ).first()

    @staticmethod
    def find_loan(
        db: Session,
        user_id: int,
        provider_loan_id: Optional[str],
        name: str,
        principal_amount: Decimal,
        start_date: date
    ) -> Optional[Loan]:
        """
        Match by provider loan id first, then by (name, principal, start date).
        """
        if provider_loan_id:
            loan = db.query(Loan).filter(
                Loan.user_id == user_id,
                Loan.provider_loan_id == provider_loan_id
            ).first()
            if loan:
                return loan

        return db.query(Loan).filter(
            Loan.user_id == user_id,
            and_(
                Loan.name == name,
                Loan.principal_amount == principal_amount,
                Loan.start_date == start_date
            )
        ).first()
