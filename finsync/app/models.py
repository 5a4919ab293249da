from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from finsync.database import Base


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "CONNECTED"
    LOGIN_ERROR = "LOGIN_ERROR"
    OUTDATED = "OUTDATED"
    WEBHOOK_ERROR = "WEBHOOK_ERROR"


class AccountType(str, enum.Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT_CARD = "credit_card"
    LOAN = "loan"
    INVESTMENT = "investment"


class TransactionType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class TransactionStatus(str, enum.Enum):
    POSTED = "posted"
    UPDATED = "updated"


class SyncType(str, enum.Enum):
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"
    SCHEDULED = "SCHEDULED"


class SyncStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    configs = relationship("UserConfig", back_populates="user", cascade="all, delete-orphan")
    connections = relationship("Connection", back_populates="user")


class UserConfig(Base):
    """Key/value settings per user; provider credentials live here."""
    __tablename__ = "user_configs"
    __table_args__ = (
        UniqueConstraint("user_id", "config_key", name="uq_user_config_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    config_key = Column(String(100), nullable=False)
    config_value = Column(Text, nullable=True)
    is_encrypted = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="configs")


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "item_id", name="uq_connection_user_item"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    item_id = Column(String(255), nullable=False, index=True)
    institution_name = Column(String(255), nullable=True)

    status = Column(SQLEnum(ConnectionStatus), default=ConnectionStatus.CONNECTED, nullable=False)
    status_detail = Column(Text, nullable=True)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="connections")
    sync_logs = relationship("SyncLog", back_populates="connection", cascade="all, delete-orphan")


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_account_id", name="uq_account_user_provider_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_account_id = Column(String(255), nullable=True)
    provider_item_id = Column(String(255), nullable=True, index=True)

    name = Column(String(255), nullable=False)
    account_type = Column(SQLEnum(AccountType), nullable=False)
    subtype = Column(String(100), nullable=True)
    balance = Column(DECIMAL(15, 2), default=0)
    currency = Column(String(3), default="BRL")
    status = Column(String(50), default="ACTIVE")
    sync_enabled = Column(Boolean, default=True)

    # Type-specific fields
    credit_limit = Column(DECIMAL(15, 2), nullable=True)
    available_credit_limit = Column(DECIMAL(15, 2), nullable=True)
    due_date = Column(Date, nullable=True)
    principal_amount = Column(DECIMAL(15, 2), nullable=True)
    portfolio_value = Column(DECIMAL(15, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    credit_card = relationship("CreditCard", back_populates="linked_account", uselist=False)
    transactions = relationship("Transaction", back_populates="account")


class CreditCard(Base):
    """Denormalized card view kept in lockstep with a credit_card Account."""
    __tablename__ = "credit_cards"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    linked_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True, unique=True)
    name = Column(String(255), nullable=False)
    credit_limit = Column(DECIMAL(15, 2), default=0)
    current_balance = Column(DECIMAL(15, 2), default=0)
    due_day = Column(Integer, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    linked_account = relationship("Account", back_populates="credit_card")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "content_hash", name="uq_transaction_user_hash"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    amount = Column(DECIMAL(15, 2), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(100), nullable=True)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    date = Column(Date, nullable=False, index=True)
    status = Column(SQLEnum(TransactionStatus), default=TransactionStatus.POSTED)

    merchant_name = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)
    balance_after = Column(DECIMAL(15, 2), nullable=True)

    # Provider identity and dedup
    provider_transaction_id = Column(String(255), nullable=True, index=True)
    content_hash = Column(String(32), nullable=False)
    is_synced_from_bank = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="transactions")


class CreditCardBill(Base):
    __tablename__ = "credit_card_bills"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_bill_id", name="uq_bill_user_provider_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    provider_bill_id = Column(String(255), nullable=False)

    closing_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    total_amount = Column(DECIMAL(15, 2), nullable=False)
    minimum_payment = Column(DECIMAL(15, 2), nullable=True)
    paid_amount = Column(DECIMAL(15, 2), default=0)
    is_paid = Column(Boolean, default=False)
    status = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    transactions = relationship("CreditCardTransaction", back_populates="bill", cascade="all, delete-orphan")


class CreditCardTransaction(Base):
    __tablename__ = "credit_card_transactions"
    __table_args__ = (
        UniqueConstraint("bill_id", "provider_transaction_id", name="uq_bill_line_provider_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("credit_card_bills.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    provider_transaction_id = Column(String(255), nullable=False)

    description = Column(Text, nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    date = Column(Date, nullable=False)
    category = Column(String(100), nullable=True)
    merchant_name = Column(String(255), nullable=True)
    installment_number = Column(Integer, nullable=True)
    total_installments = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    bill = relationship("CreditCardBill", back_populates="transactions")


class Investment(Base):
    __tablename__ = "investments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    provider_investment_id = Column(String(255), nullable=True)

    name = Column(String(255), nullable=False)
    investment_type = Column(String(100), nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    purchase_date = Column(Date, nullable=False)
    current_value = Column(DECIMAL(15, 2), nullable=True)
    is_synced_from_bank = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Loan(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    loan_type = Column(String(100), nullable=True)
    principal_amount = Column(DECIMAL(15, 2), nullable=False)
    interest_rate = Column(DECIMAL(10, 4), default=0)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    monthly_payment = Column(DECIMAL(15, 2), default=0)
    remaining_balance = Column(DECIMAL(15, 2), nullable=False)

    # Amortization
    total_installments = Column(Integer, nullable=True)
    remaining_installments = Column(Integer, nullable=True)
    installment_frequency = Column(String(50), nullable=True)
    next_due_date = Column(Date, nullable=True)

    # Provider data
    provider_loan_id = Column(String(255), nullable=True, index=True)
    provider_account_id = Column(String(255), nullable=True)
    contract_number = Column(String(100), nullable=True)
    status = Column(String(50), default="ACTIVE")
    guarantee_type = Column(String(100), nullable=True)
    cet_rate = Column(DECIMAL(10, 4), nullable=True)
    is_synced_from_bank = Column(Boolean, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class WebhookLog(Base):
    """Append-only record of inbound webhook attempts."""
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    webhook_id = Column(String(255), nullable=False, index=True)
    event = Column(String(100), nullable=True)
    item_id = Column(String(255), nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    attempt_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    sync_type = Column(SQLEnum(SyncType), nullable=False)
    sync_status = Column(SQLEnum(SyncStatus), nullable=False)

    created_count = Column(Integer, default=0)
    updated_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    permission_denied_count = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    connection = relationship("Connection", back_populates="sync_logs")
