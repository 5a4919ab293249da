"""
Typed provider payloads.

Every response from the aggregation provider is validated into one of these
models at the gateway boundary. Field names follow Python conventions; the
provider's camelCase keys are accepted through the alias generator.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _coerce_date(value: Any) -> Any:
    """Accept ``YYYY-MM-DD`` or any ISO timestamp; keep the calendar date part."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


ProviderDate = Annotated[date, BeforeValidator(_coerce_date)]


class ProviderModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class ProviderCredentials(ProviderModel):
    client_id: str
    client_secret: str = Field(min_length=1)

    @field_validator("client_id")
    @classmethod
    def client_id_is_uuid(cls, value: str) -> str:
        try:
            UUID(value)
        except ValueError:
            raise ValueError("Client ID must be a valid UUID")
        return value


class AuthResponse(ProviderModel):
    api_key: str
    expires_in: Optional[int] = None


class ConnectTokenResponse(ProviderModel):
    """Pluggy answers with ``accessToken``; older responses used ``connectToken``."""
    access_token: Optional[str] = None
    connect_token: Optional[str] = None
    expires_in: Optional[int] = None

    @model_validator(mode="after")
    def has_token(self) -> "ConnectTokenResponse":
        if not (self.access_token or self.connect_token):
            raise ValueError("Either accessToken or connectToken is required")
        return self

    @property
    def token(self) -> str:
        return self.access_token or self.connect_token


class ConnectTokenOptions(ProviderModel):
    client_user_id: Optional[str] = None
    webhook_url: Optional[str] = None
    oauth_redirect_url: Optional[str] = None
    avoid_duplicates: Optional[bool] = None
    item_id: Optional[str] = None
    include_non_production: Optional[bool] = None

    @field_validator("webhook_url", "oauth_redirect_url")
    @classmethod
    def must_be_http_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value

    def to_request_body(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Items and accounts
# ---------------------------------------------------------------------------

class Connector(ProviderModel):
    name: str
    institution_url: Optional[str] = None
    image_url: Optional[str] = None
    primary_color: Optional[str] = None


class Item(ProviderModel):
    id: str
    connector: Optional[Connector] = None
    status: Optional[str] = None
    status_detail: Optional[Any] = None
    execution_status: Optional[str] = None
    client_user_id: Optional[str] = None
    created_at: Optional[ProviderDate] = None
    last_updated_at: Optional[ProviderDate] = None


class CreditData(ProviderModel):
    level: Optional[str] = None
    brand: Optional[str] = None
    balance_close_date: Optional[ProviderDate] = None
    balance_due_date: Optional[ProviderDate] = None
    minimum_payment: Optional[Decimal] = None
    credit_limit: Optional[Decimal] = None
    available_credit_limit: Optional[Decimal] = None


class LoanData(ProviderModel):
    contract_number: Optional[str] = None
    principal_amount: Optional[Decimal] = None
    outstanding_balance: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    installment_amount: Optional[Decimal] = None
    installment_frequency: Optional[str] = None
    remaining_installments: Optional[int] = None
    total_installments: Optional[int] = None
    due_date: Optional[ProviderDate] = None
    maturity_date: Optional[ProviderDate] = None
    origination_date: Optional[ProviderDate] = None


class InvestmentData(ProviderModel):
    product_name: Optional[str] = None
    investment_type: Optional[str] = None
    portfolio_value: Optional[Decimal] = None
    net_worth: Optional[Decimal] = None
    gross_worth: Optional[Decimal] = None


class Account(ProviderModel):
    id: str
    type: str
    subtype: Optional[str] = None
    name: Optional[str] = None
    marketing_name: Optional[str] = None
    number: Optional[str] = None
    balance: Decimal = Decimal("0")
    currency_code: str = "BRL"
    item_id: Optional[str] = None
    status: Optional[str] = None
    credit_data: Optional[CreditData] = None
    loan_data: Optional[LoanData] = None
    investment_data: Optional[InvestmentData] = None
    created_at: Optional[ProviderDate] = None

    @property
    def display_name(self) -> str:
        return self.name or self.marketing_name or "Conta"


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class Merchant(ProviderModel):
    name: Optional[str] = None
    business_name: Optional[str] = None
    category: Optional[str] = None
    mcc: Optional[str] = None


class PaymentParty(ProviderModel):
    name: Optional[str] = None


class PaymentData(ProviderModel):
    payer: Optional[PaymentParty] = None
    payee: Optional[PaymentParty] = None
    payment_method: Optional[str] = None
    reference_number: Optional[str] = None
    end_to_end_id: Optional[str] = None


class CreditCardMetadata(ProviderModel):
    installment_number: Optional[int] = None
    total_installments: Optional[int] = None
    purchase_id: Optional[str] = None


class Transaction(ProviderModel):
    id: str
    account_id: str
    amount: Decimal
    date: ProviderDate
    description: Optional[str] = ""
    description_raw: Optional[str] = None
    currency_code: Optional[str] = None
    balance: Optional[Decimal] = None
    category: Optional[str] = None
    category_id: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    pending: Optional[bool] = None
    merchant: Optional[Merchant] = None
    payment_data: Optional[PaymentData] = None
    credit_card_metadata: Optional[CreditCardMetadata] = None


# ---------------------------------------------------------------------------
# Credit card bills
# ---------------------------------------------------------------------------

class CreditCardBill(ProviderModel):
    id: str
    account_id: Optional[str] = None
    amount: Decimal
    closing_date: ProviderDate
    due_date: ProviderDate
    minimum_payment: Optional[Decimal] = None
    paid_amount: Optional[Decimal] = None
    payment_date: Optional[ProviderDate] = None
    status: Optional[str] = None


class CreditCardBillTransaction(ProviderModel):
    id: str
    bill_id: Optional[str] = None
    account_id: Optional[str] = None
    amount: Decimal
    description: Optional[str] = ""
    category: Optional[str] = None
    date: ProviderDate
    installment_number: Optional[int] = None
    total_installments: Optional[int] = None
    merchant: Optional[Merchant] = None
    type: Optional[str] = None


# ---------------------------------------------------------------------------
# Investments and loans
# ---------------------------------------------------------------------------

class Investment(ProviderModel):
    id: str
    account_id: Optional[str] = None
    product_name: str
    type: Optional[str] = None
    instrument_type: Optional[str] = None
    gross_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    issuer: Optional[str] = None
    rate: Optional[Decimal] = None
    maturity_date: Optional[ProviderDate] = None
    created_at: Optional[ProviderDate] = None


class Loan(ProviderModel):
    """
    Loan view derived from a loan-type account.

    The provider exposes loans through the accounts endpoint, so the gateway
    builds these from ``Account.loan_data``.
    """
    id: str
    account_id: str
    product_name: str
    product_type: str = "loan"
    product_sub_type: Optional[str] = None
    contract_number: Optional[str] = None
    principal_amount: Optional[Decimal] = None
    outstanding_balance: Decimal
    interest_rate: Optional[Decimal] = None
    installment_amount: Optional[Decimal] = None
    total_installments: Optional[int] = None
    remaining_installments: Optional[int] = None
    installment_frequency: Optional[str] = None
    next_installment_due_date: Optional[ProviderDate] = None
    contract_date: Optional[ProviderDate] = None
    maturity_date: Optional[ProviderDate] = None
    status: Optional[str] = None
    currency: str = "BRL"
    guarantee_type: Optional[str] = None
    cet: Optional[Decimal] = None

    @classmethod
    def from_account(cls, account: Account) -> "Loan":
        data = account.loan_data or LoanData()
        return cls(
            id=account.id,
            account_id=account.id,
            product_name=account.name or account.marketing_name or "Empréstimo",
            product_sub_type=account.subtype,
            contract_number=data.contract_number,
            principal_amount=data.principal_amount,
            outstanding_balance=data.outstanding_balance if data.outstanding_balance is not None else abs(account.balance),
            interest_rate=data.interest_rate,
            installment_amount=data.installment_amount,
            total_installments=data.total_installments,
            remaining_installments=data.remaining_installments,
            installment_frequency=data.installment_frequency,
            next_installment_due_date=data.due_date,
            contract_date=data.origination_date,
            maturity_date=data.maturity_date,
            status=account.status or "ACTIVE",
            currency=account.currency_code or "BRL",
        )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class WebhookItemData(ProviderModel):
    id: Optional[str] = None
    status: Optional[str] = None
    connector: Optional[Connector] = None
    client_user_id: Optional[str] = None
    status_detail: Optional[Any] = None
    execution_status: Optional[str] = None


class WebhookPayload(ProviderModel):
    event: str = Field(min_length=1)
    item_id: Optional[str] = None
    data: Optional[WebhookItemData] = None
    account_id: Optional[str] = None
    transaction_ids: Optional[List[str]] = None
    transactions_created_at_from: Optional[ProviderDate] = None
    transactions_created_at_to: Optional[ProviderDate] = None
    webhook_id: Optional[str] = None
    attempt_number: Optional[int] = None
    timestamp: Optional[str] = None

    @property
    def resolved_item_id(self) -> Optional[str]:
        if self.item_id:
            return self.item_id
        return self.data.id if self.data else None
