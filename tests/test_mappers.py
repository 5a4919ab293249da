"""Tests for category and type mappers."""

from finsync.app.models import AccountType, ConnectionStatus, TransactionType
from finsync.app.open_finance.mappers import (
    DEFAULT_CATEGORY, map_account_type, map_category, map_connection_status,
    map_investment_type, map_loan_type, map_transaction_type
)
from finsync.app.open_finance.providers.payloads import Account, Transaction


def tx(amount=-50.0, description="Compra", **extra):
    payload = {"id": "t1", "accountId": "A1", "amount": amount, "date": "2024-01-15", "description": description}
    payload.update(extra)
    return Transaction.model_validate(payload)


class TestMapCategory:

    def test_mcc_wins_over_description(self):
        assert map_category(tx(description="Netflix", merchant={"name": "Pão de Açúcar", "mcc": "5411"})) == "Alimentação"

    def test_airline_mcc_range(self):
        assert map_category(tx(description="LATAM", merchant={"mcc": "3005"})) == "Viagem"

    def test_known_merchant_pattern(self):
        assert map_category(tx(description="IFOOD *RESTAURANTE")) == "Alimentação"
        assert map_category(tx(description="Pagamento CLARO")) == "Contas e Serviços"

    def test_short_merchant_tokens_match_whole_words_only(self):
        assert map_category(tx(description="Oi Fibra")) == "Contas e Serviços"
        assert map_category(tx(amount=-100.0, description="Coisas diversas")) == DEFAULT_CATEGORY

    def test_pix_to_business_is_shopping(self):
        transaction = tx(
            description="PIX ENVIADO",
            paymentData={"payee": {"name": "Comercial Silva Ltda"}, "paymentMethod": "PIX"}
        )
        assert map_category(transaction) == "Compras"

    def test_pix_without_payee_is_default(self):
        assert map_category(tx(description="PIX ENVIADO")) == DEFAULT_CATEGORY

    def test_provider_category_keywords(self):
        assert map_category(tx(description="Compra cartao", category="Pharmacy")) == "Saúde"

    def test_small_unmatched_amount_is_services(self):
        assert map_category(tx(amount=-2.0, description="Ajuste")) == "Contas e Serviços"

    def test_large_unmatched_amount_is_default(self):
        assert map_category(tx(amount=-8000.0, description="Ajuste")) == DEFAULT_CATEGORY


class TestMapTransactionType:

    def test_negative_is_expense(self):
        assert map_transaction_type(tx(amount=-45.9)) == TransactionType.EXPENSE

    def test_positive_is_income(self):
        assert map_transaction_type(tx(amount=3200.0, description="Salario")) == TransactionType.INCOME

    def test_same_payer_and_payee_is_transfer(self):
        transaction = tx(
            amount=-500.0,
            description="TED",
            paymentData={"payer": {"name": "Ana Souza"}, "payee": {"name": "ana souza "}}
        )
        assert map_transaction_type(transaction) == TransactionType.TRANSFER


class TestMapAccountType:

    def account(self, type_, subtype=None):
        return Account.model_validate({"id": "A", "type": type_, "subtype": subtype})

    def test_account_types(self):
        assert map_account_type(self.account("BANK", "CHECKING_ACCOUNT")) == AccountType.CHECKING
        assert map_account_type(self.account("BANK", "SAVINGS_ACCOUNT")) == AccountType.SAVINGS
        assert map_account_type(self.account("CREDIT", "CREDIT_CARD")) == AccountType.CREDIT_CARD
        assert map_account_type(self.account("LOAN")) == AccountType.LOAN
        assert map_account_type(self.account("INVESTMENT")) == AccountType.INVESTMENT


class TestProductTypes:

    def test_loan_types(self):
        assert map_loan_type("personal_loan") == "Empréstimo Pessoal"
        assert map_loan_type("loan", "home_financing") == "Financiamento Imobiliário"
        assert map_loan_type("loan", "vehicle") == "Financiamento de Veículo"
        assert map_loan_type("loan", "payroll_deduction") == "Empréstimo Consignado"
        assert map_loan_type("loan", None) == "Outros Empréstimos"

    def test_investment_types(self):
        assert map_investment_type("EQUITY", "STOCK") == "Ações"
        assert map_investment_type("FIXED_INCOME", "CDB") == "CDB"
        assert map_investment_type("MUTUAL_FUND") == "Fundos de Investimento"
        assert map_investment_type(None) == "Outros"

    def test_connection_status(self):
        assert map_connection_status("LOGIN_ERROR") == ConnectionStatus.LOGIN_ERROR
        assert map_connection_status("OUTDATED") == ConnectionStatus.OUTDATED
        assert map_connection_status("WEBHOOK_ERROR") == ConnectionStatus.WEBHOOK_ERROR
        assert map_connection_status("UPDATED") == ConnectionStatus.CONNECTED
        assert map_connection_status(None) == ConnectionStatus.CONNECTED
