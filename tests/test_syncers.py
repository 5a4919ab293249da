"""Tests for the per-entity syncers against the fake provider API."""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

from finsync.app.models import (
    Account, AccountType, CreditCard, CreditCardBill, CreditCardTransaction,
    Investment, Loan, Transaction, TransactionStatus, TransactionType
)
from finsync.app.open_finance.deduplication import TransactionDeduplicator
from finsync.app.open_finance.providers import base as provider_base
from finsync.app.open_finance.providers.payloads import Transaction as ProviderTransaction
from finsync.app.open_finance.syncers import (
    AccountSyncer, BillSyncer, InvestmentSyncer, LoanSyncer, TransactionSyncer
)

from tests.fakes import (
    bill_payload, credit_account, investment_account, investment_payload,
    loan_account, seed_scenario, transaction_payload
)


def run(coro):
    return asyncio.run(coro)


def sync_accounts(db, provider, user, item_id="item-1"):
    return run(AccountSyncer(db, provider, user.id).sync(item_id))


class TestAccountSyncer:

    def test_creates_accounts_and_linked_credit_card(self, db, user, fake_api, provider):
        seed_scenario(fake_api)

        result = sync_accounts(db, provider, user)

        assert result.created == 2
        assert result.errors == []

        checking = db.query(Account).filter_by(provider_account_id="A1").one()
        assert checking.account_type == AccountType.CHECKING
        assert checking.balance == Decimal("1000")
        assert checking.provider_item_id == "item-1"

        credit = db.query(Account).filter_by(provider_account_id="A2").one()
        assert credit.account_type == AccountType.CREDIT_CARD
        assert credit.credit_limit == Decimal("2000")

        card = db.query(CreditCard).one()
        assert card.linked_account_id == credit.id
        assert card.credit_limit == Decimal("2000")
        assert card.current_balance == Decimal("250")
        assert card.due_day == 10

    def test_resync_without_changes_writes_nothing(self, db, user, fake_api, provider):
        seed_scenario(fake_api)
        sync_accounts(db, provider, user)

        result = sync_accounts(db, provider, user)

        assert (result.created, result.updated, result.skipped) == (0, 0, 2)
        assert db.query(Account).count() == 2
        assert db.query(CreditCard).count() == 1

    def test_sub_cent_balance_drift_is_ignored(self, db, user, fake_api, provider):
        seed_scenario(fake_api)
        sync_accounts(db, provider, user)

        fake_api.accounts["item-1"][0]["balance"] = 1000.005
        result = sync_accounts(db, provider, user)

        assert result.updated == 0

    def test_balance_change_updates_account_and_card(self, db, user, fake_api, provider):
        seed_scenario(fake_api)
        sync_accounts(db, provider, user)

        fake_api.accounts["item-1"][0]["balance"] = 1010.0
        fake_api.accounts["item-1"][1]["balance"] = -300.0
        result = sync_accounts(db, provider, user)

        assert result.updated == 2
        assert db.query(Account).filter_by(provider_account_id="A1").one().balance == Decimal("1010")
        assert db.query(CreditCard).one().current_balance == Decimal("300")


class TestTransactionSyncer:

    def seed(self, db, provider, user, fake_api):
        seed_scenario(fake_api)
        fake_api.transactions["A1"] = [
            transaction_payload("T1", "A1", -45.90, "Padaria Central"),
            transaction_payload("T2", "A1", 3200.0, "Salario Empresa"),
        ]
        sync_accounts(db, provider, user)

    def test_imports_signed_amounts_with_category_and_type(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)

        result = run(TransactionSyncer(db, provider, user.id).sync("item-1"))

        assert result.created == 2
        bakery = db.query(Transaction).filter_by(provider_transaction_id="T1").one()
        assert bakery.amount == Decimal("-45.90")
        assert bakery.transaction_type == TransactionType.EXPENSE
        assert bakery.category == "Alimentação"
        assert bakery.account_id == db.query(Account).filter_by(provider_account_id="A1").one().id
        assert bakery.is_synced_from_bank is True

        salary = db.query(Transaction).filter_by(provider_transaction_id="T2").one()
        assert salary.transaction_type == TransactionType.INCOME

    def test_second_sync_is_idempotent(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        run(TransactionSyncer(db, provider, user.id).sync("item-1"))

        fake_api.transactions["A1"].reverse()
        result = run(TransactionSyncer(db, provider, user.id).sync("item-1"))

        assert result.created == 0
        assert result.skipped == 2
        assert db.query(Transaction).count() == 2

    def test_hash_match_backfills_provider_id(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        db.add(Transaction(
            user_id=user.id,
            amount=Decimal("-45.90"),
            description="Padaria Central",
            transaction_type=TransactionType.EXPENSE,
            date=date.today(),
            content_hash=TransactionDeduplicator.generate_hash("A1", Decimal("-45.90"), date.today(), "Padaria Central"),
        ))
        db.commit()

        result = run(TransactionSyncer(db, provider, user.id).sync("item-1"))

        assert result.updated == 1
        assert result.created == 1
        assert db.query(Transaction).filter_by(provider_transaction_id="T1").count() == 1

    def test_failing_account_does_not_stop_siblings(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        fake_api.fail("/transactions", "A2", status=500)

        result = run(TransactionSyncer(db, provider, user.id).sync("item-1"))

        assert result.created == 2
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Account A2:")

    def test_forbidden_account_counts_as_denied(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        fake_api.fail("/transactions", "A2", status=403)

        result = run(TransactionSyncer(db, provider, user.id).sync("item-1"))

        assert result.permission_denied == 1
        assert result.errors == []
        assert result.created == 2

    def test_skip_reasons(self):
        today = date(2024, 6, 1)

        def tx(**extra):
            payload = transaction_payload("T", "A1", -10.0, "Mercado Bom", on=today)
            payload.update(extra)
            return ProviderTransaction.model_validate(payload)

        assert TransactionSyncer.skip_reason(tx(), today) is None
        assert TransactionSyncer.skip_reason(tx(pending=True), today) == "pending"
        assert TransactionSyncer.skip_reason(tx(date="2024-06-05"), today) == "dated in the future"
        assert TransactionSyncer.skip_reason(tx(date="2022-01-01"), today) == "older than two years"
        assert TransactionSyncer.skip_reason(tx(description="ab"), today) == "missing description"

    def test_skipped_records_are_counted_not_imported(self, db, user, fake_api, provider):
        seed_scenario(fake_api)
        fake_api.transactions["A1"] = [
            transaction_payload("T1", "A1", -10.0, "Mercado Bom", pending=True),
            transaction_payload("T2", "A1", -10.0, "Mercado Bom", on=date.today() + timedelta(days=5)),
        ]
        sync_accounts(db, provider, user)

        result = run(TransactionSyncer(db, provider, user.id).sync("item-1"))

        assert result.created == 0
        assert result.skipped == 2
        assert db.query(Transaction).count() == 0

    def test_mark_updated_and_delete_by_provider_ids(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        syncer = TransactionSyncer(db, provider, user.id)
        run(syncer.sync("item-1"))

        assert syncer.mark_updated(["T1", "missing"]) == 1
        db.expire_all()
        assert db.query(Transaction).filter_by(provider_transaction_id="T1").one().status == TransactionStatus.UPDATED

        assert syncer.delete_by_provider_ids(["T1", "T2"]) == 2
        assert db.query(Transaction).count() == 0


class TestBillSyncer:

    def seed(self, db, provider, user, fake_api):
        seed_scenario(fake_api)
        fake_api.accounts["item-1"].append(credit_account("A3", -100.0, 5000.0))
        fake_api.bills["A3"] = [bill_payload("B1", 1500.0, paid=1500.0)]
        fake_api.bill_transactions["B1"] = [
            {"id": "L1", "amount": 1000.0, "date": "2024-01-10", "description": "Loja Centro",
             "installmentNumber": 1, "totalInstallments": 3},
            {"id": "L2", "amount": 500.0, "date": "2024-01-12", "description": "Posto Shell"},
        ]
        sync_accounts(db, provider, user)

    def test_forbidden_card_is_logged_and_siblings_still_sync(self, db, user, fake_api, provider, mocker):
        self.seed(db, provider, user, fake_api)
        fake_api.fail("/credit_card_bills", "A2", status=403)
        warning = mocker.spy(provider_base.logger, "warning")

        syncer = BillSyncer(db, provider, user.id)
        result = run(syncer.sync("item-1"))

        assert result.permission_denied == 1
        assert result.errors == []
        assert result.created == 1
        assert syncer.line_items.created == 2
        assert warning.call_count == 1
        assert "A2" in warning.call_args[0][0]

        bill = db.query(CreditCardBill).one()
        assert bill.provider_bill_id == "B1"
        assert bill.is_paid is True
        assert bill.account_id == db.query(Account).filter_by(provider_account_id="A3").one().id
        assert db.query(CreditCardTransaction).filter_by(bill_id=bill.id).count() == 2

    def test_resync_updates_payment_state_only_when_changed(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        fake_api.bills["A3"] = [bill_payload("B1", 1500.0, paid=0.0)]
        run(BillSyncer(db, provider, user.id).sync("item-1"))

        syncer = BillSyncer(db, provider, user.id)
        unchanged = run(syncer.sync("item-1"))
        assert (unchanged.created, unchanged.updated, unchanged.skipped) == (0, 0, 1)
        assert (syncer.line_items.created, syncer.line_items.skipped) == (0, 2)

        fake_api.bills["A3"] = [bill_payload("B1", 1500.0, paid=1500.0)]
        result = run(BillSyncer(db, provider, user.id).sync("item-1"))

        assert result.updated == 1
        assert db.query(CreditCardBill).one().is_paid is True

    def test_forbidden_bill_lines_keep_the_bill(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        fake_api.fail("/credit_card_bills/B1/transactions", status=403)

        syncer = BillSyncer(db, provider, user.id)
        result = run(syncer.sync("item-1"))

        assert result.created == 1
        assert result.permission_denied == 1
        assert syncer.line_items.permission_denied == 1
        assert db.query(CreditCardTransaction).count() == 0

    def test_line_item_failures_surface_on_the_bill_result(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        fake_api.fail("/credit_card_bills/B1/transactions", status=500)

        syncer = BillSyncer(db, provider, user.id)
        result = run(syncer.sync("item-1"))

        assert result.created == 1
        assert syncer.line_items.created == 0
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Bill B1 transactions: ")


class TestInvestmentSyncer:

    def seed(self, db, provider, user, fake_api, net=10500.0):
        fake_api.accounts["item-1"] = [investment_account("I1")]
        fake_api.investments["I1"] = [investment_payload("INV-1", "CDB Banco X", net)]
        sync_accounts(db, provider, user)

    def test_creates_holding(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)

        result = run(InvestmentSyncer(db, provider, user.id).sync("item-1"))

        assert result.created == 1
        holding = db.query(Investment).one()
        assert holding.name == "CDB Banco X"
        assert holding.investment_type == "CDB"
        assert holding.amount == Decimal("10500")
        assert holding.current_value == Decimal("10500")
        assert holding.purchase_date == date(2023, 6, 1)
        assert holding.provider_investment_id == "INV-1"

    def test_only_current_value_drift_beyond_a_cent_updates(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        run(InvestmentSyncer(db, provider, user.id).sync("item-1"))

        fake_api.investments["I1"][0]["netAmount"] = 10500.005
        assert run(InvestmentSyncer(db, provider, user.id).sync("item-1")).updated == 0

        fake_api.investments["I1"][0]["netAmount"] = 10800.0
        result = run(InvestmentSyncer(db, provider, user.id).sync("item-1"))

        assert result.updated == 1
        holding = db.query(Investment).one()
        assert holding.current_value == Decimal("10800")
        assert holding.amount == Decimal("10500")

    def test_same_name_and_date_resolve_to_one_holding(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        run(InvestmentSyncer(db, provider, user.id).sync("item-1"))

        fake_api.investments["I1"] = [investment_payload("INV-2", "CDB Banco X", 10500.0)]
        run(InvestmentSyncer(db, provider, user.id).sync("item-1"))

        assert db.query(Investment).count() == 1

    def test_forbidden_account_counts_as_denied(self, db, user, fake_api, provider):
        self.seed(db, provider, user, fake_api)
        fake_api.fail("/investments", "I1", status=403)

        result = run(InvestmentSyncer(db, provider, user.id).sync("item-1"))

        assert result.permission_denied == 1
        assert result.errors == []
        assert db.query(Investment).count() == 0


class TestLoanSyncer:

    def set_loan(self, fake_api, **kwargs):
        fake_api.accounts["item-1"] = [loan_account("L1", **kwargs)]

    def test_creates_loan_from_loan_account(self, db, user, fake_api, provider):
        self.set_loan(fake_api, outstanding=20000.0)

        result = run(LoanSyncer(db, provider, user.id).sync("item-1"))

        assert result.created == 1
        loan = db.query(Loan).one()
        assert loan.name == "Empréstimo Pessoal"
        assert loan.loan_type == "Empréstimo Pessoal"
        assert loan.principal_amount == Decimal("30000")
        assert loan.remaining_balance == Decimal("20000")
        assert loan.monthly_payment == Decimal("1200")
        assert loan.interest_rate == Decimal("0.0125")
        assert loan.start_date == date(2023, 1, 15)
        assert loan.total_installments == 36
        assert loan.provider_loan_id == "L1"
        assert loan.is_synced_from_bank is True

    def test_update_thresholds(self, db, user, fake_api, provider):
        self.set_loan(fake_api, outstanding=20000.0)
        run(LoanSyncer(db, provider, user.id).sync("item-1"))

        self.set_loan(fake_api, outstanding=20000.005)
        assert run(LoanSyncer(db, provider, user.id).sync("item-1")).updated == 0

        self.set_loan(fake_api, outstanding=20000.0, rate=0.0129)
        assert run(LoanSyncer(db, provider, user.id).sync("item-1")).updated == 0

        self.set_loan(fake_api, outstanding=20000.0, rate=0.0145)
        assert run(LoanSyncer(db, provider, user.id).sync("item-1")).updated == 1

        self.set_loan(fake_api, outstanding=19000.0, rate=0.0145)
        assert run(LoanSyncer(db, provider, user.id).sync("item-1")).updated == 1
        assert db.query(Loan).one().remaining_balance == Decimal("19000")
        assert db.query(Loan).count() == 1

    def test_links_manually_entered_loan_by_natural_key(self, db, user, fake_api, provider):
        db.add(Loan(
            user_id=user.id,
            name="Empréstimo Pessoal",
            principal_amount=Decimal("30000"),
            interest_rate=Decimal("0.0125"),
            start_date=date(2023, 1, 15),
            monthly_payment=Decimal("1200"),
            remaining_balance=Decimal("20000"),
            is_synced_from_bank=False,
        ))
        db.commit()
        self.set_loan(fake_api, outstanding=20000.0)

        result = run(LoanSyncer(db, provider, user.id).sync("item-1"))

        assert result.created == 0
        assert result.updated == 1
        loan = db.query(Loan).one()
        assert loan.provider_loan_id == "L1"
        assert loan.is_synced_from_bank is True
