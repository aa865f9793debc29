"""
Test suite for loan lifecycle

Application, approval with a fixed schedule, disbursement through the
ledger, interest-first repayment, payoff and overdue default.
"""

import threading
import pytest
from datetime import date

from union_ledger.config import UnionLedgerConfig
from union_ledger.currency import Money, Currency
from union_ledger.storage import InMemoryStorage, SQLiteStorage
from union_ledger.system import LedgerSystem
from union_ledger.audit import AuditEventType
from union_ledger.loans import Loan, LoanStatus, LoanType
from union_ledger.transactions import TransactionType
from union_ledger.exceptions import (
    AccountInactive, DataIntegrityError, InsufficientFunds, InvalidLoanParameters,
    InvalidLoanState, LoanNotFound
)


def gmd(major):
    return Money.of(major, Currency.GMD)


class LoanTestBase:
    """Ledger system with one funded borrower"""

    def setup_method(self):
        config = UnionLedgerConfig(database_url="memory://")
        self.system = LedgerSystem(config=config, storage=InMemoryStorage())
        self.ledger = self.system.ledger
        self.loans = self.system.loan_manager
        self.account = self.ledger.open_account("member-1")
        # Enough cash on hand to cover interest
        self.ledger.deposit(self.account.id, gmd("1000.00"))

    def _active_loan(self, amount="12000.00", term=12, approved_on=date(2025, 1, 15)):
        loan = self.loans.apply(self.account.id, LoanType.PERSONAL, gmd(amount), term)
        self.loans.approve(loan.id, approved_on=approved_on, actor_id="officer-1")
        return self.loans.disburse(loan.id, actor_id="officer-1")


class TestLoanApplication(LoanTestBase):
    """Applying and reviewing loans"""

    def test_apply_creates_pending_loan(self):
        loan = self.loans.apply(
            self.account.id, LoanType.BUSINESS, gmd("25000.00"), 24,
            purpose="Shop stock", employment_status="self-employed",
            monthly_income=gmd("8000.00")
        )

        assert loan.status == LoanStatus.PENDING
        assert loan.annual_interest_rate == self.loans.annual_interest_rate
        assert loan.outstanding_principal == gmd(0)
        assert self.loans.get_loan(loan.id) == loan
        assert self.loans.get_schedule(loan.id) == []
        assert self.ledger.get_balance(self.account.id) == gmd("1000.00")

    @pytest.mark.parametrize("amount,term", [
        ("9999.99", 12),
        ("1000000.01", 12),
        ("12000.00", 0),
        ("12000.00", 181),
    ])
    def test_out_of_range_terms_rejected(self, amount, term):
        with pytest.raises(InvalidLoanParameters):
            self.loans.apply(self.account.id, LoanType.PERSONAL, gmd(amount), term)
        assert self.loans.list_loans() == []

    def test_deactivated_account_cannot_apply(self):
        self.ledger.withdraw(self.account.id, gmd("1000.00"))
        self.ledger.deactivate_account(self.account.id, "closed")
        with pytest.raises(AccountInactive):
            self.loans.apply(self.account.id, LoanType.PERSONAL, gmd("12000.00"), 12)

    def test_quote_matches_approved_schedule(self):
        quote = self.loans.quote(gmd("12000.00"), 12, start_date=date(2025, 1, 15))
        loan = self.loans.apply(self.account.id, LoanType.PERSONAL, gmd("12000.00"), 12)
        approved = self.loans.approve(loan.id, approved_on=date(2025, 1, 15))

        assert approved.status == LoanStatus.APPROVED
        assert approved.monthly_payment == quote.monthly_payment
        assert approved.total_interest == quote.total_interest
        assert self.loans.get_schedule(loan.id) == quote.installments

    def test_reject(self):
        loan = self.loans.apply(self.account.id, LoanType.FESTIVE, gmd("15000.00"), 6)
        rejected = self.loans.reject(loan.id, "insufficient income")

        assert rejected.status == LoanStatus.REJECTED
        assert rejected.rejection_reason == "insufficient income"
        assert rejected.status.is_terminal
        with pytest.raises(InvalidLoanState):
            self.loans.approve(loan.id)

    def test_invalid_transitions(self):
        loan = self.loans.apply(self.account.id, LoanType.PERSONAL, gmd("12000.00"), 12)
        with pytest.raises(InvalidLoanState):
            self.loans.disburse(loan.id)
        with pytest.raises(InvalidLoanState):
            self.loans.apply_payment(loan.id, gmd("100.00"))
        with pytest.raises(InvalidLoanState):
            self.loans.mark_defaulted(loan.id)

        self.loans.approve(loan.id)
        with pytest.raises(InvalidLoanState):
            self.loans.approve(loan.id)
        with pytest.raises(InvalidLoanState):
            self.loans.reject(loan.id, "too late")

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFound):
            self.loans.get_loan("missing")
        with pytest.raises(LoanNotFound):
            self.loans.approve("missing")

    def test_unknown_persisted_status_is_integrity_error(self):
        loan = self.loans.apply(self.account.id, LoanType.PERSONAL, gmd("12000.00"), 12)
        data = loan.to_dict()
        data["status"] = "archived"
        with pytest.raises(DataIntegrityError):
            Loan.from_dict(data)

    def test_unknown_persisted_loan_type_is_integrity_error(self):
        loan = self.loans.apply(self.account.id, LoanType.PERSONAL, gmd("12000.00"), 12)
        data = loan.to_dict()
        data["loan_type"] = "yacht"
        with pytest.raises(DataIntegrityError):
            Loan.from_dict(data)


class TestDisbursement(LoanTestBase):
    """Releasing funds"""

    def test_disburse_credits_account(self):
        loan = self._active_loan()

        assert loan.status == LoanStatus.ACTIVE
        assert loan.outstanding_principal == gmd("12000.00")
        # 12000.00 * 0.01 / 12 = 10.00
        assert loan.accrued_interest == gmd("10.00")
        assert self.ledger.get_balance(self.account.id) == gmd("13000.00")

        transaction = self.system.transaction_log.get_transaction(loan.disbursement_transaction_id)
        assert transaction.transaction_type == TransactionType.LOAN_DISBURSEMENT
        assert transaction.related_loan_id == loan.id

    def test_disburse_twice_rejected(self):
        loan = self._active_loan()
        with pytest.raises(InvalidLoanState):
            self.loans.disburse(loan.id)
        assert self.ledger.get_balance(self.account.id) == gmd("13000.00")

    def test_failed_deposit_leaves_loan_approved(self):
        loan = self.loans.apply(self.account.id, LoanType.PERSONAL, gmd("12000.00"), 12)
        self.loans.approve(loan.id)
        self.ledger.withdraw(self.account.id, gmd("1000.00"))
        self.ledger.deactivate_account(self.account.id, "closed")

        with pytest.raises(AccountInactive):
            self.loans.disburse(loan.id)

        assert self.loans.get_loan(loan.id).status == LoanStatus.APPROVED
        assert self.ledger.get_balance(self.account.id) == gmd(0)


class TestRepayment(LoanTestBase):
    """Interest-first repayment"""

    def test_full_schedule_pays_off_loan(self):
        loan = self._active_loan()
        schedule = self.loans.get_schedule(loan.id)

        for installment in schedule:
            payment = self.loans.apply_payment(loan.id, installment.payment)
            assert payment.installment_index == installment.index
            assert payment.interest_portion == installment.interest
            assert payment.principal_portion == installment.principal
            assert payment.outstanding_after == installment.remaining_balance

        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.PAID
        assert loan.outstanding_principal == gmd(0)
        assert loan.installments_paid == 12
        assert loan.principal_paid == gmd("12000.00")
        assert loan.interest_paid == loan.total_interest
        assert loan.closed_at is not None
        assert len(self.loans.get_payments(loan.id)) == 12

        # Starting cash less the interest charged
        assert self.ledger.get_balance(self.account.id) == gmd("1000.00") - loan.total_interest

        with pytest.raises(InvalidLoanState):
            self.loans.apply_payment(loan.id, gmd("1.00"))

    def test_payment_covers_interest_before_principal(self):
        loan = self._active_loan()
        payment = self.loans.apply_payment(loan.id, gmd("4.00"))

        assert payment.interest_portion == gmd("4.00")
        assert payment.principal_portion == gmd(0)
        loan = self.loans.get_loan(loan.id)
        assert loan.accrued_interest == gmd("6.00")
        assert loan.outstanding_principal == gmd("12000.00")
        assert loan.installments_paid == 0

    def test_partial_payments_complete_an_installment(self):
        loan = self._active_loan()
        due = loan.monthly_payment

        first = due.split_evenly(2)[0]
        self.loans.apply_payment(loan.id, first)
        assert self.loans.get_loan(loan.id).installments_paid == 0

        self.loans.apply_payment(loan.id, due - first)
        loan = self.loans.get_loan(loan.id)
        assert loan.installments_paid == 1
        assert loan.current_installment_paid == gmd(0)
        assert self.loans.next_installment(loan.id).index == 2

    def test_extra_payment_goes_to_principal_without_carrying_over(self):
        loan = self._active_loan()
        payment = self.loans.apply_payment(loan.id, loan.monthly_payment + gmd("2000.00"))

        loan = self.loans.get_loan(loan.id)
        assert loan.installments_paid == 1
        assert payment.interest_portion == gmd("10.00")
        assert loan.outstanding_principal == gmd("12000.00") - payment.principal_portion
        # Next month's interest on the reduced balance
        expected = loan.outstanding_principal.multiply_by_rate(
            loan.annual_interest_rate / 12
        )
        assert loan.accrued_interest == expected

    def test_overpayment_is_capped_at_payoff(self):
        loan = self._active_loan()
        payoff = loan.payoff_amount
        payment = self.loans.apply_payment(loan.id, gmd("20000.00"))

        assert payment.amount_tendered == gmd("20000.00")
        assert payment.amount_applied == payoff
        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.PAID
        assert loan.outstanding_principal == gmd(0)
        assert self.ledger.get_balance(self.account.id) == gmd("13000.00") - payoff

    def test_insufficient_funds_leaves_loan_unchanged(self):
        loan = self._active_loan()
        self.ledger.withdraw(self.account.id, gmd("12990.00"))

        with pytest.raises(InsufficientFunds):
            self.loans.apply_payment(loan.id, loan.monthly_payment)

        assert self.loans.get_loan(loan.id) == loan
        assert self.loans.get_payments(loan.id) == []
        assert self.ledger.get_balance(self.account.id) == gmd("10.00")

    def test_repayments_are_ledger_withdrawals(self):
        loan = self._active_loan()
        payment = self.loans.apply_payment(loan.id, loan.monthly_payment)

        transaction = self.system.transaction_log.get_transaction(payment.transaction_id)
        assert transaction.transaction_type == TransactionType.LOAN_REPAYMENT
        assert transaction.related_loan_id == loan.id
        assert transaction.amount == -loan.monthly_payment

    def test_lifecycle_is_audited(self):
        loan = self._active_loan(amount="10000.00", term=1)
        self.loans.apply_payment(loan.id, loan.payoff_amount)

        events = self.system.audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_APPLIED,
            AuditEventType.LOAN_APPROVED,
            AuditEventType.LOAN_DISBURSED,
            AuditEventType.LOAN_PAYMENT_MADE,
            AuditEventType.LOAN_PAID_OFF,
        ]
        assert self.system.audit_trail.verify_integrity()["valid"]


class TestOverdueLoans(LoanTestBase):
    """Grace period and default"""

    def test_not_overdue_within_grace_period(self):
        self._active_loan(approved_on=date(2025, 1, 15))
        # First installment due 2025-02-15, grace runs to 2025-03-17
        assert self.loans.find_overdue_loans(as_of=date(2025, 3, 17)) == []

    def test_overdue_loans_are_defaulted(self):
        loan = self._active_loan(approved_on=date(2025, 1, 15))

        overdue = self.loans.find_overdue_loans(as_of=date(2025, 3, 18))
        assert [l.id for l in overdue] == [loan.id]

        defaulted = self.loans.process_overdue_loans(as_of=date(2025, 3, 18), actor_id="system")
        assert [l.id for l in defaulted] == [loan.id]

        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.DEFAULTED
        assert "Installment 1" in loan.default_reason
        assert loan.outstanding_principal == gmd("12000.00")
        with pytest.raises(InvalidLoanState):
            self.loans.apply_payment(loan.id, gmd("10.00"))

    def test_paid_installments_move_the_due_date(self):
        loan = self._active_loan(approved_on=date(2025, 1, 15))
        self.loans.apply_payment(loan.id, loan.monthly_payment)

        assert self.loans.next_installment(loan.id).due_date == date(2025, 3, 15)
        assert self.loans.find_overdue_loans(as_of=date(2025, 3, 18)) == []

    def test_custom_grace_period(self):
        self._active_loan(approved_on=date(2025, 1, 15))
        assert len(self.loans.find_overdue_loans(as_of=date(2025, 2, 16), grace_period_days=0)) == 1

    def test_manual_default(self):
        loan = self._active_loan()
        defaulted = self.loans.mark_defaulted(loan.id, "member absconded")
        assert defaulted.status == LoanStatus.DEFAULTED
        assert self.loans.list_loans(status=LoanStatus.ACTIVE) == []
        assert self.loans.next_installment(loan.id) is None


class TestLoanConcurrency:
    """Repayments and withdrawals racing on the borrower's account"""

    def _race(self, workers):
        barrier = threading.Barrier(len(workers))
        results = [None] * len(workers)

        def run(index, work):
            barrier.wait()
            try:
                results[index] = work()
            except Exception as e:
                results[index] = e

        threads = [threading.Thread(target=run, args=(i, w)) for i, w in enumerate(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_payment_and_withdrawal_that_jointly_overdraw(self, backend, tmp_path):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(tmp_path / "loans.db")
        system = LedgerSystem(config=UnionLedgerConfig(database_url="memory://"), storage=storage)
        ledger, loans = system.ledger, system.loan_manager
        account = ledger.open_account("member-1")
        ledger.deposit(account.id, gmd("1000.00"))
        loan = loans.apply(account.id, LoanType.PERSONAL, gmd("12000.00"), 12)
        loans.approve(loan.id, approved_on=date(2025, 1, 15))
        loan = loans.disburse(loan.id)

        balance = ledger.get_balance(account.id)
        installment = loan.monthly_payment
        # Either one fits on its own, both together do not
        withdrawal = balance - installment + gmd("1.00")

        payment_result, withdrawal_result = self._race([
            lambda: loans.apply_payment(loan.id, installment),
            lambda: ledger.withdraw(account.id, withdrawal),
        ])

        failures = [r for r in (payment_result, withdrawal_result) if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientFunds)
        assert not ledger.get_balance(account.id).is_negative()

        after = loans.get_loan(loan.id)
        if isinstance(payment_result, InsufficientFunds):
            assert after.outstanding_principal == gmd("12000.00")
            assert after.installments_paid == 0
            assert after.total_paid == gmd(0)
            assert loans.get_payments(loan.id) == []
            assert ledger.get_balance(account.id) == balance - withdrawal
        else:
            assert after.installments_paid == 1
            assert ledger.get_balance(account.id) == balance - installment
        assert system.audit_trail.verify_integrity()["valid"] is True
        system.close()
