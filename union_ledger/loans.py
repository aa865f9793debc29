"""
Loan Lifecycle Module

Applications, approval, disbursement, repayment and default of member loans.

A loan moves pending -> approved -> active -> paid | defaulted, or
pending -> rejected. Money only moves through the account ledger: the
disbursement is a ``loan-disbursement`` deposit and every repayment a
``loan-repayment`` withdrawal, each tagged with the loan id. Every transition
that touches both the loan and the ledger runs in a single atomic scope
holding the borrower's account guard and the loan guard.
"""

from datetime import datetime, date, timezone, timedelta
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .guards import GuardRegistry, account_key, loan_key
from .accounts import AccountLedger
from .transactions import TransactionType
from .amortization import AmortizationSchedule, Installment, compute_schedule, monthly_rate
from .exceptions import (
    AccountInactive, CurrencyMismatch, DataIntegrityError, InvalidAmount,
    InvalidLoanParameters, InvalidLoanState, LoanNotFound
)
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application submitted
    APPROVED = "approved"      # Schedule fixed, funds not yet released
    ACTIVE = "active"          # Disbursed and in repayment
    PAID = "paid"              # Fully repaid
    REJECTED = "rejected"      # Application declined
    DEFAULTED = "defaulted"    # Written off as overdue

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.PAID, LoanStatus.REJECTED, LoanStatus.DEFAULTED)


class LoanType(Enum):
    """Loan products offered to members"""
    PERSONAL = "personal"
    BUSINESS = "business"
    AUTO = "auto"
    BUILDING = "building"
    EDUCATION = "education"
    DEVICE = "device"
    MOTORCYCLE = "motorcycle"
    FESTIVE = "festive"
    SPECIAL = "special"


def _parse_status(value: str) -> LoanStatus:
    try:
        return LoanStatus(value)
    except ValueError:
        raise DataIntegrityError(f"Unrecognized loan status {value!r}", status=value)


def _parse_loan_type(value: str) -> LoanType:
    try:
        return LoanType(value)
    except ValueError:
        raise DataIntegrityError(f"Unrecognized loan type {value!r}", loan_type=value)


def _money(data: Dict[str, Any], key: str) -> Optional[Money]:
    return Money.from_dict(data[key]) if data.get(key) else None


def _date(data: Dict[str, Any], key: str) -> Optional[date]:
    return date.fromisoformat(data[key]) if data.get(key) else None


def _datetime(data: Dict[str, Any], key: str) -> Optional[datetime]:
    return datetime.fromisoformat(data[key]) if data.get(key) else None


@dataclass
class Loan(StorageRecord):
    """Loan with its terms and current repayment position"""
    borrower_account_id: str
    loan_type: LoanType
    principal: Money
    annual_interest_rate: Decimal
    term_months: int
    application_date: date
    status: LoanStatus = LoanStatus.PENDING
    purpose: str = ""

    # Applicant details
    employment_status: Optional[str] = None
    monthly_income: Optional[Money] = None
    existing_loans: Optional[str] = None

    # Fixed at approval
    approval_date: Optional[date] = None
    monthly_payment: Optional[Money] = None
    total_interest: Optional[Money] = None
    total_payment: Optional[Money] = None

    # Repayment position
    outstanding_principal: Money = None
    accrued_interest: Money = None          # Interest due on the current installment
    installments_paid: int = 0
    current_installment_paid: Money = None  # Paid so far towards the current installment
    total_paid: Money = None
    principal_paid: Money = None
    interest_paid: Money = None

    rejection_reason: Optional[str] = None
    default_reason: Optional[str] = None
    disbursement_transaction_id: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        zero = Money.zero(self.principal.currency)
        for name in ('outstanding_principal', 'accrued_interest', 'current_installment_paid',
                     'total_paid', 'principal_paid', 'interest_paid'):
            if getattr(self, name) is None:
                setattr(self, name, zero)

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def payoff_amount(self) -> Money:
        """Accrued interest on the current installment plus outstanding principal"""
        return self.accrued_interest + self.outstanding_principal

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_account_id=data['borrower_account_id'],
            loan_type=_parse_loan_type(data['loan_type']),
            principal=Money.from_dict(data['principal']),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_months=data['term_months'],
            application_date=date.fromisoformat(data['application_date']),
            status=_parse_status(data['status']),
            purpose=data.get('purpose') or "",
            employment_status=data.get('employment_status'),
            monthly_income=_money(data, 'monthly_income'),
            existing_loans=data.get('existing_loans'),
            approval_date=_date(data, 'approval_date'),
            monthly_payment=_money(data, 'monthly_payment'),
            total_interest=_money(data, 'total_interest'),
            total_payment=_money(data, 'total_payment'),
            outstanding_principal=_money(data, 'outstanding_principal'),
            accrued_interest=_money(data, 'accrued_interest'),
            installments_paid=data.get('installments_paid', 0),
            current_installment_paid=_money(data, 'current_installment_paid'),
            total_paid=_money(data, 'total_paid'),
            principal_paid=_money(data, 'principal_paid'),
            interest_paid=_money(data, 'interest_paid'),
            rejection_reason=data.get('rejection_reason'),
            default_reason=data.get('default_reason'),
            disbursement_transaction_id=data.get('disbursement_transaction_id'),
            disbursed_at=_datetime(data, 'disbursed_at'),
            closed_at=_datetime(data, 'closed_at'),
        )


@dataclass
class LoanPayment(StorageRecord):
    """Record of one repayment and how it was allocated"""
    loan_id: str
    transaction_id: str
    installment_index: int
    amount_tendered: Money
    amount_applied: Money
    interest_portion: Money
    principal_portion: Money
    outstanding_after: Money
    paid_on: date

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            transaction_id=data['transaction_id'],
            installment_index=data['installment_index'],
            amount_tendered=Money.from_dict(data['amount_tendered']),
            amount_applied=Money.from_dict(data['amount_applied']),
            interest_portion=Money.from_dict(data['interest_portion']),
            principal_portion=Money.from_dict(data['principal_portion']),
            outstanding_after=Money.from_dict(data['outstanding_after']),
            paid_on=date.fromisoformat(data['paid_on']),
        )


class LoanManager:
    """
    Manages loan lifecycle from application through payoff or default
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: AccountLedger,
        audit_trail: AuditTrail,
        guards: GuardRegistry,
        annual_interest_rate: Decimal = Decimal('0.01'),
        min_amount: Decimal = Decimal('10000.00'),
        max_amount: Decimal = Decimal('1000000.00'),
        max_term_months: int = 180,
        grace_period_days: int = 30
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.guards = guards
        self.annual_interest_rate = annual_interest_rate
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.max_term_months = max_term_months
        self.grace_period_days = grace_period_days
        self.logger = get_logger("union_ledger.loans")

        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.schedules_table = "loan_schedules"

    # Applications

    def apply(
        self,
        borrower_account_id: str,
        loan_type: LoanType,
        amount: Money,
        term_months: int,
        purpose: str = "",
        employment_status: Optional[str] = None,
        monthly_income: Optional[Money] = None,
        existing_loans: Optional[str] = None,
        application_date: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> Loan:
        """
        Submit a loan application; no ledger effect

        Args:
            borrower_account_id: Account that will receive the funds and repay
            loan_type: Loan product
            amount: Principal requested, in the account currency
            term_months: Number of monthly installments
            purpose: Free-text purpose of the loan
            employment_status: Applicant's employment status
            monthly_income: Applicant's declared monthly income
            existing_loans: Applicant's declared existing obligations
            application_date: Defaults to today
            actor_id: Caller identity for the audit trail

        Returns:
            The PENDING Loan

        Raises:
            InvalidLoanParameters: Amount or term out of range
            AccountInactive: Borrower account is deactivated
        """
        account = self.ledger.get_account(borrower_account_id)
        if not account.can_transact():
            raise AccountInactive(
                f"Account {borrower_account_id} is deactivated", account_id=borrower_account_id
            )
        if amount.currency != account.currency:
            raise CurrencyMismatch(
                f"Loan amount is {amount.currency.code}, account holds {account.currency.code}"
            )
        self._validate_terms(amount, term_months)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_account_id=borrower_account_id,
            loan_type=loan_type,
            principal=amount,
            annual_interest_rate=self.annual_interest_rate,
            term_months=term_months,
            application_date=application_date or date.today(),
            purpose=purpose,
            employment_status=employment_status,
            monthly_income=monthly_income,
            existing_loans=existing_loans,
        )

        with self.storage.atomic():
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "borrower_account_id": borrower_account_id,
                    "loan_type": loan_type.value,
                    "principal": amount.to_string(),
                    "annual_rate": str(self.annual_interest_rate),
                    "term_months": term_months,
                },
                actor_id=actor_id
            )

        log_action(
            self.logger, "info", f"Loan application for {amount.to_string()}",
            actor_id=actor_id, action="apply_loan", resource=f"loan:{loan.id}",
            extra={"borrower_account_id": borrower_account_id, "term_months": term_months}
        )
        return loan

    def quote(
        self,
        amount: Money,
        term_months: int,
        annual_rate: Optional[Union[Decimal, str]] = None,
        start_date: Optional[date] = None
    ) -> AmortizationSchedule:
        """Schedule preview for an application; nothing is persisted"""
        self._validate_terms(amount, term_months)
        rate = self.annual_interest_rate if annual_rate is None else annual_rate
        return compute_schedule(amount, rate, term_months, start_date or date.today())

    # Transitions

    def approve(
        self,
        loan_id: str,
        approved_on: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> Loan:
        """
        Approve a pending loan and fix its repayment schedule

        The schedule is computed once here, persisted per installment and
        never recomputed.
        """
        approved_on = approved_on or date.today()

        with self.guards.hold(loan_key(loan_id)), self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._require_status(loan, LoanStatus.PENDING, "approve")

            schedule = compute_schedule(
                loan.principal, loan.annual_interest_rate, loan.term_months, approved_on
            )
            for installment in schedule:
                self._save_installment(loan.id, installment)

            loan.status = LoanStatus.APPROVED
            loan.approval_date = approved_on
            loan.monthly_payment = schedule.monthly_payment
            loan.total_interest = schedule.total_interest
            loan.total_payment = schedule.total_payment
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "approval_date": approved_on,
                    "monthly_payment": schedule.monthly_payment.to_string(),
                    "total_payment": schedule.total_payment.to_string(),
                    "total_interest": schedule.total_interest.to_string(),
                },
                actor_id=actor_id
            )

        log_action(
            self.logger, "info", "Loan approved",
            actor_id=actor_id, action="approve_loan", resource=f"loan:{loan_id}",
            extra={"monthly_payment": loan.monthly_payment.to_string()}
        )
        return loan

    def reject(self, loan_id: str, reason: str, actor_id: Optional[str] = None) -> Loan:
        """Decline a pending application; terminal"""
        with self.guards.hold(loan_key(loan_id)), self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._require_status(loan, LoanStatus.PENDING, "reject")

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason
            loan.closed_at = now
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"reason": reason},
                actor_id=actor_id
            )

        log_action(
            self.logger, "info", "Loan rejected",
            actor_id=actor_id, action="reject_loan", resource=f"loan:{loan_id}",
            extra={"reason": reason}
        )
        return loan

    def disburse(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        """
        Release an approved loan's principal to the borrower's account

        If the ledger deposit fails the loan stays APPROVED.
        """
        borrower_account_id = self.get_loan(loan_id).borrower_account_id

        with self.guards.hold(account_key(borrower_account_id), loan_key(loan_id)), \
                self.ledger.mutation(borrower_account_id):
            loan = self.get_loan(loan_id)
            self._require_status(loan, LoanStatus.APPROVED, "disburse")

            transaction = self.ledger.deposit(
                borrower_account_id,
                loan.principal,
                transaction_type=TransactionType.LOAN_DISBURSEMENT,
                related_loan_id=loan.id,
                description=f"Loan disbursement {loan.id[:8]}",
                actor_id=actor_id
            )

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.ACTIVE
            loan.outstanding_principal = loan.principal
            loan.accrued_interest = self._installment_interest(loan)
            loan.disbursement_transaction_id = transaction.id
            loan.disbursed_at = now
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "transaction_id": transaction.id,
                    "account_id": borrower_account_id,
                    "amount": loan.principal.to_string(),
                },
                actor_id=actor_id
            )

        log_action(
            self.logger, "info", f"Loan disbursed: {loan.principal.to_string()}",
            actor_id=actor_id, action="disburse_loan", resource=f"loan:{loan_id}",
            extra={"transaction_id": transaction.id, "account_id": borrower_account_id}
        )
        return loan

    def apply_payment(
        self,
        loan_id: str,
        amount: Money,
        paid_on: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> LoanPayment:
        """
        Repay an active loan from the borrower's account

        The payment covers the current installment's accrued interest first,
        then principal. Anything beyond the scheduled installment is extra
        principal. The amount withdrawn is capped at the payoff amount, so
        outstanding principal never goes negative.

        Args:
            loan_id: Loan being repaid
            amount: Amount tendered
            paid_on: Defaults to today
            actor_id: Caller identity for the audit trail

        Returns:
            LoanPayment describing the allocation

        Raises:
            InvalidLoanState: Loan is not ACTIVE
            InsufficientFunds: Borrower balance is too low; loan unchanged
        """
        paid_on = paid_on or date.today()
        borrower_account_id = self.get_loan(loan_id).borrower_account_id

        with self.guards.hold(account_key(borrower_account_id), loan_key(loan_id)), \
                self.ledger.mutation(borrower_account_id):
            loan = self.get_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, "accept payments for")
            if amount.currency != loan.currency:
                raise CurrencyMismatch(
                    f"Payment is {amount.currency.code}, loan is {loan.currency.code}"
                )
            if not amount.is_positive():
                raise InvalidAmount(f"Payment must be positive, got {amount.to_string()}")

            applied = min(amount, loan.payoff_amount)
            transaction = self.ledger.withdraw(
                borrower_account_id,
                applied,
                transaction_type=TransactionType.LOAN_REPAYMENT,
                related_loan_id=loan.id,
                description=f"Loan repayment {loan.id[:8]}",
                actor_id=actor_id
            )

            installment_index = loan.installments_paid + 1
            interest_portion = min(applied, loan.accrued_interest)
            principal_portion = applied - interest_portion

            loan.accrued_interest = loan.accrued_interest - interest_portion
            loan.outstanding_principal = loan.outstanding_principal.subtract(principal_portion)
            loan.interest_paid = loan.interest_paid + interest_portion
            loan.principal_paid = loan.principal_paid + principal_portion
            loan.total_paid = loan.total_paid + applied
            loan.current_installment_paid = loan.current_installment_paid + applied
            self._advance_installment(loan)

            now = datetime.now(timezone.utc)
            if loan.outstanding_principal.is_zero():
                loan.status = LoanStatus.PAID
                loan.accrued_interest = Money.zero(loan.currency)
                loan.closed_at = now
            loan.updated_at = now
            self._save_loan(loan)

            payment = LoanPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                transaction_id=transaction.id,
                installment_index=installment_index,
                amount_tendered=amount,
                amount_applied=applied,
                interest_portion=interest_portion,
                principal_portion=principal_portion,
                outstanding_after=loan.outstanding_principal,
                paid_on=paid_on,
            )
            self.storage.save(self.payments_table, payment.id, payment.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_MADE,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "payment_id": payment.id,
                    "transaction_id": transaction.id,
                    "amount_tendered": amount.to_string(),
                    "amount_applied": applied.to_string(),
                    "interest_portion": interest_portion.to_string(),
                    "principal_portion": principal_portion.to_string(),
                    "outstanding_after": loan.outstanding_principal.to_string(),
                },
                actor_id=actor_id
            )
            if loan.status == LoanStatus.PAID:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAID_OFF,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"total_paid": loan.total_paid.to_string()},
                    actor_id=actor_id
                )

        log_action(
            self.logger, "info", f"Loan payment of {applied.to_string()}",
            actor_id=actor_id, action="loan_payment", resource=f"loan:{loan_id}",
            extra={
                "installment_index": installment_index,
                "outstanding_after": loan.outstanding_principal.to_string(),
                "status": loan.status.value,
            }
        )
        return payment

    def mark_defaulted(
        self,
        loan_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Loan:
        """Write an active loan off as defaulted; terminal, no ledger effect"""
        with self.guards.hold(loan_key(loan_id)), self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, "default")

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.DEFAULTED
            loan.default_reason = reason
            loan.closed_at = now
            loan.updated_at = now
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DEFAULTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "reason": reason,
                    "outstanding_principal": loan.outstanding_principal.to_string(),
                },
                actor_id=actor_id
            )

        log_action(
            self.logger, "warning", "Loan defaulted",
            actor_id=actor_id, action="default_loan", resource=f"loan:{loan_id}",
            extra={"reason": reason, "outstanding_principal": loan.outstanding_principal.to_string()}
        )
        return loan

    # Overdue handling

    def find_overdue_loans(
        self,
        as_of: Optional[date] = None,
        grace_period_days: Optional[int] = None
    ) -> List[Loan]:
        """Active loans whose next unpaid installment is past due beyond the grace period"""
        as_of = as_of or date.today()
        grace = timedelta(days=self.grace_period_days if grace_period_days is None else grace_period_days)

        overdue = []
        for loan in self.list_loans(status=LoanStatus.ACTIVE):
            installment = self.next_installment(loan.id)
            if installment and installment.due_date and as_of > installment.due_date + grace:
                overdue.append(loan)
        return overdue

    def process_overdue_loans(
        self,
        as_of: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> List[Loan]:
        """Mark every overdue loan defaulted; returns the loans defaulted"""
        as_of = as_of or date.today()
        defaulted = []
        for loan in self.find_overdue_loans(as_of):
            installment = self.next_installment(loan.id)
            if installment is None:
                continue
            reason = (
                f"Installment {installment.index} due {installment.due_date.isoformat()} "
                f"unpaid as of {as_of.isoformat()}"
            )
            try:
                defaulted.append(self.mark_defaulted(loan.id, reason, actor_id=actor_id))
            except InvalidLoanState as e:
                # Paid off or closed since it was found overdue
                log_action(
                    self.logger, "warning", "Skipped overdue loan",
                    action="process_overdue", resource=f"loan:{loan.id}",
                    extra={"error": str(e)}
                )

        log_action(
            self.logger, "info", f"Overdue processing defaulted {len(defaulted)} loan(s)",
            actor_id=actor_id, action="process_overdue", extra={"as_of": as_of.isoformat()}
        )
        return defaulted

    # Reads

    def get_loan(self, loan_id: str) -> Loan:
        """
        Get loan by ID

        Raises:
            LoanNotFound: If the loan does not exist
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id)
        return Loan.from_dict(data)

    def list_loans(
        self,
        borrower_account_id: Optional[str] = None,
        status: Optional[LoanStatus] = None
    ) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if borrower_account_id:
            filters["borrower_account_id"] = borrower_account_id
        if status:
            filters["status"] = status.value
        return [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Persisted schedule of an approved loan; empty before approval"""
        loan = self.get_loan(loan_id)
        installments = []
        for index in range(1, loan.term_months + 1):
            data = self.storage.load(self.schedules_table, f"{loan_id}:{index}")
            if data:
                installments.append(Installment.from_dict(data))
        return installments

    def get_payments(self, loan_id: str) -> List[LoanPayment]:
        self.get_loan(loan_id)
        payments = [
            LoanPayment.from_dict(data)
            for data in self.storage.find(self.payments_table, {"loan_id": loan_id})
        ]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def next_installment(self, loan_id: str) -> Optional[Installment]:
        """Next unpaid installment of an active loan"""
        loan = self.get_loan(loan_id)
        if not loan.is_active or loan.installments_paid >= loan.term_months:
            return None
        data = self.storage.load(self.schedules_table, f"{loan_id}:{loan.installments_paid + 1}")
        return Installment.from_dict(data) if data else None

    # Helpers

    def _validate_terms(self, amount: Money, term_months: int) -> None:
        minimum = Money.of(self.min_amount, amount.currency)
        maximum = Money.of(self.max_amount, amount.currency)
        if amount < minimum or amount > maximum:
            raise InvalidLoanParameters(
                f"Loan amount {amount.to_string()} must be between "
                f"{minimum.to_string()} and {maximum.to_string()}"
            )
        if isinstance(term_months, bool) or not isinstance(term_months, int) \
                or term_months <= 0 or term_months > self.max_term_months:
            raise InvalidLoanParameters(
                f"Loan term must be between 1 and {self.max_term_months} months, got {term_months}"
            )

    def _require_status(self, loan: Loan, expected: LoanStatus, verb: str) -> None:
        if loan.status != expected:
            raise InvalidLoanState(
                f"Cannot {verb} loan {loan.id}: status is {loan.status.value}, "
                f"expected {expected.value}",
                loan_id=loan.id,
                status=loan.status.value,
            )

    def _installment_interest(self, loan: Loan) -> Money:
        return loan.outstanding_principal.multiply_by_rate(monthly_rate(loan.annual_interest_rate))

    def _advance_installment(self, loan: Loan) -> None:
        # The schedule is static: an installment counts as paid once the amount
        # paid towards it reaches its scheduled payment, or the loan is paid
        # off. Any excess has already gone to principal and does not carry
        # into the next installment.
        if loan.installments_paid >= loan.term_months:
            return
        data = self.storage.load(self.schedules_table, f"{loan.id}:{loan.installments_paid + 1}")
        if not data:
            raise DataIntegrityError(
                f"Loan {loan.id} has no schedule entry {loan.installments_paid + 1}"
            )
        scheduled = Money.from_dict(data["payment"])
        paid_off = loan.outstanding_principal.is_zero()
        if loan.current_installment_paid < scheduled and not paid_off:
            return
        loan.installments_paid += 1
        loan.current_installment_paid = Money.zero(loan.currency)
        if not paid_off:
            loan.accrued_interest = loan.accrued_interest + self._installment_interest(loan)

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _save_installment(self, loan_id: str, installment: Installment) -> None:
        record = installment.to_dict()
        record["id"] = f"{loan_id}:{installment.index}"
        record["loan_id"] = loan_id
        self.storage.save(self.schedules_table, record["id"], record)
