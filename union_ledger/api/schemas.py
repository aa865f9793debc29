"""
Pydantic schemas for API requests, and dict builders for responses
"""

from datetime import date
from typing import Dict, List, Optional, Any
from fastapi import HTTPException
from pydantic import BaseModel, Field

from ..currency import Money, Currency, decimal_from_string
from ..exceptions import InvalidAmount
from ..accounts import Account
from ..transactions import Transaction
from ..loans import Loan, LoanPayment
from ..amortization import AmortizationSchedule, Installment
from ..imports import ImportReport


class MoneyModel(BaseModel):
    minor_units: Optional[int] = Field(None, description="Integer amount in minor units (butut)")
    amount: Optional[str] = Field(None, description="Major-unit amount as entered, e.g. '1,250.50'")
    currency: Optional[str] = Field(None, description="Currency code; the account currency when omitted")

    def to_money(self, default_currency: Currency) -> Money:
        currency = Currency.from_code(self.currency) if self.currency else default_currency
        if self.minor_units is not None:
            return Money(self.minor_units, currency)
        if self.amount is not None:
            return Money.of(decimal_from_string(self.amount), currency)
        raise InvalidAmount("Either minor_units or amount is required")

    @classmethod
    def from_money(cls, money: Money) -> Dict[str, Any]:
        return {
            "minor_units": money.minor_units,
            "amount": str(money.amount),
            "currency": money.currency.code,
            "display": money.to_string(),
        }


# Account schemas
class OpenAccountRequest(BaseModel):
    owner_id: str
    currency: Optional[str] = None


class DeactivateAccountRequest(BaseModel):
    reason: str


class MoneyMovementRequest(BaseModel):
    amount: MoneyModel
    description: Optional[str] = None
    method: str = Field("internal", description="internal, wave, aps, bank or cash")


class PendingDepositRequest(BaseModel):
    amount: MoneyModel
    method: str = Field(..., description="wave, aps or bank")
    description: Optional[str] = None


class TransferRequest(BaseModel):
    to_account_id: str
    amount: MoneyModel
    description: Optional[str] = None


class FailPendingRequest(BaseModel):
    reason: str


# Loan schemas
class LoanApplicationRequest(BaseModel):
    borrower_account_id: str
    loan_type: str = Field(..., description="personal, business, auto, building, education, ...")
    amount: MoneyModel
    term_months: int
    purpose: str = ""
    employment_status: Optional[str] = None
    monthly_income: Optional[MoneyModel] = None
    existing_loans: Optional[str] = None


class LoanQuoteRequest(BaseModel):
    amount: MoneyModel
    term_months: int
    annual_rate: Optional[str] = Field(None, description="Annual rate as a decimal string, e.g. '0.01'")
    start_date: Optional[date] = None


class ApproveLoanRequest(BaseModel):
    approved_on: Optional[date] = None


class RejectLoanRequest(BaseModel):
    reason: str


class LoanPaymentRequest(BaseModel):
    amount: MoneyModel
    paid_on: Optional[date] = None


class DefaultLoanRequest(BaseModel):
    reason: Optional[str] = None


class ProcessOverdueRequest(BaseModel):
    as_of: Optional[date] = None


# Import schemas
class ImportRowModel(BaseModel):
    account_id: Optional[str] = None
    owner_id: Optional[str] = None
    loan_id: Optional[str] = None
    amount: str
    type: str
    description: Optional[str] = None


class BulkImportRequest(BaseModel):
    rows: Optional[List[ImportRowModel]] = None
    csv_text: Optional[str] = Field(
        None, description="CSV with amount,type[,description] and account_id, owner_id or loan_id"
    )
    file_name: Optional[str] = None


def parse_choice(enum_cls, value: str, field_name: str):
    """Enum member for a request value, or a 422 naming the allowed values"""
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise HTTPException(
            status_code=422, detail=f"Invalid {field_name} '{value}'; expected one of: {allowed}"
        )


# Response builders
def account_response(account: Account, balance: Optional[Money] = None) -> Dict[str, Any]:
    result = {
        "id": account.id,
        "owner_id": account.owner_id,
        "currency": account.currency.code,
        "state": account.state.value,
        "created_at": account.created_at.isoformat(),
    }
    if account.deactivation_reason:
        result["deactivation_reason"] = account.deactivation_reason
    if balance is not None:
        result["balance"] = MoneyModel.from_money(balance)
    return result


def transaction_response(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "account_id": transaction.account_id,
        "sequence": transaction.sequence,
        "type": transaction.transaction_type.value,
        "amount": MoneyModel.from_money(transaction.amount),
        "status": transaction.status.value,
        "method": transaction.method.value,
        "description": transaction.description,
        "related_loan_id": transaction.related_loan_id,
        "counterparty_account_id": transaction.counterparty_account_id,
        "transfer_id": transaction.transfer_id,
        "failure_reason": transaction.failure_reason,
        "created_at": transaction.created_at.isoformat(),
        "settled_at": transaction.settled_at.isoformat() if transaction.settled_at else None,
    }


def _optional_money(money: Optional[Money]) -> Optional[Dict[str, Any]]:
    return MoneyModel.from_money(money) if money else None


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "borrower_account_id": loan.borrower_account_id,
        "loan_type": loan.loan_type.value,
        "status": loan.status.value,
        "principal": MoneyModel.from_money(loan.principal),
        "annual_interest_rate": str(loan.annual_interest_rate),
        "term_months": loan.term_months,
        "purpose": loan.purpose,
        "application_date": loan.application_date.isoformat(),
        "approval_date": loan.approval_date.isoformat() if loan.approval_date else None,
        "monthly_payment": _optional_money(loan.monthly_payment),
        "total_interest": _optional_money(loan.total_interest),
        "total_payment": _optional_money(loan.total_payment),
        "outstanding_principal": MoneyModel.from_money(loan.outstanding_principal),
        "accrued_interest": MoneyModel.from_money(loan.accrued_interest),
        "payoff_amount": MoneyModel.from_money(loan.payoff_amount),
        "installments_paid": loan.installments_paid,
        "total_paid": MoneyModel.from_money(loan.total_paid),
        "rejection_reason": loan.rejection_reason,
        "default_reason": loan.default_reason,
        "disbursement_transaction_id": loan.disbursement_transaction_id,
    }


def installment_response(installment: Installment) -> Dict[str, Any]:
    return {
        "index": installment.index,
        "due_date": installment.due_date.isoformat() if installment.due_date else None,
        "payment": MoneyModel.from_money(installment.payment),
        "principal": MoneyModel.from_money(installment.principal),
        "interest": MoneyModel.from_money(installment.interest),
        "remaining_balance": MoneyModel.from_money(installment.remaining_balance),
    }


def schedule_response(schedule: AmortizationSchedule) -> Dict[str, Any]:
    return {
        "principal": MoneyModel.from_money(schedule.principal),
        "annual_rate": str(schedule.annual_rate),
        "term_months": schedule.term_months,
        "monthly_payment": MoneyModel.from_money(schedule.monthly_payment),
        "total_payment": MoneyModel.from_money(schedule.total_payment),
        "total_interest": MoneyModel.from_money(schedule.total_interest),
        "installments": [installment_response(i) for i in schedule],
    }


def payment_response(payment: LoanPayment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loan_id": payment.loan_id,
        "transaction_id": payment.transaction_id,
        "installment_index": payment.installment_index,
        "amount_tendered": MoneyModel.from_money(payment.amount_tendered),
        "amount_applied": MoneyModel.from_money(payment.amount_applied),
        "interest_portion": MoneyModel.from_money(payment.interest_portion),
        "principal_portion": MoneyModel.from_money(payment.principal_portion),
        "outstanding_after": MoneyModel.from_money(payment.outstanding_after),
        "paid_on": payment.paid_on.isoformat(),
    }


def import_report_response(report: ImportReport) -> Dict[str, Any]:
    return {
        "id": report.id,
        "performed_by": report.performed_by,
        "file_name": report.file_name,
        "status": report.status.value,
        "record_count": report.record_count,
        "success_count": report.success_count,
        "failure_count": report.failure_count,
        "skipped_count": report.skipped_count,
        "failures": report.failures,
        "skipped": report.skipped,
        "started_at": report.started_at.isoformat(),
        "completed_at": report.completed_at.isoformat(),
    }
