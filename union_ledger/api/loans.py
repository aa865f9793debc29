"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_actor_id, get_system
from .schemas import (
    ApproveLoanRequest, DefaultLoanRequest, LoanApplicationRequest, LoanPaymentRequest,
    LoanQuoteRequest, ProcessOverdueRequest, RejectLoanRequest, installment_response,
    loan_response, parse_choice, payment_response, schedule_response
)
from ..loans import LoanStatus, LoanType
from ..system import LedgerSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def apply_for_loan(
    request: LoanApplicationRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Submit a loan application"""
    account = system.ledger.get_account(request.borrower_account_id)
    loan = system.loan_manager.apply(
        borrower_account_id=request.borrower_account_id,
        loan_type=parse_choice(LoanType, request.loan_type, "loan type"),
        amount=request.amount.to_money(account.currency),
        term_months=request.term_months,
        purpose=request.purpose,
        employment_status=request.employment_status,
        monthly_income=(
            request.monthly_income.to_money(account.currency) if request.monthly_income else None
        ),
        existing_loans=request.existing_loans,
        actor_id=actor_id
    )
    return loan_response(loan)


@router.post("/quote")
def quote_loan(request: LoanQuoteRequest, system: LedgerSystem = Depends(get_system)):
    """Repayment schedule preview; nothing is saved"""
    schedule = system.loan_manager.quote(
        request.amount.to_money(system.ledger.default_currency),
        request.term_months,
        annual_rate=request.annual_rate,
        start_date=request.start_date
    )
    return schedule_response(schedule)


@router.get("")
def list_loans(
    borrower_account_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    system: LedgerSystem = Depends(get_system)
):
    status_value = parse_choice(LoanStatus, status_filter, "status") if status_filter else None
    loans = system.loan_manager.list_loans(borrower_account_id, status_value)
    return {"loans": [loan_response(loan) for loan in loans]}


@router.get("/overdue")
def list_overdue_loans(
    as_of: Optional[date] = None,
    grace_period_days: Optional[int] = None,
    system: LedgerSystem = Depends(get_system)
):
    loans = system.loan_manager.find_overdue_loans(as_of, grace_period_days)
    return {"loans": [loan_response(loan) for loan in loans]}


@router.post("/overdue/process")
def process_overdue_loans(
    request: ProcessOverdueRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Mark every overdue loan defaulted"""
    loans = system.loan_manager.process_overdue_loans(request.as_of, actor_id=actor_id)
    return {"defaulted": [loan_response(loan) for loan in loans]}


@router.get("/{loan_id}")
def get_loan(loan_id: str, system: LedgerSystem = Depends(get_system)):
    """Get loan details"""
    return loan_response(system.loan_manager.get_loan(loan_id))


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    loan = system.loan_manager.approve(loan_id, request.approved_on, actor_id=actor_id)
    return loan_response(loan)


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    loan = system.loan_manager.reject(loan_id, request.reason, actor_id=actor_id)
    return loan_response(loan)


@router.post("/{loan_id}/disburse")
def disburse_loan(
    loan_id: str,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Release the principal to the borrower's account"""
    loan = system.loan_manager.disburse(loan_id, actor_id=actor_id)
    return loan_response(loan)


@router.post("/{loan_id}/payments")
def make_loan_payment(
    loan_id: str,
    request: LoanPaymentRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Repay from the borrower's account"""
    loan = system.loan_manager.get_loan(loan_id)
    payment = system.loan_manager.apply_payment(
        loan_id,
        request.amount.to_money(loan.currency),
        paid_on=request.paid_on,
        actor_id=actor_id
    )
    return {
        "payment": payment_response(payment),
        "loan": loan_response(system.loan_manager.get_loan(loan_id)),
    }


@router.post("/{loan_id}/default")
def default_loan(
    loan_id: str,
    request: DefaultLoanRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    loan = system.loan_manager.mark_defaulted(loan_id, request.reason, actor_id=actor_id)
    return loan_response(loan)


@router.get("/{loan_id}/schedule")
def get_loan_schedule(loan_id: str, system: LedgerSystem = Depends(get_system)):
    """Get loan amortization schedule"""
    schedule = system.loan_manager.get_schedule(loan_id)
    return {"schedule": [installment_response(i) for i in schedule]}


@router.get("/{loan_id}/payments")
def get_loan_payments(loan_id: str, system: LedgerSystem = Depends(get_system)):
    payments = system.loan_manager.get_payments(loan_id)
    return {"payments": [payment_response(p) for p in payments]}


@router.get("/{loan_id}/next-installment")
def get_next_installment(loan_id: str, system: LedgerSystem = Depends(get_system)):
    installment = system.loan_manager.next_installment(loan_id)
    return {"installment": installment_response(installment) if installment else None}
