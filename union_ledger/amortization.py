"""
Loan Amortization Module

Pure equal-installment (annuity) schedule calculation. Every intermediate
amount is rounded half-up to the minor unit and the final installment
absorbs whatever principal is left, so the principal portions always add up
to the loan principal exactly.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Any, Union

from .currency import Money, RoundingRule, round_minor
from .exceptions import InvalidLoanParameters


@dataclass(frozen=True)
class Installment:
    """Single entry in an amortization schedule"""
    index: int
    due_date: Optional[date]
    payment: Money
    principal: Money
    interest: Money
    remaining_balance: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "payment": self.payment.to_dict(),
            "principal": self.principal.to_dict(),
            "interest": self.interest.to_dict(),
            "remaining_balance": self.remaining_balance.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            index=data["index"],
            due_date=date.fromisoformat(data["due_date"]) if data.get("due_date") else None,
            payment=Money.from_dict(data["payment"]),
            principal=Money.from_dict(data["principal"]),
            interest=Money.from_dict(data["interest"]),
            remaining_balance=Money.from_dict(data["remaining_balance"]),
        )


@dataclass
class AmortizationSchedule:
    """Ordered installments plus the loan figures they were computed from"""
    principal: Money
    annual_rate: Decimal
    term_months: int
    installments: List[Installment] = field(default_factory=list)

    @property
    def monthly_payment(self) -> Money:
        return self.installments[0].payment

    @property
    def total_payment(self) -> Money:
        total = Money.zero(self.principal.currency)
        for installment in self.installments:
            total = total + installment.payment
        return total

    @property
    def total_interest(self) -> Money:
        total = Money.zero(self.principal.currency)
        for installment in self.installments:
            total = total + installment.interest
        return total

    def __len__(self) -> int:
        return len(self.installments)

    def __iter__(self):
        return iter(self.installments)

    def __getitem__(self, position: int) -> Installment:
        return self.installments[position]


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate: Decimal) -> Decimal:
    return annual_rate / Decimal('12')


def annuity_payment(principal: Money, annual_rate: Decimal, term_months: int) -> Money:
    """
    Level monthly payment: P * r / (1 - (1 + r)^-n), rounded half-up.
    With a zero rate the payment is P / n, rounded half-up.
    """
    rate = monthly_rate(annual_rate)
    minor = Decimal(principal.minor_units)
    if rate == 0:
        payment = minor / Decimal(term_months)
    else:
        payment = minor * rate / (Decimal('1') - (Decimal('1') + rate) ** -term_months)
    return Money(round_minor(payment, RoundingRule.HALF_UP), principal.currency)


def compute_schedule(
    principal: Money,
    annual_rate: Union[Decimal, str],
    term_months: int,
    start_date: Optional[date] = None
) -> AmortizationSchedule:
    """
    Compute an equal-installment amortization schedule

    Args:
        principal: Amount borrowed
        annual_rate: Annual interest rate as a fraction (0.01 for 1%)
        term_months: Number of monthly installments
        start_date: Installment i falls due i months after this date; due
            dates are left empty when it is not given

    Returns:
        AmortizationSchedule whose principal portions sum to the principal
        and whose last remaining balance is zero

    Raises:
        InvalidLoanParameters: For a non-positive principal or term, or a
            negative, non-numeric or non-finite rate
    """
    if isinstance(annual_rate, float):
        raise InvalidLoanParameters("Floating point rates are not accepted")
    try:
        annual_rate = Decimal(str(annual_rate).strip())
    except InvalidOperation:
        raise InvalidLoanParameters(f"Interest rate {annual_rate!r} is not a number")
    if not annual_rate.is_finite():
        raise InvalidLoanParameters(f"Interest rate must be finite, got {annual_rate}")

    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        raise InvalidLoanParameters(f"Term must be a positive number of months, got {term_months}")
    if not principal.is_positive():
        raise InvalidLoanParameters(f"Principal must be positive, got {principal.to_string()}")
    if annual_rate < 0:
        raise InvalidLoanParameters(f"Interest rate cannot be negative, got {annual_rate}")

    rate = monthly_rate(annual_rate)
    payment = annuity_payment(principal, annual_rate, term_months)
    currency = principal.currency

    schedule = AmortizationSchedule(
        principal=principal, annual_rate=annual_rate, term_months=term_months
    )
    outstanding = principal

    for index in range(1, term_months + 1):
        interest = Money(round_minor(Decimal(outstanding.minor_units) * rate), currency)

        if index == term_months:
            # Final installment pays off exactly what is left
            principal_portion = outstanding
        else:
            principal_portion = min(payment - interest, outstanding)
            if principal_portion.is_negative():
                principal_portion = Money.zero(currency)

        outstanding = outstanding - principal_portion
        schedule.installments.append(Installment(
            index=index,
            due_date=add_months(start_date, index) if start_date else None,
            payment=principal_portion + interest,
            principal=principal_portion,
            interest=interest,
            remaining_balance=outstanding,
        ))

    return schedule
