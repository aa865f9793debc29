"""
Test suite for amortization schedules
"""

import pytest
from datetime import date
from decimal import Decimal

from union_ledger.currency import Money, Currency
from union_ledger.amortization import (
    add_months, annuity_payment, compute_schedule
)
from union_ledger.exceptions import InvalidLoanParameters


def gmd(minor_units):
    return Money(minor_units, Currency.GMD)


class TestAddMonths:
    """Calendar arithmetic for due dates"""

    def test_simple_offset(self):
        assert add_months(date(2025, 3, 15), 1) == date(2025, 4, 15)

    def test_year_rollover(self):
        assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)

    def test_month_end_is_clamped(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2025, 8, 31), 1) == date(2025, 9, 30)


class TestAnnuityPayment:
    """Level payment formula"""

    def test_zero_rate_is_even_split(self):
        assert annuity_payment(gmd(1200), Decimal("0"), 12) == gmd(100)
        assert annuity_payment(gmd(1000), Decimal("0"), 3) == gmd(333)

    def test_interest_raises_payment(self):
        payment = annuity_payment(gmd(100000), Decimal("0.01"), 12)
        assert gmd(8334) < payment < gmd(8400)


class TestComputeSchedule:
    """Full schedules"""

    def test_micro_interest_loan(self):
        schedule = compute_schedule(gmd(100000), Decimal("0.01"), 12)

        assert len(schedule) == 12
        assert [i.index for i in schedule] == list(range(1, 13))

        # The half-up level payment overshoots by under half a unit a month;
        # the final installment gives that drift back
        assert [i.payment.minor_units for i in schedule] == [8379] * 11 + [8375]

        principal_total = sum(i.principal.minor_units for i in schedule)
        assert principal_total == 100000
        assert schedule[-1].remaining_balance == gmd(0)

    def test_interest_accrues_on_outstanding_balance(self):
        schedule = compute_schedule(gmd(100000), Decimal("0.01"), 12)

        # 100000 * 0.01 / 12 = 83.33
        assert schedule[0].interest == gmd(83)
        assert schedule[0].remaining_balance == gmd(100000) - schedule[0].principal
        for before, after in zip(schedule.installments, schedule.installments[1:]):
            assert after.interest <= before.interest
            assert after.remaining_balance == before.remaining_balance - after.principal

    def test_totals(self):
        schedule = compute_schedule(gmd(100000), "0.01", 12)
        assert schedule.total_payment - schedule.total_interest == gmd(100000)
        assert schedule.total_interest.is_positive()

    def test_each_payment_is_principal_plus_interest(self):
        schedule = compute_schedule(gmd(2500000), Decimal("0.12"), 36)
        for installment in schedule:
            assert installment.payment == installment.principal + installment.interest
            assert not installment.principal.is_negative()

    def test_zero_rate_final_installment_absorbs_remainder(self):
        schedule = compute_schedule(gmd(1000), Decimal("0"), 3)
        assert [i.principal.minor_units for i in schedule] == [333, 333, 334]
        assert schedule.total_interest == gmd(0)

    def test_single_month_term(self):
        schedule = compute_schedule(gmd(100000), Decimal("0.12"), 1)
        assert len(schedule) == 1
        assert schedule[0].principal == gmd(100000)
        assert schedule[0].interest == gmd(1000)

    def test_tiny_principal_may_have_zero_installments(self):
        schedule = compute_schedule(gmd(1), Decimal("0.01"), 12)
        assert schedule[0].payment == gmd(0)
        assert schedule[-1].principal == gmd(1)
        assert schedule[-1].remaining_balance == gmd(0)

    def test_due_dates_follow_start_date(self):
        schedule = compute_schedule(gmd(100000), Decimal("0.01"), 3, start_date=date(2025, 1, 31))
        assert [i.due_date for i in schedule] == [
            date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)
        ]

    def test_due_dates_absent_without_start_date(self):
        schedule = compute_schedule(gmd(100000), Decimal("0.01"), 2)
        assert all(i.due_date is None for i in schedule)

    def test_installment_dict_round_trip(self):
        installment = compute_schedule(gmd(5000), "0.01", 2, start_date=date(2025, 6, 1))[0]
        assert type(installment).from_dict(installment.to_dict()) == installment

    @pytest.mark.parametrize("principal,rate,term", [
        (100000, Decimal("0.01"), 0),
        (100000, Decimal("0.01"), -3),
        (100000, Decimal("0.01"), True),
        (0, Decimal("0.01"), 12),
        (-100, Decimal("0.01"), 12),
        (100000, Decimal("-0.01"), 12),
        (100000, 0.01, 12),
    ])
    def test_invalid_parameters(self, principal, rate, term):
        with pytest.raises(InvalidLoanParameters):
            compute_schedule(gmd(principal), rate, term)

    @pytest.mark.parametrize("rate", ["abc", "", "NaN", "sNaN", "Infinity", "-Infinity"])
    def test_malformed_rates_rejected(self, rate):
        with pytest.raises(InvalidLoanParameters):
            compute_schedule(gmd(100000), rate, 12)
