"""
Test suite for the amortization engine
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from peerfund.amortization import (
    InterestModel, add_months, annuity_payment, base_monthly_payment,
    generate_schedule, term_add_total
)
from peerfund.errors import ValidationError


START = datetime(2025, 1, 15, tzinfo=timezone.utc)


class TestTermAdd:
    """Test the flat term-add interest model"""

    def test_round_trip_total(self):
        schedule = generate_schedule(Decimal('1200'), Decimal('10'), 12,
                                     model=InterestModel.TERM_ADD, start=START)
        assert len(schedule) == 12
        total = sum(item.base_payment for item in schedule)
        assert abs(total - Decimal('1320')) <= Decimal('0.01') * 12
        assert schedule[-1].remaining_balance == Decimal('0.00')

    def test_spread_is_added_to_rate(self):
        # $500 at 8% + 2 spread over 6 months: 550 / 6 = 91.67
        assert term_add_total(Decimal('500'), Decimal('10')) == Decimal('550.00')
        payment = base_monthly_payment(Decimal('500'), Decimal('8'), 6,
                                       InterestModel.TERM_ADD, spread_pct=Decimal('2'))
        assert payment == Decimal('91.67')

    def test_installment_fees(self):
        schedule = generate_schedule(Decimal('500'), Decimal('8'), 6, model=InterestModel.TERM_ADD,
                                     start=START, spread_pct=2)
        first = schedule[0]
        assert first.base_payment == Decimal('91.67')
        assert first.peerfund_fee == Decimal('1.83')
        assert first.banking_fee == Decimal('4.58')
        assert first.total_charged == Decimal('98.08')

    def test_super_user_waiver(self):
        schedule = generate_schedule(Decimal('500'), Decimal('8'), 6, model=InterestModel.TERM_ADD,
                                     start=START, spread_pct=2, borrower_is_super_user=True)
        assert all(item.peerfund_fee == Decimal('0') for item in schedule)
        assert schedule[0].total_charged == Decimal('96.25')


class TestAnnuity:
    """Test standard amortization"""

    def test_payment_formula(self):
        assert annuity_payment(Decimal('1200'), Decimal('10'), 12) == Decimal('105.50')

    def test_zero_rate_splits_principal(self):
        assert annuity_payment(Decimal('1200'), Decimal('0'), 12) == Decimal('100.00')
        schedule = generate_schedule(Decimal('1200'), Decimal('0'), 12, start=START)
        assert all(item.interest_portion == Decimal('0.00') for item in schedule)

    def test_principal_portions_sum_to_principal(self):
        schedule = generate_schedule(Decimal('1200'), Decimal('10'), 12, start=START)
        assert sum(item.principal_portion for item in schedule) == Decimal('1200.00')
        assert schedule[-1].remaining_balance == Decimal('0.00')

    def test_interest_declines(self):
        schedule = generate_schedule(Decimal('5000'), Decimal('12'), 24, start=START)
        interest = [item.interest_portion for item in schedule]
        assert interest == sorted(interest, reverse=True)
        assert interest[0] == Decimal('50.00')


class TestDueDates:
    """Test due date generation"""

    def test_monthly_from_start(self):
        schedule = generate_schedule(Decimal('600'), Decimal('5'), 3, start=START)
        assert [item.due_date for item in schedule] == [
            datetime(2025, 2, 15, tzinfo=timezone.utc),
            datetime(2025, 3, 15, tzinfo=timezone.utc),
            datetime(2025, 4, 15, tzinfo=timezone.utc),
        ]
        assert [item.installment_number for item in schedule] == [1, 2, 3]

    def test_month_end_clamps_without_drift(self):
        start = datetime(2025, 1, 31, tzinfo=timezone.utc)
        assert add_months(start, 1).day == 28
        assert add_months(start, 2).day == 31
        assert add_months(start, 3).day == 30

    def test_year_rollover(self):
        assert add_months(datetime(2025, 11, 10), 3) == datetime(2026, 2, 10)


class TestValidation:
    """Test input validation"""

    def test_zero_term_rejected(self):
        with pytest.raises(ValidationError, match="at least 1 month"):
            generate_schedule(Decimal('100'), Decimal('5'), 0)

    def test_negative_principal_rejected(self):
        with pytest.raises(ValidationError, match="Principal"):
            generate_schedule(Decimal('-1'), Decimal('5'), 6)

    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError, match="Interest rate"):
            base_monthly_payment(Decimal('100'), Decimal('-5'), 6)
