"""
Amortization Engine

Generates repayment schedules for a loan's principal, rate and term.
Two interest models coexist:

- TERM_ADD: total base = principal x (1 + rate/100), divided flat across
  the term. Used when an offer is accepted (with the rate spread added).
- ANNUITY: standard amortization, constant payment with a declining
  balance interest/principal split. Used by the standalone generator and
  the recalculation tool.

Each installment's base payment is run through the Fee Engine.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from .errors import ValidationError
from .fees import FeeBreakdown, compute_installment_fees
from .money import Number, round2, to_decimal, ZERO


class InterestModel(Enum):
    """Interest models supported by the schedule generator"""
    TERM_ADD = "term"
    ANNUITY = "apr"


@dataclass
class ScheduledInstallment:
    """Single installment in a generated schedule"""
    installment_number: int
    due_date: datetime
    base_payment: Decimal
    interest_portion: Decimal
    principal_portion: Decimal
    remaining_balance: Decimal
    fees: FeeBreakdown

    @property
    def banking_fee(self) -> Decimal:
        return self.fees.banking_fee

    @property
    def peerfund_fee(self) -> Decimal:
        return self.fees.platform_fee

    @property
    def total_charged(self) -> Decimal:
        return self.fees.total_charge


def add_months(start: Union[date, datetime], months: int) -> Union[date, datetime]:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _validate_terms(principal: Decimal, annual_rate_pct: Decimal, term_months: int) -> None:
    if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months < 1:
        raise ValidationError("Term must be at least 1 month")
    if principal < 0:
        raise ValidationError("Principal must not be negative")
    if annual_rate_pct < 0:
        raise ValidationError("Interest rate must not be negative")


def term_add_total(principal: Number, rate_pct: Number) -> Decimal:
    """Total base repayment under the term-add model"""
    return round2(to_decimal(principal) * (1 + to_decimal(rate_pct) / 100))


def annuity_payment(principal: Number, annual_rate_pct: Number, term_months: int) -> Decimal:
    """Constant monthly payment of a standard annuity; 0% falls back to principal/term"""
    p = to_decimal(principal)
    monthly_rate = to_decimal(annual_rate_pct) / 100 / 12
    if monthly_rate == 0:
        return round2(p / term_months)
    factor = (1 + monthly_rate) ** term_months
    return round2(p * monthly_rate * factor / (factor - 1))


def base_monthly_payment(principal: Number, annual_rate_pct: Number, term_months: int,
                         model: InterestModel = InterestModel.TERM_ADD,
                         spread_pct: Optional[Number] = None) -> Decimal:
    """
    Per-installment base payment for the given model.

    Args:
        principal: Loan principal in dollars
        annual_rate_pct: Annual rate in percent (e.g. 8 for 8%)
        term_months: Number of monthly installments
        model: Interest model
        spread_pct: Percentage points added to the rate (term-add only)

    Returns:
        Base payment rounded half-up to cents
    """
    p = to_decimal(principal)
    rate = to_decimal(annual_rate_pct)
    _validate_terms(p, rate, term_months)

    if model == InterestModel.TERM_ADD:
        effective = rate + (to_decimal(spread_pct) if spread_pct is not None else 0)
        return round2(term_add_total(p, effective) / term_months)
    return annuity_payment(p, rate, term_months)


def generate_schedule(
    principal: Number,
    annual_rate_pct: Number,
    term_months: int,
    model: InterestModel = InterestModel.ANNUITY,
    start: Optional[datetime] = None,
    borrower_is_super_user: bool = False,
    spread_pct: Optional[Number] = None,
    platform_rate: Optional[Number] = None,
    banking_rate: Optional[Number] = None
) -> List[ScheduledInstallment]:
    """
    Generate a monthly repayment schedule.

    Due dates are one calendar month apart, the first one month after
    ``start``, always computed from ``start`` so month-end days do not drift.

    Args:
        principal: Loan principal in dollars
        annual_rate_pct: Annual rate in percent
        term_months: Number of installments (>= 1)
        model: Interest model
        start: Acceptance/generation time, defaults to now (UTC)
        borrower_is_super_user: Waive the platform fee on every installment
        spread_pct: Rate spread for the term-add model
        platform_rate: Platform fee rate override
        banking_rate: Banking fee rate override

    Returns:
        List of ScheduledInstallment ordered by installment number

    Raises:
        ValidationError: If term < 1 or principal/rate are negative
    """
    p = to_decimal(principal)
    rate = to_decimal(annual_rate_pct)
    _validate_terms(p, rate, term_months)

    start = start or datetime.now(timezone.utc)
    payment = base_monthly_payment(p, rate, term_months, model, spread_pct)
    fees = compute_installment_fees(payment, borrower_is_super_user, platform_rate, banking_rate)

    schedule = []
    if model == InterestModel.TERM_ADD:
        effective = rate + (to_decimal(spread_pct) if spread_pct is not None else 0)
        total_base = term_add_total(p, effective)
        interest_each = round2((total_base - round2(p)) / term_months)
        remaining = total_base
        for number in range(1, term_months + 1):
            remaining = max(round2(remaining - payment), ZERO)
            schedule.append(ScheduledInstallment(
                installment_number=number,
                due_date=add_months(start, number),
                base_payment=payment,
                interest_portion=interest_each,
                principal_portion=round2(payment - interest_each),
                remaining_balance=remaining,
                fees=fees,
            ))
        return schedule

    monthly_rate = rate / 100 / 12
    balance = round2(p)
    for number in range(1, term_months + 1):
        interest = round2(balance * monthly_rate)
        principal_part = round2(payment - interest)
        if number == term_months or principal_part > balance:
            principal_part = balance
        balance = max(round2(balance - principal_part), ZERO)
        schedule.append(ScheduledInstallment(
            installment_number=number,
            due_date=add_months(start, number),
            base_payment=payment,
            interest_portion=interest,
            principal_portion=principal_part,
            remaining_balance=balance,
            fees=fees,
        ))
    return schedule
