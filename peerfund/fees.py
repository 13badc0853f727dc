"""
Fee Engine

Pure functions computing the platform (PeerFund) fee and the banking fee
from a base amount. Rounding is half-up to cents at every stage, so a
persisted breakdown always matches a recomputation on the same base.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from .money import Number, round2, to_cents, to_decimal, ZERO


PLATFORM_FEE_RATE = Decimal('0.02')
BANKING_FEE_RATE = Decimal('0.05')


@dataclass(frozen=True)
class FeeBreakdown:
    """Fees for one base amount, all values in dollars"""
    base: Decimal
    platform_fee: Decimal
    banking_fee: Decimal
    total_fees: Decimal
    total_charge: Decimal

    @property
    def platform_fee_cents(self) -> int:
        return to_cents(self.platform_fee)

    @property
    def banking_fee_cents(self) -> int:
        return to_cents(self.banking_fee)

    @property
    def total_fees_cents(self) -> int:
        return to_cents(self.total_fees)

    @property
    def total_charge_cents(self) -> int:
        return to_cents(self.total_charge)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'base': str(self.base),
            'platform_fee': str(self.platform_fee),
            'banking_fee': str(self.banking_fee),
            'total_fees': str(self.total_fees),
            'total_charge': str(self.total_charge),
        }


@dataclass(frozen=True)
class DisbursementFees:
    """Upfront fees withheld from a gateway disbursement"""
    principal_cents: int
    platform_fee_cents: int
    banking_fee_cents: int

    @property
    def fee_cents(self) -> int:
        return self.platform_fee_cents + self.banking_fee_cents

    @property
    def net_cents(self) -> int:
        return self.principal_cents - self.fee_cents


def _rate(value: Optional[Number], default: Decimal) -> Decimal:
    return default if value is None else to_decimal(value)


def compute_fees(base: Number, platform_rate: Optional[Number] = None,
                 banking_rate: Optional[Number] = None) -> FeeBreakdown:
    """
    Compute the fee breakdown for a base amount.

    Args:
        base: Base payment in dollars (callers validate base >= 0)
        platform_rate: Override for the platform fee rate
        banking_rate: Override for the banking fee rate

    Returns:
        FeeBreakdown with every stage rounded half-up to cents
    """
    base_amount = round2(base)
    platform_fee = round2(base_amount * _rate(platform_rate, PLATFORM_FEE_RATE))
    banking_fee = round2(base_amount * _rate(banking_rate, BANKING_FEE_RATE))
    total_fees = round2(platform_fee + banking_fee)
    total_charge = round2(base_amount + total_fees)
    return FeeBreakdown(base_amount, platform_fee, banking_fee, total_fees, total_charge)


def waive_platform_fee(fees: FeeBreakdown) -> FeeBreakdown:
    """Drop the platform fee and recompute totals; the banking fee stays"""
    total_fees = round2(fees.banking_fee)
    return FeeBreakdown(
        base=fees.base,
        platform_fee=ZERO,
        banking_fee=fees.banking_fee,
        total_fees=total_fees,
        total_charge=round2(fees.base + total_fees),
    )


def compute_installment_fees(base: Number, borrower_is_super_user: bool = False,
                             platform_rate: Optional[Number] = None,
                             banking_rate: Optional[Number] = None) -> FeeBreakdown:
    """Fees for one repayment installment with the super-user borrower waiver applied"""
    fees = compute_fees(base, platform_rate, banking_rate)
    if borrower_is_super_user:
        return waive_platform_fee(fees)
    return fees


def compute_disbursement_platform_fee_cents(base: Number, borrower_is_super_user: bool,
                                            lender_is_super_user: bool,
                                            platform_rate: Optional[Number] = None) -> int:
    """
    Platform fee charged against a principal at disbursement time.

    A super-user borrower waives the fee entirely; otherwise a super-user
    lender halves it. Returned in integer cents.
    """
    if borrower_is_super_user:
        return 0
    platform_fee = compute_fees(base, platform_rate).platform_fee
    if lender_is_super_user:
        platform_fee = platform_fee * Decimal('0.5')
    return int((platform_fee * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def compute_disbursement_fees(principal_cents: int, borrower_is_super_user: bool = False,
                              lender_is_super_user: bool = False,
                              platform_rate: Optional[Number] = None,
                              banking_rate: Optional[Number] = None) -> DisbursementFees:
    """Split the upfront disbursement fees for a principal given in cents"""
    base = Decimal(principal_cents) / 100
    banking_fee = compute_fees(base, platform_rate, banking_rate).banking_fee
    return DisbursementFees(
        principal_cents=principal_cents,
        platform_fee_cents=compute_disbursement_platform_fee_cents(
            base, borrower_is_super_user, lender_is_super_user, platform_rate
        ),
        banking_fee_cents=to_cents(banking_fee),
    )
