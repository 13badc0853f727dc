"""
Lending policy values shared by the lifecycle services.

Built once from PeerFundConfig by the wiring layer; business code receives
the policy through its constructor and never reads configuration itself.
"""

from dataclasses import dataclass
from decimal import Decimal

from .fees import BANKING_FEE_RATE, PLATFORM_FEE_RATE
from .money import to_decimal


@dataclass(frozen=True)
class LendingPolicy:
    platform_fee_rate: Decimal = PLATFORM_FEE_RATE
    banking_fee_rate: Decimal = BANKING_FEE_RATE
    rate_spread_pct: Decimal = Decimal('2')
    min_loan_amount: Decimal = Decimal('1')
    max_loan_amount: Decimal = Decimal('250000')
    max_interest_rate: Decimal = Decimal('100')
    max_offer_message_length: int = 1000
    max_direct_request_months: int = 12
    platform_user_id: str = "peerfund-platform"

    @classmethod
    def from_config(cls, cfg) -> 'LendingPolicy':
        return cls(
            platform_fee_rate=to_decimal(cfg.platform_fee_rate),
            banking_fee_rate=to_decimal(cfg.banking_fee_rate),
            rate_spread_pct=to_decimal(cfg.term_rate_spread_pct),
            min_loan_amount=to_decimal(cfg.min_loan_amount),
            max_loan_amount=to_decimal(cfg.max_loan_amount),
            max_offer_message_length=cfg.max_offer_message_length,
            max_direct_request_months=cfg.max_direct_request_months,
            platform_user_id=cfg.platform_user_id,
        )
