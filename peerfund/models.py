"""
Domain Records

Dataclasses for every record the lending core persists. Dollar amounts are
Decimal (stored as strings); wallet balances are integer cents.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from .money import ZERO, from_cents
from .storage import StorageRecord


def record_stamp(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Fresh id and timestamps for a new record"""
    now = now or datetime.now(timezone.utc)
    return {'id': str(uuid.uuid4()), 'created_at': now, 'updated_at': now}


class UserRole(Enum):
    BORROWER = "BORROWER"
    LENDER = "LENDER"
    ADMIN = "ADMIN"
    SUPERUSER = "SUPERUSER"


@dataclass
class User(StorageRecord):
    """Identity view read by the lending core"""
    name: str
    email: str
    role: UserRole = UserRole.BORROWER
    is_super_user: bool = False
    # Amount key -> {"enabled": bool, "rate": number}
    lending_terms: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    gateway_customer_id: Optional[str] = None
    payout_account_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    super_user_since: Optional[datetime] = None


class LoanRequestStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


@dataclass
class LoanRequest(StorageRecord):
    """Borrower's ask on the open marketplace"""
    borrower_id: str
    amount: Decimal
    duration: int
    interest_rate: Decimal
    purpose: str = ""
    status: LoanRequestStatus = LoanRequestStatus.OPEN
    offer_accepted: bool = False


class OfferStatus(Enum):
    OPEN = "OPEN"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class LoanOffer(StorageRecord):
    """Lender's proposed terms against a loan request"""
    loan_request_id: str
    lender_id: str
    amount: Decimal
    duration: int
    interest_rate: Decimal
    message: str = ""
    status: OfferStatus = OfferStatus.OPEN
    accepted_at: Optional[datetime] = None


class DirectRequestStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"


@dataclass
class DirectLoanRequest(StorageRecord):
    """Borrower-initiated request targeted at one lender"""
    borrower_id: str
    lender_id: str
    amount: Decimal
    months: int
    apr: Decimal
    notes: str = ""
    status: DirectRequestStatus = DirectRequestStatus.PENDING
    loan_id: Optional[str] = None
    last_countered_by: Optional[str] = None
    decided_at: Optional[datetime] = None


class LoanStatus(Enum):
    ACCEPTED = "ACCEPTED"
    PROCESSING = "PROCESSING"
    FUNDED = "FUNDED"
    FAILED = "FAILED"
    PAID_OFF = "PAID_OFF"


@dataclass
class Loan(StorageRecord):
    """
    Funded or funding contract.

    ``principal_cents`` and ``interest_rate_bps`` are canonical; ``amount``
    and ``interest_rate`` are dollar/percent mirrors kept for readers of the
    legacy fields. Both rates are the offer's base rate; the schedule was
    built with ``interest_rate + rate_spread``.
    """
    borrower_id: str
    lender_id: str
    principal_cents: int
    interest_rate_bps: int
    term_months: int
    amount: Decimal
    interest_rate: Decimal
    status: LoanStatus = LoanStatus.ACCEPTED
    rate_spread: Decimal = ZERO
    loan_request_id: Optional[str] = None
    offer_id: Optional[str] = None
    direct_request_id: Optional[str] = None
    disbursed_amount: Decimal = ZERO
    funding_source: Optional[str] = None  # wallet, gateway_transfer or bank_charge
    platform_fee_cents: int = 0
    transfer_id: Optional[str] = None
    transfer_group: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    funded_at: Optional[datetime] = None
    paid_off_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def principal(self) -> Decimal:
        return from_cents(self.principal_cents)

    @property
    def interest_rate_pct(self) -> Decimal:
        return Decimal(self.interest_rate_bps) / 100


class RepaymentStatus(Enum):
    PENDING = "PENDING"
    PAID = "PAID"


@dataclass
class Repayment(StorageRecord):
    """
    One installment. Once PAID, the stored fee breakdown is what was
    charged and is never recomputed.
    """
    loan_id: str
    installment_number: int
    due_date: datetime
    base_payment: Decimal
    banking_fee: Decimal
    peerfund_fee: Decimal
    total_charged: Decimal
    amount_due: Decimal
    amount_paid: Decimal = ZERO
    status: RepaymentStatus = RepaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    payment_source: Optional[str] = None
    payment_intent_id: Optional[str] = None
    autopay_attempted: bool = False
    failure_reason: Optional[str] = None


@dataclass
class Wallet(StorageRecord):
    """Per-user cent balances; ``version`` guards compare-and-swap writes"""
    user_id: str
    available_cents: int = 0
    pending_cents: int = 0
    version: int = 0
    last_sequence: int = 0


class WalletEntryType(Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    DISBURSE = "DISBURSE"
    REPAYMENT = "REPAYMENT"
    FEE = "FEE"
    ADJUSTMENT = "ADJUSTMENT"


class EntryDirection(Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


@dataclass
class WalletLedgerEntry(StorageRecord):
    """Immutable record of one credit or debit against a wallet"""
    wallet_id: str
    user_id: str
    sequence: int
    entry_type: WalletEntryType
    amount_cents: int
    direction: EntryDirection
    balance_after_cents: int
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def signed_amount_cents(self) -> int:
        if self.direction == EntryDirection.CREDIT:
            return self.amount_cents
        return -self.amount_cents


class TransactionType(Enum):
    REPAYMENT = "REPAYMENT"
    BANK_FEE = "BANK_FEE"
    PLATFORM_FEE = "PLATFORM_FEE"
    DISBURSEMENT = "DISBURSEMENT"
    SUPERUSER_SUBSCRIPTION = "SUPERUSER_SUBSCRIPTION"
    ADMIN_FEE = "ADMIN_FEE"


@dataclass
class Transaction(StorageRecord):
    """Reporting view of a money movement between two parties"""
    transaction_type: TransactionType
    amount: Decimal
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    peerfund_fee: Decimal = ZERO
    banking_fee: Decimal = ZERO
    loan_id: Optional[str] = None
    repayment_id: Optional[str] = None
    description: Optional[str] = None


class FeeType(Enum):
    BANK_FEE = "BANK_FEE"
    PLATFORM_FEE = "PLATFORM_FEE"


@dataclass
class Fee(StorageRecord):
    """Write-only audit row per fee charged"""
    fee_type: FeeType
    amount: Decimal
    loan_id: Optional[str] = None
    repayment_id: Optional[str] = None


@dataclass
class Document(StorageRecord):
    """Generated document, e.g. the loan contract"""
    user_id: str
    doc_type: str
    title: str
    file_name: str
    content: str
    mime_type: str = "text/plain"
    loan_id: Optional[str] = None


@dataclass
class Notification(StorageRecord):
    user_id: str
    notification_type: str
    message: str
    read: bool = False


@dataclass
class ProcessedWebhookEvent(StorageRecord):
    """Gateway event id that has already been applied"""
    event_type: str
