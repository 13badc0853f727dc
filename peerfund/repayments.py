"""
Repayment Module

One settlement path for every way an installment gets paid: interactive
wallet or bank payments, the auto-repayment scheduler, and the gateway
webhook all end in ``RepaymentService.settle_repayment``.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import AuthorizationError, GatewayError, StateConflict, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload
from .fees import FeeBreakdown, compute_installment_fees
from .gateway import PaymentGateway, ensure_customer
from .lifecycle import LoanLifecycle, parse_amount
from .logging_config import log_action
from .models import Loan, LoanStatus, Repayment, RepaymentStatus, User, WalletEntryType
from .money import format_usd, round2, to_cents
from .policy import LendingPolicy
from .repositories import LoanRepository, RepaymentRepository
from .storage import StorageInterface
from .users import UserDirectory
from .wallet import WalletLedger


logger = logging.getLogger("peerfund.repayments")


class PaymentSource(Enum):
    """Where the money for a settlement came from"""
    WALLET = "wallet"    # borrower's internal wallet
    BANK = "bank"        # collected by the payment gateway
    AUTOPAY = "autopay"  # daily job, by gateway charge or from the wallet


class RepaymentService:
    """Quotes, collects and settles loan installments"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserDirectory,
        loans: LoanRepository,
        repayments: RepaymentRepository,
        wallet: WalletLedger,
        lifecycle: LoanLifecycle,
        dispatcher: EventDispatcher,
        gateway: Optional[PaymentGateway] = None,
        policy: Optional[LendingPolicy] = None
    ):
        self.storage = storage
        self.users = users
        self.loans = loans
        self.repayments = repayments
        self.wallet = wallet
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.gateway = gateway
        self.policy = policy or LendingPolicy()

    def breakdown_for(self, repayment: Repayment, borrower: User) -> FeeBreakdown:
        """
        Fee breakdown of an installment.

        Persisted values are trusted as-is; only missing ones are recomputed
        from the base payment.
        """
        stored = (repayment.base_payment, repayment.banking_fee,
                  repayment.peerfund_fee, repayment.total_charged)
        if all(value is not None for value in stored):
            base, banking_fee, peerfund_fee, total = stored
            return FeeBreakdown(
                base=base,
                platform_fee=peerfund_fee,
                banking_fee=banking_fee,
                total_fees=round2(banking_fee + peerfund_fee),
                total_charge=total,
            )
        base = repayment.base_payment if repayment.base_payment is not None else repayment.amount_due
        return compute_installment_fees(
            base, borrower.is_super_user,
            self.policy.platform_fee_rate, self.policy.banking_fee_rate
        )

    def quote_next(self, loan_id: str) -> Optional[Dict[str, Any]]:
        """Next PENDING installment of a loan and what it will cost, or None"""
        loan = self.loans.require(loan_id)
        repayment = self.repayments.next_pending(loan.id)
        if repayment is None:
            return None
        borrower = self.users.require(loan.borrower_id)
        fees = self.breakdown_for(repayment, borrower)
        return {
            'repayment_id': repayment.id,
            'loan_id': loan.id,
            'installment_number': repayment.installment_number,
            'due_date': repayment.due_date,
            'base_payment': fees.base,
            'peerfund_fee': fees.platform_fee,
            'banking_fee': fees.banking_fee,
            'total_charge': fees.total_charge,
            'platform_fee_waived': borrower.is_super_user,
        }

    def make_repayment(self, loan_id: str, borrower_id: str, amount: Any,
                       source: PaymentSource = PaymentSource.WALLET) -> Repayment:
        """
        Pay the next installment with a tendered amount.

        Args:
            loan_id: Loan being repaid
            borrower_id: Caller, must be the loan's borrower
            amount: Amount tendered in dollars
            source: Funding source for the settlement

        Returns:
            The settled Repayment

        Raises:
            ValidationError: Tendered amount is below the installment total
        """
        tendered = round2(parse_amount(amount, "Payment amount"))
        loan = self._require_borrower_loan(loan_id, borrower_id)
        repayment = self.repayments.next_pending(loan.id)
        if repayment is None:
            raise StateConflict("No pending repayments for this loan")

        borrower = self.users.require(loan.borrower_id)
        fees = self.breakdown_for(repayment, borrower)
        if tendered < fees.total_charge:
            raise ValidationError(
                f"Minimum payment is {format_usd(fees.total_charge)}. "
                f"Your payment: {format_usd(tendered)}"
            )
        return self.settle_repayment(repayment.id, source, amount_paid=tendered)

    def pay_next(self, loan_id: str, borrower_id: str, payment_source: str = "wallet") -> Repayment:
        """
        Pay the next installment in full.

        Wallet payments settle immediately. Bank payments charge the
        borrower's default payment method: a succeeded charge settles, a
        processing one is left PENDING for the webhook, anything else raises.
        """
        try:
            source = PaymentSource(payment_source)
        except ValueError:
            raise ValidationError("Payment source must be 'wallet' or 'bank'")
        if source == PaymentSource.AUTOPAY:
            raise ValidationError("Payment source must be 'wallet' or 'bank'")

        loan = self._require_borrower_loan(loan_id, borrower_id)
        repayment = self.repayments.next_pending(loan.id)
        if repayment is None:
            raise StateConflict("No pending repayments for this loan")
        if source == PaymentSource.WALLET:
            return self.settle_repayment(repayment.id, PaymentSource.WALLET)
        return self._charge_bank(loan, repayment)

    def collect_autopay(self, repayment_id: str, now: Optional[datetime] = None) -> Repayment:
        """
        Collect one due installment for the daily job.

        Borrowers with a default payment method are charged off-session
        through the gateway; everyone else pays from the wallet. A charge
        still processing leaves the row PENDING for the webhook.
        """
        repayment = self.repayments.require(repayment_id)
        loan = self.loans.require(repayment.loan_id)
        borrower = self.users.require(loan.borrower_id)
        if self.gateway is not None and borrower.default_payment_method_id:
            return self._charge_bank(loan, repayment, PaymentSource.AUTOPAY, now=now)
        return self.settle_repayment(repayment.id, PaymentSource.AUTOPAY, now=now)

    def _charge_bank(self, loan: Loan, repayment: Repayment,
                     source: PaymentSource = PaymentSource.BANK,
                     now: Optional[datetime] = None) -> Repayment:
        if self.gateway is None:
            raise GatewayError("No payment gateway configured")
        borrower = self.users.require(loan.borrower_id)
        if not borrower.default_payment_method_id:
            raise ValidationError("No payment method on file")

        fees = self.breakdown_for(repayment, borrower)
        customer_id = ensure_customer(self.gateway, self.users, borrower)
        charge = self.gateway.charge_off_session(
            customer_id=customer_id,
            payment_method_id=borrower.default_payment_method_id,
            amount_cents=fees.total_charge_cents,
            metadata={
                'loanId': loan.id,
                'repaymentId': repayment.id,
                'borrowerId': borrower.id,
                'source': source.value,
            },
            idempotency_key=f"repayment_{repayment.id}",
        )

        if charge.succeeded:
            return self.settle_repayment(repayment.id, source,
                                         amount_paid=fees.total_charge,
                                         payment_intent_id=charge.payment_intent_id, now=now)
        if charge.pending:
            with self.storage.atomic():
                row = self.repayments.require(repayment.id, for_update=True)
                row.payment_intent_id = charge.payment_intent_id
                row.failure_reason = None
                if source == PaymentSource.AUTOPAY:
                    row.autopay_attempted = True
                self.repayments.save(row)
            logger.info(f"Repayment {repayment.id} charge {charge.payment_intent_id} is processing")
            return row
        raise GatewayError(f"Payment {charge.status}", code=charge.status)

    def settle_repayment(
        self,
        repayment_id: str,
        source: PaymentSource,
        amount_paid=None,
        payment_intent_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Repayment:
        """
        Mark an installment PAID and move the money, all in one unit.

        The borrower is debited the full total when the source draws on the
        wallet; the lender is credited the base and the platform the fees
        (the platform-fee leg is absent for super-user borrowers). The loan
        becomes PAID_OFF once no PENDING installments remain. Fee and
        Transaction audit rows follow as a post-commit event.

        Args:
            repayment_id: Installment to settle
            source: Where the money came from
            amount_paid: Amount the borrower tendered, defaults to the installment total
            payment_intent_id: Gateway payment reference, if any
            now: Settlement time (UTC now when omitted)

        Returns:
            The PAID Repayment

        Raises:
            StateConflict: Installment already PAID or loan not FUNDED
            InsufficientFunds: Borrower wallet cannot cover the total
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            repayment = self.repayments.require(repayment_id, for_update=True)
            if repayment.status == RepaymentStatus.PAID:
                raise StateConflict("Repayment already paid")
            loan = self.loans.require(repayment.loan_id, for_update=True)
            if loan.status != LoanStatus.FUNDED:
                raise StateConflict(f"Loan is not active for repayment (status {loan.status.value})")

            borrower = self.users.require(loan.borrower_id)
            fees = self.breakdown_for(repayment, borrower)
            metadata = {'loanId': loan.id, 'repaymentId': repayment.id, 'source': source.value}

            # An AUTOPAY without a gateway payment draws on the wallet
            if source == PaymentSource.WALLET or (source == PaymentSource.AUTOPAY and not payment_intent_id):
                self.wallet.debit_wallet(
                    loan.borrower_id, fees.total_charge_cents, "REPAYMENT_DEBIT",
                    "Repayment", repayment.id, WalletEntryType.REPAYMENT, metadata
                )
            if fees.base > 0:
                self.wallet.credit_wallet(
                    loan.lender_id, to_cents(fees.base), "REPAYMENT_BASE",
                    "Repayment", repayment.id, WalletEntryType.REPAYMENT, metadata
                )

            fee_metadata = dict(metadata, bankingFeeCents=fees.banking_fee_cents)
            if fees.platform_fee > 0:
                fee_metadata['platformFeeCents'] = fees.platform_fee_cents
            fee_cents = fees.banking_fee_cents + fees.platform_fee_cents
            if fee_cents > 0:
                self.wallet.credit_platform(
                    fee_cents, "REPAYMENT_FEES", "Repayment", repayment.id,
                    WalletEntryType.FEE, fee_metadata
                )

            repayment.status = RepaymentStatus.PAID
            repayment.paid_at = now
            repayment.base_payment = fees.base
            repayment.banking_fee = fees.banking_fee
            repayment.peerfund_fee = fees.platform_fee
            repayment.total_charged = fees.total_charge
            repayment.amount_paid = round2(amount_paid) if amount_paid is not None else fees.total_charge
            repayment.payment_source = source.value
            repayment.failure_reason = None
            if payment_intent_id:
                repayment.payment_intent_id = payment_intent_id
            if source == PaymentSource.AUTOPAY:
                repayment.autopay_attempted = True
            self.repayments.save(repayment)

            self.lifecycle.mark_paid_off_if_complete(loan, now)

            self.dispatcher.publish_on_commit(self.storage, EventPayload(
                event_type=DomainEvent.REPAYMENT_SETTLED,
                entity_type="repayment",
                entity_id=repayment.id,
                data={
                    'loan_id': loan.id,
                    'installment_number': repayment.installment_number,
                    'base_payment': str(fees.base),
                    'banking_fee': str(fees.banking_fee),
                    'peerfund_fee': str(fees.platform_fee),
                    'total_charged': str(fees.total_charge),
                    'borrower_id': loan.borrower_id,
                    'lender_id': loan.lender_id,
                    'platform_user_id': self.wallet.platform_user_id,
                    'source': source.value,
                },
                user_id=loan.borrower_id,
            ))

        log_action(logger, "info", f"Repayment {repayment.id} settled",
                   user_id=loan.borrower_id, action="settle_repayment", resource=repayment.id,
                   extra={'loan_id': loan.id, 'source': source.value,
                          'total_cents': fees.total_charge_cents})
        return repayment

    def record_failure(self, repayment_id: str, reason: str, autopay: bool = False) -> None:
        """Note a failed collection attempt on a still-PENDING installment"""
        with self.storage.atomic():
            repayment = self.repayments.require(repayment_id, for_update=True)
            if repayment.status == RepaymentStatus.PAID:
                return
            repayment.failure_reason = reason
            if autopay:
                repayment.autopay_attempted = True
            self.repayments.save(repayment)

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Repayment]:
        matches = self.repayments.find(payment_intent_id=payment_intent_id)
        return matches[0] if matches else None

    def _require_borrower_loan(self, loan_id: str, borrower_id: str) -> Loan:
        loan = self.loans.require(loan_id)
        if loan.borrower_id != borrower_id:
            raise AuthorizationError("Only the borrower can repay this loan")
        return loan
