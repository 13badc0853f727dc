"""
Loan Lifecycle Module

Marketplace requests and offers, offer acceptance, and loan funding.

Loan states move through an explicit transition table:

    ACCEPTED -> PROCESSING -> FUNDED -> PAID_OFF
    ACCEPTED -> FUNDED                 (internal wallet funding)
    ACCEPTED/PROCESSING -> FAILED      (gateway rejection)

Every multi-record change runs inside one ``storage.atomic()`` unit; side
effects that may fail independently (audit rows) are published as domain
events after the unit commits.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .amortization import InterestModel, generate_schedule
from .documents import ContractService
from .errors import (
    AuthorizationError, GatewayError, GatewayTimeout, StateConflict, ValidationError
)
from .events import DomainEvent, EventDispatcher, EventPayload
from .fees import compute_disbursement_fees, compute_disbursement_platform_fee_cents
from .gateway import PaymentGateway, ensure_customer, ensure_payout_account
from .logging_config import log_action
from .models import (
    Loan, LoanOffer, LoanRequest, LoanRequestStatus, LoanStatus, OfferStatus,
    Repayment, User, WalletEntryType, record_stamp
)
from .money import from_cents, round2, to_cents, to_decimal
from .policy import LendingPolicy
from .repositories import (
    LoanOfferRepository, LoanRepository, LoanRequestRepository, RepaymentRepository
)
from .storage import StorageInterface
from .users import UserDirectory
from .wallet import WalletLedger


logger = logging.getLogger("peerfund.lifecycle")


ALLOWED_TRANSITIONS = {
    LoanStatus.ACCEPTED: {LoanStatus.PROCESSING, LoanStatus.FUNDED, LoanStatus.FAILED},
    LoanStatus.PROCESSING: {LoanStatus.FUNDED, LoanStatus.FAILED},
    LoanStatus.FUNDED: {LoanStatus.PAID_OFF},
    LoanStatus.FAILED: set(),
    LoanStatus.PAID_OFF: set(),
}

FUNDING_WALLET = "wallet"
FUNDING_GATEWAY_TRANSFER = "gateway_transfer"
FUNDING_BANK_CHARGE = "bank_charge"


def transfer_group_for(loan_id: str) -> str:
    return f"loan_{loan_id}"


def parse_amount(value: Any, field_name: str = "Amount") -> Decimal:
    """Parse a caller-supplied number into a Decimal or raise ValidationError"""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required")
    try:
        parsed = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number")
    if not parsed.is_finite():
        raise ValidationError(f"{field_name} must be a number")
    return parsed


def parse_months(value: Any, field_name: str = "Duration") -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a positive whole number of months")
    try:
        months = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a positive whole number of months")
    if months != value and str(months) != str(value).strip():
        raise ValidationError(f"{field_name} must be a positive whole number of months")
    if months < 1:
        raise ValidationError(f"{field_name} must be a positive whole number of months")
    return months


class LoanLifecycle:
    """
    Loan request marketplace and loan state machine.

    Collaborators are injected; the class never reads configuration.
    """

    def __init__(
        self,
        storage: StorageInterface,
        users: UserDirectory,
        loan_requests: LoanRequestRepository,
        offers: LoanOfferRepository,
        loans: LoanRepository,
        repayments: RepaymentRepository,
        wallet: WalletLedger,
        contracts: ContractService,
        dispatcher: EventDispatcher,
        gateway: Optional[PaymentGateway] = None,
        policy: Optional[LendingPolicy] = None
    ):
        self.storage = storage
        self.users = users
        self.loan_requests = loan_requests
        self.offers = offers
        self.loans = loans
        self.repayments = repayments
        self.wallet = wallet
        self.contracts = contracts
        self.dispatcher = dispatcher
        self.gateway = gateway
        self.policy = policy or LendingPolicy()

    # ------------------------------------------------------------------
    # Validation

    def validate_amount(self, value: Any) -> Decimal:
        amount = parse_amount(value, "Amount")
        if amount < self.policy.min_loan_amount or amount > self.policy.max_loan_amount:
            raise ValidationError(
                f"Amount must be between {self.policy.min_loan_amount} "
                f"and {self.policy.max_loan_amount}"
            )
        return round2(amount)

    def validate_rate(self, value: Any) -> Decimal:
        rate = parse_amount(value, "Interest rate")
        if rate < 0 or rate > self.policy.max_interest_rate:
            raise ValidationError(f"Interest rate must be between 0 and {self.policy.max_interest_rate}")
        return rate

    # ------------------------------------------------------------------
    # Marketplace

    def create_loan_request(self, borrower_id: str, amount: Any, duration: Any,
                            interest_rate: Any, purpose: str = "") -> LoanRequest:
        """
        Post a loan request to the marketplace.

        Args:
            borrower_id: Requesting borrower
            amount: Requested principal in dollars
            duration: Term in months
            interest_rate: Rate the borrower asks for, in percent
            purpose: Free-text purpose

        Returns:
            The created LoanRequest (OPEN)
        """
        self.users.require(borrower_id)
        request = LoanRequest(
            borrower_id=borrower_id,
            amount=self.validate_amount(amount),
            duration=parse_months(duration),
            interest_rate=self.validate_rate(interest_rate),
            purpose=(purpose or "").strip(),
            **record_stamp()
        )
        with self.storage.atomic():
            self.loan_requests.save(request)
            self._publish(DomainEvent.LOAN_REQUEST_CREATED, "loan_request", request.id, {
                'amount': str(request.amount),
                'duration': request.duration,
                'interest_rate': str(request.interest_rate),
            }, user_id=borrower_id)
        logger.info(f"Loan request {request.id} created by {borrower_id}")
        return request

    def update_loan_request(self, request_id: str, borrower_id: str, amount: Any = None,
                            duration: Any = None, interest_rate: Any = None,
                            purpose: Optional[str] = None) -> LoanRequest:
        """Edit an OPEN request; only its borrower may do so"""
        with self.storage.atomic():
            request = self.loan_requests.require(request_id, for_update=True)
            if request.borrower_id != borrower_id:
                raise AuthorizationError("Only the borrower can edit this request")
            if request.status != LoanRequestStatus.OPEN:
                raise StateConflict("Loan request is not open")
            if amount is not None:
                request.amount = self.validate_amount(amount)
            if duration is not None:
                request.duration = parse_months(duration)
            if interest_rate is not None:
                request.interest_rate = self.validate_rate(interest_rate)
            if purpose is not None:
                request.purpose = purpose.strip()
            return self.loan_requests.save(request)

    def get_loan_request(self, request_id: str) -> LoanRequest:
        return self.loan_requests.require(request_id)

    def list_open_requests(self) -> List[LoanRequest]:
        requests = self.loan_requests.find(status=LoanRequestStatus.OPEN.value)
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    def submit_offer(self, loan_request_id: str, lender_id: str, interest_rate: Any,
                     message: str = "") -> LoanOffer:
        """
        Submit a lender's offer against an OPEN request.

        Amount and duration are copied from the request; the message is
        truncated to the configured maximum length.
        """
        rate = self.validate_rate(interest_rate)
        self.users.require(lender_id)
        with self.storage.atomic():
            request = self.loan_requests.require(loan_request_id)
            if request.status != LoanRequestStatus.OPEN:
                raise StateConflict("Loan request is not open")
            if request.borrower_id == lender_id:
                raise AuthorizationError("You cannot make an offer on your own request")

            offer = LoanOffer(
                loan_request_id=request.id,
                lender_id=lender_id,
                amount=request.amount,
                duration=request.duration,
                interest_rate=rate,
                message=(message or "")[:self.policy.max_offer_message_length],
                **record_stamp()
            )
            self.offers.save(offer)
            self._publish(DomainEvent.OFFER_SUBMITTED, "loan_offer", offer.id, {
                'loan_request_id': request.id,
                'interest_rate': str(rate),
            }, user_id=lender_id)
        return offer

    def list_offers(self, loan_request_id: str) -> List[LoanOffer]:
        return self.offers.for_request(loan_request_id)

    def accept_offer(self, offer_id: str, borrower_id: str,
                     now: Optional[datetime] = None) -> Loan:
        """
        Accept an offer and originate the loan.

        Offer acceptance, sibling rejection, request closure, the loan, its
        full repayment schedule and the contract document are written in
        one unit; any failure leaves none of them behind.

        Args:
            offer_id: Offer being accepted
            borrower_id: Caller, must own the underlying request
            now: Acceptance time (UTC now when omitted)

        Returns:
            The new Loan in ACCEPTED state

        Raises:
            AuthorizationError: Caller is not the request's borrower
            StateConflict: Request or offer no longer open, or already accepted
            ValidationError: Offer amount is not positive
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            offer = self.offers.require(offer_id, for_update=True)
            request = self.loan_requests.require(offer.loan_request_id, for_update=True)

            if request.borrower_id != borrower_id:
                raise AuthorizationError("Not authorized to accept this offer")
            if request.status != LoanRequestStatus.OPEN:
                raise StateConflict("Loan request is not open")
            if offer.status != OfferStatus.OPEN:
                raise StateConflict("Offer is not open")
            if offer.amount is None or offer.amount <= 0:
                raise ValidationError("Offer has invalid amount")
            if self.loans.find_by_request(request.id) is not None:
                raise StateConflict("Loan already accepted for this request")

            offer.status = OfferStatus.ACCEPTED
            offer.accepted_at = now
            self.offers.save(offer)

            for sibling in self.offers.find(loan_request_id=request.id,
                                            status=OfferStatus.OPEN.value):
                if sibling.id != offer.id:
                    sibling.status = OfferStatus.REJECTED
                    self.offers.save(sibling)

            request.status = LoanRequestStatus.CLOSED
            request.offer_accepted = True
            self.loan_requests.save(request)

            loan = self.originate_loan(
                borrower_id=request.borrower_id,
                lender_id=offer.lender_id,
                amount=offer.amount,
                term_months=offer.duration,
                interest_rate=offer.interest_rate,
                now=now,
                loan_request_id=request.id,
                offer_id=offer.id,
            )

        log_action(logger, "info", f"Offer {offer.id} accepted, loan {loan.id} created",
                   user_id=borrower_id, action="accept_offer", resource=loan.id)
        return loan

    def originate_loan(self, borrower_id: str, lender_id: str, amount: Decimal,
                       term_months: int, interest_rate: Decimal, now: datetime,
                       loan_request_id: Optional[str] = None, offer_id: Optional[str] = None,
                       direct_request_id: Optional[str] = None) -> Loan:
        """
        Create an ACCEPTED loan with its term-add schedule and contract.

        Must run inside the caller's unit of work.
        """
        borrower = self.users.require(borrower_id)
        lender = self.users.require(lender_id)
        amount = round2(amount)
        rate = to_decimal(interest_rate)

        loan = Loan(
            borrower_id=borrower_id,
            lender_id=lender_id,
            principal_cents=to_cents(amount),
            interest_rate_bps=to_cents(rate),
            term_months=term_months,
            amount=amount,
            interest_rate=rate,
            rate_spread=self.policy.rate_spread_pct,
            loan_request_id=loan_request_id,
            offer_id=offer_id,
            direct_request_id=direct_request_id,
            **record_stamp(now)
        )
        self.loans.save(loan)
        self._create_schedule(loan, borrower, now)
        self.contracts.create_contract(loan, borrower, lender, now)

        self._publish(DomainEvent.LOAN_ACCEPTED, "loan", loan.id, {
            'borrower_id': borrower_id,
            'lender_id': lender_id,
            'principal_cents': loan.principal_cents,
            'term_months': term_months,
            'interest_rate': str(rate),
        }, user_id=borrower_id)
        return loan

    def _create_schedule(self, loan: Loan, borrower: User, start: datetime) -> List[Repayment]:
        schedule = generate_schedule(
            loan.amount,
            loan.interest_rate,
            loan.term_months,
            model=InterestModel.TERM_ADD,
            start=start,
            borrower_is_super_user=borrower.is_super_user,
            spread_pct=loan.rate_spread,
            platform_rate=self.policy.platform_fee_rate,
            banking_rate=self.policy.banking_fee_rate,
        )
        rows = []
        for installment in schedule:
            row = Repayment(
                loan_id=loan.id,
                installment_number=installment.installment_number,
                due_date=installment.due_date,
                base_payment=installment.base_payment,
                banking_fee=installment.banking_fee,
                peerfund_fee=installment.peerfund_fee,
                total_charged=installment.total_charged,
                amount_due=installment.total_charged,
                **record_stamp(start)
            )
            self.repayments.save(row)
            rows.append(row)
        return rows

    # ------------------------------------------------------------------
    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.require(loan_id)

    def list_loans_for_user(self, user_id: str) -> List[Loan]:
        return self.loans.for_user(user_id)

    def get_schedule(self, loan_id: str) -> List[Repayment]:
        self.loans.require(loan_id)
        return self.repayments.for_loan(loan_id)

    # ------------------------------------------------------------------
    # Funding

    def fund_from_wallet(self, loan_id: str, lender_id: str,
                         now: Optional[datetime] = None) -> Loan:
        """
        Fund an ACCEPTED loan from the lender's wallet.

        Lender debit, borrower credit and the FUNDED flip commit together;
        InsufficientFunds rolls the whole unit back.

        Raises:
            AuthorizationError: Caller is not the loan's lender
            StateConflict: Loan already funded or not in ACCEPTED state
            InsufficientFunds: Lender wallet cannot cover the principal
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            if loan.lender_id != lender_id:
                raise AuthorizationError("Only the lender can fund this loan")
            if loan.status == LoanStatus.FUNDED:
                raise StateConflict("Loan already funded")
            if loan.status != LoanStatus.ACCEPTED:
                raise StateConflict(f"Loan cannot be funded from status {loan.status.value}")

            metadata = {'loanId': loan.id, 'borrowerId': loan.borrower_id, 'lenderId': loan.lender_id}
            self.wallet.debit_wallet(
                loan.lender_id, loan.principal_cents, "LOAN_FUNDED_LENDER_DEBIT",
                "Loan", loan.id, WalletEntryType.DISBURSE, metadata
            )
            self.wallet.credit_wallet(
                loan.borrower_id, loan.principal_cents, "LOAN_FUNDED_BORROWER_CREDIT",
                "Loan", loan.id, WalletEntryType.DISBURSE, metadata
            )

            self._transition(loan, LoanStatus.FUNDED)
            loan.disbursed_amount = loan.principal
            loan.funding_source = FUNDING_WALLET
            loan.funded_at = now
            self.loans.save(loan)
            self._publish_funded(loan, peerfund_fee=Decimal('0'), banking_fee=Decimal('0'))

        log_action(logger, "info", f"Loan {loan.id} funded from wallet",
                   user_id=lender_id, action="fund_from_wallet", resource=loan.id,
                   extra={'principal_cents': loan.principal_cents})
        return loan

    def disburse_via_gateway(self, loan_id: str) -> Loan:
        """
        Disburse an ACCEPTED loan to the borrower's payout account.

        The loan is marked PROCESSING before the transfer is requested. A
        timeout leaves it PROCESSING for the webhook to resolve; any other
        gateway error marks it FAILED. Both re-raise.

        Returns:
            The loan, still PROCESSING, with ``transfer_id`` recorded
        """
        gateway = self._require_gateway()
        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            if loan.status != LoanStatus.ACCEPTED:
                raise StateConflict(f"Loan cannot be disbursed from status {loan.status.value}")
            borrower = self.users.require(loan.borrower_id)
            lender = self.users.require(loan.lender_id)
            if not borrower.payout_account_id:
                raise ValidationError("Borrower has no payout account")

            fees = compute_disbursement_fees(
                loan.principal_cents, borrower.is_super_user, lender.is_super_user,
                self.policy.platform_fee_rate, self.policy.banking_fee_rate
            )
            if fees.net_cents <= 0:
                raise ValidationError("Net amount after fees must be positive")

            self._transition(loan, LoanStatus.PROCESSING)
            loan.platform_fee_cents = fees.fee_cents
            loan.transfer_group = transfer_group_for(loan.id)
            loan.funding_source = FUNDING_GATEWAY_TRANSFER
            self.loans.save(loan)
            self._publish(DomainEvent.LOAN_PROCESSING, "loan", loan.id, {
                'funding_source': FUNDING_GATEWAY_TRANSFER,
                'net_cents': fees.net_cents,
                'fee_cents': fees.fee_cents,
            })

        try:
            result = gateway.create_transfer(
                amount_cents=fees.net_cents,
                destination_account=borrower.payout_account_id,
                fee_cents=fees.fee_cents,
                metadata={
                    'loanId': loan.id,
                    'borrowerId': loan.borrower_id,
                    'lenderId': loan.lender_id,
                    'platformFeeCents': str(fees.fee_cents),
                },
                transfer_group=loan.transfer_group,
                idempotency_key=f"disburse_{loan.id}",
            )
        except GatewayTimeout:
            logger.warning(f"Disbursement for loan {loan.id} timed out; left PROCESSING")
            raise
        except GatewayError as e:
            logger.error(f"Disbursement for loan {loan.id} failed: {e}")
            self.mark_failed(loan.id, str(e))
            raise

        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            loan.transfer_id = result.transfer_id
            self.loans.save(loan)

        log_action(logger, "info", f"Disbursement transfer {result.transfer_id} created for loan {loan.id}",
                   action="disburse_via_gateway", resource=loan.id,
                   extra={'net_cents': fees.net_cents, 'fee_cents': fees.fee_cents})
        return loan

    def fund_via_bank_charge(self, loan_id: str, borrower_id: str,
                             payment_method_id: Optional[str] = None) -> Loan:
        """
        Fund an ACCEPTED loan with a destination charge on the borrower's
        saved payment method, routed to the lender's payout account.

        The loan goes PROCESSING; webhooks complete or fail it.
        """
        gateway = self._require_gateway()
        loan = self.loans.require(loan_id)
        if loan.borrower_id != borrower_id:
            raise AuthorizationError("Only the borrower can fund this loan")
        if loan.status != LoanStatus.ACCEPTED:
            raise StateConflict(f"Loan cannot be funded from status {loan.status.value}")

        borrower = self.users.require(loan.borrower_id)
        lender = self.users.require(loan.lender_id)
        payment_method = payment_method_id or borrower.default_payment_method_id
        if not payment_method:
            raise ValidationError("No payment method on file")

        customer_id = ensure_customer(gateway, self.users, borrower)
        destination = ensure_payout_account(gateway, self.users, lender)
        platform_fee_cents = compute_disbursement_platform_fee_cents(
            loan.principal, borrower.is_super_user, lender.is_super_user,
            self.policy.platform_fee_rate
        )

        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            self._transition(loan, LoanStatus.PROCESSING)
            loan.platform_fee_cents = platform_fee_cents
            loan.transfer_group = transfer_group_for(loan.id)
            loan.funding_source = FUNDING_BANK_CHARGE
            self.loans.save(loan)
            self._publish(DomainEvent.LOAN_PROCESSING, "loan", loan.id, {
                'funding_source': FUNDING_BANK_CHARGE,
                'platform_fee_cents': platform_fee_cents,
            }, user_id=borrower_id)

        try:
            charge = gateway.charge_off_session(
                customer_id=customer_id,
                payment_method_id=payment_method,
                amount_cents=loan.principal_cents,
                metadata={
                    'loanId': loan.id,
                    'borrowerId': loan.borrower_id,
                    'lenderId': loan.lender_id,
                },
                destination_account=destination,
                application_fee_cents=platform_fee_cents,
                idempotency_key=f"fund_{loan.id}",
            )
        except GatewayTimeout:
            logger.warning(f"Funding charge for loan {loan.id} timed out; left PROCESSING")
            raise
        except GatewayError as e:
            logger.error(f"Funding charge for loan {loan.id} failed: {e}")
            self.mark_failed(loan.id, str(e))
            raise

        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            loan.payment_intent_id = charge.payment_intent_id
            loan.charge_id = charge.charge_id
            self.loans.save(loan)

        if not charge.succeeded and not charge.pending:
            logger.error(f"Funding charge for loan {loan.id} returned {charge.status}")
            self.mark_failed(loan.id, f"Payment {charge.status}")
            raise GatewayError(f"Payment {charge.status}", code=charge.status)
        return loan

    # ------------------------------------------------------------------
    # Webhook-driven transitions

    def mark_processing(self, loan_id: str, payment_intent_id: Optional[str] = None,
                        charge_id: Optional[str] = None) -> Loan:
        """Record gateway progress; ACCEPTED moves to PROCESSING, PROCESSING stays"""
        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            if loan.status != LoanStatus.PROCESSING:
                self._transition(loan, LoanStatus.PROCESSING)
                self._publish(DomainEvent.LOAN_PROCESSING, "loan", loan.id,
                              {'payment_intent_id': payment_intent_id})
            if payment_intent_id:
                loan.payment_intent_id = payment_intent_id
            if charge_id:
                loan.charge_id = charge_id
            return self.loans.save(loan)

    def complete_funding(self, loan_id: str, transfer_id: Optional[str] = None,
                         now: Optional[datetime] = None) -> Loan:
        """
        Flip a PROCESSING loan to FUNDED once the gateway confirms the transfer.

        For platform-initiated transfers the borrower's net and the platform's
        upfront fees are credited to their wallets in the same unit. Repeated
        confirmation of a FUNDED loan is a no-op.
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            if loan.status in (LoanStatus.FUNDED, LoanStatus.PAID_OFF):
                logger.info(f"Loan {loan.id} already funded, ignoring confirmation")
                return loan

            self._transition(loan, LoanStatus.FUNDED)
            net_cents = loan.principal_cents - loan.platform_fee_cents
            if transfer_id:
                loan.transfer_id = transfer_id

            if loan.funding_source == FUNDING_GATEWAY_TRANSFER:
                metadata = {'loanId': loan.id, 'transferId': loan.transfer_id}
                if net_cents > 0:
                    self.wallet.credit_wallet(
                        loan.borrower_id, net_cents, "LOAN_DISBURSE_NET",
                        "Loan", loan.id, WalletEntryType.DISBURSE, metadata
                    )
                if loan.platform_fee_cents > 0:
                    self.wallet.credit_platform(
                        loan.platform_fee_cents, "LOAN_DISBURSE_FEES",
                        "Loan", loan.id, WalletEntryType.FEE, metadata
                    )

            loan.disbursed_amount = from_cents(net_cents)
            loan.funded_at = now
            self.loans.save(loan)
            self._publish_funded(loan, peerfund_fee=from_cents(loan.platform_fee_cents),
                                 banking_fee=Decimal('0'))

        log_action(logger, "info", f"Loan {loan.id} funded via gateway",
                   action="complete_funding", resource=loan.id,
                   extra={'net_cents': net_cents, 'transfer_id': loan.transfer_id})
        return loan

    def mark_failed(self, loan_id: str, reason: str) -> Loan:
        """Move a loan to FAILED; repeated failures are no-ops"""
        with self.storage.atomic():
            loan = self.loans.require(loan_id, for_update=True)
            if loan.status == LoanStatus.FAILED:
                return loan
            self._transition(loan, LoanStatus.FAILED)
            loan.failure_reason = reason
            self.loans.save(loan)
            self._publish(DomainEvent.LOAN_FAILED, "loan", loan.id, {'reason': reason})
        logger.warning(f"Loan {loan.id} marked FAILED: {reason}")
        return loan

    def mark_paid_off_if_complete(self, loan: Loan, now: Optional[datetime] = None) -> bool:
        """Flip a FUNDED loan to PAID_OFF when no PENDING installments remain"""
        if self.repayments.count_pending(loan.id) > 0:
            return False
        self._transition(loan, LoanStatus.PAID_OFF)
        loan.paid_off_at = now or datetime.now(timezone.utc)
        self.loans.save(loan)
        self._publish(DomainEvent.LOAN_PAID_OFF, "loan", loan.id, {'borrower_id': loan.borrower_id})
        return True

    def find_loan_by_transfer_group(self, transfer_group: str) -> Optional[Loan]:
        matches = self.loans.find(transfer_group=transfer_group)
        return matches[0] if matches else None

    def find_loan_by_charge(self, charge_id: str) -> Optional[Loan]:
        matches = self.loans.find(charge_id=charge_id)
        return matches[0] if matches else None

    # ------------------------------------------------------------------
    # Helpers

    def _transition(self, loan: Loan, target: LoanStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[loan.status]:
            raise StateConflict(
                f"Loan {loan.id} cannot move from {loan.status.value} to {target.value}"
            )
        logger.debug(f"Loan {loan.id}: {loan.status.value} -> {target.value}")
        loan.status = target

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise GatewayError("No payment gateway configured")
        return self.gateway

    def _publish_funded(self, loan: Loan, peerfund_fee: Decimal, banking_fee: Decimal) -> None:
        self._publish(DomainEvent.LOAN_FUNDED, "loan", loan.id, {
            'disbursed_amount': str(loan.disbursed_amount),
            'lender_id': loan.lender_id,
            'borrower_id': loan.borrower_id,
            'peerfund_fee': str(peerfund_fee),
            'banking_fee': str(banking_fee),
            'funding_source': loan.funding_source,
        }, user_id=loan.lender_id)

    def _publish(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                 data: Dict[str, Any], user_id: Optional[str] = None) -> None:
        self.dispatcher.publish_on_commit(self.storage, EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
            user_id=user_id,
        ))
