"""
Direct Loan Requests

Borrower-to-lender requests negotiated against the lender's published tier
table (amount -> enabled, rate). Either party may counter while PENDING;
the lender approves (originating the loan) or declines.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import AuthorizationError, NotFoundError, StateConflict, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload
from .lifecycle import LoanLifecycle, parse_amount
from .models import DirectLoanRequest, DirectRequestStatus, Loan, User, record_stamp
from .money import round2, to_decimal
from .policy import LendingPolicy
from .repositories import DirectRequestRepository
from .storage import StorageInterface
from .users import UserDirectory


logger = logging.getLogger("peerfund.direct_requests")


def default_months(amount: Decimal) -> int:
    """Term used when the borrower gives none: 1 month up to $100, 2 up to $200, else 3"""
    if amount <= 100:
        return 1
    if amount <= 200:
        return 2
    return 3


class DirectRequestService:
    """Direct request negotiation between one borrower and one lender"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserDirectory,
        requests: DirectRequestRepository,
        lifecycle: LoanLifecycle,
        dispatcher: EventDispatcher,
        policy: Optional[LendingPolicy] = None
    ):
        self.storage = storage
        self.users = users
        self.requests = requests
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.policy = policy or LendingPolicy()

    def _months_or_default(self, months: Any, amount: Decimal) -> int:
        if months is None or isinstance(months, bool):
            return default_months(amount)
        try:
            value = to_decimal(months)
        except (ArithmeticError, TypeError, ValueError):
            return default_months(amount)
        if value != value.to_integral_value() or not 1 <= value <= self.policy.max_direct_request_months:
            return default_months(amount)
        return int(value)

    def _validate_months(self, months: Any) -> int:
        try:
            value = to_decimal(months)
        except (ArithmeticError, TypeError, ValueError):
            raise ValidationError("Invalid months")
        if isinstance(months, bool) or value != value.to_integral_value() \
                or not 1 <= value <= self.policy.max_direct_request_months:
            raise ValidationError("Invalid months")
        return int(value)

    def _validate_amount(self, amount: Any) -> Decimal:
        value = parse_amount(amount, "Amount")
        if value <= 0:
            raise ValidationError("Invalid amount")
        return round2(value)

    def _validate_apr(self, apr: Any) -> Decimal:
        value = parse_amount(apr, "APR")
        if value < 0:
            raise ValidationError("Invalid APR")
        return value

    def check_terms(self, lender: User, amount: Decimal, apr: Optional[Decimal]) -> Decimal:
        """
        Validate an amount/APR pair against the lender's tier table.

        Returns:
            The tier's allowed APR

        Raises:
            ValidationError: Amount not offered, or APR differs from the tier rate
        """
        tier = self.users.tier_for(lender, amount)
        if not tier or not tier.get('enabled'):
            raise ValidationError("This amount is not offered by the lender")
        try:
            allowed = to_decimal(tier.get('rate'))
        except (ArithmeticError, TypeError, ValueError):
            raise ValidationError("Lender APR config invalid for this amount")
        if apr is not None and apr != allowed:
            raise ValidationError("APR not allowed for selected amount")
        return allowed

    def create(self, borrower_id: str, lender_id: str, amount: Any, months: Any = None,
               apr: Any = None, notes: str = "") -> DirectLoanRequest:
        """
        Open a PENDING direct request to a lender.

        Args:
            borrower_id: Requesting borrower
            lender_id: Target lender
            amount: Requested amount in dollars; must be an enabled tier
            months: Term, defaulted by amount when missing or outside 1-12
            apr: Requested APR; snaps to the tier rate when omitted
            notes: Free text

        Returns:
            The created DirectLoanRequest
        """
        if not lender_id:
            raise ValidationError("lenderId and amount are required")
        if lender_id == borrower_id:
            raise ValidationError("Cannot request a loan from yourself")
        value = self._validate_amount(amount)
        requested_apr = self._validate_apr(apr) if apr is not None else None

        self.users.require(borrower_id)
        lender = self.users.get(lender_id)
        if lender is None:
            raise NotFoundError("Lender not found")
        allowed = self.check_terms(lender, value, requested_apr)

        request = DirectLoanRequest(
            borrower_id=borrower_id,
            lender_id=lender_id,
            amount=value,
            months=self._months_or_default(months, value),
            apr=requested_apr if requested_apr is not None else allowed,
            notes=notes or "",
            **record_stamp()
        )
        with self.storage.atomic():
            self.requests.save(request)
            self._publish(DomainEvent.DIRECT_REQUEST_CREATED, request, borrower_id)
        logger.info(f"Direct request {request.id} created by {borrower_id} for lender {lender_id}")
        return request

    def counter(self, request_id: str, user_id: str, amount: Any = None, months: Any = None,
                apr: Any = None, notes: Optional[str] = None) -> DirectLoanRequest:
        """Either party proposes new terms; the request stays PENDING"""
        with self.storage.atomic():
            request = self._require_party(request_id, user_id, for_update=True)
            if request.status != DirectRequestStatus.PENDING:
                raise StateConflict("Only PENDING requests can be countered")

            next_amount = self._validate_amount(amount) if amount is not None else request.amount
            next_months = self._validate_months(months) if months is not None else request.months
            next_apr = self._validate_apr(apr) if apr is not None else request.apr

            lender = self.users.require(request.lender_id)
            allowed = self.check_terms(lender, next_amount, next_apr if apr is not None else None)

            request.amount = next_amount
            request.months = next_months
            request.apr = next_apr if apr is not None else allowed
            if notes is not None:
                request.notes = notes
            request.last_countered_by = user_id
            request.decided_at = None
            self.requests.save(request)
            self._publish(DomainEvent.DIRECT_REQUEST_COUNTERED, request, user_id)
        return request

    def approve(self, request_id: str, lender_id: str, now: Optional[datetime] = None) -> Loan:
        """
        Lender accepts the current terms.

        The loan, its schedule and contract are created together with the
        APPROVED flip.
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            request = self.requests.require(request_id, for_update=True)
            if request.lender_id != lender_id:
                raise AuthorizationError("Only the lender can approve this request")
            if request.status != DirectRequestStatus.PENDING:
                raise StateConflict("Request not pending")

            loan = self.lifecycle.originate_loan(
                borrower_id=request.borrower_id,
                lender_id=request.lender_id,
                amount=request.amount,
                term_months=request.months,
                interest_rate=request.apr,
                now=now,
                direct_request_id=request.id,
            )
            request.status = DirectRequestStatus.APPROVED
            request.loan_id = loan.id
            request.decided_at = now
            self.requests.save(request)

        logger.info(f"Direct request {request.id} approved, loan {loan.id} created")
        return loan

    def decline(self, request_id: str, lender_id: str) -> DirectLoanRequest:
        with self.storage.atomic():
            request = self.requests.require(request_id, for_update=True)
            if request.lender_id != lender_id:
                raise AuthorizationError("Only the lender can decline this request")
            if request.status != DirectRequestStatus.PENDING:
                raise StateConflict("Request not pending")
            request.status = DirectRequestStatus.DECLINED
            request.decided_at = datetime.now(timezone.utc)
            self.requests.save(request)
            self._publish(DomainEvent.DIRECT_REQUEST_DECLINED, request, lender_id)
        return request

    def get(self, request_id: str, user_id: str) -> DirectLoanRequest:
        """Detail view; requests the caller is not party to are reported as missing"""
        return self._require_party(request_id, user_id)

    def list_for_user(self, user_id: str, role: str = "borrower") -> List[DirectLoanRequest]:
        if (role or "borrower").lower() == "lender":
            rows = self.requests.find(lender_id=user_id)
        else:
            rows = self.requests.find(borrower_id=user_id)
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    def list_open_for_user(self, user_id: str) -> List[DirectLoanRequest]:
        pending = DirectRequestStatus.PENDING.value
        rows = self.requests.find(borrower_id=user_id, status=pending)
        rows += [r for r in self.requests.find(lender_id=user_id, status=pending)
                 if r.borrower_id != user_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    def _require_party(self, request_id: str, user_id: str, for_update: bool = False) -> DirectLoanRequest:
        request = self.requests.get_for_update(request_id) if for_update else self.requests.get(request_id)
        if request is None or user_id not in (request.borrower_id, request.lender_id):
            raise NotFoundError("Request not found")
        return request

    def _publish(self, event_type: DomainEvent, request: DirectLoanRequest, user_id: str) -> None:
        data: Dict[str, Any] = {
            'borrower_id': request.borrower_id,
            'lender_id': request.lender_id,
            'amount': str(request.amount),
            'months': request.months,
            'apr': str(request.apr),
        }
        self.dispatcher.publish_on_commit(self.storage, EventPayload(
            event_type=event_type,
            entity_type="direct_request",
            entity_id=request.id,
            data=data,
            user_id=user_id,
        ))
