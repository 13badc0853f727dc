"""
Gateway Webhooks

Signature verification for inbound gateway events and their dispatch onto
the lifecycle. Events are de-duplicated by id: an id is recorded in the
same unit as the changes it caused, so a redelivered event is a no-op and
a failed one is retried by the gateway.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from .errors import NotFoundError, StateConflict, ValidationError, WebhookSignatureError
from .events import DomainEvent, EventDispatcher, EventPayload
from .lifecycle import LoanLifecycle
from .models import ProcessedWebhookEvent, RepaymentStatus, record_stamp
from .money import from_cents
from .repayments import PaymentSource, RepaymentService
from .repositories import WebhookEventRepository
from .storage import StorageInterface
from .users import UserDirectory


logger = logging.getLogger("peerfund.webhooks")

SIGNATURE_SCHEME = "v1"


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``t=...,v1=...`` header for a payload, as the gateway does"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, secret, timestamp)}"


def verify_signature(payload: bytes, header: Optional[str], secret: str,
                     tolerance: int = 300, now: Optional[float] = None) -> None:
    """
    Verify a gateway signature header against the raw payload.

    Args:
        payload: Raw request body, exactly as received
        header: Value of the signature header, ``t=<unix>,v1=<hex>[,v1=...]``
        secret: Shared webhook signing secret
        tolerance: Maximum age of the timestamp in seconds
        now: Current unix time (time.time() when omitted)

    Raises:
        WebhookSignatureError: Header missing or malformed, timestamp outside
            the tolerance window, or no signature matches
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Invalid timestamp in signature header")
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Unable to extract timestamp and signatures from header")

    now = time.time() if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        raise WebhookSignatureError("Timestamp outside the tolerance zone")

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("No signatures found matching the expected signature for payload")


class WebhookProcessor:
    """Verifies, de-duplicates and routes gateway events"""

    def __init__(
        self,
        storage: StorageInterface,
        processed: WebhookEventRepository,
        users: UserDirectory,
        lifecycle: LoanLifecycle,
        repayments: RepaymentService,
        dispatcher: EventDispatcher,
        secret: str,
        tolerance: int = 300,
        platform_user_id: Optional[str] = None
    ):
        self.storage = storage
        self.processed = processed
        self.users = users
        self.lifecycle = lifecycle
        self.repayments = repayments
        self.dispatcher = dispatcher
        self.secret = secret
        self.tolerance = tolerance
        self.platform_user_id = platform_user_id
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            'setup_intent.succeeded': self._on_setup_intent_succeeded,
            'payment_intent.processing': self._on_payment_processing,
            'payment_intent.succeeded': self._on_payment_succeeded,
            'payment_intent.payment_failed': self._on_payment_failed,
            'transfer.created': self._on_transfer_created,
            'checkout.session.completed': self._on_checkout_completed,
        }

    def handle(self, payload: bytes, header: Optional[str], now: Optional[float] = None) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Returns:
            ``{"received": True}``, plus ``"duplicate": True`` for a redelivery

        Raises:
            WebhookSignatureError: Signature check failed; nothing was changed
            ValidationError: Body is not a JSON event
        """
        verify_signature(payload, header, self.secret, self.tolerance, now)
        try:
            event = json.loads(payload)
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("Invalid webhook payload")
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload")

        event_id = event.get('id')
        event_type = event.get('type', '')
        obj = (event.get('data') or {}).get('object') or {}

        if event_id and self.processed.is_processed(event_id):
            logger.info(f"Webhook {event_id} ({event_type}) already processed")
            return {'received': True, 'duplicate': True}

        handler = self._handlers.get(event_type)
        try:
            with self.storage.atomic():
                if handler is None:
                    logger.debug(f"Ignoring webhook type {event_type}")
                else:
                    handler(obj)
                self._mark_processed(event_id, event_type)
        except (StateConflict, NotFoundError) as e:
            # Out-of-order or stale event; nothing for a retry to fix
            logger.warning(f"Webhook {event_id} ({event_type}) ignored: {e}")
            with self.storage.atomic():
                self._mark_processed(event_id, event_type)

        logger.info(f"Webhook {event_id} ({event_type}) processed")
        return {'received': True}

    def _mark_processed(self, event_id: Optional[str], event_type: str) -> None:
        if not event_id:
            return
        record = ProcessedWebhookEvent(event_type=event_type, **record_stamp())
        record.id = event_id
        self.processed.mark_processed(record)

    def _on_setup_intent_succeeded(self, obj: Dict[str, Any]) -> None:
        payment_method = obj.get('payment_method')
        customer = obj.get('customer')
        user_id = (obj.get('metadata') or {}).get('userId')
        user = self.users.get(user_id) if user_id else None
        if user is None and customer:
            user = self.users.find_by_gateway_customer(customer)
        if user is None or not payment_method:
            logger.warning(f"setup_intent {obj.get('id')} has no matching user or payment method")
            return
        self.users.set_default_payment_method(user.id, payment_method)

    def _on_payment_processing(self, obj: Dict[str, Any]) -> None:
        loan_id = (obj.get('metadata') or {}).get('loanId')
        if loan_id and not (obj.get('metadata') or {}).get('repaymentId'):
            self.lifecycle.mark_processing(loan_id, payment_intent_id=obj.get('id'))

    def _repayment_id_for(self, obj: Dict[str, Any], metadata: Dict[str, Any]) -> Optional[str]:
        """Repayment an intent pays for, by metadata or the stored intent id"""
        if metadata.get('repaymentId'):
            return metadata['repaymentId']
        if obj.get('id'):
            repayment = self.repayments.find_by_payment_intent(obj['id'])
            if repayment is not None:
                return repayment.id
        return None

    def _on_payment_succeeded(self, obj: Dict[str, Any]) -> None:
        metadata = obj.get('metadata') or {}
        repayment_id = self._repayment_id_for(obj, metadata)
        if repayment_id:
            amount = obj.get('amount_received', obj.get('amount'))
            autopay = metadata.get('source') == PaymentSource.AUTOPAY.value
            source = PaymentSource.AUTOPAY if autopay else PaymentSource.BANK
            self._settle_from_gateway(repayment_id, amount, obj.get('id'), source)
        elif metadata.get('loanId'):
            self.lifecycle.mark_processing(metadata['loanId'], payment_intent_id=obj.get('id'),
                                           charge_id=obj.get('latest_charge'))

    def _on_payment_failed(self, obj: Dict[str, Any]) -> None:
        metadata = obj.get('metadata') or {}
        error = obj.get('last_payment_error') or {}
        reason = error.get('message') or "Payment failed"
        repayment_id = self._repayment_id_for(obj, metadata)
        if repayment_id:
            self.repayments.record_failure(repayment_id, reason)
        elif metadata.get('loanId'):
            self.lifecycle.mark_failed(metadata['loanId'], reason)

    def _on_transfer_created(self, obj: Dict[str, Any]) -> None:
        loan_id = (obj.get('metadata') or {}).get('loanId')
        if not loan_id and obj.get('transfer_group'):
            loan = self.lifecycle.find_loan_by_transfer_group(obj['transfer_group'])
            loan_id = loan.id if loan else None
        if not loan_id and obj.get('source_transaction'):
            # Destination charges transfer automatically from the funding charge
            loan = self.lifecycle.find_loan_by_charge(obj['source_transaction'])
            loan_id = loan.id if loan else None
        if not loan_id:
            logger.warning(f"transfer {obj.get('id')} has no related loan")
            return
        self.lifecycle.complete_funding(loan_id, transfer_id=obj.get('id'))

    def _on_checkout_completed(self, obj: Dict[str, Any]) -> None:
        metadata = obj.get('metadata') or {}
        if metadata.get('kind') == "REPAYMENT" and metadata.get('repaymentId'):
            self._settle_from_gateway(metadata['repaymentId'], obj.get('amount_total'), obj.get('payment_intent'))
            return

        user_id = metadata.get('userId')
        user = self.users.get(user_id) if user_id else None
        if user is None and obj.get('customer_email'):
            user = self.users.find_by_email(obj['customer_email'])
        if user is None:
            logger.warning("No userId or customer_email on checkout.session.completed")
            return

        self.users.mark_super_user(user.id)
        amount = obj.get('amount_total')
        self.dispatcher.publish_on_commit(self.storage, EventPayload(
            event_type=DomainEvent.USER_UPGRADED,
            entity_type="user",
            entity_id=user.id,
            data={
                'amount': str(from_cents(amount)) if amount is not None else "0",
                'platform_user_id': self.platform_user_id,
                'session_id': obj.get('id'),
            },
            user_id=user.id,
        ))
        logger.info(f"User {user.id} upgraded to super user")

    def _settle_from_gateway(self, repayment_id: str, amount_cents: Optional[int],
                             payment_intent_id: Optional[str],
                             source: PaymentSource = PaymentSource.BANK) -> None:
        repayment = self.repayments.repayments.require(repayment_id)
        if repayment.status == RepaymentStatus.PAID:
            logger.info(f"Repayment {repayment_id} already paid")
            return
        self.repayments.settle_repayment(
            repayment_id, source,
            amount_paid=from_cents(amount_cents) if amount_cents is not None else None,
            payment_intent_id=payment_intent_id,
        )
