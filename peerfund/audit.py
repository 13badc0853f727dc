"""
Audit Module

Two audit concerns live here:

- AuditTrail: hash-chained immutable log (SHA-256) of lifecycle events for
  tamper detection.
- AuditRecordWriter: consumes post-commit domain events and writes the
  write-only Fee and Transaction reporting rows with its own retry policy.
  A failure is logged as AuditWriteFailure and never reaches the caller.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import AuditWriteFailure
from .events import DomainEvent, EventDispatcher, EventPayload
from .models import Fee, FeeType, Transaction, TransactionType, record_stamp
from .repositories import FeeRepository, TransactionRepository
from .storage import StorageInterface, StorageRecord, to_json_value


logger = logging.getLogger("peerfund.audit")


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_REQUEST_CREATED = "loan_request_created"
    OFFER_SUBMITTED = "offer_submitted"
    DIRECT_REQUEST_CREATED = "direct_request_created"
    DIRECT_REQUEST_COUNTERED = "direct_request_countered"
    DIRECT_REQUEST_DECLINED = "direct_request_declined"
    LOAN_ACCEPTED = "loan_accepted"
    LOAN_PROCESSING = "loan_processing"
    LOAN_FUNDED = "loan_funded"
    LOAN_FAILED = "loan_failed"
    LOAN_PAID_OFF = "loan_paid_off"
    REPAYMENT_SETTLED = "repayment_settled"
    USER_UPGRADED = "user_upgraded"


_EVENT_TO_AUDIT = {
    DomainEvent.LOAN_REQUEST_CREATED: AuditEventType.LOAN_REQUEST_CREATED,
    DomainEvent.OFFER_SUBMITTED: AuditEventType.OFFER_SUBMITTED,
    DomainEvent.DIRECT_REQUEST_CREATED: AuditEventType.DIRECT_REQUEST_CREATED,
    DomainEvent.DIRECT_REQUEST_COUNTERED: AuditEventType.DIRECT_REQUEST_COUNTERED,
    DomainEvent.DIRECT_REQUEST_DECLINED: AuditEventType.DIRECT_REQUEST_DECLINED,
    DomainEvent.LOAN_ACCEPTED: AuditEventType.LOAN_ACCEPTED,
    DomainEvent.LOAN_PROCESSING: AuditEventType.LOAN_PROCESSING,
    DomainEvent.LOAN_FUNDED: AuditEventType.LOAN_FUNDED,
    DomainEvent.LOAN_FAILED: AuditEventType.LOAN_FAILED,
    DomainEvent.LOAN_PAID_OFF: AuditEventType.LOAN_PAID_OFF,
    DomainEvent.REPAYMENT_SETTLED: AuditEventType.REPAYMENT_SETTLED,
    DomainEvent.USER_UPGRADED: AuditEventType.USER_UPGRADED,
}


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        self.metadata = to_json_value(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        # (sequence, hash, event id) of the last event this trail wrote
        self._last: Optional[Tuple[int, str, str]] = None

    def _tail(self) -> Tuple[int, str]:
        """Sequence and hash of the most recent event"""
        if self._last is not None:
            sequence, current_hash, event_id = self._last
            stored = self.storage.load(self.table_name, event_id)
            if stored and stored.get('sequence') == sequence and stored.get('current_hash') == current_hash:
                return sequence, current_hash
        events = self.storage.load_all(self.table_name)
        if not events:
            return 0, ""
        latest = max(events, key=lambda e: e.get('sequence', 0))
        return latest.get('sequence', 0), latest.get('current_hash', "")

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            last_sequence, last_hash = self._tail()
            event = AuditEvent(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=last_sequence + 1,
                previous_hash=last_hash,
                current_hash="",
                user_id=user_id,
                metadata=metadata or {},
                **record_stamp()
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last = (event.sequence, event.current_hash, event.id)
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'entity_type': entity_type, 'entity_id': entity_id})
        ]
        events.sort(key=lambda e: e.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {'valid': True, 'total_events': 0, 'hash_errors': [], 'chain_breaks': []}

        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': i})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': i})
            previous_hash = event.current_hash

        return result

    def record_domain_event(self, event: EventPayload) -> None:
        """Global event handler: chain every lifecycle event into the trail"""
        audit_type = _EVENT_TO_AUDIT.get(event.event_type)
        if audit_type is None:
            return
        self.log_event(audit_type, event.entity_type, event.entity_id, event.data, event.user_id)


class AuditRecordWriter:
    """
    Writes Fee and Transaction reporting rows from post-commit events.

    Each event's rows are written in one unit with up to ``max_attempts``
    tries. Exhausted retries are logged as AuditWriteFailure.
    """

    def __init__(
        self,
        storage: StorageInterface,
        fees: FeeRepository,
        transactions: TransactionRepository,
        max_attempts: int = 3,
        retry_delay: float = 0.0
    ):
        self.storage = storage
        self.fees = fees
        self.transactions = transactions
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(DomainEvent.REPAYMENT_SETTLED, self.on_repayment_settled)
        dispatcher.subscribe(DomainEvent.LOAN_FUNDED, self.on_loan_funded)
        dispatcher.subscribe(DomainEvent.USER_UPGRADED, self.on_user_upgraded)

    def on_repayment_settled(self, event: EventPayload) -> None:
        data = event.data
        loan_id = data['loan_id']
        repayment_id = event.entity_id
        base = Decimal(data['base_payment'])
        banking_fee = Decimal(data['banking_fee'])
        peerfund_fee = Decimal(data['peerfund_fee'])
        platform = data['platform_user_id']

        def build() -> List[StorageRecord]:
            rows: List[StorageRecord] = [
                Fee(fee_type=FeeType.BANK_FEE, amount=banking_fee, loan_id=loan_id,
                    repayment_id=repayment_id, **record_stamp()),
            ]
            if peerfund_fee > 0:
                rows.append(Fee(fee_type=FeeType.PLATFORM_FEE, amount=peerfund_fee, loan_id=loan_id,
                                repayment_id=repayment_id, **record_stamp()))
            rows.append(Transaction(
                transaction_type=TransactionType.REPAYMENT, amount=base,
                from_user_id=data['borrower_id'], to_user_id=data['lender_id'],
                peerfund_fee=peerfund_fee, banking_fee=banking_fee,
                loan_id=loan_id, repayment_id=repayment_id, **record_stamp()
            ))
            rows.append(Transaction(
                transaction_type=TransactionType.BANK_FEE, amount=banking_fee,
                from_user_id=data['borrower_id'], to_user_id=platform,
                banking_fee=banking_fee, loan_id=loan_id, repayment_id=repayment_id,
                **record_stamp()
            ))
            if peerfund_fee > 0:
                rows.append(Transaction(
                    transaction_type=TransactionType.PLATFORM_FEE, amount=peerfund_fee,
                    from_user_id=data['borrower_id'], to_user_id=platform,
                    peerfund_fee=peerfund_fee, loan_id=loan_id, repayment_id=repayment_id,
                    **record_stamp()
                ))
            return rows

        self._write(f"repayment {repayment_id}", build)

    def on_loan_funded(self, event: EventPayload) -> None:
        data = event.data
        amount = Decimal(data['disbursed_amount'])

        def build() -> List[StorageRecord]:
            return [Transaction(
                transaction_type=TransactionType.DISBURSEMENT, amount=amount,
                from_user_id=data.get('lender_id'), to_user_id=data['borrower_id'],
                peerfund_fee=Decimal(data.get('peerfund_fee', '0')),
                banking_fee=Decimal(data.get('banking_fee', '0')),
                loan_id=event.entity_id, description=data.get('funding_source'),
                **record_stamp()
            )]

        self._write(f"loan {event.entity_id} disbursement", build)

    def on_user_upgraded(self, event: EventPayload) -> None:
        data = event.data
        amount = Decimal(data.get('amount', '0'))

        def build() -> List[StorageRecord]:
            return [Transaction(
                transaction_type=TransactionType.SUPERUSER_SUBSCRIPTION, amount=amount,
                from_user_id=event.entity_id, to_user_id=data.get('platform_user_id'),
                description=data.get('session_id'), **record_stamp()
            )]

        self._write(f"user {event.entity_id} subscription", build)

    def _repository_for(self, record: StorageRecord):
        return self.fees if isinstance(record, Fee) else self.transactions

    def _write(self, description: str, build: Callable[[], List[StorageRecord]]) -> bool:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.storage.atomic():
                    for record in build():
                        self._repository_for(record).save(record)
                return True
            except Exception as e:
                last_error = e
                logger.warning(f"Audit write for {description} failed (attempt {attempt}/{self.max_attempts}): {e}")
                if self.retry_delay and attempt < self.max_attempts:
                    time.sleep(self.retry_delay * attempt)

        failure = AuditWriteFailure(f"Audit rows for {description} were not written: {last_error}")
        logger.error(str(failure))
        return False
