"""
Repositories

Narrow per-entity persistence interfaces on top of StorageInterface, so the
lifecycle code depends on repositories rather than on a storage client.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from .errors import NotFoundError
from .models import (
    Document, DirectLoanRequest, Fee, Loan, LoanOffer, LoanRequest,
    Notification, ProcessedWebhookEvent, Repayment, RepaymentStatus,
    Transaction, User, Wallet, WalletLedgerEntry
)
from .storage import StorageInterface, StorageRecord


T = TypeVar('T', bound=StorageRecord)


class Repository(Generic[T]):
    """Table-backed repository for one record type"""

    model: Type[T]
    table_name: str
    label: str = "Record"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def _from_dict(self, data: Dict[str, Any]) -> T:
        return self.model.from_dict(data)

    def get(self, record_id: str) -> Optional[T]:
        data = self.storage.load(self.table_name, record_id)
        return self._from_dict(data) if data else None

    def get_for_update(self, record_id: str) -> Optional[T]:
        data = self.storage.load_for_update(self.table_name, record_id)
        return self._from_dict(data) if data else None

    def require(self, record_id: str, for_update: bool = False) -> T:
        """Load a record or raise NotFoundError"""
        record = self.get_for_update(record_id) if for_update else self.get(record_id)
        if record is None:
            raise NotFoundError(f"{self.label} not found")
        return record

    def save(self, record: T) -> T:
        record.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, record.id, record.to_dict())
        return record

    def find(self, **filters: Any) -> List[T]:
        return [self._from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def all(self) -> List[T]:
        return [self._from_dict(data) for data in self.storage.load_all(self.table_name)]


class UserRepository(Repository[User]):
    model = User
    table_name = "users"
    label = "User"

    def find_by_email(self, email: str) -> Optional[User]:
        matches = self.find(email=email.lower())
        return matches[0] if matches else None


class LoanRequestRepository(Repository[LoanRequest]):
    model = LoanRequest
    table_name = "loan_requests"
    label = "Loan request"


class LoanOfferRepository(Repository[LoanOffer]):
    model = LoanOffer
    table_name = "loan_offers"
    label = "Offer"

    def for_request(self, loan_request_id: str) -> List[LoanOffer]:
        offers = self.find(loan_request_id=loan_request_id)
        offers.sort(key=lambda o: o.created_at, reverse=True)
        return offers


class DirectRequestRepository(Repository[DirectLoanRequest]):
    model = DirectLoanRequest
    table_name = "direct_loan_requests"
    label = "Direct request"


class LoanRepository(Repository[Loan]):
    model = Loan
    table_name = "loans"
    label = "Loan"

    def find_by_request(self, loan_request_id: str) -> Optional[Loan]:
        matches = self.find(loan_request_id=loan_request_id)
        return matches[0] if matches else None

    def for_user(self, user_id: str) -> List[Loan]:
        loans = self.find(borrower_id=user_id) + self.find(lender_id=user_id)
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def funded_since(self, since: datetime) -> List[Loan]:
        return [
            loan for loan in self.all()
            if loan.funded_at is not None and loan.funded_at >= since
        ]


class RepaymentRepository(Repository[Repayment]):
    model = Repayment
    table_name = "repayments"
    label = "Repayment"

    def for_loan(self, loan_id: str) -> List[Repayment]:
        rows = self.find(loan_id=loan_id)
        rows.sort(key=lambda r: (r.due_date, r.installment_number))
        return rows

    def pending_for_loan(self, loan_id: str) -> List[Repayment]:
        rows = self.find(loan_id=loan_id, status=RepaymentStatus.PENDING.value)
        rows.sort(key=lambda r: (r.due_date, r.installment_number))
        return rows

    def count_pending(self, loan_id: str) -> int:
        return len(self.storage.find(
            self.table_name, {'loan_id': loan_id, 'status': RepaymentStatus.PENDING.value}
        ))

    def next_pending(self, loan_id: str) -> Optional[Repayment]:
        rows = self.pending_for_loan(loan_id)
        return rows[0] if rows else None

    def due_pending(self, now: datetime) -> List[Repayment]:
        rows = [r for r in self.find(status=RepaymentStatus.PENDING.value) if r.due_date <= now]
        rows.sort(key=lambda r: (r.due_date, r.installment_number))
        return rows


class WalletRepository(Repository[Wallet]):
    """Wallets keyed deterministically by user so creation is idempotent"""
    model = Wallet
    table_name = "wallets"
    label = "Wallet"
    entries_table = "wallet_ledger"

    @staticmethod
    def wallet_id_for(user_id: str) -> str:
        return f"wallet_{user_id}"

    def by_user(self, user_id: str, for_update: bool = False) -> Optional[Wallet]:
        wallet_id = self.wallet_id_for(user_id)
        return self.get_for_update(wallet_id) if for_update else self.get(wallet_id)

    def create_if_absent(self, wallet: Wallet) -> bool:
        return self.storage.insert(self.table_name, wallet.id, wallet.to_dict())

    def compare_and_swap(self, wallet: Wallet, expected_version: int) -> bool:
        """Persist the wallet only if nobody else bumped its version"""
        wallet.updated_at = datetime.now(timezone.utc)
        return self.storage.update_if(
            self.table_name, wallet.id, {'version': expected_version}, wallet.to_dict()
        )

    def append_entry(self, entry: WalletLedgerEntry) -> None:
        if not self.storage.insert(self.entries_table, entry.id, entry.to_dict()):
            raise ValueError(f"Ledger entry {entry.id} already exists")

    def entries(self, wallet_id: str) -> List[WalletLedgerEntry]:
        rows = [
            WalletLedgerEntry.from_dict(data)
            for data in self.storage.find(self.entries_table, {'wallet_id': wallet_id})
        ]
        rows.sort(key=lambda e: e.sequence)
        return rows


class TransactionRepository(Repository[Transaction]):
    model = Transaction
    table_name = "transactions"
    label = "Transaction"


class FeeRepository(Repository[Fee]):
    model = Fee
    table_name = "fees"
    label = "Fee"


class DocumentRepository(Repository[Document]):
    model = Document
    table_name = "documents"
    label = "Document"


class NotificationRepository(Repository[Notification]):
    model = Notification
    table_name = "notifications"
    label = "Notification"


class WebhookEventRepository(Repository[ProcessedWebhookEvent]):
    model = ProcessedWebhookEvent
    table_name = "processed_webhook_events"
    label = "Webhook event"

    def is_processed(self, event_id: str) -> bool:
        return self.storage.exists(self.table_name, event_id)

    def mark_processed(self, event: ProcessedWebhookEvent) -> bool:
        return self.storage.insert(self.table_name, event.id, event.to_dict())
