"""
Lending system wiring

Builds every collaborator of the lending core on one storage backend and
one event dispatcher. This is the only place configuration is read.
"""

import logging
from typing import Optional

from .audit import AuditRecordWriter, AuditTrail
from .config import PeerFundConfig, get_config
from .direct_requests import DirectRequestService
from .documents import ContractService
from .events import EventDispatcher
from .gateway import HttpPaymentGateway, PaymentGateway
from .lifecycle import LoanLifecycle
from .policy import LendingPolicy
from .repayments import RepaymentService
from .repositories import (
    DirectRequestRepository, DocumentRepository, FeeRepository, LoanOfferRepository,
    LoanRepository, LoanRequestRepository, NotificationRepository, RepaymentRepository,
    TransactionRepository, UserRepository, WalletRepository, WebhookEventRepository
)
from .scheduler import AutoRepaymentScheduler
from .storage import InMemoryStorage, StorageInterface, create_storage
from .users import UserDirectory
from .wallet import WalletLedger
from .webhooks import WebhookProcessor


logger = logging.getLogger("peerfund.system")


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[PaymentGateway] = None,
        config: Optional[PeerFundConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or InMemoryStorage()
        self.gateway = gateway
        self.policy = LendingPolicy.from_config(self.config)
        self.dispatcher = EventDispatcher()

        # Repositories
        self.user_repo = UserRepository(self.storage)
        self.loan_requests = LoanRequestRepository(self.storage)
        self.offers = LoanOfferRepository(self.storage)
        self.direct_request_repo = DirectRequestRepository(self.storage)
        self.loans = LoanRepository(self.storage)
        self.repayments = RepaymentRepository(self.storage)
        self.wallets = WalletRepository(self.storage)
        self.transactions = TransactionRepository(self.storage)
        self.fees = FeeRepository(self.storage)
        self.documents = DocumentRepository(self.storage)
        self.notifications = NotificationRepository(self.storage)
        self.webhook_events = WebhookEventRepository(self.storage)

        # Audit
        self.audit_trail = AuditTrail(self.storage)
        self.audit_writer = AuditRecordWriter(
            self.storage, self.fees, self.transactions,
            max_attempts=self.config.audit_write_retries
        )
        self.audit_writer.register(self.dispatcher)
        self.dispatcher.subscribe_all(self.audit_trail.record_domain_event)

        # Services
        self.users = UserDirectory(self.user_repo)
        self.wallet = WalletLedger(
            self.storage, self.wallets, self.policy.platform_user_id,
            cas_retries=self.config.wallet_cas_retries
        )
        self.contracts = ContractService(
            self.documents, self.notifications,
            self.policy.platform_fee_rate, self.policy.banking_fee_rate
        )
        self.lifecycle = LoanLifecycle(
            self.storage, self.users, self.loan_requests, self.offers, self.loans,
            self.repayments, self.wallet, self.contracts, self.dispatcher,
            gateway=self.gateway, policy=self.policy
        )
        self.repayment_service = RepaymentService(
            self.storage, self.users, self.loans, self.repayments, self.wallet,
            self.lifecycle, self.dispatcher, gateway=self.gateway, policy=self.policy
        )
        self.direct_requests = DirectRequestService(
            self.storage, self.users, self.direct_request_repo, self.lifecycle,
            self.dispatcher, policy=self.policy
        )
        self.webhooks = WebhookProcessor(
            self.storage, self.webhook_events, self.users, self.lifecycle,
            self.repayment_service, self.dispatcher,
            secret=self.config.webhook_secret,
            tolerance=self.config.webhook_tolerance_seconds,
            platform_user_id=self.policy.platform_user_id,
        )
        self.scheduler = AutoRepaymentScheduler(
            self.repayment_service, self.repayments, self.loans,
            run_hour_utc=self.config.autopay_hour_utc
        )

    @classmethod
    def from_config(cls, config: Optional[PeerFundConfig] = None) -> 'LendingSystem':
        """Build storage and gateway from configuration"""
        config = config or get_config()
        gateway = None
        if config.gateway_api_key:
            gateway = HttpPaymentGateway(
                api_key=config.gateway_api_key,
                base_url=config.gateway_base_url,
                timeout=config.gateway_timeout,
                currency=config.gateway_currency,
            )
        else:
            logger.warning("No gateway API key configured; gateway operations are disabled")
        return cls(storage=create_storage(config.database_url), gateway=gateway, config=config)

    def close(self) -> None:
        if self.scheduler.is_running():
            self.scheduler.stop()
        if isinstance(self.gateway, HttpPaymentGateway):
            self.gateway.close()
        self.storage.close()
