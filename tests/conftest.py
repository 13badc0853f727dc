"""
Shared fixtures: an in-memory lending system wired to a fake payment gateway
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from peerfund.config import PeerFundConfig
from peerfund.gateway import ChargeResult, PaymentGateway, TransferResult
from peerfund.models import UserRole
from peerfund.storage import InMemoryStorage
from peerfund.system import LendingSystem


WEBHOOK_SECRET = "whsec_test_secret"
ACCEPTED_AT = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakePaymentGateway(PaymentGateway):
    """Records every call; ``fail_with`` makes the next money call raise"""

    def __init__(self):
        self.customers: Dict[str, str] = {}
        self.accounts: Dict[str, str] = {}
        self.transfers: List[dict] = []
        self.charges: List[dict] = []
        self.fail_with: Optional[Exception] = None
        self.charge_status = "succeeded"

    def create_customer(self, user) -> str:
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers[customer_id] = user.id
        return customer_id

    def create_payout_account(self, user) -> str:
        account_id = f"acct_{len(self.accounts) + 1}"
        self.accounts[account_id] = user.id
        return account_id

    def create_transfer(self, amount_cents, destination_account, source_account=None, fee_cents=None,
                        metadata=None, transfer_group=None, idempotency_key=None) -> TransferResult:
        if self.fail_with:
            raise self.fail_with
        transfer_id = f"tr_{len(self.transfers) + 1}"
        self.transfers.append({
            'id': transfer_id,
            'amount_cents': amount_cents,
            'destination': destination_account,
            'fee_cents': fee_cents,
            'metadata': dict(metadata or {}),
            'transfer_group': transfer_group,
        })
        return TransferResult(transfer_id, amount_cents, destination_account)

    def charge_off_session(self, customer_id, payment_method_id, amount_cents, metadata=None,
                           destination_account=None, application_fee_cents=None,
                           idempotency_key=None) -> ChargeResult:
        if self.fail_with:
            raise self.fail_with
        intent_id = f"pi_{len(self.charges) + 1}"
        self.charges.append({
            'id': intent_id,
            'customer': customer_id,
            'payment_method': payment_method_id,
            'amount_cents': amount_cents,
            'metadata': dict(metadata or {}),
            'destination': destination_account,
            'application_fee_cents': application_fee_cents,
        })
        return ChargeResult(intent_id, self.charge_status, amount_cents, charge_id=f"ch_{len(self.charges)}")


@pytest.fixture
def config():
    return PeerFundConfig(
        database_url="memory://",
        webhook_secret=WEBHOOK_SECRET,
        audit_write_retries=1,
        platform_user_id="platform",
    )


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def system(config, gateway):
    lending = LendingSystem(storage=InMemoryStorage(), gateway=gateway, config=config)
    yield lending
    lending.close()


@pytest.fixture
def borrower(system):
    return system.users.register("Bea Borrower", "bea@example.com", UserRole.BORROWER)


@pytest.fixture
def lender(system):
    return system.users.register(
        "Len Lender", "len@example.com", UserRole.LENDER,
        lending_terms={
            100: {'enabled': True, 'rate': 5},
            500: {'enabled': True, 'rate': 8},
            1000: {'enabled': False, 'rate': 10},
        },
    )


@pytest.fixture
def accepted_loan(system, borrower, lender):
    """$500 over 6 months, lender offers 8%, accepted at ACCEPTED_AT"""
    request = system.lifecycle.create_loan_request(borrower.id, Decimal('500'), 6, Decimal('8'), "Car repair")
    offer = system.lifecycle.submit_offer(request.id, lender.id, Decimal('8'), "Happy to help")
    return system.lifecycle.accept_offer(offer.id, borrower.id, now=ACCEPTED_AT)


@pytest.fixture
def funded_loan(system, lender, accepted_loan):
    system.wallet.deposit(lender.id, 100000)
    return system.lifecycle.fund_from_wallet(accepted_loan.id, lender.id)
