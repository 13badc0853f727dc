"""
Test suite for gateway webhook verification and processing
"""

import json
import time

import pytest

from peerfund.errors import ValidationError, WebhookSignatureError
from peerfund.models import LoanStatus, RepaymentStatus, TransactionType, UserRole
from peerfund.webhooks import compute_signature, signature_header, verify_signature


def deliver(system, event_id, event_type, obj):
    payload = json.dumps({'id': event_id, 'type': event_type, 'data': {'object': obj}}).encode()
    header = signature_header(payload, system.config.webhook_secret)
    return system.webhooks.handle(payload, header)


class TestSignature:
    """Test signature header verification"""

    SECRET = "whsec_unit"

    def test_valid_signature(self):
        payload = b'{"id": "evt_1"}'
        header = signature_header(payload, self.SECRET, timestamp=1700000000)
        verify_signature(payload, header, self.SECRET, now=1700000010)

    def test_any_matching_v1_accepted(self):
        payload = b'{}'
        good = compute_signature(payload, self.SECRET, 1700000000)
        verify_signature(payload, f"t=1700000000,v1=deadbeef,v1={good}", self.SECRET, now=1700000000)

    def test_tampered_payload(self):
        header = signature_header(b'{"amount": 1}', self.SECRET, timestamp=1700000000)
        with pytest.raises(WebhookSignatureError, match="No signatures found"):
            verify_signature(b'{"amount": 1000}', header, self.SECRET, now=1700000000)

    def test_stale_timestamp(self):
        payload = b'{}'
        header = signature_header(payload, self.SECRET, timestamp=1700000000)
        with pytest.raises(WebhookSignatureError, match="tolerance"):
            verify_signature(payload, header, self.SECRET, tolerance=300, now=1700000301)

    @pytest.mark.parametrize("header", [None, "", "v1=abc", "t=abc,v1=abc", "t=1700000000"])
    def test_malformed_header(self, header):
        with pytest.raises(WebhookSignatureError):
            verify_signature(b'{}', header, self.SECRET, now=1700000000)

    def test_unconfigured_secret(self):
        with pytest.raises(WebhookSignatureError, match="not configured"):
            verify_signature(b'{}', "t=1,v1=abc", "")

    def test_signature_error_is_a_validation_error(self):
        assert issubclass(WebhookSignatureError, ValidationError)


class TestRepaymentEvents:
    """Test settlement through gateway payment events"""

    def test_payment_succeeded_settles_once(self, system, borrower, lender, funded_loan):
        row = system.repayments.next_pending(funded_loan.id)
        obj = {
            'id': 'pi_repay_1',
            'amount_received': 9808,
            'metadata': {'loanId': funded_loan.id, 'repaymentId': row.id},
        }

        assert deliver(system, 'evt_1', 'payment_intent.succeeded', obj) == {'received': True}
        settled = system.repayments.get(row.id)
        assert settled.status == RepaymentStatus.PAID
        assert settled.payment_source == "bank"
        assert settled.payment_intent_id == "pi_repay_1"
        lender_balance = system.wallet.get_balance(lender.id).available_cents
        assert lender_balance == 50000 + 9167

        # Redelivery of the same event is a no-op
        assert deliver(system, 'evt_1', 'payment_intent.succeeded', obj) == {'received': True, 'duplicate': True}
        # So is a second event for the same payment
        assert deliver(system, 'evt_2', 'checkout.session.completed', {
            'id': 'cs_1', 'amount_total': 9808, 'payment_intent': 'pi_repay_1',
            'metadata': {'kind': 'REPAYMENT', 'repaymentId': row.id},
        }) == {'received': True}

        assert system.wallet.get_balance(lender.id).available_cents == lender_balance
        assert system.wallet.get_balance(borrower.id).available_cents == 50000
        assert len(system.transactions.find(repayment_id=row.id, transaction_type="REPAYMENT")) == 1

    def test_payment_failed_records_reason(self, system, funded_loan):
        row = system.repayments.next_pending(funded_loan.id)
        deliver(system, 'evt_fail', 'payment_intent.payment_failed', {
            'id': 'pi_x',
            'metadata': {'repaymentId': row.id},
            'last_payment_error': {'message': 'Your card was declined.'},
        })
        stored = system.repayments.get(row.id)
        assert stored.status == RepaymentStatus.PENDING
        assert stored.failure_reason == "Your card was declined."

    def _processing_bank_payment(self, system, gateway, borrower, loan):
        system.users.set_default_payment_method(borrower.id, "pm_card")
        gateway.charge_status = "processing"
        row = system.repayment_service.pay_next(loan.id, borrower.id, "bank")
        assert row.status == RepaymentStatus.PENDING
        return row

    def test_succeeded_without_metadata_matches_stored_intent(self, system, gateway, borrower, lender, funded_loan):
        row = self._processing_bank_payment(system, gateway, borrower, funded_loan)
        deliver(system, 'evt_bare', 'payment_intent.succeeded', {
            'id': row.payment_intent_id, 'amount_received': 9808, 'metadata': {},
        })

        settled = system.repayments.get(row.id)
        assert settled.status == RepaymentStatus.PAID
        assert settled.payment_source == "bank"
        assert system.wallet.get_balance(lender.id).available_cents == 50000 + 9167
        assert system.wallet.get_balance(borrower.id).available_cents == 50000

    def test_failed_without_metadata_matches_stored_intent(self, system, gateway, borrower, funded_loan):
        row = self._processing_bank_payment(system, gateway, borrower, funded_loan)
        deliver(system, 'evt_bare_fail', 'payment_intent.payment_failed', {
            'id': row.payment_intent_id,
            'last_payment_error': {'message': 'Insufficient funds.'},
        })

        stored = system.repayments.get(row.id)
        assert stored.status == RepaymentStatus.PENDING
        assert stored.failure_reason == "Insufficient funds."

    def test_unknown_intent_without_metadata_ignored(self, system, funded_loan):
        assert deliver(system, 'evt_orphan', 'payment_intent.succeeded', {
            'id': 'pi_unknown', 'amount_received': 9808,
        }) == {'received': True}
        assert system.repayments.next_pending(funded_loan.id).installment_number == 1


class TestFundingEvents:
    """Test loan funding transitions driven by gateway events"""

    def test_transfer_created_completes_disbursement(self, system, borrower, accepted_loan):
        system.users.set_payout_account(borrower.id, "acct_b")
        system.lifecycle.disburse_via_gateway(accepted_loan.id)

        deliver(system, 'evt_tr', 'transfer.created', {
            'id': 'tr_1', 'metadata': {'loanId': accepted_loan.id},
        })
        loan = system.loans.get(accepted_loan.id)
        assert loan.status == LoanStatus.FUNDED
        assert system.wallet.get_balance(borrower.id).available_cents == 46500

        # A second transfer event for the same loan credits nothing more
        deliver(system, 'evt_tr_again', 'transfer.created', {
            'id': 'tr_1', 'transfer_group': loan.transfer_group,
        })
        assert system.wallet.get_balance(borrower.id).available_cents == 46500

    def test_bank_charge_funding_resolved_by_source_charge(self, system, borrower, accepted_loan):
        system.users.set_default_payment_method(borrower.id, "pm_card")
        system.lifecycle.fund_via_bank_charge(accepted_loan.id, borrower.id)

        deliver(system, 'evt_pi', 'payment_intent.succeeded', {
            'id': 'pi_1', 'latest_charge': 'ch_1', 'metadata': {'loanId': accepted_loan.id},
        })
        assert system.loans.get(accepted_loan.id).status == LoanStatus.PROCESSING

        deliver(system, 'evt_tr', 'transfer.created', {'id': 'tr_dest', 'source_transaction': 'ch_1'})
        loan = system.loans.get(accepted_loan.id)
        assert loan.status == LoanStatus.FUNDED
        assert loan.transfer_id == "tr_dest"

    def test_payment_processing_marks_loan(self, system, accepted_loan):
        deliver(system, 'evt_proc', 'payment_intent.processing', {
            'id': 'pi_ach', 'metadata': {'loanId': accepted_loan.id},
        })
        loan = system.loans.get(accepted_loan.id)
        assert loan.status == LoanStatus.PROCESSING
        assert loan.payment_intent_id == "pi_ach"

    def test_payment_failed_marks_loan_failed(self, system, accepted_loan):
        deliver(system, 'evt_f', 'payment_intent.payment_failed', {
            'id': 'pi_ach', 'metadata': {'loanId': accepted_loan.id},
        })
        loan = system.loans.get(accepted_loan.id)
        assert loan.status == LoanStatus.FAILED
        assert loan.failure_reason == "Payment failed"

    def test_stale_event_is_acknowledged(self, system, accepted_loan):
        system.lifecycle.mark_failed(accepted_loan.id, "declined")
        result = deliver(system, 'evt_late', 'transfer.created', {
            'id': 'tr_9', 'metadata': {'loanId': accepted_loan.id},
        })
        assert result == {'received': True}
        assert system.loans.get(accepted_loan.id).status == LoanStatus.FAILED
        assert system.webhook_events.is_processed('evt_late')


class TestAccountEvents:
    """Test payment method and super-user events"""

    def test_setup_intent_sets_default_payment_method(self, system, borrower):
        deliver(system, 'evt_si', 'setup_intent.succeeded', {
            'id': 'seti_1', 'payment_method': 'pm_new', 'metadata': {'userId': borrower.id},
        })
        assert system.users.get(borrower.id).default_payment_method_id == "pm_new"

    def test_setup_intent_by_customer(self, system, borrower):
        system.users.set_gateway_customer(borrower.id, "cus_known")
        deliver(system, 'evt_si2', 'setup_intent.succeeded', {
            'id': 'seti_2', 'payment_method': 'pm_other', 'customer': 'cus_known',
        })
        assert system.users.get(borrower.id).default_payment_method_id == "pm_other"

    def test_checkout_upgrades_user(self, system, borrower):
        deliver(system, 'evt_cs', 'checkout.session.completed', {
            'id': 'cs_sub', 'amount_total': 999, 'customer_email': 'BEA@example.com',
        })
        user = system.users.get(borrower.id)
        assert user.is_super_user is True
        assert user.role == UserRole.SUPERUSER
        assert user.super_user_since is not None

        rows = system.transactions.find(transaction_type="SUPERUSER_SUBSCRIPTION")
        assert len(rows) == 1
        assert rows[0].transaction_type == TransactionType.SUPERUSER_SUBSCRIPTION
        assert str(rows[0].amount) == "9.99"
        assert rows[0].from_user_id == borrower.id


class TestDeliveryHandling:
    """Test envelope handling"""

    def test_bad_signature_changes_nothing(self, system, borrower):
        payload = json.dumps({'id': 'evt_bad', 'type': 'setup_intent.succeeded', 'data': {'object': {
            'payment_method': 'pm_evil', 'metadata': {'userId': borrower.id}}}}).encode()
        header = signature_header(payload, "whsec_wrong")
        with pytest.raises(WebhookSignatureError):
            system.webhooks.handle(payload, header)
        assert system.users.get(borrower.id).default_payment_method_id is None
        assert not system.webhook_events.is_processed('evt_bad')

    def test_invalid_json(self, system):
        payload = b'not json'
        header = signature_header(payload, system.config.webhook_secret, int(time.time()))
        with pytest.raises(ValidationError, match="Invalid webhook payload"):
            system.webhooks.handle(payload, header)

    def test_unknown_type_acknowledged(self, system):
        assert deliver(system, 'evt_other', 'customer.updated', {'id': 'cus_1'}) == {'received': True}
        assert system.webhook_events.is_processed('evt_other')
