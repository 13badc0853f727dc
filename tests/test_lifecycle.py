"""
Test suite for the loan lifecycle: marketplace, acceptance and funding
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from peerfund.errors import (
    AuthorizationError, GatewayError, GatewayTimeout, InsufficientFunds,
    NotFoundError, StateConflict, ValidationError
)
from peerfund.lifecycle import ALLOWED_TRANSITIONS, parse_months, transfer_group_for
from peerfund.models import (
    LoanRequestStatus, LoanStatus, OfferStatus, RepaymentStatus, TransactionType, UserRole
)


ACCEPTED_AT = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestLoanRequests:
    """Test marketplace requests and offers"""

    def test_create_request(self, system, borrower):
        request = system.lifecycle.create_loan_request(borrower.id, "750", "12", "9.5", "  Tuition ")
        assert request.amount == Decimal('750.00')
        assert request.duration == 12
        assert request.interest_rate == Decimal('9.5')
        assert request.purpose == "Tuition"
        assert request.status == LoanRequestStatus.OPEN
        assert system.lifecycle.list_open_requests()[0].id == request.id

    @pytest.mark.parametrize("amount", [0, -10, "abc", None, 250001])
    def test_invalid_amount(self, system, borrower, amount):
        with pytest.raises(ValidationError):
            system.lifecycle.create_loan_request(borrower.id, amount, 6, 8)

    @pytest.mark.parametrize("duration", [0, -1, 1.5, "six", True])
    def test_invalid_duration(self, system, borrower, duration):
        with pytest.raises(ValidationError):
            system.lifecycle.create_loan_request(borrower.id, 500, duration, 8)

    def test_parse_months_accepts_whole_numbers(self):
        assert parse_months(6) == 6
        assert parse_months("6") == 6
        assert parse_months(6.0) == 6

    def test_unknown_borrower(self, system):
        with pytest.raises(NotFoundError):
            system.lifecycle.create_loan_request("ghost", 500, 6, 8)

    def test_update_request(self, system, borrower, lender):
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 8)
        updated = system.lifecycle.update_loan_request(request.id, borrower.id, amount=600, duration=9)
        assert updated.amount == Decimal('600.00')
        assert updated.duration == 9

        with pytest.raises(AuthorizationError):
            system.lifecycle.update_loan_request(request.id, lender.id, amount=700)

    def test_offer_on_own_request_rejected(self, system, borrower):
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 8)
        with pytest.raises(AuthorizationError, match="your own request"):
            system.lifecycle.submit_offer(request.id, borrower.id, 8)

    def test_offer_copies_request_terms(self, system, borrower, lender):
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 10)
        offer = system.lifecycle.submit_offer(request.id, lender.id, 7, "x" * 5000)
        assert offer.amount == Decimal('500.00')
        assert offer.duration == 6
        assert offer.interest_rate == Decimal('7')
        assert len(offer.message) == 1000
        assert [o.id for o in system.lifecycle.list_offers(request.id)] == [offer.id]


class TestAcceptOffer:
    """Test offer acceptance and loan origination"""

    def test_accepted_loan_terms(self, system, borrower, lender, accepted_loan):
        loan = accepted_loan
        assert loan.status == LoanStatus.ACCEPTED
        assert loan.borrower_id == borrower.id
        assert loan.lender_id == lender.id
        assert loan.principal_cents == 50000
        assert loan.interest_rate == Decimal('8')
        assert loan.interest_rate_bps == 800
        assert loan.rate_spread == Decimal('2')

    def test_schedule_has_six_pending_rows(self, system, accepted_loan):
        rows = system.lifecycle.get_schedule(accepted_loan.id)
        assert len(rows) == 6
        assert [r.installment_number for r in rows] == [1, 2, 3, 4, 5, 6]
        for row in rows:
            assert row.status == RepaymentStatus.PENDING
            assert row.base_payment == Decimal('91.67')
            assert row.peerfund_fee == Decimal('1.83')
            assert row.banking_fee == Decimal('4.58')
            assert row.total_charged == row.base_payment + row.banking_fee + row.peerfund_fee
            assert row.amount_due == Decimal('98.08')
        assert rows[0].due_date.month == 2
        assert rows[0].due_date.day == ACCEPTED_AT.day

    def test_super_user_borrower_schedule(self, system, borrower, lender):
        system.users.mark_super_user(borrower.id)
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 8)
        offer = system.lifecycle.submit_offer(request.id, lender.id, 8)
        loan = system.lifecycle.accept_offer(offer.id, borrower.id, now=ACCEPTED_AT)
        for row in system.lifecycle.get_schedule(loan.id):
            assert row.peerfund_fee == Decimal('0')
            assert row.total_charged == Decimal('96.25')

    def test_request_closed_and_siblings_rejected(self, system, borrower, lender):
        other = system.users.register("Other Lender", "other@example.com", UserRole.LENDER)
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 8)
        chosen = system.lifecycle.submit_offer(request.id, lender.id, 8)
        sibling = system.lifecycle.submit_offer(request.id, other.id, 9)

        system.lifecycle.accept_offer(chosen.id, borrower.id, now=ACCEPTED_AT)

        assert system.offers.get(chosen.id).status == OfferStatus.ACCEPTED
        assert system.offers.get(chosen.id).accepted_at == ACCEPTED_AT
        assert system.offers.get(sibling.id).status == OfferStatus.REJECTED
        closed = system.loan_requests.get(request.id)
        assert closed.status == LoanRequestStatus.CLOSED
        assert closed.offer_accepted is True

    def test_contract_document_created(self, system, borrower, accepted_loan):
        documents = system.documents.find(loan_id=accepted_loan.id)
        assert len(documents) == 1
        assert documents[0].user_id == borrower.id

    def test_only_borrower_may_accept(self, system, borrower, lender):
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 8)
        offer = system.lifecycle.submit_offer(request.id, lender.id, 8)
        with pytest.raises(AuthorizationError, match="Not authorized"):
            system.lifecycle.accept_offer(offer.id, lender.id)

    def test_second_acceptance_conflicts(self, system, borrower, lender):
        other = system.users.register("Other Lender", "other@example.com", UserRole.LENDER)
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 8)
        first = system.lifecycle.submit_offer(request.id, lender.id, 8)
        second = system.lifecycle.submit_offer(request.id, other.id, 9)
        system.lifecycle.accept_offer(first.id, borrower.id)

        with pytest.raises(StateConflict, match="not open"):
            system.lifecycle.accept_offer(second.id, borrower.id)
        assert len(system.loans.find(loan_request_id=request.id)) == 1

    def test_failure_leaves_nothing_behind(self, system, borrower, lender, monkeypatch):
        request = system.lifecycle.create_loan_request(borrower.id, 500, 6, 8)
        offer = system.lifecycle.submit_offer(request.id, lender.id, 8)

        def broken_schedule(loan, borrower, start):
            raise RuntimeError("schedule write failed")

        monkeypatch.setattr(system.lifecycle, "_create_schedule", broken_schedule)
        with pytest.raises(RuntimeError):
            system.lifecycle.accept_offer(offer.id, borrower.id)

        assert system.offers.get(offer.id).status == OfferStatus.OPEN
        assert system.loan_requests.get(request.id).status == LoanRequestStatus.OPEN
        assert system.loans.all() == []
        assert system.repayments.all() == []

    def test_loan_visible_to_both_parties(self, system, borrower, lender, accepted_loan):
        assert [l.id for l in system.lifecycle.list_loans_for_user(borrower.id)] == [accepted_loan.id]
        assert [l.id for l in system.lifecycle.list_loans_for_user(lender.id)] == [accepted_loan.id]


class TestFundFromWallet:
    """Test internal wallet funding"""

    def test_funding_moves_principal(self, system, borrower, lender, accepted_loan):
        system.wallet.deposit(lender.id, 60000)
        loan = system.lifecycle.fund_from_wallet(accepted_loan.id, lender.id)

        assert loan.status == LoanStatus.FUNDED
        assert loan.disbursed_amount == Decimal('500.00')
        assert loan.funding_source == "wallet"
        assert loan.funded_at is not None
        assert system.wallet.get_balance(lender.id).available_cents == 10000
        assert system.wallet.get_balance(borrower.id).available_cents == 50000

        reasons = [e.reason for e in system.wallet.get_ledger(lender.id)]
        assert "LOAN_FUNDED_LENDER_DEBIT" in reasons

    def test_disbursement_transaction_written(self, system, funded_loan):
        rows = system.transactions.find(loan_id=funded_loan.id)
        assert [r.transaction_type for r in rows] == [TransactionType.DISBURSEMENT]
        assert rows[0].amount == Decimal('500.00')

    def test_insufficient_funds_rolls_back(self, system, borrower, lender, accepted_loan):
        system.wallet.deposit(lender.id, 49999)
        with pytest.raises(InsufficientFunds):
            system.lifecycle.fund_from_wallet(accepted_loan.id, lender.id)
        assert system.loans.get(accepted_loan.id).status == LoanStatus.ACCEPTED
        assert system.wallet.get_balance(lender.id).available_cents == 49999
        assert system.wallet.get_balance(borrower.id).available_cents == 0

    def test_only_lender_may_fund(self, system, borrower, accepted_loan):
        with pytest.raises(AuthorizationError):
            system.lifecycle.fund_from_wallet(accepted_loan.id, borrower.id)

    def test_double_funding_conflicts(self, system, lender, funded_loan):
        with pytest.raises(StateConflict, match="already funded"):
            system.lifecycle.fund_from_wallet(funded_loan.id, lender.id)
        assert system.wallet.get_balance(lender.id).available_cents == 50000


class TestGatewayDisbursement:
    """Test gateway transfer disbursement and its webhook-driven completion"""

    def _with_payout(self, system, borrower):
        system.users.set_payout_account(borrower.id, "acct_borrower")

    def test_disburse_marks_processing(self, system, gateway, borrower, accepted_loan):
        self._with_payout(system, borrower)
        loan = system.lifecycle.disburse_via_gateway(accepted_loan.id)

        assert loan.status == LoanStatus.PROCESSING
        assert loan.transfer_id == "tr_1"
        assert loan.transfer_group == transfer_group_for(loan.id)
        assert loan.platform_fee_cents == 3500
        transfer = gateway.transfers[0]
        assert transfer['amount_cents'] == 46500
        assert transfer['destination'] == "acct_borrower"
        assert transfer['metadata']['loanId'] == loan.id

    def test_complete_funding_credits_wallets(self, system, borrower, accepted_loan):
        self._with_payout(system, borrower)
        system.lifecycle.disburse_via_gateway(accepted_loan.id)
        loan = system.lifecycle.complete_funding(accepted_loan.id)

        assert loan.status == LoanStatus.FUNDED
        assert loan.disbursed_amount == Decimal('465.00')
        assert system.wallet.get_balance(borrower.id).available_cents == 46500
        assert system.wallet.get_balance("platform").available_cents == 3500

        # Repeated confirmation changes nothing
        system.lifecycle.complete_funding(accepted_loan.id)
        assert system.wallet.get_balance(borrower.id).available_cents == 46500

    def test_timeout_leaves_processing(self, system, gateway, borrower, accepted_loan):
        self._with_payout(system, borrower)
        gateway.fail_with = GatewayTimeout("timed out")
        with pytest.raises(GatewayTimeout):
            system.lifecycle.disburse_via_gateway(accepted_loan.id)
        assert system.loans.get(accepted_loan.id).status == LoanStatus.PROCESSING

    def test_rejection_marks_failed(self, system, gateway, borrower, accepted_loan):
        self._with_payout(system, borrower)
        gateway.fail_with = GatewayError("card declined", status_code=402)
        with pytest.raises(GatewayError):
            system.lifecycle.disburse_via_gateway(accepted_loan.id)
        loan = system.loans.get(accepted_loan.id)
        assert loan.status == LoanStatus.FAILED
        assert loan.failure_reason == "card declined"

    def test_requires_payout_account(self, system, accepted_loan):
        with pytest.raises(ValidationError, match="payout account"):
            system.lifecycle.disburse_via_gateway(accepted_loan.id)
        assert system.loans.get(accepted_loan.id).status == LoanStatus.ACCEPTED

    def test_failed_loan_is_terminal(self, system, accepted_loan):
        system.lifecycle.mark_failed(accepted_loan.id, "declined")
        with pytest.raises(StateConflict):
            system.lifecycle.complete_funding(accepted_loan.id)
        assert ALLOWED_TRANSITIONS[LoanStatus.FAILED] == set()


class TestBankChargeFunding:
    """Test borrower-initiated destination charge funding"""

    def test_charge_routes_to_lender(self, system, gateway, borrower, lender, accepted_loan):
        system.users.set_default_payment_method(borrower.id, "pm_card")
        loan = system.lifecycle.fund_via_bank_charge(accepted_loan.id, borrower.id)

        assert loan.status == LoanStatus.PROCESSING
        assert loan.funding_source == "bank_charge"
        assert loan.payment_intent_id == "pi_1"
        charge = gateway.charges[0]
        assert charge['amount_cents'] == 50000
        assert charge['application_fee_cents'] == 1000
        assert gateway.accounts[charge['destination']] == lender.id
        assert system.users.get(borrower.id).gateway_customer_id == charge['customer']

    def test_completion_moves_no_wallet_money(self, system, borrower, lender, accepted_loan):
        system.users.set_default_payment_method(borrower.id, "pm_card")
        system.lifecycle.fund_via_bank_charge(accepted_loan.id, borrower.id)
        loan = system.lifecycle.complete_funding(accepted_loan.id)

        assert loan.status == LoanStatus.FUNDED
        assert loan.disbursed_amount == Decimal('490.00')
        assert system.wallet.get_balance(borrower.id).available_cents == 0

    def test_requires_payment_method(self, system, borrower, accepted_loan):
        with pytest.raises(ValidationError, match="No payment method"):
            system.lifecycle.fund_via_bank_charge(accepted_loan.id, borrower.id)

    def test_only_borrower(self, system, lender, accepted_loan):
        with pytest.raises(AuthorizationError):
            system.lifecycle.fund_via_bank_charge(accepted_loan.id, lender.id, "pm_card")

    def test_declined_charge_marks_failed(self, system, gateway, borrower, accepted_loan):
        system.users.set_default_payment_method(borrower.id, "pm_card")
        gateway.charge_status = "requires_payment_method"
        with pytest.raises(GatewayError) as exc_info:
            system.lifecycle.fund_via_bank_charge(accepted_loan.id, borrower.id)

        assert exc_info.value.code == "requires_payment_method"
        loan = system.loans.get(accepted_loan.id)
        assert loan.status == LoanStatus.FAILED
        assert loan.failure_reason == "Payment requires_payment_method"
        assert loan.payment_intent_id == "pi_1"

    def test_processing_charge_stays_processing(self, system, gateway, borrower, accepted_loan):
        system.users.set_default_payment_method(borrower.id, "pm_card")
        gateway.charge_status = "processing"
        loan = system.lifecycle.fund_via_bank_charge(accepted_loan.id, borrower.id)
        assert loan.status == LoanStatus.PROCESSING
