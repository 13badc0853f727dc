"""
Test suite for the HTTP payment gateway adapter
"""

from urllib.parse import parse_qs

import httpx
import pytest

from peerfund.errors import GatewayError, GatewayTimeout
from peerfund.gateway import HttpPaymentGateway, ensure_customer, ensure_payout_account
from peerfund.models import UserRole


BASE_URL = "https://gateway.test"


def make_gateway(handler):
    client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpPaymentGateway(api_key="sk_test_123", base_url=BASE_URL, client=client)


def form(request):
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


class TestHttpPaymentGateway:
    """Test request shaping and error mapping"""

    def setup_method(self):
        self.requests = []

    def test_create_transfer(self):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(200, json={'id': 'tr_123', 'amount': 46500, 'destination': 'acct_1'})

        gateway = make_gateway(handler)
        result = gateway.create_transfer(
            46500, "acct_1", fee_cents=3500, metadata={'loanId': 'loan-1'},
            transfer_group="loan_loan-1", idempotency_key="disburse_loan-1"
        )

        assert result.transfer_id == "tr_123"
        assert result.amount_cents == 46500
        request = self.requests[0]
        assert request.url.path == "/v1/transfers"
        assert request.headers["Authorization"] == "Bearer sk_test_123"
        assert request.headers["Idempotency-Key"] == "disburse_loan-1"
        body = form(request)
        assert body["amount"] == "46500"
        assert body["currency"] == "usd"
        assert body["metadata[loanId]"] == "loan-1"
        assert body["metadata[platformFeeCents]"] == "3500"
        assert body["transfer_group"] == "loan_loan-1"

    def test_charge_off_session(self):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(200, json={
                'id': 'pi_1', 'status': 'processing', 'amount': 9808, 'latest_charge': 'ch_1'
            })

        gateway = make_gateway(handler)
        result = gateway.charge_off_session(
            "cus_1", "pm_1", 9808, metadata={'repaymentId': 'r1'},
            destination_account="acct_lender", application_fee_cents=1000
        )

        assert result.pending
        assert not result.succeeded
        assert result.charge_id == "ch_1"
        body = form(self.requests[0])
        assert body["off_session"] == "true"
        assert body["confirm"] == "true"
        assert body["transfer_data[destination]"] == "acct_lender"
        assert body["application_fee_amount"] == "1000"
        assert "Idempotency-Key" not in self.requests[0].headers

    def test_error_response(self):
        def handler(request):
            return httpx.Response(402, json={'error': {'message': 'Your card was declined.', 'code': 'card_declined'}})

        gateway = make_gateway(handler)
        with pytest.raises(GatewayError, match="declined") as exc_info:
            gateway.charge_off_session("cus_1", "pm_1", 100)
        assert exc_info.value.status_code == 402
        assert exc_info.value.code == "card_declined"

    def test_non_json_error(self):
        gateway = make_gateway(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(GatewayError, match="503"):
            gateway.create_transfer(100, "acct_1")

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        gateway = make_gateway(handler)
        with pytest.raises(GatewayTimeout):
            gateway.create_transfer(100, "acct_1")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = make_gateway(handler)
        with pytest.raises(GatewayError) as exc_info:
            gateway.create_transfer(100, "acct_1")
        assert not isinstance(exc_info.value, GatewayTimeout)


class TestEnsureAccounts:
    """Test lazy creation of gateway identifiers"""

    def test_customer_created_once(self, system, gateway, borrower):
        first = ensure_customer(gateway, system.users, borrower)
        again = ensure_customer(gateway, system.users, system.users.get(borrower.id))
        assert first == again == "cus_1"
        assert len(gateway.customers) == 1

    def test_payout_account_stored(self, system, gateway):
        lender = system.users.register("Payout Lender", "payout@example.com", UserRole.LENDER)
        account = ensure_payout_account(gateway, system.users, lender)
        assert system.users.get(lender.id).payout_account_id == account
