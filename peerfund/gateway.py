"""
Payment Gateway Module

Contract the lending core expects from the external payment processor, and
an httpx-based adapter speaking a Stripe-style REST API (form-encoded,
bearer key, idempotency keys).
"""

import httpx
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import GatewayError, GatewayTimeout
from .models import User
from .users import UserDirectory

logger = logging.getLogger("peerfund.gateway")


@dataclass
class TransferResult:
    """Outcome of a transfer to a payout-capable account"""
    transfer_id: str
    amount_cents: int
    destination: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChargeResult:
    """Outcome of an off-session charge"""
    payment_intent_id: str
    status: str  # succeeded, processing, requires_action, ...
    amount_cents: int
    charge_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def pending(self) -> bool:
        return self.status == "processing"


class PaymentGateway(ABC):
    """Abstract payment gateway"""

    @abstractmethod
    def create_customer(self, user: User) -> str:
        """Create a customer for charges; returns its id"""
        pass

    @abstractmethod
    def create_payout_account(self, user: User) -> str:
        """Create a payout-capable account; returns its id"""
        pass

    @abstractmethod
    def create_transfer(
        self,
        amount_cents: int,
        destination_account: str,
        source_account: Optional[str] = None,
        fee_cents: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        transfer_group: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> TransferResult:
        """Move funds to a payout-capable account"""
        pass

    @abstractmethod
    def charge_off_session(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        metadata: Optional[Dict[str, str]] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None
    ) -> ChargeResult:
        """Charge a saved payment method without the customer present"""
        pass


def ensure_customer(gateway: PaymentGateway, directory: UserDirectory, user: User) -> str:
    """Return the user's gateway customer id, creating and storing one if missing"""
    if user.gateway_customer_id:
        return user.gateway_customer_id
    customer_id = gateway.create_customer(user)
    directory.set_gateway_customer(user.id, customer_id)
    user.gateway_customer_id = customer_id
    return customer_id


def ensure_payout_account(gateway: PaymentGateway, directory: UserDirectory, user: User) -> str:
    """Return the user's payout account id, creating and storing one if missing"""
    if user.payout_account_id:
        return user.payout_account_id
    account_id = gateway.create_payout_account(user)
    directory.set_payout_account(user.id, account_id)
    user.payout_account_id = account_id
    return account_id


def _flatten(params: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """Flatten nested dicts into bracketed form keys, e.g. metadata[loanId]"""
    flat: Dict[str, str] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class HttpPaymentGateway(PaymentGateway):
    """REST client for a Stripe-compatible payment API"""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        currency: str = "usd",
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def _post(self, path: str, params: Dict[str, Any], idempotency_key: Optional[str] = None,
              account: Optional[str] = None) -> Dict[str, Any]:
        headers = dict(self._headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        if account:
            headers["Stripe-Account"] = account

        try:
            response = self._client.post(path, data=_flatten(params), headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Gateway timeout on {path}: {e}")
            raise GatewayTimeout(f"Payment gateway timed out on {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway connection failed on {path}: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            message = error.get("message") or f"Payment gateway returned {response.status_code}"
            logger.warning(f"Gateway error on {path}: {response.status_code} {message}")
            raise GatewayError(message, status_code=response.status_code, code=error.get("code"))
        return body

    def create_customer(self, user: User) -> str:
        body = self._post("/v1/customers", {
            "email": user.email,
            "name": user.name,
            "metadata": {"userId": user.id},
        }, idempotency_key=f"customer_{user.id}")
        return body["id"]

    def create_payout_account(self, user: User) -> str:
        body = self._post("/v1/accounts", {
            "type": "express",
            "email": user.email,
            "capabilities": {"transfers": {"requested": True}},
            "metadata": {"userId": user.id},
        }, idempotency_key=f"account_{user.id}")
        return body["id"]

    def create_transfer(self, amount_cents, destination_account, source_account=None, fee_cents=None,
                        metadata=None, transfer_group=None, idempotency_key=None) -> TransferResult:
        meta = dict(metadata or {})
        if fee_cents is not None:
            meta.setdefault("platformFeeCents", str(fee_cents))
        body = self._post("/v1/transfers", {
            "amount": amount_cents,
            "currency": self.currency,
            "destination": destination_account,
            "transfer_group": transfer_group,
            "metadata": meta,
        }, idempotency_key=idempotency_key, account=source_account)
        return TransferResult(
            transfer_id=body["id"],
            amount_cents=int(body.get("amount", amount_cents)),
            destination=body.get("destination", destination_account),
            raw=body,
        )

    def charge_off_session(self, customer_id, payment_method_id, amount_cents, metadata=None,
                           destination_account=None, application_fee_cents=None,
                           idempotency_key=None) -> ChargeResult:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": True,
            "confirm": True,
            "metadata": metadata or {},
        }
        if destination_account:
            params["transfer_data"] = {"destination": destination_account}
            if application_fee_cents:
                params["application_fee_amount"] = application_fee_cents
        body = self._post("/v1/payment_intents", params, idempotency_key=idempotency_key)
        return ChargeResult(
            payment_intent_id=body["id"],
            status=body.get("status", "unknown"),
            amount_cents=int(body.get("amount", amount_cents)),
            charge_id=body.get("latest_charge"),
            raw=body,
        )

    def close(self) -> None:
        self._client.close()
