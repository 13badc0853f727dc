"""
FastAPI REST API Module

Thin HTTP surface over the lending core: marketplace, direct requests,
funding, repayments, wallets and the gateway webhook. The caller is
identified by the ``X-User-Id`` header; authentication happens upstream.
Runs on port 8090.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .errors import (
    AuthorizationError, GatewayError, InsufficientFunds, LendingError, NotFoundError,
    StateConflict, ValidationError
)
from .logging_config import get_logger
from .models import UserRole
from .money import to_cents
from .system import LendingSystem


logger = get_logger("peerfund.api")


# Pydantic models for API requests
class RegisterUserRequest(BaseModel):
    name: str
    email: str
    role: str = "BORROWER"
    is_super_user: bool = False
    lending_terms: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class LendingTermsRequest(BaseModel):
    lending_terms: Dict[str, Dict[str, Any]]


class AmountRequest(BaseModel):
    amount: Decimal = Field(..., description="Dollar amount")


class CreateLoanRequestRequest(BaseModel):
    amount: Decimal
    duration: int
    interest_rate: Decimal
    purpose: str = ""


class UpdateLoanRequestRequest(BaseModel):
    amount: Optional[Decimal] = None
    duration: Optional[int] = None
    interest_rate: Optional[Decimal] = None
    purpose: Optional[str] = None


class SubmitOfferRequest(BaseModel):
    interest_rate: Decimal
    message: str = ""


class FundBankRequest(BaseModel):
    payment_method_id: Optional[str] = None


class PayNextRequest(BaseModel):
    payment_source: str = "wallet"


class CreateDirectRequestRequest(BaseModel):
    lender_id: str
    amount: Decimal
    months: Optional[int] = None
    apr: Optional[Decimal] = None
    notes: str = ""


class CounterDirectRequestRequest(BaseModel):
    amount: Optional[Decimal] = None
    months: Optional[int] = None
    apr: Optional[Decimal] = None
    notes: Optional[str] = None


def _status_for(error: LendingError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (ValidationError, InsufficientFunds)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, AuthorizationError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, StateConflict):
        return status.HTTP_409_CONFLICT
    if isinstance(error, GatewayError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """
    Build the FastAPI application around a lending system.

    Args:
        system: Wired LendingSystem; built from configuration when omitted
    """
    system = system or LendingSystem.from_config()

    app = FastAPI(
        title="PeerFund Lending API",
        description="Peer-to-peer lending core: loans, wallets, repayments",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.system = system

    def get_system() -> LendingSystem:
        return app.state.system

    def get_caller(x_user_id: Optional[str] = Header(None)) -> str:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        return x_user_id

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        code = _status_for(exc)
        body: Dict[str, Any] = {"detail": str(exc)}
        if isinstance(exc, InsufficientFunds):
            body["detail"] = "Insufficient funds"
            # Balances are only disclosed to the wallet's owner
            if request.headers.get("x-user-id") == exc.user_id:
                body["required_cents"] = exc.required_cents
                body["available_cents"] = exc.available_cents
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content=body)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/")
    async def root():
        return {
            "system": "PeerFund Lending Core",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loan_requests": "/loan-requests",
                "direct_requests": "/direct-requests",
                "loans": "/loans",
                "wallet": "/wallet",
                "webhooks": "/webhooks/gateway",
            }
        }

    # Users
    @app.post("/users", status_code=status.HTTP_201_CREATED)
    async def register_user(request: RegisterUserRequest, system: LendingSystem = Depends(get_system)):
        try:
            role = UserRole(request.role.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown role {request.role}")
        user = system.users.register(request.name, request.email, role,
                                     request.is_super_user, request.lending_terms)
        return user.to_dict()

    @app.put("/users/me/lending-terms")
    async def set_lending_terms(request: LendingTermsRequest, caller: str = Depends(get_caller),
                                system: LendingSystem = Depends(get_system)):
        return system.users.set_lending_terms(caller, request.lending_terms).to_dict()

    # Wallet
    @app.get("/wallet")
    async def get_wallet(caller: str = Depends(get_caller), system: LendingSystem = Depends(get_system)):
        return system.wallet.get_balance(caller).to_dict()

    @app.get("/wallet/ledger")
    async def get_wallet_ledger(limit: int = 50, caller: str = Depends(get_caller),
                                system: LendingSystem = Depends(get_system)):
        return [entry.to_dict() for entry in system.wallet.get_ledger(caller, limit)]

    @app.post("/wallet/deposit")
    async def deposit(request: AmountRequest, caller: str = Depends(get_caller),
                      system: LendingSystem = Depends(get_system)):
        balance = system.wallet.deposit(caller, to_cents(request.amount))
        return {"available_cents": balance}

    @app.post("/wallet/withdraw")
    async def withdraw(request: AmountRequest, caller: str = Depends(get_caller),
                       system: LendingSystem = Depends(get_system)):
        balance = system.wallet.withdraw(caller, to_cents(request.amount))
        return {"available_cents": balance}

    # Marketplace
    @app.post("/loan-requests", status_code=status.HTTP_201_CREATED)
    async def create_loan_request(request: CreateLoanRequestRequest, caller: str = Depends(get_caller),
                                  system: LendingSystem = Depends(get_system)):
        loan_request = system.lifecycle.create_loan_request(
            caller, request.amount, request.duration, request.interest_rate, request.purpose
        )
        return loan_request.to_dict()

    @app.get("/loan-requests")
    async def list_open_requests(system: LendingSystem = Depends(get_system)):
        return [r.to_dict() for r in system.lifecycle.list_open_requests()]

    @app.put("/loan-requests/{request_id}")
    async def update_loan_request(request_id: str, request: UpdateLoanRequestRequest,
                                  caller: str = Depends(get_caller),
                                  system: LendingSystem = Depends(get_system)):
        updated = system.lifecycle.update_loan_request(
            request_id, caller, request.amount, request.duration,
            request.interest_rate, request.purpose
        )
        return updated.to_dict()

    @app.get("/loan-requests/{request_id}/offers")
    async def list_offers(request_id: str, system: LendingSystem = Depends(get_system)):
        return [o.to_dict() for o in system.lifecycle.list_offers(request_id)]

    @app.post("/loan-requests/{request_id}/offers", status_code=status.HTTP_201_CREATED)
    async def submit_offer(request_id: str, request: SubmitOfferRequest, caller: str = Depends(get_caller),
                           system: LendingSystem = Depends(get_system)):
        offer = system.lifecycle.submit_offer(request_id, caller, request.interest_rate, request.message)
        return offer.to_dict()

    @app.post("/offers/{offer_id}/accept", status_code=status.HTTP_201_CREATED)
    async def accept_offer(offer_id: str, caller: str = Depends(get_caller),
                           system: LendingSystem = Depends(get_system)):
        loan = system.lifecycle.accept_offer(offer_id, caller)
        return {"loan": loan.to_dict(), "message": "Offer accepted and contract generated"}

    # Loans
    @app.get("/loans")
    async def list_my_loans(caller: str = Depends(get_caller), system: LendingSystem = Depends(get_system)):
        return [loan.to_dict() for loan in system.lifecycle.list_loans_for_user(caller)]

    @app.get("/loans/{loan_id}")
    async def get_loan(loan_id: str, system: LendingSystem = Depends(get_system)):
        return system.lifecycle.get_loan(loan_id).to_dict()

    @app.get("/loans/{loan_id}/schedule")
    async def get_schedule(loan_id: str, system: LendingSystem = Depends(get_system)):
        return [row.to_dict() for row in system.lifecycle.get_schedule(loan_id)]

    @app.post("/loans/{loan_id}/fund")
    async def fund_from_wallet(loan_id: str, caller: str = Depends(get_caller),
                               system: LendingSystem = Depends(get_system)):
        return system.lifecycle.fund_from_wallet(loan_id, caller).to_dict()

    @app.post("/loans/{loan_id}/disburse")
    async def disburse(loan_id: str, system: LendingSystem = Depends(get_system)):
        return system.lifecycle.disburse_via_gateway(loan_id).to_dict()

    @app.post("/loans/{loan_id}/fund-bank")
    async def fund_via_bank(loan_id: str, request: FundBankRequest, caller: str = Depends(get_caller),
                            system: LendingSystem = Depends(get_system)):
        loan = system.lifecycle.fund_via_bank_charge(loan_id, caller, request.payment_method_id)
        return loan.to_dict()

    @app.get("/loans/{loan_id}/next-repayment")
    async def quote_next(loan_id: str, system: LendingSystem = Depends(get_system)):
        quote = system.repayment_service.quote_next(loan_id)
        if quote is None:
            raise HTTPException(status_code=404, detail="No pending repayments")
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in quote.items()}

    @app.post("/loans/{loan_id}/repayments")
    async def make_repayment(loan_id: str, request: AmountRequest, caller: str = Depends(get_caller),
                             system: LendingSystem = Depends(get_system)):
        return system.repayment_service.make_repayment(loan_id, caller, request.amount).to_dict()

    @app.post("/loans/{loan_id}/pay-next")
    async def pay_next(loan_id: str, request: PayNextRequest, caller: str = Depends(get_caller),
                       system: LendingSystem = Depends(get_system)):
        repayment = system.repayment_service.pay_next(loan_id, caller, request.payment_source)
        return repayment.to_dict()

    # Direct requests
    @app.post("/direct-requests", status_code=status.HTTP_201_CREATED)
    async def create_direct_request(request: CreateDirectRequestRequest, caller: str = Depends(get_caller),
                                    system: LendingSystem = Depends(get_system)):
        created = system.direct_requests.create(
            caller, request.lender_id, request.amount, request.months, request.apr, request.notes
        )
        return {"id": created.id, "request": created.to_dict()}

    @app.get("/direct-requests")
    async def list_direct_requests(role: str = "borrower", caller: str = Depends(get_caller),
                                   system: LendingSystem = Depends(get_system)):
        items = system.direct_requests.list_for_user(caller, role)
        return {"role": role.lower(), "items": [r.to_dict() for r in items]}

    @app.get("/direct-requests/open/mine")
    async def list_open_direct_requests(caller: str = Depends(get_caller),
                                        system: LendingSystem = Depends(get_system)):
        return [r.to_dict() for r in system.direct_requests.list_open_for_user(caller)]

    @app.get("/direct-requests/{request_id}")
    async def get_direct_request(request_id: str, caller: str = Depends(get_caller),
                                 system: LendingSystem = Depends(get_system)):
        return system.direct_requests.get(request_id, caller).to_dict()

    @app.post("/direct-requests/{request_id}/counter")
    async def counter_direct_request(request_id: str, request: CounterDirectRequestRequest,
                                     caller: str = Depends(get_caller),
                                     system: LendingSystem = Depends(get_system)):
        updated = system.direct_requests.counter(
            request_id, caller, request.amount, request.months, request.apr, request.notes
        )
        return {"ok": True, "request": updated.to_dict()}

    @app.post("/direct-requests/{request_id}/approve")
    async def approve_direct_request(request_id: str, caller: str = Depends(get_caller),
                                     system: LendingSystem = Depends(get_system)):
        loan = system.direct_requests.approve(request_id, caller)
        return {"ok": True, "loanId": loan.id}

    @app.post("/direct-requests/{request_id}/decline")
    async def decline_direct_request(request_id: str, caller: str = Depends(get_caller),
                                     system: LendingSystem = Depends(get_system)):
        system.direct_requests.decline(request_id, caller)
        return {"ok": True}

    # Gateway webhook; the raw body is needed for signature verification
    @app.post("/webhooks/gateway")
    async def gateway_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                              system: LendingSystem = Depends(get_system)):
        payload = await request.body()
        return system.webhooks.handle(payload, stripe_signature)

    # Audit
    @app.get("/audit/integrity")
    async def audit_integrity(system: LendingSystem = Depends(get_system)):
        return system.audit_trail.verify_integrity()

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    from .config import get_config
    from .logging_config import setup_logging

    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)
    uvicorn.run(
        create_app(LendingSystem.from_config(cfg)),
        host=host,
        port=port,
        log_level="debug" if debug else "info"
    )


def main():
    from .config import get_config

    cfg = get_config()
    run_server(cfg.api_host, cfg.api_port)


if __name__ == "__main__":
    main()
