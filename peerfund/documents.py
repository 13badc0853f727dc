"""
Contract documents and notifications

Plain-text loan contract generated on acceptance, plus the notification
telling the borrower it was finalized. Both are written inside the caller's
unit of work so they appear together with the loan or not at all.
"""

from datetime import datetime
from decimal import Decimal

from .fees import BANKING_FEE_RATE, PLATFORM_FEE_RATE
from .models import Document, Loan, Notification, User, record_stamp
from .repositories import DocumentRepository, NotificationRepository


def _pct(rate: Decimal) -> str:
    return f"{rate * 100:.2f}%"


def render_contract(loan: Loan, borrower: User, lender: User, accepted_at: datetime,
                    platform_rate: Decimal = PLATFORM_FEE_RATE,
                    banking_rate: Decimal = BANKING_FEE_RATE) -> str:
    """Text of the loan agreement"""
    platform_line = (
        "WAIVED (Super User)" if borrower.is_super_user else f"{_pct(platform_rate)} of base"
    )
    effective = loan.interest_rate + loan.rate_spread
    return "\n".join([
        "Loan Contract Agreement",
        "",
        f"Borrower: {borrower.name or 'Borrower'}",
        f"Lender: {lender.name or 'Lender'}",
        f"Amount: ${loan.amount:,.2f}",
        f"Duration: {loan.term_months} months",
        f"Base Interest Rate: {loan.interest_rate}%",
        "Per installment additional fees:",
        f"- PeerFund: {platform_line}",
        f"- Banking: {_pct(banking_rate)} of base",
        "",
        f"Total Effective Interest Rate: {effective}%",
        f"Accepted At: {accepted_at.isoformat()}",
    ])


class ContractService:
    """Creates the contract document and borrower notification for a loan"""

    def __init__(self, documents: DocumentRepository, notifications: NotificationRepository,
                 platform_rate: Decimal = PLATFORM_FEE_RATE, banking_rate: Decimal = BANKING_FEE_RATE):
        self.documents = documents
        self.notifications = notifications
        self.platform_rate = platform_rate
        self.banking_rate = banking_rate

    def create_contract(self, loan: Loan, borrower: User, lender: User,
                        accepted_at: datetime) -> Document:
        document = Document(
            user_id=borrower.id,
            loan_id=loan.id,
            doc_type="contract",
            title=f"Loan Agreement with {lender.name}",
            file_name=f"loan_contract_{loan.id}.txt",
            content=render_contract(loan, borrower, lender, accepted_at,
                                    self.platform_rate, self.banking_rate),
            **record_stamp(accepted_at)
        )
        self.documents.save(document)
        self.notifications.save(Notification(
            user_id=borrower.id,
            notification_type="DOCUMENT",
            message=f"Your loan contract with {lender.name} has been finalized.",
            **record_stamp(accepted_at)
        ))
        return document

    def for_loan(self, loan_id: str):
        return self.documents.find(loan_id=loan_id)
