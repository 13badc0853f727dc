"""
User Directory

Read access to the identity fields the lending core needs (super-user flag,
lending terms) and the few writes it owns: gateway identifiers, the default
payment method and the super-user upgrade.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from .errors import ValidationError
from .models import User, UserRole, record_stamp
from .money import to_decimal
from .repositories import UserRepository


logger = logging.getLogger("peerfund.users")


def normalize_lending_terms(terms: Dict[Any, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Key tiers by whole-dollar string and coerce rates to Decimal strings"""
    normalized = {}
    for amount, tier in (terms or {}).items():
        key = str(int(to_decimal(amount)))
        rate = tier.get('rate')
        normalized[key] = {
            'enabled': bool(tier.get('enabled', False)),
            'rate': str(to_decimal(rate)) if rate is not None else None,
        }
    return normalized


class UserDirectory:
    """Thin service over the user repository"""

    def __init__(self, users: UserRepository):
        self.users = users

    def get(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def require(self, user_id: str) -> User:
        return self.users.require(user_id)

    def register(self, name: str, email: str, role: UserRole = UserRole.BORROWER,
                 is_super_user: bool = False, lending_terms: Optional[Dict] = None,
                 user_id: Optional[str] = None) -> User:
        """Create a user record (identity itself is owned elsewhere)"""
        if not email or "@" not in email:
            raise ValidationError("A valid email is required")
        user = User(
            name=name,
            email=email.lower(),
            role=role,
            is_super_user=is_super_user,
            lending_terms=normalize_lending_terms(lending_terms or {}),
            **record_stamp()
        )
        if user_id:
            user.id = user_id
        return self.users.save(user)

    def set_lending_terms(self, user_id: str, terms: Dict[Any, Dict[str, Any]]) -> User:
        user = self.require(user_id)
        user.lending_terms = normalize_lending_terms(terms)
        return self.users.save(user)

    def tier_for(self, lender: User, amount: Decimal) -> Optional[Dict[str, Any]]:
        """Lender's tier entry for an amount, or None when the amount is not offered"""
        amount = to_decimal(amount)
        if amount != amount.to_integral_value():
            return None
        return lender.lending_terms.get(str(int(amount)))

    def set_gateway_customer(self, user_id: str, customer_id: str) -> User:
        user = self.require(user_id)
        user.gateway_customer_id = customer_id
        return self.users.save(user)

    def set_payout_account(self, user_id: str, account_id: str) -> User:
        user = self.require(user_id)
        user.payout_account_id = account_id
        return self.users.save(user)

    def set_default_payment_method(self, user_id: str, payment_method_id: str) -> User:
        user = self.require(user_id)
        user.default_payment_method_id = payment_method_id
        logger.info(f"Default payment method updated for user {user_id}")
        return self.users.save(user)

    def mark_super_user(self, user_id: str, since: Optional[datetime] = None) -> User:
        user = self.require(user_id)
        user.is_super_user = True
        user.role = UserRole.SUPERUSER
        user.super_user_since = since or datetime.now(timezone.utc)
        return self.users.save(user)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.users.find_by_email(email)

    def find_by_gateway_customer(self, customer_id: str) -> Optional[User]:
        matches = self.users.find(gateway_customer_id=customer_id)
        return matches[0] if matches else None
