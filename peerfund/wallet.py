"""
Wallet Ledger Module

Per-user available/pending cent balances plus an immutable, append-only
ledger of credits and debits. Every balance change goes through
credit_wallet/debit_wallet: the wallet row is re-read inside the unit of
work, written with a compare-and-swap on its version, and a ledger entry
carrying the resulting balance is appended in the same unit.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .errors import InsufficientFunds, StateConflict, ValidationError
from .logging_config import log_action
from .models import (
    EntryDirection, Wallet, WalletEntryType, WalletLedgerEntry, record_stamp
)
from .repositories import WalletRepository
from .storage import StorageInterface


logger = logging.getLogger("peerfund.wallet")


class _WalletContention(Exception):
    """Compare-and-swap lost against a concurrent writer"""


class WalletLedger:
    """
    Wallet balances and their ledger.

    The platform fee account is an ordinary wallet owned by
    ``platform_user_id``, injected by the caller.
    """

    def __init__(
        self,
        storage: StorageInterface,
        wallets: WalletRepository,
        platform_user_id: str,
        cas_retries: int = 5
    ):
        self.storage = storage
        self.wallets = wallets
        self.platform_user_id = platform_user_id
        self.cas_retries = max(1, cas_retries)

    def get_or_create_wallet(self, user_id: str) -> Wallet:
        """Return the user's wallet, creating an empty one on first use"""
        wallet = self.wallets.by_user(user_id)
        if wallet:
            return wallet
        wallet = Wallet(user_id=user_id, **record_stamp())
        wallet.id = self.wallets.wallet_id_for(user_id)
        if self.wallets.create_if_absent(wallet):
            logger.info(f"Created wallet for user {user_id}")
        return self.wallets.by_user(user_id)

    def get_balance(self, user_id: str) -> Wallet:
        return self.get_or_create_wallet(user_id)

    def credit_wallet(
        self,
        user_id: str,
        amount_cents: int,
        reason: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        entry_type: WalletEntryType = WalletEntryType.ADJUSTMENT,
        metadata: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Credit a wallet.

        Returns:
            The wallet's new available balance in cents
        """
        return self._apply(user_id, amount_cents, EntryDirection.CREDIT, reason,
                           reference_type, reference_id, entry_type, metadata)

    def debit_wallet(
        self,
        user_id: str,
        amount_cents: int,
        reason: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        entry_type: WalletEntryType = WalletEntryType.ADJUSTMENT,
        metadata: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Debit a wallet.

        Returns:
            The wallet's new available balance in cents

        Raises:
            InsufficientFunds: If available balance is below amount_cents;
                nothing is written in that case
        """
        return self._apply(user_id, amount_cents, EntryDirection.DEBIT, reason,
                           reference_type, reference_id, entry_type, metadata)

    def credit_platform(self, amount_cents: int, reason: str, reference_type: Optional[str] = None,
                        reference_id: Optional[str] = None,
                        entry_type: WalletEntryType = WalletEntryType.FEE,
                        metadata: Optional[Dict[str, Any]] = None) -> int:
        """Credit the platform fee account"""
        return self.credit_wallet(self.platform_user_id, amount_cents, reason,
                                  reference_type, reference_id, entry_type, metadata)

    def transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        amount_cents: int,
        reason: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        entry_type: WalletEntryType = WalletEntryType.ADJUSTMENT,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, int]:
        """Debit one wallet and credit another in a single unit of work"""
        with self.storage.atomic():
            from_balance = self.debit_wallet(from_user_id, amount_cents, f"{reason}_DEBIT",
                                             reference_type, reference_id, entry_type, metadata)
            to_balance = self.credit_wallet(to_user_id, amount_cents, f"{reason}_CREDIT",
                                            reference_type, reference_id, entry_type, metadata)
        return from_balance, to_balance

    def deposit(self, user_id: str, amount_cents: int, reference_id: Optional[str] = None) -> int:
        return self.credit_wallet(user_id, amount_cents, "DEPOSIT", "Deposit", reference_id,
                                  WalletEntryType.DEPOSIT)

    def withdraw(self, user_id: str, amount_cents: int, reference_id: Optional[str] = None) -> int:
        return self.debit_wallet(user_id, amount_cents, "WITHDRAWAL", "Withdrawal", reference_id,
                                 WalletEntryType.WITHDRAWAL)

    def get_ledger(self, user_id: str, limit: Optional[int] = 50) -> List[WalletLedgerEntry]:
        """Ledger entries for a user's wallet, newest first"""
        entries = self.wallets.entries(self.wallets.wallet_id_for(user_id))
        entries.reverse()
        return entries[:limit] if limit else entries

    def replay_balance(self, user_id: str) -> int:
        """Sum signed ledger amounts from zero in sequence order"""
        entries = self.wallets.entries(self.wallets.wallet_id_for(user_id))
        return sum(entry.signed_amount_cents for entry in entries)

    def verify_ledger(self, user_id: str) -> Dict[str, Any]:
        """
        Check that the ledger replays to the wallet's balance and that each
        entry's balance_after matches the running total.
        """
        wallet = self.get_or_create_wallet(user_id)
        entries = self.wallets.entries(wallet.id)
        result = {
            'valid': True,
            'available_cents': wallet.available_cents,
            'replayed_cents': 0,
            'entries': len(entries),
            'mismatches': []
        }
        running = 0
        for entry in entries:
            running += entry.signed_amount_cents
            if entry.balance_after_cents != running:
                result['valid'] = False
                result['mismatches'].append({
                    'entry_id': entry.id,
                    'sequence': entry.sequence,
                    'expected_balance_after': running,
                    'actual_balance_after': entry.balance_after_cents
                })
        result['replayed_cents'] = running
        if running != wallet.available_cents:
            result['valid'] = False
        return result

    def _apply(
        self,
        user_id: str,
        amount_cents: int,
        direction: EntryDirection,
        reason: str,
        reference_type: Optional[str],
        reference_id: Optional[str],
        entry_type: WalletEntryType,
        metadata: Optional[Dict[str, Any]]
    ) -> int:
        if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
            raise ValidationError("Amount must be a positive number of cents")

        for attempt in range(self.cas_retries):
            try:
                with self.storage.atomic():
                    new_balance = self._apply_once(
                        user_id, amount_cents, direction, reason,
                        reference_type, reference_id, entry_type, metadata
                    )
            except _WalletContention:
                logger.warning(f"Wallet contention for user {user_id}, attempt {attempt + 1}")
                continue

            log_action(
                logger, "info", f"Wallet {direction.value.lower()} {amount_cents} cents",
                user_id=user_id, action=f"wallet_{direction.value.lower()}",
                resource=reference_id,
                extra={'reason': reason, 'balance_after_cents': new_balance}
            )
            return new_balance

        raise StateConflict("Wallet is busy, please retry")

    def _apply_once(self, user_id, amount_cents, direction, reason,
                    reference_type, reference_id, entry_type, metadata) -> int:
        self.get_or_create_wallet(user_id)
        wallet = self.wallets.by_user(user_id, for_update=True)

        if direction == EntryDirection.DEBIT:
            if wallet.available_cents < amount_cents:
                raise InsufficientFunds(user_id, amount_cents, wallet.available_cents)
            new_balance = wallet.available_cents - amount_cents
        else:
            new_balance = wallet.available_cents + amount_cents

        expected_version = wallet.version
        wallet.available_cents = new_balance
        wallet.version += 1
        wallet.last_sequence += 1
        if not self.wallets.compare_and_swap(wallet, expected_version):
            raise _WalletContention()

        entry = WalletLedgerEntry(
            wallet_id=wallet.id,
            user_id=user_id,
            sequence=wallet.last_sequence,
            entry_type=entry_type,
            amount_cents=amount_cents,
            direction=direction,
            balance_after_cents=new_balance,
            reference_type=reference_type,
            reference_id=reference_id,
            reason=reason,
            metadata={'reason': reason, **(metadata or {})},
            **record_stamp(datetime.now(timezone.utc))
        )
        self.wallets.append_entry(entry)
        return new_balance
