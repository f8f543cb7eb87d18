import logging
from datetime import datetime, timezone
from decimal import Decimal

from .constants import MAX_CENTS, from_cents, normalize_email, to_cents
from .database import Database
from .errors import InsufficientFundsError, InvalidPayloadError

logger = logging.getLogger("storefront.wallet")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WalletLedger:
    """Balance reads and mutations for one wallet per account email.

    Reads never create a wallet. credit() and debit() create it on demand.
    debit() is a single conditional update, so concurrent debits cannot
    overdraw the balance. Both return the balance their own UPDATE ... RETURNING
    produced, never a later read.
    """

    def __init__(self, database: Database):
        self.database = database

    def ensure(self, email: str) -> None:
        email = self._require_email(email)
        created = self.database.execute(
            'INSERT OR IGNORE INTO wallets (user_email, balance, updated_at) VALUES (?, 0, ?)',
            (email, _now()),
        )
        if created:
            logger.info(f"Wallet created | email: {email}")

    def get_balance(self, email: str) -> Decimal:
        email = normalize_email(email)
        row = self.database.fetch_one('SELECT balance FROM wallets WHERE user_email = ?', (email,))
        return from_cents(row["balance"]) if row else from_cents(0)

    def credit(self, email: str, amount) -> Decimal:
        email = self._require_email(email)
        cents = self._require_positive(amount)
        self.ensure(email)
        row = self.database.execute_returning(
            '''
            UPDATE wallets
            SET balance = balance + ?, updated_at = ?
            WHERE user_email = ? AND balance <= ?
            RETURNING balance
            ''',
            (cents, _now(), email, MAX_CENTS - cents),
        )
        if row is None:
            logger.warning(f"Wallet credit rejected, balance limit reached | email: {email} | amount: {from_cents(cents)}")
            raise InvalidPayloadError("Top-up would exceed the maximum wallet balance")
        balance = from_cents(row["balance"])
        logger.info(f"Wallet credited | email: {email} | amount: {from_cents(cents)} | balance: {balance}")
        return balance

    def debit(self, email: str, amount) -> Decimal:
        email = self._require_email(email)
        cents = self._require_positive(amount)
        self.ensure(email)
        row = self.database.execute_returning(
            '''
            UPDATE wallets
            SET balance = balance - ?, updated_at = ?
            WHERE user_email = ? AND balance >= ?
            RETURNING balance
            ''',
            (cents, _now(), email, cents),
        )
        if row is None:
            balance = self.get_balance(email)
            logger.warning(f"Wallet debit rejected | email: {email} | amount: {from_cents(cents)} | balance: {balance}")
            raise InsufficientFundsError(balance)
        balance = from_cents(row["balance"])
        logger.info(f"Wallet debited | email: {email} | amount: {from_cents(cents)} | balance: {balance}")
        return balance

    def set_balance(self, email: str, new_balance) -> Decimal:
        """Administrative override. Bypasses the funds guard but not the non-negative constraint."""
        email = self._require_email(email)
        cents = to_cents(new_balance)
        if cents < 0:
            raise InvalidPayloadError("Balance cannot be negative")
        self.ensure(email)
        self.database.execute(
            'UPDATE wallets SET balance = ?, updated_at = ? WHERE user_email = ?',
            (cents, _now(), email),
        )
        logger.info(f"Wallet balance overridden | email: {email} | balance: {from_cents(cents)}")
        return from_cents(cents)

    @staticmethod
    def _require_email(email: str) -> str:
        email = normalize_email(email)
        if not email:
            raise InvalidPayloadError("Email is required")
        return email

    @staticmethod
    def _require_positive(amount) -> int:
        cents = to_cents(amount)
        if cents <= 0:
            raise InvalidPayloadError("Amount must be greater than zero")
        return cents
