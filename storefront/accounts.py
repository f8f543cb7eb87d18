import logging
from datetime import datetime, timezone

import bcrypt

from .constants import normalize_email
from .database import Database
from .errors import ConflictError, InvalidPayloadError, UnauthorizedError
from .models import AccountResponse, Role
from .wallet import WalletLedger

logger = logging.getLogger("storefront.accounts")

PASSWORD_MIN_LENGTH = 6


class AccountService:
    def __init__(self, database: Database, wallet: WalletLedger):
        self.database = database
        self.wallet = wallet

    def register(self, email: str, password: str, role: Role = Role.CUSTOMER) -> AccountResponse:
        email = normalize_email(email)
        if not email or "@" not in email:
            raise InvalidPayloadError("A valid email is required")
        if not password or len(password) < PASSWORD_MIN_LENGTH:
            raise InvalidPayloadError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        created = self.database.execute(
            'INSERT OR IGNORE INTO users (email, password_hash, role, created_at) VALUES (?, ?, ?, ?)',
            (email, hashed_pw, role.value, datetime.now(timezone.utc).isoformat()),
        )
        if not created:
            raise ConflictError("An account with this email already exists")

        self.wallet.ensure(email)
        logger.info(f"Account registered | email: {email} | role: {role.value}")
        return AccountResponse(email=email, role=role)

    def create_admin(self, email: str, password: str) -> AccountResponse:
        return self.register(email, password, role=Role.ADMIN)

    def login(self, email: str, password: str) -> AccountResponse:
        email = normalize_email(email)
        if not email or not password:
            raise InvalidPayloadError("Email and password are required")

        user = self.database.fetch_one('SELECT email, password_hash, role FROM users WHERE email = ?', (email,))
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password_hash"].encode("utf-8")):
            logger.warning(f"Login failed | email: {email}")
            raise UnauthorizedError("Invalid email or password")

        return AccountResponse(email=user["email"], role=Role(user["role"]))
