#!/usr/bin/env python3
"""Create the storefront schema and an administrator account."""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from storefront.accounts import AccountService
from storefront.config import Settings
from storefront.database import Database
from storefront.errors import ConflictError
from storefront.logger import setup_logger
from storefront.wallet import WalletLedger


def main():
    settings = Settings.from_env()
    logger = setup_logger("storefront", settings.log_file, settings.log_level)

    email = os.getenv("ADMIN_EMAIL", "")
    password = os.getenv("ADMIN_ACCOUNT_PASSWORD", "")
    if not email or not password:
        logger.error("Set ADMIN_EMAIL and ADMIN_ACCOUNT_PASSWORD to create the admin account")
        return 1

    database = Database(settings.database_path)
    database.init_schema()

    accounts = AccountService(database, WalletLedger(database))
    try:
        account = accounts.create_admin(email, password)
    except ConflictError:
        logger.info(f"Admin account already exists: {email}")
        return 0

    logger.info(f"Admin account created: {account.email}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
