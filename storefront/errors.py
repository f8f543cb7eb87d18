from decimal import Decimal
from typing import Optional


class StorefrontError(Exception):
    kind = "Error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPayloadError(StorefrontError):
    kind = "InvalidPayload"


class InsufficientFundsError(StorefrontError):
    kind = "InsufficientFunds"

    def __init__(self, balance: Decimal, message: Optional[str] = None):
        super().__init__(message or f"Insufficient wallet balance ({balance})")
        self.balance = balance


class NotFoundError(StorefrontError):
    kind = "NotFound"
    status_code = 404


class InvalidTransitionError(StorefrontError):
    kind = "InvalidTransition"
    status_code = 409


class ConflictError(StorefrontError):
    kind = "Conflict"
    status_code = 409


class UnauthorizedError(StorefrontError):
    kind = "Unauthorized"
    status_code = 401


class StorageFailureError(StorefrontError):
    kind = "StorageFailure"
    status_code = 500

    def __init__(self, message: str = "The request could not be completed. Please try again later."):
        super().__init__(message)
