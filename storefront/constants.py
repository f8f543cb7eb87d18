"""Money helpers and fixed vocabularies shared across the storefront.

- Amounts are stored as integer cents; the API speaks Decimal with 2 places.
- to_cents / from_cents convert between the two.
"""

from decimal import Decimal

from .errors import InvalidPayloadError

CENTS = Decimal("0.01")

# SQLite INTEGER is a signed 64-bit value
MAX_CENTS = 2 ** 63 - 1
MAX_AMOUNT = Decimal(MAX_CENTS).scaleb(-2)

WALLET_METHOD = "LF Wallet"
GATEWAY_METHOD = "iPay88"

ADMIN_ORDER_LIMIT = 200


def to_cents(amount) -> int:
    """
    Convert a Decimal/str/int amount (e.g. "12.50") to integer cents.

    Raises InvalidPayloadError for anything that is not a finite amount with
    at most 2 decimal places inside the storable range.
    """
    try:
        value = Decimal(str(amount))
        if not value.is_finite():
            raise InvalidPayloadError(f"Invalid amount: {amount!r}")
        if abs(value) > MAX_AMOUNT:
            raise InvalidPayloadError(f"Amount is too large: {amount!r}")
        rounded = value.quantize(CENTS)
        if rounded != value:
            raise InvalidPayloadError(f"Amount cannot have more than 2 decimal places: {amount!r}")
        return int(rounded.scaleb(2))
    except (ArithmeticError, ValueError, TypeError):
        raise InvalidPayloadError(f"Invalid amount: {amount!r}")


def from_cents(cents: int) -> Decimal:
    """
    Convert integer cents back to a 2-decimal amount.
    """
    return (Decimal(cents) * CENTS).quantize(CENTS)


def normalize_email(email) -> str:
    return (email or "").strip().lower()
