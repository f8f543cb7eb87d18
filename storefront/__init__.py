"""
Game Top-up Storefront Backend

This package provides:
- Per-account wallet balances with an overdraft-proof debit
- Checkout against the wallet or a simulated iPay88 gateway
- Order lifecycle: PendingPayment → Processing → Completed / Cancelled → Refunded
- Exactly-once wallet refunds and per-item redemption codes
- A FastAPI HTTP surface (see storefront.api)
"""

from .models import (
    PaymentMethod,
    OrderStatus,
    OrderAction,
    Order,
    OrderItem,
    CartItem,
    CreateOrderRequest,
)
from .database import Database
from .wallet import WalletLedger
from .orders import OrderWorkflow

__all__ = [
    "PaymentMethod",
    "OrderStatus",
    "OrderAction",
    "Order",
    "OrderItem",
    "CartItem",
    "CreateOrderRequest",
    "Database",
    "WalletLedger",
    "OrderWorkflow",
]
