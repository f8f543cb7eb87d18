"""
Order creation and the fulfillment state machine.

    PendingPayment -> Processing -> Completed
    PendingPayment, Processing -> Cancelled -> Refunded

Every status change is a conditional UPDATE keyed on the status the decision
was made from. Losing that race re-reads the order and decides once more; a
second loss is reported as a conflict.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from .constants import ADMIN_ORDER_LIMIT, MAX_CENTS, from_cents, normalize_email, to_cents
from .database import Database
from .errors import (
    ConflictError,
    InvalidPayloadError,
    InvalidTransitionError,
    NotFoundError,
    StorageFailureError,
)
from .models import (
    CreateOrderRequest,
    CreateOrderResponse,
    GatewaySession,
    Order,
    OrderAction,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    TransitionResponse,
)
from .wallet import WalletLedger

logger = logging.getLogger("storefront.orders")

ACTIVE_STATUSES = (OrderStatus.PENDING_PAYMENT, OrderStatus.PROCESSING)


def generate_order_id() -> str:
    return f"ORD-{uuid4().hex.upper()}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderWorkflow:
    def __init__(
        self,
        database: Database,
        wallet: Optional[WalletLedger] = None,
        gateway_url: str = "https://payment.ipay88.com.my/epayment/entry.asp",
        order_limit: int = ADMIN_ORDER_LIMIT,
    ):
        self.database = database
        self.wallet = wallet or WalletLedger(database)
        self.gateway_url = gateway_url
        self.order_limit = order_limit

    # ==================== Checkout ====================

    def create_order(self, request: CreateOrderRequest) -> CreateOrderResponse:
        email, method, total_cents = self._validate(request)
        total = from_cents(total_cents)

        balance = None
        if method == PaymentMethod.WALLET:
            balance = self.wallet.debit(email, total)
            status = OrderStatus.PROCESSING
        else:
            status = OrderStatus.PENDING_PAYMENT

        order_id = generate_order_id()
        now = _now()
        statements = [(
            '''
            INSERT INTO orders (id, user_email, total, payment_method, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ''',
            (order_id, email, total_cents, method.value, status.value, now, now),
        )]
        for item in request.items:
            statements.append((
                '''
                INSERT INTO order_items (order_id, game_name, package_label, quantity, price_at_purchase, uid)
                VALUES (?, ?, ?, ?, ?, ?)
                ''',
                (order_id, item.game_name.strip(), item.package_label.strip(), item.quantity,
                 to_cents(item.price), (item.uid or "").strip() or None),
            ))

        try:
            self.database.batch(statements)
        except StorageFailureError:
            if method == PaymentMethod.WALLET:
                self._compensate_debit(email, total, order_id)
            raise

        logger.info(
            f"Order created: {order_id} | email: {email} | total: {total} | "
            f"method: {method.value} | items: {len(request.items)} | status: {status.value}"
        )

        payment = None
        if method == PaymentMethod.IPAY88:
            payment = GatewaySession(
                session_id=uuid4().hex,
                redirect_url=f"{self.gateway_url}?RefNo={order_id}",
            )
        return CreateOrderResponse(order_id=order_id, status=status, balance=balance, payment=payment)

    def _validate(self, request: CreateOrderRequest) -> tuple[str, PaymentMethod, int]:
        email = normalize_email(request.email)
        if not email:
            raise InvalidPayloadError("Email is required")
        if not request.items:
            raise InvalidPayloadError("Order must contain at least one item")
        try:
            method = PaymentMethod(request.payment_method)
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            raise InvalidPayloadError(f"Unsupported payment method: {request.payment_method!r} (expected one of: {allowed})")

        total_cents = to_cents(request.total)
        if total_cents <= 0:
            raise InvalidPayloadError("Total must be a positive amount")

        subtotal = 0
        for index, item in enumerate(request.items, start=1):
            if not item.game_name.strip() or not item.package_label.strip():
                raise InvalidPayloadError(f"Item {index} is missing a game or package")
            if item.quantity < 1:
                raise InvalidPayloadError(f"Item {index} quantity must be at least 1")
            if item.quantity > MAX_CENTS:
                raise InvalidPayloadError(f"Item {index} quantity is too large")
            try:
                price_cents = to_cents(item.price)
            except InvalidPayloadError as e:
                raise InvalidPayloadError(f"Item {index} has an invalid price: {e.message}") from e
            if price_cents < 0:
                raise InvalidPayloadError(f"Item {index} has an invalid price")
            subtotal += price_cents * item.quantity

        if subtotal != total_cents:
            raise InvalidPayloadError(
                f"Order total {from_cents(total_cents)} does not match item subtotal {from_cents(subtotal)}"
            )
        return email, method, total_cents

    def _compensate_debit(self, email: str, total: Decimal, order_id: str) -> None:
        # The wallet was debited but the order never reached storage.
        logger.error(
            f"RECONCILE order write failed after wallet debit | email: {email} | "
            f"amount: {total} | order_id: {order_id}"
        )
        try:
            self.wallet.credit(email, total)
        except StorageFailureError:
            logger.critical(
                f"RECONCILE compensating credit failed, wallet debited without order | "
                f"email: {email} | amount: {total} | order_id: {order_id}"
            )
        else:
            logger.warning(f"Compensating credit applied | email: {email} | amount: {total} | order_id: {order_id}")

    # ==================== Reads ====================

    def get_order(self, order_id: str) -> Order:
        row = self.database.fetch_one('SELECT * FROM orders WHERE id = ?', (order_id,))
        if not row:
            raise NotFoundError(f"Order {order_id} not found")
        return self._to_order(row)

    def list_orders(self, email: str) -> list[Order]:
        email = normalize_email(email)
        if not email:
            raise InvalidPayloadError("Email is required")
        orders = [
            self._to_order(row) for row in self.database.fetch_all(
                'SELECT * FROM orders WHERE user_email = ? ORDER BY created_at DESC, rowid DESC',
                (email,),
            )
        ]
        if orders:
            placeholders = ", ".join("?" for _ in orders)
            items = self.database.fetch_all(
                f'SELECT * FROM order_items WHERE order_id IN ({placeholders}) ORDER BY id',
                [order.id for order in orders],
            )
            by_order = {order.id: order for order in orders}
            for row in items:
                by_order[row["order_id"]].items.append(self._to_item(row))
        return orders

    def list_all_orders(self, limit: Optional[int] = None) -> list[Order]:
        """Newest orders across all accounts, never more than order_limit."""
        if limit is None:
            limit = self.order_limit
        if limit < 1:
            raise InvalidPayloadError("Limit must be at least 1")
        limit = min(limit, self.order_limit)
        rows = self.database.fetch_all(
            'SELECT * FROM orders ORDER BY created_at DESC, rowid DESC LIMIT ?', (limit,)
        )
        return [self._to_order(row) for row in rows]

    def list_order_items(self, order_id: str) -> list[OrderItem]:
        self.get_order(order_id)
        rows = self.database.fetch_all(
            'SELECT * FROM order_items WHERE order_id = ? ORDER BY id', (order_id,)
        )
        return [self._to_item(row) for row in rows]

    # ==================== Transitions ====================

    def transition(self, order_id: str, action) -> TransitionResponse:
        try:
            action = OrderAction(action)
        except ValueError:
            raise InvalidPayloadError(f"Unknown order action: {action!r}")
        handlers: dict[OrderAction, Callable[[Order], Optional[TransitionResponse]]] = {
            OrderAction.COMPLETE: self._complete,
            OrderAction.CANCEL: self._cancel,
            OrderAction.REFUND: self._refund,
        }
        return self._drive(order_id, action.value, handlers[action])

    def complete(self, order_id: str) -> TransitionResponse:
        return self.transition(order_id, OrderAction.COMPLETE)

    def cancel(self, order_id: str) -> TransitionResponse:
        return self.transition(order_id, OrderAction.CANCEL)

    def refund(self, order_id: str) -> TransitionResponse:
        return self.transition(order_id, OrderAction.REFUND)

    def confirm_payment(self, order_id: str) -> TransitionResponse:
        """Simulated gateway callback: the external payment went through."""
        return self._drive(order_id, "confirm_payment", self._confirm_payment)

    def _drive(self, order_id: str, action: str, step) -> TransitionResponse:
        for _ in range(2):
            order = self.get_order(order_id)
            result = step(order)
            if result is not None:
                return result
            logger.warning(f"Order changed concurrently, re-reading | order: {order_id} | action: {action}")
        raise ConflictError(f"Order {order_id} was modified concurrently, please retry")

    def _complete(self, order: Order) -> Optional[TransitionResponse]:
        if order.status != OrderStatus.PROCESSING:
            raise InvalidTransitionError(f"Cannot complete order in {order.status.value} state")
        if not self._move(order.id, (OrderStatus.PROCESSING,), OrderStatus.COMPLETED):
            return None
        return self._changed(order, OrderStatus.COMPLETED, "Order completed")

    def _cancel(self, order: Order) -> Optional[TransitionResponse]:
        if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            return self._unchanged(order, "Order already cancelled")
        if order.status == OrderStatus.COMPLETED:
            raise InvalidTransitionError("Cannot cancel a completed order")
        if not self._move(order.id, ACTIVE_STATUSES, OrderStatus.CANCELLED):
            return None
        return self._changed(order, OrderStatus.CANCELLED, "Order cancelled")

    def _refund(self, order: Order) -> Optional[TransitionResponse]:
        if order.status == OrderStatus.REFUNDED:
            return self._unchanged(order, "Order already refunded")
        if order.status != OrderStatus.CANCELLED:
            raise InvalidTransitionError(
                f"Cannot refund order in {order.status.value} state. Only Cancelled orders can be refunded."
            )
        # Only the caller that wins this update may credit the wallet.
        if not self._move(order.id, (OrderStatus.CANCELLED,), OrderStatus.REFUNDED):
            return None

        if order.payment_method == PaymentMethod.WALLET:
            try:
                self.wallet.credit(order.user_email, order.total)
            except StorageFailureError:
                logger.error(
                    f"RECONCILE refund credit failed, order marked Refunded | email: {order.user_email} | "
                    f"amount: {order.total} | order_id: {order.id}"
                )
                raise
            return self._changed(order, OrderStatus.REFUNDED, f"Order refunded, {order.total} returned to wallet")
        return self._changed(order, OrderStatus.REFUNDED, "Order refunded")

    def _confirm_payment(self, order: Order) -> Optional[TransitionResponse]:
        if order.status in (OrderStatus.PROCESSING, OrderStatus.COMPLETED):
            return self._unchanged(order, "Payment already confirmed")
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise InvalidTransitionError(f"Cannot confirm payment for order in {order.status.value} state")
        if not self._move(order.id, (OrderStatus.PENDING_PAYMENT,), OrderStatus.PROCESSING):
            return None
        return self._changed(order, OrderStatus.PROCESSING, "Payment confirmed")

    def _move(self, order_id: str, expected: tuple[OrderStatus, ...], target: OrderStatus) -> bool:
        placeholders = ", ".join("?" for _ in expected)
        updated = self.database.execute(
            f'UPDATE orders SET status = ?, updated_at = ? WHERE id = ? AND status IN ({placeholders})',
            (target.value, _now(), order_id, *(s.value for s in expected)),
        )
        return updated == 1

    @staticmethod
    def _changed(order: Order, status: OrderStatus, message: str) -> TransitionResponse:
        logger.info(f"Order {order.id}: {order.status.value} -> {status.value}")
        return TransitionResponse(order_id=order.id, status=status, changed=True, message=message)

    @staticmethod
    def _unchanged(order: Order, message: str) -> TransitionResponse:
        return TransitionResponse(order_id=order.id, status=order.status, changed=False, message=message)

    # ==================== Fulfillment ====================

    def set_item_redemption_code(self, order_id: str, item_id: int, code: str) -> OrderItem:
        code = (code or "").strip()
        if not code:
            raise InvalidPayloadError("Redemption code is required")
        order = self.get_order(order_id)
        if not order.accepts_redemption_code():
            raise InvalidTransitionError(
                f"Cannot assign a redemption code to an order in {order.status.value} state"
            )
        updated = self.database.execute(
            '''
            UPDATE order_items SET pin = ?
            WHERE id = ? AND order_id = ?
              AND EXISTS (SELECT 1 FROM orders WHERE id = ? AND status IN (?, ?))
            ''',
            (code, item_id, order_id, order_id, OrderStatus.PROCESSING.value, OrderStatus.COMPLETED.value),
        )
        if not updated:
            row = self.database.fetch_one(
                'SELECT id FROM order_items WHERE id = ? AND order_id = ?', (item_id, order_id)
            )
            if not row:
                raise NotFoundError(f"Item {item_id} not found in order {order_id}")
            raise ConflictError(f"Order {order_id} changed while assigning the code, please retry")

        logger.info(f"Redemption code assigned | order: {order_id} | item: {item_id}")
        row = self.database.fetch_one('SELECT * FROM order_items WHERE id = ?', (item_id,))
        return self._to_item(row)

    # ==================== Mapping ====================

    @staticmethod
    def _to_order(row: dict) -> Order:
        return Order(**{**row, "total": from_cents(row["total"])})

    @staticmethod
    def _to_item(row: dict) -> OrderItem:
        return OrderItem(**{**row, "price_at_purchase": from_cents(row["price_at_purchase"])})
