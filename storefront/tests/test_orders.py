"""
Unit Tests for the Order Workflow

Tests cover:
1. Checkout via wallet and via the simulated gateway
2. Payload validation before any mutation
3. State transitions: complete, cancel, refund, payment confirmation
4. Refund idempotency (wallet credited exactly once)
5. Redemption codes and order listings
6. Partial-failure reconciliation
"""

import threading
from decimal import Decimal

import pytest

from storefront.errors import (
    ConflictError,
    InsufficientFundsError,
    InvalidPayloadError,
    InvalidTransitionError,
    NotFoundError,
    StorageFailureError,
)
from storefront.models import CartItem, CreateOrderRequest, OrderAction, OrderStatus, PaymentMethod
from storefront.orders import OrderWorkflow

from .conftest import EMAIL, make_order_request


class TestCreateOrder:
    """Tests for checkout."""

    def test_wallet_order_debits_and_is_processing(self, workflow, wallet):
        """Balance 100, order 50 via wallet: balance 50, order Processing."""
        wallet.credit(EMAIL, Decimal("100"))

        response = workflow.create_order(make_order_request("50"))

        assert response.order_id.startswith("ORD-")
        assert response.status == OrderStatus.PROCESSING
        assert response.balance == Decimal("50.00")
        assert response.payment is None
        assert wallet.get_balance(EMAIL) == Decimal("50.00")
        order = workflow.get_order(response.order_id)
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_method == PaymentMethod.WALLET
        assert order.total == Decimal("50.00")

    def test_insufficient_funds_creates_no_order(self, workflow, wallet, database):
        """Balance 30, order 50 via wallet: rejected, nothing persisted."""
        wallet.credit(EMAIL, Decimal("30"))

        with pytest.raises(InsufficientFundsError) as exc_info:
            workflow.create_order(make_order_request("50"))

        assert exc_info.value.balance == Decimal("30.00")
        assert wallet.get_balance(EMAIL) == Decimal("30.00")
        assert database.fetch_all("SELECT * FROM orders") == []
        assert database.fetch_all("SELECT * FROM order_items") == []

    def test_gateway_order_is_pending_and_untouched_wallet(self, workflow, wallet):
        response = workflow.create_order(make_order_request("20", method="iPay88"))

        assert response.status == OrderStatus.PENDING_PAYMENT
        assert response.balance is None
        assert response.payment is not None
        assert response.payment.simulated is True
        assert response.order_id in response.payment.redirect_url
        assert wallet.get_balance(EMAIL) == Decimal("0.00")

    def test_items_keep_submitted_price(self, workflow, wallet):
        """Each item records the price sent at checkout."""
        wallet.credit(EMAIL, Decimal("100"))
        request = CreateOrderRequest(
            email=EMAIL,
            items=[
                CartItem(game_name="PUBG Mobile", package_label="60 UC", quantity=2, price=Decimal("1.25"), uid="5123"),
                CartItem(game_name="Steam", package_label="Wallet Card 10", quantity=1, price=Decimal("10.00")),
                CartItem(game_name="Genshin", package_label="Welkin", quantity=3, price=Decimal("4.99")),
            ],
            total=Decimal("27.47"),
            payment_method="LF Wallet",
        )

        response = workflow.create_order(request)
        items = workflow.list_order_items(response.order_id)

        assert len(items) == 3
        assert [i.price_at_purchase for i in items] == [Decimal("1.25"), Decimal("10.00"), Decimal("4.99")]
        assert [i.quantity for i in items] == [2, 1, 3]
        assert items[0].uid == "5123"
        assert all(i.pin is None for i in items)
        assert sum(i.subtotal for i in items) == Decimal("27.47")

    def test_order_ids_are_unique(self, workflow):
        ids = {workflow.create_order(make_order_request("1", method="iPay88")).order_id for _ in range(20)}
        assert len(ids) == 20

    def test_email_is_normalized(self, workflow, wallet):
        wallet.credit(EMAIL, Decimal("10"))
        response = workflow.create_order(make_order_request("10", email="  A@X.COM"))
        assert workflow.get_order(response.order_id).user_email == EMAIL


class TestCreateOrderValidation:
    """Validation happens before any wallet mutation."""

    def test_total_must_match_items(self, workflow, wallet):
        wallet.credit(EMAIL, Decimal("100"))
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request("50", total="40"))
        assert wallet.get_balance(EMAIL) == Decimal("100.00")

    def test_empty_items_rejected(self, workflow):
        request = CreateOrderRequest(email=EMAIL, items=[], total=Decimal("5"), payment_method="LF Wallet")
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(request)

    def test_missing_email_rejected(self, workflow):
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request("5", email=""))

    @pytest.mark.parametrize("total", ["0", "-5"])
    def test_total_must_be_positive(self, workflow, total):
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request(total))

    def test_unknown_payment_method_rejected(self, workflow):
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request("5", method="Cash"))

    def test_zero_quantity_rejected(self, workflow):
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request("5", quantity=0, total="5"))

    @pytest.mark.parametrize("method", ["LF Wallet", "iPay88"])
    @pytest.mark.parametrize("amount", ["1e17", "1e30"])
    def test_huge_amounts_rejected_before_any_write(self, workflow, wallet, database, method, amount):
        """Prices or totals beyond the storable range are invalid input, for both payment methods."""
        wallet.credit(EMAIL, Decimal("100"))
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request(amount, method=method))
        assert wallet.get_balance(EMAIL) == Decimal("100.00")
        assert database.fetch_all("SELECT * FROM orders") == []

    def test_huge_total_with_small_items_rejected(self, workflow):
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request("5", total="1e17", method="iPay88"))

    @pytest.mark.parametrize("price,total", [("0.005", "0.005"), ("10.001", "10.00"), ("10.00", "10.001")])
    def test_sub_cent_amounts_rejected(self, workflow, database, price, total):
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(make_order_request(price, total=total, method="iPay88"))
        assert database.fetch_all("SELECT * FROM orders") == []

    def test_quantity_beyond_storable_range_rejected(self, workflow, database):
        """A free item with an absurd quantity is refused instead of failing in storage."""
        request = make_order_request("5", method="iPay88")
        request.items.append(CartItem(game_name="Bonus", package_label="Free Skin", quantity=2 ** 70, price=Decimal("0")))
        with pytest.raises(InvalidPayloadError):
            workflow.create_order(request)
        assert database.fetch_all("SELECT * FROM orders") == []


class TestConcurrentCheckout:

    def test_two_wallet_orders_against_one_balance(self, workflow, wallet, database):
        """Balance 100, two concurrent 80 orders: one succeeds, final balance 20."""
        wallet.credit(EMAIL, Decimal("100"))
        barrier = threading.Barrier(2)
        outcomes = []

        def checkout():
            barrier.wait()
            try:
                workflow.create_order(make_order_request("80"))
                outcomes.append("ok")
            except InsufficientFundsError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=checkout) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert wallet.get_balance(EMAIL) == Decimal("20.00")
        assert len(database.fetch_all("SELECT * FROM orders")) == 1


class TestTransitions:
    """Tests for the fulfillment state machine."""

    def _wallet_order(self, workflow, wallet, amount="50"):
        wallet.credit(EMAIL, Decimal("100"))
        return workflow.create_order(make_order_request(amount)).order_id

    def test_complete_processing_order(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        response = workflow.complete(order_id)
        assert response.status == OrderStatus.COMPLETED
        assert response.changed is True

    @pytest.mark.parametrize("setup", ["complete", "cancel", "cancel+refund"])
    def test_complete_rejected_outside_processing(self, workflow, wallet, setup):
        order_id = self._wallet_order(workflow, wallet)
        for action in setup.split("+"):
            workflow.transition(order_id, action)
        with pytest.raises(InvalidTransitionError):
            workflow.complete(order_id)

    def test_complete_pending_payment_rejected(self, workflow):
        order_id = workflow.create_order(make_order_request("5", method="iPay88")).order_id
        with pytest.raises(InvalidTransitionError):
            workflow.complete(order_id)

    def test_cancel_is_idempotent(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        first = workflow.cancel(order_id)
        second = workflow.cancel(order_id)
        assert first.changed is True
        assert second.changed is False
        assert second.status == OrderStatus.CANCELLED

    def test_cancel_does_not_refund(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        workflow.cancel(order_id)
        assert wallet.get_balance(EMAIL) == Decimal("50.00")

    def test_cancel_refunded_order_is_noop(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        workflow.cancel(order_id)
        workflow.refund(order_id)
        response = workflow.cancel(order_id)
        assert response.changed is False
        assert response.status == OrderStatus.REFUNDED

    def test_cancel_completed_order_rejected(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        workflow.complete(order_id)
        with pytest.raises(InvalidTransitionError):
            workflow.cancel(order_id)

    def test_cancel_then_refund_restores_balance(self, workflow, wallet):
        """Balance 100 -> order 50 -> cancel -> refund -> balance 100."""
        order_id = self._wallet_order(workflow, wallet)
        workflow.cancel(order_id)
        response = workflow.refund(order_id)

        assert response.status == OrderStatus.REFUNDED
        assert wallet.get_balance(EMAIL) == Decimal("100.00")
        assert workflow.get_order(order_id).status == OrderStatus.REFUNDED

    def test_refund_twice_credits_once(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        workflow.cancel(order_id)

        first = workflow.refund(order_id)
        second = workflow.refund(order_id)

        assert first.changed is True
        assert second.changed is False
        assert second.success is True
        assert wallet.get_balance(EMAIL) == Decimal("100.00")

    def test_concurrent_refunds_credit_once(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        workflow.cancel(order_id)
        barrier = threading.Barrier(4)
        results = []

        def refund():
            barrier.wait()
            results.append(workflow.refund(order_id).changed)

        threads = [threading.Thread(target=refund) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert wallet.get_balance(EMAIL) == Decimal("100.00")

    def test_refund_processing_order_rejected(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        with pytest.raises(InvalidTransitionError):
            workflow.transition(order_id, "refund")
        assert wallet.get_balance(EMAIL) == Decimal("50.00")

    def test_refund_gateway_order_does_not_touch_wallet(self, workflow, wallet):
        order_id = workflow.create_order(make_order_request("20", method="iPay88")).order_id
        workflow.cancel(order_id)
        response = workflow.refund(order_id)
        assert response.status == OrderStatus.REFUNDED
        assert wallet.get_balance(EMAIL) == Decimal("0.00")

    def test_unknown_order(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.transition("ORD-MISSING", OrderAction.CANCEL)

    def test_unknown_action(self, workflow, wallet):
        order_id = self._wallet_order(workflow, wallet)
        with pytest.raises(InvalidPayloadError):
            workflow.transition(order_id, "ship")

    def test_lost_race_twice_is_conflict(self, workflow, wallet, monkeypatch):
        order_id = self._wallet_order(workflow, wallet)
        monkeypatch.setattr(OrderWorkflow, "_move", lambda self, *args: False)
        with pytest.raises(ConflictError):
            workflow.complete(order_id)


class TestGatewayConfirmation:

    def test_confirm_moves_pending_to_processing(self, workflow):
        order_id = workflow.create_order(make_order_request("20", method="iPay88")).order_id
        response = workflow.confirm_payment(order_id)
        assert response.status == OrderStatus.PROCESSING
        assert workflow.confirm_payment(order_id).changed is False

    def test_confirm_cancelled_order_rejected(self, workflow):
        order_id = workflow.create_order(make_order_request("20", method="iPay88")).order_id
        workflow.cancel(order_id)
        with pytest.raises(InvalidTransitionError):
            workflow.confirm_payment(order_id)


class TestRedemptionCodes:

    def test_set_code_on_processing_order(self, workflow, wallet):
        wallet.credit(EMAIL, Decimal("10"))
        order_id = workflow.create_order(make_order_request("10", game_name="Razer Gold", package_label="10 USD")).order_id
        item = workflow.list_order_items(order_id)[0]

        updated = workflow.set_item_redemption_code(order_id, item.id, "ABCD-1234")

        assert updated.pin == "ABCD-1234"
        assert workflow.list_order_items(order_id)[0].pin == "ABCD-1234"

    def test_set_code_on_pending_order_rejected(self, workflow):
        order_id = workflow.create_order(make_order_request("10", method="iPay88")).order_id
        item = workflow.list_order_items(order_id)[0]
        with pytest.raises(InvalidTransitionError):
            workflow.set_item_redemption_code(order_id, item.id, "ABCD")

    def test_item_must_belong_to_order(self, workflow, wallet):
        wallet.credit(EMAIL, Decimal("20"))
        first = workflow.create_order(make_order_request("10")).order_id
        second = workflow.create_order(make_order_request("10")).order_id
        foreign_item = workflow.list_order_items(second)[0]
        with pytest.raises(NotFoundError):
            workflow.set_item_redemption_code(first, foreign_item.id, "CODE")

    def test_empty_code_rejected(self, workflow, wallet):
        wallet.credit(EMAIL, Decimal("10"))
        order_id = workflow.create_order(make_order_request("10")).order_id
        item = workflow.list_order_items(order_id)[0]
        with pytest.raises(InvalidPayloadError):
            workflow.set_item_redemption_code(order_id, item.id, "  ")


class TestOrderListings:

    def test_list_orders_newest_first_with_items(self, workflow):
        ids = [workflow.create_order(make_order_request("1", method="iPay88")).order_id for _ in range(3)]
        workflow.create_order(make_order_request("1", method="iPay88", email="other@x.com"))

        orders = workflow.list_orders(EMAIL)

        assert [o.id for o in orders] == list(reversed(ids))
        assert all(len(o.items) == 1 for o in orders)

    def test_admin_listing_is_capped(self, workflow):
        for _ in range(3):
            workflow.create_order(make_order_request("1", method="iPay88"))
        assert len(workflow.list_all_orders(limit=2)) == 2
        assert len(workflow.list_all_orders(limit=10_000)) == 3

    def test_configured_cap_bounds_the_listing(self, database, wallet):
        workflow = OrderWorkflow(database, wallet, order_limit=2)
        for _ in range(3):
            workflow.create_order(make_order_request("1", method="iPay88"))
        assert len(workflow.list_all_orders()) == 2
        assert len(workflow.list_all_orders(limit=200)) == 2
        assert len(workflow.list_all_orders(limit=1)) == 1

    @pytest.mark.parametrize("limit", [0, -1])
    def test_non_positive_limit_rejected(self, workflow, limit):
        with pytest.raises(InvalidPayloadError):
            workflow.list_all_orders(limit=limit)

    def test_list_items_of_unknown_order(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.list_order_items("ORD-NOPE")


class TestPartialFailure:
    """An order write that fails after the debit is compensated and logged."""

    def test_failed_write_after_debit_is_compensated(self, workflow, wallet, database, monkeypatch, caplog):
        wallet.credit(EMAIL, Decimal("100"))

        def failing_batch(statements):
            raise StorageFailureError()

        monkeypatch.setattr(database, "batch", failing_batch)

        with caplog.at_level("ERROR", logger="storefront.orders"):
            with pytest.raises(StorageFailureError):
                workflow.create_order(make_order_request("50"))

        assert wallet.get_balance(EMAIL) == Decimal("100.00")
        assert any("RECONCILE" in r.message and EMAIL in r.message for r in caplog.records)

    def test_failed_compensating_credit_is_logged_critical(self, workflow, wallet, database, monkeypatch, caplog):
        """Debit taken, order write lost, refund of the debit also lost: a CRITICAL reconciliation record."""
        wallet.credit(EMAIL, Decimal("100"))

        def failing_batch(statements):
            raise StorageFailureError()

        def failing_credit(email, amount):
            raise StorageFailureError()

        monkeypatch.setattr(database, "batch", failing_batch)
        monkeypatch.setattr(wallet, "credit", failing_credit)
        monkeypatch.setattr("storefront.orders.generate_order_id", lambda: "ORD-LOST")

        with caplog.at_level("ERROR", logger="storefront.orders"):
            with pytest.raises(StorageFailureError):
                workflow.create_order(make_order_request("50"))

        critical = [r for r in caplog.records if r.levelname == "CRITICAL"]
        assert len(critical) == 1
        message = critical[0].getMessage()
        assert "RECONCILE" in message
        assert EMAIL in message
        assert "50.00" in message
        assert "ORD-LOST" in message
        assert wallet.get_balance(EMAIL) == Decimal("50.00")

    def test_failed_refund_credit_is_logged_and_raised(self, workflow, wallet, monkeypatch, caplog):
        """The order stays Refunded, the error surfaces, and the missing credit is logged for reconciliation."""
        wallet.credit(EMAIL, Decimal("100"))
        order_id = workflow.create_order(make_order_request("50")).order_id
        workflow.cancel(order_id)

        def failing_credit(email, amount):
            raise StorageFailureError()

        monkeypatch.setattr(wallet, "credit", failing_credit)

        with caplog.at_level("ERROR", logger="storefront.orders"):
            with pytest.raises(StorageFailureError):
                workflow.refund(order_id)

        records = [r for r in caplog.records if r.levelname == "ERROR" and "RECONCILE" in r.getMessage()]
        assert len(records) == 1
        message = records[0].getMessage()
        assert EMAIL in message
        assert "50.00" in message
        assert order_id in message
        assert workflow.get_order(order_id).status == OrderStatus.REFUNDED
        assert wallet.get_balance(EMAIL) == Decimal("50.00")
