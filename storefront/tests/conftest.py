from decimal import Decimal

import pytest

from storefront.database import Database
from storefront.models import CartItem, CreateOrderRequest
from storefront.orders import OrderWorkflow
from storefront.wallet import WalletLedger

EMAIL = "a@x.com"


@pytest.fixture
def database(tmp_path):
    db = Database(tmp_path / "storefront.db")
    db.init_schema()
    return db


@pytest.fixture
def wallet(database):
    return WalletLedger(database)


@pytest.fixture
def workflow(database, wallet):
    return OrderWorkflow(database, wallet)


def make_order_request(price="50.00", quantity=1, total=None, method="LF Wallet", email=EMAIL, **item_fields):
    price = Decimal(price)
    item = CartItem(
        game_name=item_fields.get("game_name", "Mobile Legends"),
        package_label=item_fields.get("package_label", "86 Diamonds"),
        quantity=quantity,
        price=price,
        uid=item_fields.get("uid"),
    )
    return CreateOrderRequest(
        email=email,
        items=[item],
        total=Decimal(total) if total is not None else price * quantity,
        payment_method=method,
    )
