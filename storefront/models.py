from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer

from .constants import GATEWAY_METHOD, WALLET_METHOD

# Decimal internally, plain JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class PaymentMethod(str, Enum):
    WALLET = WALLET_METHOD
    IPAY88 = GATEWAY_METHOD


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PendingPayment"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class OrderAction(str, Enum):
    COMPLETE = "complete"
    CANCEL = "cancel"
    REFUND = "refund"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


# ==================== Requests ====================

class RegisterRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class TopUpRequest(BaseModel):
    email: str
    amount: Decimal


class SetBalanceRequest(BaseModel):
    email: str
    balance: Decimal


class CartItem(BaseModel):
    game_name: str = Field(..., validation_alias=AliasChoices("game_name", "game"))
    package_label: str = Field(..., validation_alias=AliasChoices("package_label", "package", "label"))
    quantity: int = Field(default=1, validation_alias=AliasChoices("quantity", "qty"))
    price: Decimal = Field(..., validation_alias=AliasChoices("price", "price_at_purchase"))
    uid: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CreateOrderRequest(BaseModel):
    email: str
    items: list[CartItem] = Field(default_factory=list)
    total: Decimal
    payment_method: str = Field(..., validation_alias=AliasChoices("payment_method", "paymentMethod", "method"))

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "email": "player@example.com",
            "items": [
                {"game_name": "Mobile Legends", "package_label": "86 Diamonds", "quantity": 1, "price": 5.50, "uid": "12345678"}
            ],
            "total": 5.50,
            "payment_method": "LF Wallet"
        }
    })


class SetRedemptionCodeRequest(BaseModel):
    code: str


class GatewayCallbackRequest(BaseModel):
    order_id: str = Field(..., validation_alias=AliasChoices("order_id", "orderId"))


# ==================== Records ====================

class OrderItem(BaseModel):
    id: int
    order_id: str
    game_name: str
    package_label: str
    quantity: int
    price_at_purchase: Money
    uid: Optional[str] = None
    pin: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def subtotal(self) -> Decimal:
        return self.price_at_purchase * self.quantity


class Order(BaseModel):
    id: str
    user_email: str
    total: Money
    payment_method: PaymentMethod
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    items: list[OrderItem] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    def accepts_redemption_code(self) -> bool:
        return self.status in (OrderStatus.PROCESSING, OrderStatus.COMPLETED)


class Game(BaseModel):
    id: str
    name: str
    image_url: Optional[str] = None
    category: Optional[str] = None
    regionable: bool = False
    uid_required: bool = False


class Region(BaseModel):
    id: int
    game_id: str
    region_key: str
    name: str
    flag: Optional[str] = None


class Package(BaseModel):
    id: str
    game_id: str
    region_key: Optional[str] = None
    label: str
    price: Money


# ==================== Responses ====================

class WalletBalance(BaseModel):
    success: bool = True
    email: str
    balance: Money


class AccountResponse(BaseModel):
    success: bool = True
    email: str
    role: Role


class GatewaySession(BaseModel):
    gateway: str = GATEWAY_METHOD
    session_id: str
    redirect_url: str
    simulated: bool = True


class CreateOrderResponse(BaseModel):
    success: bool = True
    order_id: str = Field(..., alias="orderId")
    status: OrderStatus
    balance: Optional[Money] = None
    payment: Optional[GatewaySession] = None
    message: str = "Order created successfully"

    model_config = ConfigDict(populate_by_name=True)


class TransitionResponse(BaseModel):
    success: bool = True
    order_id: str = Field(..., alias="orderId")
    status: OrderStatus
    changed: bool
    message: str

    model_config = ConfigDict(populate_by_name=True)


class ActionResult(BaseModel):
    success: bool = True
    message: str
