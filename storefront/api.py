import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import AccountService
from .catalog import Catalog
from .config import Settings
from .constants import normalize_email
from .database import Database
from .errors import InsufficientFundsError, StorageFailureError, StorefrontError, UnauthorizedError
from .logger import setup_logger
from .models import (
    AccountResponse,
    ActionResult,
    CreateOrderRequest,
    CreateOrderResponse,
    Game,
    GatewayCallbackRequest,
    LoginRequest,
    Order,
    OrderAction,
    OrderItem,
    Package,
    Region,
    RegisterRequest,
    SetBalanceRequest,
    SetRedemptionCodeRequest,
    TopUpRequest,
    TransitionResponse,
    WalletBalance,
)
from .orders import OrderWorkflow
from .wallet import WalletLedger

logger = logging.getLogger("storefront.api")


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    database = database or Database(settings.database_path)

    wallet = WalletLedger(database)
    orders = OrderWorkflow(
        database, wallet, gateway_url=settings.ipay88_redirect_url, order_limit=settings.admin_order_limit
    )
    accounts = AccountService(database, wallet)
    catalog = Catalog(database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logger("storefront", settings.log_file, settings.log_level)
        database.init_schema()
        if not settings.admin_password:
            logger.warning("ADMIN_PASSWORD is not set, admin routes are disabled")
        logger.info("Storefront API started")
        yield
        logger.info("Storefront API stopped")

    app = FastAPI(
        title="Storefront API",
        description="Game top-up store: wallet balances, checkout and order fulfillment",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Admin-Password"],
        max_age=600,
    )

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if isinstance(exc, StorageFailureError):
            logger.error(f"Storage failure | {request.method} {request.url.path}")
        body = {"success": False, "error": exc.kind, "message": exc.message}
        if isinstance(exc, InsufficientFundsError):
            body["balance"] = float(exc.balance)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "InvalidPayload", "message": problems or "Invalid request"},
        )

    def require_admin(admin_password: Optional[str] = Header(None, alias="Admin-Password")) -> None:
        if not settings.admin_password or admin_password != settings.admin_password:
            raise UnauthorizedError("Admin credentials required")

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "storefront"}

    # ==================== Accounts ====================

    @app.post("/api/register", response_model=AccountResponse, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def register(request: RegisterRequest) -> AccountResponse:
        return accounts.register(request.email, request.password)

    @app.post("/api/login", response_model=AccountResponse, tags=["Accounts"])
    def login(request: LoginRequest) -> AccountResponse:
        return accounts.login(request.email, request.password)

    # ==================== Catalog ====================

    @app.get("/api/games", response_model=list[Game], tags=["Catalog"])
    def list_games() -> list[Game]:
        return catalog.list_games()

    @app.get("/api/regions", response_model=list[Region], tags=["Catalog"])
    def list_regions(gameId: str) -> list[Region]:
        return catalog.list_regions(gameId)

    @app.get("/api/packages", response_model=list[Package], tags=["Catalog"])
    def list_packages(gameId: str, regionKey: Optional[str] = None) -> list[Package]:
        return catalog.list_packages(gameId, regionKey)

    # ==================== Wallet ====================

    @app.get("/api/wallet", response_model=WalletBalance, tags=["Wallet"])
    def get_wallet(email: str) -> WalletBalance:
        return WalletBalance(email=normalize_email(email), balance=wallet.get_balance(email))

    @app.post("/api/wallet/topup", response_model=WalletBalance, tags=["Wallet"])
    def top_up(request: TopUpRequest) -> WalletBalance:
        balance = wallet.credit(request.email, request.amount)
        return WalletBalance(email=normalize_email(request.email), balance=balance)

    # ==================== Orders ====================

    @app.post("/api/orders", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED, tags=["Orders"])
    def create_order(request: CreateOrderRequest) -> CreateOrderResponse:
        return orders.create_order(request)

    @app.get("/api/orders", response_model=list[Order], tags=["Orders"])
    def list_orders(email: str) -> list[Order]:
        return orders.list_orders(email)

    @app.post("/api/payments/ipay88/callback", response_model=TransitionResponse, tags=["Orders"])
    def gateway_callback(request: GatewayCallbackRequest) -> TransitionResponse:
        return orders.confirm_payment(request.order_id)

    # ==================== Admin ====================

    @app.get("/api/admin/orders", response_model=list[Order], dependencies=[Depends(require_admin)], tags=["Admin"])
    def admin_list_orders(limit: Optional[int] = None) -> list[Order]:
        return orders.list_all_orders(limit)

    @app.get("/api/admin/orders/{order_id}/items", response_model=list[OrderItem],
             dependencies=[Depends(require_admin)], tags=["Admin"])
    def admin_list_order_items(order_id: str) -> list[OrderItem]:
        return orders.list_order_items(order_id)

    @app.post("/api/admin/orders/{order_id}/items/{item_id}/code", response_model=ActionResult,
              dependencies=[Depends(require_admin)], tags=["Admin"])
    def admin_set_item_code(order_id: str, item_id: int, request: SetRedemptionCodeRequest) -> ActionResult:
        orders.set_item_redemption_code(order_id, item_id, request.code)
        return ActionResult(message="Redemption code saved")

    @app.post("/api/admin/orders/{order_id}/{action}", response_model=TransitionResponse,
              dependencies=[Depends(require_admin)], tags=["Admin"])
    def admin_transition_order(order_id: str, action: OrderAction) -> TransitionResponse:
        return orders.transition(order_id, action)

    @app.post("/api/admin/wallet", response_model=WalletBalance, dependencies=[Depends(require_admin)], tags=["Admin"])
    def admin_set_balance(request: SetBalanceRequest) -> WalletBalance:
        balance = wallet.set_balance(request.email, request.balance)
        return WalletBalance(email=normalize_email(request.email), balance=balance)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
