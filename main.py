from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator

from accounts import AccountService
from addresses import AddressRegistry
from auth import AccountGateway, Identity, require_admin, require_self_or_admin
from carts import CartManager
from catalog import Catalog
from config import Settings, get_settings
from database import EntityStore, build_store
from errors import CommerceError, ForbiddenError, PartialSuccessError, StoreError
from logging_config import configure_logging, get_logger
from orders import OrderEngine
from reconcile import ConsistencyAuditor
from schemas import Banner as BannerSchema, Category as CategorySchema, OrderStatus, Product as ProductSchema

logger = get_logger("api")


class Services:
    """Everything a request handler needs, built once per app."""

    def __init__(self, settings: Settings, store: EntityStore):
        self.settings = settings
        self.store = store
        self.gateway = AccountGateway(settings)
        self.accounts = AccountService(store, self.gateway)
        self.catalog = Catalog(store)
        self.carts = CartManager(store, settings.max_update_retries)
        self.addresses = AddressRegistry(
            store, settings.max_update_retries, enforce_ownership=settings.enforce_address_ownership
        )
        self.orders = OrderEngine(store, self.addresses, self.carts, settings)
        self.auditor = ConsistencyAuditor(store, settings.max_update_retries)


# Utilities

def ok(data: Any = None, message: str = "success") -> Dict[str, Any]:
    return {"code": 200, "message": message, "data": data if data is not None else {}}


def envelope(status_code: int, message: str, data: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"code": status_code, "message": message, "data": data or {}}),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_identity(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    return get_services(request).gateway.verify(authorization)


def acting_user(identity: Identity, user_id: Optional[str]) -> str:
    """The user a request acts for: the caller, or anyone when the caller is admin."""
    target = user_id or identity.user_id
    require_self_or_admin(identity, target)
    return target


def owned_order(services: Services, identity: Identity, order_id: str) -> Dict[str, Any]:
    order = services.orders.get_order(order_id)
    if order["user"] != identity.user_id and not identity.is_admin:
        raise ForbiddenError("Order does not belong to user")
    return order


# Auth models

class SignUpRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    nickname: Optional[str] = None


class SignInRequest(BaseModel):
    username: str
    password: str


class UpdateUserRequest(BaseModel):
    id: Optional[str] = None
    username: Optional[str] = None
    nickname: Optional[str] = None
    avatar: Optional[str] = None
    gender: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None


class UpdatePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class IdsRequest(BaseModel):
    ids: List[str]


# Address models

class AddAddressRequest(BaseModel):
    id: Optional[str] = Field(None, description="User id; defaults to the caller")
    detail: str


class AddressChange(BaseModel):
    id: str
    detail: str


class UpdateAddressRequest(BaseModel):
    id: Optional[str] = None
    address: AddressChange


class AddressRefRequest(BaseModel):
    id: Optional[str] = None
    address_id: str


# Cart models

class AddToCartRequest(BaseModel):
    user_id: Optional[str] = None
    product_id: str
    quantity: int = 1


class CartQuantityRequest(BaseModel):
    user_id: Optional[str] = None
    product_id: str
    quantity: int


class RemoveFromCartRequest(BaseModel):
    user_id: Optional[str] = None
    product_id: str


# Order models

class LineItemRequest(BaseModel):
    product_id: str
    quantity: int


class CreateOrderRequest(BaseModel):
    user_id: Optional[str] = None
    products: List[LineItemRequest]
    address_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    address_id: Optional[str] = None


class OrderStatusRequest(BaseModel):
    id: str
    status: str


class OrderRefRequest(BaseModel):
    id: str


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    desc: Optional[str] = None
    cover: Optional[str] = None
    categories: Optional[List[str]] = None
    banners: Optional[List[str]] = None
    hot: Optional[bool] = None
    status: Optional[bool] = None

    @field_validator("name", "price", "stock", "categories", "banners", "hot", "status")
    @classmethod
    def reject_null(cls, value):
        # Omit a field to leave it unchanged; only desc and cover may be cleared
        if value is None:
            raise ValueError("must not be null")
        return value


router = APIRouter()


# Routes
@router.get("/")
def root():
    return {"message": "E-commerce SaaS API running"}


@router.get("/test")
def test_database(services: Services = Depends(get_services)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if services.settings.database_url else "❌ Not Set",
        "database_name": "✅ Set" if services.settings.database_name else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        health = services.store.health()
        resp["database"] = f"✅ Connected & Working ({health['backend']})"
        resp["connection_status"] = "Connected"
        resp["collections"] = health["collections"]
    except StoreError as e:
        resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


# Auth endpoints
@router.post("/api/register")
def register(payload: SignUpRequest, services: Services = Depends(get_services)):
    user = services.accounts.register(payload.username, payload.password, payload.email, payload.nickname)
    return ok({"user": user}, "User registered successfully")


@router.post("/api/login")
def login(payload: SignInRequest, services: Services = Depends(get_services)):
    return ok(services.accounts.login(payload.username, payload.password), "Login success")


# Users
@router.get("/api/users")
def list_users(
    page: int = 1,
    limit: int = 10,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    return ok(services.accounts.list_users(page, limit), "Users fetched successfully")


@router.post("/api/users/updatePassword")
def update_password(
    payload: UpdatePasswordRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    services.accounts.update_password(identity.user_id, payload.old_password, payload.new_password)
    return ok(message="Password updated successfully")


@router.post("/api/users/update")
def update_user(
    payload: UpdateUserRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.id)
    changes = payload.model_dump(mode="json", exclude={"id"}, exclude_unset=True)
    user = services.accounts.update_profile(user_id, changes, allow_role=identity.is_admin)
    return ok({"user": user}, "User updated successfully")


@router.post("/api/users/delete")
def delete_users(
    payload: IdsRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    deleted = services.accounts.delete_users(payload.ids)
    return ok({"deleted": deleted}, "Users deleted successfully")


# Addresses
@router.get("/api/users/address/{user_id}")
def get_user_address(
    user_id: str,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_self_or_admin(identity, user_id)
    return ok(services.addresses.list_addresses(user_id), "User address fetched successfully")


@router.post("/api/users/address")
def add_user_address(
    payload: AddAddressRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.id)
    address = services.addresses.add_address(user_id, payload.detail)
    return ok({"address": address}, "User address added successfully")


@router.post("/api/users/address/update")
def update_user_address(
    payload: UpdateAddressRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.id)
    address = services.addresses.update_address(user_id, payload.address.id, payload.address.detail)
    return ok({"address": address}, "User address updated successfully")


@router.post("/api/users/address/default")
def update_user_default_address(
    payload: AddressRefRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.id)
    user = services.addresses.set_default_address(user_id, payload.address_id)
    return ok({"default_address": user["default_address"]}, "Default address updated successfully")


@router.delete("/api/users/address/delete")
def delete_user_address(
    payload: AddressRefRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.id)
    user = services.addresses.delete_address(user_id, payload.address_id)
    return ok(
        {"address": user["address"], "default_address": user["default_address"]},
        "User address deleted successfully",
    )


@router.get("/api/users/{user_id}")
def get_user_info(
    user_id: str,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_self_or_admin(identity, user_id)
    return ok({"user": services.accounts.get_user(user_id)}, "User info fetched successfully")


# Cart
@router.get("/api/cart")
def get_cart(
    user_id: Optional[str] = None,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    return ok(services.carts.list_cart(acting_user(identity, user_id)), "Get cart products successfully")


@router.post("/api/cart")
def add_to_cart(
    payload: AddToCartRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.user_id)
    cart = services.carts.add_to_cart(user_id, payload.product_id, payload.quantity)
    return ok({"cart": cart}, "Product added to cart successfully")


@router.delete("/api/cart")
def remove_from_cart(
    payload: RemoveFromCartRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.user_id)
    cart = services.carts.remove_from_cart(user_id, payload.product_id)
    return ok({"cart": cart}, "Remove product from cart successfully")


@router.put("/api/cart")
def update_cart_quantity(
    payload: CartQuantityRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.user_id)
    cart = services.carts.set_quantity(user_id, payload.product_id, payload.quantity)
    return ok({"cart": cart}, "Update cart product quantity successfully")


# Orders
@router.post("/api/orders")
def create_order(
    payload: CreateOrderRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.user_id)
    items = [item.model_dump() for item in payload.products]
    order = services.orders.create_order(user_id, items, payload.address_id)
    return ok({"order": order}, "Order created successfully")


# Checkout (no payment provider; the order waits for payment)
@router.post("/api/orders/checkout")
def checkout(
    payload: CheckoutRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    user_id = acting_user(identity, payload.user_id)
    order = services.orders.checkout(user_id, payload.address_id)
    return ok({"order": order}, "Order created successfully")


@router.get("/api/orders/all")
def get_orders(
    status: Optional[str] = None,
    user: Optional[str] = None,
    page: int = 1,
    page_size: Optional[int] = None,
    as_of: Optional[datetime] = None,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    return ok(services.orders.list_orders(user, status, page, page_size, as_of), "Get all orders successfully")


@router.get("/api/orders/user/{user_id}")
def get_user_orders(
    user_id: str,
    status: Optional[str] = None,
    page: int = 1,
    page_size: Optional[int] = None,
    as_of: Optional[datetime] = None,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_self_or_admin(identity, user_id)
    services.accounts.get_user(user_id)
    return ok(services.orders.list_orders(user_id, status, page, page_size, as_of), "Get user orders successfully")


@router.get("/api/orders/canceled/{user_id}")
def get_user_canceled_orders(
    user_id: str,
    page: int = 1,
    page_size: Optional[int] = None,
    as_of: Optional[datetime] = None,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_self_or_admin(identity, user_id)
    result = services.orders.list_orders(user_id, OrderStatus.CANCELLED.value, page, page_size, as_of)
    return ok(result, "Get user canceled orders successfully")


@router.post("/api/orders/status")
def update_order_status(
    payload: OrderStatusRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    order = services.orders.update_status(payload.id, payload.status)
    return ok({"order": order}, "Order status updated successfully")


@router.post("/api/orders/cancel")
def cancel_order(
    payload: OrderRefRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    order = owned_order(services, identity, payload.id)
    order = services.orders.cancel_order(order["user"], payload.id)
    return ok({"order": order}, "Order canceled successfully")


@router.post("/api/orders/delete")
def delete_order(
    payload: OrderRefRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    order = owned_order(services, identity, payload.id)
    services.orders.delete_order(order["user"], payload.id)
    return ok(message="Order deleted successfully")


@router.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    return ok({"order": owned_order(services, identity, order_id)}, "Get order successfully")


@router.get("/api/orders/{order_id}/products")
def get_order_products(
    order_id: str,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    owned_order(services, identity, order_id)
    return ok({"products": services.orders.get_order_products(order_id)}, "Get order products successfully")


# Products
@router.post("/api/products")
def create_product(
    product: ProductSchema,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    return ok({"product": services.catalog.create_product(product)}, "Create success")


@router.get("/api/products")
def list_products(page: int = 1, limit: int = 10, services: Services = Depends(get_services)):
    return ok(services.catalog.list_products(page, limit), "Get success")


@router.get("/api/products/hot")
def hot_products(services: Services = Depends(get_services)):
    return ok({"products": services.catalog.hot_products()}, "Get success")


@router.get("/api/products/new")
def new_products(services: Services = Depends(get_services)):
    return ok({"products": services.catalog.new_products()}, "Get success")


@router.post("/api/products/delete")
def delete_products(
    payload: IdsRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    return ok({"deleted": services.catalog.delete_products(payload.ids)}, "Delete success")


@router.get("/api/products/{product_id}")
def get_product(product_id: str, services: Services = Depends(get_services)):
    return ok({"product": services.catalog.get_product(product_id)}, "Get success")


@router.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdateRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    product = services.catalog.update_product(product_id, payload.model_dump(exclude_unset=True))
    return ok({"product": product}, "Product updated successfully")


# Categories & banners
@router.post("/api/categories")
def create_category(
    category: CategorySchema,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    return ok({"category": services.catalog.create_category(category)}, "Create success")


@router.get("/api/categories")
def list_categories(services: Services = Depends(get_services)):
    return ok({"categories": services.catalog.list_categories()}, "Get success")


@router.post("/api/banners")
def create_banner(
    banner: BannerSchema,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    return ok({"banner": services.catalog.create_banner(banner)}, "Create success")


@router.get("/api/banners")
def list_banners(services: Services = Depends(get_services)):
    return ok({"banners": services.catalog.list_banners()}, "Get success")


# Consistency
@router.get("/api/admin/consistency/{user_id}")
def audit_user(
    user_id: str,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    report = services.auditor.audit_user(user_id)
    return ok({"report": report.model_dump(), "consistent": report.consistent})


@router.post("/api/admin/consistency/{user_id}/repair")
def repair_user(
    user_id: str,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    require_admin(identity)
    report = services.auditor.repair_user(user_id)
    return ok({"report": report.model_dump(), "repaired": not report.consistent})


def create_app(settings: Optional[Settings] = None, store: Optional[EntityStore] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_format)
    store = store or build_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            store.ensure_indexes()
        except StoreError as e:
            logger.warning("index_setup_failed", error=str(e))
        yield

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.services = Services(settings, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CommerceError)
    async def handle_commerce_error(request: Request, exc: CommerceError):
        data = dict(exc.data)
        if isinstance(exc, PartialSuccessError):
            data["partial"] = True
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message, **data)
        return envelope(exc.status_code, exc.message, data)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return envelope(422, "Invalid request", {"errors": exc.errors()})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return envelope(500, "Internal server error")

    app.include_router(router)
    return app


app = create_app()


def serve():
    """Run the API with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("main:app", host=settings.host, port=settings.port)
