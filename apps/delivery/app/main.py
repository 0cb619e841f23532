import hmac
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from lastmile_shared import RequestIDMiddleware, add_standard_health, configure_cors, setup_json_logging
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import config
from .checkout import CheckoutRequest, DeliveryQuote, create_order, quote_for_shop
from .dispatch import DispatchSummary, dispatch_orders
from .errors import DeliveryError, Forbidden, NotFound, Unauthorized, ValidationFailed
from .lifecycle import Actor, OrderStatus, transition
from .models import (  # noqa: F401  re-exported for tests and tooling
    Base,
    Buyer,
    BuyerAddress,
    Delivery,
    DispatchAttempt,
    Order,
    OrderEvent,
    OrderItem,
    Product,
    Seller,
)
from .webhook import SIGNATURE_HEADER, handle_webhook, refresh_delivery


if config.DB_URL.startswith("sqlite"):
    engine = create_engine(config.DB_URL, pool_pre_ping=True, connect_args={"check_same_thread": False})
else:
    engine = create_engine(config.DB_URL, pool_pre_ping=True)


def get_session():
    with Session(engine) as s:
        yield s


def on_startup():
    config.enforce_webhook_secret_baseline()
    Base.metadata.create_all(engine)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    on_startup()
    yield


def _db_ok() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


_ENABLE_DOCS = config.ENV in ("dev", "test")

app = FastAPI(
    title="Delivery",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if _ENABLE_DOCS else None,
    redoc_url=None,
    openapi_url="/openapi.json" if _ENABLE_DOCS else None,
)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, config.ALLOWED_ORIGINS)
add_standard_health(app, checks={"db": _db_ok})


@app.exception_handler(DeliveryError)
async def _delivery_error(_request: Request, exc: DeliveryError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# ---- Guards ----

def _require_internal_secret(x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret")) -> None:
    if not config.INTERNAL_SECRET:
        return
    provided = (x_internal_secret or "").strip()
    if not provided or not hmac.compare_digest(provided.encode(), config.INTERNAL_SECRET.encode()):
        raise Unauthorized("internal auth required")


def _seller_id(x_seller_id: Optional[str] = Header(default=None, alias="X-Seller-Id")) -> str:
    sid = (x_seller_id or "").strip()
    if not sid:
        raise Unauthorized("seller identity required")
    return sid


router = APIRouter(prefix="/delivery", dependencies=[Depends(_require_internal_secret)])
public = APIRouter(prefix="/delivery")


# ---- DTOs ----

class OrderItemOut(BaseModel):
    product_id: str
    product_name: str
    price: int
    quantity: int
    model_config = ConfigDict(from_attributes=True)


class DeliveryOut(BaseModel):
    provider_order_id: str
    status: str
    provider_status: Optional[str] = None
    delivery_fee: int
    cod_amount: int
    share_link: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    driver_plate: Optional[str] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: str
    order_number: str
    seller_id: str
    status: str
    buyer_name: str
    buyer_address: str
    buyer_notes: Optional[str] = None
    distance_km: float
    subtotal: int
    delivery_fee: int
    cod_fee: int
    total: int
    scheduled_date: str
    scheduled_time: str
    failure_reason: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    items: List[OrderItemOut] = []
    delivery: Optional[DeliveryOut] = None
    model_config = ConfigDict(from_attributes=True)


class OrderCreatedOut(BaseModel):
    id: str
    order_number: str
    status: str
    total: int
    scheduled_date: str
    scheduled_time: str


class StatusChangeReq(BaseModel):
    status: str
    note: Optional[str] = Field(default=None, max_length=512)


class DispatchReq(BaseModel):
    order_ids: List[str] = Field(min_length=1, max_length=100)


# ---- Routes ----

@router.get("/shops/{slug}/delivery-quote", response_model=DeliveryQuote)
def delivery_quote(
    slug: str,
    lat: float = Query(...),
    lng: float = Query(...),
    address: str = Query(default="", max_length=512),
    s: Session = Depends(get_session),
):
    return quote_for_shop(s, slug, lat, lng, address)


@router.post("/orders", response_model=OrderCreatedOut, status_code=201)
def checkout(body: CheckoutRequest, s: Session = Depends(get_session)):
    o = create_order(s, body)
    return OrderCreatedOut(
        id=o.id,
        order_number=o.order_number,
        status=o.status,
        total=o.total,
        scheduled_date=o.scheduled_date,
        scheduled_time=o.scheduled_time,
    )


@public.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, s: Session = Depends(get_session)):
    o = s.get(Order, order_id)
    if not o:
        raise NotFound("order not found", code="order_not_found")
    return OrderOut.model_validate(o)


@router.patch("/sellers/me/orders/{order_id}", response_model=OrderOut)
def update_order_status(
    order_id: str,
    body: StatusChangeReq,
    seller_id: str = Depends(_seller_id),
    s: Session = Depends(get_session),
):
    try:
        target = OrderStatus((body.status or "").strip().lower())
    except ValueError:
        raise ValidationFailed(f"unknown status {body.status!r}", code="invalid_status")
    o = s.get(Order, order_id)
    if not o:
        raise NotFound("order not found", code="order_not_found")
    if o.seller_id != seller_id:
        raise Forbidden("order belongs to another shop")
    transition(s, o, target, actor=Actor.SELLER, note=body.note)
    s.refresh(o)
    return OrderOut.model_validate(o)


@router.post("/orders/dispatch", response_model=DispatchSummary)
def dispatch(body: DispatchReq, seller_id: str = Depends(_seller_id), s: Session = Depends(get_session)):
    return dispatch_orders(s, seller_id, body.order_ids)


@router.post("/sellers/me/orders/{order_id}/delivery/refresh", response_model=DeliveryOut)
def delivery_refresh(order_id: str, seller_id: str = Depends(_seller_id), s: Session = Depends(get_session)):
    return DeliveryOut.model_validate(refresh_delivery(s, seller_id, order_id))


@public.post("/lalamove/webhook")
async def lalamove_webhook(request: Request, s: Session = Depends(get_session)):
    raw = await request.body()
    code = await run_in_threadpool(handle_webhook, s, raw, request.headers.get(SIGNATURE_HEADER))
    if code == 200:
        return {"success": True}
    errors = {400: "invalid payload", 401: "invalid signature", 404: "delivery not found"}
    return JSONResponse({"error": errors.get(code, "error")}, status_code=code)


@public.get("/lalamove/webhook")
def lalamove_webhook_ping():
    return {"status": "ok", "service": "lalamove-webhook"}


app.include_router(router)
app.include_router(public)
