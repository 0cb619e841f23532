"""
Checkout: delivery quotes for a shop and order creation.

All validation happens before the first write. The write phase (buyer,
order, line items, stock decrements) is one transaction; any failure rolls
the whole thing back so no partial order is ever persisted.
"""
from __future__ import annotations

import logging
import re
import secrets
import time
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from . import notify as _notify
from .errors import BusinessRuleViolation, NotFound, RateLimited, ValidationFailed
from .fees import estimate_fee
from .geo import valid_coords
from .lalamove import CourierClient
from .models import Buyer, BuyerAddress, Order, OrderItem, Product, Seller
from .scheduling import ShopSchedule, next_delivery_slot

_log = logging.getLogger("lastmile.delivery.checkout")

_PHONE_RE = re.compile(r"^0\d{9}$")
SAVED_ADDRESS_LABEL = "ที่อยู่จัดส่ง"


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1, le=999)


class CheckoutRequest(BaseModel):
    shop_slug: str
    items: List[CheckoutItem] = Field(min_length=1)
    buyer_name: str = Field(min_length=1, max_length=200)
    buyer_phone: str
    buyer_address: str = Field(min_length=1, max_length=512)
    buyer_lat: float
    buyer_lng: float
    buyer_notes: Optional[str] = Field(default=None, max_length=512)
    save_address: bool = False


class DeliveryQuote(BaseModel):
    distance_km: float
    delivery_fee: int
    cod_fee: int
    fee_source: str
    scheduled_at: datetime
    scheduled_date: str
    scheduled_time: str
    scheduled_label: str
    quotation_id: Optional[str] = None
    quotation_expires_at: Optional[datetime] = None


# ---- Per-phone checkout throttle ----
# Process-local sliding window; state is lost on restart and not shared
# between workers, so limits apply per instance.
_CHECKOUT_RATE: Dict[str, List[float]] = {}


def _rate_limit_checkout(phone: str) -> None:
    now = time.time()
    window_start = now - config.CHECKOUT_RATE_WINDOW_SECS
    lst = [ts for ts in _CHECKOUT_RATE.get(phone) or [] if ts >= window_start]
    if len(lst) >= config.CHECKOUT_MAX_PER_PHONE:
        _CHECKOUT_RATE[phone] = lst
        raise RateLimited("too many orders for this phone, try again later")
    lst.append(now)
    _CHECKOUT_RATE[phone] = lst
    _prune_rate_store(window_start)


def _prune_rate_store(window_start: float) -> None:
    if len(_CHECKOUT_RATE) < 1024:
        return
    for phone in [p for p, lst in _CHECKOUT_RATE.items() if not lst or lst[-1] < window_start]:
        _CHECKOUT_RATE.pop(phone, None)


def reset_rate_limits() -> None:
    _CHECKOUT_RATE.clear()


def normalize_phone(phone: str) -> str:
    return re.sub(r"[\s\-]", "", phone or "")


def _mask(phone: str) -> str:
    return phone[:3] + "****" + phone[-3:] if len(phone) >= 7 else "***"


# ---- Shop lookup / quote ----

def load_shop(s: Session, slug: str) -> Seller:
    seller = s.execute(select(Seller).where(Seller.shop_slug == (slug or "").strip().lower())).scalars().first()
    if not seller:
        raise NotFound("shop not found", code="shop_not_found")
    if not seller.is_active:
        raise BusinessRuleViolation("shop is not accepting orders", code="shop_inactive")
    if not valid_coords(seller.pickup_lat, seller.pickup_lng):
        raise BusinessRuleViolation("shop has no pickup location configured", code="no_pickup_location")
    return seller


def shop_schedule(seller: Seller) -> ShopSchedule:
    try:
        return ShopSchedule.from_seller(seller.shipping_days, seller.shipping_time, seller.pickup_lat, seller.pickup_lng)
    except ValueError:
        _log.warning("seller %s has an invalid shipping schedule, using defaults", seller.id)
        return ShopSchedule.from_seller(None, None, seller.pickup_lat, seller.pickup_lng)


def quote_for_seller(
    seller: Seller,
    lat: float,
    lng: float,
    address: str = "",
    *,
    now: Optional[datetime] = None,
    client: Optional[CourierClient] = None,
) -> DeliveryQuote:
    if not valid_coords(lat, lng):
        raise ValidationFailed("invalid coordinates", code="invalid_coordinates")
    est = estimate_fee(
        seller.pickup_lat, seller.pickup_lng, lat, lng, address,
        pickup_address=seller.pickup_address or "",
        client=client,
    )
    slot = next_delivery_slot(shop_schedule(seller), now)
    return DeliveryQuote(
        distance_km=est.distance_km,
        delivery_fee=est.delivery_fee,
        cod_fee=config.COD_FEE,
        fee_source=est.source,
        scheduled_at=slot.at,
        scheduled_date=slot.date_iso,
        scheduled_time=slot.time_label,
        scheduled_label=slot.label,
        quotation_id=est.quotation_id,
        quotation_expires_at=est.quotation_expires_at,
    )


def quote_for_shop(s: Session, slug: str, lat: float, lng: float, address: str = "", *, now=None, client=None) -> DeliveryQuote:
    return quote_for_seller(load_shop(s, slug), lat, lng, address, now=now, client=client)


# ---- Order creation ----

def _validate_request(req: CheckoutRequest) -> str:
    phone = normalize_phone(req.buyer_phone)
    if not _PHONE_RE.match(phone):
        raise ValidationFailed("phone must be a 10-digit number starting with 0", code="invalid_phone")
    if not valid_coords(req.buyer_lat, req.buyer_lng):
        raise ValidationFailed("please pick the address on the map", code="invalid_coordinates")
    if not req.buyer_name.strip() or not req.buyer_address.strip():
        raise ValidationFailed("name and address are required", code="missing_fields")
    return phone


def _merge_items(items: List[CheckoutItem]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for it in items:
        merged[it.product_id] = merged.get(it.product_id, 0) + it.quantity
    return merged


def _check_products(s: Session, seller: Seller, wanted: Dict[str, int]) -> Dict[str, Product]:
    rows = s.execute(select(Product).where(Product.id.in_(list(wanted)))).scalars().all()
    products = {p.id: p for p in rows}
    for pid, qty in wanted.items():
        p = products.get(pid)
        if not p:
            raise BusinessRuleViolation("some products were not found", code="product_not_found")
        if not p.is_active:
            raise BusinessRuleViolation(f'"{p.name}" is not available', code="product_inactive")
        if p.seller_id != seller.id:
            raise BusinessRuleViolation("product does not belong to this shop", code="wrong_seller")
        if p.stock < qty:
            raise BusinessRuleViolation(f'"{p.name}" has only {p.stock} left', code="insufficient_stock")
    return products


def _new_order_number(s: Session) -> str:
    for digits in (4, 4, 4, 4, 6, 6, 8):
        candidate = f"{config.ORDER_NUMBER_PREFIX}-{secrets.randbelow(9 * 10 ** (digits - 1)) + 10 ** (digits - 1)}"
        if s.execute(select(Order.id).where(Order.order_number == candidate)).first() is None:
            return candidate
    return f"{config.ORDER_NUMBER_PREFIX}-{secrets.token_hex(6).upper()}"


def _find_or_create_buyer(s: Session, phone: str, name: str) -> Buyer:
    buyer = s.execute(select(Buyer).where(Buyer.phone == phone)).scalars().first()
    if buyer:
        if name:
            buyer.name = name
        return buyer
    try:
        with s.begin_nested():
            buyer = Buyer(phone=phone, name=name or None)
            s.add(buyer)
    except IntegrityError:
        # Concurrent checkout with the same phone created it first.
        buyer = s.execute(select(Buyer).where(Buyer.phone == phone)).scalars().one()
    return buyer


def _save_address(s: Session, buyer: Buyer, req: CheckoutRequest, phone: str) -> None:
    try:
        with s.begin_nested():
            s.add(
                BuyerAddress(
                    buyer_id=buyer.id,
                    label=SAVED_ADDRESS_LABEL,
                    name=req.buyer_name.strip(),
                    phone=phone,
                    address=req.buyer_address.strip(),
                    lat=req.buyer_lat,
                    lng=req.buyer_lng,
                    notes=(req.buyer_notes or "").strip() or None,
                )
            )
    except Exception:
        _log.warning("saving address for buyer %s failed", buyer.id, exc_info=True)


def create_order(
    s: Session,
    req: CheckoutRequest,
    *,
    now: Optional[datetime] = None,
    client: Optional[CourierClient] = None,
    notifier=None,
) -> Order:
    phone = _validate_request(req)
    _rate_limit_checkout(phone)
    seller = load_shop(s, req.shop_slug)
    wanted = _merge_items(req.items)
    products = _check_products(s, seller, wanted)
    quote = quote_for_seller(seller, req.buyer_lat, req.buyer_lng, req.buyer_address.strip(), now=now, client=client)

    subtotal = sum(products[pid].price * qty for pid, qty in wanted.items())
    try:
        for pid, qty in wanted.items():
            res = s.execute(
                update(Product)
                .where(Product.id == pid, Product.stock >= qty, Product.is_active.is_(True))
                .values(stock=Product.stock - qty)
            )
            if res.rowcount != 1:
                raise BusinessRuleViolation(f'"{products[pid].name}" is out of stock', code="insufficient_stock")
        buyer = _find_or_create_buyer(s, phone, req.buyer_name.strip())
        order = Order(
            order_number=_new_order_number(s),
            seller_id=seller.id,
            buyer_id=buyer.id,
            status="pending",
            buyer_name=req.buyer_name.strip(),
            buyer_phone=phone,
            buyer_address=req.buyer_address.strip(),
            buyer_lat=req.buyer_lat,
            buyer_lng=req.buyer_lng,
            buyer_notes=(req.buyer_notes or "").strip() or None,
            distance_km=quote.distance_km,
            subtotal=subtotal,
            delivery_fee=quote.delivery_fee,
            cod_fee=quote.cod_fee,
            total=subtotal + quote.delivery_fee + quote.cod_fee,
            scheduled_date=quote.scheduled_date,
            scheduled_time=quote.scheduled_time,
            scheduled_at=quote.scheduled_at,
        )
        for pid, qty in wanted.items():
            p = products[pid]
            order.items.append(OrderItem(product_id=p.id, product_name=p.name, price=p.price, quantity=qty))
        s.add(order)
        s.flush()
        if req.save_address:
            _save_address(s, buyer, req, phone)
        s.commit()
    except Exception:
        s.rollback()
        raise
    s.refresh(order)
    _log.info(
        "order %s created for seller %s (buyer %s, total %d, fee via %s)",
        order.order_number, seller.id, _mask(phone), order.total, quote.fee_source,
    )
    _notify.notify(
        _notify.ORDER_CREATED,
        {
            "order_id": order.id,
            "order_number": order.order_number,
            "seller_id": seller.id,
            "line_user_id": seller.line_user_id,
            "buyer_name": order.buyer_name,
            "total": order.total,
            "items": [{"name": i.product_name, "quantity": i.quantity} for i in order.items],
            "scheduled_label": quote.scheduled_label,
        },
        notifier,
    )
    return order
