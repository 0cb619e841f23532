"""
Courier status reconciliation.

Webhooks (and seller-triggered status pulls) are folded into local state by
overwriting fields with the reported values, so a replay changes nothing.
Delivery status only moves forward; the order walks the lifecycle table to
the mapped target, and targets it cannot reach (stale or out-of-order
events) are ignored.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from . import notify as _notify
from .dispatch import recover_attempt
from .errors import BusinessRuleViolation, CourierNotConfigured, CourierUnavailable, Forbidden, NotFound
from .lalamove import CourierClient, Driver, ProviderError, driver_from, get_courier_client
from .lifecycle import Actor, OrderStatus, advance, path_to, send_pending
from .models import Delivery, DispatchAttempt, Order, utcnow

_log = logging.getLogger("lastmile.delivery.webhook")

SIGNATURE_HEADER = "X-LLM-Signature"


class ProviderStatus(str, Enum):
    ASSIGNING_DRIVER = "ASSIGNING_DRIVER"
    ON_GOING = "ON_GOING"
    PICKED_UP = "PICKED_UP"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Any) -> "ProviderStatus":
        try:
            return cls(("" if raw is None else str(raw)).strip().upper())
        except ValueError:
            return cls.UNKNOWN


class DeliveryStatus(str, Enum):
    BOOKED = "booked"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"


_DELIVERY_STATUS: Dict[ProviderStatus, Optional[DeliveryStatus]] = {
    ProviderStatus.ASSIGNING_DRIVER: DeliveryStatus.BOOKED,
    ProviderStatus.ON_GOING: DeliveryStatus.ASSIGNED,
    ProviderStatus.PICKED_UP: DeliveryStatus.PICKED_UP,
    ProviderStatus.COMPLETED: DeliveryStatus.DELIVERED,
    ProviderStatus.CANCELED: DeliveryStatus.CANCELLED,
    ProviderStatus.REJECTED: DeliveryStatus.FAILED,
    ProviderStatus.EXPIRED: DeliveryStatus.EXPIRED,
    ProviderStatus.UNKNOWN: None,
}

_ORDER_STATUS: Dict[ProviderStatus, Optional[OrderStatus]] = {
    ProviderStatus.ASSIGNING_DRIVER: None,
    ProviderStatus.ON_GOING: OrderStatus.DISPATCHED,
    ProviderStatus.PICKED_UP: OrderStatus.PICKED_UP,
    ProviderStatus.COMPLETED: OrderStatus.DELIVERED,
    ProviderStatus.CANCELED: OrderStatus.CANCELLED,
    ProviderStatus.REJECTED: OrderStatus.FAILED,
    ProviderStatus.EXPIRED: OrderStatus.FAILED,
    ProviderStatus.UNKNOWN: None,
}

for _table in (_DELIVERY_STATUS, _ORDER_STATUS):
    _missing = set(ProviderStatus) - set(_table)
    if _missing:
        raise RuntimeError(f"provider status mapping incomplete: {sorted(m.value for m in _missing)}")

# booked < assigned < picked_up < any terminal
_DELIVERY_RANK = {
    DeliveryStatus.BOOKED: 0,
    DeliveryStatus.ASSIGNED: 1,
    DeliveryStatus.PICKED_UP: 2,
    DeliveryStatus.DELIVERED: 3,
    DeliveryStatus.CANCELLED: 3,
    DeliveryStatus.FAILED: 3,
    DeliveryStatus.EXPIRED: 3,
}

_FAILURE_REASONS = {
    ProviderStatus.CANCELED: "cancelled at courier",
    ProviderStatus.REJECTED: "rejected by driver",
    ProviderStatus.EXPIRED: "no driver found before the booking expired",
}


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """HMAC-SHA256 of the raw body, hex, compared in constant time. No secret means no trust."""
    secret = config.LALAMOVE_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        _log.error("webhook rejected: no webhook secret configured")
        return False
    if not signature:
        _log.warning("webhook rejected: missing %s header", SIGNATURE_HEADER)
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode()):
        _log.warning("webhook rejected: signature mismatch")
        return False
    return True


def _rank(value: Optional[str]) -> int:
    try:
        return _DELIVERY_RANK[DeliveryStatus(value)]
    except ValueError:
        return -1


def _advance_order(s: Session, order: Order, target: OrderStatus, note: str, now: datetime) -> list:
    try:
        current = OrderStatus(order.status)
    except ValueError:
        _log.error("order %s has unknown status %r", order.id, order.status)
        return []
    if current == target:
        return []
    steps = path_to(current, target, Actor.COURIER)
    if not steps:
        _log.info("order %s: courier status %s ignored while %s", order.id, target.value, current.value)
        return []
    pending: list = []
    for step in steps:
        pending += advance(s, order, step, actor=Actor.COURIER, note=note, now=now)
    return pending


def apply_provider_update(
    s: Session,
    delivery: Delivery,
    raw_status: Any,
    driver: Optional[Driver] = None,
    *,
    share_link: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[tuple]:
    """
    Fold one provider status report into `delivery` and its order.
    Does not commit; returns notifications to send after the commit.
    """
    now = now or utcnow()
    status = ProviderStatus.parse(raw_status)
    pending: List[tuple] = []
    order = s.get(Order, delivery.order_id)

    if status == ProviderStatus.UNKNOWN:
        _log.warning("delivery %s: unknown provider status %r stored as-is", delivery.id, raw_status)
        delivery.provider_status = ("" if raw_status is None else str(raw_status))[:32]
        return pending

    new_status = _DELIVERY_STATUS[status]
    changed = _rank(new_status.value) > _rank(delivery.status)
    if changed:
        delivery.status = new_status.value
        delivery.provider_status = status.value
    if driver is not None and any((driver.name, driver.phone, driver.plate_number)):
        delivery.driver_name = driver.name
        delivery.driver_phone = driver.phone
        delivery.driver_plate = driver.plate_number
    if share_link:
        delivery.share_link = share_link
    if status in (ProviderStatus.PICKED_UP, ProviderStatus.COMPLETED) and delivery.picked_up_at is None:
        delivery.picked_up_at = now
    if status == ProviderStatus.COMPLETED and delivery.delivered_at is None:
        delivery.delivered_at = now

    target = _ORDER_STATUS[status]
    if order is not None and target is not None:
        note = _FAILURE_REASONS.get(status) or f"lalamove {status.value}"
        pending += _advance_order(s, order, target, note, now)

    if changed and order is not None:
        base = {
            "order_id": order.id,
            "order_number": order.order_number,
            "seller_id": order.seller_id,
            "provider_order_id": delivery.provider_order_id,
        }
        if status == ProviderStatus.ON_GOING and delivery.driver_name:
            pending.append((_notify.DRIVER_ASSIGNED, {
                **base,
                "driver_name": delivery.driver_name,
                "driver_phone": delivery.driver_phone,
                "driver_plate": delivery.driver_plate,
                "share_link": delivery.share_link,
            }))
        elif status in _FAILURE_REASONS:
            pending.append((_notify.DELIVERY_FAILED, {**base, "reason": _FAILURE_REASONS[status]}))
    return pending


def _find_delivery(s: Session, provider_order_id: str, client: Optional[CourierClient], notifier, now) -> Optional[Delivery]:
    delivery = s.execute(select(Delivery).where(Delivery.provider_order_id == provider_order_id)).scalars().first()
    if delivery is not None:
        return delivery
    attempt = s.execute(
        select(DispatchAttempt).where(
            DispatchAttempt.provider_order_id == provider_order_id,
            DispatchAttempt.status == "booked",
        )
    ).scalars().first()
    if attempt is None:
        return None
    _log.info("webhook for unrecorded booking %s, recovering", provider_order_id)
    recover_attempt(s, attempt, client, notifier=notifier, now=now)
    return s.execute(select(Delivery).where(Delivery.provider_order_id == provider_order_id)).scalars().first()


def handle_webhook(
    s: Session,
    raw_body: bytes,
    signature: Optional[str],
    *,
    secret: Optional[str] = None,
    client: Optional[CourierClient] = None,
    notifier=None,
    now: Optional[datetime] = None,
) -> int:
    """Verify, reconcile, commit. Returns the HTTP status to answer the provider with."""
    if not verify_signature(raw_body, signature, secret):
        return 401
    try:
        body = json.loads(raw_body or b"{}")
    except ValueError:
        _log.warning("webhook body is not JSON")
        return 400
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or not data.get("orderId"):
        _log.warning("webhook without data.orderId")
        return 400
    provider_order_id = str(data["orderId"])
    raw_status = data.get("status")

    delivery = _find_delivery(s, provider_order_id, client or get_courier_client(), notifier, now)
    if delivery is None:
        _log.warning("webhook for unknown lalamove order %s (%s)", provider_order_id, raw_status)
        return 404

    try:
        pending = apply_provider_update(
            s, delivery, raw_status, driver_from(data.get("driver")),
            share_link=data.get("shareLink"), now=now,
        )
        s.commit()
    except Exception:
        s.rollback()
        _log.error("applying webhook for lalamove order %s failed", provider_order_id, exc_info=True)
        raise
    send_pending(pending, notifier)
    _log.info("lalamove order %s -> %s (delivery %s)", provider_order_id, raw_status, delivery.status)
    return 200


def refresh_delivery(
    s: Session,
    seller_id: str,
    order_id: str,
    *,
    client: Optional[CourierClient] = None,
    notifier=None,
    now: Optional[datetime] = None,
) -> Delivery:
    """Seller-triggered pull of the provider's current status, applied like a webhook."""
    order = s.get(Order, order_id)
    if order is None:
        raise NotFound("order not found", code="order_not_found")
    if order.seller_id != seller_id:
        raise Forbidden("order belongs to another shop")
    delivery = order.delivery
    if delivery is None:
        raise BusinessRuleViolation("order has not been dispatched", code="no_delivery")
    client = client or get_courier_client()
    if client is None:
        raise CourierNotConfigured("courier provider is not configured")
    try:
        st = client.get_status(delivery.provider_order_id)
    except ProviderError as e:
        _log.warning("status pull for lalamove order %s failed: %s", delivery.provider_order_id, e)
        raise CourierUnavailable("could not reach the courier provider")
    try:
        pending = apply_provider_update(s, delivery, st.status, st.driver, share_link=st.share_link, now=now)
        s.commit()
    except Exception:
        s.rollback()
        raise
    send_pending(pending, notifier)
    s.refresh(delivery)
    return delivery
