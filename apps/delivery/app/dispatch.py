"""
Batch courier booking for confirmed orders.

Per order:

  1. claim   conditional UPDATE sets orders.dispatch_attempt_id only while
             the order is confirmed and unclaimed; a DispatchAttempt row
             ("claimed") is committed with it.
  2. book    fresh quote, then create the provider order with COD equal to
             the order total at the provider's fee. The attempt is committed
             as "booked" right away so the booking is never forgotten.
  3. finish  Delivery row + order -> dispatched (+ attempt "completed") in
             one commit.

A failure in 1-2 marks the order failed and the batch moves on. A failure
in 3 cancels the provider booking; if even that fails the attempt stays
"booked" and is finished by recover_orphans() on the seller's next batch
or by the courier webhook for that provider order.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import config
from .errors import BusinessRuleViolation, CourierNotConfigured, NotFound
from .geo import valid_coords
from .lalamove import ClientError, CourierClient, ProviderError, TransientError, get_courier_client
from .lifecycle import Actor, OrderStatus, advance, send_pending
from .models import Delivery, DispatchAttempt, Order, Seller, utcnow

_log = logging.getLogger("lastmile.delivery.dispatch")


class DispatchResult(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    success: bool
    provider_order_id: Optional[str] = None
    share_link: Optional[str] = None
    delivery_fee: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class DispatchSummary(BaseModel):
    results: List[DispatchResult]
    total: int
    success: int
    failed: int
    skipped: List[str] = []
    recovered: int = 0


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _error_code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return "provider_rejected"
    if isinstance(e, TransientError):
        return "provider_unavailable"
    if isinstance(e, ProviderError):
        return "provider_error"
    return "dispatch_failed"


def claim_order(s: Session, order: Order, attempt_id: str, now: datetime) -> bool:
    res = s.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == OrderStatus.CONFIRMED.value,
            Order.dispatch_attempt_id.is_(None),
        )
        .values(dispatch_attempt_id=attempt_id, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    return res.rowcount == 1


def _finish(s: Session, order: Order, attempt: DispatchAttempt, now: datetime) -> list:
    order.set_delivery_fee(attempt.fee)
    s.add(
        Delivery(
            order_id=order.id,
            provider_order_id=attempt.provider_order_id,
            quotation_id=attempt.quotation_id,
            status="booked",
            delivery_fee=attempt.fee,
            cod_amount=attempt.cod_amount,
            share_link=attempt.share_link,
        )
    )
    attempt.status = "completed"
    return advance(s, order, OrderStatus.DISPATCHED, actor=Actor.DISPATCH, note=f"lalamove {attempt.provider_order_id}", now=now)


def _mark_failed(s: Session, order_id: str, attempt_id: str, reason: str, notifier=None) -> None:
    """Attempt -> failed, order -> failed (if still confirmed). Runs in a fresh transaction."""
    s.rollback()
    try:
        attempt = s.get(DispatchAttempt, attempt_id)
        if attempt is not None:
            attempt.status = "failed"
            attempt.error = reason[:512]
        order = s.get(Order, order_id)
        pending = []
        if order is not None and order.status == OrderStatus.CONFIRMED.value:
            pending = advance(s, order, OrderStatus.FAILED, actor=Actor.DISPATCH, note=reason)
        s.commit()
    except Exception:
        s.rollback()
        _log.error("could not record dispatch failure for order %s", order_id, exc_info=True)
        return
    send_pending(pending, notifier)


def _compensate(client: CourierClient, provider_order_id: str) -> bool:
    try:
        client.cancel_order(provider_order_id)
        return True
    except ProviderError:
        _log.error("compensating cancel of lalamove order %s failed; left for recovery", provider_order_id, exc_info=True)
        return False


def _record_booking(attempt: DispatchAttempt, quotation_id: str, provider_order_id: str, share_link, fee: int, cod: int) -> None:
    attempt.status = "booked"
    attempt.quotation_id = quotation_id
    attempt.provider_order_id = provider_order_id
    attempt.share_link = share_link
    attempt.fee = fee
    attempt.cod_amount = cod


def _keep_booking(s: Session, attempt_id: str, quotation_id: str, provider_order_id: str, share_link, fee: int, cod: int) -> None:
    """The provider booking could not be cancelled: make sure recovery can find it."""
    try:
        attempt = s.get(DispatchAttempt, attempt_id)
        if attempt is not None and attempt.status != "booked":
            _record_booking(attempt, quotation_id, provider_order_id, share_link, fee, cod)
            s.commit()
    except Exception:
        s.rollback()
        _log.critical(
            "lalamove order %s is booked but not recorded for attempt %s; cancel it manually",
            provider_order_id, attempt_id, exc_info=True,
        )


def dispatch_one(
    s: Session,
    seller: Seller,
    order: Order,
    client: CourierClient,
    *,
    notifier=None,
    now: Optional[datetime] = None,
) -> Optional[DispatchResult]:
    """Book a courier for one confirmed order. Returns None if another dispatch owns it."""
    now = now or utcnow()
    order_id, order_number = order.id, order.order_number
    attempt = DispatchAttempt(order_id=order_id, seller_id=seller.id, status="claimed", created_at=now)
    s.add(attempt)
    s.flush()
    attempt_id = attempt.id
    if not claim_order(s, order, attempt_id, now):
        s.rollback()
        _log.info("order %s already being dispatched, skipped", order_id)
        return None
    s.commit()

    try:
        q = client.quote(
            seller.pickup_lat, seller.pickup_lng, seller.pickup_address or "",
            order.buyer_lat, order.buyer_lng, order.buyer_address,
        )
        cod = order.subtotal + q.fee + order.cod_fee
        po = client.create_order(
            q.quotation_id,
            sender_name=seller.shop_name,
            sender_phone=seller.phone,
            recipient_name=order.buyer_name,
            recipient_phone=order.buyer_phone,
            cod_amount=cod,
            remarks=order.buyer_notes,
        )
    except Exception as e:
        if isinstance(e, ProviderError):
            reason = getattr(e, "message", None) or str(e)
            _log.warning("dispatch of order %s failed: %s", order_id, reason)
        else:
            reason = "courier booking failed"
            _log.error("dispatch of order %s failed", order_id, exc_info=True)
        _mark_failed(s, order_id, attempt_id, reason, notifier)
        return DispatchResult(order_id=order_id, order_number=order_number, success=False, error=reason, error_code=_error_code(e))

    try:
        _record_booking(attempt, q.quotation_id, po.order_id, po.share_link, q.fee, cod)
        s.commit()
        pending = _finish(s, order, attempt, now)
        s.commit()
    except Exception:
        s.rollback()
        _log.error("persisting dispatch of order %s (lalamove %s) failed", order_id, po.order_id, exc_info=True)
        if _compensate(client, po.order_id):
            _mark_failed(s, order_id, attempt_id, "could not record booking", notifier)
        else:
            _keep_booking(s, attempt_id, q.quotation_id, po.order_id, po.share_link, q.fee, cod)
        return DispatchResult(
            order_id=order_id, order_number=order_number, success=False,
            provider_order_id=po.order_id, error="could not record booking", error_code="dispatch_failed",
        )

    send_pending(pending, notifier)
    _log.info("order %s dispatched as lalamove %s (fee %d, cod %d)", order_id, po.order_id, q.fee, cod)
    return DispatchResult(
        order_id=order_id, order_number=order_number, success=True,
        provider_order_id=po.order_id, share_link=po.share_link, delivery_fee=q.fee,
    )


def recover_attempt(s: Session, attempt: DispatchAttempt, client: Optional[CourierClient] = None, *, notifier=None, now=None) -> bool:
    """
    Finish a "booked" attempt that never got its Delivery row.
    Returns True when the order ended up dispatched.
    """
    now = now or utcnow()
    order = s.get(Order, attempt.order_id)
    existing = s.execute(select(Delivery).where(Delivery.order_id == attempt.order_id)).scalars().first()
    if existing is not None:
        attempt.status = "completed" if existing.provider_order_id == attempt.provider_order_id else "failed"
        s.commit()
        return False
    if order is None or order.status != OrderStatus.CONFIRMED.value:
        _log.warning(
            "orphaned lalamove order %s: order %s is %s, cancelling booking",
            attempt.provider_order_id, attempt.order_id, order.status if order else "missing",
        )
        if client is not None:
            _compensate(client, attempt.provider_order_id)
        attempt.status = "failed"
        attempt.error = "order no longer confirmed"
        if order is not None and order.dispatch_attempt_id == attempt.id:
            order.dispatch_attempt_id = None
        s.commit()
        return False
    try:
        pending = _finish(s, order, attempt, now)
        s.commit()
    except Exception:
        s.rollback()
        _log.error("recovery of lalamove order %s failed", attempt.provider_order_id, exc_info=True)
        return False
    send_pending(pending, notifier)
    _log.info("recovered booking %s for order %s", attempt.provider_order_id, order.id)
    return True


def recover_orphans(s: Session, seller_id: str, client: Optional[CourierClient] = None, *, notifier=None, now=None) -> int:
    now = now or utcnow()
    recovered = 0
    booked = s.execute(
        select(DispatchAttempt).where(DispatchAttempt.seller_id == seller_id, DispatchAttempt.status == "booked")
    ).scalars().all()
    for attempt in booked:
        if recover_attempt(s, attempt, client, notifier=notifier, now=now):
            recovered += 1

    stale_before = now - timedelta(seconds=config.DISPATCH_CLAIM_TTL_SECS)
    claimed = s.execute(
        select(DispatchAttempt).where(DispatchAttempt.seller_id == seller_id, DispatchAttempt.status == "claimed")
    ).scalars().all()
    for attempt in claimed:
        if _aware(attempt.created_at) >= stale_before:
            continue
        attempt.status = "failed"
        attempt.error = "claim expired"
        order = s.get(Order, attempt.order_id)
        if order is not None and order.dispatch_attempt_id == attempt.id:
            order.dispatch_attempt_id = None
        _log.warning("released stale dispatch claim %s on order %s", attempt.id, attempt.order_id)
    s.commit()
    return recovered


def dispatch_orders(
    s: Session,
    seller_id: str,
    order_ids: Iterable[str],
    *,
    client: Optional[CourierClient] = None,
    notifier=None,
    now: Optional[datetime] = None,
) -> DispatchSummary:
    seller = s.get(Seller, seller_id)
    if seller is None:
        raise NotFound("seller not found", code="seller_not_found")
    if not valid_coords(seller.pickup_lat, seller.pickup_lng):
        raise BusinessRuleViolation("set a pickup location before dispatching", code="no_pickup_location")
    client = client or get_courier_client()
    if client is None:
        raise CourierNotConfigured("courier provider is not configured")

    recovered = recover_orphans(s, seller.id, client, notifier=notifier, now=now)

    wanted = list(dict.fromkeys(i for i in order_ids if i))
    orders = s.execute(
        select(Order).where(
            Order.id.in_(wanted),
            Order.seller_id == seller.id,
            Order.status == OrderStatus.CONFIRMED.value,
        )
    ).scalars().all()
    by_id = {o.id: o for o in orders}

    results: List[DispatchResult] = []
    skipped: List[str] = []
    for oid in wanted:
        order = by_id.get(oid)
        if order is None:
            skipped.append(oid)
            continue
        try:
            r = dispatch_one(s, seller, order, client, notifier=notifier, now=now)
        except Exception as e:
            # Claim/bookkeeping failure before any provider call.
            s.rollback()
            _log.error("dispatch of order %s aborted", oid, exc_info=True)
            r = DispatchResult(order_id=oid, success=False, error="dispatch failed", error_code=_error_code(e))
        if r is None:
            skipped.append(oid)
        else:
            results.append(r)

    ok = sum(1 for r in results if r.success)
    _log.info("dispatch batch for seller %s: %d ok, %d failed, %d skipped", seller.id, ok, len(results) - ok, len(skipped))
    return DispatchSummary(
        results=results,
        total=len(results),
        success=ok,
        failed=len(results) - ok,
        skipped=skipped,
        recovered=recovered,
    )
