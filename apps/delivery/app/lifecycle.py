"""
Order lifecycle.

    pending -> confirmed -> dispatched -> picked_up -> delivered
    pending, confirmed -> cancelled
    dispatched -> failed

delivered, cancelled and failed are terminal. Sellers may only use the
table above. Two extra edges exist for system actors: the dispatcher marks
a confirmed order failed when booking a courier fails, and the courier
webhook moves a dispatched order to cancelled when the provider cancels
the booking.
"""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import notify as _notify
from .errors import InvalidTransition
from .models import Order, OrderEvent, Product, utcnow

_log = logging.getLogger("lastmile.delivery.lifecycle")


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISPATCHED = "dispatched"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Actor(str, Enum):
    SELLER = "seller"
    DISPATCH = "dispatch"
    COURIER = "courier"


S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.DISPATCHED, S.CANCELLED}),
    S.DISPATCHED: frozenset({S.PICKED_UP, S.FAILED}),
    S.PICKED_UP: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
    S.FAILED: frozenset(),
}

_ACTOR_EXTRA: Dict[Actor, Set[Tuple[OrderStatus, OrderStatus]]] = {
    Actor.SELLER: set(),
    Actor.DISPATCH: {(S.CONFIRMED, S.FAILED)},
    Actor.COURIER: {(S.DISPATCHED, S.CANCELLED)},
}

TERMINAL = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

STATUS_TIMESTAMPS: Dict[OrderStatus, str] = {
    S.CONFIRMED: "confirmed_at",
    S.DISPATCHED: "dispatched_at",
    S.PICKED_UP: "picked_up_at",
    S.DELIVERED: "delivered_at",
    S.CANCELLED: "cancelled_at",
    S.FAILED: "failed_at",
}

_NOTIFY_ON: Dict[OrderStatus, str] = {
    S.DISPATCHED: _notify.ORDER_DISPATCHED,
    S.DELIVERED: _notify.ORDER_DELIVERED,
    S.FAILED: _notify.ORDER_FAILED,
    S.CANCELLED: _notify.ORDER_CANCELLED,
}

PendingNotification = Tuple[str, dict]


def allowed_targets(source: OrderStatus, actor: Actor = Actor.SELLER) -> Set[OrderStatus]:
    out = set(TRANSITIONS[source])
    out.update(t for (f, t) in _ACTOR_EXTRA[actor] if f == source)
    return out


def can_transition(source: OrderStatus, target: OrderStatus, actor: Actor = Actor.SELLER) -> bool:
    return target in allowed_targets(source, actor)


def path_to(source: OrderStatus, target: OrderStatus, actor: Actor = Actor.COURIER) -> Optional[List[OrderStatus]]:
    """Shortest chain of allowed steps from source to target (excluding source)."""
    if source == target:
        return []
    seen = {source}
    queue = deque([(source, [])])
    while queue:
        cur, path = queue.popleft()
        for nxt in sorted(allowed_targets(cur, actor), key=lambda s: s.value):
            if nxt in seen:
                continue
            if nxt == target:
                return path + [nxt]
            seen.add(nxt)
            queue.append((nxt, path + [nxt]))
    return None


def _payload(order: Order, status: OrderStatus) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "seller_id": order.seller_id,
        "status": status.value,
        "total": order.total,
        "reason": order.failure_reason if status == S.FAILED else None,
    }


def restore_stock(s: Session, order: Order) -> None:
    """Give reserved units back. Each item is independent; failures are logged only."""
    for item in order.items:
        try:
            with s.begin_nested():
                s.execute(
                    update(Product)
                    .where(Product.id == item.product_id)
                    .values(stock=Product.stock + item.quantity)
                )
        except Exception:
            _log.error(
                "stock restore failed for order %s product %s (qty %d)",
                order.id, item.product_id, item.quantity, exc_info=True,
            )


def advance(
    s: Session,
    order: Order,
    target: OrderStatus,
    *,
    actor: Actor = Actor.SELLER,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[PendingNotification]:
    """
    Apply one transition to `order` inside the caller's transaction.
    Returns the notifications to send once the caller has committed.
    """
    target = OrderStatus(target)
    try:
        source = OrderStatus(order.status)
    except ValueError:
        raise InvalidTransition(str(order.status), target.value)
    if not can_transition(source, target, actor):
        raise InvalidTransition(source.value, target.value)
    ts = now or utcnow()
    order.status = target.value
    stamp = STATUS_TIMESTAMPS.get(target)
    if stamp:
        setattr(order, stamp, ts)
    if target == S.FAILED and note:
        order.failure_reason = note[:512]
    if target in TERMINAL:
        order.dispatch_attempt_id = None
    s.add(OrderEvent(order_id=order.id, from_status=source.value, status=target.value, actor=actor.value, note=note, created_at=ts))
    if target == S.CANCELLED:
        restore_stock(s, order)
    _log.info("order %s: %s -> %s (%s)", order.id, source.value, target.value, actor.value)
    event = _NOTIFY_ON.get(target)
    return [(event, _payload(order, target))] if event else []


def send_pending(pending: List[PendingNotification], notifier=None) -> None:
    for event, payload in pending:
        _notify.notify(event, payload, notifier)


def transition(
    s: Session,
    order: Order,
    target: OrderStatus,
    *,
    actor: Actor = Actor.SELLER,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
    notifier=None,
) -> Order:
    """Validate, apply, commit, then notify. Anything staged in `s` commits with it."""
    pending = advance(s, order, target, actor=actor, note=note, now=now)
    s.commit()
    send_pending(pending, notifier)
    return order
