from __future__ import annotations

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from apps.delivery.app import dispatch, notify
from apps.delivery.app.errors import BusinessRuleViolation, CourierNotConfigured
from apps.delivery.app.lalamove import ClientError, CourierClient, TransientError
from apps.delivery.app.models import Delivery, DispatchAttempt, Order, utcnow


def test_partial_failure_isolates_one_order(session, make, courier, notifier):
    seller = make.seller()
    orders = [make.order(seller, buyer_name=f"buyer-{i}") for i in range(4)]
    courier.fail_create_for["buyer-2"] = ClientError(422, "recipient phone invalid", provider_code="ERR_INVALID_PHONE")

    summary = dispatch.dispatch_orders(session, seller.id, [o.id for o in orders], client=courier)

    assert (summary.total, summary.success, summary.failed) == (4, 3, 1)
    statuses = {o.buyer_name: session.get(Order, o.id).status for o in orders}
    assert statuses == {"buyer-0": "dispatched", "buyer-1": "dispatched", "buyer-2": "failed", "buyer-3": "dispatched"}
    failed = next(r for r in summary.results if not r.success)
    assert failed.error_code == "provider_rejected"
    assert failed.error == "recipient phone invalid"
    assert session.get(Order, orders[2].id).failure_reason == "recipient phone invalid"
    assert len(session.execute(select(Delivery)).scalars().all()) == 3
    assert notifier.names().count(notify.ORDER_DISPATCHED) == 3
    assert notifier.names().count(notify.ORDER_FAILED) == 1


def test_provider_fee_replaces_estimate_and_cod_equals_total(session, make, courier):
    seller = make.seller()
    order = make.order(seller, delivery_fee=56)
    courier.fee = 71

    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert summary.success == 1

    o = session.get(Order, order.id)
    assert o.delivery_fee == 71
    assert o.total == o.subtotal + o.delivery_fee + o.cod_fee
    assert o.dispatched_at is not None
    assert courier.created[0]["cod_amount"] == o.total
    assert courier.created[0]["recipient_phone"] == "0899999999"
    d = o.delivery
    assert d.provider_order_id == "LLM1"
    assert d.cod_amount == o.total
    assert d.delivery_fee == 71
    assert d.status == "booked"
    assert summary.results[0].share_link == "https://share.example/LLM1"


def test_each_dispatch_requests_a_fresh_quote(session, make, courier):
    seller = make.seller()
    a, b = make.order(seller), make.order(seller)
    dispatch.dispatch_orders(session, seller.id, [a.id, b.id], client=courier)
    assert len(courier.quotes) == 2
    assert [c["quotation_id"] for c in courier.created] == ["Q1", "Q2"]


def test_redispatch_does_not_double_book(session, make, courier):
    seller = make.seller()
    order = make.order(seller)
    first = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    second = dispatch.dispatch_orders(session, seller.id, [order.id, order.id], client=courier)
    assert first.success == 1
    assert second.total == 0
    assert second.skipped == [order.id]
    assert len(courier.created) == 1


def test_ineligible_orders_are_skipped(session, make, courier):
    seller = make.seller()
    other = make.seller(slug="other-shop")
    pending = make.order(seller, status="pending")
    foreign = make.order(other)
    ok = make.order(seller)
    summary = dispatch.dispatch_orders(session, seller.id, [pending.id, foreign.id, "nope", ok.id], client=courier)
    assert summary.total == 1 and summary.success == 1
    assert set(summary.skipped) == {pending.id, foreign.id, "nope"}
    assert session.get(Order, pending.id).status == "pending"
    assert session.get(Order, foreign.id).status == "confirmed"


def test_claimed_order_is_not_dispatched_twice(session, make, courier):
    seller = make.seller()
    order = make.order(seller)
    order.dispatch_attempt_id = "someone-else"
    session.commit()
    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert summary.skipped == [order.id]
    assert courier.created == []


def test_quote_failure_marks_order_failed(session, make, courier):
    seller = make.seller()
    order = make.order(seller)
    courier.fail_quote = TransientError("provider timed out", attempts=3)
    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert summary.failed == 1
    assert summary.results[0].error_code == "provider_unavailable"
    o = session.get(Order, order.id)
    assert o.status == "failed"
    assert o.dispatch_attempt_id is None
    attempt = session.execute(select(DispatchAttempt)).scalars().one()
    assert attempt.status == "failed"


def test_batch_preconditions(session, make, courier):
    seller = make.seller(pickup_lat=None, pickup_lng=None)
    order = make.order(seller)
    with pytest.raises(BusinessRuleViolation) as exc:
        dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert exc.value.code == "no_pickup_location"

    ready = make.seller(slug="ready")
    with pytest.raises(CourierNotConfigured):
        dispatch.dispatch_orders(session, ready.id, [order.id])


def test_local_failure_after_booking_cancels_at_provider(session, make, courier, monkeypatch):
    seller = make.seller()
    order = make.order(seller)

    def broken_finish(s, o, attempt, now):
        raise RuntimeError("db went away")

    monkeypatch.setattr(dispatch, "_finish", broken_finish)
    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert summary.failed == 1
    assert courier.cancelled == ["LLM1"]
    assert session.get(Order, order.id).status == "failed"
    assert session.execute(select(Delivery)).first() is None


def test_orphaned_booking_is_recovered_on_next_batch(session, make, courier, monkeypatch):
    seller = make.seller()
    order = make.order(seller)
    courier.fail_cancel = TransientError("provider down", attempts=3)
    real_finish = dispatch._finish

    def crash(*a, **kw):
        raise RuntimeError("crash")

    monkeypatch.setattr(dispatch, "_finish", crash)
    first = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert first.failed == 1
    o = session.get(Order, order.id)
    assert o.status == "confirmed"
    attempt = session.execute(select(DispatchAttempt)).scalars().one()
    assert attempt.status == "booked"
    assert attempt.provider_order_id == "LLM1"

    monkeypatch.setattr(dispatch, "_finish", real_finish)
    second = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert second.recovered == 1
    assert second.skipped == [order.id]
    assert len(courier.created) == 1
    o = session.get(Order, order.id)
    assert o.status == "dispatched"
    assert o.delivery.provider_order_id == "LLM1"


def test_stale_claim_is_released(session, make, courier):
    seller = make.seller()
    order = make.order(seller)
    stale = DispatchAttempt(order_id=order.id, seller_id=seller.id, status="claimed", created_at=utcnow() - timedelta(hours=2))
    session.add(stale)
    session.flush()
    order.dispatch_attempt_id = stale.id
    session.commit()

    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert summary.success == 1
    session.refresh(stale)
    assert stale.status == "failed"
    assert stale.error == "claim expired"


def test_malformed_provider_response_marks_order_failed(session, make):
    seller = make.seller()
    order = make.order(seller)

    def handler(request):
        return httpx.Response(200, json={
            "data": {"quotationId": "Q-1", "priceBreakdown": {"total": "60", "currency": "THB"}, "expiresAt": "soon"},
        })

    client = CourierClient("pk_test", "sk_test", "https://rest.sandbox.lalamove.com", transport=httpx.MockTransport(handler))
    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=client)

    assert (summary.success, summary.failed) == (0, 1)
    result = summary.results[0]
    assert result.error_code == "provider_unavailable"
    assert "validation error" not in (result.error or "")
    o = session.get(Order, order.id)
    assert o.status == "failed"
    assert o.dispatch_attempt_id is None
    assert session.execute(select(DispatchAttempt.status)).scalar_one() == "failed"


def test_unexpected_client_error_still_marks_order_failed(session, make, courier):
    seller = make.seller()
    order = make.order(seller)
    courier.fail_quote = KeyError("priceBreakdown")

    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)

    result = summary.results[0]
    assert result.error == "courier booking failed"
    assert result.error_code == "dispatch_failed"
    o = session.get(Order, order.id)
    assert o.status == "failed"
    assert o.dispatch_attempt_id is None

    assert session.execute(select(DispatchAttempt.status)).scalars().all() == ["failed"]


def test_booking_kept_when_record_and_cancel_both_fail(session, make, courier, monkeypatch):
    seller = make.seller()
    order = make.order(seller)
    courier.fail_cancel = TransientError("provider down", attempts=3)
    real_record = dispatch._record_booking
    calls = []

    def flaky_record(*a, **kw):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("db down")
        return real_record(*a, **kw)

    monkeypatch.setattr(dispatch, "_record_booking", flaky_record)
    summary = dispatch.dispatch_orders(session, seller.id, [order.id], client=courier)
    assert summary.failed == 1

    attempt = session.execute(select(DispatchAttempt)).scalars().one()
    assert attempt.status == "booked"
    assert attempt.provider_order_id == "LLM1"
    assert courier.cancelled == []

    # The stale-claim sweep never sees it; the next batch finishes the booking.
    summary = dispatch.dispatch_orders(session, seller.id, [], client=courier, now=utcnow() + timedelta(hours=2))
    assert summary.recovered == 1
    o = session.get(Order, order.id)
    assert o.status == "dispatched"
    assert o.delivery.provider_order_id == "LLM1"
