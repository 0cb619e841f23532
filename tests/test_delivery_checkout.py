from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import func, select

from apps.delivery.app import checkout, config, notify
from apps.delivery.app.checkout import CheckoutItem, CheckoutRequest
from apps.delivery.app.errors import BusinessRuleViolation, DistanceExceeded, NotFound, RateLimited, ValidationFailed
from apps.delivery.app.models import Buyer, BuyerAddress, Order, OrderItem, Product

MONDAY_10AM = datetime(2024, 1, 1, 10, 0)


def _req(products, **kw) -> CheckoutRequest:
    data = dict(
        shop_slug="somchai-shop",
        items=[CheckoutItem(product_id=p.id, quantity=q) for p, q in products],
        buyer_name="Nok",
        buyer_phone="089-999-9999",
        buyer_address="Sukhumvit 11",
        buyer_lat=13.746717,
        buyer_lng=100.533186,
    )
    data.update(kw)
    return CheckoutRequest(**data)


def _counts(session):
    return (
        session.scalar(select(func.count()).select_from(Order)),
        session.scalar(select(func.count()).select_from(OrderItem)),
        session.scalar(select(func.count()).select_from(Buyer)),
    )


def test_quote_for_shop_with_formula_fee(session, make):
    make.seller()
    q = checkout.quote_for_shop(session, "Somchai-Shop", 13.746717, 100.533186, now=MONDAY_10AM)
    assert q.delivery_fee == 56
    assert q.cod_fee == config.COD_FEE
    assert q.fee_source == "formula"
    assert q.scheduled_date == "2024-01-01"
    assert q.scheduled_time == "14:00"
    assert q.quotation_id is None


def test_quote_errors(session, make):
    with pytest.raises(NotFound):
        checkout.quote_for_shop(session, "nope", 13.7, 100.5)
    make.seller(slug="no-pickup", pickup_lat=None, pickup_lng=None)
    with pytest.raises(BusinessRuleViolation) as exc:
        checkout.quote_for_shop(session, "no-pickup", 13.7, 100.5)
    assert exc.value.code == "no_pickup_location"
    make.seller(slug="closed", is_active=False)
    with pytest.raises(BusinessRuleViolation) as exc:
        checkout.quote_for_shop(session, "closed", 13.7, 100.5)
    assert exc.value.code == "shop_inactive"


def test_create_order_totals_stock_and_buyer(session, make, notifier):
    seller = make.seller()
    rice = make.product(seller, price=100, stock=5)
    tea = make.product(seller, name="Thai tea", price=35, stock=2)

    order = checkout.create_order(session, _req([(rice, 2), (tea, 1), (rice, 1)], save_address=True), now=MONDAY_10AM)

    assert order.status == "pending"
    assert order.order_number.startswith("TPS-")
    assert order.subtotal == 335
    assert order.delivery_fee == 56
    assert order.cod_fee == 40
    assert order.total == order.subtotal + order.delivery_fee + order.cod_fee
    assert order.buyer_phone == "0899999999"
    assert order.scheduled_date == "2024-01-01"
    assert sorted((i.product_name, i.quantity) for i in order.items) == [("Mango sticky rice", 3), ("Thai tea", 1)]
    assert session.get(Product, rice.id).stock == 2
    assert session.get(Product, tea.id).stock == 1

    buyer = session.execute(select(Buyer)).scalars().one()
    assert buyer.phone == "0899999999"
    addr = session.execute(select(BuyerAddress)).scalars().one()
    assert addr.label == checkout.SAVED_ADDRESS_LABEL
    assert notifier.names() == [notify.ORDER_CREATED]
    assert notifier.events[0][1]["order_number"] == order.order_number


def test_repeat_buyer_is_reused_and_renamed(session, make):
    seller = make.seller()
    p = make.product(seller, stock=10)
    checkout.create_order(session, _req([(p, 1)]), now=MONDAY_10AM)
    checkout.create_order(session, _req([(p, 1)], buyer_name="Nok Jr."), now=MONDAY_10AM)
    buyers = session.execute(select(Buyer)).scalars().all()
    assert len(buyers) == 1
    assert buyers[0].name == "Nok Jr."
    numbers = session.execute(select(Order.order_number)).scalars().all()
    assert len(set(numbers)) == 2


@pytest.mark.parametrize(
    "mutate,code",
    [
        (lambda make, seller, p: {"buyer_phone": "12345"}, "invalid_phone"),
        (lambda make, seller, p: {"buyer_lat": 91.0}, "invalid_coordinates"),
        (lambda make, seller, p: {"items": [CheckoutItem(product_id="missing", quantity=1)]}, "product_not_found"),
        (lambda make, seller, p: {"items": [CheckoutItem(product_id=p.id, quantity=99)]}, "insufficient_stock"),
        (
            lambda make, seller, p: {"items": [CheckoutItem(product_id=make.product(seller, is_active=False).id, quantity=1)]},
            "product_inactive",
        ),
        (
            lambda make, seller, p: {"items": [CheckoutItem(product_id=make.product(make.seller(slug="other")).id, quantity=1)]},
            "wrong_seller",
        ),
    ],
)
def test_validation_failures_persist_nothing(session, make, mutate, code):
    seller = make.seller()
    p = make.product(seller, stock=5)
    base = _req([(p, 1)])
    req = base.model_copy(update=mutate(make, seller, p))
    before = _counts(session)
    with pytest.raises((ValidationFailed, BusinessRuleViolation)) as exc:
        checkout.create_order(session, req, now=MONDAY_10AM)
    assert exc.value.code == code
    session.rollback()
    assert _counts(session) == before
    assert session.get(Product, p.id).stock == 5


def test_out_of_range_buyer(session, make):
    seller = make.seller()
    p = make.product(seller)
    with pytest.raises(DistanceExceeded):
        checkout.create_order(session, _req([(p, 1)], buyer_lng=101.03), now=MONDAY_10AM)


def test_stock_race_rolls_back_everything(session, make, monkeypatch):
    seller = make.seller()
    a = make.product(seller, name="A", stock=5)
    b = make.product(seller, name="B", stock=5)

    real_check = checkout._check_products

    def check_then_sell_out(s, sel, wanted):
        products = real_check(s, sel, wanted)
        # A concurrent checkout takes the last units of B after validation.
        s.get(Product, b.id).stock = 0
        s.commit()
        return products

    monkeypatch.setattr(checkout, "_check_products", check_then_sell_out)
    before = _counts(session)
    with pytest.raises(BusinessRuleViolation) as exc:
        checkout.create_order(session, _req([(a, 2), (b, 1)]), now=MONDAY_10AM)
    assert exc.value.code == "insufficient_stock"
    assert _counts(session) == before
    assert session.get(Product, a.id).stock == 5


def test_checkout_rate_limited_per_phone(session, make, monkeypatch):
    monkeypatch.setattr(config, "CHECKOUT_MAX_PER_PHONE", 2)
    seller = make.seller()
    p = make.product(seller, stock=10)
    checkout.create_order(session, _req([(p, 1)]), now=MONDAY_10AM)
    checkout.create_order(session, _req([(p, 1)]), now=MONDAY_10AM)
    with pytest.raises(RateLimited):
        checkout.create_order(session, _req([(p, 1)]), now=MONDAY_10AM)
    # Other phones are unaffected.
    checkout.create_order(session, _req([(p, 1)], buyer_phone="0811112222"), now=MONDAY_10AM)
