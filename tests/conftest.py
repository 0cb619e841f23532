import os
import uuid
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DELIVERY_DB_URL", "sqlite+pysqlite:///:memory:")
# Never talk to the real courier from tests.
for _key in ("LALAMOVE_API_KEY", "LALAMOVE_API_SECRET", "LALAMOVE_WEBHOOK_SECRET", "DELIVERY_INTERNAL_SECRET"):
    os.environ[_key] = ""

from apps.delivery.app import checkout as _checkout  # noqa: E402
from apps.delivery.app import lalamove as _lalamove  # noqa: E402
from apps.delivery.app import models as m  # noqa: E402
from apps.delivery.app import notify as _notify  # noqa: E402

BKK_SHOP = (13.736717, 100.523186)
BKK_BUYER = (13.746717, 100.533186)


@pytest.fixture()
def engine():
    """Isolated in-memory SQLite shared by every connection of one test."""
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    m.Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture(autouse=True)
def notifier(monkeypatch):
    rec = _notify.RecordingNotifier()
    monkeypatch.setattr(_notify, "_notifier", rec)
    return rec


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch):
    _checkout.reset_rate_limits()
    monkeypatch.setattr(_lalamove, "_client_instance", None)
    yield
    _checkout.reset_rate_limits()


class FakeCourier:
    """Stands in for CourierClient; records every call."""

    def __init__(self, fee: int = 60):
        self.fee = fee
        self.quotes: List[dict] = []
        self.created: List[dict] = []
        self.cancelled: List[str] = []
        self.fail_quote: Optional[Exception] = None
        self.fail_create_for: Dict[str, Exception] = {}
        self.fail_cancel: Optional[Exception] = None
        self.statuses: Dict[str, _lalamove.ProviderOrderStatus] = {}

    def quote(self, pickup_lat, pickup_lng, pickup_address, dropoff_lat, dropoff_lng, dropoff_address):
        if self.fail_quote is not None:
            raise self.fail_quote
        self.quotes.append({"dropoff": (dropoff_lat, dropoff_lng), "address": dropoff_address})
        return _lalamove.Quote(quotation_id=f"Q{len(self.quotes)}", fee=self.fee, currency="THB")

    def create_order(self, quotation_id, sender_name, sender_phone, recipient_name, recipient_phone, cod_amount=None, remarks=None):
        err = self.fail_create_for.get(recipient_name)
        if err is not None:
            raise err
        pid = f"LLM{len(self.created) + 1}"
        self.created.append({
            "provider_order_id": pid,
            "quotation_id": quotation_id,
            "recipient_name": recipient_name,
            "recipient_phone": recipient_phone,
            "cod_amount": cod_amount,
        })
        return _lalamove.ProviderOrder(order_id=pid, share_link=f"https://share.example/{pid}", status="ASSIGNING_DRIVER")

    def get_status(self, provider_order_id):
        return self.statuses[provider_order_id]

    def cancel_order(self, provider_order_id):
        if self.fail_cancel is not None:
            raise self.fail_cancel
        self.cancelled.append(provider_order_id)


@pytest.fixture()
def courier():
    return FakeCourier()


class Factory:
    def __init__(self, s: Session):
        self.s = s

    def seller(self, slug: str = "somchai-shop", **kw) -> m.Seller:
        data = dict(
            shop_slug=slug,
            shop_name="Somchai Shop",
            phone="0811111111",
            pickup_address="Siam, Bangkok",
            pickup_lat=BKK_SHOP[0],
            pickup_lng=BKK_SHOP[1],
            shipping_days=["mon", "wed", "fri"],
            shipping_time="14:00",
        )
        data.update(kw)
        sel = m.Seller(**data)
        self.s.add(sel)
        self.s.commit()
        return sel

    def product(self, seller: m.Seller, name: str = "Mango sticky rice", price: int = 100, stock: int = 10, **kw) -> m.Product:
        p = m.Product(seller_id=seller.id, name=name, price=price, stock=stock, **kw)
        self.s.add(p)
        self.s.commit()
        return p

    def order(
        self,
        seller: m.Seller,
        status: str = "confirmed",
        items: Optional[List[tuple]] = None,
        buyer_name: str = "Nok",
        delivery_fee: int = 56,
        cod_fee: int = 40,
    ) -> m.Order:
        items = items or []
        subtotal = sum(p.price * q for p, q in items) or 200
        o = m.Order(
            order_number=f"TPS-{uuid.uuid4().hex[:6].upper()}",
            seller_id=seller.id,
            status=status,
            buyer_name=buyer_name,
            buyer_phone="0899999999",
            buyer_address="Sukhumvit 11",
            buyer_lat=BKK_BUYER[0],
            buyer_lng=BKK_BUYER[1],
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            cod_fee=cod_fee,
            total=subtotal + delivery_fee + cod_fee,
            scheduled_date="2024-01-03",
            scheduled_time="14:00",
        )
        for p, q in items:
            o.items.append(m.OrderItem(product_id=p.id, product_name=p.name, price=p.price, quantity=q))
        self.s.add(o)
        self.s.commit()
        return o


@pytest.fixture()
def make(session):
    return Factory(session)
