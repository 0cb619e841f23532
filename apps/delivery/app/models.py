import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# Sellers, products and buyers are owned by the shop/catalogue services.
# This service reads them and only touches `Product.stock` (atomic decrement
# at checkout, additive restore on cancellation).
class Seller(Base):
    __tablename__ = "sellers"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    shop_slug: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    shop_name: Mapped[str] = mapped_column(String(200))
    phone: Mapped[str] = mapped_column(String(32))
    is_active: Mapped[bool] = mapped_column(default=True)
    pickup_address: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    pickup_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    pickup_lng: Mapped[Optional[float]] = mapped_column(Float, default=None)
    shipping_days: Mapped[Optional[list]] = mapped_column(JSON, default=None)  # ["mon", "wed", ...]
    shipping_time: Mapped[Optional[str]] = mapped_column(String(5), default=None)  # HH:MM
    line_user_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey("sellers.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[int] = mapped_column(Integer)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(default=True)


class Buyer(Base):
    __tablename__ = "buyers"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    phone: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class BuyerAddress(Base):
    __tablename__ = "buyer_addresses"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    buyer_id: Mapped[str] = mapped_column(String(36), ForeignKey("buyers.id"), index=True)
    label: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(200))
    phone: Mapped[str] = mapped_column(String(32))
    address: Mapped[str] = mapped_column(String(512))
    lat: Mapped[float] = mapped_column(Float)
    lng: Mapped[float] = mapped_column(Float)
    notes: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey("sellers.id"), index=True)
    buyer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("buyers.id"), default=None)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    # Buyer contact snapshot, never rewritten after checkout.
    buyer_name: Mapped[str] = mapped_column(String(200))
    buyer_phone: Mapped[str] = mapped_column(String(32))
    buyer_address: Mapped[str] = mapped_column(String(512))
    buyer_lat: Mapped[float] = mapped_column(Float)
    buyer_lng: Mapped[float] = mapped_column(Float)
    buyer_notes: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    distance_km: Mapped[float] = mapped_column(Float, default=0.0)
    subtotal: Mapped[int] = mapped_column(Integer)
    delivery_fee: Mapped[int] = mapped_column(Integer)
    cod_fee: Mapped[int] = mapped_column(Integer)
    total: Mapped[int] = mapped_column(Integer)
    scheduled_date: Mapped[str] = mapped_column(String(10))  # YYYY-MM-DD, shop local
    scheduled_time: Mapped[str] = mapped_column(String(5))  # HH:MM
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    # Set while a dispatch attempt owns this order; see dispatch.claim_order.
    dispatch_attempt_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)

    items: Mapped[List["OrderItem"]] = relationship(back_populates="order", cascade="all, delete-orphan")
    delivery: Mapped[Optional["Delivery"]] = relationship(back_populates="order", uselist=False)

    def set_delivery_fee(self, fee: int) -> None:
        self.delivery_fee = int(fee)
        self.total = self.subtotal + self.delivery_fee + self.cod_fee


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"))
    # Snapshot of the catalogue at checkout time.
    product_name: Mapped[str] = mapped_column(String(200))
    price: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int] = mapped_column(Integer)

    order: Mapped[Order] = relationship(back_populates="items")


class OrderEvent(Base):
    __tablename__ = "order_events"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    status: Mapped[str] = mapped_column(String(16))
    actor: Mapped[str] = mapped_column(String(16), default="system")
    note: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Delivery(Base):
    __tablename__ = "deliveries"
    __table_args__ = (UniqueConstraint("order_id", name="uq_deliveries_order"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"))
    provider_order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    quotation_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    status: Mapped[str] = mapped_column(String(16), default="booked")
    provider_status: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    delivery_fee: Mapped[int] = mapped_column(Integer)
    cod_amount: Mapped[int] = mapped_column(Integer)
    share_link: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    driver_name: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    driver_phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    driver_plate: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)

    order: Mapped[Order] = relationship(back_populates="delivery")


class DispatchAttempt(Base):
    __tablename__ = "dispatch_attempts"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True)
    seller_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[str] = mapped_column(String(16), default="claimed")  # claimed|booked|completed|failed
    quotation_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    provider_order_id: Mapped[Optional[str]] = mapped_column(String(64), default=None, index=True)
    share_link: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    fee: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    cod_amount: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    error: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
