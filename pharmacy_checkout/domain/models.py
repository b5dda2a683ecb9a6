from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Numeric, DateTime, Text, JSON, Boolean, Integer, Enum as SAEnum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from .enums import OrderStatus, PaymentStatus, PaymentMethod, TransactionStatus, ResultSource

class Base(DeclarativeBase):
    pass

def _status_column(enum_cls, default):
    # Stored as plain VARCHAR so migrations stay portable across databases
    return mapped_column(SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True), default=default, nullable=False)

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(index=True)
    # Assigned only at finalization
    order_number: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    status: Mapped[OrderStatus] = _status_column(OrderStatus, OrderStatus.PENDING)
    payment_status: Mapped[PaymentStatus] = _status_column(PaymentStatus, PaymentStatus.PENDING)
    payment_method: Mapped[PaymentMethod] = _status_column(PaymentMethod, PaymentMethod.MOBILE_MONEY)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    contact_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    # Store address_id as integer (address book is an external collaborator)
    address_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    delivery_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    # Cart snapshot, held only until finalization
    items_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    items: Mapped[list["OrderItem"]] = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    # Store product_id as integer (catalog is an external collaborator)
    product_id: Mapped[int]
    quantity: Mapped[int]
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="items")

class Transaction(Base):
    __tablename__ = "transactions"
    id: Mapped[int] = mapped_column(primary_key=True)
    # NULL only for pushes the gateway refused before issuing an id
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(nullable=True, index=True)
    status: Mapped[TransactionStatus] = _status_column(TransactionStatus, TransactionStatus.PENDING)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    phone_number: Mapped[str] = mapped_column(String(20))
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    transaction_date: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    account_reference: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)
    transaction_desc: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Raw gateway exchanges, retained for audit
    request_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    response_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    callback_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    query_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    events: Mapped[list["TransactionEvent"]] = relationship("TransactionEvent", back_populates="transaction", order_by="TransactionEvent.id")

    @property
    def is_provisional(self) -> bool:
        """PENDING under a locally generated reference after a push timeout.

        The gateway never issued an id for it, so neither a callback nor an
        STK query can resolve it.
        """
        return (
            self.status == TransactionStatus.PENDING
            and self.merchant_request_id is None
            and self.error_message is not None
        )

class TransactionEvent(Base):
    """Append-only log of every gateway result received, applied or not"""
    __tablename__ = "transaction_events"
    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"), nullable=True, index=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    source: Mapped[ResultSource] = _status_column(ResultSource, ResultSource.CALLBACK)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    applied: Mapped[bool] = mapped_column(Boolean, default=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    transaction: Mapped[Optional[Transaction]] = relationship("Transaction", back_populates="events")

class CartItem(Base):
    __tablename__ = "cart_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(index=True)
    product_id: Mapped[int]
    quantity: Mapped[int]

class Address(Base):
    __tablename__ = "addresses"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(index=True)
    street: Mapped[str] = mapped_column(String(200))
    city: Mapped[str] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[str] = mapped_column(String(100), default="Kenya")
