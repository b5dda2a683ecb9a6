import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from pharmacy_checkout.domain.enums import OrderStatus, PaymentMethod, PaymentStatus, TransactionStatus
from pharmacy_checkout.domain.errors import (
    GatewayRejectedError,
    NotFoundError,
    OrderStateError,
    PaymentNotCompletedError,
)
from pharmacy_checkout.domain.models import CartItem, Order, OrderItem, Transaction
from shared.core import get_logger
from .service import PaymentService

logger = get_logger(__name__)

def generate_order_number(order: Order) -> str:
    """Human-readable order number in format ORD-YYYY-NNNNN"""
    year = (order.created_at or datetime.utcnow()).year
    return f"ORD-{year}-{order.id:05d}"

class OrderFinalizer:
    """Turns a paid order's cart snapshot into confirmed line items.

    Safe to call repeatedly: a confirmed order is returned as is, and the
    PENDING -> CONFIRMED claim is a conditional update, so two concurrent
    calls cannot both materialize items.
    """

    def __init__(self, db: Session, payments: PaymentService):
        self.db = db
        self.payments = payments

    def finalize(self, order_id: int, user_id: Optional[int] = None) -> Order:
        order = self._load_order(order_id, user_id)

        if order.status == OrderStatus.CONFIRMED:
            logger.info(f"Order {order_id} already confirmed; returning existing order")
            return order
        if order.status != OrderStatus.PENDING:
            raise OrderStateError(f"Order cannot be completed from status {order.status.value}")
        if order.payment_method != PaymentMethod.MOBILE_MONEY:
            raise OrderStateError("Only mobile money orders are completed through this flow")

        transaction = self._require_completed_transaction(order)
        items = self._parse_items(order)
        now = datetime.utcnow()

        claimed = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
            .values(
                status=OrderStatus.CONFIRMED,
                payment_status=PaymentStatus.PAID,
                order_number=generate_order_number(order),
                items_payload=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if not claimed:
            # Another request confirmed it between our read and our update
            self.db.rollback()
            self.db.refresh(order)
            logger.info(f"Order {order_id} was confirmed concurrently")
            return order

        self.db.add_all(
            OrderItem(order_id=order.id, product_id=item["product_id"], quantity=item["quantity"], unit_price=item["price"])
            for item in items
        )
        self.db.execute(delete(CartItem).where(CartItem.user_id == order.user_id))
        self.db.commit()
        self.db.refresh(order)

        logger.info(
            f"Order {order.id} confirmed as {order.order_number}",
            extra={'extra_fields': {
                'transaction_id': transaction.id,
                'mpesa_receipt_number': transaction.mpesa_receipt_number,
                'items': len(items),
            }},
        )
        return order

    def transaction_for(self, order: Order) -> Optional[Transaction]:
        if not order.checkout_request_id:
            return None
        return self.db.scalar(
            select(Transaction)
            .where(Transaction.checkout_request_id == order.checkout_request_id)
            .execution_options(populate_existing=True)
        )

    def _load_order(self, order_id: int, user_id: Optional[int]) -> Order:
        order = self.db.get(Order, order_id, populate_existing=True)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError("Order not found")
        return order

    def _require_completed_transaction(self, order: Order) -> Transaction:
        transaction = self.transaction_for(order)
        if transaction is None:
            raise PaymentNotCompletedError("Payment not completed or verification pending")

        if transaction.status == TransactionStatus.PENDING and not transaction.is_provisional:
            # One synchronous reconciliation attempt; timeouts propagate as retryable
            try:
                self.payments.query_status(transaction.checkout_request_id)
            except GatewayRejectedError as exc:
                logger.warning(f"Payment verification for order {order.id} refused by gateway: {exc.message}")
            self.db.refresh(transaction)

        if transaction.status != TransactionStatus.COMPLETED:
            if transaction.status == TransactionStatus.PENDING:
                raise PaymentNotCompletedError("Payment not completed. Please complete the M-Pesa payment first.")
            raise PaymentNotCompletedError(f"Payment {transaction.status.value.lower()}: {transaction.result_desc or 'no details'}")
        return transaction

    def _parse_items(self, order: Order) -> list[dict]:
        try:
            raw_items = json.loads(order.items_payload or "[]")
            return [
                {
                    "product_id": int(item["product_id"]),
                    "quantity": int(item["quantity"]),
                    "price": Decimal(str(item["price"])),
                }
                for item in raw_items
            ]
        except (ValueError, KeyError, TypeError) as exc:
            raise OrderStateError(f"Order {order.id} has an unreadable items snapshot") from exc
