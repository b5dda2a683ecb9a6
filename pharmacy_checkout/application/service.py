import json
import math
import secrets
import time
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from pharmacy_checkout.core_settings import Settings, get_settings
from pharmacy_checkout.domain.enums import OrderStatus, PaymentMethod, PaymentStatus, ResultSource, TransactionStatus
from pharmacy_checkout.domain.errors import (
    CheckoutError,
    GatewayRejectedError,
    GatewayTimeoutError,
    InvalidCallbackError,
    NotFoundError,
    OrderStateError,
    PaymentValidationError,
)
from pharmacy_checkout.domain.models import Address, Order, Transaction
from pharmacy_checkout.infrastructure.daraja import DarajaClient
from shared.core import get_logger
from .normalization import parse_callback, parse_query_response
from .schemas import InitiatePaymentRequest
from .updates import ProcessOutcome, ProcessResult, TransactionUpdater
from .validation import (
    gateway_amount,
    mask_phone,
    normalize_phone,
    validate_account_reference,
    validate_amount,
    validate_transaction_desc,
)

logger = get_logger(__name__)

def generate_provisional_reference() -> str:
    """Local stand-in id for a push whose gateway answer never arrived"""
    return f"ws_CO_{int(time.time() * 1000)}_{secrets.token_hex(3)}"

class PaymentService:
    def __init__(self, db: Session, gateway: DarajaClient, settings: Optional[Settings] = None):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.updater = TransactionUpdater(db)

    def _validate_amount(self, amount) -> Decimal:
        return validate_amount(amount, self.settings.MPESA_MIN_AMOUNT, self.settings.MPESA_MAX_AMOUNT)

    # ---- Payment initiation ----

    def initiate_payment_flow(self, user_id: int, data: InitiatePaymentRequest) -> Transaction:
        """Create a transient order from the cart snapshot and push the payment.

        All validation happens before the order row exists. If the gateway
        refuses the push the transient order is removed again.
        """
        order_data = data.order_data
        if order_data is None or not order_data.items:
            raise PaymentValidationError("Order data is required with items")
        amount = self._validate_amount(data.amount)
        phone = normalize_phone(data.phone_number)

        if order_data.address_id is not None:
            address = self.db.scalar(
                select(Address).where(Address.id == order_data.address_id, Address.user_id == user_id)
            )
            if address is None:
                raise PaymentValidationError("Address not found or does not belong to user")

        order = Order(
            user_id=user_id,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            payment_method=PaymentMethod.MOBILE_MONEY,
            subtotal=order_data.subtotal,
            shipping_cost=order_data.shipping_cost,
            total_amount=amount,
            contact_phone=phone,
            address_id=order_data.address_id,
            delivery_instructions=order_data.delivery_instructions or "",
            items_payload=json.dumps([
                {"product_id": i.product_id, "quantity": i.quantity, "price": str(i.price)}
                for i in order_data.items
            ]),
        )
        self.db.add(order)
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"Transient order {order.id} created for payment", extra={'extra_fields': {'user_id': user_id}})

        try:
            return self.initiate(phone, amount, order.id, user_id=user_id)
        except GatewayRejectedError:
            self._discard_transient_order(order)
            raise

    def _discard_transient_order(self, order: Order) -> None:
        self.db.execute(
            update(Transaction)
            .where(Transaction.order_id == order.id)
            .values(order_id=None)
        )
        self.db.delete(order)
        self.db.commit()
        logger.info(f"Transient order {order.id} removed after rejected push")

    def initiate(
        self,
        phone_number: str,
        amount,
        order_id: int,
        user_id: Optional[int] = None,
        account_reference: Optional[str] = None,
        transaction_desc: Optional[str] = None,
    ) -> Transaction:
        """Send an STK push for ``order_id``.

        Returns the PENDING transaction, already committed, so a callback
        arriving right after the gateway's answer has a row to match.
        """
        amount = self._validate_amount(amount)
        phone = normalize_phone(phone_number)
        account_reference = validate_account_reference(account_reference or f"ORDER{order_id}")
        transaction_desc = validate_transaction_desc(transaction_desc or f"Order {order_id}")

        order = self.db.get(Order, order_id, populate_existing=True)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError("Order not found")
        self._ensure_no_payment_in_flight(order)
        if order.payment_status == PaymentStatus.PAID:
            raise PaymentValidationError("Order is already paid")

        logger.info(
            "Sending STK push",
            extra={'extra_fields': {
                'order_id': order_id,
                'phone': mask_phone(phone),
                'amount': str(amount),
                'account_reference': account_reference,
            }},
        )

        base = dict(
            order_id=order.id,
            user_id=user_id if user_id is not None else order.user_id,
            phone_number=phone,
            amount=amount,
            account_reference=account_reference,
            transaction_desc=transaction_desc,
        )

        try:
            response = self.gateway.stk_push(phone, gateway_amount(amount), account_reference, transaction_desc)
        except GatewayRejectedError as exc:
            self.db.add(Transaction(
                **base,
                status=TransactionStatus.FAILED,
                error_message=exc.message[:255],
                result_desc=exc.message[:255],
                request_payload=exc.request_payload,
                response_payload=exc.payload,
            ))
            self.db.commit()
            logger.error(f"STK push rejected for order {order_id}: {exc.message}")
            raise
        except GatewayTimeoutError as exc:
            # Outcome unknown: keep it PENDING so it is reconciled, never FAILED
            provisional = generate_provisional_reference()
            self.db.add(Transaction(
                **base,
                checkout_request_id=provisional,
                status=TransactionStatus.PENDING,
                error_message=exc.message[:255],
                request_payload=exc.request_payload,
            ))
            order.checkout_request_id = provisional
            order.payment_status = PaymentStatus.PENDING
            self.db.commit()
            logger.warning(f"STK push for order {order_id} timed out; recorded as {provisional}")
            raise

        transaction = Transaction(
            **base,
            checkout_request_id=response.checkout_request_id,
            merchant_request_id=response.merchant_request_id,
            status=TransactionStatus.PENDING,
            request_payload=response.request,
            response_payload=response.body,
        )
        self.db.add(transaction)
        self.db.flush()
        order.checkout_request_id = transaction.checkout_request_id
        order.payment_status = PaymentStatus.PENDING
        self.db.commit()
        self.db.refresh(transaction)

        logger.info(
            f"STK push accepted for order {order_id}",
            extra={'extra_fields': {
                'checkout_request_id': transaction.checkout_request_id,
                'transaction_id': transaction.id,
            }},
        )
        return transaction

    def _ensure_no_payment_in_flight(self, order: Order) -> None:
        """Refuse a second push while the order's current one is unresolved.

        A real PENDING push is reconciled once first, so a payment that has
        in fact finished does not block the retry.
        """
        if not order.checkout_request_id:
            return
        active = self.db.scalar(
            select(Transaction)
            .where(Transaction.checkout_request_id == order.checkout_request_id)
            .execution_options(populate_existing=True)
        )
        if active is None or active.status != TransactionStatus.PENDING:
            return
        if active.is_provisional:
            raise OrderStateError("A previous payment attempt timed out and is awaiting reconciliation")

        try:
            self.query_status(active.checkout_request_id)
        except CheckoutError as exc:
            logger.info(f"Reconciliation for {active.checkout_request_id} inconclusive: {exc.message}")
        self.db.refresh(active)
        self.db.refresh(order)
        if active.status == TransactionStatus.PENDING:
            raise OrderStateError("A payment for this order is already in progress")

    # ---- Callback receiver ----

    def handle_callback(self, payload) -> ProcessResult:
        """Apply a gateway push notification; never raises for bad input"""
        try:
            result = parse_callback(payload)
        except InvalidCallbackError as exc:
            logger.error(f"Rejected malformed callback: {exc.message}")
            return ProcessResult(outcome=ProcessOutcome.INVALID, message=exc.message)
        return self.updater.apply(result, ResultSource.CALLBACK)

    # ---- Status reconciliation ----

    def query_status(self, checkout_request_id: str) -> ProcessResult:
        """Actively ask the gateway for a result and apply it.

        Gateway errors propagate: a timeout means the state is unknown, not
        failed.
        """
        response = self.gateway.stk_query(checkout_request_id)
        try:
            result = parse_query_response(response.body)
        except InvalidCallbackError as exc:
            logger.error(f"Unusable STK query response for {checkout_request_id}: {exc.message}")
            return ProcessResult(outcome=ProcessOutcome.INVALID, checkout_request_id=checkout_request_id, message=exc.message)
        if result is None:
            return ProcessResult(
                outcome=ProcessOutcome.STILL_PENDING,
                checkout_request_id=checkout_request_id,
                status=TransactionStatus.PENDING,
                message="The transaction is being processed",
            )
        return self.updater.apply(result, ResultSource.QUERY)

    def get_payment_status(self, checkout_request_id: str, user_id: Optional[int] = None) -> Transaction:
        """Best-known transaction state, reconciling first while still PENDING"""
        transaction = self._find_transaction(checkout_request_id, user_id)
        if transaction.is_provisional:
            logger.info(f"Skipping reconciliation for provisional reference {checkout_request_id}")
        elif transaction.status == TransactionStatus.PENDING:
            try:
                self.query_status(checkout_request_id)
            except CheckoutError as exc:
                logger.info(f"Reconciliation for {checkout_request_id} inconclusive: {exc.message}")
            self.db.refresh(transaction)
        return transaction

    def _find_transaction(self, checkout_request_id: str, user_id: Optional[int]) -> Transaction:
        stmt = select(Transaction).where(Transaction.checkout_request_id == checkout_request_id)
        if user_id is not None:
            stmt = stmt.where(Transaction.user_id == user_id)
        transaction = self.db.scalar(stmt.execution_options(populate_existing=True))
        if transaction is None:
            raise NotFoundError("Payment not found")
        return transaction

    # ---- Read side ----

    def get_order(self, order_id: Optional[int]) -> Optional[Order]:
        return self.db.get(Order, order_id, populate_existing=True) if order_id is not None else None

    def list_transactions(self, user_id: int, page: int = 1, limit: int = 10, status: Optional[TransactionStatus] = None):
        stmt = select(Transaction).where(Transaction.user_id == user_id)
        count_stmt = select(func.count()).select_from(Transaction).where(Transaction.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
            count_stmt = count_stmt.where(Transaction.status == status)
        total = self.db.scalar(count_stmt) or 0
        rows = self.db.scalars(
            stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return rows, {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}

    def get_transaction(self, transaction_id: int, user_id: Optional[int] = None) -> Transaction:
        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None or (user_id is not None and transaction.user_id != user_id):
            raise NotFoundError("Transaction not found")
        return transaction
