from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from pharmacy_checkout.application.finalizer import OrderFinalizer
from pharmacy_checkout.application.schemas import (
    CallbackAck,
    CompleteOrderResponse,
    ConfirmedOrderRead,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    Pagination,
    PaymentStatusResponse,
    QueryStatusRequest,
    StkPushRequest,
    TransactionPage,
    TransactionRead,
)
from pharmacy_checkout.application.service import PaymentService
from pharmacy_checkout.domain.enums import TransactionStatus
from pharmacy_checkout.domain.errors import CheckoutError
from pharmacy_checkout.domain.models import Order, Transaction
from pharmacy_checkout.infrastructure.daraja import DarajaClient
from shared.core import get_logger
from .auth import CurrentUser, get_current_user
from .deps import get_gateway, get_order_finalizer, get_payment_service

logger = get_logger(__name__)

router = APIRouter(prefix="/mpesa", tags=["mpesa"])

def _initiated(transaction: Transaction) -> InitiatePaymentResponse:
    return InitiatePaymentResponse(
        checkout_request_id=transaction.checkout_request_id,
        merchant_request_id=transaction.merchant_request_id,
        order_id=transaction.order_id,
        transaction_id=transaction.id,
    )

def _status_response(transaction: Transaction, order: Optional[Order]) -> PaymentStatusResponse:
    if transaction.status == TransactionStatus.COMPLETED:
        message = "Payment completed successfully"
    else:
        message = f"Payment {transaction.status.value.lower()}"
    return PaymentStatusResponse(
        status=transaction.status,
        transaction=TransactionRead.model_validate(transaction),
        order_id=transaction.order_id,
        order_status=order.status if order else None,
        order_payment_status=order.payment_status if order else None,
        message=message,
    )

@router.post("/initiate-payment", response_model=InitiatePaymentResponse)
def initiate_payment(
    payload: InitiatePaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Create a pending order from the cart snapshot and send the STK push."""
    return _initiated(service.initiate_payment_flow(user.id, payload))

@router.post("/stkpush", response_model=InitiatePaymentResponse)
def stk_push(
    payload: StkPushRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Legacy: push a payment for an order that already exists."""
    transaction = service.initiate(
        payload.phone_number,
        payload.amount,
        payload.order_id,
        user_id=user.id,
        account_reference=payload.account_reference,
        transaction_desc=payload.transaction_desc,
    )
    return _initiated(transaction)

@router.get("/payment-status/{checkout_request_id}", response_model=PaymentStatusResponse)
def payment_status(
    checkout_request_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    transaction = service.get_payment_status(checkout_request_id, user.id)
    return _status_response(transaction, service.get_order(transaction.order_id))

@router.post("/query-status", response_model=PaymentStatusResponse)
def query_status(
    payload: QueryStatusRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Legacy body-based variant of the status endpoint."""
    transaction = service.get_payment_status(payload.checkout_request_id, user.id)
    return _status_response(transaction, service.get_order(transaction.order_id))

@router.post("/complete-order/{order_id}", response_model=CompleteOrderResponse)
def complete_order(
    order_id: int,
    user: CurrentUser = Depends(get_current_user),
    finalizer: OrderFinalizer = Depends(get_order_finalizer),
):
    order = finalizer.finalize(order_id, user.id)
    confirmed = ConfirmedOrderRead.model_validate(order)
    transaction = finalizer.transaction_for(order)
    if transaction is not None:
        confirmed.transaction = TransactionRead.model_validate(transaction)
    return CompleteOrderResponse(order=confirmed)

@router.get("/transactions", response_model=TransactionPage)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[TransactionStatus] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    transactions, pagination = service.list_transactions(user.id, page=page, limit=limit, status=status)
    return TransactionPage(
        transactions=[TransactionRead.model_validate(t) for t in transactions],
        pagination=Pagination(**pagination),
    )

@router.get("/transaction/{transaction_id}", response_model=TransactionRead)
def get_transaction(
    transaction_id: int,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_transaction(transaction_id, None if user.is_admin else user.id)

@router.get("/health")
def gateway_health(user: CurrentUser = Depends(get_current_user), gateway: DarajaClient = Depends(get_gateway)):
    """Confirm the gateway credentials still yield an access token."""
    try:
        gateway.check_credentials()
    except CheckoutError as exc:
        logger.error(f"Gateway health check failed: {exc.message}")
        return JSONResponse(status_code=503, content={
            "success": False,
            "service": "MPESA API",
            "status": "degraded",
            "error": exc.message,
        })
    return {"success": True, "service": "MPESA API", "status": "operational", "mpesaToken": "ok"}

async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None

@router.post("/callback", response_model=CallbackAck)
def mpesa_callback(
    payload: Any = Depends(_json_body),
    service: PaymentService = Depends(get_payment_service),
):
    """Gateway notification. Always acknowledged so the gateway does not retry."""
    try:
        result = service.handle_callback(payload)
    except Exception:
        logger.exception("Callback processing error")
        return CallbackAck()
    logger.info(
        f"Callback handled: {result.outcome.value}",
        extra={'extra_fields': {
            'checkout_request_id': result.checkout_request_id,
            'transaction_id': result.transaction_id,
            'status': result.status.value if result.status else None,
        }},
    )
    return CallbackAck()
