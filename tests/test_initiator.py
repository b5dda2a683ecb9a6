import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from pharmacy_checkout.application.schemas import InitiatePaymentRequest
from pharmacy_checkout.domain.enums import OrderStatus, PaymentStatus, TransactionStatus
from pharmacy_checkout.domain.errors import (
    GatewayRejectedError,
    GatewayTimeoutError,
    NotFoundError,
    OrderStateError,
    PaymentValidationError,
)
from pharmacy_checkout.domain.models import Address, Order, Transaction
from pharmacy_checkout.infrastructure.daraja import STK_PUSH_PATH, STK_QUERY_PATH, TOKEN_PATH
from pharmacy_checkout.infrastructure.signer import sign
from fakes import FIXED_NOW, PASSKEY, SHORT_CODE, read_timeout

def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))

def _flow_request(**overrides):
    data = {
        "phone_number": "0712345678",
        "amount": "500",
        "order_data": {
            "items": [{"product_id": 11, "quantity": 2, "price": "150.00"}, {"product_id": 12, "quantity": 1, "price": "200"}],
            "subtotal": "500",
            "shipping_cost": "0",
            "delivery_instructions": "Leave at the gate",
        },
    }
    data.update(overrides)
    return InitiatePaymentRequest.model_validate(data)

def test_accepted_push_records_pending_transaction(db, payments, make_order, fake_daraja):
    order = make_order()

    transaction = payments.initiate("0712345678", 500, order.id, user_id=1)

    assert transaction.status is TransactionStatus.PENDING
    assert transaction.checkout_request_id == "ws_CO_TEST_1"
    assert transaction.merchant_request_id == "29115-34620561-1"
    assert transaction.phone_number == "254712345678"
    assert transaction.account_reference == f"ORDER{order.id}"
    assert transaction.request_payload["Password"] == "***"
    assert db.get(Order, order.id).checkout_request_id == "ws_CO_TEST_1"

    body = json.loads(fake_daraja.sent(STK_PUSH_PATH)[0].content)
    signed = sign(SHORT_CODE, PASSKEY, FIXED_NOW)
    assert body["Password"] == signed.password
    assert body["Timestamp"] == "20240305090702"
    assert body["Amount"] == 500
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["TransactionType"] == "CustomerPayBillOnline"

def test_fractional_amount_is_rounded_for_the_gateway(payments, make_order, fake_daraja):
    order = make_order(total=Decimal("99.50"))

    transaction = payments.initiate("712345678", "99.50", order.id)

    assert transaction.amount == Decimal("99.50")
    assert json.loads(fake_daraja.sent(STK_PUSH_PATH)[0].content)["Amount"] == 100

@pytest.mark.parametrize("phone, amount", [
    ("12345", 500),
    ("071234567", 500),
    ("0712345678", 0),
    ("0712345678", 70001),
    ("0712345678", "abc"),
    ("0712345678", None),
])
def test_invalid_input_never_reaches_gateway(db, payments, make_order, fake_daraja, phone, amount):
    order = make_order()

    with pytest.raises(PaymentValidationError):
        payments.initiate(phone, amount, order.id)

    assert fake_daraja.requests == []
    assert _count(db, Transaction) == 0

def test_long_account_reference_is_rejected(payments, make_order, fake_daraja):
    order = make_order()

    with pytest.raises(PaymentValidationError, match="12 characters"):
        payments.initiate("0712345678", 500, order.id, account_reference="PHARMACY-ORDER-1")

    assert fake_daraja.requests == []

def test_push_for_another_users_order_is_not_found(payments, make_order):
    order = make_order(user_id=2)

    with pytest.raises(NotFoundError):
        payments.initiate("0712345678", 500, order.id, user_id=1)

def test_gateway_refusal_records_failed_transaction(db, payments, make_order, fake_daraja):
    order = make_order()
    fake_daraja.push_status = 400
    fake_daraja.push_body = {"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}

    with pytest.raises(GatewayRejectedError) as exc_info:
        payments.initiate("0712345678", 500, order.id)

    assert exc_info.value.error_code == "400.002.02"
    transaction = db.scalars(select(Transaction)).one()
    assert transaction.status is TransactionStatus.FAILED
    assert transaction.checkout_request_id is None
    assert transaction.error_message == "Bad Request - Invalid PhoneNumber"
    assert transaction.response_payload["errorCode"] == "400.002.02"

def test_non_zero_response_code_is_a_refusal(db, payments, make_order, fake_daraja):
    order = make_order()
    fake_daraja.push_body = {
        "MerchantRequestID": "1",
        "CheckoutRequestID": "ws_CO_X",
        "ResponseCode": "1",
        "ResponseDescription": "Rejected",
    }

    with pytest.raises(GatewayRejectedError, match="Rejected"):
        payments.initiate("0712345678", 500, order.id)

    assert db.scalars(select(Transaction)).one().status is TransactionStatus.FAILED

def test_push_timeout_leaves_a_pending_transaction(db, payments, make_order, fake_daraja):
    order = make_order()
    fake_daraja.push_error = read_timeout

    with pytest.raises(GatewayTimeoutError) as exc_info:
        payments.initiate("0712345678", 500, order.id)

    assert exc_info.value.retryable
    transaction = db.scalars(select(Transaction)).one()
    assert transaction.status is TransactionStatus.PENDING
    assert transaction.checkout_request_id.startswith("ws_CO_")
    assert db.get(Order, order.id).checkout_request_id == transaction.checkout_request_id

def test_token_is_exchanged_once_for_several_pushes(payments, make_order, fake_daraja):
    for _ in range(3):
        payments.initiate("0712345678", 500, make_order().id)

    assert len(fake_daraja.sent(TOKEN_PATH)) == 1
    assert len(fake_daraja.sent(STK_PUSH_PATH)) == 3
    assert {r.headers["Authorization"] for r in fake_daraja.sent(STK_PUSH_PATH)} == {"Bearer token-1"}

def test_initiate_flow_creates_transient_order(db, payments):
    transaction = payments.initiate_payment_flow(1, _flow_request())

    order = db.get(Order, transaction.order_id)
    assert order.status is OrderStatus.PENDING
    assert order.payment_status is PaymentStatus.PENDING
    assert order.order_number is None
    assert order.items == []
    assert order.total_amount == Decimal("500")
    assert order.checkout_request_id == transaction.checkout_request_id
    assert [i["product_id"] for i in json.loads(order.items_payload)] == [11, 12]

def test_initiate_flow_without_items_creates_nothing(db, payments, fake_daraja):
    with pytest.raises(PaymentValidationError, match="Order data is required"):
        payments.initiate_payment_flow(1, _flow_request(order_data={"items": []}))

    assert _count(db, Order) == 0
    assert fake_daraja.requests == []

def test_initiate_flow_checks_address_ownership(db, payments, fake_daraja):
    address = Address(user_id=2, street="Moi Avenue 1", city="Nairobi")
    db.add(address)
    db.commit()
    request = _flow_request()
    request.order_data.address_id = address.id

    with pytest.raises(PaymentValidationError, match="Address not found"):
        payments.initiate_payment_flow(1, request)

    assert _count(db, Order) == 0
    assert fake_daraja.requests == []

def test_rejected_push_removes_transient_order(db, payments, fake_daraja):
    fake_daraja.push_status = 500
    fake_daraja.push_body = {"requestId": "1", "errorCode": "500.001.1001", "errorMessage": "Unable to lock subscriber"}

    with pytest.raises(GatewayRejectedError):
        payments.initiate_payment_flow(1, _flow_request())

    assert _count(db, Order) == 0
    transaction = db.scalars(select(Transaction)).one()
    assert transaction.status is TransactionStatus.FAILED
    assert transaction.order_id is None

def test_timed_out_push_keeps_transient_order(db, payments, fake_daraja):
    fake_daraja.push_error = read_timeout

    with pytest.raises(GatewayTimeoutError):
        payments.initiate_payment_flow(1, _flow_request())

    assert _count(db, Order) == 1
    assert db.scalars(select(Transaction)).one().status is TransactionStatus.PENDING

def test_second_push_waits_for_pending_one(db, payments, make_order, fake_daraja):
    order = make_order()
    first = payments.initiate("0712345678", 500, order.id)

    with pytest.raises(OrderStateError, match="already in progress"):
        payments.initiate("0712345678", 500, order.id)

    assert len(fake_daraja.sent(STK_PUSH_PATH)) == 1
    assert len(fake_daraja.sent(STK_QUERY_PATH)) == 1
    pending = db.scalars(select(Transaction).where(Transaction.status == TransactionStatus.PENDING)).all()
    assert [t.id for t in pending] == [first.id]
    assert db.get(Order, order.id, populate_existing=True).checkout_request_id == first.checkout_request_id

def test_retry_allowed_once_previous_push_was_cancelled(db, payments, make_order, fake_daraja):
    order = make_order()
    first = payments.initiate("0712345678", 500, order.id)
    fake_daraja.accept_query(1032, "Request cancelled by user")

    second = payments.initiate("0712345678", 500, order.id)

    assert second.id != first.id
    assert db.get(Transaction, first.id, populate_existing=True).status is TransactionStatus.CANCELLED
    reloaded = db.get(Order, order.id, populate_existing=True)
    assert reloaded.checkout_request_id == second.checkout_request_id
    assert reloaded.payment_status is PaymentStatus.PENDING

def test_retry_refused_when_pending_push_turns_out_paid(db, payments, make_order, fake_daraja):
    order = make_order()
    payments.initiate("0712345678", 500, order.id)
    fake_daraja.accept_query(0)

    with pytest.raises(PaymentValidationError, match="already paid"):
        payments.initiate("0712345678", 500, order.id)

    assert len(fake_daraja.sent(STK_PUSH_PATH)) == 1
    assert db.get(Order, order.id, populate_existing=True).payment_status is PaymentStatus.PAID

def test_retry_after_timed_out_push_is_refused_without_query(payments, make_order, fake_daraja):
    order = make_order()
    fake_daraja.push_error = read_timeout
    with pytest.raises(GatewayTimeoutError):
        payments.initiate("0712345678", 500, order.id)
    fake_daraja.push_error = None

    with pytest.raises(OrderStateError, match="timed out"):
        payments.initiate("0712345678", 500, order.id)

    assert fake_daraja.sent(STK_QUERY_PATH) == []
    assert len(fake_daraja.sent(STK_PUSH_PATH)) == 1
