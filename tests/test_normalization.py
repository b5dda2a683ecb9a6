import pytest

from pharmacy_checkout.application.normalization import parse_callback, parse_query_response
from pharmacy_checkout.domain.enums import ResultBucket, TransactionStatus, classify_result_code
from pharmacy_checkout.domain.errors import InvalidCallbackError
from fakes import stk_callback

@pytest.mark.parametrize("code, expected", [
    (0, TransactionStatus.COMPLETED),
    (1032, TransactionStatus.CANCELLED),
    (1037, TransactionStatus.CANCELLED),
    (1, TransactionStatus.FAILED),
    (1031, TransactionStatus.FAILED),
    (2001, TransactionStatus.FAILED),
    (17, TransactionStatus.FAILED),
])
def test_result_code_mapping(code, expected):
    assert classify_result_code(code).transaction_status is expected

def test_only_success_maps_to_paid_orders():
    assert ResultBucket.SUCCESS.order_payment_status.value == "PAID"
    assert ResultBucket.CANCELLED.order_payment_status.value == "FAILED"
    assert ResultBucket.FAILED.order_payment_status.value == "FAILED"

def test_metadata_list_and_single_object_parse_the_same():
    as_list = parse_callback(stk_callback("ws_CO_1"))
    as_single = parse_callback(stk_callback("ws_CO_1", single_item=True))

    assert as_list.receipt_number == "ABC123"
    assert as_single.receipt_number == "ABC123"
    assert len(as_single.metadata) == 1
    assert as_list.transaction_date == "20240305091502"
    assert as_list.metadata_value("Balance") is None

@pytest.mark.parametrize("raw_code", [0, "0", " 0 ", 0.0])
def test_result_code_is_normalized_to_int(raw_code):
    result = parse_callback(stk_callback("ws_CO_1", result_code=raw_code))
    assert result.result_code == 0
    assert result.bucket is ResultBucket.SUCCESS

def test_string_cancel_code_from_either_entry_point():
    callback = parse_callback(stk_callback("ws_CO_1", result_code="1032"))
    query = parse_query_response({"CheckoutRequestID": "ws_CO_1", "ResultCode": "1032", "ResultDesc": "Cancelled"})
    assert callback.result_code == query.result_code == 1032
    assert callback.bucket is query.bucket is ResultBucket.CANCELLED

def test_failed_callback_has_no_metadata():
    result = parse_callback(stk_callback("ws_CO_1", result_code=1))
    assert result.metadata == ()
    assert result.receipt_number is None

@pytest.mark.parametrize("payload", [
    None,
    [],
    {},
    {"Body": {}},
    {"Body": {"stkCallback": {"ResultCode": 0}}},
    {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "zero"}}},
    {"Body": {"stkCallback": {"CheckoutRequestID": " ", "ResultCode": 0}}},
])
def test_malformed_callbacks_are_rejected(payload):
    with pytest.raises(InvalidCallbackError):
        parse_callback(payload)

def test_query_without_result_code_means_still_pending():
    assert parse_query_response({"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}) is None
    assert parse_query_response({"CheckoutRequestID": "ws_CO_1", "ResultCode": ""}) is None

def test_raw_payload_is_kept_for_audit():
    payload = stk_callback("ws_CO_1")
    assert parse_callback(payload).raw == payload
