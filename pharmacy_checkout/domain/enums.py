"""Closed status vocabularies for orders, transactions and gateway results."""

from enum import Enum

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    UNPAID = "UNPAID"
    PAID = "PAID"
    FAILED = "FAILED"

class PaymentMethod(str, Enum):
    CASH = "CASH"
    MOBILE_MONEY = "MOBILE_MONEY"

class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING

class ResultSource(str, Enum):
    """Entry point a gateway result arrived through"""
    CALLBACK = "CALLBACK"
    QUERY = "QUERY"

class ResultBucket(str, Enum):
    """Gateway result codes grouped by what they mean for the payment"""
    SUCCESS = "SUCCESS"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def transaction_status(self) -> TransactionStatus:
        return _BUCKET_STATUS[self]

    @property
    def order_payment_status(self) -> PaymentStatus:
        return PaymentStatus.PAID if self is ResultBucket.SUCCESS else PaymentStatus.FAILED

_BUCKET_STATUS = {
    ResultBucket.SUCCESS: TransactionStatus.COMPLETED,
    ResultBucket.CANCELLED: TransactionStatus.CANCELLED,
    ResultBucket.FAILED: TransactionStatus.FAILED,
}

SUCCESS_RESULT_CODE = 0
# 1032: request cancelled by user, 1037: user could not be reached
CANCEL_RESULT_CODES = frozenset({1032, 1037})

def classify_result_code(code: int) -> ResultBucket:
    """Map a normalized gateway result code to its bucket.

    Shared by the callback receiver and the status reconciler so both
    entry points agree on every code.
    """
    if code == SUCCESS_RESULT_CODE:
        return ResultBucket.SUCCESS
    if code in CANCEL_RESULT_CODES:
        return ResultBucket.CANCELLED
    return ResultBucket.FAILED
