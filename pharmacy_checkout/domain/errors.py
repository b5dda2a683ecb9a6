"""Error taxonomy for the checkout pipeline.

Each error carries the HTTP status the API answers with; a single
exception handler in ``pharmacy_checkout.main`` does the translation.
"""

from typing import Any, Dict, Optional

class CheckoutError(Exception):
    status_code = 400

    def __init__(self, message: str, *, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload

class PaymentValidationError(CheckoutError):
    """Rejected before any gateway call; never creates a transaction"""
    status_code = 400

class InvalidCallbackError(PaymentValidationError):
    """Gateway payload could not be parsed"""

class NotFoundError(CheckoutError):
    status_code = 404

class GatewayRejectedError(CheckoutError):
    """The gateway answered and refused the request"""
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        request_payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, payload=payload)
        self.error_code = error_code
        self.http_status = http_status
        self.request_payload = request_payload

class GatewayTimeoutError(CheckoutError):
    """No usable answer from the gateway; the payment may still have gone through"""
    status_code = 504
    retryable = True

    def __init__(self, message: str, *, request_payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.request_payload = request_payload

class PaymentNotCompletedError(CheckoutError):
    status_code = 409

class OrderStateError(CheckoutError):
    status_code = 409
