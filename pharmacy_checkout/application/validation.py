"""Input checks that run before any gateway call."""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from pharmacy_checkout.domain.errors import PaymentValidationError

ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 13
_NON_DIGITS = re.compile(r"\D")
# Digits with an optional leading "+" and space or hyphen separators
_PHONE_CHARS = re.compile(r"\+?[\d\s-]+")

def normalize_phone(phone: Optional[str]) -> str:
    """Return the canonical 2547XXXXXXXX form of a Kenyan mobile number.

    Accepts ``07XXXXXXXX``, ``7XXXXXXXX``, ``2547XXXXXXXX`` and
    ``+2547XXXXXXXX`` (separators are ignored); anything else is rejected.
    """
    if not phone or not isinstance(phone, str):
        raise PaymentValidationError("Phone number is required")
    if not _PHONE_CHARS.fullmatch(phone.strip()):
        raise PaymentValidationError("Invalid phone number format. Use 07XXXXXXXX")
    digits = _NON_DIGITS.sub("", phone)

    if digits.startswith("0") and len(digits) == 10:
        normalized = "254" + digits[1:]
    elif digits.startswith("7") and len(digits) == 9:
        normalized = "254" + digits
    elif digits.startswith("254") and len(digits) == 12:
        normalized = digits
    else:
        normalized = ""

    if len(normalized) != 12:
        raise PaymentValidationError("Invalid phone number format. Use 07XXXXXXXX")
    return normalized

def mask_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    return "***" + phone[-3:]

def validate_amount(amount: Union[int, float, str, Decimal, None], minimum: int, maximum: int) -> Decimal:
    """Check that ``amount`` lies within [minimum, maximum] inclusive"""
    if amount is None or isinstance(amount, bool):
        raise PaymentValidationError("Amount is required")
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise PaymentValidationError("Amount must be a number")
    if not value.is_finite() or value < minimum or value > maximum:
        raise PaymentValidationError(f"Amount must be between KES {minimum:,} and KES {maximum:,}")
    return value

def gateway_amount(amount: Decimal) -> int:
    """The push API only takes whole shillings"""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def validate_account_reference(value: str) -> str:
    if len(value) > ACCOUNT_REFERENCE_MAX_LENGTH:
        raise PaymentValidationError(f"Account reference must be {ACCOUNT_REFERENCE_MAX_LENGTH} characters or less")
    return value

def validate_transaction_desc(value: str) -> str:
    if len(value) > TRANSACTION_DESC_MAX_LENGTH:
        raise PaymentValidationError(f"Transaction description must be {TRANSACTION_DESC_MAX_LENGTH} characters or less")
    return value
