"""
Boundary parsing for gateway results.

Callbacks and STK Query responses are turned into one ``GatewayResult``
shape before any business logic sees them: the result code becomes an
``int`` whatever type the gateway sent, and callback metadata becomes a
list of name/value items whether the gateway sent a single object or a
list.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pharmacy_checkout.domain.enums import ResultBucket, classify_result_code
from pharmacy_checkout.domain.errors import InvalidCallbackError

RECEIPT_NUMBER = "MpesaReceiptNumber"
TRANSACTION_DATE = "TransactionDate"
PHONE_NUMBER = "PhoneNumber"
AMOUNT = "Amount"

def normalize_result_code(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("result code must be numeric")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError(f"result code must be numeric, got {value!r}")

class MetadataItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(alias="Name")
    value: Any = Field(None, alias="Value")

class CallbackMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[MetadataItem] = Field(default_factory=list, alias="Item")

    @field_validator("items", mode="before")
    @classmethod
    def _single_item_as_list(cls, value: Union[None, Dict[str, Any], List[Any]]):
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value

class StkResultPayload(BaseModel):
    """Shared shape of ``Body.stkCallback`` and an STK Query response"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field("", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    @field_validator("result_code", mode="before")
    @classmethod
    def _numeric_code(cls, value: Any) -> int:
        return normalize_result_code(value)

    @field_validator("checkout_request_id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("CheckoutRequestID must not be empty")
        return value

@dataclass(frozen=True)
class GatewayResult:
    checkout_request_id: str
    result_code: int
    result_desc: str
    merchant_request_id: Optional[str] = None
    metadata: tuple = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def bucket(self) -> ResultBucket:
        return classify_result_code(self.result_code)

    def metadata_value(self, name: str) -> Any:
        for item in self.metadata:
            if item.name == name:
                return item.value
        return None

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.metadata_value(RECEIPT_NUMBER)
        return str(value) if value is not None else None

    @property
    def transaction_date(self) -> Optional[str]:
        value = self.metadata_value(TRANSACTION_DATE)
        return str(value) if value is not None else None

def _to_result(parsed: StkResultPayload, raw: Dict[str, Any]) -> GatewayResult:
    items = parsed.callback_metadata.items if parsed.callback_metadata else []
    return GatewayResult(
        checkout_request_id=parsed.checkout_request_id,
        result_code=parsed.result_code,
        result_desc=parsed.result_desc,
        merchant_request_id=parsed.merchant_request_id,
        metadata=tuple(items),
        raw=raw,
    )

def parse_callback(payload: Any) -> GatewayResult:
    """Parse the gateway's push notification body"""
    if not isinstance(payload, dict):
        raise InvalidCallbackError("Callback body must be a JSON object")
    body = payload.get("Body")
    stk_callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk_callback, dict):
        raise InvalidCallbackError("Invalid callback format: missing Body.stkCallback")
    try:
        parsed = StkResultPayload.model_validate(stk_callback)
    except ValidationError as exc:
        raise InvalidCallbackError(f"Invalid callback format: {exc.error_count()} field error(s)", payload=payload) from exc
    return _to_result(parsed, payload)

def parse_query_response(payload: Dict[str, Any]) -> Optional[GatewayResult]:
    """Parse an STK Query answer; ``None`` means the push is still in flight"""
    if payload.get("ResultCode") in (None, ""):
        return None
    try:
        parsed = StkResultPayload.model_validate(payload)
    except ValidationError as exc:
        raise InvalidCallbackError("Unrecognized STK query response", payload=payload) from exc
    return _to_result(parsed, payload)
