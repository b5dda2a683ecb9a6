from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pharmacy_checkout.domain.enums import OrderStatus, PaymentStatus, TransactionStatus
from .validation import mask_phone, ACCOUNT_REFERENCE_MAX_LENGTH, TRANSACTION_DESC_MAX_LENGTH

class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)

class OrderDataIn(BaseModel):
    items: list[OrderItemIn] = Field(default_factory=list)
    subtotal: Decimal = Field(Decimal("0"), ge=0)
    shipping_cost: Decimal = Field(Decimal("0"), ge=0)
    address_id: Optional[int] = None
    delivery_instructions: Optional[str] = None

class InitiatePaymentRequest(BaseModel):
    # Phone and amount are checked by the service so validation errors
    # share one message format with the rest of the pipeline
    phone_number: str
    amount: Decimal
    order_data: Optional[OrderDataIn] = None

class StkPushRequest(BaseModel):
    phone_number: str
    amount: Decimal
    order_id: int
    account_reference: Optional[str] = Field(None, max_length=ACCOUNT_REFERENCE_MAX_LENGTH)
    transaction_desc: Optional[str] = Field(None, max_length=TRANSACTION_DESC_MAX_LENGTH)

class QueryStatusRequest(BaseModel):
    checkout_request_id: str = Field(min_length=1)

class InitiatePaymentResponse(BaseModel):
    success: bool = True
    message: str = "Payment initiated. Check your phone for M-Pesa prompt."
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    order_id: int
    transaction_id: int

class TransactionRead(BaseModel):
    id: int
    status: TransactionStatus
    amount: Decimal
    phone_number: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    checkout_request_id: Optional[str] = None
    order_id: Optional[int] = None
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

    @field_validator("phone_number")
    @classmethod
    def _mask(cls, value: Optional[str]) -> Optional[str]:
        return mask_phone(value)

class PaymentStatusResponse(BaseModel):
    success: bool = True
    status: TransactionStatus
    transaction: TransactionRead
    order_id: Optional[int] = None
    order_status: Optional[OrderStatus] = None
    order_payment_status: Optional[PaymentStatus] = None
    message: str

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

class TransactionPage(BaseModel):
    transactions: list[TransactionRead]
    pagination: Pagination

class OrderItemRead(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal

    class Config:
        from_attributes = True

class ConfirmedOrderRead(BaseModel):
    id: int
    order_number: Optional[str] = None
    status: OrderStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    subtotal: Decimal
    shipping_cost: Decimal
    delivery_instructions: Optional[str] = None
    address_id: Optional[int] = None
    created_at: datetime
    items: list[OrderItemRead]
    transaction: Optional[TransactionRead] = None

    class Config:
        from_attributes = True

class CompleteOrderResponse(BaseModel):
    success: bool = True
    message: str = "Order completed successfully"
    order: ConfirmedOrderRead

class CallbackAck(BaseModel):
    result_code: int = Field(0, alias="ResultCode")
    result_desc: str = Field("Accepted", alias="ResultDesc")

    class Config:
        populate_by_name = True
