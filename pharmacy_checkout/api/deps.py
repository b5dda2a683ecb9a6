from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from pharmacy_checkout.application.finalizer import OrderFinalizer
from pharmacy_checkout.application.service import PaymentService
from pharmacy_checkout.core_settings import get_settings
from pharmacy_checkout.infrastructure.daraja import DarajaClient
from pharmacy_checkout.infrastructure.db import get_db
from pharmacy_checkout.infrastructure.token_cache import init_token_cache

@lru_cache
def get_gateway() -> DarajaClient:
    """Process-wide gateway client sharing one token cache"""
    settings = get_settings()
    client = DarajaClient.from_settings(settings)
    client.token_cache = init_token_cache(
        client.fetch_access_token,
        safety_margin=settings.MPESA_TOKEN_SAFETY_MARGIN_SECONDS,
        wait_timeout=settings.MPESA_TIMEOUT_SECONDS,
    )
    return client

def get_payment_service(db: Session = Depends(get_db), gateway: DarajaClient = Depends(get_gateway)) -> PaymentService:
    return PaymentService(db, gateway)

def get_order_finalizer(db: Session = Depends(get_db), payments: PaymentService = Depends(get_payment_service)) -> OrderFinalizer:
    return OrderFinalizer(db, payments)
