"""
The single update path for gateway results.

Callbacks and reconciliation polls both end up in
``TransactionUpdater.apply``. The status change is one conditional
UPDATE guarded on ``status = 'PENDING'``, so whichever entry point
commits first wins and the other sees zero affected rows.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from pharmacy_checkout.domain.enums import PaymentStatus, ResultBucket, ResultSource, TransactionStatus
from pharmacy_checkout.domain.models import Order, Transaction, TransactionEvent
from shared.core import get_logger
from .normalization import GatewayResult

logger = get_logger(__name__)

class ProcessOutcome(str, Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    NOT_FOUND = "NOT_FOUND"
    INVALID = "INVALID"
    STILL_PENDING = "STILL_PENDING"

@dataclass
class ProcessResult:
    outcome: ProcessOutcome
    checkout_request_id: Optional[str] = None
    transaction_id: Optional[int] = None
    status: Optional[TransactionStatus] = None
    mpesa_receipt_number: Optional[str] = None
    order_id: Optional[int] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (ProcessOutcome.APPLIED, ProcessOutcome.DUPLICATE, ProcessOutcome.STILL_PENDING)

class TransactionUpdater:
    def __init__(self, db: Session):
        self.db = db

    def apply(self, result: GatewayResult, source: ResultSource) -> ProcessResult:
        row = self.db.execute(
            select(Transaction.id, Transaction.order_id).where(
                Transaction.checkout_request_id == result.checkout_request_id
            )
        ).first()

        if row is None:
            self._record_event(None, result, source, applied=False)
            self.db.commit()
            logger.warning(
                f"Gateway result for unknown checkout request {result.checkout_request_id}",
                extra={'extra_fields': {'source': source.value, 'result_code': result.result_code}},
            )
            return ProcessResult(
                outcome=ProcessOutcome.NOT_FOUND,
                checkout_request_id=result.checkout_request_id,
                message="Transaction not found",
            )

        transaction_id, order_id = row
        bucket = result.bucket
        new_status = bucket.transaction_status
        now = datetime.utcnow()

        values = {
            "status": new_status,
            "result_code": result.result_code,
            "result_desc": result.result_desc[:255] if result.result_desc else None,
            "updated_at": now,
        }
        if source is ResultSource.CALLBACK:
            values["callback_payload"] = result.raw
        else:
            values["query_response"] = result.raw
        if bucket is ResultBucket.SUCCESS:
            values["mpesa_receipt_number"] = result.receipt_number
            values["transaction_date"] = result.transaction_date

        claimed = self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if claimed:
            if order_id is not None:
                self._update_order(order_id, result.checkout_request_id, bucket, now)
        elif bucket is ResultBucket.SUCCESS and result.receipt_number:
            # A poll can complete a transaction without metadata; let the
            # callback's receipt fill the gap without touching the status.
            self.db.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.status == TransactionStatus.COMPLETED,
                    Transaction.mpesa_receipt_number.is_(None),
                )
                .values(
                    mpesa_receipt_number=result.receipt_number,
                    transaction_date=result.transaction_date,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        self._record_event(transaction_id, result, source, applied=claimed)
        self.db.commit()

        current = self.db.execute(
            select(Transaction.status, Transaction.mpesa_receipt_number).where(Transaction.id == transaction_id)
        ).one()

        if claimed:
            logger.info(
                f"Transaction {transaction_id} marked {new_status.value}",
                extra={'extra_fields': {
                    'checkout_request_id': result.checkout_request_id,
                    'source': source.value,
                    'result_code': result.result_code,
                    'order_id': order_id,
                }},
            )
        else:
            logger.info(
                f"Duplicate gateway result ignored for transaction {transaction_id}",
                extra={'extra_fields': {
                    'checkout_request_id': result.checkout_request_id,
                    'source': source.value,
                    'result_code': result.result_code,
                    'current_status': current.status.value,
                }},
            )

        return ProcessResult(
            outcome=ProcessOutcome.APPLIED if claimed else ProcessOutcome.DUPLICATE,
            checkout_request_id=result.checkout_request_id,
            transaction_id=transaction_id,
            status=current.status,
            mpesa_receipt_number=current.mpesa_receipt_number,
            order_id=order_id,
            message="Callback processed successfully" if claimed else "Transaction already finalized",
        )

    def _update_order(self, order_id: int, checkout_request_id: str, bucket: ResultBucket, now: datetime) -> None:
        # The only place an order becomes PAID. Only the order's current
        # transaction may move it.
        stmt = update(Order).where(Order.id == order_id, Order.checkout_request_id == checkout_request_id)
        if bucket is ResultBucket.SUCCESS:
            stmt = stmt.where(Order.payment_status != PaymentStatus.PAID)
        else:
            stmt = stmt.where(Order.payment_status == PaymentStatus.PENDING)
        self.db.execute(
            stmt.values(payment_status=bucket.order_payment_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def _record_event(self, transaction_id: Optional[int], result: GatewayResult, source: ResultSource, applied: bool) -> None:
        self.db.add(TransactionEvent(
            transaction_id=transaction_id,
            checkout_request_id=result.checkout_request_id,
            source=source,
            result_code=result.result_code,
            applied=applied,
            payload=result.raw,
        ))
