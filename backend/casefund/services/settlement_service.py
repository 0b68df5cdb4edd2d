"""Settlement service - sweep accumulated fees from the operating pool into the revenue pool

A run first claims every unclaimed completed fee row by stamping it with a new
InternalTransfer (status pending) in one transaction. Only then is the
processor called, keyed by the transfer id. A transfer that fails stays open
and is retried with the same amount and key before any newer fees are claimed.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from casefund.core.errors import JobLockedError, ProcessorError
from casefund.core.metrics import batch_runs_counter
from casefund.core.otel import ledger_span
from casefund.db import redis as redis_store
from casefund.models.internal_transfer import OPEN_TRANSFER_STATUSES, InternalTransfer, TransferStatus
from casefund.models.platform_revenue import PlatformRevenue
from casefund.models.transaction import FEE_TRANSACTION_TYPES, Transaction, TransactionStatus
from casefund.services import stripe_service
from casefund.services.fee_policy import to_cents

logger = logging.getLogger(__name__)
settlement_logger = logging.getLogger("settlement")

SETTLEMENT_JOB = "fee_settlement"


def transfer_reference(transfer: InternalTransfer) -> str:
    """Idempotency key and transfer group for one settlement"""
    return f"fee-settlement-{transfer.id}"


def _completed_fees(db: Session):
    return db.query(Transaction).filter(
        Transaction.transaction_type.in_(FEE_TRANSACTION_TYPES),
        Transaction.status == TransactionStatus.COMPLETED.value
    )


def unclaimed_fees(db: Session) -> List[Transaction]:
    """Completed fee rows no settlement has claimed yet"""
    return (
        _completed_fees(db)
        .filter(Transaction.internal_transfer_id.is_(None))
        .order_by(Transaction.id.asc())
        .all()
    )


def unsettled_fee_total(db: Session) -> Decimal:
    """Fees still sitting in the operating pool: unclaimed, or claimed by a transfer that has not completed"""
    fees = (
        _completed_fees(db)
        .outerjoin(InternalTransfer, Transaction.internal_transfer_id == InternalTransfer.id)
        .filter(or_(
            Transaction.internal_transfer_id.is_(None),
            InternalTransfer.status != TransferStatus.COMPLETED.value
        ))
        .all()
    )
    return sum((f.amount for f in fees), Decimal("0.00"))


def claimed_fees(transfer: InternalTransfer, db: Session) -> List[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.internal_transfer_id == transfer.id)
        .order_by(Transaction.id.asc())
        .all()
    )


def get_open_transfer(db: Session) -> Optional[InternalTransfer]:
    """Oldest transfer whose fees were claimed but never confirmed as moved"""
    return (
        db.query(InternalTransfer)
        .filter(InternalTransfer.status.in_(OPEN_TRANSFER_STATUSES))
        .order_by(InternalTransfer.id.asc())
        .first()
    )


def _claim_fees(db: Session) -> InternalTransfer:
    """Sum and claim the unclaimed fees as one unit; a zero sum is recorded as skipped"""
    try:
        fees = (
            _completed_fees(db)
            .filter(Transaction.internal_transfer_id.is_(None))
            .order_by(Transaction.id.asc())
            .with_for_update()
            .all()
        )
        total = sum((f.amount for f in fees), Decimal("0.00"))

        if total <= 0:
            transfer = InternalTransfer(amount=Decimal("0.00"), fee_count=0, status=TransferStatus.SKIPPED.value)
            db.add(transfer)
            db.commit()
            settlement_logger.info("No fees to settle, recorded skipped run")
            return transfer

        transfer = InternalTransfer(amount=total, fee_count=len(fees), status=TransferStatus.PENDING.value, attempts=0)
        db.add(transfer)
        db.flush()
        for fee in fees:
            fee.internal_transfer_id = transfer.id
        db.commit()
    except Exception:
        db.rollback()
        raise

    settlement_logger.info(f"Settlement {transfer.id} claimed {len(fees)} fees totalling €{total}")
    return transfer


def _complete(transfer: InternalTransfer, stripe_transfer_id: str, db: Session) -> InternalTransfer:
    try:
        transfer.status = TransferStatus.COMPLETED.value
        transfer.stripe_transfer_id = stripe_transfer_id
        transfer.failure_reason = None
        transfer.completed_at = datetime.now(timezone.utc)
        for fee in claimed_fees(transfer, db):
            db.add(PlatformRevenue(
                amount=fee.amount,
                transaction_type=fee.transaction_type,
                reference_id=fee.external_ref or str(fee.id),
                revenue_metadata={
                    "transaction_id": fee.id,
                    "internal_transfer_id": transfer.id,
                    "stripe_transfer_id": stripe_transfer_id,
                }
            ))
        db.commit()
    except Exception:
        db.rollback()
        # The transfer stays open; the next run finds the Stripe transfer by its group
        settlement_logger.critical(
            f"Transfer {stripe_transfer_id} for settlement {transfer.id} succeeded but could not be recorded"
        )
        raise

    settlement_logger.info(
        f"Settlement {transfer.id} completed: €{transfer.amount} from {transfer.fee_count} fees, transfer {stripe_transfer_id}"
    )
    return transfer


def _execute_transfer(transfer: InternalTransfer, db: Session) -> InternalTransfer:
    """Move a claimed transfer's money, reusing its reference on every attempt"""
    reference = transfer_reference(transfer)
    previous_attempts = transfer.attempts or 0

    transfer.attempts = previous_attempts + 1
    db.commit()

    try:
        # An earlier attempt may have reached Stripe after its idempotency key expired
        existing = stripe_service.find_transfer(reference) if previous_attempts else None
        if existing:
            settlement_logger.warning(f"Settlement {transfer.id} already transferred as {existing}, recording it")
            return _complete(transfer, existing, db)

        stripe_transfer_id = stripe_service.create_transfer(
            amount_cents=to_cents(transfer.amount),
            description=f"Platform fees, settlement {transfer.id}",
            metadata={"internal_transfer_id": str(transfer.id), "fee_count": str(transfer.fee_count)},
            idempotency_key=reference,
            transfer_group=reference,
        )
    except ProcessorError as e:
        transfer.status = TransferStatus.FAILED.value
        transfer.failure_reason = e.message
        db.commit()
        settlement_logger.error(
            f"Settlement {transfer.id} of €{transfer.amount} failed (attempt {transfer.attempts}): {e.message}"
        )
        return transfer

    return _complete(transfer, stripe_transfer_id, db)


def _settle(db: Session) -> InternalTransfer:
    transfer = get_open_transfer(db)
    if transfer:
        settlement_logger.info(f"Resuming settlement {transfer.id} ({transfer.status}, {transfer.attempts} attempts)")
    else:
        transfer = _claim_fees(db)
        if transfer.status == TransferStatus.SKIPPED.value:
            return transfer
    return _execute_transfer(transfer, db)


def run_fee_settlement(db: Session) -> InternalTransfer:
    """Settle an open transfer, or every fee booked since the last claim.

    Raises:
        JobLockedError: Another worker is settling right now
    """
    token = redis_store.acquire_job_lock(SETTLEMENT_JOB)
    if not token:
        raise JobLockedError("Fee settlement is already running")

    try:
        with ledger_span("settlement") as span:
            transfer = _settle(db)
            span.set_attribute("ledger.outcome", transfer.status)
            span.set_attribute("ledger.amount", str(transfer.amount))
    except Exception:
        batch_runs_counter.labels(job=SETTLEMENT_JOB, status="error").inc()
        raise
    finally:
        redis_store.release_job_lock(SETTLEMENT_JOB, token)

    batch_runs_counter.labels(job=SETTLEMENT_JOB, status=transfer.status).inc()
    return transfer


def serialize_transfer(transfer: InternalTransfer) -> Dict:
    return {
        "id": transfer.id,
        "amount": str(transfer.amount),
        "fee_count": transfer.fee_count,
        "status": transfer.status,
        "attempts": transfer.attempts,
        "stripe_transfer_id": transfer.stripe_transfer_id,
        "failure_reason": transfer.failure_reason,
        "created_at": transfer.created_at.isoformat() if transfer.created_at else None,
        "completed_at": transfer.completed_at.isoformat() if transfer.completed_at else None,
    }
