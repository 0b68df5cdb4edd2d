"""Withdrawal service - reservation, payout batch and the withdrawal state machine

pending -> processing -> completed | failed, and failed -> processing on operator retry.
While a request is pending or processing its amount sits in wallet.reserved.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from casefund.core.config import settings
from casefund.core.errors import (
    InsufficientBalanceError, InvalidStateError, NotFoundError, ProcessorError,
    RateLimitedError, RetryLimitExceededError, ValidationError
)
from casefund.core.metrics import withdrawals_counter
from casefund.core.otel import ledger_span
from casefund.models.transaction import Transaction, TransactionStatus, TransactionType
from casefund.models.withdrawal_request import RESERVING_STATUSES, WithdrawalRequest, WithdrawalStatus
from casefund.services import stripe_service
from casefund.services.fee_policy import FeeKind, calculate_fee, quantize, to_cents
from casefund.services.wallet_service import lock_wallet

logger = logging.getLogger(__name__)
payout_logger = logging.getLogger("payout")

PAYOUT_EVENTS = ("payout.paid", "payout.failed", "payout.canceled")

RATE_LIMIT_WINDOW = timedelta(hours=24)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _normalize_bank_details(bank_details: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    details = bank_details or {}
    account_holder = (details.get("account_holder") or "").strip()
    iban = (details.get("iban") or "").replace(" ", "").upper()
    if not account_holder or not iban:
        raise ValidationError("Bank details (account_holder, iban) are required")
    return {
        "account_holder": account_holder,
        "iban": iban,
        "bank_name": (details.get("bank_name") or "").strip() or None,
    }


def _check_rate_limit(user_id: int, db: Session):
    """At most WITHDRAWAL_RATE_LIMIT_PER_DAY requests per rolling 24 hours.

    Called while the wallet row is locked so concurrent requests count each other.
    """
    window_start = datetime.now(timezone.utc) - RATE_LIMIT_WINDOW
    count, oldest = (
        db.query(func.count(WithdrawalRequest.id), func.min(WithdrawalRequest.created_at))
        .filter(
            WithdrawalRequest.user_id == user_id,
            WithdrawalRequest.created_at >= window_start
        )
        .one()
    )

    limit = settings.WITHDRAWAL_RATE_LIMIT_PER_DAY
    if count >= limit:
        reset_at = _as_utc(oldest) + RATE_LIMIT_WINDOW
        raise RateLimitedError(
            f"Withdrawal limit of {limit} per 24 hours reached",
            reset_at=reset_at,
            remaining=0
        )


def _open_withdrawal_transaction(request: WithdrawalRequest, db: Session) -> Optional[Transaction]:
    return (
        db.query(Transaction)
        .filter(
            Transaction.withdrawal_request_id == request.id,
            Transaction.transaction_type == TransactionType.WITHDRAWAL.value,
            Transaction.status == TransactionStatus.PENDING.value
        )
        .order_by(Transaction.id.desc())
        .first()
    )


def _lock_request(withdrawal_id: int, db: Session) -> WithdrawalRequest:
    """Lock wallet then request, always in that order"""
    request = db.query(WithdrawalRequest).filter(WithdrawalRequest.id == withdrawal_id).first()
    if not request:
        raise NotFoundError(f"Withdrawal request {withdrawal_id} not found")

    lock_wallet(request.user_id, db)
    return (
        db.query(WithdrawalRequest)
        .filter(WithdrawalRequest.id == withdrawal_id)
        .with_for_update()
        .populate_existing()
        .one()
    )


def request_withdrawal(user_id: int, amount: Decimal, bank_details: Dict[str, Any], db: Session) -> WithdrawalRequest:
    """Reserve funds for a payout.

    Balance check, rate limit and reservation run as one unit under the
    wallet row lock.

    Raises:
        ValidationError: Below minimum or missing bank details
        RateLimitedError: Too many requests in the last 24 hours
        InsufficientBalanceError: Balance does not cover the amount
    """
    gross = quantize(amount)
    if gross < settings.MIN_WITHDRAWAL_AMOUNT:
        raise ValidationError(f"Minimum withdrawal is €{settings.MIN_WITHDRAWAL_AMOUNT}")
    details = _normalize_bank_details(bank_details)
    breakdown = calculate_fee(gross, FeeKind.WITHDRAWAL)

    try:
        wallet = lock_wallet(user_id, db)
        _check_rate_limit(user_id, db)

        if wallet.balance < gross:
            raise InsufficientBalanceError(
                f"Insufficient balance: requested €{gross}, available €{wallet.balance}"
            )

        wallet.balance = wallet.balance - gross
        wallet.reserved = wallet.reserved + gross

        request = WithdrawalRequest(
            user_id=user_id,
            amount=gross,
            fee=breakdown.platform_fee,
            net_amount=breakdown.net_amount,
            status=WithdrawalStatus.PENDING.value,
            retry_count=0,
            **details
        )
        db.add(request)
        db.flush()

        db.add(Transaction(
            transaction_type=TransactionType.WITHDRAWAL.value,
            amount=gross,
            status=TransactionStatus.PENDING.value,
            user_id=user_id,
            wallet_id=wallet.id,
            withdrawal_request_id=request.id,
            transaction_metadata={
                "fee": str(breakdown.platform_fee),
                "net_amount": str(breakdown.net_amount),
                "balance_after": str(wallet.balance),
            }
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    withdrawals_counter.labels(status="requested").inc()
    payout_logger.info(f"Withdrawal {request.id} requested by user {user_id}: amount={gross}, fee={breakdown.platform_fee}")
    return request


def finalize_withdrawal(withdrawal_id: int, payout_id: Optional[str], db: Session) -> WithdrawalRequest:
    """Payout succeeded: release the reservation (the money is gone) and book the fee"""
    try:
        request = _lock_request(withdrawal_id, db)
        if request.status != WithdrawalStatus.PROCESSING.value:
            raise InvalidStateError(f"Withdrawal {withdrawal_id} is {request.status}, expected processing")

        wallet = lock_wallet(request.user_id, db)
        wallet.reserved = wallet.reserved - request.amount

        now = datetime.now(timezone.utc)
        request.status = WithdrawalStatus.COMPLETED.value
        request.completed_at = now
        request.stripe_payout_id = payout_id
        request.failure_reason = None

        transaction = _open_withdrawal_transaction(request, db)
        if transaction:
            transaction.status = TransactionStatus.COMPLETED.value

        if request.fee > 0:
            db.add(Transaction(
                transaction_type=TransactionType.WITHDRAWAL_FEE.value,
                amount=request.fee,
                status=TransactionStatus.COMPLETED.value,
                external_ref=f"withdrawal:{request.id}:fee",
                user_id=request.user_id,
                wallet_id=wallet.id,
                withdrawal_request_id=request.id,
                transaction_metadata={"payout_id": payout_id}
            ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    withdrawals_counter.labels(status="completed").inc()
    payout_logger.info(f"Withdrawal {withdrawal_id} completed: payout {payout_id}, net {request.net_amount}")
    return request


def fail_withdrawal(withdrawal_id: int, reason: str, db: Session) -> WithdrawalRequest:
    """Payout failed: return the full amount to the user's balance"""
    try:
        request = _lock_request(withdrawal_id, db)
        if request.status not in RESERVING_STATUSES:
            raise InvalidStateError(f"Withdrawal {withdrawal_id} is {request.status} and holds no reservation")

        wallet = lock_wallet(request.user_id, db)
        wallet.balance = wallet.balance + request.amount
        wallet.reserved = wallet.reserved - request.amount

        request.status = WithdrawalStatus.FAILED.value
        request.failure_reason = reason
        request.retry_count = (request.retry_count or 0) + 1

        transaction = _open_withdrawal_transaction(request, db)
        if transaction:
            transaction.status = TransactionStatus.FAILED.value
        db.commit()
    except Exception:
        db.rollback()
        raise

    withdrawals_counter.labels(status="failed").inc()
    payout_logger.warning(
        f"Withdrawal {withdrawal_id} failed (attempt {request.retry_count}): {reason}. "
        f"€{request.amount} returned to user {request.user_id}"
    )
    return request


def _execute_payout(request: WithdrawalRequest, db: Session) -> bool:
    """Call the processor for a request already marked processing, then finalize or fail it"""
    withdrawal_id = request.id
    idempotency_key = f"withdrawal-{withdrawal_id}-{request.retry_count}"
    with ledger_span("payout", withdrawal_id=withdrawal_id, amount=request.net_amount, idempotency_key=idempotency_key):
        try:
            payout_id = stripe_service.create_payout(
                amount_cents=to_cents(request.net_amount),
                account_holder=request.account_holder,
                iban=request.iban,
                description=f"Withdrawal {withdrawal_id} for user {request.user_id}",
                metadata={"withdrawal_request_id": str(withdrawal_id), "user_id": str(request.user_id)},
                idempotency_key=idempotency_key,
            )
        except ProcessorError as e:
            fail_withdrawal(withdrawal_id, e.message, db)
            return False

    finalize_withdrawal(withdrawal_id, payout_id, db)
    return True


def process_pending_withdrawals(db: Session, limit: int = 100) -> Dict[str, int]:
    """Batch: pay out pending requests, oldest first"""
    pending_ids = [
        row.id for row in (
            db.query(WithdrawalRequest.id)
            .filter(WithdrawalRequest.status == WithdrawalStatus.PENDING.value)
            .order_by(WithdrawalRequest.created_at.asc(), WithdrawalRequest.id.asc())
            .limit(limit)
            .all()
        )
    ]

    results = {"processed": 0, "failed": 0, "skipped": 0}
    for withdrawal_id in pending_ids:
        request = _lock_request(withdrawal_id, db)
        if request.status != WithdrawalStatus.PENDING.value:
            db.rollback()
            results["skipped"] += 1
            continue

        # Committed before the external call so a crash leaves a visible processing row
        request.status = WithdrawalStatus.PROCESSING.value
        request.processed_at = datetime.now(timezone.utc)
        db.commit()
        withdrawals_counter.labels(status="processing").inc()

        if _execute_payout(request, db):
            results["processed"] += 1
        else:
            results["failed"] += 1

    if pending_ids:
        payout_logger.info(f"Withdrawal batch finished: {results}")
    return results


def retry_withdrawal(withdrawal_id: int, db: Session) -> Dict[str, Any]:
    """Operator retry of a failed withdrawal: re-reserve the funds and pay out again

    Raises:
        NotFoundError, InvalidStateError (not failed), RetryLimitExceededError,
        InsufficientBalanceError (funds were spent since the failure)
    """
    try:
        request = _lock_request(withdrawal_id, db)
        if request.status != WithdrawalStatus.FAILED.value:
            raise InvalidStateError(f"Only failed withdrawals can be retried (status is {request.status})")
        if request.retry_count >= settings.WITHDRAWAL_MAX_RETRIES:
            raise RetryLimitExceededError(
                f"Withdrawal {withdrawal_id} failed {request.retry_count} times; manual intervention required"
            )

        wallet = lock_wallet(request.user_id, db)
        if wallet.balance < request.amount:
            raise InsufficientBalanceError(
                f"Insufficient balance to retry: needs €{request.amount}, available €{wallet.balance}"
            )

        wallet.balance = wallet.balance - request.amount
        wallet.reserved = wallet.reserved + request.amount

        db.add(Transaction(
            transaction_type=TransactionType.WITHDRAWAL.value,
            amount=request.amount,
            status=TransactionStatus.PENDING.value,
            user_id=request.user_id,
            wallet_id=wallet.id,
            withdrawal_request_id=request.id,
            transaction_metadata={"retry": request.retry_count, "net_amount": str(request.net_amount)}
        ))

        request.status = WithdrawalStatus.PROCESSING.value
        request.processed_at = datetime.now(timezone.utc)
        db.commit()
    except Exception:
        db.rollback()
        raise

    payout_logger.info(f"Retrying withdrawal {withdrawal_id} (previous attempts: {request.retry_count})")
    success = _execute_payout(request, db)
    db.refresh(request)
    return {"success": success, **serialize_withdrawal(request)}


def handle_payout_event(event_type: str, payout: Dict[str, Any], db: Session) -> Dict[str, Any]:
    """Apply payout.paid / payout.failed / payout.canceled to the matching request.

    Never moves a request backwards: events for requests outside the expected
    state are logged and acknowledged.
    """
    payout_id = payout.get("id")
    withdrawal_id = (payout.get("metadata") or {}).get("withdrawal_request_id")

    request = None
    if payout_id:
        request = db.query(WithdrawalRequest).filter(WithdrawalRequest.stripe_payout_id == payout_id).first()
    if request is None and withdrawal_id:
        try:
            request = db.query(WithdrawalRequest).filter(WithdrawalRequest.id == int(withdrawal_id)).first()
        except (TypeError, ValueError):
            request = None
    if request is None:
        payout_logger.info(f"{event_type} for unknown payout {payout_id}, ignoring")
        return {"status": "ignored", "reason": "unknown payout"}

    if event_type == "payout.paid":
        if request.status != WithdrawalStatus.COMPLETED.value:
            payout_logger.error(
                f"Payout {payout_id} paid but withdrawal {request.id} is {request.status}; needs manual review"
            )
            return {"status": "ignored", "reason": f"withdrawal is {request.status}"}
        if request.payout_confirmed_at is None:
            request.payout_confirmed_at = datetime.now(timezone.utc)
            db.commit()
        return {"status": "applied", "withdrawal_id": request.id}

    reason = payout.get("failure_message") or payout.get("failure_code") or event_type
    if request.status != WithdrawalStatus.PROCESSING.value:
        payout_logger.error(
            f"{event_type} for payout {payout_id} but withdrawal {request.id} is {request.status}; "
            f"needs manual review ({reason})"
        )
        return {"status": "ignored", "reason": f"withdrawal is {request.status}"}

    fail_withdrawal(request.id, f"Payout {event_type.split('.')[-1]}: {reason}", db)
    return {"status": "applied", "withdrawal_id": request.id}


def serialize_withdrawal(request: WithdrawalRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "user_id": request.user_id,
        "amount": str(request.amount),
        "fee": str(request.fee),
        "net_amount": str(request.net_amount),
        "status": request.status,
        "bank_name": request.bank_name,
        "iban_last4": request.iban[-4:] if request.iban else None,
        "retry_count": request.retry_count,
        "failure_reason": request.failure_reason,
        "stripe_payout_id": request.stripe_payout_id,
        "created_at": request.created_at.isoformat() if request.created_at else None,
        "processed_at": request.processed_at.isoformat() if request.processed_at else None,
        "completed_at": request.completed_at.isoformat() if request.completed_at else None,
        "payout_confirmed_at": request.payout_confirmed_at.isoformat() if request.payout_confirmed_at else None,
    }


def list_withdrawals(user_id: int, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    requests = (
        db.query(WithdrawalRequest)
        .filter(WithdrawalRequest.user_id == user_id)
        .order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_withdrawal(r) for r in requests]
