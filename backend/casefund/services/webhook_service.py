"""Webhook service - turn verified processor events into ledger mutations exactly once"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as MetadataValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from casefund.core.config import CLOSED_CASE_STATUSES, settings
from casefund.core.errors import (
    LedgerError, NotFoundError, PersistenceError, RetryLimitExceededError, ValidationError
)
from casefund.core.metrics import (
    ledger_credits_counter, open_webhook_failures_gauge, webhook_events_counter,
    webhook_failures_counter, webhook_retries_counter
)
from casefund.core.otel import ledger_span
from casefund.models.case import Case
from casefund.models.platform_revenue import PlatformRevenue
from casefund.models.transaction import Transaction, TransactionStatus, TransactionType
from casefund.models.webhook_failure import WebhookFailure
from casefund.schemas.metadata import (
    CaseDonationMetadata, PlatformDonationMetadata, WalletDepositMetadata,
    has_ledger_metadata, parse_metadata
)
from casefund.services import stripe_service
from casefund.services.fee_policy import FeeKind, calculate_fee, from_cents
from casefund.services.wallet_service import find_transaction_by_ref, lock_wallet
from casefund.services.withdrawal_service import PAYOUT_EVENTS, handle_payout_event

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")

PAYMENT_EVENTS = ("checkout.session.completed", "payment_intent.succeeded")

# Outcomes after which the event needs no further attention
SETTLED_OUTCOMES = ("applied", "duplicate", "ignored")


def _payment_ref(event_type: str, obj: Dict[str, Any]) -> Optional[str]:
    """Idempotency key shared by both events of one payment: the payment intent id"""
    if event_type == "checkout.session.completed":
        payment_intent = obj.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return payment_intent or obj.get("id")
    return obj.get("id")


def _event_amount(event_type: str, obj: Dict[str, Any]) -> Optional[Decimal]:
    cents = obj.get("amount_total") if event_type == "checkout.session.completed" else obj.get("amount_received")
    return from_cents(cents) if cents is not None else None


def _verify_amounts(metadata, event_type: str, obj: Dict[str, Any]):
    """Metadata must agree with the fee policy and with what the processor actually charged"""
    if isinstance(metadata, CaseDonationMetadata):
        kind = FeeKind.CASE_DONATION
    elif isinstance(metadata, PlatformDonationMetadata):
        kind = FeeKind.PLATFORM_DONATION
    else:
        kind = FeeKind.DEPOSIT

    expected = calculate_fee(metadata.amount, kind)
    if expected.platform_fee != metadata.platform_fee or expected.net_amount != metadata.net_amount:
        raise ValidationError(
            f"Fee mismatch: metadata fee={metadata.platform_fee} net={metadata.net_amount}, "
            f"expected fee={expected.platform_fee} net={expected.net_amount}"
        )

    charged = _event_amount(event_type, obj)
    if charged is not None and charged != metadata.amount:
        raise ValidationError(f"Amount mismatch: charged {charged}, metadata says {metadata.amount}")


def _apply_deposit(metadata: WalletDepositMetadata, ref: str, event_id: str, db: Session):
    wallet = lock_wallet(metadata.user_id, db)
    balance_before = wallet.balance
    wallet.balance = balance_before + metadata.amount

    db.add(Transaction(
        transaction_type=TransactionType.DEPOSIT.value,
        amount=metadata.amount,
        status=TransactionStatus.COMPLETED.value,
        external_ref=ref,
        user_id=metadata.user_id,
        wallet_id=wallet.id,
        transaction_metadata={
            "event_id": event_id,
            "balance_before": str(balance_before),
            "balance_after": str(wallet.balance),
        }
    ))


def _apply_case_donation(metadata: CaseDonationMetadata, ref: str, event_id: str, db: Session):
    case = db.query(Case).filter(Case.id == metadata.case_id).with_for_update().first()
    if not case:
        raise ValidationError(f"Case {metadata.case_id} not found")
    if case.status in CLOSED_CASE_STATUSES:
        # Payment is already captured; hold it in escrow and flag it
        webhook_logger.warning(f"Donation {ref} received for {case.status} case {case.id}")

    case.current_escrow = (case.current_escrow or Decimal("0.00")) + metadata.net_amount

    db.add(Transaction(
        transaction_type=TransactionType.DONATION.value,
        amount=metadata.net_amount,
        status=TransactionStatus.COMPLETED.value,
        external_ref=ref,
        user_id=metadata.user_id,
        case_id=case.id,
        transaction_metadata={
            "event_id": event_id,
            "gross_amount": str(metadata.amount),
            "platform_fee": str(metadata.platform_fee),
        }
    ))
    if metadata.platform_fee > 0:
        db.add(Transaction(
            transaction_type=TransactionType.PLATFORM_FEE.value,
            amount=metadata.platform_fee,
            status=TransactionStatus.COMPLETED.value,
            external_ref=f"{ref}:fee",
            user_id=metadata.user_id,
            case_id=case.id,
            transaction_metadata={"event_id": event_id, "source": "case_donation"}
        ))


def _apply_platform_donation(metadata: PlatformDonationMetadata, ref: str, event_id: str, db: Session):
    db.add(Transaction(
        transaction_type=TransactionType.PLATFORM_DONATION.value,
        amount=metadata.amount,
        status=TransactionStatus.COMPLETED.value,
        external_ref=ref,
        user_id=metadata.user_id,
        transaction_metadata={"event_id": event_id}
    ))
    db.add(PlatformRevenue(
        amount=metadata.amount,
        transaction_type=TransactionType.PLATFORM_DONATION.value,
        reference_id=ref,
        revenue_metadata={"event_id": event_id, "user_id": metadata.user_id}
    ))


def apply_payment(event_id: str, event_type: str, obj: Dict[str, Any], db: Session) -> Dict[str, Any]:
    """Apply one completed payment to the ledger in a single DB transaction.

    Returns:
        {"status": "applied" | "duplicate" | "ignored", ...}

    Raises:
        ValidationError: Metadata cannot be applied (redelivery will not help)
        SQLAlchemyError: Database failure, caller records the event for replay
    """
    raw_metadata = obj.get("metadata") or {}
    if not has_ledger_metadata(raw_metadata):
        return {"status": "ignored", "reason": "no ledger metadata"}

    if event_type == "checkout.session.completed" and obj.get("payment_status") not in (None, "paid"):
        return {"status": "ignored", "reason": f"payment_status={obj.get('payment_status')}"}

    ref = _payment_ref(event_type, obj)
    if not ref:
        raise ValidationError("Event carries no payment reference")

    try:
        metadata = parse_metadata(raw_metadata)
    except MetadataValidationError as e:
        raise ValidationError(f"Invalid payment metadata: {e.errors()[0]['msg']} ({e.error_count()} errors)")
    _verify_amounts(metadata, event_type, obj)

    if find_transaction_by_ref(ref, db):
        webhook_logger.info(f"Payment {ref} already applied, skipping event {event_id}")
        return {"status": "duplicate", "reference": ref}

    try:
        if isinstance(metadata, CaseDonationMetadata):
            _apply_case_donation(metadata, ref, event_id, db)
        elif isinstance(metadata, PlatformDonationMetadata):
            _apply_platform_donation(metadata, ref, event_id, db)
        else:
            _apply_deposit(metadata, ref, event_id, db)
        db.commit()
    except IntegrityError:
        db.rollback()
        # Lost the race against a concurrent delivery of the same payment
        if find_transaction_by_ref(ref, db):
            webhook_logger.info(f"Payment {ref} applied concurrently, event {event_id} is a duplicate")
            return {"status": "duplicate", "reference": ref}
        raise

    ledger_credits_counter.labels(transaction_type=metadata.type).inc()
    webhook_logger.info(
        f"Applied {metadata.type} {ref} from event {event_id}: "
        f"user={metadata.user_id}, amount={metadata.amount}, fee={metadata.platform_fee}"
    )
    return {"status": "applied", "reference": ref, "type": metadata.type}


def dispatch_event(event: Dict[str, Any], db: Session) -> Dict[str, Any]:
    """Route a verified event to its handler. Shared by live deliveries and retries."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    with ledger_span("webhook", event_id=event.get("id"), event_type=event_type) as span:
        if event_type in PAYMENT_EVENTS:
            result = apply_payment(event.get("id"), event_type, obj, db)
        elif event_type in PAYOUT_EVENTS:
            result = handle_payout_event(event_type, obj, db)
        else:
            result = {"status": "ignored", "reason": f"unhandled event type {event_type}"}
        span.set_attribute("ledger.outcome", result["status"])
    return result


def _refresh_open_failures_gauge(db: Session):
    try:
        open_webhook_failures_gauge.set(
            db.query(WebhookFailure).filter(WebhookFailure.resolved_at.is_(None)).count()
        )
    except SQLAlchemyError as e:
        logger.warning(f"Could not count open webhook failures: {e}")


def record_failure(event: Dict[str, Any], reason: str, db: Session) -> WebhookFailure:
    """Persist (or refresh) the failure row for an event. One row per event id."""
    event_id = event.get("id") or "unknown"
    now = datetime.now(timezone.utc)

    failure = db.query(WebhookFailure).filter(WebhookFailure.stripe_event_id == event_id).first()
    if failure:
        failure.failure_reason = reason
        failure.last_attempt_at = now
        failure.resolved_at = None
        failure.resolved_by = None
    else:
        failure = WebhookFailure(
            stripe_event_id=event_id,
            event_type=event.get("type") or "unknown",
            payload=event,
            failure_reason=reason,
            retry_count=0,
            last_attempt_at=now,
        )
        db.add(failure)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        failure = db.query(WebhookFailure).filter(WebhookFailure.stripe_event_id == event_id).one()
        failure.failure_reason = reason
        failure.last_attempt_at = now
        db.commit()

    webhook_failures_counter.labels(event_type=failure.event_type).inc()
    _refresh_open_failures_gauge(db)
    webhook_logger.error(f"Recorded webhook failure {failure.id} for event {event_id}: {reason}")
    return failure


def resolve_failure(event_id: str, resolved_by: str, db: Session) -> bool:
    """Mark the open failure row for an event resolved, if there is one"""
    failure = (
        db.query(WebhookFailure)
        .filter(WebhookFailure.stripe_event_id == event_id, WebhookFailure.resolved_at.is_(None))
        .first()
    )
    if not failure:
        return False

    failure.resolved_at = datetime.now(timezone.utc)
    failure.resolved_by = resolved_by
    db.commit()
    _refresh_open_failures_gauge(db)
    webhook_logger.info(f"Webhook failure {failure.id} for event {event_id} resolved by {resolved_by}")
    return True


def process_stripe_webhook(payload: bytes, sig_header: Optional[str], db: Session) -> Dict[str, Any]:
    """Process a Stripe webhook delivery.

    The event is durably recorded before returning: either its ledger effect
    is committed, or a WebhookFailure row holds it for replay.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session

    Returns:
        Dict with status information

    Raises:
        SignatureError: Event could not be authenticated
        PersistenceError: Database failed while applying; Stripe should redeliver
    """
    event = stripe_service.verify_webhook(payload, sig_header)
    event_id = event.get("id")
    event_type = event.get("type")
    webhook_logger.info(f"Received webhook event {event_id} of type {event_type}")

    try:
        result = dispatch_event(event, db)
    except ValidationError as e:
        db.rollback()
        webhook_events_counter.labels(event_type=event_type, status="rejected").inc()
        record_failure(event, e.message, db)
        return {"status": "rejected", "event_id": event_id, "reason": e.message}
    except SQLAlchemyError as e:
        db.rollback()
        webhook_events_counter.labels(event_type=event_type, status="error").inc()
        logger.error(f"Database error applying webhook {event_id}: {e}", exc_info=True)
        try:
            record_failure(event, f"{type(e).__name__}: {e}", db)
        except SQLAlchemyError as record_error:
            db.rollback()
            logger.critical(f"Could not record failure for webhook {event_id}: {record_error}")
        raise PersistenceError(f"Could not apply event {event_id}") from e
    except Exception as e:
        db.rollback()
        webhook_events_counter.labels(event_type=event_type, status="error").inc()
        logger.error(f"Unexpected error applying webhook {event_id}: {e}", exc_info=True)
        record_failure(event, f"{type(e).__name__}: {e}", db)
        raise

    if result["status"] in ("applied", "duplicate"):
        resolve_failure(event_id, "redelivery", db)

    webhook_events_counter.labels(event_type=event_type, status=result["status"]).inc()
    return {"event_id": event_id, **result}


def _mark_attempt_failed(failure_id: int, reason: str, db: Session):
    failure = db.query(WebhookFailure).filter(WebhookFailure.id == failure_id).first()
    if failure:
        failure.failure_reason = reason
        failure.last_attempt_at = datetime.now(timezone.utc)
        db.commit()


def retry_webhook(failure_id: int, db: Session, force: bool = False, resolved_by: str = "operator") -> Dict[str, Any]:
    """Re-run dispatch for a recorded failure.

    The retry counter is committed before the attempt, and the attempt goes
    through the same idempotency guard as a live delivery, so a retry racing
    an organic redelivery cannot apply the payment twice.

    Raises:
        NotFoundError: No such failure
        RetryLimitExceededError: Cap reached and force not set
    """
    failure = db.query(WebhookFailure).filter(WebhookFailure.id == failure_id).first()
    if not failure:
        raise NotFoundError(f"Webhook failure {failure_id} not found")

    max_retries = settings.WEBHOOK_MAX_RETRIES
    if failure.resolved_at is not None:
        return {"success": True, "retry_count": failure.retry_count, "can_retry": False, "status": "already_resolved"}

    if failure.retry_count >= max_retries and not force:
        raise RetryLimitExceededError(
            f"Webhook failure {failure_id} reached {max_retries} retries; manual intervention required"
        )

    failure.retry_count += 1
    failure.last_attempt_at = datetime.now(timezone.utc)
    db.commit()

    retry_count = failure.retry_count
    event = failure.payload
    event_id = failure.stripe_event_id
    can_retry = retry_count < max_retries

    try:
        result = dispatch_event(event, db)
    except ValidationError as e:
        db.rollback()
        _mark_attempt_failed(failure_id, e.message, db)
        webhook_retries_counter.labels(status="rejected").inc()
        return {"success": False, "retry_count": retry_count, "can_retry": can_retry, "status": "rejected", "error": e.message}
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Retry {retry_count} of webhook failure {failure_id} failed: {e}", exc_info=True)
        try:
            _mark_attempt_failed(failure_id, f"{type(e).__name__}: {e}", db)
        except SQLAlchemyError:
            db.rollback()
        webhook_retries_counter.labels(status="error").inc()
        return {"success": False, "retry_count": retry_count, "can_retry": can_retry, "status": "error", "error": str(e)}

    resolve_failure(event_id, resolved_by, db)
    webhook_retries_counter.labels(status="success").inc()
    return {"success": True, "retry_count": retry_count, "can_retry": False, "status": result["status"]}


def retry_open_failures(db: Session, limit: int = 100) -> Dict[str, int]:
    """Automatic sweep: retry every open failure still under the retry cap"""
    failure_ids = [
        row.id for row in (
            db.query(WebhookFailure.id)
            .filter(
                WebhookFailure.resolved_at.is_(None),
                WebhookFailure.retry_count < settings.WEBHOOK_MAX_RETRIES
            )
            .order_by(WebhookFailure.created_at.asc())
            .limit(limit)
            .all()
        )
    ]

    results = {"retried": 0, "resolved": 0, "failed": 0}
    for failure_id in failure_ids:
        try:
            outcome = retry_webhook(failure_id, db, resolved_by="retry")
        except LedgerError as e:
            logger.warning(f"Skipping webhook failure {failure_id}: {e.message}")
            continue
        results["retried"] += 1
        if outcome["success"]:
            results["resolved"] += 1
        else:
            results["failed"] += 1

    if failure_ids:
        logger.info(f"Webhook retry sweep: {results}")
    return results


def list_webhook_failures(db: Session, include_resolved: bool = False, limit: int = 100) -> List[Dict[str, Any]]:
    query = db.query(WebhookFailure)
    if not include_resolved:
        query = query.filter(WebhookFailure.resolved_at.is_(None))
    failures = query.order_by(WebhookFailure.created_at.desc()).limit(limit).all()
    _refresh_open_failures_gauge(db)

    return [
        {
            "id": f.id,
            "stripe_event_id": f.stripe_event_id,
            "event_type": f.event_type,
            "failure_reason": f.failure_reason,
            "retry_count": f.retry_count,
            "can_retry": f.resolved_at is None and f.retry_count < settings.WEBHOOK_MAX_RETRIES,
            "last_attempt_at": f.last_attempt_at.isoformat() if f.last_attempt_at else None,
            "resolved_at": f.resolved_at.isoformat() if f.resolved_at else None,
            "resolved_by": f.resolved_by,
            "created_at": f.created_at.isoformat() if f.created_at else None,
        }
        for f in failures
    ]
