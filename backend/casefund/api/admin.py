"""Operator API routes - webhook failures, withdrawal batch, settlement, reconciliation"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from casefund.core.errors import LedgerError, http_error
from casefund.core.security import require_operator
from casefund.db.session import get_db
from casefund.schemas.ledger import WebhookRetryRequest
from casefund.services.reconciliation_service import reconcile_accounts
from casefund.services.settlement_service import run_fee_settlement, serialize_transfer
from casefund.services.webhook_service import list_webhook_failures, retry_webhook
from casefund.services.withdrawal_service import process_pending_withdrawals, retry_withdrawal

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


@router.get("/webhook-failures")
def get_webhook_failures(
    include_resolved: bool = Query(False),
    operator: str = Depends(require_operator),
    db: Session = Depends(get_db)
):
    return {"failures": list_webhook_failures(db, include_resolved=include_resolved)}


@router.post("/webhook-failures/retry")
def retry_webhook_failure(
    request_data: WebhookRetryRequest,
    operator: str = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Re-apply a failed webhook event from its stored payload"""
    try:
        return retry_webhook(request_data.failure_id, db, force=request_data.force)
    except LedgerError as e:
        raise http_error(e)


@router.post("/withdrawals/process")
def process_withdrawals(operator: str = Depends(require_operator), db: Session = Depends(get_db)):
    """Run the withdrawal payout batch now"""
    results = process_pending_withdrawals(db)
    logger.info(f"Withdrawal batch triggered by operator: {results}")
    return results


@router.post("/withdrawals/{withdrawal_id}/retry")
def retry_failed_withdrawal(
    withdrawal_id: int,
    operator: str = Depends(require_operator),
    db: Session = Depends(get_db)
):
    try:
        return retry_withdrawal(withdrawal_id, db)
    except LedgerError as e:
        raise http_error(e)


@router.post("/settlements/run")
def run_settlement(operator: str = Depends(require_operator), db: Session = Depends(get_db)):
    """Sweep unsettled fees into the revenue account now"""
    try:
        transfer = run_fee_settlement(db)
    except LedgerError as e:
        raise http_error(e)
    return serialize_transfer(transfer)


@router.post("/reconciliation/run")
def run_reconciliation(operator: str = Depends(require_operator), db: Session = Depends(get_db)):
    return reconcile_accounts(db)
