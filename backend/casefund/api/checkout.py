"""Checkout API routes"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from casefund.core.errors import LedgerError, http_error
from casefund.core.security import require_auth
from casefund.db.session import get_db
from casefund.schemas.ledger import CheckoutRequest
from casefund.services.checkout_service import create_checkout

router = APIRouter(prefix="/api/checkout", tags=["checkout"])
logger = logging.getLogger(__name__)


@router.post("/sessions")
def create_checkout_session_endpoint(
    request_data: CheckoutRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Start a deposit, case donation or platform donation checkout"""
    try:
        return create_checkout(
            user_id=user_id,
            intent=request_data.intent,
            amount=request_data.amount,
            case_id=request_data.case_id,
            success_url=request_data.success_url,
            cancel_url=request_data.cancel_url,
            db=db
        )
    except LedgerError as e:
        raise http_error(e)
