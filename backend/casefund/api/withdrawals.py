"""Withdrawal API routes"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from casefund.core.errors import LedgerError, http_error
from casefund.core.security import require_auth
from casefund.db.session import get_db
from casefund.schemas.ledger import WithdrawalCreateRequest
from casefund.services.withdrawal_service import list_withdrawals, request_withdrawal, serialize_withdrawal

router = APIRouter(prefix="/api/withdrawals", tags=["withdrawals"])
logger = logging.getLogger(__name__)


@router.post("", status_code=201)
def create_withdrawal(
    request_data: WithdrawalCreateRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Request a payout; funds are reserved immediately and paid out by the batch job"""
    try:
        request = request_withdrawal(
            user_id=user_id,
            amount=request_data.amount,
            bank_details=request_data.bank_details.model_dump(),
            db=db
        )
    except LedgerError as e:
        raise http_error(e)

    return {"withdrawal_id": request.id, "withdrawal": serialize_withdrawal(request)}


@router.get("")
def get_withdrawals(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"withdrawals": list_withdrawals(user_id, db)}
