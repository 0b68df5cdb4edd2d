"""Wallet API routes"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from casefund.core.security import require_auth
from casefund.db.session import get_db
from casefund.services.wallet_service import get_transactions, get_wallet_summary

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("")
def get_wallet(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get the current user's balance and reserved funds"""
    return get_wallet_summary(user_id, db)


@router.get("/transactions")
def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    return {"transactions": get_transactions(user_id, db, limit=limit)}
