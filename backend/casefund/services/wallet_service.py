"""Wallet service - wallet lookup, row locking and history"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casefund.models.transaction import Transaction
from casefund.models.wallet import Wallet
from casefund.models.withdrawal_request import RESERVING_STATUSES, WithdrawalRequest

logger = logging.getLogger(__name__)


def get_wallet(user_id: int, db: Session) -> Optional[Wallet]:
    return db.query(Wallet).filter(Wallet.user_id == user_id).first()


def get_or_create_wallet(user_id: int, db: Session) -> Wallet:
    """Get the user's wallet, creating an empty one on first use.

    Two requests may race to create the same wallet; the loser's insert hits
    the unique constraint on user_id inside a savepoint and reads the winner's row.
    """
    wallet = get_wallet(user_id, db)
    if wallet:
        return wallet

    try:
        with db.begin_nested():
            wallet = Wallet(user_id=user_id, balance=Decimal("0.00"), reserved=Decimal("0.00"))
            db.add(wallet)
        logger.info(f"Created wallet for user {user_id}")
    except IntegrityError:
        wallet = db.query(Wallet).filter(Wallet.user_id == user_id).one()

    return wallet


def lock_wallet(user_id: int, db: Session) -> Wallet:
    """SELECT ... FOR UPDATE on the user's wallet row, creating it if missing.

    The lock is held until the caller commits or rolls back.
    """
    wallet = (
        db.query(Wallet)
        .filter(Wallet.user_id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if wallet:
        return wallet

    get_or_create_wallet(user_id, db)
    return (
        db.query(Wallet)
        .filter(Wallet.user_id == user_id)
        .with_for_update()
        .populate_existing()
        .one()
    )


def get_wallet_summary(user_id: int, db: Session) -> Dict:
    wallet = get_or_create_wallet(user_id, db)
    db.commit()
    return {
        "user_id": user_id,
        "balance": str(wallet.balance),
        "reserved": str(wallet.reserved),
        "available": str(wallet.available),
        "updated_at": wallet.updated_at.isoformat() if wallet.updated_at else None,
    }


def get_transactions(user_id: int, db: Session, limit: int = 50) -> List[Dict]:
    """Ledger history for the wallet owner, newest first"""
    transactions = (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_transaction(t) for t in transactions]


def serialize_transaction(transaction: Transaction) -> Dict:
    return {
        "id": transaction.id,
        "transaction_type": transaction.transaction_type,
        "amount": str(transaction.amount),
        "status": transaction.status,
        "external_ref": transaction.external_ref,
        "case_id": transaction.case_id,
        "withdrawal_request_id": transaction.withdrawal_request_id,
        "metadata": transaction.transaction_metadata or {},
        "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
    }


def find_transaction_by_ref(external_ref: str, db: Session) -> Optional[Transaction]:
    return db.query(Transaction).filter(Transaction.external_ref == external_ref).first()


def open_withdrawal_total(user_id: int, db: Session) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(WithdrawalRequest.amount), 0))
        .filter(
            WithdrawalRequest.user_id == user_id,
            WithdrawalRequest.status.in_(RESERVING_STATUSES)
        )
        .scalar()
    )
    return Decimal(str(total)).quantize(Decimal("0.01"))


def reserved_matches_requests(user_id: int, db: Session) -> bool:
    """wallet.reserved must equal the sum of the owner's pending/processing withdrawals"""
    wallet = get_wallet(user_id, db)
    reserved = wallet.reserved if wallet else Decimal("0.00")
    expected = open_withdrawal_total(user_id, db)
    if Decimal(reserved) != expected:
        logger.error(f"Reservation mismatch for user {user_id}: reserved={reserved}, open withdrawals={expected}")
        return False
    return True
