"""Reconciliation service - compare ledger expectations with processor balances"""
import logging
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from casefund.core.config import settings
from casefund.core.errors import ProcessorError
from casefund.core.metrics import reconciliation_diff_gauge
from casefund.models.account_reconciliation import AccountReconciliation
from casefund.models.case import Case
from casefund.models.platform_revenue import PlatformRevenue
from casefund.models.transaction import FEE_TRANSACTION_TYPES, TransactionType
from casefund.models.wallet import Wallet
from casefund.services import stripe_service
from casefund.services.settlement_service import unsettled_fee_total
from casefund.services.wallet_service import reserved_matches_requests

logger = logging.getLogger(__name__)
settlement_logger = logging.getLogger("settlement")


def _total(db: Session, column) -> Decimal:
    return Decimal(str(db.query(func.coalesce(func.sum(column), 0)).scalar())).quantize(Decimal("0.01"))


def expected_operations_balance(db: Session) -> Decimal:
    """Money that should still sit in the operating account.

    Wallet balances, funds reserved for withdrawals, case escrow, fees not yet
    settled and platform donations (which land in the operating account).
    """
    wallets = _total(db, Wallet.balance)
    reserved = _total(db, Wallet.reserved)
    escrow = _total(db, Case.current_escrow)
    fees = unsettled_fee_total(db)
    donations = Decimal(str(
        db.query(func.coalesce(func.sum(PlatformRevenue.amount), 0))
        .filter(PlatformRevenue.transaction_type == TransactionType.PLATFORM_DONATION.value)
        .scalar()
    )).quantize(Decimal("0.01"))
    return wallets + reserved + escrow + fees + donations


def expected_revenue_balance(db: Session) -> Decimal:
    """Fees already transferred to the revenue account"""
    return Decimal(str(
        db.query(func.coalesce(func.sum(PlatformRevenue.amount), 0))
        .filter(PlatformRevenue.transaction_type.in_(FEE_TRANSACTION_TYPES))
        .scalar()
    )).quantize(Decimal("0.01"))


def _reconcile_account(account_type: str, account_id: str, expected: Decimal, db: Session) -> Dict[str, Any]:
    result = {"account_type": account_type, "expected": str(expected), "actual": None, "diff": None}
    if not account_id:
        logger.info(f"No Stripe account configured for {account_type}, skipping processor comparison")
        db.add(AccountReconciliation(account_type=account_type, expected_balance=expected))
        return result

    try:
        available, pending = stripe_service.retrieve_balance(account_id)
    except ProcessorError as e:
        result["error"] = e.message
        db.add(AccountReconciliation(account_type=account_type, stripe_account_id=account_id, expected_balance=expected))
        return result

    actual = available + pending
    diff = actual - expected
    db.add(AccountReconciliation(
        account_type=account_type,
        stripe_account_id=account_id,
        expected_balance=expected,
        available_balance=available,
        pending_balance=pending,
        difference=diff
    ))
    reconciliation_diff_gauge.labels(account_type=account_type).set(float(diff))

    if abs(diff) > settings.RECONCILIATION_ALERT_THRESHOLD:
        settlement_logger.error(f"{account_type.capitalize()} account mismatch: €{diff} (expected {expected}, actual {actual})")

    result.update(actual=str(actual), diff=str(diff))
    return result


def reservation_mismatches(db: Session) -> List[int]:
    """User ids whose wallet.reserved disagrees with their open withdrawal requests"""
    user_ids = [row.user_id for row in db.query(Wallet.user_id).all()]
    return [user_id for user_id in user_ids if not reserved_matches_requests(user_id, db)]


def reconcile_accounts(db: Session) -> Dict[str, Any]:
    results = {
        "operations": _reconcile_account(
            "operations", settings.STRIPE_OPERATIONS_ACCOUNT_ID, expected_operations_balance(db), db
        ),
        "revenue": _reconcile_account(
            "revenue", settings.STRIPE_REVENUE_ACCOUNT_ID, expected_revenue_balance(db), db
        ),
        "reservation_mismatches": reservation_mismatches(db),
    }
    db.commit()

    if results["reservation_mismatches"]:
        settlement_logger.error(f"Wallet reservations out of sync for users {results['reservation_mismatches']}")
    logger.info(f"Reconciliation finished: {results}")
    return results
