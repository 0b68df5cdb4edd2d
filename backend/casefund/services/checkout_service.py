"""Checkout service - create processor checkout sessions for deposits and donations"""
import logging
from decimal import Decimal
from typing import Dict, Optional
from urllib.parse import urlsplit

from sqlalchemy.orm import Session

from casefund.core.config import CLOSED_CASE_STATUSES, settings
from casefund.core.errors import NotFoundError, ProcessorError, ValidationError
from casefund.core.metrics import checkout_sessions_counter
from casefund.models.case import Case
from casefund.schemas.metadata import CaseDonationMetadata, PlatformDonationMetadata, WalletDepositMetadata
from casefund.services import stripe_service
from casefund.services.fee_policy import FeeKind, calculate_fee, quantize, to_cents

logger = logging.getLogger(__name__)

INTENT_FEE_KIND = {
    "wallet_deposit": FeeKind.DEPOSIT,
    "case_donation": FeeKind.CASE_DONATION,
    "platform_donation": FeeKind.PLATFORM_DONATION,
}


def _get_donatable_case(case_id: Optional[int], db: Session) -> Case:
    if case_id is None:
        raise ValidationError("case_id is required for case donations")
    case = db.query(Case).filter(Case.id == case_id).first()
    if not case:
        raise NotFoundError(f"Case {case_id} not found")
    if case.status in CLOSED_CASE_STATUSES:
        raise ValidationError(f"Case {case_id} is {case.status} and no longer accepts donations")
    return case


def _origin(url: str) -> tuple:
    parts = urlsplit(url)
    return parts.scheme.lower(), parts.netloc.lower()


def _redirect_url(url: Optional[str], default: str) -> str:
    """Caller-supplied return URLs must lead back to the frontend origin"""
    if not url:
        return default
    if _origin(url) != _origin(settings.FRONTEND_URL):
        raise ValidationError(f"Redirect URL must start with {settings.FRONTEND_URL}")
    return url


def create_checkout(
    user_id: int,
    intent: str,
    amount: Decimal,
    db: Session,
    case_id: Optional[int] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, str]:
    """Create a checkout session for a deposit, case donation or platform donation.

    Nothing is written to the ledger here; the webhook applies the payment once
    the processor confirms it.

    Returns:
        Dict with 'session_id' and 'checkout_url'

    Raises:
        ValidationError: Amount below minimum, unknown intent, case not donatable,
            redirect URL outside the frontend
        NotFoundError: Case does not exist
        ProcessorError: Stripe call failed after retries
    """
    if intent not in INTENT_FEE_KIND:
        raise ValidationError(f"Unknown checkout intent: {intent}")

    gross = quantize(amount)
    if gross < settings.MIN_CHECKOUT_AMOUNT:
        raise ValidationError(f"Minimum amount is €{settings.MIN_CHECKOUT_AMOUNT}")

    breakdown = calculate_fee(gross, INTENT_FEE_KIND[intent])
    common = dict(
        user_id=user_id,
        amount=breakdown.amount,
        platform_fee=breakdown.platform_fee,
        net_amount=breakdown.net_amount,
    )

    if intent == "case_donation":
        case = _get_donatable_case(case_id, db)
        metadata = CaseDonationMetadata(case_id=case.id, **common)
        product_name = f"Donation to case: {case.title}"
    elif intent == "platform_donation":
        metadata = PlatformDonationMetadata(**common)
        product_name = "Platform support contribution"
    else:
        metadata = WalletDepositMetadata(**common)
        product_name = "Wallet deposit"

    frontend_url = settings.FRONTEND_URL
    success_url = _redirect_url(success_url, f"{frontend_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}")
    cancel_url = _redirect_url(cancel_url, f"{frontend_url}/payment/cancelled")
    try:
        result = stripe_service.create_checkout_session(
            amount_cents=to_cents(breakdown.amount),
            product_name=product_name,
            metadata=metadata.to_stripe(),
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except ProcessorError:
        checkout_sessions_counter.labels(intent=intent, status="failed").inc()
        raise

    checkout_sessions_counter.labels(intent=intent, status="created").inc()
    logger.info(
        f"Created checkout session {result['session_id']} for user {user_id}: "
        f"intent={intent}, amount={breakdown.amount}, fee={breakdown.platform_fee}"
    )
    return result
