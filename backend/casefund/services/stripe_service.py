"""Stripe service - every call to the payment processor goes through here"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import stripe
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from casefund.core.config import settings
from casefund.core.errors import ProcessorError, SignatureError
from casefund.services.fee_policy import from_cents

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)


def _is_transient(error: Exception) -> bool:
    """Connection problems, rate limits and 5xx are worth retrying; bad requests are not"""
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
        return True
    if isinstance(error, stripe.StripeError):
        status = getattr(error, "http_status", None)
        return status is not None and status >= 500
    return False


def _processor_error(action: str, error: Exception) -> ProcessorError:
    transient = _is_transient(error)
    logger.error(
        f"Stripe {action} failed ({'transient' if transient else 'permanent'}): "
        f"{type(error).__name__}: {error}"
    )
    return ProcessorError(f"Payment processor error during {action}", transient=transient, original_error=error)


def _is_transient_processor_error(error: BaseException) -> bool:
    return isinstance(error, ProcessorError) and error.transient


def _get_stripe_value(obj: Any, key: str, default=None):
    """Read a field from a StripeObject or a plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return getattr(obj, key)
    except AttributeError:
        return default


def _require_configured():
    if not settings.STRIPE_SECRET_KEY:
        logger.error("Stripe secret key not configured.")
        raise ProcessorError("Payment processor not configured")


@retry(
    stop=stop_after_attempt(settings.STRIPE_CHECKOUT_ATTEMPTS),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception(_is_transient_processor_error),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def create_checkout_session(
    amount_cents: int,
    product_name: str,
    metadata: Dict[str, str],
    success_url: str,
    cancel_url: str,
) -> Dict[str, str]:
    """Create a one-off payment Checkout Session.

    Metadata is written to both the session and the payment intent so either
    webhook event can be applied.

    Returns:
        Dict with 'session_id' and 'checkout_url'

    Raises:
        ProcessorError: When Stripe rejects the request or stays unreachable
    """
    _require_configured()

    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": settings.CURRENCY,
                    "product_data": {"name": product_name},
                    "unit_amount": amount_cents,
                },
                "quantity": 1,
            }],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except stripe.StripeError as e:
        raise _processor_error("checkout session creation", e)

    return {"session_id": session.id, "checkout_url": session.url}


def create_payout(
    amount_cents: int,
    account_holder: str,
    iban: str,
    description: str,
    metadata: Dict[str, str],
    idempotency_key: str,
) -> str:
    """Send money from the operating account to a bank account.

    Returns:
        Stripe payout id
    """
    _require_configured()
    ops_account = settings.STRIPE_OPERATIONS_ACCOUNT_ID
    if not ops_account:
        raise ProcessorError("STRIPE_OPERATIONS_ACCOUNT_ID not configured")

    try:
        bank_account = stripe.Account.create_external_account(
            ops_account,
            external_account={
                "object": "bank_account",
                "country": iban[:2].upper(),
                "currency": settings.CURRENCY,
                "account_holder_name": account_holder,
                "account_holder_type": "individual",
                "account_number": iban,
            },
            idempotency_key=f"{idempotency_key}-bank",
        )
        payout = stripe.Payout.create(
            amount=amount_cents,
            currency=settings.CURRENCY,
            method="standard",
            destination=bank_account.id,
            description=description,
            metadata=metadata,
            stripe_account=ops_account,
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as e:
        raise _processor_error("payout", e)

    return payout.id


def create_transfer(
    amount_cents: int,
    description: str,
    metadata: Dict[str, str],
    idempotency_key: str,
    transfer_group: Optional[str] = None,
) -> str:
    """Move settled fees from the operating pool to the revenue account.

    Returns:
        Stripe transfer id
    """
    _require_configured()
    if not settings.STRIPE_REVENUE_ACCOUNT_ID:
        raise ProcessorError("STRIPE_REVENUE_ACCOUNT_ID not configured")

    try:
        transfer = stripe.Transfer.create(
            amount=amount_cents,
            currency=settings.CURRENCY,
            destination=settings.STRIPE_REVENUE_ACCOUNT_ID,
            description=description,
            metadata=metadata,
            transfer_group=transfer_group,
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as e:
        raise _processor_error("transfer", e)

    return transfer.id


def find_transfer(transfer_group: str) -> Optional[str]:
    """Id of a transfer already made for this group, if any.

    Idempotency keys expire after 24 hours, so a settlement retried later
    checks here before sending money again.
    """
    _require_configured()
    try:
        transfers = stripe.Transfer.list(transfer_group=transfer_group, limit=1)
    except stripe.StripeError as e:
        raise _processor_error("transfer lookup", e)

    data = _get_stripe_value(transfers, "data") or []
    return _get_stripe_value(data[0], "id") if data else None


def retrieve_balance(account_id: Optional[str] = None) -> Tuple[Decimal, Decimal]:
    """Available and pending balance of an account, in EUR"""
    _require_configured()
    try:
        if account_id:
            balance = stripe.Balance.retrieve(stripe_account=account_id)
        else:
            balance = stripe.Balance.retrieve()
    except stripe.StripeError as e:
        raise _processor_error("balance retrieval", e)

    def _sum(entries) -> Decimal:
        total = 0
        for entry in entries or []:
            if _get_stripe_value(entry, "currency", settings.CURRENCY) == settings.CURRENCY:
                total += int(_get_stripe_value(entry, "amount", 0))
        return from_cents(total)

    return _sum(_get_stripe_value(balance, "available")), _sum(_get_stripe_value(balance, "pending"))


def verify_webhook(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Authenticate a webhook delivery and return the event as a plain dict

    Raises:
        SignatureError: Missing secret, missing/invalid signature or unparseable payload
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        security_logger.error("Webhook rejected: STRIPE_WEBHOOK_SECRET not configured")
        raise SignatureError("Webhook secret not configured")
    if not sig_header:
        security_logger.warning("Webhook rejected: missing stripe-signature header")
        raise SignatureError("Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        security_logger.warning(f"Webhook rejected: invalid payload: {e}")
        raise SignatureError("Invalid payload")
    except stripe.SignatureVerificationError as e:
        security_logger.warning(f"Webhook rejected: invalid signature: {e}")
        raise SignatureError("Invalid signature")

    try:
        return json.loads(payload)
    except ValueError:
        raise SignatureError("Invalid payload")
