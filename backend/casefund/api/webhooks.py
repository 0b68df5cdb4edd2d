"""Stripe webhook route"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from casefund.core.errors import LedgerError, http_error
from casefund.db.session import get_db
from casefund.services.webhook_service import process_stripe_webhook

router = APIRouter(prefix="/api/stripe", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    Returns 2xx only once the event is durably recorded; 400 on signature
    failure and 500 when the database is unavailable so Stripe redelivers.
    Ledger work takes row locks and runs in the threadpool, off the event loop.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return await run_in_threadpool(process_stripe_webhook, payload, sig_header, db)
    except LedgerError as e:
        logger.error(f"Webhook delivery not accepted ({e.status_code}): {e.message}")
        raise http_error(e)
