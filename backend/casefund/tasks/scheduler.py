"""Background scheduler tasks for payouts, fee settlement, webhook replay and reconciliation"""
import asyncio
import logging
from typing import Callable, Dict

from casefund.core.config import settings
from casefund.core.errors import JobLockedError
from casefund.core.metrics import batch_runs_counter
from casefund.db import redis as redis_store
from casefund.db.session import session_scope
from casefund.services.reconciliation_service import reconcile_accounts
from casefund.services.settlement_service import run_fee_settlement
from casefund.services.webhook_service import retry_open_failures
from casefund.services.withdrawal_service import process_pending_withdrawals

logger = logging.getLogger(__name__)

WITHDRAWAL_JOB = "withdrawal_batch"


def run_withdrawal_batch() -> Dict[str, int]:
    """One pass of the payout batch, guarded so only one worker pays out at a time"""
    token = redis_store.acquire_job_lock(WITHDRAWAL_JOB)
    if not token:
        logger.info("Withdrawal batch already running elsewhere, skipping")
        return {"processed": 0, "failed": 0, "skipped": 0}

    try:
        with session_scope() as db:
            return process_pending_withdrawals(db)
    finally:
        redis_store.release_job_lock(WITHDRAWAL_JOB, token)


def run_settlement() -> str:
    with session_scope() as db:
        try:
            return run_fee_settlement(db).status
        except JobLockedError:
            logger.info("Fee settlement already running elsewhere, skipping")
            return "locked"


def run_webhook_retry_sweep() -> Dict[str, int]:
    with session_scope() as db:
        return retry_open_failures(db)


def run_reconciliation() -> Dict:
    with session_scope() as db:
        return reconcile_accounts(db)


async def _periodic(job_name: str, interval: int, job: Callable):
    """Run a blocking job every `interval` seconds in a worker thread; errors never stop the loop"""
    while True:
        try:
            await asyncio.sleep(interval)
            result = await asyncio.to_thread(job)
            batch_runs_counter.labels(job=job_name, status="success").inc()
            logger.debug(f"{job_name} finished: {result}")
        except asyncio.CancelledError:
            logger.info(f"{job_name} task cancelled")
            raise
        except Exception as e:
            batch_runs_counter.labels(job=job_name, status="error").inc()
            logger.error(f"Error in {job_name} task: {e}", exc_info=True)


async def withdrawal_scheduler_task():
    await _periodic(WITHDRAWAL_JOB, settings.WITHDRAWAL_BATCH_INTERVAL, run_withdrawal_batch)


async def settlement_scheduler_task():
    await _periodic("fee_settlement_loop", settings.SETTLEMENT_INTERVAL, run_settlement)


async def webhook_retry_scheduler_task():
    await _periodic("webhook_retry", settings.WEBHOOK_RETRY_INTERVAL, run_webhook_retry_sweep)


async def reconciliation_scheduler_task():
    await _periodic("reconciliation", settings.RECONCILIATION_INTERVAL, run_reconciliation)


def start_scheduler_tasks():
    """Create all background loops on the running event loop"""
    return [
        asyncio.create_task(withdrawal_scheduler_task()),
        asyncio.create_task(settlement_scheduler_task()),
        asyncio.create_task(webhook_retry_scheduler_task()),
        asyncio.create_task(reconciliation_scheduler_task()),
    ]
