"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from casefund.models.base import Base
from casefund.models.case import Case
from casefund.models.wallet import Wallet
from casefund.models.withdrawal_request import WithdrawalRequest, WithdrawalStatus
from casefund.models.transaction import Transaction, TransactionType, TransactionStatus
from casefund.models.platform_revenue import PlatformRevenue
from casefund.models.webhook_failure import WebhookFailure
from casefund.models.internal_transfer import InternalTransfer, TransferStatus
from casefund.models.account_reconciliation import AccountReconciliation

__all__ = [
    "Base", "Case", "Wallet", "WithdrawalRequest", "WithdrawalStatus",
    "Transaction", "TransactionType", "TransactionStatus", "PlatformRevenue",
    "WebhookFailure", "InternalTransfer", "TransferStatus", "AccountReconciliation"
]
