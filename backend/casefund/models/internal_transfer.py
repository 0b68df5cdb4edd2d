"""InternalTransfer model"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text

from casefund.models.base import Base


class TransferStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


# Transfers whose claimed fees have not reached the revenue account yet
OPEN_TRANSFER_STATUSES = (TransferStatus.PENDING.value, TransferStatus.FAILED.value)


class InternalTransfer(Base):
    """Audit row for one settlement (operating pool -> revenue pool).

    The fee rows it settles point back at it through
    ledger_transactions.internal_transfer_id, so amount and fee set are fixed
    from the moment the row is written, before the processor is called.
    """
    __tablename__ = "internal_transfers"

    id = Column(Integer, primary_key=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    fee_count = Column(Integer, default=0, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    stripe_transfer_id = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
