"""AccountReconciliation model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, Numeric, String

from casefund.models.base import Base


class AccountReconciliation(Base):
    """Snapshot of ledger expectation vs processor balance for one account"""
    __tablename__ = "account_reconciliations"

    id = Column(Integer, primary_key=True, index=True)
    account_type = Column(String(32), nullable=False, index=True)  # 'operations' or 'revenue'
    stripe_account_id = Column(String(255), nullable=True)
    expected_balance = Column(Numeric(12, 2), nullable=False)
    available_balance = Column(Numeric(12, 2), nullable=True)
    pending_balance = Column(Numeric(12, 2), nullable=True)
    difference = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
