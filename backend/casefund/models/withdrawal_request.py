"""WithdrawalRequest model"""
import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from casefund.models.base import Base


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses whose amount is held in wallet.reserved
RESERVING_STATUSES = (WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value)


class WithdrawalRequest(Base):
    """A user's request to cash out wallet funds"""
    __tablename__ = "withdrawal_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    fee = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(16), default=WithdrawalStatus.PENDING.value, nullable=False)

    # Bank details
    account_holder = Column(String(255), nullable=False)
    iban = Column(String(64), nullable=False)
    bank_name = Column(String(255), nullable=True)

    retry_count = Column(Integer, default=0, nullable=False)
    failure_reason = Column(Text, nullable=True)
    stripe_payout_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    payout_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    transactions = relationship("Transaction", back_populates="withdrawal_request")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawal_requests_amount_positive"),
        CheckConstraint("fee >= 0", name="ck_withdrawal_requests_fee_non_negative"),
        Index('ix_withdrawal_requests_user_created', 'user_id', 'created_at'),
        Index('ix_withdrawal_requests_status_created', 'status', 'created_at'),
    )

    def __repr__(self):
        return f"<WithdrawalRequest(id={self.id}, user_id={self.user_id}, amount={self.amount}, status={self.status})>"
