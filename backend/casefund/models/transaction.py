"""Transaction model"""
import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, JSON, Numeric, String
from sqlalchemy.orm import relationship

from casefund.models.base import Base


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    DONATION = "donation"
    PLATFORM_DONATION = "platform_donation"
    WITHDRAWAL = "withdrawal"
    PLATFORM_FEE = "platform_fee"
    WITHDRAWAL_FEE = "withdrawal_fee"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


FEE_TRANSACTION_TYPES = (TransactionType.PLATFORM_FEE.value, TransactionType.WITHDRAWAL_FEE.value)


class Transaction(Base):
    """Immutable ledger entry. Only status moves; corrections are new rows."""
    __tablename__ = "ledger_transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_type = Column(String(32), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(16), default=TransactionStatus.PENDING.value, nullable=False)

    # Idempotency key for processor-originated entries (payment intent / session id)
    external_ref = Column(String(255), unique=True, nullable=True)

    user_id = Column(Integer, nullable=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id", ondelete="RESTRICT"), nullable=True, index=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="RESTRICT"), nullable=True, index=True)
    withdrawal_request_id = Column(Integer, ForeignKey("withdrawal_requests.id", ondelete="RESTRICT"), nullable=True, index=True)
    # Set when a settlement run claims this fee row; NULL means not yet settled
    internal_transfer_id = Column(Integer, ForeignKey("internal_transfers.id", ondelete="RESTRICT"), nullable=True, index=True)

    transaction_metadata = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    wallet = relationship("Wallet", back_populates="transactions")
    withdrawal_request = relationship("WithdrawalRequest", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_transactions_amount_positive"),
        Index('ix_ledger_transactions_type_status', 'transaction_type', 'status'),
        Index('ix_ledger_transactions_wallet_created', 'wallet_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, type={self.transaction_type}, amount={self.amount}, status={self.status})>"
