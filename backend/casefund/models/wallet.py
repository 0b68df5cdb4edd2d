"""Wallet model"""
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Numeric
from sqlalchemy.orm import relationship

from casefund.models.base import Base


class Wallet(Base):
    """One user's spendable funds"""
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, nullable=False, index=True)

    # Spendable funds
    balance = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    # Funds committed to pending/processing withdrawals
    reserved = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    transactions = relationship("Transaction", back_populates="wallet")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_wallets_reserved_non_negative"),
    )

    @property
    def available(self) -> Decimal:
        return self.balance

    def __repr__(self):
        return f"<Wallet(user_id={self.user_id}, balance={self.balance}, reserved={self.reserved})>"
