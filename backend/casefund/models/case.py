"""Case model (ledger-side view of a case)"""
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Numeric, String

from casefund.models.base import Base


class Case(Base):
    """The fields of a case the ledger reads and the escrow pool it owns"""
    __tablename__ = "cases"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=True, index=True)
    title = Column(String(255), nullable=False)
    status = Column(String(32), default="open", nullable=False)
    # Escrow pool: running total of net donations held for this case
    current_escrow = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        CheckConstraint("current_escrow >= 0", name="ck_cases_escrow_non_negative"),
    )
