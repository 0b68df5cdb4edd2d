"""PlatformRevenue model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String

from casefund.models.base import Base


class PlatformRevenue(Base):
    """Recognized fee income and direct platform donations"""
    __tablename__ = "platform_revenue"

    id = Column(Integer, primary_key=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_type = Column(String(32), nullable=False, index=True)
    reference_id = Column(String(255), nullable=True, index=True)
    revenue_metadata = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
