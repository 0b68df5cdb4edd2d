"""WebhookFailure model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text

from casefund.models.base import Base


class WebhookFailure(Base):
    """A verified processor event whose ledger effect did not apply"""
    __tablename__ = "webhook_failures"

    id = Column(Integer, primary_key=True, index=True)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    failure_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True, index=True)
    resolved_by = Column(String(32), nullable=True)  # 'retry', 'operator', 'redelivery'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None
