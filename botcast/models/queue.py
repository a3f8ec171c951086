# botcast/models/queue.py
"""Durable delivery queue and the append-only sent ledger"""
from sqlalchemy import (
    Column, String, Text, Integer, BigInteger, DateTime, Index, UniqueConstraint
)
from botcast.models.base import BaseModel, utcnow


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    SKIPPED = "skipped"
    ERROR = "error"

    TERMINAL = (SENT, SKIPPED, ERROR)


class QueueJob(BaseModel):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        UniqueConstraint('campaign_id', 'recipient_id', name='uq_queue_campaign_recipient'),
        Index('ix_queue_due', 'queue_type', 'status', 'due_at'),
    )

    queue_type = Column(String(20), nullable=False)
    campaign_id = Column(Integer, index=True, nullable=False)
    recipient_id = Column(BigInteger, nullable=False)
    due_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    skip_reason = Column(String(100), nullable=True)
    sent_message_id = Column(BigInteger, nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<QueueJob {self.id} c={self.campaign_id} r={self.recipient_id} {self.status}>"


class SentRecord(BaseModel):
    """Terminal outcome per (campaign, recipient). Never updated."""
    __tablename__ = "sent_records"
    __table_args__ = (
        UniqueConstraint('campaign_id', 'recipient_id', name='uq_sent_campaign_recipient'),
        Index('ix_sent_tenant_recipient', 'tenant_id', 'recipient_id', 'sent_at'),
    )

    campaign_id = Column(Integer, index=True, nullable=False)
    recipient_id = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.SENT)
    reason = Column(String(500), nullable=True)
    message_id = Column(BigInteger, nullable=True)
    transaction_ref = Column(String(255), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<SentRecord c={self.campaign_id} r={self.recipient_id} {self.status}>"
