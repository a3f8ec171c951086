# botcast/models/events.py
"""Funnel history the audience selector reads from"""
from sqlalchemy import Column, String, Integer, BigInteger, DateTime
from botcast.models.base import BaseModel, utcnow


class FunnelEvent(BaseModel):
    __tablename__ = "funnel_events"

    # Either side may be missing; attribution goes through payload_tracking
    tenant_id = Column(String(100), index=True, nullable=True)
    recipient_id = Column(BigInteger, index=True, nullable=True)
    payload_id = Column(String(100), index=True, nullable=True)
    event_name = Column(String(50), index=True, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<FunnelEvent {self.event_name} r={self.recipient_id} p={self.payload_id}>"


class PayloadTracking(BaseModel):
    __tablename__ = "payload_tracking"

    payload_id = Column(String(100), index=True, nullable=False)
    recipient_id = Column(BigInteger, index=True, nullable=True)


class PaymentTransaction(BaseModel):
    __tablename__ = "payment_transactions"

    recipient_id = Column(BigInteger, index=True, nullable=False)
    status = Column(String(20), index=True, nullable=False, default="created")
    value_cents = Column(Integer, nullable=True)
    external_id = Column(String(255), nullable=True)

    def __repr__(self):
        return f"<PaymentTransaction {self.external_id} {self.status}>"
