# botcast/models/contact.py
"""Contact ledger: one row per (tenant, recipient)"""
from sqlalchemy import Column, String, BigInteger, DateTime, UniqueConstraint
from botcast.models.base import BaseModel


class ChatState:
    ACTIVE = "active"
    BLOCKED = "blocked"
    DEACTIVATED = "deactivated"

    EXCLUDED = (BLOCKED, DEACTIVATED)


class Contact(BaseModel):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'recipient_id', name='uq_tenant_recipient'),
    )

    recipient_id = Column(BigInteger, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    chat_state = Column(String(20), nullable=False, default=ChatState.ACTIVE)
    last_interaction_at = Column(DateTime(timezone=True), nullable=True)
    blocked_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Contact {self.tenant_id}:{self.recipient_id} {self.chat_state}>"
