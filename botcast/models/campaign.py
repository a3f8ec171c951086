# botcast/models/campaign.py
"""Shot / downsell definitions and their A/B variants"""
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, JSON, DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from botcast.models.base import BaseModel


class CampaignKind:
    SHOT = "shot"
    DOWNSELL = "downsell"

    ALL = (SHOT, DOWNSELL)


class CampaignStatus:
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    CANCELED = "canceled"


class Campaign(BaseModel):
    __tablename__ = "campaigns"

    kind = Column(String(20), index=True, nullable=False, default=CampaignKind.SHOT)
    name = Column(String(255), nullable=True)

    # Audience rule: all_started | pix_generated
    audience = Column(String(50), nullable=False, default="all_started")
    recency_days = Column(Integer, nullable=True)

    # Content
    text = Column(Text, nullable=True)
    parse_mode = Column(String(20), nullable=True, default="HTML")
    media_url = Column(String(1000), nullable=True)
    media_type = Column(String(20), nullable=True)

    # Offer (downsells, plan buttons)
    title = Column(String(255), nullable=True)
    price_cents = Column(Integer, nullable=True)
    button_text = Column(String(255), nullable=True)
    intro_text = Column(Text, nullable=True)
    extra_plans = Column(JSON, nullable=True, default=list)

    # Shots: now | scheduled
    send_mode = Column(String(20), nullable=False, default="now")
    scheduled_at = Column(DateTime(timezone=True), nullable=True)

    # Downsells: after_start | after_pix
    trigger = Column(String(30), nullable=True)
    delay_minutes = Column(Integer, nullable=True, default=0)

    # Gating
    window_start_hour = Column(Integer, nullable=True)
    window_end_hour = Column(Integer, nullable=True)
    timezone = Column(String(64), nullable=True)
    daily_cap = Column(Integer, nullable=True)

    ab_enabled = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT)

    variants = relationship(
        "CampaignVariant",
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="CampaignVariant.key",
    )

    @property
    def is_canceled(self) -> bool:
        return not self.is_active or self.status == CampaignStatus.CANCELED

    def __repr__(self):
        return f"<Campaign {self.id} {self.kind} '{self.name}'>"


class CampaignVariant(BaseModel):
    __tablename__ = "campaign_variants"
    __table_args__ = (
        UniqueConstraint('campaign_id', 'key', name='uq_variant_campaign_key'),
    )

    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), index=True, nullable=False)
    key = Column(String(10), nullable=False)
    weight = Column(Integer, nullable=False, default=1)

    # Content overrides (None = keep campaign value)
    title = Column(String(255), nullable=True)
    price_cents = Column(Integer, nullable=True)
    text = Column(Text, nullable=True)
    media_url = Column(String(1000), nullable=True)
    media_type = Column(String(20), nullable=True)

    campaign = relationship("Campaign", back_populates="variants")

    def __repr__(self):
        return f"<CampaignVariant {self.campaign_id}:{self.key} w={self.weight}>"
