# botcast/db/base.py
"""Import all models for Alembic"""
from botcast.models.base import Base

from botcast.models.bot import Bot
from botcast.models.campaign import Campaign, CampaignVariant
from botcast.models.contact import Contact
from botcast.models.events import FunnelEvent, PayloadTracking, PaymentTransaction
from botcast.models.queue import QueueJob, SentRecord

__all__ = ["Base"]
