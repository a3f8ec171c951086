# botcast/models/bot.py
from sqlalchemy import Column, String, Boolean
from botcast.models.base import BaseModel


class Bot(BaseModel):
    """One Telegram bot per tenant"""
    __tablename__ = "bots"

    tenant_id = Column(String(100), unique=True, index=True, nullable=False)
    username = Column(String(100), nullable=True)
    token = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<Bot {self.tenant_id} @{self.username}>"
