"""
Base model with common fields for all database models.
Provides consistent structure and helper methods.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware UTC now, used for every timestamp column."""
    return datetime.now(timezone.utc)


class BaseModel(Base):
    """
    Abstract base model with common fields.

    Provides:
    - id: Primary key
    - tenant_id: Multi-tenancy support (one bot per tenant)
    - created_at: Auto timestamp on creation
    - updated_at: Auto timestamp on updates
    """
    __abstract__ = True

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(100), index=True, nullable=False, default="default")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        """Convert model to dictionary for JSON serialization"""
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            result[column.name] = value
        return result
