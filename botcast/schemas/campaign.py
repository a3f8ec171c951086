# botcast/schemas/campaign.py
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Optional, Literal, Dict, Any
from datetime import datetime


class EnqueueResponse(BaseModel):
    campaign_id: int
    candidates: int = Field(..., description="Recipients resolved by the audience rule")
    inserted: int = Field(..., description="New queue rows")
    duplicates: int = Field(..., description="candidates - inserted")
    already_sent: int = Field(0, description="Candidates filtered because the ledger already has them")


class TriggerRequest(BaseModel):
    mode: Literal["now", "schedule"] = Field("now", description="Enqueue immediately or store a schedule")
    scheduled_at: Optional[datetime] = Field(None, description="Required when mode=schedule")

    @model_validator(mode='after')
    def validate_schedule_time(self):
        """Ensure scheduled_at accompanies mode=schedule"""
        if self.mode == "schedule" and self.scheduled_at is None:
            raise ValueError('scheduled_at is required when mode is "schedule"')
        return self


class TriggerResponse(BaseModel):
    campaign_id: int
    mode: str
    status: str
    scheduled_at: Optional[datetime] = None
    result: Optional[EnqueueResponse] = None


class CampaignStatsResponse(BaseModel):
    campaign_id: int
    queued: int
    processing: int
    sent: int
    skipped: int
    error: int
    total: int
    next_due: Optional[str] = None


class ErrorSample(BaseModel):
    error: Optional[str]
    count: int


class AudienceEstimateResponse(BaseModel):
    audience: str
    recency_days: Optional[int] = None
    count: int


class CampaignStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    kind: str
    name: Optional[str]
    status: str
    is_active: bool
    scheduled_at: Optional[datetime] = None


class DownsellTriggerRequest(BaseModel):
    recipient_id: int = Field(..., gt=0, description="Telegram chat id")
    trigger: str = Field(..., description="after_start | after_pix")
    trigger_time: Optional[datetime] = Field(None, description="Defaults to now")


class DownsellTriggerResponse(BaseModel):
    matched: int
    enqueued: List[int]
    skipped_paid: int
    skipped_sent: List[int]
    duplicates: List[int]


class QueueOverviewResponse(BaseModel):
    queues: Dict[str, Dict[str, Any]]
