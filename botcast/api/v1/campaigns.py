# botcast/api/v1/campaigns.py
"""Trigger API for shots and downsell campaigns: enqueue, schedule, cancel, stats."""
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from botcast.api.deps import get_tenant_id_flexible
from botcast.core.exceptions import StructuralError
from botcast.db.session import get_db
from botcast.models.campaign import Campaign, CampaignStatus
from botcast.models.queue import JobStatus, QueueJob, SentRecord
from botcast.schemas.campaign import (
    AudienceEstimateResponse,
    CampaignStateResponse,
    CampaignStatsResponse,
    EnqueueResponse,
    ErrorSample,
    QueueOverviewResponse,
    TriggerRequest,
    TriggerResponse,
)
from botcast.services.audience import AudienceSelector, normalize_audience
from botcast.services.enqueuer import EnqueueResult, Enqueuer
from botcast.services.stats import QueueStats

log = logging.getLogger("botcast.api.campaigns")
router = APIRouter()


def _get_campaign(db: Session, tenant_id: str, campaign_id: int) -> Campaign:
    campaign = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.tenant_id == tenant_id
    ).first()
    if not campaign:
        raise HTTPException(404, "Campaign not found")
    return campaign


# ────────────────────────────────────────────
# Tenant-wide views (declared before /{campaign_id} routes)
# ────────────────────────────────────────────
@router.get("/stats/errors", response_model=List[ErrorSample])
def get_top_errors(
    campaign_id: Optional[int] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Most frequent (truncated) error texts of permanently failed jobs"""
    return QueueStats(db).top_errors(tenant_id, campaign_id=campaign_id, limit=limit)


@router.get("/stats/queues", response_model=QueueOverviewResponse)
def get_queue_overview(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    return {"queues": QueueStats(db).queue_overview(tenant_id)}


@router.get("/audience/estimate", response_model=AudienceEstimateResponse)
def estimate_audience(
    audience: str = Query(..., description="all_started | pix_generated"),
    recency_days: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    if normalize_audience(audience) is None:
        raise HTTPException(400, f"Unknown audience '{audience}'")
    count = AudienceSelector(db).estimate(tenant_id, audience, recency_days)
    return {"audience": normalize_audience(audience), "recency_days": recency_days, "count": count}


# ────────────────────────────────────────────
# Per-campaign actions
# ────────────────────────────────────────────
@router.post("/{campaign_id}/enqueue", response_model=EnqueueResponse)
def enqueue_campaign(
    campaign_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Resolve the audience and queue it. Safe to call repeatedly."""
    _get_campaign(db, tenant_id, campaign_id)
    try:
        result = Enqueuer(db).enqueue_recipients(campaign_id)
        db.commit()
    except StructuralError as e:
        db.rollback()
        log.warning(f"⚠️ Enqueue rejected for campaign {campaign_id}: {e}")
        raise HTTPException(400, e.reason)
    except Exception as e:
        db.rollback()
        log.error(f"❌ Enqueue failed for campaign {campaign_id}: {e}")
        raise

    return result.to_dict()


@router.post("/{campaign_id}/trigger", response_model=TriggerResponse)
def trigger_campaign(
    campaign_id: int,
    request: TriggerRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    campaign = _get_campaign(db, tenant_id, campaign_id)
    try:
        outcome = Enqueuer(db).trigger(campaign_id, request.mode, request.scheduled_at)
        db.commit()
    except StructuralError as e:
        db.rollback()
        log.warning(f"⚠️ Trigger rejected for campaign {campaign_id}: {e}")
        raise HTTPException(400, e.reason)

    log.info(f"🚀 Campaign {campaign_id} triggered mode={request.mode} tenant={tenant_id}")
    return {
        "campaign_id": campaign.id,
        "mode": request.mode,
        "status": campaign.status,
        "scheduled_at": campaign.scheduled_at,
        "result": outcome.to_dict() if isinstance(outcome, EnqueueResult) else None,
    }


@router.post("/{campaign_id}/cancel", response_model=CampaignStateResponse)
def cancel_campaign(
    campaign_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Stop a campaign. Pending jobs are skipped by the worker as campaign_inactive."""
    campaign = _get_campaign(db, tenant_id, campaign_id)
    campaign.is_active = False
    campaign.status = CampaignStatus.CANCELED
    db.commit()
    db.refresh(campaign)
    log.info(f"🛑 Campaign {campaign_id} canceled")
    return campaign


@router.delete("/{campaign_id}")
def delete_campaign(
    campaign_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Delete a campaign that never delivered; otherwise 409 (cancel it instead)."""
    campaign = _get_campaign(db, tenant_id, campaign_id)

    delivered = db.query(SentRecord.id).filter(
        SentRecord.campaign_id == campaign_id,
        SentRecord.status == JobStatus.SENT
    ).first()
    if delivered:
        raise HTTPException(409, "Campaign has successful deliveries; cancel it instead")

    db.query(QueueJob).filter(QueueJob.campaign_id == campaign_id).delete(synchronize_session=False)
    db.query(SentRecord).filter(SentRecord.campaign_id == campaign_id).delete(synchronize_session=False)
    db.delete(campaign)
    db.commit()
    log.info(f"🗑️ Campaign {campaign_id} deleted")
    return {"ok": True}


@router.get("/{campaign_id}/stats", response_model=CampaignStatsResponse)
def get_campaign_stats(
    campaign_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    _get_campaign(db, tenant_id, campaign_id)
    return {"campaign_id": campaign_id, **QueueStats(db).campaign_stats(campaign_id)}
