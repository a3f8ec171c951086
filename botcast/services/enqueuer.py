# botcast/services/enqueuer.py
"""
Enqueuer - audience resolution into idempotent queue inserts.

Callers own the transaction: nothing here commits.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from botcast.core.config import ENQUEUE_BATCH_SIZE
from botcast.core.exceptions import StructuralError
from botcast.core.logging_config import get_delivery_logger
from botcast.models.campaign import Campaign, CampaignKind, CampaignStatus
from botcast.services.audience import AudienceSelector
from botcast.services.payments import PaymentsLookup
from botcast.services.queue_repository import QueueRepository
from botcast.services.scheduling import as_utc, compute_due_at, utcnow

log = logging.getLogger("botcast.enqueuer")
delivery_log = get_delivery_logger()

TRIGGER_ALIASES = {
    "after_start": "after_start",
    "start": "after_start",
    "bot_start": "after_start",
    "after_pix": "after_pix",
    "pix": "after_pix",
    "pix_created": "after_pix",
}


def normalize_trigger(trigger: Optional[str]) -> Optional[str]:
    if not trigger:
        return None
    return TRIGGER_ALIASES.get(trigger.strip().lower())


@dataclass
class EnqueueResult:
    campaign_id: int
    candidates: int = 0
    inserted: int = 0
    duplicates: int = 0
    already_sent: int = 0

    def to_dict(self):
        return asdict(self)


@dataclass
class TriggerEnqueueResult:
    """Outcome of one downsell trigger event across matching campaigns."""
    matched: int = 0
    enqueued: List[int] = field(default_factory=list)
    skipped_paid: int = 0
    skipped_sent: List[int] = field(default_factory=list)
    duplicates: List[int] = field(default_factory=list)


class Enqueuer:

    def __init__(
        self,
        db: Session,
        repo: Optional[QueueRepository] = None,
        audience: Optional[AudienceSelector] = None,
        payments: Optional[PaymentsLookup] = None,
        batch_size: int = ENQUEUE_BATCH_SIZE,
        clock=utcnow,
    ):
        self.db = db
        self._clock = clock
        self.repo = repo or QueueRepository(db, clock=clock)
        self.audience = audience or AudienceSelector(db, clock=clock)
        self.payments = payments or PaymentsLookup(db)
        self.batch_size = max(1, batch_size)

    def _due_at(self, campaign: Campaign, now: datetime) -> datetime:
        if campaign.kind == CampaignKind.DOWNSELL:
            return compute_due_at(campaign.delay_minutes, now)
        if campaign.send_mode == "scheduled":
            if campaign.scheduled_at is None:
                raise StructuralError("scheduled_at_missing", f"campaign {campaign.id} is scheduled without a time")
            return as_utc(campaign.scheduled_at)
        return now

    # ────────────────────────────────────────────
    # Campaign-wide enqueue
    # ────────────────────────────────────────────
    def enqueue_recipients(self, campaign_id: int) -> EnqueueResult:
        """
        Resolve the campaign audience and queue it.

        Safe to repeat: pairs already queued are ignored by the unique
        constraint and recipients with a ledger row are filtered out first.
        """
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise StructuralError("campaign_not_found", f"campaign {campaign_id}")
        if campaign.is_canceled:
            raise StructuralError("campaign_inactive", f"campaign {campaign_id}")

        now = self._clock()
        due_at = self._due_at(campaign, now)
        candidates = self.audience.select(campaign.tenant_id, campaign.audience, campaign.recency_days)

        result = EnqueueResult(campaign_id=campaign.id, candidates=len(candidates))
        already_sent = self.repo.sent_recipients(campaign.id, candidates)
        eligible = [r for r in candidates if r not in already_sent]
        result.already_sent = len(already_sent)

        for start in range(0, len(eligible), self.batch_size):
            chunk = eligible[start:start + self.batch_size]
            result.inserted += self.repo.enqueue_batch(campaign.id, campaign.tenant_id, campaign.kind, chunk, due_at)

        result.duplicates = result.candidates - result.inserted

        if campaign.kind == CampaignKind.SHOT:
            campaign.status = CampaignStatus.QUEUED
        self.db.flush()

        delivery_log.info(
            f"📢 Enqueued campaign {campaign.id} ({campaign.kind}): "
            f"cand={result.candidates} ins={result.inserted} dup={result.duplicates} "
            f"already_sent={result.already_sent} due={due_at.isoformat()}"
        )
        return result

    # ────────────────────────────────────────────
    # Downsell triggers
    # ────────────────────────────────────────────
    def enqueue_trigger(
        self,
        tenant_id: str,
        recipient_id: int,
        trigger: str,
        trigger_time: Optional[datetime] = None,
    ) -> TriggerEnqueueResult:
        """Queue every active downsell of the tenant listening to this trigger."""
        result = TriggerEnqueueResult()
        normalized = normalize_trigger(trigger)
        if normalized is None:
            raise StructuralError("unknown_trigger", str(trigger))

        campaigns = self.db.query(Campaign).filter(
            Campaign.tenant_id == tenant_id,
            Campaign.kind == CampaignKind.DOWNSELL,
            Campaign.trigger == normalized,
            Campaign.is_active == True,
        ).order_by(Campaign.id).all()
        campaigns = [c for c in campaigns if not c.is_canceled]
        result.matched = len(campaigns)
        if not campaigns:
            return result

        if self.payments.has_paid(tenant_id, recipient_id):
            result.skipped_paid = len(campaigns)
            log.info(f"⏭️ Trigger {normalized} for {tenant_id}:{recipient_id} skipped, already paid")
            return result

        base_time = as_utc(trigger_time) or self._clock()
        for campaign in campaigns:
            if self.repo.has_sent_record(campaign.id, recipient_id):
                result.skipped_sent.append(campaign.id)
                continue
            due_at = compute_due_at(campaign.delay_minutes, base_time)
            inserted = self.repo.enqueue_batch(campaign.id, tenant_id, campaign.kind, [recipient_id], due_at)
            if inserted:
                result.enqueued.append(campaign.id)
                delivery_log.info(
                    f"📢 Downsell {campaign.id} queued for {tenant_id}:{recipient_id} due={due_at.isoformat()}"
                )
            else:
                result.duplicates.append(campaign.id)
        return result

    # ────────────────────────────────────────────
    # Scheduled shots
    # ────────────────────────────────────────────
    def enqueue_due_scheduled(self, now: Optional[datetime] = None) -> List[EnqueueResult]:
        """Queue scheduled shots whose time has come and mark them queued."""
        now = now or self._clock()
        campaigns = (
            self.db.query(Campaign)
            .filter(
                Campaign.kind == CampaignKind.SHOT,
                Campaign.status == CampaignStatus.SCHEDULED,
                Campaign.is_active == True,
                Campaign.scheduled_at <= now,
            )
            .order_by(Campaign.scheduled_at, Campaign.id)
            .with_for_update(skip_locked=True)
            .all()
        )
        results = []
        for campaign in campaigns:
            results.append(self.enqueue_recipients(campaign.id))
        if results:
            log.info(f"🚀 Enqueued {len(results)} scheduled shots")
        return results

    def trigger(self, campaign_id: int, mode: str, scheduled_at: Optional[datetime] = None):
        """
        `now` enqueues synchronously and returns the EnqueueResult.
        `schedule` stores the time and returns the campaign.
        """
        campaign = self.db.get(Campaign, campaign_id)
        if campaign is None:
            raise StructuralError("campaign_not_found", f"campaign {campaign_id}")
        if campaign.is_canceled:
            raise StructuralError("campaign_inactive", f"campaign {campaign_id}")

        if mode == "now":
            if campaign.kind == CampaignKind.SHOT:
                campaign.send_mode = "now"
            return self.enqueue_recipients(campaign.id)

        if mode == "schedule":
            if scheduled_at is None:
                raise StructuralError("scheduled_at_missing", "mode=schedule requires scheduled_at")
            campaign.send_mode = "scheduled"
            campaign.scheduled_at = as_utc(scheduled_at)
            campaign.status = CampaignStatus.SCHEDULED
            self.db.flush()
            log.info(f"🗓️ Campaign {campaign.id} scheduled for {campaign.scheduled_at.isoformat()}")
            return campaign

        raise StructuralError("invalid_mode", str(mode))
