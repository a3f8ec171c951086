# botcast/services/audience.py
"""
Audience Selector - which recipients a campaign targets.

Funnel events are attributed to a tenant through an OR-join: the event's own
tenant_id, or a payload_tracking row of the tenant matching either the event's
recipient_id or its payload_id. Blocked / deactivated contacts are removed;
recipients without a contact row are kept.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import and_, exists, func, or_, select, union
from sqlalchemy.orm import Session

from botcast.models.contact import ChatState, Contact
from botcast.models.events import FunnelEvent, PaymentTransaction, PayloadTracking
from botcast.services.scheduling import utcnow

log = logging.getLogger("botcast.audience")

ALL_STARTED = "all_started"
PIX_GENERATED = "pix_generated"

AUDIENCE_ALIASES = {
    "all_started": ALL_STARTED,
    "started": ALL_STARTED,
    "pix_generated": PIX_GENERATED,
    "pix_created": PIX_GENERATED,
    "purchase_intent": PIX_GENERATED,
}

START_EVENTS = ("bot_start",)
PURCHASE_INTENT_EVENTS = ("pix_created", "checkout_started", "purchase")
PAYMENT_STATUSES = ("created", "paid")


def normalize_audience(rule: Optional[str]) -> Optional[str]:
    if not rule:
        return None
    return AUDIENCE_ALIASES.get(rule.strip().lower())


class AudienceSelector:

    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self._clock = clock

    def _event_recipients(self, tenant_id: str, event_names, cutoff):
        fe = FunnelEvent.__table__
        pt = PayloadTracking.__table__
        recipient = func.coalesce(fe.c.recipient_id, pt.c.recipient_id)

        joined = fe.outerjoin(
            pt,
            and_(
                pt.c.tenant_id == tenant_id,
                or_(
                    and_(fe.c.recipient_id.isnot(None), pt.c.recipient_id == fe.c.recipient_id),
                    and_(fe.c.payload_id.isnot(None), pt.c.payload_id == fe.c.payload_id),
                ),
            ),
        )
        query = (
            select(recipient.label("recipient_id"))
            .select_from(joined)
            .where(
                fe.c.event_name.in_(event_names),
                or_(fe.c.tenant_id == tenant_id, pt.c.id.isnot(None)),
                recipient.isnot(None),
            )
        )
        if cutoff is not None:
            query = query.where(fe.c.occurred_at >= cutoff)
        return query

    def _contact_recipients(self, tenant_id: str, cutoff):
        c = Contact.__table__
        query = select(c.c.recipient_id.label("recipient_id")).where(c.c.tenant_id == tenant_id)
        if cutoff is not None:
            query = query.where(func.coalesce(c.c.last_interaction_at, c.c.created_at) >= cutoff)
        return query

    def _payment_recipients(self, tenant_id: str, cutoff):
        tx = PaymentTransaction.__table__
        query = select(tx.c.recipient_id.label("recipient_id")).where(
            tx.c.tenant_id == tenant_id,
            tx.c.status.in_(PAYMENT_STATUSES),
        )
        if cutoff is not None:
            query = query.where(tx.c.created_at >= cutoff)
        return query

    def _build_query(self, tenant_id: Optional[str], rule: Optional[str], recency_days: Optional[int]):
        if not tenant_id or not str(tenant_id).strip():
            log.warning("⚠️ Audience requested without tenant id, returning empty audience")
            return None

        audience = normalize_audience(rule)
        if audience is None:
            log.warning(f"⚠️ Unknown audience rule '{rule}' for tenant {tenant_id}, returning empty audience")
            return None

        cutoff = None
        if recency_days is not None and int(recency_days) > 0:
            cutoff = self._clock() - timedelta(days=int(recency_days))

        if audience == ALL_STARTED:
            parts = [
                self._contact_recipients(tenant_id, cutoff),
                self._event_recipients(tenant_id, START_EVENTS, cutoff),
            ]
        else:
            parts = [
                self._event_recipients(tenant_id, PURCHASE_INTENT_EVENTS, cutoff),
                self._payment_recipients(tenant_id, cutoff),
            ]

        candidates = union(*parts).subquery("candidates")
        excluded = exists().where(
            Contact.tenant_id == tenant_id,
            Contact.recipient_id == candidates.c.recipient_id,
            Contact.chat_state.in_(ChatState.EXCLUDED),
        )
        return (
            select(candidates.c.recipient_id)
            .where(candidates.c.recipient_id.isnot(None), ~excluded)
            .distinct()
        )

    def select(self, tenant_id: Optional[str], rule: Optional[str], recency_days: Optional[int] = None) -> List[int]:
        """Deduplicated, order-insensitive recipient ids."""
        query = self._build_query(tenant_id, rule, recency_days)
        if query is None:
            return []
        recipients = [int(r) for r in self.db.execute(query).scalars().all()]
        log.debug(f"📊 Audience {rule} for {tenant_id}: {len(recipients)} recipients")
        return recipients

    def estimate(self, tenant_id: Optional[str], rule: Optional[str], recency_days: Optional[int] = None) -> int:
        query = self._build_query(tenant_id, rule, recency_days)
        if query is None:
            return 0
        return self.db.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
