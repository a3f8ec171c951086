# botcast/services/queue_repository.py
"""
Queue Repository - durable delivery jobs.

- enqueue with (campaign_id, recipient_id) dedup in one statement
- dequeue with FOR UPDATE SKIP LOCKED
- guarded state transitions (terminal rows are never touched)
- stuck-job sweep for crashed workers
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from botcast.core.config import LAST_ERROR_MAX_LENGTH
from botcast.db.dialect import upsert_insert
from botcast.models.queue import JobStatus, QueueJob, SentRecord
from botcast.services.scheduling import utcnow

log = logging.getLogger("botcast.queue")

_IN_CHUNK = 500
STUCK_TIMEOUT = "stuck_timeout"


def truncate_error(error, limit: int = LAST_ERROR_MAX_LENGTH) -> Optional[str]:
    if error is None:
        return None
    text = str(error)
    return text if len(text) <= limit else text[:limit]


class QueueRepository:
    """All queue_jobs / sent_records access for one session."""

    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self._clock = clock

    # ────────────────────────────────────────────
    # Enqueue
    # ────────────────────────────────────────────
    def enqueue_batch(
        self,
        campaign_id: int,
        tenant_id: str,
        queue_type: str,
        recipients: Iterable[int],
        due_at: datetime,
    ) -> int:
        """Insert pending jobs, silently ignoring pairs already queued. Returns inserted count."""
        unique = list(dict.fromkeys(int(r) for r in recipients))
        if not unique:
            return 0

        now = self._clock()
        rows = [
            {
                "tenant_id": tenant_id,
                "queue_type": queue_type,
                "campaign_id": campaign_id,
                "recipient_id": recipient_id,
                "due_at": due_at,
                "status": JobStatus.PENDING,
                "attempt_count": 0,
                "created_at": now,
                "updated_at": now,
            }
            for recipient_id in unique
        ]
        stmt = upsert_insert(self.db, QueueJob).values(rows).on_conflict_do_nothing(
            index_elements=["campaign_id", "recipient_id"]
        )
        result = self.db.execute(stmt)
        return max(result.rowcount or 0, 0)

    # ────────────────────────────────────────────
    # Dequeue
    # ────────────────────────────────────────────
    def dequeue_due_batch(self, limit: int, queue_type: str, now: Optional[datetime] = None) -> List[QueueJob]:
        """Claim up to `limit` due pending jobs and move them to processing."""
        now = now or self._clock()
        jobs = (
            self.db.query(QueueJob)
            .filter(
                QueueJob.queue_type == queue_type,
                QueueJob.status == JobStatus.PENDING,
                QueueJob.due_at <= now,
            )
            .order_by(QueueJob.due_at, QueueJob.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        for job in jobs:
            job.status = JobStatus.PROCESSING
            job.locked_at = now
            job.updated_at = now
        self.db.flush()
        return jobs

    # ────────────────────────────────────────────
    # State transitions
    # ────────────────────────────────────────────
    def _transition(self, job: QueueJob, values: dict) -> bool:
        values = dict(values, updated_at=self._clock())
        updated = (
            self.db.query(QueueJob)
            .filter(QueueJob.id == job.id, QueueJob.status.notin_(JobStatus.TERMINAL))
            .update(values, synchronize_session=False)
        )
        if updated:
            for key, value in values.items():
                setattr(job, key, value)
        else:
            log.warning(f"⚠️ Job {job.id} already terminal, transition to {values.get('status')} ignored")
        return bool(updated)

    def mark_sent(self, job: QueueJob, message_id: Optional[int] = None) -> bool:
        return self._transition(job, {
            "status": JobStatus.SENT,
            "sent_message_id": message_id,
            "locked_at": None,
            "last_error": None,
        })

    def mark_skipped(self, job: QueueJob, reason: str) -> bool:
        return self._transition(job, {
            "status": JobStatus.SKIPPED,
            "skip_reason": reason,
            "locked_at": None,
        })

    def mark_error(self, job: QueueJob, error) -> bool:
        """Permanent error, no retry."""
        return self._transition(job, {
            "status": JobStatus.ERROR,
            "last_error": truncate_error(error),
            "locked_at": None,
        })

    def mark_error_and_maybe_retry(self, job: QueueJob, error, backoff_seconds: float, max_attempts: int) -> bool:
        """
        Count the failed attempt. Back to pending with a future due_at, or
        permanent error once the attempt ceiling is reached.

        Returns True when the error is final.
        """
        attempts = (job.attempt_count or 0) + 1
        final = attempts >= max_attempts
        values = {
            "attempt_count": attempts,
            "last_error": truncate_error(error),
            "locked_at": None,
        }
        if final:
            values["status"] = JobStatus.ERROR
        else:
            values["status"] = JobStatus.PENDING
            values["due_at"] = self._clock() + timedelta(seconds=backoff_seconds)
        self._transition(job, values)
        return final

    def force_error(self, job_id: int, error) -> bool:
        """Mark a job error by id. Used from a fresh session after a batch rollback."""
        updated = (
            self.db.query(QueueJob)
            .filter(QueueJob.id == job_id, QueueJob.status.notin_((JobStatus.SENT, JobStatus.SKIPPED)))
            .update({
                "status": JobStatus.ERROR,
                "last_error": truncate_error(error),
                "locked_at": None,
                "updated_at": self._clock(),
            }, synchronize_session=False)
        )
        return bool(updated)

    # ────────────────────────────────────────────
    # Crash recovery
    # ────────────────────────────────────────────
    def reset_stuck_jobs(self, timeout_minutes: int, max_attempts: int, queue_type: Optional[str] = None) -> int:
        """Reclaim jobs left in processing longer than the timeout."""
        now = self._clock()
        cutoff = now - timedelta(minutes=timeout_minutes)
        query = self.db.query(QueueJob).filter(
            QueueJob.status == JobStatus.PROCESSING,
            QueueJob.locked_at < cutoff,
        )
        if queue_type:
            query = query.filter(QueueJob.queue_type == queue_type)
        stuck = query.with_for_update(skip_locked=True).all()

        for job in stuck:
            job.attempt_count = (job.attempt_count or 0) + 1
            job.locked_at = None
            job.updated_at = now
            if job.attempt_count >= max_attempts:
                job.status = JobStatus.ERROR
                job.last_error = STUCK_TIMEOUT
                self.insert_sent_record(job, JobStatus.ERROR, reason=STUCK_TIMEOUT)
            else:
                job.status = JobStatus.PENDING
                job.due_at = now
        self.db.flush()

        if stuck:
            log.warning(f"🔄 Reset {len(stuck)} stuck {queue_type or 'queue'} jobs (timeout {timeout_minutes}m)")
        return len(stuck)

    # ────────────────────────────────────────────
    # Sent ledger
    # ────────────────────────────────────────────
    def has_sent_record(self, campaign_id: int, recipient_id: int) -> bool:
        return self.db.query(
            self.db.query(SentRecord.id).filter(
                SentRecord.campaign_id == campaign_id,
                SentRecord.recipient_id == recipient_id,
            ).exists()
        ).scalar()

    def sent_recipients(self, campaign_id: int, recipients: Iterable[int]) -> Set[int]:
        """Subset of `recipients` that already has a ledger row for the campaign."""
        candidates = list(recipients)
        found: Set[int] = set()
        for i in range(0, len(candidates), _IN_CHUNK):
            chunk = candidates[i:i + _IN_CHUNK]
            rows = self.db.query(SentRecord.recipient_id).filter(
                SentRecord.campaign_id == campaign_id,
                SentRecord.recipient_id.in_(chunk),
            ).all()
            found.update(int(r[0]) for r in rows)
        return found

    def insert_sent_record(
        self,
        job: QueueJob,
        status: str,
        reason: Optional[str] = None,
        message_id: Optional[int] = None,
        transaction_ref: Optional[str] = None,
    ) -> bool:
        """Append to the ledger. False when the pair was already recorded."""
        now = self._clock()
        stmt = upsert_insert(self.db, SentRecord).values(
            tenant_id=job.tenant_id,
            campaign_id=job.campaign_id,
            recipient_id=job.recipient_id,
            status=status,
            reason=truncate_error(reason),
            message_id=message_id,
            transaction_ref=transaction_ref,
            sent_at=now,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["campaign_id", "recipient_id"])
        result = self.db.execute(stmt)
        return (result.rowcount or 0) > 0

    def count_sent_between(self, tenant_id: str, recipient_id: int, start: datetime, end: datetime) -> int:
        """Successful deliveries to a recipient within a tenant in [start, end)."""
        return self.db.query(func.count(SentRecord.id)).filter(
            SentRecord.tenant_id == tenant_id,
            SentRecord.recipient_id == recipient_id,
            SentRecord.status == JobStatus.SENT,
            SentRecord.sent_at >= start,
            SentRecord.sent_at < end,
        ).scalar() or 0
