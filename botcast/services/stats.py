# botcast/services/stats.py
"""Aggregated queue counts for operators. Raw provider errors only appear truncated."""
from typing import Any, Dict, List, Optional

from sqlalchemy import func, literal_column
from sqlalchemy.orm import Session

from botcast.models.queue import JobStatus, QueueJob
from botcast.services.scheduling import as_utc

ERROR_SAMPLE_LENGTH = 200


def _empty_counts() -> Dict[str, Any]:
    return {"queued": 0, "processing": 0, "sent": 0, "skipped": 0, "error": 0, "total": 0}


_STATUS_KEYS = {
    JobStatus.PENDING: "queued",
    JobStatus.PROCESSING: "processing",
    JobStatus.SENT: "sent",
    JobStatus.SKIPPED: "skipped",
    JobStatus.ERROR: "error",
}


class QueueStats:

    def __init__(self, db: Session):
        self.db = db

    def _counts(self, *filters) -> Dict[str, Any]:
        rows = (
            self.db.query(QueueJob.status, func.count(QueueJob.id))
            .filter(*filters)
            .group_by(QueueJob.status)
            .all()
        )
        counts = _empty_counts()
        for status, count in rows:
            key = _STATUS_KEYS.get(status)
            if key:
                counts[key] += count
            counts["total"] += count
        return counts

    def campaign_stats(self, campaign_id: int) -> Dict[str, Any]:
        counts = self._counts(QueueJob.campaign_id == campaign_id)
        next_due = self.db.query(func.min(QueueJob.due_at)).filter(
            QueueJob.campaign_id == campaign_id,
            QueueJob.status == JobStatus.PENDING,
        ).scalar()
        counts["next_due"] = as_utc(next_due).isoformat() if next_due else None
        return counts

    def queue_overview(self, tenant_id: str) -> Dict[str, Dict[str, Any]]:
        """Counts per queue type for one tenant."""
        overview = {}
        queue_types = [
            row[0] for row in
            self.db.query(QueueJob.queue_type).filter(QueueJob.tenant_id == tenant_id).distinct().all()
        ]
        for queue_type in sorted(queue_types):
            overview[queue_type] = self._counts(
                QueueJob.tenant_id == tenant_id,
                QueueJob.queue_type == queue_type,
            )
        return overview

    def top_errors(self, tenant_id: str, campaign_id: Optional[int] = None, limit: int = 10) -> List[Dict[str, Any]]:
        sample = func.substr(QueueJob.last_error, literal_column("1"), literal_column(str(ERROR_SAMPLE_LENGTH)))
        query = self.db.query(sample.label("error"), func.count(QueueJob.id).label("count")).filter(
            QueueJob.tenant_id == tenant_id,
            QueueJob.status == JobStatus.ERROR,
            QueueJob.last_error.isnot(None),
        )
        if campaign_id is not None:
            query = query.filter(QueueJob.campaign_id == campaign_id)
        rows = query.group_by(sample).order_by(func.count(QueueJob.id).desc()).limit(limit).all()
        return [{"error": row.error, "count": row.count} for row in rows]
