# botcast/services/outcome.py
"""
Outcome Recorder - ledger write + queue transition + contact side effect.

The SentRecord insert is the idempotency backstop: when it reports a conflict
the delivery was already recorded by someone else and the job is skipped.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from botcast.core.config import MAX_ATTEMPTS
from botcast.core.exceptions import JobStateError
from botcast.models.contact import ChatState
from botcast.models.queue import JobStatus
from botcast.services.contacts import ContactLedger
from botcast.services.queue_repository import QueueRepository
from botcast.services.scheduling import backoff_seconds

log = logging.getLogger("botcast.outcome")

ALREADY_SENT = "already_sent"


@dataclass
class DispatchOutcome:
    status: str
    reason: Optional[str] = None
    message_id: Optional[int] = None
    retryable: bool = False
    recipient_state: Optional[str] = None
    retry_after: Optional[float] = None
    transaction_ref: Optional[str] = None

    @classmethod
    def sent(cls, message_id: Optional[int] = None, transaction_ref: Optional[str] = None) -> "DispatchOutcome":
        return cls(JobStatus.SENT, message_id=message_id, transaction_ref=transaction_ref)

    @classmethod
    def skipped(cls, reason: str, recipient_state: Optional[str] = None) -> "DispatchOutcome":
        return cls(JobStatus.SKIPPED, reason=reason, recipient_state=recipient_state)

    @classmethod
    def permanent_error(cls, reason: str) -> "DispatchOutcome":
        return cls(JobStatus.ERROR, reason=reason)

    @classmethod
    def transient_error(cls, reason: str, retry_after: Optional[float] = None) -> "DispatchOutcome":
        return cls(JobStatus.ERROR, reason=reason, retryable=True, retry_after=retry_after)


class OutcomeRecorder:

    def __init__(
        self,
        repo: QueueRepository,
        contacts: ContactLedger,
        max_attempts: int = MAX_ATTEMPTS,
        backoff: Callable[[int], float] = backoff_seconds,
    ):
        self.repo = repo
        self.contacts = contacts
        self.max_attempts = max_attempts
        self.backoff = backoff

    def record(self, job, outcome: DispatchOutcome, job_log=None) -> str:
        """
        Persist one outcome and return the job's resulting status
        (sent, skipped, error, or pending when a retry was scheduled).

        Any database failure is raised as JobStateError.
        """
        job_log = job_log or log
        try:
            if outcome.status == JobStatus.SENT:
                return self._record_sent(job, outcome, job_log)
            if outcome.status == JobStatus.SKIPPED:
                return self._record_skipped(job, outcome, job_log)
            if outcome.retryable:
                return self._record_retryable(job, outcome, job_log)
            return self._record_permanent(job, outcome, job_log)
        except SQLAlchemyError as e:
            raise JobStateError(job.id, f"recording {outcome.status} failed: {e}") from e

    def _record_sent(self, job, outcome: DispatchOutcome, job_log) -> str:
        inserted = self.repo.insert_sent_record(
            job,
            JobStatus.SENT,
            message_id=outcome.message_id,
            transaction_ref=outcome.transaction_ref,
        )
        if not inserted:
            self.repo.mark_skipped(job, ALREADY_SENT)
            job_log.info(f"⏭️ Delivered but ledger already had a record, skipped ({ALREADY_SENT})")
            return JobStatus.SKIPPED

        self.repo.mark_sent(job, outcome.message_id)
        job_log.info(f"✅ Sent (message_id={outcome.message_id})")
        return JobStatus.SENT

    def _record_skipped(self, job, outcome: DispatchOutcome, job_log) -> str:
        if outcome.reason != ALREADY_SENT:
            self.repo.insert_sent_record(job, JobStatus.SKIPPED, reason=outcome.reason)

        if outcome.recipient_state == ChatState.BLOCKED:
            self.contacts.mark_blocked(job.tenant_id, job.recipient_id)
        elif outcome.recipient_state == ChatState.DEACTIVATED:
            self.contacts.mark_deactivated(job.tenant_id, job.recipient_id)

        self.repo.mark_skipped(job, outcome.reason)
        job_log.info(f"⏭️ Skipped ({outcome.reason})")
        return JobStatus.SKIPPED

    def _record_retryable(self, job, outcome: DispatchOutcome, job_log) -> str:
        attempt = (job.attempt_count or 0) + 1
        delay = max(self.backoff(attempt), float(outcome.retry_after or 0))
        final = self.repo.mark_error_and_maybe_retry(job, outcome.reason, delay, self.max_attempts)

        if final:
            self.repo.insert_sent_record(job, JobStatus.ERROR, reason=outcome.reason)
            job_log.error(f"❌ Failed permanently after {attempt} attempts: {outcome.reason}")
            return JobStatus.ERROR

        job_log.warning(f"⚠️ Transient failure, retry in {delay:.0f}s: {outcome.reason}")
        return JobStatus.PENDING

    def _record_permanent(self, job, outcome: DispatchOutcome, job_log) -> str:
        self.repo.insert_sent_record(job, JobStatus.ERROR, reason=outcome.reason)
        self.repo.mark_error(job, outcome.reason)
        job_log.error(f"❌ Permanent error: {outcome.reason}")
        return JobStatus.ERROR
