# botcast/workers/loop.py
"""
Worker Loop - one per queue type.

Each cycle, under a non-blocking advisory lock:
  reset stuck jobs -> (shots) enqueue due scheduled campaigns ->
  dequeue/dispatch/commit batches until a short batch drains the backlog.

A JobStateError rolls the batch back and the offending job is marked error
from a separate session, since the rolled-back one cannot record it.

Lock calls, the maintenance pass, claiming and commits run in a worker thread
so both loops and the API keep the event loop. Per-job checks and ledger
writes stay on the loop between sends: they share the batch session.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from botcast.core.config import (
    MAX_ATTEMPTS,
    STUCK_TIMEOUT_MINUTES,
    WORKER_BATCH_SIZE,
    WORKER_INTERVAL_SECONDS,
)
from botcast.core.exceptions import JobStateError
from botcast.db.session import SessionLocal, engine
from botcast.models.campaign import CampaignKind
from botcast.services.bot_registry import BotRegistry
from botcast.services.contacts import ContactLedger
from botcast.services.dispatcher import MessageDispatcher, RateGate
from botcast.services.enqueuer import Enqueuer
from botcast.services.outcome import OutcomeRecorder
from botcast.services.queue_repository import QueueRepository
from botcast.services.scheduling import utcnow
from botcast.workers.locks import AdvisoryLock, lock_name

log = logging.getLogger("botcast.worker")


@dataclass
class CycleReport:
    queue_type: str
    acquired: bool = False
    reset: int = 0
    scheduled: int = 0
    batches: int = 0
    processed: int = 0
    aborted_jobs: List[int] = field(default_factory=list)


class WorkerLoop:

    def __init__(
        self,
        queue_type: str,
        session_factory: Callable = SessionLocal,
        lock_factory: Optional[Callable] = None,
        repository_factory: Callable = QueueRepository,
        dispatcher_factory: Optional[Callable] = None,
        enqueuer_factory: Optional[Callable] = None,
        bots: Optional[BotRegistry] = None,
        batch_size: int = WORKER_BATCH_SIZE,
        interval_seconds: float = WORKER_INTERVAL_SECONDS,
        stuck_timeout_minutes: int = STUCK_TIMEOUT_MINUTES,
        max_attempts: int = MAX_ATTEMPTS,
        clock=utcnow,
    ):
        if queue_type not in CampaignKind.ALL:
            raise ValueError(f"Unknown queue type: {queue_type}")
        self.queue_type = queue_type
        self.session_factory = session_factory
        self.lock_factory = lock_factory or (lambda name: AdvisoryLock(engine, name))
        self.repository_factory = repository_factory
        self.dispatcher_factory = dispatcher_factory or self._default_dispatcher
        self.enqueuer_factory = enqueuer_factory or (lambda db, repo: Enqueuer(db, repo=repo, clock=self._clock))
        self.bots = bots
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.stuck_timeout_minutes = stuck_timeout_minutes
        self.max_attempts = max_attempts
        self._clock = clock
        self._rate_gate = RateGate()

    def _default_dispatcher(self, db, repo):
        if self.bots is None:
            self.bots = BotRegistry()
        recorder = OutcomeRecorder(repo, ContactLedger(db, clock=self._clock), max_attempts=self.max_attempts)
        return MessageDispatcher(db, repo, recorder, self.bots, rate_gate=self._rate_gate, clock=self._clock)

    # ────────────────────────────────────────────
    # Cycle
    # ────────────────────────────────────────────
    async def run_cycle(self) -> CycleReport:
        report = CycleReport(queue_type=self.queue_type)
        lock = self.lock_factory(lock_name(self.queue_type))
        if not await asyncio.to_thread(lock.try_acquire):
            log.debug(f"🔒 {self.queue_type} cycle skipped, lock held by another instance")
            return report

        report.acquired = True
        try:
            await asyncio.to_thread(self._maintenance, report)
            while True:
                claimed = await self._process_batch(report)
                if claimed < self.batch_size:
                    break
        finally:
            await asyncio.to_thread(lock.release)

        if report.processed or report.reset or report.scheduled:
            log.info(
                f"🔄 {self.queue_type} cycle: batches={report.batches} processed={report.processed} "
                f"reset={report.reset} scheduled={report.scheduled} aborted={report.aborted_jobs}"
            )
        return report

    def _maintenance(self, report: CycleReport):
        db = self.session_factory()
        try:
            repo = self.repository_factory(db)
            report.reset = repo.reset_stuck_jobs(self.stuck_timeout_minutes, self.max_attempts, self.queue_type)
            if self.queue_type == CampaignKind.SHOT:
                report.scheduled = len(self.enqueuer_factory(db, repo).enqueue_due_scheduled(self._clock()))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _process_batch(self, report: CycleReport) -> int:
        """Claim and dispatch one batch. Returns how many jobs were claimed (0 stops the drain)."""
        db = self.session_factory()
        try:
            repo = self.repository_factory(db)
            jobs = await asyncio.to_thread(repo.dequeue_due_batch, self.batch_size, self.queue_type, self._clock())
            if not jobs:
                await asyncio.to_thread(db.commit)
                return 0

            report.batches += 1
            log.debug(f"📥 Claimed {len(jobs)} {self.queue_type} jobs")
            dispatcher = self.dispatcher_factory(db, repo)
            try:
                await dispatcher.dispatch_batch(jobs)
                await asyncio.to_thread(db.commit)
            except JobStateError as e:
                await asyncio.to_thread(db.rollback)
                log.error(f"❌ Batch rolled back: {e}")
                await asyncio.to_thread(self._mark_failed, e)
                report.aborted_jobs.append(e.job_id)
                return 0

            report.processed += len(jobs)
            return len(jobs)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _mark_failed(self, error: JobStateError):
        if error.job_id is None:
            return
        db = self.session_factory()
        try:
            self.repository_factory(db).force_error(error.job_id, error.message)
            db.commit()
            log.warning(f"⚠️ Job {error.job_id} marked error after batch rollback")
        except Exception as e:
            db.rollback()
            log.error(f"❌ Could not mark job {error.job_id} as error: {e}")
        finally:
            db.close()

    # ────────────────────────────────────────────
    # Forever
    # ────────────────────────────────────────────
    async def run_forever(self, stop_event: asyncio.Event):
        log.info(f"🚀 {self.queue_type} worker started (every {self.interval_seconds}s, batch {self.batch_size})")
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                log.exception(f"❌ {self.queue_type} cycle failed: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        log.info(f"🛑 {self.queue_type} worker stopped")
