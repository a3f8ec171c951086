# botcast/services/dispatcher.py
"""
Message Dispatcher - turns claimed queue jobs into Telegram calls.

Per job:
1. eligibility checks (ledger, payment, campaign, bot, window, daily cap)
2. A/B content override
3. media first (document fallback for photo/video), then text, then plans
4. outcome handed to the OutcomeRecorder

Jobs run in sub-batches of `concurrency`, paced at `rate_per_second`.
A 429 pauses every dispatch sharing the RateGate.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from botcast.core.config import (
    CAPTION_LIMIT,
    DISPATCH_CONCURRENCY,
    RATE_LIMIT_MAX_PAUSE_SECONDS,
    RATE_PER_SECOND,
    TEXT_LIMIT,
)
from botcast.core.exceptions import JobStateError
from botcast.core.logging_config import job_logger
from botcast.models.campaign import Campaign, CampaignKind
from botcast.models.queue import JobStatus
from botcast.services.chat_client import ChatApiError, ErrorCategory
from botcast.services.message_builder import (
    EffectiveContent,
    MediaKind,
    MessagePlan,
    build_message_plan,
)
from botcast.services.outcome import ALREADY_SENT, DispatchOutcome, OutcomeRecorder
from botcast.services.payments import PaymentsLookup
from botcast.services.queue_repository import QueueRepository
from botcast.services.scheduling import is_within_window, local_day_bounds, local_hour, utcnow
from botcast.services.variants import select_variant

log = logging.getLogger("botcast.dispatcher")

DOCUMENT_FALLBACK_KINDS = (MediaKind.PHOTO, MediaKind.VIDEO)


class RateGate:
    """Loop-wide pause shared by every dispatch after a 429."""

    def __init__(self, sleep=asyncio.sleep, clock=time.monotonic):
        self._sleep = sleep
        self._clock = clock
        self._resume_at = 0.0

    def pause(self, seconds: float):
        self._resume_at = max(self._resume_at, self._clock() + seconds)

    @property
    def paused_for(self) -> float:
        return max(0.0, self._resume_at - self._clock())

    async def wait(self):
        remaining = self.paused_for
        if remaining > 0:
            await self._sleep(remaining)


@dataclass
class BatchSummary:
    sent: int = 0
    skipped: int = 0
    error: int = 0
    retried: int = 0

    def add(self, status: str):
        if status == JobStatus.SENT:
            self.sent += 1
        elif status == JobStatus.SKIPPED:
            self.skipped += 1
        elif status == JobStatus.ERROR:
            self.error += 1
        else:
            self.retried += 1

    def __str__(self):
        return f"sent={self.sent} skipped={self.skipped} error={self.error} retry={self.retried}"


class MessageDispatcher:

    def __init__(
        self,
        db: Session,
        repo: QueueRepository,
        recorder: OutcomeRecorder,
        bots,
        payments: Optional[PaymentsLookup] = None,
        concurrency: int = DISPATCH_CONCURRENCY,
        rate_per_second: float = RATE_PER_SECOND,
        max_pause_seconds: float = RATE_LIMIT_MAX_PAUSE_SECONDS,
        rate_gate: Optional[RateGate] = None,
        sleep=asyncio.sleep,
        clock=utcnow,
        caption_limit: int = CAPTION_LIMIT,
        text_limit: int = TEXT_LIMIT,
    ):
        self.db = db
        self.repo = repo
        self.recorder = recorder
        self.bots = bots
        self.payments = payments or PaymentsLookup(db)
        self.concurrency = max(1, concurrency)
        self.rate_per_second = rate_per_second
        self.max_pause_seconds = max_pause_seconds
        self.rate_gate = rate_gate or RateGate(sleep=sleep)
        self._sleep = sleep
        self._clock = clock
        self.caption_limit = caption_limit
        self.text_limit = text_limit
        self._campaigns: Dict[int, Optional[Campaign]] = {}
        # Sends started but not yet in the ledger, per (tenant_id, recipient_id)
        self._in_flight: Dict[Tuple[str, int], int] = {}
        self._reserved: Dict[int, Tuple[str, int]] = {}

    # ────────────────────────────────────────────
    # Batch
    # ────────────────────────────────────────────
    async def dispatch_batch(self, jobs: List) -> BatchSummary:
        """
        Dispatch claimed jobs with bounded concurrency.

        Per-job failures become outcomes. A JobStateError from any job is
        re-raised once its sub-batch settles so the caller can roll back.
        """
        summary = BatchSummary()
        pacing = self.concurrency / self.rate_per_second if self.rate_per_second > 0 else 0

        for start in range(0, len(jobs), self.concurrency):
            chunk = jobs[start:start + self.concurrency]
            results = await asyncio.gather(*(self.dispatch_job(job) for job in chunk), return_exceptions=True)

            for result in results:
                if isinstance(result, BaseException):
                    raise result
                summary.add(result)

            if start + self.concurrency < len(jobs) and pacing > 0:
                await self._sleep(pacing)

        log.info(f"📊 Batch of {len(jobs)} done: {summary}")
        return summary

    async def dispatch_job(self, job) -> str:
        job_log = job_logger(job)
        try:
            outcome = await self._evaluate_and_send(job, job_log)
        except JobStateError:
            raise
        except SQLAlchemyError as e:
            raise JobStateError(job.id, f"database error during dispatch: {e}") from e
        except Exception as e:
            job_log.exception(f"❌ Unexpected dispatch failure: {e}")
            outcome = DispatchOutcome.transient_error(f"unexpected: {e}")

        try:
            return self.recorder.record(job, outcome, job_log)
        finally:
            self._release(job)

    # ────────────────────────────────────────────
    # Per-job checks
    # ────────────────────────────────────────────
    @staticmethod
    def _recipient_key(job) -> Tuple[str, int]:
        return job.tenant_id, job.recipient_id

    def _reserve(self, job):
        """Count a send before it starts; its ledger row only exists once it is recorded."""
        key = self._recipient_key(job)
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        self._reserved[job.id] = key

    def _release(self, job):
        key = self._reserved.pop(job.id, None)
        if key is None:
            return
        remaining = self._in_flight.get(key, 0) - 1
        if remaining > 0:
            self._in_flight[key] = remaining
        else:
            self._in_flight.pop(key, None)

    def _campaign(self, campaign_id: int) -> Optional[Campaign]:
        if campaign_id not in self._campaigns:
            self._campaigns[campaign_id] = self.db.get(Campaign, campaign_id)
        return self._campaigns[campaign_id]

    async def _evaluate_and_send(self, job, job_log) -> DispatchOutcome:
        if self.repo.has_sent_record(job.campaign_id, job.recipient_id):
            return DispatchOutcome.skipped(ALREADY_SENT)
        if self.payments.has_paid(job.tenant_id, job.recipient_id):
            return DispatchOutcome.skipped("already_paid")

        campaign = self._campaign(job.campaign_id)
        if campaign is None:
            return DispatchOutcome.permanent_error("campaign_not_found")
        if campaign.is_canceled:
            return DispatchOutcome.skipped("campaign_inactive")

        client = self.bots.get_client(self.db, job.tenant_id)
        if client is None:
            return DispatchOutcome.permanent_error("bot_not_found")

        now = self._clock()
        hour = local_hour(now, campaign.timezone)
        if not is_within_window(hour, campaign.window_start_hour, campaign.window_end_hour):
            return DispatchOutcome.skipped("outside_window")

        if campaign.daily_cap and campaign.daily_cap > 0:
            start, end = local_day_bounds(now, campaign.timezone)
            sent_today = self.repo.count_sent_between(job.tenant_id, job.recipient_id, start, end)
            if sent_today + self._in_flight.get(self._recipient_key(job), 0) >= campaign.daily_cap:
                return DispatchOutcome.skipped("daily_cap_reached")

        variant = None
        if campaign.ab_enabled:
            variant = select_variant(job.recipient_id, campaign.variants, salt=str(campaign.id))

        content = EffectiveContent.from_campaign(campaign, variant)
        if not content.has_content:
            return DispatchOutcome.skipped("content_missing")
        if campaign.kind == CampaignKind.DOWNSELL and not (content.price_cents and content.price_cents > 0):
            return DispatchOutcome.skipped("price_missing")

        plan = build_message_plan(content, self.caption_limit, self.text_limit)
        if variant is not None:
            job_log.debug(f"🔀 Variant {variant.key}")

        self._reserve(job)
        try:
            message_id = await self._send_plan(client, job.recipient_id, plan, job_log)
        except ChatApiError as e:
            return self._classify(e, job_log)

        return DispatchOutcome.sent(message_id)

    def _classify(self, error: ChatApiError, job_log) -> DispatchOutcome:
        category = error.category
        if category in ErrorCategory.RECIPIENT_STATE:
            return DispatchOutcome.skipped(category, recipient_state=category)
        if category == ErrorCategory.RATE_LIMITED:
            job_log.warning(f"⚠️ Rate limited twice, deferring (retry_after={error.retry_after})")
            return DispatchOutcome.transient_error(f"rate_limited: {error.description}", retry_after=error.retry_after)
        return DispatchOutcome.transient_error(f"{category}: {error.status} {error.description}")

    # ────────────────────────────────────────────
    # Sending
    # ────────────────────────────────────────────
    async def _call(self, send, job_log):
        """Run one API call behind the rate gate; a 429 pauses everyone and retries once."""
        await self.rate_gate.wait()
        try:
            return await send()
        except ChatApiError as e:
            if e.category != ErrorCategory.RATE_LIMITED:
                raise
            pause = min(self.max_pause_seconds, float(e.retry_after or 1))
            job_log.warning(f"⏸️ Rate limited, pausing dispatch for {pause:.0f}s")
            self.rate_gate.pause(pause)
            await self.rate_gate.wait()
            return await send()

    async def _send_media(self, client, recipient_id: int, plan: MessagePlan, job_log) -> Optional[int]:
        def send_as(kind):
            return lambda: client.send_media(
                recipient_id, kind, plan.media_url, caption=plan.caption, parse_mode=plan.parse_mode
            )

        try:
            return await self._call(send_as(plan.media_kind), job_log)
        except ChatApiError as e:
            if (
                plan.media_kind not in DOCUMENT_FALLBACK_KINDS
                or e.is_recipient_state
                or e.category == ErrorCategory.RATE_LIMITED
            ):
                raise
            job_log.warning(f"⚠️ {plan.media_kind.value} failed ({e.description}), retrying as document")
            return await self._call(send_as(MediaKind.DOCUMENT), job_log)

    async def _send_plan(self, client, recipient_id: int, plan: MessagePlan, job_log) -> Optional[int]:
        last_message_id = None

        if plan.has_media:
            last_message_id = await self._send_media(client, recipient_id, plan, job_log)

        for chunk in plan.text_chunks:
            message_id = await self._call(
                lambda chunk=chunk: client.send_text(
                    recipient_id, chunk, parse_mode=plan.parse_mode, disable_link_preview=True
                ),
                job_log,
            )
            last_message_id = message_id or last_message_id

        if plan.keyboard:
            message_id = await self._call(
                lambda: client.send_text(
                    recipient_id,
                    plan.plans_text,
                    parse_mode=plan.parse_mode,
                    disable_link_preview=True,
                    reply_markup=plan.keyboard,
                ),
                job_log,
            )
            last_message_id = message_id or last_message_id

        return last_message_id
