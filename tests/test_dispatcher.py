import asyncio
from datetime import timedelta

import pytest

from botcast.core.exceptions import JobStateError
from botcast.models.campaign import CampaignVariant
from botcast.models.contact import Contact
from botcast.models.events import PaymentTransaction
from botcast.models.queue import JobStatus, QueueJob, SentRecord
from botcast.services.chat_client import ChatApiError
from botcast.services.contacts import ContactLedger
from botcast.services.dispatcher import MessageDispatcher
from botcast.services.outcome import OutcomeRecorder
from botcast.services.queue_repository import QueueRepository
from botcast.services.scheduling import as_utc

from conftest import (
    NOW,
    TENANT,
    FakeBots,
    FakeChatClient,
    blocked_error,
    deactivated_error,
    rate_limit_error,
    server_error,
)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def dispatch(db, bots, sleeps):
    """Run a batch through a dispatcher wired to the fake chat client."""
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    def _dispatch(jobs, **kwargs):
        repo = QueueRepository(db, clock=lambda: NOW)
        recorder = OutcomeRecorder(repo, ContactLedger(db, clock=lambda: NOW), max_attempts=3)
        dispatcher = MessageDispatcher(
            db, repo, recorder, kwargs.pop("bots", bots), sleep=fake_sleep, clock=lambda: NOW, **kwargs
        )
        summary = asyncio.run(dispatcher.dispatch_batch(jobs))
        db.commit()
        db.expire_all()
        return summary
    return _dispatch


def _job(db, job):
    db.expire_all()
    return db.get(QueueJob, job.id)


def _ledger(db, campaign_id, recipient_id):
    return db.query(SentRecord).filter(
        SentRecord.campaign_id == campaign_id,
        SentRecord.recipient_id == recipient_id,
    ).first()


# ────────────────────────────────────────────
# Happy path
# ────────────────────────────────────────────
def test_text_message_is_sent_and_recorded(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign(text="Hello <b>there</b>")
    jobs = claim_jobs(campaign, [101])

    summary = dispatch(jobs)

    assert summary.sent == 1
    job = _job(db, jobs[0])
    assert job.status == JobStatus.SENT
    assert job.sent_message_id is not None
    assert _ledger(db, campaign.id, 101).status == JobStatus.SENT
    assert [c["method"] for c in chat.calls] == ["text"]
    assert chat.calls[0]["parse_mode"] == "HTML"


def test_media_with_short_text_is_one_captioned_call(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign(text="Short", media_url="https://cdn.test/banner.jpg")

    dispatch(claim_jobs(campaign, [101]))

    assert len(chat.calls) == 1
    assert chat.calls[0]["method"] == "photo"
    assert chat.calls[0]["caption"] == "Short"


def test_media_with_long_text_sends_text_after_media(db, bot, chat, make_campaign, claim_jobs, dispatch):
    long_text = "linha longa de texto\n" * 300
    campaign = make_campaign(text=long_text, media_url="https://cdn.test/clip.mp4")

    dispatch(claim_jobs(campaign, [101]))

    methods = [c["method"] for c in chat.calls]
    assert methods[0] == "video"
    assert chat.calls[0]["caption"] is None
    assert methods[1:] and set(methods[1:]) == {"text"}
    assert "".join(c["text"] for c in chat.calls[1:]) == long_text
    assert all(len(c["text"]) <= 4096 for c in chat.calls[1:])


def test_downsell_plans_render_as_trailing_keyboard(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign(kind="downsell", trigger="after_start", title="VIP", price_cents=1990,
                             extra_plans=[{"label": "Anual", "price_cents": 9990}])

    dispatch(claim_jobs(campaign, [101]))

    last = chat.calls[-1]
    rows = last["reply_markup"]["inline_keyboard"]
    assert [row[0]["callback_data"] for row in rows] == [
        f"downsell:{campaign.id}:p0",
        f"downsell:{campaign.id}:p1",
    ]
    assert rows[0][0]["text"] == "VIP - R$ 19,90"


def test_ab_variant_overrides_price(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign(kind="downsell", trigger="after_start", title="Oferta", price_cents=4990, ab_enabled=True)
    db.add(CampaignVariant(tenant_id=TENANT, campaign_id=campaign.id, key="A", weight=1, price_cents=990))
    db.add(CampaignVariant(tenant_id=TENANT, campaign_id=campaign.id, key="B", weight=0, price_cents=100))
    db.commit()

    dispatch(claim_jobs(campaign, [101, 102]))

    keyboards = [c["reply_markup"] for c in chat.calls if c.get("reply_markup")]
    assert len(keyboards) == 2
    assert all(k["inline_keyboard"][0][0]["text"] == "Oferta - R$ 9,90" for k in keyboards)


# ────────────────────────────────────────────
# Per-job checks
# ────────────────────────────────────────────
def test_already_sent_and_already_paid_are_skipped(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101, 102])
    db.add(SentRecord(tenant_id=TENANT, campaign_id=campaign.id, recipient_id=101, status="sent", sent_at=NOW))
    db.add(PaymentTransaction(tenant_id=TENANT, recipient_id=102, status="paid"))
    db.commit()

    summary = dispatch(jobs)

    assert summary.skipped == 2
    assert _job(db, jobs[0]).skip_reason == "already_sent"
    assert _job(db, jobs[1]).skip_reason == "already_paid"
    assert chat.calls == []


def test_canceled_campaign_jobs_are_skipped(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101])
    campaign.is_active = False
    campaign.status = "canceled"
    db.commit()

    dispatch(jobs)

    assert _job(db, jobs[0]).skip_reason == "campaign_inactive"
    assert chat.calls == []


def test_structural_errors_are_permanent(db, chat, make_campaign, claim_jobs, dispatch, bots):
    campaign = make_campaign(tenant_id="no-bot-tenant")
    jobs = claim_jobs(campaign, [101])

    dispatch(jobs)

    job = _job(db, jobs[0])
    assert job.status == JobStatus.ERROR
    assert job.last_error == "bot_not_found"
    assert job.attempt_count == 0
    assert _ledger(db, campaign.id, 101).status == JobStatus.ERROR


def test_missing_campaign_is_permanent_error(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101])
    db.delete(campaign)
    db.commit()

    dispatch(jobs)

    assert _job(db, jobs[0]).last_error == "campaign_not_found"


def test_outside_window_is_skipped(db, bot, chat, make_campaign, claim_jobs, dispatch):
    # NOW is 15:00 UTC
    campaign = make_campaign(window_start_hour=22, window_end_hour=6, timezone="UTC")
    jobs = claim_jobs(campaign, [101])

    dispatch(jobs)

    assert _job(db, jobs[0]).skip_reason == "outside_window"
    assert chat.calls == []


def test_daily_cap_counts_todays_deliveries(db, bot, chat, make_campaign, claim_jobs, dispatch):
    earlier = make_campaign(name="Earlier")
    db.add(SentRecord(tenant_id=TENANT, campaign_id=earlier.id, recipient_id=101, status="sent",
                      sent_at=NOW - timedelta(hours=2)))
    db.commit()
    campaign = make_campaign(daily_cap=1, timezone="UTC")
    jobs = claim_jobs(campaign, [101, 102])

    dispatch(jobs)

    assert _job(db, jobs[0]).skip_reason == "daily_cap_reached"
    assert _job(db, jobs[1]).status == JobStatus.SENT


class YieldingChatClient(FakeChatClient):
    """Hands control back to the event loop mid-send, like a real HTTP call."""

    async def send_text(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().send_text(*args, **kwargs)


def test_daily_cap_holds_for_concurrent_jobs_to_one_recipient(db, bot, make_campaign, claim_jobs, dispatch):
    chat = YieldingChatClient()
    first = make_campaign(name="Morning", daily_cap=1, timezone="UTC")
    second = make_campaign(name="Evening", daily_cap=1, timezone="UTC")
    jobs = claim_jobs(first, [5]) + claim_jobs(second, [5])

    summary = dispatch(jobs, bots=FakeBots(chat))

    assert len(chat.calls_for(5)) == 1
    assert (summary.sent, summary.skipped) == (1, 1)
    sent = db.query(SentRecord).filter(SentRecord.recipient_id == 5, SentRecord.status == "sent").count()
    assert sent == 1
    assert {_job(db, j).skip_reason for j in jobs} == {None, "daily_cap_reached"}


def test_missing_content_and_price(db, bot, chat, make_campaign, claim_jobs, dispatch):
    empty = make_campaign(text="   ", media_url=None)
    no_price = make_campaign(kind="downsell", trigger="after_start", price_cents=None)
    empty_job = claim_jobs(empty, [101])[0]
    price_job = claim_jobs(no_price, [101])[0]

    dispatch([empty_job, price_job])

    assert _job(db, empty_job).skip_reason == "content_missing"
    assert _job(db, price_job).skip_reason == "price_missing"


# ────────────────────────────────────────────
# Provider failures
# ────────────────────────────────────────────
def test_blocked_and_deactivated_update_contact_ledger(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign()
    db.add(Contact(tenant_id=TENANT, recipient_id=102, chat_state="active"))
    db.commit()
    jobs = claim_jobs(campaign, [101, 102])
    chat.fail(101, blocked_error())
    chat.fail(102, deactivated_error())

    summary = dispatch(jobs)

    assert summary.skipped == 2
    assert _job(db, jobs[0]).skip_reason == "blocked"
    assert _job(db, jobs[1]).skip_reason == "deactivated"
    states = {c.recipient_id: c.chat_state for c in db.query(Contact).all()}
    assert states == {101: "blocked", 102: "deactivated"}
    assert ContactLedger(db).is_excluded(TENANT, 101) is True


def test_transient_error_is_retried_later(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101])
    chat.fail(101, server_error())

    summary = dispatch(jobs)

    assert summary.retried == 1
    job = _job(db, jobs[0])
    assert job.status == JobStatus.PENDING
    assert job.attempt_count == 1
    assert "502" in job.last_error
    assert _ledger(db, campaign.id, 101) is None


def test_rate_limit_pauses_then_retries_once(db, bot, chat, make_campaign, claim_jobs, dispatch, sleeps):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101])
    chat.fail(101, rate_limit_error(retry_after=5))

    summary = dispatch(jobs)

    assert summary.sent == 1
    assert len(chat.calls) == 2
    assert sleeps and 4 < sleeps[0] <= 5


def test_second_rate_limit_defers_the_job(db, bot, chat, make_campaign, claim_jobs, dispatch, sleeps):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101])
    chat.fail(101, rate_limit_error(retry_after=120), rate_limit_error(retry_after=120))

    dispatch(jobs, max_pause_seconds=60)

    job = _job(db, jobs[0])
    assert job.status == JobStatus.PENDING
    assert job.last_error.startswith("rate_limited")
    # pause capped, requeue honours retry_after
    assert sleeps[0] <= 60
    assert as_utc(job.due_at) - NOW >= timedelta(seconds=120)


def test_photo_failure_falls_back_to_document(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign(text="Hi", media_url="https://cdn.test/banner.jpg")
    jobs = claim_jobs(campaign, [101])
    chat.fail(101, ChatApiError(400, "Bad Request: wrong type of the web page content"), method="photo")

    dispatch(jobs)

    assert [c["method"] for c in chat.calls] == ["photo", "document"]
    assert chat.calls[1]["caption"] == "Hi"
    assert _job(db, jobs[0]).status == JobStatus.SENT


def test_no_document_fallback_for_blocked_recipient(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign(text="Hi", media_url="https://cdn.test/banner.jpg")
    jobs = claim_jobs(campaign, [101])
    chat.fail(101, blocked_error(), method="photo")

    dispatch(jobs)

    assert [c["method"] for c in chat.calls] == ["photo"]
    assert _job(db, jobs[0]).skip_reason == "blocked"


# ────────────────────────────────────────────
# Batch behaviour
# ────────────────────────────────────────────
def test_sub_batches_are_paced(db, bot, chat, make_campaign, claim_jobs, dispatch, sleeps):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, list(range(1, 26)))

    summary = dispatch(jobs, concurrency=10, rate_per_second=25)

    assert summary.sent == 25
    assert sleeps == [pytest.approx(0.4), pytest.approx(0.4)]


def test_one_failing_job_does_not_abort_the_batch(db, bot, chat, make_campaign, claim_jobs, dispatch):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101, 102, 103])
    chat.fail(102, RuntimeError("socket exploded"))

    summary = dispatch(jobs)

    assert summary.sent == 2
    assert summary.retried == 1
    assert "unexpected" in _job(db, jobs[1]).last_error


def test_state_transition_failure_propagates(db, bot, chat, make_campaign, claim_jobs):
    campaign = make_campaign()
    jobs = claim_jobs(campaign, [101, 102])

    class BrokenRecorder:
        def record(self, job, outcome, job_log=None):
            if job.recipient_id == 102:
                raise JobStateError(job.id, "connection lost")
            return JobStatus.SENT

    repo = QueueRepository(db, clock=lambda: NOW)

    async def no_sleep(seconds):
        pass

    dispatcher = MessageDispatcher(db, repo, BrokenRecorder(), FakeBotsFor(chat), sleep=no_sleep, clock=lambda: NOW)

    with pytest.raises(JobStateError) as exc:
        asyncio.run(dispatcher.dispatch_batch(jobs))
    assert exc.value.job_id == jobs[1].id


class FakeBotsFor:
    def __init__(self, client):
        self.client = client

    def get_client(self, db, tenant_id):
        return self.client
