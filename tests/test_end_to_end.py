"""Audience -> enqueue -> worker cycle -> stats, against the in-memory database."""
import asyncio

from botcast.models.contact import Contact
from botcast.models.events import FunnelEvent
from botcast.models.queue import JobStatus, QueueJob, SentRecord
from botcast.services.contacts import ContactLedger
from botcast.services.dispatcher import MessageDispatcher
from botcast.services.enqueuer import Enqueuer
from botcast.services.outcome import OutcomeRecorder
from botcast.services.queue_repository import QueueRepository
from botcast.services.stats import QueueStats
from botcast.workers.loop import WorkerLoop

from conftest import NOW, TENANT, FakeLock, blocked_error


async def _no_sleep(seconds):
    pass


def test_shot_broadcast_end_to_end(db, bot, bots, chat, make_campaign):
    for recipient_id in (101, 102, 103):
        db.add(FunnelEvent(tenant_id=TENANT, recipient_id=recipient_id, event_name="bot_start", occurred_at=NOW))
    campaign = make_campaign(text="Promo <b>hoje</b>")
    db.add(SentRecord(tenant_id=TENANT, campaign_id=campaign.id, recipient_id=102, status="sent", sent_at=NOW))
    db.commit()
    chat.fail(103, blocked_error())

    enqueued = Enqueuer(db, clock=lambda: NOW).enqueue_recipients(campaign.id)
    db.commit()

    assert enqueued.to_dict() == {
        "campaign_id": campaign.id,
        "candidates": 3,
        "inserted": 2,
        "duplicates": 1,
        "already_sent": 1,
    }

    def dispatcher_factory(session, repo):
        recorder = OutcomeRecorder(repo, ContactLedger(session, clock=lambda: NOW))
        return MessageDispatcher(session, repo, recorder, bots, sleep=_no_sleep, clock=lambda: NOW)

    worker = WorkerLoop(
        "shot",
        lock_factory=lambda name: FakeLock(),
        repository_factory=lambda session: QueueRepository(session, clock=lambda: NOW),
        dispatcher_factory=dispatcher_factory,
        clock=lambda: NOW,
    )
    report = asyncio.run(worker.run_cycle())
    db.expire_all()

    assert report.processed == 2
    assert len(chat.calls_for(101)) == 1
    assert chat.calls_for(102) == []

    jobs = {j.recipient_id: j for j in db.query(QueueJob).filter(QueueJob.campaign_id == campaign.id)}
    assert set(jobs) == {101, 103}
    assert jobs[101].status == JobStatus.SENT
    assert jobs[103].status == JobStatus.SKIPPED
    assert jobs[103].skip_reason == "blocked"

    contact = db.query(Contact).filter(Contact.tenant_id == TENANT, Contact.recipient_id == 103).one()
    assert contact.chat_state == "blocked"
    assert contact.blocked_at is not None

    # 102 had a ledger row before enqueue and was never queued, so it is not a skip (DESIGN.md, "Stats are queue based")
    stats = QueueStats(db).campaign_stats(campaign.id)
    assert (stats["queued"], stats["sent"], stats["skipped"], stats["error"]) == (0, 1, 1, 0)

    ledger = {r.recipient_id: r.status for r in db.query(SentRecord).filter(SentRecord.campaign_id == campaign.id)}
    assert ledger == {101: "sent", 102: "sent", 103: "skipped"}

    # Blocked recipient left the audience, the rest are in the ledger
    again = Enqueuer(db, clock=lambda: NOW).enqueue_recipients(campaign.id)
    db.commit()
    assert again.inserted == 0
    assert again.candidates == 2
