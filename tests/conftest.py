import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Must be set before botcast.core.config is imported
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["WORKERS_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret"

from datetime import datetime, timezone

import pytest

from botcast.db.base import Base
from botcast.db.session import SessionLocal, engine
from botcast.models.bot import Bot
from botcast.models.campaign import Campaign
from botcast.services.chat_client import ChatApiError
from botcast.services.queue_repository import QueueRepository

TENANT = "t1"
NOW = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)


class FakeChatClient:
    """Records every call; scripted failures are raised in order per (recipient, method)."""

    def __init__(self):
        self.calls = []
        self._failures = {}
        self._next_id = 1000

    def fail(self, recipient_id, *errors, method=None):
        self._failures.setdefault((recipient_id, method), []).extend(errors)

    def _maybe_fail(self, recipient_id, method):
        for key in ((recipient_id, method), (recipient_id, None)):
            queue = self._failures.get(key)
            if queue:
                raise queue.pop(0)

    def _message_id(self):
        self._next_id += 1
        return self._next_id

    async def send_text(self, recipient_id, text, parse_mode=None, disable_link_preview=True, reply_markup=None):
        self.calls.append({
            "method": "text",
            "recipient_id": recipient_id,
            "text": text,
            "parse_mode": parse_mode,
            "reply_markup": reply_markup,
        })
        self._maybe_fail(recipient_id, "text")
        return self._message_id()

    async def send_media(self, recipient_id, kind, media, caption=None, parse_mode=None, reply_markup=None):
        self.calls.append({
            "method": kind.value,
            "recipient_id": recipient_id,
            "media": media,
            "caption": caption,
        })
        self._maybe_fail(recipient_id, kind.value)
        return self._message_id()

    def calls_for(self, recipient_id):
        return [c for c in self.calls if c["recipient_id"] == recipient_id]


class FakeBots:
    def __init__(self, client, tenants=(TENANT,)):
        self.client = client
        self.tenants = set(tenants)

    def get_client(self, db, tenant_id):
        return self.client if tenant_id in self.tenants else None


class FakeLock:
    def __init__(self, acquire=True):
        self.acquire = acquire
        self.attempts = 0
        self.released = 0

    def try_acquire(self):
        self.attempts += 1
        return self.acquire

    def release(self):
        self.released += 1


def blocked_error():
    return ChatApiError(403, "Forbidden: bot was blocked by the user", method="sendMessage")


def deactivated_error():
    return ChatApiError(403, "Forbidden: user is deactivated", method="sendMessage")


def rate_limit_error(retry_after=5):
    return ChatApiError(429, "Too Many Requests: retry after 5", retry_after=retry_after, method="sendMessage")


def server_error():
    return ChatApiError(502, "Bad Gateway", method="sendMessage")


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def chat():
    return FakeChatClient()


@pytest.fixture
def bots(chat):
    return FakeBots(chat)


@pytest.fixture
def make_campaign(db):
    def _make(**overrides):
        values = {
            "tenant_id": TENANT,
            "kind": "shot",
            "name": "Promo",
            "audience": "all_started",
            "text": "Hello there",
            "send_mode": "now",
            "status": "draft",
            "is_active": True,
        }
        values.update(overrides)
        campaign = Campaign(**values)
        db.add(campaign)
        db.commit()
        return campaign
    return _make


@pytest.fixture
def bot(db):
    record = Bot(tenant_id=TENANT, username="promo_bot", token="123:ABC", is_active=True)
    db.add(record)
    db.commit()
    return record


@pytest.fixture
def claim_jobs(db):
    """Queue recipients for a campaign and claim them as a worker would."""
    def _claim(campaign, recipients, due_at=NOW):
        repo = QueueRepository(db, clock=lambda: NOW)
        repo.enqueue_batch(campaign.id, campaign.tenant_id, campaign.kind, recipients, due_at)
        db.commit()
        jobs = repo.dequeue_due_batch(len(recipients), campaign.kind, NOW)
        db.commit()
        return jobs
    return _claim
