# botcast/services/contacts.py
"""Contact ledger: recipient-state side effects and exclusion checks"""
import logging

from sqlalchemy.orm import Session

from botcast.db.dialect import upsert_insert
from botcast.models.contact import ChatState, Contact
from botcast.services.scheduling import utcnow

log = logging.getLogger("botcast.contacts")


class ContactLedger:

    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self._clock = clock

    def _set_state(self, tenant_id: str, recipient_id: int, state: str):
        now = self._clock()
        values = {
            "tenant_id": tenant_id,
            "recipient_id": recipient_id,
            "chat_state": state,
            "blocked_at": now,
            "created_at": now,
            "updated_at": now,
        }
        stmt = upsert_insert(self.db, Contact).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "recipient_id"],
            set_={"chat_state": state, "blocked_at": now, "updated_at": now},
        )
        self.db.execute(stmt)
        log.info(f"🚫 Contact {tenant_id}:{recipient_id} marked {state}")

    def mark_blocked(self, tenant_id: str, recipient_id: int):
        self._set_state(tenant_id, recipient_id, ChatState.BLOCKED)

    def mark_deactivated(self, tenant_id: str, recipient_id: int):
        self._set_state(tenant_id, recipient_id, ChatState.DEACTIVATED)

    def is_excluded(self, tenant_id: str, recipient_id: int) -> bool:
        state = self.db.query(Contact.chat_state).filter(
            Contact.tenant_id == tenant_id,
            Contact.recipient_id == recipient_id,
        ).scalar()
        return state in ChatState.EXCLUDED
