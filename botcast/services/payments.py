# botcast/services/payments.py
from sqlalchemy.orm import Session

from botcast.models.events import PaymentTransaction

PAID_STATUSES = ("paid",)


class PaymentsLookup:
    """Read-only view over payment_transactions."""

    def __init__(self, db: Session):
        self.db = db

    def has_paid(self, tenant_id: str, recipient_id: int) -> bool:
        return self.db.query(
            self.db.query(PaymentTransaction.id).filter(
                PaymentTransaction.tenant_id == tenant_id,
                PaymentTransaction.recipient_id == recipient_id,
                PaymentTransaction.status.in_(PAID_STATUSES),
            ).exists()
        ).scalar()
