# botcast/api/v1/downsells.py
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from botcast.api.deps import get_tenant_id_flexible
from botcast.core.exceptions import StructuralError
from botcast.db.session import get_db
from botcast.schemas.campaign import DownsellTriggerRequest, DownsellTriggerResponse
from botcast.services.enqueuer import Enqueuer

log = logging.getLogger("botcast.api.downsells")
router = APIRouter()


@router.post("/trigger", response_model=DownsellTriggerResponse)
def trigger_downsells(
    request: DownsellTriggerRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id_flexible)
):
    """Funnel event hook: queue every active downsell listening to this trigger"""
    try:
        result = Enqueuer(db).enqueue_trigger(
            tenant_id, request.recipient_id, request.trigger, request.trigger_time
        )
        db.commit()
    except StructuralError as e:
        db.rollback()
        raise HTTPException(400, e.reason)

    log.info(
        f"📢 Downsell trigger {request.trigger} for {tenant_id}:{request.recipient_id}: "
        f"matched={result.matched} enqueued={result.enqueued}"
    )
    return asdict(result)
