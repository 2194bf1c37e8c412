"""SMS gateway delivery reports."""

import hmac
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Form, HTTPException, Request

from vms.core.config import settings
from vms.core.rate_limit import limiter
from vms.db.session import DbSession
from vms.services.notification_service import record_delivery_status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/delivery-status")
@limiter.limit(settings.callback_rate_limit)
def delivery_status(
    request: Request,
    db: DbSession,
    id: Annotated[str, Form()],
    status: Annotated[str, Form()],
    reason: Annotated[Optional[str], Form()] = None,
    time: Annotated[Optional[str], Form()] = None,
    status_secret: Annotated[Optional[str], Form()] = None,
):
    """Delivery report posted by the SMS gateway.

    Reports are observational: they update the notification log and never
    touch visit or visitor state.
    """
    if settings.sms_status_secret and not hmac.compare_digest(
        status_secret or "", settings.sms_status_secret
    ):
        logger.warning(f"Rejected delivery report for message {id}: bad secret")
        raise HTTPException(status_code=403, detail="Invalid status secret")

    recorded = record_delivery_status(db, id, status, reason)
    return {"status": "ok", "recorded": recorded}
