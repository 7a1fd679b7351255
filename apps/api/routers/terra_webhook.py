"""
Terra Webhook Router

Receives Terra pushes (connection changes and health data).

Status codes are chosen for an at-least-once sender:
- 200 for everything processed or deliberately skipped (no retry loop)
- 401 only when a configured secret's signature check fails
- 500 only when the store failed (Terra retries the whole webhook)
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.clock import Clock
from core.database import get_db
from core.dependencies import get_clock, get_webhook_secret
from core.exceptions import PayloadValidationError, PersistenceError, WebhookAuthenticationError
from services.terra_events import parse_webhook_body
from services.terra_webhook import TerraWebhookProcessor, verify_webhook_signature
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/terra", tags=["terra-webhook"])


@router.post("/webhook")
async def handle_webhook_event(
    request: Request,
    terra_signature: Optional[str] = Header(None, alias="terra-signature"),
    secret: Optional[str] = Depends(get_webhook_secret),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """
    Handle a Terra webhook.

    Returns `{"received": true, "updated": bool}`; `reason` is added when the
    payload was rejected as malformed.
    """
    body_bytes = await request.body()

    try:
        verify_webhook_signature(body_bytes, terra_signature, secret)
    except WebhookAuthenticationError as e:
        logger.warning(f"Terra webhook rejected: {e}")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": str(e)})

    try:
        body = parse_webhook_body(body_bytes)
    except PayloadValidationError as e:
        logger.warning(f"Unparseable Terra webhook body: {e.reason}")
        return {"received": True, "updated": False, "reason": e.reason}

    try:
        # Sync SQLAlchemy session work.
        result = await run_in_threadpool(TerraWebhookProcessor(db, clock=clock).process, body)
    except PersistenceError as e:
        logger.error(f"Terra webhook persistence failure: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing failed"},
        )

    return result.to_response()
