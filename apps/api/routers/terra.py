"""
Terra Connection Router

Endpoints the web app calls to connect and disconnect wearables:
- POST /v1/terra/widget-session: hosted Terra auth page for a user
- POST /v1/terra/disconnect: revoke a provider (remote best-effort, local always)
"""

from typing import Optional
from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from core.clock import Clock
from core.config import settings
from core.database import get_db
from core.dependencies import get_clock, get_terra_client
from core.exceptions import (
    BadGatewayError,
    ConnectionNotFoundError,
    NotFoundError,
    PersistenceError,
    ProviderNotConfiguredError,
    ServiceUnavailableError,
    UpstreamError,
    ValidationError,
)
from services.provider_disconnect import disconnect_provider
from services.terra_client import TerraClient
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/terra", tags=["terra"])


class WidgetSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    provider: Optional[str] = None
    reference_id: Optional[str] = Field(default=None, alias="referenceId")


class DisconnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    provider: Optional[str] = None


@router.post("/widget-session")
def create_widget_session(
    request: Optional[WidgetSessionRequest] = Body(default=None),
    client: TerraClient = Depends(get_terra_client),
):
    """
    Generate a Terra widget session.

    The user reference id travels through Terra and comes back on every
    webhook as `user.reference_id`.
    """
    if request is None or not request.user_id:
        raise ValidationError("userId is required", field="userId")

    base = settings.WEB_APP_BASE_URL.rstrip("/")
    try:
        session = client.generate_widget_session(
            reference_id=request.reference_id or request.user_id,
            providers=[request.provider] if request.provider else None,
            success_url=f"{base}/dashboard?health_connected=true",
            failure_url=f"{base}/dashboard?health_connected=false",
            language=settings.TERRA_WIDGET_LANGUAGE,
        )
    except ProviderNotConfiguredError as e:
        logger.error(str(e))
        raise ServiceUnavailableError("Terra API not configured")
    except UpstreamError as e:
        logger.error(f"Terra widget session failed for user {request.user_id}: {e}")
        raise BadGatewayError("Failed to generate widget session")

    return session.to_dict()


@router.post("/disconnect")
def disconnect(
    request: Optional[DisconnectRequest] = Body(default=None),
    client: TerraClient = Depends(get_terra_client),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """
    Disconnect a provider for a user.

    Returns success once the local record is disconnected, whether or not
    Terra could be reached.
    """
    if request is None or not request.user_id or not request.provider:
        raise ValidationError("userId and provider are required")

    try:
        result = disconnect_provider(db, client, request.user_id, request.provider, clock=clock)
    except ConnectionNotFoundError:
        raise NotFoundError("Provider connection", f"{request.user_id}/{request.provider.lower()}")
    except PersistenceError:
        raise HTTPException(status_code=500, detail="Failed to disconnect")

    return result.to_dict()
