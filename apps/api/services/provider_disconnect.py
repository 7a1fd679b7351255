"""
User-initiated provider disconnect.

The remote Terra deauthorization is best-effort: when it fails (unreachable,
timeout, error status, not configured) the failure is logged and the local
connection is still moved to 'disconnected'. Success is reported once the
local transition is committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import Clock, utcnow
from core.exceptions import ConnectionNotFoundError, PersistenceError, UpstreamError
from services import provider_connections
from services.terra_client import TerraClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisconnectResult:
    user_id: str
    provider: str
    status: str
    remote_deauthorized: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "provider": self.provider,
            "status": self.status,
            "remoteDeauthorized": self.remote_deauthorized,
        }


def disconnect_provider(
    db: Session,
    client: Optional[TerraClient],
    user_id: str,
    provider: str,
    clock: Clock = utcnow,
) -> DisconnectResult:
    """
    Disconnect `provider` for `user_id`. Safe to call repeatedly.

    Raises:
        ConnectionNotFoundError: the user never connected this provider
        PersistenceError: the local transition could not be committed
    """
    provider = provider.strip().lower()
    row = provider_connections.get_connection(db, user_id, provider)
    if row is None:
        raise ConnectionNotFoundError(user_id, provider)

    remote_ok = False
    if row.external_user_id and client is not None:
        try:
            client.deauthenticate_user(row.external_user_id)
            remote_ok = True
        except UpstreamError as e:
            logger.warning(
                f"Terra deauthorization failed, disconnecting locally anyway: {e}",
                extra={"extra_fields": {"user_id": user_id, "provider": provider}},
            )

    try:
        row = provider_connections.mark_disconnected(db, user_id, provider, clock())
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to disconnect {provider} for user {user_id}", exc_info=True)
        raise PersistenceError(str(e)) from e

    logger.info(f"Provider disconnected: user={user_id} provider={provider} remote={remote_ok}")
    return DisconnectResult(user_id=user_id, provider=provider, status=row.status, remote_deauthorized=remote_ok)
