"""
Connection lifecycle per (user, provider).

States:
- 'active': Terra authorized the provider (external_user_id known)
- 'disconnected': revoked by Terra or disconnected by the user
- 'error': Terra reported a connection error; a new auth re-enters 'active'

Rows are never deleted. Writes here do not commit; the caller owns the
transaction (one webhook = one transaction).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from models import ConnectedProvider

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"


def get_connection(db: Session, user_id: str, provider: str) -> Optional[ConnectedProvider]:
    return (
        db.query(ConnectedProvider)
        .filter(ConnectedProvider.user_id == user_id, ConnectedProvider.provider == provider)
        .first()
    )


def _get_or_create(db: Session, user_id: str, provider: str, status: str) -> Tuple[ConnectedProvider, bool]:
    row = get_connection(db, user_id, provider)
    if row:
        return row, False
    row = ConnectedProvider(user_id=user_id, provider=provider, status=status)
    db.add(row)
    db.flush()
    return row, True


def mark_connected(db: Session, user_id: str, provider: str, external_user_id: str, now: datetime) -> ConnectedProvider:
    """Enter 'active'. Replaying the same auth keeps the original connected_at."""
    if not external_user_id:
        raise ValueError("external_user_id is required for an active connection")
    row, created = _get_or_create(db, user_id, provider, STATUS_ACTIVE)
    replay = (
        not created
        and row.status == STATUS_ACTIVE
        and row.external_user_id == external_user_id
        and row.connected_at is not None
    )
    if not replay:
        row.connected_at = now
        if not created:
            logger.info(f"Provider reconnected: user={user_id} provider={provider} previous_status={row.status}")
    row.status = STATUS_ACTIVE
    row.external_user_id = external_user_id
    row.disconnected_at = None
    row.last_error = None
    row.last_sync_at = now
    db.add(row)
    return row


def mark_disconnected(db: Session, user_id: str, provider: str, now: datetime) -> ConnectedProvider:
    """
    Enter 'disconnected'. Idempotent: an already disconnected row keeps its
    first disconnected_at, and an unknown pair gets a disconnected row.
    """
    row, _ = _get_or_create(db, user_id, provider, STATUS_DISCONNECTED)
    if row.status != STATUS_DISCONNECTED or row.disconnected_at is None:
        row.status = STATUS_DISCONNECTED
        row.disconnected_at = now
    db.add(row)
    return row


def mark_error(db: Session, user_id: str, provider: str, reason: Optional[str], now: datetime) -> Optional[ConnectedProvider]:
    row = get_connection(db, user_id, provider)
    if row is None:
        logger.info(f"Connection error for unknown connection: user={user_id} provider={provider}")
        return None
    if row.status == STATUS_DISCONNECTED:
        # A revoked connection stays revoked; only a new auth changes it.
        return row
    row.status = STATUS_ERROR
    row.last_error = reason or "connection_error"
    db.add(row)
    return row


def mark_synced(
    db: Session,
    user_id: str,
    provider: str,
    now: datetime,
    external_user_id: Optional[str] = None,
) -> Optional[ConnectedProvider]:
    """
    Record an accepted data event.

    'active' rows get last_sync_at only. A pair with no row yet becomes 'active'
    when Terra told us its user id (Terra only sends data for authorized users).
    Other states are left untouched.
    """
    row = get_connection(db, user_id, provider)
    if row is None:
        if not external_user_id:
            logger.info(f"Data for unknown connection without user id: user={user_id} provider={provider}")
            return None
        return mark_connected(db, user_id, provider, external_user_id, now)
    if row.status != STATUS_ACTIVE:
        logger.info(f"Data accepted for {row.status} connection: user={user_id} provider={provider}")
        return row
    row.last_sync_at = now
    db.add(row)
    return row


def list_active_connections(db: Session, user_id: str) -> List[ConnectedProvider]:
    return (
        db.query(ConnectedProvider)
        .filter(ConnectedProvider.user_id == user_id, ConnectedProvider.status == STATUS_ACTIVE)
        .order_by(ConnectedProvider.provider)
        .all()
    )
