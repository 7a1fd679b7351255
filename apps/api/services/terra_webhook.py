"""
Terra Webhook Service

Signature verification and the ingestion pipeline for Terra webhooks:

    verify -> classify -> normalize (all items) -> merge-write -> lifecycle update

Everything one webhook writes is committed in a single transaction. Items are
validated before the first write, so a malformed item never leaves a partial
batch behind, and a store failure rolls back the whole webhook for Terra to
retry (safe: every write is an idempotent merge).
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import Clock, utcnow
from core.exceptions import PayloadValidationError, PersistenceError, WebhookAuthenticationError
from services import provider_connections
from services.health_entry_store import HealthEntryStore
from services.health_normalizer import HealthRecordNormalizer, coalesce_drafts
from services.terra_events import EventKind, WebhookEnvelope, classify_event

logger = logging.getLogger(__name__)


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _signature_candidates(header: str, payload: bytes):
    """
    Yield (signed_message, signature) pairs for the header formats Terra uses:
    - "<hex>" or "sha256=<hex>": HMAC over the raw body
    - "t=<timestamp>,v1=<hex>": HMAC over "<timestamp>.<raw body>"
    """
    header = header.strip()
    if "v1=" in header:
        parts = dict(
            part.split("=", 1) for part in header.split(",") if "=" in part
        )
        timestamp = parts.get("t")
        signature = parts.get("v1")
        if timestamp and signature:
            yield f"{timestamp}.".encode("utf-8") + payload, signature.strip()
        return
    if header.startswith("sha256="):
        header = header[len("sha256="):]
    yield payload, header


def verify_webhook_signature(payload: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a Terra webhook signature (HMAC-SHA256 with the shared secret).

    Without a configured secret, verification is bypassed and the body is
    accepted as-is.

    Raises:
        WebhookAuthenticationError: secret configured, signature absent or wrong
    """
    if not secret:
        logger.debug("TERRA_WEBHOOK_SECRET not set, skipping webhook signature check")
        return True
    if not signature_header:
        raise WebhookAuthenticationError("Missing signature")

    for message, signature in _signature_candidates(signature_header, payload):
        expected = compute_signature(message, secret)
        if hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("utf-8")):
            return True
    raise WebhookAuthenticationError("Invalid signature")


@dataclass
class WebhookResult:
    kind: EventKind
    updated: bool = False
    entries_written: int = 0
    reason: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": True, "updated": self.updated}
        if self.reason:
            body["reason"] = self.reason
        return body


class TerraWebhookProcessor:
    """Runs one verified webhook body through the pipeline."""

    def __init__(
        self,
        db: Session,
        normalizer: Optional[HealthRecordNormalizer] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.normalizer = normalizer or HealthRecordNormalizer(clock=clock)
        self.store = HealthEntryStore(db, clock=clock)

    def process(self, body: Dict[str, Any]) -> WebhookResult:
        """
        Returns a result for every acknowledged outcome.

        Raises:
            PersistenceError: the store failed; nothing from this webhook is kept
        """
        try:
            envelope = classify_event(body)
        except PayloadValidationError as e:
            logger.warning(f"Rejected Terra webhook payload: {e.reason}")
            return WebhookResult(kind=EventKind.UNKNOWN, reason=e.reason)

        logger.info(
            f"Terra webhook: {envelope.event_type} for user {envelope.subject_user_id} from {envelope.provider}",
            extra={"extra_fields": {
                "event_type": envelope.event_type,
                "kind": envelope.kind.value,
                "user_id": envelope.subject_user_id,
                "provider": envelope.provider,
                "items": len(envelope.items),
            }},
        )

        if envelope.kind == EventKind.UNATTRIBUTABLE:
            logger.info("No reference_id in Terra webhook, skipping")
            return WebhookResult(kind=envelope.kind)
        if envelope.kind == EventKind.UNKNOWN:
            logger.info(f"Unhandled Terra webhook type: {envelope.event_type}")
            return WebhookResult(kind=envelope.kind)

        try:
            if envelope.is_connection_event:
                result = self._apply_connection_event(envelope)
            else:
                result = self._apply_data_event(envelope)
        except PayloadValidationError as e:
            self.db.rollback()
            logger.warning(f"Rejected Terra {envelope.event_type} payload: {e.reason}")
            return WebhookResult(kind=envelope.kind, reason=e.reason)
        except PersistenceError:
            self.db.rollback()
            raise

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Terra webhook commit failed", exc_info=True)
            raise PersistenceError(str(e)) from e
        return result

    def _apply_connection_event(self, envelope: WebhookEnvelope) -> WebhookResult:
        now = self.clock()
        try:
            if envelope.kind == EventKind.CONNECTION_ESTABLISHED:
                if not envelope.external_user_id:
                    raise PayloadValidationError("missing_user_id")
                provider_connections.mark_connected(
                    self.db, envelope.subject_user_id, envelope.provider, envelope.external_user_id, now
                )
            elif envelope.kind == EventKind.CONNECTION_REVOKED:
                provider_connections.mark_disconnected(self.db, envelope.subject_user_id, envelope.provider, now)
            else:
                row = provider_connections.mark_error(
                    self.db, envelope.subject_user_id, envelope.provider, envelope.message, now
                )
                if row is None:
                    return WebhookResult(kind=envelope.kind)
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        return WebhookResult(kind=envelope.kind, updated=True)

    def _apply_data_event(self, envelope: WebhookEnvelope) -> WebhookResult:
        drafts = coalesce_drafts(self.normalizer.normalize(envelope))

        for draft in drafts:
            self.store.merge_write(draft)

        try:
            provider_connections.mark_synced(
                self.db,
                envelope.subject_user_id,
                envelope.provider,
                self.clock(),
                external_user_id=envelope.external_user_id,
            )
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e

        logger.info(
            f"Stored {len(drafts)} {envelope.kind.value} entries for user {envelope.subject_user_id}",
            extra={"extra_fields": {"entries": len(drafts), "provider": envelope.provider}},
        )
        return WebhookResult(kind=envelope.kind, updated=bool(drafts), entries_written=len(drafts))
