"""
Terra Webhook Event Classification

Turns a verified webhook body into a `WebhookEnvelope`: a tagged union keyed by
`EventKind`. Downstream code switches on the kind only; it never probes the raw
body for optional fields again.

Terra body shape:
    {"type": "...", "user": {"reference_id", "provider", "user_id"}, "data": [...]}

`reference_id` is the id this app handed to Terra when the widget session was
created, i.e. the local user id.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from core.exceptions import PayloadValidationError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CONNECTION_ESTABLISHED = "connection_established"
    CONNECTION_REVOKED = "connection_revoked"
    CONNECTION_ERROR = "connection_error"
    ACTIVITY = "activity"
    SLEEP = "sleep"
    HEART = "heart"
    DAILY_SUMMARY = "daily_summary"
    NUTRITION = "nutrition"
    UNKNOWN = "unknown"
    UNATTRIBUTABLE = "unattributable"


CONNECTION_KINDS = frozenset({
    EventKind.CONNECTION_ESTABLISHED,
    EventKind.CONNECTION_REVOKED,
    EventKind.CONNECTION_ERROR,
})

DATA_KINDS = frozenset({
    EventKind.ACTIVITY,
    EventKind.SLEEP,
    EventKind.HEART,
    EventKind.DAILY_SUMMARY,
    EventKind.NUTRITION,
})

# Terra `type` -> kind. Anything missing here is UNKNOWN (healthcheck, processing, ...).
TERRA_EVENT_KINDS: Dict[str, EventKind] = {
    "auth": EventKind.CONNECTION_ESTABLISHED,
    "user_reauth": EventKind.CONNECTION_ESTABLISHED,
    "deauth": EventKind.CONNECTION_REVOKED,
    "access_revoked": EventKind.CONNECTION_REVOKED,
    "connection_error": EventKind.CONNECTION_ERROR,
    "activity": EventKind.ACTIVITY,
    "sleep": EventKind.SLEEP,
    "body": EventKind.HEART,
    "daily": EventKind.DAILY_SUMMARY,
    "nutrition": EventKind.NUTRITION,
}

UNKNOWN_PROVIDER = "unknown"


@dataclass(frozen=True)
class WebhookEnvelope:
    """One classified webhook. Lives for the duration of a request."""
    kind: EventKind
    event_type: Optional[str]
    subject_user_id: Optional[str] = None
    provider: str = UNKNOWN_PROVIDER
    external_user_id: Optional[str] = None
    items: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)
    message: Optional[str] = None

    @property
    def is_data_event(self) -> bool:
        return self.kind in DATA_KINDS

    @property
    def is_connection_event(self) -> bool:
        return self.kind in CONNECTION_KINDS


def _reject_constant(name: str) -> float:
    raise PayloadValidationError("invalid_json")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise PayloadValidationError("invalid_json")
    return value


def parse_webhook_body(body: bytes) -> Dict[str, Any]:
    """
    Decode the raw body into a JSON object.

    NaN and Infinity (literal or overflowing) are rejected: they cannot be
    stored as JSON.
    """
    try:
        parsed = json.loads(body.decode("utf-8"), parse_constant=_reject_constant, parse_float=_finite_float)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise PayloadValidationError("invalid_json")
    if not isinstance(parsed, dict):
        raise PayloadValidationError("body_not_object")
    return parsed


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


def classify_event(body: Dict[str, Any]) -> WebhookEnvelope:
    """
    Classify a webhook body.

    - No `user.reference_id`: UNATTRIBUTABLE (acknowledged, not processed)
    - Unrecognized `type`: UNKNOWN (acknowledged, ignored)
    - Data kinds carry their `data` items; connection kinds carry none

    Raises:
        PayloadValidationError: the body has the wrong shape
    """
    event_type = body.get("type")
    if event_type is not None and not isinstance(event_type, str):
        raise PayloadValidationError("type_not_string")

    user = body.get("user")
    if user is None:
        user = {}
    if not isinstance(user, dict):
        raise PayloadValidationError("user_not_object")

    subject_user_id = _optional_str(user.get("reference_id"))
    if not subject_user_id:
        return WebhookEnvelope(kind=EventKind.UNATTRIBUTABLE, event_type=event_type)

    if not event_type:
        raise PayloadValidationError("missing_type")

    provider = (_optional_str(user.get("provider")) or UNKNOWN_PROVIDER).lower()
    external_user_id = _optional_str(user.get("user_id"))

    kind = TERRA_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
    if kind == EventKind.UNKNOWN:
        return WebhookEnvelope(
            kind=kind,
            event_type=event_type,
            subject_user_id=subject_user_id,
            provider=provider,
            external_user_id=external_user_id,
        )

    items: Tuple[Dict[str, Any], ...] = ()
    if kind in DATA_KINDS:
        data = body.get("data")
        if data is None:
            data = []
        if not isinstance(data, list):
            raise PayloadValidationError("data_not_array")
        for index, item in enumerate(data):
            if not isinstance(item, dict):
                raise PayloadValidationError(f"data_item_{index}_not_object")
        items = tuple(data)

    message = None
    if kind == EventKind.CONNECTION_ERROR:
        message = _optional_str(body.get("message")) or _optional_str(body.get("reason"))

    return WebhookEnvelope(
        kind=kind,
        event_type=event_type,
        subject_user_id=subject_user_id,
        provider=provider,
        external_user_id=external_user_id,
        items=items,
        message=message,
    )
