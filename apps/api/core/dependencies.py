"""
FastAPI dependencies for the ingestion endpoints.

Each external collaborator is resolved here so tests can swap it through
`app.dependency_overrides` (fixed clock, fake Terra client, webhook secret).
"""
from typing import Optional

from core.clock import Clock, utcnow
from core.config import settings
from services.terra_client import TerraClient


def get_clock() -> Clock:
    return utcnow


def get_webhook_secret() -> Optional[str]:
    return settings.TERRA_WEBHOOK_SECRET


def get_terra_client() -> TerraClient:
    return TerraClient.from_settings()
