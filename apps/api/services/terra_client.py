"""
Terra API client (outbound).

Two calls:
- generate a hosted-auth widget session for a user reference id
- deauthenticate a Terra user

Both authenticate with the `dev-id` / `x-api-key` header pair. Transport and
HTTP failures surface as `UpstreamError`; callers decide whether that is fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from core.config import settings
from core.exceptions import ProviderNotConfiguredError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WidgetSession:
    url: str
    session_id: Optional[str]
    expires_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "sessionId": self.session_id, "expiresAt": self.expires_at}


class TerraClient:
    def __init__(
        self,
        dev_id: Optional[str],
        api_key: Optional[str],
        base_url: str = "https://api.tryterra.co/v2",
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.dev_id = dev_id
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "TerraClient":
        return cls(
            dev_id=settings.TERRA_DEV_ID,
            api_key=settings.TERRA_API_KEY,
            base_url=settings.TERRA_API_BASE_URL,
            timeout=settings.EXTERNAL_API_TIMEOUT,
        )

    @property
    def configured(self) -> bool:
        return bool(self.dev_id and self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.configured:
            raise ProviderNotConfiguredError("Terra API not configured (missing TERRA_DEV_ID / TERRA_API_KEY)")
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "dev-id": str(self.dev_id),
            "x-api-key": str(self.api_key),
        }

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = self._headers()
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise UpstreamError(f"Terra {method} {path} failed: {e}") from e
        if not r.ok:
            logger.warning(f"Terra API error: {method} {path} -> {r.status_code} {r.text[:200]}")
            raise UpstreamError(f"Terra {method} {path} returned {r.status_code}", status_code=r.status_code)
        return r

    def generate_widget_session(
        self,
        reference_id: str,
        providers: Optional[List[str]] = None,
        success_url: Optional[str] = None,
        failure_url: Optional[str] = None,
        language: str = "en",
    ) -> WidgetSession:
        body: Dict[str, Any] = {"reference_id": reference_id, "language": language}
        if providers:
            body["providers"] = ",".join(p.upper() for p in providers)
        if success_url:
            body["auth_success_redirect_url"] = success_url
        if failure_url:
            body["auth_failure_redirect_url"] = failure_url

        r = self._request("POST", "/auth/generateWidgetSession", json=body)
        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError("Terra widget session response is not JSON") from e
        if not isinstance(data, dict) or not data.get("url"):
            raise UpstreamError("Terra widget session response has no url")
        return WidgetSession(
            url=str(data["url"]),
            session_id=data.get("session_id"),
            expires_at=str(data["expires_at"]) if data.get("expires_at") is not None else None,
        )

    def deauthenticate_user(self, external_user_id: str) -> None:
        self._request("DELETE", "/auth/deauthenticateUser", params={"user_id": external_user_id})
        logger.info(f"Terra user deauthenticated: {external_user_id}")
