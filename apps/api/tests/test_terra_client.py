"""
Tests for the outbound Terra API client (no network).
"""
import pytest
import requests

from core.exceptions import ProviderNotConfiguredError, UpstreamError
from services.terra_client import TerraClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else str(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


def _client(session):
    return TerraClient(dev_id="dev-1", api_key="key-1", base_url="https://terra.test/v2/", timeout=5, session=session)


def test_widget_session_request_and_response():
    session = FakeSession(FakeResponse(payload={
        "status": "success",
        "url": "https://widget.tryterra.co/session/xyz",
        "session_id": "xyz",
        "expires_at": "2024-01-10T12:15:00Z",
    }))
    result = _client(session).generate_widget_session(
        "u1",
        providers=["garmin", "oura"],
        success_url="https://app.test/ok",
        failure_url="https://app.test/fail",
    )

    assert result.to_dict() == {
        "url": "https://widget.tryterra.co/session/xyz",
        "sessionId": "xyz",
        "expiresAt": "2024-01-10T12:15:00Z",
    }
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://terra.test/v2/auth/generateWidgetSession"
    assert call["headers"]["dev-id"] == "dev-1"
    assert call["headers"]["x-api-key"] == "key-1"
    assert call["timeout"] == 5
    assert call["json"] == {
        "reference_id": "u1",
        "language": "en",
        "providers": "GARMIN,OURA",
        "auth_success_redirect_url": "https://app.test/ok",
        "auth_failure_redirect_url": "https://app.test/fail",
    }


def test_widget_session_without_url_is_upstream_error():
    session = FakeSession(FakeResponse(payload={"status": "error"}))
    with pytest.raises(UpstreamError):
        _client(session).generate_widget_session("u1")


def test_error_status_is_upstream_error():
    session = FakeSession(FakeResponse(status_code=500, payload={"message": "boom"}))
    with pytest.raises(UpstreamError) as exc:
        _client(session).deauthenticate_user("terra-1")
    assert exc.value.status_code == 500


def test_transport_error_is_upstream_error():
    session = FakeSession(error=requests.ConnectionError("refused"))
    with pytest.raises(UpstreamError):
        _client(session).deauthenticate_user("terra-1")


def test_deauthenticate_sends_terra_user_id():
    session = FakeSession(FakeResponse(payload={"status": "success"}))
    _client(session).deauthenticate_user("terra-1")
    call = session.calls[0]
    assert call["method"] == "DELETE"
    assert call["params"] == {"user_id": "terra-1"}


def test_unconfigured_client_raises_before_any_request():
    session = FakeSession()
    client = TerraClient(dev_id=None, api_key="key", session=session)
    assert client.configured is False
    with pytest.raises(ProviderNotConfiguredError):
        client.deauthenticate_user("terra-1")
    assert session.calls == []
