"""
Tests for the /v1/health read endpoints, manual logging and service health.
"""
import json
import logging
from datetime import date

from conftest import FIXED_NOW
from core.logging import JSONFormatter
from fixtures.terra_payloads import activity_item, make_webhook, sleep_item, to_bytes
from services import provider_connections
from services.health_entry_store import HealthEntryStore
from services.manual_entries import MANUAL_PROVIDER, build_manual_drafts


def _webhook(client, event_type, items, **user):
    r = client.post(
        "/v1/terra/webhook",
        content=to_bytes(make_webhook(event_type, items, **user)),
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 200
    return r


# ---------------------------------------------------------------------------
# GET /v1/health/summary
# ---------------------------------------------------------------------------

def test_summary_after_webhooks(client, db_session):
    _webhook(client, "activity", [
        activity_item(start_time="2024-01-08T08:00:00Z", steps=3000, calories=200),
        activity_item(start_time="2024-01-10T08:00:00Z", steps=5000, calories=300),
    ])
    _webhook(client, "sleep", [sleep_item(asleep_seconds=27000)])

    r = client.get("/v1/health/summary", params={"userId": "u1"})
    assert r.status_code == 200
    body = r.json()
    assert body["today"]["steps"] == 5000
    assert body["today"]["caloriesBurned"] == 300
    assert body["weekAverage"]["steps"] == 2667
    assert body["weekAverage"]["daysWithData"] == 3
    assert [p["provider"] for p in body["connectedProviders"]] == ["fitbit"]


def test_summary_for_explicit_date(client):
    _webhook(client, "activity", [activity_item(start_time="2024-01-08T08:00:00Z", steps=3000)])
    r = client.get("/v1/health/summary", params={"userId": "u1", "date": "2024-01-08"})
    assert r.json()["today"]["steps"] == 3000


def test_summary_requires_user(client):
    assert client.get("/v1/health/summary").status_code == 422


# ---------------------------------------------------------------------------
# GET /v1/health/entries
# ---------------------------------------------------------------------------

def test_entries_in_range(client):
    _webhook(client, "activity", [activity_item()])
    _webhook(client, "sleep", [sleep_item(asleep_seconds=27000)])

    r = client.get("/v1/health/entries", params={"userId": "u1", "start": "2024-01-01", "end": "2024-01-10"})
    assert r.status_code == 200
    ids = [e["id"] for e in r.json()["entries"]]
    assert ids == ["fitbit_activity_2024-01-10", "fitbit_sleep_2024-01-09"]

    r = client.get(
        "/v1/health/entries",
        params={"userId": "u1", "start": "2024-01-01", "end": "2024-01-10", "dataType": "sleep"},
    )
    assert [e["data"]["totalSleepMinutes"] for e in r.json()["entries"]] == [450]


def test_entries_rejects_bad_ranges_and_types(client):
    base = {"userId": "u1", "start": "2024-01-10", "end": "2024-01-01"}
    assert client.get("/v1/health/entries", params=base).status_code == 400

    too_wide = {"userId": "u1", "start": "2022-01-01", "end": "2024-01-01"}
    assert client.get("/v1/health/entries", params=too_wide).status_code == 400

    bad_type = {"userId": "u1", "start": "2024-01-01", "end": "2024-01-10", "dataType": "weight"}
    assert client.get("/v1/health/entries", params=bad_type).status_code == 400


# ---------------------------------------------------------------------------
# GET /v1/health/providers
# ---------------------------------------------------------------------------

def test_providers_lists_active_only(client, db_session):
    provider_connections.mark_connected(db_session, "u1", "fitbit", "terra-1", FIXED_NOW)
    provider_connections.mark_connected(db_session, "u1", "oura", "terra-2", FIXED_NOW)
    provider_connections.mark_disconnected(db_session, "u1", "oura", FIXED_NOW)
    db_session.commit()

    r = client.get("/v1/health/providers", params={"userId": "u1"})
    assert r.status_code == 200
    providers = r.json()["providers"]
    assert [p["provider"] for p in providers] == ["fitbit"]
    assert providers[0]["status"] == "active"


# ---------------------------------------------------------------------------
# POST /v1/health/manual
# ---------------------------------------------------------------------------

def test_manual_entry_saved_for_today(client, db_session):
    r = client.post("/v1/health/manual", json={"userId": "u1", "steps": 5000, "sleepHours": 7.5})
    assert r.status_code == 200
    assert r.json() == {"success": True, "date": "2024-01-10", "saved": 2}

    store = HealthEntryStore(db_session)
    assert store.get_entry("u1", MANUAL_PROVIDER, "steps", date(2024, 1, 10)).payload == {"steps": 5000}
    assert store.get_entry("u1", MANUAL_PROVIDER, "sleep", date(2024, 1, 10)).payload == {"durationHours": 7.5}


def test_manual_resubmission_only_overwrites_submitted_fields(client, db_session):
    client.post("/v1/health/manual", json={"userId": "u1", "date": "2024-01-09", "caloriesBurned": 500, "activeMinutes": 30})
    client.post("/v1/health/manual", json={"userId": "u1", "date": "2024-01-09", "activeMinutes": 45})

    entry = HealthEntryStore(db_session).get_entry("u1", MANUAL_PROVIDER, "activity", date(2024, 1, 9))
    assert entry.payload == {"caloriesBurned": 500, "activeMinutes": 45}


def test_manual_entries_feed_the_summary(client):
    client.post("/v1/health/manual", json={"userId": "u1", "steps": 4000, "sleepHours": 6.5, "avgHeartRate": 70})
    today = client.get("/v1/health/summary", params={"userId": "u1"}).json()["today"]
    assert today["steps"] == 4000
    assert today["sleepHours"] == 6.5
    assert today["avgHeartRate"] == 70


def test_manual_entry_validation(client):
    assert client.post("/v1/health/manual", json={"steps": 100}).status_code == 400
    assert client.post("/v1/health/manual", json={"userId": "u1"}).status_code == 400
    assert client.post("/v1/health/manual", json={"userId": "u1", "steps": -5}).status_code == 422
    assert client.post("/v1/health/manual", json={"userId": "u1", "sleepHours": 30}).status_code == 422


def test_build_manual_drafts_skips_missing_metrics():
    drafts = build_manual_drafts("u1", date(2024, 1, 10), calories_burned=250.0)
    assert len(drafts) == 1
    assert drafts[0].data_type == "activity"
    assert drafts[0].payload == {"caloriesBurned": 250}


# ---------------------------------------------------------------------------
# Service health / logging
# ---------------------------------------------------------------------------

def test_health_and_ping(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert client.get("/ping").json() == {"pong": True}


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("services.terra_webhook", logging.INFO, __file__, 1, "stored", None, None)
    record.extra_fields = {"provider": "fitbit", "entries": 2}
    data = json.loads(JSONFormatter().format(record))
    assert data["message"] == "stored"
    assert data["level"] == "INFO"
    assert data["provider"] == "fitbit"
    assert data["entries"] == 2
