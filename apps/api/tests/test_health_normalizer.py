"""
Tests for Terra item normalization into health entry drafts.
"""
from datetime import date

import pytest

from conftest import FIXED_NOW
from core.exceptions import PayloadValidationError
from fixtures.terra_payloads import activity_item, body_item, make_webhook, nutrition_item, sleep_item
from services.health_normalizer import (
    ACTIVITY,
    HEART_RATE,
    NUTRITION,
    SLEEP,
    EfficiencyWindowEstimator,
    HealthEntryDraft,
    HealthRecordNormalizer,
    clean_number,
    coalesce_drafts,
    round_half_up,
)
from services.terra_events import DATA_KINDS, EventKind, classify_event


@pytest.fixture
def normalizer():
    return HealthRecordNormalizer(clock=lambda: FIXED_NOW)


def _normalize(normalizer, event_type, items, **user):
    return normalizer.normalize(classify_event(make_webhook(event_type, items, **user)))


# ---------------------------------------------------------------------------
# Activity / daily
# ---------------------------------------------------------------------------

class TestActivity:

    def test_activity_item_becomes_one_draft(self, normalizer):
        drafts = _normalize(normalizer, "activity", [activity_item()])
        assert len(drafts) == 1
        d = drafts[0]
        assert (d.user_id, d.provider, d.data_type, d.entry_date) == ("u1", "fitbit", ACTIVITY, date(2024, 1, 10))
        assert d.payload == {"steps": 8000, "caloriesBurned": 350, "activeMinutes": 0, "distanceMeters": 0}
        assert d.raw_data == activity_item()

    def test_integral_values_are_stored_as_ints(self, normalizer):
        d = _normalize(normalizer, "activity", [activity_item(steps=8000.0, calories=350.0)])[0]
        assert isinstance(d.payload["steps"], int)
        assert isinstance(d.payload["caloriesBurned"], int)

    def test_active_seconds_become_rounded_minutes(self, normalizer):
        d = _normalize(normalizer, "activity", [activity_item(activity_seconds=1830)])[0]
        assert d.payload["activeMinutes"] == 31

    def test_missing_sections_default_to_zero(self, normalizer):
        item = {"metadata": {"start_time": "2024-01-10T08:00:00Z"}}
        d = _normalize(normalizer, "activity", [item])[0]
        assert d.payload == {"steps": 0, "caloriesBurned": 0, "activeMinutes": 0, "distanceMeters": 0}

    def test_steps_fall_back_to_summary(self, normalizer):
        item = activity_item(steps=None)
        item["summary"] = {"steps": 1234}
        d = _normalize(normalizer, "activity", [item])[0]
        assert d.payload["steps"] == 1234

    def test_british_distance_spelling_is_accepted(self, normalizer):
        item = activity_item()
        item["distance_data"]["distance_metres"] = 5200.5
        d = _normalize(normalizer, "activity", [item])[0]
        assert d.payload["distanceMeters"] == 5200.5

    def test_daily_summary_only_carries_fields_present(self, normalizer):
        d = _normalize(normalizer, "daily", [activity_item(steps=10000, calories=None)])[0]
        assert d.data_type == ACTIVITY
        assert d.payload == {"steps": 10000}

    def test_daily_summary_without_activity_fields_writes_nothing(self, normalizer):
        assert _normalize(normalizer, "daily", [activity_item(steps=None, calories=None)]) == []

    def test_items_keep_delivery_order(self, normalizer):
        items = [
            activity_item(start_time="2024-01-08T08:00:00Z", steps=3000),
            activity_item(start_time="2024-01-09T08:00:00Z", steps=5000),
        ]
        drafts = _normalize(normalizer, "activity", items)
        assert [d.entry_date for d in drafts] == [date(2024, 1, 8), date(2024, 1, 9)]
        assert [d.payload["steps"] for d in drafts] == [3000, 5000]


# ---------------------------------------------------------------------------
# Sleep
# ---------------------------------------------------------------------------

class TestSleep:

    def test_asleep_duration_is_used_when_present(self, normalizer):
        item = sleep_item(asleep_seconds=25200, deep_seconds=5400, light_seconds=14400, rem_seconds=5400, efficiency=0.85)
        d = _normalize(normalizer, "sleep", [item])[0]
        assert d.data_type == SLEEP
        assert d.entry_date == date(2024, 1, 9)
        assert d.payload["totalSleepMinutes"] == 420
        assert d.payload["deepSleepMinutes"] == 90
        assert d.payload["lightSleepMinutes"] == 240
        assert d.payload["remSleepMinutes"] == 90
        assert d.payload["sleepScore"] == 85
        assert "totalSleepEstimated" not in d.payload

    def test_stage_sum_is_used_without_asleep_total(self, normalizer):
        item = sleep_item(deep_seconds=3600, light_seconds=12600, rem_seconds=5400)
        d = _normalize(normalizer, "sleep", [item])[0]
        assert d.payload["totalSleepMinutes"] == 360
        assert "totalSleepEstimated" not in d.payload

    def test_efficiency_only_is_estimated_and_flagged(self, normalizer):
        d = _normalize(normalizer, "sleep", [sleep_item(efficiency=0.75)])[0]
        assert d.payload["totalSleepMinutes"] == 360
        assert d.payload["totalSleepEstimated"] is True
        assert d.payload["sleepScore"] == 75

    def test_estimator_reference_window_is_configurable(self):
        n = HealthRecordNormalizer(sleep_estimator=EfficiencyWindowEstimator(reference_hours=6), clock=lambda: FIXED_NOW)
        d = _normalize(n, "sleep", [sleep_item(efficiency=0.5)])[0]
        assert d.payload["totalSleepMinutes"] == 180

    def test_no_duration_data_gives_zero_without_score(self, normalizer):
        d = _normalize(normalizer, "sleep", [sleep_item()])[0]
        assert d.payload["totalSleepMinutes"] == 0
        assert "sleepScore" not in d.payload
        assert "totalSleepEstimated" not in d.payload

    def test_sleep_window_is_kept_as_iso_strings(self, normalizer):
        d = _normalize(normalizer, "sleep", [sleep_item(asleep_seconds=3600)])[0]
        assert d.payload["sleepStartTime"].startswith("2024-01-09T23:00:00")
        assert d.payload["sleepEndTime"].startswith("2024-01-10T07:00:00")


# ---------------------------------------------------------------------------
# Heart / nutrition
# ---------------------------------------------------------------------------

class TestHeartAndNutrition:

    def test_heart_readings(self, normalizer):
        d = _normalize(normalizer, "body", [body_item(avg_hr=62, resting_hr=55, max_hr=160, min_hr=48, hrv=42.5)])[0]
        assert d.data_type == HEART_RATE
        assert d.payload == {
            "avgHeartRate": 62,
            "restingHeartRate": 55,
            "maxHeartRate": 160,
            "minHeartRate": 48,
            "hrvMs": 42.5,
        }

    def test_missing_and_zero_readings_are_not_stored(self, normalizer):
        d = _normalize(normalizer, "body", [body_item(avg_hr=0, resting_hr=55)])[0]
        assert d.payload == {"restingHeartRate": 55}

    def test_hrv_falls_back_to_heart_rate_summary(self, normalizer):
        item = body_item()
        item["heart_data"]["heart_rate_data"]["summary"]["avg_hrv_rmssd"] = 38
        d = _normalize(normalizer, "body", [item])[0]
        assert d.payload["hrvMs"] == 38

    def test_body_item_without_heart_data_writes_nothing(self, normalizer):
        assert _normalize(normalizer, "body", [{"metadata": {"start_time": "2024-01-10T00:00:00Z"}}]) == []

    def test_nutrition(self, normalizer):
        item = nutrition_item(calories=2100, protein_g=120.5, carbohydrates_g=250, fat_g=70, water_ml=2000)
        d = _normalize(normalizer, "nutrition", [item])[0]
        assert d.data_type == NUTRITION
        assert d.payload == {
            "caloriesConsumed": 2100,
            "proteinGrams": 120.5,
            "carbsGrams": 250,
            "fatGrams": 70,
            "waterMl": 2000,
        }


# ---------------------------------------------------------------------------
# Dates, validation, dispatch
# ---------------------------------------------------------------------------

def test_date_is_the_utc_day_of_the_start_time(normalizer):
    # 23:30 in New York is already the next day in UTC.
    d = _normalize(normalizer, "activity", [activity_item(start_time="2024-01-10T23:30:00-05:00")])[0]
    assert d.entry_date == date(2024, 1, 11)


def test_naive_start_time_is_read_as_utc(normalizer):
    d = _normalize(normalizer, "activity", [activity_item(start_time="2024-01-10T23:30:00")])[0]
    assert d.entry_date == date(2024, 1, 10)


def test_missing_timestamp_falls_back_to_ingestion_day(normalizer):
    d = _normalize(normalizer, "activity", [activity_item(start_time=None)])[0]
    assert d.entry_date == FIXED_NOW.date()


def test_wrongly_typed_section_is_rejected_with_item_index(normalizer):
    items = [activity_item(), {"distance_data": "oops"}]
    with pytest.raises(PayloadValidationError) as exc:
        _normalize(normalizer, "activity", items)
    assert exc.value.reason == "data_item_1_invalid:distance_data"


def test_every_data_kind_has_a_normalizer(normalizer):
    assert normalizer.handled_kinds == DATA_KINDS


def test_connection_events_are_not_normalized(normalizer):
    with pytest.raises(ValueError):
        normalizer.normalize(classify_event(make_webhook("auth")))
    assert EventKind.CONNECTION_ESTABLISHED not in normalizer.handled_kinds


def test_coalesce_folds_same_key_in_order():
    day = date(2024, 1, 10)
    drafts = [
        HealthEntryDraft("u1", "fitbit", ACTIVITY, day, {"steps": 100, "caloriesBurned": 10}, {"n": 1}),
        HealthEntryDraft("u1", "fitbit", SLEEP, day, {"totalSleepMinutes": 400}),
        HealthEntryDraft("u1", "fitbit", ACTIVITY, day, {"steps": 200}),
    ]
    folded = coalesce_drafts(drafts)
    assert len(folded) == 2
    assert folded[0].payload == {"steps": 200, "caloriesBurned": 10}
    assert folded[0].raw_data == {"n": 1}
    # Input drafts are not mutated.
    assert drafts[0].payload == {"steps": 100, "caloriesBurned": 10}


@pytest.mark.parametrize("value,expected", [(0.5, 1), (1.5, 2), (2.5, 3), (-0.5, 0), (7.49, 7)])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected


def test_clean_number():
    assert clean_number(None) is None
    assert clean_number(5.0) == 5 and isinstance(clean_number(5.0), int)
    assert clean_number(5.25) == 5.25


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_readings_are_rejected(normalizer, value):
    with pytest.raises(PayloadValidationError) as exc:
        _normalize(normalizer, "activity", [activity_item(steps=value)])
    assert exc.value.reason.startswith("data_item_0_invalid")
