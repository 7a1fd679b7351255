"""
Health Record Normalizer

Maps Terra's provider-native items into `HealthEntryDraft`s, one per
(data type, calendar date). Each event kind has exactly one normalizer; the
provider sections are pydantic models so the accepted shape is explicit.

Rules that apply to every kind:
- A missing sub-section is tolerated (the field becomes zero or absent).
- `None` never reaches a draft: a null reading must not erase a stored value.
- The calendar date is the UTC day of `metadata.start_time` (naive timestamps
  are read as UTC). Without a timestamp the ingestion time is used, so a late event
  without its own timestamp is filed under the day it arrived.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.clock import Clock, utcnow
from core.config import settings
from core.exceptions import PayloadValidationError
from services.terra_events import DATA_KINDS, EventKind, WebhookEnvelope

logger = logging.getLogger(__name__)


# Data types stored in HealthEntry.data_type
ACTIVITY = "activity"
SLEEP = "sleep"
HEART_RATE = "heart_rate"
NUTRITION = "nutrition"
STEPS = "steps"
DATA_TYPES = (ACTIVITY, SLEEP, HEART_RATE, NUTRITION, STEPS)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clean_number(value: Optional[float]) -> Optional[float]:
    """Store integral floats as ints (8000.0 -> 8000)."""
    if value is None:
        return None
    if float(value).is_integer():
        return int(value)
    return value


def _minutes(seconds: Optional[float]) -> int:
    return round_half_up(seconds / 60) if seconds else 0


# --- Provider sections ---


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, allow_inf_nan=False)


class ItemMetadata(_Section):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class DistanceData(_Section):
    steps: Optional[float] = None
    distance_meters: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("distance_meters", "distance_metres"),
    )


class CaloriesData(_Section):
    total_burned_calories: Optional[float] = None


class ActiveDurationsData(_Section):
    activity_seconds: Optional[float] = None


class ActivitySummary(_Section):
    steps: Optional[float] = None


class ActivityItem(_Section):
    metadata: Optional[ItemMetadata] = None
    distance_data: Optional[DistanceData] = None
    calories_data: Optional[CaloriesData] = None
    active_durations_data: Optional[ActiveDurationsData] = None
    summary: Optional[ActivitySummary] = None


class AsleepDurations(_Section):
    duration_asleep_state_seconds: Optional[float] = None
    duration_deep_sleep_state_seconds: Optional[float] = None
    duration_light_sleep_state_seconds: Optional[float] = None
    duration_REM_sleep_state_seconds: Optional[float] = None


class SleepDurationsData(_Section):
    asleep: Optional[AsleepDurations] = None
    sleep_efficiency: Optional[float] = None


class SleepItem(_Section):
    metadata: Optional[ItemMetadata] = None
    sleep_durations_data: Optional[SleepDurationsData] = None


class HeartRateSummary(_Section):
    avg_hr_bpm: Optional[float] = None
    resting_hr_bpm: Optional[float] = None
    max_hr_bpm: Optional[float] = None
    min_hr_bpm: Optional[float] = None
    avg_hrv_rmssd: Optional[float] = None


class HeartRateData(_Section):
    summary: Optional[HeartRateSummary] = None


class HeartRateVariabilityData(_Section):
    summary: Optional[HeartRateSummary] = None


class HeartData(_Section):
    heart_rate_data: Optional[HeartRateData] = None
    heart_rate_variability_data: Optional[HeartRateVariabilityData] = None


class BodyItem(_Section):
    metadata: Optional[ItemMetadata] = None
    heart_data: Optional[HeartData] = None


class Macros(_Section):
    calories: Optional[float] = None
    protein_g: Optional[float] = None
    carbohydrates_g: Optional[float] = None
    fat_g: Optional[float] = None


class NutritionSummary(_Section):
    macros: Optional[Macros] = None
    water_ml: Optional[float] = None


class NutritionItem(_Section):
    metadata: Optional[ItemMetadata] = None
    summary: Optional[NutritionSummary] = None


# --- Drafts ---


@dataclass
class HealthEntryDraft:
    """Unpersisted HealthEntry. Maps 1:1 onto the composite entry key."""
    user_id: str
    provider: str
    data_type: str
    entry_date: date
    payload: Dict[str, Any] = field(default_factory=dict)
    raw_data: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> Tuple[str, str, str, date]:
        return (self.user_id, self.provider, self.data_type, self.entry_date)


def coalesce_drafts(drafts: List[HealthEntryDraft]) -> List[HealthEntryDraft]:
    """
    Fold drafts sharing a key, in delivery order.

    Later fields overwrite earlier ones, which is exactly what sequential
    merge-writes would have stored.
    """
    folded: Dict[Tuple[str, str, str, date], HealthEntryDraft] = {}
    for draft in drafts:
        existing = folded.get(draft.key)
        if existing is None:
            folded[draft.key] = HealthEntryDraft(
                user_id=draft.user_id,
                provider=draft.provider,
                data_type=draft.data_type,
                entry_date=draft.entry_date,
                payload=dict(draft.payload),
                raw_data=draft.raw_data,
            )
            continue
        existing.payload.update(draft.payload)
        if draft.raw_data is not None:
            existing.raw_data = draft.raw_data
    return list(folded.values())


# --- Sleep estimation ---


class SleepEstimator(Protocol):
    def estimate_total_minutes(self, sleep_efficiency: float) -> int:
        ...


@dataclass(frozen=True)
class EfficiencyWindowEstimator:
    """
    Approximate total sleep as efficiency x a fixed reference night.

    Only used when the provider sends no asleep duration and no stage
    breakdown. Entries produced this way carry `totalSleepEstimated: True`.
    """
    reference_hours: float = 8.0

    def estimate_total_minutes(self, sleep_efficiency: float) -> int:
        return round_half_up(sleep_efficiency * self.reference_hours * 60)


# --- Normalizer ---


class HealthRecordNormalizer:
    """Per-kind mapping of Terra items to drafts."""

    def __init__(self, sleep_estimator: Optional[SleepEstimator] = None, clock: Clock = utcnow):
        self.sleep_estimator = sleep_estimator or EfficiencyWindowEstimator(settings.SLEEP_FALLBACK_REFERENCE_HOURS)
        self.clock = clock
        self._handlers: Dict[EventKind, Callable[[WebhookEnvelope, Dict[str, Any]], List[HealthEntryDraft]]] = {
            EventKind.ACTIVITY: self._normalize_activity,
            EventKind.DAILY_SUMMARY: self._normalize_daily,
            EventKind.SLEEP: self._normalize_sleep,
            EventKind.HEART: self._normalize_heart,
            EventKind.NUTRITION: self._normalize_nutrition,
        }
        missing = DATA_KINDS - set(self._handlers)
        if missing:
            raise RuntimeError(f"No normalizer for event kinds: {sorted(k.value for k in missing)}")

    @property
    def handled_kinds(self) -> frozenset:
        return frozenset(self._handlers)

    def normalize(self, envelope: WebhookEnvelope) -> List[HealthEntryDraft]:
        """
        Normalize every item of a data event.

        Raises:
            PayloadValidationError: an item section has the wrong type
        """
        handler = self._handlers.get(envelope.kind)
        if handler is None:
            raise ValueError(f"{envelope.kind.value} events carry no health records")

        drafts: List[HealthEntryDraft] = []
        for index, item in enumerate(envelope.items):
            try:
                drafts.extend(handler(envelope, item))
            except PydanticValidationError as e:
                first = e.errors()[0] if e.errors() else {}
                location = ".".join(str(part) for part in first.get("loc", ()))
                raise PayloadValidationError(f"data_item_{index}_invalid:{location}")
        return drafts

    # --- helpers ---

    def resolve_date(self, metadata: Optional[ItemMetadata]) -> date:
        start = metadata.start_time if metadata else None
        if start is None:
            return self.clock().astimezone(timezone.utc).date()
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return start.astimezone(timezone.utc).date()

    def _draft(
        self,
        envelope: WebhookEnvelope,
        data_type: str,
        metadata: Optional[ItemMetadata],
        payload: Dict[str, Any],
        raw: Dict[str, Any],
    ) -> HealthEntryDraft:
        return HealthEntryDraft(
            user_id=envelope.subject_user_id,
            provider=envelope.provider,
            data_type=data_type,
            entry_date=self.resolve_date(metadata),
            payload={k: clean_number(v) if isinstance(v, float) else v for k, v in payload.items() if v is not None},
            raw_data=raw,
        )

    # --- per kind ---

    def _normalize_activity(self, envelope: WebhookEnvelope, raw: Dict[str, Any]) -> List[HealthEntryDraft]:
        item = ActivityItem.model_validate(raw)
        distance = item.distance_data or DistanceData()
        steps = distance.steps
        if not steps and item.summary is not None:
            steps = item.summary.steps
        payload = {
            "steps": round_half_up(steps) if steps else 0,
            "caloriesBurned": (item.calories_data.total_burned_calories if item.calories_data else None) or 0,
            "activeMinutes": _minutes(item.active_durations_data.activity_seconds if item.active_durations_data else None),
            "distanceMeters": distance.distance_meters or 0,
        }
        return [self._draft(envelope, ACTIVITY, item.metadata, payload, raw)]

    def _normalize_daily(self, envelope: WebhookEnvelope, raw: Dict[str, Any]) -> List[HealthEntryDraft]:
        """Activity subset of a daily summary. Only fields Terra actually sent."""
        item = ActivityItem.model_validate(raw)
        payload: Dict[str, Any] = {}
        if item.distance_data is not None:
            if item.distance_data.steps is not None:
                payload["steps"] = round_half_up(item.distance_data.steps)
            if item.distance_data.distance_meters is not None:
                payload["distanceMeters"] = item.distance_data.distance_meters
        if item.calories_data is not None and item.calories_data.total_burned_calories is not None:
            payload["caloriesBurned"] = item.calories_data.total_burned_calories
        if item.active_durations_data is not None and item.active_durations_data.activity_seconds is not None:
            payload["activeMinutes"] = _minutes(item.active_durations_data.activity_seconds)
        if not payload:
            return []
        return [self._draft(envelope, ACTIVITY, item.metadata, payload, raw)]

    def _normalize_sleep(self, envelope: WebhookEnvelope, raw: Dict[str, Any]) -> List[HealthEntryDraft]:
        item = SleepItem.model_validate(raw)
        durations = item.sleep_durations_data or SleepDurationsData()
        asleep = durations.asleep or AsleepDurations()
        efficiency = durations.sleep_efficiency

        stages = [
            asleep.duration_deep_sleep_state_seconds,
            asleep.duration_light_sleep_state_seconds,
            asleep.duration_REM_sleep_state_seconds,
        ]
        estimated = False
        if asleep.duration_asleep_state_seconds:
            total = _minutes(asleep.duration_asleep_state_seconds)
        elif any(stages):
            total = _minutes(sum(s for s in stages if s))
        elif efficiency:
            total = self.sleep_estimator.estimate_total_minutes(efficiency)
            estimated = True
        else:
            total = 0

        payload: Dict[str, Any] = {
            "totalSleepMinutes": total,
            "deepSleepMinutes": _minutes(asleep.duration_deep_sleep_state_seconds),
            "lightSleepMinutes": _minutes(asleep.duration_light_sleep_state_seconds),
            "remSleepMinutes": _minutes(asleep.duration_REM_sleep_state_seconds),
            "sleepScore": round_half_up(efficiency * 100) if efficiency else None,
            "sleepStartTime": item.metadata.start_time.isoformat() if item.metadata and item.metadata.start_time else None,
            "sleepEndTime": item.metadata.end_time.isoformat() if item.metadata and item.metadata.end_time else None,
        }
        if estimated:
            payload["totalSleepEstimated"] = True
        return [self._draft(envelope, SLEEP, item.metadata, payload, raw)]

    def _normalize_heart(self, envelope: WebhookEnvelope, raw: Dict[str, Any]) -> List[HealthEntryDraft]:
        item = BodyItem.model_validate(raw)
        heart = item.heart_data or HeartData()
        hr = (heart.heart_rate_data.summary if heart.heart_rate_data else None) or HeartRateSummary()
        hrv = heart.heart_rate_variability_data.summary if heart.heart_rate_variability_data else None

        # Zero readings mean "not measured".
        payload = {
            "avgHeartRate": hr.avg_hr_bpm or None,
            "restingHeartRate": hr.resting_hr_bpm or None,
            "maxHeartRate": hr.max_hr_bpm or None,
            "minHeartRate": hr.min_hr_bpm or None,
            "hrvMs": (hrv.avg_hrv_rmssd if hrv else None) or hr.avg_hrv_rmssd or None,
        }
        if all(v is None for v in payload.values()):
            return []
        return [self._draft(envelope, HEART_RATE, item.metadata, payload, raw)]

    def _normalize_nutrition(self, envelope: WebhookEnvelope, raw: Dict[str, Any]) -> List[HealthEntryDraft]:
        item = NutritionItem.model_validate(raw)
        summary = item.summary or NutritionSummary()
        macros = summary.macros or Macros()
        payload = {
            "caloriesConsumed": macros.calories,
            "proteinGrams": macros.protein_g,
            "carbsGrams": macros.carbohydrates_g,
            "fatGrams": macros.fat_g,
            "waterMl": summary.water_ml,
        }
        if all(v is None for v in payload.values()):
            return []
        return [self._draft(envelope, NUTRITION, item.metadata, payload, raw)]
