"""
Health Summary (read side)

Folds stored HealthEntries into the two views the dashboard shows:
- today: totals for one day (steps, calories, active minutes, sleep hours,
  average heart rate)
- weekly average: per-metric average over the days in the window that have at
  least one entry (not a fixed 7, so sparse data is not understated)

Cross-provider reconciliation: two providers reporting the same (data type,
day) are different entries. What to do with them is configurable:
- sum: add them up (historical behavior; double counts overlapping devices)
- max: take the per-field maximum
- prefer_primary: keep only the entry from the highest-priority provider
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from core.config import settings
from services import provider_connections
from services.health_entry_store import HealthEntryStore
from services.health_normalizer import ACTIVITY, HEART_RATE, SLEEP, STEPS, clean_number, round_half_up

WEEK_DAYS = 7


class ReconciliationStrategy(str, Enum):
    SUM = "sum"
    MAX = "max"
    PREFER_PRIMARY = "prefer_primary"


@dataclass(frozen=True)
class FoldedEntry:
    """Provider-agnostic view of one (data type, day) used by the folds."""
    provider: str
    data_type: str
    entry_date: date
    payload: Dict[str, Any]


@dataclass(frozen=True)
class TodaySummary:
    steps: int
    calories_burned: float
    active_minutes: int
    sleep_hours: float
    avg_heart_rate: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": self.steps,
            "caloriesBurned": self.calories_burned,
            "activeMinutes": self.active_minutes,
            "sleepHours": self.sleep_hours,
            "avgHeartRate": self.avg_heart_rate,
        }


@dataclass(frozen=True)
class WeeklyAverage:
    steps: int
    sleep_hours: float
    calories_burned: int
    active_minutes: int
    days_with_data: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": self.steps,
            "sleepHours": self.sleep_hours,
            "caloriesBurned": self.calories_burned,
            "activeMinutes": self.active_minutes,
            "daysWithData": self.days_with_data,
        }


def _num(payload: Dict[str, Any], field: str) -> float:
    value = payload.get(field)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def _sleep_minutes(payload: Dict[str, Any]) -> float:
    # Device entries carry minutes, manual entries carry hours.
    if _num(payload, "totalSleepMinutes"):
        return _num(payload, "totalSleepMinutes")
    return _num(payload, "durationHours") * 60


def _to_folded(entry: Any) -> FoldedEntry:
    return FoldedEntry(
        provider=entry.provider,
        data_type=entry.data_type,
        entry_date=entry.entry_date,
        payload=dict(entry.payload or {}),
    )


def reconcile_entries(
    entries: Iterable[Any],
    strategy: ReconciliationStrategy = ReconciliationStrategy.SUM,
    primary_providers: Sequence[str] = (),
) -> List[FoldedEntry]:
    """Apply the cross-provider strategy per (data type, day)."""
    groups: Dict[Tuple[str, date], List[FoldedEntry]] = {}
    for entry in entries:
        folded = _to_folded(entry)
        groups.setdefault((folded.data_type, folded.entry_date), []).append(folded)

    result: List[FoldedEntry] = []
    for (data_type, day), group in groups.items():
        if strategy == ReconciliationStrategy.SUM or len(group) == 1:
            result.extend(group)
        elif strategy == ReconciliationStrategy.MAX:
            merged: Dict[str, Any] = {}
            for e in group:
                for k, v in e.payload.items():
                    if isinstance(v, bool) or not isinstance(v, (int, float)):
                        merged.setdefault(k, v)
                    elif not isinstance(merged.get(k), (int, float)) or v > merged[k]:
                        merged[k] = v
            result.append(FoldedEntry(provider="reconciled", data_type=data_type, entry_date=day, payload=merged))
        else:
            ranking = [p.lower() for p in primary_providers]

            def _rank(e: FoldedEntry) -> Tuple[int, str]:
                p = e.provider.lower()
                return (ranking.index(p) if p in ranking else len(ranking), p)

            result.append(min(group, key=_rank))
    return result


def summarize_day(entries: Iterable[FoldedEntry]) -> TodaySummary:
    steps = 0
    calories = 0
    active_minutes = 0
    sleep_minutes = 0
    hr_sum = 0
    hr_count = 0

    for e in entries:
        if e.data_type in (ACTIVITY, STEPS):
            steps += _num(e.payload, "steps")
            calories += _num(e.payload, "caloriesBurned")
            active_minutes += _num(e.payload, "activeMinutes")
        elif e.data_type == SLEEP:
            sleep_minutes += _sleep_minutes(e.payload)
        elif e.data_type == HEART_RATE and _num(e.payload, "avgHeartRate"):
            hr_sum += _num(e.payload, "avgHeartRate")
            hr_count += 1

    return TodaySummary(
        steps=round_half_up(steps),
        calories_burned=clean_number(calories),
        active_minutes=round_half_up(active_minutes),
        sleep_hours=round_half_up(sleep_minutes / 60 * 10) / 10,
        avg_heart_rate=round_half_up(hr_sum / hr_count) if hr_count else None,
    )


def average_over_days_with_data(entries: Iterable[FoldedEntry]) -> WeeklyAverage:
    total_steps = 0
    total_sleep = 0
    total_calories = 0
    total_active = 0
    days = set()

    for e in entries:
        days.add(e.entry_date)
        if e.data_type in (ACTIVITY, STEPS):
            total_steps += _num(e.payload, "steps")
            total_calories += _num(e.payload, "caloriesBurned")
            total_active += _num(e.payload, "activeMinutes")
        elif e.data_type == SLEEP:
            total_sleep += _sleep_minutes(e.payload)

    n = max(len(days), 1)
    return WeeklyAverage(
        steps=round_half_up(total_steps / n),
        sleep_hours=round_half_up(total_sleep / 60 / n * 10) / 10,
        calories_burned=round_half_up(total_calories / n),
        active_minutes=round_half_up(total_active / n),
        days_with_data=len(days),
    )


class HealthSummaryService:
    def __init__(
        self,
        db: Session,
        strategy: Optional[ReconciliationStrategy] = None,
        primary_providers: Optional[Sequence[str]] = None,
    ):
        self.db = db
        self.store = HealthEntryStore(db)
        self.strategy = strategy or ReconciliationStrategy(settings.HEALTH_RECONCILIATION_STRATEGY)
        self.primary_providers = list(primary_providers if primary_providers is not None else settings.primary_providers)

    def _folded(self, user_id: str, start: date, end: date) -> List[FoldedEntry]:
        entries = self.store.list_entries(user_id, start, end)
        return reconcile_entries(entries, self.strategy, self.primary_providers)

    def get_today(self, user_id: str, day: date) -> TodaySummary:
        return summarize_day(self._folded(user_id, day, day))

    def get_average(self, user_id: str, start: date, end: date) -> WeeklyAverage:
        return average_over_days_with_data(self._folded(user_id, start, end))

    def get_weekly_average(self, user_id: str, end: date) -> WeeklyAverage:
        return self.get_average(user_id, end - timedelta(days=WEEK_DAYS - 1), end)

    def get_health_summary(self, user_id: str, day: date) -> Dict[str, Any]:
        return {
            "today": self.get_today(user_id, day).to_dict(),
            "weekAverage": self.get_weekly_average(user_id, day).to_dict(),
            "connectedProviders": [
                row.to_dict() for row in provider_connections.list_active_connections(self.db, user_id)
            ],
        }
