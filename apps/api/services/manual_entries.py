"""
Manual (device-less) health entries.

Users without a wearable log their day by hand. Each metric lands in the same
HealthEntry table under provider 'manual', through the same merge-write as
webhook data, so re-submitting a day only overwrites the fields submitted.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from services.health_entry_store import HealthEntryStore
from services.health_normalizer import ACTIVITY, HEART_RATE, SLEEP, STEPS, HealthEntryDraft, clean_number

MANUAL_PROVIDER = "manual"


def build_manual_drafts(
    user_id: str,
    day: date,
    steps: Optional[int] = None,
    sleep_hours: Optional[float] = None,
    calories_burned: Optional[float] = None,
    active_minutes: Optional[int] = None,
    avg_heart_rate: Optional[float] = None,
) -> List[HealthEntryDraft]:
    def _draft(data_type: str, **payload) -> HealthEntryDraft:
        return HealthEntryDraft(
            user_id=user_id,
            provider=MANUAL_PROVIDER,
            data_type=data_type,
            entry_date=day,
            payload={k: clean_number(v) for k, v in payload.items() if v is not None},
        )

    drafts: List[HealthEntryDraft] = []
    if steps is not None:
        drafts.append(_draft(STEPS, steps=steps))
    if sleep_hours is not None:
        drafts.append(_draft(SLEEP, durationHours=sleep_hours))
    if calories_burned is not None or active_minutes is not None:
        drafts.append(_draft(ACTIVITY, caloriesBurned=calories_burned, activeMinutes=active_minutes))
    if avg_heart_rate is not None:
        drafts.append(_draft(HEART_RATE, avgHeartRate=avg_heart_rate))
    return drafts


def save_manual_entries(store: HealthEntryStore, drafts: List[HealthEntryDraft]) -> int:
    """Write all drafts in the caller's transaction; commit is the caller's."""
    for draft in drafts:
        store.merge_write(draft)
    return len(drafts)
