"""
Idempotent Health Entry persistence.

A draft is written with one `INSERT ... ON CONFLICT DO UPDATE` keyed by
(user, provider, data_type, entry_date). On conflict the JSON payload is merged
inside the database:
- PostgreSQL: `payload || excluded.payload`
- SQLite: `json_patch(payload, excluded.payload)`

Stored fields the draft does not mention are kept; fields it does mention are
overwritten (field-level last-write-wins). Writing the same draft twice leaves
the row exactly as after the first write, except `updated_at`: it records the
last delivery and is bookkeeping, not entry state. No application lock is taken: the
row-level atomicity of the statement is the only concurrency control.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import Clock, utcnow
from core.exceptions import PersistenceError
from models import HealthEntry
from services.health_normalizer import HealthEntryDraft

logger = logging.getLogger(__name__)

KEY_COLUMNS = ("user_id", "provider", "data_type", "entry_date")


def entry_key(provider: str, data_type: str, entry_date: date) -> str:
    """Document-style id of an entry, e.g. 'fitbit_activity_2024-01-10'."""
    return f"{provider}_{data_type}_{entry_date.isoformat()}"


class HealthEntryStore:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def merge_write(self, draft: HealthEntryDraft) -> None:
        """
        Merge a draft into its entry, creating it on first delivery.

        Does not commit; the caller owns the transaction.

        Raises:
            PersistenceError: the store rejected the write
        """
        now = self.clock()
        dialect = self.db.get_bind().dialect.name
        try:
            if dialect == "postgresql":
                self._upsert(pg_insert, draft, now, merge=lambda current, new: current.op("||")(new))
            elif dialect == "sqlite":
                self._upsert(sqlite_insert, draft, now, merge=lambda current, new: func.json_patch(current, new))
            else:
                self._merge_in_session(draft, now)
        except SQLAlchemyError as e:
            logger.error(
                f"Health entry write failed: {entry_key(draft.provider, draft.data_type, draft.entry_date)}",
                exc_info=True,
                extra={"extra_fields": {"user_id": draft.user_id, "provider": draft.provider}},
            )
            raise PersistenceError(str(e)) from e

    def _upsert(self, insert, draft: HealthEntryDraft, now, merge) -> None:
        table = HealthEntry.__table__
        stmt = insert(table).values(
            id=uuid.uuid4(),
            user_id=draft.user_id,
            provider=draft.provider,
            data_type=draft.data_type,
            entry_date=draft.entry_date,
            payload=draft.payload,
            raw_data=draft.raw_data,
            created_at=now,
            updated_at=now,
        )
        updates = {
            "payload": merge(table.c.payload, stmt.excluded.payload),
            "updated_at": stmt.excluded.updated_at,
        }
        if draft.raw_data is not None:
            updates["raw_data"] = stmt.excluded.raw_data
        stmt = stmt.on_conflict_do_update(index_elements=list(KEY_COLUMNS), set_=updates)
        self.db.execute(stmt)

    def _merge_in_session(self, draft: HealthEntryDraft, now) -> None:
        """Read-merge-write for dialects without ON CONFLICT support."""
        entry = (
            self._key_query(draft.user_id, draft.provider, draft.data_type, draft.entry_date)
            .with_for_update()
            .first()
        )
        if entry is None:
            entry = HealthEntry(
                user_id=draft.user_id,
                provider=draft.provider,
                data_type=draft.data_type,
                entry_date=draft.entry_date,
                payload={},
                created_at=now,
            )
        entry.payload = {**(entry.payload or {}), **draft.payload}
        if draft.raw_data is not None:
            entry.raw_data = draft.raw_data
        entry.updated_at = now
        self.db.add(entry)
        self.db.flush()

    def _key_query(self, user_id: str, provider: str, data_type: str, entry_date: date):
        return (
            self.db.query(HealthEntry)
            .filter(
                HealthEntry.user_id == user_id,
                HealthEntry.provider == provider,
                HealthEntry.data_type == data_type,
                HealthEntry.entry_date == entry_date,
            )
            .execution_options(populate_existing=True)
        )

    def get_entry(self, user_id: str, provider: str, data_type: str, entry_date: date) -> Optional[HealthEntry]:
        return self._key_query(user_id, provider, data_type, entry_date).first()

    def list_entries(
        self,
        user_id: str,
        start: date,
        end: date,
        data_type: Optional[str] = None,
    ) -> List[HealthEntry]:
        """Entries for a user with start <= entry_date <= end, newest first."""
        q = (
            self.db.query(HealthEntry)
            .filter(
                HealthEntry.user_id == user_id,
                HealthEntry.entry_date >= start,
                HealthEntry.entry_date <= end,
            )
            .execution_options(populate_existing=True)
        )
        if data_type:
            q = q.filter(HealthEntry.data_type == data_type)
        return q.order_by(HealthEntry.entry_date.desc(), HealthEntry.provider, HealthEntry.data_type).all()
