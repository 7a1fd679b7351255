from sqlalchemy import Column, Date, DateTime, Index, JSON, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests). None is SQL NULL, not JSON null.
JSONPayload = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class ConnectedProvider(Base):
    """
    One user's authorization with one wearable provider, as seen through Terra.

    - One row per (user, provider); never deleted (audit trail)
    - 'active' | 'disconnected' | 'error'
    - external_user_id is Terra's user id and is required while active
    """
    __tablename__ = "connected_provider"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user_id = Column(Text, nullable=False, index=True)
    provider = Column(Text, nullable=False)
    external_user_id = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="active")

    connected_at = Column(DateTime(timezone=True), nullable=True)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    # Set by connection_error events, cleared on reconnect.
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_connected_provider_user_provider"),
        Index("ix_connected_provider_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "provider": self.provider,
            "externalUserId": self.external_user_id,
            "status": self.status,
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
            "disconnectedAt": self.disconnected_at.isoformat() if self.disconnected_at else None,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
        }


class HealthEntry(Base):
    """
    One normalized day of one data type from one provider.

    The composite key (user, provider, data_type, entry_date) is unique: repeated
    deliveries merge into the same row. `payload` holds the typed fields for the
    data type (camelCase keys, e.g. steps/caloriesBurned); `raw_data` is the last
    provider item that contributed, kept for debugging.
    """
    __tablename__ = "health_entry"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    user_id = Column(Text, nullable=False)
    provider = Column(Text, nullable=False)
    # 'activity' | 'sleep' | 'heart_rate' | 'nutrition' | 'steps'
    data_type = Column(Text, nullable=False)
    entry_date = Column(Date, nullable=False)

    payload = Column(JSONPayload, nullable=False, default=dict)
    raw_data = Column(JSONPayload, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "data_type", "entry_date", name="uq_health_entry_key"),
        Index("ix_health_entry_user_date", "user_id", "entry_date"),
    )

    @property
    def entry_key(self) -> str:
        return f"{self.provider}_{self.data_type}_{self.entry_date.isoformat()}"

    def to_dict(self) -> dict:
        return {
            "id": self.entry_key,
            "userId": self.user_id,
            "provider": self.provider,
            "dataType": self.data_type,
            "date": self.entry_date.isoformat(),
            "data": dict(self.payload or {}),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
