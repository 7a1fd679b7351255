"""health ingestion tables: connected_provider, health_entry

Revision ID: 001
Revises: 
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One row per (user, provider) authorization seen through Terra
    op.create_table(
        'connected_provider',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('external_user_id', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), server_default='active', nullable=False),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('disconnected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.UniqueConstraint('user_id', 'provider', name='uq_connected_provider_user_provider'),
    )
    op.create_index('ix_connected_provider_user_id', 'connected_provider', ['user_id'])
    op.create_index('ix_connected_provider_status', 'connected_provider', ['status'])

    # One normalized day of one data type from one provider.
    # The unique key is the ON CONFLICT target of the merge-write.
    op.create_table(
        'health_entry',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('data_type', sa.Text(), nullable=False),
        sa.Column('entry_date', sa.Date(), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('raw_data', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.UniqueConstraint('user_id', 'provider', 'data_type', 'entry_date', name='uq_health_entry_key'),
    )
    op.create_index('ix_health_entry_user_date', 'health_entry', ['user_id', 'entry_date'])


def downgrade() -> None:
    op.drop_index('ix_health_entry_user_date', table_name='health_entry')
    op.drop_table('health_entry')
    op.drop_index('ix_connected_provider_status', table_name='connected_provider')
    op.drop_index('ix_connected_provider_user_id', table_name='connected_provider')
    op.drop_table('connected_provider')
