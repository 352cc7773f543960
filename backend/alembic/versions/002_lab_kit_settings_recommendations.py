"""Lab Kit Settings and Recommendations

Revision ID: 002_lab_kit_settings
Revises: 001_lab_kits
Create Date: 2025-09-14

Implements:
- Per-study supply policy (default row + kit type overrides)
- Settings history ledger (append-only)
- Reorder recommendations
- Recommendation history ledger (append-only)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '002_lab_kit_settings'
down_revision: Union[str, None] = '001_lab_kits'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Settings: kit_type_id NULL is the study-wide default row
    op.create_table(
        'lab_kit_settings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kit_type_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('study_kit_types.id', ondelete='SET NULL'), nullable=True),
        sa.Column('min_on_hand', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('buffer_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lead_time_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auto_order_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('updated_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('min_on_hand >= 0', name='lab_kit_settings_min_on_hand_non_negative'),
        sa.CheckConstraint('buffer_days >= 0', name='lab_kit_settings_buffer_days_non_negative'),
        sa.CheckConstraint('lead_time_days >= 0', name='lab_kit_settings_lead_time_non_negative'),
    )
    op.create_index('idx_lab_kit_settings_study_default', 'lab_kit_settings', ['study_id'],
                    unique=True, postgresql_where=sa.text('kit_type_id IS NULL'))
    op.create_index('idx_lab_kit_settings_study_kit', 'lab_kit_settings', ['study_id', 'kit_type_id'],
                    unique=True, postgresql_where=sa.text('kit_type_id IS NOT NULL'))

    # Settings history
    op.create_table(
        'lab_kit_settings_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('settings_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('lab_kit_settings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kit_type_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('changes', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('changed_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("action IN ('create', 'update', 'delete')", name='lab_kit_settings_history_action_valid'),
    )
    op.create_index('idx_lab_kit_settings_history_study', 'lab_kit_settings_history', ['study_id'])
    op.create_index('idx_lab_kit_settings_history_settings', 'lab_kit_settings_history', ['settings_id'])

    # Recommendations
    op.create_table(
        'lab_kit_recommendations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kit_type_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('study_kit_types.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='new'),
        sa.Column('recommended_quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('window_start', sa.Date(), nullable=True),
        sa.Column('window_end', sa.Date(), nullable=True),
        sa.Column('latest_order_date', sa.Date(), nullable=True),
        sa.Column('confidence', sa.Numeric(5, 4), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('dismissed_reason', sa.Text(), nullable=True),
        sa.Column('acted_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('acted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('new', 'acted', 'dismissed', 'expired')",
                          name='lab_kit_recommendations_status_valid'),
        sa.CheckConstraint('recommended_quantity > 0', name='lab_kit_recommendations_quantity_positive'),
        sa.CheckConstraint('confidence IS NULL OR (confidence >= 0 AND confidence <= 1)',
                          name='lab_kit_recommendations_confidence_range'),
    )
    op.create_index('idx_lab_kit_recommendations_study', 'lab_kit_recommendations', ['study_id'])
    op.create_index('idx_lab_kit_recommendations_status', 'lab_kit_recommendations', ['status'])
    op.create_index('idx_lab_kit_recommendations_kit_type', 'lab_kit_recommendations', ['kit_type_id'],
                    postgresql_where=sa.text('kit_type_id IS NOT NULL'))

    # Recommendation history
    op.create_table(
        'lab_kit_recommendation_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('recommendation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('lab_kit_recommendations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kit_type_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('changes', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('changed_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("action IN ('create', 'update', 'expire', 'act', 'dismiss')",
                          name='lab_kit_recommendation_history_action_valid'),
    )
    op.create_index('idx_lab_kit_recommendation_history_study', 'lab_kit_recommendation_history', ['study_id'])
    op.create_index('idx_lab_kit_recommendation_history_rec', 'lab_kit_recommendation_history', ['recommendation_id'])


def downgrade() -> None:
    op.drop_table('lab_kit_recommendation_history')
    op.drop_table('lab_kit_recommendations')
    op.drop_table('lab_kit_settings_history')
    op.drop_table('lab_kit_settings')
