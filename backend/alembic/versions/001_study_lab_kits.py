"""Studies, Visit Requirements, Lab Kits and Orders

Revision ID: 001_lab_kits
Revises:
Create Date: 2025-09-12

Implements:
- Studies with inventory buffer settings
- Kit type catalogue per study
- Visit schedules and per-visit kit requirements
- Subjects and subject visits
- Lab kit inventory
- Lab kit purchase orders
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001_lab_kits'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Studies table
    op.create_table(
        'studies',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('protocol_number', sa.String(100), nullable=False),
        sa.Column('study_title', sa.String(500), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('inventory_buffer_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('inventory_buffer_kits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('visit_window_buffer_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('inventory_buffer_days >= 0 AND inventory_buffer_days <= 180',
                          name='studies_inventory_buffer_days_range'),
        sa.CheckConstraint('inventory_buffer_kits >= 0 AND inventory_buffer_kits <= 500',
                          name='studies_inventory_buffer_kits_range'),
        sa.CheckConstraint('visit_window_buffer_days >= 0 AND visit_window_buffer_days <= 60',
                          name='studies_visit_window_buffer_range'),
    )
    op.create_index('idx_studies_status', 'studies', ['status'])

    # Kit type catalogue
    op.create_table(
        'study_kit_types',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('buffer_days', sa.Integer(), nullable=True),
        sa.Column('buffer_count', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('buffer_days IS NULL OR (buffer_days >= 0 AND buffer_days <= 120)',
                          name='kit_types_buffer_days_range'),
        sa.CheckConstraint('buffer_count IS NULL OR (buffer_count >= 0 AND buffer_count <= 999)',
                          name='kit_types_buffer_count_range'),
    )
    op.create_index('idx_study_kit_types_study', 'study_kit_types', ['study_id'])

    # Visit schedule templates
    op.create_table(
        'visit_schedules',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visit_name', sa.String(255), nullable=False),
        sa.Column('visit_number', sa.String(50), nullable=True),
        sa.Column('visit_day', sa.Integer(), nullable=True),
    )
    op.create_index('idx_visit_schedules_study', 'visit_schedules', ['study_id'])

    # Kits required per visit occurrence
    op.create_table(
        'visit_kit_requirements',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visit_schedule_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('visit_schedules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kit_type_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('study_kit_types.id', ondelete='SET NULL'), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_optional', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint('quantity > 0', name='visit_kit_requirements_quantity_positive'),
    )
    op.create_index('idx_visit_kit_requirements_study', 'visit_kit_requirements', ['study_id'])
    op.create_index('idx_visit_kit_requirements_schedule', 'visit_kit_requirements', ['visit_schedule_id'])

    # Subjects
    op.create_table(
        'subjects',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subject_number', sa.String(100), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
    )
    op.create_index('idx_subjects_study', 'subjects', ['study_id'])

    # Subject visits
    op.create_table(
        'subject_visits',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subject_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('subjects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visit_schedule_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('visit_schedules.id', ondelete='SET NULL'), nullable=True),
        sa.Column('visit_name', sa.String(255), nullable=True),
        sa.Column('visit_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='scheduled'),
        sa.CheckConstraint("status IN ('scheduled', 'completed', 'missed', 'cancelled')",
                          name='subject_visits_status_valid'),
    )
    op.create_index('idx_subject_visits_study_date', 'subject_visits', ['study_id', 'visit_date'])
    op.create_index('idx_subject_visits_status', 'subject_visits', ['status'])

    # Lab kit inventory
    op.create_table(
        'lab_kits',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('accession_number', sa.String(100), unique=True, nullable=True),
        sa.Column('kit_type_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('study_kit_types.id', ondelete='SET NULL'), nullable=True),
        sa.Column('kit_type', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='available'),
        sa.Column('expiration_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('available', 'assigned', 'pending_shipment', 'shipped', 'delivered', "
            "'used', 'expired', 'destroyed', 'archived')",
            name='lab_kits_status_valid',
        ),
    )
    op.create_index('idx_lab_kits_study_status', 'lab_kits', ['study_id', 'status'])
    op.create_index('idx_lab_kits_kit_type', 'lab_kits', ['kit_type_id'])
    op.create_index('idx_lab_kits_expiration', 'lab_kits', ['expiration_date'])

    # Purchase orders
    op.create_table(
        'lab_kit_orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('study_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('studies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kit_type_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('study_kit_types.id', ondelete='SET NULL'), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('vendor', sa.String(255), nullable=True),
        sa.Column('expected_arrival', sa.Date(), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('received_date', sa.Date(), nullable=True),
        sa.CheckConstraint('quantity > 0', name='lab_kit_orders_quantity_positive'),
        sa.CheckConstraint("status IN ('pending', 'received', 'cancelled')", name='lab_kit_orders_status_valid'),
    )
    op.create_index('idx_lab_kit_orders_study', 'lab_kit_orders', ['study_id'])
    op.create_index('idx_lab_kit_orders_kit_type', 'lab_kit_orders', ['kit_type_id'])
    op.create_index('idx_lab_kit_orders_status', 'lab_kit_orders', ['status'])


def downgrade() -> None:
    op.drop_table('lab_kit_orders')
    op.drop_table('lab_kits')
    op.drop_table('subject_visits')
    op.drop_table('subjects')
    op.drop_table('visit_kit_requirements')
    op.drop_table('visit_schedules')
    op.drop_table('study_kit_types')
    op.drop_table('studies')
