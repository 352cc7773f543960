"""
Study Coordinator - SQLAlchemy ORM Models
Lab kit supply schema: studies, visit requirements, inventory, orders,
settings and the recommendation ledger.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Study(Base):
    """Clinical study with study-wide inventory buffer settings."""

    __tablename__ = "studies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    protocol_number: Mapped[str] = mapped_column(String(100), nullable=False)
    study_title: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    inventory_buffer_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inventory_buffer_kits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visit_window_buffer_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    kit_types: Mapped[list["StudyKitType"]] = relationship(
        back_populates="study", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "inventory_buffer_days >= 0 AND inventory_buffer_days <= 180",
            name="studies_inventory_buffer_days_range",
        ),
        CheckConstraint(
            "inventory_buffer_kits >= 0 AND inventory_buffer_kits <= 500",
            name="studies_inventory_buffer_kits_range",
        ),
        CheckConstraint(
            "visit_window_buffer_days >= 0 AND visit_window_buffer_days <= 60",
            name="studies_visit_window_buffer_range",
        ),
        Index("idx_studies_status", "status"),
    )


class StudyKitType(Base):
    """Kit type catalogue per study."""

    __tablename__ = "study_kit_types"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    buffer_days: Mapped[Optional[int]] = mapped_column(Integer)
    buffer_count: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    study: Mapped["Study"] = relationship(back_populates="kit_types")

    __table_args__ = (
        CheckConstraint(
            "buffer_days IS NULL OR (buffer_days >= 0 AND buffer_days <= 120)",
            name="kit_types_buffer_days_range",
        ),
        CheckConstraint(
            "buffer_count IS NULL OR (buffer_count >= 0 AND buffer_count <= 999)",
            name="kit_types_buffer_count_range",
        ),
        Index("idx_study_kit_types_study", "study_id"),
    )


class VisitSchedule(Base):
    """Visit template from the study schedule of events."""

    __tablename__ = "visit_schedules"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    visit_name: Mapped[str] = mapped_column(String(255), nullable=False)
    visit_number: Mapped[Optional[str]] = mapped_column(String(50))
    visit_day: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        Index("idx_visit_schedules_study", "study_id"),
    )


class VisitKitRequirement(Base):
    """Kits consumed by one occurrence of a visit template."""

    __tablename__ = "visit_kit_requirements"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    visit_schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("visit_schedules.id", ondelete="CASCADE"), nullable=False
    )
    kit_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("study_kit_types.id", ondelete="SET NULL")
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_optional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="visit_kit_requirements_quantity_positive"),
        Index("idx_visit_kit_requirements_study", "study_id"),
        Index("idx_visit_kit_requirements_schedule", "visit_schedule_id"),
    )


class Subject(Base):
    __tablename__ = "subjects"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    subject_number: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")

    __table_args__ = (
        Index("idx_subjects_study", "study_id"),
    )


class SubjectVisit(Base):
    """Concrete visit instance for a subject."""

    __tablename__ = "subject_visits"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    visit_schedule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("visit_schedules.id", ondelete="SET NULL")
    )
    visit_name: Mapped[Optional[str]] = mapped_column(String(255))
    visit_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="scheduled")

    subject: Mapped["Subject"] = relationship()

    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled', 'completed', 'missed', 'cancelled')",
            name="subject_visits_status_valid",
        ),
        Index("idx_subject_visits_study_date", "study_id", "visit_date"),
        Index("idx_subject_visits_status", "status"),
    )


class LabKit(Base):
    """Physical lab kit unit."""

    __tablename__ = "lab_kits"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    accession_number: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    kit_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("study_kit_types.id", ondelete="SET NULL")
    )
    kit_type: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="available")
    expiration_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('available', 'assigned', 'pending_shipment', 'shipped', 'delivered', "
            "'used', 'expired', 'destroyed', 'archived')",
            name="lab_kits_status_valid",
        ),
        Index("idx_lab_kits_study_status", "study_id", "status"),
        Index("idx_lab_kits_kit_type", "kit_type_id"),
        Index("idx_lab_kits_expiration", "expiration_date"),
    )


class LabKitOrder(Base):
    """Purchase order for a kit type."""

    __tablename__ = "lab_kit_orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    kit_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("study_kit_types.id", ondelete="SET NULL")
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    vendor: Mapped[Optional[str]] = mapped_column(String(255))
    expected_arrival: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    received_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="lab_kit_orders_quantity_positive"),
        CheckConstraint(
            "status IN ('pending', 'received', 'cancelled')",
            name="lab_kit_orders_status_valid",
        ),
        Index("idx_lab_kit_orders_study", "study_id"),
        Index("idx_lab_kit_orders_kit_type", "kit_type_id"),
        Index("idx_lab_kit_orders_status", "status"),
    )


class LabKitSetting(Base):
    """Per-study policy row. kit_type_id NULL is the study-wide default."""

    __tablename__ = "lab_kit_settings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    kit_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("study_kit_types.id", ondelete="SET NULL")
    )
    min_on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    buffer_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lead_time_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_order_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("min_on_hand >= 0", name="lab_kit_settings_min_on_hand_non_negative"),
        CheckConstraint("buffer_days >= 0", name="lab_kit_settings_buffer_days_non_negative"),
        CheckConstraint("lead_time_days >= 0", name="lab_kit_settings_lead_time_non_negative"),
        Index(
            "idx_lab_kit_settings_study_default", "study_id",
            unique=True, postgresql_where="kit_type_id IS NULL",
        ),
        Index(
            "idx_lab_kit_settings_study_kit", "study_id", "kit_type_id",
            unique=True, postgresql_where="kit_type_id IS NOT NULL",
        ),
    )


class LabKitSettingHistory(Base):
    """Append-only settings change ledger."""

    __tablename__ = "lab_kit_settings_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    settings_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("lab_kit_settings.id", ondelete="SET NULL")
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    kit_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    changes: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "action IN ('create', 'update', 'delete')",
            name="lab_kit_settings_history_action_valid",
        ),
        Index("idx_lab_kit_settings_history_study", "study_id"),
        Index("idx_lab_kit_settings_history_settings", "settings_id"),
    )


class LabKitRecommendation(Base):
    """Reorder recommendation ledger."""

    __tablename__ = "lab_kit_recommendations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    kit_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("study_kit_types.id", ondelete="SET NULL")
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="new")
    recommended_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    window_start: Mapped[Optional[date]] = mapped_column(Date)
    window_end: Mapped[Optional[date]] = mapped_column(Date)
    latest_order_date: Mapped[Optional[date]] = mapped_column(Date)
    confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4))
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    dismissed_reason: Mapped[Optional[str]] = mapped_column(Text)
    acted_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    acted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('new', 'acted', 'dismissed', 'expired')",
            name="lab_kit_recommendations_status_valid",
        ),
        CheckConstraint(
            "recommended_quantity > 0", name="lab_kit_recommendations_quantity_positive"
        ),
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="lab_kit_recommendations_confidence_range",
        ),
        Index("idx_lab_kit_recommendations_study", "study_id"),
        Index("idx_lab_kit_recommendations_status", "status"),
        Index(
            "idx_lab_kit_recommendations_kit_type", "kit_type_id",
            postgresql_where="kit_type_id IS NOT NULL",
        ),
    )


class LabKitRecommendationHistory(Base):
    """Append-only recommendation transition ledger."""

    __tablename__ = "lab_kit_recommendation_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    recommendation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("lab_kit_recommendations.id", ondelete="SET NULL")
    )
    study_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False
    )
    kit_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    changes: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "action IN ('create', 'update', 'expire', 'act', 'dismiss')",
            name="lab_kit_recommendation_history_action_valid",
        ),
        Index("idx_lab_kit_recommendation_history_study", "study_id"),
        Index("idx_lab_kit_recommendation_history_rec", "recommendation_id"),
    )
