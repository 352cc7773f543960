"""
Study Coordinator - Lab Kit Supply Schemas
Data contracts for inventory forecasting, settings and reorder recommendations.

Record models mirror datastore rows (read with from_attributes).
Forecast models are derived per run and never persisted on their own.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import settings


# =============================================================================
# ENUMS
# =============================================================================

class KitStatus(str, Enum):
    """Lab kit lifecycle states."""
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    PENDING_SHIPMENT = "pending_shipment"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    USED = "used"
    EXPIRED = "expired"
    DESTROYED = "destroyed"
    ARCHIVED = "archived"


class OrderStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class VisitStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


class ForecastStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskFactorType(str, Enum):
    DEFICIT = "deficit"
    DEMAND_SURGE = "demand_surge"
    EXPIRING_SOON = "expiring_soon"
    OVERDUE_ORDERS = "overdue_orders"


class RecommendationStatus(str, Enum):
    """Recommendation lifecycle. Everything except NEW is terminal."""
    NEW = "new"
    ACTED = "acted"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


class ReasonType(str, Enum):
    DEFICIT = "deficit"
    BUFFER = "buffer"


class HistoryAction(str, Enum):
    """Append-only ledger actions for settings and recommendations."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXPIRE = "expire"
    ACT = "act"
    DISMISS = "dismiss"


# =============================================================================
# DATASTORE RECORDS
# =============================================================================

class StudyRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    protocol_number: Optional[str] = None
    status: str = "active"
    inventory_buffer_days: int = 0
    inventory_buffer_kits: int = 0
    visit_window_buffer_days: int = 0
    updated_at: Optional[datetime] = None


class KitTypeRecord(BaseModel):
    """Study kit type catalogue entry."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    name: Optional[str] = None
    is_active: bool = True
    buffer_days: Optional[int] = None
    buffer_count: Optional[int] = None


class VisitScheduleRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    visit_name: Optional[str] = None
    visit_number: Optional[str] = None


class VisitRequirementRecord(BaseModel):
    """Kit requirement for one visit template."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    visit_schedule_id: uuid.UUID
    kit_type_id: Optional[uuid.UUID] = None
    quantity: Optional[int] = 1
    is_optional: bool = False


class SubjectVisitRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    visit_date: date
    visit_schedule_id: Optional[uuid.UUID] = None
    visit_name: Optional[str] = None
    status: str = VisitStatus.SCHEDULED.value
    subject_number: Optional[str] = None


class LabKitRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    accession_number: Optional[str] = None
    kit_type_id: Optional[uuid.UUID] = None
    kit_type: Optional[str] = None  # legacy free-text kit type name
    status: str = KitStatus.AVAILABLE.value
    expiration_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LabKitOrderRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    kit_type_id: Optional[uuid.UUID] = None
    quantity: int = Field(..., gt=0)
    vendor: Optional[str] = None
    expected_arrival: Optional[date] = None
    status: str = OrderStatus.PENDING.value
    notes: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    received_date: Optional[date] = None


class LabKitSettingRecord(BaseModel):
    """Settings row. kit_type_id None marks the study-wide default row."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    kit_type_id: Optional[uuid.UUID] = None
    min_on_hand: int = 0
    buffer_days: int = 0
    lead_time_days: int = 0
    auto_order_enabled: bool = False
    notes: Optional[str] = None
    metadata: Any = Field(default_factory=dict)
    updated_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RecommendationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    study_id: uuid.UUID
    kit_type_id: Optional[uuid.UUID] = None
    status: str = RecommendationStatus.NEW.value
    recommended_quantity: int
    reason: str
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    latest_order_date: Optional[date] = None
    confidence: Optional[float] = None
    metadata: Any = Field(default_factory=dict)
    dismissed_reason: Optional[str] = None
    acted_by: Optional[uuid.UUID] = None
    acted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# SETTINGS
# =============================================================================

class KitTypePolicy(BaseModel):
    """Effective per-kit-type policy for one forecast run."""
    model_config = ConfigDict(frozen=True)

    min_on_hand: int = 0
    buffer_days: int = 0
    lead_time_days: int = 0
    auto_order_enabled: bool = False


class SettingsDefaults(BaseModel):
    id: Optional[uuid.UUID] = None
    min_on_hand: int = 0
    buffer_days: int = 0
    lead_time_days: int = 0
    auto_order_enabled: bool = False
    notes: Optional[str] = None
    metadata: Any = Field(default_factory=dict)
    updated_at: Optional[datetime] = None
    updated_by: Optional[uuid.UUID] = None
    inventory_buffer_days: int = 0
    inventory_buffer_kits: int = 0


class SettingsOverride(BaseModel):
    id: uuid.UUID
    kit_type_id: uuid.UUID
    kit_type_name: Optional[str] = None
    min_on_hand: int
    buffer_days: int
    lead_time_days: int
    auto_order_enabled: bool
    notes: Optional[str] = None
    metadata: Any = Field(default_factory=dict)
    updated_at: Optional[datetime] = None
    updated_by: Optional[uuid.UUID] = None


class SettingsSnapshot(BaseModel):
    study_id: uuid.UUID
    defaults: SettingsDefaults
    overrides: list[SettingsOverride]
    updated_at: Optional[datetime] = None
    etag: str


class SettingsDefaultsPatch(BaseModel):
    """
    Loosely typed on purpose: numeric fields are coerced by the settings
    service, malformed values fall back instead of failing validation.
    """
    min_on_hand: Any = None
    buffer_days: Any = None
    lead_time_days: Any = None
    auto_order_enabled: Any = None
    notes: Optional[str] = None
    metadata: Any = None
    inventory_buffer_days: Any = None
    inventory_buffer_kits: Any = None


class SettingsOverridePatch(BaseModel):
    id: Optional[uuid.UUID] = None
    kit_type_id: Optional[uuid.UUID] = None
    min_on_hand: Any = None
    buffer_days: Any = None
    lead_time_days: Any = None
    auto_order_enabled: Any = None
    notes: Optional[str] = None
    metadata: Any = None


class SettingsPatch(BaseModel):
    defaults: Optional[SettingsDefaultsPatch] = None
    overrides: list[SettingsOverridePatch] = Field(default_factory=list)
    delete_override_ids: list[uuid.UUID] = Field(default_factory=list)


# =============================================================================
# DEMAND & INVENTORY
# =============================================================================

class UpcomingVisit(BaseModel):
    visit_date: date
    subject_number: Optional[str] = None
    visit_name: Optional[str] = None
    quantity_required: int


class RequirementBreakdown(BaseModel):
    requirement_id: uuid.UUID
    visit_schedule_id: uuid.UUID
    visit_name: str
    visit_number: Optional[str] = None
    quantity_per_visit: int
    is_optional: bool
    visits_scheduled: int = 0
    kits_required: int = 0
    upcoming_visits: list[UpcomingVisit] = Field(default_factory=list)


class KitDemand(BaseModel):
    """Projected consumption for one kit type over the horizon."""
    kit_type_id: uuid.UUID
    kit_type_name: str
    optional: bool = True
    visits_scheduled: int = 0
    kits_required: int = 0
    historical_visits: int = 0
    upcoming_visits: list[UpcomingVisit] = Field(default_factory=list)
    requirements: list[RequirementBreakdown] = Field(default_factory=list)

    @property
    def earliest_visit_date(self) -> Optional[date]:
        return self.upcoming_visits[0].visit_date if self.upcoming_visits else None

    @property
    def latest_visit_date(self) -> Optional[date]:
        return self.upcoming_visits[-1].visit_date if self.upcoming_visits else None


class PendingOrderView(BaseModel):
    id: uuid.UUID
    quantity: int
    vendor: Optional[str] = None
    expected_arrival: Optional[date] = None
    status: str
    is_overdue: bool = False
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[uuid.UUID] = None
    received_date: Optional[date] = None


class KitInventoryState(BaseModel):
    """Supply picture for one kit type as of today."""
    kit_type_id: uuid.UUID
    kits_available: int = 0
    kits_expiring_soon: int = 0
    pending_order_quantity: int = 0
    overdue_order_quantity: int = 0
    pending_orders: list[PendingOrderView] = Field(default_factory=list)


# =============================================================================
# FORECAST
# =============================================================================

class ForecastConfig(BaseModel):
    """Tunable risk and recommendation policy."""
    deficit_weight: float = settings.RISK_DEFICIT_WEIGHT
    surge_weight: float = settings.RISK_SURGE_WEIGHT
    expiring_weight: float = settings.RISK_EXPIRING_WEIGHT
    overdue_weight: float = settings.RISK_OVERDUE_WEIGHT
    surge_ratio: float = settings.RISK_SURGE_RATIO
    high_threshold: float = settings.RISK_HIGH_THRESHOLD
    medium_threshold: float = settings.RISK_MEDIUM_THRESHOLD
    low_buffer_threshold: int = 2
    max_risk_score: float = 100.0
    deficit_confidence: float = Field(settings.RECOMMENDATION_DEFICIT_CONFIDENCE, ge=0, le=1)
    buffer_confidence: float = Field(settings.RECOMMENDATION_BUFFER_CONFIDENCE, ge=0, le=1)


class RiskFactor(BaseModel):
    type: RiskFactorType
    score: float
    detail: str


class ForecastRecord(BaseModel):
    """Per kit type forecast for one run."""
    kit_type_id: uuid.UUID
    kit_type_name: str
    optional: bool = False
    visits_scheduled: int = 0
    kits_required: int = 0
    per_day_demand: float = 0.0
    buffer_target: int = 0
    buffer_kits_needed: int = 0
    required_with_buffer: int = 0
    kits_available: int = 0
    kits_expiring_soon: int = 0
    pending_order_quantity: int = 0
    original_deficit: int = 0
    deficit: int = 0
    status: ForecastStatus = ForecastStatus.OK
    risk_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    recommended_order_qty: int = 0
    policy: KitTypePolicy = Field(default_factory=KitTypePolicy)
    upcoming_visits: list[UpcomingVisit] = Field(default_factory=list)
    requirements: list[RequirementBreakdown] = Field(default_factory=list)
    pending_orders: list[PendingOrderView] = Field(default_factory=list)

    @property
    def earliest_visit_date(self) -> Optional[date]:
        return self.upcoming_visits[0].visit_date if self.upcoming_visits else None

    @property
    def latest_visit_date(self) -> Optional[date]:
        return self.upcoming_visits[-1].visit_date if self.upcoming_visits else None


class ForecastSummary(BaseModel):
    total_visits_scheduled: int = 0
    critical_issues: int = 0
    warnings: int = 0
    days_ahead: int
    base_window_days: int
    inventory_buffer_days: int = 0
    visit_window_buffer_days: int = 0


class ForecastContext(BaseModel):
    today: date
    future: date
    effective_days_ahead: int
    inventory_buffer_days: int = 0
    inventory_buffer_kits: int = 0
    visit_window_buffer_days: int = 0
    kit_type_names: dict[str, Optional[str]] = Field(default_factory=dict)


class InventoryForecast(BaseModel):
    study_id: uuid.UUID
    forecast: list[ForecastRecord]
    summary: ForecastSummary
    context: ForecastContext


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

class RecommendationCandidate(BaseModel):
    kit_type_id: uuid.UUID
    reason_type: ReasonType
    reason: str
    recommended_quantity: int = Field(..., gt=0)
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    latest_order_date: Optional[date] = None
    confidence: float = Field(..., ge=0, le=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.kit_type_id}|{self.reason_type.value}"


class RecomputeResult(BaseModel):
    study_id: uuid.UUID
    created: int = 0
    updated: int = 0
    expired: int = 0
    recommendations: list[RecommendationRecord] = Field(default_factory=list)


class RecomputeAllStudyResult(BaseModel):
    study_id: uuid.UUID
    status: str
    created: Optional[int] = None
    updated: Optional[int] = None
    expired: Optional[int] = None
    error: Optional[str] = None


class RecomputeAllResult(BaseModel):
    processed: int = 0
    failures: int = 0
    totals: dict[str, int] = Field(default_factory=lambda: {"created": 0, "updated": 0, "expired": 0})
    results: list[RecomputeAllStudyResult] = Field(default_factory=list)


class RecomputeAllRequest(BaseModel):
    days_ahead: Optional[int] = None
    study_statuses: Optional[list[str]] = None


class ExpireKitsResult(BaseModel):
    study_id: Optional[uuid.UUID] = None
    expired: int


class RecommendationItem(BaseModel):
    id: uuid.UUID
    study_id: uuid.UUID
    kit_type_id: Optional[uuid.UUID] = None
    kit_type_name: Optional[str] = None
    status: RecommendationStatus
    recommended_quantity: int
    reason: str
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    latest_order_date: Optional[date] = None
    confidence: Optional[float] = None
    metadata: Any = Field(default_factory=dict)
    dismissed_reason: Optional[str] = None
    acted_by: Optional[uuid.UUID] = None
    acted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RecommendationList(BaseModel):
    study_id: uuid.UUID
    recommendations: list[RecommendationItem]
    counts: dict[str, int]


class RecommendationActionRequest(BaseModel):
    action: str = Field(..., pattern="^(act|dismiss)$")
    reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


# =============================================================================
# ALERTS
# =============================================================================

class AlertGroup(BaseModel):
    severity: str
    total: int
    items: list[dict[str, Any]]
    has_more: bool
    active: Optional[int] = None


class ForecastAlerts(BaseModel):
    summary: dict[str, Any]
    groups: dict[str, AlertGroup]
    meta: dict[str, int]
    forecast_summary: ForecastSummary
