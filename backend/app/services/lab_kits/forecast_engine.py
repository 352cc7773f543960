"""
Study Coordinator - Inventory Forecast Engine

Merges projected demand, current supply and the resolved buffer policy into
one forecast record per kit type.

Per kit type:
    bufferTarget       = max(time cushion, minimum on hand, fixed buffer kits)
    requiredWithBuffer = kitsRequired + bufferTarget
    originalDeficit    = max(0, requiredWithBuffer - available)
    deficit            = max(0, requiredWithBuffer - available - pending)

Risk is a weighted sum of independent factors (deficit, demand surge,
expiring stock, overdue orders). Weights live in ForecastConfig.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from app.models.lab_kits import (
    ForecastConfig,
    ForecastContext,
    ForecastRecord,
    ForecastStatus,
    ForecastSummary,
    InventoryForecast,
    KitDemand,
    KitInventoryState,
    KitTypePolicy,
    KitTypeRecord,
    RiskFactor,
    RiskFactorType,
    RiskLevel,
    StudyRecord,
)
from app.services.lab_kits.demand_projector import (
    UNCATEGORIZED_KIT,
    DemandProjector,
    clamp_days_ahead,
    effective_horizon,
)
from app.services.lab_kits.errors import StudyNotFoundError, read_or_fail
from app.services.lab_kits.inventory_state import InventoryStateAggregator
from app.services.lab_kits.repository import LabKitRepository
from app.services.lab_kits.settings_service import resolve_settings, split_settings_rows

logger = logging.getLogger(__name__)

STATUS_SEVERITY = {
    ForecastStatus.CRITICAL: 0,
    ForecastStatus.WARNING: 1,
    ForecastStatus.OK: 2,
}


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


# =============================================================================
# CALCULATIONS
# =============================================================================

def compute_buffer_target(
    kits_required: int,
    horizon_days: int,
    policy: KitTypePolicy,
    inventory_buffer_days: int = 0,
    inventory_buffer_kits: int = 0,
    kit_type_buffer_count: int = 0,
) -> tuple[int, int]:
    """
    Returns (buffer_target, buffer_kits_needed).

    Time cushions cover N days at the horizon's burn rate and always round up.
    buffer_kits_needed is the study-level time cushion on its own.
    """
    denominator = max(1, horizon_days)
    policy_cushion = _ceil_div(kits_required * policy.buffer_days, denominator)
    study_cushion = _ceil_div(kits_required * max(0, inventory_buffer_days), denominator)
    target = max(
        policy_cushion,
        study_cushion,
        policy.min_on_hand,
        max(0, inventory_buffer_kits),
        max(0, kit_type_buffer_count),
    )
    return target, study_cushion


def classify_status(
    deficit: int,
    slack: int,
    kits_expiring_soon: int,
    low_buffer_threshold: int,
) -> ForecastStatus:
    if deficit > 0:
        return ForecastStatus.CRITICAL
    if slack <= low_buffer_threshold or kits_expiring_soon > 0:
        return ForecastStatus.WARNING
    return ForecastStatus.OK


def recommended_order_quantity(
    deficit: int,
    buffer_target: int,
    slack_after_pending: int,
    low_buffer_threshold: int,
) -> int:
    """Close the outstanding gap, or top the buffer back above the low-buffer band."""
    if deficit > 0:
        return deficit
    if buffer_target > 0 and slack_after_pending <= low_buffer_threshold:
        return low_buffer_threshold + 1 - slack_after_pending
    return 0


def score_risk(
    record: ForecastRecord,
    historical_visits: int,
    overdue_order_quantity: int,
    horizon_days: int,
    config: ForecastConfig,
) -> tuple[float, RiskLevel, list[RiskFactor]]:
    factors: list[RiskFactor] = []

    if record.deficit > 0:
        magnitude = min(1.0, record.deficit / max(1, record.required_with_buffer))
        factors.append(RiskFactor(
            type=RiskFactorType.DEFICIT,
            score=round(config.deficit_weight * (0.5 + 0.5 * magnitude), 1),
            detail=f"{record.deficit} of {record.required_with_buffer} required kits not covered",
        ))

    if historical_visits > 0:
        ratio = record.visits_scheduled / historical_visits
        if ratio >= config.surge_ratio:
            factors.append(RiskFactor(
                type=RiskFactorType.DEMAND_SURGE,
                score=round(config.surge_weight * min(1.0, ratio - 1), 1),
                detail=(
                    f"{record.visits_scheduled} visits scheduled vs {historical_visits} "
                    f"completed in the previous {horizon_days} days"
                ),
            ))

    if record.kits_expiring_soon > 0 and record.kits_available > 0:
        share = min(1.0, record.kits_expiring_soon / record.kits_available)
        factors.append(RiskFactor(
            type=RiskFactorType.EXPIRING_SOON,
            score=round(config.expiring_weight * share, 1),
            detail=f"{record.kits_expiring_soon} of {record.kits_available} available kits expire within the window",
        ))

    if overdue_order_quantity > 0 and record.pending_order_quantity > 0:
        share = min(1.0, overdue_order_quantity / record.pending_order_quantity)
        factors.append(RiskFactor(
            type=RiskFactorType.OVERDUE_ORDERS,
            score=round(config.overdue_weight * share, 1),
            detail=f"{overdue_order_quantity} of {record.pending_order_quantity} pending kits are past expected arrival",
        ))

    score = round(min(config.max_risk_score, sum(factor.score for factor in factors)), 1)
    if score >= config.high_threshold:
        level = RiskLevel.HIGH
    elif score >= config.medium_threshold:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW
    return score, level, factors


def build_forecast_record(
    kit_type_id: uuid.UUID,
    kit_type_name: str,
    demand: Optional[KitDemand],
    inventory: Optional[KitInventoryState],
    policy: KitTypePolicy,
    horizon_days: int,
    study: StudyRecord,
    kit_type: Optional[KitTypeRecord] = None,
    config: Optional[ForecastConfig] = None,
) -> Optional[ForecastRecord]:
    """One kit type's forecast, or None when there is nothing to track."""
    config = config or ForecastConfig()
    demand = demand or KitDemand(kit_type_id=kit_type_id, kit_type_name=kit_type_name, optional=False)
    inventory = inventory or KitInventoryState(kit_type_id=kit_type_id)

    buffer_target, buffer_kits_needed = compute_buffer_target(
        demand.kits_required,
        horizon_days,
        policy,
        inventory_buffer_days=study.inventory_buffer_days,
        inventory_buffer_kits=study.inventory_buffer_kits,
        kit_type_buffer_count=(kit_type.buffer_count or 0) if kit_type else 0,
    )
    if demand.kits_required == 0 and buffer_target == 0:
        return None

    required_with_buffer = demand.kits_required + buffer_target
    available = inventory.kits_available
    pending = inventory.pending_order_quantity
    original_deficit = max(0, required_with_buffer - available)
    deficit = max(0, required_with_buffer - available - pending)
    threshold = min(config.low_buffer_threshold, buffer_target)

    record = ForecastRecord(
        kit_type_id=kit_type_id,
        kit_type_name=kit_type_name,
        optional=demand.optional,
        visits_scheduled=demand.visits_scheduled,
        kits_required=demand.kits_required,
        per_day_demand=round(demand.kits_required / max(1, horizon_days), 4),
        buffer_target=buffer_target,
        buffer_kits_needed=buffer_kits_needed,
        required_with_buffer=required_with_buffer,
        kits_available=available,
        kits_expiring_soon=inventory.kits_expiring_soon,
        pending_order_quantity=pending,
        original_deficit=original_deficit,
        deficit=deficit,
        status=classify_status(
            deficit, available - required_with_buffer, inventory.kits_expiring_soon, threshold
        ),
        recommended_order_qty=recommended_order_quantity(
            deficit, buffer_target, available + pending - required_with_buffer, threshold
        ),
        policy=policy,
        upcoming_visits=demand.upcoming_visits,
        requirements=demand.requirements,
        pending_orders=inventory.pending_orders,
    )
    record.risk_score, record.risk_level, record.risk_factors = score_risk(
        record, demand.historical_visits, inventory.overdue_order_quantity, horizon_days, config
    )
    return record


def order_forecast(records: Sequence[ForecastRecord]) -> list[ForecastRecord]:
    """Critical first, then larger deficits, then busier kit types."""
    return sorted(
        records,
        key=lambda item: (STATUS_SEVERITY[item.status], -item.deficit, -item.visits_scheduled),
    )


def summarize_forecast(
    records: Sequence[ForecastRecord],
    days_ahead: int,
    base_window_days: int,
    study: StudyRecord,
) -> ForecastSummary:
    return ForecastSummary(
        total_visits_scheduled=sum(item.visits_scheduled for item in records),
        critical_issues=sum(1 for item in records if item.status == ForecastStatus.CRITICAL),
        warnings=sum(1 for item in records if item.status == ForecastStatus.WARNING),
        days_ahead=days_ahead,
        base_window_days=base_window_days,
        inventory_buffer_days=study.inventory_buffer_days,
        visit_window_buffer_days=study.visit_window_buffer_days,
    )


# =============================================================================
# ENGINE
# =============================================================================

class ForecastEngine:
    """
    Builds the inventory forecast for one study.

    Every call re-reads the datastore; nothing is cached between runs. Any
    failed read aborts the run with ForecastServiceError.
    """

    def __init__(self, repository: LabKitRepository, config: Optional[ForecastConfig] = None):
        self.repository = repository
        self.config = config or ForecastConfig()
        self.demand = DemandProjector(repository)
        self.inventory = InventoryStateAggregator(repository)

    async def load_forecast(
        self,
        study_id: uuid.UUID,
        days_ahead: Any = None,
        today: Optional[date] = None,
    ) -> InventoryForecast:
        today = today or datetime.now(timezone.utc).date()
        base_days = clamp_days_ahead(days_ahead)

        study = await read_or_fail(self.repository.get_study(study_id), "Failed to load study settings", study_id)
        if study is None:
            raise StudyNotFoundError(study_id)
        horizon = effective_horizon(base_days, study.visit_window_buffer_days)

        kit_types, setting_rows = await asyncio.gather(
            read_or_fail(self.repository.list_kit_types(study_id), "Failed to load kit types", study_id),
            read_or_fail(self.repository.list_settings(study_id), "Failed to load lab kit settings", study_id),
        )
        kit_type_by_id = {kit_type.id: kit_type for kit_type in kit_types}
        names = {kit_type.id: kit_type.name for kit_type in kit_types}

        demand, inventory = await asyncio.gather(
            self.demand.project(study_id, horizon, today, names),
            self.inventory.aggregate(study_id, horizon, today, kit_types),
        )

        default_row, override_rows = split_settings_rows(setting_rows)

        candidates: list[uuid.UUID] = [kit_type.id for kit_type in kit_types if kit_type.is_active]
        for kit_type_id in [*demand.keys(), *inventory.keys()]:
            if kit_type_id not in candidates:
                candidates.append(kit_type_id)

        records = []
        for kit_type_id in candidates:
            kit_demand = demand.get(kit_type_id)
            name = names.get(kit_type_id) or (kit_demand.kit_type_name if kit_demand else UNCATEGORIZED_KIT)
            record = build_forecast_record(
                kit_type_id,
                name,
                kit_demand,
                inventory.get(kit_type_id),
                resolve_settings(default_row, override_rows.get(kit_type_id)),
                horizon,
                study,
                kit_type=kit_type_by_id.get(kit_type_id),
                config=self.config,
            )
            if record is not None:
                records.append(record)

        records = order_forecast(records)
        return InventoryForecast(
            study_id=study_id,
            forecast=records,
            summary=summarize_forecast(records, horizon, base_days, study),
            context=ForecastContext(
                today=today,
                future=today + timedelta(days=horizon),
                effective_days_ahead=horizon,
                inventory_buffer_days=study.inventory_buffer_days,
                inventory_buffer_kits=study.inventory_buffer_kits,
                visit_window_buffer_days=study.visit_window_buffer_days,
                kit_type_names={str(key): value for key, value in names.items()},
            ),
        )
