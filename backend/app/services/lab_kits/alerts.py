"""
Study Coordinator - Forecast Alerts

Groups supply problems for a study into alert buckets with a severity
summary. Built on top of the forecast plus a raw read of the study's kits.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from app.models.lab_kits import (
    AlertGroup,
    ForecastAlerts,
    ForecastRecord,
    KitStatus,
    LabKitRecord,
)
from app.services.lab_kits.errors import read_or_fail
from app.services.lab_kits.forecast_engine import ForecastEngine
from app.services.lab_kits.repository import LabKitRepository

DEFAULT_LIMIT = 10
MAX_LIMIT = 100
DEFAULT_PENDING_AGING_DAYS = 7
DEFAULT_SHIPPED_AGING_DAYS = 10
LOW_BUFFER_KITS = 2


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, limit))


def _days_in_status(kit: LabKitRecord, today: date) -> Optional[int]:
    reference = kit.updated_at or kit.created_at
    if reference is None:
        return None
    return (today - reference.date()).days


def _serialize_kit(kit: LabKitRecord, kit_type_names: dict[str, Optional[str]], today: date) -> dict[str, Any]:
    name = kit.kit_type
    if kit.kit_type_id is not None and str(kit.kit_type_id) in kit_type_names:
        name = kit_type_names[str(kit.kit_type_id)] or kit.kit_type
    return {
        "id": kit.id,
        "accession_number": kit.accession_number,
        "kit_type_id": kit.kit_type_id,
        "kit_type_name": name,
        "status": kit.status,
        "expiration_date": kit.expiration_date,
        "updated_at": kit.updated_at,
        "created_at": kit.created_at,
        "days_in_status": _days_in_status(kit, today),
        "days_until_expiration": (kit.expiration_date - today).days if kit.expiration_date else None,
    }


def _serialize_deficit(item: ForecastRecord) -> dict[str, Any]:
    return {
        "kit_type_id": item.kit_type_id,
        "kit_type_name": item.kit_type_name,
        "deficit": item.deficit,
        "original_deficit": item.original_deficit,
        "pending_order_quantity": item.pending_order_quantity,
        "pending_orders": [order.model_dump() for order in item.pending_orders[:5]],
        "kits_available": item.kits_available,
        "kits_required": item.kits_required,
        "required_with_buffer": item.required_with_buffer,
        "buffer_kits_needed": item.buffer_kits_needed,
        "optional": item.optional,
        "status": item.status.value,
        "risk_level": item.risk_level.value,
    }


def _serialize_low_buffer(item: ForecastRecord) -> dict[str, Any]:
    return {
        "kit_type_id": item.kit_type_id,
        "kit_type_name": item.kit_type_name,
        "buffer": item.kits_available - item.kits_required,
        "kits_available": item.kits_available,
        "kits_required": item.kits_required,
        "required_with_buffer": item.required_with_buffer,
        "pending_order_quantity": item.pending_order_quantity,
        "buffer_kits_needed": item.buffer_kits_needed,
        "status": item.status.value,
    }


class ForecastAlertService:
    def __init__(self, repository: LabKitRepository, forecast_engine: Optional[ForecastEngine] = None):
        self.repository = repository
        self.forecast_engine = forecast_engine or ForecastEngine(repository)

    async def build_forecast_alerts(
        self,
        study_id: uuid.UUID,
        days: int,
        expiring_days: int,
        pending_aging_days: int = DEFAULT_PENDING_AGING_DAYS,
        shipped_aging_days: int = DEFAULT_SHIPPED_AGING_DAYS,
        limit: int = DEFAULT_LIMIT,
        today: Optional[date] = None,
    ) -> ForecastAlerts:
        today = today or datetime.now(timezone.utc).date()
        limit = clamp_limit(limit)

        forecast = await self.forecast_engine.load_forecast(study_id, days, today)
        kits = await read_or_fail(self.repository.list_lab_kits(study_id), "Failed to load lab kit data", study_id)
        names = forecast.context.kit_type_names
        expiry_cutoff = today + timedelta(days=expiring_days)

        expiring_soon = [
            kit for kit in kits
            if kit.status == KitStatus.AVAILABLE.value
            and kit.expiration_date is not None
            and today <= kit.expiration_date <= expiry_cutoff
        ]
        expired = [kit for kit in kits if kit.status == KitStatus.EXPIRED.value]
        pending_aging = [
            kit for kit in kits
            if kit.status == KitStatus.PENDING_SHIPMENT.value
            and _days_in_status(kit, today) is not None
            and _days_in_status(kit, today) >= pending_aging_days
        ]
        shipped_stuck = [
            kit for kit in kits
            if kit.status == KitStatus.SHIPPED.value
            and _days_in_status(kit, today) is not None
            and _days_in_status(kit, today) >= shipped_aging_days
        ]

        supply_deficit = [
            item for item in forecast.forecast
            if item.original_deficit > 0 or item.pending_order_quantity > 0
        ]
        active_deficit = [item for item in supply_deficit if item.deficit > 0]
        low_buffer = [
            item for item in forecast.forecast
            if item.deficit == 0 and item.kits_available - item.kits_required <= LOW_BUFFER_KITS
        ]

        def group(severity: str, items: list[dict[str, Any]], active: Optional[int] = None) -> AlertGroup:
            return AlertGroup(
                severity=severity,
                total=len(items),
                items=items[:limit],
                has_more=len(items) > limit,
                active=active,
            )

        groups = {
            "supply_deficit": group(
                "critical" if active_deficit else "warning",
                [_serialize_deficit(item) for item in supply_deficit],
                active=len(active_deficit),
            ),
            "expiring_soon": group("warning", [_serialize_kit(kit, names, today) for kit in expiring_soon]),
            "pending_shipment": group("warning", [_serialize_kit(kit, names, today) for kit in pending_aging]),
            "shipped_without_delivery": group(
                "warning", [_serialize_kit(kit, names, today) for kit in shipped_stuck]
            ),
            "low_buffer": group("warning", [_serialize_low_buffer(item) for item in low_buffer]),
            "expired": group("info", [_serialize_kit(kit, names, today) for kit in expired]),
        }

        covered = len(supply_deficit) - len(active_deficit)
        warnings = covered + len(expiring_soon) + len(pending_aging) + len(shipped_stuck) + len(low_buffer)
        summary = {
            "total": len(active_deficit) + warnings + len(expired),
            "by_severity": {
                "critical": len(active_deficit),
                "warning": warnings,
                "info": len(expired),
            },
        }

        return ForecastAlerts(
            summary=summary,
            groups=groups,
            meta={
                "limit": limit,
                "days_ahead": days,
                "expiring_days": expiring_days,
                "pending_aging_days": pending_aging_days,
                "shipped_aging_days": shipped_aging_days,
            },
            forecast_summary=forecast.summary,
        )
