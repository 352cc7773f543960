"""
Study Coordinator - Lab Kit Supply API Routes
Forecast, alerts, settings and reorder recommendations
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from app.core.config import settings
from app.dependencies import get_actor_id, get_repository, require_job_token
from app.models.lab_kits import (
    ExpireKitsResult,
    ForecastAlerts,
    InventoryForecast,
    RecommendationActionRequest,
    RecommendationItem,
    RecommendationList,
    RecomputeAllRequest,
    RecomputeAllResult,
    RecomputeResult,
    SettingsPatch,
    SettingsSnapshot,
)
from app.services.lab_kits.alerts import (
    DEFAULT_LIMIT,
    DEFAULT_PENDING_AGING_DAYS,
    DEFAULT_SHIPPED_AGING_DAYS,
    ForecastAlertService,
)
from app.services.lab_kits.errors import LabKitError
from app.services.lab_kits.forecast_engine import ForecastEngine
from app.services.lab_kits.inventory_state import InventoryStateAggregator
from app.services.lab_kits.recommendation_engine import RecommendationEngine
from app.services.lab_kits.recommendation_service import RecommendationService
from app.services.lab_kits.repository import LabKitRepository
from app.services.lab_kits.settings_service import LabKitSettingsService

router = APIRouter(prefix="/lab-kits", tags=["Lab Kit Supply"])


def _http_error(exc: LabKitError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _positive(value: Optional[int], default: int) -> int:
    return value if value is not None and value > 0 else default


# =============================================================================
# FORECAST
# =============================================================================

@router.get("/studies/{study_id}/forecast", response_model=InventoryForecast)
async def get_inventory_forecast(
    study_id: uuid.UUID,
    days: Optional[int] = Query(None),
    repository: LabKitRepository = Depends(get_repository),
) -> InventoryForecast:
    """
    Per kit type forecast over the next `days` (plus the study visit window).

    Critical rows first, then by deficit and scheduled visits.
    """
    try:
        return await ForecastEngine(repository).load_forecast(study_id, days)
    except LabKitError as exc:
        raise _http_error(exc) from exc


@router.get("/studies/{study_id}/alerts", response_model=ForecastAlerts)
async def get_forecast_alerts(
    study_id: uuid.UUID,
    days: Optional[int] = Query(None),
    expiring_days: Optional[int] = Query(None),
    pending_aging_days: Optional[int] = Query(None),
    shipped_aging_days: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
    repository: LabKitRepository = Depends(get_repository),
) -> ForecastAlerts:
    try:
        return await ForecastAlertService(repository).build_forecast_alerts(
            study_id,
            days=_positive(days, settings.FORECAST_DEFAULT_DAYS),
            expiring_days=_positive(expiring_days, settings.FORECAST_DEFAULT_DAYS),
            pending_aging_days=_positive(pending_aging_days, DEFAULT_PENDING_AGING_DAYS),
            shipped_aging_days=_positive(shipped_aging_days, DEFAULT_SHIPPED_AGING_DAYS),
            limit=_positive(limit, DEFAULT_LIMIT),
        )
    except LabKitError as exc:
        raise _http_error(exc) from exc


# =============================================================================
# SETTINGS
# =============================================================================

@router.get("/studies/{study_id}/settings", response_model=SettingsSnapshot)
async def get_lab_kit_settings(
    study_id: uuid.UUID,
    response: Response,
    repository: LabKitRepository = Depends(get_repository),
) -> SettingsSnapshot:
    try:
        snapshot = await LabKitSettingsService(repository).fetch_settings(study_id)
    except LabKitError as exc:
        raise _http_error(exc) from exc
    response.headers["ETag"] = f'"{snapshot.etag}"'
    return snapshot


@router.patch("/studies/{study_id}/settings", response_model=SettingsSnapshot)
async def patch_lab_kit_settings(
    study_id: uuid.UUID,
    patch: SettingsPatch,
    response: Response,
    if_match: Optional[str] = Header(None),
    actor_id: Optional[uuid.UUID] = Depends(get_actor_id),
    repository: LabKitRepository = Depends(get_repository),
) -> SettingsSnapshot:
    """Apply a settings patch. Send the last ETag as If-Match to avoid lost updates."""
    try:
        snapshot = await LabKitSettingsService(repository).apply_settings_patch(
            study_id, actor_id, patch, if_match=if_match
        )
    except LabKitError as exc:
        raise _http_error(exc) from exc
    response.headers["ETag"] = f'"{snapshot.etag}"'
    return snapshot


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

@router.get("/studies/{study_id}/recommendations", response_model=RecommendationList)
async def list_recommendations(
    study_id: uuid.UUID,
    status: Optional[list[str]] = Query(None),
    repository: LabKitRepository = Depends(get_repository),
) -> RecommendationList:
    """List recommendations, optionally filtered by one or more statuses."""
    statuses = [part.strip() for value in (status or []) for part in value.split(",") if part.strip()]
    try:
        return await RecommendationService(repository).list_recommendations(study_id, statuses)
    except LabKitError as exc:
        raise _http_error(exc) from exc


@router.post("/studies/{study_id}/recommendations/recompute", response_model=RecomputeResult)
async def recompute_recommendations(
    study_id: uuid.UUID,
    days: Optional[int] = Query(None),
    actor_id: Optional[uuid.UUID] = Depends(get_actor_id),
    repository: LabKitRepository = Depends(get_repository),
) -> RecomputeResult:
    try:
        return await RecommendationEngine(repository).recompute(study_id, days, actor_id=actor_id)
    except LabKitError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/studies/{study_id}/recommendations/{recommendation_id}/action",
    response_model=RecommendationItem,
)
async def act_on_recommendation(
    study_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    request: RecommendationActionRequest,
    actor_id: Optional[uuid.UUID] = Depends(get_actor_id),
    repository: LabKitRepository = Depends(get_repository),
) -> RecommendationItem:
    """Mark a `new` recommendation as acted on, or dismiss it with a reason."""
    try:
        return await RecommendationService(repository).apply_action(
            study_id, recommendation_id, actor_id, request
        )
    except LabKitError as exc:
        raise _http_error(exc) from exc


# =============================================================================
# BATCH JOBS
# =============================================================================

@router.post(
    "/recommendations/recompute-all",
    response_model=RecomputeAllResult,
    dependencies=[Depends(require_job_token)],
)
async def recompute_all_recommendations(
    payload: Optional[RecomputeAllRequest] = None,
    repository: LabKitRepository = Depends(get_repository),
) -> RecomputeAllResult:
    payload = payload or RecomputeAllRequest()
    try:
        return await RecommendationEngine(repository).recompute_all(
            payload.days_ahead, payload.study_statuses
        )
    except LabKitError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/maintenance/expire-kits",
    response_model=ExpireKitsResult,
    dependencies=[Depends(require_job_token)],
)
async def expire_kits(
    study_id: Optional[uuid.UUID] = Query(None),
    repository: LabKitRepository = Depends(get_repository),
) -> ExpireKitsResult:
    """Move available kits past their expiration date to `expired`."""
    expired = await InventoryStateAggregator(repository).sweep_expired_kits(study_id)
    return ExpireKitsResult(study_id=study_id, expired=expired)
