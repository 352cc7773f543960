# Lab Kit Supply Services
from app.services.lab_kits.alerts import ForecastAlertService
from app.services.lab_kits.demand_projector import DemandProjector, project_demand
from app.services.lab_kits.errors import (
    ForecastServiceError,
    LabKitError,
    LabKitRecommendationError,
    LabKitSettingsError,
    StudyNotFoundError,
)
from app.services.lab_kits.forecast_engine import ForecastEngine, build_forecast_record
from app.services.lab_kits.inventory_state import InventoryStateAggregator, aggregate_inventory
from app.services.lab_kits.memory_repository import InMemoryLabKitRepository
from app.services.lab_kits.recommendation_engine import RecommendationEngine, build_candidates
from app.services.lab_kits.recommendation_service import RecommendationService
from app.services.lab_kits.repository import LabKitRepository
from app.services.lab_kits.settings_service import LabKitSettingsService, resolve_settings
from app.services.lab_kits.sql_repository import SqlLabKitRepository

__all__ = [
    "ForecastAlertService",
    "DemandProjector",
    "project_demand",
    "ForecastServiceError",
    "LabKitError",
    "LabKitRecommendationError",
    "LabKitSettingsError",
    "StudyNotFoundError",
    "ForecastEngine",
    "build_forecast_record",
    "InventoryStateAggregator",
    "aggregate_inventory",
    "InMemoryLabKitRepository",
    "RecommendationEngine",
    "build_candidates",
    "RecommendationService",
    "LabKitRepository",
    "LabKitSettingsService",
    "resolve_settings",
    "SqlLabKitRepository",
]
