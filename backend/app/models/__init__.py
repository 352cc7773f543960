from app.models.lab_kits import (
    ForecastConfig,
    ForecastRecord,
    ForecastStatus,
    InventoryForecast,
    KitStatus,
    KitTypePolicy,
    RecommendationRecord,
    RecommendationStatus,
    RiskLevel,
    SettingsPatch,
    SettingsSnapshot,
)

__all__ = [
    "ForecastConfig",
    "ForecastRecord",
    "ForecastStatus",
    "InventoryForecast",
    "KitStatus",
    "KitTypePolicy",
    "RecommendationRecord",
    "RecommendationStatus",
    "RiskLevel",
    "SettingsPatch",
    "SettingsSnapshot",
]
