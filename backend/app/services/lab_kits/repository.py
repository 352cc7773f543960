"""
Study Coordinator - Lab Kit Data Access Contract

The forecasting engine never talks to the database directly. Every read and
write goes through a LabKitRepository so the same engine runs against
PostgreSQL in production and an in-memory store in tests.

Value dicts passed to insert/update methods use column names, with the JSON
column spelled "metadata".

Settings and recommendation writes take an optional `history` callable. It
receives the written row and returns the history entry, which is committed
in the same transaction as the row: either both land or neither does.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Callable, Optional, Sequence

from app.models.lab_kits import (
    KitTypeRecord,
    LabKitOrderRecord,
    LabKitRecord,
    LabKitSettingRecord,
    RecommendationRecord,
    StudyRecord,
    SubjectVisitRecord,
    VisitRequirementRecord,
    VisitScheduleRecord,
)

SettingsHistoryBuilder = Callable[[LabKitSettingRecord], dict[str, Any]]
RecommendationHistoryBuilder = Callable[[RecommendationRecord], dict[str, Any]]


class LabKitRepository(ABC):
    """Async collaborator interface used by the lab kit services."""

    # =========================================================================
    # STUDIES & CATALOGUE
    # =========================================================================

    @abstractmethod
    async def get_study(self, study_id: uuid.UUID) -> Optional[StudyRecord]:
        ...

    @abstractmethod
    async def list_studies(self, statuses: Optional[Sequence[str]] = None) -> list[StudyRecord]:
        ...

    @abstractmethod
    async def update_study(self, study_id: uuid.UUID, values: dict[str, Any]) -> StudyRecord:
        ...

    @abstractmethod
    async def list_kit_types(self, study_id: uuid.UUID) -> list[KitTypeRecord]:
        ...

    @abstractmethod
    async def list_visit_schedules(self, study_id: uuid.UUID) -> list[VisitScheduleRecord]:
        ...

    @abstractmethod
    async def list_visit_requirements(self, study_id: uuid.UUID) -> list[VisitRequirementRecord]:
        ...

    @abstractmethod
    async def list_subject_visits(
        self,
        study_id: uuid.UUID,
        start: date,
        end: date,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[SubjectVisitRecord]:
        """Visits dated within [start, end] inclusive, ordered by date."""
        ...

    # =========================================================================
    # INVENTORY & ORDERS
    # =========================================================================

    @abstractmethod
    async def list_lab_kits(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[LabKitRecord]:
        ...

    @abstractmethod
    async def expire_lab_kits(self, before: date, study_id: Optional[uuid.UUID] = None) -> int:
        """Move available kits whose expiration date is before `before` to expired."""
        ...

    @abstractmethod
    async def list_orders(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[LabKitOrderRecord]:
        ...

    # =========================================================================
    # SETTINGS
    # =========================================================================

    @abstractmethod
    async def list_settings(self, study_id: uuid.UUID) -> list[LabKitSettingRecord]:
        ...

    @abstractmethod
    async def insert_setting(
        self,
        values: dict[str, Any],
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> LabKitSettingRecord:
        ...

    @abstractmethod
    async def update_setting(
        self,
        setting_id: uuid.UUID,
        values: dict[str, Any],
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> LabKitSettingRecord:
        ...

    @abstractmethod
    async def delete_setting(
        self,
        setting_id: uuid.UUID,
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> None:
        """`history` receives the row as it was before the delete."""
        ...

    # =========================================================================
    # RECOMMENDATIONS
    # =========================================================================

    @abstractmethod
    async def list_recommendations(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[RecommendationRecord]:
        """Recommendations for a study, newest first."""
        ...

    @abstractmethod
    async def get_recommendation(self, recommendation_id: uuid.UUID) -> Optional[RecommendationRecord]:
        ...

    @abstractmethod
    async def insert_recommendation(
        self,
        values: dict[str, Any],
        history: Optional[RecommendationHistoryBuilder] = None,
    ) -> RecommendationRecord:
        ...

    @abstractmethod
    async def update_recommendation(
        self,
        recommendation_id: uuid.UUID,
        values: dict[str, Any],
        history: Optional[RecommendationHistoryBuilder] = None,
    ) -> RecommendationRecord:
        ...
