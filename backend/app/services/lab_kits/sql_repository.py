"""
Study Coordinator - PostgreSQL Lab Kit Repository

Each call opens its own session from async_session_maker and commits its own
writes, so independent reads can be awaited concurrently and a failed write
never rolls back rows committed earlier in the same run. A settings or
recommendation row and its history entry share one commit.
"""

import uuid
from datetime import date
from typing import Any, Optional, Sequence

from sqlalchemy import inspect, select, update

from app.db.models import (
    LabKit,
    LabKitOrder,
    LabKitRecommendation,
    LabKitRecommendationHistory,
    LabKitSetting,
    LabKitSettingHistory,
    Study,
    StudyKitType,
    Subject,
    SubjectVisit,
    VisitKitRequirement,
    VisitSchedule,
)
from app.db.session import async_session_maker
from app.models.lab_kits import (
    KitStatus,
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
from app.services.lab_kits.repository import (
    LabKitRepository,
    RecommendationHistoryBuilder,
    SettingsHistoryBuilder,
)

# Column name -> mapped attribute, where they differ
_ATTRIBUTE_NAMES = {"metadata": "metadata_"}


def _row_values(obj: Any) -> dict[str, Any]:
    """ORM instance -> dict keyed by column name."""
    mapper = inspect(obj).mapper
    return {attr.columns[0].name: getattr(obj, attr.key) for attr in mapper.column_attrs}


def _attribute_values(values: dict[str, Any]) -> dict[str, Any]:
    return {_ATTRIBUTE_NAMES.get(key, key): value for key, value in values.items()}


class SqlLabKitRepository(LabKitRepository):
    """LabKitRepository backed by the async SQLAlchemy session factory."""

    def __init__(self, session_factory=async_session_maker):
        self._session_factory = session_factory

    # =========================================================================
    # STUDIES & CATALOGUE
    # =========================================================================

    async def get_study(self, study_id: uuid.UUID) -> Optional[StudyRecord]:
        async with self._session_factory() as session:
            study = await session.get(Study, study_id)
            return StudyRecord(**_row_values(study)) if study else None

    async def list_studies(self, statuses: Optional[Sequence[str]] = None) -> list[StudyRecord]:
        stmt = select(Study).order_by(Study.created_at)
        if statuses:
            stmt = stmt.where(Study.status.in_(list(statuses)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [StudyRecord(**_row_values(row)) for row in result.scalars().all()]

    async def update_study(self, study_id: uuid.UUID, values: dict[str, Any]) -> StudyRecord:
        async with self._session_factory() as session:
            await session.execute(update(Study).where(Study.id == study_id).values(**values))
            await session.commit()
            study = await session.get(Study, study_id, populate_existing=True)
            return StudyRecord(**_row_values(study))

    async def list_kit_types(self, study_id: uuid.UUID) -> list[KitTypeRecord]:
        stmt = (
            select(StudyKitType)
            .where(StudyKitType.study_id == study_id)
            .order_by(StudyKitType.name)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [KitTypeRecord(**_row_values(row)) for row in result.scalars().all()]

    async def list_visit_schedules(self, study_id: uuid.UUID) -> list[VisitScheduleRecord]:
        stmt = (
            select(VisitSchedule)
            .where(VisitSchedule.study_id == study_id)
            .order_by(VisitSchedule.visit_day, VisitSchedule.visit_name)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [VisitScheduleRecord(**_row_values(row)) for row in result.scalars().all()]

    async def list_visit_requirements(self, study_id: uuid.UUID) -> list[VisitRequirementRecord]:
        stmt = select(VisitKitRequirement).where(VisitKitRequirement.study_id == study_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [VisitRequirementRecord(**_row_values(row)) for row in result.scalars().all()]

    async def list_subject_visits(
        self,
        study_id: uuid.UUID,
        start: date,
        end: date,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[SubjectVisitRecord]:
        stmt = (
            select(SubjectVisit, Subject.subject_number)
            .join(Subject, Subject.id == SubjectVisit.subject_id, isouter=True)
            .where(
                SubjectVisit.study_id == study_id,
                SubjectVisit.visit_date >= start,
                SubjectVisit.visit_date <= end,
            )
            .order_by(SubjectVisit.visit_date)
        )
        if statuses:
            stmt = stmt.where(SubjectVisit.status.in_(list(statuses)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                SubjectVisitRecord(**_row_values(visit), subject_number=subject_number)
                for visit, subject_number in result.all()
            ]

    # =========================================================================
    # INVENTORY & ORDERS
    # =========================================================================

    async def list_lab_kits(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[LabKitRecord]:
        stmt = select(LabKit).where(LabKit.study_id == study_id).order_by(LabKit.created_at)
        if statuses:
            stmt = stmt.where(LabKit.status.in_(list(statuses)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [LabKitRecord(**_row_values(row)) for row in result.scalars().all()]

    async def expire_lab_kits(self, before: date, study_id: Optional[uuid.UUID] = None) -> int:
        stmt = update(LabKit).where(
            LabKit.status == KitStatus.AVAILABLE.value,
            LabKit.expiration_date.is_not(None),
            LabKit.expiration_date < before,
        )
        if study_id is not None:
            stmt = stmt.where(LabKit.study_id == study_id)
        stmt = stmt.values(status=KitStatus.EXPIRED.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def list_orders(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[LabKitOrderRecord]:
        stmt = select(LabKitOrder).where(LabKitOrder.study_id == study_id)
        if statuses:
            stmt = stmt.where(LabKitOrder.status.in_(list(statuses)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [LabKitOrderRecord(**_row_values(row)) for row in result.scalars().all()]

    # =========================================================================
    # SETTINGS
    # =========================================================================

    async def list_settings(self, study_id: uuid.UUID) -> list[LabKitSettingRecord]:
        stmt = select(LabKitSetting).where(LabKitSetting.study_id == study_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [LabKitSettingRecord(**_row_values(row)) for row in result.scalars().all()]

    async def insert_setting(
        self,
        values: dict[str, Any],
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> LabKitSettingRecord:
        async with self._session_factory() as session:
            row = LabKitSetting(**_attribute_values(values))
            session.add(row)
            await session.flush()
            await session.refresh(row)
            record = LabKitSettingRecord(**_row_values(row))
            if history is not None:
                session.add(LabKitSettingHistory(**history(record)))
            await session.commit()
            return record

    async def update_setting(
        self,
        setting_id: uuid.UUID,
        values: dict[str, Any],
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> LabKitSettingRecord:
        async with self._session_factory() as session:
            row = await session.get(LabKitSetting, setting_id)
            if row is None:
                raise LookupError(f"Lab kit setting {setting_id} not found")
            for key, value in _attribute_values(values).items():
                setattr(row, key, value)
            await session.flush()
            await session.refresh(row)
            record = LabKitSettingRecord(**_row_values(row))
            if history is not None:
                session.add(LabKitSettingHistory(**history(record)))
            await session.commit()
            return record

    async def delete_setting(
        self,
        setting_id: uuid.UUID,
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> None:
        async with self._session_factory() as session:
            row = await session.get(LabKitSetting, setting_id)
            if row is None:
                return
            record = LabKitSettingRecord(**_row_values(row))
            await session.delete(row)
            if history is not None:
                session.add(LabKitSettingHistory(**history(record)))
            await session.commit()

    # =========================================================================
    # RECOMMENDATIONS
    # =========================================================================

    async def list_recommendations(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[RecommendationRecord]:
        stmt = (
            select(LabKitRecommendation)
            .where(LabKitRecommendation.study_id == study_id)
            .order_by(LabKitRecommendation.created_at.desc())
        )
        if statuses:
            stmt = stmt.where(LabKitRecommendation.status.in_(list(statuses)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [RecommendationRecord(**_row_values(row)) for row in result.scalars().all()]

    async def get_recommendation(self, recommendation_id: uuid.UUID) -> Optional[RecommendationRecord]:
        async with self._session_factory() as session:
            row = await session.get(LabKitRecommendation, recommendation_id)
            return RecommendationRecord(**_row_values(row)) if row else None

    async def insert_recommendation(
        self,
        values: dict[str, Any],
        history: Optional[RecommendationHistoryBuilder] = None,
    ) -> RecommendationRecord:
        async with self._session_factory() as session:
            row = LabKitRecommendation(**_attribute_values(values))
            session.add(row)
            await session.flush()
            await session.refresh(row)
            record = RecommendationRecord(**_row_values(row))
            if history is not None:
                session.add(LabKitRecommendationHistory(**history(record)))
            await session.commit()
            return record

    async def update_recommendation(
        self,
        recommendation_id: uuid.UUID,
        values: dict[str, Any],
        history: Optional[RecommendationHistoryBuilder] = None,
    ) -> RecommendationRecord:
        async with self._session_factory() as session:
            row = await session.get(LabKitRecommendation, recommendation_id)
            if row is None:
                raise LookupError(f"Recommendation {recommendation_id} not found")
            for key, value in _attribute_values(values).items():
                setattr(row, key, value)
            await session.flush()
            await session.refresh(row)
            record = RecommendationRecord(**_row_values(row))
            if history is not None:
                session.add(LabKitRecommendationHistory(**history(record)))
            await session.commit()
            return record
