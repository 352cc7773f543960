"""
Study Coordinator - In-Memory Lab Kit Repository

MOCK datastore used by the test-suite and for local runs without PostgreSQL.
Behaves like SqlLabKitRepository: rows are copied in and out so callers never
share mutable state with the store.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence

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


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryLabKitRepository(LabKitRepository):
    """Dict-backed repository with seeding helpers."""

    def __init__(self):
        self.studies: dict[uuid.UUID, StudyRecord] = {}
        self.kit_types: dict[uuid.UUID, KitTypeRecord] = {}
        self.visit_schedules: dict[uuid.UUID, VisitScheduleRecord] = {}
        self.requirements: dict[uuid.UUID, VisitRequirementRecord] = {}
        self.subject_visits: dict[uuid.UUID, SubjectVisitRecord] = {}
        self.lab_kits: dict[uuid.UUID, LabKitRecord] = {}
        self.orders: dict[uuid.UUID, LabKitOrderRecord] = {}
        self.settings: dict[uuid.UUID, LabKitSettingRecord] = {}
        self.recommendations: dict[uuid.UUID, RecommendationRecord] = {}
        self.settings_history: list[dict[str, Any]] = []
        self.recommendation_history: list[dict[str, Any]] = []
        # operation name -> exception raised while set; "settings_history"
        # and "recommendation_history" fail the history half of a write
        self.failures: dict[str, Exception] = {}

    def _check(self, operation: str) -> None:
        error = self.failures.get(operation)
        if error is not None:
            raise error

    # =========================================================================
    # SEEDING
    # =========================================================================

    def add_study(self, **fields) -> StudyRecord:
        fields.setdefault("id", uuid.uuid4())
        fields.setdefault("updated_at", _now())
        record = StudyRecord(**fields)
        self.studies[record.id] = record
        return record

    def add_kit_type(self, study_id: uuid.UUID, name: str, **fields) -> KitTypeRecord:
        record = KitTypeRecord(id=fields.pop("id", uuid.uuid4()), study_id=study_id, name=name, **fields)
        self.kit_types[record.id] = record
        return record

    def add_visit_schedule(self, study_id: uuid.UUID, visit_name: str, **fields) -> VisitScheduleRecord:
        record = VisitScheduleRecord(
            id=fields.pop("id", uuid.uuid4()), study_id=study_id, visit_name=visit_name, **fields
        )
        self.visit_schedules[record.id] = record
        return record

    def add_requirement(
        self,
        study_id: uuid.UUID,
        visit_schedule_id: uuid.UUID,
        kit_type_id: Optional[uuid.UUID],
        quantity: Optional[int] = 1,
        is_optional: bool = False,
    ) -> VisitRequirementRecord:
        record = VisitRequirementRecord(
            id=uuid.uuid4(),
            study_id=study_id,
            visit_schedule_id=visit_schedule_id,
            kit_type_id=kit_type_id,
            quantity=quantity,
            is_optional=is_optional,
        )
        self.requirements[record.id] = record
        return record

    def add_subject_visit(self, study_id: uuid.UUID, visit_date: date, **fields) -> SubjectVisitRecord:
        record = SubjectVisitRecord(
            id=fields.pop("id", uuid.uuid4()), study_id=study_id, visit_date=visit_date, **fields
        )
        self.subject_visits[record.id] = record
        return record

    def add_lab_kit(self, study_id: uuid.UUID, **fields) -> LabKitRecord:
        fields.setdefault("created_at", _now())
        fields.setdefault("updated_at", fields["created_at"])
        record = LabKitRecord(id=fields.pop("id", uuid.uuid4()), study_id=study_id, **fields)
        self.lab_kits[record.id] = record
        return record

    def add_order(self, study_id: uuid.UUID, kit_type_id: uuid.UUID, quantity: int, **fields) -> LabKitOrderRecord:
        fields.setdefault("created_at", _now())
        record = LabKitOrderRecord(
            id=fields.pop("id", uuid.uuid4()),
            study_id=study_id,
            kit_type_id=kit_type_id,
            quantity=quantity,
            **fields,
        )
        self.orders[record.id] = record
        return record

    def add_setting(self, study_id: uuid.UUID, kit_type_id: Optional[uuid.UUID] = None, **fields) -> LabKitSettingRecord:
        fields.setdefault("created_at", _now())
        fields.setdefault("updated_at", fields["created_at"])
        record = LabKitSettingRecord(
            id=fields.pop("id", uuid.uuid4()), study_id=study_id, kit_type_id=kit_type_id, **fields
        )
        self.settings[record.id] = record
        return record

    # =========================================================================
    # STUDIES & CATALOGUE
    # =========================================================================

    async def get_study(self, study_id: uuid.UUID) -> Optional[StudyRecord]:
        self._check("get_study")
        study = self.studies.get(study_id)
        return study.model_copy() if study else None

    async def list_studies(self, statuses: Optional[Sequence[str]] = None) -> list[StudyRecord]:
        self._check("list_studies")
        return [
            study.model_copy()
            for study in self.studies.values()
            if not statuses or study.status in statuses
        ]

    async def update_study(self, study_id: uuid.UUID, values: dict[str, Any]) -> StudyRecord:
        self._check("update_study")
        study = self.studies[study_id].model_copy(update={**values, "updated_at": _now()})
        self.studies[study_id] = study
        return study.model_copy()

    async def list_kit_types(self, study_id: uuid.UUID) -> list[KitTypeRecord]:
        self._check("list_kit_types")
        rows = [row for row in self.kit_types.values() if row.study_id == study_id]
        return sorted(rows, key=lambda row: row.name or "")

    async def list_visit_schedules(self, study_id: uuid.UUID) -> list[VisitScheduleRecord]:
        self._check("list_visit_schedules")
        return [row for row in self.visit_schedules.values() if row.study_id == study_id]

    async def list_visit_requirements(self, study_id: uuid.UUID) -> list[VisitRequirementRecord]:
        self._check("list_visit_requirements")
        return [row for row in self.requirements.values() if row.study_id == study_id]

    async def list_subject_visits(
        self,
        study_id: uuid.UUID,
        start: date,
        end: date,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[SubjectVisitRecord]:
        self._check("list_subject_visits")
        rows = [
            row for row in self.subject_visits.values()
            if row.study_id == study_id
            and start <= row.visit_date <= end
            and (not statuses or row.status in statuses)
        ]
        return sorted(rows, key=lambda row: row.visit_date)

    # =========================================================================
    # INVENTORY & ORDERS
    # =========================================================================

    async def list_lab_kits(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[LabKitRecord]:
        self._check("list_lab_kits")
        return [
            kit.model_copy()
            for kit in self.lab_kits.values()
            if kit.study_id == study_id and (not statuses or kit.status in statuses)
        ]

    async def expire_lab_kits(self, before: date, study_id: Optional[uuid.UUID] = None) -> int:
        self._check("expire_lab_kits")
        expired = 0
        for kit_id, kit in list(self.lab_kits.items()):
            if study_id is not None and kit.study_id != study_id:
                continue
            if kit.status != KitStatus.AVAILABLE.value or kit.expiration_date is None:
                continue
            if kit.expiration_date < before:
                self.lab_kits[kit_id] = kit.model_copy(
                    update={"status": KitStatus.EXPIRED.value, "updated_at": _now()}
                )
                expired += 1
        return expired

    async def list_orders(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[LabKitOrderRecord]:
        self._check("list_orders")
        return [
            order.model_copy()
            for order in self.orders.values()
            if order.study_id == study_id and (not statuses or order.status in statuses)
        ]

    # =========================================================================
    # SETTINGS
    # =========================================================================

    async def list_settings(self, study_id: uuid.UUID) -> list[LabKitSettingRecord]:
        self._check("list_settings")
        return [row.model_copy() for row in self.settings.values() if row.study_id == study_id]

    def _settings_entry(self, history: Optional[SettingsHistoryBuilder], record: LabKitSettingRecord):
        if history is None:
            return None
        entry = history(record)
        self._check("settings_history")
        return {"id": uuid.uuid4(), "created_at": _now(), **entry}

    async def insert_setting(
        self,
        values: dict[str, Any],
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> LabKitSettingRecord:
        self._check("insert_setting")
        now = _now()
        record = LabKitSettingRecord(
            **{"id": uuid.uuid4(), "created_at": now, "updated_at": now, **values}
        )
        entry = self._settings_entry(history, record)
        self.settings[record.id] = record
        if entry:
            self.settings_history.append(entry)
        return record.model_copy()

    async def update_setting(
        self,
        setting_id: uuid.UUID,
        values: dict[str, Any],
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> LabKitSettingRecord:
        self._check("update_setting")
        if setting_id not in self.settings:
            raise LookupError(f"Lab kit setting {setting_id} not found")
        record = self.settings[setting_id].model_copy(update={**values, "updated_at": _now()})
        entry = self._settings_entry(history, record)
        self.settings[setting_id] = record
        if entry:
            self.settings_history.append(entry)
        return record.model_copy()

    async def delete_setting(
        self,
        setting_id: uuid.UUID,
        history: Optional[SettingsHistoryBuilder] = None,
    ) -> None:
        self._check("delete_setting")
        record = self.settings.get(setting_id)
        if record is None:
            return
        entry = self._settings_entry(history, record)
        del self.settings[setting_id]
        if entry:
            self.settings_history.append(entry)

    # =========================================================================
    # RECOMMENDATIONS
    # =========================================================================

    async def list_recommendations(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[RecommendationRecord]:
        self._check("list_recommendations")
        rows = [
            row.model_copy()
            for row in reversed(list(self.recommendations.values()))
            if row.study_id == study_id and (not statuses or row.status in statuses)
        ]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    async def get_recommendation(self, recommendation_id: uuid.UUID) -> Optional[RecommendationRecord]:
        self._check("get_recommendation")
        row = self.recommendations.get(recommendation_id)
        return row.model_copy() if row else None

    def _recommendation_entry(self, history: Optional[RecommendationHistoryBuilder], record: RecommendationRecord):
        if history is None:
            return None
        entry = history(record)
        self._check("recommendation_history")
        return {"id": uuid.uuid4(), "created_at": _now(), **entry}

    async def insert_recommendation(
        self,
        values: dict[str, Any],
        history: Optional[RecommendationHistoryBuilder] = None,
    ) -> RecommendationRecord:
        self._check("insert_recommendation")
        now = _now()
        record = RecommendationRecord(
            **{"id": uuid.uuid4(), "created_at": now, "updated_at": now, **values}
        )
        entry = self._recommendation_entry(history, record)
        self.recommendations[record.id] = record
        if entry:
            self.recommendation_history.append(entry)
        return record.model_copy()

    async def update_recommendation(
        self,
        recommendation_id: uuid.UUID,
        values: dict[str, Any],
        history: Optional[RecommendationHistoryBuilder] = None,
    ) -> RecommendationRecord:
        self._check("update_recommendation")
        if recommendation_id not in self.recommendations:
            raise LookupError(f"Recommendation {recommendation_id} not found")
        record = self.recommendations[recommendation_id].model_copy(
            update={**values, "updated_at": _now()}
        )
        entry = self._recommendation_entry(history, record)
        self.recommendations[recommendation_id] = record
        if entry:
            self.recommendation_history.append(entry)
        return record.model_copy()
