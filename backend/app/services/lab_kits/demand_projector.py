"""
Study Coordinator - Demand Projector

Expected kit consumption per kit type over a forward window:
scheduled visits x per-visit kit requirements.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Optional, Sequence

from app.core.config import settings
from app.models.lab_kits import (
    KitDemand,
    RequirementBreakdown,
    SubjectVisitRecord,
    UpcomingVisit,
    VisitRequirementRecord,
    VisitScheduleRecord,
    VisitStatus,
)
from app.services.lab_kits.errors import read_or_fail
from app.services.lab_kits.repository import LabKitRepository
from app.services.lab_kits.settings_service import sanitize_integer

MAX_VISIT_WINDOW_BUFFER_DAYS = 60
UNCATEGORIZED_KIT = "Uncategorized kit"
UNSCHEDULED_VISIT = "Unscheduled Visit"


def clamp_days_ahead(days: Any, default: Optional[int] = None) -> int:
    """Horizon in [1, FORECAST_MAX_DAYS]; missing or non-positive input uses the default."""
    fallback = default if default is not None else settings.FORECAST_DEFAULT_DAYS
    value = sanitize_integer(days, 0, minimum=None)
    if value <= 0:
        value = fallback
    return max(1, min(value, settings.FORECAST_MAX_DAYS))


def effective_horizon(days_ahead: int, visit_window_buffer_days: Optional[int]) -> int:
    """Widen the horizon by the study's visit window so late-window visits are covered."""
    window = max(0, min(MAX_VISIT_WINDOW_BUFFER_DAYS, visit_window_buffer_days or 0))
    return min(days_ahead + window, settings.FORECAST_MAX_DAYS)


def project_demand(
    requirements: Sequence[VisitRequirementRecord],
    schedules: Sequence[VisitScheduleRecord],
    upcoming_visits: Sequence[SubjectVisitRecord],
    kit_type_names: dict[uuid.UUID, Optional[str]],
    historical_visits: Sequence[SubjectVisitRecord] = (),
) -> dict[uuid.UUID, KitDemand]:
    """
    Join visits in the window against requirement rows.

    One visit occurrence counts once per requirement row that references its
    template, so visits_scheduled may exceed the number of distinct visits.
    Requirements without a kit type are ignored.
    """
    schedule_by_id = {schedule.id: schedule for schedule in schedules}

    visits_by_schedule: dict[uuid.UUID, list[SubjectVisitRecord]] = defaultdict(list)
    for visit in upcoming_visits:
        if visit.visit_schedule_id and visit.status == VisitStatus.SCHEDULED.value:
            visits_by_schedule[visit.visit_schedule_id].append(visit)

    completed_by_schedule: dict[uuid.UUID, int] = defaultdict(int)
    for visit in historical_visits:
        if visit.visit_schedule_id and visit.status == VisitStatus.COMPLETED.value:
            completed_by_schedule[visit.visit_schedule_id] += 1

    demand: dict[uuid.UUID, KitDemand] = {}
    for requirement in requirements:
        if requirement.kit_type_id is None:
            continue

        entry = demand.get(requirement.kit_type_id)
        if entry is None:
            entry = KitDemand(
                kit_type_id=requirement.kit_type_id,
                kit_type_name=kit_type_names.get(requirement.kit_type_id) or UNCATEGORIZED_KIT,
            )
            demand[requirement.kit_type_id] = entry

        schedule = schedule_by_id.get(requirement.visit_schedule_id)
        visit_name = (schedule.visit_name if schedule else None) or UNSCHEDULED_VISIT
        per_visit = max(1, requirement.quantity or 1)
        scheduled = visits_by_schedule.get(requirement.visit_schedule_id, [])

        breakdown = RequirementBreakdown(
            requirement_id=requirement.id,
            visit_schedule_id=requirement.visit_schedule_id,
            visit_name=visit_name,
            visit_number=schedule.visit_number if schedule else None,
            quantity_per_visit=per_visit,
            is_optional=requirement.is_optional,
            visits_scheduled=len(scheduled),
            kits_required=len(scheduled) * per_visit,
            upcoming_visits=[
                UpcomingVisit(
                    visit_date=visit.visit_date,
                    subject_number=visit.subject_number,
                    visit_name=visit.visit_name or visit_name,
                    quantity_required=per_visit,
                )
                for visit in scheduled
            ],
        )

        entry.requirements.append(breakdown)
        entry.visits_scheduled += breakdown.visits_scheduled
        entry.kits_required += breakdown.kits_required
        entry.upcoming_visits.extend(breakdown.upcoming_visits)
        entry.historical_visits += completed_by_schedule.get(requirement.visit_schedule_id, 0)
        if not requirement.is_optional:
            entry.optional = False

    for entry in demand.values():
        entry.upcoming_visits.sort(key=lambda visit: visit.visit_date)
        entry.requirements.sort(key=lambda item: item.kits_required, reverse=True)

    return demand


class DemandProjector:
    """Loads visits and requirements for a study and projects kit demand."""

    def __init__(self, repository: LabKitRepository):
        self.repository = repository

    async def project(
        self,
        study_id: uuid.UUID,
        horizon_days: int,
        today: date,
        kit_type_names: dict[uuid.UUID, Optional[str]],
    ) -> dict[uuid.UUID, KitDemand]:
        future = today + timedelta(days=horizon_days)
        history_start = today - timedelta(days=horizon_days)

        schedules, requirements, upcoming, historical = await asyncio.gather(
            read_or_fail(
                self.repository.list_visit_schedules(study_id),
                "Failed to load visit schedules", study_id,
            ),
            read_or_fail(
                self.repository.list_visit_requirements(study_id),
                "Failed to load kit requirements", study_id,
            ),
            read_or_fail(
                self.repository.list_subject_visits(
                    study_id, today, future, [VisitStatus.SCHEDULED.value]
                ),
                "Failed to load upcoming visits", study_id,
            ),
            read_or_fail(
                self.repository.list_subject_visits(
                    study_id, history_start, today - timedelta(days=1), [VisitStatus.COMPLETED.value]
                ),
                "Failed to load visit history", study_id,
            ),
        )

        return project_demand(requirements, schedules, upcoming, kit_type_names, historical)
