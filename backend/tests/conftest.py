"""
Study Coordinator - Shared Test Fixtures

Every test runs against the in-memory repository with a fixed `today` so
forecast windows and expiry checks are deterministic.
"""

import uuid
from dataclasses import dataclass
from datetime import date, timedelta

import pytest

from app.services.lab_kits.memory_repository import InMemoryLabKitRepository

TODAY = date(2025, 3, 1)


@dataclass
class SeededStudy:
    repository: InMemoryLabKitRepository
    study_id: uuid.UUID
    kit_type_id: uuid.UUID
    schedule_id: uuid.UUID


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def repository() -> InMemoryLabKitRepository:
    return InMemoryLabKitRepository()


def seed_visits(repository, study_id, schedule_id, count, start=TODAY, status="scheduled", step_days=1):
    """Add `count` visits against one schedule, one per `step_days` starting at `start`."""
    for index in range(count):
        repository.add_subject_visit(
            study_id,
            start + timedelta(days=index * step_days),
            visit_schedule_id=schedule_id,
            subject_number=f"S-{index + 1:03d}",
            status=status,
        )


def seed_kits(repository, study_id, kit_type_id, count, **fields):
    for _ in range(count):
        repository.add_lab_kit(study_id, kit_type_id=kit_type_id, **fields)


@pytest.fixture
def blood_draw_study(repository) -> SeededStudy:
    """
    One kit type ("Blood Draw Kit"), one visit template requiring one kit,
    ten scheduled visits inside a 30 day window and a 7 day buffer policy.
    """
    study = repository.add_study(protocol_number="LK-001", status="active")
    kit_type = repository.add_kit_type(study.id, "Blood Draw Kit")
    schedule = repository.add_visit_schedule(study.id, "Week 2", visit_number="V2")
    repository.add_requirement(study.id, schedule.id, kit_type.id, quantity=1)
    seed_visits(repository, study.id, schedule.id, 10, start=TODAY + timedelta(days=1))
    repository.add_setting(study.id, buffer_days=7, lead_time_days=5)
    return SeededStudy(repository, study.id, kit_type.id, schedule.id)
