"""
Study Coordinator - Recommendation Synthesizer Tests

Candidate building and reconciliation of the recommendation ledger:
create, update in place, auto-expire, and idempotent re-runs.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from app.services.lab_kits.errors import ForecastServiceError, LabKitRecommendationError
from app.services.lab_kits.forecast_engine import ForecastEngine
from app.services.lab_kits.memory_repository import InMemoryLabKitRepository
from app.services.lab_kits.recommendation_engine import (
    AUTO_EXPIRED_REASON,
    RecommendationEngine,
    build_candidates,
    canonicalize,
    latest_order_date,
)

from conftest import TODAY, seed_kits, seed_visits

DAYS = 30


def _recompute(repository, study_id, actor_id=None):
    return asyncio.run(RecommendationEngine(repository).recompute(study_id, DAYS, TODAY, actor_id))


def _open(repository, study_id):
    return [
        row for row in repository.recommendations.values()
        if row.study_id == study_id and row.status == "new"
    ]


class TestCandidates:
    def test_latest_order_date(self):
        assert latest_order_date(TODAY + timedelta(days=10), 3, TODAY) == TODAY + timedelta(days=7)
        # never in the past
        assert latest_order_date(TODAY + timedelta(days=1), 5, TODAY) == TODAY
        assert latest_order_date(None, 5, TODAY) is None

    def test_deficit_candidate(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        forecast = asyncio.run(ForecastEngine(repository).load_forecast(blood_draw_study.study_id, DAYS, TODAY))

        candidates = build_candidates(forecast)

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.key == f"{blood_draw_study.kit_type_id}|deficit"
        assert candidate.recommended_quantity == 5
        assert candidate.window_start == TODAY + timedelta(days=1)
        assert candidate.window_end == TODAY + timedelta(days=10)
        assert candidate.latest_order_date == TODAY
        assert candidate.confidence == 0.9
        assert candidate.reason == "Forecast deficit of 5 kits within 30 days."
        assert candidate.metadata["reasonType"] == "deficit"
        assert candidate.metadata["forecast"]["bufferTarget"] == 3
        assert candidate.metadata["forecast"]["leadTimeDays"] == 5

    def test_buffer_candidate_when_pending_covers_deficit(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        repository.add_order(blood_draw_study.study_id, blood_draw_study.kit_type_id, 5)
        forecast = asyncio.run(ForecastEngine(repository).load_forecast(blood_draw_study.study_id, DAYS, TODAY))

        [candidate] = build_candidates(forecast)

        assert candidate.reason_type.value == "buffer"
        assert candidate.recommended_quantity == 3
        assert candidate.confidence == 0.65
        assert "Pending orders cover 5." in candidate.reason

    def test_no_candidates_when_stocked(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 20)
        forecast = asyncio.run(ForecastEngine(repository).load_forecast(blood_draw_study.study_id, DAYS, TODAY))

        assert build_candidates(forecast) == []

    def test_canonicalize_ignores_key_order(self):
        assert canonicalize({"b": 1, "a": {"y": 2, "x": 3}}) == canonicalize({"a": {"x": 3, "y": 2}, "b": 1})


class TestReconciliation:
    """Recompute against existing open recommendations."""

    def test_first_run_creates(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        actor = uuid.uuid4()

        result = _recompute(repository, blood_draw_study.study_id, actor)

        assert (result.created, result.updated, result.expired) == (1, 0, 0)
        assert len(result.recommendations) == 1
        row = result.recommendations[0]
        assert row.status == "new"
        assert row.recommended_quantity == 5
        assert repository.recommendation_history[0]["action"] == "create"
        assert repository.recommendation_history[0]["changed_by"] == actor

    def test_second_run_is_a_no_op(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        _recompute(repository, blood_draw_study.study_id)
        history_before = len(repository.recommendation_history)

        result = _recompute(repository, blood_draw_study.study_id)

        assert (result.created, result.updated, result.expired) == (0, 0, 0)
        assert len(repository.recommendation_history) == history_before
        assert len(_open(repository, blood_draw_study.study_id)) == 1

    def test_changed_deficit_updates_in_place(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        first = _recompute(repository, blood_draw_study.study_id)
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 2)

        result = _recompute(repository, blood_draw_study.study_id)

        assert (result.created, result.updated, result.expired) == (0, 1, 0)
        [row] = _open(repository, blood_draw_study.study_id)
        assert row.id == first.recommendations[0].id
        assert row.recommended_quantity == 3
        entry = repository.recommendation_history[-1]
        assert entry["action"] == "update"
        assert entry["changes"]["before"]["recommended_quantity"] == 5
        assert entry["changes"]["after"]["recommended_quantity"] == 3

    def test_resolved_condition_auto_expires(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        first = _recompute(repository, blood_draw_study.study_id)
        repository.add_order(blood_draw_study.study_id, blood_draw_study.kit_type_id, 5)

        result = _recompute(repository, blood_draw_study.study_id)

        # the deficit row expires and a buffer top-up replaces it
        assert (result.created, result.updated, result.expired) == (1, 0, 1)
        expired = repository.recommendations[first.recommendations[0].id]
        assert expired.status == "expired"
        assert expired.dismissed_reason == AUTO_EXPIRED_REASON
        assert expired.acted_at is not None
        [row] = _open(repository, blood_draw_study.study_id)
        assert row.metadata["reasonType"] == "buffer"

    def test_fully_stocked_expires_everything(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        _recompute(repository, blood_draw_study.study_id)
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 20)

        result = _recompute(repository, blood_draw_study.study_id)

        assert (result.created, result.updated, result.expired) == (0, 0, 1)
        assert _open(repository, blood_draw_study.study_id) == []
        assert repository.recommendation_history[-1]["action"] == "expire"

    def test_duplicate_open_rows_collapse(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        first = _recompute(repository, blood_draw_study.study_id).recommendations[0]
        duplicate = asyncio.run(repository.insert_recommendation(
            first.model_dump(exclude={"id", "created_at", "updated_at"})
        ))

        result = _recompute(repository, blood_draw_study.study_id)

        assert (result.created, result.updated, result.expired) == (0, 0, 1)
        assert [row.id for row in _open(repository, blood_draw_study.study_id)] == [duplicate.id]
        assert repository.recommendations[first.id].status == "expired"

    def test_terminal_rows_are_left_alone(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        first = _recompute(repository, blood_draw_study.study_id).recommendations[0]
        asyncio.run(repository.update_recommendation(first.id, {"status": "dismissed", "dismissed_reason": "x"}))

        result = _recompute(repository, blood_draw_study.study_id)

        # dismissed rows are not open, so a fresh recommendation is raised
        assert (result.created, result.updated, result.expired) == (1, 0, 0)
        assert repository.recommendations[first.id].status == "dismissed"

    def test_sweep_runs_before_forecast(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 20,
                  expiration_date=TODAY - timedelta(days=1))

        result = _recompute(repository, blood_draw_study.study_id)

        assert result.created == 1
        assert all(kit.status == "expired" for kit in repository.lab_kits.values())

    def test_read_failure_writes_nothing(self, blood_draw_study):
        repository = blood_draw_study.repository
        repository.failures["list_recommendations"] = RuntimeError("replica lag")

        with pytest.raises(ForecastServiceError):
            _recompute(repository, blood_draw_study.study_id)

        assert repository.recommendations == {}
        assert repository.recommendation_history == []

    def test_forecast_failure_writes_nothing(self, blood_draw_study):
        repository = blood_draw_study.repository
        repository.failures["list_settings"] = RuntimeError("down")

        with pytest.raises(ForecastServiceError):
            _recompute(repository, blood_draw_study.study_id)

        assert repository.recommendations == {}

    def test_write_failure(self, blood_draw_study):
        repository = blood_draw_study.repository
        repository.failures["insert_recommendation"] = RuntimeError("constraint")

        with pytest.raises(LabKitRecommendationError) as excinfo:
            _recompute(repository, blood_draw_study.study_id)

        assert excinfo.value.status_code == 500

    def test_history_failure_keeps_row_and_entry_together(self, blood_draw_study):
        repository = blood_draw_study.repository
        repository.failures["recommendation_history"] = RuntimeError("ledger offline")

        with pytest.raises(LabKitRecommendationError):
            _recompute(repository, blood_draw_study.study_id)

        assert repository.recommendations == {}
        assert repository.recommendation_history == []

        # re-running repairs the ledger
        del repository.failures["recommendation_history"]
        result = _recompute(repository, blood_draw_study.study_id)

        assert result.created == 1
        assert len(repository.recommendations) == 1
        assert [entry["action"] for entry in repository.recommendation_history] == ["create"]

    def test_read_failure_skips_expiry_sweep(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 3,
                  expiration_date=TODAY - timedelta(days=2))
        repository.failures["list_recommendations"] = RuntimeError("replica lag")

        with pytest.raises(ForecastServiceError):
            _recompute(repository, blood_draw_study.study_id)

        assert all(kit.status == "available" for kit in repository.lab_kits.values())


class FlakyRepository(InMemoryLabKitRepository):
    """Fails kit type reads for one study only."""

    def __init__(self, failing_study_id=None):
        super().__init__()
        self.failing_study_id = failing_study_id

    async def list_kit_types(self, study_id):
        if study_id == self.failing_study_id:
            raise RuntimeError("study partition offline")
        return await super().list_kit_types(study_id)


class TestRecomputeAll:
    def _seed(self, repository, status="active"):
        study = repository.add_study(status=status)
        kit_type = repository.add_kit_type(study.id, "Serum Kit")
        schedule = repository.add_visit_schedule(study.id, "Baseline")
        repository.add_requirement(study.id, schedule.id, kit_type.id)
        seed_visits(repository, study.id, schedule.id, 4, start=TODAY + timedelta(days=1))
        return study

    def test_one_failing_study_does_not_stop_the_batch(self):
        repository = FlakyRepository()
        healthy = self._seed(repository)
        broken = self._seed(repository, status="enrolling")
        repository.failing_study_id = broken.id

        result = asyncio.run(RecommendationEngine(repository).recompute_all(DAYS, today=TODAY))

        assert result.processed == 2
        assert result.failures == 1
        assert result.totals == {"created": 1, "updated": 0, "expired": 0}
        outcomes = {item.study_id: item for item in result.results}
        assert outcomes[healthy.id].status == "ok"
        assert outcomes[broken.id].status == "error"
        assert outcomes[broken.id].error

    def test_status_filter(self, repository):
        self._seed(repository, status="active")
        self._seed(repository, status="closed")

        result = asyncio.run(RecommendationEngine(repository).recompute_all(DAYS, today=TODAY))
        assert result.processed == 1

        result = asyncio.run(RecommendationEngine(repository).recompute_all(DAYS, ["closed", " "], today=TODAY))
        assert result.processed == 1
        assert result.totals["created"] == 1

    def test_study_listing_failure(self, repository):
        repository.failures["list_studies"] = RuntimeError("down")

        with pytest.raises(ForecastServiceError):
            asyncio.run(RecommendationEngine(repository).recompute_all())
