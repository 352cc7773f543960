"""
Study Coordinator - Forecast Engine Tests

Buffer target, deficit, status and risk per kit type, plus the end-to-end
forecast over the in-memory repository.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from app.models.lab_kits import (
    ForecastConfig,
    ForecastRecord,
    ForecastStatus,
    KitTypePolicy,
    RiskFactorType,
    RiskLevel,
)
from app.services.lab_kits.errors import ForecastServiceError, StudyNotFoundError
from app.services.lab_kits.forecast_engine import (
    ForecastEngine,
    classify_status,
    compute_buffer_target,
    order_forecast,
    recommended_order_quantity,
    score_risk,
)

from conftest import TODAY, seed_kits, seed_visits


def _forecast(repository, study_id, days=None):
    return asyncio.run(ForecastEngine(repository).load_forecast(study_id, days, TODAY))


def _row(forecast, kit_type_id):
    return next(item for item in forecast.forecast if item.kit_type_id == kit_type_id)


class TestBufferTarget:
    def test_time_cushion_rounds_up(self):
        target, study_cushion = compute_buffer_target(10, 30, KitTypePolicy(buffer_days=7))

        assert target == 3
        assert study_cushion == 0

    def test_exact_cushion_is_not_inflated(self):
        target, _ = compute_buffer_target(30, 30, KitTypePolicy(buffer_days=7))

        assert target == 7

    def test_largest_cushion_wins(self):
        policy = KitTypePolicy(buffer_days=7, min_on_hand=2)

        assert compute_buffer_target(10, 30, policy, inventory_buffer_days=14) == (5, 5)
        assert compute_buffer_target(10, 30, policy, inventory_buffer_kits=6)[0] == 6
        assert compute_buffer_target(10, 30, policy, kit_type_buffer_count=9)[0] == 9
        assert compute_buffer_target(0, 30, policy)[0] == 2

    def test_zero_horizon_does_not_divide_by_zero(self):
        assert compute_buffer_target(4, 0, KitTypePolicy(buffer_days=1))[0] == 4


class TestStatusAndQuantity:
    def test_classify_status(self):
        assert classify_status(1, -5, 0, 2) == ForecastStatus.CRITICAL
        assert classify_status(0, 2, 0, 2) == ForecastStatus.WARNING
        assert classify_status(0, 10, 1, 2) == ForecastStatus.WARNING
        assert classify_status(0, 3, 0, 2) == ForecastStatus.OK

    def test_recommended_quantity(self):
        assert recommended_order_quantity(5, 3, -5, 2) == 5
        # covered by pending orders but the buffer is thin: top up above the band
        assert recommended_order_quantity(0, 3, 0, 2) == 3
        assert recommended_order_quantity(0, 3, 2, 2) == 1
        assert recommended_order_quantity(0, 3, 3, 2) == 0
        assert recommended_order_quantity(0, 0, 0, 0) == 0


class TestRiskScore:
    def _record(self, **fields):
        values = dict(kit_type_id=uuid.uuid4(), kit_type_name="Kit", visits_scheduled=10)
        values.update(fields)
        return ForecastRecord(**values)

    def test_no_factors_is_low(self):
        score, level, factors = score_risk(self._record(), 0, 0, 30, ForecastConfig())

        assert (score, level, factors) == (0.0, RiskLevel.LOW, [])

    def test_deficit_factor(self):
        record = self._record(deficit=5, required_with_buffer=13)

        score, level, factors = score_risk(record, 0, 0, 30, ForecastConfig())

        assert [factor.type for factor in factors] == [RiskFactorType.DEFICIT]
        assert score == 41.5
        assert level == RiskLevel.MEDIUM

    def test_full_deficit_with_surge_is_high(self):
        record = self._record(deficit=13, required_with_buffer=13)

        score, level, factors = score_risk(record, 2, 0, 30, ForecastConfig())

        assert score == 80.0
        assert level == RiskLevel.HIGH
        assert {factor.type for factor in factors} == {RiskFactorType.DEFICIT, RiskFactorType.DEMAND_SURGE}

    def test_surge_needs_history(self):
        _, _, factors = score_risk(self._record(), 0, 0, 30, ForecastConfig())
        assert factors == []

        _, _, factors = score_risk(self._record(visits_scheduled=12), 10, 0, 30, ForecastConfig())
        assert factors == []

    def test_expiring_and_overdue_factors(self):
        record = self._record(kits_available=8, kits_expiring_soon=4, pending_order_quantity=10)

        score, level, factors = score_risk(record, 0, 5, 30, ForecastConfig())

        by_type = {factor.type: factor.score for factor in factors}
        assert by_type == {RiskFactorType.EXPIRING_SOON: 7.5, RiskFactorType.OVERDUE_ORDERS: 7.5}
        assert score == 15.0
        assert level == RiskLevel.LOW

    def test_score_is_capped(self):
        config = ForecastConfig(deficit_weight=150)
        record = self._record(deficit=13, required_with_buffer=13)

        score, level, _ = score_risk(record, 0, 0, 30, config)

        assert score == 100.0
        assert level == RiskLevel.HIGH

    def test_more_deficit_never_lowers_risk(self):
        config = ForecastConfig()
        scores = [
            score_risk(self._record(deficit=deficit, required_with_buffer=20), 0, 0, 30, config)[0]
            for deficit in range(0, 21)
        ]

        assert scores == sorted(scores)


class TestForecastEngine:
    """End-to-end forecast runs."""

    def test_deficit_without_pending_orders(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)

        forecast = _forecast(repository, blood_draw_study.study_id)

        row = _row(forecast, blood_draw_study.kit_type_id)
        assert row.kit_type_name == "Blood Draw Kit"
        assert row.visits_scheduled == 10
        assert row.kits_required == 10
        assert row.per_day_demand == pytest.approx(0.3333)
        assert row.buffer_target == 3
        assert row.required_with_buffer == 13
        assert row.original_deficit == 5
        assert row.deficit == 5
        assert row.status == ForecastStatus.CRITICAL
        assert row.recommended_order_qty == 5
        assert row.risk_level == RiskLevel.MEDIUM
        assert forecast.summary.critical_issues == 1
        assert forecast.summary.total_visits_scheduled == 10

    def test_pending_orders_cover_deficit(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 8)
        repository.add_order(blood_draw_study.study_id, blood_draw_study.kit_type_id, 5)

        row = _row(_forecast(repository, blood_draw_study.study_id), blood_draw_study.kit_type_id)

        assert row.original_deficit == 5
        assert row.deficit == 0
        assert row.pending_order_quantity == 5
        assert row.status == ForecastStatus.WARNING
        assert row.recommended_order_qty == 3

    def test_well_stocked_kit_is_ok(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 20)

        row = _row(_forecast(repository, blood_draw_study.study_id), blood_draw_study.kit_type_id)

        assert row.status == ForecastStatus.OK
        assert row.recommended_order_qty == 0
        assert row.risk_score == 0.0

    def test_idle_kit_type_has_no_row(self, blood_draw_study):
        repository = blood_draw_study.repository
        idle = repository.add_kit_type(blood_draw_study.study_id, "Saliva Kit")

        forecast = _forecast(repository, blood_draw_study.study_id)

        assert idle.id not in {item.kit_type_id for item in forecast.forecast}
        assert len(forecast.forecast) == 1

    def test_min_on_hand_keeps_idle_kit_type(self, blood_draw_study):
        repository = blood_draw_study.repository
        idle = repository.add_kit_type(blood_draw_study.study_id, "Saliva Kit")
        repository.add_setting(blood_draw_study.study_id, idle.id, min_on_hand=4)

        row = _row(_forecast(repository, blood_draw_study.study_id), idle.id)

        assert row.kits_required == 0
        assert row.buffer_target == 4
        assert row.deficit == 4
        assert row.status == ForecastStatus.CRITICAL

    def test_more_visits_never_lower_deficit(self, repository):
        deficits = []
        for visit_count in (0, 3, 6, 12):
            study = repository.add_study()
            kit_type = repository.add_kit_type(study.id, "Serum Kit")
            schedule = repository.add_visit_schedule(study.id, "Baseline")
            repository.add_requirement(study.id, schedule.id, kit_type.id)
            repository.add_setting(study.id, buffer_days=7, min_on_hand=1)
            seed_kits(repository, study.id, kit_type.id, 4)
            seed_visits(repository, study.id, schedule.id, visit_count, start=TODAY + timedelta(days=1))

            row = _row(_forecast(repository, study.id), kit_type.id)
            deficits.append(row.deficit)

        assert deficits == sorted(deficits)
        assert deficits[-1] > deficits[0]

    def test_study_buffer_and_visit_window(self, blood_draw_study):
        repository = blood_draw_study.repository
        study_id = blood_draw_study.study_id
        repository.studies[study_id] = repository.studies[study_id].model_copy(
            update={"inventory_buffer_kits": 6, "visit_window_buffer_days": 5}
        )
        # falls outside 30 days but inside the 5 day visit window
        repository.add_subject_visit(
            study_id, TODAY + timedelta(days=33), visit_schedule_id=blood_draw_study.schedule_id
        )

        forecast = _forecast(repository, study_id)

        row = _row(forecast, blood_draw_study.kit_type_id)
        assert forecast.context.effective_days_ahead == 35
        assert forecast.summary.base_window_days == 30
        assert row.visits_scheduled == 11
        assert row.buffer_target == 6

    def test_forecast_order_puts_critical_first(self, blood_draw_study):
        repository = blood_draw_study.repository
        seed_kits(repository, blood_draw_study.study_id, blood_draw_study.kit_type_id, 20)
        short = repository.add_kit_type(blood_draw_study.study_id, "Urine Kit")
        repository.add_setting(blood_draw_study.study_id, short.id, min_on_hand=2)

        forecast = _forecast(repository, blood_draw_study.study_id)

        assert [item.kit_type_id for item in forecast.forecast] == [short.id, blood_draw_study.kit_type_id]
        assert order_forecast(list(reversed(forecast.forecast))) == forecast.forecast

    def test_unknown_study(self, repository):
        with pytest.raises(StudyNotFoundError) as excinfo:
            _forecast(repository, uuid.uuid4())

        assert excinfo.value.status_code == 404

    def test_read_failure_aborts(self, blood_draw_study):
        blood_draw_study.repository.failures["list_lab_kits"] = RuntimeError("boom")

        with pytest.raises(ForecastServiceError) as excinfo:
            _forecast(blood_draw_study.repository, blood_draw_study.study_id)

        assert excinfo.value.message == "Failed to load lab kits"
