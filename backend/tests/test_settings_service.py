"""
Study Coordinator - Lab Kit Settings Tests

Sanitizing, default/override resolution and the settings patch workflow.
"""

import asyncio
import math
import uuid

import pytest

from app.models.lab_kits import (
    KitTypePolicy,
    LabKitSettingRecord,
    SettingsDefaultsPatch,
    SettingsOverridePatch,
    SettingsPatch,
)
from app.services.lab_kits.errors import LabKitSettingsError, StudyNotFoundError
from app.services.lab_kits.settings_service import (
    LabKitSettingsService,
    compute_etag,
    resolve_settings,
    sanitize_boolean,
    sanitize_integer,
    sanitize_metadata,
)


def _row(study_id, kit_type_id=None, **fields):
    return LabKitSettingRecord(id=uuid.uuid4(), study_id=study_id, kit_type_id=kit_type_id, **fields)


class TestSanitizers:
    """Loose input is coerced, never rejected."""

    def test_floors_and_clamps(self):
        assert sanitize_integer(12.9, 0) == 12
        assert sanitize_integer("7", 0) == 7
        assert sanitize_integer(-5, 3) == 0
        assert sanitize_integer(500, 0, 0, 180) == 180

    def test_non_numeric_falls_back(self):
        assert sanitize_integer(None, 4) == 4
        assert sanitize_integer("   ", 4) == 4
        assert sanitize_integer("abc", 4) == 4
        assert sanitize_integer(math.nan, 4) == 4
        assert sanitize_integer(math.inf, 4) == 4

    def test_booleans(self):
        assert sanitize_boolean(True, False) is True
        assert sanitize_boolean("true", False) is True
        assert sanitize_boolean("0", True) is False
        assert sanitize_boolean(1, False) is True
        assert sanitize_boolean("maybe", True) is True

    def test_metadata(self):
        assert sanitize_metadata(None) == {}
        assert sanitize_metadata({"a": [1, "b", None]}) == {"a": [1, "b", None]}
        with pytest.raises(LabKitSettingsError) as excinfo:
            sanitize_metadata({"bad": math.nan})
        assert excinfo.value.status_code == 400


class TestResolveSettings:
    """Overrides layer over study defaults, field by field."""

    def test_no_rows_gives_zero_policy(self):
        assert resolve_settings(None, None) == KitTypePolicy()

    def test_defaults_apply_without_override(self):
        study_id = uuid.uuid4()
        defaults = _row(study_id, min_on_hand=4, buffer_days=10, lead_time_days=3, auto_order_enabled=True)

        policy = resolve_settings(defaults, None)

        assert policy == KitTypePolicy(min_on_hand=4, buffer_days=10, lead_time_days=3, auto_order_enabled=True)

    def test_override_wins(self):
        study_id = uuid.uuid4()
        defaults = _row(study_id, min_on_hand=4, buffer_days=10, lead_time_days=3)
        override = _row(study_id, uuid.uuid4(), min_on_hand=1, buffer_days=2, lead_time_days=9)

        policy = resolve_settings(defaults, override)

        assert (policy.min_on_hand, policy.buffer_days, policy.lead_time_days) == (1, 2, 9)

    def test_out_of_range_stored_values_are_clamped(self):
        study_id = uuid.uuid4()
        defaults = _row(study_id, buffer_days=900, lead_time_days=400, min_on_hand=9000)

        policy = resolve_settings(defaults, None)

        assert policy.buffer_days == 180
        assert policy.lead_time_days == 120
        assert policy.min_on_hand == 500


class TestEtag:
    def test_etag_is_stable_and_order_independent(self):
        study_id = uuid.uuid4()
        rows = [_row(study_id), _row(study_id, uuid.uuid4())]

        assert compute_etag(study_id, None, rows) == compute_etag(study_id, None, list(reversed(rows)))

    def test_etag_changes_with_rows(self):
        study_id = uuid.uuid4()
        rows = [_row(study_id)]

        assert compute_etag(study_id, None, rows) != compute_etag(study_id, None, [])


class TestSettingsPatch:
    """Patch workflow against the in-memory repository."""

    def test_fetch_unknown_study(self, repository):
        service = LabKitSettingsService(repository)

        with pytest.raises(StudyNotFoundError):
            asyncio.run(service.fetch_settings(uuid.uuid4()))

    def test_buffer_days_clamped_before_persisting(self, blood_draw_study):
        repository = blood_draw_study.repository
        service = LabKitSettingsService(repository)
        patch = SettingsPatch(defaults=SettingsDefaultsPatch(buffer_days=500))

        snapshot = asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        assert snapshot.defaults.buffer_days == 180
        stored = asyncio.run(service.fetch_settings(blood_draw_study.study_id))
        assert stored.defaults.buffer_days == 180
        # untouched fields keep their previous values
        assert stored.defaults.lead_time_days == 5

    def test_defaults_update_study_buffers(self, blood_draw_study):
        service = LabKitSettingsService(blood_draw_study.repository)
        patch = SettingsPatch(defaults=SettingsDefaultsPatch(inventory_buffer_days=999, inventory_buffer_kits="12"))

        snapshot = asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        assert snapshot.defaults.inventory_buffer_days == 180
        assert snapshot.defaults.inventory_buffer_kits == 12

    def test_defaults_history_records_before_and_after(self, blood_draw_study):
        repository = blood_draw_study.repository
        actor = uuid.uuid4()
        service = LabKitSettingsService(repository)

        asyncio.run(service.apply_settings_patch(
            blood_draw_study.study_id, actor, SettingsPatch(defaults=SettingsDefaultsPatch(min_on_hand=3))
        ))

        assert len(repository.settings_history) == 1
        entry = repository.settings_history[0]
        assert entry["action"] == "update"
        assert entry["changed_by"] == actor
        assert entry["changes"]["before"]["min_on_hand"] == 0
        assert entry["changes"]["after"]["min_on_hand"] == 3

    def test_stale_etag_rejected(self, blood_draw_study):
        service = LabKitSettingsService(blood_draw_study.repository)
        patch = SettingsPatch(defaults=SettingsDefaultsPatch(min_on_hand=2))

        with pytest.raises(LabKitSettingsError) as excinfo:
            asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch, if_match='"stale"'))

        assert excinfo.value.status_code == 412
        assert blood_draw_study.repository.settings_history == []

    def test_current_etag_accepted(self, blood_draw_study):
        service = LabKitSettingsService(blood_draw_study.repository)
        current = asyncio.run(service.fetch_settings(blood_draw_study.study_id))
        patch = SettingsPatch(defaults=SettingsDefaultsPatch(min_on_hand=2))

        snapshot = asyncio.run(service.apply_settings_patch(
            blood_draw_study.study_id, None, patch, if_match=f'"{current.etag}"'
        ))

        assert snapshot.defaults.min_on_hand == 2

    def test_override_create_then_update(self, blood_draw_study):
        repository = blood_draw_study.repository
        service = LabKitSettingsService(repository)
        kit_type_id = blood_draw_study.kit_type_id

        created = asyncio.run(service.apply_settings_patch(
            blood_draw_study.study_id, None,
            SettingsPatch(overrides=[SettingsOverridePatch(kit_type_id=kit_type_id, min_on_hand=6)]),
        ))
        assert len(created.overrides) == 1
        override = created.overrides[0]
        assert override.min_on_hand == 6
        assert override.kit_type_name == "Blood Draw Kit"
        # inherited from the study default row on create
        assert override.buffer_days == 7

        # a second create for the same kit type updates the existing row
        updated = asyncio.run(service.apply_settings_patch(
            blood_draw_study.study_id, None,
            SettingsPatch(overrides=[SettingsOverridePatch(kit_type_id=kit_type_id, lead_time_days=14)]),
        ))
        assert len(updated.overrides) == 1
        assert updated.overrides[0].id == override.id
        assert updated.overrides[0].lead_time_days == 14
        assert updated.overrides[0].min_on_hand == 6
        assert [entry["action"] for entry in repository.settings_history] == ["create", "update"]

    def test_override_for_unknown_kit_type(self, blood_draw_study):
        service = LabKitSettingsService(blood_draw_study.repository)
        patch = SettingsPatch(overrides=[SettingsOverridePatch(kit_type_id=uuid.uuid4(), min_on_hand=1)])

        with pytest.raises(LabKitSettingsError) as excinfo:
            asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        assert excinfo.value.status_code == 400

    def test_override_with_unknown_id(self, blood_draw_study):
        service = LabKitSettingsService(blood_draw_study.repository)
        patch = SettingsPatch(overrides=[
            SettingsOverridePatch(id=uuid.uuid4(), kit_type_id=blood_draw_study.kit_type_id, min_on_hand=1)
        ])

        with pytest.raises(LabKitSettingsError) as excinfo:
            asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        assert excinfo.value.status_code == 404

    def test_delete_override(self, blood_draw_study):
        repository = blood_draw_study.repository
        override = repository.add_setting(blood_draw_study.study_id, blood_draw_study.kit_type_id, min_on_hand=9)
        service = LabKitSettingsService(repository)

        snapshot = asyncio.run(service.apply_settings_patch(
            blood_draw_study.study_id, None, SettingsPatch(delete_override_ids=[override.id, uuid.uuid4()])
        ))

        assert snapshot.overrides == []
        assert len(repository.settings_history) == 1
        entry = repository.settings_history[0]
        assert entry["action"] == "delete"
        assert entry["settings_id"] is None
        assert entry["changes"]["before"]["id"] == str(override.id)

    def test_invalid_metadata_rejected(self, blood_draw_study):
        service = LabKitSettingsService(blood_draw_study.repository)
        patch = SettingsPatch(defaults=SettingsDefaultsPatch(metadata={"ratio": math.inf}))

        with pytest.raises(LabKitSettingsError) as excinfo:
            asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        assert excinfo.value.status_code == 400

    def test_history_failure_rolls_back_the_write(self, blood_draw_study):
        repository = blood_draw_study.repository
        repository.failures["settings_history"] = RuntimeError("ledger offline")
        service = LabKitSettingsService(repository)

        with pytest.raises(LabKitSettingsError) as excinfo:
            asyncio.run(service.apply_settings_patch(
                blood_draw_study.study_id, None, SettingsPatch(defaults=SettingsDefaultsPatch(min_on_hand=1))
            ))

        assert excinfo.value.status_code == 500
        del repository.failures["settings_history"]
        stored = asyncio.run(service.fetch_settings(blood_draw_study.study_id))
        assert stored.defaults.min_on_hand == 0
        assert repository.settings_history == []

    def test_rejected_override_leaves_defaults_untouched(self, blood_draw_study):
        repository = blood_draw_study.repository
        service = LabKitSettingsService(repository)
        patch = SettingsPatch(
            defaults=SettingsDefaultsPatch(buffer_days=42, inventory_buffer_kits=9),
            overrides=[SettingsOverridePatch(kit_type_id=uuid.uuid4(), min_on_hand=1)],
        )

        with pytest.raises(LabKitSettingsError) as excinfo:
            asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        assert excinfo.value.status_code == 400
        stored = asyncio.run(service.fetch_settings(blood_draw_study.study_id))
        assert stored.defaults.buffer_days == 7
        assert stored.defaults.inventory_buffer_kits == 0
        assert repository.settings_history == []

    def test_unknown_override_id_leaves_defaults_untouched(self, blood_draw_study):
        repository = blood_draw_study.repository
        service = LabKitSettingsService(repository)
        patch = SettingsPatch(
            defaults=SettingsDefaultsPatch(lead_time_days=30),
            overrides=[
                SettingsOverridePatch(kit_type_id=blood_draw_study.kit_type_id, min_on_hand=2),
                SettingsOverridePatch(id=uuid.uuid4(), kit_type_id=blood_draw_study.kit_type_id, min_on_hand=1),
            ],
        )

        with pytest.raises(LabKitSettingsError) as excinfo:
            asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        assert excinfo.value.status_code == 404
        stored = asyncio.run(service.fetch_settings(blood_draw_study.study_id))
        assert stored.defaults.lead_time_days == 5
        assert stored.overrides == []
        assert repository.settings_history == []

    def test_bad_override_metadata_leaves_defaults_untouched(self, blood_draw_study):
        repository = blood_draw_study.repository
        service = LabKitSettingsService(repository)
        patch = SettingsPatch(
            defaults=SettingsDefaultsPatch(min_on_hand=4),
            overrides=[SettingsOverridePatch(kit_type_id=blood_draw_study.kit_type_id, metadata={"x": math.nan})],
        )

        with pytest.raises(LabKitSettingsError):
            asyncio.run(service.apply_settings_patch(blood_draw_study.study_id, None, patch))

        stored = asyncio.run(service.fetch_settings(blood_draw_study.study_id))
        assert stored.defaults.min_on_hand == 0
        assert repository.settings_history == []

    def test_study_buffer_change_is_logged_with_defaults(self, blood_draw_study):
        repository = blood_draw_study.repository
        service = LabKitSettingsService(repository)

        asyncio.run(service.apply_settings_patch(
            blood_draw_study.study_id, None, SettingsPatch(defaults=SettingsDefaultsPatch(inventory_buffer_days=14))
        ))

        entry = repository.settings_history[0]
        assert entry["changes"]["study"] == {
            "before": {"inventory_buffer_days": 0},
            "after": {"inventory_buffer_days": 14},
        }
