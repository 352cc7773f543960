"""
Study Coordinator - Lab Kit Settings Service

Study-wide defaults plus per-kit-type overrides for the supply policy:
minimum on hand, buffer days, lead time and the auto-order flag.

Numeric input never fails a patch. Values are floored and clamped into fixed
bounds, and anything non-numeric falls back to the previous stored value (or
the study default when an override is created).
"""

import asyncio
import hashlib
import logging
import math
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from app.models.lab_kits import (
    HistoryAction,
    KitTypePolicy,
    LabKitSettingRecord,
    SettingsDefaults,
    SettingsOverride,
    SettingsPatch,
    SettingsSnapshot,
)
from app.services.lab_kits.errors import LabKitSettingsError, StudyNotFoundError
from app.services.lab_kits.repository import LabKitRepository, SettingsHistoryBuilder

logger = logging.getLogger(__name__)

MAX_BUFFER_DAYS = 180
MAX_BUFFER_KITS = 500
MAX_LEAD_TIME_DAYS = 120
MAX_MIN_ON_HAND = 500


# =============================================================================
# SANITIZERS
# =============================================================================

def sanitize_integer(
    value: Any,
    fallback: int,
    minimum: Optional[int] = 0,
    maximum: Optional[int] = None,
) -> int:
    """
    Coerce a loosely typed value into a bounded integer.

    Floats are floored, numeric strings are parsed, and None, blank or
    non-finite input returns `fallback` untouched.
    """
    if value is None:
        return fallback
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(parsed):
        return fallback

    result = math.floor(parsed)
    if minimum is not None:
        result = max(result, minimum)
    if maximum is not None:
        result = min(result, maximum)
    return result


def sanitize_boolean(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("true", "1"):
            return True
        if normalized in ("false", "0"):
            return False
    return fallback


def is_json_value(value: Any) -> bool:
    if value is None or isinstance(value, (str, bool)):
        return True
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, list):
        return all(is_json_value(item) for item in value)
    if isinstance(value, dict):
        return all(isinstance(key, str) and is_json_value(item) for key, item in value.items())
    return False


def sanitize_metadata(value: Any) -> Any:
    if value is None:
        return {}
    if not is_json_value(value):
        raise LabKitSettingsError("Metadata must be valid JSON.")
    return value


# =============================================================================
# RESOLUTION
# =============================================================================

def resolve_settings(
    defaults: Optional[LabKitSettingRecord],
    override: Optional[LabKitSettingRecord],
) -> KitTypePolicy:
    """Layer a kit-type override over the study default row, field by field."""

    def pick(field: str, fallback):
        for row in (override, defaults):
            if row is not None and getattr(row, field) is not None:
                return getattr(row, field)
        return fallback

    return KitTypePolicy(
        min_on_hand=sanitize_integer(pick("min_on_hand", 0), 0, 0, MAX_MIN_ON_HAND),
        buffer_days=sanitize_integer(pick("buffer_days", 0), 0, 0, MAX_BUFFER_DAYS),
        lead_time_days=sanitize_integer(pick("lead_time_days", 0), 0, 0, MAX_LEAD_TIME_DAYS),
        auto_order_enabled=sanitize_boolean(pick("auto_order_enabled", False), False),
    )


def split_settings_rows(
    rows: Sequence[LabKitSettingRecord],
) -> tuple[Optional[LabKitSettingRecord], dict[uuid.UUID, LabKitSettingRecord]]:
    """Separate the study default row from kit-type overrides."""
    default_row = None
    overrides: dict[uuid.UUID, LabKitSettingRecord] = {}
    for row in rows:
        if row.kit_type_id is None:
            default_row = row
        else:
            overrides[row.kit_type_id] = row
    return default_row, overrides


def compute_etag(
    study_id: uuid.UUID,
    study_updated_at: Optional[datetime],
    rows: Sequence[LabKitSettingRecord],
) -> str:
    digest = hashlib.sha256()
    digest.update(str(study_id).encode("utf-8"))
    digest.update(b"|")
    digest.update((study_updated_at.isoformat() if study_updated_at else "0").encode("utf-8"))
    for row in sorted(rows, key=lambda item: str(item.id)):
        digest.update(b"|")
        digest.update(str(row.id).encode("utf-8"))
        digest.update(b":")
        digest.update((row.updated_at.isoformat() if row.updated_at else "0").encode("utf-8"))
    return digest.hexdigest()


def _history_builder(
    action: HistoryAction,
    study_id: uuid.UUID,
    actor_id: Optional[uuid.UUID],
    before: Optional[LabKitSettingRecord] = None,
    study_changes: Optional[dict[str, Any]] = None,
) -> SettingsHistoryBuilder:
    """History entry for a settings write. Deletes carry only `before`."""

    def build(row: LabKitSettingRecord) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if before is not None:
            changes["before"] = before.model_dump(mode="json")
        if action != HistoryAction.DELETE:
            changes["after"] = row.model_dump(mode="json")
        if study_changes:
            changes["study"] = study_changes
        return {
            "action": action.value,
            "study_id": study_id,
            "settings_id": row.id if action != HistoryAction.DELETE else None,
            "kit_type_id": row.kit_type_id,
            "changed_by": actor_id,
            "changes": changes,
        }

    return build


# =============================================================================
# SERVICE
# =============================================================================

class LabKitSettingsService:
    """Reads and patches the settings of one study."""

    def __init__(self, repository: LabKitRepository):
        self.repository = repository

    async def fetch_settings(self, study_id: uuid.UUID) -> SettingsSnapshot:
        study = await self._load_study(study_id)
        try:
            rows, kit_types = await asyncio.gather(
                self.repository.list_settings(study_id),
                self.repository.list_kit_types(study_id),
            )
        except Exception as exc:
            logger.error(f"Failed to load lab kit settings for study {study_id}: {exc}")
            raise LabKitSettingsError("Unable to load lab kit settings.", 500) from exc

        kit_type_names = {kit_type.id: kit_type.name for kit_type in kit_types}
        default_row, override_rows = split_settings_rows(rows)

        defaults = SettingsDefaults(
            id=default_row.id if default_row else None,
            min_on_hand=default_row.min_on_hand if default_row else 0,
            buffer_days=default_row.buffer_days if default_row else 0,
            lead_time_days=default_row.lead_time_days if default_row else 0,
            auto_order_enabled=default_row.auto_order_enabled if default_row else False,
            notes=default_row.notes if default_row else None,
            metadata=default_row.metadata if default_row else {},
            updated_at=default_row.updated_at if default_row else None,
            updated_by=default_row.updated_by if default_row else None,
            inventory_buffer_days=study.inventory_buffer_days or 0,
            inventory_buffer_kits=study.inventory_buffer_kits or 0,
        )
        overrides = sorted(
            (
                SettingsOverride(
                    id=row.id,
                    kit_type_id=row.kit_type_id,
                    kit_type_name=kit_type_names.get(row.kit_type_id),
                    min_on_hand=row.min_on_hand,
                    buffer_days=row.buffer_days,
                    lead_time_days=row.lead_time_days,
                    auto_order_enabled=row.auto_order_enabled,
                    notes=row.notes,
                    metadata=row.metadata,
                    updated_at=row.updated_at,
                    updated_by=row.updated_by,
                )
                for row in override_rows.values()
            ),
            key=lambda item: (item.kit_type_name or "").lower(),
        )

        stamps = [stamp for stamp in [study.updated_at, *(row.updated_at for row in rows)] if stamp]
        return SettingsSnapshot(
            study_id=study_id,
            defaults=defaults,
            overrides=overrides,
            updated_at=max(stamps) if stamps else None,
            etag=compute_etag(study_id, study.updated_at, rows),
        )

    async def apply_settings_patch(
        self,
        study_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        patch: SettingsPatch,
        if_match: Optional[str] = None,
    ) -> SettingsSnapshot:
        """
        Apply defaults, override upserts and override deletes, in that order.

        The whole patch is validated before anything is written, so a rejected
        patch changes nothing. Each mutation is then committed together with
        its history entry. A stale `if_match` ETag rejects the whole patch.
        """
        study = await self._load_study(study_id)

        if if_match:
            current = await self.fetch_settings(study_id)
            if if_match.strip().strip('"') != current.etag:
                raise LabKitSettingsError("Settings were modified by another user. Reload and retry.", 412)

        try:
            rows, kit_types = await asyncio.gather(
                self.repository.list_settings(study_id),
                self.repository.list_kit_types(study_id),
            )
        except Exception as exc:
            logger.error(f"Failed to load lab kit settings before patch for study {study_id}: {exc}")
            raise LabKitSettingsError("Unable to modify lab kit settings.", 500) from exc

        existing = {row.id: row for row in rows}
        default_row, _ = split_settings_rows(rows)
        known_kit_types = {kit_type.id for kit_type in kit_types}

        # ---------------------------------------------------------------------
        # Validation (nothing is written until every part passes)
        # ---------------------------------------------------------------------
        if patch.defaults is not None and "metadata" in patch.defaults.model_fields_set:
            sanitize_metadata(patch.defaults.metadata)
        for override in patch.overrides:
            if override.kit_type_id is None:
                raise LabKitSettingsError("kitTypeId is required for overrides.")
            if override.kit_type_id not in known_kit_types:
                raise LabKitSettingsError(f"Kit type {override.kit_type_id} does not belong to this study.")
            if override.id is not None:
                current = existing.get(override.id)
                if current is None or current.kit_type_id is None:
                    raise LabKitSettingsError("Override not found for this study.", 404)
            if "metadata" in override.model_fields_set:
                sanitize_metadata(override.metadata)

        changes = 0

        # ---------------------------------------------------------------------
        # Study defaults
        # ---------------------------------------------------------------------
        if patch.defaults is not None:
            fields = patch.defaults
            provided = fields.model_fields_set
            values = {
                "min_on_hand": sanitize_integer(
                    fields.min_on_hand, default_row.min_on_hand if default_row else 0, 0, MAX_MIN_ON_HAND
                ),
                "buffer_days": sanitize_integer(
                    fields.buffer_days, default_row.buffer_days if default_row else 0, 0, MAX_BUFFER_DAYS
                ),
                "lead_time_days": sanitize_integer(
                    fields.lead_time_days, default_row.lead_time_days if default_row else 0, 0, MAX_LEAD_TIME_DAYS
                ),
                "auto_order_enabled": sanitize_boolean(
                    fields.auto_order_enabled, default_row.auto_order_enabled if default_row else False
                ),
                "notes": fields.notes if "notes" in provided else (default_row.notes if default_row else None),
                "metadata": (
                    sanitize_metadata(fields.metadata) if "metadata" in provided
                    else (default_row.metadata if default_row else {})
                ),
                "updated_by": actor_id,
            }

            study_values = {}
            if fields.inventory_buffer_days is not None:
                study_values["inventory_buffer_days"] = sanitize_integer(
                    fields.inventory_buffer_days, study.inventory_buffer_days, 0, MAX_BUFFER_DAYS
                )
            if fields.inventory_buffer_kits is not None:
                study_values["inventory_buffer_kits"] = sanitize_integer(
                    fields.inventory_buffer_kits, study.inventory_buffer_kits, 0, MAX_BUFFER_KITS
                )
            study_changes = None
            if study_values:
                try:
                    await self.repository.update_study(study_id, study_values)
                except Exception as exc:
                    logger.error(f"Failed to update study defaults for study {study_id}: {exc}")
                    raise LabKitSettingsError("Unable to update study defaults.", 500) from exc
                study_changes = {
                    "before": {key: getattr(study, key) for key in study_values},
                    "after": study_values,
                }

            try:
                if default_row is not None:
                    updated = await self.repository.update_setting(
                        default_row.id,
                        values,
                        history=_history_builder(HistoryAction.UPDATE, study_id, actor_id, default_row, study_changes),
                    )
                else:
                    updated = await self.repository.insert_setting(
                        {"study_id": study_id, "kit_type_id": None, **values},
                        history=_history_builder(HistoryAction.CREATE, study_id, actor_id, None, study_changes),
                    )
            except Exception as exc:
                logger.error(f"Failed to write default lab kit settings for study {study_id}: {exc}")
                raise LabKitSettingsError("Unable to update default lab kit settings.", 500) from exc
            existing[updated.id] = updated
            default_row = updated
            changes += 1

        # ---------------------------------------------------------------------
        # Kit-type overrides
        # ---------------------------------------------------------------------
        for override in patch.overrides:
            if override.id is not None:
                current = existing[override.id]
            else:
                # one override row per kit type; a second create becomes an update
                current = next(
                    (row for row in existing.values() if row.kit_type_id == override.kit_type_id),
                    None,
                )

            base = current or default_row
            provided = override.model_fields_set
            values = {
                "kit_type_id": override.kit_type_id,
                "min_on_hand": sanitize_integer(
                    override.min_on_hand, base.min_on_hand if base else 0, 0, MAX_MIN_ON_HAND
                ),
                "buffer_days": sanitize_integer(
                    override.buffer_days, base.buffer_days if base else 0, 0, MAX_BUFFER_DAYS
                ),
                "lead_time_days": sanitize_integer(
                    override.lead_time_days, base.lead_time_days if base else 0, 0, MAX_LEAD_TIME_DAYS
                ),
                "auto_order_enabled": sanitize_boolean(
                    override.auto_order_enabled, base.auto_order_enabled if base else False
                ),
                "notes": override.notes if "notes" in provided else (current.notes if current else None),
                "metadata": (
                    sanitize_metadata(override.metadata) if "metadata" in provided
                    else (current.metadata if current else {})
                ),
                "updated_by": actor_id,
            }

            try:
                if current is not None:
                    updated = await self.repository.update_setting(
                        current.id,
                        values,
                        history=_history_builder(HistoryAction.UPDATE, study_id, actor_id, current),
                    )
                else:
                    updated = await self.repository.insert_setting(
                        {"study_id": study_id, **values},
                        history=_history_builder(HistoryAction.CREATE, study_id, actor_id),
                    )
            except Exception as exc:
                logger.error(
                    f"Failed to write lab kit override for study {study_id}, kit type {override.kit_type_id}: {exc}"
                )
                raise LabKitSettingsError("Unable to save lab kit override.", 500) from exc
            existing[updated.id] = updated
            changes += 1

        # ---------------------------------------------------------------------
        # Deletes (unknown ids and the default row are ignored)
        # ---------------------------------------------------------------------
        for override_id in patch.delete_override_ids:
            current = existing.get(override_id)
            if current is None or current.kit_type_id is None:
                continue
            try:
                await self.repository.delete_setting(
                    override_id,
                    history=_history_builder(HistoryAction.DELETE, study_id, actor_id, current),
                )
            except Exception as exc:
                logger.error(f"Failed to delete lab kit override {override_id} for study {study_id}: {exc}")
                raise LabKitSettingsError("Unable to delete lab kit override.", 500) from exc
            del existing[override_id]
            changes += 1

        if changes:
            logger.info(f"Lab kit settings patched for study {study_id}: {changes} change(s)")

        return await self.fetch_settings(study_id)

    async def _load_study(self, study_id: uuid.UUID):
        try:
            study = await self.repository.get_study(study_id)
        except Exception as exc:
            logger.error(f"Failed to load study {study_id}: {exc}")
            raise LabKitSettingsError("Unable to load study settings.", 500) from exc
        if study is None:
            raise StudyNotFoundError(study_id)
        return study
