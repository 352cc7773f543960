"""
Study Coordinator - Recommendation Service

Listing and manual transitions (act / dismiss) for reorder recommendations.
Only `new` recommendations can be actioned; every other status is terminal.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from app.models.lab_kits import (
    HistoryAction,
    RecommendationActionRequest,
    RecommendationItem,
    RecommendationList,
    RecommendationRecord,
    RecommendationStatus,
)
from app.services.lab_kits.errors import LabKitRecommendationError
from app.services.lab_kits.recommendation_engine import history_builder
from app.services.lab_kits.repository import LabKitRepository
from app.services.lab_kits.settings_service import is_json_value

logger = logging.getLogger(__name__)


def merge_metadata(existing: Any, incoming: Any) -> Any:
    if incoming is None:
        return existing
    if not is_json_value(incoming):
        raise LabKitRecommendationError("Metadata must be valid JSON.")
    if isinstance(existing, dict) and isinstance(incoming, dict):
        return {**existing, **incoming}
    return incoming


def to_item(row: RecommendationRecord, kit_type_name: Optional[str]) -> RecommendationItem:
    return RecommendationItem(
        **row.model_dump(exclude={"status"}),
        status=RecommendationStatus(row.status),
        kit_type_name=kit_type_name,
    )


class RecommendationService:
    def __init__(self, repository: LabKitRepository):
        self.repository = repository

    async def list_recommendations(
        self,
        study_id: uuid.UUID,
        statuses: Optional[Sequence[str]] = None,
    ) -> RecommendationList:
        """Newest first, with per-status counts over the returned rows."""
        valid = {status.value for status in RecommendationStatus}
        wanted = [status for status in (statuses or []) if status in valid]
        try:
            rows, kit_types = await asyncio.gather(
                self.repository.list_recommendations(study_id, wanted or None),
                self.repository.list_kit_types(study_id),
            )
        except Exception as exc:
            logger.error(f"Failed to load recommendations for study {study_id}: {exc}")
            raise LabKitRecommendationError("Unable to load lab kit recommendations.", 500) from exc

        names = {kit_type.id: kit_type.name for kit_type in kit_types}
        items = [to_item(row, names.get(row.kit_type_id)) for row in rows]
        counts = {status.value: 0 for status in RecommendationStatus}
        for item in items:
            counts[item.status.value] += 1
        return RecommendationList(study_id=study_id, recommendations=items, counts=counts)

    async def apply_action(
        self,
        study_id: uuid.UUID,
        recommendation_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        request: RecommendationActionRequest,
    ) -> RecommendationItem:
        try:
            existing = await self.repository.get_recommendation(recommendation_id)
        except Exception as exc:
            logger.error(f"Failed to load recommendation {recommendation_id}: {exc}")
            raise LabKitRecommendationError("Unable to load recommendation.", 500) from exc
        if existing is None or existing.study_id != study_id:
            raise LabKitRecommendationError("Recommendation not found.", 404)

        if existing.status != RecommendationStatus.NEW.value:
            raise LabKitRecommendationError(f"Recommendation already {existing.status}.", 409)

        if request.action == "act":
            status = RecommendationStatus.ACTED
            dismissed_reason = None
            history_action = HistoryAction.ACT
        else:
            dismissed_reason = (request.reason or "").strip()
            if not dismissed_reason:
                raise LabKitRecommendationError("Dismiss reason is required.")
            status = RecommendationStatus.DISMISSED
            history_action = HistoryAction.DISMISS

        values = {
            "status": status.value,
            "dismissed_reason": dismissed_reason,
            "acted_by": actor_id,
            "acted_at": datetime.now(timezone.utc),
            "metadata": merge_metadata(existing.metadata or {}, request.metadata),
        }
        try:
            updated = await self.repository.update_recommendation(
                recommendation_id,
                values,
                history=history_builder(history_action, study_id, actor_id, existing),
            )
        except Exception as exc:
            logger.error(f"Failed to update recommendation {recommendation_id} for study {study_id}: {exc}")
            raise LabKitRecommendationError("Unable to update recommendation status.", 500) from exc

        logger.info(f"Recommendation {recommendation_id} marked {status.value} by {actor_id}")

        # the transition is already committed; a missing name is not worth failing it
        kit_type_name = None
        if updated.kit_type_id is not None:
            try:
                kit_types = await self.repository.list_kit_types(study_id)
            except Exception as exc:
                logger.warning(f"Failed to load kit type names for study {study_id}: {exc}")
            else:
                kit_type_name = next((kt.name for kt in kit_types if kt.id == updated.kit_type_id), None)
        return to_item(updated, kit_type_name)
