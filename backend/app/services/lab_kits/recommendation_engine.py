"""
Study Coordinator - Recommendation Synthesizer

Turns forecast shortfalls into reorder recommendations and reconciles them
with the open (`new`) recommendations already on file.

Reconciliation per (kit type, reason type) key:
- no open row        -> create
- open row, changed  -> update in place
- open row, same     -> untouched
- open row, no match -> auto-expire

Running it twice over unchanged data writes nothing the second time.
"""

import json
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from app.core.config import settings
from app.models.lab_kits import (
    ForecastConfig,
    ForecastRecord,
    HistoryAction,
    InventoryForecast,
    ReasonType,
    RecommendationCandidate,
    RecommendationRecord,
    RecommendationStatus,
    RecomputeAllResult,
    RecomputeAllStudyResult,
    RecomputeResult,
)
from app.services.lab_kits.demand_projector import clamp_days_ahead
from app.services.lab_kits.errors import (
    ForecastServiceError,
    LabKitRecommendationError,
    read_or_fail,
)
from app.services.lab_kits.forecast_engine import ForecastEngine
from app.services.lab_kits.inventory_state import InventoryStateAggregator
from app.services.lab_kits.repository import LabKitRepository, RecommendationHistoryBuilder

logger = logging.getLogger(__name__)

AUTO_EXPIRED_REASON = "Auto-expired: no longer needed"


class SnapshotEncoder(json.JSONEncoder):
    """JSON encoder for metadata snapshots."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, (date, datetime)):
            return obj.isoformat()
        return super().default(obj)


def canonicalize(data: Any) -> str:
    """Stable JSON form used to compare metadata snapshots."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), cls=SnapshotEncoder)


def _plural(count: int, word: str = "kit") -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


# =============================================================================
# CANDIDATES
# =============================================================================

def latest_order_date(earliest_visit: Optional[date], lead_time_days: int, today: date) -> Optional[date]:
    """Walk the lead time back from the first visit; never earlier than today."""
    if earliest_visit is None:
        return None
    order_by = earliest_visit - timedelta(days=max(0, lead_time_days))
    return max(order_by, today)


def build_reason(record: ForecastRecord, reason_type: ReasonType, horizon_days: int) -> str:
    if reason_type == ReasonType.DEFICIT:
        reason = f"Forecast deficit of {_plural(record.deficit)} within {horizon_days} days."
    else:
        reason = f"Maintain buffer of {_plural(record.buffer_target)} within {horizon_days} days."
    if record.kits_expiring_soon > 0:
        reason += f" {_plural(record.kits_expiring_soon)} expire soon."
    if record.pending_order_quantity > 0:
        reason += f" Pending orders cover {record.pending_order_quantity}."
    return reason


def build_candidates(
    forecast: InventoryForecast,
    config: Optional[ForecastConfig] = None,
) -> list[RecommendationCandidate]:
    """At most one candidate per kit type: deficit when short, buffer otherwise."""
    config = config or ForecastConfig()
    context = forecast.context
    candidates = []

    for record in forecast.forecast:
        if record.recommended_order_qty <= 0:
            continue

        reason_type = ReasonType.DEFICIT if record.deficit > 0 else ReasonType.BUFFER
        policy = record.policy
        candidates.append(RecommendationCandidate(
            kit_type_id=record.kit_type_id,
            reason_type=reason_type,
            reason=build_reason(record, reason_type, context.effective_days_ahead),
            recommended_quantity=record.recommended_order_qty,
            window_start=record.earliest_visit_date,
            window_end=record.latest_visit_date,
            latest_order_date=latest_order_date(record.earliest_visit_date, policy.lead_time_days, context.today),
            confidence=(
                config.deficit_confidence if reason_type == ReasonType.DEFICIT else config.buffer_confidence
            ),
            metadata={
                "reasonType": reason_type.value,
                "forecast": {
                    "kitsRequired": record.kits_required,
                    "kitsAvailable": record.kits_available,
                    "pendingOrderQuantity": record.pending_order_quantity,
                    "kitsExpiringSoon": record.kits_expiring_soon,
                    "bufferTarget": record.buffer_target,
                    "perDayDemand": record.per_day_demand,
                    "bufferDays": policy.buffer_days,
                    "minOnHand": policy.min_on_hand,
                    "inventoryBufferKits": context.inventory_buffer_kits,
                    "leadTimeDays": policy.lead_time_days,
                    "autoOrderEnabled": policy.auto_order_enabled,
                    "riskScore": record.risk_score,
                    "riskLevel": record.risk_level.value,
                },
            },
        ))

    return candidates


def recommendation_key(row: RecommendationRecord) -> str:
    reason_type = row.metadata.get("reasonType") if isinstance(row.metadata, dict) else None
    return f"{row.kit_type_id or 'unknown'}|{reason_type or 'unknown'}"


def has_changed(existing: RecommendationRecord, candidate: RecommendationCandidate) -> bool:
    existing_confidence = round(float(existing.confidence), 4) if existing.confidence is not None else None
    return (
        existing.recommended_quantity != candidate.recommended_quantity
        or existing.reason != candidate.reason
        or existing.window_start != candidate.window_start
        or existing.window_end != candidate.window_end
        or existing.latest_order_date != candidate.latest_order_date
        or existing_confidence != round(candidate.confidence, 4)
        or canonicalize(existing.metadata) != canonicalize(candidate.metadata)
    )


def _candidate_values(candidate: RecommendationCandidate) -> dict[str, Any]:
    return {
        "recommended_quantity": candidate.recommended_quantity,
        "reason": candidate.reason,
        "window_start": candidate.window_start,
        "window_end": candidate.window_end,
        "latest_order_date": candidate.latest_order_date,
        "confidence": candidate.confidence,
        "metadata": candidate.metadata,
    }


def history_builder(
    action: HistoryAction,
    study_id: uuid.UUID,
    actor_id: Optional[uuid.UUID],
    before: Optional[RecommendationRecord] = None,
) -> RecommendationHistoryBuilder:
    """History entry for a recommendation write, built from the written row."""

    def build(row: RecommendationRecord) -> dict[str, Any]:
        changes = {"after": row.model_dump(mode="json")}
        if before is not None:
            changes = {"before": before.model_dump(mode="json"), **changes}
        return {
            "recommendation_id": row.id,
            "study_id": study_id,
            "kit_type_id": row.kit_type_id,
            "action": action.value,
            "changes": changes,
            "changed_by": actor_id,
        }

    return build


# =============================================================================
# ENGINE
# =============================================================================

class RecommendationEngine:
    """Recompute and reconcile the recommendation ledger of a study."""

    def __init__(self, repository: LabKitRepository, config: Optional[ForecastConfig] = None):
        self.repository = repository
        self.config = config or ForecastConfig()
        self.forecast_engine = ForecastEngine(repository, self.config)
        self.inventory = InventoryStateAggregator(repository)

    async def recompute(
        self,
        study_id: uuid.UUID,
        days_ahead: Any = None,
        today: Optional[date] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> RecomputeResult:
        """
        Rebuild candidates from a fresh forecast and reconcile open rows.

        All reads happen before the first write, the expired-kit sweep
        included. Each row is committed together with its history entry; a
        failed write stops the run and leaves earlier rows in place, so
        re-running is the recovery path.
        """
        today = today or datetime.now(timezone.utc).date()
        days = clamp_days_ahead(days_ahead, settings.RECOMPUTE_DEFAULT_DAYS)

        # kits past expiry never count as available, so the forecast does not
        # depend on the sweep having run
        forecast = await self.forecast_engine.load_forecast(study_id, days, today)
        open_rows = await read_or_fail(
            self.repository.list_recommendations(study_id, [RecommendationStatus.NEW.value]),
            "Failed to load existing recommendations",
            study_id,
        )
        await read_or_fail(
            self.inventory.sweep_expired_kits(study_id, today), "Failed to expire lab kits", study_id
        )

        candidates = build_candidates(forecast, self.config)

        # newest open row wins a key; older duplicates are expired
        existing: dict[str, RecommendationRecord] = {}
        stale: list[RecommendationRecord] = []
        for row in open_rows:
            key = recommendation_key(row)
            if key in existing:
                stale.append(row)
            else:
                existing[key] = row

        created = updated = 0
        seen: set[str] = set()
        for candidate in candidates:
            match = existing.get(candidate.key)
            if match is None:
                await self._create(study_id, candidate, actor_id)
                created += 1
                continue
            seen.add(candidate.key)
            if has_changed(match, candidate):
                await self._update(study_id, match, candidate, actor_id)
                updated += 1

        stale.extend(row for key, row in existing.items() if key not in seen)
        for row in stale:
            await self._expire(study_id, row, actor_id)

        recommendations = await read_or_fail(
            self.repository.list_recommendations(study_id),
            "Failed to refresh recommendations",
            study_id,
        )
        logger.info(
            f"Recompute completed for study {study_id}: "
            f"created={created} updated={updated} expired={len(stale)}"
        )
        return RecomputeResult(
            study_id=study_id,
            created=created,
            updated=updated,
            expired=len(stale),
            recommendations=recommendations,
        )

    async def recompute_all(
        self,
        days_ahead: Any = None,
        study_statuses: Optional[Sequence[str]] = None,
        today: Optional[date] = None,
    ) -> RecomputeAllResult:
        """Recompute every study in the given statuses; one failing study does not stop the rest."""
        statuses = [status for status in (study_statuses or []) if status and status.strip()]
        statuses = statuses or list(settings.RECOMPUTE_STUDY_STATUSES)

        try:
            studies = await self.repository.list_studies(statuses)
        except Exception as exc:
            logger.error(f"Failed to load studies for batch recompute ({statuses}): {exc}")
            raise ForecastServiceError("Failed to load studies.") from exc

        result = RecomputeAllResult()
        for study in studies:
            result.processed += 1
            try:
                outcome = await self.recompute(study.id, days_ahead, today)
            except Exception as exc:
                result.failures += 1
                logger.error(f"Batch recompute failed for study {study.id}: {exc}")
                result.results.append(RecomputeAllStudyResult(study_id=study.id, status="error", error=str(exc)))
                continue

            result.totals["created"] += outcome.created
            result.totals["updated"] += outcome.updated
            result.totals["expired"] += outcome.expired
            result.results.append(RecomputeAllStudyResult(
                study_id=study.id,
                status="ok",
                created=outcome.created,
                updated=outcome.updated,
                expired=outcome.expired,
            ))

        logger.info(
            f"Batch recompute finished: processed={result.processed} failures={result.failures} "
            f"totals={result.totals}"
        )
        return result

    # =========================================================================
    # WRITES
    # =========================================================================

    async def _create(
        self,
        study_id: uuid.UUID,
        candidate: RecommendationCandidate,
        actor_id: Optional[uuid.UUID],
    ) -> RecommendationRecord:
        try:
            row = await self.repository.insert_recommendation(
                {
                    "study_id": study_id,
                    "kit_type_id": candidate.kit_type_id,
                    "status": RecommendationStatus.NEW.value,
                    **_candidate_values(candidate),
                },
                history=history_builder(HistoryAction.CREATE, study_id, actor_id),
            )
        except Exception as exc:
            logger.error(f"Failed to insert recommendation for study {study_id}, key {candidate.key}: {exc}")
            raise LabKitRecommendationError("Failed to save recommendation.", 500) from exc
        return row

    async def _update(
        self,
        study_id: uuid.UUID,
        existing: RecommendationRecord,
        candidate: RecommendationCandidate,
        actor_id: Optional[uuid.UUID],
    ) -> RecommendationRecord:
        try:
            row = await self.repository.update_recommendation(
                existing.id,
                _candidate_values(candidate),
                history=history_builder(HistoryAction.UPDATE, study_id, actor_id, existing),
            )
        except Exception as exc:
            logger.error(f"Failed to update recommendation {existing.id} for study {study_id}: {exc}")
            raise LabKitRecommendationError("Failed to update recommendation.", 500) from exc
        return row

    async def _expire(
        self,
        study_id: uuid.UUID,
        existing: RecommendationRecord,
        actor_id: Optional[uuid.UUID],
    ) -> RecommendationRecord:
        try:
            row = await self.repository.update_recommendation(
                existing.id,
                {
                    "status": RecommendationStatus.EXPIRED.value,
                    "dismissed_reason": AUTO_EXPIRED_REASON,
                    "acted_at": datetime.now(timezone.utc),
                },
                history=history_builder(HistoryAction.EXPIRE, study_id, actor_id, existing),
            )
        except Exception as exc:
            logger.error(f"Failed to expire recommendation {existing.id} for study {study_id}: {exc}")
            raise LabKitRecommendationError("Failed to expire recommendation.", 500) from exc
        return row
