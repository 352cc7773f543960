"""
Study Coordinator - Inventory State Aggregator

Supply side of the forecast: kits on hand, kits about to expire, and
purchase orders still in flight, per kit type, as of today.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence

from app.models.lab_kits import (
    KitInventoryState,
    KitStatus,
    KitTypeRecord,
    LabKitOrderRecord,
    LabKitRecord,
    OrderStatus,
    PendingOrderView,
)
from app.services.lab_kits.errors import read_or_fail
from app.services.lab_kits.repository import LabKitRepository

logger = logging.getLogger(__name__)


def normalize_name(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip().lower()
    return normalized or None


def _order_sort_key(order: PendingOrderView) -> tuple:
    if order.expected_arrival:
        reference = order.expected_arrival.isoformat()
    elif order.created_at:
        reference = order.created_at.isoformat()
    else:
        reference = ""
    return (order.status != OrderStatus.PENDING.value, reference)


def aggregate_inventory(
    kits: Sequence[LabKitRecord],
    orders: Sequence[LabKitOrderRecord],
    kit_types: Sequence[KitTypeRecord],
    today: date,
    expiry_cutoff: date,
) -> dict[uuid.UUID, KitInventoryState]:
    """
    Attribute kits and orders to kit types.

    Kits without a kit_type_id are matched on their legacy free-text name.
    Kits dated to expire before today never count as available, even if the
    expiry sweep has not reached them yet.
    """
    ids_by_name = {}
    for kit_type in kit_types:
        name = normalize_name(kit_type.name)
        if name:
            ids_by_name[name] = kit_type.id

    states: dict[uuid.UUID, KitInventoryState] = {}

    def state_for(kit_type_id: uuid.UUID) -> KitInventoryState:
        if kit_type_id not in states:
            states[kit_type_id] = KitInventoryState(kit_type_id=kit_type_id)
        return states[kit_type_id]

    for kit in kits:
        kit_type_id = kit.kit_type_id or ids_by_name.get(normalize_name(kit.kit_type))
        if kit_type_id is None or kit.status != KitStatus.AVAILABLE.value:
            continue
        if kit.expiration_date is not None and kit.expiration_date < today:
            continue

        state = state_for(kit_type_id)
        state.kits_available += 1
        if kit.expiration_date is not None and kit.expiration_date <= expiry_cutoff:
            state.kits_expiring_soon += 1

    for order in orders:
        if order.kit_type_id is None:
            continue

        state = state_for(order.kit_type_id)
        is_pending = order.status == OrderStatus.PENDING.value
        is_overdue = is_pending and order.expected_arrival is not None and order.expected_arrival < today
        if is_pending:
            state.pending_order_quantity += order.quantity
        if is_overdue:
            state.overdue_order_quantity += order.quantity

        state.pending_orders.append(PendingOrderView(
            id=order.id,
            quantity=order.quantity,
            vendor=order.vendor,
            expected_arrival=order.expected_arrival,
            status=order.status,
            is_overdue=is_overdue,
            notes=order.notes,
            created_at=order.created_at,
            created_by=order.created_by,
            received_date=order.received_date,
        ))

    for state in states.values():
        state.pending_orders.sort(key=_order_sort_key)

    return states


class InventoryStateAggregator:
    """Reads kit inventory and orders for a study."""

    def __init__(self, repository: LabKitRepository):
        self.repository = repository

    async def sweep_expired_kits(
        self,
        study_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> int:
        """Move available kits past their expiration date into `expired`."""
        today = today or datetime.now(timezone.utc).date()
        expired = await self.repository.expire_lab_kits(today, study_id)
        if expired:
            scope = f"study {study_id}" if study_id else "all studies"
            logger.info(f"Expired {expired} lab kit(s) past expiration date ({scope})")
        return expired

    async def aggregate(
        self,
        study_id: uuid.UUID,
        horizon_days: int,
        today: date,
        kit_types: Sequence[KitTypeRecord],
    ) -> dict[uuid.UUID, KitInventoryState]:
        kits, orders = await asyncio.gather(
            read_or_fail(
                self.repository.list_lab_kits(study_id, [KitStatus.AVAILABLE.value]),
                "Failed to load lab kits", study_id,
            ),
            read_or_fail(
                self.repository.list_orders(study_id),
                "Failed to load lab kit orders", study_id,
            ),
        )
        expiry_cutoff = today + timedelta(days=horizon_days)
        return aggregate_inventory(kits, orders, kit_types, today, expiry_cutoff)
