"""Inventory event (ledger) persistence."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.models.stock import InventoryEvent, InventoryEventType
from stockledger.schemas.stock import EventTypeStats, InventoryEventStats, StockReference


class InventoryEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        event_type: InventoryEventType,
        quantity_delta: int,
        running_balance: int,
        reference: Optional[StockReference] = None,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> InventoryEvent:
        event = InventoryEvent(
            tenant_id=tenant_id,
            product_id=product_id,
            location_id=location_id,
            type=event_type,
            quantity_delta=quantity_delta,
            running_balance=running_balance,
            reference_type=reference.type if reference else None,
            reference_id=reference.id if reference else None,
            user_id=user_id,
            notes=notes,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def list_partition(self, tenant_id: str, product_id: int, location_id: int) -> List[InventoryEvent]:
        """All events of one (tenant, product, location) partition in creation order."""
        return list(
            self.db.execute(
                select(InventoryEvent)
                .where(
                    InventoryEvent.tenant_id == tenant_id,
                    InventoryEvent.product_id == product_id,
                    InventoryEvent.location_id == location_id,
                )
                .order_by(InventoryEvent.id.asc())
            ).scalars()
        )

    def _filtered(
        self,
        stmt,
        tenant_id: str,
        product_id: Optional[int] = None,
        location_id: Optional[int] = None,
        event_type: Optional[InventoryEventType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ):
        stmt = stmt.where(InventoryEvent.tenant_id == tenant_id)
        if product_id is not None:
            stmt = stmt.where(InventoryEvent.product_id == product_id)
        if location_id is not None:
            stmt = stmt.where(InventoryEvent.location_id == location_id)
        if event_type is not None:
            stmt = stmt.where(InventoryEvent.type == event_type)
        if date_from is not None:
            stmt = stmt.where(InventoryEvent.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(InventoryEvent.created_at <= date_to)
        return stmt

    def find_many(
        self,
        tenant_id: str,
        product_id: Optional[int] = None,
        location_id: Optional[int] = None,
        event_type: Optional[InventoryEventType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[InventoryEvent]:
        """Newest first."""
        stmt = self._filtered(
            select(InventoryEvent), tenant_id, product_id, location_id, event_type, date_from, date_to
        )
        return list(self.db.execute(stmt.order_by(InventoryEvent.id.desc()).limit(limit)).scalars())

    def stats(
        self,
        tenant_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> InventoryEventStats:
        grouped = self.db.execute(
            self._filtered(
                select(
                    InventoryEvent.type,
                    func.count(InventoryEvent.id),
                    func.coalesce(func.sum(InventoryEvent.quantity_delta), 0),
                ),
                tenant_id,
                date_from=date_from,
                date_to=date_to,
            )
            .group_by(InventoryEvent.type)
            .order_by(InventoryEvent.type)
        ).all()

        by_type = [
            EventTypeStats(type=event_type, count=count, net_change=int(net))
            for event_type, count, net in grouped
        ]
        return InventoryEventStats(
            total=sum(s.count for s in by_type),
            net_change=sum(s.net_change for s in by_type),
            by_type=by_type,
        )
