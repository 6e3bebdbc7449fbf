# slots.py
import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional

from databases import Database

from slot_swap.data_models import Slot, SlotStatus, as_utc, new_id, utcnow
from slot_swap.database import database, guarded_update
from slot_swap.errors import ConflictError, NotFoundError, ValidationError
from slot_swap.models import slots

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "start_time", "end_time", "status")


def parse_owner_status(value: Any) -> SlotStatus:
    """Statuses an owner may set directly. SWAP_PENDING belongs to the negotiation engine."""
    try:
        slot_status = SlotStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status '{value}'. Use BUSY or SWAPPABLE.")
    if slot_status == SlotStatus.SWAP_PENDING:
        raise ValidationError("Cannot manually set status to SWAP_PENDING")
    return slot_status


class SlotStore:
    """Persistence for schedule slots."""

    def __init__(self, db: Database = database):
        self.db = db

    async def create(
        self,
        owner_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        status: Optional[Any] = None,
        description: Optional[str] = None,
    ) -> Slot:
        title = (title or "").strip()
        if not owner_id or not title or start_time is None or end_time is None:
            raise ValidationError("Please provide title, startTime, and endTime")
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if end_time <= start_time:
            raise ValidationError("End time must be after start time")
        slot_status = parse_owner_status(status) if status else SlotStatus.BUSY

        now = utcnow()
        values = {
            "id": new_id(),
            "owner_id": owner_id,
            "title": title,
            "description": description.strip() if description else description,
            "start_time": start_time,
            "end_time": end_time,
            "status": slot_status.value,
            "revision": new_id(),
            "created_at": now,
            "updated_at": now,
        }
        await self.db.execute(slots.insert().values(**values))
        logger.info("Created slot %s for user %s (%s)", values["id"], owner_id, slot_status.value)
        return Slot.from_record(values)

    async def get(self, slot_id: str) -> Optional[Slot]:
        record = await self.db.fetch_one(slots.select().where(slots.c.id == slot_id))
        return Slot.from_record(record) if record else None

    async def get_owned(self, slot_id: str, owner_id: str) -> Slot:
        """Other users' slots are reported as missing, not forbidden."""
        slot = await self.get(slot_id)
        if slot is None or slot.owner_id != owner_id:
            raise NotFoundError("Event not found")
        return slot

    async def list_by_owner(self, owner_id: str, status: Optional[SlotStatus] = None) -> List[Slot]:
        query = slots.select().where(slots.c.owner_id == owner_id)
        if status is not None:
            query = query.where(slots.c.status == status.value)
        records = await self.db.fetch_all(query.order_by(slots.c.start_time))
        return [Slot.from_record(r) for r in records]

    async def list_swappable(self, exclude_owner_id: Optional[str] = None, limit: Optional[int] = None) -> List[Slot]:
        """The marketplace: SWAPPABLE slots, optionally without the caller's own."""
        query = slots.select().where(slots.c.status == SlotStatus.SWAPPABLE.value)
        if exclude_owner_id is not None:
            query = query.where(slots.c.owner_id != exclude_owner_id)
        query = query.order_by(slots.c.start_time)
        if limit is not None:
            query = query.limit(limit)
        records = await self.db.fetch_all(query)
        return [Slot.from_record(r) for r in records]

    async def update(self, slot_id: str, owner_id: str, changes: Mapping[str, Any]) -> Slot:
        """Owner edit. Slots held by a pending swap cannot be changed this way."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        values = dict(changes)
        if "status" in values:
            values["status"] = parse_owner_status(values["status"]).value
        if "title" in values:
            values["title"] = (values["title"] or "").strip()
            if not values["title"]:
                raise ValidationError("Title cannot be empty")
        for field in ("start_time", "end_time"):
            if field in values:
                if values[field] is None:
                    raise ValidationError(f"{field} cannot be empty")
                values[field] = as_utc(values[field])

        slot = await self.get_owned(slot_id, owner_id)
        if slot.status == SlotStatus.SWAP_PENDING:
            raise ConflictError("Cannot modify event with pending swap. Cancel the swap first.")

        start_time = values.get("start_time", slot.start_time)
        end_time = values.get("end_time", slot.end_time)
        if end_time <= start_time:
            raise ValidationError("End time must be after start time")

        if not values:
            return slot
        values["updated_at"] = utcnow()
        if not await guarded_update(self.db, slots, slot.id, slot.revision, **values):
            raise ConflictError("Event was modified concurrently. Please reload and try again.")
        return await self.get(slot.id)

    async def delete(self, slot_id: str, owner_id: str) -> None:
        slot = await self.get_owned(slot_id, owner_id)
        if slot.status == SlotStatus.SWAP_PENDING:
            raise ConflictError("Cannot delete event with pending swap. Cancel the swap first.")
        await self.db.execute(
            slots.delete().where(slots.c.id == slot.id, slots.c.revision == slot.revision)
        )
        # A swap that claimed the slot in the meantime changed its revision
        if await self.get(slot.id) is not None:
            raise ConflictError("Cannot delete event with pending swap. Cancel the swap first.")
        logger.info("Deleted slot %s of user %s", slot.id, owner_id)

    async def transition(self, slot: Slot, status: SlotStatus, owner_id: Optional[str] = None) -> bool:
        """
        Negotiation-engine write: moves `slot` to `status` (and optionally a new
        owner) only if nobody touched it since it was read.
        """
        values = {"status": status.value, "updated_at": utcnow()}
        if owner_id is not None:
            values["owner_id"] = owner_id
        return await guarded_update(self.db, slots, slot.id, slot.revision, **values)
