# swap_requests.py
import logging
from typing import Iterable, List, Optional

import sqlalchemy
from databases import Database

from slot_swap.data_models import SwapRequest, SwapRequestStatus, new_id, utcnow
from slot_swap.database import database, guarded_update
from slot_swap.errors import ValidationError
from slot_swap.models import swap_requests

logger = logging.getLogger(__name__)

ROLES = ("requester", "target")


class SwapRequestStore:
    """
    Persistence for swap requests. Records are never deleted; they stay as the
    history of every negotiation. Slot state is not checked here, that is the
    negotiation engine's job.
    """

    def __init__(self, db: Database = database):
        self.db = db

    async def create(
        self,
        requester_id: str,
        requester_slot_id: str,
        target_user_id: str,
        target_slot_id: str,
    ) -> SwapRequest:
        now = utcnow()
        values = {
            "id": new_id(),
            "requester_id": requester_id,
            "requester_slot_id": requester_slot_id,
            "target_user_id": target_user_id,
            "target_slot_id": target_slot_id,
            "status": SwapRequestStatus.PENDING.value,
            "revision": new_id(),
            "created_at": now,
            "updated_at": now,
        }
        await self.db.execute(swap_requests.insert().values(**values))
        return SwapRequest.from_record(values)

    async def get(self, request_id: str) -> Optional[SwapRequest]:
        record = await self.db.fetch_one(swap_requests.select().where(swap_requests.c.id == request_id))
        return SwapRequest.from_record(record) if record else None

    async def find(
        self,
        participant_id: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[SwapRequestStatus] = None,
    ) -> List[SwapRequest]:
        """
        Query by participant and/or status, newest first.

        `role` narrows the participant match to "requester" (outgoing) or
        "target" (incoming); without it either side matches.
        """
        if role is not None and role not in ROLES:
            raise ValidationError(f"Invalid role '{role}'. Use requester or target.")
        query = swap_requests.select()
        if participant_id is not None:
            if role == "requester":
                query = query.where(swap_requests.c.requester_id == participant_id)
            elif role == "target":
                query = query.where(swap_requests.c.target_user_id == participant_id)
            else:
                query = query.where(
                    sqlalchemy.or_(
                        swap_requests.c.requester_id == participant_id,
                        swap_requests.c.target_user_id == participant_id,
                    )
                )
        if status is not None:
            query = query.where(swap_requests.c.status == status.value)
        records = await self.db.fetch_all(query.order_by(sqlalchemy.desc(swap_requests.c.created_at)))
        return [SwapRequest.from_record(r) for r in records]

    async def find_pending_for_slots(self, slot_ids: Iterable[str]) -> List[SwapRequest]:
        """Pending requests that reference any of `slot_ids` on either side."""
        slot_ids = list(slot_ids)
        query = swap_requests.select().where(
            swap_requests.c.status == SwapRequestStatus.PENDING.value,
            sqlalchemy.or_(
                swap_requests.c.requester_slot_id.in_(slot_ids),
                swap_requests.c.target_slot_id.in_(slot_ids),
            ),
        )
        records = await self.db.fetch_all(query)
        return [SwapRequest.from_record(r) for r in records]

    async def transition(self, request: SwapRequest, status: SwapRequestStatus) -> bool:
        """Negotiation-engine write, applied only if the request is unchanged since it was read."""
        return await guarded_update(
            self.db, swap_requests, request.id, request.revision,
            status=status.value, updated_at=utcnow(),
        )
