# negotiation.py
import logging
from typing import Optional

from databases import Database

from slot_swap.config import SWAP_TX_MAX_ATTEMPTS, SWAP_TX_RETRY_DELAY
from slot_swap.data_models import Slot, SlotStatus, SwapRequest, SwapRequestStatus, utcnow
from slot_swap.database import database, run_in_transaction
from slot_swap.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from slot_swap.notifications import NotificationDispatcher, dispatcher
from slot_swap.slots import SlotStore
from slot_swap.swap_requests import SwapRequestStore

logger = logging.getLogger(__name__)

PENDING_CONFLICT = "One or both slots are already involved in a pending swap request"


def _require_swappable(slot: Slot, label: str):
    if slot.status == SlotStatus.SWAP_PENDING:
        raise ConflictError(PENDING_CONFLICT)
    if slot.status != SlotStatus.SWAPPABLE:
        raise InvalidStateError(f"{label} must be SWAPPABLE to create a swap request")


class SwapNegotiationEngine:
    """
    The swap state machine.

    Slots move BUSY <-> SWAPPABLE -> SWAP_PENDING -> {BUSY, SWAPPABLE} and
    requests move PENDING -> {ACCEPTED, REJECTED}. Each operation reads, checks
    and writes inside one transaction, and every write is conditional on the
    revision that was read, so two swaps can never hold the same slot: the
    second writer loses its guard and the whole transaction rolls back with a
    ConflictError. Notifications go out only after commit.
    """

    def __init__(
        self,
        slot_store: Optional[SlotStore] = None,
        request_store: Optional[SwapRequestStore] = None,
        notifier: Optional[NotificationDispatcher] = None,
        db: Optional[Database] = None,
        max_attempts: int = SWAP_TX_MAX_ATTEMPTS,
        retry_delay: float = SWAP_TX_RETRY_DELAY,
    ):
        self.db = db or database
        self.slots = slot_store or SlotStore(self.db)
        self.requests = request_store or SwapRequestStore(self.db)
        self.notifier = notifier or dispatcher
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def initiate(
        self,
        requester_id: str,
        my_slot_id: str,
        their_slot_id: str,
        requester_name: Optional[str] = None,
    ) -> SwapRequest:
        """Proposes exchanging `my_slot_id` for `their_slot_id` and locks both slots."""
        if not requester_id:
            raise ValidationError("Requester is required")
        if not my_slot_id or not their_slot_id:
            raise ValidationError("Please provide both mySlotId and theirSlotId")

        async def attempt():
            my_slot = await self.slots.get(my_slot_id)
            if my_slot is None:
                raise NotFoundError("Your slot not found")
            if my_slot.owner_id != requester_id:
                raise ForbiddenError("Your slot does not belong to you")
            _require_swappable(my_slot, "Your slot")

            their_slot = await self.slots.get(their_slot_id)
            if their_slot is None:
                raise NotFoundError("Target slot not found")
            if their_slot.owner_id == requester_id:
                raise ConflictError("Cannot swap with your own slot")
            _require_swappable(their_slot, "Target slot")

            if await self.requests.find_pending_for_slots([my_slot.id, their_slot.id]):
                raise ConflictError(PENDING_CONFLICT)

            request = await self.requests.create(
                requester_id=requester_id,
                requester_slot_id=my_slot.id,
                target_user_id=their_slot.owner_id,
                target_slot_id=their_slot.id,
            )
            for slot in (my_slot, their_slot):
                if not await self.slots.transition(slot, SlotStatus.SWAP_PENDING):
                    raise ConflictError(PENDING_CONFLICT)
            return request, my_slot, their_slot

        request, my_slot, their_slot = await run_in_transaction(
            self.db, attempt,
            attempts=self.max_attempts, retry_delay=self.retry_delay, label="initiate swap",
        )
        logger.info(
            "Swap request %s created: %s offers slot %s for slot %s of %s",
            request.id, requester_id, my_slot.id, their_slot.id, their_slot.owner_id,
        )

        self._emit(
            "swap_request_created",
            their_slot.owner_id,
            {
                "requestId": request.id,
                "requesterId": requester_id,
                "requesterName": requester_name or requester_id,
                "requesterSlotTitle": my_slot.title,
                "targetSlotTitle": their_slot.title,
                "createdAt": utcnow().isoformat(),
            },
        )
        return request

    async def resolve(self, responder_id: str, request_id: str, accepted: bool) -> SwapRequest:
        """
        Accepting exchanges the owners of both slots and marks them BUSY;
        rejecting hands both back to the marketplace as SWAPPABLE. Only the
        target user may answer, and only once.
        """
        if not isinstance(accepted, bool):
            raise ValidationError("Please provide accepted as a boolean")
        if not request_id:
            raise ValidationError("Invalid request ID")

        async def attempt():
            request = await self.requests.get(request_id)
            if request is None:
                raise NotFoundError("Swap request not found")
            if request.target_user_id != responder_id:
                raise ForbiddenError("You are not authorized to respond to this swap request")
            if request.status != SwapRequestStatus.PENDING:
                raise InvalidStateError("This swap request has already been processed")

            requester_slot = await self.slots.get(request.requester_slot_id)
            target_slot = await self.slots.get(request.target_slot_id)
            if requester_slot is None or target_slot is None:
                raise NotFoundError("One or both slots not found")

            outcome = SwapRequestStatus.ACCEPTED if accepted else SwapRequestStatus.REJECTED
            if not await self.requests.transition(request, outcome):
                raise InvalidStateError("This swap request has already been processed")

            if accepted:
                writes = (
                    (requester_slot, SlotStatus.BUSY, target_slot.owner_id),
                    (target_slot, SlotStatus.BUSY, requester_slot.owner_id),
                )
            else:
                writes = (
                    (requester_slot, SlotStatus.SWAPPABLE, None),
                    (target_slot, SlotStatus.SWAPPABLE, None),
                )
            for slot, slot_status, owner_id in writes:
                if not await self.slots.transition(slot, slot_status, owner_id=owner_id):
                    raise ConflictError("Slot changed while the swap was being resolved. Please try again.")

            request.status = outcome
            return request, requester_slot, target_slot

        request, requester_slot, target_slot = await run_in_transaction(
            self.db, attempt,
            attempts=self.max_attempts, retry_delay=self.retry_delay, label="resolve swap",
        )
        logger.info("Swap request %s %s by %s", request.id, request.status.value, responder_id)

        payload = {
            "requestId": request.id,
            "requesterSlotTitle": requester_slot.title,
            "targetSlotTitle": target_slot.title,
        }
        if accepted:
            payload["acceptedAt"] = utcnow().isoformat()
            self._emit("swap_request_accepted", request.requester_id, payload)
        else:
            payload["rejectedAt"] = utcnow().isoformat()
            self._emit("swap_request_rejected", request.requester_id, payload)
        return request

    def _emit(self, emitter: str, user_id: str, payload: dict):
        # Delivery problems never undo a committed transition
        try:
            getattr(self.notifier, emitter)(user_id, payload)
        except Exception:
            logger.exception("Failed to dispatch %s to user %s", emitter, user_id)
