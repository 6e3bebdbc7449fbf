import asyncio

import pytest

from slot_swap.data_models import SlotStatus, SwapRequest, SwapRequestStatus
from slot_swap.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from slot_swap.models import slots
from slot_swap.negotiation import SwapNegotiationEngine
from slot_swap.slots import SlotStore

from conftest import FakeDispatcher


@pytest.fixture
def two_users(make_user):
    async def _two_users():
        return await make_user("u1"), await make_user("u2")

    return _two_users


async def _status_and_owner(slot_store, slot_id):
    slot = await slot_store.get(slot_id)
    return slot.status, slot.owner_id


@pytest.mark.asyncio
async def test_initiate_locks_both_slots(negotiation, slot_store, request_store, two_users, make_slot, notifier):
    u1, u2 = await two_users()
    s1 = await make_slot(u1, title="Monday early")
    s2 = await make_slot(u2, title="Tuesday late")

    request = await negotiation.initiate(u1, s1.id, s2.id, requester_name="u1@example.com")

    assert request.status == SwapRequestStatus.PENDING
    assert request.to_dict() == {
        "id": request.id,
        "status": "PENDING",
        "requesterId": u1,
        "requesterSlotId": s1.id,
        "targetUserId": u2,
        "targetSlotId": s2.id,
    }
    assert await _status_and_owner(slot_store, s1.id) == (SlotStatus.SWAP_PENDING, u1)
    assert await _status_and_owner(slot_store, s2.id) == (SlotStatus.SWAP_PENDING, u2)
    assert [r.id for r in await request_store.find(status=SwapRequestStatus.PENDING)] == [request.id]

    event, user_id, payload = notifier.calls[0]
    assert (event, user_id) == ("swap-request-created", u2)
    assert payload["requestId"] == request.id
    assert payload["requesterId"] == u1
    assert payload["requesterName"] == "u1@example.com"
    assert payload["requesterSlotTitle"] == "Monday early"
    assert payload["targetSlotTitle"] == "Tuesday late"
    assert "createdAt" in payload


@pytest.mark.asyncio
async def test_accept_exchanges_owners(negotiation, slot_store, request_store, two_users, make_slot, notifier):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    request = await negotiation.initiate(u1, s1.id, s2.id)

    resolved = await negotiation.resolve(u2, request.id, True)

    assert resolved.status == SwapRequestStatus.ACCEPTED
    assert await _status_and_owner(slot_store, s1.id) == (SlotStatus.BUSY, u2)
    assert await _status_and_owner(slot_store, s2.id) == (SlotStatus.BUSY, u1)
    assert (await request_store.get(request.id)).status == SwapRequestStatus.ACCEPTED

    event, user_id, payload = notifier.calls[-1]
    assert (event, user_id) == ("swap-request-accepted", u1)
    assert payload["requestId"] == request.id
    assert "acceptedAt" in payload


@pytest.mark.asyncio
async def test_reject_releases_slots(negotiation, slot_store, request_store, two_users, make_slot, notifier):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    request = await negotiation.initiate(u1, s1.id, s2.id)

    resolved = await negotiation.resolve(u2, request.id, False)

    assert resolved.status == SwapRequestStatus.REJECTED
    assert await _status_and_owner(slot_store, s1.id) == (SlotStatus.SWAPPABLE, u1)
    assert await _status_and_owner(slot_store, s2.id) == (SlotStatus.SWAPPABLE, u2)
    assert (await request_store.get(request.id)).status == SwapRequestStatus.REJECTED

    event, user_id, payload = notifier.calls[-1]
    assert (event, user_id) == ("swap-request-rejected", u1)
    assert "rejectedAt" in payload


@pytest.mark.asyncio
async def test_rejected_slots_can_be_swapped_again(negotiation, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    first = await negotiation.initiate(u1, s1.id, s2.id)
    await negotiation.resolve(u2, first.id, False)

    second = await negotiation.initiate(u1, s1.id, s2.id)
    assert second.id != first.id
    assert second.status == SwapRequestStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("accepted", [True, False])
async def test_second_resolve_is_refused_without_changes(negotiation, slot_store, two_users, make_slot, notifier, accepted):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    request = await negotiation.initiate(u1, s1.id, s2.id)
    await negotiation.resolve(u2, request.id, accepted)
    before = [await slot_store.get(s1.id), await slot_store.get(s2.id)]
    sent = len(notifier.calls)

    with pytest.raises(InvalidStateError, match="already been processed"):
        await negotiation.resolve(u2, request.id, not accepted)

    assert [await slot_store.get(s1.id), await slot_store.get(s2.id)] == before
    assert len(notifier.calls) == sent


@pytest.mark.asyncio
async def test_initiate_with_someone_elses_slot_is_forbidden(negotiation, slot_store, request_store, make_user, make_slot):
    u1 = await make_user("u1")
    u2 = await make_user("u2")
    u3 = await make_user("u3")
    s3 = await make_slot(u3)
    s2 = await make_slot(u2)

    with pytest.raises(ForbiddenError):
        await negotiation.initiate(u1, s3.id, s2.id)

    assert await _status_and_owner(slot_store, s3.id) == (SlotStatus.SWAPPABLE, u3)
    assert await _status_and_owner(slot_store, s2.id) == (SlotStatus.SWAPPABLE, u2)
    assert await request_store.find() == []


@pytest.mark.asyncio
async def test_pending_slot_cannot_be_deleted(negotiation, slot_store, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    await negotiation.initiate(u1, s1.id, s2.id)

    with pytest.raises(ConflictError):
        await slot_store.delete(s1.id, u1)
    assert await slot_store.get(s1.id) is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("my_slot_id,their_slot_id", [(None, "x"), ("x", None), ("", "")])
async def test_initiate_requires_both_slot_ids(negotiation, my_slot_id, their_slot_id):
    with pytest.raises(ValidationError):
        await negotiation.initiate("u1", my_slot_id, their_slot_id)


@pytest.mark.asyncio
async def test_initiate_missing_slots(negotiation, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    with pytest.raises(NotFoundError, match="Your slot"):
        await negotiation.initiate(u1, "missing", s1.id)
    with pytest.raises(NotFoundError, match="Target slot"):
        await negotiation.initiate(u1, s1.id, "missing")


@pytest.mark.asyncio
async def test_initiate_requires_swappable_slots(negotiation, request_store, two_users, make_slot):
    u1, u2 = await two_users()
    busy_mine = await make_slot(u1, SlotStatus.BUSY)
    swappable_mine = await make_slot(u1)
    busy_theirs = await make_slot(u2, SlotStatus.BUSY)
    swappable_theirs = await make_slot(u2)

    with pytest.raises(InvalidStateError):
        await negotiation.initiate(u1, busy_mine.id, swappable_theirs.id)
    with pytest.raises(InvalidStateError):
        await negotiation.initiate(u1, swappable_mine.id, busy_theirs.id)
    assert await request_store.find() == []


@pytest.mark.asyncio
async def test_self_swap_is_a_conflict(negotiation, make_user, make_slot):
    u1 = await make_user("u1")
    a = await make_slot(u1)
    b = await make_slot(u1)
    with pytest.raises(ConflictError, match="own slot"):
        await negotiation.initiate(u1, a.id, b.id)
    with pytest.raises(ConflictError, match="own slot"):
        await negotiation.initiate(u1, a.id, a.id)


@pytest.mark.asyncio
async def test_slot_in_pending_swap_cannot_join_another(negotiation, request_store, make_user, make_slot):
    u1 = await make_user("u1")
    u2 = await make_user("u2")
    u3 = await make_user("u3")
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    s3 = await make_slot(u3)
    await negotiation.initiate(u1, s1.id, s2.id)

    with pytest.raises(ConflictError, match="pending swap"):
        await negotiation.initiate(u3, s3.id, s2.id)
    with pytest.raises(ConflictError, match="pending swap"):
        await negotiation.initiate(u2, s2.id, s3.id)
    assert len(await request_store.find(status=SwapRequestStatus.PENDING)) == 1


@pytest.mark.asyncio
async def test_pending_request_blocks_even_if_slot_looks_swappable(db, negotiation, request_store, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    await request_store.create(u1, s1.id, u2, s2.id)

    with pytest.raises(ConflictError, match="pending swap"):
        await negotiation.initiate(u1, s1.id, s2.id)
    assert len(await request_store.find()) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("accepted", [None, "true", 1, "yes"])
async def test_resolve_requires_a_boolean(negotiation, accepted):
    with pytest.raises(ValidationError, match="boolean"):
        await negotiation.resolve("u2", "whatever", accepted)


@pytest.mark.asyncio
async def test_resolve_unknown_request(negotiation):
    with pytest.raises(NotFoundError):
        await negotiation.resolve("u2", "missing", True)


@pytest.mark.asyncio
async def test_only_target_user_may_resolve(negotiation, slot_store, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    request = await negotiation.initiate(u1, s1.id, s2.id)

    with pytest.raises(ForbiddenError):
        await negotiation.resolve(u1, request.id, True)
    assert await _status_and_owner(slot_store, s1.id) == (SlotStatus.SWAP_PENDING, u1)


@pytest.mark.asyncio
async def test_resolve_with_vanished_slot(db, negotiation, request_store, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    request = await negotiation.initiate(u1, s1.id, s2.id)
    await db.execute(slots.delete().where(slots.c.id == s2.id))

    with pytest.raises(NotFoundError, match="One or both slots"):
        await negotiation.resolve(u2, request.id, True)
    assert (await request_store.get(request.id)).status == SwapRequestStatus.PENDING


class LosingSlotStore(SlotStore):
    """Loses the revision guard on the n-th engine write."""

    def __init__(self, db, lose_on: int):
        super().__init__(db)
        self.lose_on = lose_on
        self.writes = 0

    async def transition(self, slot, status, owner_id=None):
        self.writes += 1
        if self.writes == self.lose_on:
            return False
        return await super().transition(slot, status, owner_id=owner_id)


@pytest.mark.asyncio
async def test_initiate_rolls_back_when_a_claim_is_lost(db, request_store, two_users, make_slot, notifier):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    losing = LosingSlotStore(db, lose_on=2)
    negotiation = SwapNegotiationEngine(slot_store=losing, request_store=request_store, notifier=notifier, db=db)

    with pytest.raises(ConflictError):
        await negotiation.initiate(u1, s1.id, s2.id)

    assert await request_store.find() == []
    assert (await losing.get(s1.id)).status == SlotStatus.SWAPPABLE
    assert (await losing.get(s2.id)).status == SlotStatus.SWAPPABLE
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_accept_rolls_back_when_a_slot_write_is_lost(db, request_store, two_users, make_slot, notifier):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    store = LosingSlotStore(db, lose_on=0)
    negotiation = SwapNegotiationEngine(slot_store=store, request_store=request_store, notifier=notifier, db=db)
    request = await negotiation.initiate(u1, s1.id, s2.id)

    # writes 1 and 2 were the initiate claims; 4 is the target slot of the acceptance
    store.lose_on = 4
    with pytest.raises(ConflictError):
        await negotiation.resolve(u2, request.id, True)

    assert (await request_store.get(request.id)).status == SwapRequestStatus.PENDING
    assert await _status_and_owner(store, s1.id) == (SlotStatus.SWAP_PENDING, u1)
    assert await _status_and_owner(store, s2.id) == (SlotStatus.SWAP_PENDING, u2)


@pytest.mark.asyncio
async def test_notification_failure_keeps_transition(db, slot_store, request_store, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    negotiation = SwapNegotiationEngine(
        slot_store=slot_store, request_store=request_store, notifier=FakeDispatcher(fail=True), db=db,
    )

    request = await negotiation.initiate(u1, s1.id, s2.id)
    assert (await request_store.get(request.id)).status == SwapRequestStatus.PENDING

    resolved = await negotiation.resolve(u2, request.id, True)
    assert resolved.status == SwapRequestStatus.ACCEPTED
    assert (await slot_store.get(s1.id)).owner_id == u2


@pytest.mark.asyncio
async def test_racing_initiates_on_one_target(negotiation, slot_store, request_store, make_user, make_slot):
    u1 = await make_user("u1")
    u2 = await make_user("u2")
    u3 = await make_user("u3")
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    s3 = await make_slot(u3)

    results = await asyncio.gather(
        negotiation.initiate(u1, s1.id, s2.id),
        negotiation.initiate(u3, s3.id, s2.id),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, SwapRequest)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1

    pending = await request_store.find_pending_for_slots([s2.id])
    assert [r.id for r in pending] == [winners[0].id]
    loser_slot = s3 if winners[0].requester_id == u1 else s1
    assert (await slot_store.get(loser_slot.id)).status == SlotStatus.SWAPPABLE


@pytest.mark.asyncio
async def test_racing_initiates_in_opposite_directions(negotiation, request_store, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)

    results = await asyncio.gather(
        negotiation.initiate(u1, s1.id, s2.id),
        negotiation.initiate(u2, s2.id, s1.id),
        return_exceptions=True,
    )

    assert sum(isinstance(r, SwapRequest) for r in results) == 1
    assert sum(isinstance(r, ConflictError) for r in results) == 1
    assert len(await request_store.find(status=SwapRequestStatus.PENDING)) == 1


@pytest.mark.asyncio
async def test_racing_resolves_on_one_request(negotiation, slot_store, request_store, two_users, make_slot):
    u1, u2 = await two_users()
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    request = await negotiation.initiate(u1, s1.id, s2.id)

    results = await asyncio.gather(
        negotiation.resolve(u2, request.id, True),
        negotiation.resolve(u2, request.id, False),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, SwapRequest)]
    losers = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(winners) == 1
    assert len(losers) == 1

    stored = await request_store.get(request.id)
    assert stored.status == winners[0].status
    if stored.status == SwapRequestStatus.ACCEPTED:
        expected = {s1.id: (SlotStatus.BUSY, u2), s2.id: (SlotStatus.BUSY, u1)}
    else:
        expected = {s1.id: (SlotStatus.SWAPPABLE, u1), s2.id: (SlotStatus.SWAPPABLE, u2)}
    for slot_id, state in expected.items():
        assert await _status_and_owner(slot_store, slot_id) == state


@pytest.mark.asyncio
async def test_resolve_racing_initiate_on_freed_slots(negotiation, slot_store, request_store, make_user, make_slot):
    u1 = await make_user("u1")
    u2 = await make_user("u2")
    u3 = await make_user("u3")
    s1 = await make_slot(u1)
    s2 = await make_slot(u2)
    s3 = await make_slot(u3)
    request = await negotiation.initiate(u1, s1.id, s2.id)

    results = await asyncio.gather(
        negotiation.resolve(u2, request.id, False),
        negotiation.initiate(u3, s3.id, s2.id),
        return_exceptions=True,
    )

    resolved, second = results
    assert isinstance(resolved, SwapRequest)
    assert resolved.status == SwapRequestStatus.REJECTED
    pending = await request_store.find_pending_for_slots([s2.id])
    if isinstance(second, SwapRequest):
        # initiate ran after the rejection committed and claimed the freed slot
        assert [r.id for r in pending] == [second.id]
        assert (await slot_store.get(s2.id)).status == SlotStatus.SWAP_PENDING
        assert (await slot_store.get(s1.id)).status == SlotStatus.SWAPPABLE
    else:
        assert isinstance(second, ConflictError)
        assert pending == []
        assert (await slot_store.get(s2.id)).status == SlotStatus.SWAPPABLE
        assert (await slot_store.get(s3.id)).status == SlotStatus.SWAPPABLE
