import os
import tempfile
from datetime import datetime, timedelta, timezone

_TEST_DIR = tempfile.mkdtemp(prefix="slot-swap-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio

from slot_swap.data_models import SlotStatus, new_id, utcnow
from slot_swap.database import database, engine, metadata
from slot_swap.models import users
from slot_swap.negotiation import SwapNegotiationEngine
from slot_swap.slots import SlotStore
from slot_swap.swap_requests import SwapRequestStore

BASE_TIME = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)


class FakeDispatcher:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[str, str, dict]] = []
        self.fail = fail

    def _record(self, event: str, user_id: str, payload: dict) -> None:
        if self.fail:
            raise RuntimeError("socket server down")
        self.calls.append((event, user_id, payload))

    def swap_request_created(self, user_id, payload):
        self._record("swap-request-created", user_id, payload)

    def swap_request_accepted(self, user_id, payload):
        self._record("swap-request-accepted", user_id, payload)

    def swap_request_rejected(self, user_id, payload):
        self._record("swap-request-rejected", user_id, payload)


@pytest.fixture
def schema():
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)
    yield
    metadata.drop_all(bind=engine)


@pytest_asyncio.fixture
async def db(schema):
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def slot_store(db):
    return SlotStore(db)


@pytest.fixture
def request_store(db):
    return SwapRequestStore(db)


@pytest.fixture
def notifier():
    return FakeDispatcher()


@pytest.fixture
def negotiation(db, slot_store, request_store, notifier):
    return SwapNegotiationEngine(
        slot_store=slot_store,
        request_store=request_store,
        notifier=notifier,
        db=db,
        max_attempts=5,
        retry_delay=0.05,
    )


@pytest.fixture
def make_user(db):
    async def _make_user(name: str = "user") -> str:
        user_id = new_id()
        await db.execute(
            users.insert().values(
                id=user_id,
                name=name,
                email=f"{name}-{user_id[:6]}@example.com",
                hashed_password="x",
                created_at=utcnow(),
            )
        )
        return user_id

    return _make_user


@pytest.fixture
def make_slot(slot_store):
    async def _make_slot(owner_id: str, status=SlotStatus.SWAPPABLE, title: str = "Shift", offset_hours: int = 0):
        start = BASE_TIME + timedelta(hours=offset_hours)
        return await slot_store.create(
            owner_id=owner_id,
            title=title,
            start_time=start,
            end_time=start + timedelta(hours=2),
            status=status,
        )

    return _make_slot
