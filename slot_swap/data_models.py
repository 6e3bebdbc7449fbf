# data_models.py
import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


class SlotStatus(str, enum.Enum):
    BUSY = "BUSY"
    SWAPPABLE = "SWAPPABLE"
    SWAP_PENDING = "SWAP_PENDING"


class SwapRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back without tzinfo; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Slot:
    """A schedule event owned by exactly one user."""
    id: str
    owner_id: str
    title: str
    start_time: datetime
    end_time: datetime
    status: SlotStatus
    revision: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Slot":
        return cls(
            id=record["id"],
            owner_id=record["owner_id"],
            title=record["title"],
            description=record["description"],
            start_time=as_utc(record["start_time"]),
            end_time=as_utc(record["end_time"]),
            status=SlotStatus(record["status"]),
            revision=record["revision"],
            created_at=as_utc(record["created_at"]),
            updated_at=as_utc(record["updated_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "status": self.status.value,
            "description": self.description,
            "userId": self.owner_id,
        }


@dataclass
class SwapRequest:
    """A proposal to exchange ownership of two slots between two users."""
    id: str
    requester_id: str
    requester_slot_id: str
    target_user_id: str
    target_slot_id: str
    status: SwapRequestStatus
    revision: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "SwapRequest":
        return cls(
            id=record["id"],
            requester_id=record["requester_id"],
            requester_slot_id=record["requester_slot_id"],
            target_user_id=record["target_user_id"],
            target_slot_id=record["target_slot_id"],
            status=SwapRequestStatus(record["status"]),
            revision=record["revision"],
            created_at=as_utc(record["created_at"]),
            updated_at=as_utc(record["updated_at"]),
        )

    @property
    def slot_ids(self) -> tuple:
        return (self.requester_slot_id, self.target_slot_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "requesterId": self.requester_id,
            "requesterSlotId": self.requester_slot_id,
            "targetUserId": self.target_user_id,
            "targetSlotId": self.target_slot_id,
        }
