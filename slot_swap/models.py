# models.py
import sqlalchemy
from slot_swap.database import metadata

#'users' table
users = sqlalchemy.Table(
    "users",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(32), primary_key=True),
    sqlalchemy.Column("email", sqlalchemy.String, unique=True, index=True, nullable=False),
    sqlalchemy.Column("name", sqlalchemy.String, nullable=False),
    sqlalchemy.Column("hashed_password", sqlalchemy.String, nullable=False),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
)

#'slots' table, one row per schedule event
slots = sqlalchemy.Table(
    "slots",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(32), primary_key=True),
    sqlalchemy.Column("owner_id", sqlalchemy.String(32), sqlalchemy.ForeignKey("users.id"), nullable=False),
    sqlalchemy.Column("title", sqlalchemy.String, nullable=False),
    sqlalchemy.Column("description", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("start_time", sqlalchemy.DateTime(timezone=True), nullable=False),
    sqlalchemy.Column("end_time", sqlalchemy.DateTime(timezone=True), nullable=False),
    sqlalchemy.Column("status", sqlalchemy.String(16), nullable=False, default="BUSY"),
    # Rewritten on every engine write; guards conditional updates
    sqlalchemy.Column("revision", sqlalchemy.String(32), nullable=False),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Index("ix_slots_owner_start", "owner_id", "start_time"),
    sqlalchemy.Index("ix_slots_status", "status"),
)

# Slot ids are not foreign keys: requests are kept as history after a slot is deleted
swap_requests = sqlalchemy.Table(
    "swap_requests",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(32), primary_key=True),
    sqlalchemy.Column("requester_id", sqlalchemy.String(32), sqlalchemy.ForeignKey("users.id"), nullable=False),
    sqlalchemy.Column("requester_slot_id", sqlalchemy.String(32), nullable=False),
    sqlalchemy.Column("target_user_id", sqlalchemy.String(32), sqlalchemy.ForeignKey("users.id"), nullable=False),
    sqlalchemy.Column("target_slot_id", sqlalchemy.String(32), nullable=False),
    sqlalchemy.Column("status", sqlalchemy.String(16), nullable=False, default="PENDING"),
    sqlalchemy.Column("revision", sqlalchemy.String(32), nullable=False),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Index("ix_swap_requests_target_status", "target_user_id", "status"),
    sqlalchemy.Index("ix_swap_requests_requester_status", "requester_id", "status"),
)
