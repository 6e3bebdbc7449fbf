# main.py
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import fastapi
from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel

from slot_swap.assistant import SchedulingAssistantAgent
from slot_swap.auth import (
    Token,
    TokenPayload,
    User,
    UserCreate,
    authenticate_user,
    create_access_token,
    create_user,
    get_current_user,
    get_user_by_email,
    get_user_by_id,
    verify_token,
)
from slot_swap.config import FRONTEND_URL, LOG_LEVEL
from slot_swap.data_models import Slot, SlotStatus, SwapRequest
from slot_swap.database import database, engine, metadata
from slot_swap.errors import SwapError, ValidationError
from slot_swap.models import users
from slot_swap.negotiation import SwapNegotiationEngine
from slot_swap.notifications import dispatcher
from slot_swap.slots import SlotStore
from slot_swap.swap_requests import SwapRequestStore

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

MARKETPLACE_LIMIT = 20

#FastAPI Setup
app = fastapi.FastAPI(title="Slot Swap")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL, "http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request Models
class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class EventCreate(BaseModel):
    title: Optional[str] = None
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    description: Optional[str] = None
    status: Optional[str] = None


class EventUpdate(BaseModel):
    title: Optional[str] = None
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    description: Optional[str] = None
    status: Optional[str] = None


class SwapRequestCreate(BaseModel):
    mySlotId: Optional[str] = None
    theirSlotId: Optional[str] = None


class SwapResponse(BaseModel):
    # Checked by the engine so a missing or non-boolean value is reported the same way
    accepted: Any = None


class ChatMessage(BaseModel):
    message: Optional[str] = None


class TitleRequest(BaseModel):
    startTime: datetime
    endTime: datetime
    context: Optional[str] = None


EVENT_FIELD_MAP = {
    "title": "title",
    "startTime": "start_time",
    "endTime": "end_time",
    "description": "description",
    "status": "status",
}


# Collaborators, overridable in tests
def get_slot_store() -> SlotStore:
    return SlotStore(database)


def get_request_store() -> SwapRequestStore:
    return SwapRequestStore(database)


def get_engine() -> SwapNegotiationEngine:
    return SwapNegotiationEngine(db=database, notifier=dispatcher)


def get_assistant() -> SchedulingAssistantAgent:
    return SchedulingAssistantAgent()


@app.exception_handler(SwapError)
async def swap_error_handler(request: Request, exc: SwapError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = [f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()]
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "Invalid request", "errors": messages})


async def _user_summaries(user_ids: Iterable[str]) -> Dict[str, dict]:
    ids = list(set(user_ids))
    if not ids:
        return {}
    records = await database.fetch_all(users.select().where(users.c.id.in_(ids)))
    return {r["id"]: {"id": r["id"], "name": r["name"], "email": r["email"]} for r in records}


def _slot_summary(slot: Optional[Slot]) -> Optional[dict]:
    if slot is None:
        return None
    return {
        "id": slot.id,
        "title": slot.title,
        "startTime": slot.start_time.isoformat(),
        "endTime": slot.end_time.isoformat(),
        "status": slot.status.value,
    }


def _with_owner(slot: Slot, owners: Dict[str, dict]) -> dict:
    data = slot.to_dict()
    data["owner"] = owners.get(slot.owner_id, {"id": slot.owner_id, "name": None, "email": None})
    return data


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# Auth Endpoints
@app.post("/api/auth/signup", status_code=status.HTTP_201_CREATED)
async def signup(user: UserCreate):
    if not user.name.strip() or not user.email.strip() or not user.password:
        raise ValidationError("Please provide name, email, and password")
    if "@" not in user.email:
        raise ValidationError("Please provide a valid email")
    if len(user.password) < 6:
        raise ValidationError("Password must be at least 6 characters")
    if await get_user_by_email(user.email):
        raise ValidationError("Email already registered.")

    created = await create_user(user)
    token = create_access_token(TokenPayload(user_id=created.id, email=created.email))
    return {"message": "User created successfully", "token": token, "user": created.model_dump()}


@app.post("/api/auth/login")
async def login(credentials: LoginRequest):
    if not credentials.email or not credentials.password:
        raise ValidationError("Please provide email and password")
    user = await authenticate_user(credentials.email, credentials.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    token = create_access_token(TokenPayload(user_id=user.id, email=user.email))
    return {"message": "Login successful", "token": token, "user": user.model_dump()}


# OAuth2 password form, used by the interactive docs
@app.post("/token", response_model=Token)
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    user = await authenticate_user(form_data.username, form_data.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(TokenPayload(user_id=user.id, email=user.email))
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/api/users/me", response_model=User)
async def read_users_me(current_user: TokenPayload = Depends(get_current_user)):
    """
    Get the current authenticated user's profile data.
    """
    record = await get_user_by_id(current_user.user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return User(id=record["id"], name=record["name"], email=record["email"])


# Event (slot) Endpoints
@app.get("/api/events")
async def list_events(
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
):
    events = await slot_store.list_by_owner(current_user.user_id)
    return {"events": [e.to_dict() for e in events]}


@app.post("/api/events", status_code=status.HTTP_201_CREATED)
async def create_event(
    event: EventCreate,
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
):
    slot = await slot_store.create(
        owner_id=current_user.user_id,
        title=event.title,
        start_time=event.startTime,
        end_time=event.endTime,
        status=event.status,
        description=event.description,
    )
    return {"message": "Event created successfully", "event": slot.to_dict()}


@app.get("/api/events/{event_id}")
async def get_event(
    event_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
):
    slot = await slot_store.get_owned(event_id, current_user.user_id)
    return {"event": slot.to_dict()}


@app.put("/api/events/{event_id}")
async def update_event(
    event_id: str,
    event: EventUpdate,
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
):
    changes = {EVENT_FIELD_MAP[k]: v for k, v in event.model_dump(exclude_unset=True).items()}
    slot = await slot_store.update(event_id, current_user.user_id, changes)
    return {"message": "Event updated successfully", "event": slot.to_dict()}


@app.delete("/api/events/{event_id}")
async def delete_event(
    event_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
):
    await slot_store.delete(event_id, current_user.user_id)
    return {"message": "Event deleted successfully"}


# Marketplace and Swap Endpoints
@app.get("/api/swappable-slots")
async def list_swappable_slots(
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
):
    """All SWAPPABLE slots of other users, earliest first."""
    slots = await slot_store.list_swappable(exclude_owner_id=current_user.user_id)
    owners = await _user_summaries(s.owner_id for s in slots)
    return {"slots": [_with_owner(s, owners) for s in slots]}


@app.post("/api/swap-request", status_code=status.HTTP_201_CREATED)
async def create_swap_request(
    body: SwapRequestCreate,
    current_user: TokenPayload = Depends(get_current_user),
    negotiation: SwapNegotiationEngine = Depends(get_engine),
):
    swap_request = await negotiation.initiate(
        requester_id=current_user.user_id,
        my_slot_id=body.mySlotId,
        their_slot_id=body.theirSlotId,
        requester_name=current_user.email,
    )
    return {"message": "Swap request created successfully", "swapRequest": swap_request.to_dict()}


@app.get("/api/swap-requests")
async def list_swap_requests(
    type: Optional[str] = Query(None, description="incoming or outgoing"),
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
    request_store: SwapRequestStore = Depends(get_request_store),
):
    role = {"incoming": "target", "outgoing": "requester"}.get(type)
    requests = await request_store.find(participant_id=current_user.user_id, role=role)

    people = await _user_summaries(
        [r.requester_id for r in requests] + [r.target_user_id for r in requests]
    )
    slot_cache: Dict[str, Optional[Slot]] = {}
    for slot_id in {sid for r in requests for sid in r.slot_ids}:
        slot_cache[slot_id] = await slot_store.get(slot_id)

    def expand(req: SwapRequest) -> dict:
        return {
            "id": req.id,
            "status": req.status.value,
            "createdAt": req.created_at.isoformat() if req.created_at else None,
            "requester": people.get(req.requester_id),
            "requesterSlot": _slot_summary(slot_cache.get(req.requester_slot_id)),
            "targetUser": people.get(req.target_user_id),
            "targetSlot": _slot_summary(slot_cache.get(req.target_slot_id)),
            "isIncoming": req.target_user_id == current_user.user_id,
        }

    return {"requests": [expand(r) for r in requests]}


@app.post("/api/swap-response/{request_id}")
async def respond_to_swap_request(
    request_id: str,
    body: SwapResponse,
    current_user: TokenPayload = Depends(get_current_user),
    negotiation: SwapNegotiationEngine = Depends(get_engine),
):
    swap_request = await negotiation.resolve(current_user.user_id, request_id, body.accepted)
    if body.accepted:
        message = "Swap request accepted successfully. Slots have been swapped."
    else:
        message = "Swap request rejected. Slots have been set back to SWAPPABLE."
    return {"message": message, "swapRequest": {"id": swap_request.id, "status": swap_request.status.value}}


# AI advisory Endpoints
@app.post("/api/ai/swap-suggestions")
async def swap_suggestions(
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
    assistant: SchedulingAssistantAgent = Depends(get_assistant),
):
    my_slots = await slot_store.list_by_owner(current_user.user_id, status=SlotStatus.SWAPPABLE)
    if not my_slots:
        return {
            "message": "No swappable slots found. Please mark some of your slots as swappable first.",
            "suggestions": [],
        }
    available = await slot_store.list_swappable(exclude_owner_id=current_user.user_id, limit=MARKETPLACE_LIMIT)
    if not available:
        return {"message": "No swappable slots available from other users.", "suggestions": []}

    owners = await _user_summaries(s.owner_id for s in available)
    owner_names = {uid: o["name"] for uid, o in owners.items()}
    suggestions = await assistant.suggest_swaps(my_slots, available, owner_names)

    mine = {s.id: s for s in my_slots}
    theirs = {s.id: s for s in available}
    enriched = [
        {
            **sug,
            "targetSlot": _with_owner(theirs[sug["targetSlotId"]], owners),
            "mySlot": mine[sug["mySlotId"]].to_dict(),
        }
        for sug in suggestions
    ]
    return {"message": "AI suggestions generated successfully", "suggestions": enriched}


@app.get("/api/ai/schedule-analysis")
async def schedule_analysis(
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
    assistant: SchedulingAssistantAgent = Depends(get_assistant),
):
    events = await slot_store.list_by_owner(current_user.user_id)
    if not events:
        return {"message": "No events found in your schedule.", "conflicts": []}
    conflicts = await assistant.detect_conflicts(events)
    return {"message": "Schedule analysis completed", "conflicts": conflicts, "eventCount": len(events)}


@app.post("/api/ai/chat")
async def ai_chat(
    body: ChatMessage,
    current_user: TokenPayload = Depends(get_current_user),
    slot_store: SlotStore = Depends(get_slot_store),
    assistant: SchedulingAssistantAgent = Depends(get_assistant),
):
    if not body.message or not body.message.strip():
        raise ValidationError("Message is required")
    my_events = await slot_store.list_by_owner(current_user.user_id)
    marketplace = await slot_store.list_swappable(exclude_owner_id=current_user.user_id, limit=MARKETPLACE_LIMIT)
    owners = await _user_summaries(s.owner_id for s in marketplace)
    owner_names = {uid: o["name"] for uid, o in owners.items()}
    response = await assistant.chat(body.message, my_events, marketplace, owner_names)
    return {"response": response}


@app.post("/api/ai/event-title")
async def suggest_event_title(
    body: TitleRequest,
    current_user: TokenPayload = Depends(get_current_user),
    assistant: SchedulingAssistantAgent = Depends(get_assistant),
):
    if body.endTime <= body.startTime:
        raise ValidationError("End time must be after start time")
    title = await assistant.generate_title(body.startTime, body.endTime, body.context)
    return {"title": title}


@app.websocket("/ws")
async def websocket_endpoint(websocket: fastapi.WebSocket, token: str = Query(None)):
    """
    Real-time channel for swap notifications. The bearer token comes as the
    `token` query parameter or the Authorization header.
    """
    current_user = dispatcher.authenticate(token or websocket.headers.get("authorization"))
    if current_user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await dispatcher.connect(current_user.user_id, websocket)
    await websocket.send_text(json.dumps({
        "type": "auth_success",
        "data": {"userId": current_user.user_id, "email": current_user.email},
    }))

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "data": "Invalid message"}))
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    except fastapi.WebSocketDisconnect:
        pass
    finally:
        dispatcher.disconnect(current_user.user_id, websocket)


@app.on_event("startup")
async def startup():
    await database.connect()
    # Create tables if they don't exist
    metadata.create_all(bind=engine)
    dispatcher.init(verify_token)
    logger.info("Slot swap service started")


@app.on_event("shutdown")
async def shutdown():
    await dispatcher.close()
    await database.disconnect()
