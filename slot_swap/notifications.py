# notifications.py
import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import fastapi

logger = logging.getLogger(__name__)

SWAP_REQUEST_CREATED = "swap-request-created"
SWAP_REQUEST_ACCEPTED = "swap-request-accepted"
SWAP_REQUEST_REJECTED = "swap-request-rejected"
EVENT_TYPES = (SWAP_REQUEST_CREATED, SWAP_REQUEST_ACCEPTED, SWAP_REQUEST_REJECTED)


class NotificationDispatcher:
    """
    Pushes swap events to the sockets a user has open.

    Every connection joins its user's room. Delivery is fire-and-forget: `notify`
    schedules a background send and returns at once, failed sends are logged and
    the broken socket dropped, nothing is retried.
    """

    def __init__(self):
        self.rooms: Dict[str, List[fastapi.WebSocket]] = {}
        self._verify_token: Optional[Callable[[str], Any]] = None
        self._pending: Set[asyncio.Task] = set()

    def init(self, verify_token: Callable[[str], Any]) -> None:
        """Wires the credential check used for incoming socket connections."""
        self._verify_token = verify_token
        logger.info("Notification dispatcher initialized")

    def authenticate(self, raw_token: Optional[str]):
        """Returns the token payload for a socket handshake credential, or None."""
        if self._verify_token is None:
            raise RuntimeError("NotificationDispatcher.init() has not been called")
        token = (raw_token or "").strip()
        if token.startswith("Bearer "):
            token = token[len("Bearer "):].strip()
        if not token:
            return None
        return self._verify_token(token)

    async def connect(self, user_id: str, websocket: fastapi.WebSocket):
        await websocket.accept()
        self.rooms.setdefault(user_id, []).append(websocket)
        logger.info("User %s connected (%d open sockets)", user_id, len(self.rooms[user_id]))

    def disconnect(self, user_id: str, websocket: fastapi.WebSocket):
        room = self.rooms.get(user_id, [])
        if websocket in room:
            room.remove(websocket)
        if not room:
            self.rooms.pop(user_id, None)
        logger.info("User %s disconnected", user_id)

    def notify(self, event_type: str, target_user_id: str, payload: dict) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        if not self.rooms.get(target_user_id):
            logger.debug("No open sockets for user %s, dropping %s", target_user_id, event_type)
            return
        message = json.dumps({"type": event_type, "data": payload})
        task = asyncio.get_running_loop().create_task(self._deliver(event_type, target_user_id, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event_type: str, target_user_id: str, message: str):
        for websocket in list(self.rooms.get(target_user_id, [])):
            try:
                await websocket.send_text(message)
            except Exception:
                logger.warning("Dropping socket of user %s after failed %s delivery", target_user_id, event_type, exc_info=True)
                self.disconnect(target_user_id, websocket)
        logger.info("Emitted %s to user %s", event_type, target_user_id)

    def swap_request_created(self, target_user_id: str, payload: dict) -> None:
        self.notify(SWAP_REQUEST_CREATED, target_user_id, payload)

    def swap_request_accepted(self, requester_id: str, payload: dict) -> None:
        self.notify(SWAP_REQUEST_ACCEPTED, requester_id, payload)

    def swap_request_rejected(self, requester_id: str, payload: dict) -> None:
        self.notify(SWAP_REQUEST_REJECTED, requester_id, payload)

    async def drain(self):
        """Waits for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self):
        await self.drain()
        self.rooms.clear()
        logger.info("Notification dispatcher closed")


dispatcher = NotificationDispatcher()
