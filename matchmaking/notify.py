# matchmaking/notify.py — best-effort push of match events to live connections
import logging
from enum import Enum
from typing import Any, Dict, Optional

from .sessions import SessionRegistry

log = logging.getLogger(__name__)


class Event(str, Enum):
    MATCH_REQUESTED = "match-requested"
    MATCH_CANCELED = "match-canceled"
    MATCH_STATUS = "match-status"
    MATCH_FOUND = "match-found"
    MATCH_ERROR = "match-error"


def frame(event: Event, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {"event": event.value, "data": payload or {}}


class NotificationDispatcher:
    """Sends event frames to handles that expose `async send_json(dict)`.

    Delivery is fire-and-forget: a missing session or a broken transport is
    logged and reported as False, never raised. Clients that miss a push
    recover through the status check.
    """

    def __init__(self, sessions: SessionRegistry):
        self.sessions = sessions

    async def push(self, user_id: str, event: Event, payload: Optional[Dict[str, Any]] = None) -> bool:
        handle = self.sessions.lookup(user_id)
        if handle is None:
            log.debug("push %s to %s dropped: no live session", event.value, user_id)
            return False
        return await self._send(handle, event, payload, user_id)

    async def reply(self, handle: Any, event: Event, payload: Optional[Dict[str, Any]] = None) -> bool:
        return await self._send(handle, event, payload, None)

    async def _send(self, handle: Any, event: Event, payload, user_id: Optional[str]) -> bool:
        try:
            await handle.send_json(frame(event, payload))
            return True
        except Exception as e:
            log.warning("send %s to %s failed: %s: %s", event.value, user_id or "connection", type(e).__name__, e)
            return False
