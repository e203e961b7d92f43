# matchmaking/waitlist.py — enqueue (with credit debit), cancel and status
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import config
from .models import EnqueueStatus, Gender, PublicProfile, QueueEntry
from .pairing import PairingEngine

log = logging.getLogger(__name__)


class CancelStatus(Enum):
    OK = "ok"
    NOT_WAITING = "not_waiting"


class MatchState(Enum):
    WAITING = "waiting"
    RECENT_MATCH = "recent_match"
    IDLE = "idle"


@dataclass
class EnqueueResult:
    status: EnqueueStatus
    entry: Optional[QueueEntry] = None

    @property
    def ok(self) -> bool:
        return self.status is EnqueueStatus.OK


@dataclass
class MatchStatus:
    state: MatchState
    entry: Optional[QueueEntry] = None
    matched_user: Optional[PublicProfile] = None
    conversation_id: Optional[int] = None

    @property
    def is_waiting(self) -> bool:
        return self.state is MatchState.WAITING

    def matched_payload(self) -> Optional[Dict[str, Any]]:
        if self.matched_user is None:
            return None
        data = self.matched_user.blurred()
        data["conversationId"] = self.conversation_id
        return data


OnQueued = Callable[[QueueEntry], Awaitable[Any]]


class MatchQueue:
    def __init__(self, store, pairing: PairingEngine, *, cost: int = config.MATCH_CREDIT_COST):
        self.store = store
        self.pairing = pairing
        self.cost = cost

    async def enqueue(self, user_id: str, gender: Gender, on_queued: Optional[OnQueued] = None) -> EnqueueResult:
        """Charge the match cost and join the queue, then try to pair at once.

        `on_queued` runs after the entry is stored and before reactive
        pairing, so callers can acknowledge the request ahead of any
        match-found push.
        """
        status, entry = await self.store.enqueue_waiting(user_id, gender, self.cost)
        if status is not EnqueueStatus.OK:
            log.info("enqueue %s rejected: %s", user_id, status.value)
            return EnqueueResult(status)
        log.info("enqueue %s (%s) as entry %s, debited %s", user_id, gender.value, entry.id, self.cost)
        if on_queued is not None:
            try:
                await on_queued(entry)
            except Exception:
                log.exception("on_queued callback failed for %s", user_id)
        await self.pairing.try_match_for(entry)
        return EnqueueResult(status, entry)

    async def cancel(self, user_id: str) -> CancelStatus:
        # no refund: the debit at enqueue is final
        if await self.store.cancel_waiting(user_id):
            log.info("cancel %s", user_id)
            return CancelStatus.OK
        return CancelStatus.NOT_WAITING

    async def status(self, user_id: str, window: float) -> MatchStatus:
        entry = await self.store.get_waiting_entry(user_id)
        if entry is not None:
            return MatchStatus(MatchState.WAITING, entry=entry)
        resolved = await self.store.latest_resolved(user_id, since=time.time() - window)
        if resolved is None:
            return MatchStatus(MatchState.IDLE)
        room = await self.store.find_chat_room(user_id, since=resolved.updated_at)
        if room is None:
            return MatchStatus(MatchState.IDLE)
        other_id = room["user2_id"] if room["user1_id"] == user_id else room["user1_id"]
        profile = await self.store.get_public_profile(other_id)
        if profile is None:
            return MatchStatus(MatchState.IDLE)
        return MatchStatus(MatchState.RECENT_MATCH, entry=resolved, matched_user=profile,
                           conversation_id=int(room["id"]))
