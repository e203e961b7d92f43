"""
matchmaking/pairing.py — pairs waiting users across the two genders.
Entry points:
  - try_match_for(entry)   reactive, right after a successful enqueue
  - sweep()                periodic, oldest-with-oldest positional zip
  - run_sweep_loop()       background task calling sweep() every interval
Notes:
  * The only guard against double-matching is store.claim_pair(): one
    conditional UPDATE over both rows plus the chat room insert, committed
    together or not at all. Whoever loses that race just gets None.
  * Profile lookup and push happen after the commit and never undo a match.
"""
import asyncio
import logging
from typing import Optional

import config
from .models import Gender, QueueEntry
from .notify import Event, NotificationDispatcher

log = logging.getLogger(__name__)


class PairingEngine:
    def __init__(self, store, dispatcher: NotificationDispatcher, *,
                 sweep_interval: float = config.SWEEP_INTERVAL,
                 reactive_attempts: int = config.REACTIVE_ATTEMPTS):
        self.store = store
        self.dispatcher = dispatcher
        self.sweep_interval = sweep_interval
        self.reactive_attempts = max(1, reactive_attempts)

    async def try_match_for(self, entry: QueueEntry) -> Optional[int]:
        """Pair a fresh entrant with the oldest waiting user of the other gender."""
        try:
            for _ in range(self.reactive_attempts):
                partner = await self.store.oldest_waiting(entry.gender.opposite, exclude_user_id=entry.user_id)
                if partner is None:
                    return None
                room_id = await self.match_entries(entry, partner)
                if room_id is not None:
                    return room_id
                # lost the race; stop if we were the one taken
                if not await self.store.is_entry_waiting(entry.id):
                    return None
        except Exception:
            log.exception("reactive pairing failed for %s", entry.user_id)
        return None

    async def sweep(self) -> int:
        waiting = await self.store.list_waiting()
        males = [e for e in waiting if e.gender is Gender.MALE]
        females = [e for e in waiting if e.gender is Gender.FEMALE]
        matched = 0
        for male, female in zip(males, females):
            if await self.match_entries(male, female) is not None:
                matched += 1
        if matched:
            log.info("sweep: %d pair(s) matched, %d waiting before", matched, len(waiting))
        return matched

    async def match_entries(self, first: QueueEntry, second: QueueEntry) -> Optional[int]:
        if first.gender is second.gender:
            raise ValueError(f"cannot pair two {first.gender.value} entries")
        if first.user_id == second.user_id:
            raise ValueError("cannot pair a user with themselves")
        room_id = await self.store.claim_pair(first, second)
        if room_id is None:
            log.debug("pair %s/%s lost to a concurrent claim", first.user_id, second.user_id)
            return None
        log.info("matched %s and %s, chat room %s", first.user_id, second.user_id, room_id)
        await self._announce(first.user_id, second.user_id, room_id)
        return room_id

    async def _announce(self, a_id: str, b_id: str, room_id: int):
        try:
            a = await self.store.get_public_profile(a_id)
            b = await self.store.get_public_profile(b_id)
            if a is None or b is None:
                log.warning("match %s: profile missing (%s=%s, %s=%s), push skipped",
                            room_id, a_id, a is not None, b_id, b is not None)
                return
            await self.dispatcher.push(a_id, Event.MATCH_FOUND, {"matchedUser": b.blurred(), "conversationId": room_id})
            await self.dispatcher.push(b_id, Event.MATCH_FOUND, {"matchedUser": a.blurred(), "conversationId": room_id})
        except Exception:
            log.exception("match %s: notification failed", room_id)

    async def run_sweep_loop(self):
        while True:
            try:
                await self.sweep()
            except Exception:
                log.exception("sweep error")
            await asyncio.sleep(self.sweep_interval)
