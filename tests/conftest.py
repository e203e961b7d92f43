"""Shared fixtures: a throwaway SQLite store, user seeding and fake sockets."""

from typing import Any, Dict, List, Optional

import aiosqlite
import pytest
import pytest_asyncio

from matchmaking.database import SQLiteStore
from matchmaking.notify import NotificationDispatcher
from matchmaking.pairing import PairingEngine
from matchmaking.sessions import SessionRegistry
from matchmaking.waitlist import MatchQueue


# ── Helpers ──────────────────────────────────────────────────────────────


class FakeSocket:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self, name: str = "sock"):
        self.name = name
        self.frames: List[Dict[str, Any]] = []

    async def send_json(self, data):
        self.frames.append(data)

    def events(self) -> List[str]:
        return [f["event"] for f in self.frames]

    def last(self, event: str) -> Optional[Dict[str, Any]]:
        for f in reversed(self.frames):
            if f["event"] == event:
                return f["data"]
        return None


class BrokenSocket:
    async def send_json(self, data):
        raise ConnectionResetError("peer went away")


async def seed_user(store, user_id: str, gender: Optional[str], credit: int = 10, **profile):
    await store.save_user(
        user_id,
        nickname=profile.get("nickname", f"nick-{user_id}"),
        gender=gender,
        birth_year=profile.get("birth_year", 1995),
        height=profile.get("height", 170),
        city=profile.get("city", "Seoul"),
        profile_images=profile.get("profile_images", [f"{user_id}.jpg"]),
        credit=credit,
    )


async def backdate(store: SQLiteStore, seconds: float):
    """Shift every queue and chat-room timestamp `seconds` into the past."""
    async with aiosqlite.connect(store.path) as db:
        await db.execute("UPDATE match_queue SET enqueued_at = enqueued_at - ?, updated_at = updated_at - ?",
                         (seconds, seconds))
        await db.execute("UPDATE chat_rooms SET created_at = created_at - ?", (seconds,))
        await db.commit()


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def store(tmp_path):
    backend = SQLiteStore(str(tmp_path / "match.sqlite3"))
    await backend.init()
    yield backend
    await backend.close()


class Engine:
    def __init__(self, store):
        self.store = store
        self.sessions = SessionRegistry()
        self.dispatcher = NotificationDispatcher(self.sessions)
        self.pairing = PairingEngine(store, self.dispatcher, sweep_interval=0.01)
        self.queue = MatchQueue(store, self.pairing, cost=10)

    def connect(self, user_id: str) -> FakeSocket:
        sock = FakeSocket(user_id)
        self.sessions.bind(user_id, sock)
        return sock


@pytest.fixture
def engine(store):
    return Engine(store)

