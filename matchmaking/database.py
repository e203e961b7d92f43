"""
matchmaking/database.py — storage layer for the matching engine
- SQLite by default (aiosqlite, one connection per call)
- Postgres when USE_POSTGRES=1 (asyncpg pool)
Tables (auto-created):
  users(user_id PK, nickname, gender, birth_year, height, city, profile_images, credit, created_at)
  credit_logs(id PK, user_id, action, amount, created_at)
  match_queue(id PK, user_id, gender, is_waiting, enqueued_at, updated_at)
      unique (user_id) where is_waiting
  chat_rooms(id PK, user1_id, user2_id, is_active, created_at)

Queue rows are never deleted; resolving one (match or cancel) only flips
is_waiting. Every is_waiting transition is a single conditional UPDATE.
"""
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite
import asyncpg

import config
from .models import EnqueueStatus, Gender, PublicProfile, QueueEntry

log = logging.getLogger(__name__)

__all__ = ["init_db", "SQLiteStore", "PostgresStore", "CREDIT_MATCH", "CREDIT_CHARGE"]

CREDIT_MATCH = "match"
CREDIT_CHARGE = "charge"

SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
      user_id        TEXT PRIMARY KEY,
      nickname       TEXT,
      gender         TEXT,
      birth_year     INTEGER,
      height         INTEGER,
      city           TEXT,
      profile_images TEXT DEFAULT '[]',
      credit         INTEGER NOT NULL DEFAULT 0,
      created_at     REAL
    )""",
    """
    CREATE TABLE IF NOT EXISTS credit_logs (
      id         INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id    TEXT NOT NULL,
      action     TEXT NOT NULL,
      amount     INTEGER NOT NULL,
      created_at REAL NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS match_queue (
      id          INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id     TEXT NOT NULL,
      gender      TEXT NOT NULL,
      is_waiting  INTEGER NOT NULL DEFAULT 1,
      enqueued_at REAL NOT NULL,
      updated_at  REAL NOT NULL
    )""",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_match_queue_waiting ON match_queue(user_id) WHERE is_waiting = 1",
    "CREATE INDEX IF NOT EXISTS idx_match_queue_fifo ON match_queue(is_waiting, gender, enqueued_at)",
    """
    CREATE TABLE IF NOT EXISTS chat_rooms (
      id         INTEGER PRIMARY KEY AUTOINCREMENT,
      user1_id   TEXT NOT NULL,
      user2_id   TEXT NOT NULL,
      is_active  INTEGER NOT NULL DEFAULT 1,
      created_at REAL NOT NULL
    )""",
]

PG_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
      user_id        TEXT PRIMARY KEY,
      nickname       TEXT,
      gender         TEXT,
      birth_year     INT,
      height         INT,
      city           TEXT,
      profile_images TEXT DEFAULT '[]',
      credit         INT NOT NULL DEFAULT 0,
      created_at     DOUBLE PRECISION
    )""",
    """
    CREATE TABLE IF NOT EXISTS credit_logs (
      id         BIGSERIAL PRIMARY KEY,
      user_id    TEXT NOT NULL,
      action     TEXT NOT NULL,
      amount     INT NOT NULL,
      created_at DOUBLE PRECISION NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS match_queue (
      id          BIGSERIAL PRIMARY KEY,
      user_id     TEXT NOT NULL,
      gender      TEXT NOT NULL,
      is_waiting  BOOLEAN NOT NULL DEFAULT TRUE,
      enqueued_at DOUBLE PRECISION NOT NULL,
      updated_at  DOUBLE PRECISION NOT NULL
    )""",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_match_queue_waiting ON match_queue(user_id) WHERE is_waiting",
    "CREATE INDEX IF NOT EXISTS idx_match_queue_fifo ON match_queue(is_waiting, gender, enqueued_at)",
    """
    CREATE TABLE IF NOT EXISTS chat_rooms (
      id         BIGSERIAL PRIMARY KEY,
      user1_id   TEXT NOT NULL,
      user2_id   TEXT NOT NULL,
      is_active  BOOLEAN NOT NULL DEFAULT TRUE,
      created_at DOUBLE PRECISION NOT NULL
    )""",
]

TABLES = ("chat_rooms", "match_queue", "credit_logs", "users")


class _Rollback(Exception):
    """Abort the surrounding transaction; carries the outcome to report."""

    def __init__(self, status: Optional[EnqueueStatus] = None):
        super().__init__(status)
        self.status = status


async def init_db(reset: bool = False):
    if config.USE_POSTGRES:
        backend = PostgresStore(config.PG_DSN, pool_min=config.PG_POOL_MIN, pool_max=config.PG_POOL_MAX)
    else:
        backend = SQLiteStore(config.SQLITE_PATH)
    await backend.init(reset)
    return backend


def _images_json(images: Optional[Iterable[str]]) -> str:
    return json.dumps([str(x) for x in (images or [])])


# --- Implementations ---
class SQLiteStore:
    def __init__(self, path: str):
        self.path = str(path)

    async def init(self, reset: bool = False):
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        if reset and os.path.exists(self.path):
            os.remove(self.path)
        async with self._conn() as db:
            for sql in SQLITE_SCHEMA:
                await db.execute(sql)
            await db.commit()
        log.info("[db] sqlite ready → %s", self.path)

    async def close(self):
        return None

    @asynccontextmanager
    async def _conn(self):
        async with aiosqlite.connect(self.path, timeout=10) as db:
            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def _tx(self):
        # BEGIN IMMEDIATE takes the write lock up front, so concurrent
        # transactions serialize instead of interleaving reads and writes
        async with aiosqlite.connect(self.path, timeout=10, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                if db.in_transaction:
                    await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    # users / profile
    async def save_user(self, user_id: str, *, nickname: Optional[str] = None, gender: Optional[str] = None,
                        birth_year: Optional[int] = None, height: Optional[int] = None, city: Optional[str] = None,
                        profile_images: Optional[Iterable[str]] = None, credit: int = 0):
        async with self._conn() as db:
            await db.execute("""
              INSERT INTO users (user_id, nickname, gender, birth_year, height, city, profile_images, credit, created_at)
              VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
              ON CONFLICT(user_id) DO UPDATE SET nickname=excluded.nickname, gender=excluded.gender,
                  birth_year=excluded.birth_year, height=excluded.height, city=excluded.city,
                  profile_images=excluded.profile_images
            """, (user_id, nickname, gender, birth_year, height, city, _images_json(profile_images), credit, time.time()))
            await db.commit()

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._conn() as db:
            cur = await db.execute("SELECT * FROM users WHERE user_id=?", (user_id,))
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_public_profile(self, user_id: str) -> Optional[PublicProfile]:
        async with self._conn() as db:
            cur = await db.execute("""
              SELECT user_id, nickname, birth_year, height, city, gender, profile_images
                FROM users WHERE user_id=?
            """, (user_id,))
            row = await cur.fetchone()
            return PublicProfile.from_row(row) if row else None

    # ledger
    async def get_credit(self, user_id: str) -> Optional[int]:
        async with self._conn() as db:
            cur = await db.execute("SELECT credit FROM users WHERE user_id=?", (user_id,))
            row = await cur.fetchone()
            return int(row["credit"]) if row else None

    async def charge_credit(self, user_id: str, amount: int) -> Optional[int]:
        async with self._tx() as db:
            cur = await db.execute("UPDATE users SET credit = credit + ? WHERE user_id=?", (amount, user_id))
            if cur.rowcount != 1:
                return None
            await db.execute("INSERT INTO credit_logs (user_id, action, amount, created_at) VALUES (?,?,?,?)",
                             (user_id, CREDIT_CHARGE, amount, time.time()))
            cur = await db.execute("SELECT credit FROM users WHERE user_id=?", (user_id,))
            return int((await cur.fetchone())["credit"])

    async def get_credit_logs(self, user_id: str) -> List[Dict[str, Any]]:
        async with self._conn() as db:
            cur = await db.execute("""
              SELECT id, user_id, action, amount, created_at FROM credit_logs
               WHERE user_id=? ORDER BY created_at DESC, id DESC
            """, (user_id,))
            return [dict(r) for r in await cur.fetchall()]

    # queue
    async def enqueue_waiting(self, user_id: str, gender: Gender, cost: int) -> Tuple[EnqueueStatus, Optional[QueueEntry]]:
        """Debit `cost` and insert a waiting entry, all or nothing."""
        now = time.time()
        try:
            async with self._tx() as db:
                cur = await db.execute("SELECT credit FROM users WHERE user_id=?", (user_id,))
                if await cur.fetchone() is None:
                    raise _Rollback(EnqueueStatus.UNKNOWN_USER)
                cur = await db.execute("SELECT 1 FROM match_queue WHERE user_id=? AND is_waiting=1", (user_id,))
                if await cur.fetchone() is not None:
                    raise _Rollback(EnqueueStatus.ALREADY_WAITING)
                cur = await db.execute("UPDATE users SET credit = credit - ? WHERE user_id=? AND credit >= ?",
                                       (cost, user_id, cost))
                if cur.rowcount != 1:
                    raise _Rollback(EnqueueStatus.INSUFFICIENT_BALANCE)
                await db.execute("INSERT INTO credit_logs (user_id, action, amount, created_at) VALUES (?,?,?,?)",
                                 (user_id, CREDIT_MATCH, -cost, now))
                cur = await db.execute("""
                  INSERT INTO match_queue (user_id, gender, is_waiting, enqueued_at, updated_at)
                  VALUES (?, ?, 1, ?, ?)
                """, (user_id, gender.value, now, now))
                entry_id = cur.lastrowid
        except _Rollback as rb:
            return rb.status, None
        except aiosqlite.IntegrityError:
            return EnqueueStatus.ALREADY_WAITING, None
        return EnqueueStatus.OK, QueueEntry(entry_id, user_id, gender, True, now, now)

    async def get_waiting_entry(self, user_id: str) -> Optional[QueueEntry]:
        async with self._conn() as db:
            cur = await db.execute("SELECT * FROM match_queue WHERE user_id=? AND is_waiting=1", (user_id,))
            row = await cur.fetchone()
            return QueueEntry.from_row(row) if row else None

    async def is_entry_waiting(self, entry_id: int) -> bool:
        async with self._conn() as db:
            cur = await db.execute("SELECT is_waiting FROM match_queue WHERE id=?", (entry_id,))
            row = await cur.fetchone()
            return bool(row and row["is_waiting"])

    async def oldest_waiting(self, gender: Gender, exclude_user_id: str) -> Optional[QueueEntry]:
        async with self._conn() as db:
            cur = await db.execute("""
              SELECT * FROM match_queue
               WHERE is_waiting=1 AND gender=? AND user_id<>?
               ORDER BY enqueued_at, id LIMIT 1
            """, (gender.value, exclude_user_id))
            row = await cur.fetchone()
            return QueueEntry.from_row(row) if row else None

    async def list_waiting(self) -> List[QueueEntry]:
        async with self._conn() as db:
            cur = await db.execute("SELECT * FROM match_queue WHERE is_waiting=1 ORDER BY enqueued_at, id")
            return [QueueEntry.from_row(r) for r in await cur.fetchall()]

    async def get_queue_history(self, user_id: str) -> List[QueueEntry]:
        async with self._conn() as db:
            cur = await db.execute("SELECT * FROM match_queue WHERE user_id=? ORDER BY enqueued_at, id", (user_id,))
            return [QueueEntry.from_row(r) for r in await cur.fetchall()]

    async def claim_pair(self, first: QueueEntry, second: QueueEntry) -> Optional[int]:
        """Resolve both entries and open a chat room, or do nothing at all."""
        now = time.time()
        try:
            async with self._tx() as db:
                cur = await db.execute("""
                  UPDATE match_queue SET is_waiting=0, updated_at=?
                   WHERE id IN (?, ?) AND is_waiting=1
                """, (now, first.id, second.id))
                if cur.rowcount != 2:
                    raise _Rollback()
                cur = await db.execute("""
                  INSERT INTO chat_rooms (user1_id, user2_id, is_active, created_at) VALUES (?, ?, 1, ?)
                """, (first.user_id, second.user_id, now))
                room_id = cur.lastrowid
        except _Rollback:
            return None
        return room_id

    async def cancel_waiting(self, user_id: str) -> bool:
        async with self._conn() as db:
            cur = await db.execute("UPDATE match_queue SET is_waiting=0, updated_at=? WHERE user_id=? AND is_waiting=1",
                                   (time.time(), user_id))
            await db.commit()
            return cur.rowcount > 0

    async def latest_resolved(self, user_id: str, since: float) -> Optional[QueueEntry]:
        async with self._conn() as db:
            cur = await db.execute("""
              SELECT * FROM match_queue
               WHERE user_id=? AND is_waiting=0 AND updated_at >= ?
               ORDER BY updated_at DESC, id DESC LIMIT 1
            """, (user_id, since))
            row = await cur.fetchone()
            return QueueEntry.from_row(row) if row else None

    # chat rooms
    async def find_chat_room(self, user_id: str, since: float) -> Optional[Dict[str, Any]]:
        async with self._conn() as db:
            cur = await db.execute("""
              SELECT * FROM chat_rooms
               WHERE (user1_id=? OR user2_id=?) AND created_at >= ?
               ORDER BY created_at DESC, id DESC LIMIT 1
            """, (user_id, user_id, since))
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_chat_rooms(self, user_id: str) -> List[Dict[str, Any]]:
        async with self._conn() as db:
            cur = await db.execute("SELECT * FROM chat_rooms WHERE user1_id=? OR user2_id=? ORDER BY id",
                                   (user_id, user_id))
            return [dict(r) for r in await cur.fetchall()]


class PostgresStore:
    def __init__(self, dsn: str, *, pool_min: int = 1, pool_max: int = 10, timeout: float = 10):
        self.dsn = dsn
        self.pool_min = pool_min
        self.pool_max = pool_max
        self.timeout = timeout
        self.pool: Optional[asyncpg.Pool] = None

    async def init(self, reset: bool = False):
        self.pool = await asyncpg.create_pool(dsn=self.dsn, min_size=self.pool_min, max_size=self.pool_max,
                                              timeout=self.timeout, command_timeout=60)
        async with self.pool.acquire() as con:
            if reset:
                for table in TABLES:
                    await con.execute(f"DROP TABLE IF EXISTS {table}")
            for sql in PG_SCHEMA:
                await con.execute(sql)
        log.info("[db] postgres pool ready (min=%s max=%s)", self.pool_min, self.pool_max)

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    # users / profile
    async def save_user(self, user_id: str, *, nickname: Optional[str] = None, gender: Optional[str] = None,
                        birth_year: Optional[int] = None, height: Optional[int] = None, city: Optional[str] = None,
                        profile_images: Optional[Iterable[str]] = None, credit: int = 0):
        async with self.pool.acquire() as con:
            await con.execute("""
              INSERT INTO users (user_id, nickname, gender, birth_year, height, city, profile_images, credit, created_at)
              VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9)
              ON CONFLICT (user_id) DO UPDATE SET nickname=EXCLUDED.nickname, gender=EXCLUDED.gender,
                  birth_year=EXCLUDED.birth_year, height=EXCLUDED.height, city=EXCLUDED.city,
                  profile_images=EXCLUDED.profile_images
            """, user_id, nickname, gender, birth_year, height, city, _images_json(profile_images), credit, time.time())

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as con:
            row = await con.fetchrow("SELECT * FROM users WHERE user_id=$1", user_id)
            return dict(row) if row else None

    async def get_public_profile(self, user_id: str) -> Optional[PublicProfile]:
        async with self.pool.acquire() as con:
            row = await con.fetchrow("""
              SELECT user_id, nickname, birth_year, height, city, gender, profile_images
                FROM users WHERE user_id=$1
            """, user_id)
            return PublicProfile.from_row(row) if row else None

    # ledger
    async def get_credit(self, user_id: str) -> Optional[int]:
        async with self.pool.acquire() as con:
            credit = await con.fetchval("SELECT credit FROM users WHERE user_id=$1", user_id)
            return int(credit) if credit is not None else None

    async def charge_credit(self, user_id: str, amount: int) -> Optional[int]:
        async with self.pool.acquire() as con:
            async with con.transaction():
                credit = await con.fetchval("UPDATE users SET credit = credit + $2 WHERE user_id=$1 RETURNING credit",
                                            user_id, amount)
                if credit is None:
                    return None
                await con.execute("INSERT INTO credit_logs (user_id, action, amount, created_at) VALUES ($1,$2,$3,$4)",
                                  user_id, CREDIT_CHARGE, amount, time.time())
                return int(credit)

    async def get_credit_logs(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as con:
            rows = await con.fetch("""
              SELECT id, user_id, action, amount, created_at FROM credit_logs
               WHERE user_id=$1 ORDER BY created_at DESC, id DESC
            """, user_id)
            return [dict(r) for r in rows]

    # queue
    async def enqueue_waiting(self, user_id: str, gender: Gender, cost: int) -> Tuple[EnqueueStatus, Optional[QueueEntry]]:
        """Debit `cost` and insert a waiting entry, all or nothing."""
        now = time.time()
        try:
            async with self.pool.acquire() as con:
                async with con.transaction():
                    # row lock serializes concurrent requests of the same user
                    user = await con.fetchrow("SELECT credit FROM users WHERE user_id=$1 FOR UPDATE", user_id)
                    if user is None:
                        raise _Rollback(EnqueueStatus.UNKNOWN_USER)
                    if await con.fetchval("SELECT 1 FROM match_queue WHERE user_id=$1 AND is_waiting", user_id):
                        raise _Rollback(EnqueueStatus.ALREADY_WAITING)
                    debited = await con.fetchval("""
                      UPDATE users SET credit = credit - $2 WHERE user_id=$1 AND credit >= $2 RETURNING credit
                    """, user_id, cost)
                    if debited is None:
                        raise _Rollback(EnqueueStatus.INSUFFICIENT_BALANCE)
                    await con.execute("INSERT INTO credit_logs (user_id, action, amount, created_at) VALUES ($1,$2,$3,$4)",
                                      user_id, CREDIT_MATCH, -cost, now)
                    row = await con.fetchrow("""
                      INSERT INTO match_queue (user_id, gender, is_waiting, enqueued_at, updated_at)
                      VALUES ($1, $2, TRUE, $3, $3) RETURNING *
                    """, user_id, gender.value, now)
        except _Rollback as rb:
            return rb.status, None
        except asyncpg.UniqueViolationError:
            return EnqueueStatus.ALREADY_WAITING, None
        return EnqueueStatus.OK, QueueEntry.from_row(row)

    async def get_waiting_entry(self, user_id: str) -> Optional[QueueEntry]:
        async with self.pool.acquire() as con:
            row = await con.fetchrow("SELECT * FROM match_queue WHERE user_id=$1 AND is_waiting", user_id)
            return QueueEntry.from_row(row) if row else None

    async def is_entry_waiting(self, entry_id: int) -> bool:
        async with self.pool.acquire() as con:
            return bool(await con.fetchval("SELECT is_waiting FROM match_queue WHERE id=$1", entry_id))

    async def oldest_waiting(self, gender: Gender, exclude_user_id: str) -> Optional[QueueEntry]:
        async with self.pool.acquire() as con:
            row = await con.fetchrow("""
              SELECT * FROM match_queue
               WHERE is_waiting AND gender=$1 AND user_id<>$2
               ORDER BY enqueued_at, id LIMIT 1
            """, gender.value, exclude_user_id)
            return QueueEntry.from_row(row) if row else None

    async def list_waiting(self) -> List[QueueEntry]:
        async with self.pool.acquire() as con:
            rows = await con.fetch("SELECT * FROM match_queue WHERE is_waiting ORDER BY enqueued_at, id")
            return [QueueEntry.from_row(r) for r in rows]

    async def get_queue_history(self, user_id: str) -> List[QueueEntry]:
        async with self.pool.acquire() as con:
            rows = await con.fetch("SELECT * FROM match_queue WHERE user_id=$1 ORDER BY enqueued_at, id", user_id)
            return [QueueEntry.from_row(r) for r in rows]

    async def claim_pair(self, first: QueueEntry, second: QueueEntry) -> Optional[int]:
        """Resolve both entries and open a chat room, or do nothing at all."""
        now = time.time()
        try:
            async with self.pool.acquire() as con:
                async with con.transaction():
                    claimed = await con.fetchval("""
                      WITH claimed AS (
                        UPDATE match_queue SET is_waiting=FALSE, updated_at=$2
                         WHERE id = ANY($1::bigint[]) AND is_waiting
                        RETURNING id
                      )
                      SELECT count(*) FROM claimed
                    """, [first.id, second.id], now)
                    if claimed != 2:
                        raise _Rollback()
                    room_id = await con.fetchval("""
                      INSERT INTO chat_rooms (user1_id, user2_id, is_active, created_at)
                      VALUES ($1, $2, TRUE, $3) RETURNING id
                    """, first.user_id, second.user_id, now)
        except _Rollback:
            return None
        return int(room_id)

    async def cancel_waiting(self, user_id: str) -> bool:
        async with self.pool.acquire() as con:
            row = await con.fetchrow("""
              UPDATE match_queue SET is_waiting=FALSE, updated_at=$2
               WHERE user_id=$1 AND is_waiting RETURNING id
            """, user_id, time.time())
            return row is not None

    async def latest_resolved(self, user_id: str, since: float) -> Optional[QueueEntry]:
        async with self.pool.acquire() as con:
            row = await con.fetchrow("""
              SELECT * FROM match_queue
               WHERE user_id=$1 AND NOT is_waiting AND updated_at >= $2
               ORDER BY updated_at DESC, id DESC LIMIT 1
            """, user_id, since)
            return QueueEntry.from_row(row) if row else None

    # chat rooms
    async def find_chat_room(self, user_id: str, since: float) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as con:
            row = await con.fetchrow("""
              SELECT * FROM chat_rooms
               WHERE (user1_id=$1 OR user2_id=$1) AND created_at >= $2
               ORDER BY created_at DESC, id DESC LIMIT 1
            """, user_id, since)
            return dict(row) if row else None

    async def get_chat_rooms(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as con:
            rows = await con.fetch("SELECT * FROM chat_rooms WHERE user1_id=$1 OR user2_id=$1 ORDER BY id", user_id)
            return [dict(r) for r in rows]
