# matchmaking/models.py — queue rows, genders and the public profile projection
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"

    @property
    def opposite(self) -> "Gender":
        return Gender.FEMALE if self is Gender.MALE else Gender.MALE

    @classmethod
    def parse(cls, raw: Any) -> Optional["Gender"]:
        try:
            return cls((raw or "").strip().lower())
        except (ValueError, AttributeError):
            return None


class EnqueueStatus(Enum):
    OK = "ok"
    ALREADY_WAITING = "already_waiting"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    UNKNOWN_USER = "unknown_user"


@dataclass
class QueueEntry:
    id: int
    user_id: str
    gender: Gender
    is_waiting: bool
    enqueued_at: float
    updated_at: float

    @classmethod
    def from_row(cls, row) -> "QueueEntry":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            gender=Gender(row["gender"]),
            is_waiting=bool(row["is_waiting"]),
            enqueued_at=float(row["enqueued_at"]),
            updated_at=float(row["updated_at"]),
        )


@dataclass
class PublicProfile:
    """Fields a counterpart is allowed to see at match time."""
    id: str
    nickname: Optional[str] = None
    birth_year: Optional[int] = None
    height: Optional[int] = None
    city: Optional[str] = None
    gender: Optional[str] = None
    profile_images: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "PublicProfile":
        return cls(
            id=str(row["user_id"]),
            nickname=row["nickname"],
            birth_year=row["birth_year"],
            height=row["height"],
            city=row["city"],
            gender=row["gender"],
            profile_images=decode_images(row["profile_images"]),
        )

    def blurred(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "nickname": self.nickname,
            "birthYear": self.birth_year,
            "height": self.height,
            "city": self.city,
            "gender": self.gender,
            "profileImages": [blur_image(img) for img in self.profile_images],
        }


def blur_image(ref: str) -> str:
    return f"blurred-{ref}"


def decode_images(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(x) for x in raw]
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(x) for x in data] if isinstance(data, list) else []


def iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
