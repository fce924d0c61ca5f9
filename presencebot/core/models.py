"""
Records handled by the tracking engine.

Rows come out of SQLite as aiosqlite.Row; the from_row helpers turn them into
these dataclasses with parsed, timezone-aware timestamps.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum

from presencebot.utils.tz_time import from_iso


@dataclass
class Session:
    id: int
    guild_id: str
    user_id: str
    display_name: str
    room_id: str
    checkin_at: datetime
    checkout_at: datetime | None = None
    duration_minutes: int | None = None

    @property
    def is_open(self) -> bool:
        return self.checkout_at is None

    @classmethod
    def from_row(cls, row, tz: tzinfo) -> "Session":
        return cls(
            id=int(row["id"]),
            guild_id=str(row["guild_id"]),
            user_id=str(row["user_id"]),
            display_name=str(row["user_name"]),
            room_id=str(row["room_id"]),
            checkin_at=from_iso(row["checkin_at"], tz),
            checkout_at=from_iso(row["checkout_at"], tz) if row["checkout_at"] else None,
            duration_minutes=row["duration_minutes"],
        )


@dataclass
class Event:
    id: int
    guild_id: str
    name: str
    room_id: str
    started_at: datetime
    expected_end_at: datetime
    ended_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @classmethod
    def from_row(cls, row, tz: tzinfo) -> "Event":
        return cls(
            id=int(row["id"]),
            guild_id=str(row["guild_id"]),
            name=str(row["name"]),
            room_id=str(row["room_id"]),
            started_at=from_iso(row["started_at"], tz),
            expected_end_at=from_iso(row["expected_end_at"], tz),
            ended_at=from_iso(row["ended_at"], tz) if row["ended_at"] else None,
        )


@dataclass
class Participation:
    id: int
    event_id: int
    user_id: str
    display_name: str
    joined_at: datetime
    left_at: datetime | None = None
    duration_minutes: int | None = None

    @property
    def is_open(self) -> bool:
        return self.left_at is None

    @classmethod
    def from_row(cls, row, tz: tzinfo) -> "Participation":
        return cls(
            id=int(row["id"]),
            event_id=int(row["event_id"]),
            user_id=str(row["user_id"]),
            display_name=str(row["user_name"]),
            joined_at=from_iso(row["joined_at"], tz),
            left_at=from_iso(row["left_at"], tz) if row["left_at"] else None,
            duration_minutes=row["duration_minutes"],
        )


@dataclass(frozen=True)
class MembershipChange:
    """Normalized voice state update."""
    guild_id: str
    user_id: str
    display_name: str
    is_bot: bool
    previous_room_id: str | None
    new_room_id: str | None


@dataclass(frozen=True)
class Occupant:
    user_id: str
    display_name: str
    is_bot: bool = False


@dataclass(frozen=True)
class SummaryLine:
    user_id: str
    display_name: str
    minutes: int


class Transition(str, Enum):
    NONE = "none"
    CHECKIN = "checkin"
    SWITCH = "switch"
    CHECKOUT = "checkout"


@dataclass
class TransitionResult:
    kind: Transition
    closed: Session | None = None
    opened: Session | None = None
