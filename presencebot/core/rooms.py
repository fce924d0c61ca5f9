from __future__ import annotations

from .db import Database


class RoomRegistry:
    """Voice rooms marked for attendance tracking, per guild."""

    def __init__(self, db: Database):
        self.db = db

    async def track(self, guild_id: str, room_id: str):
        await self.db.execute(
            "INSERT OR IGNORE INTO tracked_rooms(guild_id, room_id) VALUES(?,?)",
            (guild_id, room_id),
        )

    async def untrack(self, guild_id: str, room_id: str):
        await self.db.execute(
            "DELETE FROM tracked_rooms WHERE guild_id=? AND room_id=?",
            (guild_id, room_id),
        )

    async def is_tracked(self, guild_id: str, room_id: str | None) -> bool:
        if not room_id:
            return False
        row = await self.db.fetchone(
            "SELECT 1 FROM tracked_rooms WHERE guild_id=? AND room_id=?",
            (guild_id, room_id),
        )
        return row is not None

    async def list_tracked(self, guild_id: str) -> set[str]:
        rows = await self.db.fetchall(
            "SELECT room_id FROM tracked_rooms WHERE guild_id=?",
            (guild_id,),
        )
        return {str(r["room_id"]) for r in rows}

    async def guilds_with_rooms(self) -> list[str]:
        rows = await self.db.fetchall("SELECT DISTINCT guild_id FROM tracked_rooms ORDER BY guild_id")
        return [str(r["guild_id"]) for r in rows]
