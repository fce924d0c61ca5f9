"""
Attendance Cog

Discord glue for the tracking engine.

Responsibilities:
- Collector: on_voice_state_update -> PresenceEngine.handle_membership_change
- Startup recovery on the first on_ready (voice updates wait until it finishes)
- Log channel lines for check-in / room switch / check-out and event summaries
- Check-in DM, throttled per user
- Commands: /attendance (track, untrack, rooms, status, checkout, panel, report, export)
            /attendance_event (start, stop, report)
"""

from __future__ import annotations

import asyncio
import io
import logging

import discord
from discord import app_commands
from discord.ext import commands

from presencebot.core import (
    CLOSE_AUTO, CLOSE_MANUAL, CLOSE_RECOVERY,
    CheckoutStatus, ConflictError, Event, MembershipChange, NotFoundError,
    NotificationError, Occupant, PresenceEngine, PresenceError,
    SummaryLine, Transition, TransitionResult, sessions_to_csv,
)
from presencebot.utils.date_parse import parse_day_range
from presencebot.utils.embed_utils import create_embed, error_embed, success_embed
from presencebot.utils.tz_time import fmt_short

logger = logging.getLogger(__name__)

REPORT_MAX_LINES = 50
PANEL_MAX_MEMBERS = 24

CLOSE_REASON_TEXT = {
    CLOSE_AUTO: "time is up",
    CLOSE_MANUAL: "stopped by an admin",
    CLOSE_RECOVERY: "closed after a restart",
}


def format_summary(summary: list[SummaryLine]) -> str:
    if not summary:
        return "Nobody joined."
    return "\n".join(f"• **{line.display_name}** — {line.minutes} min" for line in summary)


class DiscordOccupancy:
    """Live voice channel membership read from the gateway cache."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    async def list_current_occupants(self, guild_id: str, room_id: str) -> list[Occupant] | None:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            return None
        channel = guild.get_channel(int(room_id))
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            return None
        return [member_occupant(m) for m in channel.members]


def member_occupant(member: discord.Member) -> Occupant:
    return Occupant(str(member.id), member.display_name, member.bot)


class Attendance(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.engine: PresenceEngine = bot.engine
        self.settings = bot.settings
        self.occupancy = DiscordOccupancy(bot)

        # voice updates wait here until startup recovery has run
        self._recovered = asyncio.Event()
        self._recovery_started = False

        self.engine.notifier = self._send_checkin_dm
        self.engine.transition_listeners.append(self._log_transition)
        self.engine.event_closed_listeners.append(self._post_event_summary)

        self.attendance = app_commands.Group(name="attendance", description="Voice attendance tracking", guild_only=True)
        self.event_group = app_commands.Group(name="attendance_event", description="Timed attendance events", guild_only=True)
        self._register_commands()

    def cog_unload(self):
        self.engine.notifier = None
        self.engine.transition_listeners.remove(self._log_transition)
        self.engine.event_closed_listeners.remove(self._post_event_summary)

    # ---------- Startup ----------
    @commands.Cog.listener()
    async def on_ready(self):
        if self._recovery_started:
            return
        self._recovery_started = True
        try:
            report = await self.engine.recover(self.occupancy)
            if report.failures:
                print(f"⚠ Recovery finished with {len(report.failures)} failure(s), see log")
            else:
                print(f"✓ Recovery: {len(report.rearmed)} event(s) resumed, {len(report.finalized)} closed")
        except PresenceError:
            logger.exception("Startup recovery failed")
        finally:
            self._recovered.set()

    # ---------- Voice state tracking ----------
    @commands.Cog.listener()
    async def on_voice_state_update(self, member: discord.Member,
                                    before: discord.VoiceState,
                                    after: discord.VoiceState):
        await self._recovered.wait()
        change = MembershipChange(
            guild_id=str(member.guild.id),
            user_id=str(member.id),
            display_name=member.display_name,
            is_bot=member.bot,
            previous_room_id=str(before.channel.id) if before.channel else None,
            new_room_id=str(after.channel.id) if after.channel else None,
        )
        try:
            await self.engine.handle_membership_change(change)
        except PresenceError:
            logger.exception("Voice state update failed for user %s in guild %s", change.user_id, change.guild_id)

    # ---------- Log channel ----------
    async def _send_log(self, guild: discord.Guild | None, content: str | None = None,
                        embed: discord.Embed | None = None):
        cid = self.settings.log_channel_id
        if not cid or guild is None:
            return
        channel = guild.get_channel(cid)
        if not isinstance(channel, discord.TextChannel):
            return
        try:
            await channel.send(content=content, embed=embed)
        except discord.HTTPException as e:
            logger.warning("Could not post to log channel %s: %s", cid, e)

    async def _log_transition(self, change: MembershipChange, result: TransitionResult):
        guild = self.bot.get_guild(int(change.guild_id))
        mention = f"<@{change.user_id}>"
        if result.kind is Transition.SWITCH:
            text = f"🔁 **Room switch**: {mention} from <#{change.previous_room_id}> to <#{change.new_room_id}>"
        elif result.kind is Transition.CHECKIN:
            text = f"🟢 **Check-in**: {mention} in <#{change.new_room_id}>"
        elif result.kind is Transition.CHECKOUT:
            minutes = result.closed.duration_minutes if result.closed else 0
            text = f"🔴 **Left**: {mention} from <#{change.previous_room_id}> ({minutes} min)"
        else:
            return
        await self._send_log(guild, text)

    async def _post_event_summary(self, event: Event, reason: str, summary: list[SummaryLine]):
        guild = self.bot.get_guild(int(event.guild_id))
        e = create_embed(
            format_summary(summary),
            title=f"Event finished: {event.name}",
            color="event",
            footer=f"{fmt_short(event.started_at)} → {fmt_short(event.ended_at)} · {CLOSE_REASON_TEXT.get(reason, reason)}",
        )
        await self._send_log(guild, embed=e)

    async def _send_checkin_dm(self, guild_id: str, user_id: str):
        guild = self.bot.get_guild(int(guild_id))
        member = guild.get_member(int(user_id)) if guild else None
        if member is None:
            raise NotificationError(f"member {user_id} not cached in guild {guild_id}")
        required = self.settings.checkout_minutes_required
        e = create_embed(
            f"👋 Check-in started in **{guild.name}**.\n\n"
            f"After {required} min you can run `/attendance checkout`.\n"
            "If you try earlier I'll tell you how long is left.",
            title="Attendance",
            color="success",
        )
        try:
            await member.send(embed=e)
        except discord.HTTPException as exc:
            raise NotificationError(str(exc)) from exc

    # ---------- Helpers ----------
    @staticmethod
    def _is_admin(interaction: discord.Interaction) -> bool:
        perms = interaction.permissions
        return bool(perms and perms.manage_guild)

    async def _deny(self, interaction: discord.Interaction):
        await interaction.response.send_message(
            embed=error_embed("You need the **Manage Server** permission."), ephemeral=True
        )

    # ---------- /attendance track | untrack | rooms ----------
    async def _cmd_track(self, interaction: discord.Interaction, room: discord.VoiceChannel):
        if not self._is_admin(interaction):
            return await self._deny(interaction)
        await self.engine.rooms.track(str(interaction.guild_id), str(room.id))
        await interaction.response.send_message(embed=success_embed(f"✅ Room added: {room.mention}"), ephemeral=True)

    async def _cmd_untrack(self, interaction: discord.Interaction, room: discord.VoiceChannel):
        if not self._is_admin(interaction):
            return await self._deny(interaction)
        await self.engine.rooms.untrack(str(interaction.guild_id), str(room.id))
        await interaction.response.send_message(embed=success_embed(f"🗑️ Room removed: {room.mention}"), ephemeral=True)

    async def _cmd_rooms(self, interaction: discord.Interaction):
        ids = await self.engine.rooms.list_tracked(str(interaction.guild_id))
        if not ids:
            return await interaction.response.send_message("ℹ️ No tracked rooms.", ephemeral=True)
        lines = []
        for rid in sorted(ids):
            channel = interaction.guild.get_channel(int(rid)) if interaction.guild else None
            if isinstance(channel, discord.VoiceChannel):
                lines.append(f"• 🎧 {channel.name}")
            else:
                lines.append(f"• ❓ unknown (ID: {rid})")
        await interaction.response.send_message(
            embed=create_embed("\n".join(lines), title="🎯 Tracked rooms", color="info"), ephemeral=True
        )

    # ---------- /attendance status | checkout ----------
    async def _cmd_status(self, interaction: discord.Interaction):
        gid, uid = str(interaction.guild_id), str(interaction.user.id)
        session = await self.engine.sessions.get_open(gid, uid)
        if session is None:
            return await interaction.response.send_message("ℹ️ You have no open check-in.", ephemeral=True)
        elapsed = self.engine.sessions.elapsed(session)
        await interaction.response.send_message(
            f"🕒 Checked in since **{fmt_short(session.checkin_at)}** in <#{session.room_id}> — "
            f"**{elapsed} min** elapsed.",
            ephemeral=True,
        )

    async def _cmd_checkout(self, interaction: discord.Interaction):
        result = await self.engine.checkout(
            str(interaction.guild_id), str(interaction.user.id), self.settings.checkout_minutes_required
        )
        if result.status is CheckoutStatus.NO_SESSION:
            msg = "⚠️ You have no open check-in in a tracked room."
        elif result.status is CheckoutStatus.TOO_EARLY:
            msg = f"⏳ Too early to check out. **{result.remaining_minutes} min** to go."
        else:
            msg = f"✅ **Checkout done!** {result.session.duration_minutes} min recorded. 🙌"
        await interaction.response.send_message(msg, ephemeral=True)

    # ---------- /attendance panel ----------
    async def _cmd_panel(self, interaction: discord.Interaction):
        if not self._is_admin(interaction):
            return await self._deny(interaction)
        grouped = await self.engine.reports.active_checkins(str(interaction.guild_id), self.occupancy)
        if not grouped:
            return await interaction.response.send_message(
                "📭 Nobody is checked in to a tracked room.", ephemeral=True
            )
        lines = []
        shown = 0
        for rid in sorted(grouped):
            lines.append(f"**🎧 <#{rid}>**")
            for session, minutes in sorted(grouped[rid], key=lambda item: item[0].display_name.casefold()):
                if shown >= PANEL_MAX_MEMBERS:
                    break
                lines.append(f" • {session.display_name} — {minutes} min")
                shown += 1
        await interaction.response.send_message(
            embed=create_embed("\n".join(lines), title="🧾 Active check-ins", color="info"), ephemeral=True
        )

    # ---------- /attendance report | export ----------
    async def _sessions_in_range(self, interaction: discord.Interaction, start: str, end: str):
        parsed = parse_day_range(start, end, self.engine.clock.tz)
        if parsed is None:
            await interaction.response.send_message(
                "❌ Invalid date. Use **dd/mm/yyyy**.", ephemeral=True
            )
            return None
        rows = await self.engine.reports.summarize_sessions(str(interaction.guild_id), *parsed)
        if not rows:
            await interaction.response.send_message(
                f"📭 No records between **{start}** and **{end}**.", ephemeral=True
            )
            return None
        return rows

    async def _cmd_report(self, interaction: discord.Interaction, start: str, end: str):
        rows = await self._sessions_in_range(interaction, start, end)
        if rows is None:
            return
        lines = []
        for s in rows[:REPORT_MAX_LINES]:
            out = fmt_short(s.checkout_at) if s.checkout_at else "—"
            dur = f"{s.duration_minutes} min" if s.duration_minutes is not None else "—"
            lines.append(
                f"• **{s.display_name}** — Room: <#{s.room_id}> | In: {fmt_short(s.checkin_at)} | Out: {out} | Dur: {dur}"
            )
        footer = f"… and {len(rows) - REPORT_MAX_LINES} more" if len(rows) > REPORT_MAX_LINES else None
        await interaction.response.send_message(
            embed=create_embed("\n".join(lines), title=f"📒 Attendance ({start} → {end})", color="info", footer=footer),
            ephemeral=True,
        )

    async def _cmd_export(self, interaction: discord.Interaction, start: str, end: str):
        rows = await self._sessions_in_range(interaction, start, end)
        if rows is None:
            return
        data = io.BytesIO(sessions_to_csv(rows).encode("utf-8"))
        filename = f"attendance_{start.replace('/', '-')}_to_{end.replace('/', '-')}.csv"
        await interaction.response.send_message(
            "📎 Here is the CSV:", file=discord.File(data, filename=filename), ephemeral=True
        )

    # ---------- /attendance_event start | stop | report ----------
    async def _cmd_event_start(self, interaction: discord.Interaction, room: discord.VoiceChannel,
                               name: str, minutes: int):
        if not self._is_admin(interaction):
            return await self._deny(interaction)
        occupants = [member_occupant(m) for m in room.members]
        try:
            event = await self.engine.scheduler.create_event(
                str(interaction.guild_id), str(room.id), name, minutes, occupants
            )
        except ConflictError:
            return await interaction.response.send_message(
                embed=error_embed("An event is already running. Stop it first."), ephemeral=True
            )
        await interaction.response.send_message(
            embed=success_embed(
                f"▶️ **{event.name}** started in {room.mention}.\n"
                f"Ends at **{fmt_short(event.expected_end_at)}**.",
                title="Event",
            ),
            ephemeral=True,
        )

    async def _cmd_event_stop(self, interaction: discord.Interaction):
        if not self._is_admin(interaction):
            return await self._deny(interaction)
        try:
            event = await self.engine.scheduler.stop_event(str(interaction.guild_id))
        except NotFoundError:
            return await interaction.response.send_message("ℹ️ No event is running.", ephemeral=True)
        summary = await self.engine.reports.summarize_event(event.id)
        await self._post_event_summary(event, CLOSE_MANUAL, summary)
        await interaction.response.send_message(
            embed=create_embed(format_summary(summary), title=f"⏹️ {event.name} stopped", color="event"),
            ephemeral=True,
        )

    async def _cmd_event_report(self, interaction: discord.Interaction):
        gid = str(interaction.guild_id)
        event = self.engine.scheduler.active_event(gid) or await self.engine.store.latest_for_guild(gid)
        if event is None:
            return await interaction.response.send_message("ℹ️ No events yet.", ephemeral=True)
        summary = await self.engine.reports.summarize_event(event.id, include_in_progress=event.is_open)
        state = "in progress" if event.is_open else f"ended {fmt_short(event.ended_at)}"
        await interaction.response.send_message(
            embed=create_embed(format_summary(summary), title=f"📊 {event.name}", color="event",
                               footer=state),
            ephemeral=True,
        )

    # ---------- Register groups + subcommands ----------
    def _register_commands(self):
        # Callbacks are plain closures so their parameters are read as slash options.
        attendance, event = self.attendance, self.event_group

        @attendance.command(name="track", description="Start tracking a voice room.")
        @app_commands.describe(room="Voice room to track")
        async def track(interaction: discord.Interaction, room: discord.VoiceChannel):
            await self._cmd_track(interaction, room)

        @attendance.command(name="untrack", description="Stop tracking a voice room.")
        @app_commands.describe(room="Voice room to stop tracking")
        async def untrack(interaction: discord.Interaction, room: discord.VoiceChannel):
            await self._cmd_untrack(interaction, room)

        @attendance.command(name="rooms", description="List tracked voice rooms.")
        async def rooms(interaction: discord.Interaction):
            await self._cmd_rooms(interaction)

        @attendance.command(name="status", description="Show your open check-in.")
        async def status(interaction: discord.Interaction):
            await self._cmd_status(interaction)

        @attendance.command(name="checkout", description="Check out of your current session.")
        async def checkout(interaction: discord.Interaction):
            await self._cmd_checkout(interaction)

        @attendance.command(name="panel", description="Show everyone checked in right now.")
        async def panel(interaction: discord.Interaction):
            await self._cmd_panel(interaction)

        @attendance.command(name="report", description="Sessions between two dates (dd/mm/yyyy).")
        @app_commands.describe(start="First day, dd/mm/yyyy", end="Last day, dd/mm/yyyy")
        async def report(interaction: discord.Interaction, start: str, end: str):
            await self._cmd_report(interaction, start, end)

        @attendance.command(name="export", description="CSV of sessions between two dates (dd/mm/yyyy).")
        @app_commands.describe(start="First day, dd/mm/yyyy", end="Last day, dd/mm/yyyy")
        async def export(interaction: discord.Interaction, start: str, end: str):
            await self._cmd_export(interaction, start, end)

        @event.command(name="start", description="Start a timed attendance event in a room.")
        @app_commands.describe(room="Voice room of the event", name="Event name", minutes="Duration in minutes")
        async def event_start(interaction: discord.Interaction, room: discord.VoiceChannel,
                              name: str, minutes: app_commands.Range[int, 1, 1440]):
            await self._cmd_event_start(interaction, room, name, minutes)

        @event.command(name="stop", description="Stop the running event.")
        async def event_stop(interaction: discord.Interaction):
            await self._cmd_event_stop(interaction)

        @event.command(name="report", description="Minutes per member for the current or last event.")
        async def event_report(interaction: discord.Interaction):
            await self._cmd_event_report(interaction)


async def setup(bot: commands.Bot):
    cog = Attendance(bot)
    await bot.add_cog(cog)
    # Remove commands if they exist, then add them
    bot.tree.remove_command("attendance")
    bot.tree.remove_command("attendance_event")
    bot.tree.add_command(cog.attendance)
    bot.tree.add_command(cog.event_group)
