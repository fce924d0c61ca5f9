"""
Embed helpers for log channel posts and command replies.
"""
from __future__ import annotations
import discord

# Embed colors for different message types
COLORS = {
    "info": 0x3498DB,        # Blue - informational messages
    "success": 0x2ECC71,     # Green - check-in / success
    "warning": 0xF39C12,     # Orange - warnings
    "error": 0xE74C3C,       # Red - errors / check-out
    "neutral": 0x9B59B6,     # Purple - neutral/default
    "event": 0x1ABC9C,       # Teal - attendance events
}

# Discord caps a description at 4096 chars
MAX_DESCRIPTION = 4000


def create_embed(
    description: str,
    title: str | None = None,
    color: str | int = "neutral",
    fields: list[dict] | None = None,
    footer: str | None = None,
) -> discord.Embed:
    """
    Create a standardized embed.

    Args:
        description: The embed description
        title: Optional embed title
        color: Color name (from COLORS) or hex int
        fields: List of field dicts with 'name', 'value', and optional 'inline'
        footer: Optional footer text

    Returns:
        discord.Embed with appropriate styling
    """
    if isinstance(color, str):
        embed_color = COLORS.get(color, COLORS["neutral"])
    else:
        embed_color = color

    if len(description) > MAX_DESCRIPTION:
        description = description[:MAX_DESCRIPTION - 1] + "…"

    embed = discord.Embed(title=title, description=description, color=embed_color)
    for field in fields or []:
        embed.add_field(name=field["name"], value=field["value"], inline=field.get("inline", False))
    if footer:
        embed.set_footer(text=footer)
    return embed


def success_embed(desc: str, title: str | None = None) -> discord.Embed:
    return create_embed(desc, title=title, color="success")


def error_embed(desc: str, title: str | None = None) -> discord.Embed:
    return create_embed(desc, title=title, color="error")
