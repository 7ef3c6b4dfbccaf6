"""Embed formatting helpers shared by all sources.

Turns payload fields into Discord embed dictionaries while respecting
Discord's size limits, and renders timestamps in local timezones.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

KST = ZoneInfo("Asia/Seoul")

# Discord embed limits
MAX_TITLE_LENGTH = 256
MAX_DESCRIPTION_LENGTH = 4096
MAX_FIELD_NAME_LENGTH = 256
MAX_FIELD_VALUE_LENGTH = 1024
MAX_FOOTER_LENGTH = 2048
MAX_FIELDS = 25

EMPTY_FIELD_VALUE = "-"

# Severity colors (decimal values)
COLOR_CRITICAL = 0x8B0000  # Dark red
COLOR_HIGH = 0xFF0000  # Red
COLOR_MEDIUM = 0xFFA500  # Orange
COLOR_LOW = 0x00B050  # Green
COLOR_UNKNOWN = 0x808080  # Gray


def severity_to_color(severity: str | None) -> int:
    """Get embed color for a CVSS severity name."""
    if not severity:
        return COLOR_UNKNOWN
    return {
        "CRITICAL": COLOR_CRITICAL,
        "HIGH": COLOR_HIGH,
        "MEDIUM": COLOR_MEDIUM,
        "LOW": COLOR_LOW,
    }.get(severity.upper(), COLOR_UNKNOWN)


def truncate(text: str, limit: int) -> str:
    """Truncate text to ``limit`` characters, ending with an ellipsis."""
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return f"{text[: limit - 3]}..."


def resolve_timezone(name: str) -> ZoneInfo:
    """Look up an IANA timezone, defaulting to UTC for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_kst(value: datetime) -> datetime:
    """Convert an aware datetime to KST (naive input is taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(KST)


def format_kst(value: datetime) -> str:
    """Format a timestamp as ``YYYY-MM-DD HH:MM:SS KST``."""
    return to_kst(value).strftime("%Y-%m-%d %H:%M:%S KST")


def format_in_timezone(value: datetime, timezone: str) -> str:
    """Format a timestamp in the given IANA timezone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    local = value.astimezone(resolve_timezone(timezone))
    return local.strftime("%Y-%m-%d %H:%M:%S %Z")


def embed_field(name: str, value: str | None, *, inline: bool = False) -> dict[str, Any]:
    """Build an embed field, clamping to Discord limits."""
    text = (value or "").strip() or EMPTY_FIELD_VALUE
    return {
        "name": truncate(name, MAX_FIELD_NAME_LENGTH),
        "value": truncate(text, MAX_FIELD_VALUE_LENGTH),
        "inline": inline,
    }


def build_embed(
    *,
    title: str,
    url: str | None = None,
    description: str | None = None,
    color: int | None = None,
    author: str | None = None,
    author_icon_url: str | None = None,
    fields: list[dict[str, Any]] | None = None,
    footer: str | None = None,
    timestamp: datetime | None = None,
    thumbnail_url: str | None = None,
) -> dict[str, Any]:
    """Assemble a Discord embed dictionary.

    Args:
        title: Embed title (clamped to 256 characters).
        url: URL the title links to.
        description: Body text (clamped to 4096 characters).
        color: Sidebar color.
        author: Author line shown above the title.
        author_icon_url: Icon shown next to the author line.
        fields: Prepared fields (see ``embed_field``); at most 25 are kept.
        footer: Footer text.
        timestamp: Timestamp rendered by Discord in the reader's locale.
        thumbnail_url: Preview image URL.

    Returns:
        Embed dictionary ready for the REST API.
    """
    embed: dict[str, Any] = {"title": truncate(title.strip() or "(제목 없음)", MAX_TITLE_LENGTH)}
    if url:
        embed["url"] = url
    if description:
        embed["description"] = truncate(description, MAX_DESCRIPTION_LENGTH)
    if color is not None:
        embed["color"] = color
    if author:
        embed["author"] = {"name": truncate(author, MAX_FIELD_NAME_LENGTH)}
        if author_icon_url:
            embed["author"]["icon_url"] = author_icon_url
    if fields:
        embed["fields"] = fields[:MAX_FIELDS]
    if footer:
        embed["footer"] = {"text": truncate(footer, MAX_FOOTER_LENGTH)}
    if timestamp is not None:
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        embed["timestamp"] = timestamp.astimezone(UTC).isoformat()
    if thumbnail_url:
        embed["thumbnail"] = {"url": thumbnail_url}
    return embed
