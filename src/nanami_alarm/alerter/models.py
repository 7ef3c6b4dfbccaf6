"""Data models for the alerter module."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Discord component type ids
ACTION_ROW = 1
BUTTON = 2
BUTTON_STYLE_LINK = 5


@dataclass(frozen=True)
class LinkButton:
    """A single URL button rendered under the message.

    Attributes:
        label: Button text.
        url: Target URL opened by the button.
    """

    label: str
    url: str

    def to_component(self) -> dict[str, Any]:
        """Render as a Discord action row holding one link button."""
        return {
            "type": ACTION_ROW,
            "components": [
                {
                    "type": BUTTON,
                    "style": BUTTON_STYLE_LINK,
                    "label": self.label,
                    "url": self.url,
                }
            ],
        }


@dataclass(frozen=True)
class DiscordOutbound:
    """A render-ready Discord message.

    Self-contained: delivering it needs no further lookups.

    Attributes:
        content: Plain message text shown above the embeds.
        embeds: Discord embed dictionaries.
        link_button: Optional link button rendered in an action row.
    """

    content: str | None = None
    embeds: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    link_button: LinkButton | None = None

    def __post_init__(self) -> None:
        if not self.content and not self.embeds:
            raise ValueError("DiscordOutbound needs content or at least one embed")

    def to_message_json(self) -> dict[str, Any]:
        """Build the body for Discord's create-message endpoint."""
        body: dict[str, Any] = {}
        if self.content:
            body["content"] = self.content
        if self.embeds:
            body["embeds"] = [dict(embed) for embed in self.embeds]
        if self.link_button is not None:
            body["components"] = [self.link_button.to_component()]
        return body

    @property
    def title(self) -> str:
        """Title of the first embed, or the content (for logs)."""
        if self.embeds:
            return str(self.embeds[0].get("title", ""))
        return self.content or ""
