"""Message delivery channels."""

from nanami_alarm.alerter.channels.discord import DiscordChannel

__all__ = ["DiscordChannel"]
