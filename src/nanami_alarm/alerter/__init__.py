"""Alerting layer - Discord message delivery."""

from nanami_alarm.alerter.channels.discord import DiscordChannel
from nanami_alarm.alerter.dispatcher import Dispatcher, MessageChannel
from nanami_alarm.alerter.history import DeliveryHistory
from nanami_alarm.alerter.models import DiscordOutbound, LinkButton

__all__ = [
    "DeliveryHistory",
    "DiscordChannel",
    "DiscordOutbound",
    "Dispatcher",
    "LinkButton",
    "MessageChannel",
]
