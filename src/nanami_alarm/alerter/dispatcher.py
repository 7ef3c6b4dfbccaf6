"""Alarm dispatcher."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from nanami_alarm.errors import DeliveryError

if TYPE_CHECKING:
    from nanami_alarm.alerter.models import DiscordOutbound

logger = logging.getLogger(__name__)


class MessageChannel(Protocol):
    """Protocol for message delivery transports."""

    name: str

    async def send(self, channel_id: str, message: DiscordOutbound) -> None:
        """Send a message; raises DeliveryError on failure."""
        ...


@dataclass
class DispatchStats:
    """Delivery counters since start."""

    sent: int = 0
    failed: int = 0
    dry_run: int = 0


class Dispatcher:
    """Sends formatted messages to their destination channel.

    Exactly one transmission per call; retries are not attempted here.
    In dry-run mode messages are logged instead of sent.
    """

    def __init__(self, channel: MessageChannel | None, *, dry_run: bool = False) -> None:
        """Initialize the dispatcher.

        Args:
            channel: Delivery transport. May be None only in dry-run mode.
            dry_run: Log messages instead of sending them.
        """
        if channel is None and not dry_run:
            raise ValueError("a channel is required unless dry_run is enabled")
        self._channel = channel
        self.dry_run = dry_run
        self.stats = DispatchStats()

    async def send(self, destination: str, message: DiscordOutbound) -> None:
        """Deliver a message to ``destination``.

        Raises:
            DeliveryError: If the destination cannot be resolved or the
                transport rejects the message.
        """
        if self.dry_run or self._channel is None:
            self.stats.dry_run += 1
            logger.info(
                "[dry-run] %s -> %s",
                destination or "-",
                json.dumps(message.to_message_json(), ensure_ascii=False)[:2000],
            )
            return

        try:
            await self._channel.send(destination, message)
        except DeliveryError:
            self.stats.failed += 1
            raise
        self.stats.sent += 1
        logger.info("Delivered %r to %s via %s", message.title, destination, self._channel.name)
