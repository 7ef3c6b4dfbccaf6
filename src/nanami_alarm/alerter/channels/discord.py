"""Discord bot-token REST channel implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from nanami_alarm.errors import DeliveryError

if TYPE_CHECKING:
    from nanami_alarm.alerter.models import DiscordOutbound

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"

# Discord JSON error codes
UNKNOWN_CHANNEL = 10003
CANNOT_SEND_IN_CHANNEL_TYPE = 50008


class DiscordChannel:
    """Posts messages to Discord channels through the bot REST API.

    Sends ``POST /channels/{id}/messages`` with a local rate limiter. A 429
    response is honoured once (Discord's ``retry_after``); every other
    failure raises DeliveryError.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DISCORD_API_BASE,
        rate_limit_per_minute: int = 30,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize Discord channel.

        Args:
            token: Discord bot token.
            api_base: REST API base URL.
            rate_limit_per_minute: Maximum messages per minute.
            timeout: HTTP request timeout in seconds.
            client: Shared HTTP client; a private one is created per send otherwise.
        """
        self.api_base = api_base.rstrip("/")
        self.rate_limit_per_minute = rate_limit_per_minute
        self.timeout = timeout
        self.name = "discord"
        self._headers = {"Authorization": f"Bot {token}"}
        self._client = client

        # Rate limiting state
        self._request_times: list[float] = []
        self._lock = asyncio.Lock()

    async def _wait_for_rate_limit(self) -> None:
        """Wait if rate limit is exceeded."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            # Remove requests older than 1 minute
            self._request_times = [t for t in self._request_times if now - t < 60]

            if len(self._request_times) >= self.rate_limit_per_minute:
                # Wait until the oldest request expires
                wait_time = 60 - (now - self._request_times[0])
                if wait_time > 0:
                    logger.debug("Discord rate limit hit, waiting %.2fs", wait_time)
                    await asyncio.sleep(wait_time)

            self._request_times.append(asyncio.get_running_loop().time())

    async def send(self, channel_id: str, message: DiscordOutbound) -> None:
        """Send a message to a channel.

        Args:
            channel_id: Destination channel id.
            message: Render-ready message.

        Raises:
            DeliveryError: If the channel cannot be resolved or the message
                is rejected.
        """
        if not channel_id:
            raise DeliveryError(channel_id, "no channel id configured")

        await self._wait_for_rate_limit()
        url = f"{self.api_base}/channels/{channel_id}/messages"
        body = message.to_message_json()

        response = await self._post(channel_id, url, body)
        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning("Discord rate limited, retry after %.2fs", retry_after)
            await asyncio.sleep(retry_after)
            response = await self._post(channel_id, url, body)

        if response.is_success:
            logger.debug("Discord message delivered to %s", channel_id)
            return

        raise DeliveryError(channel_id, _failure_reason(response))

    async def _post(self, channel_id: str, url: str, body: dict[str, Any]) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.post(url, json=body, headers=self._headers)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, json=body, headers=self._headers)
        except httpx.HTTPError as e:
            raise DeliveryError(channel_id, f"transport error: {e or type(e).__name__}") from e


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _retry_after(response: httpx.Response) -> float:
    try:
        return max(0.0, float(_json_body(response).get("retry_after", 1.0)))
    except (TypeError, ValueError):
        return 1.0


def _failure_reason(response: httpx.Response) -> str:
    status = response.status_code
    data = _json_body(response)
    code = data.get("code")
    detail = data.get("message") or response.text[:200]

    if status == 404 or code == UNKNOWN_CHANNEL:
        return "unknown channel"
    if status == 400 and code == CANNOT_SEND_IN_CHANNEL_TYPE:
        return "channel is not a text channel"
    if status == 403:
        return "missing access to channel"
    return f"rejected: HTTP {status} {detail}".strip()
