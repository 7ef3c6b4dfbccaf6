"""Shared contract for feed sources.

Every source adapter fetches the items of one alarm window, normalizes them
into ``EventPayload`` subclasses and renders each payload as a Discord
message. The scheduler only talks to adapters through this contract.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx

from nanami_alarm.errors import FetchError

if TYPE_CHECKING:
    from nanami_alarm.alerter.models import DiscordOutbound
    from nanami_alarm.llm.summarizer import Summarizer
    from nanami_alarm.scheduler.window import AlarmWindow

logger = logging.getLogger(__name__)

USER_AGENT = "nanami-alarm/0.1"


@dataclass(frozen=True)
class SourceOptions:
    """Static per-source configuration.

    Attributes:
        poll_interval_ms: Milliseconds between ticks.
        remote_endpoint: Feed or API URL.
        destination_channel_id: Discord channel that receives alarms.
        timezone: IANA timezone used to interpret naive upstream dates.
    """

    poll_interval_ms: int
    remote_endpoint: str
    destination_channel_id: str
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(milliseconds=self.poll_interval_ms)

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000


@dataclass
class EventPayload:
    """Base shape of every payload a source produces.

    Attributes:
        summary_text: Human-readable (generated or fallback) summary; never empty.
        canonical_link: Dedup and display key.
        published_at: Publication time; inside the window that produced it.
        preview_image_url: Optional preview image.
        item_id: Stable id stored as the last-seen marker (defaults to the link).
    """

    summary_text: str
    canonical_link: str
    published_at: datetime
    preview_image_url: str | None = None
    item_id: str = ""

    def __post_init__(self) -> None:
        if not self.item_id:
            self.item_id = self.canonical_link


P = TypeVar("P", bound=EventPayload)


def parse_timestamp(value: Any, default_tz: tzinfo = UTC) -> datetime | None:
    """Parse an ISO-8601 string or epoch seconds into an aware datetime.

    Naive values are interpreted in ``default_tz``. Returns None when the
    value cannot be parsed.
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, int | float):
            return datetime.fromtimestamp(float(value), tz=UTC)
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (TypeError, ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed.astimezone(UTC)


class SourceAdapter(ABC, Generic[P]):
    """Base class for feed source plug-ins.

    Subclasses implement ``fetch_new_items`` and ``format``; they share the
    HTTP client and summarizer handed in by the pipeline.
    """

    #: Source key, also used as the last-seen marker key.
    name: str = "source"

    def __init__(
        self,
        options: SourceOptions,
        *,
        http: httpx.AsyncClient,
        summarizer: Summarizer,
    ) -> None:
        self._options = options
        self._http = http
        self._summarizer = summarizer

    @property
    def options(self) -> SourceOptions:
        return self._options

    @abstractmethod
    async def fetch_new_items(self, window: AlarmWindow) -> list[P]:
        """Fetch, filter and enrich the items published inside ``window``."""

    @abstractmethod
    async def format(self, payload: P) -> DiscordOutbound | None:
        """Render a payload, or return None when there is nothing to send."""

    @staticmethod
    def wrap_single(item: P | None) -> list[P]:
        """Adapt a single-item producer to the list contract."""
        return [] if item is None else [item]

    async def _get(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Issue a GET and map failures to FetchError."""
        merged = {"User-Agent": USER_AGENT, **(headers or {})}
        try:
            response = await self._http.get(url, params=params, headers=merged)
        except httpx.HTTPError as e:
            raise FetchError(self.name, url, reason=str(e) or type(e).__name__) from e

        if not response.is_success:
            raise FetchError(self.name, str(response.url), status=response.status_code)
        return response

    async def _get_json(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """GET a JSON document; a non-object body is treated as empty."""
        response = await self._get(url, params=params, headers=headers)
        try:
            data = response.json()
        except ValueError as e:
            raise FetchError(self.name, str(response.url), reason=f"invalid JSON: {e}") from e
        logger.debug("Fetched %s (%d)", response.url, response.status_code)
        return data if isinstance(data, dict) else {}

    async def _get_text(self, url: str, *, params: dict[str, str] | None = None) -> str:
        response = await self._get(url, params=params)
        return response.text

