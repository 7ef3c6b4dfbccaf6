"""Process wiring for the alarm bot.

``Pipeline`` builds every shared collaborator once (``AppContext``), hands
them to the source adapters, the scheduler and the slash-command bot, and
tears them down in reverse order on stop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
import redis.asyncio as redis

from nanami_alarm.alerter.channels.discord import DiscordChannel
from nanami_alarm.alerter.dispatcher import Dispatcher
from nanami_alarm.alerter.history import DeliveryHistory
from nanami_alarm.bot.commands import AlarmBot
from nanami_alarm.bot.todo import TodoList
from nanami_alarm.cwe.catalog import CweCatalog, CweLocalizer
from nanami_alarm.health import HealthServer, record_tick
from nanami_alarm.llm.summarizer import NullSummarizer, OpenAISummarizer, Summarizer
from nanami_alarm.scheduler.alarm import AlarmScheduler
from nanami_alarm.sources.base import USER_AGENT, SourceAdapter, SourceOptions
from nanami_alarm.sources.cve import CveSource
from nanami_alarm.sources.hackernews import HackerNewsSource
from nanami_alarm.sources.threat_intel import ThreatIntelSource
from nanami_alarm.storage.repos import StateStore

if TYPE_CHECKING:
    from nanami_alarm.config import Settings

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60 * 1000


class PipelineState(str, Enum):
    """Lifecycle state of the pipeline."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class AppContext:
    """Shared collaborators built once per process."""

    settings: Settings
    http: httpx.AsyncClient
    summarizer: Summarizer
    state_store: StateStore
    dispatcher: Dispatcher
    cwe: CweLocalizer
    history: DeliveryHistory | None = None
    redis: Any = None

    async def close(self) -> None:
        """Release every resource; failures are logged."""
        closers = [
            ("summarizer", self.summarizer.close),
            ("state store", self.state_store.close),
            ("http client", self.http.aclose),
        ]
        if self.redis is not None:
            closers.append(("redis", self.redis.aclose))
        for name, close in closers:
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing %s: %s", name, e)


def _minutes_to_ms(minutes: float) -> int:
    return max(1, int(minutes * MS_PER_MINUTE))


async def build_context(settings: Settings, *, dry_run: bool = False) -> AppContext:
    """Create the shared collaborators from settings."""
    state_store = StateStore.from_url(settings.database.url)
    try:
        await state_store.init_schema()
        catalog = await CweCatalog.load(settings.cwe.xml_path)
    except Exception:
        await state_store.close()
        raise

    http = httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
    )

    summarizer: Summarizer
    if settings.openai.enabled and settings.openai.api_key is not None:
        summarizer = OpenAISummarizer(
            settings.openai.api_key.get_secret_value(),
            model=settings.openai.model,
            timeout=settings.openai.timeout,
        )
    else:
        logger.warning("OPENAI_API_KEY not set: alarms use fallback text instead of summaries")
        summarizer = NullSummarizer()

    channel = None
    if settings.discord.enabled and settings.discord.token is not None:
        channel = DiscordChannel(settings.discord.token.get_secret_value(), client=http)
    elif not dry_run:
        logger.warning("DISCORD_TOKEN not set: switching to dry-run delivery")
        dry_run = True
    dispatcher = Dispatcher(channel, dry_run=dry_run)

    cwe = CweLocalizer(catalog, summarizer)

    redis_client = None
    history = None
    if settings.redis.enabled and settings.redis.url:
        redis_client = redis.from_url(settings.redis.url)
        history = DeliveryHistory(redis_client, dedup_ttl_hours=settings.redis.dedup_ttl_hours)

    return AppContext(
        settings=settings,
        http=http,
        summarizer=summarizer,
        state_store=state_store,
        dispatcher=dispatcher,
        cwe=cwe,
        history=history,
        redis=redis_client,
    )


def build_sources(ctx: AppContext) -> list[SourceAdapter[Any]]:
    """Create the CVE, Hacker News and threat-intel adapters."""
    settings = ctx.settings
    nvd = settings.nvd

    cve = CveSource(
        SourceOptions(
            poll_interval_ms=_minutes_to_ms(nvd.poll_interval_minutes),
            remote_endpoint=nvd.api_url,
            destination_channel_id=settings.discord.cve_channel_id,
        ),
        http=ctx.http,
        summarizer=ctx.summarizer,
        cwe=ctx.cwe,
        api_key=nvd.api_key.get_secret_value() if nvd.api_key else None,
        history_url=nvd.history_url,
    )
    hackernews = HackerNewsSource(
        SourceOptions(
            poll_interval_ms=_minutes_to_ms(settings.hackernews.poll_interval_minutes),
            remote_endpoint=settings.hackernews.api_url,
            destination_channel_id=settings.discord.news_channel_id,
        ),
        http=ctx.http,
        summarizer=ctx.summarizer,
    )
    threat_intel = ThreatIntelSource(
        SourceOptions(
            poll_interval_ms=_minutes_to_ms(settings.threat_intel.poll_interval_minutes),
            remote_endpoint=settings.threat_intel.feed_url,
            destination_channel_id=settings.discord.news_channel_id,
            timezone=settings.threat_intel.timezone,
        ),
        http=ctx.http,
        summarizer=ctx.summarizer,
    )
    return [cve, hackernews, threat_intel]


class Pipeline:
    """Runs the alarm scheduler, health server and slash-command bot.

    Example:
        ```python
        pipeline = Pipeline(settings, dry_run=True)
        await pipeline.start()
        ...
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings,
        *,
        dry_run: bool = False,
        enable_bot: bool = True,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings.
            dry_run: Log alarms instead of sending them.
            enable_bot: Connect to the gateway and serve slash commands.
        """
        self._settings = settings
        self._dry_run = dry_run
        self._enable_bot = enable_bot

        self._state = PipelineState.STOPPED
        self._ctx: AppContext | None = None
        self._sources: list[SourceAdapter[Any]] = []
        self._scheduler: AlarmScheduler | None = None
        self._health: HealthServer | None = None
        self._bot: AlarmBot | None = None
        self._bot_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def scheduler(self) -> AlarmScheduler | None:
        return self._scheduler

    @property
    def sources(self) -> list[SourceAdapter[Any]]:
        return list(self._sources)

    async def start(self) -> None:
        """Build the collaborators and start every component."""
        if self._state != PipelineState.STOPPED:
            logger.warning("Cannot start pipeline: already in state %s", self._state.value)
            return

        self._state = PipelineState.STARTING
        try:
            self._ctx = await build_context(self._settings, dry_run=self._dry_run)
            self._sources = self._active_sources(build_sources(self._ctx))

            self._scheduler = AlarmScheduler(
                self._ctx.dispatcher,
                state_store=self._ctx.state_store,
                history=self._ctx.history,
                on_tick_complete=record_tick,
            )
            self._health = HealthServer(self._scheduler)
            await self._health.start(port=self._settings.health_port)

            await self._scheduler.run(self._sources)

            if self._enable_bot:
                self._start_bot()
        except Exception:
            await self._cleanup()
            self._state = PipelineState.STOPPED
            raise

        self._state = PipelineState.RUNNING
        logger.info("Pipeline started with sources: %s", ", ".join(s.name for s in self._sources))

    def _active_sources(self, sources: list[SourceAdapter[Any]]) -> list[SourceAdapter[Any]]:
        if self._ctx is not None and self._ctx.dispatcher.dry_run:
            return sources
        active = []
        for source in sources:
            if not source.options.destination_channel_id:
                logger.warning("No Discord channel configured for %s: source disabled", source.name)
                continue
            active.append(source)
        return active

    def _start_bot(self) -> None:
        if self._ctx is None:
            return
        discord_settings = self._settings.discord
        if not discord_settings.enabled or discord_settings.token is None:
            logger.info("Slash commands disabled: DISCORD_TOKEN not set")
            return

        cve_source = next((s for s in self._sources if isinstance(s, CveSource)), None)
        if cve_source is None:
            cve_source = next(s for s in build_sources(self._ctx) if isinstance(s, CveSource))

        self._bot = AlarmBot(
            cve_source=cve_source,
            todos=TodoList(),
            guild_id=discord_settings.guild_id,
        )
        token = discord_settings.token.get_secret_value()
        self._bot_task = asyncio.create_task(self._run_bot(self._bot, token), name="discord-bot")

    async def _run_bot(self, bot: AlarmBot, token: str) -> None:
        try:
            await bot.start(token)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Discord bot stopped unexpectedly; alarms keep running")

    async def stop(self) -> None:
        """Stop every component and release resources."""
        if self._state in (PipelineState.STOPPED, PipelineState.STOPPING):
            return
        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")
        await self._cleanup()
        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _cleanup(self) -> None:
        if self._bot is not None:
            try:
                await self._bot.close()
            except Exception as e:
                logger.warning("Error closing Discord bot: %s", e)
            self._bot = None
        if self._bot_task is not None:
            self._bot_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._bot_task
            self._bot_task = None

        if self._scheduler is not None:
            await self._scheduler.stop()
        if self._health is not None:
            await self._health.stop()
            self._health = None
        if self._ctx is not None:
            await self._ctx.close()
            self._ctx = None
