"""Hacker News front-page source (Algolia search API)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import httpx

from nanami_alarm.alerter.formatter import (
    MAX_TITLE_LENGTH,
    build_embed,
    embed_field,
    format_kst,
    truncate,
)
from nanami_alarm.alerter.models import DiscordOutbound
from nanami_alarm.sources.base import EventPayload, SourceAdapter, SourceOptions, parse_timestamp

if TYPE_CHECKING:
    from nanami_alarm.llm.summarizer import Summarizer
    from nanami_alarm.scheduler.window import AlarmWindow

logger = logging.getLogger(__name__)

HN_FRONT_PAGE_URL = "https://hn.algolia.com/api/v1/search?tags=front_page"
HN_SEARCH_URL = "https://hn.algolia.com/api/v1/search_by_date"
HN_ITEM_URL = "https://news.ycombinator.com/item?id={object_id}"
HN_ICON_URL = "https://upload.wikimedia.org/wikipedia/commons/d/d1/Y_Combinator_logo.svg"
HN_COLOR = 0xFF6600
DEFAULT_POLL_INTERVAL_MS = 5 * 60 * 1000
UNTITLED = "(제목 없음)"

TECH_DOMAINS = (
    "github.com",
    "gitlab.com",
    "medium.com",
    "dev.to",
    "cloudflare.com",
    "aws.amazon.com",
    "azure.microsoft.com",
    "googleblog.com",
    "engineering.linkedin.com",
    "engineering.fb.com",
    "arstechnica.com",
    "linux.org",
    "kernel.org",
    "rust-lang.org",
    "python.org",
    "golang.org",
    "webkit.org",
    "mozilla.org",
    "chromium.org",
    "stackoverflow.blog",
)

AI_DOMAINS = (
    "openai.com",
    "huggingface.co",
    "anthropic.com",
    "deepmind.com",
    "pytorch.org",
    "tensorflow.org",
    "arxiv.org",
    "kaggle.com",
)

SECURITY_DOMAINS = (
    "krebsonsecurity.com",
    "bleepingcomputer.com",
    "securityweek.com",
    "nvd.nist.gov",
    "cve.mitre.org",
    "hackaday.com",
    "malwarebytes.com",
    "research.checkpoint.com",
)

KEYWORD_TECH = (
    "software",
    "hardware",
    "programming",
    "developer",
    "engineer",
    "linux",
    "kernel",
    "database",
    "compiler",
    "gpu",
    "cpu",
    "chip",
    "infra",
    "cloud",
    "server",
    "architecture",
    "performance",
    "open source",
)

KEYWORD_AI = (
    "ai",
    "artificial intelligence",
    "machine learning",
    "deep learning",
    "gpt",
    "llm",
    "transformer",
    "neural",
)

KEYWORD_SECURITY = (
    "security",
    "cybersecurity",
    "exploit",
    "vulnerability",
    "cve",
    "sql injection",
    "malware",
    "rce",
    "xss",
    "0-day",
)


@dataclass(frozen=True)
class TopicFilter:
    """Domain allowlist and title keywords that mark a story as relevant.

    Keywords match at word starts, so ``ai`` matches "AI agents" but not
    "said", while ``engineer`` still matches "engineering".
    """

    domains: tuple[str, ...] = TECH_DOMAINS + AI_DOMAINS + SECURITY_DOMAINS
    keywords: tuple[str, ...] = KEYWORD_TECH + KEYWORD_AI + KEYWORD_SECURITY
    _pattern: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        alternatives = "|".join(re.escape(k.lower()) for k in self.keywords if k)
        pattern = re.compile(rf"\b(?:{alternatives})" if alternatives else r"(?!x)x")
        object.__setattr__(self, "_pattern", pattern)

    def matches_url(self, url: str) -> bool:
        try:
            host = (urlsplit(url).hostname or "").lower()
        except ValueError:
            return False
        return any(host == d or host.endswith("." + d) for d in self.domains)

    def matches_title(self, title: str) -> bool:
        return bool(self._pattern.search(title.lower()))


DEFAULT_TOPICS = TopicFilter()


def is_tech_article(title: str, url: str, topics: TopicFilter = DEFAULT_TOPICS) -> bool:
    """Return True for technology, AI or security stories."""
    return topics.matches_url(url) or topics.matches_title(title)


def normalize_summary(text: str) -> str:
    """Put each sentence of a summary on its own line."""
    return text.strip().replace(". ", ".\n")


@dataclass(kw_only=True)
class HackerNewsPayload(EventPayload):
    """A Hacker News story alarm. ``item_id`` is the Algolia object id."""

    object_id: str
    title: str
    author: str = "unknown"
    points: int = 0
    comment_count: int = 0
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.item_id:
            self.item_id = self.object_id
        super().__post_init__()


def _count(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def default_hackernews_options(channel_id: str = "") -> SourceOptions:
    return SourceOptions(
        poll_interval_ms=DEFAULT_POLL_INTERVAL_MS,
        remote_endpoint=HN_FRONT_PAGE_URL,
        destination_channel_id=channel_id,
    )


class HackerNewsSource(SourceAdapter[HackerNewsPayload]):
    """Front-page stories filtered to technology, AI and security topics."""

    name = "hackernews"

    def __init__(
        self,
        options: SourceOptions,
        *,
        http: httpx.AsyncClient,
        summarizer: Summarizer,
        topics: TopicFilter = DEFAULT_TOPICS,
        search_url: str = HN_SEARCH_URL,
    ) -> None:
        super().__init__(options, http=http, summarizer=summarizer)
        self._topics = topics
        self._search_url = search_url

    async def fetch_new_items(self, window: AlarmWindow) -> list[HackerNewsPayload]:
        hits = await self._fetch_hits(self.options.remote_endpoint)

        payloads: list[HackerNewsPayload] = []
        for hit in hits:
            created = parse_timestamp(hit.get("created_at_i"))
            if created is None or not window.contains(created):
                continue
            title = str(hit.get("title") or hit.get("story_title") or "")
            if not is_tech_article(title, self._link_for(hit), self._topics):
                continue
            payload = await self._build_payload(hit, published_at=created)
            if payload is not None:
                payloads.append(payload)

        logger.info("Hacker News window %s: %d hits, %d payloads", window, len(hits), len(payloads))
        return payloads

    async def search(self, query: str) -> list[HackerNewsPayload]:
        """Search recent stories by keyword (unfiltered by topic or window)."""
        hits = await self._fetch_hits(self._search_url, params={"tags": "story", "query": query})
        payloads: list[HackerNewsPayload] = []
        for hit in hits:
            payload = await self._build_payload(hit)
            if payload is not None:
                payloads.append(payload)
        return payloads

    async def _fetch_hits(self, url: str, *, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        data = await self._get_json(url, params=params)
        hits = data.get("hits")
        if not isinstance(hits, list):
            return []
        return [hit for hit in hits if isinstance(hit, dict)]

    @staticmethod
    def _link_for(hit: dict[str, Any]) -> str:
        link = hit.get("url") or hit.get("story_url")
        if link:
            return str(link)
        return HN_ITEM_URL.format(object_id=hit.get("objectID", ""))

    async def _build_payload(
        self,
        hit: dict[str, Any],
        *,
        published_at: datetime | None = None,
    ) -> HackerNewsPayload | None:
        object_id = hit.get("objectID")
        if not object_id:
            return None

        title = str(hit.get("title") or hit.get("story_title") or "").strip() or UNTITLED
        link = self._link_for(hit)
        if published_at is None:
            published_at = (
                parse_timestamp(hit.get("created_at_i"))
                or parse_timestamp(hit.get("created_at"))
                or datetime.now(UTC)
            )

        tags = hit.get("_tags")
        payload = HackerNewsPayload(
            summary_text=title,
            canonical_link=link,
            published_at=published_at,
            object_id=str(object_id),
            title=title,
            author=str(hit.get("author") or "unknown"),
            points=_count(hit.get("points")),
            comment_count=_count(hit.get("num_comments")),
            tags=tuple(str(t) for t in tags) if isinstance(tags, list) else (),
        )
        payload.summary_text = await self.summarize(payload)
        return payload

    async def summarize(self, payload: HackerNewsPayload) -> str:
        """Three to five line Korean summary; the title when none is produced."""
        prompt = "\n".join(
            [
                "다음 글의 핵심 내용을 한국어로 자연스럽게 요약해줘. 3~5줄 사이로 요약해줘.",
                "주관적 의견 없이 사실 위주로 간결하게 정리해줘.",
                "",
                f"제목: {payload.title}",
                f"링크: {payload.canonical_link}",
                f"포인트: {payload.points}",
                f"댓글 수: {payload.comment_count}",
            ]
        )
        raw = await self._summarizer.summarize(prompt)
        if not raw or not raw.strip():
            return payload.title or UNTITLED
        return normalize_summary(raw)

    async def format(self, payload: HackerNewsPayload) -> DiscordOutbound | None:
        embed = build_embed(
            title=truncate(payload.title.strip(), MAX_TITLE_LENGTH) or UNTITLED,
            url=payload.canonical_link,
            description=payload.summary_text,
            color=HN_COLOR,
            author="Hacker News",
            author_icon_url=HN_ICON_URL,
            fields=[
                embed_field("Points", str(payload.points), inline=True),
                embed_field("Comments", str(payload.comment_count), inline=True),
                embed_field("작성 시간 (KST)", format_kst(payload.published_at)),
            ],
            footer=f"작성자: {payload.author}",
            timestamp=payload.published_at,
        )
        return DiscordOutbound(content=payload.canonical_link, embeds=(embed,))
