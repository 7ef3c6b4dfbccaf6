"""Threat-intelligence RSS source (Mandiant research feed by default)."""

from __future__ import annotations

import calendar
import html
import json
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import feedparser
import httpx

from nanami_alarm.alerter.formatter import (
    MAX_FIELD_VALUE_LENGTH,
    build_embed,
    embed_field,
    format_in_timezone,
    format_kst,
    resolve_timezone,
    truncate,
)
from nanami_alarm.alerter.models import DiscordOutbound
from nanami_alarm.errors import SummarizationError
from nanami_alarm.llm.summarizer import extract_json_object
from nanami_alarm.sources.base import EventPayload, SourceAdapter, SourceOptions, parse_timestamp

if TYPE_CHECKING:
    from nanami_alarm.llm.summarizer import Summarizer
    from nanami_alarm.scheduler.window import AlarmWindow

logger = logging.getLogger(__name__)

THREAT_INTEL_FEED_URL = "https://feeds.feedburner.com/threatintelligence/pvexyqv7v0v"
DEFAULT_POLL_INTERVAL_MS = 30 * 60 * 1000
DEFAULT_MAX_ITEMS_PER_TICK = 3
MAX_PROMPT_DESCRIPTION = 2000
US_TIMEZONE = "America/New_York"
FOOTER = "Mandiant Research 알림봇"

_SCRIPT_STYLE = re.compile(r"<(script|style)[\s\S]*?>[\s\S]*?</\1>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]*>")


def strip_html(text: str | None) -> str:
    """Reduce an HTML fragment to whitespace-normalized plain text."""
    if not text:
        return ""
    text = _SCRIPT_STYLE.sub("", text)
    text = _TAG.sub(" ", text)
    return " ".join(html.unescape(text).split())


@dataclass(frozen=True)
class FeedItem:
    """A normalized feed entry."""

    id: str
    title: str
    link: str
    published_at: datetime
    description: str


@dataclass(kw_only=True)
class ThreatIntelPayload(EventPayload):
    """A research post alarm. ``item_id`` is the entry guid (or link)."""

    title: str
    description: str = ""


@dataclass(frozen=True)
class ThreatIntelSummary:
    title: str
    description: str
    summary: str


def default_threat_intel_options(channel_id: str = "", timezone: str = "UTC") -> SourceOptions:
    return SourceOptions(
        poll_interval_ms=DEFAULT_POLL_INTERVAL_MS,
        remote_endpoint=THREAT_INTEL_FEED_URL,
        destination_channel_id=channel_id,
        timezone=timezone,
    )


def _entry_published(entry: Any, timezone: str) -> datetime | None:
    """Publication time of a feed entry; naive dates use ``timezone``."""
    tz = resolve_timezone(timezone)
    for key in ("published", "updated", "dc_date", "date"):
        raw = entry.get(key)
        if not raw:
            continue
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=tz)
            return parsed.astimezone(UTC)
        iso = parse_timestamp(raw, default_tz=tz)
        if iso is not None:
            return iso

    # feedparser normalizes *_parsed tuples to UTC
    for key in ("published_parsed", "updated_parsed"):
        struct = entry.get(key)
        if struct:
            return datetime.fromtimestamp(calendar.timegm(struct), tz=UTC)
    return None


def _entry_description(entry: Any) -> str:
    description = entry.get("summary") or entry.get("description") or ""
    if not description:
        content = entry.get("content") or []
        if content and isinstance(content[0], dict):
            description = content[0].get("value", "")
    return str(description)


def parse_feed(document: str | bytes, timezone: str = "UTC") -> list[FeedItem]:
    """Parse an RSS 2.0, RDF or Atom document into feed items.

    Entries without a link or a parsable date are dropped.
    """
    parsed = feedparser.parse(document)
    if parsed.get("bozo") and not parsed.get("entries"):
        logger.warning("Feed could not be parsed: %s", parsed.get("bozo_exception"))

    items: list[FeedItem] = []
    for entry in parsed.get("entries", []):
        link = str(entry.get("link") or "")
        published = _entry_published(entry, timezone)
        if not link or published is None:
            continue
        title = str(entry.get("title") or "")
        items.append(
            FeedItem(
                id=str(entry.get("id") or link or title),
                title=title,
                link=link,
                published_at=published,
                description=_entry_description(entry),
            )
        )
    return items


def select_window_items(items: list[FeedItem], window: AlarmWindow, limit: int) -> list[FeedItem]:
    """Newest-first items inside the window, at most ``limit``."""
    selected: list[FeedItem] = []
    for item in sorted(items, key=lambda i: i.published_at, reverse=True):
        if item.published_at >= window.window_end_utc:
            continue
        if item.published_at < window.window_start_utc:
            break
        selected.append(item)
        if len(selected) >= limit:
            break
    return selected


class ThreatIntelSource(SourceAdapter[ThreatIntelPayload]):
    """RSS research feed source."""

    name = "threat_intel"

    def __init__(
        self,
        options: SourceOptions,
        *,
        http: httpx.AsyncClient,
        summarizer: Summarizer,
        max_items_per_tick: int = DEFAULT_MAX_ITEMS_PER_TICK,
    ) -> None:
        super().__init__(options, http=http, summarizer=summarizer)
        self.max_items_per_tick = max_items_per_tick

    async def fetch_new_items(self, window: AlarmWindow) -> list[ThreatIntelPayload]:
        document = await self._get_text(self.options.remote_endpoint)
        items = parse_feed(document, self.options.timezone)
        selected = select_window_items(items, window, self.max_items_per_tick)

        payloads: list[ThreatIntelPayload] = []
        for item in selected:
            summary = await self.summarize(item)
            payloads.append(
                ThreatIntelPayload(
                    summary_text=summary.summary,
                    canonical_link=item.link,
                    published_at=item.published_at,
                    item_id=item.id,
                    title=summary.title,
                    description=summary.description,
                )
            )

        logger.info(
            "Threat intel window %s: %d entries, %d payloads", window, len(items), len(payloads)
        )
        return payloads

    async def summarize(self, item: FeedItem) -> ThreatIntelSummary:
        """Korean title, description and summary, falling back to the original text."""
        clean = strip_html(item.description)[:MAX_PROMPT_DESCRIPTION]
        fallback = ThreatIntelSummary(
            title=item.title or "제목 없음",
            description=clean,
            summary=item.title or "요약 생성 실패",
        )
        source = {
            "title": item.title,
            "link": item.link,
            "pubDate": item.published_at.isoformat(),
            "description": clean,
        }
        prompt = f"""
다음 "리서치/위협 인텔리전스 RSS 항목"을 기반으로 한국어 JSON을 생성하세요.

### 원본 정보(영문 JSON)
{json.dumps(source, ensure_ascii=False, indent=2)}

### 출력 형식(JSON만 출력)
{{"title": "...", "desc": "...", "summary": "..."}}

규칙:
- title: 자연스러운 한국어 제목(번역/다듬기)
- desc: 핵심 내용 1~2문장으로 정리
- summary: 한국어로 2~3줄, 어떤 주제/이슈인지와 왜 중요한지(영향/대상)가 드러나게
- 반드시 JSON만 출력 (코드블록/설명 금지)
"""
        try:
            data = extract_json_object(await self._summarizer.summarize(prompt))
        except SummarizationError as e:
            logger.warning("Threat intel summary failed for %s: %s", item.link, e)
            return fallback

        def pick(key: str, default: str) -> str:
            value = data.get(key)
            return value.strip() if isinstance(value, str) and value.strip() else default

        return ThreatIntelSummary(
            title=pick("title", fallback.title),
            description=pick("desc", fallback.description),
            summary=pick("summary", fallback.summary),
        )

    async def format(self, payload: ThreatIntelPayload) -> DiscordOutbound | None:
        key_info = "\n".join(
            [
                f"• 발행일(미국/현지): {format_in_timezone(payload.published_at, US_TIMEZONE)}",
                f"• 발행일(한국/KST): {format_kst(payload.published_at)}",
            ]
        )
        embed = build_embed(
            title=payload.title,
            url=payload.canonical_link,
            fields=[
                embed_field("요약", payload.summary_text or "요약 없음"),
                embed_field("핵심 정보", key_info),
                embed_field(
                    "설명",
                    truncate(payload.description, MAX_FIELD_VALUE_LENGTH) or "설명 없음",
                ),
                embed_field("URL", payload.canonical_link),
            ],
            footer=FOOTER,
            timestamp=datetime.now(UTC),
            thumbnail_url=payload.preview_image_url,
        )
        return DiscordOutbound(embeds=(embed,))
