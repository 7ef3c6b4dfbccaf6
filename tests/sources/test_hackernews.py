"""Tests for the Hacker News source."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from nanami_alarm.scheduler.window import AlarmWindow
from nanami_alarm.sources.hackernews import (
    HN_COLOR,
    HackerNewsSource,
    TopicFilter,
    default_hackernews_options,
    is_tech_article,
    normalize_summary,
)

WINDOW_START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
WINDOW_END = datetime(2024, 1, 1, 12, 5, tzinfo=UTC)
WINDOW = AlarmWindow(WINDOW_START, WINDOW_END)


def _hit(object_id: str, title: str, url: str | None, created: datetime, **extra: Any) -> dict:
    return {
        "objectID": object_id,
        "title": title,
        "url": url,
        "author": "pg",
        "points": 120,
        "num_comments": 45,
        "created_at_i": int(created.timestamp()),
        "_tags": ["story", "front_page"],
        **extra,
    }


@pytest.fixture
def hits() -> list[dict]:
    return []


@pytest.fixture
def summarizer() -> MagicMock:
    mock = MagicMock()
    mock.summarize = AsyncMock(return_value=None)
    return mock


@pytest.fixture
async def source(hits: list[dict], summarizer: MagicMock) -> Any:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"hits": hits})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield HackerNewsSource(default_hackernews_options("news"), http=client, summarizer=summarizer)


class TestTopicFilter:
    """Tests for topic classification."""

    def test_domain_match(self) -> None:
        assert is_tech_article("Something", "https://github.com/org/repo")
        assert is_tech_article("Something", "https://blog.cloudflare.com/post")

    def test_domain_lookalike_does_not_match(self) -> None:
        assert not is_tech_article("Something", "https://notgithub.com/x")

    def test_keyword_at_word_start(self) -> None:
        assert is_tech_article("New AI agents", "https://example.com")
        assert is_tech_article("Engineering at scale", "https://example.com")
        assert not is_tech_article("He said hello", "https://example.com")

    def test_custom_topics(self) -> None:
        topics = TopicFilter(domains=("example.com",), keywords=("gardening",))
        assert is_tech_article("Gardening tips", "https://x.org", topics)
        assert is_tech_article("Nothing", "https://www.example.com", topics)
        assert not is_tech_article("Linux kernel", "https://x.org", topics)

    def test_invalid_url(self) -> None:
        assert not is_tech_article("Nothing", "http://[::1")


class TestFetchNewItems:
    """Tests for HackerNewsSource.fetch_new_items."""

    async def test_filters_by_window_and_topic(self, source: HackerNewsSource, hits: list[dict]) -> None:
        hits.extend(
            [
                _hit("1", "Rust compiler internals", "https://example.com/a", datetime(2024, 1, 1, 12, 1, tzinfo=UTC)),
                _hit("2", "Cooking pasta", "https://example.com/b", datetime(2024, 1, 1, 12, 2, tzinfo=UTC)),
                _hit("3", "Linux 7.0 released", "https://example.com/c", WINDOW_END),
                _hit("4", "Old security news", "https://example.com/d", datetime(2024, 1, 1, 11, 0, tzinfo=UTC)),
            ]
        )

        payloads = await source.fetch_new_items(WINDOW)

        assert [p.item_id for p in payloads] == ["1"]
        assert payloads[0].points == 120
        assert payloads[0].tags == ("story", "front_page")

    async def test_title_fallback_summary(self, source: HackerNewsSource, hits: list[dict]) -> None:
        hits.append(_hit("1", "Security flaw in X", None, datetime(2024, 1, 1, 12, 1, tzinfo=UTC)))

        payload = (await source.fetch_new_items(WINDOW))[0]

        assert payload.summary_text == "Security flaw in X"
        assert payload.canonical_link == "https://news.ycombinator.com/item?id=1"

    async def test_summary_is_normalized(
        self, source: HackerNewsSource, hits: list[dict], summarizer: MagicMock
    ) -> None:
        summarizer.summarize.return_value = "첫 문장. 둘째 문장."
        hits.append(_hit("1", "GPU news", "https://example.com", datetime(2024, 1, 1, 12, 1, tzinfo=UTC)))

        payload = (await source.fetch_new_items(WINDOW))[0]

        assert payload.summary_text == "첫 문장.\n둘째 문장."

    async def test_hits_without_object_id_are_skipped(self, source: HackerNewsSource, hits: list[dict]) -> None:
        hit = _hit("", "GPU news", "https://example.com", datetime(2024, 1, 1, 12, 1, tzinfo=UTC))
        hits.append(hit)
        assert await source.fetch_new_items(WINDOW) == []

    async def test_malformed_counts_do_not_break_fetch(
        self, source: HackerNewsSource, hits: list[dict]
    ) -> None:
        created = datetime(2024, 1, 1, 12, 1, tzinfo=UTC)
        hits.extend(
            [
                _hit("1", "Rust compiler internals", "https://example.com/a", created, points=10),
                _hit("2", "Linux scheduler", "https://example.com/b", created, points="n/a", num_comments=[]),
            ]
        )

        payloads = await source.fetch_new_items(WINDOW)

        assert [(p.item_id, p.points, p.comment_count) for p in payloads] == [
            ("1", 10, 45),
            ("2", 0, 0),
        ]

    async def test_adjacent_windows_do_not_repeat_items(
        self, source: HackerNewsSource, hits: list[dict]
    ) -> None:
        """The same front page seen by two back-to-back windows yields each story once."""
        hits.extend(
            [
                _hit("1", "Rust compiler internals", "https://example.com/a", datetime(2024, 1, 1, 12, 1, tzinfo=UTC)),
                _hit("2", "Linux scheduler", "https://example.com/b", WINDOW_END),
                _hit("3", "Python typing", "https://example.com/c", datetime(2024, 1, 1, 12, 9, tzinfo=UTC)),
            ]
        )
        following = AlarmWindow(WINDOW_END, datetime(2024, 1, 1, 12, 10, tzinfo=UTC))

        first = [p.item_id for p in await source.fetch_new_items(WINDOW)]
        second = [p.item_id for p in await source.fetch_new_items(following)]

        assert first == ["1"]
        assert second == ["2", "3"]
        assert not set(first) & set(second)


class TestFormat:
    """Tests for HackerNewsSource.format."""

    async def test_embed(self, source: HackerNewsSource, hits: list[dict]) -> None:
        hits.append(_hit("1", "GPU news", "https://example.com/gpu", datetime(2024, 1, 1, 12, 1, tzinfo=UTC)))
        payload = (await source.fetch_new_items(WINDOW))[0]

        message = await source.format(payload)

        assert message is not None
        assert message.content == "https://example.com/gpu"
        embed = message.embeds[0]
        assert embed["color"] == HN_COLOR
        assert embed["footer"]["text"] == "작성자: pg"
        assert embed["fields"][2]["value"] == "2024-01-01 21:01:00 KST"


class TestSearch:
    """Tests for HackerNewsSource.search."""

    async def test_search_ignores_topic(self, source: HackerNewsSource, hits: list[dict]) -> None:
        hits.append(_hit("9", "Cooking pasta", "https://example.com", datetime(2020, 1, 1, tzinfo=UTC)))
        payloads = await source.search("pasta")
        assert [p.item_id for p in payloads] == ["9"]


def test_normalize_summary() -> None:
    assert normalize_summary(" A. B. ") == "A.\nB."
