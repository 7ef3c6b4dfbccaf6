"""Discord gateway client and slash commands.

Commands: ``/ping``, ``/cve-search``, ``/todo-add``, ``/todo-send`` and
``/todo-remove``. Handlers are plain coroutines taking the interaction so
they can be exercised without a gateway connection.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import discord
from discord import app_commands

from nanami_alarm.bot.todo import TodoList

if TYPE_CHECKING:
    from nanami_alarm.sources.cve import CveSource

logger = logging.getLogger(__name__)

SEARCH_RESULT_LIMIT = 5

NO_RESULTS = "검색 결과가 없습니다."
SEARCH_FAILED = "검색 처리 중 오류가 발생했습니다."
TODO_EMPTY = "할거 목록이 없어요..."
TODO_LIST_HEADER = "주인님이 이번에 추가한 내용은..."
TODO_ADDED = "할거 목록 추가되었어요!"
TODO_ADD_FAILED = "할거 목록 추가 실패했어요..."
TODO_REMOVED = "할거 목록 삭제되었어요!"
TODO_REMOVE_FAILED = "할거 목록 삭제 실패했어요..."


async def handle_ping(interaction: discord.Interaction) -> None:
    elapsed = datetime.now(UTC) - interaction.created_at
    duration_ms = max(0, int(elapsed.total_seconds() * 1000))
    await interaction.response.send_message(f"나나미짱 살아있어요! 응답속도: {duration_ms}ms")
    logger.info("/ping answered in %dms", duration_ms)


async def handle_cve_search(
    interaction: discord.Interaction,
    question: str,
    *,
    cve_source: CveSource,
    limit: int = SEARCH_RESULT_LIMIT,
) -> None:
    """Answer ``/cve-search`` with up to ``limit`` CVE embeds."""
    await interaction.response.defer()
    try:
        results = await cve_source.search(question, limit=limit)
        if not results:
            await interaction.edit_original_response(content=NO_RESULTS)
            return

        embeds: list[discord.Embed] = []
        for payload in results[:limit]:
            message = await cve_source.format(payload)
            if message is None:
                continue
            embeds.extend(discord.Embed.from_dict(dict(embed)) for embed in message.embeds)

        await interaction.edit_original_response(embeds=embeds[:limit])
        logger.info("/cve-search %r: %d results", question, len(embeds))
    except Exception:
        logger.exception("/cve-search failed for %r", question)
        await interaction.edit_original_response(content=SEARCH_FAILED)


async def handle_todo_add(interaction: discord.Interaction, text: str, *, todos: TodoList) -> None:
    await interaction.response.defer()
    if not text.strip():
        await interaction.edit_original_response(content=TODO_ADD_FAILED)
        return
    item = todos.add(text.strip())
    await interaction.edit_original_response(content=TODO_ADDED)
    logger.info("[TODO ADD] #%d %s", item.id, item.text)


async def handle_todo_send(interaction: discord.Interaction, *, todos: TodoList) -> None:
    await interaction.response.defer()
    items = todos.items()
    if not items:
        await interaction.edit_original_response(content=TODO_EMPTY)
        return
    lines = "\n".join(f"- {item.id}. {item.text}" for item in items)
    await interaction.edit_original_response(content=f"{TODO_LIST_HEADER}\n{lines}")
    logger.info("[TODO SEND] %d items", len(items))


async def handle_todo_remove(interaction: discord.Interaction, todo_id: int, *, todos: TodoList) -> None:
    await interaction.response.defer()
    if todo_id <= 0 or not todos.remove(todo_id):
        await interaction.edit_original_response(content=TODO_REMOVE_FAILED)
        return
    await interaction.edit_original_response(content=TODO_REMOVED)
    logger.info("[TODO REMOVE] #%d", todo_id)


def register_commands(
    tree: app_commands.CommandTree[discord.Client],
    *,
    cve_source: CveSource | None,
    todos: TodoList,
) -> None:
    """Attach every slash command to the tree."""

    @tree.command(name="ping", description="Ping the bot")
    async def ping(interaction: discord.Interaction) -> None:
        await handle_ping(interaction)

    @tree.command(name="todo-add", description="할거 목록 추가해주기")
    @app_commands.describe(text="추가할 할 일 내용")
    async def todo_add(interaction: discord.Interaction, text: str) -> None:
        await handle_todo_add(interaction, text, todos=todos)

    @tree.command(name="todo-send", description="할거 목록 출력해주기")
    async def todo_send(interaction: discord.Interaction) -> None:
        await handle_todo_send(interaction, todos=todos)

    @tree.command(name="todo-remove", description="할거 목록 삭제해주기")
    @app_commands.describe(id="삭제할 할 일 아이디")
    async def todo_remove(interaction: discord.Interaction, id: int) -> None:
        await handle_todo_remove(interaction, id, todos=todos)

    if cve_source is None:
        return

    @tree.command(name="cve-search", description="자연어로 CVE 검색하기")
    @app_commands.describe(question="검색할 내용 (예: 이번 주 심각한 Apache 취약점)")
    async def cve_search(interaction: discord.Interaction, question: str) -> None:
        await handle_cve_search(interaction, question, cve_source=cve_source)


ReadyCallback = Callable[[], Awaitable[None]]


class AlarmBot(discord.Client):
    """Gateway client that serves the slash commands.

    Example:
        ```python
        bot = AlarmBot(cve_source=cve_source, guild_id="1234")
        await bot.start(token)
        ```
    """

    def __init__(
        self,
        *,
        cve_source: CveSource | None,
        todos: TodoList | None = None,
        guild_id: str | None = None,
        on_ready_callback: ReadyCallback | None = None,
    ) -> None:
        intents = discord.Intents.default()
        super().__init__(intents=intents)
        self.tree = app_commands.CommandTree(self)
        self.todos = todos or TodoList()
        self._guild = discord.Object(id=int(guild_id)) if guild_id else None
        self._on_ready_callback = on_ready_callback
        register_commands(self.tree, cve_source=cve_source, todos=self.todos)

    async def setup_hook(self) -> None:
        """Sync slash commands to the configured guild, or globally."""
        try:
            if self._guild is not None:
                self.tree.copy_global_to(guild=self._guild)
                synced = await self.tree.sync(guild=self._guild)
            else:
                synced = await self.tree.sync()
        except discord.HTTPException as e:
            logger.error("Failed to sync slash commands: %s", e)
            return
        logger.info("Synced %d slash commands", len(synced))

    async def on_ready(self) -> None:
        logger.info("Logged in as %s", self.user)
        if self._on_ready_callback is not None:
            await self._on_ready_callback()
