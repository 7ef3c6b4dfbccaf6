"""Discord slash commands."""

from nanami_alarm.bot.commands import AlarmBot
from nanami_alarm.bot.todo import TodoItem, TodoList

__all__ = ["AlarmBot", "TodoItem", "TodoList"]
