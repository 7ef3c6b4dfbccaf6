"""In-memory to-do list behind the ``/todo-*`` commands."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TodoItem:
    id: int
    text: str


class TodoList:
    """Process-local to-do list with increasing integer ids."""

    def __init__(self) -> None:
        self._items: list[TodoItem] = []
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._items)

    def add(self, text: str) -> TodoItem:
        item = TodoItem(id=self._next_id, text=text)
        self._next_id += 1
        self._items.append(item)
        return item

    def items(self) -> list[TodoItem]:
        return list(self._items)

    def remove(self, item_id: int) -> bool:
        """Remove an item; returns False when the id is unknown."""
        for index, item in enumerate(self._items):
            if item.id == item_id:
                del self._items[index]
                return True
        return False

    def clear(self) -> None:
        self._items.clear()
        self._next_id = 1
