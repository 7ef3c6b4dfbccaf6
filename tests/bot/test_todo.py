"""Tests for the in-memory to-do list."""

from nanami_alarm.bot.todo import TodoItem, TodoList


class TestTodoList:
    """Tests for TodoList."""

    def test_ids_increase(self) -> None:
        todos = TodoList()

        first = todos.add("패치 노트 읽기")
        second = todos.add("CVE 정리")

        assert (first.id, second.id) == (1, 2)
        assert todos.items() == [TodoItem(1, "패치 노트 읽기"), TodoItem(2, "CVE 정리")]

    def test_ids_not_reused_after_remove(self) -> None:
        todos = TodoList()
        todos.add("a")
        todos.add("b")

        assert todos.remove(2) is True
        assert todos.add("c").id == 3

    def test_remove_unknown(self) -> None:
        todos = TodoList()
        todos.add("a")

        assert todos.remove(5) is False
        assert len(todos) == 1

    def test_items_is_a_copy(self) -> None:
        todos = TodoList()
        todos.add("a")

        todos.items().clear()

        assert len(todos) == 1

    def test_clear_resets_ids(self) -> None:
        todos = TodoList()
        todos.add("a")
        todos.clear()

        assert len(todos) == 0
        assert todos.add("b").id == 1
