"""Tests for di_scope encapsulation."""

import asyncio
from typing import Any

import pytest

from scopeinject import di, di_dep, di_init, di_scope, di_set, dis


name = di(lambda: "default")


def greet() -> str:
    return f"Hello, {name()}"


class TestDiScope:
    """Test functions bound to one private scope record."""

    def test_same_keys(self) -> None:
        scoped = di_scope({"greet": greet, "name": name})
        assert set(scoped) == {"greet", "name"}

    def test_init_populates_private_record(self) -> None:
        scoped = di_scope({"greet": greet}, lambda: di_set(name, lambda: "private"))
        assert scoped["greet"]() == "Hello, private"

    def test_instances_are_isolated(self) -> None:
        first = di_scope({"greet": greet}, lambda: di_set(name, lambda: "first"))
        second = di_scope({"greet": greet}, lambda: di_set(name, lambda: "second"))
        plain = di_scope({"greet": greet})
        assert first["greet"]() == "Hello, first"
        assert second["greet"]() == "Hello, second"
        assert plain["greet"]() == "Hello, default"

    def test_methods_share_state(self) -> None:
        counter = dis(lambda total, n: total + n, 0)
        scoped = di_scope({"add": counter, "total": lambda: counter()})
        scoped["add"](2)
        scoped["add"](3)
        assert scoped["total"]() == 5

    def test_arguments_are_forwarded(self) -> None:
        scoped = di_scope(
            {"describe": lambda *args, **kwargs: (args, kwargs, di_dep("unit"))},
            lambda: di_set("unit", "kg"),
        )
        assert scoped["describe"](1, 2, precision=3) == ((1, 2), {"precision": 3}, "kg")

    def test_private_record_wins_inside_active_scope(self) -> None:
        scoped = di_scope({"greet": greet}, lambda: di_set(name, lambda: "private"))

        def handler() -> tuple[str, str]:
            di_set(name, lambda: "active")
            return scoped["greet"](), greet()

        assert di_init(handler) == ("Hello, private", "Hello, active")

    def test_active_overrides_visible_when_private_is_silent(self) -> None:
        scoped = di_scope({"greet": greet})

        def handler() -> str:
            di_set(name, lambda: "active")
            return scoped["greet"]()

        assert di_init(handler) == "Hello, active"

    def test_private_state_not_visible_to_active_scope(self) -> None:
        counter = dis(lambda total, n: total + n, 0)
        scoped = di_scope({"add": counter})
        scoped["add"](5)

        def handler() -> int:
            return counter()

        assert di_init(handler) == 0

    def test_init_runs_in_private_record_inside_active_scope(self) -> None:
        def handler() -> str:
            di_set(name, lambda: "active")
            scoped = di_scope({"greet": greet}, lambda: di_set(name, lambda: "private"))
            return scoped["greet"]()

        assert di_init(handler) == "Hello, private"

    @pytest.mark.asyncio
    async def test_async_methods(self) -> None:
        async def fetch() -> Any:
            await asyncio.sleep(0)
            return di_dep("endpoint")

        scoped = di_scope({"fetch": fetch}, lambda: di_set("endpoint", "https://tenant-a"))
        assert await scoped["fetch"]() == "https://tenant-a"
