"""Test utilities and fixtures for scopeinject tests."""

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, final

import pytest

from scopeinject import ContextStore, ScopeRecord, clear_global_state


@final
@dataclass(kw_only=True, slots=True, weakref_slot=True)
class CallRecorder:
    """Test utility: callable that records its arguments and returns a fixed result."""

    result: Any = None
    calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = field(default_factory=list)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        self.calls.append((args, kwargs))
        return self.result


@pytest.fixture(autouse=True)
def isolated_global_state() -> Iterator[None]:
    clear_global_state()
    yield
    clear_global_state()


@pytest.fixture
def recorder() -> CallRecorder:
    return CallRecorder(result="recorded")


@pytest.fixture
def store() -> ContextStore[ScopeRecord]:
    """A private store, so disabling it does not affect the registries."""
    return ContextStore(name="test-store")
