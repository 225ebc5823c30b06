"""
Execution-context store and the scope record it propagates.

A :class:`ContextStore` binds a :class:`ScopeRecord` to the dynamic extent of a
unit of work. The binding lives in a :class:`contextvars.ContextVar`, so every
asyncio task, ``loop.call_soon`` / ``loop.call_later`` callback and
``asyncio.to_thread`` call scheduled from inside the unit of work observes the
same record, even after the code that scheduled it has returned.
"""

from __future__ import annotations

import functools
import inspect
import logging
from contextvars import ContextVar, copy_context
from dataclasses import dataclass, field
from itertools import chain
from typing import (
    Any,
    Callable,
    Coroutine,
    Final,
    Generic,
    Hashable,
    Iterable,
    Iterator,
    MutableMapping,
    ParamSpec,
    TypeVar,
    final,
)

from typing_extensions import override

_logger: Final[logging.Logger] = logging.getLogger(__name__)

V = TypeVar("V")
T = TypeVar("T")
P = ParamSpec("P")


class NotInitializedError(RuntimeError):
    """Raised when a scoped operation runs without an active scope record."""

    def __init__(self) -> None:
        super().__init__(
            "No active scope record; wrap the call in di_init() before using the registries"
        )


def _identity(key: object) -> Hashable:
    if isinstance(key, str):
        return key
    return (id(key),)


class IdentityMap(MutableMapping[object, V]):
    """
    A mapping whose keys compare by identity.

    String keys are the exception: they compare by value and live in their own
    namespace, so ``"foo"`` never collides with an object whatever its
    ``__eq__`` or ``__hash__`` say. Each entry keeps a strong reference to its
    key, therefore an ``id()`` cannot be reused while the entry exists.
    """

    __slots__ = ("_entries",)

    def __init__(self, items: Iterable[tuple[object, V]] = ()) -> None:
        self._entries: dict[Hashable, tuple[object, V]] = {}
        for key, value in items:
            self[key] = value

    @override
    def __getitem__(self, key: object) -> V:
        try:
            return self._entries[_identity(key)][1]
        except KeyError:
            raise KeyError(key) from None

    @override
    def __setitem__(self, key: object, value: V) -> None:
        self._entries[_identity(key)] = (key, value)

    @override
    def __delitem__(self, key: object) -> None:
        try:
            del self._entries[_identity(key)]
        except KeyError:
            raise KeyError(key) from None

    @override
    def __contains__(self, key: object) -> bool:
        return _identity(key) in self._entries

    @override
    def __iter__(self) -> Iterator[object]:
        for key, _ in self._entries.values():
            yield key

    @override
    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        body = ", ".join(f"{key!r}: {value!r}" for key, value in self._entries.values())
        return f"{type(self).__name__}({{{body}}})"


@final
@dataclass(frozen=True, kw_only=True, slots=True, weakref_slot=True, eq=False)
class ScopeRecord:
    """
    The ambient state of one unit of work.

    The record itself is immutable; its buckets are not. Records compare by
    identity.
    """

    overrides: IdentityMap[Any] = field(default_factory=IdentityMap)
    """Replacement values and functions, keyed by wrapper identity or by name."""

    singletons: IdentityMap[Any] = field(default_factory=IdentityMap)
    """First computed result of each memoized wrapper."""

    state: IdentityMap[Any] = field(default_factory=IdentityMap)
    """Current folded value of each scope-local reducer."""

    derived: IdentityMap[Any] = field(default_factory=IdentityMap)
    """Last value produced by each derived computation, kept for introspection."""

    extensions: dict[str, Any] = field(default_factory=dict)
    """Named buckets attached by collaborators."""

    def extension(self, name: str, factory: Callable[[], T]) -> T:
        try:
            return self.extensions[name]
        except KeyError:
            slot = self.extensions[name] = factory()
            return slot

    def merge(self, other: ScopeRecord) -> ScopeRecord:
        """
        Return a new record holding this record's entries followed by ``other``'s.

        On key collision the entry of ``other`` wins because it is inserted last.
        """
        return ScopeRecord(
            overrides=IdentityMap(chain(self.overrides.items(), other.overrides.items())),
            singletons=IdentityMap(chain(self.singletons.items(), other.singletons.items())),
            state=IdentityMap(chain(self.state.items(), other.state.items())),
            derived=IdentityMap(chain(self.derived.items(), other.derived.items())),
            extensions={**self.extensions, **other.extensions},
        )


@final
@dataclass(frozen=True, slots=True)
class _Binding(Generic[V]):
    record: V | None
    epoch: int


class ContextStore(Generic[V]):
    """
    Propagates one ambient value per logical task.

    Example::

        store = ContextStore[ScopeRecord]()

        def handler() -> None:
            assert store.get_current() is record
            asyncio.get_running_loop().call_later(1, lambda: store.get_current())

        store.run(record, handler)
    """

    def __init__(self, name: str = "scopeinject") -> None:
        self._variable: Final[ContextVar[_Binding[V] | None]] = ContextVar(
            name, default=None
        )
        self._epoch = 0

    def run(self, record: V, function: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """
        Call ``function`` with ``record`` as the ambient value.

        If ``function`` returns a coroutine, the returned coroutine binds
        ``record`` for the whole of its execution once awaited.
        """
        return self._run_bound(_Binding(record, self._epoch), function, args, kwargs)

    def exit(self, function: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Call ``function`` with no ambient value visible."""
        return self._run_bound(None, function, args, kwargs)

    def get_current(self) -> V | None:
        binding = self._variable.get()
        if binding is None or binding.epoch != self._epoch:
            return None
        return binding.record

    def disable(self) -> None:
        """Hide every binding made so far. Later calls to :meth:`run` are visible again."""
        self._epoch += 1
        _logger.debug("Context store %s disabled (epoch %d)", self._variable.name, self._epoch)

    def bind(self, function: Callable[P, T]) -> Callable[P, T]:
        """
        Capture the current binding for a callback invoked outside this context.

        Threads and foreign event emitters do not copy :mod:`contextvars`; a
        callback wrapped here sees the record that was active at bind time.
        """
        binding = self._variable.get()

        @functools.wraps(function)
        def bound(*args: P.args, **kwargs: P.kwargs) -> T:
            return self._run_bound(binding, function, args, kwargs)

        return bound

    def _run_bound(
        self,
        binding: _Binding[V] | None,
        function: Callable[..., T],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> T:
        context = copy_context()
        context.run(self._variable.set, binding)
        result = context.run(function, *args, **kwargs)
        if inspect.iscoroutine(result):
            return self._bind_coroutine(binding, result)  # type: ignore[return-value]
        return result

    async def _bind_coroutine(
        self, binding: _Binding[V] | None, coroutine: Coroutine[Any, Any, T]
    ) -> T:
        token = self._variable.set(binding)
        try:
            return await coroutine
        finally:
            self._variable.reset(token)
