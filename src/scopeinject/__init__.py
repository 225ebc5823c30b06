"""
scopeinject: Scope-bound dependency injection and reactive state.

## Core Design Principle: One Ambient Record per Unit of Work

Every registry in this package reads and writes buckets of the scope record
that is active for the calling task. A host framework starts a record once per
request, message or test with ``di_init``; everything that runs inside the
callback, including asyncio tasks and timers it schedules, shares that record.

- ``di``, ``di_dep``, ``di_set``, ``di_has``: overriding functions and named values
- ``di_once``, ``dic``, ``di_once_set``: values computed once per scope
- ``dis``, ``div``: fold-style state, per scope or process-wide
- ``di_map``, ``di_map_once``, ``dise``: values derived from other cells
- ``di_scope``: functions bound to one private record

Wrappers are keys: the function returned by ``di``, ``dis``, ``di_once`` and
friends is itself the key of its entry, so wrapping the same implementation
twice yields two independent entries.

## Example

```python
from scopeinject import di, di_init, di_set, dis

@di
def greeting() -> str:
    return "Hello"

counter = dis(lambda total, n: total + n, 0)

def handle_request() -> str:
    di_set(greeting, lambda: "Hi")
    counter(2)
    counter(3)
    return f"{greeting()} #{counter()}"

di_init(handle_request)  # "Hi #5"
```
"""

import functools
import inspect
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Final,
    Mapping,
    ParamSpec,
    Protocol,
    TypeVar,
    cast,
    overload,
)

from scopeinject.context import ContextStore, IdentityMap, NotInitializedError, ScopeRecord

_logger: Final[logging.Logger] = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")
S = TypeVar("S")
TPayload = TypeVar("TPayload")
P = ParamSpec("P")

context_store: Final[ContextStore[ScopeRecord]] = ContextStore()
"""The store every registry resolves the active record from."""

_global_state: Final[IdentityMap[Any]] = IdentityMap()


class DependencyNotRegisteredError(KeyError):
    """Raised by ``di_dep`` for a string key that has no registered value."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key: Final = key

    def __str__(self) -> str:
        return f"Dependency with key {self.key!r} is not registered"


class Puller(Protocol[T]):
    """A zero-argument source of a value that can be combined with other sources."""

    def __call__(self) -> T: ...

    def map(self, function: Callable[[T], R], /) -> "Puller[R]": ...

    def map_with(
        self, function: Callable[..., R], /, *sources: Callable[[], Any]
    ) -> "Puller[R]": ...


class StateFunction(Puller[S], Protocol[S, TPayload]):
    """Reads its state when called without payload, folds the payload in otherwise."""

    def __call__(self, payload: TPayload | None = None, /) -> S: ...  # type: ignore[override]


class Derived(Puller[T], Protocol[T]):
    raw: Callable[..., T]


class Effect(Protocol[T]):
    raw: Callable[..., T | Awaitable[T]]

    def __call__(self) -> Awaitable[T]: ...


def _current_record() -> ScopeRecord:
    record = context_store.get_current()
    if record is None:
        raise NotInitializedError()
    return record


def _with_combinators(source: Callable[..., Any]) -> Any:
    def map(function: Callable[[Any], Any], /) -> Any:
        return _with_combinators(lambda: function(source()))

    def map_with(function: Callable[..., Any], /, *sources: Callable[[], Any]) -> Any:
        return _with_combinators(
            lambda: function(source(), *(other() for other in sources))
        )

    source.map = map  # type: ignore[attr-defined]
    source.map_with = map_with  # type: ignore[attr-defined]
    return source


def di_exists() -> bool:
    return context_store.get_current() is not None


def di_context() -> ScopeRecord:
    """Create an empty record to share one scope across decoupled ``di_init`` calls."""
    return ScopeRecord()


def di_extension(name: str, factory: Callable[[], T] = IdentityMap) -> T:  # type: ignore[assignment]
    """Return the named extension bucket of the active record, creating it on first use."""
    return _current_record().extension(name, factory)


def di_init(callback: Callable[[], T], record: ScopeRecord | None = None) -> T:
    """
    Run ``callback`` inside a scope record.

    Without an active record, ``callback`` runs in ``record`` or in a fresh
    empty one. With an active record and no ``record``, ``callback`` simply
    runs in the active one. With both, it runs in a new record holding the
    active entries followed by the entries of ``record``, so ``record`` wins on
    collisions.

    When ``callback`` is a coroutine function the result is a coroutine that
    must be awaited.
    """
    active = context_store.get_current()
    if active is None:
        if record is None:
            record = ScopeRecord()
            _logger.debug("Starting a new scope record for %r", callback)
        return context_store.run(record, callback)
    if record is None:
        return callback()
    _logger.debug("Merging a supplied scope record into the active one for %r", callback)
    return context_store.run(active.merge(record), callback)


def di(function: Callable[P, T]) -> Callable[P, T]:
    """
    Make ``function`` overridable per scope with ``di_set``.

    The returned wrapper resolves its implementation on every call, so an
    override registered later in the same scope takes effect immediately.
    """

    @functools.wraps(function)
    def overridable(*args: P.args, **kwargs: P.kwargs) -> T:
        overrides = _current_record().overrides
        implementation = overrides[overridable] if overridable in overrides else function
        return implementation(*args, **kwargs)

    return overridable


@overload
def di_dep(dep: str) -> Any: ...


@overload
def di_dep(dep: T) -> T: ...


def di_dep(dep: object) -> Any:
    """
    Resolve ``dep`` against the overrides of the active record.

    String keys have no default and raise ``DependencyNotRegisteredError`` when
    unset; any other key falls back to itself.
    """
    overrides = _current_record().overrides
    if dep in overrides:
        return overrides[dep]
    if isinstance(dep, str):
        raise DependencyNotRegisteredError(dep)
    return dep


def di_set(dep: object, value: Any) -> None:
    _current_record().overrides[dep] = value


def di_has(dep: object) -> bool:
    return dep in _current_record().overrides


def di_once(function: Callable[P, T]) -> Callable[P, T]:
    """
    Compute ``function`` once per scope.

    The first call stores its result; later calls in the same scope return it
    whatever their arguments. A ``None`` result is not stored, so the next call
    computes again.
    """

    @functools.wraps(function)
    def once(*args: P.args, **kwargs: P.kwargs) -> T:
        singletons = _current_record().singletons
        cached = singletons.get(once)
        if cached is None:
            cached = singletons[once] = function(*args, **kwargs)
        return cached

    return _with_combinators(once)


def di_once_set(function: Callable[..., T], value: T) -> None:
    _current_record().singletons[function] = value


def dic() -> StateFunction[T | None, T]:
    """A cell keeping the first value it is called with; ``cell()`` reads it."""

    def identity(value: T | None = None) -> T | None:
        return value

    return cast(StateFunction[T | None, T], di_once(identity))


def dis(
    reducer: Callable[[S, TPayload], S], initial: S, is_global: bool = False
) -> StateFunction[S, TPayload]:
    """
    Create a fold-style state function.

    ``state()`` returns the current value, or ``initial`` before the first
    write. ``state(payload)`` stores and returns ``reducer(current, payload)``.
    The state lives in the active record unless ``is_global`` is set, in which
    case it is shared process-wide until ``clear_global_state``.

    A ``None`` payload always reads, so ``None`` can never be folded in.
    """

    def state(payload: TPayload | None = None) -> S:
        states = _global_state if is_global else _current_record().state
        current = states[state] if state in states else initial
        if payload is None:
            return current
        updated = states[state] = reducer(current, payload)
        return updated

    return _with_combinators(state)


def div(initial: T | None = None) -> StateFunction[T | None, T]:
    """A cell that, unlike ``dic``, can be overwritten."""
    return dis(lambda _, value: value, initial)


def clear_global_state() -> None:
    _logger.debug("Clearing %d global state entries", len(_global_state))
    _global_state.clear()


def di_map(combine: Callable[..., R], *sources: Callable[[], Any]) -> Derived[R]:
    """
    Derive a value from ``sources`` on every call.

    Each call pulls every source, passes the results to ``combine`` in order,
    records the result in the ``derived`` bucket of the active record and
    returns it. ``.raw`` is ``combine`` itself.
    """

    def derived() -> R:
        value = combine(*(source() for source in sources))
        _current_record().derived[derived] = value
        return value

    derived.raw = combine  # type: ignore[attr-defined]
    return _with_combinators(derived)


def di_map_once(combine: Callable[..., R], *sources: Callable[[], Any]) -> Derived[R]:
    """Like ``di_map``, but keeps the first non-``None`` result for the rest of the scope."""

    def pull() -> R:
        value = combine(*(source() for source in sources))
        _current_record().derived[derived] = value
        return value

    derived = di_once(pull)
    derived.raw = combine  # type: ignore[attr-defined]
    return cast(Derived[R], derived)


def dise(
    effect: Callable[..., Awaitable[T] | T],
    output: Callable[[T], Any],
    *inputs: Callable[[], Any],
) -> Effect[T]:
    """
    Create an asynchronous effect that fills ``output``.

    Awaiting the effect pulls ``inputs``, awaits ``effect`` with their values,
    writes the result into ``output`` and returns it. ``output`` may be one of
    the inputs, which lets an effect accumulate over its own previous result.
    The effect is resolved through ``di``, so ``dise_set`` can replace it.
    """
    raw = di(effect)

    async def run_effect() -> T:
        result = raw(*(cell() for cell in inputs))
        if inspect.isawaitable(result):
            result = await result
        output(result)
        return result

    run_effect.raw = raw  # type: ignore[attr-defined]
    return cast(Effect[T], run_effect)


def dise_set(effect: Effect[T], replacement: Callable[..., Awaitable[T] | T]) -> None:
    di_set(effect.raw, replacement)


def di_scope(
    methods: Mapping[str, Callable[..., Any]], init: Callable[[], Any] | None = None
) -> dict[str, Callable[..., Any]]:
    """
    Bind ``methods`` to one private scope record.

    ``init`` runs once inside the private record, typically to register
    overrides. Each returned function runs its original through ``di_init``
    with the private record: outside any scope the private record is used
    directly and keeps its state between calls; inside an active scope the
    call sees the active record merged with the private one.
    """
    record = ScopeRecord()
    if init is not None:
        context_store.run(record, init)
    _logger.debug("Created an encapsulated scope for %s", ", ".join(methods))

    def enter(method: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(method)
        def scoped(*args: Any, **kwargs: Any) -> Any:
            return di_init(lambda: method(*args, **kwargs), record)

        return scoped

    return {name: enter(method) for name, method in methods.items()}
