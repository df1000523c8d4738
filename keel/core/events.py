"""Event Emitter — async listeners with lazy installation of the dispatch table.

Invariants:
    - emit() is a no-op until the first listener is registered
    - Listeners run sequentially in registration order; awaitables are awaited
      before the next listener runs, and before emit() returns
    - Installation happens once per emitter instance, never on the class

Design Decisions:
    - Explicit `_installed` flag plus `_install()` swap instead of patching
      methods onto the instance at first use
"""

import inspect
from collections.abc import Callable
from types import MappingProxyType
from typing import Any

Listener = Callable[..., Any]

_NOOP_DISPATCH: MappingProxyType = MappingProxyType({})


class EventEmitter:
    """Async event emitter used for app events, model hooks and transactions."""

    def __init__(self) -> None:
        self._installed = False
        self._dispatch: Any = _NOOP_DISPATCH

    @property
    def installed(self) -> bool:
        return self._installed

    def _install(self) -> None:
        if not self._installed:
            self._dispatch = {}
            self._installed = True

    def on(self, event: str, listener: Listener | None = None):
        """Register a listener. Usable as `emitter.on("x", fn)` or `@emitter.on("x")`."""
        if listener is None:
            def decorator(fn: Listener) -> Listener:
                self.on(event, fn)
                return fn
            return decorator
        self._install()
        self._dispatch.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        def wrapper(*args: Any) -> Any:
            self.off(event, wrapper)
            return listener(*args)
        self.on(event, wrapper)
        return wrapper

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._dispatch.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listeners(self, event: str) -> list[Listener]:
        return list(self._dispatch.get(event, ()))

    def has_listeners(self, event: str) -> bool:
        return bool(self._dispatch.get(event))

    async def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._dispatch.get(event, ())):
            result = listener(*args)
            if inspect.isawaitable(result):
                await result
