"""
Lifecycle notifications for graph executions.

Observers subscribe either with a listener object implementing any subset of
the GraphListener methods, or with a plain closure per event name:

    >>> bus = EventBus()
    >>> bus.on(NODE_END, lambda node, elapsed: print(f"{node}: {elapsed:.3f}s"))

Handlers are invoked synchronously, in registration order, on the thread
that raised the event (fork branches raise events from worker threads).
They are pure notifications and must not mutate GraphState.

Callback Safety:
    - Every handler invocation is wrapped in try/except
    - Handler errors are logged and do not affect execution
    - error_policy="raise" re-raises instead, "remove" drops the failing handler
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

NODE_START = "node_start"
NODE_END = "node_end"
ERROR = "error"
STREAMING = "streaming"

EVENTS = (NODE_START, NODE_END, ERROR, STREAMING)

_LISTENER_METHODS = {
    NODE_START: "on_node_start",
    NODE_END: "on_node_end",
    ERROR: "on_error",
    STREAMING: "on_streaming",
}

ERROR_POLICIES = ("log", "raise", "remove")


@runtime_checkable
class GraphListener(Protocol):
    """
    Protocol for execution lifecycle listeners.

    All methods are optional - implement only the ones you need.

    Example:
        >>> class Timing:
        ...     def on_node_end(self, node: str, elapsed: float) -> None:
        ...         print(f"{node} took {elapsed * 1000:.1f}ms")
    """

    def on_node_start(self, node: str) -> None:
        """Called before a node action runs."""
        ...

    def on_node_end(self, node: str, elapsed: float) -> None:
        """Called after a node action returned; elapsed is in seconds."""
        ...

    def on_error(self, node: str, error: BaseException) -> None:
        """Called when a node fails, before the error propagates."""
        ...

    def on_streaming(self, chunk: str) -> None:
        """Called for every chunk a node emits."""
        ...


class EventBus:
    """
    Dispatches lifecycle events to registered listeners with error isolation.

    Attributes:
        error_policy: How to handle handler errors ("log", "raise", "remove")
    """

    def __init__(
        self,
        listeners: Optional[List[Any]] = None,
        error_policy: str = "log",
    ):
        if error_policy not in ERROR_POLICIES:
            raise ValueError(
                f"error_policy must be one of {ERROR_POLICIES}, got '{error_policy}'"
            )
        self.error_policy = error_policy
        self._lock = threading.Lock()
        self._listeners: List[Any] = list(listeners or [])
        self._handlers: Dict[str, List[Callable[..., Any]]] = {event: [] for event in EVENTS}

    def add_listener(self, listener: Any) -> None:
        """Add a listener object."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Any) -> None:
        """Remove a listener object."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        """
        Register a closure for one event. Returns the handler so it can be
        used as a decorator.
        """
        if event not in self._handlers:
            raise ValueError(f"Unknown event '{event}', expected one of {EVENTS}")
        with self._lock:
            self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        """Unregister a closure."""
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners) + sum(len(h) for h in self._handlers.values())

    def __bool__(self) -> bool:
        """Bus is always truthy (even when empty)."""
        return True

    def _invoke(self, owner: Any, handler: Callable[..., Any], event: str, *args: Any) -> None:
        try:
            handler(*args)
        except Exception as e:
            name = getattr(handler, "__qualname__", repr(handler))
            logger.warning(f"Event handler {name} for '{event}' error: {e}")
            if self.error_policy == "raise":
                raise
            if self.error_policy == "remove":
                if owner is None:
                    self.off(event, handler)
                else:
                    self.remove_listener(owner)

    def fire_event(self, event: str, *args: Any) -> None:
        """
        Fire an event to all listeners and closures.

        Args:
            event: One of NODE_START, NODE_END, ERROR, STREAMING
            *args: Arguments passed to each handler
        """
        method_name = _LISTENER_METHODS[event]
        with self._lock:
            listeners = list(self._listeners)
            handlers = list(self._handlers[event])

        for listener in listeners:
            method = getattr(listener, method_name, None)
            if method is not None:
                self._invoke(listener, method, event, *args)
        for handler in handlers:
            self._invoke(None, handler, event, *args)

    def fire_node_start(self, node: str) -> None:
        self.fire_event(NODE_START, node)

    def fire_node_end(self, node: str, elapsed: float) -> None:
        self.fire_event(NODE_END, node, elapsed)

    def fire_error(self, node: str, error: BaseException) -> None:
        self.fire_event(ERROR, node, error)

    def fire_streaming(self, chunk: str) -> None:
        self.fire_event(STREAMING, chunk)
