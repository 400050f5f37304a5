from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence, Union

logger = logging.getLogger(__name__)

EventNames = Union[str, Sequence[str]]

ActionHandler = Callable[[Mapping[str, Any], Mapping[str, Any]], None]
FilterHandler = Callable[[Any, Mapping[str, Any], Mapping[str, Any]], Any]


def _names(event: EventNames) -> list[str]:
    return [event] if isinstance(event, str) else list(event)


@dataclass
class ActionEventParams:
    """Everything needed to fire one action event; built right before emission, never stored."""
    event: EventNames
    meta: Dict[str, Any]
    context: Dict[str, Any] = field(default_factory=dict)


class EventBus(Protocol):
    def emit(self, event: EventNames, meta: Mapping[str, Any], context: Mapping[str, Any]) -> int:
        """Fire-and-forget action event. Returns the number of handlers invoked."""
        ...

    def filter(
        self,
        event: EventNames,
        payload: Any,
        meta: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> Any:
        """Run filter handlers over `payload` and return the (possibly replaced) payload."""
        ...


class EventEmitter:
    """
    In-process event bus.

    Action handlers react after the fact and their errors are logged, never
    raised. Filter handlers run before a write and may replace the payload;
    their errors abort the operation.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, List[ActionHandler]] = {}
        self._filters: Dict[str, List[FilterHandler]] = {}

    def on_action(self, event: str, handler: ActionHandler) -> None:
        """Register a handler for an action event."""
        self._actions.setdefault(event, []).append(handler)
        logger.debug("Action handler registered for: %s", event)

    def on_filter(self, event: str, handler: FilterHandler) -> None:
        """Register a handler for a filter event."""
        self._filters.setdefault(event, []).append(handler)
        logger.debug("Filter handler registered for: %s", event)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        """Unregister a handler."""
        for registry in (self._actions, self._filters):
            if event in registry:
                registry[event] = [h for h in registry[event] if h != handler]

    def emit(self, event: EventNames, meta: Mapping[str, Any], context: Mapping[str, Any]) -> int:
        invoked = 0
        for name in _names(event):
            for handler in self._actions.get(name, []):
                try:
                    handler(meta, context)
                    invoked += 1
                except Exception:
                    logger.exception("Action handler for %s failed", name)
        return invoked

    def filter(
        self,
        event: EventNames,
        payload: Any,
        meta: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> Any:
        for name in _names(event):
            for handler in self._filters.get(name, []):
                result = handler(payload, meta, context)
                if result is not None:
                    payload = result
        return payload


class CollectActions:
    """
    Collector for `bypass_emit_action`: buffers action events instead of firing them.

    Lets an outer operation batch the events of its nested writes and emit
    them itself with `flush()`.
    """

    def __init__(self) -> None:
        self.buffer: List[ActionEventParams] = []

    def __call__(self, params: ActionEventParams) -> None:
        self.buffer.append(params)

    def __len__(self) -> int:
        return len(self.buffer)

    def flush(self, bus: EventBus) -> int:
        pending, self.buffer = self.buffer, []
        return sum(bus.emit(p.event, p.meta, p.context) for p in pending)
