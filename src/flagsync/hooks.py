from __future__ import annotations
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Literal


logger = logging.getLogger(__name__)

type HookEvent = Literal["client_ready", "config_fetched", "config_changed", "flag_evaluated"]

_events = ("client_ready", "config_fetched", "config_changed", "flag_evaluated")


class Hooks:
    """
    Listeners for client events:

    client_ready(cache_state): the client finished initializing.
    config_fetched(refresh_result, initiated_by_user): a fetch attempt completed.
    config_changed(config): a new config was received or synced from the cache.
    flag_evaluated(details): a setting was evaluated.

    Exceptions raised by listeners are logged and otherwise ignored.
    """

    def __init__(self):
        self._listeners: dict[str, list[tuple[Callable[..., Any], bool]]] = defaultdict(list)

    @staticmethod
    def _check_event(event: str):
        if event not in _events:
            raise ValueError(f"unknown event {event!r}, must be one of {', '.join(_events)}")

    def on(self, event: HookEvent, listener: Callable[..., Any]) -> Hooks:
        self._check_event(event)
        self._listeners[event].append((listener, False))
        return self

    def once(self, event: HookEvent, listener: Callable[..., Any]) -> Hooks:
        self._check_event(event)
        self._listeners[event].append((listener, True))
        return self

    def off(self, event: HookEvent, listener: Callable[..., Any]) -> Hooks:
        """
        Remove the first registration of the listener for the event.
        """
        self._check_event(event)
        listeners = self._listeners[event]
        for i, (fn, _) in enumerate(listeners):
            if fn == listener:
                del listeners[i]
                break
        return self

    def clear(self):
        self._listeners.clear()

    def emit(self, event: HookEvent, *args: Any):
        listeners = self._listeners.get(event)
        if not listeners:
            return
        # Listeners may register or remove listeners while being called.
        self._listeners[event] = [(fn, once) for fn, once in listeners if not once]
        for fn, _ in list(listeners):
            try:
                fn(*args)
            except Exception:
                logger.exception("Error in %s listener", event)
