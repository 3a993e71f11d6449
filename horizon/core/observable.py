# horizon/core/observable.py
"""
Minimal publish/subscribe for engine state.

The engine calls `notify(state)` after each mutation; consumers (the HTTP
layer, tests) register plain callables.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class StateObserver:
    """In-process listener registry."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, state: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:
                logger.error("State listener %r failed: %s", listener, exc)

    def __len__(self) -> int:
        return len(self._listeners)
