"""
Listener interface between the core and its observers.

Components emit named events; observers (the security monitor, audit
sinks) subscribe. Emitters never depend on a listener's outcome.
"""

import logging
from collections import defaultdict
from concurrent.futures import Executor
from typing import Callable, Optional

logger = logging.getLogger(__name__)

STORAGE_OPERATION = "storage_operation"
AUTH_EVENT = "auth_event"
SESSION_TERMINATED = "session_terminated"


class EventBus:
    def __init__(self, executor: Optional[Executor] = None):
        self._listeners: dict[str, list[Callable]] = defaultdict(list)
        self._executor = executor

    def subscribe(self, event: str, listener: Callable) -> None:
        self._listeners[event].append(listener)

    def unsubscribe(self, event: str, listener: Callable) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def emit(self, event: str, /, **payload) -> None:
        for listener in list(self._listeners.get(event, ())):
            if self._executor is not None:
                self._executor.submit(self._dispatch, event, listener, payload)
            else:
                self._dispatch(event, listener, payload)

    @staticmethod
    def _dispatch(event: str, listener: Callable, payload: dict) -> None:
        try:
            listener(**payload)
        except Exception:
            logger.exception(f"Listener for '{event}' failed")
