from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict[str, Any]], None]


class ChangeNotifier:
    """Topic based observer owned by whoever builds the execution registry.

    Listeners run synchronously on the publishing thread; a failing listener is
    logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners[topic].append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[topic]:
                    self._listeners[topic].remove(listener)

        return _unsubscribe

    def publish(self, topic: str, payload: dict[str, Any] | None = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(topic, []))
        for listener in listeners:
            try:
                listener(topic, payload or {})
            except Exception:
                logger.exception("change listener failed for topic=%s", topic)
