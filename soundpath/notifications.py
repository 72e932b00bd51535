from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeHandler = Callable[[dict[str, Any]], None]


class ChangeFeed:
    """Per-table change notifications published by the store after a committed write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, dict[str, ChangeHandler]] = {}

    def subscribe(self, table: str, handler: ChangeHandler) -> Callable[[], None]:
        token = uuid.uuid4().hex
        with self._lock:
            self._subscribers.setdefault(table, {})[token] = handler

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.get(table, {}).pop(token, None)

        return _unsubscribe

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, {}))

    def publish(self, table: str, *, change_type: str, record_id: str) -> None:
        with self._lock:
            handlers = list(self._subscribers.get(table, {}).values())
        event = {"table": table, "type": change_type, "record_id": record_id}
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("change handler failed table=%s record_id=%s", table, record_id)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()


class Observable(Generic[T]):
    def __init__(self, value: T) -> None:
        self._value = value
        self._observers: dict[str, Callable[[T], None]] = {}

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for observer in list(self._observers.values()):
            observer(value)

    def subscribe(self, observer: Callable[[T], None]) -> Callable[[], None]:
        token = uuid.uuid4().hex
        self._observers[token] = observer

        def _unsubscribe() -> None:
            self._observers.pop(token, None)

        return _unsubscribe
