from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LatestValueChannel(Generic[T]):
    """
    Single-slot broadcast channel: publishing overwrites, readers always see
    the newest value and never a backlog.

    Readers either poll `wait(since)` with the last version they saw, or
    register a callback that runs on the publishing thread.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._value: T | None = None
        self._version = 0
        self._closed = False
        self._subscribers: list[Callable[[T], None]] = []

    @property
    def version(self) -> int:
        return self._version

    @property
    def closed(self) -> bool:
        return self._closed

    def latest(self) -> T | None:
        with self._cond:
            return self._value

    def publish(self, value: T) -> None:
        with self._cond:
            if self._closed:
                return
            self._value = value
            self._version += 1
            subscribers = list(self._subscribers)
            self._cond.notify_all()
        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                logger.exception("channel subscriber failed")

    def wait(self, since: int = 0, timeout: float | None = None) -> tuple[int, T | None]:
        """Block until a value newer than `since` exists; returns (version, value)."""
        with self._cond:
            self._cond.wait_for(lambda: self._version > since or self._closed, timeout)
            return self._version, self._value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        with self._cond:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._cond:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._subscribers.clear()
            self._cond.notify_all()
