"""Small publish/subscribe registry keyed by event type."""
import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Optional

_LOGGER = logging.getLogger(__name__)

_MISSING = object()


class Unsubscribe:
    """Callable token returned by `EventBus.async_listen`; calling it twice is a no-op."""

    def __init__(self, bus: "EventBus", event_type: str, token: int):
        self._bus = bus
        self._event_type = event_type
        self._token = token
        self._done = False

    @property
    def active(self) -> bool:
        return not self._done

    def __call__(self) -> None:
        if self._done:
            return
        self._done = True
        self._bus._remove(self._event_type, self._token)


class _Listener:
    """One subscriber; coroutine callbacks only ever see the newest pending value."""

    def __init__(self, callback: Callable[[Any], Any]):
        self.callback = callback
        self.is_coroutine = asyncio.iscoroutinefunction(callback)
        self._pending = _MISSING
        self._task: Optional[asyncio.Task] = None

    def deliver(self, data: Any) -> None:
        if not self.is_coroutine:
            try:
                self.callback(data)
            except Exception:
                _LOGGER.exception(f"Listener {self.callback!r} raised")
            return

        self._pending = data
        if self._task is None or self._task.done():
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                _LOGGER.debug("No running loop, dropping async delivery")
                self._pending = _MISSING
                return
            self._task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending is not _MISSING:
            data, self._pending = self._pending, _MISSING
            try:
                await self.callback(data)
            except Exception:
                _LOGGER.exception(f"Listener {self.callback!r} raised")

    def cancel(self) -> None:
        self._pending = _MISSING
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class EventBus:
    """Fan-out registry; one instance per controller, no process-wide state."""

    def __init__(self):
        self._listeners: Dict[str, Dict[int, _Listener]] = {}
        self._tokens = itertools.count()
        self._empty_callbacks: Dict[str, Callable[[], None]] = {}

    def async_listen(self, event_type: str, callback: Callable[[Any], Any]) -> Unsubscribe:
        token = next(self._tokens)
        self._listeners.setdefault(event_type, {})[token] = _Listener(callback)
        return Unsubscribe(self, event_type, token)

    def async_fire(self, event_type: str, data: Any = None) -> None:
        """Deliver `data` to every listener without waiting on async ones."""
        for listener in list(self._listeners.get(event_type, {}).values()):
            listener.deliver(data)

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, {}))

    def on_last_listener_removed(self, event_type: str, callback: Callable[[], None]) -> None:
        self._empty_callbacks[event_type] = callback

    def _remove(self, event_type: str, token: int) -> None:
        listeners = self._listeners.get(event_type)
        if not listeners or token not in listeners:
            return
        listeners.pop(token).cancel()
        if not listeners:
            del self._listeners[event_type]
            callback = self._empty_callbacks.get(event_type)
            if callback is not None:
                callback()
