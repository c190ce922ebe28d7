"""Session manager: connection state machine, retries and health checks.

One `SessionManager` owns one `Transport`. Every transport-mutating call
(connect, disconnect, write) goes through a single lock, and the connect
attempt, reconnect loop and health check are tasks owned by the session so
`disconnect()` can cancel all of them before releasing the link.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Union

from .bus import EventBus, Unsubscribe
from .codec import WireCodec
from .config import SessionConfig
from .const import EVENT_STATE_CHANGED
from .exceptions import (
    AfterburnerError,
    ConnectTimeoutError,
    DecodeError,
    DeviceNotFoundError,
    NotConnectedError,
    TransportRejectedError,
)
from .models import ConnectionState, DeviceHandle, Frame, InboundMessage, OutboundMessage
from .transport import Transport

_LOGGER = logging.getLogger(__name__)

ReadyHook = Callable[[], Awaitable[None]]
MessageHandler = Callable[[InboundMessage], None]

# 已建立会话期间允许做通道读写/订阅的状态
_LINK_STATES = (ConnectionState.CONNECTING, ConnectionState.RECONNECTING, ConnectionState.READY)
_BUSY_STATES = (
    ConnectionState.SCANNING,
    ConnectionState.CONNECTING,
    ConnectionState.READY,
    ConnectionState.RECONNECTING,
)


class SessionManager:
    """管理单个设备会话的连接状态机"""

    def __init__(self, transport: Transport, codec: WireCodec, config: Optional[SessionConfig] = None,
                 bus: Optional[EventBus] = None):
        self.transport = transport
        self.codec = codec
        self.config = config or SessionConfig()
        self.bus = bus or EventBus()
        self.device: Optional[DeviceHandle] = None
        self.last_error: Optional[AfterburnerError] = None
        self._state = ConnectionState.IDLE
        self._lock = asyncio.Lock()  # 串行化 connect/disconnect/write
        self._generation = 0
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._ready_hooks: List[ReadyHook] = []
        self._message_handlers: List[MessageHandler] = []
        transport.set_callbacks(self._on_receive, self._on_transport_lost)

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    def current_state(self) -> ConnectionState:
        return self._state

    def subscribe_state(self, callback: Callable[[ConnectionState], None]) -> Unsubscribe:
        return self.bus.async_listen(EVENT_STATE_CHANGED, callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        _LOGGER.info(f"Session state {self._state.value} -> {state.value}")
        self._state = state
        self.bus.async_fire(EVENT_STATE_CHANGED, state)

    def add_ready_hook(self, hook: ReadyHook) -> Callable[[], None]:
        """Run `hook` after every (re)connect, before the session reports READY."""
        self._ready_hooks.append(hook)
        return lambda: self._ready_hooks.remove(hook) if hook in self._ready_hooks else None

    def add_message_handler(self, handler: MessageHandler) -> Callable[[], None]:
        self._message_handlers.append(handler)
        return lambda: self._message_handlers.remove(handler) if handler in self._message_handlers else None

    # ------------------------------------------------------------------
    # 连接 / 断开
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectionState:
        """Connect and wait until the session is READY or FAILED.

        A call while an attempt is already in flight or the session is up
        returns the current state without starting a second attempt.
        """
        await self._wait_teardown()
        if self._state in _BUSY_STATES:
            _LOGGER.debug(f"connect() ignored while {self._state.value}")
            return self._state

        self._generation += 1
        self.last_error = None
        self._set_state(ConnectionState.SCANNING)
        task = asyncio.get_running_loop().create_task(self._establish(self._generation))
        self._connect_task = task
        await asyncio.wait({task})
        await self._wait_teardown()
        return self._state

    async def disconnect(self) -> None:
        """Cancel timers and subscriptions, then release the transport.

        Idempotent and always ends in IDLE.
        """
        if self._teardown_task is None or self._teardown_task.done():
            self._teardown_task = asyncio.get_running_loop().create_task(self._teardown())
        await asyncio.shield(self._teardown_task)

    async def _wait_teardown(self) -> None:
        task = self._teardown_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _teardown(self) -> None:
        self._generation += 1
        current = asyncio.current_task()
        tasks = [
            task for task in (self._connect_task, self._reconnect_task, self._health_task)
            if task is not None and not task.done() and task is not current
        ]
        self._connect_task = self._reconnect_task = self._health_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._release_transport()
        self.device = None
        self._set_state(ConnectionState.IDLE)
        _LOGGER.info("Session closed")

    async def _release_transport(self) -> None:
        async with self._lock:
            try:
                await self.transport.disconnect()
            except Exception as e:
                # 尽力释放，不向上抛出
                _LOGGER.debug(f"Error releasing transport: {e}")

    async def _establish(self, generation: int) -> None:
        try:
            await self._open_link(initial=True)
        except AfterburnerError as err:
            await self._fail(generation, err)
            return
        except Exception as e:
            _LOGGER.exception(f"Unexpected error while connecting: {e}")
            await self._fail(generation, TransportRejectedError(str(e)))
            return

        if generation != self._generation:
            return
        self._set_state(ConnectionState.READY)
        self._start_health_check()

    async def _open_link(self, initial: bool) -> None:
        handle = await self._scan()
        if initial:
            self._set_state(ConnectionState.CONNECTING)

        timeout = self.config.connect_timeout
        async with self._lock:
            try:
                await asyncio.wait_for(self.transport.connect(handle, timeout), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise ConnectTimeoutError(f"Connecting to {handle.name} timed out after {timeout}s") from e
        self.device = handle

        await self._run_ready_hooks()
        if not self.transport.is_connected:
            raise TransportRejectedError(f"Connection to {handle.name} lost during setup")

    async def _scan(self) -> DeviceHandle:
        timeout = self.config.scan_timeout
        try:
            handle = await asyncio.wait_for(self.transport.scan(timeout), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DeviceNotFoundError(f"{self.config.name} not found within {timeout}s") from e
        if handle is None:
            raise DeviceNotFoundError(f"{self.config.name} not found within {timeout}s")
        return handle

    async def _run_ready_hooks(self) -> None:
        for hook in list(self._ready_hooks):
            try:
                await hook()
            except AfterburnerError as e:
                _LOGGER.warning(f"Session setup step {hook!r} failed: {e}")

    async def _fail(self, generation: int, err: AfterburnerError) -> None:
        if generation != self._generation:
            return
        self._stop_health_check()
        await self._release_transport()
        if generation != self._generation:
            return
        self.last_error = err
        self.device = None
        self._set_state(ConnectionState.FAILED)
        _LOGGER.error(f"Session failed ({err.kind.value}): {err}")

    # ------------------------------------------------------------------
    # 断线重连
    # ------------------------------------------------------------------

    def _on_transport_lost(self) -> None:
        """连接意外断开时由传输层回调"""
        if self._teardown_task is not None and not self._teardown_task.done():
            return
        if self._state is not ConnectionState.READY:
            return
        self._begin_reconnect(TransportRejectedError("Connection lost unexpectedly"))

    def _begin_reconnect(self, reason: AfterburnerError) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        _LOGGER.warning(f"Connection lost ({reason}), starting reconnect")
        self._stop_health_check()
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop(self._generation, reason)
        )

    async def _reconnect_loop(self, generation: int, reason: AfterburnerError) -> None:
        """有上限的自动重连"""
        attempts = self.config.retry_attempts
        last_error = reason
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self.config.retry_delay)
            if generation != self._generation:
                return
            _LOGGER.info(f"Reconnect attempt {attempt}/{attempts}")
            try:
                await self._release_transport()
                await self._open_link(initial=False)
            except AfterburnerError as err:
                last_error = err
                _LOGGER.warning(f"Reconnect attempt {attempt}/{attempts} failed: {err}")
                continue
            except Exception as e:
                last_error = TransportRejectedError(str(e))
                _LOGGER.exception(f"Unexpected error during reconnect attempt {attempt}: {e}")
                continue

            if generation != self._generation:
                return
            _LOGGER.info(f"Reconnected after {attempt} attempt(s)")
            self._set_state(ConnectionState.READY)
            self._start_health_check()
            return

        await self._fail(generation, last_error)

    # ------------------------------------------------------------------
    # 心跳
    # ------------------------------------------------------------------

    def _start_health_check(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop(self._generation))

    def _stop_health_check(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _health_loop(self, generation: int) -> None:
        while generation == self._generation and self._state is ConnectionState.READY:
            await asyncio.sleep(self.config.keep_alive_interval)
            if generation != self._generation or self._state is not ConnectionState.READY:
                return
            try:
                async with self._lock:
                    await asyncio.wait_for(self.transport.ping(), timeout=self.config.health_check_timeout)
            except asyncio.TimeoutError:
                error = ConnectTimeoutError("Health check timed out")
            except AfterburnerError as err:
                error = err
            else:
                _LOGGER.debug("Health check ok")
                continue

            _LOGGER.warning(f"Health check failed: {error}")
            if generation == self._generation and self._state is ConnectionState.READY:
                self._begin_reconnect(error)
            return

    # ------------------------------------------------------------------
    # 收发
    # ------------------------------------------------------------------

    async def send(self, message: OutboundMessage) -> None:
        """Encode `message` and write every resulting frame in order."""
        for frame in self.codec.encode(message):
            await self.write_frame(frame)

    async def write_frame(self, frame: Frame) -> None:
        if self._state is not ConnectionState.READY:
            raise NotConnectedError(f"Cannot send while {self._state.value}")
        async with self._lock:
            if self._state is not ConnectionState.READY:
                raise NotConnectedError(f"Cannot send while {self._state.value}")
            try:
                await self.transport.write(frame.channel, frame.payload)
            except AfterburnerError:
                if not self.transport.is_connected:
                    self._on_transport_lost()
                raise

    def _require_link(self) -> None:
        if self._state not in _LINK_STATES or not self.transport.is_connected:
            raise NotConnectedError(f"No open link while {self._state.value}")

    async def read(self, channel: str) -> bytes:
        self._require_link()
        return await self.transport.read(channel)

    async def start_notify(self, channel: str) -> None:
        self._require_link()
        await self.transport.start_notify(channel)

    async def stop_notify(self, channel: str) -> None:
        if self._state not in _LINK_STATES or not self.transport.is_connected:
            return
        await self.transport.stop_notify(channel)

    def _on_receive(self, channel: str, payload: Union[bytes, str]) -> None:
        try:
            message = self.codec.decode(channel, payload)
        except DecodeError as e:
            _LOGGER.warning(f"Dropping malformed frame on {channel}: {e} (raw: {payload!r})")
            return
        if message is None:
            return
        for handler in list(self._message_handlers):
            try:
                handler(message)
            except Exception:
                _LOGGER.exception(f"Message handler {handler!r} raised")
