"""Connection manager for the single physical change-feed connection.

This module owns the one transport shared by every logical channel. It
exposes connect/disconnect, the connection state machine, frame listeners
and state-change callbacks, and implements automatic reconnection with
capped exponential backoff.

State machine:
    disconnected -> connecting -> connected -> disconnected (error|closed)
    After max_attempts failed reconnects: reconnect_exhausted (terminal until
    an explicit connect()).

Thread Safety:
    Designed for a single asyncio event loop. Concurrent connect() calls share
    one in-flight attempt instead of opening a second transport.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from livesync.config import RealtimeSettings
from livesync.errors import ConnectionTimeout, NotConnected, ReconnectExhausted, TransportError

from .schemas import ConnectionState, ReconnectState, StateChange
from .transport import Transport

logger = logging.getLogger(__name__)

StateCallback = Callable[[StateChange], None]
FrameListener = Callable[[Dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[None]]

# Default policy; normally overridden from RealtimeSettings
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000
DEFAULT_MAX_ATTEMPTS = 5


class ConnectionManager:
    """Owns the transport, its lifecycle and the reconnect policy.

    Only this class may open or close the transport. SubscriptionRegistry
    listens to state changes to re-join channels after a recovery.
    """

    def __init__(
        self,
        transport: Transport,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self.connect_timeout = connect_timeout
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._reconnect = ReconnectState(max_attempts=max_attempts)
        self._has_connected = False

        self._state_callbacks: List[StateCallback] = []
        self._frame_listeners: List[FrameListener] = []

        # Shared attempt awaited by every concurrent connect() caller
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._confirmed: Optional[asyncio.Future] = None
        # Close reported after confirmation but before _open resumed
        self._lost_during_open: Optional[BaseException] = None

    @classmethod
    def from_settings(
        cls,
        transport: Transport,
        settings: RealtimeSettings,
        sleep: Sleep = asyncio.sleep,
    ) -> "ConnectionManager":
        return cls(
            transport,
            connect_timeout=settings.connect_timeout_seconds,
            base_delay_ms=settings.reconnect.base_delay_ms,
            max_delay_ms=settings.reconnect.max_delay_ms,
            max_attempts=settings.reconnect.max_attempts,
            sleep=sleep,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_state(self) -> ReconnectState:
        """Snapshot of the reconnect counters."""
        return ReconnectState(
            attempts=self._reconnect.attempts,
            delay_ms=self._reconnect.delay_ms,
            max_attempts=self._reconnect.max_attempts,
        )

    @property
    def reconnect_pending(self) -> bool:
        """True while an automatic reconnect is scheduled or running."""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.base_delay_ms * 2 ** (attempt - 1), self.max_delay_ms)

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Register a callback invoked synchronously on every transition.

        Returns:
            A disposer that removes the callback.
        """
        self._state_callbacks.append(callback)

        def dispose() -> None:
            if callback in self._state_callbacks:
                self._state_callbacks.remove(callback)

        return dispose

    def add_frame_listener(self, listener: FrameListener) -> Callable[[], None]:
        """Register a listener for every inbound frame (except the handshake)."""
        self._frame_listeners.append(listener)

        def dispose() -> None:
            if listener in self._frame_listeners:
                self._frame_listeners.remove(listener)

        return dispose

    def _set_state(
        self, new_state: ConnectionState, error: Optional[BaseException] = None
    ) -> None:
        previous = self._state
        if previous is new_state and error is None:
            return

        recovered = new_state is ConnectionState.CONNECTED and self._has_connected
        if new_state is ConnectionState.CONNECTED:
            self._has_connected = True
        self._state = new_state

        change = StateChange(
            previous=previous, current=new_state, error=error, recovered=recovered
        )
        logger.info(
            f"[Connection] {previous.value} -> {new_state.value}"
            + (f" ({error})" if error else "")
        )
        for callback in list(self._state_callbacks):
            try:
                callback(change)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(f"[Connection] State callback failed: {exc}")

    # =========================================================================
    # Connect / disconnect
    # =========================================================================

    async def connect(self) -> None:
        """Open the connection and wait for the server confirmation.

        Idempotent: returns immediately when connected, and joins the
        in-flight attempt when one is already running. Called from
        ``disconnected`` or ``reconnect_exhausted`` it cancels any scheduled
        reconnect and starts over with a fresh retry budget.

        Raises:
            ConnectionTimeout: If no confirmation arrives within connect_timeout.
            TransportError: If the transport cannot be opened.
        """
        if self._state is ConnectionState.CONNECTED:
            return

        if self._connect_task is not None and not self._connect_task.done():
            await asyncio.shield(self._connect_task)
            return

        self._cancel_reconnect()
        self._reconnect.reset()
        self._connect_task = asyncio.create_task(self._open())
        await asyncio.shield(self._connect_task)

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self._confirmed = asyncio.get_running_loop().create_future()
        self._lost_during_open = None
        try:
            await asyncio.wait_for(self._open_and_confirm(), timeout=self.connect_timeout)
            if self._lost_during_open is not None:
                raise TransportError(
                    f"Connection closed right after confirmation: {self._lost_during_open}"
                )
        except asyncio.TimeoutError:
            await self._transport.close()
            error = ConnectionTimeout(self.connect_timeout)
            self._set_state(ConnectionState.DISCONNECTED, error=error)
            raise error from None
        except TransportError as exc:
            await self._transport.close()
            self._set_state(ConnectionState.DISCONNECTED, error=exc)
            raise
        except Exception as exc:
            await self._transport.close()
            error = TransportError(f"Transport failed to open: {exc}")
            self._set_state(ConnectionState.DISCONNECTED, error=error)
            raise error from exc
        finally:
            self._confirmed = None
            self._lost_during_open = None

        self._reconnect.reset()
        self._set_state(ConnectionState.CONNECTED)

    async def _open_and_confirm(self) -> None:
        await self._transport.open(self._handle_frame, self._handle_close)
        await self._confirmed

    async def disconnect(self) -> None:
        """Close the transport and stop any reconnection.

        Cancels the pending reconnect timer and any in-flight connect, and
        clears the reconnect counters. Never schedules a reconnect.
        """
        self._cancel_reconnect()
        task, self._connect_task = self._connect_task, None
        if task is not None and not task.done():
            task.cancel()
        await self._transport.close()
        self._reconnect.reset()
        self._set_state(ConnectionState.DISCONNECTED)

    async def send(self, frame: Dict[str, Any]) -> None:
        """Send a frame over the live connection.

        Raises:
            NotConnected: If the connection is not in the connected state.
        """
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnected()
        await self._transport.send(frame)

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        if frame.get("type") == "connected":
            if self._confirmed is not None and not self._confirmed.done():
                self._confirmed.set_result(None)
            return

        for listener in list(self._frame_listeners):
            try:
                listener(frame)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(f"[Connection] Frame listener failed: {exc}")

    def _handle_close(self, error: Optional[BaseException]) -> None:
        if self._confirmed is not None and not self._confirmed.done():
            self._confirmed.set_exception(
                TransportError(f"Connection closed before confirmation: {error}")
            )
            return

        if self._confirmed is not None:
            self._lost_during_open = error or TransportError("Connection closed by remote")
            return

        if self._state is not ConnectionState.CONNECTED:
            return

        logger.warning(f"[Connection] Connection lost: {error}")
        self._set_state(
            ConnectionState.DISCONNECTED,
            error=error or TransportError("Connection closed by remote"),
        )
        self._schedule_reconnect()

    # =========================================================================
    # Reconnection
    # =========================================================================

    def _schedule_reconnect(self) -> None:
        if self._reconnect.attempts >= self._reconnect.max_attempts:
            error = ReconnectExhausted(self._reconnect.attempts)
            logger.error(f"[Connection] {error}")
            self._set_state(ConnectionState.RECONNECT_EXHAUSTED, error=error)
            return

        self._reconnect.attempts += 1
        delay_ms = self.backoff_delay_ms(self._reconnect.attempts)
        self._reconnect.delay_ms = delay_ms
        logger.info(
            f"[Connection] Reconnect attempt {self._reconnect.attempts}/"
            f"{self._reconnect.max_attempts} in {delay_ms}ms"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_ms / 1000))

    async def _reconnect_after(self, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)

        self._connect_task = asyncio.create_task(self._open())
        try:
            await self._connect_task
        except (ConnectionTimeout, TransportError) as exc:
            logger.warning(f"[Connection] Reconnect attempt failed: {exc}")
            self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
