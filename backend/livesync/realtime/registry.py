"""Reference-counted channel subscriptions over the single connection.

Key features:
    - One underlying channel per key, shared by every consumer of that key
    - Fan-out: each consumer receives every event independently
    - Teardown (leave frame, worker stop) when the last consumer unsubscribes
    - Re-join of every live channel after the connection recovers
    - Per-channel FIFO delivery, so enrichment awaits cannot reorder a channel

The registry is the only writer of reference counts. All mutation happens on
the event loop; subscribe() and unsubscribe() are synchronous and schedule
the network side as tasks.
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING, Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Union,
)

from livesync.errors import RealtimeError, SubscriptionRejected

from .channels import ChannelSpec, parse_channel_key
from .connection import ConnectionManager
from .schemas import ConnectionState, EventType, StateChange

if TYPE_CHECKING:
    from .event_router import EventRouter

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHANNELS = 100

Handler = Callable[..., Union[None, Awaitable[None]]]


@dataclass
class ChannelHandlers:
    """Callbacks a consumer registers for one channel.

    Each callback receives the ChangeEvent (or Signal for ``on_signal``).
    ``on_event`` is the fallback when the type-specific callback is unset.
    Callbacks may be plain functions or coroutine functions.
    """
    on_insert: Optional[Handler] = None
    on_update: Optional[Handler] = None
    on_delete: Optional[Handler] = None
    on_event: Optional[Handler] = None
    on_signal: Optional[Handler] = None
    on_error: Optional[Callable[[BaseException], Any]] = None


class Consumer:
    """One subscriber's registration on a channel."""

    _ids = itertools.count(1)

    def __init__(self, key: str, handlers: ChannelHandlers, filters: FrozenSet[EventType]) -> None:
        self.id = next(self._ids)
        self.key = key
        self.handlers = handlers
        self.filters = filters
        self.active = True

    def accepts(self, event_type: EventType) -> bool:
        return self.active and event_type in self.filters


class ChannelSubscription:
    """Underlying channel for one key, alive while ref_count > 0."""

    def __init__(self, spec: ChannelSpec) -> None:
        self.spec = spec
        self.key = spec.key
        self.consumers: Dict[int, Consumer] = {}
        self.filters: FrozenSet[EventType] = frozenset()
        self.joined = False
        self.rejection: Optional[SubscriptionRejected] = None
        # Set whenever waiters in SubscriptionHandle.ready() should re-check
        self.settled = asyncio.Event()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker: Optional[asyncio.Task] = None
        self.join_task: Optional[asyncio.Task] = None

    @property
    def ref_count(self) -> int:
        return len(self.consumers)

    def active_consumers(self) -> List[Consumer]:
        return [c for c in self.consumers.values() if c.active]


class SubscriptionHandle:
    """Disposable capability returned by subscribe().

    Call ``unsubscribe()`` (or leave the ``with`` block) when the consumer
    goes away; otherwise the channel's ref-count never reaches zero.
    """

    def __init__(self, registry: "SubscriptionRegistry", channel: ChannelSubscription, consumer: Consumer) -> None:
        self._registry = registry
        self._channel = channel
        self._consumer = consumer

    @property
    def key(self) -> str:
        return self._consumer.key

    @property
    def active(self) -> bool:
        return self._consumer.active

    async def ready(self, timeout: Optional[float] = None) -> None:
        """Wait until the underlying channel has been joined.

        Raises:
            SubscriptionRejected: If this handle has been released, or the
                server rejected the channel before it was joined.
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        await asyncio.wait_for(self._wait_joined(), timeout=timeout)

    async def _wait_joined(self) -> None:
        channel = self._channel
        while True:
            if not self.active:
                raise SubscriptionRejected(self.key, "subscription was released")
            if channel.joined:
                return
            if channel.rejection is not None:
                raise channel.rejection
            channel.settled.clear()
            await channel.settled.wait()

    def unsubscribe(self) -> None:
        """Stop delivery to this consumer; idempotent."""
        self._registry._release(self._channel, self._consumer)

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class SubscriptionRegistry:
    """Maps channel keys to ref-counted subscriptions on one connection."""

    def __init__(
        self,
        connection: ConnectionManager,
        router: "EventRouter",
        max_channels: int = DEFAULT_MAX_CHANNELS,
    ) -> None:
        self._connection = connection
        self._router = router
        self.max_channels = max_channels
        self._channels: Dict[str, ChannelSubscription] = {}
        self._tasks: Set[asyncio.Task] = set()

        self._dispose_state = connection.on_state_change(self._on_state_change)
        self._dispose_frames = connection.add_frame_listener(self._on_frame)

    # =========================================================================
    # Public API
    # =========================================================================

    def subscribe(
        self,
        key: str,
        handlers: ChannelHandlers,
        filters: Optional[Iterable[Union[EventType, str]]] = None,
    ) -> SubscriptionHandle:
        """Register a consumer for ``key``.

        Must be called from a running event loop. The first consumer of a key
        creates the channel and schedules its join (connecting first if
        needed); later consumers share it.

        Args:
            key: Channel key from the channel namespace.
            handlers: Callbacks for this consumer.
            filters: Event types this consumer wants; all by default.

        Returns:
            SubscriptionHandle whose unsubscribe() releases this consumer.

        Raises:
            SubscriptionRejected: Malformed key, empty filter set, or the
                channel quota is exhausted.
        """
        spec = parse_channel_key(key)
        wanted = self._normalize_filters(spec, filters)

        channel = self._channels.get(key)
        if channel is None:
            if len(self._channels) >= self.max_channels:
                raise SubscriptionRejected(
                    key, f"maximum of {self.max_channels} concurrent channels reached"
                )
            channel = ChannelSubscription(spec)
            self._channels[key] = channel
            channel.worker = asyncio.create_task(self._drain(channel))
            logger.info(f"[Registry] Channel created: {key}")

        consumer = Consumer(key, handlers, wanted)
        channel.consumers[consumer.id] = consumer

        widened = not wanted.issubset(channel.filters)
        channel.filters = channel.filters | wanted
        logger.debug(f"[Registry] {key} ref_count={channel.ref_count}")

        if channel.ref_count == 1:
            self._spawn(self._activate(channel))
        elif widened and channel.joined:
            self._spawn(self._join(channel))

        return SubscriptionHandle(self, channel, consumer)

    def active_subscription_count(self) -> int:
        """Number of live underlying channels."""
        return len(self._channels)

    def consumer_count(self, key: str) -> int:
        channel = self._channels.get(key)
        return channel.ref_count if channel else 0

    def keys(self) -> List[str]:
        return list(self._channels.keys())

    def is_joined(self, key: str) -> bool:
        channel = self._channels.get(key)
        return bool(channel and channel.joined)

    async def close(self) -> None:
        """Tear down every channel and detach from the connection."""
        for channel in list(self._channels.values()):
            for consumer in list(channel.consumers.values()):
                self._release(channel, consumer)
        self._dispose_state()
        self._dispose_frames()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Consumer release
    # =========================================================================

    def _release(self, channel: ChannelSubscription, consumer: Consumer) -> None:
        if not consumer.active:
            return
        consumer.active = False
        channel.consumers.pop(consumer.id, None)
        channel.settled.set()
        logger.debug(f"[Registry] {channel.key} ref_count={channel.ref_count}")

        if channel.ref_count > 0:
            return

        # Last consumer gone: tear the underlying channel down
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        if channel.worker is not None:
            channel.worker.cancel()
        if channel.join_task is not None and not channel.join_task.done():
            channel.join_task.cancel()
        was_joined = channel.joined
        channel.joined = False
        logger.info(f"[Registry] Channel torn down: {channel.key}")

        if was_joined and self._connection.is_connected:
            self._spawn(self._leave(channel.key))

    # =========================================================================
    # Joining
    # =========================================================================

    async def _activate(self, channel: ChannelSubscription) -> None:
        state = self._connection.state
        if state is ConnectionState.CONNECTED:
            self._ensure_joined(channel)
            return
        if state is ConnectionState.RECONNECT_EXHAUSTED:
            logger.warning(
                f"[Registry] {channel.key} waiting for an explicit reconnect "
                f"(automatic reconnection exhausted)"
            )
            return
        if self._connection.reconnect_pending:
            # Joined by _on_state_change once the reconnect succeeds
            return

        try:
            await self._connection.connect()
        except RealtimeError as exc:
            logger.warning(f"[Registry] Could not connect for {channel.key}: {exc}")
            self._notify_error(channel, exc)
            return

        if self._channels.get(channel.key) is channel:
            self._ensure_joined(channel)

    def _ensure_joined(self, channel: ChannelSubscription) -> None:
        if channel.joined:
            return
        if channel.join_task is not None and not channel.join_task.done():
            return
        channel.join_task = self._spawn(self._join(channel))

    async def _join(self, channel: ChannelSubscription) -> None:
        filters = channel.filters
        frame = {
            "type": "join",
            "topic": channel.key,
            "bindings": channel.spec.bindings(),
            "events": sorted(e.value for e in filters),
        }
        try:
            await self._connection.send(frame)
        except RealtimeError as exc:
            logger.warning(f"[Registry] Join failed for {channel.key}: {exc}")
            return

        if self._channels.get(channel.key) is not channel:
            return
        channel.joined = True
        channel.rejection = None
        channel.settled.set()
        logger.info(f"[Registry] Joined {channel.key} events={frame['events']}")

        # A consumer widened the filters while the join was in flight
        if channel.filters != filters:
            await self._join(channel)

    async def _leave(self, key: str) -> None:
        try:
            await self._connection.send({"type": "leave", "topic": key})
        except RealtimeError as exc:
            logger.debug(f"[Registry] Leave for {key} not sent: {exc}")

    def _on_state_change(self, change: StateChange) -> None:
        if change.current is ConnectionState.CONNECTED:
            pending = [c for c in self._channels.values() if c.ref_count > 0 and not c.joined]
            if change.recovered and pending:
                logger.info(f"[Registry] Re-joining {len(pending)} channels after reconnect")
            for channel in pending:
                self._ensure_joined(channel)
            return

        if change.previous is ConnectionState.CONNECTED:
            # Server-side channel state is gone with the transport
            for channel in self._channels.values():
                channel.joined = False

    # =========================================================================
    # Inbound frames
    # =========================================================================

    def _on_frame(self, frame: Dict[str, Any]) -> None:
        topic = frame.get("topic")
        channel = self._channels.get(topic) if isinstance(topic, str) else None
        if channel is None:
            logger.debug(f"[Registry] Frame for unknown topic {topic!r} dropped")
            return

        frame_type = frame.get("type")
        if frame_type in ("change", "broadcast"):
            channel.queue.put_nowait((time.time(), frame))
        elif frame_type == "error":
            channel.joined = False
            error = SubscriptionRejected(channel.key, str(frame.get("message", "rejected by server")))
            channel.rejection = error
            channel.settled.set()
            logger.warning(f"[Registry] {error}")
            self._notify_error(channel, error)
        else:
            logger.debug(f"[Registry] Ignoring frame type {frame_type!r} on {topic}")

    async def _drain(self, channel: ChannelSubscription) -> None:
        while True:
            received_at, frame = await channel.queue.get()
            try:
                if frame.get("type") == "broadcast":
                    await self._router.route_signal(channel, frame, received_at)
                else:
                    await self._router.route(channel, frame, received_at)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(f"[Registry] Routing failed on {channel.key}: {exc}")

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _normalize_filters(
        spec: ChannelSpec,
        filters: Optional[Iterable[Union[EventType, str]]],
    ) -> FrozenSet[EventType]:
        if spec.is_broadcast:
            return frozenset()
        if filters is None:
            return spec.event_types
        try:
            wanted = frozenset(EventType(str(getattr(f, "value", f)).upper()) for f in filters)
        except ValueError as exc:
            raise SubscriptionRejected(spec.key, f"invalid event filter: {exc}") from exc
        wanted = wanted & spec.event_types
        if not wanted:
            raise SubscriptionRejected(spec.key, "filters exclude every event this channel carries")
        return wanted

    def _notify_error(self, channel: ChannelSubscription, error: BaseException) -> None:
        for consumer in channel.active_consumers():
            if consumer.handlers.on_error is None:
                continue
            try:
                consumer.handlers.on_error(error)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(f"[Registry] on_error handler failed on {channel.key}: {exc}")

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
