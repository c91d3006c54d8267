"""Ephemeral typing signals.

Typing indicators travel as broadcast frames on ``typing_<type>_<id>``
channels. They are never persisted and never retried: a lost signal only
means an indicator shows up late or not at all. Receivers hold each signal
for a fixed TTL; a repeated signal from the same user resets that user's
timer instead of stacking a second entry.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from livesync.errors import RealtimeError, SubscriptionRejected

from .channels import ChannelKind, parse_channel_key
from .connection import ConnectionManager
from .registry import ChannelHandlers, SubscriptionHandle, SubscriptionRegistry
from .schemas import Signal

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3.0
TYPING_EVENT = "typing"


@dataclass
class TypingIndicator:
    user_id: str
    username: str
    avatar: Optional[str]
    expires_at: float


def _require_typing_key(key: str) -> None:
    if parse_channel_key(key).kind is not ChannelKind.TYPING:
        raise SubscriptionRejected(key, "not a typing channel")


class TypingWatch:
    """Local view of who is typing on one channel."""

    def __init__(
        self,
        key: str,
        actor_id: Optional[str],
        ttl_seconds: float,
        on_change: Optional[Callable[[List[TypingIndicator]], Any]] = None,
    ) -> None:
        self.key = key
        self._actor_id = actor_id
        self._ttl = ttl_seconds
        self._on_change = on_change
        self._typists: Dict[str, TypingIndicator] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._handle: Optional[SubscriptionHandle] = None

    def active(self) -> List[TypingIndicator]:
        return list(self._typists.values())

    def handle_signal(self, signal: Signal) -> None:
        if signal.event != TYPING_EVENT:
            return
        user_id = signal.payload.get("user_id")
        if not user_id or user_id == self._actor_id:
            return

        user_id = str(user_id)
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()

        self._typists[user_id] = TypingIndicator(
            user_id=user_id,
            username=str(signal.payload.get("username") or "Unknown"),
            avatar=signal.payload.get("avatar"),
            expires_at=time.time() + self._ttl,
        )
        loop = asyncio.get_running_loop()
        self._timers[user_id] = loop.call_later(self._ttl, self._expire, user_id)
        self._notify()

    def _expire(self, user_id: str) -> None:
        self._timers.pop(user_id, None)
        if self._typists.pop(user_id, None) is not None:
            logger.debug(f"[Typing] {user_id} stopped typing on {self.key}")
            self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.active())
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(f"[Typing] on_change for {self.key} failed: {exc}")

    def close(self) -> None:
        """Cancel every timer and release the channel subscription."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._typists.clear()
        if self._handle is not None:
            self._handle.unsubscribe()
            self._handle = None


class EphemeralSignal:
    """Send and watch typing signals for the local actor."""

    def __init__(
        self,
        connection: ConnectionManager,
        registry: SubscriptionRegistry,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._connection = connection
        self._registry = registry
        self.actor_id = actor_id
        self.actor_name = actor_name
        self.ttl_seconds = ttl_seconds

    async def send(self, channel_key: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Broadcast a typing signal; best-effort, fire-and-forget.

        Returns:
            True if the frame was handed to the transport, False if dropped.
        """
        _require_typing_key(channel_key)
        if not self._connection.is_connected:
            logger.debug(f"[Typing] Offline, signal for {channel_key} dropped")
            return False

        body: Dict[str, Any] = {
            "user_id": self.actor_id,
            "username": self.actor_name,
            "sent_at": time.time(),
        }
        body.update(payload or {})
        frame = {"type": "broadcast", "topic": channel_key, "event": TYPING_EVENT, "payload": body}
        try:
            await self._connection.send(frame)
        except RealtimeError as exc:
            logger.debug(f"[Typing] Signal for {channel_key} dropped: {exc}")
            return False
        return True

    def watch(
        self,
        channel_key: str,
        on_change: Optional[Callable[[List[TypingIndicator]], Any]] = None,
    ) -> TypingWatch:
        """Start tracking typists on ``channel_key``; close() the watch when done."""
        _require_typing_key(channel_key)
        watch = TypingWatch(channel_key, self.actor_id, self.ttl_seconds, on_change)
        watch._handle = self._registry.subscribe(
            channel_key, ChannelHandlers(on_signal=watch.handle_signal)
        )
        return watch
