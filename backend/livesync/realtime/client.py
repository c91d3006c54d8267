"""Public facade over the realtime subsystem.

One LiveSyncClient owns the ConnectionManager, the SubscriptionRegistry,
the EventRouter and the typing signal channel. Its ``init()``/``teardown()``
are bound to the application lifespan, so feature code never touches the
connection directly: it subscribes by channel key and disposes the handle.
"""
import logging
from typing import Any, Dict, Iterable, Optional, Union

from livesync.backend_api.client import BackendClient
from livesync.config import AppConfig
from livesync.errors import RealtimeError

from .channels import (
    comments_key,
    community_messages_key,
    conversation_updates_key,
    direct_messages_key,
    notifications_key,
)
from .connection import ConnectionManager, Sleep
from .event_router import EventRouter
from .registry import ChannelHandlers, SubscriptionHandle, SubscriptionRegistry
from .schemas import ConnectionState, EventType, StateChange
from .signals import EphemeralSignal
from .transport import Transport, WebSocketTransport

logger = logging.getLogger(__name__)

INDICATOR_ONLINE = "online"
INDICATOR_OFFLINE = "offline"
INDICATOR_RECONNECT_REQUIRED = "reconnect_required"

Filters = Optional[Iterable[Union[EventType, str]]]


class LiveSyncClient:
    """Realtime client for one signed-in actor.

    Args:
        transport: Feed transport (WebSocketTransport in production).
        backend: REST collaborator for enrichment, relevance and writes.
        config: Application config; defaults apply when omitted.
        actor_id: Local user id (typing signals, reconciliation).
        actor_name: Display name sent with typing signals.
        sleep: Backoff sleep, injectable for tests.
    """

    def __init__(
        self,
        transport: Transport,
        backend: Optional[BackendClient] = None,
        config: Optional[AppConfig] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.config = config or AppConfig()
        self.backend = backend
        self.actor_id = actor_id

        realtime = self.config.realtime
        if sleep is None:
            self.connection = ConnectionManager.from_settings(transport, realtime)
        else:
            self.connection = ConnectionManager.from_settings(transport, realtime, sleep=sleep)
        self.router = EventRouter.from_settings(backend, realtime)
        self.registry = SubscriptionRegistry(
            self.connection, self.router, max_channels=realtime.max_channels
        )
        self.typing = EphemeralSignal(
            self.connection,
            self.registry,
            actor_id=actor_id,
            actor_name=actor_name,
            ttl_seconds=self.config.typing.ttl_seconds,
        )
        self.last_error: Optional[BaseException] = None
        self._dispose_state = self.connection.on_state_change(self._on_state_change)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> "LiveSyncClient":
        """Production wiring: WebSocket feed plus httpx REST collaborator."""
        secrets = config.secrets.backend
        transport = WebSocketTransport(
            config.realtime.url,
            api_key=secrets.api_key,
            access_token=secrets.access_token,
        )
        return cls(
            transport,
            backend=BackendClient.from_config(config),
            config=config,
            actor_id=actor_id or secrets.user_id,
            actor_name=actor_name or secrets.username,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        """Open the connection. A failure is logged; the state reflects it."""
        try:
            await self.connection.connect()
        except RealtimeError as exc:
            self.last_error = exc
            logger.warning(f"[LiveSync] Initial connect failed: {exc}")

    async def teardown(self) -> None:
        """Unsubscribe every handle, close the connection and the backend client."""
        await self.registry.close()
        self._dispose_state()
        await self.connection.disconnect()
        if self.backend is not None:
            await self.backend.aclose()
        logger.info("[LiveSync] Torn down")

    async def reconnect(self) -> None:
        """Explicit retry; restarts the backoff budget.

        Raises:
            ConnectionTimeout, TransportError: If the attempt fails.
        """
        logger.info("[LiveSync] Manual reconnect requested")
        await self.connection.connect()

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(
        self,
        key: str,
        handlers: ChannelHandlers,
        filters: Filters = None,
    ) -> SubscriptionHandle:
        return self.registry.subscribe(key, handlers, filters)

    def subscribe_to_direct_messages(
        self, user_id: str, handlers: ChannelHandlers, filters: Filters = None
    ) -> SubscriptionHandle:
        return self.subscribe(direct_messages_key(user_id), handlers, filters)

    def subscribe_to_conversation_updates(
        self, user_id: str, handlers: ChannelHandlers
    ) -> SubscriptionHandle:
        return self.subscribe(conversation_updates_key(user_id), handlers)

    def subscribe_to_community_messages(
        self, community_id: str, handlers: ChannelHandlers, filters: Filters = None
    ) -> SubscriptionHandle:
        return self.subscribe(community_messages_key(community_id), handlers, filters)

    def subscribe_to_comments(
        self,
        content_type: str,
        content_id: str,
        handlers: ChannelHandlers,
        filters: Filters = None,
    ) -> SubscriptionHandle:
        return self.subscribe(comments_key(content_type, content_id), handlers, filters)

    def subscribe_to_notifications(
        self, user_id: str, handlers: ChannelHandlers
    ) -> SubscriptionHandle:
        return self.subscribe(notifications_key(user_id), handlers)

    # =========================================================================
    # Status
    # =========================================================================

    def get_connection_state(self) -> str:
        """``connected``, ``connecting`` or ``disconnected``."""
        return self.connection.state.public

    def get_active_subscription_count(self) -> int:
        return self.registry.active_subscription_count()

    def connection_indicator(self) -> str:
        """``online``, ``offline`` (transient) or ``reconnect_required``."""
        state = self.connection.state
        if state is ConnectionState.CONNECTED:
            return INDICATOR_ONLINE
        if state is ConnectionState.RECONNECT_EXHAUSTED:
            return INDICATOR_RECONNECT_REQUIRED
        return INDICATOR_OFFLINE

    def status(self) -> Dict[str, Any]:
        reconnect = self.connection.reconnect_state
        return {
            "state": self.get_connection_state(),
            "indicator": self.connection_indicator(),
            "active_subscriptions": self.get_active_subscription_count(),
            "reconnect": {
                "attempts": reconnect.attempts,
                "delay_ms": reconnect.delay_ms,
                "max_attempts": reconnect.max_attempts,
            },
        }

    def _on_state_change(self, change: StateChange) -> None:
        if change.error is not None:
            self.last_error = change.error
        elif change.current is ConnectionState.CONNECTED:
            self.last_error = None
        logger.info(
            f"[LiveSync] {change.previous.value} -> {change.current.value}"
            + (f" ({change.error})" if change.error else "")
        )
