"""Classify, filter, enrich and dispatch change events.

For each raw ``change`` frame on a channel the router:
    1. Parses the ``{eventType, table, schema, new, old}`` payload.
    2. Drops events for another table or an event type nobody asked for.
    3. Runs the local relevance check for channels whose visibility rule
       cannot be pushed to the server (direct messages: "either participant
       of the conversation"). Events failing it are never delivered.
    4. Enriches INSERT/UPDATE payloads with the sender/author profile via one
       best-effort fetch. Failure leaves the field None and records a warning.
    5. Dispatches to every active consumer in arrival order, isolating
       handler exceptions per consumer.

Note:
    The relevance check runs after the payload already reached the client,
    so it is a delivery filter, not an authorization boundary.
"""
import inspect
import logging
import time
from collections import OrderedDict, deque
from typing import TYPE_CHECKING, Any, Deque, Dict, Optional, Tuple

from pydantic import ValidationError

from livesync.backend_api.client import BackendClient, BackendError
from livesync.backend_api.schemas import Conversation
from livesync.config import RealtimeSettings
from livesync.errors import EnrichmentFailed

from .channels import ChannelSpec
from .schemas import ChangeEvent, EventType, Signal

if TYPE_CHECKING:
    from .registry import ChannelSubscription, Consumer

logger = logging.getLogger(__name__)

DEFAULT_RELEVANCE_CACHE_SIZE = 1000
MAX_RECORDED_WARNINGS = 100


class EventRouter:
    """Routes frames from SubscriptionRegistry channels to consumer handlers."""

    def __init__(
        self,
        backend: Optional[BackendClient] = None,
        relevance_cache_size: int = DEFAULT_RELEVANCE_CACHE_SIZE,
    ) -> None:
        self._backend = backend
        self._cache_size = relevance_cache_size
        # conversation_id -> (participant_1, participant_2), LRU
        self._participants: "OrderedDict[str, Tuple[str, str]]" = OrderedDict()
        # Local-only record of degraded payloads
        self.warnings: Deque[EnrichmentFailed] = deque(maxlen=MAX_RECORDED_WARNINGS)
        self.dropped_count = 0

    @classmethod
    def from_settings(cls, backend: Optional[BackendClient], settings: RealtimeSettings) -> "EventRouter":
        return cls(backend, relevance_cache_size=settings.relevance_cache_size)

    # =========================================================================
    # Change events
    # =========================================================================

    async def route(
        self,
        channel: "ChannelSubscription",
        frame: Dict[str, Any],
        received_at: Optional[float] = None,
    ) -> None:
        """Process one change frame for ``channel``."""
        event = self._parse(channel.key, frame, received_at)
        if event is None:
            return

        spec = channel.spec
        if event.table != spec.table:
            logger.debug(f"[Router] {spec.key}: ignoring event for table {event.table}")
            return
        if event.event_type not in channel.filters:
            return

        if spec.participant_check and not await self._is_relevant(spec, event):
            self.dropped_count += 1
            logger.debug(f"[Router] {spec.key}: dropped event for a foreign conversation")
            return

        if spec.enrich_field and event.event_type in (EventType.INSERT, EventType.UPDATE):
            await self._enrich(spec, event)

        await self._dispatch(channel, event)

    def _parse(
        self, key: str, frame: Dict[str, Any], received_at: Optional[float]
    ) -> Optional[ChangeEvent]:
        payload = frame.get("payload")
        if not isinstance(payload, dict):
            logger.warning(f"[Router] {key}: change frame without payload dropped")
            return None
        data = dict(payload)
        if isinstance(data.get("eventType"), str):
            data["eventType"] = data["eventType"].upper()
        data["key"] = key
        data["received_at"] = received_at if received_at is not None else time.time()
        try:
            return ChangeEvent.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"[Router] {key}: malformed change payload dropped: {exc}")
            return None

    # =========================================================================
    # Relevance
    # =========================================================================

    async def _is_relevant(self, spec: ChannelSpec, event: ChangeEvent) -> bool:
        conversation_id = event.record.get("conversation_id")
        if conversation_id is None and event.old:
            conversation_id = event.old.get("conversation_id")
        if not conversation_id:
            # Primary-key-only DELETE: nothing to check, and an unknown id is a no-op downstream
            return True

        participants = await self._participants_of(str(conversation_id))
        if participants is None:
            return False
        return spec.entity_id in participants

    async def _participants_of(self, conversation_id: str) -> Optional[Tuple[str, str]]:
        cached = self._participants.get(conversation_id)
        if cached is not None:
            self._participants.move_to_end(conversation_id)
            return cached

        if self._backend is None:
            return None
        try:
            conversation = await self._backend.fetch_conversation(conversation_id)
        except BackendError as exc:
            logger.warning(f"[Router] Relevance lookup for {conversation_id} failed: {exc}")
            return None
        if conversation is None:
            return None

        self.remember_conversation(conversation)
        return conversation.participant_1, conversation.participant_2

    def remember_conversation(self, conversation: Conversation) -> None:
        """Prime the relevance cache with a conversation already known locally."""
        self._participants[conversation.id] = (conversation.participant_1, conversation.participant_2)
        self._participants.move_to_end(conversation.id)
        while len(self._participants) > self._cache_size:
            self._participants.popitem(last=False)

    # =========================================================================
    # Enrichment
    # =========================================================================

    async def _enrich(self, spec: ChannelSpec, event: ChangeEvent) -> None:
        event.enrichment[spec.enrich_as] = None
        profile_id = event.record.get(spec.enrich_field)
        if not profile_id or self._backend is None:
            return
        try:
            event.enrichment[spec.enrich_as] = await self._backend.fetch_profile(str(profile_id))
        except Exception as exc:  # pylint: disable=broad-except
            warning = EnrichmentFailed(spec.key, spec.enrich_as, exc)
            self.warnings.append(warning)
            logger.warning(f"[Router] {warning}")

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _dispatch(self, channel: "ChannelSubscription", event: ChangeEvent) -> None:
        for consumer in channel.active_consumers():
            # Re-checked per consumer: an earlier handler may have unsubscribed it
            if not consumer.accepts(event.event_type):
                continue
            handlers = consumer.handlers
            handler = {
                EventType.INSERT: handlers.on_insert,
                EventType.UPDATE: handlers.on_update,
                EventType.DELETE: handlers.on_delete,
            }[event.event_type] or handlers.on_event
            if handler is not None:
                await self._invoke(channel.key, consumer, handler, event)

    async def route_signal(
        self,
        channel: "ChannelSubscription",
        frame: Dict[str, Any],
        received_at: Optional[float] = None,
    ) -> None:
        """Deliver an ephemeral broadcast frame to ``on_signal`` handlers."""
        payload = frame.get("payload")
        signal = Signal(
            key=channel.key,
            event=str(frame.get("event", "typing")),
            payload=payload if isinstance(payload, dict) else {},
            received_at=received_at if received_at is not None else time.time(),
        )
        for consumer in channel.active_consumers():
            if consumer.active and consumer.handlers.on_signal is not None:
                await self._invoke(channel.key, consumer, consumer.handlers.on_signal, signal)

    @staticmethod
    async def _invoke(key: str, consumer: "Consumer", handler: Any, arg: Any) -> None:
        try:
            result = handler(arg)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(f"[Router] Handler for {key} (consumer {consumer.id}) failed: {exc}")
            if consumer.handlers.on_error is None:
                return
            try:
                consumer.handlers.on_error(exc)
            except Exception as inner:  # pylint: disable=broad-except
                logger.error(f"[Router] on_error for {key} failed: {inner}")
