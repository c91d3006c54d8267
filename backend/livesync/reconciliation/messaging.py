"""Direct messages: one conversation thread and the user's inbox."""
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from livesync.backend_api.client import BackendClient
from livesync.backend_api.schemas import Conversation, Message, Profile
from livesync.config import ReconciliationSettings
from livesync.realtime.channels import conversation_updates_key, direct_messages_key
from livesync.realtime.registry import ChannelHandlers, SubscriptionHandle
from livesync.realtime.schemas import ChangeEvent, EventType

from .collection import LiveFeed, ReconciledCollection, to_record

if TYPE_CHECKING:
    from livesync.realtime.client import LiveSyncClient

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


class DirectMessageThread(LiveFeed):
    """Messages of one conversation, kept live from ``direct_messages_<userId>``.

    The channel carries every message the user can see, so events for other
    conversations are ignored here.
    """

    def __init__(
        self,
        backend: BackendClient,
        conversation_id: str,
        user_id: str,
        profile: Optional[Profile] = None,
        settings: Optional[ReconciliationSettings] = None,
        on_change: Optional[Callable[[ReconciledCollection], Any]] = None,
    ) -> None:
        settings = settings or ReconciliationSettings()
        super().__init__(
            ReconciledCollection(
                actor_id=user_id,
                actor_field="sender_id",
                match_window_seconds=settings.match_window_seconds,
                staged_event_limit=settings.staged_event_limit,
                on_change=on_change,
            )
        )
        self._backend = backend
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.profile = profile
        self.channel_key = direct_messages_key(user_id)

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return self.collection.items

    def accepts(self, event: ChangeEvent) -> bool:
        conversation_id = event.record.get("conversation_id")
        if conversation_id is None:
            # Key-only DELETE: only meaningful if we hold the id
            return event.record_id in self.collection
        return str(conversation_id) == self.conversation_id

    async def load_history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        """Replace confirmed messages with the latest page from the backend."""
        self.collection.load(await self._backend.fetch_messages(self.conversation_id, limit))

    async def send(self, content: str, reply_to_id: Optional[str] = None) -> Message:
        """Send a message with an optimistic entry.

        Raises:
            WriteFailed: The backend rejected the write; the entry was removed.
        """
        draft: Dict[str, Any] = {
            "conversation_id": self.conversation_id,
            "sender_id": self.user_id,
            "content": content,
            "message_type": "text",
            "status": "sending",
        }
        if reply_to_id:
            draft["reply_to_id"] = reply_to_id
        if self.profile is not None:
            draft["sender"] = to_record(self.profile)

        return await self._submit(
            draft,
            lambda: self._backend.create_message(
                self.conversation_id, self.user_id, content, reply_to_id=reply_to_id
            ),
        )


def _sort_key(conversation: Conversation) -> datetime:
    stamp = conversation.last_message_at or conversation.updated_at or conversation.created_at
    if stamp is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp


class ConversationInbox:
    """The user's conversation list, newest activity first.

    Fed by ``conversation_updates_<userId>`` (UPDATE only: a new message
    bumps ``last_message_at`` and the unread counters). Conversations seen
    here also prime the router's relevance cache.
    """

    def __init__(
        self,
        user_id: str,
        on_change: Optional[Callable[["ConversationInbox"], Any]] = None,
    ) -> None:
        self.user_id = user_id
        self.channel_key = conversation_updates_key(user_id)
        self._conversations: Dict[str, Conversation] = {}
        self._on_change = on_change
        self._handle: Optional[SubscriptionHandle] = None
        self._client: Optional["LiveSyncClient"] = None

    @property
    def conversations(self) -> List[Conversation]:
        return sorted(self._conversations.values(), key=_sort_key, reverse=True)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def unread_total(self) -> int:
        return sum(c.unread_count_for(self.user_id) for c in self._conversations.values())

    def load(self, conversations: List[Conversation]) -> None:
        self._conversations = {
            c.id: c for c in conversations if c.has_participant(self.user_id)
        }
        for conversation in self._conversations.values():
            self._remember(conversation)
        self._changed()

    def handle_event(self, event: ChangeEvent) -> None:
        if event.event_type is not EventType.UPDATE or not event.new:
            return
        try:
            conversation = Conversation.model_validate(event.new)
        except ValidationError as exc:
            logger.warning(f"[Inbox] Malformed conversation update ignored: {exc}")
            return
        if not conversation.has_participant(self.user_id):
            return
        self._conversations[conversation.id] = conversation
        self._remember(conversation)
        self._changed()

    def handlers(self) -> ChannelHandlers:
        return ChannelHandlers(on_update=self.handle_event)

    def attach(self, client: "LiveSyncClient") -> SubscriptionHandle:
        self._client = client
        for conversation in self._conversations.values():
            self._remember(conversation)
        if self._handle is None or not self._handle.active:
            self._handle = client.subscribe(self.channel_key, self.handlers())
        return self._handle

    def detach(self) -> None:
        if self._handle is not None:
            self._handle.unsubscribe()
            self._handle = None
        self._client = None

    def _remember(self, conversation: Conversation) -> None:
        if self._client is not None:
            self._client.router.remember_conversation(conversation)

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(f"[Inbox] on_change callback failed: {exc}")
