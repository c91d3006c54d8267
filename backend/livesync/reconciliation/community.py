"""Community discussion: shared message list of one community."""
import logging
from typing import Any, Callable, Dict, List, Optional

from livesync.backend_api.client import BackendClient
from livesync.backend_api.schemas import CommunityMessage, Profile
from livesync.config import ReconciliationSettings
from livesync.realtime.channels import community_messages_key
from livesync.realtime.schemas import ChangeEvent

from .collection import LiveFeed, ReconciledCollection, to_record

logger = logging.getLogger(__name__)


class CommunityDiscussion(LiveFeed):
    """Messages of ``community_messages_<communityId>`` with optimistic sends.

    Edits and deletes are not optimistic: the confirmed row (or the
    confirmed removal) is applied locally once the backend accepts it, and
    the echoed UPDATE/DELETE from the feed is then a no-op.
    """

    def __init__(
        self,
        backend: BackendClient,
        community_id: str,
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
        self.community_id = community_id
        self.user_id = user_id
        self.profile = profile
        self.channel_key = community_messages_key(community_id)

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return self.collection.items

    def accepts(self, event: ChangeEvent) -> bool:
        community_id = event.record.get("community_id")
        return community_id is None or str(community_id) == self.community_id

    async def load_history(self, limit: int = 50) -> None:
        self.collection.load(await self._backend.fetch_community_messages(self.community_id, limit))

    async def send(
        self,
        content: str,
        message_type: str = "text",
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        reply_to_id: Optional[str] = None,
    ) -> CommunityMessage:
        """Post a message with an optimistic entry; re-raises WriteFailed."""
        draft: Dict[str, Any] = {
            "community_id": self.community_id,
            "sender_id": self.user_id,
            "content": content,
            "message_type": message_type,
        }
        for name, value in (
            ("file_url", file_url),
            ("file_name", file_name),
            ("file_size", file_size),
            ("reply_to_id", reply_to_id),
        ):
            if value is not None:
                draft[name] = value
        if self.profile is not None:
            draft["sender"] = to_record(self.profile)

        return await self._submit(
            draft,
            lambda: self._backend.create_community_message(
                self.community_id,
                self.user_id,
                content,
                message_type=message_type,
                file_url=file_url,
                file_name=file_name,
                file_size=file_size,
                reply_to_id=reply_to_id,
            ),
        )

    async def edit(self, message_id: str, content: str) -> CommunityMessage:
        """Edit one of the user's own messages and apply the confirmed row."""
        confirmed = await self._backend.edit_community_message(message_id, self.user_id, content)
        self.collection.upsert(confirmed)
        logger.debug(f"[Community] {message_id} edited")
        return confirmed

    async def delete(self, message_id: str) -> None:
        await self._backend.delete_community_message(message_id)
        self.collection.remove(message_id)
        logger.debug(f"[Community] {message_id} deleted")
