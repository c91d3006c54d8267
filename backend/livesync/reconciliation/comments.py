"""Comments on a post or reel, with one level of threading via ``parent_id``."""
from typing import Any, Callable, Dict, List, Optional

from livesync.backend_api.client import BackendClient
from livesync.backend_api.schemas import Comment, CommentDraft, Profile
from livesync.config import ReconciliationSettings
from livesync.realtime.channels import comments_key, parse_channel_key
from livesync.realtime.schemas import ChangeEvent

from .collection import LiveFeed, ReconciledCollection, to_record


class CommentThread(LiveFeed):
    """Comments of ``comments_<contentType>_<contentId>``."""

    def __init__(
        self,
        backend: BackendClient,
        content_type: str,
        content_id: str,
        user_id: str,
        profile: Optional[Profile] = None,
        settings: Optional[ReconciliationSettings] = None,
        on_change: Optional[Callable[[ReconciledCollection], Any]] = None,
    ) -> None:
        settings = settings or ReconciliationSettings()
        super().__init__(
            ReconciledCollection(
                actor_id=user_id,
                actor_field="user_id",
                match_window_seconds=settings.match_window_seconds,
                staged_event_limit=settings.staged_event_limit,
                on_change=on_change,
            )
        )
        self._backend = backend
        self.content_type = content_type
        self.content_id = content_id
        self.user_id = user_id
        self.profile = profile
        self.channel_key = parse_channel_key(comments_key(content_type, content_id)).key

    @property
    def target_field(self) -> str:
        return f"{self.content_type}_id"

    @property
    def comments(self) -> List[Dict[str, Any]]:
        return self.collection.items

    def top_level(self) -> List[Dict[str, Any]]:
        return [c for c in self.collection.items if not c.get("parent_id")]

    def replies(self, parent_id: str) -> List[Dict[str, Any]]:
        return [c for c in self.collection.items if c.get("parent_id") == parent_id]

    def accepts(self, event: ChangeEvent) -> bool:
        target = event.record.get(self.target_field)
        return target is None or str(target) == self.content_id

    async def send(self, content: str, parent_id: Optional[str] = None) -> Comment:
        """Post a comment (or reply) with an optimistic entry; re-raises WriteFailed."""
        draft = CommentDraft(
            content_type=self.content_type,
            content_id=self.content_id,
            user_id=self.user_id,
            content=content,
            parent_id=parent_id,
        )
        record = draft.to_row()
        if self.profile is not None:
            record["author"] = to_record(self.profile)
        return await self._submit(record, lambda: self._backend.create_comment(draft))
