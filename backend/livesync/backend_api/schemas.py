"""Typed records exchanged with the data backend.

Field names follow the backend's column names, since the same dicts arrive
both from REST responses and from change-feed payloads. Unknown columns are
kept (``extra="allow"``) so a schema addition never breaks parsing.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Profile(BaseModel):
    """Denormalized sender/author info attached to events by the router."""
    model_config = ConfigDict(extra="allow")

    id: str
    username: str = ""
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    verified: bool = False


class Conversation(Record):
    """Direct conversation between two users (participant_1 < participant_2)."""
    participant_1: str
    participant_2: str
    last_message_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    participant_1_unread_count: int = 0
    participant_2_unread_count: int = 0

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_1, self.participant_2)

    def unread_count_for(self, user_id: str) -> int:
        if user_id == self.participant_1:
            return self.participant_1_unread_count
        if user_id == self.participant_2:
            return self.participant_2_unread_count
        return 0


class Message(Record):
    conversation_id: str
    sender_id: str
    content: str
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    status: str = "sent"
    reply_to_id: Optional[str] = None
    sender: Optional[Profile] = None


class CommunityMessage(Record):
    community_id: str
    sender_id: str
    content: str
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    reply_to_id: Optional[str] = None
    is_edited: bool = False
    sender: Optional[Profile] = None


class Comment(Record):
    user_id: str
    content: str
    post_id: Optional[str] = None
    reel_id: Optional[str] = None
    parent_id: Optional[str] = None
    likes_count: int = 0
    author: Optional[Profile] = None


class CommentDraft(BaseModel):
    """Outbound comment before the backend assigns an id."""
    content_type: str = Field(..., pattern="^(post|reel)$")
    content_id: str
    user_id: str
    content: str
    parent_id: Optional[str] = None

    def to_row(self) -> dict:
        row = {
            "user_id": self.user_id,
            "content": self.content,
            f"{self.content_type}_id": self.content_id,
        }
        if self.parent_id:
            row["parent_id"] = self.parent_id
        return row


class Notification(Record):
    """Activity addressed to one user: like, comment, follow or mention."""
    user_id: str
    actor_id: Optional[str] = None
    type: str = "like"
    post_id: Optional[str] = None
    reel_id: Optional[str] = None
    comment_id: Optional[str] = None
    actor_username: Optional[str] = None
    actor_avatar: Optional[str] = None
    read: bool = False
    actor: Optional[Profile] = None

    def describe(self) -> str:
        """One-line text for a notification toast."""
        name = self.actor_username or (self.actor.username if self.actor else "") or "Someone"
        target = "post" if self.post_id else "reel"
        if self.type == "like":
            return f"{name} liked your {target}"
        if self.type == "comment":
            return f"{name} commented on your {target}"
        if self.type == "follow":
            return f"{name} started following you"
        if self.type == "mention":
            return f"{name} mentioned you in a comment"
        return f"{name} interacted with your content"
