"""Channel key namespace.

Every logical channel is addressed by a string key that stays stable across
reconnects. The key prefix selects a ChannelSpec describing which table the
channel listens to, which server-side filters can be pushed down with the
join, and what the router must do locally (relevance check, enrichment).

    direct_messages_<userId>            messages (filtered locally by participant)
    conversation_updates_<userId>       conversations (participant_1 or participant_2)
    community_messages_<communityId>    community_messages
    comments_<post|reel>_<contentId>    comments
    notifications_<userId>              notifications (INSERT, user_id)
    typing_<post|reel|conversation>_<id> ephemeral broadcast, no table
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from livesync.errors import SubscriptionRejected

from .schemas import ALL_EVENT_TYPES, EventType

_ID = r"[A-Za-z0-9][A-Za-z0-9\-]*"

COMMENT_CONTENT_TYPES = ("post", "reel")
TYPING_CONTENT_TYPES = ("post", "reel", "conversation")


class ChannelKind(str, Enum):
    DIRECT_MESSAGES = "direct_messages"
    CONVERSATION_UPDATES = "conversation_updates"
    COMMUNITY_MESSAGES = "community_messages"
    COMMENTS = "comments"
    NOTIFICATIONS = "notifications"
    TYPING = "typing"


@dataclass(frozen=True)
class ChannelSpec:
    """Parsed channel key plus the bindings the router and server need.

    Attributes:
        key: The full channel key.
        kind: Channel family selected by the key prefix.
        entity_id: User, community or content id embedded in the key.
        content_type: post/reel/conversation for comment and typing keys.
        table: Source table, None for broadcast-only channels.
        server_filters: Filters pushed to the server with the join (OR-ed).
        event_types: Event types the channel can ever carry.
        enrich_field: Record column holding the profile id to enrich.
        enrich_as: Enrichment key the fetched profile is stored under.
        participant_check: Require the subscriber to be in the message's
            conversation before delivery.
    """
    key: str
    kind: ChannelKind
    entity_id: str
    content_type: Optional[str] = None
    table: Optional[str] = None
    server_filters: List[str] = field(default_factory=list)
    event_types: FrozenSet[EventType] = ALL_EVENT_TYPES
    enrich_field: Optional[str] = None
    enrich_as: str = "sender"
    participant_check: bool = False

    @property
    def is_broadcast(self) -> bool:
        return self.table is None

    def bindings(self) -> List[Dict[str, str]]:
        """Join payload bindings, one per server-side filter."""
        if self.table is None:
            return []
        filters = self.server_filters or [""]
        return [
            {"schema": "public", "table": self.table, "filter": f}
            for f in filters
        ]


_PATTERNS = [
    (ChannelKind.DIRECT_MESSAGES, re.compile(rf"^direct_messages_({_ID})$")),
    (ChannelKind.CONVERSATION_UPDATES, re.compile(rf"^conversation_updates_({_ID})$")),
    (ChannelKind.COMMUNITY_MESSAGES, re.compile(rf"^community_messages_({_ID})$")),
    (ChannelKind.COMMENTS, re.compile(rf"^comments_({'|'.join(COMMENT_CONTENT_TYPES)})_({_ID})$")),
    (ChannelKind.NOTIFICATIONS, re.compile(rf"^notifications_({_ID})$")),
    (ChannelKind.TYPING, re.compile(rf"^typing_({'|'.join(TYPING_CONTENT_TYPES)})_({_ID})$")),
]


def parse_channel_key(key: str) -> ChannelSpec:
    """Resolve a channel key to its spec.

    Raises:
        SubscriptionRejected: If the key is not part of the namespace.
    """
    if not isinstance(key, str) or not key:
        raise SubscriptionRejected(str(key), "empty channel key")

    for kind, pattern in _PATTERNS:
        match = pattern.match(key)
        if not match:
            continue
        if kind is ChannelKind.DIRECT_MESSAGES:
            # Complex "either participant" filters cannot be expressed
            # server-side, so the router checks membership locally.
            return ChannelSpec(
                key=key, kind=kind, entity_id=match.group(1),
                table="messages", enrich_field="sender_id",
                participant_check=True,
            )
        if kind is ChannelKind.CONVERSATION_UPDATES:
            user_id = match.group(1)
            return ChannelSpec(
                key=key, kind=kind, entity_id=user_id,
                table="conversations",
                server_filters=[
                    f"participant_1=eq.{user_id}",
                    f"participant_2=eq.{user_id}",
                ],
                event_types=frozenset({EventType.UPDATE}),
            )
        if kind is ChannelKind.COMMUNITY_MESSAGES:
            community_id = match.group(1)
            return ChannelSpec(
                key=key, kind=kind, entity_id=community_id,
                table="community_messages",
                server_filters=[f"community_id=eq.{community_id}"],
                enrich_field="sender_id",
            )
        if kind is ChannelKind.COMMENTS:
            content_type, content_id = match.group(1), match.group(2)
            return ChannelSpec(
                key=key, kind=kind, entity_id=content_id,
                content_type=content_type, table="comments",
                server_filters=[f"{content_type}_id=eq.{content_id}"],
                enrich_field="user_id", enrich_as="author",
            )
        if kind is ChannelKind.NOTIFICATIONS:
            user_id = match.group(1)
            return ChannelSpec(
                key=key, kind=kind, entity_id=user_id,
                table="notifications",
                server_filters=[f"user_id=eq.{user_id}"],
                event_types=frozenset({EventType.INSERT}),
                enrich_field="actor_id", enrich_as="actor",
            )
        return ChannelSpec(
            key=key, kind=kind, entity_id=match.group(2),
            content_type=match.group(1), event_types=frozenset(),
        )

    raise SubscriptionRejected(key, "unknown channel key format")


def direct_messages_key(user_id: str) -> str:
    return f"direct_messages_{user_id}"


def conversation_updates_key(user_id: str) -> str:
    return f"conversation_updates_{user_id}"


def community_messages_key(community_id: str) -> str:
    return f"community_messages_{community_id}"


def comments_key(content_type: str, content_id: str) -> str:
    return f"comments_{content_type}_{content_id}"


def notifications_key(user_id: str) -> str:
    return f"notifications_{user_id}"


def typing_key(content_type: str, content_id: str) -> str:
    return f"typing_{content_type}_{content_id}"
