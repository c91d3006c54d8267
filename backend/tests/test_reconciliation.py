"""Tests for ReconciledCollection and the feature wrappers built on it."""
import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import change_frame, settle
from livesync.backend_api.schemas import (
    Comment,
    CommunityMessage,
    Conversation,
    Message,
    Profile,
)
from livesync.errors import SubscriptionRejected, WriteFailed
from livesync.realtime.schemas import ChangeEvent, EventType
from livesync.reconciliation.collection import ReconciledCollection
from livesync.reconciliation.comments import CommentThread
from livesync.reconciliation.community import CommunityDiscussion
from livesync.reconciliation.messaging import ConversationInbox, DirectMessageThread

ME = "u-alice"


def event(event_type, new=None, old=None, table="messages", received_at=None, enrichment=None):
    return ChangeEvent(
        event_type=event_type,
        table=table,
        new=new,
        old=old,
        received_at=received_at if received_at is not None else time.time(),
        enrichment=enrichment or {},
    )


def msg(message_id, content="hello", sender=ME, conversation_id="c-ab"):
    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender,
        "content": content,
    }


@pytest.fixture
def collection():
    return ReconciledCollection(actor_id=ME, match_window_seconds=30.0, staged_event_limit=3)


def advance_to_temp(collection, n):
    """Burn temporary ids so the next one is temp-<n>."""
    for _ in range(n - 1):
        collection.fail(collection.add_optimistic({"content": "burn"}))


# =============================================================================
# Optimistic entries
# =============================================================================


class TestOptimistic:
    def test_optimistic_entry_is_pending(self, collection):
        temp_id = collection.add_optimistic({"content": "hi"})
        assert temp_id == "temp-1"
        assert collection.ids() == ["temp-1"]
        assert collection.pending[0].pending
        assert collection.items[0]["sender_id"] == ME

    def test_confirm_replaces_in_place(self, collection):
        collection.apply(event(EventType.INSERT, new=msg("m-1", sender="u-bob")))
        temp_id = collection.add_optimistic({"content": "hi"})
        collection.apply(event(EventType.INSERT, new=msg("m-2", sender="u-bob", content="later")))

        collection.confirm(temp_id, msg("m-100", content="hi"))

        assert collection.ids() == ["m-1", "m-100", "m-2"]
        assert collection.pending == []

    def test_fail_removes_entry(self, collection):
        temp_id = collection.add_optimistic({"content": "hi"})
        removed = collection.fail(temp_id)
        assert removed["content"] == "hi"
        assert len(collection) == 0
        assert collection.fail(temp_id) is None

    def test_confirm_with_model(self, collection):
        temp_id = collection.add_optimistic({"content": "hi"})
        collection.confirm(temp_id, Message(id="m-5", conversation_id="c-ab", sender_id=ME, content="hi"))
        assert collection.ids() == ["m-5"]
        assert "sender" not in collection.get("m-5")


# =============================================================================
# Confirmation vs. feed echo ordering
# =============================================================================


class TestEchoOrdering:
    def test_confirmation_first_then_echo(self):
        changes = []
        collection = ReconciledCollection(actor_id=ME, on_change=changes.append)
        advance_to_temp(collection, 17)
        temp_id = collection.add_optimistic({"content": "hello"})
        assert temp_id == "temp-17"

        collection.confirm("temp-17", msg("m-900"))
        fired = len(changes)
        changed = collection.apply(event(EventType.INSERT, new=msg("m-900")))

        assert changed is False
        assert len(changes) == fired
        assert collection.ids() == ["m-900"]

    def test_echo_with_new_fields_after_confirmation_merges(self, collection):
        temp_id = collection.add_optimistic({"content": "hello"})
        collection.confirm(temp_id, msg("m-900"))

        echoed = {**msg("m-900"), "created_at": "2024-05-01T10:00:00Z"}
        assert collection.apply(event(EventType.INSERT, new=echoed)) is True
        assert collection.get("m-900")["created_at"] == "2024-05-01T10:00:00Z"

    def test_identical_update_is_not_a_change(self, collection):
        collection.apply(event(EventType.INSERT, new=msg("m-1", sender="u-bob")))
        assert collection.apply(event(EventType.UPDATE, new=msg("m-1", sender="u-bob"))) is False

    def test_echo_first_then_confirmation(self, collection):
        advance_to_temp(collection, 17)
        collection.add_optimistic({"content": "hello"})

        changed = collection.apply(event(EventType.INSERT, new=msg("m-900")))
        assert not changed
        assert collection.ids() == ["temp-17"]
        assert collection.pending[0].correlated["id"] == "m-900"

        collection.confirm("temp-17", msg("m-900"))
        assert collection.ids() == ["m-900"]
        assert collection.pending == []

    def test_echo_appended_when_not_matched_then_confirmation(self, collection):
        temp_id = collection.add_optimistic({"content": "hello"})
        # Outside the match window: appended as its own entry
        collection.apply(event(EventType.INSERT, new=msg("m-900"), received_at=time.time() + 120))
        assert collection.ids() == [temp_id, "m-900"]

        collection.confirm(temp_id, msg("m-900"))
        assert collection.ids() == ["m-900"]

    def test_other_actor_is_never_correlated(self, collection):
        collection.add_optimistic({"content": "hello"})
        collection.apply(event(EventType.INSERT, new=msg("m-7", sender="u-bob")))
        assert collection.ids() == ["temp-1", "m-7"]

    def test_wrong_correlation_is_restored_on_confirm(self, collection):
        temp_id = collection.add_optimistic({"content": "same"})
        # Identical text sent from another device a moment earlier
        collection.apply(event(EventType.INSERT, new=msg("m-other", content="same")))
        collection.confirm(temp_id, msg("m-mine", content="same"))
        assert collection.ids() == ["m-mine", "m-other"]

    def test_correlated_echo_restored_on_fail(self, collection):
        temp_id = collection.add_optimistic({"content": "hello"})
        collection.apply(event(EventType.INSERT, new=msg("m-900")))
        collection.fail(temp_id)
        assert collection.ids() == ["m-900"]

    def test_enrichment_is_merged(self, collection):
        temp_id = collection.add_optimistic({"content": "hello"})
        collection.confirm(temp_id, msg("m-1"))
        profile = Profile(id=ME, username="alice")
        collection.apply(event(EventType.INSERT, new=msg("m-1"), enrichment={"sender": profile}))
        assert collection.get("m-1")["sender"]["username"] == "alice"


# =============================================================================
# Idempotence, updates, deletes, staging
# =============================================================================


class TestFeedEvents:
    def test_duplicate_insert_is_idempotent(self, collection):
        for _ in range(3):
            collection.apply(event(EventType.INSERT, new=msg("m-1", sender="u-bob")))
        assert collection.ids() == ["m-1"]

    def test_update_replaces_by_id(self, collection):
        collection.apply(event(EventType.INSERT, new=msg("m-1", sender="u-bob")))
        collection.apply(event(EventType.UPDATE, new={**msg("m-1", sender="u-bob"), "content": "edited"}))
        assert collection.get("m-1")["content"] == "edited"

    def test_delete_removes_by_id(self, collection):
        collection.apply(event(EventType.INSERT, new=msg("m-1", sender="u-bob")))
        assert collection.apply(event(EventType.DELETE, old={"id": "m-1"}))
        assert len(collection) == 0

    def test_update_before_insert_is_staged(self, collection):
        collection.apply(event(EventType.UPDATE, new={**msg("m-1", sender="u-bob"), "content": "v2"}))
        assert collection.ids() == []
        assert collection.staged_ids == ["m-1"]

        collection.apply(event(EventType.INSERT, new=msg("m-1", sender="u-bob", content="v1")))
        assert collection.get("m-1")["content"] == "v2"
        assert collection.staged_ids == []

    def test_delete_before_insert_suppresses_insert(self, collection):
        collection.apply(event(EventType.DELETE, old={"id": "m-1"}))
        collection.apply(event(EventType.INSERT, new=msg("m-1", sender="u-bob")))
        assert collection.ids() == []

    def test_delete_before_confirmation_removes_entry(self, collection):
        temp_id = collection.add_optimistic({"content": "hello"})
        collection.apply(event(EventType.DELETE, old={"id": "m-900"}))
        collection.confirm(temp_id, msg("m-900"))
        assert collection.ids() == []
        assert collection.pending == []

    def test_staging_is_bounded(self, collection):
        for n in range(5):
            collection.apply(event(EventType.UPDATE, new=msg(f"m-{n}", sender="u-bob")))
        assert collection.staged_ids == ["m-2", "m-3", "m-4"]

    def test_event_without_id_is_ignored(self, collection):
        assert not collection.apply(event(EventType.INSERT, new={"content": "no id"}))

    def test_load_keeps_pending_and_applies_staged(self, collection):
        temp_id = collection.add_optimistic({"content": "draft"})
        collection.apply(event(EventType.UPDATE, new={"id": "m-2", "content": "newer"}))
        collection.load([msg("m-1", sender="u-bob"), msg("m-2", sender="u-bob", content="old")])
        assert collection.ids() == ["m-1", "m-2", temp_id]
        assert collection.get("m-2")["content"] == "newer"

    def test_on_change_errors_are_contained(self):
        def broken(_):
            raise RuntimeError("ui bug")

        collection = ReconciledCollection(actor_id=ME, on_change=broken)
        collection.add_optimistic({"content": "x"})
        assert len(collection) == 1


# =============================================================================
# Feature wrappers
# =============================================================================


def make_backend():
    backend = MagicMock()
    backend.create_message = AsyncMock()
    backend.create_community_message = AsyncMock()
    backend.edit_community_message = AsyncMock()
    backend.delete_community_message = AsyncMock(return_value=None)
    backend.create_comment = AsyncMock()
    backend.fetch_messages = AsyncMock(return_value=[])
    return backend


class TestDirectMessageThread:
    @pytest.mark.asyncio
    async def test_send_confirms(self):
        backend = make_backend()
        backend.create_message.return_value = Message(
            id="m-900", conversation_id="c-ab", sender_id=ME, content="hello"
        )
        thread = DirectMessageThread(backend, "c-ab", ME)

        result = await thread.send("hello")

        assert result.id == "m-900"
        assert [m["id"] for m in thread.messages] == ["m-900"]
        backend.create_message.assert_awaited_once_with("c-ab", ME, "hello", reply_to_id=None)

    @pytest.mark.asyncio
    async def test_send_rolls_back_and_reraises(self):
        backend = make_backend()
        backend.create_message.side_effect = WriteFailed("create-message", "500", status_code=500)
        thread = DirectMessageThread(backend, "c-ab", ME)

        with pytest.raises(WriteFailed):
            await thread.send("hello")
        assert thread.messages == []
        assert thread.collection.pending == []

    @pytest.mark.asyncio
    async def test_echo_during_write_is_not_duplicated(self):
        backend = make_backend()
        release = asyncio.Event()
        thread = DirectMessageThread(backend, "c-ab", ME)

        async def slow_write(*args, **kwargs):
            await release.wait()
            return Message(id="m-900", conversation_id="c-ab", sender_id=ME, content="hello")

        backend.create_message.side_effect = slow_write
        task = asyncio.create_task(thread.send("hello"))
        await settle()

        thread.handle_event(event(EventType.INSERT, new=msg("m-900")))
        release.set()
        await task

        assert [m["id"] for m in thread.messages] == ["m-900"]

    def test_ignores_other_conversations(self):
        thread = DirectMessageThread(make_backend(), "c-ab", ME)
        thread.handle_event(event(EventType.INSERT, new=msg("m-1", sender="u-bob", conversation_id="c-zz")))
        assert thread.messages == []

    def test_key_only_delete_for_known_message(self):
        thread = DirectMessageThread(make_backend(), "c-ab", ME)
        thread.handle_event(event(EventType.INSERT, new=msg("m-1", sender="u-bob")))
        thread.handle_event(event(EventType.DELETE, old={"id": "m-1"}))
        thread.handle_event(event(EventType.DELETE, old={"id": "m-unknown"}))
        assert thread.messages == []
        assert thread.collection.staged_ids == []

    @pytest.mark.asyncio
    async def test_load_history(self):
        backend = make_backend()
        backend.fetch_messages.return_value = [
            Message(id="m-1", conversation_id="c-ab", sender_id="u-bob", content="first"),
        ]
        thread = DirectMessageThread(backend, "c-ab", ME)
        await thread.load_history()
        assert [m["id"] for m in thread.messages] == ["m-1"]

    @pytest.mark.asyncio
    async def test_attach_subscribes_direct_messages(self):
        client = MagicMock()
        thread = DirectMessageThread(make_backend(), "c-ab", ME)
        thread.attach(client)
        key, handlers = client.subscribe.call_args.args
        assert key == "direct_messages_u-alice"
        assert handlers.on_event == thread.handle_event


class TestCommunityDiscussion:
    @pytest.mark.asyncio
    async def test_send_edit_delete(self):
        backend = make_backend()
        backend.create_community_message.return_value = CommunityMessage(
            id="cm-1", community_id="c1", sender_id=ME, content="hi all"
        )
        backend.edit_community_message.return_value = CommunityMessage(
            id="cm-1", community_id="c1", sender_id=ME, content="hi everyone", is_edited=True
        )
        discussion = CommunityDiscussion(backend, "c1", ME)

        await discussion.send("hi all")
        await discussion.edit("cm-1", "hi everyone")
        assert discussion.messages[0]["content"] == "hi everyone"
        assert discussion.messages[0]["is_edited"] is True

        await discussion.delete("cm-1")
        assert discussion.messages == []

    @pytest.mark.asyncio
    async def test_failed_edit_keeps_message(self):
        backend = make_backend()
        backend.edit_community_message.side_effect = WriteFailed("edit-community-message", "403", 403)
        discussion = CommunityDiscussion(backend, "c1", ME)
        discussion.collection.load([{"id": "cm-1", "community_id": "c1", "sender_id": ME, "content": "a"}])

        with pytest.raises(WriteFailed):
            await discussion.edit("cm-1", "b")
        assert discussion.messages[0]["content"] == "a"

    def test_channel_key(self):
        assert CommunityDiscussion(make_backend(), "c1", ME).channel_key == "community_messages_c1"


class TestCommentThread:
    @pytest.mark.asyncio
    async def test_threaded_reply(self):
        backend = make_backend()
        backend.create_comment.return_value = Comment(
            id="k-2", user_id=ME, content="agreed", post_id="p1", parent_id="k-1"
        )
        thread = CommentThread(backend, "post", "p1", ME)
        thread.handle_event(event(
            EventType.INSERT, table="comments",
            new={"id": "k-1", "post_id": "p1", "user_id": "u-bob", "content": "first"},
        ))

        await thread.send("agreed", parent_id="k-1")

        assert [c["id"] for c in thread.top_level()] == ["k-1"]
        assert [c["id"] for c in thread.replies("k-1")] == ["k-2"]
        draft = backend.create_comment.await_args.args[0]
        assert draft.to_row() == {"user_id": ME, "content": "agreed", "post_id": "p1", "parent_id": "k-1"}

    def test_ignores_other_content(self):
        thread = CommentThread(make_backend(), "reel", "r1", ME)
        thread.handle_event(event(
            EventType.INSERT, table="comments",
            new={"id": "k-1", "reel_id": "r2", "user_id": "u-bob", "content": "x"},
        ))
        assert thread.comments == []

    def test_rejects_unknown_content_type(self):
        with pytest.raises(SubscriptionRejected):
            CommentThread(make_backend(), "story", "s1", ME)


class TestConversationInbox:
    def test_updates_reorder_by_activity(self):
        inbox = ConversationInbox(ME)
        inbox.load([
            Conversation(id="c-1", participant_1=ME, participant_2="u-bob",
                         last_message_at="2026-01-01T10:00:00Z"),
            Conversation(id="c-2", participant_1="u-carol", participant_2=ME,
                         last_message_at="2026-01-01T11:00:00Z"),
        ])
        assert [c.id for c in inbox.conversations] == ["c-2", "c-1"]

        inbox.handle_event(event(
            EventType.UPDATE, table="conversations",
            new={"id": "c-1", "participant_1": ME, "participant_2": "u-bob",
                 "last_message_at": "2026-01-01T12:00:00Z", "participant_1_unread_count": 2},
        ))
        assert [c.id for c in inbox.conversations] == ["c-1", "c-2"]
        assert inbox.unread_total() == 2

    def test_foreign_conversation_ignored(self):
        inbox = ConversationInbox(ME)
        inbox.handle_event(event(
            EventType.UPDATE, table="conversations",
            new={"id": "c-9", "participant_1": "u-x", "participant_2": "u-y"},
        ))
        assert inbox.conversations == []

    def test_attach_primes_router_cache(self):
        client = MagicMock()
        inbox = ConversationInbox(ME)
        inbox.load([Conversation(id="c-1", participant_1=ME, participant_2="u-bob")])
        inbox.attach(client)
        client.router.remember_conversation.assert_called_once()
        assert client.subscribe.call_args.args[0] == "conversation_updates_u-alice"


@pytest.mark.asyncio
async def test_end_to_end_through_registry(registry, transport):
    """Optimistic send while the echo arrives over the feed first."""
    backend = make_backend()
    release = asyncio.Event()

    async def slow_write(*args, **kwargs):
        await release.wait()
        return Message(id="m-900", conversation_id="c-ab", sender_id=ME, content="hello")

    backend.create_message.side_effect = slow_write
    thread = DirectMessageThread(backend, "c-ab", ME)
    client = MagicMock()
    client.subscribe.side_effect = registry.subscribe
    handle = thread.attach(client)
    await handle.ready(timeout=1)

    task = asyncio.create_task(thread.send("hello"))
    await settle()
    transport.emit(change_frame("direct_messages_u-alice", "INSERT", "messages", new=msg("m-900")))
    await settle()
    release.set()
    await task

    assert [m["id"] for m in thread.messages] == ["m-900"]
    assert thread.messages[0]["sender"]["username"] == "alice"
