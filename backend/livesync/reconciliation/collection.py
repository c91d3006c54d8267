"""Optimistic-write reconciliation for one logical collection.

A collection holds confirmed records plus pending optimistic entries, and
merges three independently ordered inputs into one list:

    - local submits (``add_optimistic``) that appear immediately under a
      temporary ``temp-<n>`` id,
    - write confirmations (``confirm`` / ``fail``) from the backend,
    - change-feed events (``apply``), which may echo the local write before
      or after its confirmation.

Whatever the order, an entity ends up exactly once in the list and no
entry stays pending after its write settles.

Ordering rules:
    - ``confirm`` replaces the optimistic entry in place (position kept).
    - A feed INSERT that looks like the echo of a pending local write (same
      actor, same content, within the match window) is parked on that entry
      instead of being appended. ``confirm`` folds it in; ``fail`` puts it
      back as its own entry.
    - UPDATE/DELETE for an id not present yet are staged (bounded LRU) and
      applied once the INSERT or confirmation for that id shows up. A
      staged DELETE suppresses the late INSERT.

Thread Safety:
    Single event loop. Every method is synchronous, so a call never
    interleaves with another mutation.
"""
import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from livesync.errors import RealtimeError
from livesync.realtime.registry import ChannelHandlers, SubscriptionHandle
from livesync.realtime.schemas import ChangeEvent, EventType

if TYPE_CHECKING:
    from livesync.realtime.client import LiveSyncClient

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"
DEFAULT_MATCH_WINDOW_SECONDS = 30.0
DEFAULT_STAGED_EVENT_LIMIT = 1000

Record = Dict[str, Any]


def to_record(value: Any) -> Record:
    """Plain dict for a pydantic model or mapping; None fields are dropped."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    return {k: v for k, v in dict(value).items() if v is not None}


def event_record(event: ChangeEvent) -> Record:
    """The event's row merged with whatever enrichment the router added."""
    record = dict(event.record)
    for name, value in event.enrichment.items():
        if value is not None:
            record[name] = to_record(value) if isinstance(value, BaseModel) else value
    return record


def is_temp_id(record_id: Optional[str]) -> bool:
    return bool(record_id) and str(record_id).startswith(TEMP_ID_PREFIX)


@dataclass
class Entry:
    """One slot in the collection.

    Attributes:
        id: Server id, or the temporary id while pending.
        record: Current row data.
        pending: True until the write is confirmed or rolled back.
        submitted_at: Local submit time (pending entries only).
        correlated: Feed record parked on this pending entry.
    """
    id: str
    record: Record
    pending: bool = False
    submitted_at: Optional[float] = None
    correlated: Optional[Record] = None


class ReconciledCollection:
    """Ordered list of records with optimistic entries and staged events."""

    def __init__(
        self,
        actor_id: Optional[str] = None,
        actor_field: str = "sender_id",
        content_field: str = "content",
        match_window_seconds: float = DEFAULT_MATCH_WINDOW_SECONDS,
        staged_event_limit: int = DEFAULT_STAGED_EVENT_LIMIT,
        on_change: Optional[Callable[["ReconciledCollection"], Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.actor_id = actor_id
        self.actor_field = actor_field
        self.content_field = content_field
        self.match_window_seconds = match_window_seconds
        self.staged_event_limit = staged_event_limit
        self._on_change = on_change
        self._clock = clock

        self._entries: List[Entry] = []
        self._temp_ids = itertools.count(1)
        # record id -> (event type, record), LRU
        self._staged: "OrderedDict[str, Tuple[EventType, Record]]" = OrderedDict()

    # =========================================================================
    # Views
    # =========================================================================

    @property
    def entries(self) -> List[Entry]:
        return list(self._entries)

    @property
    def items(self) -> List[Record]:
        return [entry.record for entry in self._entries]

    @property
    def pending(self) -> List[Entry]:
        return [entry for entry in self._entries if entry.pending]

    @property
    def staged_ids(self) -> List[str]:
        return list(self._staged.keys())

    def ids(self) -> List[str]:
        return [entry.id for entry in self._entries]

    def get(self, record_id: str) -> Optional[Record]:
        index = self._index_of(record_id)
        return self._entries[index].record if index is not None else None

    def __contains__(self, record_id: object) -> bool:
        return isinstance(record_id, str) and self._index_of(record_id) is not None

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Local writes
    # =========================================================================

    def add_optimistic(self, record: Record) -> str:
        """Append a pending entry and return its temporary id."""
        temp_id = f"{TEMP_ID_PREFIX}{next(self._temp_ids)}"
        data = dict(record)
        data["id"] = temp_id
        data.setdefault(self.actor_field, self.actor_id)
        self._entries.append(
            Entry(id=temp_id, record=data, pending=True, submitted_at=self._clock())
        )
        logger.debug(f"[Reconcile] Optimistic entry {temp_id} added")
        self._changed()
        return temp_id

    def confirm(self, temp_id: str, confirmed: Any) -> None:
        """Swap a pending entry for the server-confirmed record."""
        record = to_record(confirmed)
        record_id = str(record["id"])
        index = self._index_of(temp_id)

        if index is None:
            # Entry already rolled back or never existed: treat as a plain insert
            logger.debug(f"[Reconcile] Confirmation for unknown {temp_id}; inserting {record_id}")
            self._insert(record)
            self._changed()
            return

        entry = self._entries[index]
        correlated = entry.correlated
        if correlated is not None and str(correlated.get("id")) == record_id:
            record = {**correlated, **record}
            correlated = None

        if self._index_of(record_id) is not None:
            # Feed event got here first and was appended
            del self._entries[index]
            self._merge(record_id, record)
        else:
            self._entries[index] = Entry(id=record_id, record=record)
        logger.debug(f"[Reconcile] {temp_id} confirmed as {record_id}")

        if correlated is not None:
            self._insert(correlated)
        self._apply_staged(record_id)
        self._changed()

    def fail(self, temp_id: str) -> Optional[Record]:
        """Roll back a pending entry; returns the removed record, if any."""
        index = self._index_of(temp_id)
        if index is None:
            return None
        entry = self._entries.pop(index)
        logger.debug(f"[Reconcile] {temp_id} rolled back")
        if entry.correlated is not None:
            self._insert(entry.correlated)
        self._changed()
        return entry.record

    # =========================================================================
    # Feed events
    # =========================================================================

    def apply(self, event: ChangeEvent) -> bool:
        """Apply one change-feed event; returns True if the list changed."""
        record = event_record(event)
        record_id = event.record_id
        if not record_id:
            logger.debug(f"[Reconcile] {event.event_type.value} without id ignored")
            return False

        if event.event_type is EventType.INSERT:
            changed = self._apply_insert(record_id, record, event.received_at)
        elif event.event_type is EventType.UPDATE:
            changed = self._apply_update(record_id, record)
        else:
            changed = self._apply_delete(record_id)

        if changed:
            self._changed()
        return changed

    def _apply_insert(self, record_id: str, record: Record, received_at: float) -> bool:
        staged = self._staged.get(record_id)
        if staged is not None and staged[0] is EventType.DELETE:
            del self._staged[record_id]
            logger.debug(f"[Reconcile] INSERT {record_id} suppressed by staged DELETE")
            return False

        if self._index_of(record_id) is not None:
            # Echo of a record already held: only a differing field counts
            return self._merge(record_id, record)

        entry = self._match_pending(record, received_at)
        if entry is not None:
            entry.correlated = record
            logger.debug(f"[Reconcile] INSERT {record_id} correlated with {entry.id}")
            return False

        self._insert(record)
        return True

    def _apply_update(self, record_id: str, record: Record) -> bool:
        if self._index_of(record_id) is not None:
            return self._merge(record_id, record)
        entry = self._correlated_with(record_id)
        if entry is not None:
            entry.correlated = {**(entry.correlated or {}), **record}
            return False
        self._stage(record_id, EventType.UPDATE, record)
        return False

    def _apply_delete(self, record_id: str) -> bool:
        if self._remove(record_id):
            return True
        entry = self._correlated_with(record_id)
        if entry is not None:
            entry.correlated = None
        # Held so a late INSERT or confirmation for the id is dropped
        self._stage(record_id, EventType.DELETE, {"id": record_id})
        return False

    # =========================================================================
    # Bulk
    # =========================================================================

    def load(self, records: List[Any]) -> None:
        """Replace confirmed state with a refetch; pending entries are kept."""
        pending = [entry for entry in self._entries if entry.pending]
        self._entries = []
        for value in records:
            record = to_record(value)
            if "id" in record:
                self._insert(record)
        self._entries.extend(pending)
        self._changed()

    def upsert(self, value: Any) -> None:
        """Insert or merge a record the caller already knows is confirmed."""
        self._insert(to_record(value))
        self._changed()

    def remove(self, record_id: str) -> bool:
        removed = self._remove(record_id)
        if removed:
            self._changed()
        return removed

    # =========================================================================
    # Internals
    # =========================================================================

    def _index_of(self, record_id: str) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.id == record_id:
                return index
        return None

    def _insert(self, record: Record) -> None:
        record_id = str(record["id"])
        staged = self._staged.get(record_id)
        if staged is not None and staged[0] is EventType.DELETE:
            del self._staged[record_id]
            return
        if self._index_of(record_id) is not None:
            self._merge(record_id, record)
        else:
            self._entries.append(Entry(id=record_id, record=dict(record)))
        self._apply_staged(record_id)

    def _merge(self, record_id: str, record: Record) -> bool:
        index = self._index_of(record_id)
        if index is None:
            return False
        entry = self._entries[index]
        merged = {**entry.record, **record}
        if merged == entry.record:
            return False
        entry.record = merged
        return True

    def _remove(self, record_id: str) -> bool:
        index = self._index_of(record_id)
        if index is None:
            return False
        del self._entries[index]
        return True

    def _match_pending(self, record: Record, received_at: float) -> Optional[Entry]:
        actor = record.get(self.actor_field)
        if actor is None or (self.actor_id is not None and actor != self.actor_id):
            return None
        for entry in self._entries:
            if not entry.pending or entry.correlated is not None:
                continue
            if entry.record.get(self.actor_field) != actor:
                continue
            if entry.record.get(self.content_field) != record.get(self.content_field):
                continue
            if abs(received_at - (entry.submitted_at or 0.0)) <= self.match_window_seconds:
                return entry
        return None

    def _correlated_with(self, record_id: str) -> Optional[Entry]:
        for entry in self._entries:
            if entry.correlated is not None and str(entry.correlated.get("id")) == record_id:
                return entry
        return None

    def _stage(self, record_id: str, event_type: EventType, record: Record) -> None:
        previous = self._staged.pop(record_id, None)
        if previous is not None:
            if previous[0] is EventType.DELETE:
                event_type, record = previous
            elif event_type is EventType.UPDATE:
                record = {**previous[1], **record}
        self._staged[record_id] = (event_type, record)
        while len(self._staged) > self.staged_event_limit:
            dropped, _ = self._staged.popitem(last=False)
            logger.debug(f"[Reconcile] Staged event for {dropped} evicted")
        logger.debug(f"[Reconcile] Staged {event_type.value} for unknown {record_id}")

    def _apply_staged(self, record_id: str) -> None:
        staged = self._staged.pop(record_id, None)
        if staged is None:
            return
        event_type, record = staged
        if event_type is EventType.DELETE:
            self._remove(record_id)
        else:
            self._merge(record_id, record)
        logger.debug(f"[Reconcile] Applied staged {event_type.value} for {record_id}")

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(f"[Reconcile] on_change callback failed: {exc}")


class LiveFeed:
    """Base for feature wrappers that keep one collection in sync with a channel.

    Subclasses set ``channel_key``, implement ``accepts(event)`` and add
    their own write operations on top of ``_submit``.
    """

    channel_key: str = ""

    def __init__(self, collection: ReconciledCollection) -> None:
        self.collection = collection
        self.errors: List[BaseException] = []
        self._handle: Optional[SubscriptionHandle] = None

    def accepts(self, event: ChangeEvent) -> bool:
        return True

    def handle_event(self, event: ChangeEvent) -> None:
        if self.accepts(event):
            self.collection.apply(event)

    def handle_error(self, error: BaseException) -> None:
        self.errors.append(error)
        logger.warning(f"[Feed] {self.channel_key}: {error}")

    def handlers(self) -> ChannelHandlers:
        return ChannelHandlers(on_event=self.handle_event, on_error=self.handle_error)

    def attach(self, client: "LiveSyncClient") -> SubscriptionHandle:
        """Subscribe this feed's handlers on ``client``; idempotent."""
        if self._handle is None or not self._handle.active:
            self._handle = client.subscribe(self.channel_key, self.handlers())
        return self._handle

    def detach(self) -> None:
        if self._handle is not None:
            self._handle.unsubscribe()
            self._handle = None

    @property
    def attached(self) -> bool:
        return self._handle is not None and self._handle.active

    async def _submit(self, draft: Record, write: Callable[[], Any]) -> Any:
        """Run ``write`` behind an optimistic entry for ``draft``.

        The confirmed model replaces the entry; on failure (or cancellation)
        the entry is rolled back and the error re-raised.
        """
        temp_id = self.collection.add_optimistic(draft)
        try:
            confirmed = await write()
        except BaseException as exc:
            self.collection.fail(temp_id)
            if isinstance(exc, RealtimeError):
                logger.warning(f"[Feed] {self.channel_key}: write rolled back: {exc}")
            raise
        self.collection.confirm(temp_id, confirmed)
        return confirmed
