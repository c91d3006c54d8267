"""The user's notification feed, newest first.

Notifications are created server-side (likes, comments, follows, mentions)
and only ever arrive as INSERTs on ``notifications_<userId>``. The feed keeps
the most recent ``limit`` of them, ignores repeats of an id it already holds,
and tracks the unread count. Marking as read is written to the backend first
and applied locally once it succeeds.
"""
import logging
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from pydantic import ValidationError

from livesync.backend_api.client import BackendClient
from livesync.backend_api.schemas import Notification
from livesync.config import ReconciliationSettings
from livesync.realtime.channels import notifications_key
from livesync.realtime.registry import ChannelHandlers, SubscriptionHandle
from livesync.realtime.schemas import ChangeEvent, EventType

from .collection import event_record

if TYPE_CHECKING:
    from livesync.realtime.client import LiveSyncClient

logger = logging.getLogger(__name__)


class NotificationFeed:
    """Recent notifications for ``user_id``.

    Args:
        backend: REST collaborator for the initial page and read marks.
        user_id: Recipient; events addressed to anyone else are ignored.
        settings: Supplies ``notification_limit``.
        on_change: Called with the feed after every change to the list.
        on_notification: Called once per newly arrived notification
            (toasts, badges). Not called for ``load_recent()``.
    """

    def __init__(
        self,
        backend: Optional[BackendClient],
        user_id: str,
        settings: Optional[ReconciliationSettings] = None,
        on_change: Optional[Callable[["NotificationFeed"], Any]] = None,
        on_notification: Optional[Callable[[Notification], Any]] = None,
    ) -> None:
        settings = settings or ReconciliationSettings()
        self._backend = backend
        self.user_id = user_id
        self.limit = settings.notification_limit
        self.channel_key = notifications_key(user_id)
        self.errors: List[BaseException] = []
        self._notifications: List[Notification] = []
        self._on_change = on_change
        self._on_notification = on_notification
        self._handle: Optional[SubscriptionHandle] = None

    @property
    def notifications(self) -> List[Notification]:
        return list(self._notifications)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._notifications if not n.read)

    def get(self, notification_id: str) -> Optional[Notification]:
        for notification in self._notifications:
            if notification.id == notification_id:
                return notification
        return None

    async def load_recent(self) -> None:
        self._notifications = await self._backend.fetch_notifications(
            self.user_id, limit=self.limit
        )
        self._changed()

    # =========================================================================
    # Feed events
    # =========================================================================

    def handle_event(self, event: ChangeEvent) -> None:
        if event.event_type is not EventType.INSERT or not event.new:
            return
        try:
            notification = Notification.model_validate(event_record(event))
        except ValidationError as exc:
            logger.warning(f"[Notifications] Malformed notification ignored: {exc}")
            return
        if notification.user_id != self.user_id:
            return
        if self.get(notification.id) is not None:
            logger.debug(f"[Notifications] Duplicate {notification.id} ignored")
            return

        self._notifications.insert(0, notification)
        del self._notifications[self.limit:]
        logger.debug(f"[Notifications] {notification.describe()}")
        self._changed()

        if self._on_notification is not None:
            try:
                self._on_notification(notification)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(f"[Notifications] on_notification callback failed: {exc}")

    def handle_error(self, error: BaseException) -> None:
        self.errors.append(error)
        logger.warning(f"[Notifications] {self.channel_key}: {error}")

    def handlers(self) -> ChannelHandlers:
        return ChannelHandlers(on_insert=self.handle_event, on_error=self.handle_error)

    def attach(self, client: "LiveSyncClient") -> SubscriptionHandle:
        if self._handle is None or not self._handle.active:
            self._handle = client.subscribe(self.channel_key, self.handlers())
        return self._handle

    def detach(self) -> None:
        if self._handle is not None:
            self._handle.unsubscribe()
            self._handle = None

    # =========================================================================
    # Read marks
    # =========================================================================

    async def mark_read(self, notification_id: str) -> None:
        notification = self.get(notification_id)
        if notification is None or notification.read:
            return
        await self._backend.mark_notifications_read(self.user_id, notification_id)
        notification.read = True
        self._changed()

    async def mark_all_read(self) -> None:
        if self.unread_count == 0:
            return
        await self._backend.mark_notifications_read(self.user_id)
        for notification in self._notifications:
            notification.read = True
        self._changed()

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(f"[Notifications] on_change callback failed: {exc}")
