"""
Notification router: the participant-scoped ``user:<id>`` channel.
"""
from typing import Any, Dict, List, Optional

from .connection import EVENT_CONNECT, ChatConnection
from .store import ClientStateStore
from .tasks import BackgroundTasks
from ..config import Settings, get_settings
from ..errors import NotFoundError
from ..proto.chat_wire import JOIN_USER, NOTIFICATION_NEW, NotificationType
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.notifications.client')


class NotificationRouter:
    """Receives ``notification:new`` and mirrors notification state locally.

    The router subscribes to the participant's own room on every connect,
    so notifications arrive even for groups without a live subscription.
    A NEW_MESSAGE notification counts toward its group's unread counter
    unless that group is being viewed; the count is keyed by message ID,
    so the same message arriving as ``message:new`` is not counted twice.
    """

    def __init__(self, connection: ChatConnection, store: ClientStateStore, settings: Optional[Settings] = None):
        self.connection = connection
        self.store = store
        self.settings = settings or get_settings()
        self.subscribed_epoch = 0
        self._tasks = BackgroundTasks("notifications")
        connection.on(EVENT_CONNECT, self._on_connect)
        connection.on(NOTIFICATION_NEW, self.on_notification)

    def _on_connect(self, info):
        self._tasks.spawn(self.subscribe())

    async def subscribe(self) -> Dict[str, Any]:
        """Send ``join:user`` for the local participant."""
        epoch = self.connection.epoch
        ack = await self.connection.send(JOIN_USER, {"userId": self.store.user_id})
        data = ack.raise_for_error()
        self.subscribed_epoch = epoch
        logger.info(f"Subscribed to notifications for {self.store.user_id}")
        return data

    def on_notification(self, payload: Dict[str, Any]):
        if not payload.get("id"):
            logger.warning(f"Notification without id ignored: {payload!r}")
            return
        if not self.store.add_notification(payload):
            return
        logger.debug(f"Notification {payload['id']} ({payload.get('type')}) received")
        if payload.get("type") == NotificationType.NEW_MESSAGE.value:
            metadata = payload.get("metadata") or {}
            group_id = metadata.get("groupId")
            if group_id and group_id != self.store.active_group_id:
                self.store.count_unread(group_id, metadata.get("messageId") or payload.get("referenceId"))

    async def load(self, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        data = await self.connection.call("ListNotifications", {"unreadOnly": unread_only, "limit": limit})
        notifications = data.get("notifications", [])
        self.store.set_notifications(notifications)
        return notifications

    async def refresh_unread_count(self) -> int:
        data = await self.connection.call("GetNotificationUnreadCount")
        self.store.notification_unread = int(data.get("count", 0))
        return self.store.notification_unread

    def get_unread_count(self) -> int:
        return self.store.notification_unread

    async def mark_read(self, notification_id: str):
        try:
            await self.connection.call("MarkNotificationRead", {"notificationId": notification_id})
        except NotFoundError:
            self.store.remove_notification(notification_id)
            raise
        self.store.mark_notification_read(notification_id)

    async def mark_all_read(self) -> int:
        data = await self.connection.call("MarkAllNotificationsRead")
        self.store.mark_all_notifications_read()
        return int(data.get("count", 0))

    async def delete(self, notification_id: str):
        try:
            await self.connection.call("DeleteNotification", {"notificationId": notification_id})
        except NotFoundError:
            self.store.remove_notification(notification_id)
            raise
        self.store.remove_notification(notification_id)

    async def wait_idle(self):
        await self._tasks.wait()

    async def close(self):
        await self._tasks.cancel()
