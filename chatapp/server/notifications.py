import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .hub import Hub, user_room
from .models import Notification, NotificationType
from .repo import NotificationsRepo
from ..proto.chat_wire import NOTIFICATION_NEW, ChatEnvelope
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.notifications')


class NotificationService:
    """Creates, stores and pushes participant-scoped notifications.

    Pushes go to the ``user:<id>`` room, independent of any group
    subscription. Other subsystems (matching, reminders) call
    :meth:`notify` / :meth:`notify_many` directly.
    """

    def __init__(self, repo: NotificationsRepo, hub: Hub):
        self.repo = repo
        self.hub = hub

    def notify(self, user_id: str, type: NotificationType, title: str, message: str = "",
               reference_id: Optional[str] = None, reference_type: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Notification:
        n = Notification(
            id=uuid.uuid4().hex,
            user_id=user_id,
            type=NotificationType(type),
            title=title,
            message=message,
            reference_id=reference_id,
            reference_type=reference_type,
            metadata=dict(metadata or {}),
            created_ts=int(time.time() * 1000),
        )
        self.repo.append(n)
        pushed = self.hub.send_to_room(user_room(user_id), ChatEnvelope(type=NOTIFICATION_NEW, payload=n.to_wire()))
        logger.debug(f"Notification {n.id} for {user_id} pushed to {pushed} connections")
        return n

    def notify_many(self, user_ids: Iterable[str], type: NotificationType, title: str,
                    message: str = "", reference_id: Optional[str] = None,
                    reference_type: Optional[str] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> List[Notification]:
        created = [self.notify(uid, type, title, message, reference_id, reference_type, metadata)
                   for uid in user_ids]
        if created:
            logger.info(f"{len(created)} {NotificationType(type).value} notifications created")
        return created

    def list(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        return self.repo.list_for_user(user_id, unread_only=unread_only, limit=limit)

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        return self.repo.mark_read(notification_id, user_id, int(time.time() * 1000))

    def mark_all_read(self, user_id: str) -> int:
        count = self.repo.mark_all_read(user_id, int(time.time() * 1000))
        logger.info(f"Marked {count} notifications as read for user {user_id}")
        return count

    def unread_count(self, user_id: str) -> int:
        return self.repo.unread_count(user_id)

    def delete(self, notification_id: str, user_id: str) -> bool:
        return self.repo.delete(notification_id, user_id)
