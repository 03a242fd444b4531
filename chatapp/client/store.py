"""
Client-side read model: groups, messages, typing set, unread counters and
notifications.

The store is never the source of truth; it is patched by the sync
components as events arrive. Every mutating method runs to completion
without awaiting, so on the single-threaded event loop each inbound
event's changes are applied atomically.
"""
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..proto.chat_wire import MessageStatus


class DeliveryState(str, Enum):
    """Local lifecycle of an outbound message."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class LocalMessage:
    """A message as the client renders it.

    Confirmed messages carry the server's ``id`` and ``seq``; an optimistic
    outbound message has neither until its confirmation arrives.
    """
    group_id: str
    sender_id: str
    content: str
    id: Optional[str] = None
    seq: Optional[int] = None
    created_at: Optional[int] = None
    status: MessageStatus = MessageStatus.SENT
    client_token: Optional[str] = None
    sender_name: str = ""
    state: DeliveryState = DeliveryState.CONFIRMED

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "LocalMessage":
        return cls(
            group_id=data["groupId"],
            sender_id=data["senderId"],
            content=data.get("content", ""),
            id=data["id"],
            seq=data["seq"],
            created_at=data.get("createdAt"),
            status=MessageStatus(data.get("status", MessageStatus.SENT.value)),
            client_token=data.get("clientToken"),
            sender_name=data.get("senderName", ""),
        )

    @property
    def confirmed(self) -> bool:
        return self.state == DeliveryState.CONFIRMED


def _sort_key(m: LocalMessage):
    # Confirmed messages in seq order; optimistic ones after them in creation order.
    if m.seq is not None:
        return (0, m.seq, 0)
    return (1, 0, m.created_at or 0)


class ClientStateStore:
    """Single in-memory structure shared by the client sync components.

    Attributes:
        user_id (str): Local participant
        groups (Dict[str, dict]): Group records by ID, in server order
        messages (Dict[str, List[LocalMessage]]): Per-group message lists
        typing (Dict[Tuple[str, str], int]): (group, user) -> last typing timestamp
        unread (Dict[str, int]): Per-group unread message counters
        heads (Dict[str, int]): Highest ordering key known to exist per group
        online (Dict[str, Set[str]]): Members currently connected to each group
        active_group_id (str, optional): Group currently being viewed
        has_more (Dict[str, bool]): Whether older history may exist per group
        history_loaded (Set[str]): Groups whose first history page is loaded
        notifications (List[dict]): Newest first, capped
        notification_unread (int): Unread notification counter
    """

    def __init__(self, user_id: str, notification_cap: int = 100):
        self.user_id = user_id
        self.notification_cap = notification_cap
        self._listeners: List[Callable[[str, Optional[str]], None]] = []
        self.reset()

    def reset(self):
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[LocalMessage]] = {}
        self.typing: Dict[Tuple[str, str], int] = {}
        self.unread: Dict[str, int] = {}
        self.heads: Dict[str, int] = {}
        self.online: Dict[str, Set[str]] = {}
        self._counted: Dict[str, Set[str]] = {}
        self.active_group_id: Optional[str] = None
        self.has_more: Dict[str, bool] = {}
        self.history_loaded: Set[str] = set()
        self._status_buffer: Dict[str, MessageStatus] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.notification_unread = 0

    # ------------------------------------------------------------------
    # Change listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[str, Optional[str]], None]):
        """Register ``listener(kind, group_id)``, called after each change."""
        self._listeners.append(listener)

    def _changed(self, kind: str, group_id: Optional[str] = None):
        for listener in list(self._listeners):
            listener(kind, group_id)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def set_groups(self, groups: Iterable[Dict[str, Any]]):
        self.groups = {g["id"]: g for g in groups}
        for group_id, g in self.groups.items():
            self.messages.setdefault(group_id, [])
            if group_id not in self.unread:
                self.unread[group_id] = int(g.get("unreadCount") or 0)
            self.note_head(group_id, int(g.get("lastSeq") or 0))
        self._changed("groups")

    def group_ids(self) -> List[str]:
        return list(self.groups)

    def set_active_group(self, group_id: Optional[str]):
        self.active_group_id = group_id
        self._changed("active", group_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def group_messages(self, group_id: str) -> List[LocalMessage]:
        return list(self.messages.get(group_id, ()))

    def find_message(self, message_id: str) -> Optional[LocalMessage]:
        for messages in self.messages.values():
            for m in messages:
                if m.id == message_id:
                    return m
        return None

    def find_by_token(self, client_token: str) -> Optional[LocalMessage]:
        for messages in self.messages.values():
            for m in messages:
                if m.client_token == client_token and m.sender_id == self.user_id:
                    return m
        return None

    def _insert(self, msg: LocalMessage) -> bool:
        messages = self.messages.setdefault(msg.group_id, [])
        if msg.id is not None and any(m.id == msg.id for m in messages):
            return False
        if msg.client_token and msg.sender_id == self.user_id:
            for i, m in enumerate(messages):
                if m.client_token == msg.client_token and m.sender_id == msg.sender_id:
                    if m.id is not None:
                        return False
                    # Optimistic entry reconciled: replaced, not appended.
                    messages[i] = msg
                    messages.sort(key=_sort_key)
                    self._apply_buffered(msg)
                    return True
        messages.append(msg)
        messages.sort(key=_sort_key)
        self._apply_buffered(msg)
        return True

    def upsert_message(self, msg: LocalMessage) -> bool:
        """Add a confirmed message, reconciling an optimistic copy by token.

        Returns:
            bool: True if the message was not present before
        """
        inserted = self._insert(msg)
        if inserted:
            self.note_head(msg.group_id, msg.seq or 0)
            self._changed("messages", msg.group_id)
        return inserted

    def add_pending(self, group_id: str, content: str, client_token: Optional[str] = None) -> LocalMessage:
        msg = LocalMessage(
            group_id=group_id,
            sender_id=self.user_id,
            content=content,
            created_at=int(time.time() * 1000),
            client_token=client_token or uuid.uuid4().hex,
            state=DeliveryState.PENDING,
        )
        self.messages.setdefault(group_id, []).append(msg)
        self._changed("messages", group_id)
        return msg

    def _set_delivery_state(self, client_token: str, state: DeliveryState) -> Optional[LocalMessage]:
        msg = self.find_by_token(client_token)
        if msg is None or msg.confirmed:
            return msg
        messages = self.messages[msg.group_id]
        updated = replace(msg, state=state)
        messages[messages.index(msg)] = updated
        self._changed("messages", msg.group_id)
        return updated

    def mark_failed(self, client_token: str) -> Optional[LocalMessage]:
        return self._set_delivery_state(client_token, DeliveryState.FAILED)

    def mark_pending(self, client_token: str) -> Optional[LocalMessage]:
        return self._set_delivery_state(client_token, DeliveryState.PENDING)

    def discard_pending(self, client_token: str):
        msg = self.find_by_token(client_token)
        if msg is not None and not msg.confirmed:
            self.messages[msg.group_id].remove(msg)
            self._changed("messages", msg.group_id)

    def note_head(self, group_id: str, seq: int):
        if seq > self.heads.get(group_id, 0):
            self.heads[group_id] = seq

    def head_seq(self, group_id: str) -> int:
        """Highest ordering key seen for a group, loaded or merely announced."""
        return max(self.heads.get(group_id, 0), self.last_seq(group_id))

    def last_seq(self, group_id: str) -> int:
        seqs = [m.seq for m in self.messages.get(group_id, ()) if m.seq is not None]
        return max(seqs) if seqs else 0

    def oldest_seq(self, group_id: str) -> Optional[int]:
        seqs = [m.seq for m in self.messages.get(group_id, ()) if m.seq is not None]
        return min(seqs) if seqs else None

    def missing_seqs(self, group_id: str) -> List[int]:
        """Ordering keys absent between the oldest and newest loaded message."""
        seqs = {m.seq for m in self.messages.get(group_id, ()) if m.seq is not None}
        if not seqs:
            return []
        return [s for s in range(min(seqs), max(seqs) + 1) if s not in seqs]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _apply_buffered(self, msg: LocalMessage):
        buffered = self._status_buffer.pop(msg.id, None) if msg.id else None
        if buffered is not None and MessageStatus(msg.status).allows(buffered):
            msg.status = buffered

    def apply_status(self, message_ids: Iterable[str], status: MessageStatus) -> List[str]:
        """Move messages forward to ``status``; backward moves are ignored.

        Updates for messages not loaded yet are buffered and applied when
        the message arrives.

        Returns:
            list[str]: IDs whose status changed now
        """
        status = MessageStatus(status)
        wanted = set(message_ids)
        changed = []
        groups = set()
        for group_id, messages in self.messages.items():
            for m in messages:
                if m.id in wanted:
                    wanted.discard(m.id)
                    if MessageStatus(m.status).allows(status):
                        m.status = status
                        changed.append(m.id)
                        groups.add(group_id)
        for message_id in wanted:
            current = self._status_buffer.get(message_id)
            if current is None or current.allows(status):
                self._status_buffer[message_id] = status
        for group_id in groups:
            self._changed("status", group_id)
        return changed

    def unread_inbound(self, group_id: str) -> List[str]:
        """Confirmed messages from other members that are not READ yet."""
        return [m.id for m in self.messages.get(group_id, ())
                if m.confirmed and m.id and m.sender_id != self.user_id
                and m.status != MessageStatus.READ]

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------

    def set_typing(self, group_id: str, user_id: str, timestamp: Optional[int] = None):
        self.typing[(group_id, user_id)] = timestamp or int(time.time() * 1000)
        self._changed("typing", group_id)

    def clear_typing(self, group_id: str, user_id: str) -> bool:
        if self.typing.pop((group_id, user_id), None) is None:
            return False
        self._changed("typing", group_id)
        return True

    def typing_users(self, group_id: str) -> List[str]:
        return [uid for (gid, uid) in self.typing if gid == group_id]

    # ------------------------------------------------------------------
    # Unread counters
    # ------------------------------------------------------------------

    def count_unread(self, group_id: str, message_id: Optional[str]) -> bool:
        """Count one unread message for a group, at most once per message ID."""
        counted = self._counted.setdefault(group_id, set())
        if message_id is not None:
            if message_id in counted:
                return False
            counted.add(message_id)
        self.unread[group_id] = self.unread.get(group_id, 0) + 1
        self._changed("unread", group_id)
        return True

    def set_unread(self, group_id: str, count: int):
        """Replace a counter with the server's authoritative value."""
        self.unread[group_id] = max(0, int(count))
        self._changed("unread", group_id)

    def clear_unread(self, group_id: str):
        self.unread[group_id] = 0
        self._changed("unread", group_id)

    def unread_count(self, group_id: str) -> int:
        return self.unread.get(group_id, 0)

    # ------------------------------------------------------------------
    # Online members
    # ------------------------------------------------------------------

    def set_online(self, group_id: str, user_id: str, online: bool) -> bool:
        members = self.online.setdefault(group_id, set())
        if online == (user_id in members):
            return False
        if online:
            members.add(user_id)
        else:
            members.discard(user_id)
        self._changed("online", group_id)
        return True

    def online_members(self, group_id: str) -> List[str]:
        return sorted(self.online.get(group_id, ()))

    def clear_online(self):
        groups = [gid for gid, members in self.online.items() if members]
        self.online.clear()
        for group_id in groups:
            self._changed("online", group_id)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def set_notifications(self, notifications: Iterable[Dict[str, Any]]):
        self.notifications = list(notifications)[:self.notification_cap]
        self.notification_unread = sum(1 for n in self.notifications if not n.get("isRead"))
        self._changed("notifications")

    def add_notification(self, notification: Dict[str, Any]) -> bool:
        if any(n["id"] == notification["id"] for n in self.notifications):
            return False
        self.notifications.insert(0, notification)
        del self.notifications[self.notification_cap:]
        if not notification.get("isRead"):
            self.notification_unread += 1
        self._changed("notifications")
        return True

    def mark_notification_read(self, notification_id: str) -> bool:
        for n in self.notifications:
            if n["id"] == notification_id:
                if n.get("isRead"):
                    return False
                n["isRead"] = True
                n["readAt"] = int(time.time() * 1000)
                self.notification_unread = max(0, self.notification_unread - 1)
                self._changed("notifications")
                return True
        return False

    def mark_all_notifications_read(self):
        now = int(time.time() * 1000)
        for n in self.notifications:
            if not n.get("isRead"):
                n["isRead"] = True
                n["readAt"] = n.get("readAt") or now
        self.notification_unread = 0
        self._changed("notifications")

    def remove_notification(self, notification_id: str):
        for n in self.notifications:
            if n["id"] == notification_id:
                self.notifications.remove(n)
                if not n.get("isRead"):
                    self.notification_unread = max(0, self.notification_unread - 1)
                self._changed("notifications")
                return
