import json
import os
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .models import Group, Member, Message, MessageStatus, Notification, NotificationType, User
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.repo')


class _JsonlRepo:
    """Shared JSONL file handling for the repositories below.

    Records are appended one JSON object per line and fsynced. Updates
    rewrite the whole file, which is fine at this data volume.
    """

    def __init__(self, path: str):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.path = path

    def _read_records(self) -> Iterator[dict]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                yield json.loads(line)

    def _append_record(self, rec: dict):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _rewrite(self, records: Iterable[dict]):
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            for rec in records:
                f.write(json.dumps(rec, ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)


class UsersRepo(_JsonlRepo):
    """Read-mostly view of participants provided by the identity system."""

    def __init__(self, path: str):
        """Initialize users repository.

        Args:
            path (str): Path to JSONL file storing user data
        """
        super().__init__(path)
        self.users_by_id: Dict[str, User] = {}
        for rec in self._read_records():
            self.users_by_id[rec["id"]] = User(**rec)

    def append_user(self, user: User):
        """Add a participant record.

        Args:
            user (User): User object to store
        """
        self._append_record({"id": user.id, "display_name": user.display_name, "avatar_url": user.avatar_url})
        self.users_by_id[user.id] = user
        logger.info(f"User registered: {user.display_name} (ID: {user.id})")

    def get(self, user_id: str) -> Optional[User]:
        return self.users_by_id.get(user_id)


class GroupsRepo(_JsonlRepo):
    """Repository of chat groups and their fixed memberships."""

    def __init__(self, path: str):
        super().__init__(path)
        self.groups_by_id: Dict[str, Group] = {}
        for rec in self._read_records():
            rec["members"] = [Member(**m) for m in rec.get("members", [])]
            self.groups_by_id[rec["id"]] = Group(**rec)

    def create_group(self, group_id: str, name: str, members: List[Member],
                     created_ts: int, subject_id: Optional[str] = None,
                     subject_title: Optional[str] = None) -> Group:
        """Store a group produced by the external allocation process.

        Args:
            group_id (str): Unique group ID
            name (str): Group name
            members (List[Member]): Allocated members
            created_ts (int): Creation time in milliseconds
            subject_id (str, optional): Associated event ID
            subject_title (str, optional): Associated event title

        Returns:
            Group: The stored group

        Raises:
            ValueError: If the group already exists or a participant is listed twice
        """
        if group_id in self.groups_by_id:
            logger.warning(f"Attempt to create existing group: {group_id}")
            raise ValueError(f"Group {group_id} already exists")
        seen = set()
        for m in members:
            if m.user_id in seen:
                raise ValueError(f"User {m.user_id} listed twice in group {group_id}")
            seen.add(m.user_id)

        group = Group(id=group_id, name=name, members=list(members), subject_id=subject_id,
                      subject_title=subject_title, created_ts=created_ts)
        self.groups_by_id[group_id] = group
        self._append_record(self._to_record(group))
        logger.info(f"Group created: {group_id} ({name}) with {len(members)} members")
        return group

    @staticmethod
    def _to_record(group: Group) -> dict:
        return {
            "id": group.id,
            "name": group.name,
            "members": [{"user_id": m.user_id, "display_name": m.display_name,
                         "avatar_url": m.avatar_url} for m in group.members],
            "subject_id": group.subject_id,
            "subject_title": group.subject_title,
            "created_ts": group.created_ts,
        }

    def get_group(self, group_id: str) -> Optional[Group]:
        return self.groups_by_id.get(group_id)

    def get_user_groups(self, user_id: str) -> List[Group]:
        """Get all groups that a user is a member of, oldest first."""
        groups = [g for g in self.groups_by_id.values() if g.has_member(user_id)]
        groups.sort(key=lambda g: g.created_ts)
        return groups

    def is_member(self, group_id: str, user_id: str) -> bool:
        """True if the user belongs to the group; False if not or if the group doesn't exist."""
        group = self.groups_by_id.get(group_id)
        return group is not None and group.has_member(user_id)


class MessagesRepo(_JsonlRepo):
    """Durable message store: insert, cursor queries and status updates.

    Messages are kept per group in ``seq`` order. The caller is responsible
    for assigning ``seq``; see :class:`GroupSequencer`.
    """

    def __init__(self, path: str):
        super().__init__(path)
        self._by_group: Dict[str, List[Message]] = {}
        self._by_id: Dict[str, Message] = {}
        self._by_token: Dict[Tuple[str, str, str], Message] = {}
        for rec in self._read_records():
            rec["status"] = MessageStatus(rec.get("status", MessageStatus.SENT.value))
            self._index(Message(**rec))
        for messages in self._by_group.values():
            messages.sort(key=lambda m: m.seq)

    def _index(self, m: Message):
        self._by_group.setdefault(m.group_id, []).append(m)
        self._by_id[m.message_id] = m
        if m.client_token:
            self._by_token[(m.group_id, m.sender_id, m.client_token)] = m

    @staticmethod
    def _to_record(m: Message) -> dict:
        return {
            "message_id": m.message_id,
            "group_id": m.group_id,
            "sender_id": m.sender_id,
            "content": m.content,
            "seq": m.seq,
            "sent_ts": m.sent_ts,
            "status": MessageStatus(m.status).value,
            "client_token": m.client_token,
            "sender_name": m.sender_name,
        }

    def append(self, m: Message):
        """Insert a new message.

        Raises:
            ValueError: If ``m.seq`` does not follow the group's current head
        """
        head = self.head_seq(m.group_id)
        if m.seq != head + 1:
            raise ValueError(f"Out of order seq {m.seq} for group {m.group_id} (head {head})")
        self._append_record(self._to_record(m))
        self._index(m)
        logger.info(f"Message saved: {m.message_id} seq={m.seq} from {m.sender_id} to group {m.group_id}")

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def find_by_token(self, group_id: str, sender_id: str, token: str) -> Optional[Message]:
        return self._by_token.get((group_id, sender_id, token))

    def head_seq(self, group_id: str) -> int:
        messages = self._by_group.get(group_id)
        return messages[-1].seq if messages else 0

    def query_by_group(self, group_id: str, limit: int = 50, before_seq: Optional[int] = None) -> List[Message]:
        """Page of a group's messages, oldest first.

        Args:
            group_id (str): Group to read
            limit (int): Maximum messages to return
            before_seq (int, optional): Only messages with ``seq`` strictly below this

        Returns:
            list[Message]: Up to ``limit`` messages immediately preceding the cursor
        """
        messages = self._by_group.get(group_id, [])
        if before_seq is not None:
            messages = [m for m in messages if m.seq < before_seq]
        if limit <= 0:
            return list(messages)
        return list(messages[-limit:])

    def update_status(self, message_ids: Iterable[str], status: MessageStatus,
                      exclude_sender: Optional[str] = None,
                      group_id: Optional[str] = None) -> List[Message]:
        """Advance message status; never moves a message backwards.

        Args:
            message_ids: IDs to update
            status (MessageStatus): Target status
            exclude_sender (str, optional): Skip messages authored by this user
            group_id (str, optional): Skip messages outside this group

        Returns:
            list[Message]: The messages whose status actually changed
        """
        status = MessageStatus(status)
        changed = []
        for message_id in message_ids:
            m = self._by_id.get(message_id)
            if m is None or m.sender_id == exclude_sender:
                continue
            if group_id is not None and m.group_id != group_id:
                continue
            if MessageStatus(m.status).allows(status):
                m.status = status
                changed.append(m)
        if changed:
            self._rewrite(self._to_record(m) for msgs in self._by_group.values() for m in msgs)
            logger.debug(f"Status -> {status.value} for {len(changed)} messages")
        return changed

    def count_unread(self, user_id: str, group_ids: Iterable[str]) -> int:
        """Messages authored by others and not yet READ, across the given groups."""
        count = 0
        for group_id in group_ids:
            for m in self._by_group.get(group_id, []):
                if m.sender_id != user_id and m.status != MessageStatus.READ:
                    count += 1
        return count


class NotificationsRepo(_JsonlRepo):
    """Participant-scoped notification storage."""

    def __init__(self, path: str):
        super().__init__(path)
        self._by_id: Dict[str, Notification] = {}
        for rec in self._read_records():
            rec["type"] = NotificationType(rec["type"])
            n = Notification(**rec)
            self._by_id[n.id] = n

    @staticmethod
    def _to_record(n: Notification) -> dict:
        return {
            "id": n.id,
            "user_id": n.user_id,
            "type": NotificationType(n.type).value,
            "title": n.title,
            "message": n.message,
            "reference_id": n.reference_id,
            "reference_type": n.reference_type,
            "metadata": n.metadata,
            "is_read": n.is_read,
            "created_ts": n.created_ts,
            "read_ts": n.read_ts,
        }

    def _save_all(self):
        self._rewrite(self._to_record(n) for n in self._by_id.values())

    def append(self, n: Notification):
        self._append_record(self._to_record(n))
        self._by_id[n.id] = n
        logger.debug(f"Notification stored: {n.id} ({NotificationType(n.type).value}) for user {n.user_id}")

    def get(self, notification_id: str) -> Optional[Notification]:
        return self._by_id.get(notification_id)

    def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        """Newest first."""
        items = [n for n in self._by_id.values()
                 if n.user_id == user_id and (not unread_only or not n.is_read)]
        items.sort(key=lambda n: n.created_ts, reverse=True)
        return items[:limit]

    def mark_read(self, notification_id: str, user_id: str, read_ts: int) -> bool:
        n = self._by_id.get(notification_id)
        if n is None or n.user_id != user_id:
            return False
        if not n.is_read:
            n.is_read = True
            n.read_ts = read_ts
            self._save_all()
        return True

    def mark_all_read(self, user_id: str, read_ts: int) -> int:
        count = 0
        for n in self._by_id.values():
            if n.user_id == user_id and not n.is_read:
                n.is_read = True
                n.read_ts = read_ts
                count += 1
        if count:
            self._save_all()
        return count

    def unread_count(self, user_id: str) -> int:
        return sum(1 for n in self._by_id.values() if n.user_id == user_id and not n.is_read)

    def delete(self, notification_id: str, user_id: str) -> bool:
        n = self._by_id.get(notification_id)
        if n is None or n.user_id != user_id:
            return False
        del self._by_id[notification_id]
        self._save_all()
        return True
