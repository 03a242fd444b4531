from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..proto.chat_wire import MessageStatus, NotificationType


@dataclass
class User:
    """Represents a participant in the chat system.

    Participants are created by the external identity system; this
    subsystem only reads them.

    Attributes:
        id (str): Unique identifier for the user
        display_name (str): User's chosen display name
        avatar_url (str, optional): Profile picture URL
    """
    id: str
    display_name: str
    avatar_url: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {"id": self.id, "displayName": self.display_name, "avatarUrl": self.avatar_url}


@dataclass
class Member:
    """A (group, participant) pairing with denormalized display data.

    Attributes:
        user_id (str): Participant ID
        display_name (str): Display name at allocation time
        avatar_url (str, optional): Profile picture URL
    """
    user_id: str
    display_name: str = ""
    avatar_url: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "displayName": self.display_name, "avatarUrl": self.avatar_url}


@dataclass
class Group:
    """Represents a chat group allocated by the matching process.

    Membership is fixed at creation; the chat subsystem never edits it.

    Attributes:
        id (str): Unique group ID
        name (str): Human-readable group name
        subject_id (str, optional): ID of the associated event
        subject_title (str, optional): Title of the associated event
        members (List[Member]): Members, at most one entry per participant
        created_ts (int): Unix timestamp in milliseconds when group was created
    """
    id: str
    name: str
    members: List[Member] = field(default_factory=list)
    subject_id: Optional[str] = None
    subject_title: Optional[str] = None
    created_ts: int = 0

    @property
    def member_ids(self) -> List[str]:
        return [m.user_id for m in self.members]

    def has_member(self, user_id: str) -> bool:
        return any(m.user_id == user_id for m in self.members)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "subjectId": self.subject_id,
            "subjectTitle": self.subject_title,
            "members": [m.to_wire() for m in self.members],
            "createdAt": self.created_ts,
        }


@dataclass
class Message:
    """Represents a confirmed chat message in a group.

    Attributes:
        message_id (str): Server-assigned unique identifier
        group_id (str): Group the message belongs to
        sender_id (str): ID of the member who sent the message
        content (str): Sanitized message body
        seq (int): Per-group ordering key, strictly increasing from 1
        sent_ts (int): Unix timestamp in milliseconds when the message was stored
        status (MessageStatus): SENT, DELIVERED or READ
        client_token (str, optional): Sender's idempotency token
        sender_name (str): Denormalized sender display name
    """
    message_id: str
    group_id: str
    sender_id: str
    content: str
    seq: int
    sent_ts: int
    status: MessageStatus = MessageStatus.SENT
    client_token: Optional[str] = None
    sender_name: str = ""

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "groupId": self.group_id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "seq": self.seq,
            "createdAt": self.sent_ts,
            "status": MessageStatus(self.status).value,
            "clientToken": self.client_token,
        }


@dataclass
class Notification:
    """A participant-scoped out-of-band event.

    Attributes:
        id (str): Unique notification ID
        user_id (str): Recipient participant
        type (NotificationType): Kind of event
        title (str): Short title
        message (str): Body text
        reference_id (str, optional): ID of the referenced object
        reference_type (str, optional): Kind of the referenced object, e.g. "message"
        metadata (dict): Extra payload, e.g. {"groupId": ...}
        is_read (bool): Logical read flag
        created_ts (int): Creation time in milliseconds
        read_ts (int, optional): Time it was marked read
    """
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str = ""
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    created_ts: int = 0
    read_ts: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": NotificationType(self.type).value,
            "title": self.title,
            "message": self.message,
            "referenceId": self.reference_id,
            "referenceType": self.reference_type,
            "metadata": dict(self.metadata),
            "isRead": self.is_read,
            "createdAt": self.created_ts,
            "readAt": self.read_ts,
        }
