"""
Envelope format and event names carried over the ``OpenStream`` stream.

Every frame on the stream is a :class:`ChatEnvelope`; on the wire it is a
``chatapp.ChatEnvelope`` protobuf message whose ``payload`` is a
``google.protobuf.Struct``. Frames that expect an acknowledgment carry a
non-null ``id``; the peer answers with exactly one ``ack`` frame bearing
the same ``id``. Unary methods exchange ``ChatRequest``/``ChatReply``.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from google.protobuf import json_format

from . import chat_pb2

# Handshake
HELLO = "hello"
CONNECTED = "connected"
ACK = "ack"

# Client -> server
JOIN_GROUP = "join:group"
LEAVE_GROUP = "leave:group"
JOIN_USER = "join:user"
MESSAGE_SEND = "message:send"
TYPING = "typing"
MESSAGES_DELIVERED = "messages:delivered"
MESSAGES_READ = "messages:read"

# Server -> client
MESSAGE_NEW = "message:new"
TYPING_UPDATE = "typing:update"
USER_JOINED = "user:joined"
USER_LEFT = "user:left"
MESSAGES_DELIVERED_UPDATE = "messages:delivered:update"
MESSAGES_READ_UPDATE = "messages:read:update"
NOTIFICATION_NEW = "notification:new"


@dataclass
class ChatEnvelope:
    """A single frame on the chat stream.

    Attributes:
        type (str): Event name, e.g. ``message:send``
        payload (dict): Event body, camelCase keys
        id (str, optional): Ack correlation id; None for fire-and-forget frames
    """
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @property
    def wants_ack(self) -> bool:
        return self.id is not None


def ack(ack_id: str, payload: Dict[str, Any]) -> ChatEnvelope:
    return ChatEnvelope(type=ACK, id=ack_id, payload=payload)


def _plain(value: Any) -> Any:
    # Struct stores every number as a double
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


def struct_to_dict(struct) -> Dict[str, Any]:
    return _plain(json_format.MessageToDict(struct))


def envelope_to_proto(env: ChatEnvelope) -> chat_pb2.ChatEnvelope:
    msg = chat_pb2.ChatEnvelope(type=env.type, id=env.id or "")
    msg.payload.update(_jsonable(env.payload or {}))
    return msg


def envelope_from_proto(msg: chat_pb2.ChatEnvelope) -> ChatEnvelope:
    return ChatEnvelope(type=msg.type, payload=struct_to_dict(msg.payload), id=msg.id or None)


def request_to_proto(request: Dict[str, Any]) -> chat_pb2.ChatRequest:
    """Build a unary request; ``userId`` moves into ``user_id``, the rest into ``params``."""
    params = {k: v for k, v in (request or {}).items() if k != "userId" and v is not None}
    msg = chat_pb2.ChatRequest(user_id=(request or {}).get("userId") or "")
    msg.params.update(_jsonable(params))
    return msg


def request_from_proto(msg: chat_pb2.ChatRequest) -> Dict[str, Any]:
    request = struct_to_dict(msg.params)
    if msg.user_id:
        request["userId"] = msg.user_id
    return request


def reply_to_proto(reply: Dict[str, Any]) -> chat_pb2.ChatReply:
    """Build a unary reply from a ``{"success", "error", "code", ...}`` payload."""
    data = {k: v for k, v in reply.items() if k not in ("success", "error", "code")}
    msg = chat_pb2.ChatReply(success=bool(reply.get("success")),
                             error=reply.get("error") or "",
                             code=reply.get("code") or "")
    msg.data.update(_jsonable(data))
    return msg


def reply_from_proto(msg: chat_pb2.ChatReply) -> Dict[str, Any]:
    reply = struct_to_dict(msg.data)
    reply["success"] = msg.success
    if not msg.success:
        reply["error"] = msg.error
        reply["code"] = msg.code
    return reply


class MessageStatus(str, Enum):
    """Delivery status of a group message.

    Transitions are strictly forward: SENT -> DELIVERED -> READ.
    """
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def allows(self, new: "MessageStatus") -> bool:
        """True when moving from this status to ``new`` goes forward."""
        return MessageStatus(new).rank > self.rank


_STATUS_ORDER = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ]


class NotificationType(str, Enum):
    NEW_MESSAGE = "NEW_MESSAGE"
    GROUP_MATCHED = "GROUP_MATCHED"
    EVENT_REMINDER = "EVENT_REMINDER"
    SYSTEM = "SYSTEM"
