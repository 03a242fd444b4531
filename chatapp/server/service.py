import asyncio
import contextlib
import html
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Deque, Dict, Optional, Set

import grpc
from grpc import aio

from .hub import Hub, group_room, user_room
from .models import Group, MessageStatus, NotificationType
from .notifications import NotificationService
from .repo import GroupsRepo, MessagesRepo, UsersRepo
from .sequencer import GroupSequencer
from ..config import Settings, get_settings
from ..errors import AuthorizationError, ChatError, ConflictError, NotFoundError, RateLimitedError, ValidationError
from ..proto import chat_wire as wire
from ..proto import chat_pb2, chat_pb2_grpc
from ..proto.chat_wire import ChatEnvelope
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.server')

MAX_PAGE_SIZE = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    """Server-side state of one live stream.

    Attributes:
        connection_id (str): Unique ID of this stream
        user_id (str): Authenticated participant
        queue (asyncio.Queue): Outbound envelopes; None is the close sentinel
        groups (Set[str]): Groups this connection is subscribed to
    """
    connection_id: str
    user_id: str
    queue: asyncio.Queue
    groups: Set[str] = field(default_factory=set)


class RateLimiter:
    """Sliding-window limit on messages per user."""

    def __init__(self, max_events: int, window: float):
        self.max_events = max_events
        self.window = window
        self._events: Dict[str, Deque[float]] = {}

    def allow(self, key: str) -> bool:
        now = time.monotonic()
        events = self._events.setdefault(key, deque())
        while events and now - events[0] >= self.window:
            events.popleft()
        if len(events) >= self.max_events:
            return False
        events.append(now)
        return True

    def forget(self, key: str):
        self._events.pop(key, None)


class ChatService(chat_pb2_grpc.ChatServiceServicer):
    """Authoritative half of the chat subsystem.

    Handles group subscriptions, message submission and fan-out, typing
    relays, delivery/read status and notification pushes for every live
    stream. Stream handling is transport-agnostic (:meth:`run_session`);
    :meth:`OpenStream` adapts it to gRPC.
    """

    def __init__(self, users_repo: UsersRepo, messages_repo: MessagesRepo, groups_repo: GroupsRepo,
                 notifications: NotificationService, hub: Hub, settings: Optional[Settings] = None):
        """Initialize chat service with required repositories and message hub.

        Args:
            users_repo (UsersRepo): Participant lookup
            messages_repo (MessagesRepo): Durable message store
            groups_repo (GroupsRepo): Group memberships
            notifications (NotificationService): Notification store and push
            hub (Hub): Real-time delivery hub
            settings (Settings, optional): Limits; defaults to get_settings()
        """
        self.users = users_repo
        self.messages = messages_repo
        self.groups = groups_repo
        self.notifications = notifications
        self.hub = hub
        self.settings = settings or get_settings()
        self.sequencer = GroupSequencer(messages_repo)
        self.rate_limiter = RateLimiter(self.settings.rate_limit_max, self.settings.rate_limit_window)
        self.sessions: Dict[str, Session] = {}
        self._handlers = {
            wire.JOIN_GROUP: self._on_join_group,
            wire.LEAVE_GROUP: self._on_leave_group,
            wire.JOIN_USER: self._on_join_user,
            wire.MESSAGE_SEND: self._on_message_send,
            wire.TYPING: self._on_typing,
            wire.MESSAGES_DELIVERED: self._on_messages_delivered,
            wire.MESSAGES_READ: self._on_messages_read,
        }

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def open_session(self, user_id: str) -> Session:
        connection_id = uuid.uuid4().hex[:12]
        q = await self.hub.register_queue(connection_id, user_id)
        session = Session(connection_id=connection_id, user_id=user_id, queue=q)
        self.sessions[connection_id] = session
        logger.info(f"ChatStream: User '{user_id}' connected (connection {connection_id})")
        return session

    async def close_session(self, session: Session):
        self.sessions.pop(session.connection_id, None)
        await self.hub.remove_queue(session.connection_id)
        for group_id in sorted(session.groups):
            self._announce(session, wire.USER_LEFT, group_id)
        if not any(s.user_id == session.user_id for s in self.sessions.values()):
            self.rate_limiter.forget(session.user_id)
        logger.info(f"ChatStream: User '{session.user_id}' disconnected (connection {session.connection_id})")

    async def run_session(self, user_id: str,
                          request_iterator: AsyncIterable[ChatEnvelope]) -> AsyncIterator[ChatEnvelope]:
        """Serve one stream until either side closes it.

        Protocol Flow:
        1. Caller has already read the client's ``hello`` and passes its user ID
        2. Server registers the connection and yields ``connected``
        3. Client envelopes are dispatched in arrival order by a reader task
        4. Queued outbound envelopes are yielded until the client half-closes

        Args:
            user_id (str): Authenticated participant
            request_iterator: Remaining client envelopes

        Yields:
            ChatEnvelope: Envelopes to deliver to the client
        """
        session = await self.open_session(user_id)

        async def reader():
            try:
                async for incoming in request_iterator:
                    await self.dispatch(session, incoming)
            finally:
                session.queue.put_nowait(None)

        reader_task = asyncio.create_task(reader())
        try:
            yield ChatEnvelope(type=wire.CONNECTED, payload={"connectionId": session.connection_id,
                                                             "userId": user_id})
            while True:
                out_msg = await session.queue.get()
                if out_msg is None:
                    break
                yield out_msg
        finally:
            reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader_task
            await self.close_session(session)

    async def dispatch(self, session: Session, env: ChatEnvelope):
        """Route one client envelope to its handler and send the ack, if requested.

        Handler errors from the ChatError family become error acks; other
        exceptions are logged and reported as a generic error ack.
        """
        handler = self._handlers.get(env.type)
        try:
            if handler is None:
                raise ValidationError(f"Unknown event '{env.type}'")
            result = await handler(session, env.payload or {})
            reply = {"success": True}
            reply.update(result or {})
        except ChatError as e:
            logger.warning(f"{env.type} from '{session.user_id}' rejected: {e.code}: {e.message}")
            reply = e.to_payload()
        except Exception:
            logger.exception(f"{env.type} from '{session.user_id}' failed")
            reply = {"success": False, "error": "internal error", "code": "error"}

        if env.wants_ack:
            self.hub.send_to_connection(session.connection_id, wire.ack(env.id, reply))

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _require_group(self, group_id: Any) -> Group:
        if not group_id or not isinstance(group_id, str):
            raise ValidationError("groupId is required")
        group = self.groups.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def _require_member(self, group_id: Any, user_id: str) -> Group:
        group = self._require_group(group_id)
        if not group.has_member(user_id):
            raise AuthorizationError("Not a member of this group")
        return group

    def _sanitize(self, content: Any) -> str:
        if not isinstance(content, str):
            raise ValidationError("content must be a string")
        stripped = content.strip()
        if not stripped:
            raise ValidationError("Message content cannot be empty")
        if len(stripped) > self.settings.max_message_length:
            raise ValidationError(f"Message longer than {self.settings.max_message_length} characters")
        return html.escape(stripped, quote=False)

    @staticmethod
    def _message_ids(payload: Dict[str, Any]) -> list:
        ids = payload.get("messageIds")
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            raise ValidationError("messageIds must be a list of strings")
        return ids

    # ------------------------------------------------------------------
    # Stream event handlers
    # ------------------------------------------------------------------

    async def _on_join_group(self, session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Subscribe the connection to a group's events.

        Joining twice on the same connection is a no-op reported as
        ``alreadyJoined``. The ack carries ``lastSeq`` so the client can
        detect messages it missed while disconnected. A new subscription
        is announced to the rest of the room as ``user:joined``.
        """
        group = self._require_member(payload.get("groupId"), session.user_id)
        newly = await self.hub.subscribe(session.connection_id, group_room(group.id))
        session.groups.add(group.id)
        if newly:
            logger.info(f"User {session.user_id} joined group {group.id}")
            self._announce(session, wire.USER_JOINED, group.id)
        return {"groupId": group.id, "alreadyJoined": not newly,
                "lastSeq": self.messages.head_seq(group.id)}

    async def _on_leave_group(self, session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        group_id = payload.get("groupId")
        if not group_id:
            raise ValidationError("groupId is required")
        removed = await self.hub.unsubscribe(session.connection_id, group_room(group_id))
        session.groups.discard(group_id)
        if removed:
            logger.info(f"User {session.user_id} left group {group_id}")
            self._announce(session, wire.USER_LEFT, group_id)
        return {"groupId": group_id}

    def _announce(self, session: Session, event: str, group_id: str):
        """Tell the rest of a group room that a member came or went."""
        if event == wire.USER_LEFT and any(
                s.user_id == session.user_id and group_id in s.groups for s in self.sessions.values()):
            return
        self.hub.send_to_room(group_room(group_id), ChatEnvelope(type=event, payload={
            "userId": session.user_id,
            "groupId": group_id,
            "timestamp": _now_ms(),
        }), exclude=session.connection_id)

    async def _on_join_user(self, session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        user_id = payload.get("userId")
        if user_id != session.user_id:
            raise AuthorizationError("Cannot subscribe to another user's notifications")
        await self.hub.subscribe(session.connection_id, user_room(user_id))
        return {"userId": user_id}

    async def _on_message_send(self, session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Accept a submission, order it, fan it out and notify other members.

        A retried submission with an already-applied ``clientToken`` returns
        the stored message with ``duplicate: true`` and is not fanned out
        again.
        """
        user_id = session.user_id
        group = self._require_member(payload.get("groupId"), user_id)
        content = self._sanitize(payload.get("content"))
        token = payload.get("clientToken") or None

        if token:
            existing = self.messages.find_by_token(group.id, user_id, token)
            if existing is not None:
                logger.info(f"Resend of token {token} by {user_id} matched {existing.message_id}")
                return {"message": existing.to_wire(), "duplicate": True, "timestamp": _now_ms()}

        if not self.rate_limiter.allow(user_id):
            raise RateLimitedError("Rate limit exceeded. Please slow down.")

        sender = self.users.get(user_id)
        sender_name = sender.display_name if sender else ""
        room = group_room(group.id)

        def fan_out(m):
            self.hub.send_to_room(room, ChatEnvelope(type=wire.MESSAGE_NEW, payload=m.to_wire()))

        try:
            msg = await self.sequencer.commit(group.id, user_id, content, token, sender_name, on_commit=fan_out)
        except ConflictError as e:
            return {"message": e.existing.to_wire(), "duplicate": True, "timestamp": _now_ms()}

        others = [uid for uid in group.member_ids if uid != user_id]
        self.notifications.notify_many(
            others,
            NotificationType.NEW_MESSAGE,
            title="New Message",
            message=f"{sender_name or 'Someone'} sent a message",
            reference_id=msg.message_id,
            reference_type="message",
            metadata={"groupId": group.id, "messageId": msg.message_id, "seq": msg.seq},
        )
        return {"message": msg.to_wire(), "duplicate": False, "timestamp": _now_ms()}

    async def _on_typing(self, session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        group = self._require_member(payload.get("groupId"), session.user_id)
        self.hub.send_to_room(group_room(group.id), ChatEnvelope(type=wire.TYPING_UPDATE, payload={
            "userId": session.user_id,
            "groupId": group.id,
            "isTyping": bool(payload.get("isTyping")),
            "timestamp": _now_ms(),
        }), exclude=session.connection_id)
        return {}

    async def _on_messages_delivered(self, session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        group = self._require_member(payload.get("groupId"), session.user_id)
        ids = self._message_ids(payload)
        changed = self.messages.update_status(ids, MessageStatus.DELIVERED,
                                              exclude_sender=session.user_id, group_id=group.id)
        if changed:
            self.hub.send_to_room(group_room(group.id), ChatEnvelope(type=wire.MESSAGES_DELIVERED_UPDATE, payload={
                "groupId": group.id,
                "messageIds": [m.message_id for m in changed],
                "deliveredTo": session.user_id,
                "timestamp": _now_ms(),
            }), exclude=session.connection_id)
        return {"count": len(changed)}

    async def _on_messages_read(self, session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        group = self._require_member(payload.get("groupId"), session.user_id)
        ids = self._message_ids(payload)
        count = self._apply_read(session.user_id, ids, group.id, exclude=session.connection_id)
        logger.info(f"Marked {count} messages as read for user {session.user_id} in group {group.id}")
        return {"count": count}

    def _apply_read(self, user_id: str, ids, group_id: Optional[str], exclude: Optional[str] = None) -> int:
        changed = self.messages.update_status(ids, MessageStatus.READ, exclude_sender=user_id, group_id=group_id)
        by_group: Dict[str, list] = {}
        for m in changed:
            by_group.setdefault(m.group_id, []).append(m.message_id)
        for gid, message_ids in by_group.items():
            self.hub.send_to_room(group_room(gid), ChatEnvelope(type=wire.MESSAGES_READ_UPDATE, payload={
                "groupId": gid,
                "messageIds": message_ids,
                "readBy": user_id,
                "timestamp": _now_ms(),
            }), exclude=exclude)
        return len(changed)

    # ------------------------------------------------------------------
    # gRPC stream adapter
    # ------------------------------------------------------------------

    async def OpenStream(self, request_iterator: AsyncIterable[chat_pb2.ChatEnvelope], context: aio.ServicerContext):
        """Open a bidirectional streaming connection with a client.

        The first envelope must be ``hello`` carrying the pre-authenticated
        ``userId``; anything else, including a stream closed before any
        envelope, aborts the stream with UNAUTHENTICATED.

        Args:
            request_iterator: Stream of ``chat_pb2.ChatEnvelope`` from the client
            context: gRPC service context

        Yields:
            chat_pb2.ChatEnvelope: Envelopes to deliver to the client
        """
        first = await anext(request_iterator, None)
        hello = wire.envelope_from_proto(first) if first is not None else None
        user_id = hello.payload.get("userId") if hello is not None else None
        if hello is None or hello.type != wire.HELLO or not user_id:
            logger.error("ChatStream: Invalid first message - not hello or missing userId")
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "First message must be hello with userId")
            return

        async def requests():
            async for incoming in request_iterator:
                yield wire.envelope_from_proto(incoming)

        async for out_msg in self.run_session(user_id, requests()):
            yield wire.envelope_to_proto(out_msg)

    # ------------------------------------------------------------------
    # Unary (request/response) methods
    # ------------------------------------------------------------------

    async def _unary(self, name: str, request: chat_pb2.ChatRequest, fn) -> chat_pb2.ChatReply:
        try:
            params = wire.request_from_proto(request)
            user_id = params.get("userId")
            if not user_id:
                raise ValidationError("userId is required")
            reply = {"success": True}
            reply.update(fn(params, user_id))
        except ChatError as e:
            logger.warning(f"{name} rejected: {e.code}: {e.message}")
            reply = e.to_payload()
        return wire.reply_to_proto(reply)

    async def ListUserGroups(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        """List the caller's groups with last message and unread count."""
        def run(req, user_id):
            groups = []
            for g in self.groups.get_user_groups(user_id):
                data = g.to_wire()
                last = self.messages.query_by_group(g.id, limit=1)
                data["lastMessage"] = last[0].to_wire() if last else None
                data["lastSeq"] = self.messages.head_seq(g.id)
                data["unreadCount"] = self.messages.count_unread(user_id, [g.id])
                groups.append(data)
            return {"groups": groups}
        return await self._unary("ListUserGroups", request, run)

    async def GetMessages(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        """Page of a group's history, oldest first.

        Request fields: ``groupId``, ``limit`` (default 50, max 100) and an
        optional ``before`` ordering-key cursor. A page shorter than
        ``limit`` means the history is exhausted.
        """
        def run(req, user_id):
            group = self._require_member(req.get("groupId"), user_id)
            limit = req.get("limit") or self.settings.history_page_size
            if not isinstance(limit, int) or limit < 1:
                raise ValidationError("limit must be a positive integer")
            limit = min(limit, MAX_PAGE_SIZE)
            before = req.get("before")
            if before is not None and not isinstance(before, int):
                raise ValidationError("before must be an ordering key")
            messages = self.messages.query_by_group(group.id, limit=limit, before_seq=before)
            return {"groupId": group.id, "messages": [m.to_wire() for m in messages], "count": len(messages)}
        return await self._unary("GetMessages", request, run)

    async def GetUnreadCount(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        def run(req, user_id):
            group_id = req.get("groupId")
            if group_id:
                self._require_member(group_id, user_id)
                group_ids = [group_id]
            else:
                group_ids = [g.id for g in self.groups.get_user_groups(user_id)]
            return {"count": self.messages.count_unread(user_id, group_ids)}
        return await self._unary("GetUnreadCount", request, run)

    async def MarkMessagesRead(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        """Request/response fallback for read marking."""
        def run(req, user_id):
            ids = self._message_ids(req)
            allowed = []
            for message_id in ids:
                m = self.messages.get(message_id)
                if m is not None and self.groups.is_member(m.group_id, user_id):
                    allowed.append(message_id)
            return {"count": self._apply_read(user_id, allowed, None)}
        return await self._unary("MarkMessagesRead", request, run)

    async def ListNotifications(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        def run(req, user_id):
            items = self.notifications.list(user_id, unread_only=bool(req.get("unreadOnly")),
                                            limit=int(req.get("limit") or 50))
            return {"notifications": [n.to_wire() for n in items]}
        return await self._unary("ListNotifications", request, run)

    async def GetNotificationUnreadCount(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        return await self._unary("GetNotificationUnreadCount", request,
                                 lambda req, user_id: {"count": self.notifications.unread_count(user_id)})

    async def MarkNotificationRead(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        def run(req, user_id):
            notification_id = req.get("notificationId")
            if not notification_id:
                raise ValidationError("notificationId is required")
            if not self.notifications.mark_read(notification_id, user_id):
                raise NotFoundError(f"Notification {notification_id} not found")
            return {"notificationId": notification_id}
        return await self._unary("MarkNotificationRead", request, run)

    async def MarkAllNotificationsRead(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        return await self._unary("MarkAllNotificationsRead", request,
                                 lambda req, user_id: {"count": self.notifications.mark_all_read(user_id)})

    async def DeleteNotification(self, request: chat_pb2.ChatRequest, context: Optional[aio.ServicerContext] = None):
        def run(req, user_id):
            notification_id = req.get("notificationId")
            if not notification_id:
                raise ValidationError("notificationId is required")
            if not self.notifications.delete(notification_id, user_id):
                raise NotFoundError(f"Notification {notification_id} not found")
            return {"notificationId": notification_id}
        return await self._unary("DeleteNotification", request, run)
