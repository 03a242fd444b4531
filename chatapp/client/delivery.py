"""
Message delivery pipeline: outbound submission with optimistic rendering,
inbound ``message:new`` handling, history paging and gap repair.
"""
import asyncio
import uuid
from typing import Callable, Dict, List, Optional

from .connection import AckOutcome, ChatConnection
from .store import ClientStateStore, DeliveryState, LocalMessage
from .tasks import BackgroundTasks
from ..config import Settings, get_settings
from ..errors import ConflictError, NotFoundError, TransportError, ValidationError
from ..proto.chat_wire import MESSAGE_NEW, MESSAGE_SEND
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.delivery')


class MessagePipeline:
    """Submits messages and keeps each group's message list complete and ordered.

    The server assigns identity, ordering key (``seq``) and initial status.
    Until then an outbound message is a PENDING local entry keyed by its
    idempotency token; the confirmation (ack or ``message:new``) carrying
    the same token replaces it. Live messages that skip over a ``seq`` the
    client has not seen trigger a history backfill for the missing range.
    """

    def __init__(self, connection: ChatConnection, store: ClientStateStore, settings: Optional[Settings] = None):
        self.connection = connection
        self.store = store
        self.settings = settings or get_settings()
        self._listeners: List[Callable[[LocalMessage, bool], None]] = []
        self._history: Dict[str, asyncio.Task] = {}
        self._older: Dict[str, asyncio.Task] = {}
        self._repair_heads: Dict[str, int] = {}
        self._repairs: Dict[str, asyncio.Task] = {}
        self._tasks = BackgroundTasks("delivery")
        connection.on(MESSAGE_NEW, self.on_message)

    def on_received(self, listener: Callable[[LocalMessage, bool], None]):
        """Register ``listener(message, live)`` for every newly stored confirmed message."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def submit(self, group_id: str, content: str, client_token: Optional[str] = None) -> LocalMessage:
        """Submit a message to a group.

        The message is rendered immediately as PENDING. Reusing a token that
        is already confirmed returns the confirmed message without sending.

        Args:
            group_id (str): Target group
            content (str): Message body; surrounding whitespace is trimmed
            client_token (str, optional): Idempotency token; generated if omitted

        Returns:
            LocalMessage: CONFIRMED on success, or FAILED when no confirmation
                arrived in time (the outcome is unknown; use :meth:`resend`)

        Raises:
            ValidationError: Empty body or no group; nothing is sent
            TransportError: Not connected; nothing is sent
            ChatError: The server rejected the message
        """
        if not group_id:
            raise ValidationError("groupId is required")
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content cannot be empty")
        if len(content) > self.settings.max_message_length:
            raise ValidationError(f"Message longer than {self.settings.max_message_length} characters")
        if not self.connection.is_connected:
            raise TransportError("Not connected")

        token = client_token or uuid.uuid4().hex
        existing = self.store.find_by_token(token)
        if existing is not None:
            if existing.confirmed:
                return existing
            self.store.mark_pending(token)
        else:
            self.store.add_pending(group_id, content, token)
        return await self._send(group_id, content, token)

    async def resend(self, client_token: str) -> LocalMessage:
        """Retry a FAILED message with its original token."""
        msg = self.store.find_by_token(client_token)
        if msg is None:
            raise NotFoundError(f"No local message with token {client_token}")
        if msg.confirmed:
            return msg
        if not self.connection.is_connected:
            raise TransportError("Not connected")
        logger.info(f"Resending message {client_token} to group {msg.group_id}")
        self.store.mark_pending(client_token)
        return await self._send(msg.group_id, msg.content, client_token)

    async def _send(self, group_id: str, content: str, token: str) -> LocalMessage:
        try:
            ack = await self.connection.send(MESSAGE_SEND, {"groupId": group_id, "content": content,
                                                             "clientToken": token})
        except asyncio.CancelledError:
            self.store.mark_failed(token)
            raise
        except TransportError:
            self.store.mark_failed(token)
            raise

        if ack.outcome == AckOutcome.OK:
            confirmed = LocalMessage.from_wire(ack.data["message"])
            if ack.data.get("duplicate"):
                logger.info(f"Token {token} was already applied as {confirmed.id}")
            self._accept(confirmed, live=False)
            return self.store.find_by_token(token) or confirmed

        if ack.outcome == AckOutcome.UNKNOWN:
            logger.warning(f"Submit {token} to {group_id}: outcome unknown, marked failed")
            return self.store.mark_failed(token) or self.store.find_by_token(token)

        error = ack.error
        if isinstance(error, ConflictError) and isinstance(error.existing, dict):
            self._accept(LocalMessage.from_wire(error.existing), live=False)
            return self.store.find_by_token(token)
        if isinstance(error, NotFoundError):
            self.store.discard_pending(token)
        else:
            self.store.mark_failed(token)
        raise error

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_message(self, payload: dict):
        try:
            msg = LocalMessage.from_wire(payload)
        except (KeyError, ValueError, TypeError):
            logger.warning(f"Malformed message:new ignored: {payload!r}")
            return
        self._accept(msg, live=True)

    def _accept(self, msg: LocalMessage, live: bool):
        group_id = msg.group_id
        previous = self.store.last_seq(group_id)
        if not self.store.upsert_message(msg):
            return
        logger.debug(f"Message {msg.id} seq {msg.seq} stored in group {group_id}")
        if live and msg.sender_id != self.store.user_id and group_id != self.store.active_group_id:
            self.store.count_unread(group_id, msg.id)
        if group_id in self.store.history_loaded and msg.seq > previous + 1:
            logger.info(f"Gap in group {group_id}: seq {previous} -> {msg.seq}, backfilling")
            self.schedule_repair(group_id, msg.seq)
        for listener in list(self._listeners):
            listener(msg, live)

    def refresh_unread(self, group_id: str) -> asyncio.Task:
        """Re-read a group's unread counter from the server in the background.

        Used when the group advanced while this client was not subscribed, so
        live counting never saw the missed messages.
        """
        return self._tasks.spawn(self._refresh_unread(group_id))

    async def _refresh_unread(self, group_id: str):
        data = await self.connection.call("GetUnreadCount", {"groupId": group_id})
        if group_id == self.store.active_group_id:
            return
        count = int(data.get("count") or 0)
        logger.info(f"Unread counter of group {group_id} refreshed to {count}")
        self.store.set_unread(group_id, count)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _fetch(self, group_id: str, before: Optional[int] = None) -> List[LocalMessage]:
        request = {"groupId": group_id, "limit": self.settings.history_page_size}
        if before is not None:
            request["before"] = before
        data = await self.connection.call("GetMessages", request)
        return [LocalMessage.from_wire(m) for m in data.get("messages", [])]

    def _merge(self, group_id: str, page: List[LocalMessage]) -> int:
        added = 0
        for msg in page:
            if self.store.upsert_message(msg):
                added += 1
                for listener in list(self._listeners):
                    listener(msg, False)
        return added

    async def load_history(self, group_id: str) -> bool:
        """Load the newest history page once per session.

        Returns:
            bool: True if this call loaded the page, False if it was already loaded
        """
        if group_id in self.store.history_loaded:
            return False
        task = self._history.get(group_id)
        created = task is None
        if created:
            task = asyncio.get_running_loop().create_task(self._load_history(group_id))
            self._history[group_id] = task
            task.add_done_callback(lambda t, gid=group_id: self._history.pop(gid, None))
        await asyncio.shield(task)
        return created

    async def _load_history(self, group_id: str):
        page = await self._fetch(group_id)
        self._merge(group_id, page)
        self.store.history_loaded.add(group_id)
        self.store.has_more[group_id] = len(page) >= self.settings.history_page_size
        logger.info(f"Loaded {len(page)} messages for group {group_id}")
        if self.store.missing_seqs(group_id):
            self.schedule_repair(group_id, self.store.last_seq(group_id))

    async def load_older(self, group_id: str) -> int:
        """Load the page before the oldest loaded message.

        A short page means the history is exhausted; later calls for that
        group return 0 without a request.

        Returns:
            int: Number of messages added
        """
        if not self.store.has_more.get(group_id, True):
            return 0
        task = self._older.get(group_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._load_older(group_id))
            self._older[group_id] = task
            task.add_done_callback(lambda t, gid=group_id: self._older.pop(gid, None))
        return await asyncio.shield(task)

    async def _load_older(self, group_id: str) -> int:
        oldest = self.store.oldest_seq(group_id)
        if oldest is None:
            await self.load_history(group_id)
            return len(self.store.group_messages(group_id))
        page = await self._fetch(group_id, before=oldest)
        if len(page) < self.settings.history_page_size:
            self.store.has_more[group_id] = False
            logger.info(f"History of group {group_id} exhausted")
        return self._merge(group_id, page)

    # ------------------------------------------------------------------
    # Gap repair
    # ------------------------------------------------------------------

    def schedule_repair(self, group_id: str, head_seq: int):
        """Backfill everything missing up to ``head_seq`` in the background."""
        self._repair_heads[group_id] = max(head_seq, self._repair_heads.get(group_id, 0))
        task = self._repairs.get(group_id)
        if task is None or task.done():
            task = self._tasks.spawn(self._repair(group_id))
            self._repairs[group_id] = task

    async def repair(self, group_id: str, head_seq: int):
        self.schedule_repair(group_id, head_seq)
        await asyncio.shield(self._repairs[group_id])

    def _missing(self, group_id: str) -> List[int]:
        head = self._repair_heads.get(group_id, 0)
        last = self.store.last_seq(group_id)
        return self.store.missing_seqs(group_id) + list(range(last + 1, head + 1))

    async def _repair(self, group_id: str):
        try:
            while True:
                missing = self._missing(group_id)
                if not missing:
                    return
                before = max(missing) + 1
                page = await self._fetch(group_id, before=before)
                added = self._merge(group_id, page)
                logger.info(f"Backfill of group {group_id} before {before}: {added} messages")
                if added == 0:
                    return
        finally:
            self._repair_heads.pop(group_id, None)
            self._repairs.pop(group_id, None)

    async def wait_idle(self):
        await self._tasks.wait()

    async def cancel(self):
        for task in list(self._history.values()) + list(self._older.values()):
            task.cancel()
        await self._tasks.cancel()
