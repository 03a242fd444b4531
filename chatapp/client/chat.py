"""
ChatClient: one participant's view of the chat subsystem.
"""
from typing import Any, Dict, List, Optional

from .connection import ChatConnection
from .delivery import MessagePipeline
from .membership import GroupMembershipCoordinator, JoinStatus
from .notifications import NotificationRouter
from .presence import MemberPresence, TypingTracker
from .receipts import ReadReceiptPropagator
from .store import ClientStateStore, LocalMessage
from ..config import Settings, get_settings
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.client')


class ChatClient:
    """Wires the sync components around a single state store.

    Every component receives the same :class:`ChatConnection` and
    :class:`ClientStateStore`; nothing reaches the connection through a
    global. The active group is the one the user is viewing: it does not
    accumulate unread counts, gets read-marked after the dwell delay, and
    is where typing and sends go by default.
    """

    def __init__(self, transport, user_id: str, settings: Optional[Settings] = None):
        """Initialize the client for one pre-authenticated participant.

        Args:
            transport: GrpcTransport or InProcessTransport
            user_id (str): Local participant
            settings (Settings, optional): Timers and limits; defaults to get_settings()
        """
        self.settings = settings or get_settings()
        self.user_id = user_id
        self.connection = ChatConnection(transport, user_id, self.settings)
        self.store = ClientStateStore(user_id, self.settings.notification_cap)
        self.membership = GroupMembershipCoordinator(self.connection, self.store, self.settings)
        self.pipeline = MessagePipeline(self.connection, self.store, self.settings)
        self.typing = TypingTracker(self.connection, self.store, self.settings)
        self.presence = MemberPresence(self.connection, self.store)
        self.receipts = ReadReceiptPropagator(self.connection, self.store, self.settings)
        self.notifications = NotificationRouter(self.connection, self.store, self.settings)
        self.pipeline.on_received(self._on_received)
        self.membership.on_joined(self._on_joined)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, join_groups: bool = True) -> "ChatClient":
        """Connect, load the group list and subscribe to every group."""
        await self.connection.connect()
        await self.notifications.wait_idle()
        groups = await self.load_groups()
        if join_groups:
            await self.membership.join_all([g["id"] for g in groups])
        return self

    async def stop(self):
        self.typing.stop()
        await self.typing.close()
        await self.receipts.close()
        await self.pipeline.cancel()
        await self.membership.close()
        await self.notifications.close()
        await self.connection.disconnect()

    async def wait_idle(self):
        """Wait for background joins, backfills and receipts to settle."""
        await self.membership.wait_idle()
        await self.notifications.wait_idle()
        await self.pipeline.wait_idle()
        await self.receipts.wait_idle()

    @property
    def can_compose(self) -> bool:
        """Composition is enabled only while connected and viewing a joined group."""
        group_id = self.store.active_group_id
        return (self.connection.is_connected and group_id is not None
                and group_id not in self.membership.rejected)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def load_groups(self) -> List[Dict[str, Any]]:
        data = await self.connection.call("ListUserGroups")
        groups = data.get("groups", [])
        self.store.set_groups(groups)
        self.membership.track(g["id"] for g in groups)
        logger.info(f"{self.user_id} belongs to {len(groups)} groups")
        return groups

    async def open_group(self, group_id: str) -> JoinStatus:
        """Make ``group_id`` the active group: join it, load its history once,
        and schedule read marking."""
        if self.store.active_group_id not in (None, group_id):
            self.close_group()
        self.store.set_active_group(group_id)
        status = await self.membership.join(group_id)
        await self.pipeline.load_history(group_id)
        self.receipts.schedule(group_id)
        return status

    def close_group(self):
        """Tear down timers owned by the current view."""
        self.typing.stop()
        self.receipts.cancel()
        self.store.set_active_group(None)

    async def leave_group(self, group_id: str):
        if self.store.active_group_id == group_id:
            self.close_group()
        await self.membership.leave(group_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send(self, content: str, group_id: Optional[str] = None,
                   client_token: Optional[str] = None) -> LocalMessage:
        group_id = group_id or self.store.active_group_id
        self.typing.on_submit(group_id)
        return await self.pipeline.submit(group_id, content, client_token)

    async def resend(self, client_token: str) -> LocalMessage:
        return await self.pipeline.resend(client_token)

    def on_input(self, group_id: Optional[str] = None):
        self.typing.on_input(group_id or self.store.active_group_id)

    async def load_older(self, group_id: Optional[str] = None) -> int:
        return await self.pipeline.load_older(group_id or self.store.active_group_id)

    def messages(self, group_id: Optional[str] = None) -> List[LocalMessage]:
        return self.store.group_messages(group_id or self.store.active_group_id)

    # ------------------------------------------------------------------
    # Component glue
    # ------------------------------------------------------------------

    def _on_received(self, msg: LocalMessage, live: bool):
        if msg.sender_id == self.user_id:
            return
        if live:
            self.receipts.deliver_later(msg.group_id, [msg.id])
        if msg.group_id == self.store.active_group_id:
            self.receipts.schedule(msg.group_id)

    def _on_joined(self, group_id: str, data: Dict[str, Any]):
        head = int(data.get("lastSeq") or 0)
        known = self.store.head_seq(group_id)
        self.store.note_head(group_id, head)
        if group_id in self.store.history_loaded and head > self.store.last_seq(group_id):
            logger.info(f"Group {group_id} advanced to seq {head} while away, backfilling")
            self.pipeline.schedule_repair(group_id, head)
        # Messages posted while unsubscribed were never counted live
        if head > known and group_id != self.store.active_group_id:
            self.pipeline.refresh_unread(group_id)
