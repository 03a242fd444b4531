"""
Read receipts and delivery acknowledgments.
"""
import asyncio
from typing import Iterable, List, Optional, Set

from .connection import AckOutcome, ChatConnection
from .store import ClientStateStore
from .tasks import BackgroundTasks
from ..config import Settings, get_settings
from ..proto.chat_wire import (MESSAGES_DELIVERED, MESSAGES_DELIVERED_UPDATE, MESSAGES_READ,
                               MESSAGES_READ_UPDATE, MessageStatus)
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.receipts')


class ReadReceiptPropagator:
    """Marks inbound messages read and applies status updates from the server.

    Read marking for the active group fires once after ``read_dwell``
    seconds, covering every unread inbound message at that moment, so a
    burst of arrivals produces one ``messages:read`` batch.
    """

    def __init__(self, connection: ChatConnection, store: ClientStateStore, settings: Optional[Settings] = None):
        self.connection = connection
        self.store = store
        self.settings = settings or get_settings()
        self.in_flight: Set[str] = set()
        self._dwell: Optional[asyncio.TimerHandle] = None
        self._tasks = BackgroundTasks("receipts")
        connection.on(MESSAGES_READ_UPDATE, self.on_read_update)
        connection.on(MESSAGES_DELIVERED_UPDATE, self.on_delivered_update)

    def schedule(self, group_id: str):
        """Arm the dwell timer if ``group_id`` is active and has unread inbound messages."""
        if group_id != self.store.active_group_id or self._dwell is not None:
            return
        if not self.store.unread_inbound(group_id) and not self.store.unread_count(group_id):
            return
        self._dwell = asyncio.get_running_loop().call_later(self.settings.read_dwell, self._dwell_elapsed, group_id)

    def _dwell_elapsed(self, group_id: str):
        self._dwell = None
        if group_id == self.store.active_group_id:
            self._tasks.spawn(self.mark_read(group_id))

    def cancel(self):
        if self._dwell is not None:
            self._dwell.cancel()
            self._dwell = None

    async def mark_read(self, group_id: str, message_ids: Optional[Iterable[str]] = None) -> int:
        """Send one read batch for a group.

        Messages authored by the local participant and messages already in
        a pending batch are left out.

        Returns:
            int: Number of messages included in the batch

        Raises:
            ChatError: The server rejected the batch
        """
        candidates = list(message_ids) if message_ids is not None else self.store.unread_inbound(group_id)
        ids: List[str] = []
        for message_id in candidates:
            msg = self.store.find_message(message_id)
            if msg is not None and msg.sender_id == self.store.user_id:
                continue
            if message_id in self.in_flight or message_id in ids:
                continue
            ids.append(message_id)
        if not ids:
            if group_id == self.store.active_group_id and not self.store.unread_inbound(group_id):
                self.store.clear_unread(group_id)
            return 0

        self.in_flight.update(ids)
        try:
            ack = await self.connection.send(MESSAGES_READ, {"groupId": group_id, "messageIds": ids})
        finally:
            self.in_flight.difference_update(ids)
        if ack.outcome == AckOutcome.UNKNOWN:
            logger.warning(f"Read batch for {group_id} unconfirmed; will retry on next view")
            return 0
        ack.raise_for_error()
        self.store.apply_status(ids, MessageStatus.READ)
        if group_id == self.store.active_group_id and not self.store.unread_inbound(group_id):
            self.store.clear_unread(group_id)
        logger.info(f"Marked {len(ids)} messages read in group {group_id}")
        return len(ids)

    async def acknowledge_delivery(self, group_id: str, message_ids: Iterable[str]) -> bool:
        ids = []
        for message_id in message_ids:
            msg = self.store.find_message(message_id)
            if msg is None or msg.sender_id != self.store.user_id:
                ids.append(message_id)
        if not ids:
            return False
        return await self.connection.emit(MESSAGES_DELIVERED, {"groupId": group_id, "messageIds": ids})

    def deliver_later(self, group_id: str, message_ids: Iterable[str]):
        self._tasks.spawn(self.acknowledge_delivery(group_id, list(message_ids)))

    def on_read_update(self, payload: dict):
        changed = self.store.apply_status(payload.get("messageIds") or [], MessageStatus.READ)
        logger.debug(f"{len(changed)} messages read by {payload.get('readBy')}")

    def on_delivered_update(self, payload: dict):
        self.store.apply_status(payload.get("messageIds") or [], MessageStatus.DELIVERED)

    async def wait_idle(self):
        await self._tasks.wait()

    async def close(self):
        self.cancel()
        await self._tasks.cancel()
