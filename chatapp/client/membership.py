"""
Group membership coordinator: keeps the live connection subscribed to every
group the participant belongs to.
"""
import asyncio
import contextlib
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from .connection import EVENT_CONNECT, EVENT_DISCONNECT, AckOutcome, ChatConnection
from .store import ClientStateStore
from ..config import Settings, get_settings
from ..errors import ChatError, TransportError
from ..proto.chat_wire import JOIN_GROUP, LEAVE_GROUP
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.membership')


class JoinStatus(str, Enum):
    JOINED = "joined"
    ALREADY_JOINED = "already_joined"


class GroupMembershipCoordinator:
    """Issues ``join:group`` / ``leave:group`` and re-joins after reconnects.

    A group joined on the current connection epoch is not joined again;
    concurrent joins for one group share a single request. Groups whose
    join was explicitly rejected are never retried automatically, while a
    join whose outcome is unknown (timeout, link loss) is simply retried on
    the next connect.

    Attributes:
        known (List[str]): Groups to keep subscribed, in join order
        joined (Dict[str, int]): Group ID -> connection epoch it was joined on
        rejected (Dict[str, ChatError]): Groups the server refused
    """

    def __init__(self, connection: ChatConnection, store: ClientStateStore, settings: Optional[Settings] = None):
        self.connection = connection
        self.store = store
        self.settings = settings or get_settings()
        self.known: List[str] = []
        self.joined: Dict[str, int] = {}
        self.rejected: Dict[str, ChatError] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._rejoin: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[str, dict], None]] = []
        connection.on(EVENT_CONNECT, self._on_connect)
        connection.on(EVENT_DISCONNECT, self._on_disconnect)

    def on_joined(self, listener: Callable[[str, dict], None]):
        """Register ``listener(group_id, ack_data)`` for every successful new join."""
        self._listeners.append(listener)

    def track(self, group_ids: Iterable[str]):
        for group_id in group_ids:
            if group_id not in self.known and group_id not in self.rejected:
                self.known.append(group_id)

    def is_joined(self, group_id: str) -> bool:
        return self.connection.is_connected and self.joined.get(group_id) == self.connection.epoch

    # ------------------------------------------------------------------
    # Join / leave
    # ------------------------------------------------------------------

    async def join(self, group_id: str) -> JoinStatus:
        """Subscribe the current connection to a group.

        Returns:
            JoinStatus: JOINED, or ALREADY_JOINED when the group is already
                subscribed on this connection

        Raises:
            TransportError: Not connected, or the outcome is unknown; the group
                is re-joined on the next connect
            ChatError: The server refused the join; it will not be retried
        """
        self.track([group_id])
        if self.is_joined(group_id):
            return JoinStatus.ALREADY_JOINED
        task = self._inflight.get(group_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_join(group_id))
            self._inflight[group_id] = task
            task.add_done_callback(lambda t, gid=group_id: self._join_done(gid, t))
        # Abandoning the caller does not abandon the shared request.
        return await asyncio.shield(task)

    def _join_done(self, group_id: str, task: asyncio.Task):
        if self._inflight.get(group_id) is task:
            del self._inflight[group_id]
        if not task.cancelled():
            # Consume the exception; callers may have gone away.
            task.exception()

    async def _do_join(self, group_id: str) -> JoinStatus:
        if not self.connection.is_connected:
            raise TransportError("Not connected")
        epoch = self.connection.epoch
        logger.info(f"Joining group {group_id}")
        ack = await self.connection.send(JOIN_GROUP, {"groupId": group_id})
        if ack.outcome == AckOutcome.UNKNOWN:
            logger.warning(f"Join of {group_id} unknown ({ack.error}); retry on next connect")
            raise ack.error
        if ack.outcome == AckOutcome.ERROR:
            logger.warning(f"Join of {group_id} rejected: {ack.error.code}: {ack.error.message}")
            self.rejected[group_id] = ack.error
            if group_id in self.known:
                self.known.remove(group_id)
            raise ack.error
        if epoch != self.connection.epoch or not self.connection.is_connected:
            raise TransportError("Connection changed during join")
        already = self.joined.get(group_id) == epoch or bool(ack.data.get("alreadyJoined"))
        self.joined[group_id] = epoch
        self.rejected.pop(group_id, None)
        self.track([group_id])
        if not already:
            for listener in list(self._listeners):
                listener(group_id, ack.data)
        return JoinStatus.ALREADY_JOINED if already else JoinStatus.JOINED

    async def join_all(self, group_ids: Iterable[str]) -> Dict[str, object]:
        """Join groups in order with the configured stagger between requests.

        Returns:
            dict: Group ID -> JoinStatus, or the ChatError that join raised
        """
        results: Dict[str, object] = {}
        for i, group_id in enumerate(list(group_ids)):
            if i and self.settings.join_stagger > 0:
                await asyncio.sleep(self.settings.join_stagger)
            if not self.connection.is_connected:
                break
            try:
                results[group_id] = await self.join(group_id)
            except ChatError as e:
                results[group_id] = e
        return results

    async def leave(self, group_id: str):
        """Drop the subscription locally, then tell the server (best effort)."""
        if group_id in self.known:
            self.known.remove(group_id)
        self.joined.pop(group_id, None)
        task = self._inflight.pop(group_id, None)
        if task is not None:
            task.cancel()
        logger.info(f"Leaving group {group_id}")
        await self.connection.emit(LEAVE_GROUP, {"groupId": group_id})

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _on_connect(self, info):
        if not self.known:
            return
        self._cancel_rejoin()
        logger.info(f"Connection epoch {info['epoch']}: re-joining {len(self.known)} groups")
        self._rejoin = asyncio.get_running_loop().create_task(self.join_all(list(self.known)))

    def _on_disconnect(self, info):
        # Every subscription belonged to the connection that just went away.
        self.joined.clear()
        self._cancel_rejoin()

    def _cancel_rejoin(self):
        if self._rejoin is not None and not self._rejoin.done():
            self._rejoin.cancel()
        self._rejoin = None

    async def wait_idle(self):
        """Wait for a pending re-join pass and in-flight joins to settle."""
        if self._rejoin is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._rejoin
        pending = list(self._inflight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self):
        self._cancel_rejoin()
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
