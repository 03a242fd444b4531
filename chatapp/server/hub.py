import asyncio
from typing import Dict, Optional, Set

from ..utils.logger import setup_logger

logger = setup_logger('chatapp.hub')


def group_room(group_id: str) -> str:
    return f"group:{group_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class Hub:
    """Routing hub for real-time delivery.

    Every live connection owns an asyncio Queue of outbound envelopes.
    Connections subscribe to rooms (``group:<id>`` for group events,
    ``user:<id>`` for notifications); fan-out puts the envelope on the
    queue of every subscribed connection. Puts never block, so envelopes
    fanned out in a given order land on each queue in that order.
    """

    def __init__(self):
        """Initialize message hub.

        Attributes:
            queues (Dict[str, asyncio.Queue]): Maps connection IDs to their outbound queues
            owners (Dict[str, str]): Maps connection IDs to user IDs
            rooms (Dict[str, Set[str]]): Maps room names to subscribed connection IDs
            _lock (asyncio.Lock): Guards registration and room membership
        """
        self.queues: Dict[str, asyncio.Queue] = {}
        self.owners: Dict[str, str] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        logger.info("Message Hub initialized")

    async def register_queue(self, connection_id: str, user_id: str) -> asyncio.Queue:
        """Register a new outbound queue for a connection.

        Args:
            connection_id (str): ID of the connection
            user_id (str): Authenticated user owning the connection

        Returns:
            asyncio.Queue: New queue for the connection's envelopes
        """
        async with self._lock:
            q = asyncio.Queue()
            self.queues[connection_id] = q
            self.owners[connection_id] = user_id
            logger.info(f"Registered queue for connection {connection_id} (user {user_id})")
            logger.debug(f"Active connections: {len(self.queues)}")
            return q

    async def remove_queue(self, connection_id: str):
        """Remove a connection's queue and every room subscription it held."""
        async with self._lock:
            self.queues.pop(connection_id, None)
            self.owners.pop(connection_id, None)
            for room in list(self.rooms):
                members = self.rooms[room]
                members.discard(connection_id)
                if not members:
                    del self.rooms[room]
            logger.info(f"Removed queue for connection {connection_id}")

    async def subscribe(self, connection_id: str, room: str) -> bool:
        """Subscribe a connection to a room.

        Returns:
            bool: True if newly subscribed, False if it already was
        """
        async with self._lock:
            if connection_id not in self.queues:
                return False
            members = self.rooms.setdefault(room, set())
            if connection_id in members:
                logger.debug(f"Connection {connection_id} already in {room}")
                return False
            members.add(connection_id)
            logger.debug(f"Connection {connection_id} joined {room}")
            return True

    async def unsubscribe(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            members = self.rooms.get(room)
            if not members or connection_id not in members:
                return False
            members.discard(connection_id)
            if not members:
                del self.rooms[room]
            logger.debug(f"Connection {connection_id} left {room}")
            return True

    def is_subscribed(self, connection_id: str, room: str) -> bool:
        return connection_id in self.rooms.get(room, ())

    def send_to_connection(self, connection_id: str, envelope) -> bool:
        """Queue an envelope for one connection if it is still live."""
        q = self.queues.get(connection_id)
        if q is None:
            logger.warning(f"Dropping envelope for closed connection {connection_id}")
            return False
        q.put_nowait(envelope)
        return True

    def send_to_room(self, room: str, envelope, exclude: Optional[str] = None) -> int:
        """Fan an envelope out to every connection in a room.

        Args:
            room (str): Room name
            envelope: ChatEnvelope to deliver
            exclude (str, optional): Connection ID to skip (usually the sender's)

        Returns:
            int: Number of connections the envelope was queued for
        """
        delivered = 0
        for connection_id in sorted(self.rooms.get(room, ())):
            if connection_id == exclude:
                continue
            q = self.queues.get(connection_id)
            if q is not None:
                q.put_nowait(envelope)
                delivered += 1
        logger.debug(f"Fan-out {envelope.type} to {room}: {delivered} connections")
        return delivered
