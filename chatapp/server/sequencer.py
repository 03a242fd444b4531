import asyncio
import time
import uuid
from typing import Callable, Dict, Optional

from .models import Message, MessageStatus
from .repo import MessagesRepo
from ..errors import ConflictError
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.sequencer')


class GroupSequencer:
    """Single writer per group for message ordering.

    Each group gets its own asyncio.Lock. Inside it the sequencer checks
    the sender's idempotency token, assigns ``seq = head + 1``, persists
    the message and runs ``on_commit`` (the fan-out) before releasing the
    lock. Concurrent submissions to one group therefore get strictly
    increasing, non-colliding ordering keys and are fanned out in that
    same order; different groups never wait on each other.
    """

    def __init__(self, messages: MessagesRepo):
        self.messages = messages
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, group_id: str) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = self._locks[group_id] = asyncio.Lock()
        return lock

    async def commit(self, group_id: str, sender_id: str, content: str,
                     client_token: Optional[str] = None, sender_name: str = "",
                     on_commit: Optional[Callable[[Message], None]] = None) -> Message:
        """Assign identity and ordering key to a submission and store it.

        Args:
            group_id (str): Target group
            sender_id (str): Author
            content (str): Already-sanitized body
            client_token (str, optional): Sender's idempotency token
            sender_name (str): Denormalized sender display name
            on_commit (callable, optional): Called with the stored message while
                the group lock is still held

        Returns:
            Message: The stored message

        Raises:
            ConflictError: The token was already applied; ``existing`` is the stored message
        """
        async with self.lock_for(group_id):
            if client_token:
                existing = self.messages.find_by_token(group_id, sender_id, client_token)
                if existing is not None:
                    logger.info(f"Duplicate submit token {client_token} in group {group_id} -> {existing.message_id}")
                    raise ConflictError("Message already submitted", existing=existing)

            msg = Message(
                message_id=uuid.uuid4().hex,
                group_id=group_id,
                sender_id=sender_id,
                content=content,
                seq=self.messages.head_seq(group_id) + 1,
                sent_ts=int(time.time() * 1000),
                status=MessageStatus.SENT,
                client_token=client_token,
                sender_name=sender_name,
            )
            self.messages.append(msg)
            if on_commit is not None:
                on_commit(msg)
            return msg
