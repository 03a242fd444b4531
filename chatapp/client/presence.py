"""
Typing indicators, outbound (debounced) and inbound (auto-expiring), and
member arrivals and departures.
"""
import asyncio
from typing import Dict, Optional, Tuple

from .connection import EVENT_DISCONNECT, ChatConnection
from .store import ClientStateStore
from .tasks import BackgroundTasks
from ..config import Settings, get_settings
from ..proto.chat_wire import TYPING, TYPING_UPDATE, USER_JOINED, USER_LEFT
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.presence')


class TypingTracker:
    """Tracks the local participant's typing burst and remote typing states.

    Outbound: the first keystroke of a burst sends ``typing{isTyping: true}``;
    ``isTyping: false`` follows after ``typing_quiet_interval`` without input,
    or at once on submit. Inbound: every start event (re)arms a
    ``typing_ttl`` timer that removes the state if no stop arrives.
    """

    def __init__(self, connection: ChatConnection, store: ClientStateStore, settings: Optional[Settings] = None):
        self.connection = connection
        self.store = store
        self.settings = settings or get_settings()
        self.typing_group: Optional[str] = None
        self._quiet: Optional[asyncio.TimerHandle] = None
        self._expiry: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._tasks = BackgroundTasks("typing")
        connection.on(TYPING_UPDATE, self.on_typing_update)
        connection.on(EVENT_DISCONNECT, self._on_disconnect)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def notify_typing(self, group_id: str, is_typing: bool) -> bool:
        logger.debug(f"Typing {is_typing} in {group_id}")
        return await self.connection.emit(TYPING, {"groupId": group_id, "isTyping": is_typing})

    def on_input(self, group_id: str):
        """Record a keystroke in ``group_id``'s composer."""
        if not group_id:
            return
        if self.typing_group != group_id:
            if self.typing_group is not None:
                self._tasks.spawn(self.notify_typing(self.typing_group, False))
            self.typing_group = group_id
            self._tasks.spawn(self.notify_typing(group_id, True))
        self._cancel_quiet()
        self._quiet = asyncio.get_running_loop().call_later(self.settings.typing_quiet_interval, self._quiet_elapsed)

    def _quiet_elapsed(self):
        self._quiet = None
        self.stop()

    def _cancel_quiet(self):
        if self._quiet is not None:
            self._quiet.cancel()
            self._quiet = None

    def stop(self):
        """End the current burst, sending stop-typing if one was started."""
        self._cancel_quiet()
        group_id, self.typing_group = self.typing_group, None
        if group_id is not None:
            self._tasks.spawn(self.notify_typing(group_id, False))

    def on_submit(self, group_id: str):
        if self.typing_group == group_id:
            self.stop()

    def cancel(self):
        """Forget the current burst without telling the server."""
        self._cancel_quiet()
        self.typing_group = None

    def _on_disconnect(self, info):
        self.cancel()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_typing_update(self, payload: dict):
        user_id = payload.get("userId")
        group_id = payload.get("groupId")
        if not user_id or not group_id or user_id == self.store.user_id:
            return
        key = (group_id, user_id)
        timer = self._expiry.pop(key, None)
        if timer is not None:
            timer.cancel()
        if payload.get("isTyping"):
            self.store.set_typing(group_id, user_id, payload.get("timestamp"))
            self._expiry[key] = asyncio.get_running_loop().call_later(self.settings.typing_ttl, self._expire, key)
        else:
            self.store.clear_typing(group_id, user_id)

    def _expire(self, key: Tuple[str, str]):
        self._expiry.pop(key, None)
        if self.store.clear_typing(*key):
            logger.debug(f"Typing state of {key[1]} in {key[0]} expired")

    async def close(self):
        self.cancel()
        for key, timer in list(self._expiry.items()):
            timer.cancel()
            self.store.clear_typing(*key)
        self._expiry.clear()
        await self._tasks.cancel()


class MemberPresence:
    """Tracks which members are connected to each group.

    The server announces ``user:joined`` and ``user:left`` to the rest of a
    group room. There is no roster, so only arrivals seen on the current
    connection are known; the set is emptied when the link drops.
    """

    def __init__(self, connection: ChatConnection, store: ClientStateStore):
        self.store = store
        connection.on(USER_JOINED, self.on_user_joined)
        connection.on(USER_LEFT, self.on_user_left)
        connection.on(EVENT_DISCONNECT, self._on_disconnect)

    def on_user_joined(self, payload: dict):
        self._update(payload, True)

    def on_user_left(self, payload: dict):
        self._update(payload, False)
        if payload.get("groupId") and payload.get("userId"):
            # A departed member cannot still be typing
            self.store.clear_typing(payload["groupId"], payload["userId"])

    def _update(self, payload: dict, online: bool) -> bool:
        user_id = payload.get("userId")
        group_id = payload.get("groupId")
        if not user_id or not group_id or user_id == self.store.user_id:
            return False
        changed = self.store.set_online(group_id, user_id, online)
        if changed:
            logger.debug(f"{user_id} {'joined' if online else 'left'} group {group_id}")
        return changed

    def _on_disconnect(self, info):
        self.store.clear_online()
