"""
Connection manager: one owned stream per participant.

State machine::

    disconnected -> connecting -> connected -> reconnecting -> connected
                                           \\-> failed (terminal until reconnect())
                                           \\-> disconnected (explicit)

Leaving ``connected`` fails every outstanding acknowledgment with an
UNKNOWN outcome and emits ``disconnect``; listeners treat that as "all
subscriptions are gone".
"""
import asyncio
import contextlib
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import Settings, get_settings
from ..errors import ChatError, TransportError, error_from_payload
from ..proto.chat_wire import ACK, ChatEnvelope
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.connection')

# Lifecycle events emitted through on()/off()
EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"
EVENT_RECONNECT_FAILED = "reconnect_failed"
EVENT_STATE = "state"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class AckOutcome(str, Enum):
    OK = "ok"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass
class Ack:
    """Result of an acknowledged send.

    UNKNOWN means no reply arrived (timeout or link loss): the server may or
    may not have applied the request.
    """
    outcome: AckOutcome
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ChatError] = None

    @property
    def ok(self) -> bool:
        return self.outcome == AckOutcome.OK

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Ack":
        if payload.get("success"):
            return cls(AckOutcome.OK, payload)
        return cls(AckOutcome.ERROR, payload, error_from_payload(payload))

    @classmethod
    def unknown(cls, reason: str) -> "Ack":
        return cls(AckOutcome.UNKNOWN, {}, TransportError(reason))

    def raise_for_error(self) -> Dict[str, Any]:
        if self.outcome != AckOutcome.OK:
            raise self.error
        return self.data


class ChatConnection:
    """Owns the transport session for one participant.

    Components receive the connection by injection and use :meth:`send`
    (acknowledged), :meth:`emit` (fire-and-forget), :meth:`call`
    (request/response) and :meth:`on`/:meth:`off` for inbound events.
    Handlers run synchronously on the event loop, one envelope at a time.
    """

    def __init__(self, transport, user_id: str, settings: Optional[Settings] = None):
        self.transport = transport
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.state = ConnectionState.DISCONNECTED
        self.epoch = 0
        self.connection_id: Optional[str] = None
        self._stream = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnector: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._handlers: Dict[str, List[Callable]] = {}

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    # ------------------------------------------------------------------
    # Event subscription
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Callable[[Any], None]):
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Optional[Callable] = None):
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit_local(self, event: str, payload: Any = None):
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Handler for '{event}' failed")

    def _set_state(self, state: ConnectionState):
        if state == self.state:
            return
        logger.info(f"Connection {self.user_id}: {self.state.value} -> {state.value}")
        self.state = state
        self._emit_local(EVENT_STATE, state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> "ChatConnection":
        """Open the stream. Idempotent while connecting or connected.

        Raises:
            TransportError: The first attempt failed; the connection stays disconnected
        """
        if self.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            return self
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
        except TransportError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        return self

    async def reconnect(self) -> "ChatConnection":
        """Explicit, user-triggered reconnect out of the failed state."""
        if self.state == ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)
        return await self.connect()

    async def _open(self):
        try:
            stream = await asyncio.wait_for(self.transport.open(self.user_id), self.settings.connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError("Timed out opening stream") from e
        self._stream = stream
        self.epoch += 1
        self.connection_id = stream.info.get("connectionId")
        self._reader = asyncio.create_task(self._read_loop(stream))
        self._set_state(ConnectionState.CONNECTED)
        self._emit_local(EVENT_CONNECT, {"connectionId": self.connection_id, "epoch": self.epoch})

    async def _read_loop(self, stream):
        reason = "closed by server"
        try:
            async for env in stream:
                self._dispatch(env)
        except TransportError as e:
            reason = str(e)
        if stream is self._stream and self.state == ConnectionState.CONNECTED:
            self._on_link_lost(reason)

    def _dispatch(self, env: ChatEnvelope):
        if env.type == ACK:
            fut = self._pending.get(env.id)
            if fut is None or fut.done():
                logger.debug(f"Late or unknown ack {env.id} ignored")
                return
            fut.set_result(Ack.from_payload(env.payload))
            return
        self._emit_local(env.type, env.payload)

    def _fail_pending(self, reason: str):
        for fut in self._pending.values():
            if not fut.done():
                fut.set_result(Ack.unknown(reason))

    def _on_link_lost(self, reason: str):
        logger.warning(f"Connection {self.user_id} lost: {reason}")
        self._stream = None
        self._fail_pending(reason)
        self._set_state(ConnectionState.RECONNECTING)
        self._emit_local(EVENT_DISCONNECT, {"reason": reason, "reconnecting": True})
        self._reconnector = asyncio.create_task(self._reconnect_loop())

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.settings.reconnect_base_delay * (2 ** (attempt - 1)), self.settings.reconnect_max_delay)

    async def _reconnect_loop(self):
        attempts = self.settings.reconnect_max_attempts
        for attempt in range(1, attempts + 1):
            delay = self.backoff_delay(attempt)
            logger.info(f"Reconnect attempt {attempt}/{attempts} in {delay:.2f}s")
            await asyncio.sleep(delay)
            try:
                await self._open()
            except TransportError as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                continue
            logger.info(f"Reconnected after {attempt} attempts")
            return
        self._set_state(ConnectionState.FAILED)
        self._emit_local(EVENT_RECONNECT_FAILED, {"attempts": attempts})

    async def disconnect(self):
        """Close the stream and stop reconnecting. Pending acks resolve UNKNOWN."""
        previous = self.state
        if self._reconnector is not None:
            self._reconnector.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnector
            self._reconnector = None
        stream, self._stream = self._stream, None
        self._set_state(ConnectionState.DISCONNECTED)
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        if stream is not None:
            await stream.close()
        self._fail_pending("disconnected")
        if previous != ConnectionState.DISCONNECTED:
            self._emit_local(EVENT_DISCONNECT, {"reason": "client disconnect", "reconnecting": False})

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, event: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Ack:
        """Send an event and wait for its acknowledgment.

        Resolves exactly once: with the server's success or error payload,
        or with an UNKNOWN outcome if no reply arrives within ``timeout``
        (default ``ack_timeout``) or the link drops first. Cancelling the
        caller abandons the wait; a late ack is then ignored.

        Raises:
            TransportError: Not connected; nothing was sent
        """
        if not self.is_connected or self._stream is None:
            raise TransportError("Not connected")
        ack_id = uuid.uuid4().hex
        fut = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = fut
        try:
            await self._stream.send(ChatEnvelope(type=event, payload=payload, id=ack_id))
            return await asyncio.wait_for(fut, timeout if timeout is not None else self.settings.ack_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No ack for {event} within timeout; outcome unknown")
            return Ack.unknown(f"{event} timed out")
        except TransportError as e:
            return Ack.unknown(str(e))
        finally:
            self._pending.pop(ack_id, None)

    async def emit(self, event: str, payload: Dict[str, Any]) -> bool:
        """Fire-and-forget send. Returns False if not connected."""
        if not self.is_connected or self._stream is None:
            logger.warning(f"Not connected. Cannot emit: {event}")
            return False
        try:
            await self._stream.send(ChatEnvelope(type=event, payload=payload))
        except TransportError as e:
            logger.warning(f"Emit {event} failed: {e}")
            return False
        return True

    async def call(self, method: str, payload: Optional[Dict[str, Any]] = None,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        """Request/response call on the same service.

        Raises:
            TransportError: No reply or transport failure
            ChatError: The server answered with an error payload
        """
        request = dict(payload or {})
        request.setdefault("userId", self.user_id)
        reply = await self.transport.call(method, request,
                                          timeout if timeout is not None else self.settings.ack_timeout)
        if not reply.get("success"):
            raise error_from_payload(reply)
        return reply
