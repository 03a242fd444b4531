"""
Transports carrying the ``OpenStream`` stream and request/response calls.

A transport opens streams for a pre-authenticated user and performs unary
calls. :class:`GrpcTransport` talks to a remote server;
:class:`InProcessTransport` binds directly to a ``ChatService`` in the same
event loop and can simulate link loss.
"""
import asyncio
import contextlib
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import grpc
from grpc import aio

from ..errors import TransportError
from ..proto import chat_pb2_grpc
from ..proto import chat_wire as wire
from ..proto.chat_wire import CONNECTED, HELLO, ChatEnvelope
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.transport')


class GrpcStream:
    """A live ``OpenStream`` call."""

    def __init__(self, call, outgoing: asyncio.Queue, info: Dict[str, Any]):
        self._call = call
        self._outgoing = outgoing
        self.info = info
        self.closed = False

    async def send(self, env: ChatEnvelope):
        if self.closed or self._call.done():
            raise TransportError("Stream is closed")
        await self._outgoing.put(env)

    async def __aiter__(self) -> AsyncIterator[ChatEnvelope]:
        while True:
            try:
                msg = await self._call.read()
            except aio.AioRpcError as e:
                raise TransportError(f"Stream failed: {e.code().name} {e.details()}") from e
            if msg is aio.EOF:
                return
            yield wire.envelope_from_proto(msg)

    async def close(self):
        self.closed = True
        self._outgoing.put_nowait(None)
        self._call.cancel()


class GrpcTransport:
    """Transport over a ``grpc.aio`` channel."""

    def __init__(self, target: str, connect_timeout: float = 10.0):
        self.target = target
        self.connect_timeout = connect_timeout
        self._channel = None
        self._stub = None

    def _get_stub(self) -> chat_pb2_grpc.ChatServiceStub:
        if self._stub is None:
            self._channel = aio.insecure_channel(self.target)
            self._stub = chat_pb2_grpc.ChatServiceStub(self._channel)
        return self._stub

    async def open(self, user_id: str) -> GrpcStream:
        """Open the stream, send ``hello`` and wait for ``connected``.

        Raises:
            TransportError: Server unreachable, rejected the stream, or did not
                answer within ``connect_timeout``
        """
        outgoing: asyncio.Queue = asyncio.Queue()
        outgoing.put_nowait(ChatEnvelope(type=HELLO, payload={"userId": user_id}))

        async def requests():
            while True:
                env = await outgoing.get()
                if env is None:
                    return
                yield wire.envelope_to_proto(env)

        call = self._get_stub().OpenStream(requests())
        try:
            first = await asyncio.wait_for(call.read(), self.connect_timeout)
        except asyncio.TimeoutError as e:
            call.cancel()
            raise TransportError(f"No answer from {self.target}") from e
        except aio.AioRpcError as e:
            raise TransportError(f"Connect failed: {e.code().name} {e.details()}") from e
        first = wire.envelope_from_proto(first) if first is not aio.EOF else None
        if first is None or first.type != CONNECTED:
            call.cancel()
            raise TransportError("Server did not acknowledge the stream")
        logger.debug(f"Stream open to {self.target}: {first.payload}")
        return GrpcStream(call, outgoing, first.payload)

    async def call(self, method: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        try:
            reply = await getattr(self._get_stub(), method)(wire.request_to_proto(payload), timeout=timeout)
        except aio.AioRpcError as e:
            if e.code() == grpc.StatusCode.DEADLINE_EXCEEDED:
                raise TransportError(f"{method} timed out") from e
            raise TransportError(f"{method} failed: {e.code().name} {e.details()}") from e
        return wire.reply_from_proto(reply)

    async def close(self):
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
            self._stub = None


_CLOSED = object()
_DROPPED = object()


class _InProcessContext:
    """Stands in for ``aio.ServicerContext`` when the service runs in-process."""

    async def abort(self, code, details: str = ""):
        raise TransportError(f"{code.name}: {details}")


class InProcessStream:
    """A stream served by ``ChatService.OpenStream`` in the same event loop.

    Client envelopes are fed to the servicer as protobuf messages through a
    queue; a pump task copies the servicer's output to the client side.
    """

    def __init__(self, transport: "InProcessTransport", user_id: str):
        self.transport = transport
        self.user_id = user_id
        self.info: Dict[str, Any] = {}
        self.closed = False
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None

    async def _requests(self):
        while True:
            env = await self._inbound.get()
            if env is None:
                return
            yield wire.envelope_to_proto(env)

    async def start(self):
        self._inbound.put_nowait(ChatEnvelope(type=HELLO, payload={"userId": self.user_id}))
        stream = self.transport.service.OpenStream(self._requests(), _InProcessContext())
        first = wire.envelope_from_proto(await stream.__anext__())
        if first.type != CONNECTED:
            raise TransportError("Server did not acknowledge the stream")
        self.info = first.payload
        self._pump = asyncio.create_task(self._run(stream))

    async def _run(self, stream):
        try:
            async for msg in stream:
                env = wire.envelope_from_proto(msg)
                if self.transport.is_lost(env):
                    logger.debug(f"Simulated loss of {env.type} to {self.user_id}")
                    continue
                self._outbound.put_nowait(env)
        finally:
            self._outbound.put_nowait(_CLOSED)

    async def send(self, env: ChatEnvelope):
        if self.closed:
            raise TransportError("Stream is closed")
        self._inbound.put_nowait(env)

    async def __aiter__(self) -> AsyncIterator[ChatEnvelope]:
        while True:
            env = await self._outbound.get()
            if env is _CLOSED:
                return
            if env is _DROPPED:
                raise TransportError("Link dropped")
            yield env

    async def _stop_pump(self):
        if self._pump is not None:
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump

    async def drop(self):
        """Simulate the link failing under both peers."""
        if self.closed:
            return
        self.closed = True
        self._outbound.put_nowait(_DROPPED)
        await self._stop_pump()

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self._stop_pump()


class InProcessTransport:
    """Transport bound directly to a ChatService instance.

    Envelopes and unary calls cross the same protobuf messages a gRPC
    channel would carry.

    Attributes:
        refuse (bool): When True, new streams and unary calls fail with
            TransportError (server unreachable)
        streams (List[InProcessStream]): Streams opened so far
    """

    def __init__(self, service):
        self.service = service
        self.refuse = False
        self.streams: List[InProcessStream] = []
        self._loss_filters: List[Callable[[ChatEnvelope], bool]] = []

    def lose(self, predicate: Callable[[ChatEnvelope], bool]):
        """Discard server-to-client envelopes matching ``predicate``."""
        self._loss_filters.append(predicate)

    def restore(self):
        self._loss_filters.clear()

    def is_lost(self, env: ChatEnvelope) -> bool:
        return any(f(env) for f in self._loss_filters)

    async def open(self, user_id: str) -> InProcessStream:
        if self.refuse:
            raise TransportError("Connection refused")
        stream = InProcessStream(self, user_id)
        await stream.start()
        self.streams.append(stream)
        return stream

    async def drop_all(self):
        for stream in self.streams:
            await stream.drop()

    async def call(self, method: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        if self.refuse:
            raise TransportError("Connection refused")
        try:
            reply = await asyncio.wait_for(getattr(self.service, method)(wire.request_to_proto(payload), None),
                                           timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} timed out") from e
        return wire.reply_from_proto(reply)

    async def close(self):
        for stream in self.streams:
            await stream.close()
