import unittest
import tempfile
import shutil
import asyncio
from chatapp.config import Settings
from chatapp.client.connection import (EVENT_CONNECT, EVENT_DISCONNECT, EVENT_RECONNECT_FAILED, AckOutcome,
                                       ChatConnection, ConnectionState)
from chatapp.client.transport import InProcessTransport
from chatapp.errors import AuthorizationError, TransportError
from chatapp.proto import chat_wire as wire
from chatapp.server.main import build_service
from chatapp.server.models import Member, User


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestChatConnection(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = Settings(data_dir=self.temp_dir, ack_timeout=0.2, connect_timeout=1.0,
                                 reconnect_base_delay=0.01, reconnect_max_delay=0.04, reconnect_max_attempts=3)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _transport(self):
        service = build_service(self.settings)
        service.users.append_user(User("alice", "Alice"))
        service.groups.create_group("g1", "Hiking", [Member("alice", "Alice")], 1)
        service.groups.create_group("g2", "Chess", [Member("bob", "Bob")], 2)
        return InProcessTransport(service)

    def test_backoff_is_exponential_and_bounded(self):
        conn = ChatConnection(None, "alice", Settings(reconnect_base_delay=1.0, reconnect_max_delay=5.0))
        self.assertEqual([conn.backoff_delay(n) for n in range(1, 6)], [1.0, 2.0, 4.0, 5.0, 5.0])

    def test_connect_is_idempotent(self):
        async def scenario():
            transport = self._transport()
            conn = ChatConnection(transport, "alice", self.settings)
            connects = []
            conn.on(EVENT_CONNECT, connects.append)
            first = await conn.connect()
            second = await conn.connect()
            self.assertIs(first, second)
            self.assertEqual(len(transport.streams), 1)
            self.assertEqual(len(connects), 1)
            self.assertEqual(conn.epoch, 1)
            self.assertIsNotNone(conn.connection_id)
            await conn.disconnect()
            self.assertEqual(conn.state, ConnectionState.DISCONNECTED)

        asyncio.run(scenario())

    def test_first_connect_failure_raises(self):
        async def scenario():
            transport = self._transport()
            transport.refuse = True
            conn = ChatConnection(transport, "alice", self.settings)
            with self.assertRaises(TransportError):
                await conn.connect()
            self.assertEqual(conn.state, ConnectionState.DISCONNECTED)

        asyncio.run(scenario())

    def test_send_resolves_with_ok_or_error(self):
        async def scenario():
            conn = ChatConnection(self._transport(), "alice", self.settings)
            await conn.connect()
            ok = await conn.send(wire.JOIN_GROUP, {"groupId": "g1"})
            self.assertEqual(ok.outcome, AckOutcome.OK)
            self.assertEqual(ok.data["groupId"], "g1")
            refused = await conn.send(wire.JOIN_GROUP, {"groupId": "g2"})
            self.assertEqual(refused.outcome, AckOutcome.ERROR)
            self.assertIsInstance(refused.error, AuthorizationError)
            with self.assertRaises(AuthorizationError):
                refused.raise_for_error()
            await conn.disconnect()

        asyncio.run(scenario())

    def test_missing_ack_is_unknown_not_failure(self):
        async def scenario():
            transport = self._transport()
            conn = ChatConnection(transport, "alice", self.settings)
            await conn.connect()
            transport.lose(lambda env: env.type == wire.ACK)
            result = await conn.send(wire.JOIN_GROUP, {"groupId": "g1"})
            self.assertEqual(result.outcome, AckOutcome.UNKNOWN)
            self.assertIsInstance(result.error, TransportError)
            self.assertEqual(conn._pending, {})
            # The join was applied even though the reply was lost
            self.assertTrue(transport.service.hub.is_subscribed(conn.connection_id, "group:g1"))
            await conn.disconnect()

        asyncio.run(scenario())

    def test_send_while_disconnected_raises(self):
        async def scenario():
            conn = ChatConnection(self._transport(), "alice", self.settings)
            with self.assertRaises(TransportError):
                await conn.send(wire.JOIN_GROUP, {"groupId": "g1"})
            self.assertFalse(await conn.emit(wire.TYPING, {"groupId": "g1", "isTyping": True}))

        asyncio.run(scenario())

    def test_link_loss_reconnects_with_new_epoch(self):
        async def scenario():
            transport = self._transport()
            conn = ChatConnection(transport, "alice", self.settings)
            events = []
            conn.on(EVENT_DISCONNECT, lambda info: events.append(("disconnect", info["reconnecting"])))
            conn.on(EVENT_CONNECT, lambda info: events.append(("connect", info["epoch"])))
            await conn.connect()
            first_id = conn.connection_id
            await transport.drop_all()
            await wait_until(lambda: conn.epoch == 2 and conn.is_connected)
            self.assertNotEqual(conn.connection_id, first_id)
            self.assertEqual(events, [("connect", 1), ("disconnect", True), ("connect", 2)])
            await conn.disconnect()

        asyncio.run(scenario())

    def test_link_loss_resolves_pending_acks_unknown(self):
        async def scenario():
            transport = self._transport()
            conn = ChatConnection(transport, "alice", Settings(data_dir=self.temp_dir, ack_timeout=5.0,
                                                                reconnect_base_delay=0.01))
            await conn.connect()
            transport.lose(lambda env: env.type == wire.ACK)
            pending = asyncio.ensure_future(conn.send(wire.JOIN_GROUP, {"groupId": "g1"}))
            await asyncio.sleep(0.02)
            await transport.drop_all()
            result = await asyncio.wait_for(pending, 1.0)
            self.assertEqual(result.outcome, AckOutcome.UNKNOWN)
            await conn.disconnect()

        asyncio.run(scenario())

    def test_reconnect_gives_up_then_explicit_reconnect(self):
        async def scenario():
            transport = self._transport()
            conn = ChatConnection(transport, "alice", self.settings)
            failed = []
            conn.on(EVENT_RECONNECT_FAILED, failed.append)
            await conn.connect()
            transport.refuse = True
            await transport.drop_all()
            await wait_until(lambda: conn.state == ConnectionState.FAILED)
            self.assertEqual(failed, [{"attempts": 3}])
            with self.assertRaises(TransportError):
                await conn.send(wire.JOIN_GROUP, {"groupId": "g1"})

            transport.refuse = False
            await conn.reconnect()
            self.assertTrue(conn.is_connected)
            self.assertEqual(conn.epoch, 2)
            await conn.disconnect()

        asyncio.run(scenario())

    def test_call_raises_error_payloads(self):
        async def scenario():
            conn = ChatConnection(self._transport(), "alice", self.settings)
            reply = await conn.call("ListUserGroups")
            self.assertEqual([g["id"] for g in reply["groups"]], ["g1"])
            with self.assertRaises(AuthorizationError):
                await conn.call("GetMessages", {"groupId": "g2"})

        asyncio.run(scenario())


if __name__ == '__main__':
    unittest.main()
