import unittest
import tempfile
import shutil
import asyncio
import grpc
from chatapp.config import Settings
from chatapp.proto import chat_pb2
from chatapp.proto import chat_wire as wire
from chatapp.proto.chat_wire import ChatEnvelope
from chatapp.server.main import build_service
from chatapp.server.models import Member, MessageStatus, User


def _drain(session):
    """Everything queued for a session so far."""
    out = []
    while not session.queue.empty():
        out.append(session.queue.get_nowait())
    return out


def _acks(envs):
    return [e for e in envs if e.type == wire.ACK]


def _of_type(envs, event):
    return [e.payload for e in envs if e.type == event]


class _Aborted(Exception):
    pass


class _RecordingContext:
    """Servicer context stand-in that records the abort status."""

    def __init__(self):
        self.code = None
        self.details = None

    async def abort(self, code, details):
        self.code = code
        self.details = details
        raise _Aborted(details)


class TestChatStream(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = Settings(data_dir=self.temp_dir, rate_limit_max=30, rate_limit_window=10.0)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _service(self, settings=None):
        service = build_service(settings or self.settings)
        for uid, name in (("ann", "Ann"), ("ben", "Ben"), ("cat", "Cat"), ("dan", "Dan")):
            service.users.append_user(User(uid, name))
        service.groups.create_group("g1", "Hiking", [Member("ann", "Ann"), Member("ben", "Ben"),
                                                      Member("cat", "Cat")], 1)
        service.groups.create_group("g2", "Chess", [Member("dan", "Dan")], 2)
        return service

    async def _join(self, service, user_id, group_id="g1"):
        session = await service.open_session(user_id)
        await service.dispatch(session, ChatEnvelope(wire.JOIN_GROUP, {"groupId": group_id}, "j"))
        await service.dispatch(session, ChatEnvelope(wire.JOIN_USER, {"userId": user_id}, "u"))
        _drain(session)
        return session

    def test_join_is_idempotent_and_reports_head(self):
        service = self._service()

        async def scenario():
            session = await service.open_session("ann")
            for _ in range(2):
                await service.dispatch(session, ChatEnvelope(wire.JOIN_GROUP, {"groupId": "g1"}, "j"))
            return session

        session = asyncio.run(scenario())
        first, second = [a.payload for a in _acks(_drain(session))]
        self.assertTrue(first["success"])
        self.assertFalse(first["alreadyJoined"])
        self.assertEqual(first["lastSeq"], 0)
        self.assertTrue(second["alreadyJoined"])
        self.assertEqual(service.hub.rooms["group:g1"], {session.connection_id})

    def test_join_rejections(self):
        service = self._service()

        async def scenario():
            session = await service.open_session("ann")
            await service.dispatch(session, ChatEnvelope(wire.JOIN_GROUP, {"groupId": "g2"}, "a"))
            await service.dispatch(session, ChatEnvelope(wire.JOIN_GROUP, {"groupId": "nope"}, "b"))
            await service.dispatch(session, ChatEnvelope(wire.JOIN_GROUP, {}, "c"))
            await service.dispatch(session, ChatEnvelope(wire.JOIN_USER, {"userId": "ben"}, "d"))
            return session

        acks = {a.id: a.payload for a in _acks(_drain(asyncio.run(scenario())))}
        self.assertEqual(acks["a"]["code"], "forbidden")
        self.assertEqual(acks["b"]["code"], "not_found")
        self.assertEqual(acks["c"]["code"], "validation")
        self.assertEqual(acks["d"]["code"], "forbidden")

    def test_send_orders_and_fans_out_to_every_subscriber(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            ben = await self._join(service, "ben")
            await service.dispatch(ann, ChatEnvelope(wire.MESSAGE_SEND, {"groupId": "g1", "content": " hi "}, "1"))
            await service.dispatch(ben, ChatEnvelope(wire.MESSAGE_SEND, {"groupId": "g1", "content": "yo"}, "2"))
            return ann, ben

        ann, ben = asyncio.run(scenario())
        ann_out, ben_out = _drain(ann), _drain(ben)
        for out in (ann_out, ben_out):
            self.assertEqual([(m["seq"], m["content"]) for m in _of_type(out, wire.MESSAGE_NEW)],
                             [(1, "hi"), (2, "yo")])
        ack = _acks(ann_out)[0].payload
        self.assertEqual(ack["message"]["seq"], 1)
        self.assertEqual(ack["message"]["senderName"], "Ann")
        self.assertFalse(ack["duplicate"])

    def test_concurrent_submissions_get_one_total_order(self):
        service = self._service()

        async def scenario():
            sessions = [await self._join(service, uid) for uid in ("ann", "ben", "cat")]
            await asyncio.gather(*[
                service.dispatch(s, ChatEnvelope(wire.MESSAGE_SEND, {"groupId": "g1", "content": f"{s.user_id}-{i}"},
                                                 f"{s.user_id}{i}"))
                for i in range(8) for s in sessions
            ])
            return sessions

        sessions = asyncio.run(scenario())
        orders = []
        for s in sessions:
            received = _of_type(_drain(s), wire.MESSAGE_NEW)
            self.assertEqual([m["seq"] for m in received], list(range(1, 25)))
            orders.append([m["id"] for m in received])
        self.assertEqual(orders[0], orders[1])
        self.assertEqual(orders[1], orders[2])
        self.assertEqual(len(set(orders[0])), 24)
        self.assertEqual(service.messages.head_seq("g1"), 24)

    def test_resubmitted_token_returns_existing_message(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            ben = await self._join(service, "ben")
            payload = {"groupId": "g1", "content": "hello", "clientToken": "T1"}
            await service.dispatch(ann, ChatEnvelope(wire.MESSAGE_SEND, payload, "first"))
            await service.dispatch(ann, ChatEnvelope(wire.MESSAGE_SEND, payload, "retry"))
            return ann, ben

        ann, ben = asyncio.run(scenario())
        acks = {a.id: a.payload for a in _acks(_drain(ann))}
        self.assertFalse(acks["first"]["duplicate"])
        self.assertTrue(acks["retry"]["duplicate"])
        self.assertEqual(acks["first"]["message"]["id"], acks["retry"]["message"]["id"])
        self.assertEqual(len(_of_type(_drain(ben), wire.MESSAGE_NEW)), 1)
        self.assertEqual(len(service.messages.query_by_group("g1")), 1)

    def test_send_validation(self):
        service = self._service(Settings(data_dir=self.temp_dir, max_message_length=5))

        async def scenario():
            ann = await self._join(service, "ann")
            for ack_id, payload in (("empty", {"groupId": "g1", "content": "   "}),
                                    ("long", {"groupId": "g1", "content": "x" * 6}),
                                    ("type", {"groupId": "g1", "content": 5}),
                                    ("member", {"groupId": "g2", "content": "hi"}),
                                    ("html", {"groupId": "g1", "content": "<b>"})):
                await service.dispatch(ann, ChatEnvelope(wire.MESSAGE_SEND, payload, ack_id))
            return ann

        acks = {a.id: a.payload for a in _acks(_drain(asyncio.run(scenario())))}
        self.assertEqual(acks["empty"]["code"], "validation")
        self.assertEqual(acks["long"]["code"], "validation")
        self.assertEqual(acks["type"]["code"], "validation")
        self.assertEqual(acks["member"]["code"], "forbidden")
        self.assertEqual(acks["html"]["message"]["content"], "&lt;b&gt;")

    def test_rate_limit(self):
        service = self._service(Settings(data_dir=self.temp_dir, rate_limit_max=3, rate_limit_window=60.0))

        async def scenario():
            ann = await self._join(service, "ann")
            for i in range(4):
                await service.dispatch(ann, ChatEnvelope(wire.MESSAGE_SEND, {"groupId": "g1", "content": "x"}, str(i)))
            return ann

        acks = [a.payload for a in _acks(_drain(asyncio.run(scenario())))]
        self.assertEqual([a["success"] for a in acks], [True, True, True, False])
        self.assertEqual(acks[3]["code"], "rate_limited")

    def test_unacknowledged_events_get_no_ack(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            await service.dispatch(ann, ChatEnvelope("bogus", {}))
            await service.dispatch(ann, ChatEnvelope("bogus", {}, "x"))
            return ann

        out = _drain(asyncio.run(scenario()))
        self.assertEqual([a.id for a in _acks(out)], ["x"])
        self.assertEqual(_acks(out)[0].payload["code"], "validation")

    def test_typing_is_not_echoed_to_sender(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            ben = await self._join(service, "ben")
            await service.dispatch(ann, ChatEnvelope(wire.TYPING, {"groupId": "g1", "isTyping": True}))
            return ann, ben

        ann, ben = asyncio.run(scenario())
        self.assertEqual(_of_type(_drain(ann), wire.TYPING_UPDATE), [])
        update = _of_type(_drain(ben), wire.TYPING_UPDATE)[0]
        self.assertEqual((update["userId"], update["groupId"], update["isTyping"]), ("ann", "g1", True))

    def test_read_and_delivered_updates(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            ben = await self._join(service, "ben")
            for i in range(2):
                await service.dispatch(ann, ChatEnvelope(wire.MESSAGE_SEND, {"groupId": "g1", "content": f"m{i}"}, "s"))
            await service.dispatch(ben, ChatEnvelope(wire.MESSAGE_SEND, {"groupId": "g1", "content": "mine"}, "s"))
            ids = [m.message_id for m in service.messages.query_by_group("g1")]
            _drain(ann), _drain(ben)
            await service.dispatch(ben, ChatEnvelope(wire.MESSAGES_READ, {"groupId": "g1", "messageIds": ids}, "r"))
            await service.dispatch(ben, ChatEnvelope(wire.MESSAGES_DELIVERED,
                                                     {"groupId": "g1", "messageIds": ids}, "d"))
            return ann, ben, ids

        ann, ben, ids = asyncio.run(scenario())
        ben_acks = {a.id: a.payload for a in _acks(_drain(ben))}
        self.assertEqual(ben_acks["r"]["count"], 2)
        self.assertEqual(ben_acks["d"]["count"], 0)
        ann_out = _drain(ann)
        read_updates = _of_type(ann_out, wire.MESSAGES_READ_UPDATE)
        self.assertEqual(len(read_updates), 1)
        self.assertEqual(read_updates[0]["messageIds"], ids[:2])
        self.assertEqual(read_updates[0]["readBy"], "ben")
        self.assertEqual(_of_type(ann_out, wire.MESSAGES_DELIVERED_UPDATE), [])
        self.assertEqual(service.messages.get(ids[0]).status, MessageStatus.READ)
        self.assertEqual(service.messages.get(ids[2]).status, MessageStatus.SENT)

    def test_new_message_notifies_other_members_only(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            # ben listens on his user room only, without a group subscription
            ben = await service.open_session("ben")
            await service.dispatch(ben, ChatEnvelope(wire.JOIN_USER, {"userId": "ben"}, "u"))
            _drain(ben)
            await service.dispatch(ann, ChatEnvelope(wire.MESSAGE_SEND, {"groupId": "g1", "content": "hey"}, "s"))
            return ann, ben

        ann, ben = asyncio.run(scenario())
        ben_out = _drain(ben)
        self.assertEqual(_of_type(ben_out, wire.MESSAGE_NEW), [])
        notification = _of_type(ben_out, wire.NOTIFICATION_NEW)[0]
        self.assertEqual(notification["type"], "NEW_MESSAGE")
        self.assertEqual(notification["metadata"]["seq"], 1)
        self.assertEqual(_of_type(_drain(ann), wire.NOTIFICATION_NEW), [])
        self.assertEqual(service.notifications.unread_count("cat"), 1)

    def test_closing_session_drops_subscriptions(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            await service.close_session(ann)
            return ann

        ann = asyncio.run(scenario())
        self.assertNotIn("group:g1", service.hub.rooms)
        self.assertNotIn(ann.connection_id, service.sessions)

    def test_run_session_yields_connected_then_acks(self):
        service = self._service()

        async def scenario():
            async def requests():
                yield ChatEnvelope(wire.JOIN_GROUP, {"groupId": "g1"}, "j")

            out = []
            async for env in service.run_session("ann", requests()):
                out.append(env)
            return out

        out = asyncio.run(scenario())
        self.assertEqual(out[0].type, wire.CONNECTED)
        self.assertEqual(out[1].type, wire.ACK)
        self.assertEqual(out[1].id, "j")
        self.assertEqual(service.sessions, {})

    def test_membership_changes_are_announced_to_the_room(self):
        service = self._service()

        async def scenario():
            ann = await self._join(service, "ann")
            ben = await self._join(service, "ben")
            # A repeated join and a leave of a group never joined are silent
            await service.dispatch(ben, ChatEnvelope(wire.JOIN_GROUP, {"groupId": "g1"}, "again"))
            await service.dispatch(ann, ChatEnvelope(wire.LEAVE_GROUP, {"groupId": "g2"}, "l0"))
            await service.dispatch(ann, ChatEnvelope(wire.LEAVE_GROUP, {"groupId": "g1"}, "l1"))
            await service.dispatch(ann, ChatEnvelope(wire.LEAVE_GROUP, {"groupId": "g1"}, "l2"))
            return ann, ben

        ann, ben = asyncio.run(scenario())
        ann_out, ben_out = _drain(ann), _drain(ben)
        joined = _of_type(ann_out, wire.USER_JOINED)
        self.assertEqual([(j["userId"], j["groupId"]) for j in joined], [("ben", "g1")])
        self.assertIsInstance(joined[0]["timestamp"], int)
        self.assertEqual(_of_type(ann_out, wire.USER_LEFT), [])
        self.assertEqual(_of_type(ben_out, wire.USER_JOINED), [])
        left = _of_type(ben_out, wire.USER_LEFT)
        self.assertEqual([(e["userId"], e["groupId"]) for e in left], [("ann", "g1")])

    def test_closing_last_session_announces_departure(self):
        service = self._service()

        async def scenario():
            first = await self._join(service, "ann")
            second = await self._join(service, "ann")
            ben = await self._join(service, "ben")
            _drain(first), _drain(second)

            await service.close_session(first)
            after_first = _of_type(_drain(ben), wire.USER_LEFT)
            await service.close_session(second)
            after_second = _of_type(_drain(ben), wire.USER_LEFT)
            return after_first, after_second

        after_first, after_second = asyncio.run(scenario())
        # ann still holds g1 on the second connection
        self.assertEqual(after_first, [])
        self.assertEqual([(e["userId"], e["groupId"]) for e in after_second], [("ann", "g1")])

    def test_open_stream_rejects_stream_closed_before_hello(self):
        service = self._service()
        context = _RecordingContext()

        async def scenario():
            async def requests():
                return
                yield

            async for _ in service.OpenStream(requests(), context):
                pass

        with self.assertRaises(_Aborted):
            asyncio.run(scenario())
        self.assertEqual(context.code, grpc.StatusCode.UNAUTHENTICATED)
        self.assertEqual(service.sessions, {})

    def test_open_stream_rejects_non_hello_first_frame(self):
        service = self._service()

        for first in (wire.envelope_to_proto(ChatEnvelope(wire.JOIN_GROUP, {"groupId": "g1"}, "j")),
                      wire.envelope_to_proto(ChatEnvelope(wire.HELLO, {}))):
            context = _RecordingContext()

            async def scenario():
                async def requests():
                    yield first

                async for _ in service.OpenStream(requests(), context):
                    pass

            with self.assertRaises(_Aborted):
                asyncio.run(scenario())
            self.assertEqual(context.code, grpc.StatusCode.UNAUTHENTICATED)

    def test_open_stream_exchanges_protobuf_envelopes(self):
        service = self._service()

        async def scenario():
            async def requests():
                yield wire.envelope_to_proto(ChatEnvelope(wire.HELLO, {"userId": "ann"}))
                yield wire.envelope_to_proto(ChatEnvelope(wire.JOIN_GROUP, {"groupId": "g1"}, "j"))

            return [msg async for msg in service.OpenStream(requests(), _RecordingContext())]

        out = asyncio.run(scenario())
        self.assertTrue(all(isinstance(msg, chat_pb2.ChatEnvelope) for msg in out))
        connected, ack = [wire.envelope_from_proto(msg) for msg in out]
        self.assertEqual(connected.type, wire.CONNECTED)
        self.assertEqual(connected.payload["userId"], "ann")
        self.assertEqual((ack.type, ack.id), (wire.ACK, "j"))
        self.assertTrue(ack.payload["success"])
        self.assertEqual(ack.payload["lastSeq"], 0)
        self.assertIsInstance(ack.payload["lastSeq"], int)
        self.assertEqual(service.sessions, {})


if __name__ == '__main__':
    unittest.main()
