import unittest
import tempfile
import shutil
import os
import asyncio
from chatapp.config import Settings
from chatapp.server.repo import UsersRepo, MessagesRepo, GroupsRepo, NotificationsRepo
from chatapp.server.service import ChatService
from chatapp.server.notifications import NotificationService
from chatapp.server.hub import Hub
from chatapp.server.models import Member, User
from chatapp.proto import chat_pb2
from chatapp.proto.chat_wire import ChatEnvelope, reply_from_proto, request_to_proto


class TestRPCGroups(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = Settings(data_dir=self.temp_dir, history_page_size=5)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _service(self):
        users_repo = UsersRepo(os.path.join(self.temp_dir, "users.jsonl"))
        messages_repo = MessagesRepo(os.path.join(self.temp_dir, "messages.jsonl"))
        groups_repo = GroupsRepo(os.path.join(self.temp_dir, "groups.jsonl"))
        hub = Hub()
        notifications = NotificationService(NotificationsRepo(os.path.join(self.temp_dir, "notifications.jsonl")), hub)
        users_repo.append_user(User("u1", "Ann"))
        users_repo.append_user(User("u2", "Ben"))
        groups_repo.create_group('g1', 'Hiking', [Member('u1', 'Ann'), Member('u2', 'Ben')], 1)
        groups_repo.create_group('g2', 'Chess', [Member('u2', 'Ben')], 2)
        return ChatService(users_repo, messages_repo, groups_repo, notifications, hub, self.settings)

    def _rpc(self, service, method, request):
        resp = asyncio.run(getattr(service, method)(request_to_proto(request), None))
        self.assertIsInstance(resp, chat_pb2.ChatReply)
        return reply_from_proto(resp)

    def _post(self, service, group_id, sender_id, count):
        async def post():
            for i in range(count):
                await service.sequencer.commit(group_id, sender_id, f"m{i + 1}")
        asyncio.run(post())

    def test_list_user_groups_rpc(self):
        service = self._service()
        self._post(service, 'g1', 'u1', 2)

        resp = self._rpc(service, "ListUserGroups", {"userId": "u2"})
        self.assertTrue(resp["success"])
        groups = {g["id"]: g for g in resp["groups"]}
        self.assertEqual(sorted(groups), ['g1', 'g2'])
        self.assertEqual(groups['g1']["unreadCount"], 2)
        self.assertEqual(groups['g1']["lastSeq"], 2)
        self.assertEqual(groups['g1']["lastMessage"]["content"], "m2")
        self.assertIsNone(groups['g2']["lastMessage"])

    def test_list_user_groups_requires_user(self):
        service = self._service()
        resp = self._rpc(service, "ListUserGroups", {})
        self.assertFalse(resp["success"])
        self.assertEqual(resp["code"], "validation")

    def test_unary_accepts_generated_request(self):
        service = self._service()
        self._post(service, 'g1', 'u1', 1)
        request = chat_pb2.ChatRequest(user_id='u2')
        request.params.update({"groupId": "g1"})

        resp = asyncio.run(service.GetUnreadCount(request, None))
        self.assertIsInstance(resp, chat_pb2.ChatReply)
        self.assertTrue(resp.success)
        self.assertEqual(resp.code, "")
        self.assertEqual(resp.data["count"], 1)

        other = chat_pb2.ChatRequest(user_id='u1')
        other.params.update({"groupId": "g2"})
        denied = asyncio.run(service.GetMessages(other, None))
        self.assertFalse(denied.success)
        self.assertEqual(denied.code, "forbidden")

    def test_get_messages_pages_by_ordering_key(self):
        service = self._service()
        self._post(service, 'g1', 'u1', 7)

        newest = self._rpc(service, "GetMessages", {"userId": "u2", "groupId": "g1"})
        self.assertEqual([m["seq"] for m in newest["messages"]], [3, 4, 5, 6, 7])

        older = self._rpc(service, "GetMessages", {"userId": "u2", "groupId": "g1", "before": 3})
        self.assertEqual([m["seq"] for m in older["messages"]], [1, 2])
        self.assertLess(older["count"], 5)

    def test_get_messages_rejects_non_member(self):
        service = self._service()
        resp = self._rpc(service, "GetMessages", {"userId": "u1", "groupId": "g2"})
        self.assertFalse(resp["success"])
        self.assertEqual(resp["code"], "forbidden")

        resp = self._rpc(service, "GetMessages", {"userId": "u1", "groupId": "nope"})
        self.assertEqual(resp["code"], "not_found")

    def test_get_messages_rejects_bad_cursor(self):
        service = self._service()
        resp = self._rpc(service, "GetMessages", {"userId": "u1", "groupId": "g1", "before": "yesterday"})
        self.assertEqual(resp["code"], "validation")

    def test_unread_count_and_rest_read_marking(self):
        service = self._service()
        self._post(service, 'g1', 'u1', 3)
        ids = [m.message_id for m in service.messages.query_by_group('g1')]

        resp = self._rpc(service, "GetUnreadCount", {"userId": "u2"})
        self.assertEqual(resp["count"], 3)
        # Own messages are never unread for their author
        resp = self._rpc(service, "GetUnreadCount", {"userId": "u1", "groupId": "g1"})
        self.assertEqual(resp["count"], 0)

        resp = self._rpc(service, "MarkMessagesRead", {"userId": "u2", "messageIds": ids[:2]})
        self.assertEqual(resp["count"], 2)
        resp = self._rpc(service, "GetUnreadCount", {"userId": "u2", "groupId": "g1"})
        self.assertEqual(resp["count"], 1)

    def test_notification_rpcs(self):
        service = self._service()

        # u1 sends so u2 gets a NEW_MESSAGE notification
        async def send():
            session = await service.open_session('u1')
            await service.dispatch(session, ChatEnvelope("message:send", {"groupId": "g1", "content": "hi"}, "a1"))
        asyncio.run(send())

        listed = self._rpc(service, "ListNotifications", {"userId": "u2"})
        self.assertEqual(len(listed["notifications"]), 1)
        notification = listed["notifications"][0]
        self.assertEqual(notification["type"], "NEW_MESSAGE")
        self.assertEqual(notification["metadata"]["groupId"], "g1")

        count = self._rpc(service, "GetNotificationUnreadCount", {"userId": "u2"})
        self.assertEqual(count["count"], 1)

        resp = self._rpc(service, "MarkNotificationRead", {"userId": "u1", "notificationId": notification["id"]})
        self.assertEqual(resp["code"], "not_found")
        resp = self._rpc(service, "MarkNotificationRead", {"userId": "u2", "notificationId": notification["id"]})
        self.assertTrue(resp["success"])
        count = self._rpc(service, "GetNotificationUnreadCount", {"userId": "u2"})
        self.assertEqual(count["count"], 0)

        resp = self._rpc(service, "DeleteNotification", {"userId": "u2", "notificationId": notification["id"]})
        self.assertTrue(resp["success"])
        listed = self._rpc(service, "ListNotifications", {"userId": "u2"})
        self.assertEqual(listed["notifications"], [])


if __name__ == '__main__':
    unittest.main()
