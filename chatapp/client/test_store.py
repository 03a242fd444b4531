import unittest
from chatapp.client.store import ClientStateStore, DeliveryState, LocalMessage
from chatapp.proto.chat_wire import MessageStatus


def _wire(seq, sender="bob", group="g1", token=None, status="SENT"):
    return {"id": f"{group}-{seq}", "groupId": group, "senderId": sender, "senderName": sender,
            "content": f"m{seq}", "seq": seq, "createdAt": seq, "status": status, "clientToken": token}


class TestClientStateStore(unittest.TestCase):
    def setUp(self):
        self.store = ClientStateStore("alice", notification_cap=3)

    def test_pending_message_is_replaced_by_confirmation(self):
        pending = self.store.add_pending("g1", "hi", "T1")
        self.assertEqual(pending.state, DeliveryState.PENDING)
        self.assertIsNone(pending.id)
        self.store.upsert_message(LocalMessage.from_wire(_wire(1, sender="bob")))

        inserted = self.store.upsert_message(LocalMessage.from_wire(_wire(2, sender="alice", token="T1")))
        self.assertTrue(inserted)
        messages = self.store.group_messages("g1")
        self.assertEqual([m.seq for m in messages], [1, 2])
        self.assertTrue(all(m.confirmed for m in messages))
        # A second copy of the confirmation changes nothing
        self.assertFalse(self.store.upsert_message(LocalMessage.from_wire(_wire(2, sender="alice", token="T1"))))
        self.assertEqual(len(self.store.group_messages("g1")), 2)

    def test_pending_sorts_after_confirmed(self):
        self.store.add_pending("g1", "draft", "T9")
        for s in (3, 1, 2):
            self.store.upsert_message(LocalMessage.from_wire(_wire(s)))
        self.assertEqual([m.seq for m in self.store.group_messages("g1")], [1, 2, 3, None])

    def test_failed_and_resend_states(self):
        self.store.add_pending("g1", "hi", "T1")
        self.assertEqual(self.store.mark_failed("T1").state, DeliveryState.FAILED)
        self.assertEqual(self.store.mark_pending("T1").state, DeliveryState.PENDING)
        self.store.discard_pending("T1")
        self.assertIsNone(self.store.find_by_token("T1"))

    def test_status_is_monotonic(self):
        self.store.upsert_message(LocalMessage.from_wire(_wire(1)))
        self.assertEqual(self.store.apply_status(["g1-1"], MessageStatus.READ), ["g1-1"])
        self.assertEqual(self.store.apply_status(["g1-1"], MessageStatus.DELIVERED), [])
        self.assertEqual(self.store.find_message("g1-1").status, MessageStatus.READ)

    def test_status_for_unknown_message_is_buffered(self):
        self.store.apply_status(["g1-1"], MessageStatus.READ)
        self.store.apply_status(["g1-1"], MessageStatus.DELIVERED)
        self.store.upsert_message(LocalMessage.from_wire(_wire(1)))
        self.assertEqual(self.store.find_message("g1-1").status, MessageStatus.READ)

    def test_unread_counts_each_message_once(self):
        self.assertTrue(self.store.count_unread("g2", "m1"))
        self.assertFalse(self.store.count_unread("g2", "m1"))
        self.store.count_unread("g2", "m2")
        self.assertEqual(self.store.unread_count("g2"), 2)
        self.store.clear_unread("g2")
        self.assertEqual(self.store.unread_count("g2"), 0)

    def test_unread_inbound_excludes_own_and_read(self):
        for data in (_wire(1), _wire(2, sender="alice"), _wire(3, status="READ")):
            self.store.upsert_message(LocalMessage.from_wire(data))
        self.assertEqual(self.store.unread_inbound("g1"), ["g1-1"])

    def test_missing_seqs(self):
        for s in (2, 3, 6):
            self.store.upsert_message(LocalMessage.from_wire(_wire(s)))
        self.assertEqual(self.store.missing_seqs("g1"), [4, 5])
        self.assertEqual(self.store.last_seq("g1"), 6)
        self.assertEqual(self.store.oldest_seq("g1"), 2)
        self.assertEqual(self.store.last_seq("empty"), 0)

    def test_typing_set(self):
        self.store.set_typing("g1", "bob")
        self.store.set_typing("g2", "carol")
        self.assertEqual(self.store.typing_users("g1"), ["bob"])
        self.assertTrue(self.store.clear_typing("g1", "bob"))
        self.assertFalse(self.store.clear_typing("g1", "bob"))

    def test_notifications_are_capped_and_deduplicated(self):
        for i in range(4):
            self.assertTrue(self.store.add_notification({"id": f"n{i}", "isRead": False}))
        self.assertFalse(self.store.add_notification({"id": "n3", "isRead": False}))
        self.assertEqual([n["id"] for n in self.store.notifications], ["n3", "n2", "n1"])
        self.assertEqual(self.store.notification_unread, 4)

        self.assertTrue(self.store.mark_notification_read("n3"))
        self.assertFalse(self.store.mark_notification_read("n3"))
        self.assertEqual(self.store.notification_unread, 3)
        self.store.mark_all_notifications_read()
        self.assertEqual(self.store.notification_unread, 0)
        self.store.remove_notification("n2")
        self.assertEqual([n["id"] for n in self.store.notifications], ["n3", "n1"])

    def test_set_groups_seeds_unread(self):
        self.store.set_groups([{"id": "g1", "unreadCount": 2}, {"id": "g2"}])
        self.assertEqual(self.store.group_ids(), ["g1", "g2"])
        self.assertEqual(self.store.unread_count("g1"), 2)
        self.assertEqual(self.store.unread_count("g2"), 0)

    def test_head_tracks_announced_and_loaded_seqs(self):
        self.store.set_groups([{"id": "g1", "lastSeq": 4}, {"id": "g2"}])
        self.assertEqual(self.store.head_seq("g1"), 4)
        self.assertEqual(self.store.last_seq("g1"), 0)
        self.store.upsert_message(LocalMessage.from_wire(_wire(6)))
        self.assertEqual(self.store.head_seq("g1"), 6)
        self.store.note_head("g1", 5)
        self.assertEqual(self.store.head_seq("g1"), 6)
        self.assertEqual(self.store.head_seq("g2"), 0)

    def test_set_unread_overrides_counter(self):
        self.store.count_unread("g1", "m1")
        self.store.set_unread("g1", 5)
        self.assertEqual(self.store.unread_count("g1"), 5)
        # Already counted IDs stay counted
        self.assertFalse(self.store.count_unread("g1", "m1"))
        self.store.set_unread("g1", -1)
        self.assertEqual(self.store.unread_count("g1"), 0)

    def test_online_members(self):
        seen = []
        self.store.subscribe(lambda kind, group_id: seen.append((kind, group_id)))
        self.assertTrue(self.store.set_online("g1", "bob", True))
        self.assertFalse(self.store.set_online("g1", "bob", True))
        self.store.set_online("g1", "carol", True)
        self.assertEqual(self.store.online_members("g1"), ["bob", "carol"])
        self.assertTrue(self.store.set_online("g1", "bob", False))
        self.assertFalse(self.store.set_online("g2", "bob", False))
        self.store.clear_online()
        self.assertEqual(self.store.online_members("g1"), [])
        self.assertEqual(seen, [("online", "g1")] * 4)

    def test_listeners_see_changes(self):
        seen = []
        self.store.subscribe(lambda kind, group_id: seen.append((kind, group_id)))
        self.store.upsert_message(LocalMessage.from_wire(_wire(1)))
        self.store.set_typing("g1", "bob")
        self.assertEqual(seen, [("messages", "g1"), ("typing", "g1")])


if __name__ == '__main__':
    unittest.main()
