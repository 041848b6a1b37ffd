import asyncio
import unittest
from types import SimpleNamespace

from passlib.context import CryptContext

from chatgw import AccountStore, Backend

from chat_app.config import ClientConfig
from chat_app.focus import FocusTracker
from chat_app.notify import NotificationBackend, NotificationCenter
from chat_app.service import LocalService, ServiceError
from chat_app.session import ChatSession


class RecordingBackend(NotificationBackend):
    def __init__(self):
        self.shown = []

    def show(self, notification):
        self.shown.append(notification)

    def close(self, notification):
        pass


class CountingService(LocalService):
    def __init__(self, backend):
        super().__init__(backend)
        self.patches = 0
        self.subscriptions = 0
        self.error_callbacks = []

    async def patch_record(self, collection, doc_id, fields):
        self.patches += 1
        await super().patch_record(collection, doc_id, fields)

    def subscribe(self, collection, order_by, on_snapshot, on_error):
        self.subscriptions += 1
        self.error_callbacks.append(on_error)
        return super().subscribe(collection, order_by, on_snapshot, on_error)


class BlockingSendService(LocalService):
    def __init__(self, backend):
        super().__init__(backend)
        self.release = asyncio.Event()

    async def create_record(self, collection, fields):
        await self.release.wait()
        return await super().create_record(collection, fields)


class FailingSendService(LocalService):
    async def create_record(self, collection, fields):
        raise ServiceError("offline")


class BrokenProfileService(LocalService):
    async def get_record(self, collection, doc_id):
        raise ServiceError("profile store unavailable")


class ChatSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = Backend(accounts=AccountStore(context=CryptContext(schemes=["bcrypt"], bcrypt__rounds=4)))
        self.sessions = []

    async def asyncTearDown(self):
        for session in self.sessions:
            await session.close()

    async def _open(self, email, *, service_cls=CountingService, focused=True, config=None):
        service = service_cls(self.backend)
        alerts = []
        notifier = RecordingBackend()
        session = ChatSession(
            service,
            config=config,
            focus=FocusTracker(active=focused),
            notifications=NotificationCenter(notifier, permission="granted", dismiss_after_s=60),
            alert=alerts.append,
        )
        self.sessions.append(session)
        await session.start()
        return SimpleNamespace(session=session, service=service, alerts=alerts, notifier=notifier)

    async def _join(self, email, nickname, **kwargs):
        peer = await self._open(email, **kwargs)
        await peer.session.sign_in_or_up(email, "secret1")
        await peer.session.drain()
        await peer.session.save_nickname(nickname)
        await peer.session.drain()
        return peer

    async def _settle(self, *peers):
        for _ in range(4):
            for peer in peers:
                await peer.session.drain()

    async def test_new_account_needs_profile_setup_before_subscribing(self):
        peer = await self._open("alice@example.com")

        account = await peer.session.sign_in_or_up("alice@example.com", "secret1")
        await peer.session.drain()

        self.assertEqual(account.email, "alice@example.com")
        self.assertTrue(peer.session.needs_profile_setup)
        self.assertFalse(peer.session.subscribed)

        self.assertTrue(await peer.session.save_nickname("  Alice  "))
        await peer.session.drain()

        self.assertFalse(peer.session.needs_profile_setup)
        self.assertEqual(peer.session.profile.nickname, "Alice")
        self.assertTrue(peer.session.subscribed)
        stored = self.backend.store.get("users", account.account_id)
        self.assertEqual(stored["nickname"], "Alice")
        self.assertIsInstance(stored["created_at"], int)

    async def test_context_manager_detaches_listeners(self):
        focus = FocusTracker()
        async with ChatSession(LocalService(self.backend), focus=focus) as session:
            await session.drain()
            self.assertIsNone(session.account)

        focus.focus_lost()
        self.assertEqual(session._queue.qsize(), 0)

    async def test_existing_profile_subscribes_on_sign_in(self):
        await self._join("alice@example.com", "Alice")
        again = await self._open("alice@example.com")

        await again.session.sign_in_or_up("alice@example.com", "secret1")
        await again.session.drain()

        self.assertEqual(again.session.profile.nickname, "Alice")
        self.assertTrue(again.session.subscribed)

    async def test_auth_failure_alerts_and_stays_signed_out(self):
        peer = await self._open("x@example.com")

        result = await peer.session.sign_in_or_up("x@example.com", "123")
        await peer.session.drain()

        self.assertIsNone(result)
        self.assertEqual(peer.alerts, ["Login or account creation failed"])
        self.assertIsNone(peer.session.account)

    async def test_profile_load_failure_does_not_subscribe(self):
        peer = await self._open("alice@example.com", service_cls=BrokenProfileService)

        await peer.session.sign_in_or_up("alice@example.com", "secret1")
        await peer.session.drain()

        self.assertIsNotNone(peer.session.account)
        self.assertIsNone(peer.session.profile)
        self.assertFalse(peer.session.needs_profile_setup)
        self.assertFalse(peer.session.subscribed)

    async def test_send_marks_self_read_and_peer_receipt_updates_label(self):
        alice = await self._join("alice@example.com", "Alice")
        bob = await self._join("bob@example.com", "Bob")

        self.assertTrue(await alice.session.send_message("  hello  "))

        records = self.backend.store.query("messages", "created_at")
        self.assertEqual(records[0]["text"], "hello")
        self.assertEqual(records[0]["read_by"], [alice.session.account.account_id])
        self.assertEqual(records[0]["author_nickname"], "Alice")
        self.assertEqual(alice.session.draft, "")

        await self._settle(alice, bob)

        bob_rows = bob.session.rows()
        self.assertEqual([(r.name, r.text, r.own) for r in bob_rows], [("Alice", "hello", False)])
        alice_rows = alice.session.rows()
        self.assertEqual([(r.name, r.status) for r in alice_rows], [(None, "read")])
        self.assertEqual(bob.service.patches, 1)

    async def test_send_rejects_blank_text_and_missing_profile(self):
        peer = await self._open("alice@example.com")
        self.assertFalse(await peer.session.send_message("hi"))

        await peer.session.sign_in_or_up("alice@example.com", "secret1")
        await peer.session.drain()
        self.assertFalse(await peer.session.send_message("hi"))

        await peer.session.save_nickname("Alice")
        await peer.session.drain()
        self.assertFalse(await peer.session.send_message("   "))
        self.assertEqual(self.backend.store.query("messages", "created_at"), [])

    async def test_second_send_while_pending_keeps_its_text(self):
        peer = await self._join("alice@example.com", "Alice", service_cls=BlockingSendService)

        first = asyncio.create_task(peer.session.send_message("one"))
        await asyncio.sleep(0)
        self.assertTrue(peer.session.sending)
        self.assertFalse(await peer.session.send_message("two"))
        self.assertEqual(peer.session.draft, "two")
        peer.service.release.set()

        self.assertTrue(await first)
        self.assertFalse(peer.session.sending)
        texts = [r["text"] for r in self.backend.store.query("messages", "created_at")]
        self.assertEqual(texts, ["one"])
        self.assertEqual(peer.session.draft, "two")

        self.assertTrue(await peer.session.send_message())
        self.assertEqual(peer.session.draft, "")
        texts = [r["text"] for r in self.backend.store.query("messages", "created_at")]
        self.assertEqual(texts, ["one", "two"])

    async def test_send_failure_preserves_draft(self):
        peer = await self._join("alice@example.com", "Alice", service_cls=FailingSendService)

        self.assertFalse(await peer.session.send_message("keep me"))

        self.assertEqual(peer.session.draft, "keep me")
        self.assertEqual(peer.alerts, ["Failed to send message"])
        self.assertFalse(peer.session.sending)

    async def test_receipts_deferred_while_unfocused_flush_once_on_refocus(self):
        alice = await self._join("alice@example.com", "Alice")
        bob = await self._join("bob@example.com", "Bob")
        flushes = []
        original_flush = bob.session.reconciler.flush_receipts

        async def counting_flush():
            written = await original_flush()
            flushes.append(written)
            return written

        bob.session.reconciler.flush_receipts = counting_flush

        bob.session.focus.focus_lost()
        await alice.session.send_message("one")
        await alice.session.send_message("two")
        await self._settle(alice, bob)

        self.assertEqual(bob.service.patches, 0)
        self.assertTrue(bob.session.last_result.receipts_deferred)

        bob.session.focus.focus_gained()
        bob.session.focus.focus_gained()
        await self._settle(alice, bob)

        self.assertEqual(len(flushes), 1)
        self.assertEqual(len(flushes[0]), 2)
        self.assertEqual(bob.service.patches, 2)
        self.assertEqual([r.status for r in alice.session.rows()], ["read", "read"])

    async def test_notification_for_new_message_while_unfocused(self):
        alice = await self._join("alice@example.com", "Alice")
        await alice.session.send_message("first")
        bob = await self._join("bob@example.com", "Bob", focused=False)
        await self._settle(alice, bob)

        await alice.session.send_message("second")
        await self._settle(alice, bob)

        self.assertEqual([(n.title, n.body) for n in bob.notifier.shown], [("Alice", "second")])
        self.assertEqual(alice.notifier.shown, [])

        bob.notifier.shown[0].activate()
        await self._settle(alice, bob)
        self.assertTrue(bob.session.focus.active)
        self.assertEqual([r.status for r in alice.session.rows()], ["read", "read"])

    async def test_change_nickname(self):
        peer = await self._join("alice@example.com", "Alice")

        self.assertFalse(await peer.session.change_nickname("Alice"))
        self.assertFalse(await peer.session.change_nickname("   "))
        self.assertTrue(await peer.session.change_nickname("Ally"))
        await peer.session.drain()

        self.assertEqual(peer.session.profile.nickname, "Ally")
        await peer.session.send_message("hi")
        record = self.backend.store.query("messages", "created_at")[0]
        self.assertEqual(record["author_nickname"], "Ally")

    async def test_sign_out_tears_down_subscription(self):
        alice = await self._join("alice@example.com", "Alice")
        bob = await self._join("bob@example.com", "Bob")
        await alice.session.send_message("hello")
        await self._settle(alice, bob)

        await alice.session.sign_out()
        await alice.session.drain()

        self.assertIsNone(alice.session.account)
        self.assertFalse(alice.session.subscribed)
        self.assertEqual(alice.session.messages, [])
        self.assertEqual(self.backend.hub.count("messages"), 1)

        await bob.session.send_message("anyone?")
        await self._settle(alice, bob)
        self.assertEqual(alice.session.messages, [])

    async def test_subscription_error_keeps_last_snapshot(self):
        alice = await self._join("alice@example.com", "Alice")
        await alice.session.send_message("hello")
        await alice.session.drain()

        alice.service.error_callbacks[-1](ServiceError("stream broke"))
        await alice.session.drain()

        self.assertFalse(alice.session.subscribed)
        self.assertIsInstance(alice.session.subscription_error, ServiceError)
        self.assertEqual([m.text for m in alice.session.messages], ["hello"])
        self.assertEqual(alice.service.subscriptions, 1)

    async def test_subscription_error_resubscribes_when_configured(self):
        config = ClientConfig(max_resubscribe_attempts=1, resubscribe_base_delay_s=0)
        alice = await self._join("alice@example.com", "Alice", config=config)

        alice.service.error_callbacks[-1](ServiceError("stream broke"))
        await alice.session.drain()
        await asyncio.sleep(0.01)
        await alice.session.drain()

        self.assertEqual(alice.service.subscriptions, 2)
        self.assertTrue(alice.session.subscribed)
        self.assertIsNone(alice.session.subscription_error)


if __name__ == "__main__":
    unittest.main()
