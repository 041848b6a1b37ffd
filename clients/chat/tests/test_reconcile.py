import asyncio
import itertools
import unittest

from chat_app.models import Account, Message, Profile, order_snapshot
from chat_app.notify import NotificationBackend, NotificationCenter
from chat_app.reconcile import (
    Reconciler,
    SessionContext,
    detect_arrival,
    profile_ids_to_fetch,
    read_status_label,
    receipt_targets,
    resolve_display_name,
    should_notify,
)
from chat_app.service import AppendToSet, ChatService, ServiceError

ME = Account("me", "me@example.com")


def msg(message_id, author_id, created_at=None, *, text="hi", nickname=None, read_by=None):
    return Message(
        message_id=message_id,
        text=text,
        author_id=author_id,
        author_email=f"{author_id}@example.com",
        author_nickname=nickname,
        created_at=created_at,
        read_by=frozenset(read_by if read_by is not None else {author_id}),
    )


class FakeService(ChatService):
    def __init__(self, profiles=None, *, failing_profiles=(), failing_patches=()):
        self.profiles = dict(profiles or {})
        self.failing_profiles = set(failing_profiles)
        self.failing_patches = set(failing_patches)
        self.fetches = []
        self.patches = []

    async def get_record(self, collection, doc_id):
        self.fetches.append((collection, doc_id))
        await asyncio.sleep(0)
        if doc_id in self.failing_profiles:
            raise ServiceError("unavailable")
        return self.profiles.get(doc_id)

    async def patch_record(self, collection, doc_id, fields):
        if doc_id in self.failing_patches:
            raise ServiceError("write rejected")
        self.patches.append((collection, doc_id, fields))


class RecordingBackend(NotificationBackend):
    def __init__(self):
        self.shown = []
        self.closed = []

    def show(self, notification):
        self.shown.append(notification)

    def close(self, notification):
        self.closed.append(notification)


def test_order_snapshot_is_stable_by_created_at():
    a = msg("a", "x", 20)
    b = msg("b", "x", 10)
    c = msg("c", "x", 20)
    pending = msg("p", "x", None)

    ordered = order_snapshot([pending, a, b, c])

    assert [m.message_id for m in ordered] == ["b", "a", "c", "p"]


def test_detect_arrival_uses_size_delta_only():
    snapshot = [msg("a", "x", 1), msg("b", "y", 2)]

    assert detect_arrival(snapshot, 0) is None
    assert detect_arrival(snapshot, 2) is None
    assert detect_arrival(snapshot, 1).message_id == "b"


def test_with_read_by_replaces_only_the_reader_set():
    original = msg("1", "bob", 7, text="hello", nickname="Bob")

    updated = original.with_read_by(["bob", "me"])

    assert updated.read_by == frozenset({"bob", "me"})
    assert updated.text == "hello" and updated.author_nickname == "Bob" and updated.created_at == 7
    assert original.read_by == frozenset({"bob"})


def test_read_status_labels():
    assert read_status_label(msg("m", "A", read_by={"A"})) == "unread"
    assert read_status_label(msg("m", "A", read_by={"A", "B"})) == "read"
    assert read_status_label(msg("m", "A", read_by={"A", "B", "C"})) == "read ×2"


def test_display_name_precedence():
    profiles = {"bob": Profile(uid="bob", email="bob@example.com", nickname="Bobby")}

    assert resolve_display_name(msg("m", "me"), "me", profiles) is None
    assert resolve_display_name(msg("m", "bob", nickname="B-snap"), "me", profiles) == "B-snap"
    assert resolve_display_name(msg("m", "bob"), "me", profiles) == "Bobby"
    assert resolve_display_name(msg("m", "carol"), "me", profiles) == "carol@example.com"


def test_notification_truth_table():
    fired = []
    for has_new, other_author, unfocused, granted in itertools.product([True, False], repeat=4):
        arrived = msg("m", "bob" if other_author else "me") if has_new else None
        if should_notify(arrived, "me", not unfocused, granted):
            fired.append((has_new, other_author, unfocused, granted))

    assert fired == [(True, True, True, True)]


def test_profile_ids_skip_self_cached_and_duplicates():
    snapshot = [msg("1", "bob"), msg("2", "me"), msg("3", "carol"), msg("4", "bob"), msg("5", "dave")]
    cached = {"carol": Profile("carol", "carol@example.com", "C")}

    assert profile_ids_to_fetch(snapshot, "me", cached) == ["bob", "dave"]


def test_receipt_targets_only_unread_messages_from_others():
    snapshot = [msg("1", "bob"), msg("2", "me"), msg("3", "bob", read_by={"bob", "me"})]

    assert [m.message_id for m in receipt_targets(snapshot, "me")] == ["1"]


class TestReconciler(unittest.IsolatedAsyncioTestCase):
    def _reconciler(self, service, *, focused=True, permission="granted"):
        self.backend = RecordingBackend()
        self.center = NotificationCenter(self.backend, permission=permission, dismiss_after_s=60)
        self.context = SessionContext(account=ME, focused=focused)
        return Reconciler(service, self.context, self.center)

    async def test_first_snapshot_is_not_an_arrival(self):
        reconciler = self._reconciler(FakeService(), focused=False)

        result = await reconciler.apply([msg("1", "bob", 1)])

        self.assertIsNone(result.arrived)
        self.assertIsNone(result.notification)
        self.assertEqual(self.context.last_count, 1)

    async def test_growth_notifies_when_unfocused(self):
        service = FakeService({"bob": {"uid": "bob", "email": "bob@example.com", "nickname": "Bobby"}})
        reconciler = self._reconciler(service, focused=False)
        await reconciler.apply([msg("1", "bob", 1)])

        result = await reconciler.apply([msg("1", "bob", 1), msg("2", "bob", 2, text="ping")])

        self.assertEqual(result.arrived.message_id, "2")
        self.assertEqual(len(self.backend.shown), 1)
        self.assertEqual(self.backend.shown[0].title, "Bobby")
        self.assertEqual(self.backend.shown[0].body, "ping")
        result.notification.dismiss()

    async def test_own_message_or_focus_suppresses_notification(self):
        reconciler = self._reconciler(FakeService(), focused=True)
        await reconciler.apply([msg("1", "bob", 1)])
        await reconciler.apply([msg("1", "bob", 1), msg("2", "bob", 2)])
        self.context.focused = False
        await reconciler.apply([msg("1", "bob", 1), msg("2", "bob", 2), msg("3", "me", 3)])

        self.assertEqual(self.backend.shown, [])

    async def test_profiles_fetched_once_and_failures_isolated(self):
        service = FakeService(
            {"bob": {"uid": "bob", "email": "bob@example.com", "nickname": "Bobby"}},
            failing_profiles={"carol"},
        )
        reconciler = self._reconciler(service)
        snapshot = [msg("1", "bob", 1), msg("2", "carol", 2), msg("3", "bob", 3), msg("4", "me", 4)]

        first = await reconciler.apply(snapshot)
        second = await reconciler.apply(snapshot)

        self.assertEqual(sorted(first.fetched), ["bob"])
        self.assertEqual(second.fetched, {})
        self.assertEqual(service.fetches.count(("users", "bob")), 1)
        self.assertEqual(service.fetches.count(("users", "carol")), 2)
        self.assertNotIn(("users", "me"), service.fetches)
        self.assertEqual(reconciler.display_name(snapshot[1]), "carol@example.com")
        self.assertEqual(reconciler.display_name(snapshot[0]), "Bobby")

    async def test_cached_profile_is_not_overwritten(self):
        service = FakeService({"bob": {"uid": "bob", "email": "bob@example.com", "nickname": "New"}})
        reconciler = self._reconciler(service)
        self.context.profiles["bob"] = Profile("bob", "bob@example.com", "Old")

        await reconciler.apply([msg("1", "bob", 1)])

        self.assertEqual(self.context.profiles["bob"].nickname, "Old")
        self.assertEqual(service.fetches, [])

    async def test_receipts_written_when_focused(self):
        service = FakeService(failing_patches={"2"})
        reconciler = self._reconciler(service)

        result = await reconciler.apply([msg("1", "bob", 1), msg("2", "bob", 2), msg("3", "bob", 3), msg("4", "me", 4)])

        self.assertEqual(result.receipts, ["1", "3"])
        self.assertEqual(service.patches[0], ("messages", "1", {"read_by": AppendToSet.of("me")}))
        self.assertEqual(self.context.last_count, 4)

    async def test_receipts_deferred_until_flush(self):
        service = FakeService()
        reconciler = self._reconciler(service, focused=False)

        result = await reconciler.apply([msg("1", "bob", 1)])

        self.assertTrue(result.receipts_deferred)
        self.assertEqual(service.patches, [])
        self.context.focused = True
        self.assertEqual(await reconciler.flush_receipts(), ["1"])

    async def test_written_receipt_is_not_repeated_for_stale_snapshot(self):
        service = FakeService()
        reconciler = self._reconciler(service)
        snapshot = [msg("1", "bob", 1)]

        await reconciler.apply(snapshot)
        result = await reconciler.apply(snapshot)

        self.assertEqual(result.receipts, [])
        self.assertEqual(len(service.patches), 1)
        self.assertEqual(await reconciler.flush_receipts(), [])

    async def test_read_by_never_shrinks(self):
        reconciler = self._reconciler(FakeService())
        await reconciler.apply([msg("1", "me", 1, read_by={"me", "bob"})])

        result = await reconciler.apply([msg("1", "me", 1, read_by={"me"})])

        self.assertEqual(result.messages[0].read_by, frozenset({"me", "bob"}))

    async def test_snapshot_is_presented_in_created_at_order(self):
        reconciler = self._reconciler(FakeService())

        result = await reconciler.apply([msg("b", "me", 2), msg("a", "me", 1)])

        self.assertEqual([m.message_id for m in result.messages], ["a", "b"])


if __name__ == "__main__":
    unittest.main()
