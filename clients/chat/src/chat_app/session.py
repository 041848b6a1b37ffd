"""Chat session: auth, profile setup, the live message feed and sending.

Auth changes, snapshots, subscription failures and focus changes are turned
into events on one queue and handled by one worker task, so reconciliation
passes never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .config import ClientConfig
from .focus import FocusTracker
from .models import MESSAGES, ORDER_KEY, USERS, Account, Message, Profile
from .notify import Notification, NotificationCenter
from .reconcile import ReconcileResult, Reconciler, SessionContext
from .service import ChatService, LiveQuery, ServiceError
from .transcript import TranscriptRow, render_rows

logger = logging.getLogger(__name__)

Alert = Callable[[str], None]


@dataclass(frozen=True)
class AuthChanged:
    account: Optional[Account]


@dataclass(frozen=True)
class ProfileReady:
    account_id: str
    profile: Profile


@dataclass(frozen=True)
class SnapshotArrived:
    generation: int
    records: List[Dict[str, Any]]


@dataclass(frozen=True)
class SubscriptionFailed:
    generation: int
    error: Exception


@dataclass(frozen=True)
class Resubscribe:
    generation: int


@dataclass(frozen=True)
class FocusChanged:
    active: bool


def _log_alert(message: str) -> None:
    logger.error("alert: %s", message)


class ChatSession:
    def __init__(
        self,
        service: ChatService,
        *,
        config: ClientConfig | None = None,
        focus: FocusTracker | None = None,
        notifications: NotificationCenter | None = None,
        alert: Alert | None = None,
    ) -> None:
        self.service = service
        self.config = config or ClientConfig()
        self.focus = focus or FocusTracker()
        self.notifications = notifications or NotificationCenter(dismiss_after_s=self.config.notification_dismiss_s)
        self.alert = alert or _log_alert

        self.account: Optional[Account] = None
        self.profile: Optional[Profile] = None
        self.needs_profile_setup = False
        self.context: Optional[SessionContext] = None
        self.reconciler: Optional[Reconciler] = None
        self.last_result: Optional[ReconcileResult] = None
        self.subscription_error: Optional[Exception] = None
        self.draft = ""

        self._sending = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._live: Optional[LiveQuery] = None
        self._generation = 0
        self._resubscribe_attempts = 0
        self._retry_task: Optional[asyncio.Task] = None
        self._detach: List[Callable[[], None]] = []

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def messages(self) -> List[Message]:
        return list(self.context.messages) if self.context else []

    @property
    def sending(self) -> bool:
        return self._sending

    @property
    def subscribed(self) -> bool:
        return self._live is not None

    def rows(self) -> List[TranscriptRow]:
        return render_rows(self.context) if self.context else []

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run())
        self.notifications.on_activate = self._on_notification_activated
        self._detach.append(self.focus.add_listener(self._on_focus_change))
        self._detach.append(self.service.on_auth_change(self._on_auth_change))

    async def close(self) -> None:
        for detach in self._detach:
            detach()
        self._detach.clear()
        self._teardown_subscription()
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    async def drain(self) -> None:
        """Wait until every queued event, including follow-ups, is handled."""

        await self._queue.join()

    async def sign_in_or_up(self, email: str, password: str) -> Optional[Account]:
        """Sign in, or create the account when sign-in is refused."""

        if not email or not password:
            return None
        try:
            return await self.service.sign_in(email, password)
        except ServiceError as exc:
            logger.info("sign-in failed (%s), trying sign-up", exc)
        try:
            return await self.service.sign_up(email, password)
        except ServiceError as exc:
            logger.error("sign-up failed: %s", exc)
            self.alert("Login or account creation failed")
            return None

    async def sign_out(self) -> None:
        try:
            await self.service.sign_out()
        except ServiceError as exc:
            logger.warning("sign-out failed: %s", exc)
        self.draft = ""

    async def save_nickname(self, nickname: str) -> bool:
        account = self.account
        nickname = nickname.strip()
        if not nickname or account is None:
            return False
        profile = Profile(uid=account.account_id, email=account.email, nickname=nickname)
        try:
            await self.service.put_record(USERS, account.account_id, profile.to_fields())
        except ServiceError as exc:
            logger.error("saving nickname failed: %s", exc)
            self.alert("Failed to save nickname")
            return False
        self._queue.put_nowait(ProfileReady(account_id=account.account_id, profile=profile))
        return True

    async def change_nickname(self, nickname: str) -> bool:
        nickname = nickname.strip()
        if not nickname or (self.profile is not None and nickname == self.profile.nickname):
            return False
        return await self.save_nickname(nickname)

    async def send_message(self, text: str | None = None) -> bool:
        """Send ``text`` (or the current draft); at most one send in flight.

        A call made while another send is pending sends nothing but keeps
        its text as the draft. The draft is cleared only after the write
        succeeds, and only if it still holds the text that was sent.
        """

        if text is not None:
            self.draft = text
        if self._sending:
            return False
        sent_draft = self.draft
        body = sent_draft.strip()
        account, profile = self.account, self.profile
        if not body or account is None or profile is None:
            return False

        outgoing = Message(
            message_id="",
            text=body,
            author_id=account.account_id,
            author_email=account.email,
            author_nickname=profile.nickname,
            read_by=frozenset({account.account_id}),
        )
        self._sending = True
        try:
            await self.service.create_record(MESSAGES, outgoing.to_fields())
        except ServiceError as exc:
            logger.error("sending message failed: %s", exc)
            self.alert("Failed to send message")
            return False
        finally:
            self._sending = False
        if self.draft == sent_draft:
            self.draft = ""
        return True

    def _on_auth_change(self, account: Optional[Account]) -> None:
        self._queue.put_nowait(AuthChanged(account))

    def _on_focus_change(self, active: bool) -> None:
        self._queue.put_nowait(FocusChanged(active))

    def _on_notification_activated(self, _: Notification) -> None:
        self.focus.focus_gained()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("handling %s failed", type(event).__name__)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: object) -> None:
        if isinstance(event, SnapshotArrived):
            await self._handle_snapshot(event)
        elif isinstance(event, FocusChanged):
            await self._handle_focus(event.active)
        elif isinstance(event, AuthChanged):
            await self._handle_auth(event.account)
        elif isinstance(event, ProfileReady):
            if self.account is not None and self.account.account_id == event.account_id:
                self.needs_profile_setup = False
                self._set_profile(event.profile)
        elif isinstance(event, SubscriptionFailed):
            self._handle_subscription_failure(event)
        elif isinstance(event, Resubscribe):
            if event.generation == self._generation and self._live is None:
                logger.info("re-establishing message subscription")
                self._ensure_subscription()

    async def _handle_auth(self, account: Optional[Account]) -> None:
        if account is None:
            if self.account is not None:
                logger.info("signed out")
            self._teardown_subscription()
            self.account = None
            self.profile = None
            self.needs_profile_setup = False
            self.context = None
            self.reconciler = None
            self.last_result = None
            return
        if self.account == account and self.profile is not None:
            return

        self._teardown_subscription()
        self.account = account
        self.profile = None
        self.needs_profile_setup = False
        self.context = SessionContext(account=account, focused=self.focus.active)
        self.reconciler = Reconciler(self.service, self.context, self.notifications)
        logger.info("signed in as %s", account.email)

        try:
            record = await self.service.get_record(USERS, account.account_id)
        except ServiceError as exc:
            logger.warning("profile load failed for %s: %s", account.account_id, exc)
            return
        if record is None:
            logger.info("no profile for %s, nickname setup required", account.account_id)
            self.needs_profile_setup = True
            return
        self._set_profile(Profile.from_record(record))

    def _set_profile(self, profile: Profile) -> None:
        self.profile = profile
        if self.context is not None:
            self.context.profile = profile
        self._ensure_subscription()

    def _ensure_subscription(self) -> None:
        if self.account is None or self.profile is None or self._live is not None:
            return
        self._generation += 1
        generation = self._generation

        def on_snapshot(records: List[Dict[str, Any]]) -> None:
            self._queue.put_nowait(SnapshotArrived(generation, records))

        def on_error(error: Exception) -> None:
            self._queue.put_nowait(SubscriptionFailed(generation, error))

        self._live = self.service.subscribe(MESSAGES, ORDER_KEY, on_snapshot, on_error)
        logger.debug("message subscription %d established", generation)

    def _teardown_subscription(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        self._resubscribe_attempts = 0
        if self._live is not None:
            self._live.unsubscribe()
            self._live = None
        # Events still queued from the old subscription are discarded.
        self._generation += 1

    async def _handle_snapshot(self, event: SnapshotArrived) -> None:
        if event.generation != self._generation or self.reconciler is None:
            return
        snapshot = [Message.from_record(record) for record in event.records]
        self.last_result = await self.reconciler.apply(snapshot)
        self.subscription_error = None
        self._resubscribe_attempts = 0

    async def _handle_focus(self, active: bool) -> None:
        if self.context is None:
            return
        self.context.focused = active
        if active and self.reconciler is not None:
            written = await self.reconciler.flush_receipts()
            if written:
                logger.debug("flushed %d deferred read receipts", len(written))

    def _handle_subscription_failure(self, event: SubscriptionFailed) -> None:
        if event.generation != self._generation:
            return
        logger.warning("message subscription failed: %s", event.error)
        self.subscription_error = event.error
        if self._live is not None:
            self._live.unsubscribe()
            self._live = None
        attempt = self._resubscribe_attempts
        if attempt >= self.config.max_resubscribe_attempts:
            return
        self._resubscribe_attempts += 1
        delay = self.config.resubscribe_delay(attempt)
        generation = self._generation
        self._retry_task = asyncio.create_task(self._resubscribe_later(delay, generation))

    async def _resubscribe_later(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        self._queue.put_nowait(Resubscribe(generation))
