"""Reconciles each live snapshot of the message log with session state.

One pass per snapshot: detect a newly arrived tail message, fetch missing
author profiles, write read receipts (or defer them while the window is
inactive), decide on a desktop notification, then retain the new state.
Passes are driven one at a time by ``ChatSession``; nothing here locks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .models import MESSAGES, USERS, Account, Message, Profile, order_snapshot
from .notify import Notification, NotificationCenter
from .service import AppendToSet, ChatService, ServiceError

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """Everything a pass reads and writes; rebuilt from the stream on demand."""

    account: Account
    profile: Optional[Profile] = None
    focused: bool = True
    profiles: Dict[str, Profile] = field(default_factory=dict)
    last_count: int = 0
    messages: List[Message] = field(default_factory=list)
    # Message ids whose read receipt was written during this session.
    acknowledged: Set[str] = field(default_factory=set)

    @property
    def own_id(self) -> str:
        return self.account.account_id


@dataclass
class ReconcileResult:
    messages: List[Message]
    arrived: Optional[Message] = None
    fetched: Dict[str, Profile] = field(default_factory=dict)
    receipts: List[str] = field(default_factory=list)
    receipts_deferred: bool = False
    notification: Optional[Notification] = None


def detect_arrival(snapshot: Sequence[Message], last_count: int) -> Optional[Message]:
    """Return the tail message when the log grew since a non-empty observation.

    This compares sizes only and assumes the log is append-only between
    snapshots; a reorder or an edit that keeps the size is not detected.
    """

    if last_count > 0 and len(snapshot) > last_count:
        return snapshot[-1]
    return None


def should_notify(arrived: Optional[Message], own_id: str, focused: bool, permission_granted: bool) -> bool:
    return arrived is not None and arrived.author_id != own_id and not focused and permission_granted


def profile_ids_to_fetch(snapshot: Iterable[Message], own_id: str, profiles: Mapping[str, Profile]) -> List[str]:
    wanted: List[str] = []
    for message in snapshot:
        uid = message.author_id
        if uid == own_id or uid in profiles or uid in wanted:
            continue
        wanted.append(uid)
    return wanted


def resolve_display_name(message: Message, own_id: str, profiles: Mapping[str, Profile]) -> Optional[str]:
    """Own messages are unlabeled; otherwise message nickname, profile nickname, email."""

    if message.author_id == own_id:
        return None
    if message.author_nickname:
        return message.author_nickname
    profile = profiles.get(message.author_id)
    if profile is not None and profile.nickname:
        return profile.nickname
    return message.author_email


def receipt_targets(messages: Iterable[Message], own_id: str) -> List[Message]:
    return [m for m in messages if m.author_id != own_id and own_id not in m.read_by]


def read_status_label(message: Message) -> str:
    readers = len(message.read_by - {message.author_id})
    if readers == 0:
        return "unread"
    if readers == 1:
        return "read"
    return f"read ×{readers}"


def _keep_read_by_growing(snapshot: List[Message], previous: Iterable[Message]) -> List[Message]:
    seen = {m.message_id: m.read_by for m in previous}
    merged: List[Message] = []
    for message in snapshot:
        prior = seen.get(message.message_id)
        if prior and not prior <= message.read_by:
            message = message.with_read_by(message.read_by | prior)
        merged.append(message)
    return merged


class Reconciler:
    def __init__(
        self,
        service: ChatService,
        context: SessionContext,
        notifications: NotificationCenter | None = None,
    ) -> None:
        self.service = service
        self.context = context
        self.notifications = notifications

    def display_name(self, message: Message) -> Optional[str]:
        return resolve_display_name(message, self.context.own_id, self.context.profiles)

    async def apply(self, snapshot: Iterable[Message]) -> ReconcileResult:
        ctx = self.context
        messages = _keep_read_by_growing(order_snapshot(snapshot), ctx.messages)
        result = ReconcileResult(messages=messages)

        result.arrived = detect_arrival(messages, ctx.last_count)

        result.fetched = await self._fetch_profiles(profile_ids_to_fetch(messages, ctx.own_id, ctx.profiles))
        for uid, profile in result.fetched.items():
            ctx.profiles.setdefault(uid, profile)

        if ctx.focused:
            result.receipts = await self._write_receipts(self._pending_receipts(messages))
        else:
            result.receipts_deferred = bool(self._pending_receipts(messages))

        granted = self.notifications is not None and self.notifications.granted
        if should_notify(result.arrived, ctx.own_id, ctx.focused, granted):
            arrived = result.arrived
            result.notification = self.notifications.show(
                self.display_name(arrived) or arrived.author_email,
                arrived.text,
                tag=arrived.message_id,
            )

        ctx.last_count = len(messages)
        ctx.messages = messages
        return result

    async def flush_receipts(self) -> List[str]:
        """Write receipts that were held back while the window was inactive."""

        return await self._write_receipts(self._pending_receipts(self.context.messages))

    def _pending_receipts(self, messages: Iterable[Message]) -> List[Message]:
        acknowledged = self.context.acknowledged
        return [m for m in receipt_targets(messages, self.context.own_id) if m.message_id not in acknowledged]

    async def _fetch_profiles(self, uids: List[str]) -> Dict[str, Profile]:
        if not uids:
            return {}
        results = await asyncio.gather(
            *(self.service.get_record(USERS, uid) for uid in uids),
            return_exceptions=True,
        )
        fetched: Dict[str, Profile] = {}
        for uid, outcome in zip(uids, results):
            if isinstance(outcome, BaseException):
                logger.warning("profile fetch failed for %s: %s", uid, outcome)
            elif outcome is None:
                logger.debug("no profile stored for %s", uid)
            else:
                fetched[uid] = Profile.from_record(outcome)
        return fetched

    async def _write_receipts(self, targets: List[Message]) -> List[str]:
        own_id = self.context.own_id
        written: List[str] = []
        for message in targets:
            try:
                await self.service.patch_record(MESSAGES, message.message_id, {"read_by": AppendToSet.of(own_id)})
            except ServiceError as exc:
                logger.warning("read receipt failed for %s: %s", message.message_id, exc)
                continue
            self.context.acknowledged.add(message.message_id)
            written.append(message.message_id)
        return written
