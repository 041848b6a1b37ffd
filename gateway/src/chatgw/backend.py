"""Authenticated facade over the document store, accounts and live queries."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from .accounts import Account, AccountStore, SessionStore
from .documents import AppendToSet, DocumentStore, _now_ms
from .hub import Callback, Subscription, SubscriptionHub

logger = logging.getLogger(__name__)

USERS = "users"
MESSAGES = "messages"


def check_write(actor: Account, collection: str, doc_id: str | None, fields: Dict[str, Any], *, op: str) -> None:
    """Raise ``PermissionError`` when ``actor`` may not apply the write.

    Profiles are writable only by their owner. Messages are append-only:
    the author must be the actor on create, and the only patch allowed is a
    set-union on ``read_by``.
    """

    if collection == USERS:
        if doc_id != actor.account_id:
            raise PermissionError("profiles are writable only by their owner")
        return
    if collection == MESSAGES:
        if op == "create":
            if fields.get("author_id") != actor.account_id:
                raise PermissionError("author_id must match the signed-in account")
            return
        if op == "patch":
            if set(fields) != {"read_by"} or not isinstance(fields["read_by"], AppendToSet):
                raise PermissionError("messages only accept read_by set-union patches")
            return
        raise PermissionError("messages are append-only")


class Backend:
    """Everything a client can reach: auth, records and live queries."""

    def __init__(
        self,
        *,
        now_func: Callable[[], int] = _now_ms,
        accounts: AccountStore | None = None,
    ) -> None:
        self.store = DocumentStore(now_func=now_func)
        self.hub = SubscriptionHub()
        self.accounts = accounts or AccountStore()
        self.sessions = SessionStore(now_func=now_func)

    def get(self, actor: Account, collection: str, doc_id: str) -> Dict[str, Any] | None:
        """Any signed-in account may read any record; only writes are checked."""

        return self.store.get(collection, doc_id)

    def put(self, actor: Account, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        check_write(actor, collection, doc_id, fields, op="put")
        self.store.put(collection, doc_id, fields)
        self.hub.broadcast(collection, self.store)

    def patch(self, actor: Account, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        check_write(actor, collection, doc_id, fields, op="patch")
        self.store.patch(collection, doc_id, fields)
        self.hub.broadcast(collection, self.store)

    def create(self, actor: Account, collection: str, fields: Dict[str, Any]) -> str:
        check_write(actor, collection, None, fields, op="create")
        doc_id = self.store.create(collection, fields)
        logger.debug("created %s/%s by %s", collection, doc_id, actor.account_id)
        self.hub.broadcast(collection, self.store)
        return doc_id

    def subscribe(self, actor: Account, collection: str, order_by: str, callback: Callback) -> Subscription:
        return self.hub.subscribe(actor.account_id, collection, order_by, callback, store=self.store)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)
