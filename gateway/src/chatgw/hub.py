from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from .documents import DocumentStore


Snapshot = List[Dict[str, Any]]
Callback = Callable[[Snapshot], None]


@dataclass(eq=False)
class Subscription:
    account_id: str
    collection: str
    order_by: str
    callback: Callback

    def deliver(self, snapshot: Snapshot) -> None:
        self.callback(snapshot)


class SubscriptionHub:
    """Registers live queries and pushes full ordered snapshots to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        account_id: str,
        collection: str,
        order_by: str,
        callback: Callback,
        store: DocumentStore | None = None,
    ) -> Subscription:
        """Register a live query; ``store`` triggers the initial snapshot."""

        subscription = Subscription(
            account_id=account_id,
            collection=collection,
            order_by=order_by,
            callback=callback,
        )
        self._subscriptions.setdefault(collection, []).append(subscription)
        if store is not None:
            subscription.deliver(store.query(collection, order_by))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.collection)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.collection, None)

    def broadcast(self, collection: str, store: DocumentStore) -> None:
        for subscription in list(self._subscriptions.get(collection, [])):
            # query() returns fresh copies, so subscribers never share records.
            subscription.deliver(store.query(collection, subscription.order_by))

    def count(self, collection: str) -> int:
        return len(self._subscriptions.get(collection, []))
