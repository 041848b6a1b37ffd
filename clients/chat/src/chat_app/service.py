"""Client boundary to the hosted chat service.

``ChatService`` is the narrow interface the session talks to. ``LocalService``
drives an in-process ``chatgw.Backend``; ``GatewayService`` (in
``gateway_service``) speaks to a remote gateway over HTTP and WebSocket.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from chatgw import AuthError as BackendAuthError
from chatgw import Backend
from chatgw.accounts import Account as BackendAccount
from chatgw.documents import SERVER_TIMESTAMP, AppendToSet

from .models import Account


__all__ = [
    "AppendToSet",
    "AuthError",
    "ChatService",
    "LiveQuery",
    "LocalService",
    "SERVER_TIMESTAMP",
    "ServiceError",
]

Records = List[Dict[str, Any]]
SnapshotCallback = Callable[[Records], None]
ErrorCallback = Callable[[Exception], None]
AuthCallback = Callable[[Optional[Account]], None]


class ServiceError(Exception):
    pass


class AuthError(ServiceError):
    pass


class LiveQuery:
    """Handle for one live query; ``unsubscribe`` stops all further emissions."""

    def unsubscribe(self) -> None:
        raise NotImplementedError


class ChatService:
    async def sign_in(self, email: str, password: str) -> Account:
        raise NotImplementedError

    async def sign_up(self, email: str, password: str) -> Account:
        raise NotImplementedError

    async def sign_out(self) -> None:
        raise NotImplementedError

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        """Register ``callback``; it is called at once with the current account."""

        raise NotImplementedError

    async def get_record(self, collection: str, doc_id: str) -> Dict[str, Any] | None:
        raise NotImplementedError

    async def put_record(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def patch_record(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def create_record(self, collection: str, fields: Dict[str, Any]) -> str:
        raise NotImplementedError

    def subscribe(
        self,
        collection: str,
        order_by: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> LiveQuery:
        raise NotImplementedError


class _AuthListeners:
    def __init__(self) -> None:
        self._callbacks: List[AuthCallback] = []

    def add(self, callback: AuthCallback, current: Optional[Account]) -> Callable[[], None]:
        self._callbacks.append(callback)
        callback(current)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def notify(self, account: Optional[Account]) -> None:
        for callback in list(self._callbacks):
            callback(account)


class _LocalLiveQuery(LiveQuery):
    def __init__(self, backend: Backend, subscription) -> None:
        self._backend = backend
        self._subscription = subscription

    def unsubscribe(self) -> None:
        if self._subscription is not None:
            self._backend.unsubscribe(self._subscription)
            self._subscription = None


class _InertLiveQuery(LiveQuery):
    def unsubscribe(self) -> None:
        return None


class LocalService(ChatService):
    """Runs the chat against an in-process backend."""

    def __init__(self, backend: Backend | None = None) -> None:
        self.backend = backend or Backend()
        self._actor: BackendAccount | None = None
        self._listeners = _AuthListeners()

    @property
    def current_account(self) -> Optional[Account]:
        if self._actor is None:
            return None
        return Account(account_id=self._actor.account_id, email=self._actor.email)

    async def sign_in(self, email: str, password: str) -> Account:
        return await self._start(email, password, create=False)

    async def sign_up(self, email: str, password: str) -> Account:
        return await self._start(email, password, create=True)

    async def _start(self, email: str, password: str, *, create: bool) -> Account:
        try:
            if create:
                actor = await self.backend.accounts.sign_up_async(email, password)
            else:
                actor = await self.backend.accounts.sign_in_async(email, password)
        except BackendAuthError as exc:
            raise AuthError(str(exc)) from exc
        self._actor = actor
        account = self.current_account
        self._listeners.notify(account)
        return account

    async def sign_out(self) -> None:
        self._actor = None
        self._listeners.notify(None)

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        return self._listeners.add(callback, self.current_account)

    def _require_actor(self) -> BackendAccount:
        if self._actor is None:
            raise ServiceError("not signed in")
        return self._actor

    async def get_record(self, collection: str, doc_id: str) -> Dict[str, Any] | None:
        return self.backend.get(self._require_actor(), collection, doc_id)

    async def put_record(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        actor = self._require_actor()
        self._guarded(lambda: self.backend.put(actor, collection, doc_id, fields))

    async def patch_record(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        actor = self._require_actor()
        self._guarded(lambda: self.backend.patch(actor, collection, doc_id, fields))

    async def create_record(self, collection: str, fields: Dict[str, Any]) -> str:
        actor = self._require_actor()
        return self._guarded(lambda: self.backend.create(actor, collection, fields))

    def subscribe(
        self,
        collection: str,
        order_by: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> LiveQuery:
        if self._actor is None:
            on_error(ServiceError("not signed in"))
            return _InertLiveQuery()
        subscription = self.backend.subscribe(self._actor, collection, order_by, on_snapshot)
        return _LocalLiveQuery(self.backend, subscription)

    @staticmethod
    def _guarded(operation: Callable[[], Any]) -> Any:
        try:
            return operation()
        except PermissionError as exc:
            raise ServiceError(f"permission denied: {exc}") from exc
        except KeyError as exc:
            raise ServiceError(f"record not found: {exc}") from exc
        except ValueError as exc:
            raise ServiceError(str(exc)) from exc
