"""aiohttp adapter for a remote chat gateway."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import aiohttp
from aiohttp import WSMsgType

from chatgw.documents import encode_fields

from .config import ClientConfig
from .models import Account
from .service import (
    AuthCallback,
    AuthError,
    ChatService,
    ErrorCallback,
    LiveQuery,
    ServiceError,
    SnapshotCallback,
    _AuthListeners,
)

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _error_message(status: int, payload: Dict[str, Any]) -> str:
    code = payload.get("code", "error")
    message = payload.get("message", "")
    return f"{status} {code}: {message}"


class _RemoteLiveQuery(LiveQuery):
    def __init__(self, service: "GatewayService", sub_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback):
        self.sub_id = sub_id
        self.active = True
        self._service = service
        self._on_snapshot = on_snapshot
        self._on_error = on_error

    def deliver(self, records: list) -> None:
        if self.active:
            self._on_snapshot(records)

    def fail(self, error: Exception) -> None:
        if not self.active:
            return
        self.active = False
        self._on_error(error)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._service._forget(self)


class GatewayService(ChatService):
    """Talks to ``chatgw`` over HTTP for records and one WebSocket for live queries."""

    def __init__(self, base_url: str, *, http: aiohttp.ClientSession | None = None) -> None:
        self.base_url = base_url
        self._http = http
        self._owns_http = http is None
        self._token: Optional[str] = None
        self._account: Optional[Account] = None
        self._listeners = _AuthListeners()
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._ws_lock = asyncio.Lock()
        self._queries: Dict[str, _RemoteLiveQuery] = {}
        self._tasks: set[asyncio.Task] = set()
        self._sub_ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: ClientConfig) -> "GatewayService":
        return cls(config.gateway_url)

    async def __aenter__(self) -> "GatewayService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._close_ws()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        payload: Dict[str, Any] | None = None,
        *,
        authenticated: bool = True,
    ) -> Tuple[int, Dict[str, Any]]:
        headers: Dict[str, str] = {}
        if authenticated:
            if self._token is None:
                raise ServiceError("not signed in")
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            async with self._client().request(
                method, _build_url(self.base_url, path), json=payload, headers=headers
            ) as response:
                raw = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ServiceError(f"{method} {path} failed: {exc}") from exc
        try:
            body = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            body = {"code": "invalid_response", "message": raw[:200]}
        if not isinstance(body, dict):
            body = {}
        return status, body

    async def sign_in(self, email: str, password: str) -> Account:
        return await self._start("/v1/auth/sign_in", email, password)

    async def sign_up(self, email: str, password: str) -> Account:
        return await self._start("/v1/auth/sign_up", email, password)

    async def _start(self, path: str, email: str, password: str) -> Account:
        status, body = await self._request(
            "POST", path, {"email": email, "password": password}, authenticated=False
        )
        if status in (400, 401):
            raise AuthError(_error_message(status, body))
        if status != 200:
            raise ServiceError(_error_message(status, body))
        await self._close_ws()
        self._token = str(body["session_token"])
        self._account = Account(account_id=str(body["account_id"]), email=str(body["email"]))
        self._listeners.notify(self._account)
        return self._account

    async def sign_out(self) -> None:
        try:
            if self._token is not None:
                status, body = await self._request("POST", "/v1/auth/sign_out", {})
                if status not in (200, 401):
                    logger.warning("sign-out rejected: %s", _error_message(status, body))
        finally:
            await self._close_ws()
            self._token = None
            self._account = None
            self._listeners.notify(None)

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        return self._listeners.add(callback, self._account)

    async def get_record(self, collection: str, doc_id: str) -> Dict[str, Any] | None:
        status, body = await self._request("GET", f"/v1/records/{collection}/{doc_id}")
        if status == 404:
            return None
        if status != 200:
            raise ServiceError(_error_message(status, body))
        return body

    async def put_record(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await self._write("PUT", f"/v1/records/{collection}/{doc_id}", fields)

    async def patch_record(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await self._write("PATCH", f"/v1/records/{collection}/{doc_id}", fields)

    async def create_record(self, collection: str, fields: Dict[str, Any]) -> str:
        body = await self._write("POST", f"/v1/records/{collection}", fields)
        return str(body["id"])

    async def _write(self, method: str, path: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        status, body = await self._request(method, path, encode_fields(fields))
        if status not in (200, 201):
            raise ServiceError(_error_message(status, body))
        return body

    def subscribe(
        self,
        collection: str,
        order_by: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> LiveQuery:
        query = _RemoteLiveQuery(self, f"q{next(self._sub_ids)}", on_snapshot, on_error)
        self._queries[query.sub_id] = query
        frame = {
            "v": 1,
            "t": "query.subscribe",
            "id": query.sub_id,
            "body": {"sub_id": query.sub_id, "collection": collection, "order_by": order_by},
        }
        self._spawn(self._open_query(query, frame))
        return query

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _forget(self, query: _RemoteLiveQuery) -> None:
        self._queries.pop(query.sub_id, None)
        if self._ws is not None and not self._ws.closed:
            frame = {"v": 1, "t": "query.unsubscribe", "body": {"sub_id": query.sub_id}}
            self._spawn(self._send_quietly(frame))

    async def _send_quietly(self, frame: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            return
        try:
            await ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionError) as exc:
            logger.debug("dropping frame %s: %s", frame.get("t"), exc)

    async def _open_query(self, query: _RemoteLiveQuery, frame: Dict[str, Any]) -> None:
        try:
            ws = await self._ensure_ws()
            if query.active:
                await ws.send_json(frame)
        except (ServiceError, aiohttp.ClientError, ConnectionError, asyncio.TimeoutError) as exc:
            self._queries.pop(query.sub_id, None)
            query.fail(exc if isinstance(exc, ServiceError) else ServiceError(str(exc)))

    async def _ensure_ws(self) -> aiohttp.ClientWebSocketResponse:
        async with self._ws_lock:
            if self._ws is not None and not self._ws.closed:
                return self._ws
            if self._token is None:
                raise ServiceError("not signed in")
            ws = await self._client().ws_connect(_build_url(self.base_url, "/v1/ws"))
            try:
                await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {"session_token": self._token}})
                ready = await ws.receive_json()
            except (TypeError, ValueError) as exc:
                # A close frame or non-JSON text arrived instead of session.ready.
                await ws.close()
                raise ServiceError(f"live query handshake failed: {exc}") from exc
            except (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError):
                await ws.close()
                raise
            if not isinstance(ready, dict) or ready.get("t") != "session.ready":
                await ws.close()
                body = ready.get("body") if isinstance(ready, dict) else None
                message = body.get("message") if isinstance(body, dict) else None
                raise ServiceError(f"live query session refused: {message or 'handshake failed'}")
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws))
            return ws

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    continue
                try:
                    frame = msg.json()
                except ValueError:
                    logger.warning("ignoring malformed frame from gateway")
                    continue
                frame_type = frame.get("t")
                body = frame.get("body") or {}
                if frame_type == "query.snapshot":
                    query = self._queries.get(body.get("sub_id"))
                    if query is not None:
                        query.deliver(list(body.get("records") or []))
                elif frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong"})
                elif frame_type == "error":
                    query = self._queries.pop(frame.get("id"), None)
                    error = ServiceError(f"{body.get('code', 'error')}: {body.get('message', '')}")
                    if query is not None:
                        query.fail(error)
                    else:
                        logger.warning("gateway error frame: %s", error)
        except (aiohttp.ClientError, ConnectionError) as exc:
            logger.warning("live query connection failed: %s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
                self._fail_all(ServiceError("live query connection closed"))

    def _fail_all(self, error: Exception) -> None:
        queries = list(self._queries.values())
        self._queries.clear()
        for query in queries:
            query.fail(error)

    async def _close_ws(self) -> None:
        ws, reader = self._ws, self._reader
        self._ws = None
        self._reader = None
        for query in list(self._queries.values()):
            query.active = False
        self._queries.clear()
        if ws is not None:
            await ws.close()
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
