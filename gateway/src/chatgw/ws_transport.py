from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Union

from aiohttp import WSMsgType, web

from .accounts import AuthError, Session
from .backend import Backend
from .documents import decode_fields
from .hub import Subscription

logger = logging.getLogger(__name__)

RUNTIME_KEY = web.AppKey("runtime", Backend)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _forbidden(message: str) -> web.Response:
    return _error("forbidden", message, 403)


def _not_found() -> web.Response:
    return _error("not_found", "record not found", 404)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get(session_token)


async def _read_json_object(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    return body


def _session_body(session: Session) -> Dict[str, Any]:
    return {
        "account_id": session.account.account_id,
        "email": session.account.email,
        "session_token": session.session_token,
        "expires_at": session.expires_at_ms,
    }


async def _handle_credentials(request: web.Request, *, create: bool) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json_object(request)
    if body is None:
        return _invalid_request("malformed json")
    email = body.get("email")
    password = body.get("password")
    if not isinstance(email, str) or not isinstance(password, str):
        return _invalid_request("email and password required")
    try:
        if create:
            account = await runtime.accounts.sign_up_async(email, password)
        else:
            account = await runtime.accounts.sign_in_async(email, password)
    except AuthError as exc:
        return _error("auth_failed", str(exc), 401)
    session = runtime.sessions.create(account)
    logger.info("session started for %s", account.account_id)
    return _with_no_store(web.json_response(_session_body(session)))


async def handle_sign_up(request: web.Request) -> web.Response:
    return await _handle_credentials(request, create=True)


async def handle_sign_in(request: web.Request) -> web.Response:
    return await _handle_credentials(request, create=False)


async def handle_sign_out(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    runtime.sessions.invalidate(session)
    return web.json_response({"status": "ok"})


async def handle_record_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    record = runtime.get(session.account, request.match_info["collection"], request.match_info["doc_id"])
    if record is None:
        return _not_found()
    return _with_no_store(web.json_response(record))


async def _handle_record_write(request: web.Request, *, op: str) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _read_json_object(request)
    if body is None:
        return _invalid_request("malformed json")
    fields = decode_fields(body)
    collection = request.match_info["collection"]
    try:
        if op == "create":
            doc_id = runtime.create(session.account, collection, fields)
            return web.json_response({"id": doc_id}, status=201)
        doc_id = request.match_info["doc_id"]
        if op == "put":
            runtime.put(session.account, collection, doc_id, fields)
        else:
            runtime.patch(session.account, collection, doc_id, fields)
    except PermissionError as exc:
        return _forbidden(str(exc))
    except KeyError:
        return _not_found()
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response({"status": "ok"})


async def handle_record_put(request: web.Request) -> web.Response:
    return await _handle_record_write(request, op="put")


async def handle_record_patch(request: web.Request) -> web.Response:
    return await _handle_record_write(request, op="patch")


async def handle_record_create(request: web.Request) -> web.Response:
    return await _handle_record_write(request, op="create")


def create_app(
    *,
    ping_interval_s: float = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    backend: Backend | None = None,
) -> web.Application:
    app = web.Application()
    app[RUNTIME_KEY] = backend or Backend()
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/auth/sign_up", handle_sign_up)
    app.router.add_post("/v1/auth/sign_in", handle_sign_in)
    app.router.add_post("/v1/auth/sign_out", handle_sign_out)
    app.router.add_post("/v1/records/{collection}", handle_record_create)
    app.router.add_get("/v1/records/{collection}/{doc_id}", handle_record_get)
    app.router.add_put("/v1/records/{collection}/{doc_id}", handle_record_put)
    app.router.add_patch("/v1/records/{collection}/{doc_id}", handle_record_patch)
    app.router.add_get("/v1/ws", websocket_handler)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, Subscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def snapshot_sender(sub_id: str):
        def _send(records: list) -> None:
            enqueue_frame({"v": 1, "t": "query.snapshot", "body": {"sub_id": sub_id, "records": records}})

        return _send

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if payload.get("v") != 1 or payload.get("t") != "session.start":
            await ws.send_json(_error_frame("invalid_request", "first frame must start session", request_id=payload.get("id")))
            await ws.close()
            return ws

        session_token = (payload.get("body") or {}).get("session_token")
        session = runtime.sessions.get(session_token) if isinstance(session_token, str) else None
        if session is None:
            await ws.send_json(_error_frame("unauthorized", "invalid session_token", request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        await ws.send_json(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {"account_id": session.account.account_id},
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "query.subscribe":
                    sub_id = body.get("sub_id")
                    collection = body.get("collection")
                    order_by = body.get("order_by")
                    if not sub_id or not collection or not order_by:
                        await ws.send_json(
                            _error_frame(
                                "invalid_request",
                                "sub_id, collection, order_by required",
                                request_id=frame.get("id"),
                            )
                        )
                        continue
                    if sub_id in subscriptions:
                        await ws.send_json(_error_frame("invalid_request", "duplicate sub_id", request_id=frame.get("id")))
                        continue
                    subscriptions[sub_id] = runtime.subscribe(
                        session.account, collection, order_by, snapshot_sender(sub_id)
                    )
                elif frame_type == "query.unsubscribe":
                    subscription = subscriptions.pop(body.get("sub_id"), None)
                    if subscription is not None:
                        runtime.unsubscribe(subscription)
                else:
                    await ws.send_json(
                        _error_frame("invalid_request", "unknown frame type", request_id=frame.get("id"))
                    )
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            runtime.unsubscribe(subscription)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
