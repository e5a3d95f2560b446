"""server.py — HTTP API and push channel for the gateway.

Routes (all JSON):
    GET  /              liveness text
    GET  /status        {status, info, qr}
    POST /send-message  {phone?, chat_id?, message}
    POST /reset-session
    POST /config        {rejectCall?, markRead?}
    POST /chat-state    {phone, state}
    GET  /ws            push channel (websocket)

Every route is also mounted under settings.base_path (default /wa-api),
for deployments behind a reverse proxy that forwards a sub-path without
stripping it.

Push channel frames, server → client:
    {"event": "status",   "data": {"status": ..., "info": ...}, "id": N}
    {"event": "qr",       "data": "data:image/png;base64,...",  "id": N}
    {"event": "contacts", "data": [ContactEntry, ...],          "id": N}
client → server:
    {"event": "get_contacts"}
"""

from __future__ import annotations

import asyncio
import json

import logfire
from aiohttp import WSMsgType, web

from .errors import BadRequest, DriverFailure, GatewayError
from .gateway import Gateway


GATEWAY = web.AppKey("gateway", Gateway)

LIVENESS_TEXT = "WhatsApp API Server is running"


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


# -- Middleware ---------------------------------------------------------------


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Allow any origin; answer preflights directly.

    Routing errors (404, 405) are raised as exceptions, so they get the
    headers on the way out too.
    """
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise

    if not response.prepared:
        response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map errors nobody handled to JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except GatewayError as e:
        return web.json_response({"error": e.message}, status=e.status)
    except Exception as e:
        logfire.error("Unhandled error in {path}: {error}", path=request.path, error=str(e))
        return web.json_response({"error": str(e)}, status=500)


async def read_json(request: web.Request) -> dict:
    """Request body as a dict. No body means {}."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequest("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body


# -- Handlers -----------------------------------------------------------------


async def index(request: web.Request) -> web.Response:
    return web.Response(text=LIVENESS_TEXT)


async def status(request: web.Request) -> web.Response:
    return web.json_response(request.app[GATEWAY].commands.get_status())


async def send_message(request: web.Request) -> web.Response:
    body = await read_json(request)
    commands = request.app[GATEWAY].commands
    try:
        response = await commands.send_message(
            body.get("message"),
            phone=body.get("phone"),
            chat_id=body.get("chat_id"),
        )
    except DriverFailure as e:
        return web.json_response({"error": e.message, "details": e.details}, status=500)
    return web.json_response({"success": True, "response": response}, dumps=_dumps)


async def reset_session(request: web.Request) -> web.Response:
    try:
        await request.app[GATEWAY].commands.reset_session()
    except DriverFailure as e:
        return web.json_response({"success": False, "error": e.details}, status=500)
    return web.json_response({"success": True})


async def update_config(request: web.Request) -> web.Response:
    body = await read_json(request)
    config = request.app[GATEWAY].commands.update_config(
        reject_calls=body.get("rejectCall"),
        mark_read=body.get("markRead"),
    )
    return web.json_response({"success": True, "config": config})


async def chat_state(request: web.Request) -> web.Response:
    body = await read_json(request)
    try:
        await request.app[GATEWAY].commands.set_chat_state(body.get("phone"), body.get("state"))
    except DriverFailure as e:
        return web.json_response({"error": e.details or e.message}, status=500)
    return web.json_response({"success": True})


async def push_channel(request: web.Request) -> web.WebSocketResponse:
    """One observer. Snapshot first, then live events until either side leaves."""
    broadcaster = request.app[GATEWAY].broadcaster

    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    logfire.info("New client connected")

    queue = broadcaster.subscribe()
    pump = asyncio.create_task(_pump(ws, queue))
    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            try:
                frame = msg.json()
            except ValueError:
                logfire.debug("Ignoring non-JSON push channel frame")
                continue
            if isinstance(frame, dict) and frame.get("event") == "get_contacts":
                await broadcaster.request_contacts(queue)
    finally:
        broadcaster.unsubscribe(queue)
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass
        logfire.info("Client disconnected")
    return ws


async def _pump(ws: web.WebSocketResponse, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        if event is None:
            await ws.close()
            return
        await ws.send_json(
            {"event": event["type"], "data": event["data"], "id": event["id"]}
        )


def _dumps(obj) -> str:
    # Driver acks can carry values json doesn't know; stringify them.
    return json.dumps(obj, default=str)


# -- App ----------------------------------------------------------------------


ROUTES = [
    ("GET", "/", index),
    ("GET", "/status", status),
    ("POST", "/send-message", send_message),
    ("POST", "/reset-session", reset_session),
    ("POST", "/config", update_config),
    ("POST", "/chat-state", chat_state),
    ("GET", "/ws", push_channel),
]


def create_app(gateway: Gateway, manage_gateway: bool = True) -> web.Application:
    """Build the aiohttp application around a gateway.

    Args:
        gateway: The gateway to serve.
        manage_gateway: Start the gateway on app startup and stop it on
            cleanup. Tests that drive the gateway themselves pass False.
    """
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[GATEWAY] = gateway

    base_path = gateway.settings.base_path
    for method, path, handler in ROUTES:
        app.router.add_route(method, path, handler)
        if base_path:
            app.router.add_route(method, base_path + path, handler)
    if base_path:
        app.router.add_route("GET", base_path, index)

    if manage_gateway:
        app.on_startup.append(_start_gateway)
        app.on_cleanup.append(_stop_gateway)
    return app


async def _start_gateway(app: web.Application) -> None:
    await app[GATEWAY].start()


async def _stop_gateway(app: web.Application) -> None:
    await app[GATEWAY].stop()
