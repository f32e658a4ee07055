"""
sessions.py — one Streamable HTTP transport per MCP session.

The multiplexer sits behind the bearer gate at /mcp. An ``initialize``
request without a session header mints a session id, builds a transport and
a fresh MCP server for it, and starts the server loop in the multiplexer's
task group. Every other request is routed to the transport named by the
``mcp-session-id`` header.

Session states: absent → active → closed. A session closes on DELETE, when
its server loop ends (transport closed, connection dropped), when the
transport refuses the initialize that created it, or at shutdown.

Content negotiation is decided here, not in the transport. Each session picks
a response mode when it is created: event streams when the client accepts
them and the multiplexer is not in JSON mode, plain JSON otherwise. Requests
reach the transport with an Accept header rewritten to what that mode needs.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

import anyio
import anyio.abc
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.types import JSONRPCMessage
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

logger = logging.getLogger("unifi-sessions")

EVENT_STREAM = "text/event-stream"
JSON = "application/json"

# Accept header each response mode needs from the transport's point of view
_TRANSPORT_ACCEPT = {
    True: JSON,
    False: f"{JSON}, {EVENT_STREAM}",
}


@dataclass
class McpSession:
    session_id: str
    transport: Any
    user: str
    created_at: float
    json_response: bool = False
    cancel_scope: anyio.CancelScope | None = None


def _media_ranges(request: Request) -> list[str]:
    """Media ranges named in the Accept header, minus those refused with ``q=0``."""
    ranges = []
    for part in request.headers.get("accept", "").split(","):
        media, *params = [p.strip().lower() for p in part.split(";")]
        if not media:
            continue
        try:
            refused = any(float(p.split("=", 1)[1]) == 0
                          for p in params if p.replace(" ", "").startswith("q="))
        except ValueError:
            refused = False
        if not refused:
            ranges.append(media)
    return ranges


def _accepts(ranges: list[str]) -> tuple[bool, bool]:
    """(accepts JSON, accepts event stream); ``*/*``, ``application/*`` and ``text/*`` count."""
    json_ok = any(m in ("*/*", "application/*", JSON) for m in ranges)
    stream_ok = any(m in ("*/*", "text/*", EVENT_STREAM) for m in ranges)
    return json_ok, stream_ok


def _is_json_body(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() == JSON


def _initialize_message(message: Any) -> Any:
    """The initialize request in ``message``, alone or as a one-item batch."""
    if isinstance(message, list):
        if len(message) == 1:
            return _initialize_message(message[0])
        return None
    if isinstance(message, dict) and message.get("method") == "initialize":
        return message
    return None


def _has_initialize(message: Any) -> bool:
    if isinstance(message, list):
        return any(_has_initialize(m) for m in message)
    return isinstance(message, dict) and message.get("method") == "initialize"


def _expects_reply(message: Any) -> bool:
    """True when ``message`` holds a request; notifications and responses get a bare 202."""
    if isinstance(message, list):
        return any(_expects_reply(m) for m in message)
    return isinstance(message, dict) and "method" in message and "id" in message


def _with_accept(scope: Scope, accept: str) -> Scope:
    headers = [(k, v) for k, v in scope["headers"] if k.lower() != b"accept"]
    headers.append((b"accept", accept.encode("latin-1")))
    return {**scope, "headers": headers}


def _replay(body: bytes, receive: Receive) -> Receive:
    """A receive callable that yields the already-read body once."""
    replayed = False

    async def replay_receive() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive


def _error(status: int, message: str, code: int = -32000,
           headers: dict[str, str] | None = None) -> Response:
    return JSONResponse(
        {"jsonrpc": "2.0", "id": None, "error": {"code": code, "message": message}},
        status_code=status,
        headers=headers,
    )


class SessionMultiplexer:
    """ASGI app for the MCP endpoint; owns the session table."""

    def __init__(
        self,
        server_factory: Callable[[], Any],
        *,
        json_response: bool = False,
        transport_factory: Callable[[str, bool], Any] | None = None,
    ):
        self._server_factory = server_factory
        self.json_response = json_response
        self._transport_factory = transport_factory or self._sdk_transport
        self._sessions: dict[str, McpSession] = {}
        self._task_group: anyio.abc.TaskGroup | None = None

    @staticmethod
    def _sdk_transport(session_id: str, json_response: bool) -> StreamableHTTPServerTransport:
        return StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )

    @property
    def sessions(self) -> dict[str, McpSession]:
        return dict(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # --- Lifecycle ---

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionMultiplexer"]:
        if self._task_group is not None:
            raise RuntimeError("SessionMultiplexer is already running")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("session multiplexer started")
            try:
                yield self
            finally:
                logger.info("shutting down: closing %d sessions", len(self._sessions))
                for session_id in list(self._sessions):
                    await self.close_session(session_id)
                tg.cancel_scope.cancel()
                self._task_group = None

    async def _serve(self, session: McpSession, server: Any, *,
                     task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
        try:
            with anyio.CancelScope() as cancel_scope:
                session.cancel_scope = cancel_scope
                async with session.transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await server.run(
                        read_stream,
                        write_stream,
                        server.create_initialization_options(),
                        stateless=False,
                    )
        except Exception:
            logger.exception("session %s: server loop failed", session.session_id)
        finally:
            self._forget(session)

    def _forget(self, session: McpSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
            logger.info("session closed: %s", session.session_id)

    async def _create_session(self, user: str, *, json_response: bool = False) -> McpSession:
        if self._task_group is None:
            raise RuntimeError("SessionMultiplexer.run() has not been entered")
        session_id = uuid4().hex
        session = McpSession(
            session_id=session_id,
            transport=self._transport_factory(session_id, json_response),
            user=user,
            created_at=time.time(),
            json_response=json_response,
        )
        server = self._server_factory()
        self._sessions[session_id] = session
        await self._task_group.start(self._serve, session, server)
        logger.info("new session: %s for user: %s (%s responses)", session_id, user,
                    "json" if json_response else "stream")
        return session

    async def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        try:
            await session.transport.terminate()
        except Exception:
            logger.exception("session %s: transport terminate failed", session_id)
        if session.cancel_scope is not None:
            session.cancel_scope.cancel()
        logger.info("session terminated: %s", session_id)
        return True

    # --- Request routing ---

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        user = scope.get("state", {}).get("user", "anonymous")
        logger.info("%s request from %s", request.method, user)

        if request.method == "POST":
            await self._handle_post(request, user, send)
        elif request.method == "GET":
            await self._handle_get(request, send)
        elif request.method == "DELETE":
            await self._handle_delete(request, send)
        else:
            response = _error(405, "Method not allowed",
                              headers={"Allow": "GET, POST, DELETE"})
            await response(scope, receive, send)

    async def _lookup(self, request: Request, send: Send) -> McpSession | None:
        """Resolve the session header, answering 400/404 when it can't be."""
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            response = _error(400, f"Bad Request: missing {MCP_SESSION_ID_HEADER} header")
        else:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            response = _error(404, "Session not found", code=-32001)
        await response(request.scope, request.receive, send)
        return None

    async def _handle_post(self, request: Request, user: str, send: Send) -> None:
        ranges = _media_ranges(request)
        json_ok, stream_ok = _accepts(ranges)
        if not (json_ok or stream_ok):
            response = _error(406, f"Not Acceptable: client must accept {JSON} or {EVENT_STREAM}")
            await response(request.scope, request.receive, send)
            return
        if not _is_json_body(request):
            response = _error(415, f"Unsupported Media Type: Content-Type must be {JSON}")
            await response(request.scope, request.receive, send)
            return

        body = await request.body()
        try:
            message = json.loads(body)
        except ValueError:
            response = _error(400, "Parse error", code=-32700)
            await response(request.scope, request.receive, send)
            return

        if _has_initialize(message) and not request.headers.get(MCP_SESSION_ID_HEADER):
            await self._handle_initialize(request, message, user, send, ranges)
            return

        session = await self._lookup(request, send)
        if session is None:
            return
        if _expects_reply(message) and not (json_ok if session.json_response else stream_ok):
            wanted = JSON if session.json_response else EVENT_STREAM
            response = _error(406, f"Not Acceptable: this session responds with {wanted}")
            await response(request.scope, request.receive, send)
            return
        scope = _with_accept(request.scope, _TRANSPORT_ACCEPT[session.json_response])
        await session.transport.handle_request(scope, _replay(body, request.receive), send)

    async def _handle_initialize(self, request: Request, message: Any, user: str, send: Send,
                                 ranges: list[str]) -> None:
        initialize = _initialize_message(message)
        if initialize is None:
            response = _error(400, "Invalid Request: initialize must be sent on its own",
                              code=-32600)
            await response(request.scope, request.receive, send)
            return
        try:
            JSONRPCMessage.model_validate(initialize)
        except ValidationError:
            response = _error(400, "Invalid Request: malformed initialize message", code=-32600)
            await response(request.scope, request.receive, send)
            return

        # Stream only when asked for by name, or when JSON isn't acceptable at all
        json_ok, stream_ok = _accepts(ranges)
        streams = stream_ok and (EVENT_STREAM in ranges or not json_ok)
        json_mode = self.json_response or not streams
        if json_mode and not json_ok:
            response = _error(406, f"Not Acceptable: client must accept {JSON}")
            await response(request.scope, request.receive, send)
            return

        session = await self._create_session(user, json_response=json_mode)
        scope = _with_accept(request.scope, _TRANSPORT_ACCEPT[json_mode])
        body = json.dumps(initialize).encode()
        await self._forward_initialize(session, scope, _replay(body, request.receive), send)

    async def _forward_initialize(self, session: McpSession, scope: Scope,
                                  receive: Receive, send: Send) -> None:
        """Forward the request that created ``session``; drop it if the transport refuses."""
        started: dict[str, Any] = {}
        header = MCP_SESSION_ID_HEADER.encode("latin-1")

        async def watch(message: Message) -> None:
            if message["type"] == "http.response.start":
                started["status"] = message["status"]
                started["session_header"] = any(
                    k.lower() == header for k, _ in message.get("headers", []))
            await send(message)

        try:
            await session.transport.handle_request(scope, receive, watch)
        except Exception:
            await self.close_session(session.session_id)
            raise
        status = started.get("status", 0)
        if not (200 <= status < 300 and started.get("session_header")):
            logger.warning("session %s: initialize refused by transport (status %s)",
                           session.session_id, status)
            await self.close_session(session.session_id)

    async def _handle_get(self, request: Request, send: Send) -> None:
        _, stream_ok = _accepts(_media_ranges(request))
        if not stream_ok:
            response = _error(406, f"Not Acceptable: client must accept {EVENT_STREAM}")
            await response(request.scope, request.receive, send)
            return
        session = await self._lookup(request, send)
        if session is None:
            return
        scope = _with_accept(request.scope, EVENT_STREAM)
        await session.transport.handle_request(scope, request.receive, send)

    async def _handle_delete(self, request: Request, send: Send) -> None:
        session = await self._lookup(request, send)
        if session is None:
            return
        await self.close_session(session.session_id)
        await Response(status_code=200)(request.scope, request.receive, send)
