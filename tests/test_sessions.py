"""Tests for sessions.py — the per-session transport table."""
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import anyio
import httpx
import pytest
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from starlette.requests import Request
from starlette.responses import JSONResponse

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sessions import SessionMultiplexer

ACCEPT_BOTH = "application/json, text/event-stream"
INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "test", "version": "0"},
    },
}
LIST_TOOLS = {"jsonrpc": "2.0", "id": 2, "method": "tools/list"}


class FakeTransport:
    """Records what the multiplexer forwards; answers 200 unless told to refuse."""

    def __init__(self, session_id, json_response=False, refuse_with=None):
        self.session_id = session_id
        self.json_response = json_response
        self.refuse_with = refuse_with
        self.terminated = False
        self.requests = []
        self.accepts = []

    @asynccontextmanager
    async def connect(self):
        yield None, None

    async def handle_request(self, scope, receive, send):
        request = Request(scope, receive)
        body = await request.body()
        self.requests.append((request.method, body))
        self.accepts.append(request.headers.get("accept"))
        if self.refuse_with is not None:
            response = JSONResponse({"jsonrpc": "2.0", "id": None,
                                     "error": {"code": -32600, "message": "refused"}},
                                    status_code=self.refuse_with,
                                    headers={MCP_SESSION_ID_HEADER: self.session_id})
        else:
            response = JSONResponse({"jsonrpc": "2.0", "id": 1, "result": {}},
                                    headers={MCP_SESSION_ID_HEADER: self.session_id})
        await response(scope, receive, send)

    async def terminate(self):
        self.terminated = True


class FakeServer:
    def __init__(self):
        self.stop = anyio.Event()

    def create_initialization_options(self):
        return None

    async def run(self, read_stream, write_stream, options, stateless=False):
        await self.stop.wait()


class Harness:
    def __init__(self, refuse_with=None, json_response=False):
        self.refuse_with = refuse_with
        self.transports: dict[str, FakeTransport] = {}
        self.servers: list[FakeServer] = []
        self.mux = SessionMultiplexer(self._server, json_response=json_response,
                                      transport_factory=self._transport)

    def _server(self):
        server = FakeServer()
        self.servers.append(server)
        return server

    def _transport(self, session_id, json_response):
        transport = FakeTransport(session_id, json_response, self.refuse_with)
        self.transports[session_id] = transport
        return transport

    def client(self, app=None):
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app or self.mux),
                                 base_url="https://mcp.example.com")


async def _initialize(client) -> str:
    resp = await client.post("/mcp", json=INITIALIZE, headers={"Accept": ACCEPT_BOTH})
    assert resp.status_code == 200
    return resp.headers[MCP_SESSION_ID_HEADER]


async def _wait_until(predicate, timeout=1.0):
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            session_id = await _initialize(client)
            assert session_id in h.mux

            headers = {"Accept": ACCEPT_BOTH, MCP_SESSION_ID_HEADER: session_id}
            resp = await client.post("/mcp", json=LIST_TOOLS, headers=headers)
            assert resp.status_code == 200

            resp = await client.delete("/mcp", headers={MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 200
            assert session_id not in h.mux
            assert h.transports[session_id].terminated

            resp = await client.delete("/mcp", headers={MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 404

            resp = await client.post("/mcp", json=LIST_TOOLS, headers=headers)
            assert resp.status_code == 404

            resp = await client.get("/mcp", headers={
                "Accept": "text/event-stream", MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_body_is_forwarded_intact(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            session_id = await _initialize(client)
            await client.post("/mcp", json=LIST_TOOLS, headers={
                "Accept": ACCEPT_BOTH, MCP_SESSION_ID_HEADER: session_id})
        transport = h.transports[session_id]
        assert [m for m, _ in transport.requests] == ["POST", "POST"]
        assert json.loads(transport.requests[0][1])["method"] == "initialize"
        assert json.loads(transport.requests[1][1]) == LIST_TOOLS

    @pytest.mark.asyncio
    async def test_each_session_gets_its_own_server(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            first = await _initialize(client)
            second = await _initialize(client)
            assert first != second
            assert len(h.mux) == 2
            assert len(h.servers) == 2

    @pytest.mark.asyncio
    async def test_batched_initialize_creates_session(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.post("/mcp", json=[INITIALIZE],
                                     headers={"Accept": ACCEPT_BOTH})
            assert resp.status_code == 200
            assert len(h.mux) == 1
        (session_id,) = h.transports
        assert json.loads(h.transports[session_id].requests[0][1]) == INITIALIZE

    @pytest.mark.asyncio
    async def test_server_loop_exit_removes_session(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            session_id = await _initialize(client)
            h.servers[0].stop.set()
            await _wait_until(lambda: session_id not in h.mux)
            resp = await client.post("/mcp", json=LIST_TOOLS, headers={
                "Accept": ACCEPT_BOTH, MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_shutdown_closes_all_sessions(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            await _initialize(client)
            await _initialize(client)
        assert len(h.mux) == 0
        assert all(t.terminated for t in h.transports.values())

    @pytest.mark.asyncio
    async def test_session_records_user(self):
        h = Harness()

        async def as_alice(scope, receive, send):
            scope.setdefault("state", {})["user"] = "alice@example.com"
            await h.mux(scope, receive, send)

        async with h.mux.run(), h.client(as_alice) as client:
            session_id = await _initialize(client)
            assert h.mux.sessions[session_id].user == "alice@example.com"

    @pytest.mark.asyncio
    async def test_requires_running_multiplexer(self):
        h = Harness()
        with pytest.raises(RuntimeError):
            await h.mux._create_session("alice@example.com")


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

class TestRequestValidation:
    @pytest.mark.asyncio
    async def test_missing_session_header(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.post("/mcp", json=LIST_TOOLS, headers={"Accept": ACCEPT_BOTH})
        assert resp.status_code == 400
        assert resp.json()["jsonrpc"] == "2.0"
        assert len(h.mux) == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.post("/mcp", json=LIST_TOOLS, headers={
                "Accept": ACCEPT_BOTH, MCP_SESSION_ID_HEADER: "no-such-session"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_delete_without_header(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.delete("/mcp")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.asyncio
    async def test_post_must_accept_json_or_stream(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.post("/mcp", json=INITIALIZE, headers={"Accept": "text/html"})
            assert resp.status_code == 406
            assert len(h.mux) == 0

            resp = await client.post("/mcp", json=INITIALIZE, headers={
                "Accept": "application/json;q=0, text/event-stream;q=0"})
            assert resp.status_code == 406
            assert len(h.mux) == 0

    @pytest.mark.asyncio
    async def test_post_requires_json_content_type(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.post("/mcp", content=json.dumps(INITIALIZE),
                                     headers={"Accept": ACCEPT_BOTH, "Content-Type": "text/plain"})
        assert resp.status_code == 415
        assert len(h.mux) == 0
        assert h.transports == {}

    @pytest.mark.asyncio
    async def test_get_must_accept_stream(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            session_id = await _initialize(client)
            resp = await client.get("/mcp", headers={
                "Accept": "application/json", MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 406

            resp = await client.get("/mcp", headers={
                "Accept": "text/event-stream", MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_parse_error(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.post("/mcp", content=b"{not json",
                                     headers={"Accept": ACCEPT_BOTH,
                                              "Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == -32700

    @pytest.mark.asyncio
    async def test_other_methods_not_allowed(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.put("/mcp", json=LIST_TOOLS)
        assert resp.status_code == 405
        assert resp.headers["allow"] == "GET, POST, DELETE"

    @pytest.mark.asyncio
    async def test_initialize_must_be_alone_and_well_formed(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            batch = await client.post("/mcp", json=[INITIALIZE, LIST_TOOLS],
                                      headers={"Accept": ACCEPT_BOTH})
            no_envelope = await client.post("/mcp", json={"method": "initialize"},
                                            headers={"Accept": ACCEPT_BOTH})
        assert batch.status_code == 400
        assert no_envelope.status_code == 400
        assert no_envelope.json()["error"]["code"] == -32600
        assert h.transports == {}


# ---------------------------------------------------------------------------
# Response modes
# ---------------------------------------------------------------------------

class TestResponseModes:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("accept,json_mode", [
        (ACCEPT_BOTH, False),
        ("text/event-stream", False),
        ("text/*", False),
        ("application/json", True),
        ("application/json; charset=utf-8", True),
        ("application/*", True),
        ("*/*", True),
        ("text/event-stream;q=0, application/json", True),
    ])
    async def test_mode_follows_initialize_accept(self, accept, json_mode):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            resp = await client.post("/mcp", json=INITIALIZE, headers={"Accept": accept})
            assert resp.status_code == 200
            session_id = resp.headers[MCP_SESSION_ID_HEADER]
            assert h.mux.sessions[session_id].json_response is json_mode
        transport = h.transports[session_id]
        assert transport.json_response is json_mode
        expected = "application/json" if json_mode else ACCEPT_BOTH
        assert transport.accepts == [expected]

    @pytest.mark.asyncio
    async def test_json_mode_multiplexer_never_streams(self):
        h = Harness(json_response=True)
        async with h.mux.run(), h.client() as client:
            session_id = await _initialize(client)
            assert h.mux.sessions[session_id].json_response is True

            resp = await client.post("/mcp", json=INITIALIZE,
                                     headers={"Accept": "text/event-stream"})
            assert resp.status_code == 406
            assert len(h.mux) == 1

    @pytest.mark.asyncio
    async def test_later_requests_need_the_session_mode(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            session_id = await _initialize(client)
            json_only = {"Accept": "application/json", MCP_SESSION_ID_HEADER: session_id}

            resp = await client.post("/mcp", json=LIST_TOOLS, headers=json_only)
            assert resp.status_code == 406

            notification = {"jsonrpc": "2.0", "method": "notifications/initialized"}
            resp = await client.post("/mcp", json=notification, headers=json_only)
            assert resp.status_code == 200

            resp = await client.post("/mcp", json=LIST_TOOLS, headers={
                "Accept": "*/*", MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 200
        assert h.transports[session_id].accepts[-1] == ACCEPT_BOTH

    @pytest.mark.asyncio
    async def test_get_accepts_stream_wildcards(self):
        h = Harness()
        async with h.mux.run(), h.client() as client:
            session_id = await _initialize(client)
            resp = await client.get("/mcp", headers={
                "Accept": "*/*", MCP_SESSION_ID_HEADER: session_id})
            assert resp.status_code == 200
        assert h.transports[session_id].accepts[-1] == "text/event-stream"


# ---------------------------------------------------------------------------
# Refused initialize
# ---------------------------------------------------------------------------

class TestRefusedInitialize:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 406, 500])
    async def test_session_dropped_when_transport_refuses(self, status):
        h = Harness(refuse_with=status)
        async with h.mux.run(), h.client() as client:
            for _ in range(3):
                resp = await client.post("/mcp", json=INITIALIZE,
                                         headers={"Accept": ACCEPT_BOTH})
                assert resp.status_code == status
            assert len(h.mux) == 0
            assert len(h.transports) == 3
            assert all(t.terminated for t in h.transports.values())

    @pytest.mark.asyncio
    async def test_session_dropped_when_transport_raises(self):
        h = Harness()

        class Broken(FakeTransport):
            async def handle_request(self, scope, receive, send):
                raise RuntimeError("transport exploded")

        def broken(session_id, json_response):
            transport = Broken(session_id, json_response)
            h.transports[session_id] = transport
            return transport

        h.mux._transport_factory = broken
        async with h.mux.run(), h.client() as client:
            with pytest.raises(RuntimeError):
                await client.post("/mcp", json=INITIALIZE, headers={"Accept": ACCEPT_BOTH})
            assert len(h.mux) == 0
        assert all(t.terminated for t in h.transports.values())
