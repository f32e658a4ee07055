"""Tests for bearer_gate.py."""
import sys
from pathlib import Path

import httpx
import pytest
from starlette.responses import JSONResponse

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from bearer_gate import BearerGate, OriginFilter, origin_allowed
from oauth_store import AccessToken

METADATA_URL = "https://mcp.example.com/.well-known/oauth-protected-resource/mcp"
VALID = AccessToken(token="good-token", client_id="c", user="alice@example.com",
                    expires_at=2_000_000_000.0, scope="mcp:tools")


async def downstream(scope, receive, send):
    """Stands in for the session multiplexer: reports who the gate admitted."""
    state = scope.get("state", {})
    response = JSONResponse({"user": state.get("user"),
                             "client_id": state["auth"].client_id if "auth" in state else None})
    await response(scope, receive, send)


def _validate(token):
    return VALID if token == VALID.token else None


def _app(allowed_hosts=("mcp.example.com",), allowed_domains=("acme.cloudflareaccess.com",)):
    gate = BearerGate(downstream, _validate, METADATA_URL)
    return OriginFilter(gate, allowed_hosts=list(allowed_hosts),
                        allowed_domains=list(allowed_domains))


def _client(app=None):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app or _app()),
                             base_url="https://mcp.example.com")


# ---------------------------------------------------------------------------
# Origin filter
# ---------------------------------------------------------------------------

class TestOriginAllowed:
    @pytest.mark.parametrize("origin", [
        "http://localhost:6274",
        "http://127.0.0.1",
        "http://[::1]:8080",
        "https://mcp.example.com",
        "https://acme.cloudflareaccess.com",
        "https://login.acme.cloudflareaccess.com",
    ])
    def test_allowed(self, origin):
        assert origin_allowed(origin, {"mcp.example.com"}, ["acme.cloudflareaccess.com"])

    @pytest.mark.parametrize("origin", [
        "https://attacker.example",
        "https://mcp.example.com.attacker.example",
        "https://notacme.cloudflareaccess.com",
        "null",
        "",
        "file:///etc/passwd",
        "javascript:alert(1)",
        "https://",
        "http://[::1",
    ])
    def test_rejected(self, origin):
        assert not origin_allowed(origin, {"mcp.example.com"}, ["acme.cloudflareaccess.com"])


class TestOriginFilter:
    @pytest.mark.asyncio
    async def test_foreign_origin_rejected_before_token_check(self):
        async with _client() as client:
            resp = await client.post("/mcp", headers={"Origin": "https://attacker.example"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"
        assert "www-authenticate" not in resp.headers

    @pytest.mark.asyncio
    async def test_foreign_origin_rejected_even_with_valid_token(self):
        async with _client() as client:
            resp = await client.post("/mcp", headers={
                "Origin": "https://attacker.example",
                "Authorization": "Bearer good-token",
            })
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_no_origin_passes_to_gate(self):
        async with _client() as client:
            resp = await client.post("/mcp")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_own_origin_with_token(self):
        async with _client() as client:
            resp = await client.post("/mcp", headers={
                "Origin": "https://mcp.example.com",
                "Authorization": "Bearer good-token",
            })
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Bearer gate
# ---------------------------------------------------------------------------

class TestBearerGate:
    @pytest.mark.asyncio
    async def test_missing_header_challenge(self):
        async with _client() as client:
            resp = await client.get("/mcp")
        assert resp.status_code == 401
        challenge = resp.headers["www-authenticate"]
        assert challenge.startswith("Bearer ")
        assert f'resource_metadata="{METADATA_URL}"' in challenge
        assert 'scope="mcp:tools"' in challenge
        assert "error=" not in challenge

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer   ", "good-token"])
    async def test_malformed_header(self, header):
        async with _client() as client:
            resp = await client.get("/mcp", headers={"Authorization": header})
        assert resp.status_code == 401
        assert "resource_metadata=" in resp.headers["www-authenticate"]

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        async with _client() as client:
            resp = await client.get("/mcp", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_token"
        challenge = resp.headers["www-authenticate"]
        assert 'error="invalid_token"' in challenge
        assert f'resource_metadata="{METADATA_URL}"' in challenge

    @pytest.mark.asyncio
    async def test_valid_token_attaches_user(self):
        async with _client() as client:
            resp = await client.get("/mcp", headers={"Authorization": "Bearer good-token"})
        assert resp.status_code == 200
        assert resp.json() == {"user": "alice@example.com", "client_id": "c"}

    @pytest.mark.asyncio
    async def test_scheme_is_case_insensitive(self):
        async with _client() as client:
            resp = await client.get("/mcp", headers={"Authorization": "bearer good-token"})
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_error_responses_not_cached(self):
        async with _client() as client:
            resp = await client.get("/mcp")
        assert resp.headers["cache-control"] == "no-store"
