"""
bearer_gate.py — ASGI guards in front of the MCP endpoint.

  OriginFilter  — blocks browser requests from foreign origins (DNS rebinding).
  BearerGate    — requires a live OAuth access token.

OriginFilter wraps BearerGate, so a foreign Origin is refused with 403 before
any token is looked at.
"""

import json
import logging
from typing import Callable
from urllib.parse import urlparse

from starlette.types import ASGIApp, Receive, Scope, Send

from oauth_store import AccessToken
from unifi_oauth import _audit

logger = logging.getLogger("unifi-gate")

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


async def _send_json(send: Send, status: int, data: dict, extra_headers: list | None = None) -> None:
    body = json.dumps(data).encode()
    headers = [
        [b"content-type", b"application/json"],
        [b"content-length", str(len(body)).encode()],
        [b"cache-control", b"no-store"],
    ]
    if extra_headers:
        headers.extend(extra_headers)
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


def _header(scope: Scope, name: bytes) -> str | None:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


# ---------------------------------------------------------------------------
# Origin filter
# ---------------------------------------------------------------------------

def origin_allowed(origin: str, allowed_hosts: set[str], allowed_domains: list[str]) -> bool:
    """Loopback, our own public host, or an identity-edge domain. Nothing else."""
    try:
        parsed = urlparse(origin.strip())
        host = parsed.hostname
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not host:
        return False
    host = host.lower()
    if host in LOOPBACK_HOSTS or host in allowed_hosts:
        return True
    return any(host == d or host.endswith("." + d) for d in allowed_domains)


class OriginFilter:
    """Rejects requests whose Origin header is not trusted.

    Requests without Origin (non-browser MCP clients) pass.
    """

    def __init__(self, app: ASGIApp, allowed_hosts: list[str] | None = None,
                 allowed_domains: list[str] | None = None):
        self.app = app
        self.allowed_hosts = {h.lower() for h in allowed_hosts or [] if h}
        self.allowed_domains = [d.lower().lstrip(".") for d in allowed_domains or [] if d]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = _header(scope, b"origin")
        if origin is not None and not origin_allowed(
            origin, self.allowed_hosts, self.allowed_domains
        ):
            logger.warning("origin rejected: %s", origin[:100])
            _audit("origin_rejected", origin=origin[:100])
            await _send_json(send, 403, {
                "error": "forbidden",
                "error_description": "Origin not allowed.",
            })
            return

        await self.app(scope, receive, send)


# ---------------------------------------------------------------------------
# Bearer gate
# ---------------------------------------------------------------------------

class BearerGate:
    """Admits requests carrying a valid, unexpired access token.

    Every 401 carries a WWW-Authenticate challenge pointing at the protected
    resource metadata, which is how MCP clients discover the auth server.
    """

    def __init__(
        self,
        app: ASGIApp,
        validate: Callable[[str], AccessToken | None],
        resource_metadata_url: str,
        scope: str = "mcp:tools",
    ):
        self.app = app
        self.validate = validate
        self.resource_metadata_url = resource_metadata_url
        self.scope = scope

    def _challenge(self, error: str | None = None) -> bytes:
        parts = []
        if error:
            parts.append(f'error="{error}"')
        parts.append(f'resource_metadata="{self.resource_metadata_url}"')
        parts.append(f'scope="{self.scope}"')
        return ("Bearer " + ", ".join(parts)).encode()

    async def _unauthorized(self, send: Send, description: str, error: str | None) -> None:
        await _send_json(send, 401, {
            "error": error or "unauthorized",
            "error_description": description,
        }, [[b"www-authenticate", self._challenge(error)]])

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        auth = _header(scope, b"authorization") or ""
        scheme, _, token = auth.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            logger.info("request rejected: no Bearer token")
            await self._unauthorized(send, "Missing or invalid Authorization header", None)
            return

        access = self.validate(token)
        if access is None:
            _audit("token_rejected", reason="invalid_or_expired", path=scope.get("path"))
            await self._unauthorized(send, "Invalid or expired token", "invalid_token")
            return

        state = scope.setdefault("state", {})
        state["auth"] = access
        state["user"] = access.user
        await self.app(scope, receive, send)
