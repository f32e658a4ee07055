"""
unifi_oauth.py — OAuth 2.1 authorization server for the UniFi MCP gateway.

End-user identity is delegated to Cloudflare Access through a pluggable
IdentityStrategy (see identity.py); this module owns everything else.

Implements:
  /.well-known/oauth-authorization-server  — RFC 8414 metadata
  /.well-known/oauth-protected-resource    — RFC 9728 metadata
  /register                                — RFC 7591 dynamic client registration (open)
  /authorize                               — Authorization endpoint (→ identity edge)
  /token                                   — Token endpoint (code / refresh_token grants)
  /revoke                                  — RFC 7009 token revocation

Security features:
  - S256-only PKCE (plain method and missing challenges rejected)
  - Unknown clients auto-registered only for loopback redirect URIs
  - Single-use authorization codes, pending records and refresh tokens
  - Opaque access tokens with check-on-read expiry
  - In-memory sliding window rate limiter on auth endpoints
  - Structured audit logging (JSON-lines to unifi-audit logger)
  - Fail-closed when the identity edge is not configured
"""

import base64
import functools
import hashlib
import hmac
import json
import logging
import secrets
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl

import anyio
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from oauth_errors import OAuthError, OAuthErrorKind, invalid_grant, invalid_request
from oauth_store import (
    ACCESS_TOKEN_TTL,
    AUTH_CODE_TTL,
    PENDING_TTL,
    REFRESH_TOKEN_TTL,
    AccessToken,
    AuthorizationCode,
    OAuthStore,
    PendingAuthorization,
    RefreshToken,
    RegisteredClient,
    mint_token,
)

if TYPE_CHECKING:
    from identity import IdentityStrategy

logger = logging.getLogger("unifi-oauth")
audit_logger = logging.getLogger("unifi-audit")

# ---------------------------------------------------------------------------
# Security configuration
# ---------------------------------------------------------------------------

DEFAULT_SCOPES = ("mcp:tools",)
MAX_REGISTERED_CLIENTS = 100
MAX_AUTO_REGISTERED_CLIENTS = 100  # counted separately from /register
MAX_CLIENT_NAME_LENGTH = 256
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX_REQUESTS = 10  # per window per IP per endpoint
REAPER_INTERVAL = 60  # seconds
LOOPBACK_HOSTS = ("localhost", "127.0.0.1")


# ---------------------------------------------------------------------------
# Audit logging
# ---------------------------------------------------------------------------

def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class _RateLimiter:
    """In-memory sliding window rate limiter."""

    def __init__(self, max_requests: int = RATE_LIMIT_MAX_REQUESTS,
                 window: int = RATE_LIMIT_WINDOW,
                 clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window = window
        self.clock = clock
        self._buckets: dict[str, deque[float]] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    @staticmethod
    def _prune(bucket: deque[float], cutoff: float) -> None:
        while bucket and bucket[0] < cutoff:
            bucket.popleft()

    def is_allowed(self, key: str) -> bool:
        now = self.clock()
        bucket = self._buckets.setdefault(key, deque())
        self._prune(bucket, now - self.window)
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def cleanup(self) -> int:
        """Drop timestamps outside the window, then buckets left empty."""
        cutoff = self.clock() - self.window
        for bucket in self._buckets.values():
            self._prune(bucket, cutoff)
        empty = [k for k, v in self._buckets.items() if not v]
        for k in empty:
            del self._buckets[k]
        return len(empty)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_client_ip(request: Request) -> str:
    """Extract real client IP, preferring CF-Connecting-IP."""
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def is_loopback_uri(uri: str) -> bool:
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and parsed.hostname in LOOPBACK_HOSTS


def _is_acceptable_redirect(uri: str) -> bool:
    """https anywhere, or http on a loopback host."""
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    if not parsed.netloc:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS


def construct_redirect_uri(base: str, **params: str | None) -> str:
    """Append query parameters to a redirect URI, keeping any it already has."""
    parsed = urlparse(base)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _verify_pkce(verifier: str, challenge: str) -> bool:
    try:
        expected = s256_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode(), challenge.encode())


def _oauth_endpoint(handler: Callable[..., Awaitable[Response]]):
    """Turn OAuthError raised by a route handler into its JSON response."""

    @functools.wraps(handler)
    async def wrapper(self: "AuthorizationCore", request: Request) -> Response:
        try:
            return await handler(self, request)
        except OAuthError as e:
            return e.to_response()

    return wrapper


# ---------------------------------------------------------------------------
# AuthorizationCore
# ---------------------------------------------------------------------------

class AuthorizationCore:
    """Issues and validates pending authorizations, codes and tokens.

    The identity strategy decides how the end user is confirmed; this class
    owns everything before (client + PKCE validation) and after (code and
    token issuance) that step.
    """

    def __init__(
        self,
        store: OAuthStore,
        identity: "IdentityStrategy",
        base_url: str,
        path_prefix: str = "",
        scopes: tuple[str, ...] = DEFAULT_SCOPES,
        rate_limiter: _RateLimiter | None = None,
    ):
        self.store = store
        self.identity = identity
        self.issuer_url = base_url.rstrip("/")
        self.path_prefix = path_prefix
        self.scopes = tuple(scopes)
        self._rate_limiter = rate_limiter or _RateLimiter(clock=store.clock)

    def url(self, path: str) -> str:
        return f"{self.issuer_url}{self.path_prefix}{path}"

    @property
    def resource_url(self) -> str:
        return f"{self.issuer_url}/mcp"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.issuer_url}/.well-known/oauth-protected-resource/mcp"

    def _now(self) -> float:
        return self.store.clock()

    # --- Discovery ---

    def authorization_server_metadata(self) -> dict[str, Any]:
        """RFC 8414 — OAuth Authorization Server Metadata."""
        return {
            "issuer": self.issuer_url,
            "authorization_endpoint": self.url("/authorize"),
            "token_endpoint": self.url("/token"),
            "registration_endpoint": self.url("/register"),
            "revocation_endpoint": self.url("/revoke"),
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
            "revocation_endpoint_auth_methods_supported": ["none", "client_secret_post"],
            "code_challenge_methods_supported": ["S256"],
            "scopes_supported": list(self.scopes),
        }

    def protected_resource_metadata(self) -> dict[str, Any]:
        """RFC 9728 — OAuth Protected Resource Metadata."""
        return {
            "resource": self.resource_url,
            "authorization_servers": [self.issuer_url],
            "scopes_supported": list(self.scopes),
            "bearer_methods_supported": ["header"],
            "resource_name": "UniFi MCP Server",
        }

    # --- Registration ---

    def register_client(self, payload: Mapping[str, Any], ip: str = "unknown") -> RegisteredClient:
        """RFC 7591 — Dynamic Client Registration. Intentionally unauthenticated."""
        if self.store.clients.count(auto_registered=False) >= MAX_REGISTERED_CLIENTS:
            _audit("register_rejected", ip=ip, reason="max_clients")
            raise OAuthError(OAuthErrorKind.ACCESS_DENIED,
                             f"Maximum {MAX_REGISTERED_CLIENTS} clients.")

        redirect_uris = payload.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris:
            raise invalid_request("At least one redirect_uri is required.")
        for uri in redirect_uris:
            if not isinstance(uri, str):
                raise invalid_request("redirect_uris must be strings.")
            if not _is_acceptable_redirect(uri):
                raise invalid_request(f"Invalid redirect_uri: {uri}")

        client_name = payload.get("client_name") or ""
        if not isinstance(client_name, str):
            raise invalid_request("client_name must be a string.")
        if len(client_name) > MAX_CLIENT_NAME_LENGTH:
            raise invalid_request(f"client_name exceeds {MAX_CLIENT_NAME_LENGTH} characters.")

        client = RegisteredClient(
            client_id=f"unifi-{secrets.token_hex(8)}",
            client_secret=mint_token(32),
            redirect_uris=list(redirect_uris),
            client_name=client_name,
            created_at=self._now(),
        )
        self.store.clients.add(client)
        _audit("client_registered", client_id=client.client_id,
               client_name=client_name, ip=ip)
        return client

    # --- Authorization ---

    def _granted_scope(self, requested: str | None) -> str:
        wanted = [s for s in (requested or "").split() if s in self.scopes]
        return " ".join(wanted or self.scopes)

    def begin_authorization(
        self, params: Mapping[str, str], ip: str = "unknown"
    ) -> tuple[str, PendingAuthorization]:
        """Validate an /authorize request and park it until identity is confirmed.

        Returns the internal state token the identity edge must round-trip.
        """
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        code_challenge = params.get("code_challenge", "")
        code_challenge_method = params.get("code_challenge_method", "")
        response_type = params.get("response_type", "code")

        if not client_id or not redirect_uri:
            raise invalid_request("Missing client_id or redirect_uri")
        if response_type != "code":
            raise OAuthError(OAuthErrorKind.UNSUPPORTED_RESPONSE_TYPE,
                             "Only response_type=code is supported.")
        if not code_challenge:
            raise invalid_request("code_challenge is required (PKCE).")
        if code_challenge_method != "S256":
            raise invalid_request("Only S256 code_challenge_method is supported.")

        client = self.store.clients.get(client_id)
        known_uri = client is not None and redirect_uri in client.redirect_uris
        if not known_uri and not is_loopback_uri(redirect_uri):
            _audit("authorize_rejected", client_id=client_id, ip=ip,
                   reason="unknown_client" if client is None else "redirect_uri_mismatch")
            if client is None:
                raise invalid_request("Unknown client_id with non-loopback redirect_uri.")
            raise invalid_request("redirect_uri does not match registration.")

        if not self.identity.configured:
            _audit("authorize_rejected", client_id=client_id, ip=ip,
                   reason="identity_edge_not_configured")
            raise OAuthError(OAuthErrorKind.TEMPORARILY_UNAVAILABLE,
                             "Identity provider is not configured.")

        if client is None:
            # Desktop clients that cannot pre-register: public, loopback only.
            if self.store.clients.count(auto_registered=True) >= MAX_AUTO_REGISTERED_CLIENTS:
                _audit("authorize_rejected", client_id=client_id, ip=ip,
                       reason="max_auto_registered_clients")
                raise OAuthError(OAuthErrorKind.ACCESS_DENIED,
                                 f"Maximum {MAX_AUTO_REGISTERED_CLIENTS} unregistered clients.")
            client = RegisteredClient(
                client_id=client_id,
                client_secret=None,
                redirect_uris=[redirect_uri],
                client_name=client_id,
                created_at=self._now(),
                auto_registered=True,
            )
            self.store.clients.add(client)
            _audit("client_auto_registered", client_id=client_id,
                   redirect_uri=redirect_uri, ip=ip)
        elif not known_uri:
            self.store.clients.add_redirect_uri(client_id, redirect_uri)
            _audit("redirect_uri_added", client_id=client_id, redirect_uri=redirect_uri)

        self.store.pending.purge_expired()

        now = self._now()
        state = mint_token(24)
        pending = PendingAuthorization(
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            state=params.get("state") or None,
            created_at=now,
            expires_at=now + PENDING_TTL,
            scope=self._granted_scope(params.get("scope")),
            resource=params.get("resource") or None,
        )
        self.store.pending.put(state, pending)
        _audit("authorize_pending", client_id=client_id, ip=ip)
        return state, pending

    def get_pending(self, state: str) -> PendingAuthorization | None:
        return self.store.pending.get(state)

    def take_pending(self, state: str) -> PendingAuthorization:
        """Consume a pending authorization. Missing or expired ⇒ invalid_state."""
        pending = self.store.pending.pop(state) if state else None
        if pending is None:
            raise OAuthError(OAuthErrorKind.INVALID_STATE,
                             "Unknown or expired authorization request.")
        return pending

    def issue_code(self, pending: PendingAuthorization, user: str) -> str:
        """Mint an authorization code and return the client redirect URL."""
        code = mint_token(32)
        self.store.codes.put(code, AuthorizationCode(
            code=code,
            client_id=pending.client_id,
            user=user,
            redirect_uri=pending.redirect_uri,
            code_challenge=pending.code_challenge,
            expires_at=self._now() + AUTH_CODE_TTL,
            scope=pending.scope,
            resource=pending.resource,
        ))
        _audit("authorize_approved", client_id=pending.client_id, user=user)
        return construct_redirect_uri(pending.redirect_uri, code=code, state=pending.state)

    def complete_authorization(self, state: str, user: str) -> str:
        return self.issue_code(self.take_pending(state), user)

    def deny_authorization(self, state: str, description: str = "") -> str:
        pending = self.take_pending(state)
        _audit("authorize_denied", client_id=pending.client_id)
        return construct_redirect_uri(
            pending.redirect_uri,
            error="access_denied",
            error_description=description or None,
            state=pending.state,
        )

    # --- Token endpoint ---

    def _authenticate_client(self, client_id: str, client_secret: str) -> None:
        client = self.store.clients.get(client_id)
        if client is None:
            raise OAuthError(OAuthErrorKind.INVALID_CLIENT, "Unknown client.")
        if client.client_secret is not None:
            if not client_secret or not hmac.compare_digest(
                client_secret.encode(), client.client_secret.encode()
            ):
                raise OAuthError(OAuthErrorKind.INVALID_CLIENT,
                                 "Client authentication failed.")

    def _issue_tokens(self, client_id: str, user: str, scope: str,
                      resource: str | None = None) -> dict[str, Any]:
        now = self._now()
        access = mint_token(32)
        refresh = mint_token(32)
        self.store.access_tokens.put(access, AccessToken(
            token=access,
            client_id=client_id,
            user=user,
            expires_at=now + ACCESS_TOKEN_TTL,
            scope=scope,
            resource=resource,
        ))
        self.store.refresh_tokens.put(refresh, RefreshToken(
            token=refresh,
            client_id=client_id,
            user=user,
            expires_at=now + REFRESH_TOKEN_TTL,
            scope=scope,
        ))
        logger.info("token_issued: access=%s... stored=%d",
                    access[:8], len(self.store.access_tokens))
        return {
            "access_token": access,
            "token_type": "Bearer",
            "expires_in": ACCESS_TOKEN_TTL,
            "scope": scope,
            "refresh_token": refresh,
        }

    def exchange_token(self, form: Mapping[str, str]) -> dict[str, Any]:
        grant_type = form.get("grant_type", "")
        if grant_type == "authorization_code":
            return self._exchange_authorization_code(form)
        if grant_type == "refresh_token":
            return self._exchange_refresh_token(form)
        raise OAuthError(OAuthErrorKind.UNSUPPORTED_GRANT_TYPE,
                         f"Unsupported grant_type: {grant_type or '(missing)'}")

    def _exchange_authorization_code(self, form: Mapping[str, str]) -> dict[str, Any]:
        code = form.get("code", "")
        client_id = form.get("client_id", "")
        code_verifier = form.get("code_verifier", "")
        redirect_uri = form.get("redirect_uri", "")

        if not code:
            raise invalid_request("Missing code")

        # Consumed before validation: a failed attempt burns the code too.
        auth_code = self.store.codes.pop(code)
        if auth_code is None:
            _audit("token_rejected", reason="unknown_or_expired_code")
            raise invalid_grant("Unknown or expired code")

        if client_id != auth_code.client_id:
            _audit("token_rejected", reason="client_mismatch", client_id=client_id)
            raise OAuthError(OAuthErrorKind.INVALID_CLIENT, "client_id mismatch")
        self._authenticate_client(client_id, form.get("client_secret", ""))

        if redirect_uri and redirect_uri != auth_code.redirect_uri:
            _audit("token_rejected", reason="redirect_uri_mismatch", client_id=client_id)
            raise invalid_grant("redirect_uri mismatch")

        if not code_verifier:
            raise invalid_request("Missing code_verifier")
        if not _verify_pkce(code_verifier, auth_code.code_challenge):
            _audit("token_rejected", reason="pkce_failed", client_id=client_id)
            raise invalid_grant("PKCE verification failed")

        tokens = self._issue_tokens(client_id, auth_code.user, auth_code.scope,
                                    auth_code.resource)
        _audit("token_issued", client_id=client_id, user=auth_code.user,
               expires_in=ACCESS_TOKEN_TTL)
        return tokens

    def _exchange_refresh_token(self, form: Mapping[str, str]) -> dict[str, Any]:
        token = form.get("refresh_token", "")
        client_id = form.get("client_id", "")
        if not token:
            raise invalid_request("Missing refresh_token")

        refresh = self.store.refresh_tokens.pop(token)
        if refresh is None:
            _audit("token_rejected", reason="unknown_or_expired_refresh_token")
            raise invalid_grant("Unknown or expired refresh_token")
        if client_id and client_id != refresh.client_id:
            _audit("token_rejected", reason="client_mismatch", client_id=client_id)
            raise OAuthError(OAuthErrorKind.INVALID_CLIENT, "client_id mismatch")
        self._authenticate_client(refresh.client_id, form.get("client_secret", ""))

        tokens = self._issue_tokens(refresh.client_id, refresh.user, refresh.scope)
        _audit("token_refreshed", client_id=refresh.client_id, user=refresh.user)
        return tokens

    def revoke_token(self, token: str) -> None:
        """RFC 7009 — unknown tokens are not an error."""
        if self.store.access_tokens.delete(token) or self.store.refresh_tokens.delete(token):
            _audit("token_revoked")

    def validate_access_token(self, token: str) -> AccessToken | None:
        at = self.store.access_tokens.get(token)
        if at is None:
            logger.info("validate_access_token: unknown or expired token=%s...", token[:8])
            return None
        return at

    # --- Maintenance ---

    def purge_expired(self) -> int:
        self._rate_limiter.cleanup()
        return self.store.purge_expired()

    async def reap_forever(self, interval: float = REAPER_INTERVAL) -> None:
        """Periodic sweep of expired pending records, codes and tokens."""
        while True:
            await anyio.sleep(interval)
            purged = self.purge_expired()
            if purged:
                logger.info("reaper: purged %d expired entries", purged)

    # --- HTTP endpoints ---

    def _check_rate_limit(self, request: Request, endpoint: str) -> None:
        client_ip = _get_client_ip(request)
        if not self._rate_limiter.is_allowed(f"{endpoint}:{client_ip}"):
            _audit("rate_limited", ip=client_ip, path=endpoint)
            raise OAuthError(OAuthErrorKind.TOO_MANY_REQUESTS,
                             "Rate limit exceeded. Try again later.")

    async def handle_metadata(self, request: Request) -> Response:
        return JSONResponse(self.authorization_server_metadata())

    async def handle_protected_resource_metadata(self, request: Request) -> Response:
        return JSONResponse(self.protected_resource_metadata())

    @_oauth_endpoint
    async def handle_register(self, request: Request) -> Response:
        self._check_rate_limit(request, "register")
        try:
            payload = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise invalid_request("Body must be a JSON object.")
        if not isinstance(payload, dict):
            raise invalid_request("Body must be a JSON object.")

        client = self.register_client(payload, ip=_get_client_ip(request))
        return JSONResponse({
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "client_id_issued_at": int(client.created_at),
            "client_secret_expires_at": 0,
            "client_name": client.client_name,
            "redirect_uris": client.redirect_uris,
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "client_secret_post",
        }, status_code=201, headers={"Cache-Control": "no-store"})

    @_oauth_endpoint
    async def handle_authorize(self, request: Request) -> Response:
        self._check_rate_limit(request, "authorize")
        state, pending = self.begin_authorization(
            dict(request.query_params), ip=_get_client_ip(request)
        )
        return await self.identity.start(request, state, pending)

    @_oauth_endpoint
    async def handle_token(self, request: Request) -> Response:
        self._check_rate_limit(request, "token")
        form = await request.form()
        tokens = self.exchange_token({k: str(v) for k, v in form.items()})
        return JSONResponse(tokens, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

    @_oauth_endpoint
    async def handle_revoke(self, request: Request) -> Response:
        form = await request.form()
        token = str(form.get("token", ""))
        if not token:
            raise invalid_request("Missing token")
        self.revoke_token(token)
        return JSONResponse({}, headers={"Cache-Control": "no-store"})

    def routes(self) -> list[Route]:
        routes = [
            Route("/.well-known/oauth-authorization-server", self.handle_metadata,
                  methods=["GET"]),
            Route("/.well-known/openid-configuration", self.handle_metadata,
                  methods=["GET"]),
            Route("/.well-known/oauth-protected-resource",
                  self.handle_protected_resource_metadata, methods=["GET"]),
            Route("/.well-known/oauth-protected-resource/mcp",
                  self.handle_protected_resource_metadata, methods=["GET"]),
            Route(f"{self.path_prefix}/register", self.handle_register, methods=["POST"]),
            Route(f"{self.path_prefix}/authorize", self.handle_authorize, methods=["GET"]),
            Route(f"{self.path_prefix}/token", self.handle_token, methods=["POST"]),
            Route(f"{self.path_prefix}/revoke", self.handle_revoke, methods=["POST"]),
        ]
        routes.extend(self.identity.routes(self))
        return routes
