"""
identity.py — how the end user behind an /authorize request is confirmed.

Two strategies share the AuthorizationCore contract:

  EdgeRedirectIdentity   — redirect the browser through Cloudflare Access
                           (OIDC authorization code flow), then exchange the
                           edge's code server-to-server and read /userinfo.
  TrustedHeaderIdentity  — render a consent page behind Cloudflare Access and
                           read the identity the edge already verified
                           (Cf-Access-* headers); mint the code on approval.

One strategy is selected per deployment by settings.auth_mode.
"""

import html as html_mod
import logging
from typing import TYPE_CHECKING

import anyio.to_thread
import httpx
import jwt
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response
from starlette.routing import Route

from oauth_errors import OAuthError, OAuthErrorKind, invalid_request
from oauth_store import PendingAuthorization, mint_token
from settings import Settings
from unifi_oauth import _audit, construct_redirect_uri

if TYPE_CHECKING:
    from unifi_oauth import AuthorizationCore

logger = logging.getLogger("unifi-identity")

EDGE_TIMEOUT = 10.0  # seconds
EMAIL_HEADER = "cf-access-authenticated-user-email"
ASSERTION_HEADER = "cf-access-jwt-assertion"
DEV_USER = "dev@localhost"


class IdentityEdgeError(Exception):
    """The identity edge could not confirm the user."""


def _normalize_email(value: object) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().lower()


def email_allowed(email: str, allowed_emails: list[str]) -> bool:
    """An empty allow-list admits every identity the edge vouches for."""
    return not allowed_emails or email.lower() in allowed_emails


class IdentityStrategy:
    """Base class: confirm the user for a parked PendingAuthorization."""

    name = "none"

    def __init__(self, allowed_emails: list[str] | None = None, path_prefix: str = ""):
        self.allowed_emails = list(allowed_emails or [])
        self.path_prefix = path_prefix
        self._core: "AuthorizationCore | None" = None

    @property
    def configured(self) -> bool:
        return False

    @property
    def core(self) -> "AuthorizationCore":
        if self._core is None:
            raise RuntimeError("identity strategy is not bound to an AuthorizationCore")
        return self._core

    async def start(self, request: Request, state: str,
                    pending: PendingAuthorization) -> Response:
        raise NotImplementedError

    def routes(self, core: "AuthorizationCore") -> list[Route]:
        self._core = core
        return []

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Redirect through the edge (OIDC)
# ---------------------------------------------------------------------------

class EdgeRedirectIdentity(IdentityStrategy):
    """Cloudflare Access as an OIDC provider (SaaS application)."""

    name = "redirect"

    def __init__(
        self,
        team: str | None,
        client_id: str | None,
        client_secret: str | None,
        base_url: str,
        path_prefix: str = "",
        allowed_emails: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(allowed_emails, path_prefix)
        self.team = team
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = f"{base_url.rstrip('/')}{path_prefix}/callback"
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def configured(self) -> bool:
        return bool(self.team and self.client_id and self.client_secret)

    @property
    def oidc_base(self) -> str:
        return (f"https://{self.team}.cloudflareaccess.com"
                f"/cdn-cgi/access/sso/oidc/{self.client_id}")

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.oidc_base}/authorization"

    @property
    def token_endpoint(self) -> str:
        return f"{self.oidc_base}/token"

    @property
    def userinfo_endpoint(self) -> str:
        return f"{self.oidc_base}/userinfo"

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=EDGE_TIMEOUT)
        return self._http

    async def start(self, request: Request, state: str,
                    pending: PendingAuthorization) -> Response:
        location = construct_redirect_uri(
            self.authorization_endpoint,
            response_type="code",
            client_id=self.client_id,
            redirect_uri=self.callback_url,
            scope="openid email profile",
            state=state,
        )
        return RedirectResponse(location, status_code=302)

    async def resolve_user(self, code: str) -> str:
        """Exchange the edge's code and fetch the user's email from /userinfo."""
        client = self._client()
        try:
            token_resp = await client.post(
                self.token_endpoint,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.callback_url,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                headers={"Accept": "application/json"},
            )
            token_resp.raise_for_status()
            edge_token = token_resp.json().get("access_token")
            if not edge_token:
                raise IdentityEdgeError("token response carried no access_token")

            info_resp = await client.get(
                self.userinfo_endpoint,
                headers={"Authorization": f"Bearer {edge_token}",
                         "Accept": "application/json"},
            )
            info_resp.raise_for_status()
            email = _normalize_email(info_resp.json().get("email"))
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise IdentityEdgeError(f"{type(e).__name__}: {e}") from e
        if not email:
            raise IdentityEdgeError("userinfo response carried no email")
        return email

    async def handle_callback(self, request: Request) -> Response:
        try:
            return await self._callback(request)
        except OAuthError as e:
            return e.to_response()

    async def _callback(self, request: Request) -> Response:
        params = request.query_params
        state = params.get("state", "")
        error = params.get("error")

        if error:
            logger.warning("callback: identity edge returned error=%s", error)
            if state and self.core.get_pending(state) is not None:
                return RedirectResponse(
                    self.core.deny_authorization(state, "Identity provider denied the request"),
                    status_code=302,
                )
            raise OAuthError(OAuthErrorKind.ACCESS_DENIED,
                             f"Identity provider returned error: {error}")

        code = params.get("code", "")
        if not code or not state:
            raise invalid_request("Missing code or state")

        # Single-use: gone before the network round trip, whatever happens next.
        pending = self.core.take_pending(state)

        try:
            user = await self.resolve_user(code)
        except IdentityEdgeError as e:
            logger.warning("callback: edge exchange failed: %s", e)
            _audit("edge_exchange_failed", client_id=pending.client_id)
            raise OAuthError(OAuthErrorKind.TOKEN_EXCHANGE_FAILED,
                             "Failed to authenticate with the identity provider.")

        if not email_allowed(user, self.allowed_emails):
            _audit("authorize_rejected", client_id=pending.client_id,
                   user=user, reason="not_allowed")
            raise OAuthError(OAuthErrorKind.ACCESS_DENIED,
                             "This identity is not authorized for this server.")

        return RedirectResponse(self.core.issue_code(pending, user), status_code=302)

    def routes(self, core: "AuthorizationCore") -> list[Route]:
        super().routes(core)
        return [Route(f"{self.path_prefix}/callback", self.handle_callback, methods=["GET"])]

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None


# ---------------------------------------------------------------------------
# Consent page behind the edge (trusted headers)
# ---------------------------------------------------------------------------

class TrustedHeaderIdentity(IdentityStrategy):
    """Consent page reading the identity Cloudflare Access already verified.

    With an Application Audience tag configured, the signed
    Cf-Access-Jwt-Assertion is verified against the team's JWKS and the plain
    email header is ignored.
    """

    name = "consent"

    def __init__(
        self,
        team: str | None,
        aud: str | None = None,
        path_prefix: str = "",
        allowed_emails: list[str] | None = None,
        allow_dev_consent: bool = False,
        jwks_client: jwt.PyJWKClient | None = None,
    ):
        super().__init__(allowed_emails, path_prefix)
        self.team = team
        self.aud = aud
        self.allow_dev_consent = allow_dev_consent
        self._jwks = jwks_client
        if self._jwks is None and team and aud:
            self._jwks = jwt.PyJWKClient(
                f"https://{team}.cloudflareaccess.com/cdn-cgi/access/certs"
            )

    @property
    def configured(self) -> bool:
        return bool(self.team) or self.allow_dev_consent

    def _verify_assertion(self, assertion: str) -> dict:
        signing_key = self._jwks.get_signing_key_from_jwt(assertion)
        return jwt.decode(
            assertion,
            signing_key.key,
            algorithms=["RS256"],
            audience=self.aud,
            issuer=f"https://{self.team}.cloudflareaccess.com",
        )

    async def identify(self, request: Request) -> str | None:
        """The edge-asserted email for this request, or None."""
        if self.aud and self._jwks is not None:
            assertion = request.headers.get(ASSERTION_HEADER)
            if not assertion:
                return None
            try:
                # PyJWKClient fetches the key set with blocking I/O.
                claims = await anyio.to_thread.run_sync(self._verify_assertion, assertion)
            except jwt.PyJWTError as e:
                logger.warning("consent: edge assertion rejected: %s", e)
                _audit("assertion_rejected", reason=str(e))
                return None
            return _normalize_email(claims.get("email"))
        return _normalize_email(request.headers.get(EMAIL_HEADER))

    def consent_url(self, state: str) -> str:
        return f"{self.path_prefix}/consent?id={state}"

    async def start(self, request: Request, state: str,
                    pending: PendingAuthorization) -> Response:
        return RedirectResponse(self.consent_url(state), status_code=302)

    async def handle_consent(self, request: Request) -> Response:
        approval_id = request.query_params.get("id", "")
        pending = self.core.get_pending(approval_id) if approval_id else None
        if pending is None:
            return HTMLResponse(
                _error_page("Expired", "This authorization request has expired."),
                status_code=400,
            )

        user = await self.identify(request)
        if user and not email_allowed(user, self.allowed_emails):
            _audit("authorize_rejected", client_id=pending.client_id,
                   user=user, reason="not_allowed")
            return HTMLResponse(
                _error_page("Access Denied", f"Your email ({user}) is not authorized."),
                status_code=403,
            )

        csrf = mint_token(32)
        pending.csrf_token = csrf
        pending.user = user

        if not user:
            status = 200 if self.allow_dev_consent else 401
            return HTMLResponse(_auth_required_page(
                approval_id=approval_id,
                csrf_token=csrf,
                prefix=self.path_prefix,
                dev_allowed=self.allow_dev_consent,
            ), status_code=status)

        client = self.core.store.clients.get(pending.client_id)
        return HTMLResponse(_consent_page(
            client_name=(client.client_name if client else "") or pending.client_id,
            user=user,
            scopes=pending.scope.split(),
            approval_id=approval_id,
            csrf_token=csrf,
            prefix=self.path_prefix,
        ))

    async def _checked_pending(self, request: Request) -> tuple[str, PendingAuthorization | None, Response | None]:
        form = await request.form()
        approval_id = str(form.get("id", ""))
        csrf = str(form.get("csrf_token", ""))
        pending = self.core.get_pending(approval_id) if approval_id else None
        if pending is None:
            return approval_id, None, HTMLResponse(
                _error_page("Invalid", "Unknown or expired request."),
                status_code=400,
            )
        if not pending.csrf_token or csrf != pending.csrf_token:
            _audit("csrf_rejected", client_id=pending.client_id)
            return approval_id, None, HTMLResponse(
                _error_page("CSRF Error", "Invalid CSRF token."),
                status_code=403,
            )
        return approval_id, pending, None

    async def handle_approve(self, request: Request) -> Response:
        approval_id, pending, error = await self._checked_pending(request)
        if error is not None:
            return error

        # Re-read from the edge headers; never from the form.
        user = await self.identify(request)
        if user != pending.user:
            _audit("authorize_rejected", client_id=pending.client_id,
                   reason="identity_changed")
            return HTMLResponse(
                _error_page("Access Denied", "Identity changed during consent."),
                status_code=403,
            )
        if user is None:
            if not self.allow_dev_consent:
                return HTMLResponse(
                    _error_page("Authentication Required",
                                "This server requires Cloudflare Access authentication."),
                    status_code=401,
                )
            user = DEV_USER
        elif not email_allowed(user, self.allowed_emails):
            return HTMLResponse(
                _error_page("Access Denied", f"Your email ({user}) is not authorized."),
                status_code=403,
            )

        try:
            location = self.core.complete_authorization(approval_id, user)
        except OAuthError as e:
            return e.to_response()
        logger.info("consent: approved authorization for %s", user)
        return RedirectResponse(location, status_code=302)

    async def handle_deny(self, request: Request) -> Response:
        approval_id, pending, error = await self._checked_pending(request)
        if error is not None:
            return error
        try:
            location = self.core.deny_authorization(
                approval_id, "User denied the authorization request"
            )
        except OAuthError as e:
            return e.to_response()
        return RedirectResponse(location, status_code=302)

    def routes(self, core: "AuthorizationCore") -> list[Route]:
        super().routes(core)
        return [
            Route(f"{self.path_prefix}/consent", self.handle_consent, methods=["GET"]),
            Route(f"{self.path_prefix}/consent/approve", self.handle_approve, methods=["POST"]),
            Route(f"{self.path_prefix}/consent/deny", self.handle_deny, methods=["POST"]),
        ]


def build_identity(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
    jwks_client: jwt.PyJWKClient | None = None,
) -> IdentityStrategy:
    if settings.auth_mode == "consent":
        return TrustedHeaderIdentity(
            team=settings.cf_access_team,
            aud=settings.cf_access_aud,
            path_prefix=settings.oauth_path_prefix,
            allowed_emails=settings.allowed_emails,
            allow_dev_consent=settings.allow_dev_consent,
            jwks_client=jwks_client,
        )
    return EdgeRedirectIdentity(
        team=settings.cf_access_team,
        client_id=settings.cf_access_client_id,
        client_secret=settings.cf_access_client_secret,
        base_url=settings.base_url,
        path_prefix=settings.oauth_path_prefix,
        allowed_emails=settings.allowed_emails,
        http_client=http_client,
    )


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            max-width: 500px; margin: 50px auto; padding: 20px; }
        h1 { color: #333; border-bottom: 2px solid #f48120; padding-bottom: 10px; }
        .box { padding: 20px; background: #f5f5f5; border-radius: 8px; margin: 20px 0; }
        .email { font-weight: bold; color: #1976d2; }
        .scope { display: inline-block; background: #e3f2fd; padding: 4px 12px;
            border-radius: 4px; margin: 4px; }
        button { padding: 12px 24px; font-size: 16px; border: none; border-radius: 6px;
            cursor: pointer; margin-right: 10px; }
        .approve { background: #4caf50; color: white; }
        .deny { background: #757575; color: white; }
        .error { color: #c62828; }
"""


def _consent_page(client_name: str, user: str, scopes: list[str], approval_id: str,
                  csrf_token: str, prefix: str) -> str:
    safe_name = html_mod.escape(client_name)
    safe_user = html_mod.escape(user)
    safe_id = html_mod.escape(approval_id, quote=True)
    safe_csrf = html_mod.escape(csrf_token, quote=True)
    scope_tags = "".join(
        f'<span class="scope">{html_mod.escape(s)}</span>' for s in scopes or ["mcp:tools"]
    )
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Authorize - UniFi MCP Server</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <h1>Authorize Application</h1>
    <div class="box">
        <p>Signed in as: <span class="email">{safe_user}</span></p>
        <p><strong>{safe_name}</strong> is requesting access to your UniFi MCP Server.</p>
        <p>Requested permissions:</p>
        <p>{scope_tags}</p>
    </div>
    <form method="POST" action="{prefix}/consent/approve">
        <input type="hidden" name="id" value="{safe_id}">
        <input type="hidden" name="csrf_token" value="{safe_csrf}">
        <button type="submit" class="approve">Approve</button>
        <button type="submit" formaction="{prefix}/consent/deny" class="deny">Deny</button>
    </form>
</body>
</html>"""


def _auth_required_page(approval_id: str, csrf_token: str, prefix: str,
                        dev_allowed: bool) -> str:
    form = ""
    if dev_allowed:
        form = f"""
    <form method="POST" action="{prefix}/consent/approve">
        <input type="hidden" name="id" value="{html_mod.escape(approval_id, quote=True)}">
        <input type="hidden" name="csrf_token" value="{html_mod.escape(csrf_token, quote=True)}">
        <p>Development mode: <button type="submit">Continue without auth</button></p>
    </form>"""
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Authentication Required - UniFi MCP Server</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <h1>Authentication Required</h1>
    <div class="box">
        <p>This server requires Cloudflare Access authentication.</p>
        <p>Please access this server through your Cloudflare Access URL.</p>
    </div>{form}
</body>
</html>"""


def _error_page(title: str, message: str) -> str:
    safe_title = html_mod.escape(title)
    safe_msg = html_mod.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>UniFi MCP Server - {safe_title}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <h1 class="error">{safe_title}</h1>
    <p>{safe_msg}</p>
</body>
</html>"""
