"""
oauth_errors.py — the closed set of OAuth error responses.

Every error the authorization server can return is an OAuthErrorKind, so the
``{error, error_description}`` shape and its HTTP status stay consistent
across endpoints.
"""

from enum import Enum

from starlette.responses import JSONResponse


class OAuthErrorKind(Enum):
    INVALID_REQUEST = ("invalid_request", 400)
    INVALID_CLIENT = ("invalid_client", 400)
    INVALID_GRANT = ("invalid_grant", 400)
    UNAUTHORIZED_CLIENT = ("unauthorized_client", 400)
    UNSUPPORTED_GRANT_TYPE = ("unsupported_grant_type", 400)
    UNSUPPORTED_RESPONSE_TYPE = ("unsupported_response_type", 400)
    INVALID_STATE = ("invalid_state", 400)
    ACCESS_DENIED = ("access_denied", 403)
    INVALID_TOKEN = ("invalid_token", 401)
    TOO_MANY_REQUESTS = ("too_many_requests", 429)
    SERVER_ERROR = ("server_error", 500)
    TOKEN_EXCHANGE_FAILED = ("token_exchange_failed", 502)
    TEMPORARILY_UNAVAILABLE = ("temporarily_unavailable", 503)

    def __init__(self, code: str, status_code: int):
        self.code = code
        self.status_code = status_code


class OAuthError(Exception):
    def __init__(self, kind: OAuthErrorKind, description: str = "",
                 status_code: int | None = None):
        super().__init__(f"{kind.code}: {description}" if description else kind.code)
        self.kind = kind
        self.description = description
        self.status_code = status_code or kind.status_code

    @property
    def code(self) -> str:
        return self.kind.code

    def to_dict(self) -> dict[str, str]:
        data = {"error": self.kind.code}
        if self.description:
            data["error_description"] = self.description
        return data

    def to_response(self, headers: dict[str, str] | None = None) -> JSONResponse:
        return JSONResponse(
            self.to_dict(),
            status_code=self.status_code,
            headers={"Cache-Control": "no-store", **(headers or {})},
        )


def invalid_request(description: str) -> OAuthError:
    return OAuthError(OAuthErrorKind.INVALID_REQUEST, description)


def invalid_grant(description: str) -> OAuthError:
    return OAuthError(OAuthErrorKind.INVALID_GRANT, description)
