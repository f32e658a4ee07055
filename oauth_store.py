"""
oauth_store.py — in-memory tables for OAuth clients, codes and tokens.

Every table is process-lifetime only and guarded by its own lock. Expiring
tables check expiry on every read: an expired entry is evicted and reported
as absent, so callers never see stale artifacts.
"""

import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterator, TypeVar

PENDING_TTL = 600  # 10 minutes
AUTH_CODE_TTL = 600  # 10 minutes
ACCESS_TOKEN_TTL = 3600  # 1 hour
REFRESH_TOKEN_TTL = 7 * 86400  # 7 days


def mint_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class RegisteredClient:
    client_id: str
    client_secret: str | None = None
    redirect_uris: list[str] = field(default_factory=list)
    client_name: str = ""
    created_at: float = 0.0
    auto_registered: bool = False

    @property
    def is_public(self) -> bool:
        return self.client_secret is None


@dataclass
class PendingAuthorization:
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    state: str | None
    created_at: float
    expires_at: float
    scope: str = ""
    resource: str | None = None
    user: str | None = None
    csrf_token: str | None = None


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    user: str
    redirect_uri: str
    code_challenge: str
    expires_at: float
    scope: str = ""
    resource: str | None = None


@dataclass
class AccessToken:
    token: str
    client_id: str
    user: str
    expires_at: float
    scope: str = ""
    resource: str | None = None


@dataclass
class RefreshToken:
    token: str
    client_id: str
    user: str
    expires_at: float
    scope: str = ""


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

T = TypeVar("T")


class ExpiringTable(Generic[T]):
    """Lock-guarded dict of entities carrying an ``expires_at`` timestamp."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._items: dict[str, T] = {}
        self._lock = threading.Lock()

    def _expired(self, item: T) -> bool:
        return item.expires_at <= self._clock()

    def put(self, key: str, item: T) -> None:
        with self._lock:
            self._items[key] = item

    def get(self, key: str) -> T | None:
        with self._lock:
            item = self._items.get(key)
            if item is not None and self._expired(item):
                del self._items[key]
                return None
            return item

    def pop(self, key: str) -> T | None:
        """Take an entry out of the table. Expired entries are dropped too."""
        with self._lock:
            item = self._items.pop(key, None)
        if item is None or self._expired(item):
            return None
        return item

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def purge_expired(self) -> int:
        with self._lock:
            expired = [k for k, v in self._items.items() if self._expired(v)]
            for k in expired:
                del self._items[k]
        return len(expired)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class ClientRegistry:
    """Registered OAuth clients. Entries are never removed."""

    def __init__(self) -> None:
        self._clients: dict[str, RegisteredClient] = {}
        self._lock = threading.Lock()

    def add(self, client: RegisteredClient) -> None:
        with self._lock:
            self._clients[client.client_id] = client

    def get(self, client_id: str) -> RegisteredClient | None:
        with self._lock:
            return self._clients.get(client_id)

    def add_redirect_uri(self, client_id: str, redirect_uri: str) -> None:
        with self._lock:
            client = self._clients[client_id]
            if redirect_uri not in client.redirect_uris:
                client.redirect_uris.append(redirect_uri)

    def count(self, *, auto_registered: bool) -> int:
        with self._lock:
            return sum(1 for c in self._clients.values()
                       if c.auto_registered == auto_registered)

    def __iter__(self) -> Iterator[RegisteredClient]:
        with self._lock:
            return iter(list(self._clients.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)


class OAuthStore:
    """All authorization-server state, owned by one AuthorizationCore."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.clients = ClientRegistry()
        self.pending: ExpiringTable[PendingAuthorization] = ExpiringTable(clock)
        self.codes: ExpiringTable[AuthorizationCode] = ExpiringTable(clock)
        self.access_tokens: ExpiringTable[AccessToken] = ExpiringTable(clock)
        self.refresh_tokens: ExpiringTable[RefreshToken] = ExpiringTable(clock)

    def purge_expired(self) -> int:
        return sum(
            table.purge_expired()
            for table in (self.pending, self.codes,
                          self.access_tokens, self.refresh_tokens)
        )
