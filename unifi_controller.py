"""
unifi_controller.py — thin async client for the UniFi Network controller API.

Authenticates with an API key (UniFi OS, X-API-KEY) or a username/password
session login, and normalizes the controller's field names into stable
records for the MCP tools.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any

import httpx

from settings import Settings

logger = logging.getLogger("unifi-controller")

REQUEST_TIMEOUT = 15.0  # seconds
UNIFI_OS_PREFIX = "/proxy/network"
_MAC_RE = re.compile(r"^[0-9a-f]{2}([:-]?)(?:[0-9a-f]{2}\1){4}[0-9a-f]{2}$")


class ControllerError(Exception):
    """The controller could not be reached or refused the request."""


class ControllerNotConfigured(ControllerError):
    pass


def normalize_mac(mac: str) -> str:
    """Lowercase, colon-separated MAC. Raises ValueError for anything else."""
    value = (mac or "").strip().lower()
    if not _MAC_RE.match(value):
        raise ValueError(f"Invalid MAC address: {mac!r} (format: aa:bb:cc:dd:ee:ff)")
    digits = re.sub(r"[:-]", "", value)
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


def _iso(ts: Any) -> str | None:
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError):
        return None


def map_client(c: dict[str, Any]) -> dict[str, Any]:
    return {
        "mac": c.get("mac"),
        "hostname": c.get("hostname") or c.get("name") or "Unknown",
        "ip": c.get("ip") or "N/A",
        "oui": c.get("oui") or "",
        "is_wired": bool(c.get("is_wired", False)),
        "network": c.get("network") or "",
        "experience": c.get("satisfaction"),
        "signal_strength": c.get("signal"),
        "tx_rate": c.get("tx_rate"),
        "rx_rate": c.get("rx_rate"),
        "uptime": c.get("uptime") or 0,
        "last_seen": _iso(c.get("last_seen")),
        "tx_bytes": c.get("tx_bytes") or 0,
        "rx_bytes": c.get("rx_bytes") or 0,
        "ap_mac": c.get("ap_mac"),
        "is_blocked": bool(c.get("blocked", False)),
        "is_guest": bool(c.get("is_guest", False)),
    }


def map_device(d: dict[str, Any]) -> dict[str, Any]:
    return {
        "mac": d.get("mac"),
        "name": d.get("name") or "Unnamed AP",
        "model": d.get("model") or "Unknown",
        "ip": d.get("ip") or "N/A",
        "state": "connected" if d.get("state") == 1 else "disconnected",
        "adopted": bool(d.get("adopted", False)),
        "version": d.get("version") or "",
        "uptime": d.get("uptime") or 0,
        "num_clients": d.get("num_sta") or 0,
        "experience": d.get("satisfaction"),
        "channel_2g": d.get("ng-channel"),
        "channel_5g": d.get("na-channel"),
        "tx_power_2g": d.get("ng-tx_power"),
        "tx_power_5g": d.get("na-tx_power"),
    }


class UniFiController:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.site = settings.unifi_site
        self._client = client
        self._owns_client = client is None
        self._csrf_token: str | None = None
        self._login_lock = asyncio.Lock()
        self.connected = False

    @property
    def enabled(self) -> bool:
        return self.settings.unifi_enabled

    @property
    def _prefix(self) -> str:
        if self.settings.unifi_api_key or self.settings.unifi_is_unifi_os:
            return UNIFI_OS_PREFIX
        return ""

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"https://{self.settings.unifi_host}:{self.settings.unifi_port}",
                verify=self.settings.unifi_verify_ssl,
                timeout=REQUEST_TIMEOUT,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.unifi_api_key:
            headers["X-API-KEY"] = self.settings.unifi_api_key
        elif self._csrf_token:
            headers["X-CSRF-Token"] = self._csrf_token
        return headers

    # --- Connection ---

    async def connect(self) -> None:
        if not self.enabled:
            raise ControllerNotConfigured(
                "UniFi controller not configured. Set UNIFI_HOST and either "
                "UNIFI_API_KEY or UNIFI_USERNAME and UNIFI_PASSWORD."
            )
        async with self._login_lock:
            if self.connected:
                return
            if self.settings.unifi_api_key:
                self.connected = True
                return

            login_path = "/api/auth/login" if self.settings.unifi_is_unifi_os else "/api/login"
            try:
                resp = await self._http().post(login_path, json={
                    "username": self.settings.unifi_username,
                    "password": self.settings.unifi_password,
                })
            except httpx.HTTPError as e:
                raise ControllerError(f"UniFi controller unreachable: {type(e).__name__}") from e
            if resp.status_code >= 400:
                raise ControllerError(f"UniFi login failed (HTTP {resp.status_code})")
            self._csrf_token = resp.headers.get("x-csrf-token")
            self.connected = True
            logger.info("connected to controller %s", self.settings.unifi_host)

    async def ensure_connected(self) -> None:
        if not self.connected:
            await self.connect()

    async def _request(self, method: str, path: str, json: dict | None = None) -> Any:
        await self.ensure_connected()
        url = f"{self._prefix}{path}"
        resp = None
        for attempt in range(2):
            try:
                resp = await self._http().request(method, url, json=json, headers=self._headers())
            except httpx.HTTPError as e:
                raise ControllerError(f"UniFi controller unreachable: {type(e).__name__}") from e
            if resp.status_code == 401 and attempt == 0 and not self.settings.unifi_api_key:
                logger.info("controller session expired, logging in again")
                self.connected = False
                await self.connect()
                continue
            break

        if resp.status_code >= 400:
            raise ControllerError(f"UniFi controller returned HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise ControllerError("UniFi controller returned invalid JSON") from e

        # Classic API envelope: {"meta": {"rc": "ok"}, "data": [...]}
        if isinstance(payload, dict) and "data" in payload:
            meta = payload.get("meta") or {}
            if meta.get("rc", "ok") != "ok":
                raise ControllerError(f"UniFi controller error: {meta.get('msg', 'unknown')}")
            return payload["data"]
        return payload

    def _site_path(self, path: str) -> str:
        return f"/api/s/{self.site}/{path}"

    # --- Reads ---

    async def get_clients(self) -> list[dict[str, Any]]:
        data = await self._request("GET", self._site_path("stat/sta"))
        return [map_client(c) for c in data or []]

    async def get_client(self, mac: str) -> dict[str, Any] | None:
        data = await self._request("GET", self._site_path(f"stat/sta/{normalize_mac(mac)}"))
        return data[0] if data else None

    async def search_clients(self, query: str) -> list[dict[str, Any]]:
        q = query.strip().lower()
        return [
            c for c in await self.get_clients()
            if q in str(c["hostname"]).lower()
            or q in str(c["ip"]).lower()
            or q in str(c["mac"] or "").lower()
        ]

    async def get_access_points(self) -> list[dict[str, Any]]:
        data = await self._request("GET", self._site_path("stat/device"))
        return [map_device(d) for d in data or []]

    async def get_health(self) -> list[dict[str, Any]]:
        return await self._request("GET", self._site_path("stat/health"))

    async def get_site_stats(self) -> dict[str, Any] | None:
        sites = await self._request("GET", "/api/stat/sites") or []
        for site in sites:
            if site.get("name") == self.site:
                return site
        return sites[0] if sites else None

    async def get_blocked_clients(self) -> list[dict[str, Any]]:
        data = await self._request("GET", self._site_path("rest/user"))
        return [map_client(c) for c in data or [] if c.get("blocked")]

    # --- Actions ---

    async def _station_command(self, cmd: str, mac: str) -> None:
        await self._request("POST", self._site_path("cmd/stamgr"), {"cmd": cmd, "mac": mac})

    async def block_client(self, mac: str) -> dict[str, Any]:
        mac = normalize_mac(mac)
        await self._station_command("block-sta", mac)
        return {"success": True, "message": f"Blocked client {mac}"}

    async def unblock_client(self, mac: str) -> dict[str, Any]:
        mac = normalize_mac(mac)
        await self._station_command("unblock-sta", mac)
        return {"success": True, "message": f"Unblocked client {mac}"}

    async def reconnect_client(self, mac: str) -> dict[str, Any]:
        mac = normalize_mac(mac)
        await self._station_command("kick-sta", mac)
        return {"success": True, "message": f"Reconnected client {mac}"}

    async def restart_device(self, mac: str) -> dict[str, Any]:
        mac = normalize_mac(mac)
        await self._request("POST", self._site_path("cmd/devmgr"), {"cmd": "restart", "mac": mac})
        return {"success": True, "message": f"Restart initiated for device {mac}"}

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
