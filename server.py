#!/usr/bin/env python3
"""
UniFi MCP — remote MCP gateway for a UniFi Network controller.

Runs a streamable-http MCP server that exposes the controller (list and
search clients, block/unblock/reconnect clients, restart devices, inspect
health and access points) as tools. Access is gated by an OAuth 2.1
authorization server whose end-user step is delegated to Cloudflare Access.

  /.well-known/*  — discovery metadata (unauthenticated)
  /register, /authorize, /token, /revoke, identity callbacks
  /health         — liveness; booleans only
  /mcp            — Origin filter → Bearer gate → session multiplexer
"""

import argparse
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import anyio
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from bearer_gate import BearerGate, OriginFilter
from identity import IdentityStrategy, build_identity
from oauth_store import OAuthStore
from sessions import SessionMultiplexer
from settings import Settings, load_settings
from unifi_controller import ControllerError, UniFiController
from unifi_oauth import AuthorizationCore

logger = logging.getLogger("unifi-mcp")

SERVER_NAME = "unifi-mcp-server"
_HEALTH_STRING_KEYS = ("status", "timestamp")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


class NetworkTools:
    """The MCP tool surface. Each method becomes one tool.

    Controller failures are raised as ToolError so the result is flagged
    ``isError``; malformed MAC addresses are reported the same way.
    """

    def __init__(self, controller: UniFiController):
        self.controller = controller

    async def _call(self, op: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await op(*args)
        except ValueError as e:
            raise ToolError(f"Error: {e}") from e
        except ControllerError as e:
            logger.warning("controller call %s failed: %s", op.__name__, e)
            raise ToolError(f"Error: {e}") from e

    async def list_clients(self) -> str:
        """List all devices currently connected to the UniFi network."""
        clients = await self._call(self.controller.get_clients)
        return _dump({"count": len(clients), "clients": clients})

    async def get_client(self, mac: str) -> str:
        """Get detailed information about a specific client by MAC address.

        Args:
            mac: MAC address (format: aa:bb:cc:dd:ee:ff)
        """
        client = await self._call(self.controller.get_client, mac)
        if not client:
            return f"No client found with MAC: {mac}"
        return _dump(client)

    async def search_devices(self, query: str) -> str:
        """Search for devices by hostname, IP, or MAC address.

        Args:
            query: Case-insensitive substring to match
        """
        results = await self._call(self.controller.search_clients, query)
        return _dump({"query": query, "count": len(results), "results": results})

    async def list_access_points(self) -> str:
        """List all UniFi access points with status and metrics."""
        aps = await self._call(self.controller.get_access_points)
        return _dump({"count": len(aps), "accessPoints": aps})

    async def get_network_health(self) -> str:
        """Get overall network health statistics."""
        health = await self._call(self.controller.get_health)
        stats = await self._call(self.controller.get_site_stats)
        return _dump({"health": health, "siteStats": stats})

    async def block_client(self, mac: str) -> str:
        """Block a client device from the network by MAC address.

        Args:
            mac: MAC address to block
        """
        return _dump(await self._call(self.controller.block_client, mac))

    async def unblock_client(self, mac: str) -> str:
        """Unblock a previously blocked client device.

        Args:
            mac: MAC address to unblock
        """
        return _dump(await self._call(self.controller.unblock_client, mac))

    async def reconnect_client(self, mac: str) -> str:
        """Force a client to disconnect and reconnect.

        Args:
            mac: MAC address to reconnect
        """
        return _dump(await self._call(self.controller.reconnect_client, mac))

    async def restart_device(self, mac: str) -> str:
        """Restart a UniFi device (AP, switch, etc.) by MAC address.

        Args:
            mac: MAC address of device to restart
        """
        return _dump(await self._call(self.controller.restart_device, mac))

    async def list_blocked_clients(self) -> str:
        """List all clients currently blocked from the network."""
        blocked = await self._call(self.controller.get_blocked_clients)
        return _dump({"count": len(blocked), "blockedClients": blocked})

    async def echo(self, message: str) -> str:
        """Echoes back the provided message for testing.

        Args:
            message: Message to echo
        """
        return f"Echo: {message}"


TOOL_NAMES = (
    "list_clients",
    "get_client",
    "search_devices",
    "list_access_points",
    "get_network_health",
    "block_client",
    "unblock_client",
    "reconnect_client",
    "restart_device",
    "list_blocked_clients",
    "echo",
)


def create_mcp_server(controller: UniFiController) -> FastMCP:
    mcp = FastMCP(
        SERVER_NAME,
        instructions=(
            "UniFi network management. Clients and devices are addressed by "
            "MAC address (aa:bb:cc:dd:ee:ff)."
        ),
    )
    tools = NetworkTools(controller)
    for name in TOOL_NAMES:
        mcp.add_tool(getattr(tools, name), name=name)
    return mcp


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class HealthLeakError(RuntimeError):
    """A /health field would expose a string value."""


def health_payload(settings: Settings) -> dict[str, Any]:
    # Booleans only: configuration values must never reach this endpoint.
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "unifi_enabled": settings.unifi_enabled is True,
        "oauth_enabled": settings.edge_configured is True,
        "auth_mode_redirect": settings.auth_mode == "redirect",
    }


def check_health_payload(payload: dict[str, Any]) -> None:
    for key, value in payload.items():
        if isinstance(value, str) and key not in _HEALTH_STRING_KEYS:
            raise HealthLeakError(f"health endpoint would leak string value for '{key}'")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

async def _internal_error(request: Request, exc: Exception) -> Response:
    logger.exception("unhandled error on %s %s", request.method, request.url.path,
                     exc_info=exc)
    return JSONResponse({"error": "internal_error"}, status_code=500)


def create_app(
    settings: Settings,
    *,
    store: OAuthStore | None = None,
    identity: IdentityStrategy | None = None,
    controller: UniFiController | None = None,
    server_factory: Callable[[], Any] | None = None,
) -> Starlette:
    store = store or OAuthStore()
    identity = identity or build_identity(settings)
    controller = controller or UniFiController(settings)
    core = AuthorizationCore(store, identity, settings.base_url, settings.oauth_path_prefix)

    if server_factory is None:
        def server_factory() -> Any:
            return create_mcp_server(controller)._mcp_server

    multiplexer = SessionMultiplexer(server_factory, json_response=settings.json_response)
    gated = BearerGate(multiplexer, core.validate_access_token, core.resource_metadata_url)
    mcp_endpoint = OriginFilter(
        gated,
        allowed_hosts=[settings.public_host] if settings.public_host else [],
        allowed_domains=settings.edge_domains,
    )

    async def health(request: Request) -> Response:
        payload = health_payload(settings)
        try:
            check_health_payload(payload)
        except HealthLeakError as e:
            logger.error("SECURITY: %s", e)
            return JSONResponse(
                {"status": "error", "message": "Internal configuration error"},
                status_code=500,
            )
        return JSONResponse(payload)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        try:
            async with multiplexer.run(), anyio.create_task_group() as tg:
                tg.start_soon(core.reap_forever)
                yield
                tg.cancel_scope.cancel()
        finally:
            await controller.aclose()
            await identity.aclose()
            logger.info("shutdown complete")

    routes = core.routes() + [
        Route("/health", health, methods=["GET"]),
        Route("/mcp", mcp_endpoint),
    ]
    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={Exception: _internal_error},
    )
    app.state.settings = settings
    app.state.core = core
    app.state.store = store
    app.state.multiplexer = multiplexer
    app.state.controller = controller
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _configure_audit_log(path: str) -> None:
    """Audit logger: JSON-lines to a file, kept out of the console log."""
    audit_log_path = Path(path).expanduser()
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_log_path)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("unifi-audit")
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def _startup_banner(settings: Settings) -> None:
    logger.info("unifi-mcp: base URL %s (auth mode: %s)", settings.base_url, settings.auth_mode)
    logger.info("unifi-mcp: OAuth endpoints under '%s'", settings.oauth_path_prefix or "/")
    if not settings.edge_configured:
        if settings.auth_mode == "consent" and settings.allow_dev_consent:
            logger.warning("Cloudflare Access not configured: DEV consent enabled, "
                           "authorizations are granted as an anonymous user")
        else:
            logger.warning("Cloudflare Access not configured: authorization requests "
                           "will be refused (503)")
    if not settings.allowed_emails:
        logger.warning("ALLOWED_EMAILS is empty: every identity the edge confirms is accepted")
    if not settings.unifi_enabled:
        logger.warning("UniFi controller not configured: tools will return errors")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="UniFi MCP server")
    parser.add_argument("--config", help="YAML config file (default: $UNIFI_MCP_CONFIG)")
    parser.add_argument("--host", help="bind address (overrides HOST)")
    parser.add_argument("--port", type=int, help="listen port (overrides PORT)")
    parser.add_argument("--log-level", default="info",
                        choices=["debug", "info", "warning", "error"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Command-line flags win over both the environment and the config file.
    environ = dict(os.environ)
    if args.host:
        environ["HOST"] = args.host
    if args.port:
        environ["PORT"] = str(args.port)
    settings = load_settings(args.config, environ)

    _configure_audit_log(settings.audit_log)
    _startup_banner(settings)

    import uvicorn

    app = create_app(settings)
    logger.info("unifi-mcp: starting HTTP server on %s:%s", settings.host, settings.port)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=args.log_level,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    asyncio.run(server.serve())


if __name__ == "__main__":
    main()
