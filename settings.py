"""
settings.py — runtime configuration for the UniFi MCP gateway.

Values come from (lowest to highest precedence) the dataclass defaults, an
optional YAML file, and environment variables.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

AUTH_MODES = ("redirect", "consent")

_HTTP_URL = TypeAdapter(AnyHttpUrl)

_TRUE = {"1", "true", "yes", "on"}

# field name -> environment variable
_ENV_VARS = {
    "host": "HOST",
    "port": "PORT",
    "base_url": "BASE_URL",
    "oauth_path_prefix": "OAUTH_PATH_PREFIX",
    "auth_mode": "AUTH_MODE",
    "cf_access_team": "CF_ACCESS_TEAM",
    "cf_access_aud": "CF_ACCESS_AUD",
    "cf_access_client_id": "CF_ACCESS_CLIENT_ID",
    "cf_access_client_secret": "CF_ACCESS_CLIENT_SECRET",
    "allowed_emails": "ALLOWED_EMAILS",
    "allow_dev_consent": "ALLOW_DEV_CONSENT",
    "unifi_host": "UNIFI_HOST",
    "unifi_port": "UNIFI_PORT",
    "unifi_username": "UNIFI_USERNAME",
    "unifi_password": "UNIFI_PASSWORD",
    "unifi_api_key": "UNIFI_API_KEY",
    "unifi_site": "UNIFI_SITE",
    "unifi_verify_ssl": "UNIFI_VERIFY_SSL",
    "unifi_is_unifi_os": "UNIFI_IS_UNIFI_OS",
    "json_response": "MCP_JSON_RESPONSE",
    "audit_log": "AUDIT_LOG",
}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def _parse_emails(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    return [str(e).strip().lower() for e in value or [] if str(e).strip()]


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 3000
    base_url: str = ""
    oauth_path_prefix: str = ""
    auth_mode: str = "redirect"

    # Cloudflare Access (identity edge)
    cf_access_team: str | None = None
    cf_access_aud: str | None = None
    cf_access_client_id: str | None = None
    cf_access_client_secret: str | None = None
    allowed_emails: list[str] = field(default_factory=list)
    allow_dev_consent: bool = False

    # UniFi controller
    unifi_host: str | None = None
    unifi_port: int = 443
    unifi_username: str | None = None
    unifi_password: str | None = None
    unifi_api_key: str | None = None
    unifi_site: str = "default"
    unifi_verify_ssl: bool = False
    unifi_is_unifi_os: bool = False

    json_response: bool = False
    audit_log: str = str(Path.home() / ".unifi-mcp" / "audit.log")

    def __post_init__(self) -> None:
        self.port = int(self.port)
        self.unifi_port = int(self.unifi_port)
        self.base_url = (self.base_url or f"http://localhost:{self.port}").rstrip("/")
        try:
            _HTTP_URL.validate_python(self.base_url)
        except ValidationError:
            raise SystemExit(f"Invalid BASE_URL '{self.base_url}': must be an http(s) URL")
        prefix = (self.oauth_path_prefix or "").strip().rstrip("/")
        if prefix and not prefix.startswith("/"):
            prefix = "/" + prefix
        self.oauth_path_prefix = prefix
        self.auth_mode = (self.auth_mode or "redirect").strip().lower()
        if self.auth_mode not in AUTH_MODES:
            raise SystemExit(
                f"Invalid AUTH_MODE '{self.auth_mode}'. "
                f"Valid options: {', '.join(AUTH_MODES)}"
            )
        self.allowed_emails = _parse_emails(self.allowed_emails)
        for name in ("allow_dev_consent", "unifi_verify_ssl",
                     "unifi_is_unifi_os", "json_response"):
            setattr(self, name, _parse_bool(getattr(self, name)))

    # --- Derived flags (booleans only; these feed /health) ---

    @property
    def unifi_enabled(self) -> bool:
        has_credentials = bool(self.unifi_api_key) or bool(
            self.unifi_username and self.unifi_password
        )
        return bool(self.unifi_host) and has_credentials

    @property
    def edge_configured(self) -> bool:
        if not self.cf_access_team:
            return False
        if self.auth_mode == "redirect":
            return bool(self.cf_access_client_id and self.cf_access_client_secret)
        return True

    @property
    def team_domain(self) -> str | None:
        if not self.cf_access_team:
            return None
        return f"{self.cf_access_team}.cloudflareaccess.com"

    @property
    def public_host(self) -> str | None:
        return urlparse(self.base_url).hostname

    @property
    def edge_domains(self) -> list[str]:
        """Origins the identity edge may send; only this deployment's own team."""
        return [self.team_domain] if self.team_domain else []


def _load_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise SystemExit(f"Config file not found: {config_path}")
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid config file: expected a mapping in {config_path}")
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise SystemExit(f"Unknown keys in {config_path}: {', '.join(unknown)}")
    return raw


def load_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from an optional YAML file overlaid with the environment."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("UNIFI_MCP_CONFIG") or None

    values: dict[str, Any] = {}
    if config_path:
        values.update(_load_yaml(Path(config_path).expanduser()))

    for name, var in _ENV_VARS.items():
        raw = env.get(var)
        if raw is not None and raw != "":
            values[name] = raw

    try:
        return Settings(**values)
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Invalid configuration: {e}")
