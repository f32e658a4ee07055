"""Tests for settings.py."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from settings import Settings, load_settings


class TestSettingsDefaults:
    def test_base_url_follows_port(self):
        assert Settings(port=4000).base_url == "http://localhost:4000"

    def test_base_url_trailing_slash_stripped(self):
        assert Settings(base_url="https://mcp.example.com/").base_url == "https://mcp.example.com"

    @pytest.mark.parametrize("raw,expected", [
        ("", ""), ("oauth", "/oauth"), ("/oauth/", "/oauth"), ("/oauth", "/oauth"),
    ])
    def test_path_prefix_normalized(self, raw, expected):
        assert Settings(oauth_path_prefix=raw).oauth_path_prefix == expected

    @pytest.mark.parametrize("url", ["mcp.example.com", "ftp://mcp.example.com"])
    def test_invalid_base_url(self, url):
        with pytest.raises(SystemExit, match="Invalid BASE_URL"):
            Settings(base_url=url)

    def test_invalid_auth_mode(self):
        with pytest.raises(SystemExit, match="Invalid AUTH_MODE"):
            Settings(auth_mode="magic")

    def test_allowed_emails_from_string(self):
        s = Settings(allowed_emails=" Alice@Example.com ,, bob@example.com")
        assert s.allowed_emails == ["alice@example.com", "bob@example.com"]

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("YES", True), ("on", True),
        ("false", False), ("0", False), ("", False), ("nope", False),
    ])
    def test_boolean_parsing(self, raw, expected):
        assert Settings(unifi_verify_ssl=raw).unifi_verify_ssl is expected


class TestDerivedFlags:
    def test_unifi_enabled_with_api_key(self):
        assert Settings(unifi_host="unifi.local", unifi_api_key="k").unifi_enabled

    def test_unifi_enabled_with_credentials(self):
        assert Settings(unifi_host="unifi.local", unifi_username="u",
                        unifi_password="p").unifi_enabled

    def test_unifi_disabled_without_credentials(self):
        assert not Settings(unifi_host="unifi.local", unifi_username="u").unifi_enabled
        assert not Settings(unifi_api_key="k").unifi_enabled

    def test_edge_configured_redirect_needs_client(self):
        assert not Settings(cf_access_team="acme").edge_configured
        assert Settings(cf_access_team="acme", cf_access_client_id="i",
                        cf_access_client_secret="s").edge_configured

    def test_edge_configured_consent_needs_team(self):
        assert Settings(auth_mode="consent", cf_access_team="acme").edge_configured
        assert not Settings(auth_mode="consent").edge_configured

    def test_edge_domains(self):
        s = Settings(cf_access_team="acme", base_url="https://mcp.example.com")
        assert s.edge_domains == ["acme.cloudflareaccess.com"]
        assert s.public_host == "mcp.example.com"

    def test_edge_domains_never_trust_every_access_team(self):
        assert Settings().edge_domains == []
        assert "cloudflareaccess.com" not in Settings(cf_access_team="acme").edge_domains


class TestLoadSettings:
    def test_environment(self):
        s = load_settings(environ={
            "PORT": "8080",
            "UNIFI_HOST": "unifi.local",
            "UNIFI_API_KEY": "k",
            "UNIFI_VERIFY_SSL": "true",
            "ALLOWED_EMAILS": "alice@example.com",
        })
        assert s.port == 8080
        assert s.unifi_verify_ssl is True
        assert s.unifi_enabled
        assert s.allowed_emails == ["alice@example.com"]

    def test_empty_env_values_ignored(self):
        s = load_settings(environ={"UNIFI_SITE": ""})
        assert s.unifi_site == "default"

    def test_yaml_then_environment(self, tmp_path):
        config = tmp_path / "unifi-mcp.yaml"
        config.write_text(
            "port: 9000\n"
            "unifi_site: office\n"
            "allowed_emails:\n"
            "  - alice@example.com\n"
        )
        s = load_settings(config, environ={"UNIFI_SITE": "lab"})
        assert s.port == 9000
        assert s.unifi_site == "lab"
        assert s.allowed_emails == ["alice@example.com"]

    def test_config_path_from_environment(self, tmp_path):
        config = tmp_path / "unifi-mcp.yaml"
        config.write_text("auth_mode: consent\n")
        s = load_settings(environ={"UNIFI_MCP_CONFIG": str(config)})
        assert s.auth_mode == "consent"

    def test_unknown_yaml_key(self, tmp_path):
        config = tmp_path / "unifi-mcp.yaml"
        config.write_text("unifi_hots: typo\n")
        with pytest.raises(SystemExit, match="unifi_hots"):
            load_settings(config, environ={})

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(SystemExit, match="not found"):
            load_settings(tmp_path / "missing.yaml", environ={})

    def test_non_mapping_yaml(self, tmp_path):
        config = tmp_path / "unifi-mcp.yaml"
        config.write_text("- just\n- a list\n")
        with pytest.raises(SystemExit, match="expected a mapping"):
            load_settings(config, environ={})

    def test_bad_port(self):
        with pytest.raises(SystemExit, match="Invalid configuration"):
            load_settings(environ={"PORT": "eighty"})
