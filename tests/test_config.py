"""Tests for configuration resolution."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from oauthcli.config import (
    DEFAULT_CALLBACK_PORT,
    config_warnings,
    get_data_dir,
    resolve_config,
    validate_server_url,
)
from oauthcli.exceptions import ConfigError
from oauthcli.models import ClientConfig

UUID = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"


class TestPrecedence:
    def test_defaults(self, isolated_env: Path) -> None:
        config = resolve_config(client_id=UUID, environ={})

        assert config.server_url == "http://localhost:8080"
        assert config.callback_port == 8888
        assert config.redirect_uri == "http://localhost:8888/callback"
        assert config.scope == "read write"
        assert config.token_file == ".authgate-tokens.json"
        assert config.is_public_client

    def test_missing_client_id(self, isolated_env: Path) -> None:
        with pytest.raises(ConfigError, match="CLIENT_ID not set"):
            resolve_config(environ={})

    def test_env_overrides_default(self, isolated_env: Path) -> None:
        config = resolve_config(
            environ={"CLIENT_ID": UUID, "SCOPE": "profile", "CLIENT_SECRET": "s"}
        )
        assert config.client_id == UUID
        assert config.scope == "profile"
        assert not config.is_public_client

    def test_flag_overrides_env(self, isolated_env: Path) -> None:
        config = resolve_config(
            client_id="from-flag",
            server_url="https://flag.example.com",
            environ={"CLIENT_ID": "from-env", "SERVER_URL": "https://env.example.com"},
        )
        assert config.client_id == "from-flag"
        assert config.server_url == "https://flag.example.com"

    def test_dotenv_is_lowest_non_default(self, isolated_env: Path) -> None:
        (isolated_env / ".env").write_text(
            "CLIENT_ID=from-dotenv\nSCOPE=dotenv-scope\nTOKEN_FILE=dotenv.json\n"
        )

        config = resolve_config(environ={"SCOPE": "env-scope"})

        assert config.client_id == "from-dotenv"
        assert config.scope == "env-scope"
        assert config.token_file == "dotenv.json"

    def test_dotenv_does_not_touch_environ(self, isolated_env: Path) -> None:
        (isolated_env / ".env").write_text(f"CLIENT_ID={UUID}\n")
        resolve_config()
        assert "CLIENT_ID" not in os.environ

    def test_dotenv_disabled(self, isolated_env: Path) -> None:
        (isolated_env / ".env").write_text(f"CLIENT_ID={UUID}\n")
        with pytest.raises(ConfigError):
            resolve_config(environ={}, dotenv_path=None)

    def test_empty_values_count_as_unset(self, isolated_env: Path) -> None:
        config = resolve_config(client_id=UUID, scope="", environ={"SCOPE": ""})
        assert config.scope == "read write"

    def test_reads_process_environment_by_default(
        self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CLIENT_ID", UUID)
        assert resolve_config().client_id == UUID


class TestPort:
    def test_redirect_uri_follows_port(self, isolated_env: Path) -> None:
        config = resolve_config(client_id=UUID, callback_port=9999, environ={})
        assert config.callback_port == 9999
        assert config.redirect_uri == "http://localhost:9999/callback"

    def test_port_from_env(self, isolated_env: Path) -> None:
        config = resolve_config(environ={"CLIENT_ID": UUID, "CALLBACK_PORT": "7777"})
        assert config.callback_port == 7777

    @pytest.mark.parametrize("raw", ["not-a-port", "-1", "0"])
    def test_invalid_port_falls_back(self, isolated_env: Path, raw: str) -> None:
        config = resolve_config(environ={"CLIENT_ID": UUID, "CALLBACK_PORT": raw})
        assert config.callback_port == DEFAULT_CALLBACK_PORT
        assert config.redirect_uri == "http://localhost:8888/callback"

    def test_explicit_redirect_uri_wins(self, isolated_env: Path) -> None:
        config = resolve_config(
            client_id=UUID, redirect_uri="http://127.0.0.1:8888/oauth/cb", environ={}
        )
        assert config.redirect_uri == "http://127.0.0.1:8888/oauth/cb"
        assert config.callback_path == "/oauth/cb"


class TestValidation:
    @pytest.mark.parametrize(
        "url, message",
        [
            ("", "cannot be empty"),
            ("ftp://auth.example.com", "scheme must be http or https"),
            ("auth.example.com", "scheme must be http or https"),
            ("https://", "must include a host"),
        ],
    )
    def test_invalid_server_url(self, url: str, message: str) -> None:
        with pytest.raises(ConfigError, match=message):
            validate_server_url(url)

    def test_valid_server_url(self) -> None:
        validate_server_url("https://auth.example.com")
        validate_server_url("http://localhost:8080")

    def test_resolve_rejects_bad_server_url(self, isolated_env: Path) -> None:
        with pytest.raises(ConfigError, match="Invalid SERVER_URL"):
            resolve_config(client_id=UUID, server_url="not a url", environ={})


class TestWarnings:
    def test_http_and_non_uuid(self) -> None:
        config = ClientConfig(server_url="http://localhost:8080", client_id="my-app")
        warnings = config_warnings(config)
        assert len(warnings) == 2
        assert warnings[0].startswith("Using HTTP instead of HTTPS")
        assert "my-app" in warnings[1]

    def test_clean_config(self) -> None:
        config = ClientConfig(server_url="https://auth.example.com", client_id=UUID)
        assert config_warnings(config) == []


class TestEndpoints:
    def test_endpoints_strip_trailing_slash(self) -> None:
        config = ClientConfig(server_url="https://auth.example.com/", client_id=UUID)
        assert config.authorize_endpoint == "https://auth.example.com/oauth/authorize"
        assert config.token_endpoint == "https://auth.example.com/oauth/token"
        assert config.tokeninfo_endpoint == "https://auth.example.com/oauth/tokeninfo"


class TestDataDir:
    def test_xdg_data_home(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("oauthcli.config._is_xdg_platform", lambda: True)
        path = get_data_dir()
        assert path == isolated_env / "data" / "oauth-cli"
        assert path.is_dir()
