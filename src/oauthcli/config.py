"""Configuration resolution with flag / environment / ``.env`` precedence.

Every setting is resolved independently (high to low):

1. CLI flag
2. Environment variable (``SERVER_URL``, ``CLIENT_ID``, ...)
3. ``.env`` file in the working directory (read with python-dotenv, never
   written back into ``os.environ``)
4. Built-in default

The result is an immutable :class:`~oauthcli.models.ClientConfig` that is
passed explicitly to :class:`~oauthcli.auth.flow.AuthFlow` and
:class:`~oauthcli.auth.token_store.TokenStore`.

The module also provides the XDG-aware data directory used for crash logs
(:func:`get_data_dir`).
"""

from __future__ import annotations

import os
import platform
import uuid
from pathlib import Path
from typing import Mapping, Optional, Union
from urllib.parse import urlparse

from dotenv import dotenv_values

from oauthcli.exceptions import ConfigError
from oauthcli.models import ClientConfig

_APP_NAME = "oauth-cli"

DEFAULT_SERVER_URL = "http://localhost:8080"
DEFAULT_CALLBACK_PORT = 8888
DEFAULT_SCOPE = "read write"
DEFAULT_TOKEN_FILE = ".authgate-tokens.json"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform follows the XDG Base Directory layout (Linux/BSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/oauth-cli/`` (default ``~/.local/share/oauth-cli/``).
    On macOS/Windows: ``~/.oauth-cli/``.
    """
    if _is_xdg_platform():
        env_value = os.environ.get("XDG_DATA_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".local" / "share"
        path = base / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Validation ---


def validate_server_url(raw_url: str) -> None:
    """Check that *raw_url* is an absolute http(s) URL with a host.

    Raises:
        ConfigError: With a message naming the problem.
    """
    if not raw_url:
        raise ConfigError("Invalid SERVER_URL: server URL cannot be empty")
    parsed = urlparse(raw_url)
    if parsed.scheme not in ("http", "https"):
        raise ConfigError(
            f"Invalid SERVER_URL: URL scheme must be http or https, got: {parsed.scheme!r}"
        )
    if not parsed.netloc:
        raise ConfigError("Invalid SERVER_URL: URL must include a host")


def config_warnings(config: ClientConfig) -> list[str]:
    """Return non-fatal warnings about *config* for the CLI to display."""
    warnings: list[str] = []
    if config.server_url.lower().startswith("http://"):
        warnings.append(
            "Using HTTP instead of HTTPS. Tokens will be transmitted in plaintext! "
            "This is only safe for local development."
        )
    try:
        uuid.UUID(config.client_id)
    except ValueError:
        warnings.append(f"CLIENT_ID doesn't appear to be a valid UUID: {config.client_id}")
    return warnings


# --- Precedence resolution ---


def _parse_port(raw: Optional[Union[str, int]]) -> int:
    try:
        port = int(raw) if raw is not None else DEFAULT_CALLBACK_PORT
    except ValueError:
        return DEFAULT_CALLBACK_PORT
    return port if port > 0 else DEFAULT_CALLBACK_PORT


def resolve_config(
    server_url: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    callback_port: Optional[int] = None,
    scope: Optional[str] = None,
    token_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    dotenv_path: Union[str, Path, None] = ".env",
) -> ClientConfig:
    """Resolve the effective client configuration.

    Args:
        server_url, client_id, client_secret, redirect_uri, callback_port,
        scope, token_file: CLI flag values; ``None`` or empty means unset.
        environ: Environment mapping (defaults to ``os.environ``).
        dotenv_path: ``.env`` file to consult; ``None`` disables it.

    Returns:
        The validated :class:`~oauthcli.models.ClientConfig`.

    Raises:
        ConfigError: If no client id is configured or the server URL is
            malformed.
    """
    env = os.environ if environ is None else environ
    dotenv: dict[str, Optional[str]] = {}
    if dotenv_path is not None and Path(dotenv_path).is_file():
        dotenv = dict(dotenv_values(dotenv_path))

    def pick(flag_value: Optional[str], key: str, default: str) -> str:
        if flag_value:
            return flag_value
        if env.get(key):
            return env[key]
        if dotenv.get(key):
            return dotenv[key] or default
        return default

    port_flag = str(callback_port) if callback_port else None
    port = _parse_port(pick(port_flag, "CALLBACK_PORT", str(DEFAULT_CALLBACK_PORT)))

    config = ClientConfig(
        server_url=pick(server_url, "SERVER_URL", DEFAULT_SERVER_URL),
        client_id=pick(client_id, "CLIENT_ID", ""),
        client_secret=pick(client_secret, "CLIENT_SECRET", ""),
        callback_port=port,
        # Default depends on the port, so it is computed after the port.
        redirect_uri=pick(redirect_uri, "REDIRECT_URI", f"http://localhost:{port}/callback"),
        scope=pick(scope, "SCOPE", DEFAULT_SCOPE),
        token_file=pick(token_file, "TOKEN_FILE", DEFAULT_TOKEN_FILE),
    )

    validate_server_url(config.server_url)
    if not config.client_id:
        raise ConfigError(
            "CLIENT_ID not set. Provide it via --client-id, the CLIENT_ID "
            "environment variable, or a CLIENT_ID entry in .env"
        )
    return config
