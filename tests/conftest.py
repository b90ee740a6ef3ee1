"""Shared test fixtures for oauthcli.

Provides reusable fixtures for building configurations and token sets,
isolating the environment from the developer's real settings, managing
output state, and running CLI commands. These fixtures are automatically
discovered by pytest and available to all test modules without explicit
imports.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from oauthcli.models import ClientConfig, TokenSet
from oauthcli.output import OutputFormat, OutputManager, reset_output, set_output


CLIENT_ID = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    Prevents output configuration from one test leaking into another.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


_CONFIG_VARS = [
    "SERVER_URL",
    "CLIENT_ID",
    "CLIENT_SECRET",
    "REDIRECT_URI",
    "CALLBACK_PORT",
    "SCOPE",
    "TOKEN_FILE",
]


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Clears every configuration environment variable, points XDG_DATA_HOME
    into tmp_path, and changes the working directory to tmp_path so that a
    stray ``.env`` or token file in the repository never leaks into tests.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    for var in _CONFIG_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client_config(tmp_path: Path) -> ClientConfig:
    """A public-client configuration with its token file under tmp_path."""
    return ClientConfig(
        server_url="https://auth.example.com",
        client_id=CLIENT_ID,
        redirect_uri="http://localhost:8888/callback",
        callback_port=8888,
        scope="read write",
        token_file=str(tmp_path / "tokens.json"),
    )


def make_tokens(
    client_id: str = CLIENT_ID,
    access_token: str = "access-token-0123456789",
    refresh_token: str = "refresh-token-0123456789",
    expires_in: int = 3600,
) -> TokenSet:
    """Build a TokenSet expiring *expires_in* seconds from now (negative = expired)."""
    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        token_type="Bearer",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        client_id=client_id,
    )


@pytest.fixture
def token_factory():
    """Return :func:`make_tokens` for tests that need several token sets."""
    return make_tokens


@pytest.fixture
def valid_tokens() -> TokenSet:
    return make_tokens()


@pytest.fixture
def expired_tokens() -> TokenSet:
    return make_tokens(expires_in=-60)


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a quiet PLAIN-format OutputManager for tests that ignore output."""
    output = OutputManager(format=OutputFormat.PLAIN, no_color=True, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
