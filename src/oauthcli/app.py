"""Typer application and CLI entry point for oauth-cli.

Global options mirror the configuration settings (each also readable from an
environment variable or ``.env``); sub-commands drive
:class:`~oauthcli.auth.flow.AuthFlow`:

* ``login``  -- reuse, refresh, or authorize, then show the token summary.
* ``status`` -- show the stored token without network traffic.
* ``verify`` -- ask the server's token-info endpoint about the stored token.
* ``call``   -- token-info call with refresh on 401 and re-authorization when
  the refresh token has expired.
* ``logout`` -- drop this client's entry from the token file.

:func:`main` is the console-script entry point declared in
``pyproject.toml``. SIGINT/SIGTERM set a cancellation event that unblocks a
pending browser wait; a second signal exits immediately.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, NoReturn, Optional

import typer
from rich.logging import RichHandler

from oauthcli import __version__
from oauthcli.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE

if TYPE_CHECKING:
    from oauthcli.auth import AuthFlow
    from oauthcli.client import RetryingClient
    from oauthcli.models import ClientConfig, TokenSet


app = typer.Typer(
    name="oauth-cli",
    help="OAuth 2.0 Authorization Code Flow (PKCE) client.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

_cancel_event = threading.Event()
"""Set by the signal handler; observed by the callback listener."""


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"oauth-cli {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    server_url: Optional[str] = typer.Option(
        None, "--server-url", help="OAuth server URL [env: SERVER_URL] (default: http://localhost:8080)."
    ),
    client_id: Optional[str] = typer.Option(
        None, "--client-id", help="OAuth client ID [env: CLIENT_ID] (required)."
    ),
    client_secret: Optional[str] = typer.Option(
        None,
        "--client-secret",
        help="Client secret for confidential clients [env: CLIENT_SECRET]; omit for public/PKCE clients.",
    ),
    redirect_uri: Optional[str] = typer.Option(
        None,
        "--redirect-uri",
        help="Registered redirect URI [env: REDIRECT_URI] (default: http://localhost:PORT/callback).",
    ),
    port: Optional[int] = typer.Option(
        None, "--port", help="Local callback port [env: CALLBACK_PORT] (default: 8888)."
    ),
    scope: Optional[str] = typer.Option(
        None, "--scope", help="Space-separated scopes [env: SCOPE] (default: 'read write')."
    ),
    token_file: Optional[str] = typer.Option(
        None, "--token-file", help="Token storage file [env: TOKEN_FILE] (default: .authgate-tokens.json)."
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output."),
) -> None:
    """Root callback executed before every sub-command.

    Installs the global :class:`~oauthcli.output.OutputManager`, routes
    library logging through Rich on stderr, and stores the raw flag values
    in ``ctx.obj``. Configuration is resolved lazily by each command so that
    ``--help`` works without a client id.
    """
    from oauthcli.output import OutputFormat, OutputManager, set_output

    output = OutputManager(
        format=OutputFormat.JSON if json_output else OutputFormat.AUTO,
        no_color=no_color,
        quiet=quiet,
    )
    set_output(output)
    _configure_logging(output.stderr_console, verbose)

    ctx.ensure_object(dict)
    ctx.obj["flags"] = {
        "server_url": server_url,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": redirect_uri,
        "callback_port": port,
        "scope": scope,
        "token_file": token_file,
    }


def _configure_logging(console: Any, verbose: bool) -> None:
    root = logging.getLogger("oauthcli")
    root.handlers.clear()
    root.addHandler(RichHandler(console=console, show_path=False, show_time=False))
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _fail(exc: Exception) -> NoReturn:
    """Report an :class:`~oauthcli.exceptions.OAuthCliError` and exit with its code."""
    from oauthcli.output import error

    error(str(exc))
    raise typer.Exit(code=getattr(exc, "exit_code", EXIT_GENERIC_FAILURE))


def _load_config(ctx: typer.Context) -> ClientConfig:
    from oauthcli.config import config_warnings, resolve_config
    from oauthcli.exceptions import ConfigError
    from oauthcli.output import warning

    try:
        config = resolve_config(**ctx.obj["flags"])
    except ConfigError as exc:
        _fail(exc)
    for message in config_warnings(config):
        warning(message)
    return config


def _print_token_summary(tokens: TokenSet) -> None:
    from oauthcli.output import print_table

    preview = tokens.access_token[:50]
    remaining = tokens.expires_at - datetime.now(timezone.utc)
    seconds = max(int(remaining.total_seconds()), 0)
    print_table(
        ["Field", "Value"],
        [
            ["Client ID", tokens.client_id],
            ["Access Token", f"{preview}..."],
            ["Token Type", tokens.token_type or "-"],
            ["Expires At", tokens.expires_at.isoformat()],
            ["Expires In", f"{seconds}s" if seconds else "expired"],
            ["Refresh Token", "yes" if tokens.refresh_token else "no"],
        ],
        title="Current Token Info",
    )


def _build_flow(config: ClientConfig, http: RetryingClient) -> AuthFlow:
    from oauthcli.auth import AuthFlow, TokenStore

    return AuthFlow(config, TokenStore(config.token_file), http, cancel=_cancel_event)


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


@app.command("login")
def login_command(ctx: typer.Context) -> None:
    """Reuse, refresh, or obtain tokens and show them."""
    from oauthcli.client import RetryingClient
    from oauthcli.exceptions import OAuthCliError
    from oauthcli.output import info, suggest

    config = _load_config(ctx)
    mode = "public (PKCE)" if config.is_public_client else "confidential"
    info(f"Client mode : {mode}")
    info(f"Server URL  : {config.server_url}")
    info(f"Client ID   : {config.client_id}")

    try:
        with RetryingClient() as http:
            tokens, _ = _build_flow(config, http).ensure_tokens()
    except OAuthCliError as exc:
        _fail(exc)

    _print_token_summary(tokens)
    suggest("Verify it: oauth-cli verify")


@app.command("status")
def status_command(ctx: typer.Context) -> None:
    """Show the stored token for the configured client (no network)."""
    from oauthcli.auth import TokenStore
    from oauthcli.exceptions import TokenLoadError, TokenNotFoundError
    from oauthcli.output import info, suggest

    config = _load_config(ctx)
    store = TokenStore(config.token_file)
    try:
        tokens = store.load(config.client_id)
    except TokenLoadError as exc:
        if isinstance(exc, TokenNotFoundError):
            others = store.client_ids()
            if others:
                info(f"Tokens are stored for other clients: {', '.join(others)}")
        suggest("Run: oauth-cli login")
        _fail(exc)
    _print_token_summary(tokens)


@app.command("verify")
def verify_command(ctx: typer.Context) -> None:
    """Verify the stored access token with the server's token-info endpoint."""
    from oauthcli.auth import TokenStore
    from oauthcli.client import RetryingClient
    from oauthcli.exceptions import OAuthCliError
    from oauthcli.output import format_response, info, success

    config = _load_config(ctx)
    try:
        tokens = TokenStore(config.token_file).load(config.client_id)
        info("Verifying token with server...")
        with RetryingClient() as http:
            token_info = _build_flow(config, http).verify_token(tokens.access_token)
    except OAuthCliError as exc:
        _fail(exc)
    success("Token verified successfully.")
    format_response(token_info)


@app.command("call")
def call_command(ctx: typer.Context) -> None:
    """Call the token-info API, refreshing on 401 and re-authorizing if needed."""
    from oauthcli.client import RetryingClient
    from oauthcli.exceptions import OAuthCliError, RefreshExpiredError
    from oauthcli.output import format_response, info, success

    config = _load_config(ctx)
    try:
        with RetryingClient() as http:
            flow = _build_flow(config, http)
            tokens, _ = flow.ensure_tokens()
            try:
                tokens, body = flow.call_with_auto_refresh(tokens)
            except RefreshExpiredError:
                info("Refresh token expired, re-authenticating...")
                tokens = flow.authorize()
                tokens, body = flow.call_with_auto_refresh(tokens)
                success("API call successful after re-authentication.")
            else:
                success("API call successful!")
    except OAuthCliError as exc:
        _fail(exc)
    format_response(body)


@app.command("logout")
def logout_command(ctx: typer.Context) -> None:
    """Remove the configured client's tokens from the token file."""
    from oauthcli.auth import TokenStore
    from oauthcli.exceptions import StorageError
    from oauthcli.output import info, success

    config = _load_config(ctx)
    try:
        removed = TokenStore(config.token_file).delete(config.client_id)
    except StorageError as exc:
        _fail(exc)
    if removed:
        success(f"Removed tokens for {config.client_id}.")
    else:
        info(f"No tokens stored for {config.client_id}.")


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


def _setup_signal_handlers() -> None:
    """First SIGINT/SIGTERM requests cancellation; a second one exits at once."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        if _cancel_event.is_set():
            sys.stderr.write("\nInterrupted.\n")
            sys.exit(EXIT_CANCELLED)
        _cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from oauthcli.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``oauth-cli`` console script.

    Unhandled :class:`~oauthcli.exceptions.OAuthCliError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce a
    crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted.\n")
        sys.exit(EXIT_CANCELLED)
    except Exception as exc:
        from oauthcli.exceptions import OAuthCliError
        from oauthcli.output import error

        if isinstance(exc, OAuthCliError):
            error(str(exc))
            sys.exit(exc.exit_code)
        log_path = _write_crash_log(exc)
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
