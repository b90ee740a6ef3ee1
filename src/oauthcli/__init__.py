"""oauthcli -- OAuth 2.0 Authorization Code + PKCE client for the terminal.

This package obtains, persists, and refreshes OAuth tokens for a command-line
client. The browser is sent to the authorization server, the redirect lands on
a short-lived loopback HTTP listener, and the code is exchanged for tokens
that are stored per client id in a shared JSON file.

Typical workflow::

    oauth-cli --client-id <id> login    # reuse, refresh, or authorize
    oauth-cli --client-id <id> call     # use the token, refresh on 401

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the package.
    config: Flag / environment / ``.env`` configuration resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
    browser: Best-effort browser launcher.
"""

__version__ = "0.1.0"
