"""OAuth Authorization Code + PKCE machinery.

The main entry points are:

- :class:`AuthFlow` -- decides between reusing, refreshing, and
  authorizing, and talks to the token endpoint.
- :class:`CallbackListener` / :func:`run_callback_listener` -- the loopback
  server that receives the browser redirect.
- :class:`TokenStore` -- multi-client JSON token file with atomic writes.
- :class:`FileLock` -- advisory lock guarding the token file.
- :func:`generate_pkce` / :func:`generate_state` -- per-attempt secrets.

Typical usage::

    from oauthcli.auth import AuthFlow, TokenStore
    from oauthcli.client import RetryingClient

    with RetryingClient() as http:
        flow = AuthFlow(config, TokenStore(config.token_file), http)
        tokens, source = flow.ensure_tokens()
"""

from oauthcli.auth.callback import CallbackListener, run_callback_listener
from oauthcli.auth.filelock import FileLock
from oauthcli.auth.flow import AuthFlow, FlowOutcome, TokenSource, validate_token_response
from oauthcli.auth.pkce import generate_pkce, generate_state
from oauthcli.auth.token_store import TokenStore

__all__ = [
    "AuthFlow",
    "CallbackListener",
    "FileLock",
    "FlowOutcome",
    "TokenSource",
    "TokenStore",
    "generate_pkce",
    "generate_state",
    "run_callback_listener",
    "validate_token_response",
]
