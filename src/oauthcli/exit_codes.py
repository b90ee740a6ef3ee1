"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~oauthcli.exceptions.OAuthCliError` subclass.
Shell wrappers can inspect the exit code to tell a rejected authorization
apart from a network outage or a busy callback port without parsing stderr.

Example::

    $ oauth-cli login
    $ echo $?
    9   # EXIT_LISTENER_ERROR -- the callback port is already taken
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred (including configuration errors)."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 3
"""Authorization was denied, failed, or timed out."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred talking to the authorization server."""

EXIT_STORAGE_ERROR = 8
"""The token file or its lock could not be read or written."""

EXIT_LISTENER_ERROR = 9
"""The local callback listener could not bind its port."""

EXIT_CANCELLED = 130
"""The user interrupted the command (SIGINT / SIGTERM)."""
