"""Exception hierarchy for oauthcli.

All exceptions inherit from :class:`OAuthCliError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`oauthcli.exit_codes`.
The top-level error handler in :func:`oauthcli.app.main` catches
``OAuthCliError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    OAuthCliError (exit 1)
    +-- ConfigError               (exit 1)
    +-- BrowserError              (exit 1)
    +-- OAuthProtocolError        (exit 3)
    |   +-- RefreshExpiredError   (exit 3)
    +-- CallbackTimeoutError      (exit 3)
    +-- TransportError            (exit 6)
    +-- StorageError              (exit 8)
    |   +-- LockTimeoutError
    |   +-- TokenLoadError
    |       +-- TokenNotFoundError
    |       +-- TokenStoreCorruptError
    +-- ListenerBindError         (exit 9)
    +-- AuthorizationCancelled    (exit 130)
"""

from __future__ import annotations

from oauthcli.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_LISTENER_ERROR,
    EXIT_STORAGE_ERROR,
)


class OAuthCliError(Exception):
    """Base exception for all oauthcli errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`oauthcli.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(OAuthCliError):
    """Raised for configuration problems (missing client id, malformed server URL)."""

    exit_code = EXIT_GENERIC_FAILURE


class BrowserError(OAuthCliError):
    """Raised when no browser could be launched for the authorization URL."""

    exit_code = EXIT_GENERIC_FAILURE


class OAuthProtocolError(OAuthCliError):
    """Raised when the authorization server or the redirect reports an OAuth error.

    Carries the OAuth error code (``access_denied``, ``invalid_grant``,
    ``state_mismatch``, ``missing_code``, ``token_exchange_failed``, ...)
    and its optional human-readable description.

    Args:
        code: The OAuth ``error`` value.
        description: The ``error_description`` value, if any.
    """

    exit_code = EXIT_AUTH_FAILURE

    def __init__(self, code: str, description: str = ""):
        message = f"{code}: {description}" if description else code
        super().__init__(message)
        self.code = code
        self.description = description


class RefreshExpiredError(OAuthProtocolError):
    """Raised when the refresh token is expired or revoked.

    Always routes the caller to a fresh authorization.
    """

    def __init__(self, code: str = "invalid_grant", description: str = ""):
        super().__init__(code, description or "refresh token expired or invalid")


class CallbackTimeoutError(OAuthCliError):
    """Raised when the browser never reached the callback listener in time."""

    exit_code = EXIT_AUTH_FAILURE


class TransportError(OAuthCliError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused)."""

    exit_code = EXIT_CONNECTION_ERROR


class StorageError(OAuthCliError):
    """Raised when the token file or its lock cannot be read or written."""

    exit_code = EXIT_STORAGE_ERROR


class LockTimeoutError(StorageError):
    """Raised when the token file lock could not be acquired in time."""


class TokenLoadError(StorageError):
    """Base for recoverable token-load failures; the caller re-authorizes."""


class TokenNotFoundError(TokenLoadError):
    """Raised when no tokens are stored for the requested client id."""


class TokenStoreCorruptError(TokenLoadError):
    """Raised when the token file exists but cannot be parsed."""


class ListenerBindError(OAuthCliError):
    """Raised when the local callback listener cannot bind its port."""

    exit_code = EXIT_LISTENER_ERROR


class AuthorizationCancelled(OAuthCliError):
    """Raised when an in-progress wait is interrupted by a shutdown signal."""

    exit_code = EXIT_CANCELLED
