"""Token lifecycle: reuse, refresh, or run the Authorization Code + PKCE flow.

:class:`AuthFlow` is the only layer that decides what an error means. The
token store and callback listener report structured errors; the flow turns
them into state transitions::

    CheckStored --absent/corrupt--------------------------> Authorizing
        |--valid------------------------------------------> Ready
        +--expired--> Refreshing --ok---------------------> Ready
                          |--refresh token expired-------> Authorizing
                          +--other failure--> caller policy (fall back or raise)
    Authorizing --callback + exchange + persist----------> Ready

Exchange and refresh responses are validated the same way
(:func:`validate_token_response`) and ``expires_at`` is always computed
locally from ``expires_in``.

See Also:
    :mod:`oauthcli.auth.callback` for the redirect listener.
    :mod:`oauthcli.auth.token_store` for persistence.
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, NamedTuple, Optional
from urllib.parse import urlencode

import httpx

from oauthcli.auth.callback import CALLBACK_TIMEOUT, run_callback_listener
from oauthcli.auth.pkce import generate_pkce, generate_state
from oauthcli.auth.token_store import TokenStore
from oauthcli.browser import open_browser as default_open_browser
from oauthcli.client.http import RetryingClient
from oauthcli.exceptions import (
    AuthorizationCancelled,
    BrowserError,
    OAuthProtocolError,
    RefreshExpiredError,
    StorageError,
    TokenLoadError,
    TransportError,
)
from oauthcli.models import ClientConfig, PkceParams, TokenSet
from oauthcli.output import info, success, warning

logger = logging.getLogger(__name__)

MIN_ACCESS_TOKEN_LENGTH = 10

_REFRESH_EXPIRED_CODES = frozenset({"invalid_grant", "invalid_token"})


class TokenSource(str, enum.Enum):
    """How :meth:`AuthFlow.ensure_tokens` obtained its tokens."""

    STORED = "stored"
    REFRESHED = "refreshed"
    AUTHORIZED = "authorized"


class FlowOutcome(NamedTuple):
    tokens: TokenSet
    source: TokenSource


def validate_token_response(access_token: str, token_type: str, expires_in: int) -> None:
    """Sanity-check a token endpoint response.

    Raises:
        OAuthProtocolError: ``invalid_token_response`` for an empty or short
            access token, a non-positive ``expires_in``, or a non-empty
            ``token_type`` other than ``Bearer``.
    """
    if not access_token:
        raise OAuthProtocolError("invalid_token_response", "access_token is empty")
    if len(access_token) < MIN_ACCESS_TOKEN_LENGTH:
        raise OAuthProtocolError(
            "invalid_token_response",
            f"access_token is too short (length: {len(access_token)})",
        )
    if expires_in <= 0:
        raise OAuthProtocolError(
            "invalid_token_response", f"expires_in must be positive, got: {expires_in}"
        )
    if token_type and token_type != "Bearer":
        raise OAuthProtocolError(
            "invalid_token_response", f"unexpected token_type: {token_type} (expected Bearer)"
        )


def _error_body(response: httpx.Response) -> Optional[tuple[str, str]]:
    """Return ``(error, error_description)`` from an OAuth error body, if any."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict) or not payload.get("error"):
        return None
    return str(payload["error"]), str(payload.get("error_description") or "")


def _json_object(response: httpx.Response, code: str) -> dict[str, Any]:
    """Decode a successful response body, which must be a JSON object."""
    try:
        payload = response.json()
    except ValueError as exc:
        raise OAuthProtocolError(code, f"failed to parse response body: {exc}") from exc
    if not isinstance(payload, dict):
        raise OAuthProtocolError(code, "response body is not a JSON object")
    return payload


class AuthFlow:
    """Obtain usable tokens for one configured client.

    Args:
        config: Effective client configuration.
        store: Token persistence.
        http: Outbound client for the authorization server.
        open_browser: Called with the authorization URL; a
            :class:`~oauthcli.exceptions.BrowserError` is reported and
            otherwise ignored.
        cancel: Event that aborts a pending callback wait when set.
        listener_timeout: Seconds to wait for the browser redirect.

    Example::

        flow = AuthFlow(config, TokenStore(config.token_file), RetryingClient())
        tokens, source = flow.ensure_tokens()
    """

    def __init__(
        self,
        config: ClientConfig,
        store: TokenStore,
        http: RetryingClient,
        open_browser: Callable[[str], None] = default_open_browser,
        cancel: Optional[threading.Event] = None,
        listener_timeout: float = CALLBACK_TIMEOUT,
    ) -> None:
        self._config = config
        self._store = store
        self._http = http
        self._open_browser = open_browser
        self._cancel = cancel
        self._listener_timeout = listener_timeout

    @property
    def config(self) -> ClientConfig:
        return self._config

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #

    def ensure_tokens(self, fall_back: bool = True) -> FlowOutcome:
        """Return valid tokens, reusing, refreshing, or authorizing as needed.

        Args:
            fall_back: When a refresh fails for a reason other than an
                expired refresh token (network, server error), start a new
                authorization instead of raising.

        Raises:
            TransportError, OAuthProtocolError: Refresh failed and
                *fall_back* is ``False``, or authorization failed.
            AuthorizationCancelled: The cancel event was set.
        """
        try:
            stored = self._store.load(self._config.client_id)
        except TokenLoadError as exc:
            logger.debug("No usable stored tokens: %s", exc)
            info("No existing tokens found, starting Authorization Code Flow...")
            return FlowOutcome(self.authorize(), TokenSource.AUTHORIZED)

        info("Found existing tokens.")
        if not stored.is_expired():
            info("Access token is still valid, using it.")
            return FlowOutcome(stored, TokenSource.STORED)

        info("Access token expired, attempting refresh...")
        try:
            refreshed = self.refresh(stored.refresh_token)
        except RefreshExpiredError as exc:
            info(f"Refresh token no longer valid ({exc}), starting new authorization flow...")
        except (TransportError, OAuthProtocolError) as exc:
            if not fall_back:
                raise
            warning(f"Refresh failed: {exc}")
            info("Starting new authorization flow...")
        else:
            success("Token refreshed successfully.")
            return FlowOutcome(refreshed, TokenSource.REFRESHED)

        return FlowOutcome(self.authorize(), TokenSource.AUTHORIZED)

    def authorize(self) -> TokenSet:
        """Run the interactive Authorization Code + PKCE flow and persist the tokens.

        Raises:
            ListenerBindError: The callback port is unavailable.
            OAuthProtocolError: Denied, state mismatch, missing code, or a
                failed exchange.
            CallbackTimeoutError: The browser never came back.
            AuthorizationCancelled: The cancel event was set.
        """
        if self._cancel is not None and self._cancel.is_set():
            raise AuthorizationCancelled("Authorization cancelled")

        state = generate_state()
        # PKCE is used by confidential clients too.
        pkce = generate_pkce()
        auth_url = self.build_authorization_url(state, pkce)

        def on_ready(port: int) -> None:
            info("Step 1: Opening authorization URL in your browser...")
            info(f"\n  {auth_url}\n")
            try:
                self._open_browser(auth_url)
            except BrowserError as exc:
                logger.debug("Browser launch failed: %s", exc)
                warning("Could not open browser automatically. Please open the URL above manually.")
            else:
                info("Browser opened. Please complete authorization in your browser.")
            info(
                f"Step 2: Waiting for callback on "
                f"http://localhost:{port}{self._config.callback_path} ..."
            )

        def exchange(code: str) -> TokenSet:
            info("Step 3: Exchanging authorization code for tokens...")
            return self.exchange_code(code, pkce.verifier)

        tokens = run_callback_listener(
            self._config.callback_port,
            state,
            exchange,
            cancel=self._cancel,
            on_ready=on_ready,
            path=self._config.callback_path,
            timeout=self._listener_timeout,
        )
        success("Authorization complete.")
        self._persist(tokens)
        return tokens

    # ------------------------------------------------------------------ #
    # Token endpoint
    # ------------------------------------------------------------------ #

    def build_authorization_url(self, state: str, pkce: PkceParams) -> str:
        """Build the ``/oauth/authorize`` URL for one attempt."""
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": self._config.scope,
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
        }
        return f"{self._config.authorize_endpoint}?{urlencode(params)}"

    def exchange_code(self, code: str, code_verifier: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        Public clients send only ``code_verifier``; confidential clients add
        ``client_secret``.

        Raises:
            TransportError: The token endpoint was unreachable.
            OAuthProtocolError: The server rejected the code or returned an
                invalid token response.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_uri,
            "client_id": self._config.client_id,
            "code_verifier": code_verifier,
        }
        if not self._config.is_public_client:
            data["client_secret"] = self._config.client_secret

        response = self._http.post_form(self._config.token_endpoint, data)
        if response.status_code != 200:
            error = _error_body(response)
            if error is not None:
                raise OAuthProtocolError(*error)
            raise OAuthProtocolError(
                "token_exchange_failed",
                f"token exchange failed with status {response.status_code}: {response.text}",
            )
        return self._parse_token_response(response)

    def refresh(self, refresh_token: str) -> TokenSet:
        """Obtain a new access token with *refresh_token* and persist it.

        If the server does not rotate the refresh token, the old one is kept.

        Raises:
            RefreshExpiredError: The refresh token is missing, expired, or
                revoked (``invalid_grant`` / ``invalid_token``).
            TransportError: The token endpoint was unreachable.
            OAuthProtocolError: Any other rejection or an invalid response.
        """
        if not refresh_token:
            raise RefreshExpiredError(description="no refresh token stored")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._config.client_id,
        }
        if not self._config.is_public_client:
            data["client_secret"] = self._config.client_secret

        response = self._http.post_form(self._config.token_endpoint, data)
        if response.status_code != 200:
            error = _error_body(response)
            if error is not None:
                if error[0] in _REFRESH_EXPIRED_CODES:
                    raise RefreshExpiredError(*error)
                raise OAuthProtocolError(*error)
            raise OAuthProtocolError(
                "token_refresh_failed",
                f"refresh failed with status {response.status_code}: {response.text}",
            )

        tokens = self._parse_token_response(response, previous_refresh_token=refresh_token)
        self._persist(tokens)
        return tokens

    # ------------------------------------------------------------------ #
    # Token use
    # ------------------------------------------------------------------ #

    def verify_token(self, access_token: str) -> dict[str, Any]:
        """Ask the server's token-info endpoint about *access_token*.

        Raises:
            OAuthProtocolError: The server rejected the token.
            TransportError: The server was unreachable.
        """
        response = self._http.get(
            self._config.tokeninfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code != 200:
            error = _error_body(response)
            if error is not None:
                raise OAuthProtocolError(*error)
            raise OAuthProtocolError(
                "token_verification_failed",
                f"server returned status {response.status_code}: {response.text}",
            )
        return _json_object(response, "token_verification_failed")

    def call_with_auto_refresh(self, tokens: TokenSet) -> tuple[TokenSet, dict[str, Any]]:
        """Call the token-info endpoint, refreshing once on ``401``.

        Returns:
            The tokens actually used (refreshed ones if a refresh happened)
            and the decoded response body.

        Raises:
            RefreshExpiredError: The 401 could not be fixed by a refresh;
                the caller should re-authorize.
            OAuthProtocolError: The call failed for another reason.
        """
        response = self._http.get(
            self._config.tokeninfo_endpoint,
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        if response.status_code == 401:
            info("Access token rejected (401), refreshing...")
            tokens = self.refresh(tokens.refresh_token)
            info("Token refreshed, retrying API call...")
            response = self._http.get(
                self._config.tokeninfo_endpoint,
                headers={"Authorization": f"Bearer {tokens.access_token}"},
            )

        if response.status_code != 200:
            raise OAuthProtocolError(
                "api_call_failed",
                f"API call failed with status {response.status_code}: {response.text}",
            )
        return tokens, _json_object(response, "api_call_failed")

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _parse_token_response(
        self,
        response: httpx.Response,
        previous_refresh_token: str = "",
    ) -> TokenSet:
        received_at = datetime.now(timezone.utc)
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthProtocolError(
                "invalid_token_response", f"failed to parse token response: {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise OAuthProtocolError("invalid_token_response", "token response is not an object")

        access_token = str(payload.get("access_token") or "")
        token_type = str(payload.get("token_type") or "")
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        validate_token_response(access_token, token_type, expires_in)

        return TokenSet(
            access_token=access_token,
            refresh_token=str(payload.get("refresh_token") or previous_refresh_token),
            token_type=token_type,
            expires_at=received_at + timedelta(seconds=expires_in),
            client_id=self._config.client_id,
        )

    def _persist(self, tokens: TokenSet) -> None:
        # The tokens are usable even when they cannot be saved.
        try:
            self._store.save(tokens)
        except StorageError as exc:
            warning(f"Failed to save tokens: {exc}")
        else:
            info(f"Tokens saved to {self._store.path}")
