"""Pydantic models shared across the oauthcli package.

This module contains the data structures that flow between the callback
listener, the token store, and the authorization flow:

- **PKCE / state** -- :class:`PkceParams` produced by
  :mod:`oauthcli.auth.pkce`.
- **Tokens** -- :class:`TokenSet` and the on-disk :class:`TokenStoreFile`.
- **Callback outcome** -- :class:`CallbackSuccess` and
  :class:`CallbackFailure`, the two variants of :data:`CallbackResult`.
- **Configuration** -- :class:`ClientConfig`, built by
  :func:`oauthcli.config.resolve_config`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field


# --- PKCE ---


class PkceParams(BaseModel):
    """A PKCE verifier/challenge pair for one authorization attempt (:rfc:`7636`).

    The verifier is single-use and is only ever transmitted as
    ``code_verifier`` during the code exchange.
    """

    model_config = ConfigDict(frozen=True)

    verifier: str = Field(min_length=43, max_length=128)
    challenge: str
    method: Literal["S256"] = "S256"


# --- Tokens ---


class TokenSet(BaseModel):
    """Tokens issued to one client id.

    ``expires_at`` is always computed locally as *receipt time + expires_in*;
    server-supplied absolute timestamps are never trusted.

    Example::

        TokenSet(
            access_token="eyJhbGciOi...",
            refresh_token="rt-123",
            token_type="Bearer",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            client_id="9f1c...",
        )
    """

    access_token: str
    refresh_token: str = ""
    token_type: str = ""
    expires_at: datetime
    client_id: str

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return ``True`` once *now* has reached :attr:`expires_at`."""
        now = now or datetime.now(timezone.utc)
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return now >= expires


class TokenStoreFile(BaseModel):
    """On-disk layout of the token file: one :class:`TokenSet` per client id."""

    tokens: dict[str, TokenSet] = Field(default_factory=dict)


# --- Callback outcome ---


class CallbackSuccess(BaseModel):
    """The redirect carried a valid code and the exchange succeeded."""

    kind: Literal["success"] = "success"
    tokens: TokenSet


class CallbackFailure(BaseModel):
    """The redirect was rejected or the exchange failed."""

    kind: Literal["failure"] = "failure"
    code: str
    description: str = ""


CallbackResult = Union[CallbackSuccess, CallbackFailure]
"""Exactly one of these is produced per callback listener."""


# --- Configuration ---


class ClientConfig(BaseModel):
    """Effective client configuration, passed explicitly to the flow and store.

    Built by :func:`oauthcli.config.resolve_config` from CLI flags,
    environment variables, a ``.env`` file, and defaults.
    """

    model_config = ConfigDict(frozen=True)

    server_url: str = "http://localhost:8080"
    client_id: str
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8888/callback"
    callback_port: int = 8888
    scope: str = "read write"
    token_file: str = ".authgate-tokens.json"

    @property
    def is_public_client(self) -> bool:
        """``True`` when no client secret is configured (PKCE-only client)."""
        return self.client_secret == ""

    @property
    def authorize_endpoint(self) -> str:
        return self.server_url.rstrip("/") + "/oauth/authorize"

    @property
    def token_endpoint(self) -> str:
        return self.server_url.rstrip("/") + "/oauth/token"

    @property
    def tokeninfo_endpoint(self) -> str:
        return self.server_url.rstrip("/") + "/oauth/tokeninfo"

    @property
    def callback_path(self) -> str:
        """Path component of :attr:`redirect_uri`, served by the listener."""
        return urlparse(self.redirect_uri).path or "/callback"
