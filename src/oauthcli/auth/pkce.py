"""PKCE and CSRF state generation (:rfc:`7636`).

Both helpers draw from :mod:`secrets`. A failing entropy source raises
straight through to the caller; nothing here retries or falls back to a
weaker generator.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

from oauthcli.models import PkceParams


def _b64url_nopad(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_pkce() -> PkceParams:
    """Generate a PKCE ``code_verifier`` and its S256 ``code_challenge``.

    The verifier is 32 random bytes, base64url-encoded without padding
    (43 characters). The challenge is ``BASE64URL(SHA256(ASCII(verifier)))``.

    Returns:
        A :class:`~oauthcli.models.PkceParams` with ``method="S256"``.
    """
    verifier = _b64url_nopad(secrets.token_bytes(32))
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return PkceParams(verifier=verifier, challenge=_b64url_nopad(digest), method="S256")


def generate_state() -> str:
    """Generate an opaque ``state`` value for CSRF protection.

    Returns:
        16 random bytes, base64url-encoded without padding (22 characters).
    """
    return _b64url_nopad(secrets.token_bytes(16))
