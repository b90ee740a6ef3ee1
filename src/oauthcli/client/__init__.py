"""HTTP client for talking to the authorization server.

Exports :class:`RetryingClient`, a thin :class:`httpx.Client` wrapper with
per-request timeout and bounded exponential-backoff retry.
"""

from oauthcli.client.http import RetryingClient

__all__ = ["RetryingClient"]
