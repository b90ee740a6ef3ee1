"""Outbound HTTP client for the authorization server, with bounded retry.

:class:`RetryingClient` wraps :class:`httpx.Client` and retries requests that
fail at the network level (connect errors, timeouts) or come back with a
5xx status, doubling the delay each time (1 s, 2 s, 4 s, ...). When the
retries run out, a network failure becomes
:class:`~oauthcli.exceptions.TransportError` and a 5xx response is handed
back so the caller can read the OAuth error body.

Token endpoints are called with form-encoded bodies
(``application/x-www-form-urlencoded``) as :rfc:`6749` requires.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import httpx

from oauthcli.exceptions import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_RETRIES = 3


class RetryingClient:
    """Blocking HTTP client with timeout and exponential-backoff retry.

    Usable directly or as a context manager; :meth:`close` releases the
    underlying connection pool.

    Args:
        timeout: Per-request timeout in seconds.
        max_retries: Extra attempts after the first one.
        verify: TLS certificate verification, passed to httpx.
        transport: Optional httpx transport (tests pass
            :class:`httpx.MockTransport`).
        sleep: Delay function between attempts.

    Example::

        with RetryingClient(timeout=10) as http:
            response = http.post_form(token_url, {"grant_type": "refresh_token", ...})
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._max_retries = max_retries
        self._sleep = sleep
        self._client = httpx.Client(timeout=timeout, verify=verify, transport=transport)

    def post_form(self, url: str, data: dict[str, str]) -> httpx.Response:
        """POST *data* form-encoded and return the response."""
        return self._execute_with_retry(
            "POST",
            url,
            data=data,
            headers={"Accept": "application/json"},
        )

    def get(self, url: str, headers: Optional[dict[str, str]] = None) -> httpx.Response:
        """GET *url* and return the response."""
        return self._execute_with_retry("GET", url, headers=headers or {})

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> RetryingClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _execute_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send the request, retrying 5xx responses and network errors."""
        for attempt in range(self._max_retries + 1):
            try:
                response = self._client.request(method, url, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
                if attempt < self._max_retries:
                    delay = 2 ** attempt
                    logger.debug(
                        "Connection error: %s, retrying in %ss (attempt %d/%d)",
                        exc, delay, attempt + 1, self._max_retries,
                    )
                    self._sleep(delay)
                    continue
                raise TransportError(
                    f"Request to {url} failed after {self._max_retries + 1} attempts: {exc}"
                ) from exc
            except httpx.HTTPError as exc:
                raise TransportError(f"Request to {url} failed: {exc}") from exc

            if response.status_code >= 500 and attempt < self._max_retries:
                delay = 2 ** attempt
                logger.debug(
                    "Server error %d, retrying in %ss (attempt %d/%d)",
                    response.status_code, delay, attempt + 1, self._max_retries,
                )
                self._sleep(delay)
                continue
            return response

        raise TransportError(f"Request to {url} failed after all retries")  # pragma: no cover
