"""Loopback HTTP listener that receives the OAuth redirect.

A fresh :class:`CallbackListener` is created for every authorization attempt
and moves through ``LISTENING -> DELIVERED -> SHUTTING_DOWN -> CLOSED``. It
never retries: a caller wanting another attempt builds a new listener with a
new state, PKCE pair, and timeout window.

Every request to the redirect path is handled on its own daemon thread:

1. ``error`` in the query ends the attempt with that error; no exchange.
2. ``state`` must equal the expected value (CSRF check) before the code is
   looked at.
3. ``code`` must be present and non-empty.
4. The caller's exchange function runs **at most once** per listener
   (:class:`ExchangeGuard`). Authorization codes are single-use, so a browser
   retry or a link prefetcher must not trigger a second exchange.
5. The browser page reflecting the real outcome is written before the result
   is handed to the waiting caller through a single-assignment
   :class:`ResultSlot`. Later results are dropped without blocking the
   handler that produced them.

The caller blocks in :meth:`CallbackListener.wait` until the first result,
the overall timeout, or an external cancellation event, whichever happens
first. The server is then shut down with a bounded grace period.
"""

from __future__ import annotations

import enum
import html
import logging
import secrets
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

from oauthcli.exceptions import (
    AuthorizationCancelled,
    CallbackTimeoutError,
    ListenerBindError,
    OAuthProtocolError,
)
from oauthcli.models import CallbackFailure, CallbackResult, CallbackSuccess, TokenSet

logger = logging.getLogger(__name__)

CALLBACK_TIMEOUT = 300.0
"""Seconds to wait for the browser to reach the callback (5 minutes)."""

SHUTDOWN_GRACE = 2.0
"""Upper bound in seconds on stopping the server after the wait ends."""

REQUEST_TIMEOUT = 10.0
"""Socket timeout for reading a single callback request."""

_POLL_INTERVAL = 0.1

ExchangeFn = Callable[[str], TokenSet]
"""``exchange(code) -> TokenSet``; raises on failure."""


class ListenerState(str, enum.Enum):
    """Lifecycle of a :class:`CallbackListener`."""

    IDLE = "idle"
    LISTENING = "listening"
    DELIVERED = "delivered"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class ResultSlot:
    """First-writer-wins slot holding the listener's single result.

    :meth:`offer` never blocks: once a value is stored every later offer
    returns ``False`` and is discarded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._filled = threading.Event()
        self._value: Optional[CallbackResult] = None

    def offer(self, value: CallbackResult) -> bool:
        with self._lock:
            if self._filled.is_set():
                return False
            self._value = value
            self._filled.set()
            return True

    def wait(self, timeout: Optional[float] = None) -> Optional[CallbackResult]:
        """Return the stored value, or ``None`` if *timeout* elapsed first."""
        if self._filled.wait(timeout):
            return self._value
        return None

    @property
    def is_filled(self) -> bool:
        return self._filled.is_set()


class ExchangeGuard:
    """Run the code exchange at most once for one listener.

    The first caller of :meth:`run` performs the exchange. A caller arriving
    while it is still running gets ``None`` straight away instead of waiting
    on it; a caller arriving afterwards gets the same outcome the first one
    got.

    Exceptions raised by the exchange are turned into a
    ``token_exchange_failed`` :class:`~oauthcli.models.CallbackFailure`.
    """

    def __init__(self, exchange: ExchangeFn) -> None:
        self._exchange = exchange
        self._lock = threading.Lock()
        self._started = False
        self._outcome: Optional[CallbackResult] = None
        self.calls = 0

    def run(self, code: str) -> Optional[CallbackResult]:
        with self._lock:
            if self._started:
                return self._outcome
            self._started = True
            self.calls += 1

        outcome: CallbackResult
        try:
            outcome = CallbackSuccess(tokens=self._exchange(code))
        except Exception as exc:
            logger.debug("Token exchange failed: %s", exc)
            outcome = CallbackFailure(code="token_exchange_failed", description=str(exc))

        with self._lock:
            self._outcome = outcome
        return outcome


class _CallbackServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, address: tuple[str, int], listener: CallbackListener) -> None:
        self.listener = listener
        super().__init__(address, _CallbackHandler)


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackServer
    timeout = REQUEST_TIMEOUT

    def do_GET(self) -> None:
        listener = self.server.listener
        parsed = urlparse(self.path)
        if parsed.path != listener.path:
            self.send_error(404)
            return

        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        outcome = listener.handle_callback(params)
        if outcome is None:
            self._write_page(_IN_PROGRESS_PAGE)
            return

        if isinstance(outcome, CallbackSuccess):
            page = _SUCCESS_PAGE
        else:
            message = outcome.description or outcome.code
            page = _FAILURE_PAGE.format(message=html.escape(message))
        try:
            self._write_page(page)
        except OSError as exc:
            # The code is already spent; the browser going away must not lose it.
            logger.debug("Could not write callback page: %s", exc)
        finally:
            listener.deliver(outcome)

    def _write_page(self, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(payload)
        self.wfile.flush()

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("callback %s - %s", self.address_string(), format % args)


class CallbackListener:
    """Short-lived HTTP server accepting exactly one authorization outcome.

    Args:
        port: TCP port to bind on *host*. ``0`` picks a free port; read the
            result from :attr:`port` after :meth:`start`.
        expected_state: The ``state`` value sent in the authorization URL.
        exchange: ``exchange(code) -> TokenSet``, called at most once.
        path: Redirect path to serve. Other paths get 404.
        host: Loopback address to bind.
        timeout: Overall seconds to wait for a result.
        shutdown_grace: Bound on stopping the server afterwards.

    Example::

        with CallbackListener(8888, state, exchange) as listener:
            open_browser(url)
            tokens = listener.wait(cancel=stop_event)
    """

    def __init__(
        self,
        port: int,
        expected_state: str,
        exchange: ExchangeFn,
        *,
        path: str = "/callback",
        host: str = "127.0.0.1",
        timeout: float = CALLBACK_TIMEOUT,
        shutdown_grace: float = SHUTDOWN_GRACE,
    ) -> None:
        self._requested_port = port
        self._expected_state = expected_state
        self._guard = ExchangeGuard(exchange)
        self._slot = ResultSlot()
        self._path = path
        self._host = host
        self._timeout = timeout
        self._shutdown_grace = shutdown_grace
        self._server: Optional[_CallbackServer] = None
        self._thread: Optional[threading.Thread] = None
        self._state = ListenerState.IDLE
        self._state_lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def port(self) -> int:
        """The bound port (only meaningful after :meth:`start`)."""
        if self._server is None:
            return self._requested_port
        return self._server.server_address[1]

    @property
    def exchange_calls(self) -> int:
        """How many times the exchange function has been invoked (0 or 1)."""
        return self._guard.calls

    def start(self) -> int:
        """Bind the socket and start serving in a background thread.

        Returns:
            The bound port.

        Raises:
            ListenerBindError: If the port cannot be bound. Never retried.
        """
        try:
            self._server = _CallbackServer((self._host, self._requested_port), self)
        except OSError as exc:
            raise ListenerBindError(
                f"Failed to start callback server on port {self._requested_port}: {exc}"
            ) from exc

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": _POLL_INTERVAL},
            name="oauth-callback-server",
            daemon=True,
        )
        self._thread.start()
        self._state = ListenerState.LISTENING
        logger.debug("Callback listener on http://%s:%d%s", self._host, self.port, self._path)
        return self.port

    def handle_callback(self, params: dict[str, str]) -> Optional[CallbackResult]:
        """Decide the outcome for one redirect request.

        Returns ``None`` when another request's exchange is still running.
        """
        oauth_error = params.get("error", "")
        if oauth_error:
            return CallbackFailure(code=oauth_error, description=params.get("error_description", ""))

        if not secrets.compare_digest(
            params.get("state", "").encode("utf-8"), self._expected_state.encode("utf-8")
        ):
            return CallbackFailure(
                code="state_mismatch",
                description="State parameter does not match. Possible CSRF attack.",
            )

        code = params.get("code", "")
        if not code:
            return CallbackFailure(code="missing_code", description="No authorization code in callback.")

        return self._guard.run(code)

    def deliver(self, result: CallbackResult) -> bool:
        """Hand *result* to the waiting caller; ``False`` if one was already delivered."""
        if not self._slot.offer(result):
            logger.debug("Discarding extra callback result (%s)", result.kind)
            return False
        with self._state_lock:
            if self._state is ListenerState.LISTENING:
                self._state = ListenerState.DELIVERED
        return True

    def wait(self, cancel: Optional[threading.Event] = None) -> TokenSet:
        """Block until a result, the timeout, or *cancel*; then shut down.

        Returns:
            The exchanged :class:`~oauthcli.models.TokenSet`.

        Raises:
            OAuthProtocolError: The redirect carried an error, failed
                validation, or the exchange failed.
            CallbackTimeoutError: No result within the timeout.
            AuthorizationCancelled: *cancel* was set.
        """
        deadline = time.monotonic() + self._timeout
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise AuthorizationCancelled("Authorization cancelled")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise CallbackTimeoutError(
                        f"Timed out waiting for browser authorization ({self._timeout:.0f}s)"
                    )
                result = self._slot.wait(min(remaining, _POLL_INTERVAL))
                if result is not None:
                    break
        finally:
            self.close()

        if isinstance(result, CallbackFailure):
            raise OAuthProtocolError(result.code, result.description)
        return result.tokens

    def close(self) -> None:
        """Stop serving and release the socket. Idempotent and bounded."""
        with self._state_lock:
            if self._state in (ListenerState.SHUTTING_DOWN, ListenerState.CLOSED):
                return
            self._state = ListenerState.SHUTTING_DOWN

        if self._server is not None:
            if self._thread is not None and self._thread.is_alive():
                # shutdown() waits for serve_forever without a timeout.
                stopper = threading.Thread(target=self._server.shutdown, daemon=True)
                stopper.start()
                stopper.join(self._shutdown_grace)
                if stopper.is_alive():
                    logger.warning("Callback server did not stop within %.1fs", self._shutdown_grace)
            self._server.server_close()

        self._state = ListenerState.CLOSED
        logger.debug("Callback listener closed")

    def __enter__(self) -> CallbackListener:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def run_callback_listener(
    port: int,
    expected_state: str,
    exchange: ExchangeFn,
    *,
    cancel: Optional[threading.Event] = None,
    on_ready: Optional[Callable[[int], None]] = None,
    **kwargs: Any,
) -> TokenSet:
    """Run one listener from bind to teardown and return the exchanged tokens.

    Args:
        port: Port to bind on the loopback interface.
        expected_state: The ``state`` sent in the authorization URL.
        exchange: ``exchange(code) -> TokenSet``.
        cancel: Event that aborts the wait when set.
        on_ready: Called with the bound port once the socket is listening,
            e.g. to open the browser.
        **kwargs: Forwarded to :class:`CallbackListener`.

    Raises:
        ListenerBindError, OAuthProtocolError, CallbackTimeoutError,
        AuthorizationCancelled: See :meth:`CallbackListener.wait`.
    """
    with CallbackListener(port, expected_state, exchange, **kwargs) as listener:
        if on_ready is not None:
            on_ready(listener.port)
        return listener.wait(cancel)


_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization Successful</title></head>
<body style="font-family:sans-serif;text-align:center;padding:4rem">
  <h1 style="color:#2ea44f">&#10003; Authorization Successful</h1>
  <p>You have been successfully authorized.</p>
  <p>You can close this tab and return to your terminal.</p>
</body>
</html>"""

_FAILURE_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization Failed</title></head>
<body style="font-family:sans-serif;text-align:center;padding:4rem">
  <h1 style="color:#cb2431">&#10007; Authorization Failed</h1>
  <p>{message}</p>
  <p>You can close this tab and check your terminal for details.</p>
</body>
</html>"""

_IN_PROGRESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization In Progress</title></head>
<body style="font-family:sans-serif;text-align:center;padding:4rem">
  <h1>Authorization In Progress</h1>
  <p>This authorization is already being completed in another tab.</p>
  <p>Check your terminal for the result.</p>
</body>
</html>"""
