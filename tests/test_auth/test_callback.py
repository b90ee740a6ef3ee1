"""Tests for the loopback callback listener.

These tests bind real sockets on 127.0.0.1 (port 0, so the OS picks a free
port) and drive them with :mod:`http.client`, the way a browser redirect
would.
"""

from __future__ import annotations

import http.client
import socket
import struct
import threading
import time
from typing import Optional
from unittest.mock import MagicMock

import pytest

from oauthcli.auth.callback import (
    CallbackListener,
    ExchangeGuard,
    ListenerState,
    ResultSlot,
    run_callback_listener,
)
from oauthcli.exceptions import (
    AuthorizationCancelled,
    CallbackTimeoutError,
    ListenerBindError,
    OAuthProtocolError,
)
from oauthcli.models import CallbackFailure, CallbackSuccess, TokenSet

STATE = "expected-state-value"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get(port: int, path: str) -> tuple[int, str]:
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=10)
    try:
        conn.request("GET", path)
        response = conn.getresponse()
        return response.status, response.read().decode("utf-8")
    finally:
        conn.close()


def _listener(exchange, timeout: float = 5.0) -> CallbackListener:
    listener = CallbackListener(0, STATE, exchange, timeout=timeout, shutdown_grace=1.0)
    listener.start()
    return listener


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


class TestResultSlot:
    def test_first_offer_wins(self) -> None:
        slot = ResultSlot()
        first = CallbackFailure(code="access_denied")
        second = CallbackFailure(code="state_mismatch")

        assert slot.offer(first) is True
        assert slot.offer(second) is False
        assert slot.wait(0) == first
        assert slot.is_filled

    def test_wait_times_out_empty(self) -> None:
        assert ResultSlot().wait(0.01) is None


class TestExchangeGuard:
    def test_runs_once_and_reuses_outcome(self, valid_tokens: TokenSet) -> None:
        exchange = MagicMock(return_value=valid_tokens)
        guard = ExchangeGuard(exchange)

        first = guard.run("code-1")
        second = guard.run("code-2")

        assert isinstance(first, CallbackSuccess)
        assert second == first
        exchange.assert_called_once_with("code-1")
        assert guard.calls == 1

    def test_exception_becomes_failure(self) -> None:
        guard = ExchangeGuard(MagicMock(side_effect=RuntimeError("server exploded")))
        outcome = guard.run("code")

        assert isinstance(outcome, CallbackFailure)
        assert outcome.code == "token_exchange_failed"
        assert "server exploded" in outcome.description


# ---------------------------------------------------------------------------
# Listener over real HTTP
# ---------------------------------------------------------------------------


class TestCallbackSuccess:
    def test_valid_redirect_returns_tokens(self, valid_tokens: TokenSet) -> None:
        exchange = MagicMock(return_value=valid_tokens)
        listener = _listener(exchange)

        status, body = _get(listener.port, f"/callback?code=auth-code&state={STATE}")

        assert status == 200
        assert "Authorization Successful" in body
        assert listener.wait() == valid_tokens
        exchange.assert_called_once_with("auth-code")
        assert listener.state is ListenerState.CLOSED

    def test_run_callback_listener_with_on_ready(self, valid_tokens: TokenSet) -> None:
        ports: list[int] = []

        def on_ready(port: int) -> None:
            ports.append(port)
            threading.Thread(
                target=_get, args=(port, f"/callback?code=c&state={STATE}"), daemon=True
            ).start()

        tokens = run_callback_listener(
            0, STATE, lambda code: valid_tokens, on_ready=on_ready, timeout=5.0
        )

        assert tokens == valid_tokens
        assert len(ports) == 1 and ports[0] > 0

    def test_custom_path(self, valid_tokens: TokenSet) -> None:
        listener = CallbackListener(0, STATE, lambda code: valid_tokens, path="/oauth/done", timeout=5)
        listener.start()

        assert _get(listener.port, f"/callback?code=c&state={STATE}")[0] == 404
        assert _get(listener.port, f"/oauth/done?code=c&state={STATE}")[0] == 200
        assert listener.wait() == valid_tokens


class TestCallbackRejections:
    def test_state_mismatch_never_exchanges(self) -> None:
        exchange = MagicMock()
        listener = _listener(exchange)

        status, body = _get(listener.port, "/callback?code=auth-code&state=forged")

        assert status == 200
        assert "State parameter does not match" in body
        with pytest.raises(OAuthProtocolError) as exc_info:
            listener.wait()
        assert exc_info.value.code == "state_mismatch"
        exchange.assert_not_called()

    def test_missing_state_is_mismatch(self) -> None:
        exchange = MagicMock()
        listener = _listener(exchange)
        _get(listener.port, "/callback?code=auth-code")

        with pytest.raises(OAuthProtocolError) as exc_info:
            listener.wait()
        assert exc_info.value.code == "state_mismatch"
        exchange.assert_not_called()

    def test_authorization_error(self) -> None:
        exchange = MagicMock()
        listener = _listener(exchange)

        _, body = _get(
            listener.port, "/callback?error=access_denied&error_description=User+denied+access"
        )

        assert "User denied access" in body
        with pytest.raises(OAuthProtocolError) as exc_info:
            listener.wait()
        assert exc_info.value.code == "access_denied"
        assert exc_info.value.description == "User denied access"
        exchange.assert_not_called()

    def test_error_description_is_escaped(self) -> None:
        listener = _listener(MagicMock())
        _, body = _get(
            listener.port, "/callback?error=x&error_description=%3Cscript%3Ealert(1)%3C/script%3E"
        )
        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        with pytest.raises(OAuthProtocolError):
            listener.wait()

    def test_missing_code(self) -> None:
        exchange = MagicMock()
        listener = _listener(exchange)

        _get(listener.port, f"/callback?state={STATE}")

        with pytest.raises(OAuthProtocolError) as exc_info:
            listener.wait()
        assert exc_info.value.code == "missing_code"
        exchange.assert_not_called()

    def test_exchange_failure_shows_failure_page(self) -> None:
        exchange = MagicMock(side_effect=OAuthProtocolError("invalid_grant", "code already used"))
        listener = _listener(exchange)

        _, body = _get(listener.port, f"/callback?code=auth-code&state={STATE}")

        assert "Authorization Failed" in body
        with pytest.raises(OAuthProtocolError) as exc_info:
            listener.wait()
        assert exc_info.value.code == "token_exchange_failed"
        assert "code already used" in exc_info.value.description

    def test_other_path_is_not_found(self) -> None:
        listener = _listener(MagicMock(), timeout=0.3)

        status, _ = _get(listener.port, f"/favicon.ico?code=c&state={STATE}")

        assert status == 404
        with pytest.raises(CallbackTimeoutError):
            listener.wait()


class TestSingleDelivery:
    def test_first_result_wins(self, valid_tokens: TokenSet) -> None:
        exchange = MagicMock(return_value=valid_tokens)
        listener = _listener(exchange)

        _get(listener.port, "/callback?error=access_denied")
        _get(listener.port, f"/callback?code=auth-code&state={STATE}")

        with pytest.raises(OAuthProtocolError) as exc_info:
            listener.wait()
        assert exc_info.value.code == "access_denied"

    def test_concurrent_duplicates_exchange_once(self, valid_tokens: TokenSet) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow_exchange(code: str) -> TokenSet:
            started.set()
            release.wait(5)
            return valid_tokens

        listener = _listener(slow_exchange)
        first: dict[str, Optional[tuple[int, str]]] = {"response": None}

        def first_request() -> None:
            first["response"] = _get(listener.port, f"/callback?code=auth-code&state={STATE}")

        thread = threading.Thread(target=first_request)
        thread.start()
        assert started.wait(5)

        # The duplicate is answered while the first exchange is still running.
        status, body = _get(listener.port, f"/callback?code=auth-code&state={STATE}")
        assert status == 200
        assert "Authorization In Progress" in body

        release.set()
        thread.join(timeout=10)
        assert first["response"] is not None
        assert "Authorization Successful" in first["response"][1]

        # A late retry sees the same outcome without a second exchange.
        _, late_body = _get(listener.port, f"/callback?code=auth-code&state={STATE}")
        assert "Authorization Successful" in late_body

        assert listener.wait() == valid_tokens
        assert listener.exchange_calls == 1

    def test_browser_disconnect_still_delivers(self, valid_tokens: TokenSet) -> None:
        started = threading.Event()

        def slow_exchange(code: str) -> TokenSet:
            started.set()
            time.sleep(0.3)
            return valid_tokens

        listener = _listener(slow_exchange)
        sock = socket.create_connection(("127.0.0.1", listener.port), timeout=5)
        sock.sendall(
            f"GET /callback?code=auth-code&state={STATE} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode()
        )
        assert started.wait(5)
        # Abortive close: the handler's page write hits a reset connection.
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        sock.close()

        assert listener.wait() == valid_tokens
        assert listener.exchange_calls == 1

    def test_deliver_after_first_is_discarded(self) -> None:
        listener = CallbackListener(0, STATE, MagicMock())
        assert listener.deliver(CallbackFailure(code="access_denied")) is True
        assert listener.deliver(CallbackFailure(code="state_mismatch")) is False


class TestLifecycle:
    def test_timeout(self) -> None:
        listener = _listener(MagicMock(), timeout=0.2)
        with pytest.raises(CallbackTimeoutError):
            listener.wait()
        assert listener.state is ListenerState.CLOSED

    def test_cancel_before_wait(self) -> None:
        cancel = threading.Event()
        cancel.set()
        listener = _listener(MagicMock())
        with pytest.raises(AuthorizationCancelled):
            listener.wait(cancel)
        assert listener.state is ListenerState.CLOSED

    def test_cancel_during_wait(self) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        listener = _listener(MagicMock(), timeout=30)
        timer.start()
        try:
            with pytest.raises(AuthorizationCancelled):
                listener.wait(cancel)
        finally:
            timer.cancel()

    def test_close_is_idempotent(self) -> None:
        listener = _listener(MagicMock())
        listener.close()
        listener.close()
        assert listener.state is ListenerState.CLOSED

    def test_port_is_released_after_close(self) -> None:
        listener = _listener(MagicMock())
        port = listener.port
        listener.close()

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", port))

    def test_bind_error(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as occupied:
            occupied.bind(("127.0.0.1", 0))
            occupied.listen(1)
            port = occupied.getsockname()[1]

            listener = CallbackListener(port, STATE, MagicMock())
            with pytest.raises(ListenerBindError, match=str(port)):
                listener.start()
