"""Transient loopback HTTP listener for the OAuth redirect.

The listener is a small finite-state machine::

    idle --start()--> listening --+--> succeeded   (valid code + matching state)
                                  +--> failed      (provider error, bad params, state mismatch)
                                  +--> timed_out   (nothing valid within the timeout)

Settlement happens exactly once. It is guarded by a lock, so two browser tabs
hitting ``/callback`` at the same moment cannot both settle the listener; the
loser gets a ``409`` page and has no further effect. Once settled, the HTTP
server keeps running for a short grace period so the browser can render the
result page, then shuts down.

Only one listener may be active per process. The server binds ``127.0.0.1``
only and is never reachable from another host.
"""

from __future__ import annotations

import enum
import hmac
import html
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, ClassVar, Mapping, Optional
from urllib.parse import parse_qs, urlparse

from overdrip.exceptions import (
    CallbackTimeoutError,
    InvalidCallbackError,
    ListenerBusyError,
    OAuthFlowError,
    OverdripError,
    PortUnavailableError,
    ProviderAuthorizationError,
    StateMismatchError,
)
from overdrip.models import OAuthCallbackResult

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
LISTEN_HOST = "127.0.0.1"
DEFAULT_START_PORT = 8080
DEFAULT_PORT_ATTEMPTS = 10
DEFAULT_TIMEOUT = 300.0
DEFAULT_GRACE_PERIOD = 1.0


class ListenerState(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def redirect_uri_for(port: int) -> str:
    """Redirect URI registered with the provider for a listener on *port*."""
    return f"http://localhost:{port}{CALLBACK_PATH}"


# --- Result pages ---

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Overdrip - {title}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
               max-width: 600px; margin: 100px auto; padding: 40px; text-align: center;
               background: #f5f5f5; }}
        .card {{ background: white; padding: 40px; border-radius: 12px;
                 box-shadow: 0 4px 12px rgba(0,0,0,0.1); }}
        .mark {{ color: {color}; font-size: 48px; margin-bottom: 20px; }}
        h1 {{ color: #1f2937; margin-bottom: 10px; }}
        p {{ color: #6b7280; line-height: 1.6; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="mark">{mark}</div>
        <h1>{title}</h1>
        {paragraphs}
    </div>
</body>
</html>
"""


def _render_page(title: str, lines: list[str], ok: bool) -> str:
    paragraphs = "\n        ".join(f"<p>{html.escape(line)}</p>" for line in lines)
    return _PAGE_TEMPLATE.format(
        title=html.escape(title),
        color="#16a34a" if ok else "#dc2626",
        mark="&#10003;" if ok else "&#10007;",
        paragraphs=paragraphs,
    )


def _success_page() -> str:
    return _render_page(
        "Authentication Successful!",
        [
            "Your device has been authenticated with Google.",
            "You can close this window and return to your terminal.",
        ],
        ok=True,
    )


def _error_page(message: str) -> str:
    return _render_page(
        "Authentication Failed",
        [message, "Please close this window and try again in your terminal."],
        ok=False,
    )


def _already_completed_page() -> str:
    return _render_page(
        "Already Completed",
        [
            "This sign-in request has already been handled.",
            "You can close this window and return to your terminal.",
        ],
        ok=False,
    )


# --- HTTP plumbing ---


class _CallbackHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False
    allow_reuse_address = False

    listener: "CallbackListener"


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackHTTPServer

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        if parsed.path != CALLBACK_PATH:
            self._respond(404, "Not Found", content_type="text/plain; charset=utf-8")
            return

        query = parse_qs(parsed.query, keep_blank_values=True)
        params = {key: values[0] for key, values in query.items()}
        status, body = self.server.listener.handle_callback(params)
        self._respond(status, body)

    def _respond(
        self, status: int, body: str, content_type: str = "text/html; charset=utf-8"
    ) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:
        # The request line carries the authorization code.
        pass


# --- Listener ---


class CallbackListener:
    """One-shot receiver for the provider's redirect.

    Args:
        port: TCP port to bind on ``127.0.0.1``. ``0`` picks an ephemeral
            port (see :attr:`port`).
        expected_state: The ``state`` sent in the authorization URL.
        timeout: Seconds to wait for a valid callback before timing out.
        grace_period: Seconds the server stays up after settling so the
            browser can load the result page.

    Usage::

        with CallbackListener(8080, challenge.state) as listener:
            webbrowser.open(auth_url)
            result = listener.wait()
    """

    _active: ClassVar[Optional["CallbackListener"]] = None
    _active_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        port: int,
        expected_state: str,
        timeout: float = DEFAULT_TIMEOUT,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self._requested_port = port
        self._expected_state = expected_state
        self._timeout = timeout
        self._grace_period = grace_period

        self._state = ListenerState.IDLE
        self._settle_lock = threading.Lock()
        self._settled = threading.Event()
        self._result: Optional[OAuthCallbackResult] = None
        self._error: Optional[OverdripError] = None

        self._server: Optional[_CallbackHTTPServer] = None
        self._serve_thread: Optional[threading.Thread] = None
        self._timeout_timer: Optional[threading.Timer] = None
        self._shutdown_timer: Optional[threading.Timer] = None
        self._close_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def port(self) -> int:
        """The bound port, or the requested one before :meth:`start`."""
        if self._server is not None:
            return self._server.server_address[1]
        return self._requested_port

    @property
    def redirect_uri(self) -> str:
        return redirect_uri_for(self.port)

    @property
    def is_settled(self) -> bool:
        return self._settled.is_set()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> "CallbackListener":
        """Bind the loopback port and begin serving in a background thread.

        Raises:
            ListenerBusyError: If another listener is active in this process.
            PortUnavailableError: If the port cannot be bound.
        """
        cls = type(self)
        with cls._active_lock:
            if cls._active is not None:
                raise ListenerBusyError(
                    "An OAuth callback listener is already running in this process"
                )
            try:
                server = _CallbackHTTPServer(
                    (LISTEN_HOST, self._requested_port), _CallbackHandler
                )
            except OSError as exc:
                raise PortUnavailableError(
                    f"Cannot listen on {LISTEN_HOST}:{self._requested_port}: {exc}. "
                    "Close the program using that port or pass --port to choose another."
                ) from exc
            server.listener = self
            self._server = server
            cls._active = self

        self._state = ListenerState.LISTENING
        self._serve_thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"overdrip-callback-{self.port}",
            daemon=True,
        )
        self._serve_thread.start()

        self._timeout_timer = threading.Timer(self._timeout, self._on_timeout)
        self._timeout_timer.daemon = True
        self._timeout_timer.start()

        logger.debug("OAuth callback listener on %s:%d", LISTEN_HOST, self.port)
        return self

    def wait(self, timeout: Optional[float] = None) -> OAuthCallbackResult:
        """Block until the listener settles.

        Args:
            timeout: Optional extra bound on the wait. The listener's own
                timeout still applies.

        Returns:
            The callback ``code`` and ``state``.

        Raises:
            OAuthFlowError: The settlement error (provider error, invalid
                callback, state mismatch, or timeout).
        """
        if self._state == ListenerState.IDLE:
            raise OAuthFlowError("Callback listener was not started")
        if not self._settled.wait(timeout):
            raise CallbackTimeoutError("Timed out waiting for the OAuth callback")
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    def close(self) -> None:
        """Stop serving immediately and free the listener slot. Idempotent.

        A listener closed before settling fails with :class:`OAuthFlowError`.
        """
        self._settle(
            ListenerState.FAILED,
            error=OAuthFlowError("Callback listener closed before a callback arrived"),
            schedule_shutdown=False,
        )
        self._shutdown()

    def __enter__(self) -> "CallbackListener":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Callback handling
    # ------------------------------------------------------------------ #

    def handle_callback(self, params: Mapping[str, str]) -> tuple[int, str]:
        """Evaluate one ``/callback`` request and settle the listener.

        Args:
            params: The first value of each query parameter.

        Returns:
            ``(http_status, html_body)`` for the browser.
        """
        if self._settled.is_set():
            return 409, _already_completed_page()

        error = params.get("error")
        code = params.get("code")
        state = params.get("state")

        if error:
            description = params.get("error_description") or None
            settled = self._settle(
                ListenerState.FAILED, error=ProviderAuthorizationError(error, description)
            )
            page = _error_page(f"Authentication failed: {description or error}")
            status = 400
        elif not code or not state:
            settled = self._settle(
                ListenerState.FAILED,
                error=InvalidCallbackError("Missing required OAuth parameters"),
            )
            page = _error_page("Invalid callback parameters")
            status = 400
        elif not hmac.compare_digest(
            state.encode("utf-8"), self._expected_state.encode("utf-8")
        ):
            settled = self._settle(
                ListenerState.FAILED,
                error=StateMismatchError(
                    "State parameter mismatch - possible CSRF attack"
                ),
            )
            page = _error_page("Security validation failed")
            status = 400
        else:
            settled = self._settle(
                ListenerState.SUCCEEDED,
                result=OAuthCallbackResult(code=code, state=state),
            )
            page = _success_page()
            status = 200

        if not settled:
            return 409, _already_completed_page()
        return status, page

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _settle(
        self,
        state: ListenerState,
        result: Optional[OAuthCallbackResult] = None,
        error: Optional[OverdripError] = None,
        schedule_shutdown: bool = True,
    ) -> bool:
        """Move to a terminal state. Returns ``False`` if already settled."""
        with self._settle_lock:
            if self._settled.is_set():
                return False
            self._state = state
            self._result = result
            self._error = error
            self._settled.set()

        if self._timeout_timer is not None:
            self._timeout_timer.cancel()
        logger.debug("OAuth callback listener settled: %s", state.value)

        if schedule_shutdown and self._server is not None:
            self._shutdown_timer = threading.Timer(self._grace_period, self._shutdown)
            self._shutdown_timer.daemon = True
            self._shutdown_timer.start()
        return True

    def _on_timeout(self) -> None:
        timed_out = self._settle(
            ListenerState.TIMED_OUT,
            error=CallbackTimeoutError(
                f"No OAuth callback received within {self._timeout:g} seconds"
            ),
            schedule_shutdown=False,
        )
        if timed_out:
            self._shutdown()

    def _shutdown(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        for timer in (self._timeout_timer, self._shutdown_timer):
            if timer is not None and timer is not threading.current_thread():
                timer.cancel()

        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()

        cls = type(self)
        with cls._active_lock:
            if cls._active is self:
                cls._active = None


# --- Port selection ---


def find_available_port(
    start: int = DEFAULT_START_PORT, attempts: int = DEFAULT_PORT_ATTEMPTS
) -> int:
    """Return the first port in ``[start, start + attempts)`` that can be bound.

    Raises:
        PortUnavailableError: If every port in the range is taken.
    """
    for port in range(start, start + attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((LISTEN_HOST, port))
            except OSError:
                continue
        return port
    raise _range_exhausted(start, attempts)


def open_listener(
    expected_state: str,
    start_port: int = DEFAULT_START_PORT,
    attempts: int = DEFAULT_PORT_ATTEMPTS,
    timeout: float = DEFAULT_TIMEOUT,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> CallbackListener:
    """Start a listener on the first free port from *start_port* upwards.

    Candidates come from :func:`find_available_port`. A port taken by another
    process between that check and the bind is skipped.

    Raises:
        PortUnavailableError: If no port in the range can be bound.
        ListenerBusyError: If a listener is already active.
    """
    end = start_port + attempts
    port = start_port
    while port < end:
        try:
            port = find_available_port(port, end - port)
        except PortUnavailableError:
            break
        listener = CallbackListener(
            port, expected_state, timeout=timeout, grace_period=grace_period
        )
        try:
            return listener.start()
        except PortUnavailableError:
            logger.debug("Port %d was taken before the callback listener bound it", port)
            port += 1
    raise _range_exhausted(start_port, attempts)


def _range_exhausted(start: int, attempts: int) -> PortUnavailableError:
    end = start + attempts - 1
    return PortUnavailableError(
        f"No available ports found in range {start}-{end}. "
        f"Free a port in that range or pass --port to start from another one."
    )
