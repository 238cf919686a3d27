"""
Interactive OAuth authorization with a local redirect listener.

One ``AuthorizationFlow.run()`` call is one attempt: it probes a port, opens the
consent page, waits for Google to redirect the browser back to
``http://localhost:{port}{callback_path}``, exchanges the code for tokens and
persists them. Every attempt gets its own ``AuthorizationSession``; the listener
is unbound on every exit path.
"""

import asyncio
import enum
import html
import logging
import webbrowser
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import parse_qs, urlsplit

from .errors import (
    AuthorizationFailed,
    AuthorizationInProgress,
    CodeExchangeFailed,
    ListenerBindFailed,
    MissingAuthorizationCode,
    PersistenceError,
    StateMismatch,
    UserConsentTimeout,
    UserDeniedOrProviderError,
)
from .models import ClientRegistration, TokenGrant
from .ports import LOOPBACK_HOST, LOOPBACK_HOST_V6, find_available_port
from .store import CredentialStore

logger = logging.getLogger(__name__)

LISTENER_GRACE_SECONDS = 2.0
REQUEST_READ_TIMEOUT = 10.0
FLUSH_TIMEOUT = 1.0

# At most one interactive attempt per process, whichever engine started it
_active_flow: Optional["AuthorizationFlow"] = None

_PAGE = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{title}</title></head>
  <body style="font-family: Arial, sans-serif; padding: 20px;">
    <h1 style="color: {color};">{title}</h1>
    {body}
  </body>
</html>
"""


def success_page() -> str:
    return _PAGE.format(
        title="Authorization Successful",
        color="#28a745",
        body="<p>Your Google Sheets access has been saved.</p>"
             "<p>The MCP server will now continue starting up. You can close this window.</p>",
    )


def failure_page(message: str) -> str:
    return _PAGE.format(
        title="Authorization Failed",
        color="red",
        body=f"<p>{html.escape(message)}</p><p>Restart the server to try again.</p>",
    )


class FlowState(enum.Enum):
    IDLE = "idle"
    AWAITING_USER_CONSENT = "awaiting_user_consent"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class CallbackRequest:
    """The redirect Google sent to the listener. The flow answers it with ``respond``."""
    params: Dict[str, str]
    response: "asyncio.Future[Tuple[int, str]]" = field(repr=False)

    def get(self, name: str) -> Optional[str]:
        return self.params.get(name) or None

    def respond(self, status: int, page: str) -> None:
        if not self.response.done():
            self.response.set_result((status, page))


def _http_response(status: int, page: str) -> bytes:
    payload = page.encode('utf-8')
    head = (
        f"HTTP/1.1 {status} {HTTPStatus(status).phrase}\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode('ascii') + payload


class AuthorizationSession:
    """
    State for a single authorization attempt: the bound port, the redirect URI
    built from it and the single-shot completion signal.

    Use as an async context manager; leaving the block always unbinds the port.
    """

    def __init__(self, port: int, callback_path: str, host: str = LOOPBACK_HOST):
        self.port = port
        self.host = host
        self.callback_path = callback_path
        self.redirect_uri = f"http://localhost:{port}{callback_path}"
        self.expected_state: Optional[str] = None
        self._servers: List[asyncio.AbstractServer] = []
        self._signal: Optional["asyncio.Future[CallbackRequest]"] = None
        self._handlers: Set[asyncio.Task] = set()
        self._writers: Set[asyncio.StreamWriter] = set()
        self._closer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def listening(self) -> bool:
        return bool(self._servers) and self._servers[0].is_serving()

    async def start(self) -> None:
        """
        Bind the callback listener.

        Raises:
            ListenerBindFailed: The port was taken after it was probed.
        """
        loop = asyncio.get_running_loop()
        self._signal = loop.create_future()
        try:
            self._servers.append(await asyncio.start_server(self._handle, host=self.host, port=self.port))
        except OSError as e:
            raise ListenerBindFailed(
                f"Could not start the OAuth callback listener on {self.host}:{self.port}: {e}"
            ) from e
        if self.host == LOOPBACK_HOST:
            # Browsers may resolve localhost to ::1 first
            try:
                self._servers.append(
                    await asyncio.start_server(self._handle, host=LOOPBACK_HOST_V6, port=self.port)
                )
            except OSError as e:
                logger.debug("No IPv6 loopback listener on port %d: %s", self.port, e)
        logger.info("OAuth callback listener on http://localhost:%d%s", self.port, self.callback_path)

    async def __aenter__(self) -> "AuthorizationSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def wait_for_callback(self, timeout: Optional[float] = None) -> CallbackRequest:
        """
        Suspend until the browser hits the callback path.

        Raises:
            UserConsentTimeout: ``timeout`` seconds passed without a callback.
        """
        if self._signal is None:
            raise RuntimeError("session has not been started")
        try:
            return await asyncio.wait_for(asyncio.shield(self._signal), timeout)
        except asyncio.TimeoutError as e:
            raise UserConsentTimeout(
                f"No authorization response received within {timeout:g} seconds."
            ) from e

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._handlers.add(task)
        self._writers.add(writer)
        try:
            request_line = await asyncio.wait_for(reader.readline(), REQUEST_READ_TIMEOUT)
            parts = request_line.decode('latin-1').split()
            if len(parts) < 2:
                return
            # Skip headers; the query string is all we need.
            while True:
                line = await asyncio.wait_for(reader.readline(), REQUEST_READ_TIMEOUT)
                if line in (b'\r\n', b'\n', b''):
                    break

            target = urlsplit(parts[1])
            if target.path != self.callback_path:
                writer.write(_http_response(404, failure_page("Not found.")))
            elif self._signal is None or self._signal.done():
                writer.write(_http_response(409, failure_page("This authorization request was already handled.")))
            else:
                params = {k: v[0] for k, v in parse_qs(target.query).items() if v}
                callback = CallbackRequest(params=params,
                                           response=asyncio.get_running_loop().create_future())
                self._signal.set_result(callback)
                status, page = await callback.response
                writer.write(_http_response(status, page))
            await writer.drain()
        except (asyncio.TimeoutError, ConnectionError) as e:
            logger.debug("OAuth callback connection dropped: %s", e)
        finally:
            writer.close()
            self._writers.discard(writer)
            self._handlers.discard(task)

    def schedule_close(self, delay: float) -> None:
        """Unbind the listener after ``delay`` seconds so the last response can flush."""
        if self._closer is None:
            self._closer = asyncio.get_running_loop().create_task(self._close_later(delay))

    async def _close_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._shutdown()

    async def aclose(self) -> None:
        """Release the listener, waiting for a scheduled close if there is one."""
        if self._closer is not None:
            try:
                await self._closer
            finally:
                await self._shutdown()
        else:
            await self._shutdown()

    async def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._signal is not None and self._signal.done() and not self._signal.cancelled():
            # A callback nobody answered (e.g. the attempt was cancelled mid-exchange)
            self._signal.result().respond(503, failure_page("Authorization was interrupted."))
        elif self._signal is not None:
            self._signal.cancel()

        if self._handlers:
            await asyncio.wait(set(self._handlers), timeout=FLUSH_TIMEOUT)
        for writer in list(self._writers):
            writer.close()
        for task in list(self._handlers):
            task.cancel()

        for server in self._servers:
            server.close()
        for server in self._servers:
            await server.wait_closed()
        if self._servers:
            logger.debug("OAuth callback listener on port %d closed", self.port)


class AuthorizationFlow:
    """
    Runs the interactive consent flow and persists the resulting grant.

    Args:
        registration: The OAuth client the consent page is issued for.
        store: Where the resulting grant is saved.
        client: Token endpoint collaborator with ``consent_url(redirect_uri)`` and
            ``exchange_code(code, redirect_uri)``.
        callback_port: First port to probe for the listener.
        port_search_width: How many ports after ``callback_port`` to try.
        consent_timeout: Seconds to wait for the browser, None to wait forever.
        open_browser: Called with the consent URL; returns False if no browser opened.
        grace_delay: Seconds the listener stays up after the success page.
    """

    def __init__(self,
                 registration: ClientRegistration,
                 store: CredentialStore,
                 client,
                 callback_port: int = 3000,
                 port_search_width: int = 5,
                 consent_timeout: Optional[float] = None,
                 open_browser: Optional[Callable[[str], bool]] = webbrowser.open,
                 grace_delay: float = LISTENER_GRACE_SECONDS):
        self.registration = registration
        self.store = store
        self.client = client
        self.callback_port = callback_port
        self.port_search_width = port_search_width
        self.consent_timeout = consent_timeout
        self.open_browser = open_browser
        self.grace_delay = grace_delay
        self.state = FlowState.IDLE
        self.failure: Optional[BaseException] = None
        self.session: Optional[AuthorizationSession] = None

    def _transition(self, state: FlowState) -> None:
        logger.debug("Authorization flow: %s -> %s", self.state.value, state.value)
        self.state = state

    def _present(self, url: str) -> None:
        logger.info("Authorize Google Sheets access by opening this URL in your browser: %s", url)
        if self.open_browser is None:
            return
        try:
            opened = self.open_browser(url)
        except webbrowser.Error as e:
            logger.warning("Could not open a browser (%s); open the URL above manually.", e)
            return
        if not opened:
            logger.warning("No browser could be opened; open the URL above manually.")

    async def run(self) -> TokenGrant:
        """
        Run one authorization attempt end to end.

        Returns:
            The newly persisted TokenGrant.

        Raises:
            AuthorizationFailed: The attempt ended in the FAILED state; the subclass
                names the reason (denied, missing code, exchange failure, ...).
            PersistenceError: The grant was issued but could not be saved.
        """
        global _active_flow
        if _active_flow is not None:
            session = _active_flow.session
            where = f" on port {session.port}" if session is not None else ""
            raise AuthorizationInProgress(f"An authorization attempt is already in progress{where}.")
        _active_flow = self
        self.state = FlowState.IDLE
        self.failure = None
        try:
            port = find_available_port(self.callback_port, self.port_search_width)
            self.session = AuthorizationSession(port, self.registration.callback_path)
            async with self.session as session:
                return await self._authorize(session)
        except (AuthorizationFailed, PersistenceError, asyncio.CancelledError) as e:
            self.failure = e
            self._transition(FlowState.FAILED)
            if isinstance(e, asyncio.CancelledError):
                logger.warning("OAuth authorization cancelled")
            else:
                logger.error("OAuth authorization failed: %s", e)
            raise
        finally:
            self.session = None
            _active_flow = None

    async def _authorize(self, session: AuthorizationSession) -> TokenGrant:
        consent_url, session.expected_state = self.client.consent_url(session.redirect_uri)
        self._transition(FlowState.AWAITING_USER_CONSENT)
        self._present(consent_url)
        self._transition(FlowState.AWAITING_CALLBACK)

        callback = await session.wait_for_callback(self.consent_timeout)

        error = callback.get('error')
        if error:
            failure = UserDeniedOrProviderError(error, callback.get('error_description'))
            callback.respond(400, failure_page(f"Error: {error}"))
            raise failure
        code = callback.get('code')
        if not code:
            callback.respond(400, failure_page("No authorization code received."))
            raise MissingAuthorizationCode("The OAuth callback did not include an authorization code.")
        if session.expected_state and callback.get('state') != session.expected_state:
            callback.respond(400, failure_page("The authorization response did not match this request."))
            raise StateMismatch("OAuth callback state did not match the consent request.")

        self._transition(FlowState.EXCHANGING)
        try:
            grant = await asyncio.to_thread(self.client.exchange_code, code, session.redirect_uri)
        except Exception as e:
            callback.respond(500, failure_page(f"Token exchange failed: {e}"))
            raise CodeExchangeFailed(f"Exchanging the authorization code failed: {e}") from e

        try:
            self.store.save_grant(grant)
        except PersistenceError as e:
            callback.respond(500, failure_page(str(e)))
            raise

        callback.respond(200, success_page())
        session.schedule_close(self.grace_delay)
        self._transition(FlowState.COMPLETE)
        logger.info("OAuth authorization successful")
        return grant
