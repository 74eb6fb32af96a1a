"""
mitmproxy addon that applies the session binding to every flow.

mitmproxy terminates the client's TLS connection with pyOpenSSL, so the
``OpenSSL.SSL.Connection`` for each client is available once the
handshake completes.  The addon keeps it per client connection and
hands it to :class:`~session_binding.rewriter.SessionBinder`, which reads
the session secret from it on demand.

Usage with ``mitmdump``::

    mitmdump --mode reverse:http://127.0.0.1:8080 -s session_binding/addon.py \\
        --set session_binding_key=... --set session_binding_cookies='$session'

or programmatically through ``binding_proxy.py``.
"""

from __future__ import annotations

from typing import Optional

from mitmproxy import connection, ctx, exceptions, http, tls

from session_binding.config import BindingConfig
from session_binding.errors import ConfigError, SessionError
from session_binding.log import get_logger
from session_binding.rewriter import SessionBinder
from session_binding.secret import TLSConnection

logger = get_logger(__name__)


class TLSSessionRegistry:
    """Client connection id -> established TLS connection."""

    def __init__(self) -> None:
        self._sessions: dict[str, TLSConnection] = {}

    def set(self, client_id: str, conn: TLSConnection) -> None:
        self._sessions[client_id] = conn

    def get(self, client_id: str) -> Optional[TLSConnection]:
        return self._sessions.get(client_id)

    def remove(self, client_id: str) -> None:
        self._sessions.pop(client_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


def _error_response(status: int, reason: str) -> http.Response:
    return http.Response.make(
        status,
        f"session binding: {reason}\n".encode("utf-8"),
        {"Content-Type": "text/plain; charset=utf-8", "Connection": "close"},
    )


class SessionBindingAddon:
    """Seals configured cookies in responses and opens them in requests.

    Pass a :class:`BindingConfig` directly, or leave it out and set the
    ``session_binding_*`` options (``mitmdump -s`` style); the config is
    then built in :meth:`configure`.
    """

    name = "session-binding"

    def __init__(self, config: Optional[BindingConfig] = None) -> None:
        self.binder: Optional[SessionBinder] = SessionBinder(config) if config else None
        self.sessions = TLSSessionRegistry()

    # -- option plumbing (only used when loaded as a script) -----------------

    def load(self, loader) -> None:
        if self.binder is not None:
            return
        loader.add_option(
            "session_binding_key", str, "", "32-byte key used to seal cookies."
        )
        loader.add_option(
            "session_binding_cookies", str, "",
            "Whitespace separated cookie names, each prefixed with '$'.",
        )
        loader.add_option(
            "session_binding_marker", str, "+session_binding_proxy",
            "Verification marker appended before sealing.",
        )
        loader.add_option(
            "session_binding_locations", str, "/",
            "Whitespace separated path prefixes the binding applies to.",
        )

    def configure(self, updated: set[str]) -> None:
        if not any(o.startswith("session_binding_") for o in updated):
            return
        opts = ctx.options
        if not opts.session_binding_key:
            self.binder = None
            return
        try:
            config = BindingConfig.create(
                opts.session_binding_key,
                opts.session_binding_cookies.split(),
                marker=opts.session_binding_marker,
                locations=opts.session_binding_locations.split(),
            )
        except ConfigError as e:
            raise exceptions.OptionsError(str(e)) from e
        self.binder = SessionBinder(config)
        logger.info(
            "Session binding enabled for cookies: %s",
            ", ".join(n.decode("utf-8", "replace") for n in config.cookie_names),
        )

    # -- connection hooks ----------------------------------------------------

    def tls_established_client(self, data: tls.TlsData) -> None:
        if data.ssl_conn is None:
            return
        self.sessions.set(data.conn.id, data.ssl_conn)
        logger.trace("TLS established for client %s", data.conn.id)

    def client_disconnected(self, client: connection.Client) -> None:
        self.sessions.remove(client.id)

    # -- HTTP hooks ----------------------------------------------------------

    def _active(self, flow: http.HTTPFlow) -> Optional[SessionBinder]:
        binder = self.binder
        if binder is None:
            return None
        if not binder.config.applies_to(flow.request.path):
            return None
        return binder

    def request(self, flow: http.HTTPFlow) -> None:
        binder = self._active(flow)
        if binder is None or flow.response is not None:
            return

        conn = self.sessions.get(flow.client_conn.id)
        try:
            fields = binder.transform_request_headers(flow.request.headers.fields, conn)
        except SessionError as e:
            logger.error("cannot decrypt cookie for %s: %s", flow.request.pretty_url, e)
            flow.response = _error_response(500, "cannot verify session cookie")
            return

        flow.request.headers.fields = tuple(fields)

    def response(self, flow: http.HTTPFlow) -> None:
        binder = self._active(flow)
        if binder is None or flow.response is None:
            return

        conn = self.sessions.get(flow.client_conn.id)
        try:
            fields = binder.transform_response_headers(flow.response.headers.fields, conn)
        except SessionError as e:
            logger.error("cannot encrypt cookie for %s: %s", flow.request.pretty_url, e)
            flow.response = _error_response(500, "cannot bind session cookie")
            return

        flow.response.headers.fields = tuple(fields)


addons = [SessionBindingAddon()]
