"""
secret.py — derive the per-connection binding value from a TLS session.

The binding value is what ties a sealed cookie to one TLS session: it is
used as the CBC IV, and it is never sent on the wire.  Both directions of
a connection derive it from the same session secret, so a cookie lifted
onto another connection is opened with the wrong IV and fails its digest.

Derivation
~~~~~~~~~~
1. Read the session master secret (48 bytes up to TLS 1.2).
2. Interpret its first 8 bytes as an unsigned 64-bit integer in
   little-endian order.
3. Render that as 16 lowercase hex digits.
4. Keep the first ``len(master_secret) // 3`` characters.

For a 48-byte master secret this yields exactly one AES block of ASCII
hex.  The rendered text, not the raw secret, is the binding value.

The connection is anything shaped like ``OpenSSL.SSL.Connection``
(``get_session()`` and ``master_key()``), which is what mitmproxy hands
out for client-side TLS.
"""

from __future__ import annotations

import struct
from typing import TYPE_CHECKING, Optional, Protocol, Union

from session_binding.cipher import IV_LENGTH
from session_binding.errors import IVTooLong, NoSecureSession
from session_binding.log import get_logger

if TYPE_CHECKING:
    from OpenSSL import SSL

logger = get_logger(__name__)

_PREFIX = struct.Struct("<Q")


class TLSConnection(Protocol):
    def get_session(self) -> Optional[object]: ...

    def master_key(self) -> Optional[bytes]: ...


def render_binding_value(master_secret: bytes) -> bytes:
    """Apply the derivation rule to raw session secret bytes."""
    if len(master_secret) < _PREFIX.size:
        raise NoSecureSession(
            f"session secret is {len(master_secret)} bytes, need at least {_PREFIX.size}"
        )

    (prefix,) = _PREFIX.unpack_from(master_secret)
    length = len(master_secret) // 3
    if length > IV_LENGTH:
        raise IVTooLong(length, IV_LENGTH)

    return f"{prefix:016x}".encode("ascii")[:length]


def derive_binding_value(
    connection: Optional[Union["SSL.Connection", TLSConnection]]
) -> bytes:
    """Return the binding value for *connection*.

    Raises
    ------
    NoSecureSession
        If there is no connection, no negotiated session, or the session
        exposes no master secret.
    IVTooLong
        If the rendered value would not fit the cipher's IV.
    """
    if connection is None:
        raise NoSecureSession()

    if connection.get_session() is None:
        raise NoSecureSession()

    master_secret = connection.master_key()
    if not master_secret:
        raise NoSecureSession("TLS session exposes no master secret")

    value = render_binding_value(master_secret)
    logger.trace("Session Binding IV: %s", value.decode("ascii"))
    return value
