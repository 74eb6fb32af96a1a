"""
rewriter.py — seal cookies on the way out, open them on the way in.

:class:`SessionBinder` is the only thing the host proxy talks to.  It has
two entry points, one per direction:

* :meth:`SessionBinder.transform_response_headers` — for every
  ``Set-Cookie`` header and every configured cookie name, append the
  verification marker to the value, encrypt it under the connection's
  binding value, base64 it and splice it back in place of the cleartext.
* :meth:`SessionBinder.transform_request_headers` — for every ``Cookie``
  header and every configured cookie name, base64-decode, decrypt,
  verify the digest and the marker, and splice the cleartext back in.

Both take a header list of ``(name, value)`` tuples (``bytes`` or
``str``, as mitmproxy's ``Headers.fields`` or a plain header list hands
them over) and return a **new** list.  The input is never mutated.

Failure handling
~~~~~~~~~~~~~~~~
* Session errors (:class:`~session_binding.errors.NoSecureSession`,
  :class:`~session_binding.errors.IVTooLong`) propagate out of the entry
  point: the host must reject the request or response.  The binding
  value is only derived once a configured cookie is actually found, so
  plaintext traffic without those cookies is never rejected.
* Transform errors on a single cookie are logged and the header is left
  as it was.  Inbound, that means the backend receives the still-sealed
  value and cannot use it.

Per-cookie results are reported as :class:`Outcome` values.
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum
from typing import Callable, Optional, Sequence, Union

from session_binding import cipher
from session_binding.config import BindingConfig
from session_binding.cookies import locate
from session_binding.errors import DecodeError, TransformError
from session_binding.log import get_logger
from session_binding.secret import TLSConnection, derive_binding_value

logger = get_logger(__name__)

HeaderName = Union[bytes, str]
HeaderValue = Union[bytes, str]
HeaderList = Sequence[tuple[HeaderName, HeaderValue]]

REQUEST_COOKIE_HEADER = "cookie"
RESPONSE_COOKIE_HEADER = "set-cookie"


class Outcome(Enum):
    """What happened to one configured cookie in one header."""

    ABSENT = "absent"
    SEALED = "sealed"
    SEAL_FAILED = "seal-failed"
    VERIFIED = "verified"
    MARKER_MISSING = "marker-missing"
    DECODE_FAILED = "decode-failed"
    REJECTED = "rejected"

    @property
    def rewritten(self) -> bool:
        return self in (Outcome.SEALED, Outcome.VERIFIED)


class _BindingValue:
    """Derives the binding value on first use and remembers it.

    One instance lives for exactly one entry-point call.
    """

    __slots__ = ("_connection", "_value")

    def __init__(self, connection: Optional[TLSConnection]) -> None:
        self._connection = connection
        self._value: Optional[bytes] = None

    def __call__(self) -> bytes:
        if self._value is None:
            self._value = derive_binding_value(self._connection)
        return self._value


def _to_bytes(v: HeaderValue) -> bytes:
    return v.encode("latin-1") if isinstance(v, str) else v


def _like(original: HeaderValue, value: bytes) -> HeaderValue:
    # Preserve original type (bytes vs str) for the caller's header container
    return value.decode("latin-1") if isinstance(original, str) else value


def _header_name(k: HeaderName) -> str:
    return (k.decode("latin-1") if isinstance(k, bytes) else k).strip().lower()


class SessionBinder:
    """Applies the cookie binding to request and response header lists.

    Holds nothing but the immutable :class:`BindingConfig`, so a single
    instance can serve any number of concurrent requests.
    """

    __slots__ = ("config",)

    def __init__(self, config: BindingConfig) -> None:
        self.config = config

    # -- entry points --------------------------------------------------------

    def transform_request_headers(
        self, headers: HeaderList, connection: Optional[TLSConnection]
    ) -> list[tuple[HeaderName, HeaderValue]]:
        """Open every configured cookie in the ``Cookie`` headers.

        Raises
        ------
        SessionError
            If a configured cookie is present but *connection* yields no
            usable binding value.
        """
        return self._transform(
            headers, REQUEST_COOKIE_HEADER, self._open, _BindingValue(connection)
        )

    def transform_response_headers(
        self, headers: HeaderList, connection: Optional[TLSConnection]
    ) -> list[tuple[HeaderName, HeaderValue]]:
        """Seal every configured cookie in the ``Set-Cookie`` headers.

        Raises
        ------
        SessionError
            If a configured cookie is being set but *connection* yields
            no usable binding value.
        """
        return self._transform(
            headers, RESPONSE_COOKIE_HEADER, self._seal, _BindingValue(connection)
        )

    # -- single-cookie operations ----------------------------------------------

    def seal_cookie(self, header_value: bytes, name: bytes, iv: bytes) -> tuple[bytes, Outcome]:
        """Seal *name* inside one ``Set-Cookie`` value under a known binding value."""
        return self._seal(header_value, name, lambda: iv)

    def open_cookie(self, header_value: bytes, name: bytes, iv: bytes) -> tuple[bytes, Outcome]:
        """Open *name* inside one ``Cookie`` value under a known binding value."""
        return self._open(header_value, name, lambda: iv)

    # -- internal --------------------------------------------------------------

    def _transform(
        self,
        headers: HeaderList,
        header_name: str,
        operation: Callable[[bytes, bytes, Callable[[], bytes]], tuple[bytes, Outcome]],
        binding_value: Callable[[], bytes],
    ) -> list[tuple[HeaderName, HeaderValue]]:
        result: list[tuple[HeaderName, HeaderValue]] = []
        for k, v in headers:
            if _header_name(k) != header_name:
                result.append((k, v))
                continue

            value = _to_bytes(v)
            changed = False
            for name in self.config.cookie_names:
                value, outcome = operation(value, name, binding_value)
                changed = changed or outcome.rewritten

            if changed:
                logger.trace("Session Binding Proxy %s: %s", header_name, value)
                result.append((k, _like(v, value)))
            else:
                result.append((k, v))
        return result

    def _seal(
        self, header_value: bytes, name: bytes, binding_value: Callable[[], bytes]
    ) -> tuple[bytes, Outcome]:
        assignment = locate(header_value, name)
        if assignment is None:
            return header_value, Outcome.ABSENT

        iv = binding_value()
        try:
            payload = cipher.encrypt(
                self.config.key, iv, assignment.value + self.config.marker
            )
        except TransformError as e:
            logger.info("failed to encrypt cookie %r: %s", name, e)
            return header_value, Outcome.SEAL_FAILED

        logger.debug("Sealed cookie %r", name)
        return assignment.replace(base64.b64encode(payload)), Outcome.SEALED

    def _open(
        self, header_value: bytes, name: bytes, binding_value: Callable[[], bytes]
    ) -> tuple[bytes, Outcome]:
        assignment = locate(header_value, name)
        if assignment is None:
            return header_value, Outcome.ABSENT

        logger.trace("Encrypted cookie value: %s", assignment.value)
        iv = binding_value()

        try:
            payload = _b64decode(assignment.value)
        except DecodeError as e:
            logger.info("can't decode cookie %r: %s", name, e)
            return header_value, Outcome.DECODE_FAILED

        try:
            plaintext = cipher.decrypt(self.config.key, iv, payload)
        except TransformError as e:
            logger.info("can't decrypt cookie %r: %s", name, e)
            return header_value, Outcome.REJECTED

        marker = self.config.marker
        if not plaintext.endswith(marker):
            logger.debug("cookie %r decrypted without verification marker", name)
            return header_value, Outcome.MARKER_MISSING

        logger.debug("Valid cookie %r", name)
        return assignment.replace(plaintext[: -len(marker)]), Outcome.VERIFIED


def _b64decode(value: bytes) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(str(e)) from e
