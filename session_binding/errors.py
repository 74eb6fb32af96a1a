from __future__ import annotations


class BindingError(Exception):
    """Base class for everything raised by the session-binding layer."""


class ConfigError(BindingError):
    """Invalid or missing configuration.  Fatal at load time."""


# -- session errors: fatal for the current request/response -----------------


class SessionError(BindingError):
    pass


class NoSecureSession(SessionError):
    def __init__(self, message: str = "connection has no negotiated TLS session") -> None:
        super().__init__(message)


class IVTooLong(SessionError):
    __slots__ = ("length", "limit")

    def __init__(self, length: int, limit: int) -> None:
        self.length = length
        self.limit = limit
        super().__init__(
            f"the init vector must NOT be longer than {limit} bytes (got {length})"
        )


# -- transform errors: caught per cookie ------------------------------------


class TransformError(BindingError):
    pass


class KeyLengthInvalid(TransformError):
    __slots__ = ("length", "expected")

    def __init__(self, length: int, expected: int) -> None:
        self.length = length
        self.expected = expected
        super().__init__(f"the key must be of {expected} bytes long (got {length})")


class CipherError(TransformError):
    pass


class IntegrityMismatch(TransformError):
    def __init__(self, message: str = "SHA256 checksum mismatch") -> None:
        super().__init__(message)


class DecodeError(TransformError):
    pass
