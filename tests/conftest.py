import struct

import pytest

from session_binding.config import BindingConfig

KEY = b"0123456789abcdef0123456789abcdef"
MASTER_PREFIX = 0x0011223344556677


class FakeTLSConnection:
    """Stands in for ``OpenSSL.SSL.Connection``."""

    def __init__(self, master_secret=None, session=True):
        self._master_secret = master_secret
        self._session = object() if session else None

    def get_session(self):
        return self._session

    def master_key(self):
        return self._master_secret


def master_secret(prefix=MASTER_PREFIX, length=48, fill=b"\xaa"):
    return struct.pack("<Q", prefix) + fill * (length - 8)


@pytest.fixture
def key():
    return KEY


@pytest.fixture
def config():
    return BindingConfig.create(KEY, ["$session"])


@pytest.fixture
def tls_conn():
    return FakeTLSConnection(master_secret())


@pytest.fixture
def other_tls_conn():
    return FakeTLSConnection(master_secret(prefix=0x8899AABBCCDDEEFF))
