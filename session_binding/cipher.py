"""
cipher.py — digest-prefixed AES-256-CBC used to seal cookie values.

Payload layout
--------------
::

    +----------------------+-----------------------------------------+
    | SHA-256(plaintext)   | AES-256-CBC(key, iv, PKCS7(plaintext))  |
    | 32 bytes             | n * 16 bytes                            |
    +----------------------+-----------------------------------------+

The digest is a plain hash of the plaintext, not a keyed MAC.  It catches
corruption and ciphertext produced under a different IV, but someone who
can run AES-256-CBC under the same key can forge a matching digest.  The
layout is kept as-is because cookies already issued by existing
deployments have to keep decrypting.

The IV is the per-connection binding value (see :mod:`secret`).  CBC
with a fixed IV is deterministic: sealing the same value twice on the
same connection yields the same bytes.

Every call builds its own cipher context inside :func:`_cipher_context`;
contexts are never cached or shared between calls, and cipher failures
surface as :class:`~session_binding.errors.CipherError`.
"""

from __future__ import annotations

import hashlib
import hmac
from contextlib import contextmanager
from typing import Iterator, Literal

from cryptography.exceptions import AlreadyFinalized
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, CipherContext, algorithms, modes

from session_binding.errors import CipherError, IntegrityMismatch, IVTooLong, KeyLengthInvalid
from session_binding.log import get_logger

logger = get_logger(__name__)

KEY_LENGTH = 256 // 8
BLOCK_SIZE = algorithms.AES.block_size // 8
IV_LENGTH = BLOCK_SIZE
DIGEST_LENGTH = hashlib.sha256().digest_size


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise KeyLengthInvalid(len(key), KEY_LENGTH)


def normalize_iv(iv: bytes) -> bytes:
    """Right-pad a binding value with NUL bytes to the AES block size.

    Binding values derived from short session secrets are shorter than
    a block; CBC needs exactly one block of IV.
    """
    if len(iv) > IV_LENGTH:
        raise IVTooLong(len(iv), IV_LENGTH)
    return iv.ljust(IV_LENGTH, b"\0")


@contextmanager
def _cipher_context(
    key: bytes, iv: bytes, direction: Literal["encrypt", "decrypt"]
) -> Iterator[CipherContext]:
    """Yield a fresh AES-256-CBC context for a single call.

    Any failure inside the block is re-raised as :class:`CipherError`
    so callers only deal with the package's own exception types.
    """
    cipher = Cipher(algorithms.AES(key), modes.CBC(normalize_iv(iv)))
    ctx = cipher.encryptor() if direction == "encrypt" else cipher.decryptor()
    try:
        yield ctx
    except (ValueError, AlreadyFinalized) as e:
        raise CipherError(f"failed to {direction}: {e}") from e


def encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    """Return ``SHA-256(plaintext) || AES-256-CBC(key, iv, plaintext)``.

    Raises
    ------
    KeyLengthInvalid
        If *key* is not exactly 32 bytes.
    IVTooLong
        If *iv* is longer than one AES block.
    """
    _check_key(key)

    digest = hashlib.sha256(plaintext).digest()

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()

    with _cipher_context(key, iv, "encrypt") as ctx:
        ciphertext = ctx.update(padded) + ctx.finalize()

    logger.trace("sealed %d bytes into %d", len(plaintext), DIGEST_LENGTH + len(ciphertext))
    return digest + ciphertext


def decrypt(key: bytes, iv: bytes, payload: bytes) -> bytes:
    """Open a payload produced by :func:`encrypt` and verify its digest.

    Raises
    ------
    KeyLengthInvalid
        If *key* is not exactly 32 bytes.
    CipherError
        If the payload is shorter than the digest, the ciphertext is not
        a whole number of blocks, or the padding is invalid.
    IntegrityMismatch
        If the recomputed SHA-256 differs from the stored digest.
    """
    _check_key(key)

    if len(payload) < DIGEST_LENGTH:
        raise CipherError(
            f"payload is {len(payload)} bytes, shorter than the {DIGEST_LENGTH}-byte digest"
        )

    stored_digest = payload[:DIGEST_LENGTH]
    ciphertext = payload[DIGEST_LENGTH:]

    with _cipher_context(key, iv, "decrypt") as ctx:
        padded = ctx.update(ciphertext) + ctx.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()

    if not hmac.compare_digest(stored_digest, hashlib.sha256(plaintext).digest()):
        logger.debug("failed to decrypt session: SHA256 checksum mismatch.")
        raise IntegrityMismatch()

    return plaintext
