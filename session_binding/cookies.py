"""
cookies.py — locate one cookie assignment inside a raw header value.

``Cookie`` and ``Set-Cookie`` values are treated as opaque byte strings.
Nothing is parsed into a cookie jar and re-serialised: the located value
is cut out and replaced, and every other byte of the header is carried
over verbatim.  That keeps attribute order, spacing, quoting and any
neighbouring assignments exactly as the origin or the browser sent them.

Matching rules
~~~~~~~~~~~~~~
* The cookie name is found as a plain substring (first occurrence).  It
  is **not** boundary-aware: ``id`` also matches inside ``sid=...``.
* The value starts right after the first ``=`` at or after the match.
* The value ends right before the first ``;`` after that ``=``, or at
  the end of the header.

Example::

    >>> a = locate(b"theme=dark; session=abc; Path=/", b"session")
    >>> a.prefix, a.name, a.value, a.suffix
    (b'theme=dark; ', b'session', b'abc', b'; Path=/')
    >>> a.replace(b"XYZ")
    b'theme=dark; session=XYZ; Path=/'
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from session_binding.log import get_logger

logger = get_logger(__name__)

EQUALS = b"="
SEPARATOR = b";"


@dataclass(frozen=True)
class Assignment:
    """An immutable view of a located ``name=value`` inside a header.

    ``prefix + name + b"=" + value + suffix`` is always the original
    header, byte for byte.

    Attributes
    ----------
    prefix:
        Header text before the matched name.
    name:
        From the start of the match up to (not including) the ``=``.
        Equal to the searched name unless the match was a substring of a
        longer cookie name, or whitespace sits before the ``=``.
    value:
        The cookie value, possibly empty.
    suffix:
        From the terminating ``;`` (inclusive) to the end, or ``b""``.
    exact:
        ``False`` when the name matched inside a longer cookie name.
    """

    prefix: bytes
    name: bytes
    value: bytes
    suffix: bytes
    exact: bool = True

    def replace(self, value: bytes) -> bytes:
        """Reassemble the header with *value* in place of the current one."""
        return self.prefix + self.name + EQUALS + value + self.suffix


def locate(header_value: bytes, cookie_name: bytes) -> Optional[Assignment]:
    """Find the first assignment of *cookie_name* in *header_value*.

    Returns ``None`` when the name does not occur, or occurs with no
    ``=`` anywhere after it.  ``None`` is not an error: the caller leaves
    the header alone.
    """
    if not cookie_name:
        return None

    match = header_value.find(cookie_name)
    if match == -1:
        return None

    eq = header_value.find(EQUALS, match + len(cookie_name))
    if eq == -1:
        return None

    start = eq + 1
    semi = header_value.find(SEPARATOR, start)
    end = len(header_value) if semi == -1 else semi

    assignment = Assignment(
        prefix=header_value[:match],
        name=header_value[match:eq],
        value=header_value[start:end],
        suffix=header_value[end:],
        exact=_on_boundary(header_value, match, eq, cookie_name),
    )
    if not assignment.exact:
        logger.debug(
            "cookie name %r matched inside %r", cookie_name, assignment.name
        )
    return assignment


def _on_boundary(header_value: bytes, match: int, eq: int, cookie_name: bytes) -> bool:
    if header_value[match:eq].rstrip() != cookie_name:
        return False
    return match == 0 or header_value[match - 1 : match] in (b" ", b"\t", b";")
