"""
config.py — immutable configuration for the binding layer and the proxy.

Two frozen dataclasses are built once at startup and handed to whatever
needs them; nothing here is mutated after load.

* :class:`BindingConfig` — binding key, cookie names, verification
  marker and the path prefixes the binding applies to.
* :class:`ProxySettings` — listener, upstream and TLS knobs for the
  mitmproxy front-end.

Both can be read from the ``[binding]`` and ``[proxy]`` sections of an
INI file with :func:`load_config`; command-line values take precedence
over the file.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

from session_binding.cipher import KEY_LENGTH
from session_binding.errors import ConfigError
from session_binding.log import get_logger, parse_level

logger = get_logger(__name__)

DEFAULT_MARKER = b"+session_binding_proxy"
VARIABLE_PREFIX = "$"

TLS_VERSIONS: frozenset[str] = frozenset(
    {"UNBOUNDED", "SSL3", "TLS1", "TLS1_1", "TLS1_2", "TLS1_3"}
)


@dataclass(frozen=True)
class BindingConfig:
    """Settings for :class:`~session_binding.rewriter.SessionBinder`.

    Attributes
    ----------
    key:
        The 32-byte binding key.  Any other length is rejected.
    cookie_names:
        Names of the cookies to seal, without the ``$`` used in
        configuration.  Order is the order they are processed in.
    marker:
        Literal appended to a value before sealing and required after
        opening.  Changing it invalidates every cookie already issued.
    locations:
        Request path prefixes the binding applies to.  Flows for other
        paths are forwarded untouched.
    """

    key: bytes = field(repr=False)
    cookie_names: tuple[bytes, ...]
    marker: bytes = DEFAULT_MARKER
    locations: tuple[str, ...] = ("/",)

    def __post_init__(self) -> None:
        if len(self.key) != KEY_LENGTH:
            raise ConfigError(
                f"session_binding_proxy: the key must be of {KEY_LENGTH} bytes long "
                f"(got {len(self.key)})"
            )
        if not self.cookie_names:
            raise ConfigError("session_binding_proxy: at least one cookie name is required")
        if any(not name for name in self.cookie_names):
            raise ConfigError("session_binding_proxy: empty cookie name")
        if not self.marker:
            raise ConfigError("session_binding_proxy: the verification marker must not be empty")
        if not self.locations:
            raise ConfigError("session_binding_proxy: at least one location is required")

    @classmethod
    def create(
        cls,
        key: bytes | str,
        cookies: Iterable[str],
        marker: bytes | str = DEFAULT_MARKER,
        locations: Iterable[str] = ("/",),
    ) -> BindingConfig:
        """Build a config from ``$``-prefixed cookie arguments."""
        if isinstance(key, str):
            key = key.encode("utf-8")
        if isinstance(marker, str):
            marker = marker.encode("utf-8")
        return cls(
            key=key,
            cookie_names=parse_cookie_arguments(cookies),
            marker=marker,
            locations=tuple(locations),
        )

    @classmethod
    def from_directive(cls, args: Sequence[str] | str) -> BindingConfig:
        """Parse the one-line directive form ``<key> $name [$name ...]``."""
        if isinstance(args, str):
            args = args.split()
        if len(args) < 1:
            raise ConfigError(
                "invalid number of arguments for the session_binding_proxy directive"
            )
        return cls.create(args[0], args[1:])

    def applies_to(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.locations)


def parse_cookie_arguments(arguments: Iterable[str]) -> tuple[bytes, ...]:
    """Strip the ``$`` from each cookie argument, keeping order and dropping repeats."""
    names: list[bytes] = []
    for arg in arguments:
        if not arg.startswith(VARIABLE_PREFIX) or len(arg) == 1:
            raise ConfigError(f'invalid variable name "{arg}"')
        name = arg[1:].encode("utf-8")
        if name not in names:
            names.append(name)
    return tuple(names)


@dataclass(frozen=True)
class ProxySettings:
    """Front-end knobs.

    Attributes
    ----------
    listen_host, listen_port:
        Where the TLS-terminating reverse proxy listens.
    upstream:
        Backend URL, e.g. ``http://127.0.0.1:8080``.
    certs:
        mitmproxy ``certs`` entries (``"*=/path/cert.pem"``).  Empty
        means mitmproxy signs leaf certs with its own CA.
    tls_version_max:
        Highest TLS version offered to clients.  Session secrets are
        48 bytes up to TLS 1.2, which yields a full 16-byte IV.
    ssl_insecure:
        Skip upstream certificate verification.
    log_level:
        Name or number of the log level.
    """

    listen_host: str = "0.0.0.0"
    listen_port: int = 8443
    upstream: str = "http://127.0.0.1:8080"
    certs: tuple[str, ...] = ()
    tls_version_max: str = "TLS1_2"
    ssl_insecure: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not 0 <= self.listen_port <= 65535:
            raise ConfigError(f"invalid listen_port {self.listen_port}")
        if "://" not in self.upstream:
            raise ConfigError(f"upstream must be a URL, got {self.upstream!r}")
        if self.tls_version_max not in TLS_VERSIONS:
            raise ConfigError(
                f"tls_version_max must be one of {sorted(TLS_VERSIONS)}, got {self.tls_version_max!r}"
            )
        try:
            parse_level(self.log_level)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @property
    def mode(self) -> str:
        return f"reverse:{self.upstream}"


DEFAULT_SETTINGS = ProxySettings()


def _read_key_file(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read key file {path}: {e}") from e
    return data.splitlines()[0] if data else b""


def _pick(cli_value: Optional[object], file_value: Optional[object]) -> Optional[object]:
    return cli_value if cli_value is not None else file_value


def load_binding_config(
    config: configparser.ConfigParser, args: Optional[argparse.Namespace] = None
) -> BindingConfig:
    """Build a :class:`BindingConfig` from the ``[binding]`` section and CLI overrides."""
    ns = args if args is not None else argparse.Namespace()
    section = "binding"

    directive = _pick(
        getattr(ns, "directive", None), config.get(section, "directive", fallback=None)
    )
    if directive:
        binding = BindingConfig.from_directive(str(directive))
        key, names = binding.key, [f"${n.decode()}" for n in binding.cookie_names]
    else:
        key_file = _pick(
            getattr(ns, "key_file", None), config.get(section, "key_file", fallback=None)
        )
        raw_key = _pick(getattr(ns, "key", None), config.get(section, "key", fallback=None))
        if key_file:
            key = _read_key_file(str(key_file))
        elif raw_key:
            key = str(raw_key).encode("utf-8")
        else:
            raise ConfigError("session_binding_proxy: a key is required to be defined")

        cookies = _pick(getattr(ns, "cookies", None), config.get(section, "cookies", fallback=None))
        if isinstance(cookies, str):
            names = cookies.split()
        else:
            names = list(cookies or [])

    marker = _pick(getattr(ns, "marker", None), config.get(section, "marker", fallback=None))
    locations = _pick(
        getattr(ns, "locations", None), config.get(section, "locations", fallback=None)
    )
    if isinstance(locations, str):
        locations = locations.split()

    return BindingConfig.create(
        key,
        names,
        marker=str(marker) if marker else DEFAULT_MARKER,
        locations=locations or ("/",),
    )


def load_proxy_settings(
    config: configparser.ConfigParser, args: Optional[argparse.Namespace] = None
) -> ProxySettings:
    """Build :class:`ProxySettings` from the ``[proxy]`` section and CLI overrides."""
    ns = args if args is not None else argparse.Namespace()
    section = "proxy"
    d = DEFAULT_SETTINGS

    try:
        port = _pick(
            getattr(ns, "port", None),
            config.getint(section, "listen_port", fallback=d.listen_port),
        )
        insecure = _pick(
            getattr(ns, "ssl_insecure", None),
            config.getboolean(section, "ssl_insecure", fallback=d.ssl_insecure),
        )
    except ValueError as e:
        raise ConfigError(f"[{section}] {e}") from e

    certs = _pick(getattr(ns, "certs", None), config.get(section, "certs", fallback=None))
    if isinstance(certs, str):
        certs = [c.strip() for c in certs.split(",") if c.strip()]

    return ProxySettings(
        listen_host=str(
            _pick(getattr(ns, "host", None), config.get(section, "listen_host", fallback=d.listen_host))
        ),
        listen_port=int(port),  # type: ignore[arg-type]
        upstream=str(
            _pick(getattr(ns, "upstream", None), config.get(section, "upstream", fallback=d.upstream))
        ),
        certs=tuple(certs or ()),
        tls_version_max=str(
            _pick(
                getattr(ns, "tls_version_max", None),
                config.get(section, "tls_version_max", fallback=d.tls_version_max),
            )
        ).upper(),
        ssl_insecure=bool(insecure),
        log_level=str(
            _pick(getattr(ns, "log_level", None), config.get(section, "log_level", fallback=d.log_level))
        ),
    )


def load_config(
    path: Optional[str | Path], args: Optional[argparse.Namespace] = None
) -> tuple[BindingConfig, ProxySettings]:
    """Read *path* (if it exists) and apply *args* on top."""
    parser = configparser.ConfigParser(interpolation=None)
    if path is not None:
        try:
            read = parser.read(path)
        except configparser.Error as e:
            raise ConfigError(f"cannot parse config file {path}: {e}") from e
        if read:
            logger.debug("Loaded config from %s", read[0])
        else:
            logger.warning("Config file %s not found, using command line only", path)
    return load_binding_config(parser, args), load_proxy_settings(parser, args)
