"""
binding_proxy.py — TLS-terminating reverse proxy that binds session
cookies to the client's TLS session.

Runs a mitmproxy ``DumpMaster`` in reverse-proxy mode in front of a
backend and registers :class:`~session_binding.addon.SessionBindingAddon`
on it.  Configuration comes from an INI file (``-c``, default
``./config.ini``); any command line flag overrides the file.

Example::

    python binding_proxy.py -c config.ini
    python binding_proxy.py --upstream http://127.0.0.1:8080 \\
        --key-file binding.key --cookies '$session' '$auth'
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import traceback
from typing import Optional, Sequence

from session_binding.log import get_logger, setup_logging
from session_binding.addon import SessionBindingAddon
from session_binding.config import BindingConfig, ProxySettings, load_config
from session_binding.errors import ConfigError

from mitmproxy import options
from mitmproxy.tools.dump import DumpMaster

logger = get_logger("binding_proxy")


class Init:
    def __init__(self, argv: Optional[Sequence[str]] = None) -> None:
        self.binding: BindingConfig
        self.settings: ProxySettings
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.master: Optional[DumpMaster] = None

        self.in_progress: bool = False
        self.args: argparse.Namespace = parser.parse_args(argv)

    def config_ini(self) -> None:
        setup_logging("INFO")
        self.binding, self.settings = load_config(self.args.config, self.args)
        setup_logging(self.settings.log_level)
        logger.debug(
            "Binding cookies %s on %s",
            [n.decode("utf-8", "replace") for n in self.binding.cookie_names],
            list(self.binding.locations),
        )

    def build_master(self) -> DumpMaster:
        """Create the mitmproxy master.  Must run inside the event loop."""
        opts = options.Options(
            listen_host=self.settings.listen_host,
            listen_port=self.settings.listen_port,
            ssl_insecure=self.settings.ssl_insecure,
        )
        master = DumpMaster(opts, with_termlog=False, with_dumper=False, loop=self.loop)
        # These options belong to addons DumpMaster registers, so they only
        # exist after construction.
        update: dict[str, object] = {
            "mode": [self.settings.mode],
            "tls_version_client_max": self.settings.tls_version_max,
        }
        if self.settings.certs:
            update["certs"] = list(self.settings.certs)
        master.options.update(**update)
        master.addons.add(SessionBindingAddon(self.binding))
        return master

    async def run_proxy(self) -> None:
        self.master = self.build_master()
        logger.info(
            "Serving session binding proxy on %s:%d -> %s",
            self.settings.listen_host,
            self.settings.listen_port,
            self.settings.upstream,
        )
        try:
            await self.master.run()
        finally:
            self.master = None

    def prepserver(self) -> int:
        try:
            self.config_ini()
        except ConfigError as e:
            logger.critical("Configuration error: %s", e)
            return 1

        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

        try:
            self.loop.add_signal_handler(signal.SIGTERM, self.terminated)
            self.loop.add_signal_handler(signal.SIGINT, self.terminated)
            self.loop.run_until_complete(self.run_proxy())
        except Exception:
            logger.critical("Proxy failed: %s", traceback.format_exc())
            return 1
        finally:
            self.loop.close()
        logger.info("Shutdown complete.")
        return 0

    def terminated(self) -> None:
        logger.debug("Terminated")
        if self.in_progress:
            logger.info("Received CNTR+C, exiting...")
            sys.exit(1)

        self.in_progress = True
        if self.master is not None:
            self.master.shutdown()
            logger.info("Shutdown requested.")


parser = argparse.ArgumentParser(description="Session binding reverse proxy")
parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config")
parser.add_argument('--host', dest='host', type=str, metavar='HOST', default=None, help='Host/IP to bind (default: 0.0.0.0)')
parser.add_argument('--port', dest='port', type=int, metavar='PORT', default=None, help='Port to listen on (default: 8443)')
parser.add_argument('--upstream', dest='upstream', type=str, metavar='URL', default=None, help='Backend URL (default: http://127.0.0.1:8080)')
parser.add_argument('--key', dest='key', type=str, metavar='KEY', default=None, help='32-byte binding key')
parser.add_argument('--key-file', dest='key_file', type=str, metavar='PATH', default=None, help='File holding the binding key on its first line')
parser.add_argument('--cookies', dest='cookies', nargs='+', metavar='$NAME', default=None, help="Cookie names to bind, each prefixed with '$'")
parser.add_argument('--directive', dest='directive', type=str, metavar='ARGS', default=None, help="Directive form: '<key> $name [$name ...]'")
parser.add_argument('--marker', dest='marker', type=str, default=None, help=argparse.SUPPRESS)
parser.add_argument('--locations', dest='locations', nargs='+', metavar='PREFIX', default=None, help='Path prefixes the binding applies to (default: /)')
parser.add_argument('--certs', dest='certs', nargs='+', metavar='SPEC', default=None, help="mitmproxy certs entries, e.g. '*=cert.pem'")
parser.add_argument('--tls-version-max', dest='tls_version_max', type=str, metavar='VERSION', default=None, help='Highest TLS version offered to clients (default: TLS1_2)')
parser.add_argument('--ssl-insecure', dest='ssl_insecure', action=argparse.BooleanOptionalAction, default=None, help='Do not verify the upstream certificate')
parser.add_argument('--log-level', dest='log_level', type=str, metavar='LEVEL', default=None, help='TRACE, DEBUG, INFO, WARNING or ERROR (default: INFO)')


def main(argv: Optional[Sequence[str]] = None) -> int:
    return Init(argv).prepserver()


if __name__ == "__main__":
    sys.exit(main())
