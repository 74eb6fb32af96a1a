import base64
from types import SimpleNamespace

import pytest
from mitmproxy import exceptions
from mitmproxy.test import taddons, tflow

from session_binding import addon as addon_module
from session_binding import cipher
from session_binding.addon import SessionBindingAddon, TLSSessionRegistry
from session_binding.config import BindingConfig

from conftest import KEY

IV = b"0011223344556677"
MARKER = b"+session_binding_proxy"


def sealed(value: bytes, iv: bytes = IV) -> str:
    return base64.b64encode(cipher.encrypt(KEY, iv, value + MARKER)).decode()


def established(addon, flow, conn):
    addon.tls_established_client(SimpleNamespace(conn=flow.client_conn, ssl_conn=conn))


@pytest.fixture
def addon(config):
    return SessionBindingAddon(config)


class TestRequest:
    def test_opens_cookie(self, addon, tls_conn):
        flow = tflow.tflow()
        established(addon, flow, tls_conn)
        flow.request.headers["Cookie"] = f"theme=dark; session={sealed(b'user42')}"

        addon.request(flow)

        assert flow.response is None
        assert flow.request.headers["Cookie"] == "theme=dark; session=user42"

    def test_other_session_forwarded_sealed(self, addon, other_tls_conn):
        flow = tflow.tflow()
        established(addon, flow, other_tls_conn)
        cookie = f"session={sealed(b'user42')}"
        flow.request.headers["Cookie"] = cookie

        addon.request(flow)

        assert flow.response is None
        assert flow.request.headers["Cookie"] == cookie

    def test_no_tls_session(self, addon):
        flow = tflow.tflow()
        flow.request.headers["Cookie"] = "session=abc"

        addon.request(flow)

        assert flow.response.status_code == 500
        assert b"session binding" in flow.response.content

    def test_plaintext_without_cookie_passes(self, addon):
        flow = tflow.tflow()
        flow.request.headers["Cookie"] = "theme=dark"

        addon.request(flow)

        assert flow.response is None
        assert flow.request.headers["Cookie"] == "theme=dark"

    def test_outside_locations(self, tls_conn):
        addon = SessionBindingAddon(BindingConfig.create(KEY, ["$session"], locations=["/app"]))
        flow = tflow.tflow()
        flow.request.headers["Cookie"] = "session=abc"

        addon.request(flow)

        assert flow.response is None
        assert flow.request.headers["Cookie"] == "session=abc"

    def test_unconfigured(self):
        addon = SessionBindingAddon()
        flow = tflow.tflow()
        flow.request.headers["Cookie"] = "session=abc"

        addon.request(flow)

        assert flow.response is None


class TestResponse:
    def test_seals_cookie(self, addon, tls_conn):
        flow = tflow.tflow(resp=True)
        established(addon, flow, tls_conn)
        flow.response.headers["Set-Cookie"] = "session=user42; Path=/; HttpOnly"

        addon.response(flow)

        value = flow.response.headers["Set-Cookie"]
        assert value == f"session={sealed(b'user42')}; Path=/; HttpOnly"

    def test_keeps_other_headers(self, addon, tls_conn):
        flow = tflow.tflow(resp=True)
        established(addon, flow, tls_conn)
        flow.response.headers.add("Set-Cookie", "theme=dark")
        flow.response.headers.add("Set-Cookie", "session=user42")
        before = [f for f in flow.response.headers.fields if f[0].lower() != b"set-cookie"]

        addon.response(flow)

        after = flow.response.headers.fields
        assert [f for f in after if f[0].lower() != b"set-cookie"] == before
        assert flow.response.headers.get_all("Set-Cookie")[0] == "theme=dark"

    def test_no_tls_session(self, addon):
        flow = tflow.tflow(resp=True)
        flow.response.headers["Set-Cookie"] = "session=user42"

        addon.response(flow)

        assert flow.response.status_code == 500
        assert "Set-Cookie" not in flow.response.headers


class TestConnections:
    def test_disconnect_forgets_session(self, addon, tls_conn):
        flow = tflow.tflow()
        established(addon, flow, tls_conn)
        assert len(addon.sessions) == 1

        addon.client_disconnected(flow.client_conn)

        assert len(addon.sessions) == 0

    def test_ignores_missing_ssl_conn(self, addon):
        flow = tflow.tflow()
        established(addon, flow, None)
        assert len(addon.sessions) == 0

    def test_registry(self, tls_conn):
        registry = TLSSessionRegistry()
        registry.set("a", tls_conn)
        assert registry.get("a") is tls_conn
        registry.remove("a")
        registry.remove("a")
        assert registry.get("a") is None


class TestConfigure:
    def options(self, monkeypatch, **kwargs):
        values = dict(
            session_binding_key="",
            session_binding_cookies="",
            session_binding_marker=MARKER.decode(),
            session_binding_locations="/",
        )
        values.update(kwargs)
        monkeypatch.setattr(addon_module, "ctx", SimpleNamespace(options=SimpleNamespace(**values)))

    def test_builds_binder(self, monkeypatch):
        self.options(
            monkeypatch,
            session_binding_key=KEY.decode(),
            session_binding_cookies="$session $auth",
        )
        addon = SessionBindingAddon()
        addon.configure({"session_binding_key", "session_binding_cookies"})
        assert addon.binder.config.cookie_names == (b"session", b"auth")

    def test_no_key_leaves_addon_inert(self, monkeypatch):
        self.options(monkeypatch)
        addon = SessionBindingAddon()
        addon.configure({"session_binding_key"})
        assert addon.binder is None

    def test_invalid_option(self, monkeypatch):
        self.options(monkeypatch, session_binding_key="short", session_binding_cookies="$s")
        addon = SessionBindingAddon()
        with pytest.raises(exceptions.OptionsError):
            addon.configure({"session_binding_key"})

    def test_unrelated_options_ignored(self, config):
        addon = SessionBindingAddon(config)
        addon.configure({"listen_port"})
        assert addon.binder.config is config


class TestScriptOptions:
    def test_registers_options(self):
        addon = SessionBindingAddon()
        with taddons.context(addon) as tctx:
            assert tctx.options.session_binding_key == ""
            assert tctx.options.session_binding_cookies == ""
            assert tctx.options.session_binding_marker == MARKER.decode()
            assert tctx.options.session_binding_locations == "/"
            assert addon.binder is None

    def test_configured_through_options(self):
        addon = SessionBindingAddon()
        with taddons.context(addon) as tctx:
            tctx.configure(
                addon,
                session_binding_key=KEY.decode(),
                session_binding_cookies="$session",
                session_binding_locations="/app /api",
            )
            assert addon.binder.config.cookie_names == (b"session",)
            assert addon.binder.config.locations == ("/app", "/api")

    def test_invalid_options(self):
        addon = SessionBindingAddon()
        with taddons.context(addon) as tctx:
            with pytest.raises(exceptions.OptionsError):
                tctx.configure(
                    addon, session_binding_key="short", session_binding_cookies="$session"
                )

    def test_given_config_registers_nothing(self, config):
        addon = SessionBindingAddon(config)
        with taddons.context(addon) as tctx:
            assert "session_binding_key" not in tctx.options.keys()
