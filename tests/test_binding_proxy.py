import binding_proxy

from conftest import KEY


class TestArguments:
    def test_defaults_are_unset(self):
        args = binding_proxy.parser.parse_args([])
        assert args.config == "./config.ini"
        assert args.port is None
        assert args.ssl_insecure is None
        assert args.cookies is None

    def test_overrides(self):
        args = binding_proxy.parser.parse_args(
            ["--port", "9443", "--cookies", "$session", "$auth", "--no-ssl-insecure"]
        )
        assert args.port == 9443
        assert args.cookies == ["$session", "$auth"]
        assert args.ssl_insecure is False


class TestInit:
    def test_config_ini(self, tmp_path):
        init = binding_proxy.Init(
            ["-c", str(tmp_path / "none.ini"), "--key", KEY.decode(), "--cookies", "$session",
             "--upstream", "http://backend:8080"]
        )
        init.config_ini()
        assert init.binding.cookie_names == (b"session",)
        assert init.settings.mode == "reverse:http://backend:8080"

    def test_bad_config_exits_nonzero(self, tmp_path):
        assert binding_proxy.main(["-c", str(tmp_path / "none.ini"), "--cookies", "$session"]) == 1

    def test_bad_cookie_name(self, tmp_path):
        argv = ["-c", str(tmp_path / "none.ini"), "--key", KEY.decode(), "--cookies", "session"]
        assert binding_proxy.main(argv) == 1

    def test_malformed_config_exits_nonzero(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text(f"[binding]\nkey = {KEY.decode()}\nkey = {KEY.decode()}\n")
        assert binding_proxy.main(["-c", str(path), "--cookies", "$session"]) == 1
