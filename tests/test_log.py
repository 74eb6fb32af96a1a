import logging

import pytest

from session_binding.log import TRACE, CustomLogger, get_logger, parse_level, setup_logging


class TestParseLevel:
    @pytest.mark.parametrize(
        "level, expected",
        [("trace", TRACE), ("INFO", logging.INFO), ("10", 10), (30, 30), (" debug ", 10)],
    )
    def test_known(self, level, expected):
        assert parse_level(level) == expected

    def test_unknown(self):
        with pytest.raises(ValueError):
            parse_level("LOUD")


class TestSetupLogging:
    def test_single_handler(self):
        setup_logging("INFO", colored=False)
        setup_logging("TRACE", colored=True)
        lg = logging.getLogger("session_binding")
        ours = [h for h in lg.handlers if getattr(h, "_session_binding", False)]
        assert len(ours) == 1
        assert lg.level == TRACE

    def test_trace(self, caplog, monkeypatch):
        setup_logging("TRACE", colored=False)
        monkeypatch.setattr(logging.getLogger("session_binding"), "propagate", True)
        logger = get_logger("session_binding.test")
        assert isinstance(logger, CustomLogger)
        with caplog.at_level(TRACE, logger="session_binding"):
            logger.trace("iv %s", "abc")
        assert ("session_binding.test", TRACE, "iv abc") in caplog.record_tuples
