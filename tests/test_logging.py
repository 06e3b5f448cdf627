"""
Tests for structured logging helpers and the JSON codec.
"""

import logging
from decimal import Decimal

from pmmbot.core.json_utils import dumps, loads
from pmmbot.infra.logging_cfg import BackgroundFileHandler, JsonFormatter, ThrottledFilter, build_logger, log_event


def record(msg: str, level: int = logging.WARNING) -> logging.LogRecord:
    return logging.LogRecord("pmmbot", level, __file__, 1, msg, None, None)


class TestJsonUtils:

    def test_decimal_survives_as_string(self):
        out = loads(dumps({"price": Decimal("1.2300"), "tags": {"b", "a"}}))
        assert out == {"price": "1.2300", "tags": ["a", "b"]}


class TestThrottledFilter:

    def test_repeated_event_suppressed_per_key(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        msg = dumps({"event": "snapshot_failed", "symbol": "TESTUSDT"})

        assert f.filter(record(msg))
        assert not f.filter(record(msg))
        assert f.filter(record(dumps({"event": "snapshot_failed", "symbol": "OTHERUSDT"})))

    def test_untracked_and_plain_messages_pass(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        placed = dumps({"event": "order_placed", "symbol": "TESTUSDT"})

        assert f.filter(record(placed))
        assert f.filter(record(placed))
        assert f.filter(record("Shutdown complete"))
        assert f.filter(record("Shutdown complete"))


class TestJsonFormatter:

    def test_line_is_json_with_message(self):
        line = JsonFormatter().format(record('{"event": "x"}', level=logging.ERROR))
        data = loads(line)

        assert data["level"] == "ERROR"
        assert data["name"] == "pmmbot"
        assert loads(data["msg"]) == {"event": "x"}


class TestLogEvent:

    def test_event_serialised_at_level(self, caplog):
        logger = logging.getLogger("pmmtest.events")
        with caplog.at_level(logging.DEBUG, logger="pmmtest.events"):
            log_event(logger, "fill", level=logging.WARNING, price=Decimal("99.50"))

        rec = caplog.records[-1]
        assert rec.levelno == logging.WARNING
        assert loads(rec.getMessage()) == {"event": "fill", "price": "99.50"}


class TestBuildLogger:

    def test_file_sink_writes_json_lines(self, tmp_path):
        path = tmp_path / "pmm.log"
        logger = build_logger("pmmtest.file", level=logging.INFO, file_path=str(path), async_file=False)
        try:
            log_event(logger, "order_placed", side="buy")
            log_event(logger, "noise", level=logging.DEBUG)
        finally:
            for h in list(logger.handlers):
                h.close()
                logger.removeHandler(h)

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert loads(loads(lines[0])["msg"]) == {"event": "order_placed", "side": "buy"}

    def test_background_handler_flushes_on_close(self, tmp_path):
        path = tmp_path / "bg.log"
        handler = BackgroundFileHandler(str(path))
        handler.emit(record(dumps({"event": "fill"})))
        handler.close()

        assert loads(loads(path.read_text().splitlines()[0])["msg"]) == {"event": "fill"}
