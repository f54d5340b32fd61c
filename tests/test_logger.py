"""Tests for the structured run logger.

The JSON-lines file is consumed by other tools, so the record shape,
escaping, and ordering guarantees are what matter here.
"""

from __future__ import annotations

import io
import json
import sys
from datetime import UTC, datetime, timedelta

import pytest
from conftest import read_records, records

from horizon.logger import (
    Level,
    LogConfig,
    _MonotonicTimeStamper,
    configure_logging,
    install_excepthook,
)


class TestLevel:
    def test_ordering(self):
        assert Level.DEBUG < Level.INFO < Level.WARN < Level.ERROR < Level.FATAL

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("info", Level.INFO), ("WARNING", Level.WARN), ("critical", Level.FATAL), (40, Level.ERROR)],
    )
    def test_parse(self, raw, expected):
        assert Level.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            Level.parse("loud")


class TestFileSink:
    def test_core_fields_come_first(self, logger):
        logger.info("container_start", "Starting", container="horizon-opencode")

        rec = records(logger, operation="container_start")[0]
        assert list(rec)[:5] == ["timestamp", "level", "operation", "source", "message"]
        assert rec["level"] == "INFO"
        assert rec["container"] == "horizon-opencode"

    def test_message_escaping_round_trips(self, logger):
        nasty = 'quote " backslash \\ newline \n tab \t bell \x07 end'
        logger.warning("escape", nasty)

        path = logger.config.sink_path
        lines = [line for line in path.read_text().splitlines() if '"escape"' in line]
        assert len(lines) == 1
        assert json.loads(lines[0])["message"] == nasty

    def test_empty_operation_and_message_are_filled(self, logger):
        logger.info("", "")

        rec = [r for r in records(logger) if r["operation"] == "general"][0]
        assert rec["message"] == "(no message)"

    def test_source_is_call_site(self, logger):
        logger.info("where", "here")

        rec = records(logger, operation="where")[0]
        filename, _, lineno = rec["source"].rpartition(":")
        assert filename == "test_logger.py"
        assert int(lineno) > 0

    def test_session_markers(self, tmp_path):
        lg = configure_logging(LogConfig(log_dir=tmp_path), stream=io.StringIO())
        lg.info("work", "doing")
        lg.close()
        lg.close()

        ops = [r["operation"] for r in read_records(tmp_path / "horizon.log")]
        assert ops == ["session_start", "work", "session_end"]

    def test_timestamps_are_utc_millis(self, logger):
        logger.info("ts", "one")
        ts = records(logger, operation="ts")[0]["timestamp"]
        assert ts.endswith("Z")
        # milliseconds: seconds field has exactly three decimals
        assert len(ts.split(".")[1]) == len("123Z")

    def test_timestamps_non_decreasing(self, logger):
        for i in range(20):
            logger.debug("burst", f"record {i}")

        stamps = [
            datetime.fromisoformat(r["timestamp"].replace("Z", "+00:00"))
            for r in records(logger, operation="burst")
        ]
        assert stamps == sorted(stamps)

    def test_exception_is_serialized(self, logger):
        try:
            raise RuntimeError("kaboom")
        except RuntimeError:
            logger.error("failing", "Something broke", exc_info=True)

        rec = records(logger, operation="failing")[0]
        assert "RuntimeError: kaboom" in rec["exception"]


class TestMonotonicTimeStamper:
    def test_clock_going_backwards_is_clamped(self, monkeypatch):
        base = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        readings = iter([base, base - timedelta(seconds=5), base + timedelta(seconds=1)])

        class _Clock:
            @staticmethod
            def now(tz=None):
                return next(readings)

        monkeypatch.setattr("horizon.logger.datetime", _Clock)
        stamper = _MonotonicTimeStamper()
        out = [stamper(None, "info", {})["timestamp"] for _ in range(3)]

        assert out[0] == "2026-01-01T12:00:00.000Z"
        assert out[1] == out[0]
        assert out[2] == "2026-01-01T12:00:01.000Z"


class TestFiltering:
    def test_below_min_level_is_dropped(self, tmp_path):
        stream = io.StringIO()
        lg = configure_logging(LogConfig(min_level=Level.WARN, log_dir=tmp_path), stream=stream)
        lg.debug("quiet", "not written")
        lg.info("quiet", "not written either")
        lg.warning("loud", "written")
        lg.fatal("loud", "always written")
        lg.close()

        recs = read_records(tmp_path / "horizon.log")
        assert [r["level"] for r in recs] == ["WARN", "FATAL"]
        assert "not written" not in stream.getvalue()

    def test_disabled_sinks(self, tmp_path):
        stream = io.StringIO()
        lg = configure_logging(
            LogConfig(log_dir=tmp_path, enable_file=False, enable_console=False),
            stream=stream,
        )
        lg.error("nothing", "goes anywhere")
        lg.close()

        assert not (tmp_path / "horizon.log").exists()
        assert stream.getvalue() == ""


class TestConsoleSink:
    def test_single_line_with_operation_tag(self, logger, log_stream):
        logger.info("image_build", "line one\nline two")

        lines = [line for line in log_stream.getvalue().splitlines() if "[image_build]" in line]
        assert len(lines) == 1
        assert "line one\\nline two" in lines[0]
        assert "INFO" in lines[0]

    def test_no_color_codes_when_not_a_tty(self, logger, log_stream):
        logger.error("plain", "no colors")
        assert "\x1b[" not in log_stream.getvalue()


class TestDowngrade:
    def test_unwritable_log_dir_falls_back_to_console(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        stream = io.StringIO()

        lg = configure_logging(LogConfig(log_dir=blocker / "logs"), stream=stream)
        lg.info("after", "still visible")
        lg.info("after", "and again")
        lg.close()

        out = stream.getvalue()
        assert lg.file_enabled is False
        assert out.count("[logging]") == 1
        assert "console output only" in out
        assert out.count("[after]") == 2

    def test_downgrade_notice_ignores_min_level(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        stream = io.StringIO()

        lg = configure_logging(
            LogConfig(min_level=Level.ERROR, log_dir=blocker / "logs"),
            stream=stream,
        )
        lg.close()

        assert stream.getvalue().count("[logging]") == 1

    def test_downgrade_forces_console_on(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        stream = io.StringIO()

        lg = configure_logging(
            LogConfig(log_dir=blocker / "logs", enable_console=False),
            stream=stream,
        )
        lg.warning("visible", "somewhere")
        lg.close()

        assert "[visible]" in stream.getvalue()

    def test_emit_never_raises(self, logger):
        logger.emit("NOT-A-LEVEL", "op", "message")
        logger.info("op", "unserializable extra", value=object())


class TestExcepthook:
    def test_uncaught_exception_logged_as_fatal(self, logger, monkeypatch):
        monkeypatch.setattr(sys, "excepthook", sys.excepthook)
        install_excepthook(logger)

        with pytest.raises(SystemExit) as exc_info:
            sys.excepthook(ValueError, ValueError("boom"), None)

        assert exc_info.value.code == 1
        rec = records(logger, operation="uncaught_exception")[0]
        assert rec["level"] == "FATAL"
        assert "boom" in rec["message"]
